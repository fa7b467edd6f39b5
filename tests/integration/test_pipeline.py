import shutil

import pandas as pd
import pytest
from varflow.core.exceptions import ManifestError
from varflow.core.graph import RunStatus
from varflow.core.stage import StageState
from varflow.models.models import RunConfig
from varflow.pipeline import build_pipeline, run_pipeline

REQUIRED_TOOLS = ("fastqc", "cutadapt", "bwa", "samtools", "lofreq", "bgzip", "tabix", "bcftools")


def _states(report, stage):
    return {r.key: r.state for r in report.records_for(stage)}


@pytest.mark.integration
def test_two_samples_with_lofreq(run_inputs, fake_executor):
    """
    Runs the full pipeline for two samples with only lofreq selected.
    Every lofreq stage runs per sample, ivar stages skip, and both run-level
    summaries list the samples in sorted order.
    """
    executor = fake_executor()
    config = RunConfig(**run_inputs, tools="lofreq")

    report = run_pipeline(config, executor=executor)

    assert report.status == RunStatus.SUCCEEDED
    for stage in ("cutadapt", "bwa_mem", "lofreq_indelqual", "samtools_index", "samtools_depth", "lofreq_call"):
        assert _states(report, stage) == {"s1": StageState.SUCCEEDED, "s2": StageState.SUCCEEDED}
    for stage in ("ivar_variants", "ivar_table", "snpeff"):
        assert set(_states(report, stage).values()) <= {StageState.SKIPPED}
    assert "ivar_variants" not in executor.stages_run()
    assert executor.stages_run().count("bwa_index") == 1

    output_dir = run_inputs["output_dir"]
    trimming = pd.read_csv(output_dir / "trimming-summary.csv")
    assert list(trimming["sample"]) == ["s1", "s2"]
    alignment = pd.read_csv(output_dir / "alignment-summary.csv")
    assert list(alignment["sample"]) == ["s1", "s2"]

    for sample_id in ("s1", "s2"):
        sample_dir = output_dir / "samples" / sample_id
        assert (sample_dir / f"{sample_id}.lofreq-variants.csv").is_file()
        assert (sample_dir / f"{sample_id}.lofreq.consensus.fasta").is_file()
        assert (sample_dir / f"{sample_id}.samtools.depth").is_file()
    assert (output_dir / "reference" / "reference.fa").is_file()

    summary = pd.read_csv(output_dir / "run_summary.tsv", sep="\t")
    assert set(summary["status"]) <= {"SUCCEEDED", "SKIPPED"}


@pytest.mark.integration
def test_stage_order_within_sample(run_inputs, fake_executor):
    """Within one sample, stages run in dependency order."""
    executor = fake_executor()
    run_pipeline(RunConfig(**run_inputs, tools="lofreq,ivar"), executor=executor)

    order = executor.stages_run("s1")
    assert order.index("cutadapt") < order.index("bwa_mem") < order.index("lofreq_indelqual")
    assert order.index("samtools_index") < order.index("lofreq_call") < order.index("lofreq_table")
    assert order.index("ivar_variants") < order.index("ivar_consensus")


@pytest.mark.integration
def test_failed_sample_is_isolated(run_inputs, fake_executor):
    """An alignment failure drops one sample; the other finishes and both summaries are written."""
    executor = fake_executor(fail={("bwa_mem", "s2")})

    report = run_pipeline(RunConfig(**run_inputs, tools="lofreq,ivar"), executor=executor)

    assert report.status == RunStatus.COMPLETED_WITH_ERRORS
    assert report.failed_samples() == ["s2"]
    assert _states(report, "ivar_consensus") == {"s1": StageState.SUCCEEDED}
    assert "lofreq_call" not in executor.stages_run("s2")

    output_dir = run_inputs["output_dir"]
    assert list(pd.read_csv(output_dir / "trimming-summary.csv")["sample"]) == ["s1", "s2"]
    assert list(pd.read_csv(output_dir / "alignment-summary.csv")["sample"]) == ["s1"]


@pytest.mark.integration
def test_missing_read_file_stops_before_any_stage(run_inputs, fake_executor, write_manifest, make_fastq):
    """A manifest row whose read1 is missing fails ingestion and nothing runs."""
    make_fastq("reads/s1_R1.fastq.gz")
    make_fastq("reads/s1_R2.fastq.gz")
    make_fastq("reads/s2_R2.fastq.gz")
    run_inputs["manifest"] = write_manifest(
        [
            ["s1", "ok", "reads/s1_R1.fastq.gz", "reads/s1_R2.fastq.gz"],
            ["s2", "ok", "reads/gone_R1.fastq.gz", "reads/s2_R2.fastq.gz"],
        ],
        name="broken.tsv",
    )
    executor = fake_executor()

    with pytest.raises(ManifestError, match="Read1 file not found for sample s2") as exc_info:
        run_pipeline(RunConfig(**run_inputs), executor=executor)

    assert exc_info.value.line_number == 2
    assert executor.stages_run() == []
    assert not (run_inputs["output_dir"] / "run_summary.tsv").exists()


@pytest.mark.integration
def test_fail_fast_aborts_run(run_inputs, fake_executor):
    executor = fake_executor(fail={("cutadapt", "s1")})

    report = run_pipeline(RunConfig(**run_inputs, fail_fast=True, threads=1), executor=executor)

    assert report.status == RunStatus.FAILED
    assert not (run_inputs["output_dir"] / "trimming-summary.csv").exists()
    assert all(r.terminal for r in report.records)


@pytest.mark.integration
def test_retry_recovers_flaky_stage(run_inputs, fake_executor):
    executor = fake_executor(flaky={("lofreq_call", "s1")})

    report = run_pipeline(RunConfig(**run_inputs, max_retries=1), executor=executor)

    assert report.succeeded
    (record,) = [r for r in report.records_for("lofreq_call") if r.key == "s1"]
    assert record.attempts == 2


@pytest.mark.integration
def test_report_failure_is_ignored(run_inputs, fake_executor):
    """MultiQC failing does not fail the run."""
    report = run_pipeline(RunConfig(**run_inputs), executor=fake_executor(fail={"multiqc"}))

    assert report.status == RunStatus.SUCCEEDED
    (record,) = report.records_for("multiqc")
    assert record.ignored


@pytest.mark.integration
def test_topology(run_inputs, fake_executor):
    """Gated stages are inactive unless their tool is selected."""
    config = RunConfig(**run_inputs, tools="ivar")
    graph = build_pipeline(config, [], fake_executor())

    stages = {entry["stage"]: entry for entry in graph.describe()}
    assert stages["ivar_consensus"]["active"]
    assert not stages["lofreq_call"]["active"]
    assert stages["trimming_summary"]["upstream"] == ["cutadapt"]
    assert sorted(stages["ivar_consensus"]["upstream"]) == ["ivar_variants", "lofreq_indelqual", "samtools_index"]
    assert stages["bwa_mem"]["upstream"] == ["bwa_index", "cutadapt"]


@pytest.mark.integration
@pytest.mark.requires_tools
@pytest.mark.skipif(not all(shutil.which(tool) for tool in REQUIRED_TOOLS), reason="bioinformatics tools not on PATH")
def test_pipeline_with_real_tools(run_inputs):
    """
    Runs the real commands on empty reads.
    Verifies that the run completes and the run summary is written.
    """
    report = run_pipeline(RunConfig(**run_inputs, tools="lofreq", threads=2))

    assert report.status != RunStatus.FAILED or report.error
    assert (run_inputs["output_dir"] / "run_summary.tsv").is_file()
