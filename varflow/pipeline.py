#!/usr/bin/env python3
"""The variant-calling pipeline: fixed topology, run orchestration and run summary.

Per sample::

    samples ─┬─ fastqc
             └─ cutadapt ─┬─ (collect) trimming_summary
                          └─ bwa_mem ── lofreq_indelqual ─┬─ samtools_index ─ (collect) alignment_summary
                                                          └─ join(bai) ─┬─ samtools_depth
                                                                        ├─ lofreq_call ─┬─ lofreq_table
                                                                        │               ├─ lofreq_consensus
                                                                        │               └─ snpeff
                                                                        └─ ivar_variants ─┬─ ivar_table
                                                                                          └─ join(bai) ─ ivar_consensus

``bwa_index`` runs once and feeds the reference index to every stage that
needs it. ``multiqc`` collects every QC file once all samples are done.
"""

from collections.abc import Callable
from pathlib import Path

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from varflow.aggregate import Aggregator
from varflow.core.constants import REFERENCE_DIR, RUN_SUMMARY
from varflow.core.graph import PipelineGraph, RunReport, RunStatus, StageExecutor
from varflow.core.logging_config import get_logger
from varflow.core.stage import Stage, StageRecord, StageState, uses_tool
from varflow.core.utils import check_output_directory
from varflow.executor import CommandExecutor
from varflow.manifest import load_manifest
from varflow.models.models import RunConfig, SampleRecord

console = Console()
logger = get_logger(__name__)

LOFREQ = uses_tool("lofreq")
IVAR = uses_tool("ivar")
SNPEFF = uses_tool("snpeff")


def build_pipeline(
    config: RunConfig,
    samples: list[SampleRecord],
    executor: StageExecutor,
    listener: Callable[[StageRecord], None] | None = None,
) -> PipelineGraph:
    """Construct the full stage and channel topology for a run.

    Args:
        config: Resolved run configuration.
        samples: Validated manifest records.
        executor: Runs every stage without an in-process action.
        listener: Receives each stage record once it reaches a terminal state.

    Returns:
        A validated graph, ready to run.
    """
    graph = PipelineGraph(
        tools=config.tools,
        executor=executor,
        output_dir=config.output_dir,
        threads=config.threads,
        fail_fast=config.fail_fast,
        max_retries=config.max_retries,
        strict_joins=config.strict_joins,
        max_forks=config.max_forks,
        listener=listener,
    )
    threads = {"threads": config.task_threads}

    samples_ch = graph.source("samples", ("id", "read1", "read2"), [s.as_element() for s in samples])
    qc_reads, trim_reads = samples_ch.broadcast(2)

    # Quality control and trimming
    fastqc_reports = graph.channel("fastqc_reports", ("id", "fastqc_report"))
    graph.add_stage(Stage("fastqc", input=qc_reads, outputs=[fastqc_reports], params=threads, resources="light"))

    trimmed = graph.channel("trimmed", ("id", "trimmed1", "trimmed2"))
    cutadapt_reports = graph.channel("cutadapt_reports", ("id", "cutadapt_log"))
    cutadapt_logs = graph.channel("cutadapt_logs", ("cutadapt_log",))
    graph.add_stage(
        Stage(
            "cutadapt",
            input=trim_reads,
            outputs=[trimmed, cutadapt_reports, cutadapt_logs],
            params={"adapters": config.adapters, **threads},
        )
    )
    graph.add_stage(
        Stage(
            "trimming_summary",
            input=cutadapt_logs.collect(sort=True).if_empty([]),
            outputs=[graph.channel("trimming_summary", ("trimming_summary",))],
            action=Aggregator("cutadapt"),
            resources="light",
            fatal=True,
        )
    )

    # Alignment
    reference_index = graph.channel("reference_index", ("reference_index",))
    graph.add_stage(
        Stage(
            "bwa_index",
            outputs=[reference_index],
            params={"reference": config.reference},
            resources="heavy",
            fatal=True,
            publish_dir=REFERENCE_DIR,
        )
    )

    aligned = graph.channel("aligned", ("id", "bam"))
    graph.add_stage(
        Stage("bwa_mem", input=trimmed, outputs=[aligned], values=[reference_index], params=threads, resources="heavy")
    )

    indelqual = graph.channel("indelqual", ("id", "bam"))
    graph.add_stage(Stage("lofreq_indelqual", input=aligned, outputs=[indelqual], values=[reference_index]))

    bai = graph.channel("bai", ("id", "bai"))
    flagstat_reports = graph.channel("flagstat_reports", ("id", "flagstat"))
    flagstat_logs = graph.channel("flagstat_logs", ("flagstat",))
    graph.add_stage(
        Stage("samtools_index", input=indelqual, outputs=[bai, flagstat_reports, flagstat_logs], resources="light")
    )
    graph.add_stage(
        Stage(
            "alignment_summary",
            input=flagstat_logs.collect(sort=True).if_empty([]),
            outputs=[graph.channel("alignment_summary", ("alignment_summary",))],
            action=Aggregator("flagstat"),
            resources="light",
            fatal=True,
        )
    )

    indexed = graph.join(indelqual, bai, name="indexed")
    graph.add_stage(
        Stage("samtools_depth", input=indexed, outputs=[graph.channel("depth", ("id", "depth"))], resources="light")
    )

    # lofreq
    lofreq_calls = graph.channel("lofreq_calls", ("id", "vcf"))
    graph.add_stage(
        Stage(
            "lofreq_call",
            input=indexed,
            outputs=[lofreq_calls],
            values=[reference_index],
            activation=LOFREQ,
            params=threads,
            resources="heavy",
        )
    )
    graph.add_stage(
        Stage(
            "lofreq_table",
            input=lofreq_calls,
            outputs=[graph.channel("lofreq_variants", ("id", "variants_csv"))],
            activation=LOFREQ,
            resources="light",
        )
    )
    graph.add_stage(
        Stage(
            "lofreq_consensus",
            input=lofreq_calls,
            outputs=[graph.channel("lofreq_consensus", ("id", "consensus"))],
            values=[reference_index],
            activation=LOFREQ,
        )
    )
    graph.add_stage(
        Stage(
            "snpeff",
            input=lofreq_calls,
            outputs=[graph.channel("annotated", ("id", "annotated_vcf"))],
            activation=SNPEFF,
            params={"annotation": config.annotation},
        )
    )

    # ivar
    ivar_calls = graph.channel("ivar_calls", ("id", "ivar_tsv"))
    graph.add_stage(
        Stage("ivar_variants", input=indexed, outputs=[ivar_calls], values=[reference_index], activation=IVAR)
    )
    graph.add_stage(
        Stage(
            "ivar_table",
            input=ivar_calls,
            outputs=[graph.channel("ivar_variants", ("id", "variants_csv"))],
            activation=IVAR,
            resources="light",
        )
    )
    graph.add_stage(
        Stage(
            "ivar_consensus",
            input=graph.join(ivar_calls, indexed, name="ivar_indexed"),
            outputs=[graph.channel("ivar_consensus", ("id", "consensus"))],
            activation=IVAR,
        )
    )

    # Run report
    qc_reports = fastqc_reports.mix(cutadapt_reports, flagstat_reports, name="qc_reports")
    graph.add_stage(
        Stage(
            "multiqc",
            input=qc_reports.collect().if_empty([]),
            outputs=[graph.channel("multiqc_report", ("multiqc_report",))],
            params={"search_dir": config.samples_dir},
            resources="light",
            ignore_errors=True,
            publish_dir="multiqc",
        )
    )

    graph.validate()
    logger.debug(f"Built pipeline with {len(graph.stages)} stages for {len(samples)} sample(s)")
    return graph


def run_pipeline(config: RunConfig, executor: StageExecutor | None = None) -> RunReport:
    """Load the manifest, build the pipeline, run it and write the run summary.

    Args:
        config: Resolved run configuration.
        executor: Stage executor; defaults to running the external commands.

    Returns:
        The run report.

    Raises:
        ManifestError: If the manifest is malformed; no stage runs.
    """
    samples = load_manifest(config.manifest, single_end=config.single_end)
    output_dir = check_output_directory(config.output_dir)

    logger.info(f"Run {config.run_name}: {len(samples)} sample(s), tools: {', '.join(sorted(config.tools)) or 'none'}")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("[cyan]Running stages...", total=None)

        def on_record(record: StageRecord) -> None:
            where = f" {record.key}" if record.key is not None else ""
            if record.state == StageState.SUCCEEDED:
                progress.console.print(f"  [green]Completed:[/green] {record.stage}{where}")
            elif record.state == StageState.FAILED:
                label = "[yellow]Ignored failure:[/yellow]" if record.ignored else "[red]Failed:[/red]"
                progress.console.print(f"  {label} {record.stage}{where} - {record.error}")
            progress.update(task, advance=1)

        graph = build_pipeline(config, samples, executor or CommandExecutor(), listener=on_record)
        report = graph.run()

    write_run_summary(report, output_dir)
    return report


def write_run_summary(report: RunReport, output_dir: Path) -> Path:
    """Write a summary TSV with one row per stage instance and print the outcome.

    Args:
        report: Report of the finished run.
        output_dir: Output directory for the summary file.

    Returns:
        Path to the summary file.
    """
    summary_file = output_dir / RUN_SUMMARY

    with summary_file.open("w") as f:
        f.write("stage\tsample\tstatus\tattempts\terror_message\n")

        for record in sorted(report.records, key=lambda r: (r.stage, r.key or "")):
            status = record.state.value.upper()
            if record.ignored:
                status += " (ignored)"
            error = (record.error or "").replace("\t", " ").replace("\n", " ")
            f.write(f"{record.stage}\t{record.key or ''}\t{status}\t{record.attempts}\t{error}\n")

    logger.info(f"Run summary written to {summary_file}")

    counts = {state: sum(1 for r in report.records if r.state == state) for state in StageState}
    style = {RunStatus.SUCCEEDED: "green", RunStatus.COMPLETED_WITH_ERRORS: "yellow", RunStatus.FAILED: "red"}[
        report.status
    ]

    console.print()
    console.print("[bold]Run Summary:[/bold]")
    console.print(f"  [{style}]Status:[/{style}] {report.status.value}")
    console.print(f"  [green]Succeeded:[/green] {counts[StageState.SUCCEEDED]}")
    console.print(f"  [red]Failed:[/red] {counts[StageState.FAILED]}")
    console.print(f"  [dim]Skipped:[/dim] {counts[StageState.SKIPPED]}")
    if report.failed_samples():
        console.print(f"  [red]Failed samples:[/red] {', '.join(report.failed_samples())}")
    if report.error:
        console.print(f"  [red]Error:[/red] {report.error}")
    console.print(f"  [blue]Summary file:[/blue] {summary_file}")
    return summary_file
