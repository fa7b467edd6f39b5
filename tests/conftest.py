"""Shared pytest fixtures for varflow tests."""

import shutil
import tempfile
import threading
from pathlib import Path

import pytest
from varflow.commands import COMMANDS, TASKS
from varflow.core.exceptions import StageExecutionError

CUTADAPT_LOG = """\
This is cutadapt 4.4 with Python 3.11.4
Command line parameters: -j 2 -a file:adapters.fa -A file:adapters.fa -o {id}_R1.fq.gz -p {id}_R2.fq.gz
Processing paired-end reads on 2 cores ...

=== Summary ===

Total read pairs processed:              {total:,}
  Read 1 with adapter:                     {adapter1:,} (12.0%)
  Read 2 with adapter:                     {adapter2:,} (11.0%)
Pairs written (passing filters):         {written:,} (99.0%)

Total basepairs processed:       {total_bp:,} bp
  Read 1:       {half_bp:,} bp
  Read 2:       {half_bp:,} bp
Total written (filtered):        {written_bp:,} bp (97.0%)
  Read 1:       {half_written_bp:,} bp
  Read 2:       {half_written_bp:,} bp
"""

FLAGSTAT = """\
{total} + 0 in total (QC-passed reads + QC-failed reads)
{total} + 0 primary
0 + 0 secondary
0 + 0 supplementary
{duplicates} + 0 duplicates
{duplicates} + 0 primary duplicates
{mapped} + 0 mapped (99.00% : N/A)
{mapped} + 0 primary mapped (99.00% : N/A)
{total} + 0 paired in sequencing
{half} + 0 read1
{half} + 0 read2
{paired} + 0 properly paired (90.00% : N/A)
{mapped} + 0 with itself and mate mapped
0 + 0 singletons (0.00% : N/A)
0 + 0 with mate mapped to a different chr
0 + 0 with mate mapped to a different chr (mapQ>=5)
"""

VCF = """\
##fileformat=VCFv4.2
##INFO=<ID=DP,Number=1,Type=Integer,Description="Raw Depth">
##INFO=<ID=AF,Number=1,Type=Float,Description="Allele Frequency">
##INFO=<ID=SB,Number=1,Type=Integer,Description="Phred-scaled strand bias at this position">
##contig=<ID=MN908947.3,length=29903>
#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO
MN908947.3\t241\t.\tC\tT\t500\tPASS\tDP=1000;AF=0.99;SB=0
MN908947.3\t3037\t.\tC\tT\t480\tPASS\tDP=950;AF=0.98;SB=3
"""

IVAR_TSV = (
    "REGION\tPOS\tREF\tALT\tREF_DP\tREF_RV\tREF_QUAL\tALT_DP\tALT_RV\tALT_QUAL\tALT_FREQ\tTOTAL_DP\tPVAL\tPASS\n"
    "MN908947.3\t241\tC\tT\t2\t1\t35\t998\t500\t36\t0.99\t1000\t0\tTRUE\n"
)


def cutadapt_log(sample_id: str, total: int = 1000) -> str:
    return CUTADAPT_LOG.format(
        id=sample_id,
        total=total,
        adapter1=total * 12 // 100,
        adapter2=total * 11 // 100,
        written=total * 99 // 100,
        total_bp=total * 300,
        half_bp=total * 150,
        written_bp=total * 291,
        half_written_bp=total * 291 // 2,
    )


def flagstat(total: int = 2000) -> str:
    return FLAGSTAT.format(
        total=total,
        half=total // 2,
        mapped=total * 99 // 100,
        paired=total * 90 // 100,
        duplicates=total // 100,
    )


class FakeExecutor:
    """Stage executor that writes plausible outputs instead of running tools.

    Declared outputs come from the real command builders, so paths match a
    real run. In-process tasks run for real on the fake caller output.

    Args:
        fail: Stage names, or ``(stage, sample_id)`` pairs, that raise
            :class:`StageExecutionError`.
        flaky: ``(stage, sample_id)`` pairs that fail on their first attempt only.
    """

    def __init__(self, fail=(), flaky=()):
        self.fail = set(fail)
        self.flaky = set(flaky)
        self.calls: list[tuple[str, str | None]] = []
        self._lock = threading.Lock()

    def stages_run(self, sample_id=None) -> list[str]:
        return [stage for stage, key in self.calls if sample_id is None or key == sample_id]

    def execute(self, stage_name, inputs, work_dir):
        sample_id = inputs.get("id")
        with self._lock:
            self.calls.append((stage_name, sample_id))
            flaky = (stage_name, sample_id) in self.flaky
            self.flaky.discard((stage_name, sample_id))

        if stage_name in self.fail or (stage_name, sample_id) in self.fail or flaky:
            raise StageExecutionError(stage_name, f"{stage_name} failed", exit_code=1, stderr_excerpt="simulated")

        if stage_name in TASKS:
            return TASKS[stage_name](inputs, work_dir)

        command = COMMANDS[stage_name](inputs, work_dir)
        for name, path in command.outputs.items():
            if path is None:
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            if name == "cutadapt_log":
                path.write_text(cutadapt_log(sample_id))
            elif name == "flagstat":
                path.write_text(flagstat())
            elif name == "vcf":
                path.write_text(VCF)
            elif name == "ivar_tsv":
                path.write_text(IVAR_TSV)
            else:
                path.write_text(f"{stage_name} output for {sample_id}\n")
        return command.outputs


@pytest.fixture
def temp_output_dir():
    """Create a temporary directory for test outputs."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir).resolve()
    shutil.rmtree(tmpdir)


@pytest.fixture
def make_fastq(temp_output_dir):
    """Create empty FASTQ files in the temporary directory."""

    def _make(name: str) -> Path:
        path = temp_output_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")
        return path

    return _make


@pytest.fixture
def write_manifest(temp_output_dir):
    """Write manifest rows (lists of columns) as a tab-separated file."""

    def _write(rows, name: str = "samples.tsv") -> Path:
        path = temp_output_dir / name
        lines = [row if isinstance(row, str) else "\t".join(row) for row in rows]
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write


@pytest.fixture
def run_inputs(temp_output_dir, make_fastq, write_manifest):
    """Reference, adapters and a two-sample paired-end manifest."""
    reference = temp_output_dir / "reference.fa"
    reference.write_text(">MN908947.3\nACGTACGTACGT\n")
    adapters = temp_output_dir / "adapters.fa"
    adapters.write_text(">nextera\nCTGTCTCTTATACACATCT\n")

    rows = []
    for sample_id in ("s1", "s2"):
        make_fastq(f"reads/{sample_id}_R1.fastq.gz")
        make_fastq(f"reads/{sample_id}_R2.fastq.gz")
        rows.append([sample_id, "ok", f"reads/{sample_id}_R1.fastq.gz", f"reads/{sample_id}_R2.fastq.gz"])
    manifest = write_manifest(rows)

    return {
        "manifest": manifest,
        "reference": reference,
        "adapters": adapters,
        "output_dir": temp_output_dir / "results",
    }


@pytest.fixture
def fake_executor():
    """Factory for :class:`FakeExecutor` instances."""
    return FakeExecutor


@pytest.fixture
def cutadapt_report():
    """Factory rendering a paired-end cutadapt report for a sample."""
    return cutadapt_log


@pytest.fixture
def flagstat_report():
    """Factory rendering ``samtools flagstat`` output."""
    return flagstat
