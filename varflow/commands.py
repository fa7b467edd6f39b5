#!/usr/bin/env python3
"""External commands behind each pipeline stage.

Every builder takes the stage inputs and the instance's work directory and
returns a :class:`Command`: the command line, the file it redirects stdout
to (if any), the binaries it needs and the outputs it declares. Nothing is
run here; :class:`varflow.executor.CommandExecutor` runs the commands.

Variant tables are the exception: they are built in-process from the
caller's raw output (pysam for VCF, pandas for the ivar TSV).
"""

import shlex
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd
import pysam

from varflow.core.constants import CONSENSUS_SUFFIX, CUTADAPT_LOG_SUFFIX, DEPTH_SUFFIX, FLAGSTAT_SUFFIX, VARIANTS_SUFFIX
from varflow.core.logging_config import get_logger
from varflow.core.utils import fastq_suffix

logger = get_logger(__name__)

# Pileup settings shared by the ivar stages
MPILEUP_ARGS = ["samtools", "mpileup", "-aa", "-A", "-d", "0", "-B", "-Q", "0"]


@dataclass
class Command:
    """A command line and the outputs it is expected to produce.

    Attributes:
        args: Argument list, or a shell string for piped commands.
        outputs: Declared outputs by name; None marks an output that does not apply.
        stdout: File receiving the command's standard output.
        requires: Binaries that must be on PATH.
    """

    args: list[str] | str
    outputs: dict[str, Path | None]
    stdout: Path | None = None
    requires: tuple[str, ...] = field(default_factory=tuple)

    @property
    def shell(self) -> bool:
        return isinstance(self.args, str)

    @property
    def program(self) -> str:
        return self.requires[0] if self.requires else shlex.split(str(self.args))[0]

    def __str__(self) -> str:
        return self.args if isinstance(self.args, str) else shlex.join(self.args)


CommandBuilder = Callable[[Mapping[str, Any], Path], Command]
Task = Callable[[Mapping[str, Any], Path], dict[str, Any]]


def _shell(*commands: list[str]) -> str:
    return " && ".join(shlex.join(str(arg) for arg in command) for command in commands)


def _pipe(*commands: list[str]) -> str:
    return "set -o pipefail; " + " | ".join(shlex.join(str(arg) for arg in command) for command in commands)


def _read_stem(read: Path) -> str:
    suffix = fastq_suffix(read)
    return read.name[: -len(suffix)] if suffix else read.stem


# =============================================================================
# Quality control and trimming
# =============================================================================


def fastqc(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    reads = [inputs["read1"]] + ([inputs["read2"]] if inputs.get("read2") else [])
    args = ["fastqc", "-q", "-t", str(inputs.get("threads", 1)), "-o", str(work_dir), *map(str, reads)]
    report = work_dir / f"{_read_stem(Path(inputs['read1']))}_fastqc.zip"
    return Command(args, {"fastqc_report": report}, requires=("fastqc",))


def cutadapt(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    """Trim adapters; the report on stdout becomes the sample's cutadapt log."""
    sample_id = inputs["id"]
    adapters = f"file:{inputs['adapters']}"
    trimmed1 = work_dir / f"{sample_id}_trimmed_R1.fastq.gz"
    trimmed2 = work_dir / f"{sample_id}_trimmed_R2.fastq.gz" if inputs.get("read2") else None

    args = ["cutadapt", "-j", str(inputs.get("threads", 1)), "-a", adapters]
    if trimmed2 is not None:
        args += ["-A", adapters, "-o", str(trimmed1), "-p", str(trimmed2), str(inputs["read1"]), str(inputs["read2"])]
    else:
        args += ["-o", str(trimmed1), str(inputs["read1"])]

    log = work_dir / f"{sample_id}{CUTADAPT_LOG_SUFFIX}"
    outputs = {"trimmed1": trimmed1, "trimmed2": trimmed2, "cutadapt_log": log}
    return Command(args, outputs, stdout=log, requires=("cutadapt",))


# =============================================================================
# Alignment
# =============================================================================


def bwa_index(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    """Copy the reference into the run and index it for bwa and samtools."""
    reference = Path(inputs["reference"])
    local = work_dir / reference.name
    args = _shell(
        ["cp", reference, local],
        ["bwa", "index", local],
        ["samtools", "faidx", local],
    )
    return Command(args, {"reference_index": local}, requires=("bwa", "samtools"))


def bwa_mem(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    sample_id = inputs["id"]
    threads = str(inputs.get("threads", 1))
    bam = work_dir / f"{sample_id}.sorted.bam"
    reads = [inputs["trimmed1"]] + ([inputs["trimmed2"]] if inputs.get("trimmed2") else [])
    args = _pipe(
        ["bwa", "mem", "-t", threads, "-R", f"@RG\\tID:{sample_id}\\tSM:{sample_id}", inputs["reference_index"], *reads],
        ["samtools", "sort", "-@", threads, "-o", bam, "-"],
    )
    return Command(args, {"bam": bam}, requires=("bwa", "samtools"))


def lofreq_indelqual(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    bam = work_dir / f"{inputs['id']}.indelqual.bam"
    args = ["lofreq", "indelqual", "--dindel", "-f", str(inputs["reference_index"]), "-o", str(bam), str(inputs["bam"])]
    return Command(args, {"bam": bam}, requires=("lofreq",))


def samtools_index(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    """Index the BAM and write its flagstat, the per-sample alignment log."""
    bam = Path(inputs["bam"])
    flagstat = work_dir / f"{inputs['id']}{FLAGSTAT_SUFFIX}"
    args = _shell(["samtools", "index", bam], ["samtools", "flagstat", bam])
    return Command(args, {"bai": Path(f"{bam}.bai"), "flagstat": flagstat}, stdout=flagstat, requires=("samtools",))


def samtools_depth(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    depth = work_dir / f"{inputs['id']}{DEPTH_SUFFIX}"
    return Command(["samtools", "depth", "-a", str(inputs["bam"])], {"depth": depth}, stdout=depth, requires=("samtools",))


# =============================================================================
# Variant calling, consensus and annotation
# =============================================================================


def lofreq_call(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    vcf = work_dir / f"{inputs['id']}.lofreq.vcf"
    args = [
        "lofreq",
        "call-parallel",
        "--pp-threads",
        str(inputs.get("threads", 1)),
        "-f",
        str(inputs["reference_index"]),
        "-o",
        str(vcf),
        str(inputs["bam"]),
    ]
    return Command(args, {"vcf": vcf}, requires=("lofreq",))


def ivar_variants(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    prefix = work_dir / f"{inputs['id']}.ivar"
    reference = inputs["reference_index"]
    args = _pipe(
        [*MPILEUP_ARGS, "--reference", reference, inputs["bam"]],
        ["ivar", "variants", "-p", prefix, "-r", reference],
    )
    return Command(args, {"ivar_tsv": Path(f"{prefix}.tsv")}, requires=("samtools", "ivar"))


def lofreq_consensus(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    """Apply the lofreq calls to the reference with bcftools."""
    vcf_gz = work_dir / f"{Path(inputs['vcf']).name}.gz"
    consensus = work_dir / f"{inputs['id']}.lofreq{CONSENSUS_SUFFIX}"
    args = (
        shlex.join(["bgzip", "-c", str(inputs["vcf"])])
        + f" > {shlex.quote(str(vcf_gz))} && "
        + _shell(
            ["tabix", "-f", "-p", "vcf", vcf_gz],
            ["bcftools", "consensus", "-f", inputs["reference_index"], "-o", consensus, vcf_gz],
        )
    )
    return Command(args, {"consensus": consensus}, requires=("bgzip", "tabix", "bcftools"))


def ivar_consensus(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    prefix = work_dir / f"{inputs['id']}.ivar"
    consensus = work_dir / f"{inputs['id']}.ivar{CONSENSUS_SUFFIX}"
    args = (
        _pipe([*MPILEUP_ARGS, inputs["bam"]], ["ivar", "consensus", "-p", prefix])
        + " && "
        + _shell(["mv", f"{prefix}.fa", consensus])
    )
    return Command(args, {"consensus": consensus}, requires=("samtools", "ivar"))


def snpeff(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    """Annotate the lofreq calls; the annotation path names a snpEff database directory."""
    annotation = Path(inputs["annotation"])
    annotated = work_dir / f"{inputs['id']}.lofreq.snpeff.vcf"
    args = ["snpEff", "ann", "-noStats", "-dataDir", str(annotation.parent), annotation.name, str(inputs["vcf"])]
    return Command(args, {"annotated_vcf": annotated}, stdout=annotated, requires=("snpEff",))


def multiqc(inputs: Mapping[str, Any], work_dir: Path) -> Command:
    """Build the run report from every collected QC file.

    ``qc_reports`` holds ``(id, path)`` pairs; with none collected, MultiQC
    searches the search directory instead.
    """
    reports = [str(item[-1]) for item in inputs.get("qc_reports") or []]
    targets = reports or [str(inputs.get("search_dir", work_dir))]
    report = work_dir / "multiqc_report.html"
    args = ["multiqc", "-f", "-q", "-o", str(work_dir), *targets]
    return Command(args, {"multiqc_report": report}, requires=("multiqc",))


COMMANDS: dict[str, CommandBuilder] = {
    "fastqc": fastqc,
    "cutadapt": cutadapt,
    "bwa_index": bwa_index,
    "bwa_mem": bwa_mem,
    "lofreq_indelqual": lofreq_indelqual,
    "samtools_index": samtools_index,
    "samtools_depth": samtools_depth,
    "lofreq_call": lofreq_call,
    "ivar_variants": ivar_variants,
    "lofreq_consensus": lofreq_consensus,
    "ivar_consensus": ivar_consensus,
    "snpeff": snpeff,
    "multiqc": multiqc,
}


# =============================================================================
# In-process tasks
# =============================================================================

LOFREQ_COLUMNS = ["chrom", "pos", "ref", "alt", "qual", "filter", "depth", "allele_frequency", "strand_bias"]


def _info_value(info, key: str, declared: set[str]) -> Any:
    # pysam raises on INFO keys missing from the header
    return info.get(key) if key in declared else None


def lofreq_table(inputs: Mapping[str, Any], work_dir: Path) -> dict[str, Any]:
    """Flatten a lofreq VCF into a CSV with one row per alternate allele."""
    output = work_dir / f"{inputs['id']}.lofreq{VARIANTS_SUFFIX}"
    rows = []
    with pysam.VariantFile(str(inputs["vcf"])) as vcf:
        declared = set(vcf.header.info.keys())
        for record in vcf:
            info = record.info
            for alt in record.alts or ():
                rows.append(
                    {
                        "chrom": record.chrom,
                        "pos": record.pos,
                        "ref": record.ref,
                        "alt": alt,
                        "qual": record.qual,
                        "filter": ";".join(record.filter.keys()) or "PASS",
                        "depth": _info_value(info, "DP", declared),
                        "allele_frequency": _info_value(info, "AF", declared),
                        "strand_bias": _info_value(info, "SB", declared),
                    }
                )
    pd.DataFrame(rows, columns=LOFREQ_COLUMNS).to_csv(output, index=False)
    logger.debug(f"Wrote {len(rows)} lofreq variant(s) to {output}")
    return {"variants_csv": output}


IVAR_COLUMNS = {
    "REGION": "chrom",
    "POS": "pos",
    "REF": "ref",
    "ALT": "alt",
    "TOTAL_DP": "depth",
    "ALT_FREQ": "allele_frequency",
    "PASS": "pass",
}


def ivar_table(inputs: Mapping[str, Any], work_dir: Path) -> dict[str, Any]:
    """Select and rename the ivar variant columns into a CSV."""
    output = work_dir / f"{inputs['id']}.ivar{VARIANTS_SUFFIX}"
    df = pd.read_csv(inputs["ivar_tsv"], sep="\t")
    missing = [column for column in IVAR_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(f"ivar output {inputs['ivar_tsv']} lacks columns: {', '.join(missing)}")
    df = df[list(IVAR_COLUMNS)].rename(columns=IVAR_COLUMNS)
    df.to_csv(output, index=False)
    logger.debug(f"Wrote {len(df)} ivar variant(s) to {output}")
    return {"variants_csv": output}


TASKS: dict[str, Task] = {
    "lofreq_table": lofreq_table,
    "ivar_table": ivar_table,
}
