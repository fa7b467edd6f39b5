#!/usr/bin/env python3
"""Run-level summaries of per-sample trimming and alignment logs.

Each metric family pairs a log parser with the summary file it feeds. The
aggregator runs once, after every sample's log has been collected, and
writes one row per log in the order the logs were collected.
"""

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pandas as pd

from varflow.core.constants import (
    ALIGNMENT_SUMMARY,
    CUTADAPT_LOG_SUFFIX,
    FLAGSTAT_SUFFIX,
    TRIMMING_SUMMARY,
)
from varflow.core.exceptions import AggregationError
from varflow.core.logging_config import get_logger

logger = get_logger(__name__)


def _to_int(value: str) -> int:
    return int(value.replace(",", ""))


def _percent(part: int, total: int) -> float:
    return round(100.0 * part / total, 2) if total else 0.0


# =============================================================================
# Log parsers
# =============================================================================

_CUTADAPT_PATTERNS = {
    "total_reads": re.compile(r"^Total (?:read pairs|reads) processed:\s+([\d,]+)", re.MULTILINE),
    "read1_with_adapter": re.compile(r"^\s*(?:Read 1 with adapter|Reads with adapters):\s+([\d,]+)", re.MULTILINE),
    "read2_with_adapter": re.compile(r"^\s*Read 2 with adapter:\s+([\d,]+)", re.MULTILINE),
    "reads_written": re.compile(r"^(?:Pairs|Reads) written \(passing filters\):\s+([\d,]+)", re.MULTILINE),
    "total_bp": re.compile(r"^Total basepairs processed:\s+([\d,]+) bp", re.MULTILINE),
    "written_bp": re.compile(r"^Total written \(filtered\):\s+([\d,]+) bp", re.MULTILINE),
}
_CUTADAPT_OPTIONAL = {"read2_with_adapter"}


def parse_cutadapt_log(text: str) -> dict[str, Any]:
    """Extract read and base-pair counts from a cutadapt report.

    Handles both paired-end ("Total read pairs processed") and single-end
    ("Total reads processed") reports. ``read2_with_adapter`` is 0 for
    single-end reports.

    Raises:
        ValueError: If a required count is missing from the report.
    """
    values: dict[str, Any] = {}
    for field, pattern in _CUTADAPT_PATTERNS.items():
        match = pattern.search(text)
        if match is None:
            if field in _CUTADAPT_OPTIONAL:
                values[field] = 0
                continue
            raise ValueError(f"cutadapt report has no {field.replace('_', ' ')}")
        values[field] = _to_int(match.group(1))

    values["percent_written"] = _percent(values["reads_written"], values["total_reads"])
    values["percent_bp_written"] = _percent(values["written_bp"], values["total_bp"])
    return values


_FLAGSTAT_TOTAL = re.compile(r"^(\d+) \+ \d+ in total", re.MULTILINE)
_FLAGSTAT_MAPPED = re.compile(r"^(\d+) \+ \d+ mapped \(([\d.]+|N/A)\s*%?", re.MULTILINE)
_FLAGSTAT_PAIRED = re.compile(r"^(\d+) \+ \d+ properly paired \(([\d.]+|N/A)\s*%?", re.MULTILINE)
_FLAGSTAT_DUPLICATES = re.compile(r"^(\d+) \+ \d+ duplicates", re.MULTILINE)


def parse_flagstat(text: str) -> dict[str, Any]:
    """Extract QC-passed counts from ``samtools flagstat`` output.

    Raises:
        ValueError: If the total or mapped line is missing.
    """
    total = _FLAGSTAT_TOTAL.search(text)
    mapped = _FLAGSTAT_MAPPED.search(text)
    if total is None or mapped is None:
        raise ValueError("flagstat output has no total or mapped line")

    total_reads = int(total.group(1))
    mapped_reads = int(mapped.group(1))
    paired = _FLAGSTAT_PAIRED.search(text)
    duplicates = _FLAGSTAT_DUPLICATES.search(text)
    properly_paired = int(paired.group(1)) if paired else 0

    return {
        "total_reads": total_reads,
        "mapped_reads": mapped_reads,
        "percent_mapped": _percent(mapped_reads, total_reads),
        "properly_paired": properly_paired,
        "percent_properly_paired": _percent(properly_paired, total_reads),
        "duplicates": int(duplicates.group(1)) if duplicates else 0,
    }


# =============================================================================
# Aggregation
# =============================================================================


@dataclass(frozen=True)
class MetricFamily:
    """A kind of per-sample log and the run-level summary built from it.

    Attributes:
        tag: Family name, e.g. ``cutadapt``.
        suffix: File name suffix of the per-sample logs; stripping it yields the sample id.
        summary_name: File name of the run-level summary.
        log_field: Input name under which the collected logs arrive.
        summary_field: Output name under which the summary path is published.
        parser: Turns one log's text into a row of metrics.
        columns: Metric columns, in summary order.
    """

    tag: str
    suffix: str
    summary_name: str
    log_field: str
    summary_field: str
    parser: Callable[[str], dict[str, Any]]
    columns: tuple[str, ...]


FAMILIES = {
    "cutadapt": MetricFamily(
        tag="cutadapt",
        suffix=CUTADAPT_LOG_SUFFIX,
        summary_name=TRIMMING_SUMMARY,
        log_field="cutadapt_log",
        summary_field="trimming_summary",
        parser=parse_cutadapt_log,
        columns=(
            "total_reads",
            "read1_with_adapter",
            "read2_with_adapter",
            "reads_written",
            "percent_written",
            "total_bp",
            "written_bp",
            "percent_bp_written",
        ),
    ),
    "flagstat": MetricFamily(
        tag="flagstat",
        suffix=FLAGSTAT_SUFFIX,
        summary_name=ALIGNMENT_SUMMARY,
        log_field="flagstat",
        summary_field="alignment_summary",
        parser=parse_flagstat,
        columns=(
            "total_reads",
            "mapped_reads",
            "percent_mapped",
            "properly_paired",
            "percent_properly_paired",
            "duplicates",
        ),
    ),
}


class Aggregator:
    """Reduce the collected logs of one metric family to a summary CSV.

    The instance is callable with the stage action signature so it can be
    bound directly to a collecting stage.

    Args:
        family: Family tag (key of :data:`FAMILIES`) or a :class:`MetricFamily`.
    """

    def __init__(self, family: str | MetricFamily):
        if isinstance(family, str):
            if family not in FAMILIES:
                raise ValueError(f"Unknown metric family {family!r}; expected one of {sorted(FAMILIES)}")
            family = FAMILIES[family]
        self.family = family

    def __repr__(self) -> str:
        return f"Aggregator({self.family.tag!r})"

    def sample_id(self, log: Path) -> str:
        name = log.name
        if name.endswith(self.family.suffix):
            return name[: -len(self.family.suffix)]
        return log.stem

    def summarize(self, logs: Iterable[Path | str], output_dir: Path) -> Path:
        """Parse every log and write the summary.

        Rows keep the order of ``logs``. The summary is written to a
        temporary file and moved into place, so a failure never leaves a
        partial summary behind.

        Args:
            logs: Per-sample log files, already in summary order.
            output_dir: Directory receiving the summary.

        Returns:
            Path to the summary file.

        Raises:
            AggregationError: If a log is missing or cannot be parsed.
        """
        rows = []
        for log in map(Path, logs):
            if not log.is_file():
                raise AggregationError(f"{self.family.tag} log not found: {log}")
            try:
                metrics = self.family.parser(log.read_text())
            except (OSError, UnicodeDecodeError, ValueError) as e:
                raise AggregationError(f"Malformed {self.family.tag} log {log}: {e}") from e
            rows.append({"sample": self.sample_id(log), **metrics})

        df = pd.DataFrame(rows, columns=["sample", *self.family.columns])

        output_dir.mkdir(parents=True, exist_ok=True)
        summary = output_dir / self.family.summary_name
        tmp = summary.with_name(summary.name + ".tmp")
        df.to_csv(tmp, index=False)
        tmp.replace(summary)

        logger.info(f"Wrote {self.family.tag} summary for {len(df)} sample(s) to {summary}")
        return summary

    def __call__(self, inputs: Mapping[str, Any], work_dir: Path) -> dict[str, Path]:
        logs = inputs.get(self.family.log_field) or []
        return {self.family.summary_field: self.summarize(logs, work_dir)}
