#!/usr/bin/env python3
"""Sample manifest parsing.

The manifest is a tab-separated file without a header, one sample per row:

    sample_id  <status>  read1  [read2]

Column 1 is carried along but unused. Paired-end runs require exactly four
columns with both reads present; single-end runs take three columns and
have no read2. Relative read paths are resolved against the manifest's
directory.
"""

from collections.abc import Iterator
from pathlib import Path

from pydantic import ValidationError

from varflow.core.constants import (
    MANIFEST_DELIMITER,
    MANIFEST_ID_COLUMN,
    MANIFEST_READ1_COLUMN,
    MANIFEST_READ2_COLUMN,
    PAIRED_END_COLUMNS,
    SINGLE_END_COLUMNS,
)
from varflow.core.exceptions import ManifestError
from varflow.core.logging_config import get_logger
from varflow.core.utils import fastq_suffix
from varflow.models.models import SampleRecord

logger = get_logger(__name__)


def _validation_message(error: ValidationError) -> str:
    return "; ".join(str(e["msg"]).removeprefix("Value error, ") for e in error.errors())


class ManifestLoader:
    """Parse a sample manifest into validated :class:`SampleRecord` objects.

    Iterating the loader parses rows lazily; :meth:`load` reads the whole
    manifest and is what the pipeline uses, so that any bad row fails the
    run before a single stage is scheduled.

    Args:
        path: Path to the manifest.
        single_end: Parse rows as single-end (no read2 column).
        delimiter: Column delimiter.
    """

    def __init__(self, path: Path | str, single_end: bool = False, delimiter: str = MANIFEST_DELIMITER):
        self.path = Path(path).expanduser().resolve()
        self.single_end = single_end
        self.delimiter = delimiter

    def _resolve_path(self, path_str: str) -> Path:
        """Resolve a path, making it relative to the manifest directory if not absolute."""
        path = Path(path_str)
        if not path.is_absolute():
            path = self.path.parent / path
        return path.resolve()

    def __iter__(self) -> Iterator[SampleRecord]:
        if not self.path.is_file():
            raise ManifestError(f"Manifest not found: {self.path}")

        seen: set[str] = set()
        with self.path.open(newline="") as f:
            for line_number, line in enumerate(f, start=1):
                row = line.rstrip("\r\n")
                if not row.strip() or row.lstrip().startswith("#"):
                    continue
                record = self._parse_row(row, line_number)
                if record.id in seen:
                    raise ManifestError(f"Duplicate sample id {record.id}", row, line_number)
                seen.add(record.id)
                yield record

    def _parse_row(self, row: str, line_number: int) -> SampleRecord:
        columns = [column.strip() for column in row.split(self.delimiter)]
        if len(columns) < SINGLE_END_COLUMNS:
            raise ManifestError(
                f"Expected at least {SINGLE_END_COLUMNS} columns, found {len(columns)}", row, line_number
            )

        sample_id = columns[MANIFEST_ID_COLUMN]
        if not sample_id:
            raise ManifestError("Sample id cannot be empty", row, line_number)
        if not columns[MANIFEST_READ1_COLUMN]:
            raise ManifestError(f"Sample {sample_id} has no read1 file", row, line_number)
        read1 = self._resolve_path(columns[MANIFEST_READ1_COLUMN])

        read2: Path | None = None
        if self.single_end:
            if any(columns[MANIFEST_READ2_COLUMN:]):
                raise ManifestError(f"Single-end sample {sample_id} lists a second read file", row, line_number)
            if fastq_suffix(read1) is None:
                logger.warning(f"Line {line_number}: {read1.name} does not have a recognized FASTQ extension")
        else:
            if len(columns) != PAIRED_END_COLUMNS or not columns[MANIFEST_READ2_COLUMN]:
                raise ManifestError(
                    f"Paired-end sample {sample_id} needs exactly {PAIRED_END_COLUMNS} columns with both reads",
                    row,
                    line_number,
                )
            read2 = self._resolve_path(columns[MANIFEST_READ2_COLUMN])
            for read in (read1, read2):
                if fastq_suffix(read) is None:
                    raise ManifestError(
                        f"{read.name} does not have a recognized paired-read extension", row, line_number
                    )

        try:
            return SampleRecord(id=sample_id, read1=read1, read2=read2)
        except ValidationError as e:
            raise ManifestError(_validation_message(e), row, line_number) from None

    def load(self) -> list[SampleRecord]:
        """Parse and validate every row.

        Raises:
            ManifestError: On the first malformed row, missing file or
                duplicate id, or if the manifest lists no samples.
        """
        records = list(self)
        if not records:
            raise ManifestError(f"Manifest {self.path} lists no samples")
        logger.info(f"Loaded {len(records)} sample(s) from {self.path}")
        return records


def load_manifest(path: Path | str, single_end: bool = False) -> list[SampleRecord]:
    """Load and validate a manifest; see :class:`ManifestLoader`."""
    return ManifestLoader(path, single_end=single_end).load()
