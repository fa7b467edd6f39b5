from __future__ import annotations

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from varflow.core.constants import DEFAULT_TOOLS, SAMPLES_DIR
from varflow.tools import select_tools


def _default_run_name() -> str:
    return datetime.now().strftime("run_%Y%m%d_%H%M%S")


# =============================================================================
# Sample Models
# =============================================================================


class SampleRecord(BaseModel):
    """One sequencing sample from the manifest.

    Immutable once created. ``read2`` is present for paired-end runs and
    absent for single-end runs; the manifest loader enforces which applies.
    """

    id: str
    read1: Path
    read2: Path | None = None

    model_config = ConfigDict(frozen=True)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Sample id cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_files_exist(self) -> SampleRecord:
        """Validate that input files exist."""
        if not self.read1.is_file():
            raise ValueError(f"Read1 file not found for sample {self.id}: {self.read1}")
        if self.read2 is not None and not self.read2.is_file():
            raise ValueError(f"Read2 file not found for sample {self.id}: {self.read2}")
        return self

    @property
    def paired(self) -> bool:
        return self.read2 is not None

    def as_element(self) -> tuple[str, Path, Path | None]:
        """The sample as a ``(id, read1, read2)`` channel element."""
        return (self.id, self.read1, self.read2)


# =============================================================================
# Run Configuration
# =============================================================================


class RunConfig(BaseModel):
    """Run-wide settings, resolved once at startup and never mutated.

    ``tools`` accepts a comma-separated string and is resolved against the
    tool registry; unknown names raise :class:`ToolSelectionError`.
    """

    manifest: Path
    reference: Path
    adapters: Path
    output_dir: Path
    annotation: Path | None = None
    tools: frozenset[str] = Field(default=DEFAULT_TOOLS)
    single_end: bool = False
    run_name: str = Field(default_factory=_default_run_name)

    # Execution
    threads: int = Field(default=4, ge=1)
    task_threads: int = Field(default=2, ge=1)
    fail_fast: bool = False
    max_retries: int = Field(default=0, ge=0)
    strict_joins: bool = True
    max_forks: dict[str, int] = Field(default_factory=dict)

    # Output options
    monochrome_logs: bool = False

    model_config = ConfigDict(frozen=True, validate_default=True)

    @field_validator("manifest", "reference", "adapters", "output_dir", "annotation")
    @classmethod
    def resolve_path(cls, v: Path | None) -> Path | None:
        # Commands run inside per-sample work directories, so paths must not depend on the cwd
        return v.expanduser().resolve() if v is not None else None

    @field_validator("tools", mode="before")
    @classmethod
    def resolve_tools(cls, v: object) -> frozenset[str]:
        return select_tools(v)  # type: ignore[arg-type]

    @field_validator("max_forks")
    @classmethod
    def validate_max_forks(cls, v: dict[str, int]) -> dict[str, int]:
        for stage, limit in v.items():
            if limit < 1:
                raise ValueError(f"max_forks for {stage} must be at least 1, got {limit}")
        return v

    @model_validator(mode="after")
    def validate_inputs(self) -> RunConfig:
        """Validate that shared reference inputs exist."""
        if not self.reference.is_file():
            raise ValueError(f"Reference genome not found: {self.reference}")
        if not self.adapters.is_file():
            raise ValueError(f"Adapter FASTA not found: {self.adapters}")
        if self.annotation is not None and not self.annotation.exists():
            raise ValueError(f"Annotation not found: {self.annotation}")
        if "snpeff" in self.tools and self.annotation is None:
            raise ValueError("Tool snpeff requires an annotation database (--annotation)")
        return self

    @property
    def samples_dir(self) -> Path:
        return self.output_dir / SAMPLES_DIR
