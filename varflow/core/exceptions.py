#!/usr/bin/env python3
"""Exception hierarchy for varflow.

Ingestion and tool-selection errors are raised before any stage runs. Stage
failures are recorded on the run report instead of being raised out of the
scheduler, unless the failure policy turns them into a fatal error.
"""

from __future__ import annotations


class VarflowError(Exception):
    """Base class for all varflow errors."""


class ManifestError(VarflowError):
    """Malformed manifest row, missing read file or wrong read extension."""

    def __init__(self, message: str, row: str | None = None, line_number: int | None = None):
        self.row = row
        self.line_number = line_number
        if row is not None:
            location = f"line {line_number}: " if line_number is not None else ""
            message = f"{message} ({location}{row!r})"
        super().__init__(message)


class ToolSelectionError(VarflowError):
    """One or more requested tools are not in the tool registry."""

    def __init__(self, unknown: list[str], registry: frozenset[str]):
        self.unknown = sorted(unknown)
        self.registry = registry
        super().__init__(
            f"Unknown tool(s): {', '.join(self.unknown)}. Available tools: {', '.join(sorted(registry))}"
        )


class StageExecutionError(VarflowError):
    """An external command exited non-zero or did not produce a declared output."""

    def __init__(
        self,
        stage: str,
        message: str,
        exit_code: int | None = None,
        stderr_excerpt: str = "",
        sample_id: str | None = None,
    ):
        self.stage = stage
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt
        self.sample_id = sample_id
        super().__init__(message)

    def __str__(self) -> str:
        text = super().__str__()
        if self.exit_code is not None:
            text = f"{text} (exit code {self.exit_code})"
        if self.stderr_excerpt:
            text = f"{text}: {self.stderr_excerpt}"
        return text


class AggregationError(VarflowError):
    """A per-sample log at an aggregation barrier is missing or malformed."""


class JoinStarvationError(VarflowError):
    """A keyed join finished with keys that never received a counterpart."""

    def __init__(self, channel: str, keys: list[str]):
        self.channel = channel
        self.keys = sorted(keys)
        super().__init__(f"Join {channel} has no matching counterpart for: {', '.join(self.keys)}")


class GraphError(VarflowError):
    """The stage/channel topology is inconsistent."""
