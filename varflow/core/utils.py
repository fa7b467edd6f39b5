#!/usr/bin/env python3
"""Utility functions shared across varflow modules."""

import shutil
from pathlib import Path

from varflow.core.constants import FASTQ_SUFFIXES, STDERR_EXCERPT_LINES


def is_tool(name: str) -> bool:
    """Check if a command-line tool is available in PATH.

    Args:
        name: Name of the tool to check.

    Returns:
        True if the tool is available, False otherwise.
    """
    return shutil.which(name) is not None


def check_output_directory(outdir: str | Path) -> Path:
    """Check if outdir exists, otherwise create it.

    Args:
        outdir: Path to the output directory.

    Returns:
        The output directory path.
    """
    outdir_path = Path(outdir)
    outdir_path.mkdir(parents=True, exist_ok=True)
    return outdir_path


def fastq_suffix(path: str | Path) -> str | None:
    """Return the recognized FASTQ suffix of a path, or None."""
    name = Path(path).name.lower()
    for suffix in FASTQ_SUFFIXES:
        if name.endswith(suffix):
            return suffix
    return None


def stderr_excerpt(stderr: str | bytes | None, max_lines: int = STDERR_EXCERPT_LINES) -> str:
    """Keep the trailing non-empty lines of a tool's stderr."""
    if not stderr:
        return ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    lines = [line for line in stderr.strip().splitlines() if line.strip()]
    return "\n".join(lines[-max_lines:])
