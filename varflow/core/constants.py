#!/usr/bin/env python3
"""Constants and type aliases used throughout the varflow package."""

from typing import Any, TypeAlias

# =============================================================================
# Type Aliases
# =============================================================================
ToolSet: TypeAlias = frozenset[str]
Element: TypeAlias = tuple[Any, ...]

# =============================================================================
# Tool Registry
# =============================================================================
TOOL_REGISTRY: ToolSet = frozenset({"lofreq", "ivar", "snpeff"})
"""Variant-calling tools that can be selected on the command line."""

DEFAULT_TOOLS = "lofreq"

# =============================================================================
# Manifest
# =============================================================================
MANIFEST_DELIMITER = "\t"

MANIFEST_ID_COLUMN = 0
MANIFEST_READ1_COLUMN = 2
MANIFEST_READ2_COLUMN = 3

PAIRED_END_COLUMNS = 4
"""Paired-end rows carry sample id, status, read1 and read2."""

SINGLE_END_COLUMNS = 3

FASTQ_SUFFIXES = (".fastq.gz", ".fq.gz", ".fastq", ".fq")
"""Recognized read file extensions. Paired-end files must use one of these."""

# =============================================================================
# Channels
# =============================================================================
KEY_FIELD = "id"
"""Field used to key per-sample elements and to join channels."""

# =============================================================================
# Resources
# =============================================================================
RESOURCE_CLASSES = {
    "heavy": 2,
    "medium": 4,
    "light": 8,
}
"""Default maximum number of concurrent instances per stage resource class."""

# =============================================================================
# Output Names
# =============================================================================
SAMPLES_DIR = "samples"
REFERENCE_DIR = "reference"
TRIMMING_SUMMARY = "trimming-summary.csv"
ALIGNMENT_SUMMARY = "alignment-summary.csv"
RUN_SUMMARY = "run_summary.tsv"

CUTADAPT_LOG_SUFFIX = ".cutadapt.log"
FLAGSTAT_SUFFIX = ".flagstat"
VARIANTS_SUFFIX = "-variants.csv"
CONSENSUS_SUFFIX = ".consensus.fasta"
DEPTH_SUFFIX = ".samtools.depth"

STDERR_EXCERPT_LINES = 20
"""Number of trailing stderr lines kept on a failed stage."""
