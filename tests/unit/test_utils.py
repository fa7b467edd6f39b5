"""Unit tests for varflow.core.utils module."""

from pathlib import Path

import pytest
from varflow.core.utils import check_output_directory, fastq_suffix, is_tool, stderr_excerpt


class TestIsTool:
    """Tests for is_tool function."""

    def test_existing_tool(self):
        """Test that common system tools are found."""
        assert is_tool("ls") is True

    def test_nonexistent_tool(self):
        """Test that nonexistent tools are not found."""
        assert is_tool("nonexistent_tool_xyz123") is False


class TestCheckOutputDirectory:
    """Tests for check_output_directory function."""

    def test_creates_nested_directory(self, temp_output_dir):
        outdir = temp_output_dir / "a" / "b"
        assert check_output_directory(outdir) == outdir
        assert outdir.is_dir()

    def test_existing_directory(self, temp_output_dir):
        assert check_output_directory(str(temp_output_dir)) == temp_output_dir


@pytest.mark.parametrize(
    "name,expected",
    [
        ("s1_R1.fastq.gz", ".fastq.gz"),
        ("s1_R1.FQ.GZ", ".fq.gz"),
        ("s1.fastq", ".fastq"),
        ("s1.fq", ".fq"),
        ("s1.bam", None),
        ("fastq.gz.txt", None),
    ],
)
def test_fastq_suffix(name, expected):
    assert fastq_suffix(Path("/data") / name) == expected


class TestStderrExcerpt:
    """Tests for stderr_excerpt function."""

    def test_keeps_trailing_lines(self):
        text = "\n".join(f"line {i}" for i in range(30))
        excerpt = stderr_excerpt(text, max_lines=3)
        assert excerpt == "line 27\nline 28\nline 29"

    def test_bytes_and_blank_lines(self):
        assert stderr_excerpt(b"\nerror: bad\n\n") == "error: bad"

    def test_empty(self):
        assert stderr_excerpt(None) == ""
