"""Unit tests for varflow.cli module."""

import pytest
from rich.console import Console
from typer.testing import CliRunner
from varflow import cli
from varflow.version import __version__

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Render tables without truncating stage names."""
    monkeypatch.setattr(cli, "console", Console(width=200))


def _run_args(run_inputs, *extra):
    return [
        "run",
        "-m",
        str(run_inputs["manifest"]),
        "-r",
        str(run_inputs["reference"]),
        "-a",
        str(run_inputs["adapters"]),
        "-o",
        str(run_inputs["output_dir"]),
        *extra,
    ]


class TestCli:
    """Tests for the typer application."""

    def test_version(self):
        result = runner.invoke(cli.app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_tools(self):
        """Every registry tool is listed with the stages it gates."""
        result = runner.invoke(cli.app, ["tools"])

        assert result.exit_code == 0
        for tool in ("lofreq", "ivar", "snpeff"):
            assert tool in result.stdout
        assert "ivar_consensus" in result.stdout

    def test_graph(self):
        result = runner.invoke(cli.app, ["graph", "-t", "lofreq,ivar"])

        assert result.exit_code == 0
        assert "bwa_mem" in result.stdout
        assert "ivar selected" in result.stdout

    def test_graph_unknown_tool(self):
        result = runner.invoke(cli.app, ["graph", "-t", "gatk"])

        assert result.exit_code == 1
        assert "gatk" in result.stdout

    def test_validate(self, run_inputs):
        result = runner.invoke(cli.app, ["validate", "-m", str(run_inputs["manifest"])])

        assert result.exit_code == 0
        assert "Manifest OK" in result.stdout
        assert "s2" in result.stdout

    def test_validate_bad_manifest(self, run_inputs):
        """Single-end parsing of a paired manifest is rejected."""
        result = runner.invoke(cli.app, ["validate", "-m", str(run_inputs["manifest"]), "--single-end"])

        assert result.exit_code == 1
        assert "second read" in result.stdout

    def test_run_rejects_unknown_tool(self, run_inputs):
        """An unknown tool aborts before anything runs."""
        result = runner.invoke(cli.app, _run_args(run_inputs, "-t", "lofreq,gatk"))

        assert result.exit_code == 2
        assert "Unknown tool(s): gatk" in result.stdout
        assert not (run_inputs["output_dir"] / "samples").exists()

    def test_run_bad_max_forks(self, run_inputs):
        result = runner.invoke(cli.app, _run_args(run_inputs, "--max-forks", "bwa_mem"))
        assert result.exit_code != 0

    def test_run_succeeds(self, run_inputs, fake_executor, monkeypatch):
        monkeypatch.setattr("varflow.pipeline.CommandExecutor", fake_executor)

        result = runner.invoke(cli.app, _run_args(run_inputs, "--max-forks", "bwa_mem=1"))

        assert result.exit_code == 0, result.stdout
        assert (run_inputs["output_dir"] / "run_summary.tsv").is_file()
        assert list(run_inputs["output_dir"].glob("varflow_*.log"))

    def test_run_exits_non_zero_on_sample_failure(self, run_inputs, fake_executor, monkeypatch):
        monkeypatch.setattr("varflow.pipeline.CommandExecutor", lambda: fake_executor(fail={("bwa_mem", "s2")}))

        result = runner.invoke(cli.app, _run_args(run_inputs))

        assert result.exit_code == 1

    def test_run_with_relative_paths(self, run_inputs, temp_output_dir, fake_executor, monkeypatch):
        """The documented ``-o results/`` form writes under the working directory."""
        monkeypatch.setattr("varflow.pipeline.CommandExecutor", fake_executor)
        monkeypatch.chdir(temp_output_dir)

        result = runner.invoke(
            cli.app,
            ["run", "-m", "samples.tsv", "-r", "reference.fa", "-a", "adapters.fa", "-o", "results/"],
        )

        assert result.exit_code == 0, result.stdout
        sample_dir = temp_output_dir / "results" / "samples" / "s1"
        assert (sample_dir / "s1.lofreq-variants.csv").is_file()
        assert not (sample_dir / "results").exists()
