#!/usr/bin/env python3
"""Command-line interface for varflow using Typer."""

from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from varflow.core.constants import DEFAULT_TOOLS, TOOL_REGISTRY
from varflow.core.exceptions import VarflowError
from varflow.core.logging_config import add_file_handler, get_log_path, get_logger, setup_logging
from varflow.version import __version__

app = typer.Typer(
    name="varflow",
    help="Variant-calling workflow for amplicon sequencing: trimming, alignment, calling and consensus.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
logger = get_logger("cli")

_state = {"log_level": "INFO"}


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold green]varflow[/bold green] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True, help="Show version and exit."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-V", help="Enable verbose output (DEBUG level)."),
    ] = False,
) -> None:
    """varflow - Data-driven variant-calling pipeline."""
    _state["log_level"] = "DEBUG" if verbose else "INFO"
    setup_logging(level=_state["log_level"])  # type: ignore


def parse_max_forks(values: Optional[list[str]]) -> dict[str, int]:
    """Parse ``stage=N`` overrides into a mapping."""
    limits: dict[str, int] = {}
    for value in values or []:
        stage, sep, limit = value.partition("=")
        if not sep or not stage.strip() or not limit.strip().isdigit():
            raise typer.BadParameter(f"Expected STAGE=N, got {value!r}", param_hint="--max-forks")
        limits[stage.strip()] = int(limit)
    return limits


def _fail(message: str, code: int = 1) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(code=code)


@app.command()
def run(
    manifest: Annotated[Path, typer.Option("-m", "--manifest", help="Tab-separated sample manifest.")],
    reference: Annotated[Path, typer.Option("-r", "--reference", help="Path to reference genome FASTA.")],
    adapters: Annotated[Path, typer.Option("-a", "--adapters", help="Adapter FASTA for cutadapt.")],
    output_dir: Annotated[Path, typer.Option("-o", "--output-dir", help="Output directory for the run.")],
    annotation: Annotated[
        Optional[Path], typer.Option("--annotation", help="snpEff database directory (required for snpeff).")
    ] = None,
    tools: Annotated[
        str, typer.Option("-t", "--tools", help=f"Comma-separated variant callers ({', '.join(sorted(TOOL_REGISTRY))}).")
    ] = DEFAULT_TOOLS,
    single_end: Annotated[bool, typer.Option("--single-end", help="Reads are single-end.")] = False,
    run_name: Annotated[Optional[str], typer.Option("-n", "--run-name", help="Name of the run.")] = None,
    threads: Annotated[int, typer.Option("-j", "--jobs", help="Stage instances running at once.")] = 4,
    task_threads: Annotated[int, typer.Option("--task-threads", help="Threads given to each external tool.")] = 2,
    fail_fast: Annotated[
        bool, typer.Option("--fail-fast/--keep-going", help="Abort the run on the first sample failure.")
    ] = False,
    retries: Annotated[int, typer.Option("--retries", help="Extra attempts for a failing stage instance.")] = 0,
    strict_joins: Annotated[
        bool,
        typer.Option("--strict-joins/--lenient-joins", help="Fail when a sample never reaches both sides of a join."),
    ] = True,
    max_forks: Annotated[
        Optional[list[str]], typer.Option("--max-forks", help="Per-stage concurrency limit as STAGE=N.")
    ] = None,
    monochrome: Annotated[bool, typer.Option("--monochrome-logs", help="Disable colored log output.")] = False,
) -> None:
    """Run the pipeline for every sample in the manifest.

    Exits with status 0 only if every stage instance succeeded (or was skipped).

    Examples:

        # lofreq only (default)
        varflow run -m samples.tsv -r ref.fa -a adapters.fa -o results/

        # lofreq and ivar, single-end reads
        varflow run -m samples.tsv -r ref.fa -a adapters.fa -o results/ -t lofreq,ivar --single-end
    """
    from varflow.models.models import RunConfig
    from varflow.pipeline import run_pipeline

    if monochrome:
        setup_logging(level=_state["log_level"], monochrome=True)  # type: ignore

    options = {
        "manifest": manifest,
        "reference": reference,
        "adapters": adapters,
        "output_dir": output_dir,
        "annotation": annotation,
        "tools": tools,
        "single_end": single_end,
        "threads": threads,
        "task_threads": task_threads,
        "fail_fast": fail_fast,
        "max_retries": retries,
        "strict_joins": strict_joins,
        "max_forks": parse_max_forks(max_forks),
        "monochrome_logs": monochrome,
    }
    if run_name:
        options["run_name"] = run_name

    try:
        config = RunConfig(**options)
    except ValidationError as e:
        _fail("; ".join(str(err["msg"]).removeprefix("Value error, ") for err in e.errors()), code=2)
    except VarflowError as e:
        _fail(str(e), code=2)

    # Set up file logging
    config.output_dir.mkdir(parents=True, exist_ok=True)
    log_path = get_log_path(config.output_dir)
    add_file_handler(log_path)
    logger.info(f"Logging to {log_path}")

    try:
        report = run_pipeline(config)
    except VarflowError as e:
        _fail(str(e))

    if not report.succeeded:
        raise typer.Exit(code=1)
    logger.info("Pipeline complete!")


@app.command()
def validate(
    manifest: Annotated[Path, typer.Option("-m", "--manifest", help="Tab-separated sample manifest.")],
    tools: Annotated[str, typer.Option("-t", "--tools", help="Comma-separated variant callers.")] = DEFAULT_TOOLS,
    single_end: Annotated[bool, typer.Option("--single-end", help="Reads are single-end.")] = False,
) -> None:
    """Check the manifest and tool selection without running anything."""
    from varflow.manifest import load_manifest
    from varflow.tools import select_tools

    try:
        selected = select_tools(tools)
        samples = load_manifest(manifest, single_end=single_end)
    except VarflowError as e:
        _fail(str(e))

    table = Table(title=f"{len(samples)} sample(s)")
    table.add_column("Sample", style="cyan")
    table.add_column("Read 1")
    table.add_column("Read 2")
    for sample in samples:
        table.add_row(sample.id, str(sample.read1), str(sample.read2) if sample.read2 else "-")
    console.print(table)
    console.print(f"[green]Manifest OK.[/green] Tools: {', '.join(sorted(selected)) or 'none'}")


def _describe(tools: str, single_end: bool = False) -> list[dict]:
    from varflow.executor import CommandExecutor
    from varflow.models.models import RunConfig
    from varflow.pipeline import build_pipeline
    from varflow.tools import select_tools

    config = RunConfig.model_construct(
        manifest=Path("manifest.tsv"),
        reference=Path("reference.fa"),
        adapters=Path("adapters.fa"),
        output_dir=Path("."),
        tools=select_tools(tools),
        single_end=single_end,
    )
    return build_pipeline(config, [], CommandExecutor()).describe()


@app.command()
def graph(
    tools: Annotated[str, typer.Option("-t", "--tools", help="Comma-separated variant callers.")] = DEFAULT_TOOLS,
) -> None:
    """Print the pipeline topology for a tool selection."""
    try:
        stages = _describe(tools)
    except VarflowError as e:
        _fail(str(e))

    table = Table(title="Pipeline stages")
    table.add_column("Stage", style="cyan")
    table.add_column("Inputs")
    table.add_column("Outputs")
    table.add_column("Upstream")
    table.add_column("Runs when")
    table.add_column("Active")
    table.add_column("Max forks", justify="right")
    for stage in stages:
        table.add_row(
            stage["stage"],
            ", ".join(stage["inputs"]) or "-",
            ", ".join(stage["outputs"]) or "-",
            ", ".join(stage["upstream"]) or "-",
            stage["activation"],
            "[green]yes[/green]" if stage["active"] else "[dim]no[/dim]",
            str(stage["max_forks"]),
        )
    console.print(table)


@app.command(name="tools")
def list_tools() -> None:
    """List the variant callers that can be selected with --tools."""
    stages = _describe(",".join(TOOL_REGISTRY))

    table = Table(title="Available tools")
    table.add_column("Tool", style="cyan")
    table.add_column("Stages")
    for tool in sorted(TOOL_REGISTRY):
        gated = [s["stage"] for s in stages if s["activation"] == f"{tool} selected"]
        table.add_row(tool, ", ".join(gated))
    console.print(table)


def main_cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main_cli()
