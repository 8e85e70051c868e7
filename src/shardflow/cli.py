# src/shardflow/cli.py
"""shardflow Command Line Interface.

Entry point for the shardflow CLI tool.
"""

from __future__ import annotations

import importlib
import json
from pathlib import Path
from typing import Literal

import typer
import yaml
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from shardflow import __version__
from shardflow.contracts import EmptyInputError, GraphConstructionError, PartitionDescriptor, RunStatus
from shardflow.core.config import RunSettings, load_settings, resolve_config
from shardflow.core.logging import configure_from_settings, configure_logging
from shardflow.core.partition import GenomicInterval, load_intervals
from shardflow.engine.gather import FileConcatMerger
from shardflow.engine.pipeline import ShardedCallsetPipeline, build_graph, plan_partitions
from shardflow.engine.scheduler import TaskExecutor

__all__ = [
    "app",
    "load_settings",  # Re-exported from config for convenience
]

app = typer.Typer(
    name="shardflow",
    help="shardflow: scatter-gather scheduling for sharded joint calling.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"shardflow version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # Existence is checked in _load_dotenv for a better message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """shardflow: scatter-gather scheduling for sharded joint calling."""
    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)
    # run reapplies logging from the settings file; these flags still win
    ctx.obj = {"verbose": verbose, "json_logs": json_logs}

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


def _format_validation_error(
    title: str,
    message: str,
    hint: str | None = None,
    details: list[str] | None = None,
) -> None:
    """Display a formatted validation error with optional hint and details."""
    from rich.console import Console
    from rich.panel import Panel
    from rich.text import Text

    console = Console(stderr=True)

    content = Text()
    content.append(message, style="white")

    if details:
        content.append("\n\n")
        for detail in details:
            content.append(f"  • {detail}\n", style="dim")

    if hint:
        content.append("\n")
        content.append("Hint: ", style="yellow bold")
        content.append(hint, style="yellow")

    panel = Panel(
        content,
        title=f"[red bold]{title}[/]",
        border_style="red",
        padding=(0, 1),
    )
    console.print(panel)


def _load_settings_or_exit(settings: Path) -> RunSettings:
    """Load settings, reporting any failure as a formatted error and exit code 1."""
    settings_path = settings.expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        _format_validation_error(
            title="YAML Syntax Error",
            message=f"Failed to parse {settings_path.name}",
            details=[str(e.problem)] if hasattr(e, "problem") else None,
            hint="Check for unclosed brackets, incorrect indentation, or invalid characters.",
        )
        raise typer.Exit(1) from None
    except FileNotFoundError:
        _format_validation_error(
            title="File Not Found",
            message=f"Settings file does not exist: {settings}",
            hint="Check the path and ensure the file exists.",
        )
        raise typer.Exit(1) from None
    except ValidationError as e:
        # Must precede any ValueError handler: ValidationError inherits from it
        details = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            details.append(f"{loc}: {error['msg']}")
        _format_validation_error(
            title="Configuration Validation Failed",
            message=f"Invalid settings in {settings_path.name}",
            details=details,
            hint="Check field names, types, and required values.",
        )
        raise typer.Exit(1) from None


def _load_intervals_or_exit(intervals: Path) -> list[GenomicInterval]:
    try:
        return load_intervals(intervals.expanduser())
    except FileNotFoundError:
        _format_validation_error(
            title="File Not Found",
            message=f"Interval file does not exist: {intervals}",
        )
        raise typer.Exit(1) from None
    except ValueError as e:
        _format_validation_error(
            title="Interval File Error",
            message=str(e),
            hint="Each line must be contig:start-end (1-based, inclusive).",
        )
        raise typer.Exit(1) from None


def _load_executor_factory(spec: str) -> TaskExecutor:
    """Instantiate a TaskExecutor from a 'module:factory' reference."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise typer.BadParameter(f"Expected 'module:factory', got {spec!r}", param_hint="--executor")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"Cannot import '{module_name}': {e}", param_hint="--executor") from e
    try:
        factory = getattr(module, attr)
    except AttributeError:
        raise typer.BadParameter(f"Module '{module_name}' has no attribute '{attr}'", param_hint="--executor") from None
    executor: TaskExecutor = factory()
    return executor


def _plan_or_exit(config: RunSettings, samples: int, units: list[GenomicInterval]) -> tuple[PartitionDescriptor, ...]:
    try:
        return plan_partitions(config, samples, units)
    except EmptyInputError as e:
        _format_validation_error(title="Empty Input", message=str(e), hint="The interval file has no intervals.")
        raise typer.Exit(1) from None


@app.command()
def validate(
    settings: Path = typer.Argument(..., help="Path to settings YAML file."),
) -> None:
    """Validate run configuration."""
    config = _load_settings_or_exit(settings)
    resolved = resolve_config(config)
    typer.echo("Configuration valid!")
    typer.echo(f"  Partition: scale_factor={config.partition.scale_factor}, min_count={config.partition.min_count}")
    typer.echo(f"  Genotyping: {'scattered' if config.branch.scatter_genotyping else 'flat'}")
    typer.echo(f"  Concurrency: {config.concurrency.max_concurrency}")
    typer.echo(f"  Retry budget: {config.retry.budget}")
    typer.echo(json.dumps(resolved, indent=2, sort_keys=True))


@app.command()
def plan(
    settings: Path = typer.Argument(..., help="Path to settings YAML file."),
    intervals: Path = typer.Option(..., "--intervals", "-i", help="Interval list, one contig:start-end per line."),
    samples: int = typer.Option(..., "--samples", "-n", min=0, help="Number of samples in the callset."),
    output_format: Literal["yaml", "text"] = typer.Option(
        "text",
        "--format",
        "-f",
        help="Output format: 'text' (summary) or 'yaml' (full plan).",
    ),
) -> None:
    """Print the partition plan."""
    config = _load_settings_or_exit(settings)
    units = _load_intervals_or_exit(intervals)
    descriptors = _plan_or_exit(config, samples, units)

    if output_format == "yaml":
        document = {
            "shard_count": len(descriptors),
            "shards": [{"index": d.shard_index, "units": [str(u) for u in d.units]} for d in descriptors],
        }
        typer.echo(yaml.safe_dump(document, sort_keys=False))
        return

    typer.echo(f"{len(descriptors)} shards over {len(units)} intervals")
    for descriptor in descriptors:
        total = sum(unit.length for unit in descriptor.units if isinstance(unit, GenomicInterval))
        typer.echo(f"  shard {descriptor.shard_index:05d}: {len(descriptor.units)} intervals, {total} bp")


@app.command()
def graph(
    settings: Path = typer.Argument(..., help="Path to settings YAML file."),
    intervals: Path = typer.Option(..., "--intervals", "-i", help="Interval list, one contig:start-end per line."),
    samples: int = typer.Option(..., "--samples", "-n", min=0, help="Number of samples in the callset."),
    as_json: bool = typer.Option(False, "--json", help="Print the full graph as JSON."),
) -> None:
    """Build the task graph and print node counts per task kind."""
    config = _load_settings_or_exit(settings)
    units = _load_intervals_or_exit(intervals)
    descriptors = _plan_or_exit(config, samples, units)
    try:
        task_graph = build_graph(config, descriptors)
    except GraphConstructionError as e:
        _format_validation_error(title="Task Graph Error", message=str(e))
        raise typer.Exit(1) from None

    if as_json:
        typer.echo(json.dumps(task_graph.to_dict(), indent=2))
        return

    branch = "scattered" if config.branch.scatter_genotyping else "flat"
    typer.echo(f"Graph: {task_graph.node_count} nodes, {task_graph.edge_count} edges ({branch} genotyping)")
    for kind, count in task_graph.count_by_kind().items():
        typer.echo(f"  {kind.value}: {count}")


@app.command()
def run(
    ctx: typer.Context,
    settings: Path = typer.Argument(..., help="Path to settings YAML file."),
    intervals: Path = typer.Option(..., "--intervals", "-i", help="Interval list, one contig:start-end per line."),
    samples: int = typer.Option(..., "--samples", "-n", min=0, help="Number of samples in the callset."),
    executor: str = typer.Option(..., "--executor", "-e", help="Executor factory as 'module:factory'."),
    output_dir: Path = typer.Option(Path("gathered"), "--output-dir", "-o", help="Directory for merged artifacts."),
) -> None:
    """Execute a run and report the gathered artifacts."""
    config = _load_settings_or_exit(settings)
    configure_from_settings(config.logging, **(ctx.obj or {}))
    units = _load_intervals_or_exit(intervals)
    tool_executor = _load_executor_factory(executor)
    pipeline = ShardedCallsetPipeline(config, tool_executor=tool_executor, merger=FileConcatMerger(output_dir))

    try:
        result = pipeline.run(samples, units)
    except EmptyInputError as e:
        _format_validation_error(title="Empty Input", message=str(e), hint="The interval file has no intervals.")
        raise typer.Exit(1) from None
    except GraphConstructionError as e:
        _format_validation_error(title="Task Graph Error", message=str(e))
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        pipeline.cancel()
        typer.secho("Run interrupted.", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(130) from None

    for kind, gathered in result.gathered.items():
        typer.echo(f"  {kind.value}: {gathered.artifact.uri} ({len(gathered.shard_indices)} shards)")

    if result.status != RunStatus.SUCCEEDED:
        typer.secho(
            f"Run {result.status.value}: failed shards {list(result.failed_shards)}",
            fg=typer.colors.RED,
            err=True,
        )
        for node_id in result.schedule.failed:
            typer.secho(f"  {node_id}: {result.schedule.records[node_id].error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.echo(f"Run succeeded: {len(result.partitions)} shards")


if __name__ == "__main__":
    app()
