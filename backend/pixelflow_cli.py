#!/usr/bin/env python3
"""
PixelFlow CLI - Command-line interface for image workflow pipelines.

Usage:
    pixelflow run pipeline.yaml                   # Run a pipeline
    pixelflow run pipeline.yaml -i photo=in.png   # ...with an initial variable
    pixelflow validate pipeline.yaml              # Validate without running
    pixelflow show pipeline.yaml                  # Show pipeline structure
    pixelflow providers                           # List registered providers
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

# Add backend to path
backend_path = Path(__file__).parent
if str(backend_path) not in sys.path:
    sys.path.insert(0, str(backend_path))

console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def load_variable(path: Path):
    """Load a file as an initial variable payload."""
    from pipeline.payloads import EXT_TO_MIME, DataBlob, ImageBlob

    suffix = path.suffix.lower().lstrip(".")
    source = f"file:{path.name}"
    if suffix == "json":
        return DataBlob.from_json(json.loads(path.read_text()), source=source)
    if suffix in ("txt", "md"):
        return DataBlob(data_type="text", content=path.read_text(), source=source)
    mime = EXT_TO_MIME.get(suffix)
    if mime is None:
        raise click.BadParameter(f"Unsupported input file type: {path.name}")

    width = height = None
    if mime != "image/svg+xml":
        from PIL import Image
        with Image.open(path) as img:
            width, height = img.size
    return ImageBlob(data=path.read_bytes(), mime=mime, width=width, height=height, source=source)


def parse_inputs(inputs: tuple[str, ...]) -> dict:
    """Parse repeated NAME=PATH options."""
    variables = {}
    for item in inputs:
        name, sep, file_path = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"Expected NAME=PATH, got '{item}'", param_hint="--input")
        path = Path(file_path)
        if not path.exists():
            raise click.BadParameter(f"File not found: {path}", param_hint="--input")
        variables[name] = load_variable(path)
    return variables


@click.group()
@click.version_option(version="0.1.0", prog_name="pixelflow")
@click.option("--env", "-e", "env_file", type=click.Path(), default=None,
              help="Path to .env file (can also set PIXELFLOW_ENV_FILE)")
def cli(env_file: str | None):
    """PixelFlow - Image Workflow Pipeline Runner"""
    if env_file:
        from app.config import reload_config
        reload_config(env_file)


@cli.command()
@click.argument("pipeline", type=click.Path(exists=True))
@click.option("--input", "-i", "inputs", multiple=True,
              help="Initial variable as NAME=PATH (repeatable)")
@click.option("--max-in-flight", "-j", type=int, default=None,
              help="Max concurrently running steps")
@click.option("--continue-on-error", is_flag=True,
              help="Keep running steps that don't depend on a failed one")
@click.option("--verbose", "-v", is_flag=True,
              help="Show detailed output")
def run(pipeline: str, inputs: tuple[str, ...], max_in_flight: int | None, continue_on_error: bool, verbose: bool):
    """Run a pipeline."""
    _setup_logging(verbose)

    from app.config import get_config
    from pipeline.console import ConsoleReporter, print_result
    from pipeline.errors import PixelFlowError
    from pipeline.executor import PipelineExecutor
    from pipeline.spec_parser import load_pipeline

    pipeline_path = Path(pipeline)
    config = get_config()
    settings = config.engine

    console.print()
    console.print(Panel(
        f"[bold]PixelFlow Pipeline Runner[/bold]\n\n"
        f"Pipeline: {pipeline_path.name}",
        border_style="blue"
    ))
    console.print()

    try:
        definition = load_pipeline(pipeline_path)
        variables = parse_inputs(inputs)
        executor = PipelineExecutor(
            max_in_flight=max_in_flight or settings.max_in_flight,
            event_queue_size=settings.event_queue_size,
            failure_policy="continue" if continue_on_error else settings.failure_policy,
            validate_params=settings.validate_params,
            include_previews=False,
        )
        stream = executor.stream(definition, variables)
    except PixelFlowError as e:
        console.print(f"[red]✗[/red] {e.message}")
        sys.exit(1)

    reporter = ConsoleReporter(console, show_pending=verbose)

    async def _consume():
        async for event in stream:
            reporter(event)
        return await stream.wait()

    result = asyncio.run(_consume())
    console.print()
    print_result(result, console)

    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("pipeline", type=click.Path(exists=True))
@click.option("--input", "-i", "inputs", multiple=True,
              help="Name of an initial variable the caller will supply (repeatable)")
def validate(pipeline: str, inputs: tuple[str, ...]):
    """Validate a pipeline file without running it."""
    from pipeline.errors import ValidationError
    from pipeline.spec_parser import load_pipeline
    from pipeline.validation import validate_pipeline

    try:
        definition = load_pipeline(Path(pipeline))
        # Accept NAME=PATH too, only the name matters here
        names = [item.partition("=")[0] for item in inputs]
        plan = validate_pipeline(definition, names)
    except ValidationError as e:
        console.print(f"[red]✗[/red] Validation failed: {e.message}")
        sys.exit(1)

    console.print(f"[green]✓[/green] Pipeline '{plan.name}' is valid")
    console.print()

    # Show summary
    table = Table(title="Pipeline Summary")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Name", plan.name)
    table.add_row("Steps", str(plan.total_steps))
    table.add_row("Produces", ", ".join(plan.produced_names) or "(nothing)")
    table.add_row("Saves", str(sum(1 for u in plan.units if u.output is None)))
    if plan.concurrency:
        table.add_row("Concurrency", str(plan.concurrency))

    console.print(table)


@cli.command()
@click.argument("pipeline", type=click.Path(exists=True))
@click.option("--input", "-i", "inputs", multiple=True,
              help="Name of an initial variable (repeatable)")
@click.option("--yaml", "as_yaml", is_flag=True, help="Print the normalized YAML document")
def show(pipeline: str, inputs: tuple[str, ...], as_yaml: bool):
    """Show pipeline structure and information."""
    from pipeline.console import print_plan
    from pipeline.errors import ValidationError
    from pipeline.spec_parser import export_yaml, load_pipeline
    from pipeline.validation import validate_pipeline

    try:
        definition = load_pipeline(Path(pipeline))
        if as_yaml:
            console.print(export_yaml(definition), end="")
            return
        plan = validate_pipeline(definition, [item.partition("=")[0] for item in inputs])
    except ValidationError as e:
        console.print(f"[red]✗[/red] {e.message}")
        sys.exit(1)

    console.print()
    print_plan(plan, console)


@cli.command()
def providers():
    """List registered capability providers."""
    from providers.registry import build_registry

    registry = build_registry()
    caps = registry.capabilities()

    table = Table(title="Capabilities")
    table.add_column("Kind", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Description")

    for kind, key in (
        ("generator", "generators"),
        ("save", "saveProviders"),
        ("vision", "visionProviders"),
        ("text", "textProviders"),
    ):
        for schema in caps[key]:
            table.add_row(kind, schema["name"], schema.get("description", ""))
    for schema in caps["transforms"]:
        table.add_row("transform", f"{schema['provider']}.{schema['name']}", schema.get("description", ""))

    console.print(table)


if __name__ == "__main__":
    cli()
