"""Rich rendering of execution events and results for the terminal."""

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .events import EventType, ExecutionEvent
from .executor import ExecutionResult
from .validation import ExecutionPlan

_STATUS_STYLES = {
    "pending": "[dim]○[/dim]",
    "running": "[yellow]▶[/yellow]",
    "completed": "[green]✓[/green]",
    "error": "[red]✗[/red]",
}


class ConsoleReporter:
    """Prints one line per lifecycle event."""

    def __init__(self, console: Console | None = None, show_pending: bool = False):
        self.console = console or Console()
        self.show_pending = show_pending

    def __call__(self, event: ExecutionEvent) -> None:
        self.render(event)

    def render(self, event: ExecutionEvent) -> None:
        data = event.data

        if event.type == EventType.STARTED:
            ids = ", ".join(data["ids"]) or "(none)"
            self.console.print(f"[bold blue]Started[/bold blue] {data['totalSteps']} steps → {ids}")

        elif event.type == EventType.STEP:
            status = data["status"]
            if status == "pending" and not self.show_pending:
                return
            line = f"  {_STATUS_STYLES.get(status, status)} {data['stepId']} [dim]{status}[/dim]"
            if status == "completed":
                if "location" in data:
                    line += f" → {data['location']}"
                elif "content" in data:
                    line += f" [dim]{_truncate(data['content'])}[/dim]"
            elif status == "error":
                line += f" [red]{data.get('error', '')}[/red]"
            self.console.print(line)

        elif event.type == EventType.COMPLETED:
            self.console.print(f"[green]✓ Completed[/green] images: {', '.join(data['imageIds']) or '(none)'}")

        elif event.type == EventType.ERROR:
            retry = " (retryable)" if data.get("retryable") else ""
            self.console.print(f"[red]✗ {data.get('errorCode', 'ERROR')}[/red] {data['error']}{retry}")


def _truncate(text: Any, limit: int = 60) -> str:
    text = str(text).replace("\n", " ")
    return text[:limit] + "..." if len(text) > limit else text


def print_plan(plan: ExecutionPlan, console: Console) -> None:
    """Show the validated step list."""
    from .spec_parser import describe_step

    table = Table(title=f"Pipeline: {plan.name}")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Kind", style="cyan")
    table.add_column("Step")
    table.add_column("Event ids", style="magenta")

    for planned in plan.steps:
        table.add_row(
            str(planned.index),
            planned.step.kind.value,
            describe_step(planned.step),
            ", ".join(unit.unit_id for unit in planned.units),
        )

    console.print(table)
    if plan.initial_names:
        console.print(f"Initial variables: {', '.join(sorted(plan.initial_names))}")
    if plan.concurrency:
        console.print(f"Concurrency: {plan.concurrency}")


def print_result(result: ExecutionResult, console: Console) -> None:
    """Summarize an execution result."""
    border = "green" if result.success else "red"
    lines = [
        f"Status: [bold]{result.status.value}[/bold]",
        f"Duration: {result.duration_ms}ms",
        f"Images: {', '.join(result.image_ids) or '(none)'}",
    ]
    if result.data_outputs:
        lines.append(f"Data: {', '.join(result.data_outputs)}")
    for step_id, saved in result.saves.items():
        lines.append(f"Saved {step_id}: {saved.location} ({saved.size} bytes)")
    if result.error is not None:
        lines.append(f"[red]{result.error.code}: {result.error.message}[/red]")
    console.print(Panel("\n".join(lines), title=result.pipeline, border_style=border))

    if result.usage_events:
        table = Table(title="Usage")
        table.add_column("Step", style="cyan")
        table.add_column("Provider")
        table.add_column("Model")
        table.add_column("Units", justify="right")
        table.add_column("Cost (USD)", justify="right")
        for usage in result.usage_events:
            table.add_row(
                usage.step_id,
                usage.provider,
                usage.model or "",
                f"{usage.units} {usage.unit_type or ''}".strip() if usage.units is not None else "",
                f"{usage.cost_usd:.4f}" if usage.cost_usd is not None else "",
            )
        console.print(table)
