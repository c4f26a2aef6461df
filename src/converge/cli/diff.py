"""Plan rendering for the plan, apply and destroy commands."""

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.text import Text

from ..orchestrator.planner import AttributeChange, ChangeType, Plan, ResourceChange
from ..orchestrator.references import UNKNOWN
from ..utils.logging import get_logger

logger = get_logger(__name__)
console = Console()

SYMBOLS = {
    ChangeType.CREATE: ("+", "green"),
    ChangeType.UPDATE: ("~", "yellow"),
    ChangeType.REPLACE: ("-/+", "magenta"),
    ChangeType.DELETE: ("-", "red"),
}


def render_plan(plan: Plan, project_name: str, json_output: bool = False) -> None:
    """Print a plan as rich text or as JSON on stdout."""
    if json_output:
        _output_json(plan)
    else:
        _output_rich(plan, project_name)


def _output_json(plan: Plan):
    """Output the plan in JSON format.

    Written with click.echo so that the document is never re-wrapped.
    """
    click.echo(json.dumps(plan.to_dict(), indent=2, sort_keys=True))


def _output_rich(plan: Plan, project_name: str):
    """Output the plan in rich formatted text."""
    title = f"{'Destroy plan' if plan.destroy else 'Plan'} for project: {project_name}"
    console.print(Panel(title, style="bold blue"))
    console.print()

    summary = plan.get_summary()
    line = Text()
    line.append("Plan: ", style="bold")
    parts = [
        (summary["create"], "to add", "green"),
        (summary["update"], "to change", "yellow"),
        (summary["replace"], "to replace", "magenta"),
        (summary["delete"], "to destroy", "red"),
    ]
    for index, (count, label, style) in enumerate(parts):
        if index:
            line.append(", ")
        line.append(f"{count} {label}", style=style if count else "dim")
    console.print(line)
    console.print()

    if not plan.has_changes():
        console.print("[dim]No changes. Resources match the declaration.[/dim]")
        return

    for key, change in plan.changes.items():
        if change.change_type == ChangeType.NO_CHANGE:
            continue
        _print_change(key, change)

    table = Table(title="Execution order", show_header=True, header_style="bold")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Action", style="cyan")
    table.add_column("Provider", style="magenta")
    table.add_column("Waits for", style="dim")
    for number, action in enumerate(plan.actions, 1):
        table.add_row(str(number), action.describe(), action.provider, ", ".join(sorted(action.depends_on)))
    console.print(table)
    console.print()


def _print_change(key: str, change: ResourceChange) -> None:
    symbol, style = SYMBOLS[change.change_type]
    header = f"[{style}]{symbol} {key}[/{style}]"
    if change.deposed:
        header += " [dim](deposed object)[/dim]"
    if change.change_type == ChangeType.REPLACE:
        order = "create before destroy" if change.create_before_destroy else "destroy before create"
        header += f" [dim]({order})[/dim]"
    console.print(header)
    if change.reason:
        console.print(f"    [dim]{change.reason}[/dim]")

    if change.change_type == ChangeType.DELETE and change.prior is not None:
        console.print(f"    physical id: {change.prior.physical_id}")

    for attr in change.attribute_changes:
        console.print(f"    {_format_attribute(attr, change.change_type)}", markup=False, highlight=False)
    console.print()


def _format_attribute(attr: AttributeChange, change_type: ChangeType) -> str:
    after = _display(attr.display(attr.after))
    if change_type == ChangeType.CREATE:
        return f"{attr.name} = {after}"

    before = _display(attr.display(attr.before))
    suffix = "  # forces replacement" if attr.forces_replacement else ""
    return f"{attr.name}: {before} -> {after}{suffix}"


def _display(value: Any) -> str:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    if isinstance(value, str):
        return json.dumps(value)
    return str(value)
