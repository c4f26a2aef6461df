"""Output command for showing resource outputs recorded in state."""

import json
import sys

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from ..config.parser import Config, ConfigValidationError
from ..state.manager import StateManager
from ..state.models import Snapshot
from ..utils.errors import DeploymentError
from ..utils.logging import get_logger

logger = get_logger(__name__)
console = Console()


@click.command()
@click.option('--resource', 'resource_id', help='Only show outputs of this resource')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json', 'env']), default='table', help='Output format')
@click.option('--output-name', help='Show a single value, as <type>.<name>.<attribute>')
@click.pass_context
def output(ctx, resource_id: str, output_format: str, output_name: str):
    """Show resource outputs (physical ids, ARNs, endpoints)."""
    config_path = ctx.obj['config_path']
    try:
        config = Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Declaration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print(str(e), markup=False)
        sys.exit(1)

    state_manager = StateManager(str(config.get_state_path()))
    if not state_manager.exists():
        console.print(f"[red]Error:[/red] No state found for project '{config.project.name}'")
        console.print("[dim]Have you applied this declaration yet?[/dim]")
        sys.exit(1)

    try:
        snapshot = state_manager.load()
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)

    outputs = collect_outputs(snapshot, resource_id)

    if output_name:
        if output_name not in outputs:
            console.print(f"[red]Output '{output_name}' not found[/red]")
            sys.exit(1)
        value = outputs[output_name]
        click.echo(value if isinstance(value, str) else json.dumps(value))
        return

    if not outputs:
        console.print("[dim]No outputs found[/dim]")
        return

    if output_format == 'table':
        _output_table(outputs, config.project.name)
    elif output_format == 'json':
        click.echo(json.dumps(outputs, indent=2, sort_keys=True))
    elif output_format == 'env':
        _output_env(outputs)


def collect_outputs(snapshot: Snapshot, resource_filter: str = None) -> dict:
    """Every referenceable provider value, keyed '<type>.<name>.<attribute>'."""
    outputs = {}
    for resource in snapshot.list_resources():
        if resource_filter and resource.id != resource_filter:
            continue
        outputs[f'{resource.id}.id'] = resource.physical_id
        for key, value in resource.outputs.items():
            outputs[f'{resource.id}.{key}'] = value
    return outputs


def _output_table(outputs: dict, project_name: str):
    """Output in table format."""
    console.print(Panel(f"Resource Outputs - Project: {project_name}", style="bold blue"))
    console.print()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Output Name", style="cyan")
    table.add_column("Value", style="white")

    for name, value in sorted(outputs.items()):
        table.add_row(name, value if isinstance(value, str) else json.dumps(value))

    console.print(table)


def _output_env(outputs: dict):
    """Output in environment variable format."""
    for name, value in sorted(outputs.items()):
        env_name = name.upper().replace('-', '_').replace('.', '_')
        shown = value if isinstance(value, str) else json.dumps(value)
        click.echo(f'export {env_name}="{shown}"')
