"""Main CLI entry point."""

import signal
import sys
import threading
from typing import Optional

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.table import Table
from rich.panel import Panel

from converge import __version__
from converge.cli.diff import render_plan
from converge.cli.graph import graph
from converge.cli.output import output
from converge.config.parser import Config, ConfigValidationError
from converge.orchestrator.dependency_graph import DependencyGraph
from converge.orchestrator.executor import ExecutionResult, ExecutionStatus
from converge.orchestrator.orchestrator import DeploymentOrchestrator
from converge.orchestrator.planner import Plan, PlannedAction, SENSITIVE_MASK
from converge.provisioners import CloudControlProvider, LocalProvider, ProviderRegistry
from converge.state.manager import StateManager
from converge.utils.aws_client import AWSClientManager
from converge.utils.errors import DeploymentError
from converge.utils.logging import setup_logging, get_logger
from converge.utils.retry import Poller

console = Console()
logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 2


@click.group()
@click.option('--config', 'config_path', default='converge.yaml', help='Path to the declaration file')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.version_option(__version__, prog_name='converge')
@click.pass_context
def cli(ctx, config_path, profile, region, log_level):
    """Declarative resource provisioning: plan, apply and destroy."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level

    setup_logging(log_level)


cli.add_command(graph)
cli.add_command(output)


def load_config(config_path: str = "converge.yaml") -> Config:
    """Load and validate the declaration, exiting with status 1 on failure."""
    try:
        return Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Declaration file not found: {config_path}")
        sys.exit(EXIT_ERROR)
    except ConfigValidationError as e:
        console.print("[red]Declaration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(EXIT_ERROR)


def build_registry(
    config: Config,
    profile: Optional[str] = None,
    region: Optional[str] = None
) -> ProviderRegistry:
    """Register the built-in providers and the declaration's type mappings."""
    settings = config.settings
    registry = ProviderRegistry(default_provider=settings.default_provider)
    registry.register(LocalProvider(str(config.get_local_store_path())))
    registry.register(CloudControlProvider(
        client_manager=AWSClientManager(
            profile=profile or settings.aws_profile,
            region=region or settings.aws_region
        ),
        type_names=settings.cloudcontrol_type_names,
        poller=Poller(
            max_attempts=settings.poll_max_attempts,
            base_delay=settings.poll_base_delay,
            max_delay=settings.poll_max_delay
        )
    ))
    for pattern, provider_name in settings.providers.items():
        registry.map_type(pattern, provider_name)
    return registry


def create_orchestrator(ctx, config: Config) -> DeploymentOrchestrator:
    """Create the orchestrator with its state manager and providers."""
    state_manager = StateManager(str(config.get_state_path()))
    registry = build_registry(config, ctx.obj.get('profile'), ctx.obj.get('region'))
    return DeploymentOrchestrator(
        config=config,
        state_manager=state_manager,
        registry=registry
    )


def exit_code_for(result: ExecutionResult) -> int:
    """Map an execution outcome to the process exit status."""
    if result.status == ExecutionStatus.SUCCESS:
        return EXIT_SUCCESS
    if result.status == ExecutionStatus.PARTIAL:
        return EXIT_PARTIAL
    if result.status == ExecutionStatus.CANCELED and result.succeeded:
        return EXIT_PARTIAL
    return EXIT_ERROR


class RichProgressCallback:
    """Progress callback that displays updates using Rich."""

    SYMBOLS = {
        ExecutionStatus.SUCCESS: "[green]✓[/green]",
        ExecutionStatus.FAILED: "[red]✗[/red]",
        ExecutionStatus.SKIPPED: "[yellow]-[/yellow]",
        ExecutionStatus.CANCELED: "[yellow]![/yellow]",
    }

    def __init__(self, progress: Progress, task_id, total: int):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0
        self.progress.update(self.task_id, total=total)

    def __call__(self, action: PlannedAction, status: ExecutionStatus, message: Optional[str]):
        if status == ExecutionStatus.IN_PROGRESS:
            self.progress.update(self.task_id, description=f"[cyan]{action.describe()}[/cyan]")
            return
        if status not in self.SYMBOLS:
            return

        self.completed += 1
        line = f"{self.SYMBOLS[status]} {action.describe()}"
        if message and status != ExecutionStatus.SUCCESS:
            line += f" [dim]({message})[/dim]"
        self.progress.console.print(line)
        self.progress.update(self.task_id, completed=self.completed)


class CancelOnInterrupt:
    """First Ctrl-C stops scheduling new actions; in-flight calls still finish."""

    def __init__(self):
        self.event = threading.Event()
        self._previous = None

    def _handle(self, signum, frame):
        if self.event.is_set():
            raise KeyboardInterrupt
        console.print("\n[yellow]Interrupt received; waiting for in-flight actions to finish...[/yellow]")
        self.event.set()

    def __enter__(self):
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self._handle)
        return self.event

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)


def run_plan(orchestrator: DeploymentOrchestrator, plan: Plan, parallel: bool, verb: str) -> int:
    """Execute a plan with a progress display and print the outcome."""
    with CancelOnInterrupt() as cancel_event, Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task_id = progress.add_task(f"[cyan]Starting {verb}...", total=None)
        result = orchestrator.apply(
            plan,
            parallel=parallel,
            cancel_event=cancel_event,
            progress_callback=RichProgressCallback(progress, task_id, len(plan.actions))
        )

    display_result(result, verb)
    return exit_code_for(result)


def display_result(result: ExecutionResult, verb: str) -> None:
    """Print the run summary and every resource that did not converge."""
    console.print()
    counts = (
        f"Actions: {len(result.action_results)}\n"
        f"Succeeded: {result.succeeded}\n"
        f"Failed: {result.failed}\n"
        f"Skipped: {result.skipped}\n"
        f"Canceled: {result.canceled}\n"
        f"Duration: {result.duration:.2f}s"
    )

    if result.status == ExecutionStatus.SUCCESS:
        console.print(Panel.fit(
            f"[green]✓ {verb.capitalize()} successful[/green]\n\n{counts}",
            title=f"{verb.capitalize()} Complete",
            border_style="green"
        ))
        return

    if result.status in (ExecutionStatus.PARTIAL, ExecutionStatus.CANCELED):
        console.print(Panel.fit(
            f"[yellow]⚠ {verb.capitalize()} {result.status.value}[/yellow]\n\n{counts}",
            title=f"{verb.capitalize()} {result.status.value.capitalize()}",
            border_style="yellow"
        ))
    else:
        console.print(Panel.fit(
            f"[red]✗ {verb.capitalize()} failed[/red]\n\n{counts}",
            title=f"{verb.capitalize()} Failed",
            border_style="red"
        ))

    summary = result.get_failure_summary()
    if summary:
        console.print("\n[bold]Resources not applied:[/bold]")
        for resource_id, reason in sorted(summary.items()):
            console.print(f"  [red]✗[/red] {resource_id}: {reason}", markup=True)
    console.print("\nRun [cyan]converge apply[/cyan] again to retry the remaining actions.")


def report_error(e: DeploymentError, label: str) -> None:
    console.print(f"[red]{label}:[/red] {e.to_user_message()}", markup=True)


@cli.command()
@click.option('--destroy', is_flag=True, help='Show what destroy would delete')
@click.option('--refresh', is_flag=True, help='Read every recorded object from its provider first')
@click.option('--json', 'json_output', is_flag=True, help='Output the plan as JSON')
@click.pass_context
def plan(ctx, destroy, refresh, json_output):
    """Show what apply would change, without changing anything."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)

    try:
        with orchestrator.locked():
            result = orchestrator.plan(refresh=refresh, destroy=destroy)
    except DeploymentError as e:
        report_error(e, "Plan error")
        sys.exit(EXIT_ERROR)

    render_plan(result, cfg.project.name, json_output=json_output)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--refresh', is_flag=True, help='Read every recorded object from its provider first')
@click.option('--parallel/--sequential', default=True, help='Execute in parallel or sequential mode')
@click.pass_context
def apply(ctx, yes, refresh, parallel):
    """Converge real resources to the declaration."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)

    try:
        with orchestrator.locked():
            result = orchestrator.plan(refresh=refresh)
            render_plan(result, cfg.project.name)

            if not result.has_changes():
                return

            if not yes and not click.confirm("Apply these changes?", default=False):
                console.print("[yellow]Apply cancelled[/yellow]")
                return

            code = run_plan(orchestrator, result, parallel, "apply")
    except DeploymentError as e:
        report_error(e, "Apply error")
        sys.exit(EXIT_ERROR)

    sys.exit(code)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--parallel/--sequential', default=True, help='Execute in parallel or sequential mode')
@click.pass_context
def destroy(ctx, yes, parallel):
    """Delete every resource recorded in the state."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)

    try:
        with orchestrator.locked():
            result = orchestrator.plan(destroy=True)
            if not result.has_changes():
                console.print("[yellow]Nothing to destroy.[/yellow] The state has no resources.")
                return

            render_plan(result, cfg.project.name)
            console.print(Panel.fit(
                f"[bold red]⚠ WARNING: This will destroy {len(result.actions)} object(s)[/bold red]\n\n"
                f"Project: {cfg.project.name}\n"
                f"State: {cfg.get_state_path()}",
                title="Destruction Plan",
                border_style="red"
            ))

            if not yes and not click.confirm(
                "Are you sure you want to destroy these resources?",
                default=False
            ):
                console.print("[yellow]Destruction cancelled[/yellow]")
                return

            code = run_plan(orchestrator, result, parallel, "destroy")
    except DeploymentError as e:
        report_error(e, "Destroy error")
        sys.exit(EXIT_ERROR)

    sys.exit(code)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the declaration and its references without touching state."""
    cfg = load_config(ctx.obj['config_path'])

    try:
        dep_graph = DependencyGraph.build(cfg.resources)
        registry = build_registry(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))
        for resource in dep_graph.resources():
            registry.get(registry.resolve_name(resource.type, resource.provider))
    except DeploymentError as e:
        report_error(e, "Validation failed")
        sys.exit(EXIT_ERROR)

    console.print(
        f"[green]✓[/green] {ctx.obj['config_path']} is valid: "
        f"{dep_graph.size()} resource(s), {len(dep_graph.get_deployment_waves())} level(s)"
    )


@cli.group()
def state():
    """Inspect the state snapshot."""
    pass


def _load_snapshot(cfg: Config):
    state_manager = StateManager(str(cfg.get_state_path()))
    if not state_manager.exists():
        console.print(f"[yellow]No state found at[/yellow] {cfg.get_state_path()}")
        console.print("\nRun [cyan]converge apply[/cyan] first.")
        return None
    try:
        return state_manager.load()
    except DeploymentError as e:
        report_error(e, "State error")
        sys.exit(EXIT_ERROR)


@state.command('list')
@click.option('--type', 'resource_type', help='Filter by resource type')
@click.pass_context
def state_list(ctx, resource_type):
    """List resources recorded in the state."""
    cfg = load_config(ctx.obj['config_path'])
    snapshot = _load_snapshot(cfg)
    if snapshot is None:
        return

    table = Table(title=f"State: {cfg.project.name} (serial {snapshot.serial})", show_header=True, header_style="bold")
    table.add_column("Resource ID", style="cyan")
    table.add_column("Provider", style="magenta")
    table.add_column("Physical ID")
    table.add_column("Updated", style="dim")

    for resource in snapshot.list_resources():
        if resource_type and resource.type != resource_type:
            continue
        table.add_row(
            resource.id,
            resource.provider,
            resource.physical_id,
            resource.updated_at.strftime('%Y-%m-%d %H:%M:%S')
        )
    for resource in snapshot.deposed:
        if resource_type and resource.type != resource_type:
            continue
        table.add_row(f"{resource.id} (deposed)", resource.provider, resource.physical_id, "")

    console.print(table)


@state.command('show')
@click.argument('resource_id')
@click.pass_context
def state_show(ctx, resource_id):
    """Show one recorded resource."""
    cfg = load_config(ctx.obj['config_path'])
    snapshot = _load_snapshot(cfg)
    if snapshot is None:
        sys.exit(EXIT_ERROR)

    resource = snapshot.get_resource(resource_id)
    if resource is None:
        console.print(f"[red]Error:[/red] Resource not found in state: {resource_id}")
        sys.exit(EXIT_ERROR)

    console.print(Panel.fit(
        f"[bold]{resource.id}[/bold]\n"
        f"Provider: {resource.provider}\n"
        f"Physical ID: {resource.physical_id}\n"
        f"Depends on: {', '.join(resource.dependencies) or 'nothing'}\n"
        f"Created: {resource.created_at.isoformat()}\n"
        f"Updated: {resource.updated_at.isoformat()}",
        title="Resource",
        border_style="cyan"
    ))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Attribute", style="cyan")
    table.add_column("Value")
    table.add_column("Kind", style="dim")
    for key, value in sorted(resource.attributes.items()):
        shown = SENSITIVE_MASK if key in resource.sensitive else value
        table.add_row(key, str(shown), "input")
    for key, value in sorted(resource.outputs.items()):
        table.add_row(key, str(value), "output")
    console.print(table)


@cli.command('force-unlock')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def force_unlock(ctx, yes):
    """Remove a stale state lock left by a crashed run."""
    cfg = load_config(ctx.obj['config_path'])
    state_manager = StateManager(str(cfg.get_state_path()))

    holder = state_manager.read_lock_info()
    if holder:
        console.print(
            f"Lock held by pid {holder.get('pid', '?')} on {holder.get('host', '?')} "
            f"since {holder.get('acquired_at', '?')}"
        )

    if not yes and not click.confirm("Remove the state lock?", default=False):
        console.print("[yellow]Cancelled[/yellow]")
        return

    if state_manager.force_unlock():
        console.print("[green]✓[/green] State lock removed")
    else:
        console.print("[dim]No lock file found[/dim]")


if __name__ == '__main__':
    cli()
