"""Graph command for visualizing resource dependencies."""

import sys
from typing import Set

import click
from rich.console import Console
from rich.tree import Tree
from rich.panel import Panel

from ..config.parser import Config, ConfigValidationError
from ..orchestrator.dependency_graph import DependencyGraph
from ..utils.errors import DeploymentError
from ..utils.logging import get_logger

logger = get_logger(__name__)
console = Console()


@click.command()
@click.option('--format', 'output_format', type=click.Choice(['tree', 'waves', 'dot']), default='tree', help='Output format')
@click.option('--output', 'output_file', help='Write the dot format to this file instead of stdout')
@click.pass_context
def graph(ctx, output_format: str, output_file: str):
    """Visualize the declaration's dependency graph."""
    config_path = ctx.obj['config_path']
    try:
        config = Config(config_path).load()
        dep_graph = DependencyGraph.build(config.resources)
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Declaration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Declaration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(1)
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)

    if output_format == 'tree':
        _output_tree(dep_graph, config.project.name)
    elif output_format == 'waves':
        _output_waves(dep_graph, config.project.name)
    elif output_format == 'dot':
        _output_dot(dep_graph, config.project.name, output_file)


def _output_tree(dep_graph: DependencyGraph, project_name: str):
    """Output dependency graph as a tree, from roots to their dependents."""
    console.print(Panel(f"Resource Dependency Graph - Project: {project_name}", style="bold blue"))
    console.print()

    roots = dep_graph.get_roots()
    if not roots:
        console.print("[dim]No resources declared[/dim]")
        return

    for root in roots:
        tree = Tree(f"[bold cyan]{root}[/bold cyan]")
        _build_tree_recursive(tree, root, dep_graph, set())
        console.print(tree)
        console.print()


def _build_tree_recursive(tree: Tree, resource_id: str, dep_graph: DependencyGraph, visited: Set[str]):
    """Recursively build tree structure."""
    visited.add(resource_id)
    for dependent in dep_graph.ordered(dep_graph.get_dependents(resource_id)):
        if dependent in visited:
            continue
        branch = tree.add(f"[cyan]{dependent}[/cyan]")
        _build_tree_recursive(branch, dependent, dep_graph, visited.copy())


def _output_waves(dep_graph: DependencyGraph, project_name: str):
    """Output resources grouped by the level at which they can be applied."""
    console.print(Panel(f"Apply levels - Project: {project_name}", style="bold blue"))
    console.print()

    for level, resources in enumerate(dep_graph.get_deployment_waves()):
        console.print(f"[bold]Level {level}:[/bold]")
        for resource in resources:
            deps = dep_graph.ordered(dep_graph.get_dependencies(resource))
            if deps:
                console.print(f"  ├─ [cyan]{resource}[/cyan] [dim]← depends on: {', '.join(deps)}[/dim]")
            else:
                console.print(f"  ├─ [cyan]{resource}[/cyan]")
        console.print()


def _output_dot(dep_graph: DependencyGraph, project_name: str, output_file: str):
    """Output dependency graph in DOT format."""
    dot_content = generate_dot(dep_graph, project_name)

    if output_file:
        with open(output_file, 'w') as f:
            f.write(dot_content)
        console.print(f"[green]Graph saved to {output_file}[/green]")
        console.print("[dim]Render it with: dot -Tpng {0} -o graph.png[/dim]".format(output_file))
    else:
        click.echo(dot_content)


def generate_dot(dep_graph: DependencyGraph, project_name: str) -> str:
    """Generate DOT format graph; edges point from dependency to dependent."""
    lines = [
        'digraph ResourceDependencies {',
        '  rankdir=TB;',
        '  node [shape=box, style=rounded, fontname="Arial"];',
        '  edge [fontname="Arial"];',
        '',
        '  labelloc="t";',
        f'  label="Resource Dependencies\\n{project_name}";',
        '',
    ]

    for resource in dep_graph.resources():
        lines.append(f'  "{resource.id}" [label="{resource.type}\\n{resource.name}"];')

    lines.append('')

    for resource in dep_graph.resources():
        for dep in dep_graph.ordered(dep_graph.get_dependencies(resource.id)):
            lines.append(f'  "{dep}" -> "{resource.id}";')

    lines.append('}')
    return '\n'.join(lines)
