"""Graph command for visualizing resource dependencies."""

import click
from rich.panel import Panel
from rich.tree import Tree

from landform.cli.common import console, create_orchestrator, handle_errors, load_config, parse_vars
from landform.orchestrator.builder import ResourceGraph


@click.command()
@click.option('--format', 'output_format', type=click.Choice(['tree', 'dot']), default='tree',
              help='Output format')
@click.option('--var', 'variables', multiple=True, callback=parse_vars, help='Set a variable (NAME=VALUE)')
@click.pass_context
@handle_errors
def graph(ctx, output_format, variables):
    """Visualize the declared resource dependency graph."""
    config = load_config(ctx, variables)
    resource_graph = create_orchestrator(ctx, config).build_graph()

    if output_format == 'dot':
        click.echo(to_dot(resource_graph))
    else:
        _output_tree(resource_graph, config.project.name)


def to_dot(resource_graph: ResourceGraph) -> str:
    """Graphviz source; edges point from a resource to what it depends on."""
    lines = ['digraph landform {', '  rankdir = "RL";']
    for address in resource_graph.addresses():
        lines.append(f'  "{address}";')
    for dependent, dependency in resource_graph.graph.edges():
        lines.append(f'  "{dependent}" -> "{dependency}";')
    lines.append('}')
    return "\n".join(lines)


def _output_tree(resource_graph: ResourceGraph, project_name: str):
    """Output dependency graph as a tree."""
    console.print(Panel(f"Resource Dependency Graph - Project: {project_name}", style="bold blue"))
    console.print()

    # Get root resources (no dependencies)
    roots = resource_graph.graph.get_roots()

    if not roots:
        console.print("[dim]No resources declared[/dim]")
        return

    for root in roots:
        tree = Tree(f"[bold cyan]{root}[/bold cyan]")
        _add_dependents(resource_graph, root, tree, {root})
        console.print(tree)


def _add_dependents(resource_graph: ResourceGraph, address: str, tree: Tree, path: set):
    for dependent in resource_graph.dependents(address):
        if dependent in path:
            continue
        branch = tree.add(f"[green]{dependent}[/green]")
        _add_dependents(resource_graph, dependent, branch, path | {dependent})
