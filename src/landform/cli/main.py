"""Main CLI entry point."""

import json
import signal
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

import click
from rich.panel import Panel
from rich.table import Table

from landform import __version__
from landform.cli.common import (
    console,
    create_orchestrator,
    handle_errors,
    load_config,
    parse_vars,
)
from landform.cli.graph import graph
from landform.cli.state import force_unlock, state
from landform.config.parser import DEFAULT_CONFIG_FILE
from landform.orchestrator.executor import ApplyResult, ExecutionStatus
from landform.orchestrator.planner import ChangeAction, ChangeSet, ChangeSetEntry, display_value
from landform.utils.errors import PartialApplyError
from landform.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


@click.group()
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, show_default=True,
              help='Path to the project file')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.version_option(__version__, prog_name='landform')
@click.pass_context
def cli(ctx, config_path, log_level):
    """Declarative resource reconciliation with locked remote state."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['log_level'] = log_level

    # Setup logging
    setup_logging(log_level, log_dir=Path(config_path).parent / '.landform' / 'logs')


cli.add_command(graph)
cli.add_command(state)
cli.add_command(force_unlock)


SYMBOLS = {
    ChangeAction.CREATE: ('+', 'green'),
    ChangeAction.UPDATE: ('~', 'yellow'),
    ChangeAction.DELETE: ('-', 'red'),
}


def _entry_symbol(entry: ChangeSetEntry):
    if entry.replace:
        return ('+/-', 'magenta') if entry.create_before_destroy else ('-/+', 'magenta')
    return SYMBOLS[entry.action]


def print_change_set(change_set: ChangeSet) -> None:
    """Render a change-set for humans."""
    if not change_set.has_changes():
        console.print("[green]No changes.[/green] Infrastructure matches the declarations.")
        return

    shown = set()
    for entry in change_set.entries:
        if entry.replace and entry.address in shown:
            continue
        shown.add(entry.address)

        symbol, color = _entry_symbol(entry)
        label = entry.address + (f" (deposed {entry.deposed_key})" if entry.deposed else "")
        console.print(f"[{color}]{symbol}[/{color}] [bold]{label}[/bold]  [dim]{entry.reason}[/dim]")

        if entry.action == ChangeAction.DELETE and not entry.replace:
            continue
        before = entry.prior.attributes if entry.prior else {}
        names = entry.changed if entry.prior else sorted(entry.planned)
        for name in names:
            after = display_value(entry.planned.get(name))
            if entry.prior:
                console.print(f"      {name}: {json.dumps(before.get(name))} -> {json.dumps(after)}",
                              markup=False, highlight=False)
            else:
                console.print(f"      {name}: {json.dumps(after)}", markup=False, highlight=False)

    summary = change_set.summary()
    console.print(
        f"\n[bold]Plan:[/bold] {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete."
    )


def print_apply_result(result: ApplyResult) -> None:
    """Print a table of entry outcomes and a one-line summary."""
    if result.results:
        table = Table(title="Apply Results")
        table.add_column("Resource", style="cyan")
        table.add_column("Action")
        table.add_column("Status")
        table.add_column("Duration", justify="right")
        table.add_column("Detail", style="dim")

        colors = {
            ExecutionStatus.SUCCESS: 'green',
            ExecutionStatus.FAILED: 'red',
            ExecutionStatus.SKIPPED: 'yellow',
        }
        for entry_result in result.results.values():
            color = colors.get(entry_result.status, 'white')
            detail = entry_result.error.message if entry_result.error else (entry_result.reason or "")
            table.add_row(
                entry_result.address,
                entry_result.action.value,
                f"[{color}]{entry_result.status.value}[/{color}]",
                f"{entry_result.duration:.1f}s",
                detail,
            )
        console.print(table)

    if result.is_success():
        console.print(f"\n[green]✓ Apply complete:[/green] {len(result.applied)} resource(s) changed "
                      f"in {result.duration:.1f}s")
    else:
        console.print(f"\n[red]✗ Apply incomplete:[/red] {len(result.applied)} applied, "
                      f"{len(result.failed)} failed, {len(result.skipped)} skipped")


def _progress(address: str, status: ExecutionStatus, message: Optional[str]) -> None:
    if status == ExecutionStatus.IN_PROGRESS:
        console.print(f"[cyan]…[/cyan] {address}", highlight=False)
    elif status == ExecutionStatus.SUCCESS:
        console.print(f"[green]✓[/green] {address}", highlight=False)
    elif status == ExecutionStatus.FAILED:
        console.print(f"[red]✗[/red] {address}: {message}", highlight=False, markup=False)
    elif status == ExecutionStatus.SKIPPED:
        console.print(f"[yellow]-[/yellow] {address} skipped ({message})", highlight=False)


class InterruptHandler:
    """First Ctrl-C cancels gracefully; a second one aborts."""

    def __init__(self, cancel_event: threading.Event):
        self.cancel_event = cancel_event
        self.previous = None

    def __enter__(self):
        if threading.current_thread() is threading.main_thread():
            self.previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.previous is not None:
            signal.signal(signal.SIGINT, self.previous)

    def _handle(self, signum, frame):
        if self.cancel_event.is_set():
            raise KeyboardInterrupt
        self.cancel_event.set()
        console.print("\n[yellow]Interrupt received: finishing in-flight operations "
                      "(press Ctrl-C again to abort)[/yellow]")


def _run_apply(
    ctx,
    variables: Dict,
    targets: List[str],
    destroy: bool,
    refresh: bool,
    auto_approve: bool,
    parallelism: Optional[int],
    halt_on_failure: Optional[bool]
) -> None:
    config = load_config(ctx, variables)
    cancel_event = threading.Event()
    orchestrator = create_orchestrator(ctx, config, cancel_event=cancel_event)

    def confirm(change_set: ChangeSet) -> bool:
        print_change_set(change_set)
        if auto_approve:
            return True
        prompt = "Destroy these resources?" if destroy else "Apply these changes?"
        return click.confirm(f"\n{prompt}", default=False)

    with InterruptHandler(cancel_event):
        result = orchestrator.apply(
            targets=targets,
            destroy=destroy,
            refresh=refresh,
            confirm=confirm,
            progress_callback=_progress,
            max_workers=parallelism,
            halt_on_failure=halt_on_failure,
        )

    if result.declined:
        console.print("[yellow]Apply cancelled.[/yellow] No changes were made.")
        return

    if not result.change_set.has_changes():
        print_change_set(result.change_set)
        return

    print_apply_result(result)
    try:
        result.raise_for_status()
    except PartialApplyError as e:
        console.print(e.message, style="red", markup=False, highlight=False)
        if result.cancelled:
            console.print("[yellow]Apply was interrupted.[/yellow]")
        sys.exit(1)


@cli.command()
@click.option('--name', prompt='Project name', help='Project name')
@click.option('--force', is_flag=True, help='Overwrite existing configuration')
@click.pass_context
def init(ctx, name, force):
    """Create a new landform project file."""
    config_path = Path(ctx.obj['config_path'])

    if config_path.exists() and not force:
        console.print(f"[yellow]Configuration file already exists:[/yellow] {config_path}")
        console.print("Use [cyan]--force[/cyan] to overwrite")
        sys.exit(1)

    config_content = f"""# landform project file
project:
  name: {name}

backend:
  type: local
  path: .landform/state

engine:
  max_workers: 10
  halt_on_failure: false

variables:
  env: dev

resources:
  - type: null_id
    name: suffix
    attributes:
      byte_length: 4

  - type: local_file
    name: greeting
    attributes:
      filename: out/hello-${{var.env}}.txt
      content: "hello from ${{null_id.suffix.hex}}"
"""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(config_content)

    console.print(Panel(
        f"Created [cyan]{config_path}[/cyan]\n\n"
        "Next steps:\n"
        "  1. Edit the resources in the project file\n"
        "  2. Run [cyan]landform plan[/cyan] to preview changes\n"
        "  3. Run [cyan]landform apply[/cyan] to apply them",
        title="Project initialized",
        border_style="green",
    ))


@cli.command()
@click.option('--var', 'variables', multiple=True, callback=parse_vars, help='Set a variable (NAME=VALUE)')
@click.pass_context
@handle_errors
def validate(ctx, variables):
    """Validate the project file and resource references."""
    config = load_config(ctx, variables)
    orchestrator = create_orchestrator(ctx, config)
    resource_graph = orchestrator.build_graph()

    table = Table(title=f"Project: {config.project.name}")
    table.add_column("Resource", style="cyan")
    table.add_column("Depends on")
    for address in resource_graph.topological_order():
        table.add_row(address, ", ".join(resource_graph.dependencies(address)) or "-")
    console.print(table)
    console.print(f"[green]✓ Configuration is valid[/green] ({len(resource_graph)} resources)")


@cli.command()
@click.option('--target', 'targets', multiple=True, help='Limit the plan to this address (repeatable)')
@click.option('--destroy', is_flag=True, help='Plan deleting every recorded resource')
@click.option('--var', 'variables', multiple=True, callback=parse_vars, help='Set a variable (NAME=VALUE)')
@click.option('--refresh/--no-refresh', default=True, help='Read recorded objects from providers first')
@click.option('--json', 'as_json', is_flag=True, help='Print the change-set as JSON')
@click.pass_context
@handle_errors
def plan(ctx, targets, destroy, variables, refresh, as_json):
    """Show the changes apply would make."""
    config = load_config(ctx, variables)
    orchestrator = create_orchestrator(ctx, config)
    change_set = orchestrator.plan(targets=list(targets), destroy=destroy, refresh=refresh)

    if as_json:
        click.echo(json.dumps(change_set.to_dict(), indent=2, default=str))
    else:
        print_change_set(change_set)


@cli.command()
@click.option('--target', 'targets', multiple=True, help='Limit the apply to this address (repeatable)')
@click.option('--var', 'variables', multiple=True, callback=parse_vars, help='Set a variable (NAME=VALUE)')
@click.option('--refresh/--no-refresh', default=True, help='Read recorded objects from providers first')
@click.option('--auto-approve', is_flag=True, help='Skip the confirmation prompt')
@click.option('--parallelism', type=click.IntRange(1, 256), help='Concurrent provider calls')
@click.option('--halt-on-failure/--continue-on-failure', default=None,
              help='Stop scheduling after the first failure')
@click.pass_context
@handle_errors
def apply(ctx, targets, variables, refresh, auto_approve, parallelism, halt_on_failure):
    """Apply the declared resources."""
    _run_apply(ctx, variables, list(targets), False, refresh, auto_approve, parallelism, halt_on_failure)


@cli.command()
@click.option('--target', 'targets', multiple=True, help='Destroy only this address and its dependents')
@click.option('--var', 'variables', multiple=True, callback=parse_vars, help='Set a variable (NAME=VALUE)')
@click.option('--refresh/--no-refresh', default=True, help='Read recorded objects from providers first')
@click.option('--auto-approve', is_flag=True, help='Skip the confirmation prompt')
@click.option('--parallelism', type=click.IntRange(1, 256), help='Concurrent provider calls')
@click.pass_context
@handle_errors
def destroy(ctx, targets, variables, refresh, auto_approve, parallelism):
    """Destroy every recorded resource."""
    _run_apply(ctx, variables, list(targets), True, refresh, auto_approve, parallelism, None)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
