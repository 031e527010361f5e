"""State inspection and lock recovery commands."""

import json
import sys

import click
from rich.syntax import Syntax
from rich.table import Table

from landform.cli.common import console, create_orchestrator, handle_errors, load_config


@click.group()
def state():
    """Inspect the stored state snapshot."""
    pass


@state.command('list')
@click.pass_context
@handle_errors
def state_list(ctx):
    """List recorded resources."""
    config = load_config(ctx)
    snapshot = create_orchestrator(ctx, config).read_state()

    if snapshot.is_empty():
        console.print(f"[dim]No resources recorded for state '{snapshot.state_id}'[/dim]")
        return

    table = Table(title=f"State: {snapshot.state_id} (serial {snapshot.serial})")
    table.add_column("Address", style="cyan")
    table.add_column("ID")
    table.add_column("Depends on")
    table.add_column("Updated", style="dim")

    for address, resource in sorted(snapshot.resources.items()):
        table.add_row(
            address,
            str(resource.id),
            ", ".join(resource.dependencies) or "-",
            resource.updated_at.strftime('%Y-%m-%d %H:%M:%S'),
        )
    for deposed in snapshot.deposed:
        table.add_row(
            f"{deposed.address} [yellow](deposed {deposed.key})[/yellow]",
            str(deposed.resource.id),
            ", ".join(deposed.resource.dependencies) or "-",
            deposed.resource.updated_at.strftime('%Y-%m-%d %H:%M:%S'),
        )
    console.print(table)

    last_apply = snapshot.metadata.get('last_apply')
    if last_apply and (last_apply.get('failed') or last_apply.get('skipped')):
        console.print(
            f"[yellow]Last apply ({last_apply.get('timestamp')}) left "
            f"{len(last_apply.get('failed', []))} failed and "
            f"{len(last_apply.get('skipped', []))} skipped resource(s)[/yellow]"
        )


@state.command('show')
@click.argument('address')
@click.pass_context
@handle_errors
def state_show(ctx, address):
    """Show the recorded attributes and outputs of ADDRESS."""
    config = load_config(ctx)
    snapshot = create_orchestrator(ctx, config).read_state()

    resource = snapshot.get_resource(address)
    if resource is None:
        console.print(f"[red]Error:[/red] '{address}' is not in state '{snapshot.state_id}'")
        sys.exit(1)

    data = resource.model_dump(mode='json')
    console.print(Syntax(json.dumps(data, indent=2), "json", theme="monokai"))


@click.command('force-unlock')
@click.argument('lock_id')
@click.option('--force', is_flag=True, help='Skip the confirmation prompt')
@click.pass_context
@handle_errors
def force_unlock(ctx, lock_id, force):
    """Remove the state lock LOCK_ID left behind by a crashed run."""
    config = load_config(ctx)
    store = create_orchestrator(ctx, config).store
    state_id = config.state_id

    if not force:
        current = store.get_lock(state_id)
        if current is not None:
            console.print(
                f"Lock {current.lock_id} held by {current.who} "
                f"(operation: {current.operation}, since {current.created_at.isoformat()})"
            )
        if not click.confirm("Only continue if no other run is active. Remove the lock?", default=False):
            console.print("Force-unlock cancelled.")
            return

    store.force_unlock(state_id, lock_id)
    console.print(f"[green]✓ State '{state_id}' unlocked[/green]")
