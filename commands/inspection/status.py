"""
Status and watch commands.

Both read the SyncEngine's resource model; watch keeps polling and prints
every change the bridge reports.
"""

import time

import click

from models.resources import ResourceType
from models.utils import describe_state, get_engine
from .helpers import SECTION_TITLES, format_event

type_option = click.option(
    '--type', '-t', 'rtype',
    type=click.Choice([t.value for t in ResourceType]),
    help='Only show one resource type'
)


@click.command()
@type_option
@click.option('--ids', is_flag=True, help='Show resource IDs')
def status_command(rtype: str | None, ids: bool):
    """Show lights, rooms/zones and scenes as last polled from the bridge."""
    engine = get_engine()
    if not engine:
        return

    try:
        sync = engine.sync_status
        if sync.last_success_at is None:
            click.secho("✗ Could not poll the bridge", fg='red', bold=True)
            click.echo()
            return

        click.secho("\n=== Bridge Status ===\n", fg='cyan', bold=True)
        types = [ResourceType(rtype)] if rtype else list(ResourceType)
        for resource_type in types:
            states = sorted(engine.states(resource_type), key=lambda s: s.name.lower())
            click.secho(f"{SECTION_TITLES[resource_type]} ({len(states)})", fg='yellow', bold=True)
            if not states:
                click.echo("  (none)")
            for state in states:
                name = click.style(state.name, fg='green')
                suffix = f"  [{state.id.rid}]" if ids else ''
                click.echo(f"  {name}: {describe_state(state)}{suffix}")
            click.echo()
    finally:
        engine.shutdown()


@click.command()
@type_option
@click.option('--duration', '-d', type=click.FloatRange(min=0), help='Stop after this many seconds')
def watch_command(rtype: str | None, duration: float | None):
    """Stream changes as the bridge reports them (Ctrl+C to stop)."""
    engine = get_engine(refresh=False)
    if not engine:
        return

    wanted = ResourceType(rtype) if rtype else None
    deadline = None if duration is None else time.monotonic() + duration

    click.secho(f"Watching bridge (poll every {engine.config.poll_interval:.1f}s)...", fg='cyan')
    subscription = engine.subscribe()
    try:
        while deadline is None or time.monotonic() < deadline:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            event = subscription.get(timeout=min(1.0, remaining) if remaining is not None else 1.0)
            if event is None:
                if subscription.closed:
                    break
                continue
            resource_id = getattr(event, 'resource_id', None)
            if wanted is not None and resource_id is not None and resource_id.rtype is not wanted:
                continue
            click.echo(format_event(event))
    except KeyboardInterrupt:
        click.echo()
    finally:
        subscription.close()
        engine.shutdown()
