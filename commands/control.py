"""
Control commands for direct manipulation of lights, groups and scenes.

Includes power, brightness, colour and scene activation. Every command goes
through the SyncEngine, so it is rate limited, retried on transient errors
and (by default) waits until the bridge reports the new state.
"""

from collections.abc import Callable
from concurrent.futures import TimeoutError as FutureTimeoutError

import click

from models.commands import CommandHandle, OutcomeStatus
from models.resources import ResourceId, ResourceState, ResourceType
from models.utils import find_similar_strings, get_engine

wait_option = click.option(
    '--wait/--no-wait', default=True,
    help='Wait until the bridge reports the new state (default) or only until it accepts the command'
)
group_option = click.option('--group', '-g', is_flag=True, help='Target a room or zone instead of a light')


def resolve_target(engine, rtype: ResourceType, name: str) -> ResourceState | None:
    """Find a resource by display name (case-insensitive) or by id.

    Prints an error with close name matches if nothing is found.
    """
    state = engine.find(rtype, name) or engine.current_state(ResourceId(rtype, name))
    if state is not None:
        return state

    click.echo(f"Error: {rtype.value.capitalize()} '{name}' not found.", err=True)
    names = [s.name for s in engine.states(rtype)]
    suggestions = find_similar_strings(name, names, limit=3)
    if suggestions:
        click.echo("Did you mean: " + ', '.join(f"'{s}'" for s in suggestions), err=True)
    return None


def report_outcome(handle: CommandHandle, description: str, wait: bool, timeout: float) -> bool:
    """Wait for a command and print how it ended.

    Returns:
        True if the command converged (or was accepted, with --no-wait)
    """
    try:
        outcome = handle.result(timeout) if wait else handle.accepted(timeout)
    except FutureTimeoutError:
        click.secho(f"✗ {description}: no response from bridge after {timeout:.0f}s", fg='red')
        return False

    if outcome.status is OutcomeStatus.CONVERGED:
        click.echo(f"✓ {description}")
        return True
    if outcome.status is OutcomeStatus.ACCEPTED:
        click.echo(f"✓ {description} (accepted)")
        return True
    if outcome.status is OutcomeStatus.TIMED_OUT:
        click.secho(f"⚠ {description}: bridge accepted the command but did not report the new state",
                    fg='yellow')
        return False
    click.secho(f"✗ {description}: {outcome}", fg='red')
    return False


def _run_command(ctx: click.Context, rtype: ResourceType, name: str,
                 delta: dict | Callable[[ResourceState], dict], description: str, wait: bool):
    """Resolve the target, issue the delta and exit non-zero on failure.

    delta may be a function of the target's last polled state. description
    is formatted with `name` and `power` (ON or OFF, from the delta).
    """
    engine = get_engine()
    if not engine:
        ctx.exit(1)

    try:
        state = resolve_target(engine, rtype, name)
        if state is None:
            ctx.exit(1)

        if callable(delta):
            delta = delta(state)
        handle = engine.issue(state.id, delta)
        # Queueing, retries and the convergence deadline all fit in this budget
        timeout = engine.config.command_timeout + engine.config.transport_timeout * engine.config.max_retry_attempts
        power = 'ON' if delta.get('on') else 'OFF'
        ok = report_outcome(handle, description.format(name=state.name, power=power), wait, timeout)
    finally:
        engine.shutdown()

    if not ok:
        ctx.exit(1)


@click.command()
@click.argument('name')
@click.option('--on/--off', default=True, help='Turn on or off')
@click.option('--toggle', is_flag=True, help='Flip the last polled on/off state')
@group_option
@wait_option
@click.pass_context
def power_command(ctx, name: str, on: bool, toggle: bool, group: bool, wait: bool):
    """Turn a light (or a room/zone with --group) ON, OFF or toggle it.

    \b
    Examples:
      hue-sync power "Bedroom lamp" --on
      hue-sync power "Living room" --group --off
      hue-sync power "Desk lamp" --toggle
    """
    rtype = ResourceType.GROUP if group else ResourceType.LIGHT

    def delta(state: ResourceState) -> dict:
        return {'on': not state.attributes.on if toggle else on}

    _run_command(ctx, rtype, name, delta, "{name} turned {power}", wait)


@click.command()
@click.argument('name')
@click.argument('brightness', type=click.IntRange(0, 254))
@group_option
@wait_option
@click.pass_context
def brightness_command(ctx, name: str, brightness: int, group: bool, wait: bool):
    """Set brightness of a light or room/zone (0-254).

    \b
    Examples:
      hue-sync brightness "Bedroom lamp" 200
      hue-sync brightness "Kitchen" 50 --group
    """
    rtype = ResourceType.GROUP if group else ResourceType.LIGHT
    delta = {'on': True, 'brightness': brightness}
    _run_command(ctx, rtype, name, delta, f"{{name}} brightness set to {brightness}/254", wait)


@click.command()
@click.argument('light_name')
@click.option('--x', type=click.FloatRange(0.0, 1.0), help='CIE x coordinate (0.0-1.0)')
@click.option('--y', type=click.FloatRange(0.0, 1.0), help='CIE y coordinate (0.0-1.0)')
@click.option('--mirek', '-t', type=click.IntRange(153, 500), help='Colour temperature (153-500 mirek)')
@wait_option
@click.pass_context
def colour_command(ctx, light_name: str, x: float | None, y: float | None, mirek: int | None, wait: bool):
    """Set colour or temperature of a light.

    \b
    Examples:
      hue-sync colour "Bedroom lamp" --x 0.675 --y 0.322
      hue-sync colour "Bedroom lamp" --mirek 300
    """
    delta = {'on': True}
    if mirek is not None:
        if x is not None or y is not None:
            raise click.UsageError("Use either --x/--y or --mirek, not both")
        delta['mirek'] = mirek
        description = f"{{name}} colour temperature set to {mirek} mirek"
    elif x is not None and y is not None:
        delta['xy'] = (x, y)
        description = f"{{name}} colour set to ({x:.3f}, {y:.3f})"
    else:
        raise click.UsageError("Please specify both --x and --y, or --mirek/-t")

    _run_command(ctx, ResourceType.LIGHT, light_name, delta, description, wait)


@click.command()
@click.argument('scene')
@click.option('--speed', type=click.FloatRange(0.0, 1.0), help='Dynamic scene speed (0.0-1.0)')
@wait_option
@click.pass_context
def activate_scene_command(ctx, scene: str, speed: float | None, wait: bool):
    """Recall a scene by name or ID.

    \b
    Examples:
      hue-sync activate-scene "Relax"
      hue-sync activate-scene "Golden star" --speed 0.3
    """
    delta = {'active': True}
    if speed is not None:
        delta['speed'] = speed
    _run_command(ctx, ResourceType.SCENE, scene, delta, "Scene '{name}' activated", wait)
