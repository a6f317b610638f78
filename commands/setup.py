"""
Setup and help commands for the hue-sync CLI.

Contains the custom Click group class for coloured help output and typo
suggestions, plus bridge pairing and configuration status commands.
"""

import time
from dataclasses import dataclass

import click

from core.config import CONFIG_FILE
from models.utils import find_similar_strings


@dataclass(frozen=True)
class CommandSection:
    """Represents a section in the help command."""
    name: str
    commands: list[tuple[str, str]]


class ColouredGroup(click.Group):
    """Custom Group class that adds colour to help output and suggests similar commands."""

    def resolve_command(self, ctx, args):
        """Resolve command with suggestions for typos."""
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            if 'No such command' in str(e):
                cmd_name = args[0] if args else ''
                suggestions = self._get_suggestions(ctx, cmd_name)

                if suggestions:
                    error_msg = f"No such command '{cmd_name}'.\n\n"
                    error_msg += click.style("Did you mean one of these?\n", fg='yellow')
                    for suggestion in suggestions:
                        error_msg += click.style(f"  • {suggestion}\n", fg='green')
                    raise click.UsageError(error_msg, ctx) from e
            raise

    def _get_suggestions(self, ctx, cmd_name, max_suggestions=3):
        """Get command suggestions based on similarity."""
        if not cmd_name:
            return []
        visible = [
            name for name in self.list_commands(ctx)
            if not getattr(self.get_command(ctx, name), 'hidden', True)
        ]
        return find_similar_strings(cmd_name, visible, limit=max_suggestions)

    def format_usage(self, ctx, formatter):
        """Format the usage line with colour."""
        formatter.write_paragraph()
        formatter.write_text(
            click.style('Usage: ', fg='cyan', bold=True) +
            click.style(f'{ctx.command_path} [OPTIONS] COMMAND [ARGS]...', fg='white')
        )

    def format_commands(self, ctx, formatter):
        """Format commands with colour."""
        commands = []
        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue
            commands.append((subcommand, cmd.get_short_help_str(limit=500)))

        if commands:
            formatter.write_paragraph()
            formatter.write_text(click.style('Commands:', fg='yellow', bold=True))

            max_len = max(max(len(name) for name, _ in commands), 16)
            with formatter.indentation():
                for subcommand, help_text in commands:
                    formatter.write_text(
                        click.style(subcommand.ljust(max_len), fg='green') + '  ' +
                        click.style(help_text, fg='white', dim=True)
                    )


COMMAND_SECTIONS = [
    CommandSection(
        name="SETUP",
        commands=[
            ("configure", "Discover the bridge and pair with the link button"),
            ("setup", "Show configuration and test the connection"),
        ]
    ),
    CommandSection(
        name="STATE",
        commands=[
            ("status", "Lights, groups and scenes as last polled"),
            ("status --type light", "Only one resource type"),
            ("watch", "Stream changes as the bridge reports them"),
            ("watch --duration 30", "Stop watching after 30 seconds"),
        ]
    ),
    CommandSection(
        name="CONTROL",
        commands=[
            ("power <light> [--on/--off]", "Turn a light on or off"),
            ("power <room> --group", "Turn a room or zone on or off"),
            ("power <light> --toggle", "Flip the last polled on/off state"),
            ("brightness <light> <0-254>", "Set brightness"),
            ("colour <light> --x X --y Y", "Set CIE xy colour"),
            ("colour <light> --mirek 153-500", "Set colour temperature"),
            ("activate-scene <scene>", "Recall a scene by name or id"),
            ("... --no-wait", "Return once the bridge accepted the command"),
        ]
    ),
]


@click.command(name='help')
def help_command():
    """Display a quick reference of common commands."""
    click.echo()
    click.secho("hue-sync - Quick Reference", fg='cyan', bold=True)
    click.echo()

    for section in COMMAND_SECTIONS:
        click.secho(section.name, fg='yellow', bold=True)
        for cmd, desc in section.commands:
            click.echo("  ", nl=False)
            click.secho(cmd, fg='green', nl=False)
            click.echo(" " * max(2, 34 - len(cmd)) + desc)
        click.echo()

    click.secho("Global options:", fg='cyan')
    click.echo("  -v, --verbose                     Log polling, retries and rate limiting")
    click.echo()
    click.echo(f"For detailed help on any command: hue-sync {click.style('<command> -h', bold=True)}")
    click.echo()


def select_bridge_interactive(bridges: list[dict]) -> str | None:
    """Display interactive menu to select a bridge from discovered list.

    Args:
        bridges: List of bridge dicts from discover_bridges()

    Returns:
        Selected bridge IP address, or None if cancelled/invalid
    """
    if not bridges:
        return None

    click.echo()
    click.secho(f"Found {len(bridges)} Hue bridges:", fg='cyan', bold=True)
    for i, bridge in enumerate(bridges, 1):
        name = bridge.get('name') or 'Philips hue'
        ip = bridge.get('internalipaddress', 'Unknown')
        click.echo(f"  {click.style(str(i), fg='green', bold=True)}. {name} ({ip})")
    click.echo()

    choice = click.prompt(f"Select bridge [1-{len(bridges)}] or 'q' to cancel", type=str, default='1')
    if choice.lower() == 'q':
        return None

    try:
        index = int(choice) - 1
    except ValueError:
        click.echo(f"Invalid selection: {choice}", err=True)
        return None
    if 0 <= index < len(bridges):
        return bridges[index].get('internalipaddress')
    click.echo(f"Invalid selection: {choice}", err=True)
    return None


def pair_interactive(bridge_ip: str, max_attempts: int = 3) -> str | None:
    """Walk the user through link button pairing.

    Returns:
        The new API token, or None if pairing failed
    """
    from core.auth import pair_with_bridge
    from core.errors import LinkButtonNotPressed, PairingError, TransportError

    for attempt in range(1, max_attempts + 1):
        click.echo()
        click.secho("Press the LINK BUTTON on your Hue Bridge", fg='yellow', bold=True)
        click.echo("You have 30 seconds after pressing the button.")
        click.pause("Press Enter when ready...")

        try:
            token = pair_with_bridge(bridge_ip)
        except LinkButtonNotPressed:
            if attempt < max_attempts:
                click.secho(f"✗ Link button not pressed (attempt {attempt}/{max_attempts}). Try again.", fg='red')
                continue
            click.secho(f"✗ Failed after {max_attempts} attempts.", fg='red')
            return None
        except TransportError as e:
            click.echo(f"Connection error: {e}", err=True)
            if e.is_transient and attempt < max_attempts:
                time.sleep(1)
                continue
            return None
        except PairingError as e:
            click.echo(f"Error: {e}", err=True)
            return None

        click.secho("✓ Successfully created API token!", fg='green', bold=True)
        return token
    return None


@click.command()
@click.option('--reconfigure', is_flag=True, help='Force reconfiguration even if credentials exist')
@click.option('--bridge-ip', '-i', help='Skip discovery and pair with this bridge')
def configure_command(reconfigure: bool, bridge_ip: str | None):
    """Discover the bridge, pair with it and save credentials.

    \b
    Steps:
    - Discover Hue bridges over mDNS, then the Philips discovery service
      (or use --bridge-ip)
    - Create an API token via the link button
    - Save it to the config file (~/.hue_sync/config.json)
    """
    from core.auth import discover_bridges_mdns, discover_bridges_nupnp, load_credentials, save_credentials

    click.echo()
    click.secho("=== hue-sync Bridge Configuration ===", fg='cyan', bold=True)
    click.echo()

    if not reconfigure:
        existing = load_credentials()
        if existing:
            click.echo(f"✓ Credentials already configured for bridge {existing['bridge_ip']}")
            if not click.confirm("Reconfigure anyway?", default=False):
                return
            click.echo()

    if not bridge_ip:
        click.echo("Step 1: Discovering Hue bridges on the local network (mDNS)...")
        bridges = discover_bridges_mdns()
        if not bridges:
            click.echo("No answer over mDNS, asking the Philips discovery service...")
            bridges = discover_bridges_nupnp()

        if not bridges:
            click.secho("⚠ No bridges found via automatic discovery", fg='yellow')
            click.echo("Check your router's client list for a device named 'Philips hue'.")
            if not click.confirm("Enter bridge IP manually?", default=True):
                click.echo("Configuration cancelled.")
                return
            bridge_ip = click.prompt("Bridge IP address", type=str)
        elif len(bridges) == 1:
            bridge_ip = bridges[0]['internalipaddress']
            click.secho(f"✓ Found 1 bridge: {bridges[0].get('name') or 'Philips hue'} ({bridge_ip})", fg='green')
        else:
            bridge_ip = select_bridge_interactive(bridges)
            if not bridge_ip:
                click.echo("Configuration cancelled.")
                return

    click.echo()
    click.echo("Step 2: Creating API credentials...")
    api_token = pair_interactive(bridge_ip)
    if not api_token:
        click.secho("✗ Failed to create API credentials", fg='red')
        return

    click.echo()
    click.echo("Step 3: Saving credentials...")
    try:
        save_credentials(bridge_ip, api_token)
    except OSError as e:
        click.secho(f"✗ Failed to save to {CONFIG_FILE}: {e}", fg='red')
        return
    click.secho(f"✓ Configuration saved to {CONFIG_FILE}", fg='green')
    click.echo()


@click.command()
def setup_command():
    """Show current bridge configuration and test the connection.

    \b
    Credential sources (priority order):
    1. Environment (HUE_BRIDGE_IP, HUE_API_TOKEN)
    2. Config file (~/.hue_sync/config.json, or HUE_SYNC_CONFIG)
    3. Interactive setup (run 'configure')
    """
    from core.auth import load_credentials
    from core.config import load_sync_config
    from core.errors import ConfigError
    from models.utils import get_engine

    click.echo()
    click.secho("=== Hue Bridge Configuration ===", fg='cyan', bold=True)
    click.echo()

    credentials = load_credentials()
    click.echo(click.style("Credentials", fg='cyan', bold=True))
    click.echo(f"   Path:        {CONFIG_FILE}")
    if credentials:
        click.echo(f"   Status:      {click.style('✓ Configured', fg='green')}")
        click.echo(f"   Bridge IP:   {credentials['bridge_ip']}")
    else:
        click.echo(f"   Status:      {click.style('✗ Not configured', fg='yellow')}")
    click.echo()

    click.echo(click.style("Sync Settings", fg='cyan', bold=True))
    try:
        config = load_sync_config()
    except ConfigError as e:
        click.secho(f"   ✗ {e}", fg='red')
        return
    for key, value in config.to_dict().items():
        click.echo(f"   {key + ':':<22}{value}")
    click.echo()

    if not credentials:
        click.secho("⚠ No authentication configured", fg='yellow', bold=True)
        click.echo("Run 'hue-sync configure' to set up authentication.")
        click.echo()
        return

    click.echo(click.style("Connection Test", fg='cyan', bold=True))
    engine = get_engine(refresh=False)
    if engine is None:
        return
    try:
        engine.refresh(timeout=config.transport_timeout * 2)
        status = engine.sync_status
        if status.degraded or status.last_success_at is None:
            click.secho(f"✗ Could not poll bridge at {credentials['bridge_ip']}", fg='red', bold=True)
            click.echo("Try reconfiguring: hue-sync configure --reconfigure")
        else:
            click.secho(f"✓ Connected to bridge at {credentials['bridge_ip']}", fg='green', bold=True)
            click.echo(f"   {len(engine.model)} resources in sync")
    finally:
        engine.shutdown()
    click.echo()
