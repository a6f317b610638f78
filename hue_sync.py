#!/usr/bin/env python3
"""
hue-sync CLI
Control Philips Hue lights, rooms and scenes through a synchronised,
rate-limited view of the bridge.
"""

import logging

import click

from commands.setup import ColouredGroup, help_command, setup_command, configure_command
from commands.inspection import status_command, watch_command
from commands.control import (
    power_command,
    brightness_command,
    colour_command,
    activate_scene_command,
)


@click.group(
    cls=ColouredGroup,
    context_settings={
        'help_option_names': ['-h', '--help'],
        'max_content_width': 999  # Very wide to prevent wrapping on wide terminals
    }
)
@click.version_option(version='0.1.0', prog_name='hue-sync')
@click.option('--verbose', '-v', count=True, help='Log sync activity (-vv for debug detail)')
def cli(verbose: int):
    """hue-sync - Keep a live view of your Hue bridge and control it safely.

Commands are rate limited, retried on transient errors and confirmed
against the state the bridge reports.

Credentials: environment (HUE_BRIDGE_IP, HUE_API_TOKEN) or ~/.hue_sync/config.json
Run 'configure' for first-time setup or 'setup' to check configuration.

Use 'help' for a quick reference of all commands."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG if verbose > 1 else logging.INFO,
            format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        )


# Register setup and help commands
cli.add_command(help_command)
cli.add_command(setup_command, name='setup')
cli.add_command(configure_command, name='configure')

# Register inspection commands
cli.add_command(status_command, name='status')
cli.add_command(watch_command, name='watch')

# Register control commands
cli.add_command(power_command, name='power')
cli.add_command(brightness_command, name='brightness')
cli.add_command(colour_command, name='colour')
cli.add_command(activate_scene_command, name='activate-scene')


if __name__ == '__main__':
    cli()
