"""CLI command modules.

This package contains:
- setup: Help, configure (pairing) and setup (configuration status) commands
- inspection: status and watch commands
- control: power, brightness, colour and activate-scene commands
"""
