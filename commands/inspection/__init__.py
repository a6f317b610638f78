"""
Inspection command module.

Provides commands for inspecting the synchronised bridge state.

Structure:
- helpers.py: Shared formatting for resources and sync events
- status.py: status and watch commands
"""

from .status import status_command, watch_command
from .helpers import format_event

__all__ = [
    'format_event',
    'status_command',
    'watch_command',
]
