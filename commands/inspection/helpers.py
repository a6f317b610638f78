"""
Helper functions for inspection commands.

Shared formatting used by status and watch:
- Per-type section headings
- One-line rendering of sync events
"""

import click

from models.commands import ChangeKind, ResourceChange, SyncDegraded, SyncEvent, SyncRestored
from models.resources import ResourceType
from models.utils import describe_state

SECTION_TITLES = {
    ResourceType.LIGHT: 'Lights',
    ResourceType.GROUP: 'Rooms & Zones',
    ResourceType.SCENE: 'Scenes',
}

CHANGE_COLOURS = {
    ChangeKind.ADDED: 'green',
    ChangeKind.UPDATED: 'cyan',
    ChangeKind.REMOVED: 'red',
}


def _changed_attributes(change: ResourceChange) -> list[str]:
    if change.previous is None or change.current is None:
        return []
    before, after = change.previous.attributes, change.current.attributes
    changed = [
        name for name in before.__dataclass_fields__
        if getattr(before, name) != getattr(after, name)
    ]
    if change.previous.name != change.current.name:
        changed.insert(0, 'name')
    return changed


def format_event(event: SyncEvent) -> str:
    """Render a sync event as one coloured line."""
    if isinstance(event, SyncDegraded):
        return click.style(
            f"⚠ bridge unreachable ({event.consecutive_poll_failures} failed polls): {event.error}",
            fg='yellow'
        )
    if isinstance(event, SyncRestored):
        return click.style(f"✓ bridge reachable again after {event.after_failures} failed polls", fg='green')

    state = event.current or event.previous
    label = click.style(f"{event.kind.value:<8}", fg=CHANGE_COLOURS[event.kind])
    line = f"{label} {event.resource_id.rtype.value:<6} {state.name}"
    if event.kind is ChangeKind.UPDATED:
        changed = _changed_attributes(event)
        if changed:
            line += f" [{', '.join(changed)}]"
    if event.current is not None:
        line += f": {describe_state(event.current)}"
    return line
