"""Utility functions for hue-sync.

This module contains helper functions used across the application:
- create_name_lookup: Build ID-to-name mappings for v2 resources
- similarity_score: Fuzzy string matching for name suggestions
- find_similar_strings: Rank candidate names against a typo
- describe_state: One-line human summary of a ResourceState
- get_engine: Build and start a SyncEngine from saved credentials
"""

import click


def create_name_lookup(resources: list[dict]) -> dict[str, str]:
    """Create a lookup dict mapping resource IDs to names.

    Args:
        resources: List of v2 API resource dicts with 'id' and 'metadata.name' fields

    Returns:
        Dict mapping resource ID to name
    """
    return {r['id']: r.get('metadata', {}).get('name', 'Unknown') for r in resources}


def similarity_score(s1: str, s2: str) -> int:
    """Score how alike two names are, ignoring case.

    Returns:
        100 for an exact match, 80 when one is a prefix of the other, 60 when
        one contains the other, otherwise up to 50 in proportion to the
        characters of s1 found in order in s2 (scores of 20 or less are 0)
    """
    a, b = s1.lower(), s2.lower()

    if a == b:
        return 100
    if a.startswith(b) or b.startswith(a):
        return 80
    if a in b or b in a:
        return 60

    # Count characters of a that appear in b in the same order
    matches = 0
    position = 0
    for char in a:
        found = b.find(char, position)
        if found == -1:
            continue
        matches += 1
        position = found + 1

    if not matches:
        return 0
    score = int(matches / max(len(a), len(b)) * 50)
    return score if score > 20 else 0


def find_similar_strings(target: str, candidates: list[str], limit: int = 5) -> list[str]:
    """Find the candidates most similar to target.

    Args:
        target: The string to match against
        candidates: List of candidate strings to search
        limit: Maximum number of results to return

    Returns:
        Matching candidates, most similar first
    """
    scored = [(candidate, similarity_score(target, candidate)) for candidate in candidates]
    ranked = sorted((pair for pair in scored if pair[1] > 0), key=lambda pair: pair[1], reverse=True)
    return [candidate for candidate, _ in ranked[:limit]]


def describe_state(state) -> str:
    """Summarise a ResourceState on one line for terminal output."""
    attrs = state.attributes
    if state.id.rtype.value == 'scene':
        status = 'active' if attrs.active else 'inactive'
        return f"{status}, speed {attrs.speed:.2f}" + (', auto dynamic' if attrs.auto_dynamic else '')

    parts = ['on' if attrs.on else 'off', f"brightness {attrs.brightness}/254"]
    if state.id.rtype.value == 'light':
        if attrs.xy is not None:
            parts.append(f"xy ({attrs.xy[0]:.3f}, {attrs.xy[1]:.3f})")
        if attrs.mirek is not None:
            parts.append(f"{attrs.mirek} mirek")
        if not attrs.reachable:
            parts.append('unreachable')
    else:
        parts.append(f"{len(attrs.lights)} light{'s' if len(attrs.lights) != 1 else ''}")
    return ', '.join(parts)


def get_engine(refresh: bool = True):
    """Build and start a SyncEngine for the configured bridge.

    This helper reduces boilerplate in bridge commands.

    Args:
        refresh: Wait for the first poll before returning

    Returns:
        A running SyncEngine, or None if credentials or config are missing
        or invalid. Callers must shut the engine down.
    """
    # Import here to avoid circular dependency (models.payloads imports this module)
    from core.auth import load_credentials
    from core.config import CONFIG_FILE, load_sync_config
    from core.engine import SyncEngine
    from core.errors import ConfigError
    from core.transport import HttpBridgeTransport

    credentials = load_credentials()
    if not credentials:
        click.echo("No bridge credentials found. Run 'configure' first.", err=True)
        return None

    try:
        config = load_sync_config()
    except ConfigError as e:
        click.echo(f"Invalid settings in {CONFIG_FILE}: {e}", err=True)
        return None

    transport = HttpBridgeTransport(
        credentials['bridge_ip'], credentials['api_token'], timeout=config.transport_timeout
    )
    engine = SyncEngine(transport, config)
    engine.start()
    if refresh:
        engine.refresh(timeout=config.transport_timeout * 2)
    return engine
