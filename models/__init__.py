"""Data models and utility functions.

This package contains:
- resources: Resource ids, attributes, states and delta validation
- commands: Command requests, handles, outcomes and sync events
- resource_model: In-memory versioned view of the bridge
- payloads: CLIP v2 JSON conversion
- types: TypedDicts for credentials and discovery results
- utils: Name lookups, fuzzy matching, formatting, get_engine
"""
