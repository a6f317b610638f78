"""Core functionality for hue-sync.

This package contains:
- errors: Exception hierarchy
- config: Config file and SyncConfig settings
- auth: Bridge discovery, link button pairing and credentials
- transport: BridgeTransport interface and the HTTPS implementation
- rate_limit: Token bucket
- command_queue: Rate-limited, coalescing command dispatch
- reconciler: Poll/diff/notify cycle and pending expectations
- engine: SyncEngine facade
"""
