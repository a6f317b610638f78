"""Type definitions for hue-sync.

This module provides TypedDict definitions for the plain-dict data that
crosses the bridge discovery and credential boundaries.
"""

from typing import TypedDict


class AuthCredentials(TypedDict):
    """Authentication credentials for Hue Bridge."""
    bridge_ip: str
    api_token: str


class DiscoveredBridge(TypedDict):
    """Bridge information from mDNS or N-UPnP discovery."""
    id: str
    internalipaddress: str
    name: str | None
