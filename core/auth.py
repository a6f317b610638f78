"""
Authentication module for Hue Bridge.

Handles bridge discovery (mDNS, then the N-UPnP endpoint), link button
pairing and credential storage.
Credentials come from the environment (HUE_BRIDGE_IP / HUE_API_TOKEN) or
the user config file; interactive prompting lives in commands/setup.py.
"""

import logging
import os
import socket
import threading
import time
from pathlib import Path

import requests
from requests.packages.urllib3.exceptions import InsecureRequestWarning
from zeroconf import IPVersion, ServiceBrowser, ServiceListener, Zeroconf

from core.config import CONFIG_FILE, load_config, save_config
from core.errors import ConfigError, ConnectionRefused, LinkButtonNotPressed, PairingError, TransportTimeout
from models.types import AuthCredentials, DiscoveredBridge

logger = logging.getLogger(__name__)

# Disable SSL warnings for self-signed certificate
requests.packages.urllib3.disable_warnings(InsecureRequestWarning)

DISCOVERY_URL = 'https://discovery.meethue.com/'

# Service type bridges advertise over multicast DNS
MDNS_SERVICE_TYPE = '_hue._tcp.local.'

# Bridge error type for "link button not pressed"
LINK_BUTTON_ERROR = 101


class _BridgeListener(ServiceListener):
    """Collects bridges announced on the local network."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self.bridges: dict[str, DiscoveredBridge] = {}
        self.lock = threading.Lock()

    def add_service(self, zc: Zeroconf, type_: str, name: str):
        info = zc.get_service_info(type_, name, timeout=int(self.timeout * 1000))
        if info is None:
            return
        addresses = info.parsed_addresses(IPVersion.V4Only)
        if not addresses:
            return
        bridge_id = info.properties.get(b'bridgeid') or b''
        with self.lock:
            self.bridges[name] = {
                'id': bridge_id.decode(errors='replace'),
                'internalipaddress': addresses[0],
                'name': name.removesuffix('.' + type_) or None,
            }

    def update_service(self, zc: Zeroconf, type_: str, name: str):
        self.add_service(zc, type_, name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str):
        with self.lock:
            self.bridges.pop(name, None)


def _sorted_by_ip(bridges) -> list[DiscoveredBridge]:
    return sorted(
        (b for b in bridges if isinstance(b, dict) and b.get('internalipaddress')),
        key=lambda b: b['internalipaddress'],
    )


def discover_bridges_mdns(timeout: float = 3.0) -> list[DiscoveredBridge]:
    """Discover Hue bridges on the local network using mDNS.

    Browses for _hue._tcp services for `timeout` seconds. Needs no internet
    access and has no request limit, so it is tried first.

    Returns:
        List of bridge dicts with keys: id, internalipaddress, name
        Empty list if no bridge answered or multicast is unavailable
    """
    listener = _BridgeListener(timeout)
    try:
        zc = Zeroconf()
    except OSError as e:
        logger.warning("mDNS discovery unavailable: %s", e)
        return []

    try:
        browser = ServiceBrowser(zc, MDNS_SERVICE_TYPE, listener)
        time.sleep(timeout)
        browser.cancel()
    finally:
        zc.close()

    with listener.lock:
        return _sorted_by_ip(listener.bridges.values())


def discover_bridges_nupnp(timeout: float = 5.0) -> list[DiscoveredBridge]:
    """Discover Hue bridges using the N-UPnP cloud endpoint.

    Uses the Philips discovery service at https://discovery.meethue.com/,
    which is rate limited to roughly one request every 15 minutes.

    Returns:
        List of bridge dicts with keys: id, internalipaddress, name
        Empty list if discovery fails or no bridges found
    """
    try:
        response = requests.get(DISCOVERY_URL, timeout=timeout)
        response.raise_for_status()
        bridges = response.json()
    except requests.exceptions.HTTPError as e:
        if e.response is not None and e.response.status_code == 429:
            logger.warning("Philips discovery service rate limit reached")
        else:
            logger.warning("Bridge discovery failed: %s", e)
        return []
    except requests.exceptions.RequestException as e:
        logger.warning("Bridge discovery failed: %s", e)
        return []
    except ValueError as e:
        logger.warning("Failed to parse discovery response: %s", e)
        return []

    if not isinstance(bridges, list):
        logger.warning("Unexpected discovery response: %r", bridges)
        return []

    # Sort by IP address for consistency
    return _sorted_by_ip(bridges)


def discover_bridges(timeout: float = 5.0) -> list[DiscoveredBridge]:
    """Discover bridges with mDNS, falling back to the N-UPnP endpoint."""
    bridges = discover_bridges_mdns(min(timeout, 3.0))
    if bridges:
        return bridges
    logger.info("No bridges answered over mDNS, trying the discovery endpoint")
    return discover_bridges_nupnp(timeout)


def pair_with_bridge(bridge_ip: str, app_name: str = 'hue_sync',
                     instance_name: str | None = None, timeout: float = 10.0) -> str:
    """Create a new application key via link button pairing.

    The link button must have been pressed within the last 30 seconds.

    Args:
        bridge_ip: Bridge IP address
        app_name: Application identifier (first half of devicetype)
        instance_name: Device identifier (second half, defaults to hostname)
        timeout: Request deadline in seconds

    Returns:
        The application key (API token)

    Raises:
        LinkButtonNotPressed: The bridge is waiting for the button press
        PairingError: The bridge refused pairing for another reason
        TransportTimeout, ConnectionRefused: The bridge could not be reached
    """
    instance_name = instance_name or socket.gethostname()
    payload = {
        # devicetype is limited to 40 characters by the bridge
        'devicetype': f"{app_name}#{instance_name}"[:40],
        'generateclientkey': True,
    }

    try:
        response = requests.post(f"https://{bridge_ip}/api", json=payload, verify=False, timeout=timeout)
        data = response.json()
    except requests.exceptions.Timeout as e:
        raise TransportTimeout(f"Pairing with {bridge_ip} timed out") from e
    except requests.exceptions.ConnectionError as e:
        raise ConnectionRefused(f"Cannot reach bridge at {bridge_ip}: {e}") from e
    except ValueError as e:
        raise PairingError(f"Failed to parse pairing response: {e}") from e

    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise PairingError(f"Unexpected pairing response: {data!r}")

    result = data[0]
    if 'success' in result:
        username = result['success'].get('username')
        if not username:
            raise PairingError("Pairing response did not include an application key")
        logger.info("Paired with bridge %s", bridge_ip)
        return username

    error = result.get('error', {})
    if error.get('type') == LINK_BUTTON_ERROR:
        raise LinkButtonNotPressed("Link button not pressed")
    raise PairingError(error.get('description', 'Unknown pairing error'))


def load_credentials(path: Path | None = None) -> AuthCredentials | None:
    """Load bridge IP and API token.

    Priority order:
    1. HUE_BRIDGE_IP and HUE_API_TOKEN environment variables
    2. User config file (~/.hue_sync/config.json)

    Returns:
        Dict with 'bridge_ip' and 'api_token', or None if not configured
    """
    bridge_ip = os.getenv('HUE_BRIDGE_IP')
    api_token = os.getenv('HUE_API_TOKEN')
    if bridge_ip and api_token:
        return {'bridge_ip': bridge_ip, 'api_token': api_token}

    try:
        config = load_config(path)
    except ConfigError as e:
        logger.warning("%s", e)
        return None

    bridge_ip = config.get('bridge_ip')
    api_token = config.get('api_token')

    # Validate both values exist and are non-empty strings
    if bridge_ip and api_token and isinstance(bridge_ip, str) and isinstance(api_token, str):
        return {'bridge_ip': bridge_ip, 'api_token': api_token}
    return None


def save_credentials(bridge_ip: str, api_token: str, path: Path | None = None):
    """Save bridge IP and API token, keeping any other settings in the file.

    Raises:
        OSError: If the file cannot be written
    """
    path = path or CONFIG_FILE
    try:
        config = load_config(path)
    except ConfigError:
        logger.warning("Replacing unreadable config file %s", path)
        config = {}

    config['bridge_ip'] = bridge_ip
    config['api_token'] = api_token
    save_config(config, path)
