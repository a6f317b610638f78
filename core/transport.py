"""Bridge transport: one request/response exchange with the bridge.

This module contains:
- BridgeTransport: the interface the sync engine consumes
- HttpBridgeTransport: CLIP v2 over HTTPS with requests

Transports neither retry nor rate limit; the command queue and reconciler
own that policy, drawing on one shared token bucket.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

import requests
from requests.packages.urllib3.exceptions import InsecureRequestWarning

from core.errors import ConnectionRefused, HttpStatusError, TransportTimeout
from models.payloads import parse_resources, required_endpoints
from models.resources import ResourceState, ResourceType

logger = logging.getLogger(__name__)

# Disable SSL warnings for self-signed certificate
requests.packages.urllib3.disable_warnings(InsecureRequestWarning)


class BridgeTransport(ABC):
    """Capability to exchange requests with one bridge."""

    @abstractmethod
    def send(self, endpoint: str, payload: dict) -> list[dict]:
        """Send a state change (non-idempotent PUT).

        Args:
            endpoint: Resource path such as '/resource/light/<rid>'
            payload: JSON body

        Returns:
            The bridge's acknowledgement data

        Raises:
            TransportError: On timeout, refused connection or error status
        """

    @abstractmethod
    def poll(self, scope: Iterable[ResourceType] | None = None) -> list[ResourceState]:
        """Fetch current resource state (idempotent GET).

        Args:
            scope: Resource types to fetch; None fetches all of them

        Raises:
            TransportError: On timeout, refused connection or error status
        """

    def requests_per_poll(self, scope: Iterable[ResourceType] | None = None) -> int:
        """Bridge requests one poll() makes; polls spend rate budget too."""
        return 1

    def close(self):
        """Release the underlying connection."""


def _error_description(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    errors = body.get('errors', []) if isinstance(body, dict) else []
    return '; '.join(e.get('description', '') for e in errors) or response.reason or ''


class HttpBridgeTransport(BridgeTransport):
    """CLIP v2 transport over HTTPS.

    The bridge presents a self-signed certificate, so verification is off.
    """

    def __init__(self, bridge_ip: str, api_token: str, timeout: float = 5.0,
                 session: requests.Session | None = None):
        """Initialise the transport.

        Args:
            bridge_ip: Bridge IP address
            api_token: Application key from link-button pairing
            timeout: Deadline in seconds for every request
            session: Optional pre-built session (mainly for tests)
        """
        self.bridge_ip = bridge_ip
        self.base_url = f"https://{bridge_ip}/clip/v2"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = False  # Accept self-signed certificate
        self.session.headers.update({'hue-application-key': api_token})

    def _request(self, method: str, endpoint: str, data: dict | None = None) -> list[dict]:
        """Make a request to the Hue Bridge API v2 and return its 'data' list."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(method, url, json=data, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransportTimeout(f"{method} {endpoint} timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise ConnectionRefused(f"Cannot reach bridge at {self.bridge_ip}: {e}") from e

        if response.status_code >= 400:
            raise HttpStatusError(response.status_code, _error_description(response))

        try:
            result = response.json()
        except ValueError as e:
            raise HttpStatusError(502, f"Invalid JSON from {endpoint}") from e

        # v2 API returns {errors: [], data: [...]}; errors can come with 200/207
        if isinstance(result, dict):
            errors = result.get('errors') or []
            if errors:
                description = '; '.join(e.get('description', '') for e in errors)
                raise HttpStatusError(max(response.status_code, 400), description)
            return result.get('data', [])
        return result

    def send(self, endpoint: str, payload: dict) -> list[dict]:
        logger.debug("PUT %s %s", endpoint, payload)
        return self._request('PUT', endpoint, payload)

    def requests_per_poll(self, scope: Iterable[ResourceType] | None = None) -> int:
        return len(required_endpoints(scope))

    def poll(self, scope: Iterable[ResourceType] | None = None) -> list[ResourceState]:
        scope = None if scope is None else list(scope)
        raw = {
            endpoint: self._request('GET', f"/resource/{endpoint}")
            for endpoint in required_endpoints(scope)
        }
        return parse_resources(raw, scope)

    def close(self):
        self.session.close()
