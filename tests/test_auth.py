"""Tests for discovery, pairing and credentials in core/auth.py

Network calls are mocked; credential files live in tmp_path.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.auth import (
    discover_bridges,
    discover_bridges_mdns,
    discover_bridges_nupnp,
    load_credentials,
    pair_with_bridge,
    save_credentials,
)
from core.errors import ConnectionRefused, LinkButtonNotPressed, PairingError, TransportTimeout


def mock_response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    if status_code >= 400:
        error = requests.exceptions.HTTPError(f"{status_code} error")
        error.response = response
        response.raise_for_status.side_effect = error
    return response


class TestDiscoverBridges:
    """Tests for N-UPnP discovery."""

    @patch('core.auth.requests.get')
    def test_sorted_by_ip(self, mock_get):
        mock_get.return_value = mock_response([
            {'id': 'b', 'internalipaddress': '192.168.1.9'},
            {'id': 'a', 'internalipaddress': '192.168.1.10'},
        ])
        bridges = discover_bridges_nupnp()
        assert [b['id'] for b in bridges] == ['a', 'b']

    @patch('core.auth.requests.get')
    def test_rate_limited(self, mock_get):
        mock_get.return_value = mock_response([], status_code=429)
        assert discover_bridges_nupnp() == []

    @patch('core.auth.requests.get')
    def test_network_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError('offline')
        assert discover_bridges_nupnp() == []

    @patch('core.auth.requests.get')
    def test_entries_without_ip_skipped(self, mock_get):
        mock_get.return_value = mock_response([{'id': 'a'}])
        assert discover_bridges_nupnp() == []


def service_info(address, bridge_id=b'001788fffe4a2b3c'):
    info = MagicMock()
    info.parsed_addresses.return_value = [address] if address else []
    info.properties = {b'bridgeid': bridge_id, b'modelid': b'BSB002'}
    return info


def announce(*services):
    """ServiceBrowser stand-in that announces services as soon as it is built."""
    def browser(zc, service_type, listener):
        for name, _ in services:
            listener.add_service(zc, service_type, name)
        return MagicMock()
    return browser


@patch('core.auth.Zeroconf')
class TestDiscoverBridgesMdns:
    """Tests for mDNS discovery with a mocked zeroconf browser."""

    def test_bridges_found(self, mock_zeroconf):
        services = [
            ('Hue Bridge - 4A2B3C._hue._tcp.local.', service_info('192.168.1.20')),
            ('Hue Bridge - 11AA22._hue._tcp.local.', service_info('192.168.1.3', b'001788fffe11aa22')),
        ]
        zc = mock_zeroconf.return_value
        zc.get_service_info.side_effect = lambda type_, name, timeout: dict(services)[name]

        with patch('core.auth.ServiceBrowser', side_effect=announce(*services)) as mock_browser:
            bridges = discover_bridges_mdns(timeout=0)

        assert mock_browser.call_args.args[1] == '_hue._tcp.local.'
        assert [b['internalipaddress'] for b in bridges] == ['192.168.1.20', '192.168.1.3']
        assert {b['name'] for b in bridges} == {'Hue Bridge - 4A2B3C', 'Hue Bridge - 11AA22'}
        assert {b['id'] for b in bridges} == {'001788fffe4a2b3c', '001788fffe11aa22'}
        zc.close.assert_called_once()

    def test_service_without_address_skipped(self, mock_zeroconf):
        services = [('Hue Bridge - 4A2B3C._hue._tcp.local.', service_info(None))]
        mock_zeroconf.return_value.get_service_info.return_value = services[0][1]

        with patch('core.auth.ServiceBrowser', side_effect=announce(*services)):
            assert discover_bridges_mdns(timeout=0) == []

    def test_multicast_unavailable(self, mock_zeroconf):
        mock_zeroconf.side_effect = OSError('no multicast route')
        assert discover_bridges_mdns(timeout=0) == []

    def test_nothing_announced(self, mock_zeroconf):
        with patch('core.auth.ServiceBrowser', side_effect=announce()):
            assert discover_bridges_mdns(timeout=0) == []
        mock_zeroconf.return_value.close.assert_called_once()


class TestDiscoveryOrder:
    """mDNS first, the cloud endpoint only when the network stays silent."""

    @patch('core.auth.discover_bridges_nupnp')
    @patch('core.auth.discover_bridges_mdns')
    def test_mdns_answer_skips_endpoint(self, mock_mdns, mock_nupnp):
        mock_mdns.return_value = [{'id': 'a', 'internalipaddress': '10.0.0.2', 'name': None}]
        assert discover_bridges() == mock_mdns.return_value
        mock_nupnp.assert_not_called()

    @patch('core.auth.discover_bridges_nupnp')
    @patch('core.auth.discover_bridges_mdns', return_value=[])
    def test_falls_back_to_endpoint(self, mock_mdns, mock_nupnp):
        mock_nupnp.return_value = [{'id': 'b', 'internalipaddress': '10.0.0.3', 'name': None}]
        assert discover_bridges() == mock_nupnp.return_value


class TestPairWithBridge:
    """Tests for link button pairing."""

    @patch('core.auth.requests.post')
    def test_success(self, mock_post):
        mock_post.return_value = mock_response([{'success': {'username': 'new-key', 'clientkey': 'ck'}}])

        assert pair_with_bridge('10.0.0.2', instance_name='laptop') == 'new-key'

        payload = mock_post.call_args.kwargs['json']
        assert payload['devicetype'] == 'hue_sync#laptop'
        assert payload['generateclientkey'] is True
        assert mock_post.call_args.kwargs['verify'] is False

    @patch('core.auth.requests.post')
    def test_link_button_not_pressed(self, mock_post):
        mock_post.return_value = mock_response([{'error': {'type': 101, 'description': 'link button not pressed'}}])
        with pytest.raises(LinkButtonNotPressed):
            pair_with_bridge('10.0.0.2', instance_name='laptop')

    @patch('core.auth.requests.post')
    def test_other_error(self, mock_post):
        mock_post.return_value = mock_response([{'error': {'type': 7, 'description': 'invalid value'}}])
        with pytest.raises(PairingError, match='invalid value'):
            pair_with_bridge('10.0.0.2', instance_name='laptop')

    @patch('core.auth.requests.post')
    def test_timeout(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout()
        with pytest.raises(TransportTimeout):
            pair_with_bridge('10.0.0.2', instance_name='laptop')

    @patch('core.auth.requests.post')
    def test_unreachable(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError()
        with pytest.raises(ConnectionRefused):
            pair_with_bridge('10.0.0.2', instance_name='laptop')

    @patch('core.auth.requests.post')
    def test_devicetype_truncated(self, mock_post):
        mock_post.return_value = mock_response([{'success': {'username': 'k'}}])
        pair_with_bridge('10.0.0.2', instance_name='x' * 60)
        assert len(mock_post.call_args.kwargs['json']['devicetype']) == 40


class TestCredentials:
    """Tests for credential loading and saving."""

    def test_environment_wins(self, config_file, monkeypatch):
        save_credentials('10.0.0.2', 'file-key')
        monkeypatch.setenv('HUE_BRIDGE_IP', '10.0.0.3')
        monkeypatch.setenv('HUE_API_TOKEN', 'env-key')
        assert load_credentials() == {'bridge_ip': '10.0.0.3', 'api_token': 'env-key'}

    def test_from_file(self, config_file):
        save_credentials('10.0.0.2', 'file-key')
        assert load_credentials() == {'bridge_ip': '10.0.0.2', 'api_token': 'file-key'}

    def test_missing(self, config_file):
        assert load_credentials() is None

    def test_incomplete(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({'bridge_ip': '10.0.0.2'}))
        assert load_credentials() is None

    def test_save_keeps_sync_settings(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({'sync': {'poll_interval': 2.0}}))

        save_credentials('10.0.0.2', 'key')

        saved = json.loads(config_file.read_text())
        assert saved['sync'] == {'poll_interval': 2.0}
        assert saved['api_token'] == 'key'
