"""
Tests for the Flask JSON endpoints, run against a SyncEngine with a mocked cloud.
"""
import pytest

from eerosync.config import SERVER_DEBUG, SERVER_HOST
from eerosync.errors import ServerError
from eerosync.server import app, init_engine
from eerosync.state import CloudReachability


@pytest.fixture
def client(engine):
    init_engine(engine)
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client
    init_engine(None)


@pytest.fixture
def refreshed(engine):
    engine.refresh()
    return engine


# ── state ──────────────────────────────────────────────────────────────────

class TestStateEndpoints:
    def test_health(self, client):
        resp = client.get('/api/health')
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['status'] == 'healthy'
        assert body['cloud_state'] == 'unknown'

    def test_snapshot_missing(self, client):
        assert client.get('/api/snapshot').status_code == 404

    def test_manual_refresh(self, client):
        resp = client.post('/api/refresh')
        body = resp.get_json()
        assert body['success'] is True
        assert body['state']['cloud_state'] == 'reachable'
        assert client.get('/api/snapshot').get_json()['networks'][0]['id'] == 'network-123'

    def test_failed_refresh_reports_error(self, client, builder):
        builder.fetch_account.side_effect = ServerError(503, "down")
        body = client.post('/api/refresh').get_json()
        assert body['success'] is False
        assert body['message'].startswith('Manual refresh failed:')

    def test_visibility(self, client):
        resp = client.post('/api/visibility', json={'window_visible': False, 'popover_visible': False})
        assert resp.get_json()['mode'] == 'background'

    def test_unknown_route(self, client):
        resp = client.get('/api/nothing-here')
        assert resp.status_code == 404
        assert resp.get_json() == {'error': 'Not found'}


# ── actions ────────────────────────────────────────────────────────────────

class TestActionEndpoints:
    def test_high_risk_requires_confirmation(self, client, refreshed, api):
        api.call.reset_mock()
        resp = client.post('/api/actions', json={'network_id': 'network-123', 'kind': 'reboot_network'})
        assert resp.status_code == 409
        body = resp.get_json()
        assert body['confirmation_required'] is True
        assert body['message'] == 'Reboot network Home Mesh'
        api.call.assert_not_called()

    def test_confirmed_action_runs(self, client, refreshed):
        resp = client.post('/api/actions', json={'network_id': 'network-123', 'kind': 'reboot_network',
                                                 'confirmed': True})
        assert resp.status_code == 200
        assert resp.get_json()['result']['status'] == 'success'

    def test_offline_action_is_queued_then_removed(self, client, refreshed):
        refreshed._publish(cloud_state=CloudReachability.UNREACHABLE)
        resp = client.post('/api/actions', json={'network_id': 'network-123',
                                                 'kind': 'set_guest_network', 'value': False})
        assert resp.status_code == 202
        queued = client.get('/api/actions/queue').get_json()['queued_actions']
        assert len(queued) == 1
        action_id = queued[0]['action']['id']
        assert client.delete(f'/api/actions/queue/{action_id}').status_code == 200
        assert client.delete(f'/api/actions/queue/{action_id}').status_code == 404

    def test_replay(self, client, refreshed):
        refreshed._publish(cloud_state=CloudReachability.UNREACHABLE)
        client.post('/api/actions', json={'network_id': 'network-123',
                                          'kind': 'set_guest_network', 'value': True})
        body = client.post('/api/actions/replay').get_json()
        assert body == {'success': True, 'replayed': 1, 'failed': 0}

    def test_unknown_network(self, client):
        resp = client.post('/api/actions', json={'network_id': 'network-999', 'kind': 'reboot_network'})
        assert resp.status_code == 404

    def test_unknown_kind(self, client, refreshed):
        resp = client.post('/api/actions', json={'network_id': 'network-123', 'kind': 'explode'})
        assert resp.status_code == 400


# ── auth ───────────────────────────────────────────────────────────────────

class TestAuthEndpoints:
    def test_login_requires_value(self, client):
        assert client.post('/api/auth/login', json={}).status_code == 400

    def test_login_starts_verification(self, client, api, engine):
        resp = client.post('/api/auth/login', json={'login': 'pat@example.com'})
        assert resp.status_code == 200
        api.login.assert_called_once_with('pat@example.com')
        assert engine.state.auth_state.value == 'awaiting_verification'

    def test_login_upstream_error(self, client, api):
        api.login.side_effect = ServerError(429, "slow down")
        resp = client.post('/api/auth/login', json={'login': 'pat@example.com'})
        assert resp.status_code == 502

    def test_logout(self, client, api):
        assert client.post('/api/auth/logout').get_json() == {'success': True}
        api.logout.assert_called_once()


# ── probes, throughput & settings ──────────────────────────────────────────

class TestMiscEndpoints:
    def test_run_probes(self, client):
        body = client.post('/api/probes/run').get_json()
        assert body['health_label'] == 'LAN OK'
        assert client.get('/api/probes').get_json()['health_label'] == 'LAN OK'

    def test_throughput_empty(self, client):
        assert client.get('/api/throughput').get_json() == {'throughput': None}

    def test_settings_update(self, client):
        resp = client.put('/api/settings', json={'gateway_address': '10.0.0.1', 'foreground_interval': 1})
        settings = resp.get_json()['settings']
        assert settings['gateway_address'] == '10.0.0.1'
        assert settings['foreground_interval'] == 3.0
        assert client.get('/api/settings').get_json()['gateway_address'] == '10.0.0.1'

    def test_unknown_setting_rejected(self, client):
        resp = client.put('/api/settings', json={'theme': 'dark'})
        assert resp.status_code == 400

    def test_wrongly_typed_setting_rejected(self, client, engine):
        resp = client.put('/api/settings', json={'network_ids': [123, {'id': 4}]})
        assert resp.status_code == 400
        assert engine.settings.network_ids is None

    def test_string_network_ids_rejected(self, client):
        resp = client.put('/api/settings', json={'network_ids': '123'})
        assert resp.status_code == 400
        assert 'network_ids' in resp.get_json()['message']

    def test_numeric_network_ids_are_coerced(self, client):
        resp = client.put('/api/settings', json={'network_ids': [123, ' 456 ']})
        assert resp.status_code == 200
        assert resp.get_json()['settings']['network_ids'] == ['123', '456']


# ── cross-origin access ────────────────────────────────────────────────────

class TestCors:
    def test_local_origin_allowed(self, client):
        resp = client.get('/api/health', headers={'Origin': 'http://localhost:3000'})
        assert resp.headers.get('Access-Control-Allow-Origin') == 'http://localhost:3000'

    def test_foreign_origin_not_allowed(self, client):
        resp = client.get('/api/health', headers={'Origin': 'https://evil.example'})
        assert 'Access-Control-Allow-Origin' not in resp.headers

    def test_lookalike_origin_not_allowed(self, client):
        resp = client.get('/api/health', headers={'Origin': 'http://localhost.evil.example'})
        assert 'Access-Control-Allow-Origin' not in resp.headers

    def test_defaults_are_loopback_without_debug(self):
        assert SERVER_HOST == '127.0.0.1'
        assert SERVER_DEBUG is False
