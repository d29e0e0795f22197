#!/usr/bin/env python3
"""
eerosync - HTTP API
JSON endpoints for a local UI: published state, manual refresh, visibility,
action submission and the pending action queue, authentication, offline
probes, local throughput and settings.

Run with ``python -m eerosync.server``.
"""
import logging
from dataclasses import replace

from flask import Flask, jsonify, request
from flask_cors import CORS

from eerosync.actions import ResultStatus
from eerosync.api_client import EeroAPI
from eerosync.config import (
    CORS_ORIGINS,
    SERVER_DEBUG,
    SERVER_HOST,
    SERVER_PORT,
    VERSION,
    Settings,
    configure_logging,
)
from eerosync.credentials import CredentialStore
from eerosync.errors import EeroAPIError, describe
from eerosync.models import to_dict
from eerosync.state import SyncEngine

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app, origins=CORS_ORIGINS)

_engine = None

RESULT_HTTP_STATUS = {
    ResultStatus.SUCCESS: 200,
    ResultStatus.QUEUED: 202,
    ResultStatus.REJECTED: 409,
    ResultStatus.FAILED: 502,
}


def init_engine(engine):
    """Install the SyncEngine the endpoints operate on."""
    global _engine
    _engine = engine
    return engine


def get_engine():
    global _engine
    if _engine is None:
        _engine = SyncEngine(EeroAPI(credential_store=CredentialStore()))
    return _engine


# ---------------------------------------------------------------------------
# Request Logging & Error Handlers
# ---------------------------------------------------------------------------

@app.before_request
def log_request():
    """Log incoming API requests."""
    if request.path.startswith('/api/'):
        logger.debug("API request: %s %s", request.method, request.path)


@app.errorhandler(404)
def not_found(e):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(500)
def server_error(e):
    logger.error("Internal server error: %s", str(e))
    return jsonify({'error': 'Internal server error'}), 500


def _json_body():
    return request.get_json(silent=True) or {}


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@app.route('/api/health')
def health():
    """Health check endpoint."""
    state = get_engine().state
    return jsonify({
        'status': 'healthy',
        'version': VERSION,
        'cloud_state': state.cloud_state.value,
        'status_label': state.status_label,
    })


@app.route('/api/state')
def get_state():
    return jsonify(get_engine().state.to_dict())


@app.route('/api/snapshot')
def get_snapshot():
    snapshot = get_engine().state.snapshot
    if snapshot is None:
        return jsonify({'error': 'No snapshot available yet'}), 404
    return jsonify(snapshot.to_dict())


@app.route('/api/refresh', methods=['POST'])
def api_manual_refresh():
    """Trigger an immediate forced refresh."""
    engine = get_engine()
    if not engine.refresh(force=True, reason="manual"):
        return jsonify({'success': True, 'message': 'Refresh already in progress'})
    state = engine.state
    return jsonify({
        'success': state.last_error is None,
        'message': state.last_error or 'Snapshot refreshed',
        'state': state.to_dict(),
    })


@app.route('/api/visibility', methods=['POST'])
def set_visibility():
    data = _json_body()
    mode = get_engine().set_visibility(
        popover_visible=data.get('popover_visible'),
        window_visible=data.get('window_visible'),
    )
    return jsonify({'success': True, 'mode': mode})


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@app.route('/api/actions/queue')
def get_action_queue():
    engine = get_engine()
    return jsonify({'queued_actions': [q.to_dict() for q in engine.queue.all()]})


@app.route('/api/actions', methods=['POST'])
def submit_action():
    """Build an action from the request and run it through the confirmation policy."""
    data = _json_body()
    engine = get_engine()
    try:
        action = engine.build_action(
            data.get('network_id'),
            data.get('kind'),
            target_id=data.get('target_id'),
            value=data.get('value'),
            key=data.get('key'),
        )
    except LookupError as e:
        return jsonify({'success': False, 'message': str(e)}), 404
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    if engine.needs_confirmation(action) and not data.get('confirmed'):
        return jsonify({
            'success': False,
            'confirmation_required': True,
            'title': 'Confirm Action',
            'message': action.label,
            'action': action.to_dict(),
        }), 409

    result = engine.submit_action(action, confirmed=True)
    return jsonify({
        'success': result.status == ResultStatus.SUCCESS,
        'result': result.to_dict(),
        'action': action.to_dict(),
    }), RESULT_HTTP_STATUS[result.status]


@app.route('/api/actions/replay', methods=['POST'])
def replay_actions():
    replayed, failed = get_engine().replay_queued_actions()
    return jsonify({'success': failed == 0, 'replayed': replayed, 'failed': failed})


@app.route('/api/actions/queue/<action_id>', methods=['DELETE'])
def remove_queued_action(action_id):
    if get_engine().remove_queued_action(action_id):
        return jsonify({'success': True})
    return jsonify({'success': False, 'message': 'Queued action not found'}), 404


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

@app.route('/api/auth/login', methods=['POST'])
def auth_login():
    login = (_json_body().get('login') or get_engine().settings.default_login or '').strip()
    if not login:
        return jsonify({'success': False, 'message': 'Enter a phone number or email first.'}), 400
    try:
        get_engine().login(login)
    except EeroAPIError as e:
        return jsonify({'success': False, 'message': describe(e)}), 502
    return jsonify({'success': True, 'message': 'Verification code sent'})


@app.route('/api/auth/verify', methods=['POST'])
def auth_verify():
    code = (_json_body().get('code') or '').strip()
    if not code:
        return jsonify({'success': False, 'message': 'Enter the verification code.'}), 400
    try:
        account = get_engine().verify(code)
    except EeroAPIError as e:
        return jsonify({'success': False, 'message': describe(e)}), 502
    return jsonify({'success': True, 'account': account})


@app.route('/api/auth/logout', methods=['POST'])
def auth_logout():
    get_engine().logout()
    return jsonify({'success': True})


# ---------------------------------------------------------------------------
# Offline Probes & Throughput
# ---------------------------------------------------------------------------

def _probe_payload(snapshot):
    return dict(to_dict(snapshot), health_label=snapshot.health_label)


@app.route('/api/probes')
def get_probes():
    return jsonify(_probe_payload(get_engine().state.probes))


@app.route('/api/probes/run', methods=['POST'])
def run_probes():
    return jsonify(_probe_payload(get_engine().run_probes(force=True)))


@app.route('/api/throughput')
def get_throughput():
    sample = get_engine().state.throughput
    return jsonify({'throughput': sample.to_dict() if sample else None})


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@app.route('/api/settings', methods=['GET'])
def get_settings():
    return jsonify(get_engine().settings.to_dict())


@app.route('/api/settings', methods=['PUT'])
def update_settings():
    data = _json_body()
    engine = get_engine()
    known = set(Settings.__dataclass_fields__)
    unknown = sorted(k for k in data if k not in known)
    if unknown:
        return jsonify({'success': False, 'message': f"Unknown settings: {', '.join(unknown)}"}), 400
    try:
        settings = engine.update_settings(replace(engine.settings, **data))
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    return jsonify({'success': True, 'settings': settings.to_dict()})


# ---------------------------------------------------------------------------
# Application Entry Point
# ---------------------------------------------------------------------------

def main():
    configure_logging()
    logger.info("Starting eerosync %s", VERSION)

    # Initialize database
    try:
        from eerosync.database import init_db
        init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.warning("Database init failed: %s", str(e))

    # Bootstrap state and start the poller and throughput sampler
    get_engine().start()

    logger.info("Serving on %s:%d", SERVER_HOST, SERVER_PORT)
    app.run(host=SERVER_HOST, port=SERVER_PORT, debug=SERVER_DEBUG, use_reloader=False)


if __name__ == '__main__':
    main()
