"""
Shared fixtures: raw eero payloads shaped like the cloud API returns them.
"""
from datetime import datetime
from unittest.mock import MagicMock

import pytest
import pytz

from eerosync.action_queue import PendingActionQueue
from eerosync.config import Settings
from eerosync.database import init_db
from eerosync.models import AccountSnapshot
from eerosync.normalize import parse_network
from eerosync.probes import CommandResult, OfflineProbeSuite
from eerosync.snapshot_cache import SnapshotCache
from eerosync.state import SyncEngine


FETCHED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=pytz.UTC)


def client_row(mac="AA:BB:CC:DD:EE:01", url_id="dev1", **extra):
    row = {
        "url": f"/2.2/networks/123/devices/{url_id}",
        "mac": mac,
        "nickname": "Laptop",
        "ip": "192.168.4.20",
        "connected": True,
        "wireless": True,
        "source": {"location": "Living Room", "url": "/2.2/eeros/456"},
    }
    row.update(extra)
    return row


def eero_row(**extra):
    row = {
        "url": "/2.2/eeros/456",
        "mac_address": "11:22:33:44:55:66",
        "location": "Living Room",
        "serial": "GGC123",
        "gateway": True,
        "status": "green",
        "mesh_quality_bars": 5,
        "wired": True,
        "resources": {"reboot": "/2.2/eeros/456/reboot"},
    }
    row.update(extra)
    return row


def network_payload(**extra):
    payload = {
        "url": "/2.2/networks/123",
        "name": "Home",
        "nickname_label": "Home Mesh",
        "status": "connected",
        "timezone": {"value": "America/Los_Angeles"},
        "guest_network": {"enabled": True, "name": "Home Guest"},
        "devices": {"count": 1, "data": [client_row(usage={"down_mbps": 12.0, "up_mbps": 1.5})]},
        "eeros": {"data": [eero_row()]},
        "profiles": [{"url": "/2.2/networks/123/profiles/77", "name": "Kids", "paused": False}],
        "resources": {"reboot": "/2.2/networks/123/reboot"},
    }
    payload.update(extra)
    return payload


@pytest.fixture
def db_path(tmp_path):
    """Fresh SQLite database for the test."""
    path = str(tmp_path / "eerosync-test.db")
    init_db(path)
    return path


# ── sync engine wiring ─────────────────────────────────────────────────────

HEALTHY_TOOLS = {
    "ip": CommandResult(True, "default via 192.168.4.1 dev wlan0\n"),
    "ping": CommandResult(True, "time=1.0 ms"),
    "dig": CommandResult(True, "status: NOERROR"),
    "nc": CommandResult(True, ""),
}


def healthy_runner(args, timeout=None):
    """Probe runner for a LAN where every local tool answers."""
    return HEALTHY_TOOLS.get(args[0], CommandResult(False, ""))


def account_snapshot(fetched_at=FETCHED_AT, **payload):
    return AccountSnapshot(fetched_at=fetched_at,
                           networks=[parse_network(network_payload(**payload), sampled_at=fetched_at)])


@pytest.fixture
def api():
    api = MagicMock()
    api.is_authenticated = True
    api.restore_session.return_value = True
    return api


@pytest.fixture
def builder():
    builder = MagicMock()
    builder.fetch_account.return_value = account_snapshot()
    return builder


@pytest.fixture
def cache(tmp_path, db_path):
    return SnapshotCache(account_key="test", path=str(tmp_path / "snap.json"), db_path=db_path)


@pytest.fixture
def engine(api, builder, cache, tmp_path, db_path):
    """SyncEngine with a mocked cloud, real SQLite queue and scripted probes."""
    return SyncEngine(
        api,
        settings=Settings(),
        builder=builder,
        queue=PendingActionQueue(account_key="test", db_path=db_path),
        probes=OfflineProbeSuite(runner=healthy_runner, clock=lambda: 0.0),
        scheduler=MagicMock(),
        sampler=MagicMock(),
        snapshot_cache=cache,
        settings_path=str(tmp_path / "settings.json"),
    )
