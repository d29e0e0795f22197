"""
Unit tests for the snapshot builder against a canned eero cloud.
"""
import copy
from datetime import datetime

import pytest
import pytz

from eerosync.api_client import EeroAPI
from eerosync.config import UpdateConfig
from eerosync.errors import InvalidPayload, ServerError
from eerosync.snapshot_builder import SnapshotBuilder, activity_window, with_query

from tests.conftest import FETCHED_AT, client_row, eero_row, network_payload


class FakeAPI:
    """Serves canned payloads by exact path; anything else is a 404."""

    fetch_resource_data = EeroAPI.fetch_resource_data
    probe_candidates = EeroAPI.probe_candidates

    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    def call(self, method, path_or_url, json=None, params=None, **kwargs):
        self.requested.append(path_or_url)
        found = self.routes.get(path_or_url)
        if isinstance(found, Exception):
            raise found
        if found is None:
            raise ServerError(404, "Not Found")
        return copy.deepcopy(found)

    def get(self, path_or_url, params=None):
        return self.call("GET", path_or_url, params=params)


LEAN = UpdateConfig(include_activity=False, include_channel_utilization=False)


def account_routes():
    body = network_payload()
    body.pop("devices")
    body.pop("eeros")
    return {
        "/2.2/account": {
            "name": "Pat",
            "networks": {"data": [{"url": "/2.2/networks/123"},
                                  {"url": "/2.2/networks/456", "name": "Cabin"}]},
        },
        "/2.2/networks/123": body,
        "/2.2/networks/456": ServerError(500, "boom"),
        "/2.2/networks/123/devices?thread=true": [client_row(), client_row(mac="AA:BB:CC:DD:EE:02", url_id="dev2")],
        "/2.2/networks/123/devices": [client_row()],
        "/2.2/networks/123/profiles": [{"url": "/2.2/networks/123/profiles/77", "name": "Kids"}],
        "/2.2/networks/123/eeros": [eero_row()],
        "/2.2/eeros/456": {"os_version": "7.1.1"},
        "/2.2/networks/123/guestnetwork": {"enabled": False, "name": "Visitors"},
    }


# ── activity windows ───────────────────────────────────────────────────────

class TestActivityWindow:
    def test_week_starts_on_sunday(self):
        window = activity_window("week", "UTC", now=FETCHED_AT)
        assert window["start"] == "2024-04-28T00:00:00.000Z"
        assert window["end"] == "2024-05-04T23:59:59.000Z"
        assert window["cadence"] == "daily"

    def test_sunday_is_its_own_week_start(self):
        sunday = datetime(2024, 4, 28, 9, 0, tzinfo=pytz.UTC)
        assert activity_window("week", "UTC", now=sunday)["start"] == "2024-04-28T00:00:00.000Z"

    def test_month_covers_calendar_month(self):
        window = activity_window("month", "UTC", now=FETCHED_AT)
        assert window["start"] == "2024-05-01T00:00:00.000Z"
        assert window["end"] == "2024-05-31T23:59:59.000Z"

    def test_day_uses_network_timezone(self):
        window = activity_window("day", "America/Los_Angeles", now=FETCHED_AT)
        assert window["start"] == "2024-05-01T07:00:00.000Z"
        assert window["end"] == "2024-05-02T06:59:59.000Z"
        assert window["cadence"] == "hourly"
        assert window["timezone"] == "America/Los_Angeles"

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            activity_window("year")


# ── fetch_account ──────────────────────────────────────────────────────────

class TestFetchAccount:
    def test_failed_network_is_skipped(self):
        snapshot = SnapshotBuilder(FakeAPI(account_routes())).fetch_account(LEAN)
        assert [n.id for n in snapshot.networks] == ["network-123"]
        assert snapshot.skipped_network_ids == ("network-456",)
        assert snapshot.account_name == "Pat"

    def test_richest_device_variant_wins(self):
        snapshot = SnapshotBuilder(FakeAPI(account_routes())).fetch_account(LEAN)
        assert len(snapshot.networks[0].clients) == 2

    def test_enrichments_are_merged(self):
        snapshot = SnapshotBuilder(FakeAPI(account_routes())).fetch_account(LEAN)
        network = snapshot.networks[0]
        assert network.guest_network.enabled is False
        assert network.guest_network.name == "Visitors"
        assert network.devices[0].os_version == "7.1.1"
        assert [p.id for p in network.profiles] == ["profile-77"]

    def test_network_filter(self):
        api = FakeAPI(account_routes())
        snapshot = SnapshotBuilder(api).fetch_account(
            UpdateConfig(network_ids=["123"], include_activity=False, include_channel_utilization=False))
        assert snapshot.skipped_network_ids == ()
        assert "/2.2/networks/456" not in api.requested

    def test_all_networks_failing_raises(self):
        routes = account_routes()
        routes["/2.2/networks/123"] = ServerError(503, "unavailable")
        with pytest.raises(ServerError):
            SnapshotBuilder(FakeAPI(routes)).fetch_account(LEAN)

    def test_account_payload_must_be_object(self):
        with pytest.raises(InvalidPayload):
            SnapshotBuilder(FakeAPI({"/2.2/account": []})).fetch_account(LEAN)

    def test_account_failure_propagates(self):
        with pytest.raises(ServerError):
            SnapshotBuilder(FakeAPI({})).fetch_account(LEAN)

    def test_device_link_with_query_string(self):
        routes = account_routes()
        routes["/2.2/networks/123"]["resources"] = {"devices": "/2.2/networks/123/devices?limit=500"}
        routes["/2.2/networks/123/devices?limit=500&thread=true"] = [
            client_row(), client_row(mac="AA:BB:CC:DD:EE:02", url_id="dev2")]
        api = FakeAPI(routes)
        snapshot = SnapshotBuilder(api).fetch_account(LEAN)
        assert len(snapshot.networks[0].clients) == 2
        assert all(path.count("?") <= 1 for path in api.requested)

    def test_configured_timezone_is_the_fallback(self):
        routes = account_routes()
        routes["/2.2/networks/123"].pop("timezone")
        captured = []

        class WindowRecorder(SnapshotBuilder):
            def fetch_activity(self, network_url, tz_name=None):
                captured.append(tz_name)
                return None

        WindowRecorder(FakeAPI(routes)).fetch_account(
            UpdateConfig(include_channel_utilization=False, timezone="Europe/Berlin"))
        assert captured == ["Europe/Berlin"]

    def test_network_timezone_wins_over_configured(self):
        captured = []

        class WindowRecorder(SnapshotBuilder):
            def fetch_activity(self, network_url, tz_name=None):
                captured.append(tz_name)
                return None

        WindowRecorder(FakeAPI(account_routes())).fetch_account(
            UpdateConfig(include_channel_utilization=False, timezone="Europe/Berlin"))
        assert captured == ["America/Los_Angeles"]


class TestWithQuery:
    def test_plain_path(self):
        assert with_query("/2.2/networks/1/devices", "thread=true") == "/2.2/networks/1/devices?thread=true"

    def test_path_with_query(self):
        assert with_query("/devices?limit=5", "thread=true") == "/devices?limit=5&thread=true"

    def test_empty_query(self):
        assert with_query("/devices?limit=5", "") == "/devices?limit=5"
