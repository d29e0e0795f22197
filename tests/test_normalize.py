"""
Unit tests for payload normalization into typed records.
"""
import pytest

from eerosync.models import REALTIME_SOURCE_LABEL
from eerosync.normalize import (
    needs_telemetry_detail,
    parse_client,
    parse_device,
    parse_network,
    parse_profile,
    realtime_summary,
    telemetry_score,
)

from tests.conftest import FETCHED_AT, client_row, eero_row, network_payload


# ── clients ────────────────────────────────────────────────────────────────

class TestParseClient:
    def test_id_derives_from_mac(self):
        client = parse_client(client_row(mac="AA:BB:CC:DD:EE:01"))
        assert client.id == "client-aabbccddee01"

    def test_same_mac_different_api_ids_gives_same_id(self):
        first = parse_client(client_row(mac="AA:BB:CC:DD:EE:01", url_id="x1"))
        second = parse_client(client_row(mac="aa-bb-cc-dd-ee-01", url_id="y2"))
        assert first.id == second.id

    def test_falls_back_to_url_id_without_mac(self):
        row = client_row(mac=None)
        assert parse_client(row).id == "client-dev1"

    def test_missing_fields_stay_none(self):
        client = parse_client({"mac": "AA:BB:CC:DD:EE:02"})
        assert client.name is None
        assert client.display_name == "AA:BB:CC:DD:EE:02"
        assert client.usage_down_mbps is None
        assert client.connected is None

    def test_rates_from_nested_info(self):
        row = client_row(connectivity={"rx_rate_info": {"rate_bps": 866_700_000}, "tx_bitrate": "144 Mbit/s"})
        client = parse_client(row)
        assert client.rx_rate_mbps == pytest.approx(866.7)
        assert client.tx_rate_mbps == 144.0


# ── telemetry scoring ──────────────────────────────────────────────────────

class TestTelemetryScore:
    def test_numeric_rates_outweigh_row_count(self):
        rich = [{"rx_rate_info": {"rate_bps": 1}}]
        plain = [{"mac": str(i)} for i in range(50)]
        assert telemetry_score(rich) > telemetry_score(plain)

    def test_row_count_breaks_ties(self):
        assert telemetry_score([{}, {}]) > telemetry_score([{}])

    def test_detail_needed_when_usage_missing(self):
        assert needs_telemetry_detail(client_row()) is True

    def test_detail_not_needed_when_complete(self):
        row = client_row(
            usage={"down_mbps": 1, "up_mbps": 1, "down_percent_current_usage": 2,
                   "up_percent_current_usage": 3},
            rx_rate_info={"rate_mbps": 100}, tx_rate_info={"rate_mbps": 50},
        )
        assert needs_telemetry_detail(row) is False


# ── devices & profiles ─────────────────────────────────────────────────────

class TestParseDevice:
    def test_id_and_flags(self):
        device = parse_device(eero_row())
        assert device.id == "eero-112233445566"
        assert device.is_gateway is True
        assert device.is_online is True
        assert device.resources["reboot"] == "/2.2/eeros/456/reboot"

    def test_missing_name_and_gateway_stay_none(self):
        device = parse_device({"mac_address": "11:22:33:44:55:66"})
        assert device.name is None
        assert device.is_gateway is None
        assert device.display_name == "eero"

    def test_legacy_ethernet_statuses(self):
        row = eero_row(ethernet_status={"statuses": [
            {"interfaceNumber": 1, "hasCarrier": True, "speed": "P1000"},
        ]})
        device = parse_device(row)
        assert len(device.ethernet_statuses) == 1


class TestParseProfile:
    def test_filters_and_blocked_apps(self):
        data = {
            "url": "/2.2/networks/123/profiles/77",
            "name": "Kids",
            "paused": True,
            "unified_content_filters": {"dns_policies": {"block_gaming_content": True}},
            "premium_dns": {"blocked_applications": ["tiktok", " ", "fortnite"]},
        }
        profile = parse_profile(data)
        assert profile.id == "profile-77"
        assert profile.paused is True
        assert profile.filters.gaming is True
        assert profile.filters.adult is None
        assert profile.blocked_applications == ("tiktok", "fortnite")

    def test_ad_block_membership(self):
        data = {"url": "/2.2/networks/123/profiles/77", "name": "Kids"}
        assert parse_profile(data, ad_block_urls={"/2.2/networks/123/profiles/77"}).ad_block is True
        assert parse_profile(data, ad_block_urls={"other"}).ad_block is False
        assert parse_profile(data).ad_block is None


# ── network ────────────────────────────────────────────────────────────────

class TestParseNetwork:
    def test_realtime_sums_connected_client_usage(self):
        network = parse_network(network_payload(), sampled_at=FETCHED_AT)
        assert network.guest_network.enabled is True
        assert network.realtime.download_mbps == 12.0
        assert network.realtime.upload_mbps == 1.5
        assert network.realtime.source_label == REALTIME_SOURCE_LABEL

    def test_identity_and_labels(self):
        network = parse_network(network_payload(), sampled_at=FETCHED_AT)
        assert network.id == "network-123"
        assert network.display_name == "Home Mesh"
        assert network.timezone == "America/Los_Angeles"

    def test_derived_counts(self):
        network = parse_network(network_payload(), sampled_at=FETCHED_AT)
        assert network.connected_clients_count == 1
        assert network.devices[0].connected_client_count == 1
        assert network.devices[0].connected_client_names == ("Laptop",)
        assert network.mesh.eero_count == 1
        assert network.mesh.online_eero_count == 1

    def test_duplicate_client_rows_collapse(self):
        rows = [client_row(url_id="a"), client_row(url_id="b")]
        network = parse_network(network_payload(devices=rows), sampled_at=FETCHED_AT)
        assert len(network.clients) == 1

    def test_sparse_payload_does_not_fail(self):
        network = parse_network({"url": "/2.2/networks/9"})
        assert network.id == "network-9"
        assert network.clients == ()
        assert network.realtime is None
        assert network.name is None
        assert network.display_name == "Network"


class TestRealtimeSummary:
    def test_ignores_disconnected_and_negative(self):
        clients = [
            parse_client(client_row(mac="AA:BB:CC:DD:EE:01", usage={"down_mbps": 5.0})),
            parse_client(client_row(mac="AA:BB:CC:DD:EE:02", usage={"down_mbps": -3.0})),
            parse_client(client_row(mac="AA:BB:CC:DD:EE:03", connected=False, usage={"down_mbps": 50.0})),
        ]
        assert realtime_summary(clients).download_mbps == 5.0

    def test_none_without_usage(self):
        assert realtime_summary([parse_client(client_row())]) is None
