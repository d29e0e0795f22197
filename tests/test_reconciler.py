"""
Unit tests for snapshot reconciliation (fresh ?? previous merging).
"""
import dataclasses
from dataclasses import replace
from datetime import timedelta

import pytest

from eerosync.models import AccountSnapshot, ChannelUtilizationSummary, EthernetPortStatus
from eerosync.normalize import parse_network
from eerosync.reconciler import merge_ports, merge_rows, reconcile

from tests.conftest import FETCHED_AT, client_row, eero_row, network_payload


def snapshot(payload, fetched_at=FETCHED_AT, **kwargs):
    return AccountSnapshot(
        fetched_at=fetched_at,
        networks=[parse_network(payload, sampled_at=fetched_at)],
        **kwargs,
    )


# ── merge semantics ────────────────────────────────────────────────────────

class TestReconcile:
    def test_no_previous_returns_fresh(self):
        fresh = snapshot(network_payload())
        assert reconcile(fresh, None) is fresh

    def test_empty_fresh_field_keeps_previous(self):
        previous = snapshot(network_payload())
        fresh = snapshot(network_payload(guest_network={}, nickname_label=None),
                         fetched_at=FETCHED_AT + timedelta(minutes=1))
        merged = reconcile(fresh, previous)
        network = merged.networks[0]
        assert network.guest_network.enabled is True
        assert network.guest_network.name == "Home Guest"
        assert network.nickname_label == "Home Mesh"

    def test_fresh_values_win(self):
        previous = snapshot(network_payload())
        fresh = snapshot(network_payload(guest_network={"enabled": False}),
                         fetched_at=FETCHED_AT + timedelta(minutes=1))
        merged = reconcile(fresh, previous)
        assert merged.networks[0].guest_network.enabled is False
        assert merged.networks[0].guest_network.name == "Home Guest"
        assert merged.fetched_at == fresh.fetched_at

    def test_idempotent(self):
        previous = snapshot(network_payload())
        fresh = snapshot(
            network_payload(devices=[client_row(mac="AA:BB:CC:DD:EE:09", url_id="new")],
                            guest_network={}),
            fetched_at=FETCHED_AT + timedelta(minutes=1),
        )
        once = reconcile(fresh, previous)
        twice = reconcile(once, previous)
        assert twice == once

    def test_idempotent_with_skipped_network(self):
        previous = snapshot(network_payload())
        fresh = AccountSnapshot(
            fetched_at=FETCHED_AT + timedelta(minutes=1),
            networks=[parse_network(network_payload(url="/2.2/networks/999"),
                                    sampled_at=FETCHED_AT + timedelta(minutes=1))],
            skipped_network_ids=["network-123"],
        )
        once = reconcile(fresh, previous)
        assert reconcile(once, previous) == once
        assert once.skipped_network_ids == ("network-123",)
        assert once.network("network-123") == previous.network("network-123")

    def test_previous_only_clients_are_kept(self):
        previous = snapshot(network_payload())
        fresh = snapshot(network_payload(devices=[client_row(mac="AA:BB:CC:DD:EE:09", url_id="new")]),
                         fetched_at=FETCHED_AT + timedelta(minutes=1))
        merged = reconcile(fresh, previous).networks[0]
        assert [c.id for c in merged.clients] == ["client-aabbccddee09", "client-aabbccddee01"]

    def test_counts_are_recomputed_after_merge(self):
        previous = snapshot(network_payload())
        fresh = snapshot(network_payload(devices=[client_row(mac="AA:BB:CC:DD:EE:09", url_id="new")]),
                         fetched_at=FETCHED_AT + timedelta(minutes=1))
        merged = reconcile(fresh, previous).networks[0]
        assert merged.connected_clients_count == 2
        assert merged.devices[0].connected_client_count == 2

    def test_realtime_recomputed_from_merged_rows(self):
        previous = snapshot(network_payload())
        fresh = snapshot(network_payload(devices=[client_row(usage={"down_mbps": 3.0})]),
                         fetched_at=FETCHED_AT + timedelta(minutes=1))
        merged = reconcile(fresh, previous).networks[0]
        assert merged.realtime.download_mbps == 3.0
        assert merged.realtime.upload_mbps == 1.5
        assert merged.realtime.sampled_at == fresh.fetched_at

    def test_networks_missing_from_fresh_are_dropped(self):
        previous = snapshot(network_payload())
        fresh = snapshot(network_payload(url="/2.2/networks/999"))
        merged = reconcile(fresh, previous)
        assert [n.id for n in merged.networks] == ["network-999"]

    def test_skipped_networks_are_kept(self):
        previous = snapshot(network_payload())
        fresh = AccountSnapshot(fetched_at=FETCHED_AT, networks=[],
                                skipped_network_ids=["network-123"])
        merged = reconcile(fresh, previous)
        assert [n.id for n in merged.networks] == ["network-123"]

    def test_inputs_are_not_modified(self):
        previous = snapshot(network_payload())
        fresh = snapshot(network_payload(guest_network={}))
        before = fresh.networks[0].guest_network
        reconcile(fresh, previous)
        assert fresh.networks[0].guest_network is before
        assert before.enabled is None


# ── row & port matching ────────────────────────────────────────────────────

class TestNoRegression:
    def later(self, **payload):
        return snapshot(network_payload(**payload), fetched_at=FETCHED_AT + timedelta(minutes=1))

    def test_missing_network_name_keeps_previous(self):
        previous = snapshot(network_payload())
        merged = reconcile(self.later(name=None, nickname_label=None), previous).networks[0]
        assert merged.name == "Home"
        assert merged.display_name == "Home Mesh"

    def test_missing_client_name_keeps_previous(self):
        previous = snapshot(network_payload())
        fresh = self.later(devices=[client_row(nickname=None)])
        assert reconcile(fresh, previous).networks[0].clients[0].name == "Laptop"

    def test_missing_gateway_flag_keeps_previous(self):
        previous = snapshot(network_payload())
        row = eero_row(location=None)
        del row["gateway"]
        merged = reconcile(self.later(eeros={"data": [row]}), previous).networks[0]
        assert merged.devices[0].is_gateway is True
        assert merged.devices[0].name == "Living Room"
        assert merged.mesh.gateway_name == "Living Room"

    def test_missing_profile_name_keeps_previous(self):
        previous = snapshot(network_payload())
        fresh = self.later(profiles=[{"url": "/2.2/networks/123/profiles/77", "paused": True}])
        profile = reconcile(fresh, previous).networks[0].profiles[0]
        assert profile.name == "Kids"
        assert profile.paused is True

    def test_gateway_flag_false_is_kept(self):
        previous = snapshot(network_payload())
        merged = reconcile(self.later(eeros={"data": [eero_row(gateway=False)]}), previous).networks[0]
        assert merged.devices[0].is_gateway is False


class TestImmutability:
    def test_records_are_frozen(self):
        merged = reconcile(snapshot(network_payload()), snapshot(network_payload()))
        network = merged.networks[0]
        assert isinstance(network.clients, tuple)
        with pytest.raises(dataclasses.FrozenInstanceError):
            network.name = "Other"
        with pytest.raises(dataclasses.FrozenInstanceError):
            network.clients[0].connected = False

    def test_merged_snapshot_does_not_alias_previous_lists(self):
        previous = snapshot(network_payload())
        fresh = snapshot(network_payload(devices=[client_row(mac="AA:BB:CC:DD:EE:09", url_id="new")]))
        merged = reconcile(fresh, previous)
        assert isinstance(merged.networks, tuple)
        assert not hasattr(merged.networks[0].clients, "append")
        assert len(previous.networks[0].clients) == 1


class TestMergeRows:
    def test_mac_fallback_keeps_previous_id(self):
        previous = parse_network(network_payload()).clients
        renamed = replace(previous[0], id="client-other", name="", ip=None)
        merged = merge_rows([renamed], previous)
        assert len(merged) == 1
        assert merged[0].id == previous[0].id
        assert merged[0].name == "Laptop"
        assert merged[0].ip == "192.168.4.20"

    def test_devices_match_by_mac(self):
        device = parse_network(network_payload()).devices[0]
        fresh = replace(device, id="eero-somethingelse", status=None)
        merged = merge_rows([fresh], [device])
        assert merged[0].id == device.id
        assert merged[0].status == "green"


class TestMergePorts:
    def test_ports_pair_by_interface_number(self):
        old = EthernetPortStatus(id="a", interface_number=1, speed_tag="1 Gbps", has_carrier=True)
        new = EthernetPortStatus(id="b", interface_number=1, has_carrier=False)
        merged = merge_ports([new], [old])
        assert len(merged) == 1
        assert merged[0].has_carrier is False
        assert merged[0].speed_tag == "1 Gbps"

    def test_unmatched_previous_ports_are_appended(self):
        old = EthernetPortStatus(id="a", port_name="LAN 2")
        new = EthernetPortStatus(id="b", interface_number=1)
        assert len(merge_ports([new], [old])) == 2


class TestAtomicSummaries:
    def test_channel_utilization_is_replaced_whole(self):
        base = parse_network(network_payload())
        old = replace(base, channel_utilization=ChannelUtilizationSummary(radios=[], sampled_at=FETCHED_AT))
        later = FETCHED_AT + timedelta(minutes=5)
        new = replace(base, channel_utilization=ChannelUtilizationSummary(radios=[], sampled_at=later))
        merged = reconcile(AccountSnapshot(fetched_at=later, networks=[new]),
                           AccountSnapshot(fetched_at=FETCHED_AT, networks=[old]))
        assert merged.networks[0].channel_utilization.sampled_at == later
