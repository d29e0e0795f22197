#!/usr/bin/env python3
"""
eerosync - Payload Normalization
Turns the raw, inconsistently shaped network payloads gathered by the snapshot
builder into typed records. Each field is read from the first of several
alternate paths; anything missing simply stays None.
"""
import logging
import re
from dataclasses import replace
from datetime import datetime, timezone

from eerosync import values as v
from eerosync.models import (
    ActivitySummary,
    ApplicationEntry,
    ChannelUtilizationRadio,
    ChannelUtilizationSample,
    ChannelUtilizationSummary,
    Client,
    Device,
    DiagnosticsSummary,
    EthernetPortStatus,
    GuestNetwork,
    HealthSummary,
    MeshSummary,
    Network,
    NetworkFeatures,
    PortDetail,
    Profile,
    ProfileFilters,
    ProxiedNodesSummary,
    RealtimeSummary,
    RoutingSummary,
    SecuritySummary,
    SpeedSummary,
    SupportSummary,
    UpdateSummary,
    WirelessAttachment,
    WirelessCongestionSummary,
)

logger = logging.getLogger(__name__)

PERIODS = ("day", "week", "month")
POOR_SIGNAL_DBM = -70.0
_DBM_RE = re.compile(r"-?\d+(?:\.\d+)?")

# Content-filter flag -> dns_policies key
PROFILE_FILTER_KEYS = {
    "adult": "block_pornographic_content",
    "gaming": "block_gaming_content",
    "messaging": "block_messaging_content",
    "shopping": "block_shopping_content",
    "social": "block_social_content",
    "streaming": "block_streaming_content",
    "violent": "block_violent_content",
}


# ---------------------------------------------------------------------------
# Client telemetry
# ---------------------------------------------------------------------------

RX_RATE_PATHS = [
    ["connectivity", "rx_rate_info"], ["connectivity", "rx_rate"],
    ["rx_rate_info"], ["rx_rate"], ["connectivity", "rx_bitrate"], ["rx_bitrate"],
]
TX_RATE_PATHS = [
    ["connectivity", "tx_rate_info"], ["connectivity", "tx_rate"],
    ["tx_rate_info"], ["tx_rate"], ["connectivity", "tx_bitrate"], ["tx_bitrate"],
]
NUMERIC_RATE_PATHS = [
    ["connectivity", "rx_rate_info", "rate_bps"], ["connectivity", "tx_rate_info", "rate_bps"],
    ["rx_rate_info", "rate_bps"], ["tx_rate_info", "rate_bps"],
]
BITRATE_STRING_PATHS = [
    ["connectivity", "rx_bitrate"], ["connectivity", "tx_bitrate"], ["rx_bitrate"], ["tx_bitrate"],
]
USAGE_DOWN_PATHS = [
    ["usage", "down_mbps"], ["usage", "downMbps"], ["usage", "download_mbps"],
    ["usage_down_mbps"], ["down_mbps"],
]
USAGE_UP_PATHS = [
    ["usage", "up_mbps"], ["usage", "upMbps"], ["usage", "upload_mbps"],
    ["usage_up_mbps"], ["up_mbps"],
]
USAGE_DOWN_PERCENT_PATHS = [["usage", "down_percent_current_usage"], ["down_percent_current_usage"]]
USAGE_UP_PERCENT_PATHS = [["usage", "up_percent_current_usage"], ["up_percent_current_usage"]]


def _first_rate(data, paths):
    for path in paths:
        rate = v.rate_mbps(v.value(data, path))
        if rate is not None:
            return rate
    return None


def telemetry_score(rows):
    """
    Rank a device-list response by how much live telemetry it carries.

    Numeric rates dominate, then bitrate strings, usage figures and source
    back-references, with the row count as the tie breaker.
    """
    numeric = sum(1 for row in rows if v.first_number(row, NUMERIC_RATE_PATHS) is not None)
    strings = sum(1 for row in rows if v.first_string(row, BITRATE_STRING_PATHS) is not None)
    usage = sum(1 for row in rows if v.first_number(row, USAGE_DOWN_PATHS + USAGE_UP_PATHS) is not None)
    source = sum(1 for row in rows if v.first_string(row, [["source", "url"], ["source", "location"]]))
    return numeric * 10000 + strings * 1000 + usage * 100 + source * 10 + len(rows)


def needs_telemetry_detail(row):
    """A row needs a detail fetch unless it already has both rates and all usage fields."""
    required = (
        v.first_number(row, USAGE_DOWN_PATHS),
        v.first_number(row, USAGE_UP_PATHS),
        v.first_number(row, USAGE_DOWN_PERCENT_PATHS),
        v.first_number(row, USAGE_UP_PERCENT_PATHS),
        _first_rate(row, RX_RATE_PATHS),
        _first_rate(row, TX_RATE_PATHS),
    )
    return any(item is None for item in required)


def parse_client(data):
    url = v.first_string(data, [["url"], ["resource_url"]])
    mac = v.string(data, ["mac"])
    client_id = v.stable_identifier(
        "client",
        primary=v.normalize_mac(mac),
        fallbacks=[v.id_from_url(url), mac, v.string(data, ["ip"]), v.string(data, ["ipv4"]),
                   v.string(data, ["hostname"]), v.string(data, ["nickname"])],
    )
    ips = data.get("ips") if isinstance(data.get("ips"), list) else []
    return Client(
        id=client_id,
        name=v.first_string(data, [["nickname"], ["display_name"], ["hostname"]]),
        mac=mac,
        ip=v.first_string(data, [["ip"], ["ipv4"]]) or (v.to_string(ips[0]) if ips else None),
        hostname=v.string(data, ["hostname"]),
        manufacturer=v.string(data, ["manufacturer"]),
        device_type=v.first_string(data, [["device_type"], ["model_name"]]),
        connected=v.boolean(data, ["connected"]),
        paused=v.boolean(data, ["paused"]),
        wireless=v.boolean(data, ["wireless"]),
        is_guest=v.boolean(data, ["is_guest"]),
        connection_type=v.string(data, ["connection_type"]),
        signal=v.first_string(data, [["connectivity", "signal"], ["signal"]]),
        signal_avg=v.first_string(data, [["connectivity", "signal_avg"], ["signal_avg"]]),
        score_bars=v.first_int(data, [["connectivity", "score_bars"], ["score_bars"]]),
        channel=v.first_int(data, [["channel"], ["connectivity", "channel"]]),
        rx_rate_mbps=_first_rate(data, RX_RATE_PATHS + [["link_rate"]]),
        tx_rate_mbps=_first_rate(data, TX_RATE_PATHS + [["link_rate"]]),
        usage_down_mbps=v.first_number(data, USAGE_DOWN_PATHS),
        usage_up_mbps=v.first_number(data, USAGE_UP_PATHS),
        usage_down_percent=v.first_number(data, USAGE_DOWN_PERCENT_PATHS),
        usage_up_percent=v.first_number(data, USAGE_UP_PERCENT_PATHS),
        source_location=v.string(data, ["source", "location"]),
        source_url=v.string(data, ["source", "url"]),
        last_active=v.string(data, ["last_active"]),
        url=url,
        resources=v.string_map(data, ["resources"]),
    )


# ---------------------------------------------------------------------------
# Devices (mesh nodes)
# ---------------------------------------------------------------------------

def _port_speed_value(raw):
    if raw is None:
        return None
    if isinstance(raw, dict):
        raw = v.first_value(raw, [["value"], ["speed"], ["name"]])
    number = v.to_number(raw)
    if number is not None:
        if number >= 1000:
            return f"{number / 1000:g} Gbps"
        return f"{number:g} Mbps"
    text = v.to_string(raw)
    return text.strip() if text and text.strip() else None


def port_speed_label(negotiated, supported, fallback=None):
    negotiated_label = _port_speed_value(negotiated)
    supported_label = _port_speed_value(supported)
    if negotiated_label and supported_label and negotiated_label != supported_label:
        return f"{negotiated_label} (of {supported_label})"
    return negotiated_label or supported_label or _port_speed_value(fallback)


def parse_legacy_ethernet_status(status, device_id):
    interface_number = v.first_int(status, [["interfaceNumber"], ["interface_number"]])
    port_name = v.first_string(status, [["port_name"], ["name"]])
    speed_tag = port_speed_label(
        v.first_value(status, [["speed"], ["negotiated_speed"], ["negotiatedSpeed"]]),
        v.first_value(status, [["original_speed"], ["supported_speed"], ["supportedSpeed"]]),
        v.first_value(status, [["link_speed"], ["speed_mbps"]]),
    )
    peer_count = v.first_int(status, [["peer_count"], ["peerCount"], ["num_peers"], ["numPeers"],
                                      ["peers_count"], ["peersCount"]])
    if peer_count is None:
        peer_count = v.first_array_length(status, [["peers"], ["peer_urls"], ["peerings"], ["connections"]])
    neighbor = v.dict_at(status, ["neighbor", "metadata"]) or {}
    neighbor_name = v.string(neighbor, ["location"])
    neighbor_url = v.string(neighbor, ["url"])
    return EthernetPortStatus(
        id=v.stable_identifier(
            "eth",
            primary=f"{device_id}-if-{interface_number if interface_number is not None else '?'}",
            fallbacks=[port_name, speed_tag, neighbor_url, neighbor_name],
        ),
        interface_number=interface_number,
        port_name=port_name,
        has_carrier=v.first_bool(status, [["hasCarrier"], ["has_carrier"]]),
        peer_count=peer_count,
        is_wan_port=v.first_bool(status, [["isWanPort"], ["is_wan_port"]]),
        speed_tag=speed_tag,
        power_saving=v.first_bool(status, [["power_saving"], ["powerSaving"]]),
        original_speed=v.first_string(status, [["original_speed"], ["supported_speed"]]),
        neighbor_name=neighbor_name,
        neighbor_url=neighbor_url,
        neighbor_port_name=v.string(neighbor, ["port_name"]),
        neighbor_port=v.integer(neighbor, ["port"]),
    )


def parse_connection_ethernet_status(interface, device_id):
    interface_number = v.first_int(interface, [["interface_number"], ["interfaceNumber"]])
    port_name = v.first_string(interface, [["name"], ["port_name"]])
    network_type = v.first_string(interface, [["network_type"], ["network_type", "value"], ["networkType"]])
    connection = v.dict_at(interface, ["connection_status"]) or {}
    metadata = v.dict_at(connection, ["metadata"]) or {}
    kind = v.first_string(connection, [["kind"], ["type"]])
    peers = v.dict_array(metadata, ["multiple_peer_connections"]) or v.dict_array(connection, ["peers"])
    peer_count = len(peers) if peers else None
    if peer_count is None and kind:
        peer_count = 0 if kind.lower() == "disconnected" else 1
    has_carrier = v.first_bool(connection, [["has_carrier"], ["hasCarrier"]])
    if has_carrier is None and kind:
        has_carrier = kind.lower() != "disconnected"
    speed_tag = port_speed_label(
        v.first_value(interface, [["negotiated_speed"], ["speed"]]),
        v.first_value(interface, [["supported_speed"], ["original_speed"]]),
    )
    neighbor_name = v.first_string(metadata, [["location"], ["display_name"]])
    neighbor_url = v.string(metadata, ["url"])
    return EthernetPortStatus(
        id=v.stable_identifier(
            "eth",
            primary=f"{device_id}-if-{interface_number if interface_number is not None else '?'}",
            fallbacks=[port_name, speed_tag, neighbor_url, neighbor_name],
        ),
        interface_number=interface_number,
        port_name=port_name,
        has_carrier=has_carrier,
        peer_count=peer_count,
        is_wan_port=("wan" in network_type.lower()) if network_type else None,
        speed_tag=speed_tag,
        power_saving=v.first_bool(interface, [["power_saving"], ["powerSaving"]]),
        original_speed=v.first_string(interface, [["supported_speed"], ["original_speed"]]),
        neighbor_name=neighbor_name,
        neighbor_url=neighbor_url,
        neighbor_port_name=v.string(metadata, ["port_name"]),
        neighbor_port=v.integer(metadata, ["port"]),
        connection_kind=kind,
        connection_type=v.string(connection, ["connection_type"]),
    )


def merge_ethernet_statuses(preferred, fallback):
    """
    Combine two views of the same ports. Rows in *preferred* win and have
    their gaps filled from the *fallback* row sharing an interface/port key.
    Fallback rows with no counterpart are appended.
    """
    if not preferred:
        return list(fallback)
    if not fallback:
        return list(preferred)

    fallback_by_key = {}
    for status in fallback:
        for key in status.lookup_keys():
            fallback_by_key.setdefault(key, status)

    merged, consumed = [], set()
    for status in preferred:
        keys = status.lookup_keys()
        match = next((fallback_by_key[k] for k in keys if k in fallback_by_key), None)
        if match is not None:
            gaps = {
                name: getattr(match, name)
                for name in ("speed_tag", "peer_count", "original_speed", "power_saving",
                             "is_wan_port", "has_carrier", "neighbor_name", "neighbor_url",
                             "neighbor_port_name", "neighbor_port")
                if getattr(status, name) is None
            }
            status = replace(status, **gaps)
        consumed.update(keys)
        merged.append(status)

    for status in fallback:
        if not any(k in consumed for k in status.lookup_keys()):
            merged.append(status)
    return merged


def parse_device(data):
    url = v.string(data, ["url"])
    mac = v.string(data, ["mac_address"])
    device_id = v.stable_identifier(
        "eero",
        primary=v.normalize_mac(mac),
        fallbacks=[v.id_from_url(url), mac, v.string(data, ["serial"]), v.string(data, ["ip_address"]),
                   v.string(data, ["ip"]), v.string(data, ["location"]), v.string(data, ["nickname"])],
    )

    port_details = []
    for detail in v.dict_array(data, ["port_details"]):
        position = v.integer(detail, ["position"])
        port_name = v.string(detail, ["port_name"])
        ethernet_address = v.string(detail, ["ethernet_address"])
        port_details.append(PortDetail(
            id=v.stable_identifier(
                "port",
                primary=f"{device_id}-port-{position if position is not None else '?'}",
                fallbacks=[port_name, ethernet_address],
            ),
            position=position,
            port_name=port_name,
            ethernet_address=ethernet_address,
        ))

    legacy = [parse_legacy_ethernet_status(s, device_id)
              for s in v.dict_array(data, ["ethernet_status", "statuses"])]
    connection_ports = [parse_connection_ethernet_status(i, device_id)
                        for i in v.dict_array(data, ["connections", "ports", "interfaces"])]

    attachments = []
    for row in v.dict_array(data, ["connections", "wireless_devices"]):
        metadata = v.dict_at(row, ["metadata"]) or row
        display_name = v.first_string(metadata, [["display_name"], ["location"]])
        attachment_url = v.string(metadata, ["url"])
        model = v.first_string(metadata, [["model"], ["model_name"]])
        device_type = v.string(metadata, ["device_type"])
        if not any((display_name, attachment_url, model, device_type)):
            continue
        attachments.append(WirelessAttachment(
            id=v.stable_identifier("wireless", v.id_from_url(attachment_url),
                                   [display_name, attachment_url, model, device_type]),
            display_name=display_name,
            url=attachment_url,
            kind=(v.first_string(row, [["kind"], ["type"]])
                  or v.first_string(metadata, [["kind"], ["type"]])),
            model=model,
            device_type=device_type,
        ))

    return Device(
        id=device_id,
        name=v.first_string(data, [["location"], ["nickname"]]),
        model=v.string(data, ["model"]),
        model_number=v.string(data, ["model_number"]),
        serial=v.string(data, ["serial"]),
        mac=mac,
        is_gateway=v.boolean(data, ["gateway"]),
        status=v.first_string(data, [["status"], ["status", "value"]]),
        status_light_enabled=v.boolean(data, ["led_on"]),
        status_light_brightness=v.integer(data, ["led_brightness"]),
        update_available=v.boolean(data, ["update_available"]),
        ip=v.first_string(data, [["ip_address"], ["ip"]]),
        os_version=v.string(data, ["os_version"]),
        last_reboot_at=v.first_string(data, [["last_reboot"], ["last_reboot_at"], ["uptime", "last_reboot"]]),
        connected_client_count=v.integer(data, ["connected_clients_count"]),
        connected_wired_client_count=v.integer(data, ["connected_wired_clients_count"]),
        connected_wireless_client_count=v.integer(data, ["connected_wireless_clients_count"]),
        mesh_quality_bars=v.integer(data, ["mesh_quality_bars"]),
        wired_backhaul=v.boolean(data, ["wired"]),
        wifi_bands=v.string_list(v.value(data, ["bands"])),
        port_details=port_details,
        ethernet_statuses=merge_ethernet_statuses(connection_ports, legacy),
        wireless_attachments=attachments,
        support_expired=v.boolean(data, ["update_status", "support_expired"]),
        support_expiration=v.string(data, ["update_status", "support_expiration_string"]),
        url=url,
        resources=v.string_map(data, ["resources"]),
    )


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

def _ad_block_profile_urls(network_data):
    raw = v.value(network_data, ["premium_dns", "ad_block_settings", "profiles"])
    urls = set()
    if isinstance(raw, list):
        for item in raw:
            url = v.string(item, ["url"]) if isinstance(item, dict) else v.to_string(item)
            if url:
                urls.add(url)
                urls.add(v.id_from_url(url))
    return urls


def parse_application_catalog(rows, blocked):
    """Catalog entries, blocked ones first, then alphabetical."""
    blocked_keys = {v.normalize_key(b) for b in blocked}
    entries = []
    for row in rows:
        app_id = v.first_string(row, [["id"], ["application_id"], ["name"]])
        if not app_id:
            continue
        is_blocked = v.first_bool(row, [["blocked"], ["is_blocked"], ["isBlocked"]])
        if is_blocked is None:
            is_blocked = v.normalize_key(app_id) in blocked_keys
        raw_categories = v.value(row, ["category_ids"])
        category_ids = []
        if isinstance(raw_categories, list):
            category_ids = [c for c in map(v.to_int, raw_categories) if c is not None]
        entries.append(ApplicationEntry(
            id=app_id,
            display_name=v.first_string(row, [["display_name"], ["displayName"], ["name"]]) or app_id,
            is_blocked=bool(is_blocked),
            category_ids=category_ids,
            icon_url=v.first_string(row, [["icon_url"], ["iconURL"], ["icon"]]),
        ))
    entries.sort(key=lambda e: (not e.is_blocked, e.display_name.lower()))
    return entries


def parse_profile(data, ad_block_urls=(), catalog_rows=()):
    url = v.string(data, ["url"])
    name = v.string(data, ["name"])
    profile_id = v.stable_identifier("profile", v.id_from_url(url), [url, name])
    policies = v.dict_at(data, ["unified_content_filters", "dns_policies"]) or {}
    filters = ProfileFilters(**{
        flag: v.boolean(policies, [key]) for flag, key in PROFILE_FILTER_KEYS.items()
    })
    blocked = v.string_list(v.first_value(data, [
        ["premium_dns", "blocked_applications"],
        ["unified_content_filters", "blocked_applications"],
        ["unified_content_filters", "dns_policies", "blocked_applications"],
        ["blocked_applications"],
    ]))
    ad_block = None
    if ad_block_urls:
        ad_block = bool(url and (url in ad_block_urls or v.id_from_url(url) in ad_block_urls))
    ad_block_direct = v.first_bool(data, [["premium_dns", "ad_block_settings", "enabled"],
                                          ["unified_content_filters", "dns_policies", "ad_block"]])
    if ad_block_direct is not None:
        ad_block = ad_block_direct
    devices = data.get("devices")
    return Profile(
        id=profile_id,
        name=name,
        url=url,
        paused=v.boolean(data, ["paused"]),
        ad_block=ad_block,
        filters=filters,
        blocked_applications=blocked,
        application_catalog=parse_application_catalog(catalog_rows, blocked),
        device_count=len(devices) if isinstance(devices, list) else v.integer(data, ["devices_count"]),
        resources=v.string_map(data, ["resources"]),
    )


# ---------------------------------------------------------------------------
# Usage (activity)
# ---------------------------------------------------------------------------

def _series_sum(series):
    total = v.to_number(series.get("sum"))
    if total is not None:
        return total
    points = [v.to_number(p.get("value")) for p in series.get("values", []) if isinstance(p, dict)]
    points = [p for p in points if p is not None]
    return sum(points) if points else None


def usage_totals(payload):
    """(download, upload) byte totals from any of the data_usage payload shapes."""
    if payload is None:
        return None, None
    if isinstance(payload, dict):
        down = v.first_number(payload, [["download"], ["download_bytes"], ["down"]])
        up = v.first_number(payload, [["upload"], ["upload_bytes"], ["up"]])
        if down is not None or up is not None:
            return _as_int(down), _as_int(up)
        series = v.dict_array(payload, ["series"]) or v.dict_array(payload, ["values"])
    else:
        series = v.normalize_object_array(payload)
    down = up = None
    for row in series:
        kind = (v.string(row, ["type"]) or "").lower()
        amount = _series_sum(row)
        if amount is None:
            continue
        if kind.startswith("down"):
            down = (down or 0) + amount
        elif kind.startswith("up"):
            up = (up or 0) + amount
    return _as_int(down), _as_int(up)


def _as_int(number):
    return int(round(number)) if number is not None else None


def usage_by_resource(payload):
    """Map every identity key of a per-eero / per-device usage row to its totals."""
    rows = v.normalize_object_array(payload)
    if not rows and isinstance(payload, dict):
        rows = v.dict_array(payload, ["devices"]) or v.dict_array(payload, ["eeros"])
    by_key = {}
    for row in rows:
        totals = usage_totals(row)
        if totals == (None, None):
            continue
        for key in (v.id_from_url(v.string(row, ["url"])), v.normalize_mac(v.string(row, ["mac"])),
                    v.normalize_mac(v.string(row, ["mac_address"])), v.string(row, ["id"])):
            if key:
                by_key[str(key)] = totals
    return by_key


def _lookup_usage(by_key, url, mac):
    for key in (v.id_from_url(url), v.normalize_mac(mac)):
        if key and key in by_key:
            return by_key[key]
    return None


def parse_activity_summary(activity):
    network_usage = v.dict_at(activity, ["network"]) or {}
    totals = {period: usage_totals(network_usage.get(period)) for period in PERIODS}
    if all(t == (None, None) for t in totals.values()):
        return None
    return ActivitySummary(
        day_download=totals["day"][0], day_upload=totals["day"][1],
        week_download=totals["week"][0], week_upload=totals["week"][1],
        month_download=totals["month"][0], month_upload=totals["month"][1],
    )


def _apply_usage(record, activity, group):
    updates = {}
    for period in PERIODS:
        by_key = usage_by_resource(v.value(activity, [group, period]))
        found = _lookup_usage(by_key, record.url, record.mac)
        if found:
            updates[f"usage_{period}_download"] = found[0]
            updates[f"usage_{period}_upload"] = found[1]
    return replace(record, **updates) if updates else record


# ---------------------------------------------------------------------------
# Radio / congestion summaries
# ---------------------------------------------------------------------------

def _epoch_to_datetime(raw):
    number = v.to_number(raw)
    if number is None:
        return None
    if number > 1_000_000_000_000:
        number /= 1000
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_channel_utilization(raw, sampled_at=None):
    if isinstance(raw, list):
        raw = {"utilization": raw}
    if not isinstance(raw, dict):
        return None

    names = {}
    for eero in v.dict_array(raw, ["eeros"]):
        name = v.first_string(eero, [["location"], ["nickname"], ["name"], ["model"]])
        if not name:
            continue
        for key in (v.string(eero, ["id"]), v.id_from_url(v.string(eero, ["url"]))):
            if key:
                names[key] = name

    radios = []
    for row in v.dict_array(raw, ["utilization"]):
        eero_id = v.first_string(row, [["eero_id"], ["eeroId"]])
        band = v.first_string(row, [["band"], ["band", "value"]])
        channel = v.integer(row, ["channel"])
        samples = []
        for sample in v.dict_array(row, ["time_series_data"]):
            timestamp = _epoch_to_datetime(v.value(sample, ["timestamp"]))
            if timestamp is None:
                continue
            busy, noise = v.integer(sample, ["busy"]), v.integer(sample, ["noise"])
            rx_tx, rx_other = v.integer(sample, ["rx_tx"]), v.integer(sample, ["rx_other"])
            samples.append(ChannelUtilizationSample(
                id=v.stable_identifier(
                    "radio-sample",
                    f"{timestamp.timestamp()}-{busy if busy is not None else -1}-"
                    f"{noise if noise is not None else -1}-{rx_tx if rx_tx is not None else -1}-"
                    f"{rx_other if rx_other is not None else -1}"),
                timestamp=timestamp,
                busy_percent=busy,
                noise_percent=noise,
                rx_tx_percent=rx_tx,
                rx_other_percent=rx_other,
            ))
        eero_name = None
        if eero_id:
            eero_name = names.get(eero_id) or next(
                (n for k, n in names.items() if v.normalize_key(k) == v.normalize_key(eero_id)), None)
        radios.append(ChannelUtilizationRadio(
            id=v.stable_identifier(
                "radio",
                f"{eero_id or 'unknown'}-{band or 'band'}-{channel if channel is not None else '?'}",
                [v.string(row, ["channel_bandwidth"])]),
            eero_id=eero_id,
            eero_name=eero_name,
            band=band,
            control_channel=channel,
            center_channel=v.integer(row, ["center_channel"]),
            channel_bandwidth=v.string(row, ["channel_bandwidth"]),
            frequency_mhz=v.integer(row, ["frequency"]),
            average_utilization=v.integer(row, ["average_utilization"]),
            max_utilization=v.integer(row, ["max_utilization"]),
            p99_utilization=v.integer(row, ["p99_utilization"]),
            time_series=samples,
        ))
    if not radios:
        return None

    low = float("-inf")
    radios.sort(key=lambda r: (
        r.average_utilization if r.average_utilization is not None else low,
        r.max_utilization if r.max_utilization is not None else low,
    ), reverse=True)
    return ChannelUtilizationSummary(radios=radios, sampled_at=sampled_at)


def parse_signal_dbm(signal):
    if not signal:
        return None
    match = _DBM_RE.search(signal)
    return float(match.group(0)) if match else None


def wireless_congestion(clients, channel_utilization=None):
    wireless = [c for c in clients if c.connected and c.wireless]
    if not wireless:
        return None
    bars = [c.score_bars for c in wireless if c.score_bars is not None]
    signals = [s for s in (parse_signal_dbm(c.signal) for c in wireless) if s is not None]
    poor = sum(
        1 for c in wireless
        if (parse_signal_dbm(c.signal) is not None and parse_signal_dbm(c.signal) <= POOR_SIGNAL_DBM)
        or (c.score_bars is not None and c.score_bars <= 2)
    )
    busiest = None
    if channel_utilization and channel_utilization.radios:
        averages = [r.average_utilization for r in channel_utilization.radios
                    if r.average_utilization is not None]
        busiest = max(averages) if averages else None
    return WirelessCongestionSummary(
        wireless_client_count=len(wireless),
        poor_signal_count=poor,
        average_score_bars=round(sum(bars) / len(bars), 2) if bars else None,
        average_signal_dbm=round(sum(signals) / len(signals), 1) if signals else None,
        busiest_radio_utilization=busiest,
    )


def parse_proxied_nodes(raw):
    if not isinstance(raw, dict):
        return None
    devices = v.dict_array(raw, ["devices"])

    def status_of(device):
        return (v.first_string(device, [["status"], ["status", "value"]]) or "").lower()

    return ProxiedNodesSummary(
        enabled=v.boolean(raw, ["enabled"]),
        total_devices=len(devices),
        online_devices=sum(1 for d in devices if status_of(d) == "green" or "online" in status_of(d)),
        offline_devices=sum(1 for d in devices if status_of(d) == "red" or "offline" in status_of(d)),
    )


def realtime_summary(clients, sampled_at=None):
    """Network throughput as the sum of connected clients' reported usage."""
    active = [c for c in clients if c.connected
              and (c.usage_down_mbps is not None or c.usage_up_mbps is not None)]
    if not active:
        return None
    return RealtimeSummary(
        download_mbps=sum(max(0.0, c.usage_down_mbps or 0.0) for c in active),
        upload_mbps=sum(max(0.0, c.usage_up_mbps or 0.0) for c in active),
        sampled_at=sampled_at,
    )


def mesh_summary(devices):
    if not devices:
        return MeshSummary()
    gateway = next((d for d in devices if d.is_gateway), None)
    bars = [d.mesh_quality_bars for d in devices if d.mesh_quality_bars is not None]
    return MeshSummary(
        eero_count=len(devices),
        online_eero_count=sum(1 for d in devices if d.is_online),
        gateway_name=gateway.name if gateway else None,
        gateway_mac=gateway.mac if gateway else None,
        gateway_ip=gateway.ip if gateway else None,
        average_mesh_quality_bars=round(sum(bars) / len(bars), 2) if bars else None,
        wired_backhaul_count=sum(1 for d in devices if d.wired_backhaul is True),
        wireless_backhaul_count=sum(1 for d in devices if d.wired_backhaul is False),
    )


def attach_clients_to_devices(devices, clients):
    """Roll connected clients up onto the node they report as their source."""
    result = []
    for device in devices:
        device_key = v.id_from_url(device.url)
        name_key = v.normalize_key(device.name)
        attached = []
        for client in clients:
            if not client.connected:
                continue
            source_key = v.id_from_url(client.source_url)
            if (device_key and source_key == device_key) or (
                    not source_key and name_key and v.normalize_key(client.source_location) == name_key):
                attached.append(client)
        if attached:
            device = replace(
                device,
                connected_client_count=len(attached),
                connected_client_names=sorted({c.display_name for c in attached}, key=str.lower),
            )
        result.append(device)
    return result


def recompute_derived(network, sampled_at=None):
    """Refresh every aggregate that is computed from the client and device rows."""
    clients = network.clients
    devices = attach_clients_to_devices(network.devices, clients)
    realtime = realtime_summary(clients, sampled_at)
    congestion = wireless_congestion(clients, network.channel_utilization)
    mesh = mesh_summary(devices)
    return replace(
        network,
        devices=devices,
        connected_clients_count=sum(1 for c in clients if c.connected),
        connected_guest_clients_count=sum(1 for c in clients if c.connected and c.is_guest),
        mesh=mesh if devices else network.mesh,
        realtime=realtime if realtime is not None else network.realtime,
        wireless_congestion=congestion if congestion is not None else network.wireless_congestion,
    )


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

def _parse_features(data):
    return NetworkFeatures(
        ad_block=v.boolean(data, ["premium_dns", "ad_block_settings", "enabled"]),
        block_malware=v.boolean(data, ["premium_dns", "dns_policies", "block_malware"]),
        band_steering=v.boolean(data, ["band_steering"]),
        upnp=v.boolean(data, ["upnp"]),
        wpa3=v.boolean(data, ["wpa3"]),
        thread=v.first_bool(data, [["thread", "enabled"], ["thread"]]),
        sqm=v.boolean(data, ["sqm"]),
        ipv6_upstream=v.boolean(data, ["ipv6_upstream"]),
    )


def _parse_premium(data):
    capable = v.boolean(data, ["capabilities", "premium", "capable"])
    status = v.string(data, ["premium_status"])
    if capable is None and status is None:
        return None
    return bool(capable) and (status or "").lower() in ("active", "trialing")


def _parse_updates(data):
    return UpdateSummary(
        has_update=v.first_bool(data, [["updates", "has_update"], ["update_status", "has_update"],
                                       ["updates", "update_status", "has_update"]]),
        update_required=v.first_bool(data, [["updates", "update_required"],
                                            ["update_status", "update_required"]]),
        can_update_now=v.first_bool(data, [["updates", "can_update_now"],
                                           ["update_status", "can_update_now"]]),
        target_firmware=v.first_string(data, [["updates", "target_firmware"],
                                              ["update_status", "target_firmware"],
                                              ["updates", "update_status", "target_firmware"]]),
        last_update_started=v.first_string(data, [["updates", "last_update_started"],
                                                  ["update_status", "last_update_started"]]),
    )


def _parse_speed(data):
    speed = SpeedSummary(
        down_value=v.number(data, ["speed", "down", "value"]),
        down_units=v.string(data, ["speed", "down", "units"]),
        up_value=v.number(data, ["speed", "up", "value"]),
        up_units=v.string(data, ["speed", "up", "units"]),
        measured_at=v.string(data, ["speed", "date"]),
    )
    if speed.down_value is None and speed.up_value is None:
        record = data.get("speedtest")
        rows = v.normalize_object_array(record) or ([record] if isinstance(record, dict) else [])
        if rows:
            latest = rows[0]
            speed = SpeedSummary(
                down_value=v.first_number(latest, [["down_mbps"], ["down", "value"]]),
                up_value=v.first_number(latest, [["up_mbps"], ["up", "value"]]),
                measured_at=v.first_string(latest, [["date"], ["timestamp"]]),
            )
    if speed.down_value is not None and not speed.down_units:
        speed = replace(speed, down_units="Mbps")
    if speed.up_value is not None and not speed.up_units:
        speed = replace(speed, up_units="Mbps")
    return speed


def _count(data, paths):
    for path in paths:
        found = v.value(data, path)
        if isinstance(found, list):
            return len(found)
        if isinstance(found, dict):
            rows = v.normalize_object_array(found)
            if rows or "data" in found:
                return len(rows)
    return None


def _parse_routing(data):
    return RoutingSummary(
        reservation_count=_count(data, [["routing", "reservations"], ["reservations"]]),
        forward_count=_count(data, [["routing", "forwards"], ["forwards"]]),
        pinhole_count=_count(data, [["routing", "pinholes"], ["pinholes"]]),
    )


def _parse_security(data):
    raw = v.first_value(data, [["blacklist"], ["device_blacklist"]])
    rows = raw if isinstance(raw, list) else v.normalize_object_array(raw)
    if raw is None:
        return SecuritySummary()
    names = [v.first_string(r, [["nickname"], ["hostname"], ["display_name"], ["mac"]])
             for r in rows if isinstance(r, dict)]
    return SecuritySummary(
        blacklisted_device_count=len(rows),
        blacklisted_device_names=[n for n in names if n],
    )


def parse_network(data, sampled_at=None):
    """Build a Network from the merged network payload assembled by the builder."""
    url = v.string(data, ["url"])
    name = v.string(data, ["name"])
    nickname = v.string(data, ["nickname_label"])
    network_id = v.stable_identifier("network", v.id_from_url(url), [url, name, nickname])
    activity = v.dict_at(data, ["activity"]) or {}

    clients, seen = [], set()
    for row in v.normalize_object_array(data.get("devices")):
        client = _apply_usage(parse_client(row), activity, "devices")
        if client.id in seen:
            logger.debug("Duplicate client row %s in network %s", client.id, network_id)
            continue
        seen.add(client.id)
        clients.append(client)

    devices = []
    for row in v.normalize_object_array(data.get("eeros")):
        device = _apply_usage(parse_device(row), activity, "eeros")
        if device.id not in {d.id for d in devices}:
            devices.append(device)

    ad_block_urls = _ad_block_profile_urls(data)
    catalogs = v.dict_at(data, ["applications_catalog"]) or {}
    profiles = []
    for row in v.normalize_object_array(data.get("profiles")):
        profile_key = v.id_from_url(v.string(row, ["url"])) or v.string(row, ["name"]) or ""
        catalog_rows = v.normalize_object_array(catalogs.get(profile_key))
        profiles.append(parse_profile(row, ad_block_urls, catalog_rows))

    channel_utilization = parse_channel_utilization(data.get("channel_utilization"), sampled_at)

    network = Network(
        id=network_id,
        name=name,
        nickname_label=nickname,
        status=v.first_string(data, [["status"], ["status", "value"]]),
        url=url,
        timezone=v.first_string(data, [["timezone", "value"], ["timezone"]]),
        premium_enabled=_parse_premium(data),
        features=_parse_features(data),
        guest_network=GuestNetwork(
            enabled=v.boolean(data, ["guest_network", "enabled"]),
            name=v.string(data, ["guest_network", "name"]),
            password=v.string(data, ["guest_network", "password"]),
        ),
        backup_internet_enabled=v.boolean(data, ["backup_internet_enabled"]),
        ddns_enabled=v.boolean(data, ["ddns", "enabled"]),
        ddns_subdomain=v.string(data, ["ddns", "subdomain"]),
        health=HealthSummary(
            internet_status=v.string(data, ["health", "internet", "status"]),
            isp_up=v.boolean(data, ["health", "internet", "isp_up"]),
            eero_network_status=v.string(data, ["health", "eero_network", "status"]),
        ),
        diagnostics=DiagnosticsSummary(
            status=v.first_string(data, [["diagnostics", "status"], ["diagnostics", "state"]]),
            last_run_at=v.first_string(data, [["diagnostics", "date"], ["diagnostics", "last_run"]]),
        ),
        updates=_parse_updates(data),
        speed=_parse_speed(data),
        support=SupportSummary(
            name=v.string(data, ["support", "name"]),
            phone=v.string(data, ["support", "phone"]),
            email=v.string(data, ["support", "email"]),
            contact_url=v.string(data, ["support", "contact_url"]),
            help_url=v.string(data, ["support", "help_url"]),
        ),
        routing=_parse_routing(data),
        security=_parse_security(data),
        insights_available=v.first_bool(data, [["capabilities", "insights", "capable"],
                                               ["insights_response", "available"]]),
        gateway_ip=v.first_string(data, [["gateway_ip"], ["lan", "gateway_ip"]]),
        clients=clients,
        devices=devices,
        profiles=profiles,
        channel_utilization=channel_utilization,
        proxied_nodes=parse_proxied_nodes(data.get("proxied_nodes")),
        activity=parse_activity_summary(activity),
        resources=v.string_map(data, ["resources"]),
    )
    return recompute_derived(network, sampled_at)
