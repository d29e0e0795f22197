#!/usr/bin/env python3
"""
eerosync - Data Model
Typed records for the normalized account snapshot. Nearly every field is
Optional: the API omits telemetry freely and absence is a value, not an error.
Display fallbacks such as "Client" or "eero" are applied on read, never stored.
Records serialize to plain JSON-able dicts so snapshots can be cached on disk
and in the database.
"""
import dataclasses
import typing
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from eerosync.values import normalize_key

REALTIME_SOURCE_LABEL = "eero client telemetry"
ONLINE_STATUSES = ("green", "online", "connected")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def to_dict(obj):
    """Recursively convert records to JSON-compatible structures."""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_dict(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [to_dict(item) for item in obj]
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    return obj


def _parse_datetime(raw):
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str) and raw:
        try:
            return datetime.fromisoformat(raw.replace('Z', '+00:00'))
        except ValueError:
            return None
    return None


def _coerce(hint, raw):
    if raw is None:
        return None
    origin = typing.get_origin(hint)
    args = typing.get_args(hint)
    if origin is typing.Union:
        inner = [a for a in args if a is not type(None)]
        return _coerce(inner[0], raw) if inner else raw
    if origin in (tuple, Tuple):
        item_hint = args[0] if args else typing.Any
        return tuple(_coerce(item_hint, item) for item in raw) if isinstance(raw, (list, tuple)) else ()
    if origin in (list, List):
        item_hint = args[0] if args else typing.Any
        return [_coerce(item_hint, item) for item in raw] if isinstance(raw, list) else []
    if origin in (dict, Dict):
        return dict(raw) if isinstance(raw, dict) else {}
    if hint is datetime:
        return _parse_datetime(raw)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(raw)
    if dataclasses.is_dataclass(hint):
        return from_dict(hint, raw) if isinstance(raw, dict) else None
    return raw


def from_dict(cls, data):
    """Rebuild a record of type *cls* from to_dict() output. Unknown keys are ignored."""
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in data:
            coerced = _coerce(hints[f.name], data[f.name])
            has_default = (f.default is not dataclasses.MISSING
                           or f.default_factory is not dataclasses.MISSING)
            if coerced is None and has_default:
                continue
            kwargs[f.name] = coerced
    return cls(**kwargs)


class Record:
    """
    Base for snapshot records. Records are frozen and list fields are stored
    as tuples, so a published snapshot can be shared between readers safely.
    """

    def __post_init__(self):
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, list):
                object.__setattr__(self, f.name, tuple(value))


# ---------------------------------------------------------------------------
# Offline Probes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeResult:
    success: bool = False
    message: str = "Not run"
    latency_ms: Optional[float] = None


@dataclass(frozen=True)
class RouteProbeResult:
    interface_name: Optional[str] = None
    gateway: Optional[str] = None
    success: bool = False
    message: str = "Not run"


@dataclass(frozen=True)
class OfflineProbeSnapshot:
    checked_at: Optional[datetime] = None
    gateway: ProbeResult = field(default_factory=ProbeResult)
    dns: ProbeResult = field(default_factory=ProbeResult)
    ntp: ProbeResult = field(default_factory=ProbeResult)
    route: RouteProbeResult = field(default_factory=RouteProbeResult)

    @property
    def health_label(self):
        """LAN health from the critical pair only. DNS and NTP are informational."""
        passing = sum(1 for ok in (self.gateway.success, self.route.success) if ok)
        if passing == 2:
            return "LAN OK"
        if passing == 1:
            return "LAN Degraded"
        return "LAN Down"


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Client(Record):
    id: str
    name: Optional[str] = None
    mac: Optional[str] = None
    ip: Optional[str] = None
    hostname: Optional[str] = None
    manufacturer: Optional[str] = None
    device_type: Optional[str] = None
    connected: Optional[bool] = None
    paused: Optional[bool] = None
    wireless: Optional[bool] = None
    is_guest: Optional[bool] = None
    connection_type: Optional[str] = None
    signal: Optional[str] = None
    signal_avg: Optional[str] = None
    score_bars: Optional[int] = None
    channel: Optional[int] = None
    rx_rate_mbps: Optional[float] = None
    tx_rate_mbps: Optional[float] = None
    usage_down_mbps: Optional[float] = None
    usage_up_mbps: Optional[float] = None
    usage_down_percent: Optional[float] = None
    usage_up_percent: Optional[float] = None
    usage_day_download: Optional[int] = None
    usage_day_upload: Optional[int] = None
    usage_week_download: Optional[int] = None
    usage_week_upload: Optional[int] = None
    usage_month_download: Optional[int] = None
    usage_month_upload: Optional[int] = None
    source_location: Optional[str] = None
    source_url: Optional[str] = None
    last_active: Optional[str] = None
    url: Optional[str] = None
    resources: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self):
        return self.name or self.hostname or self.mac or "Client"


# ---------------------------------------------------------------------------
# Devices (mesh nodes)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PortDetail(Record):
    id: str
    position: Optional[int] = None
    port_name: Optional[str] = None
    ethernet_address: Optional[str] = None


@dataclass(frozen=True)
class EthernetPortStatus(Record):
    id: str
    interface_number: Optional[int] = None
    port_name: Optional[str] = None
    has_carrier: Optional[bool] = None
    peer_count: Optional[int] = None
    is_wan_port: Optional[bool] = None
    speed_tag: Optional[str] = None
    power_saving: Optional[bool] = None
    original_speed: Optional[str] = None
    neighbor_name: Optional[str] = None
    neighbor_url: Optional[str] = None
    neighbor_port_name: Optional[str] = None
    neighbor_port: Optional[int] = None
    connection_kind: Optional[str] = None
    connection_type: Optional[str] = None

    def lookup_keys(self):
        """Keys used to pair the same physical port across sources and refreshes."""
        keys = []
        if self.interface_number is not None:
            keys.append(f"if:{self.interface_number}")
        port = normalize_key(self.port_name)
        if port:
            keys.append(f"port:{port}")
        return keys


@dataclass(frozen=True)
class WirelessAttachment(Record):
    id: str
    display_name: Optional[str] = None
    url: Optional[str] = None
    kind: Optional[str] = None
    model: Optional[str] = None
    device_type: Optional[str] = None


@dataclass(frozen=True)
class Device(Record):
    id: str
    name: Optional[str] = None
    model: Optional[str] = None
    model_number: Optional[str] = None
    serial: Optional[str] = None
    mac: Optional[str] = None
    is_gateway: Optional[bool] = None
    status: Optional[str] = None
    status_light_enabled: Optional[bool] = None
    status_light_brightness: Optional[int] = None
    update_available: Optional[bool] = None
    ip: Optional[str] = None
    os_version: Optional[str] = None
    last_reboot_at: Optional[str] = None
    connected_client_count: Optional[int] = None
    connected_client_names: Tuple[str, ...] = field(default_factory=tuple)
    connected_wired_client_count: Optional[int] = None
    connected_wireless_client_count: Optional[int] = None
    mesh_quality_bars: Optional[int] = None
    wired_backhaul: Optional[bool] = None
    wifi_bands: Tuple[str, ...] = field(default_factory=tuple)
    port_details: Tuple[PortDetail, ...] = field(default_factory=tuple)
    ethernet_statuses: Tuple[EthernetPortStatus, ...] = field(default_factory=tuple)
    wireless_attachments: Tuple[WirelessAttachment, ...] = field(default_factory=tuple)
    usage_day_download: Optional[int] = None
    usage_day_upload: Optional[int] = None
    usage_week_download: Optional[int] = None
    usage_week_upload: Optional[int] = None
    usage_month_download: Optional[int] = None
    usage_month_upload: Optional[int] = None
    support_expired: Optional[bool] = None
    support_expiration: Optional[str] = None
    url: Optional[str] = None
    resources: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self):
        return self.name or "eero"

    @property
    def is_online(self):
        status = (self.status or "").lower()
        return any(s in status for s in ONLINE_STATUSES)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProfileFilters(Record):
    adult: Optional[bool] = None
    gaming: Optional[bool] = None
    messaging: Optional[bool] = None
    shopping: Optional[bool] = None
    social: Optional[bool] = None
    streaming: Optional[bool] = None
    violent: Optional[bool] = None


@dataclass(frozen=True)
class ApplicationEntry(Record):
    id: str
    display_name: str
    is_blocked: bool = False
    category_ids: Tuple[int, ...] = field(default_factory=tuple)
    icon_url: Optional[str] = None


@dataclass(frozen=True)
class Profile(Record):
    id: str
    name: Optional[str] = None
    url: Optional[str] = None
    paused: Optional[bool] = None
    ad_block: Optional[bool] = None
    filters: ProfileFilters = field(default_factory=ProfileFilters)
    blocked_applications: Tuple[str, ...] = field(default_factory=tuple)
    application_catalog: Tuple[ApplicationEntry, ...] = field(default_factory=tuple)
    device_count: Optional[int] = None
    resources: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self):
        return self.name or "Profile"


# ---------------------------------------------------------------------------
# Network summaries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NetworkFeatures(Record):
    ad_block: Optional[bool] = None
    block_malware: Optional[bool] = None
    band_steering: Optional[bool] = None
    upnp: Optional[bool] = None
    wpa3: Optional[bool] = None
    thread: Optional[bool] = None
    sqm: Optional[bool] = None
    ipv6_upstream: Optional[bool] = None


@dataclass(frozen=True)
class GuestNetwork(Record):
    enabled: Optional[bool] = None
    name: Optional[str] = None
    password: Optional[str] = None


@dataclass(frozen=True)
class HealthSummary(Record):
    internet_status: Optional[str] = None
    isp_up: Optional[bool] = None
    eero_network_status: Optional[str] = None


@dataclass(frozen=True)
class DiagnosticsSummary(Record):
    status: Optional[str] = None
    last_run_at: Optional[str] = None


@dataclass(frozen=True)
class UpdateSummary(Record):
    has_update: Optional[bool] = None
    update_required: Optional[bool] = None
    can_update_now: Optional[bool] = None
    target_firmware: Optional[str] = None
    last_update_started: Optional[str] = None


@dataclass(frozen=True)
class SpeedSummary(Record):
    down_value: Optional[float] = None
    down_units: Optional[str] = None
    up_value: Optional[float] = None
    up_units: Optional[str] = None
    measured_at: Optional[str] = None


@dataclass(frozen=True)
class SupportSummary(Record):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    contact_url: Optional[str] = None
    help_url: Optional[str] = None


@dataclass(frozen=True)
class RoutingSummary(Record):
    reservation_count: Optional[int] = None
    forward_count: Optional[int] = None
    pinhole_count: Optional[int] = None


@dataclass(frozen=True)
class SecuritySummary(Record):
    blacklisted_device_count: Optional[int] = None
    blacklisted_device_names: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MeshSummary(Record):
    eero_count: Optional[int] = None
    online_eero_count: Optional[int] = None
    gateway_name: Optional[str] = None
    gateway_mac: Optional[str] = None
    gateway_ip: Optional[str] = None
    average_mesh_quality_bars: Optional[float] = None
    wired_backhaul_count: Optional[int] = None
    wireless_backhaul_count: Optional[int] = None


@dataclass(frozen=True)
class ChannelUtilizationSample(Record):
    id: str
    timestamp: Optional[datetime] = None
    busy_percent: Optional[int] = None
    noise_percent: Optional[int] = None
    rx_tx_percent: Optional[int] = None
    rx_other_percent: Optional[int] = None


@dataclass(frozen=True)
class ChannelUtilizationRadio(Record):
    id: str
    eero_id: Optional[str] = None
    eero_name: Optional[str] = None
    band: Optional[str] = None
    control_channel: Optional[int] = None
    center_channel: Optional[int] = None
    channel_bandwidth: Optional[str] = None
    frequency_mhz: Optional[int] = None
    average_utilization: Optional[int] = None
    max_utilization: Optional[int] = None
    p99_utilization: Optional[int] = None
    time_series: Tuple[ChannelUtilizationSample, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ChannelUtilizationSummary(Record):
    radios: Tuple[ChannelUtilizationRadio, ...] = field(default_factory=tuple)
    sampled_at: Optional[datetime] = None


@dataclass(frozen=True)
class WirelessCongestionSummary(Record):
    wireless_client_count: Optional[int] = None
    poor_signal_count: Optional[int] = None
    average_score_bars: Optional[float] = None
    average_signal_dbm: Optional[float] = None
    busiest_radio_utilization: Optional[int] = None


@dataclass(frozen=True)
class ProxiedNodesSummary(Record):
    enabled: Optional[bool] = None
    total_devices: Optional[int] = None
    online_devices: Optional[int] = None
    offline_devices: Optional[int] = None


@dataclass(frozen=True)
class RealtimeSummary(Record):
    download_mbps: float = 0.0
    upload_mbps: float = 0.0
    source_label: str = REALTIME_SOURCE_LABEL
    sampled_at: Optional[datetime] = None


@dataclass(frozen=True)
class ActivitySummary(Record):
    day_download: Optional[int] = None
    day_upload: Optional[int] = None
    week_download: Optional[int] = None
    week_upload: Optional[int] = None
    month_download: Optional[int] = None
    month_upload: Optional[int] = None


# ---------------------------------------------------------------------------
# Network & Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Network(Record):
    id: str
    name: Optional[str] = None
    nickname_label: Optional[str] = None
    status: Optional[str] = None
    url: Optional[str] = None
    timezone: Optional[str] = None
    premium_enabled: Optional[bool] = None
    features: NetworkFeatures = field(default_factory=NetworkFeatures)
    guest_network: GuestNetwork = field(default_factory=GuestNetwork)
    backup_internet_enabled: Optional[bool] = None
    ddns_enabled: Optional[bool] = None
    ddns_subdomain: Optional[str] = None
    health: HealthSummary = field(default_factory=HealthSummary)
    diagnostics: DiagnosticsSummary = field(default_factory=DiagnosticsSummary)
    updates: UpdateSummary = field(default_factory=UpdateSummary)
    speed: SpeedSummary = field(default_factory=SpeedSummary)
    support: SupportSummary = field(default_factory=SupportSummary)
    routing: RoutingSummary = field(default_factory=RoutingSummary)
    security: SecuritySummary = field(default_factory=SecuritySummary)
    insights_available: Optional[bool] = None
    gateway_ip: Optional[str] = None
    mesh: MeshSummary = field(default_factory=MeshSummary)
    connected_clients_count: Optional[int] = None
    connected_guest_clients_count: Optional[int] = None
    clients: Tuple[Client, ...] = field(default_factory=tuple)
    devices: Tuple[Device, ...] = field(default_factory=tuple)
    profiles: Tuple[Profile, ...] = field(default_factory=tuple)
    channel_utilization: Optional[ChannelUtilizationSummary] = None
    wireless_congestion: Optional[WirelessCongestionSummary] = None
    proxied_nodes: Optional[ProxiedNodesSummary] = None
    realtime: Optional[RealtimeSummary] = None
    activity: Optional[ActivitySummary] = None
    resources: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self):
        return self.nickname_label or self.name or "Network"


@dataclass(frozen=True)
class AccountSnapshot(Record):
    fetched_at: datetime
    networks: Tuple[Network, ...] = field(default_factory=tuple)
    account_name: Optional[str] = None
    # Networks the account still reports but that could not be fetched this cycle
    skipped_network_ids: Tuple[str, ...] = field(default_factory=tuple)

    def network(self, network_id):
        return next((n for n in self.networks if n.id == network_id), None)

    def to_dict(self):
        return to_dict(self)

    @classmethod
    def from_dict(cls, data):
        return from_dict(cls, data)
