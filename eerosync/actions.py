#!/usr/bin/env python3
"""
eerosync - Actions
Mutating requests against the eero cloud. Each builder turns a user intent
(toggle the guest network, pause a client, reboot a node, ...) into an
Action carrying its endpoint, payload, risk level and whether it may be
queued for later replay while the cloud is unreachable.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import pytz

from eerosync import values
from eerosync.models import from_dict, to_dict


class HTTPMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class ActionKind(str, Enum):
    SET_GUEST_NETWORK = "set_guest_network"
    SET_NETWORK_FEATURE = "set_network_feature"
    SET_CLIENT_PAUSED = "set_client_paused"
    SET_PROFILE_PAUSED = "set_profile_paused"
    SET_PROFILE_AD_BLOCK = "set_profile_ad_block"
    SET_PROFILE_CONTENT_FILTER = "set_profile_content_filter"
    SET_PROFILE_BLOCKED_APPS = "set_profile_blocked_apps"
    SET_DEVICE_STATUS_LIGHT = "set_device_status_light"
    REBOOT_DEVICE = "reboot_device"
    REBOOT_NETWORK = "reboot_network"
    RUN_SPEED_TEST = "run_speed_test"
    RUN_BURST_REPORTERS = "run_burst_reporters"


class QueueStatus(str, Enum):
    PENDING = "pending"
    REPLAYED = "replayed"
    FAILED = "failed"


class ResultStatus(str, Enum):
    SUCCESS = "success"
    QUEUED = "queued"
    REJECTED = "rejected"
    FAILED = "failed"


def _utcnow():
    return datetime.now(pytz.UTC)


def _on_off(enabled):
    return "On" if enabled else "Off"


def api_id(record):
    """The cloud's own id for a record (last URL component), not our stable derived id."""
    return values.id_from_url(record.url) or record.id


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Action:
    kind: ActionKind
    network_id: str
    endpoint: str
    method: HTTPMethod
    label: str
    risk_level: RiskLevel
    queue_eligible: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    target_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self):
        return to_dict(self)

    @classmethod
    def from_dict(cls, data):
        return from_dict(cls, data)


@dataclass(frozen=True)
class QueuedAction:
    action: Action
    queued_at: datetime = field(default_factory=_utcnow)
    status: QueueStatus = QueueStatus.PENDING
    last_error: Optional[str] = None

    @property
    def id(self):
        return self.action.id

    def to_dict(self):
        return to_dict(self)

    @classmethod
    def from_dict(cls, data):
        return from_dict(cls, data)


@dataclass(frozen=True)
class ActionResult:
    status: ResultStatus
    message: Optional[str] = None

    @classmethod
    def success(cls):
        return cls(ResultStatus.SUCCESS)

    @classmethod
    def queued(cls):
        return cls(ResultStatus.QUEUED, "Action queued until cloud connectivity returns.")

    @classmethod
    def rejected(cls, message):
        return cls(ResultStatus.REJECTED, message)

    @classmethod
    def failed(cls, message):
        return cls(ResultStatus.FAILED, message)

    def to_dict(self):
        return to_dict(self)


def requires_confirmation(action, settings):
    """High risk always needs a confirmation; moderate risk only when the user asked for it."""
    if action.risk_level == RiskLevel.HIGH:
        return True
    if action.risk_level == RiskLevel.MODERATE:
        return bool(settings.ask_confirmation_for_moderate_risk)
    return False


# ---------------------------------------------------------------------------
# Network actions
# ---------------------------------------------------------------------------

def set_guest_network(network, enabled):
    return Action(
        kind=ActionKind.SET_GUEST_NETWORK,
        network_id=network.id,
        endpoint=f"/2.2/networks/{api_id(network)}/guestnetwork",
        method=HTTPMethod.PUT,
        payload={"enabled": bool(enabled)},
        label=f"Set Guest Network to {_on_off(enabled)} for {network.display_name}",
        risk_level=RiskLevel.LOW,
        queue_eligible=True,
    )


def set_network_feature(network, key, enabled):
    """Feature toggles live on different resources depending on the feature."""
    enabled = bool(enabled)
    if key == "thread_enabled":
        base = network.resources.get("thread") or f"/2.2/networks/{api_id(network)}/thread"
        endpoint, method, payload = f"{base}/enable", HTTPMethod.PUT, {"enabled": enabled}
        label = f"Set Thread to {_on_off(enabled)}"
    elif key == "ad_block":
        endpoint = f"/2.2/networks/{api_id(network)}/dns_policies/adblock"
        method, payload = HTTPMethod.POST, {"enable": enabled}
        label = f"Set Ad Block to {_on_off(enabled)}"
    elif key == "block_malware":
        endpoint = f"/2.2/networks/{api_id(network)}/dns_policies/network"
        method, payload = HTTPMethod.POST, {"block_malware": enabled}
        label = f"Set Malware Blocking to {_on_off(enabled)}"
    else:
        endpoint = network.resources.get("settings") or f"/2.2/networks/{api_id(network)}/settings"
        method, payload = HTTPMethod.PUT, {key: enabled}
        label = f"Set {key} to {_on_off(enabled)}"
    return Action(
        kind=ActionKind.SET_NETWORK_FEATURE,
        network_id=network.id,
        endpoint=endpoint,
        method=method,
        payload=payload,
        label=label,
        risk_level=RiskLevel.MODERATE,
        queue_eligible=True,
    )


def reboot_network(network):
    return Action(
        kind=ActionKind.REBOOT_NETWORK,
        network_id=network.id,
        endpoint=network.resources.get("reboot") or f"/2.2/networks/{api_id(network)}/reboot",
        method=HTTPMethod.POST,
        label=f"Reboot network {network.display_name}",
        risk_level=RiskLevel.HIGH,
        queue_eligible=False,
    )


def run_speed_test(network):
    return Action(
        kind=ActionKind.RUN_SPEED_TEST,
        network_id=network.id,
        endpoint=network.resources.get("speedtest") or f"/2.2/networks/{api_id(network)}/speedtest",
        method=HTTPMethod.POST,
        label=f"Run speed test for {network.display_name}",
        risk_level=RiskLevel.MODERATE,
        queue_eligible=False,
    )


def run_burst_reporters(network):
    return Action(
        kind=ActionKind.RUN_BURST_REPORTERS,
        network_id=network.id,
        endpoint=(network.resources.get("burst_reporters")
                  or f"/2.2/networks/{api_id(network)}/burst_reporters"),
        method=HTTPMethod.POST,
        label=f"Run burst reporters for {network.display_name}",
        risk_level=RiskLevel.MODERATE,
        queue_eligible=False,
    )


# ---------------------------------------------------------------------------
# Client & profile actions
# ---------------------------------------------------------------------------

def set_client_paused(network, client, paused):
    if not client.mac:
        raise ValueError(f"Client MAC is unavailable for {client.display_name}.")
    return Action(
        kind=ActionKind.SET_CLIENT_PAUSED,
        network_id=network.id,
        target_id=client.id,
        endpoint=f"/2.3/networks/{api_id(network)}/devices/{client.mac}",
        method=HTTPMethod.PUT,
        payload={"paused": bool(paused)},
        label=f"{'Pause' if paused else 'Resume'} client {client.display_name}",
        risk_level=RiskLevel.LOW,
        queue_eligible=True,
    )


def set_profile_paused(network, profile, paused):
    return Action(
        kind=ActionKind.SET_PROFILE_PAUSED,
        network_id=network.id,
        target_id=profile.id,
        endpoint=f"/2.2/networks/{api_id(network)}/profiles/{api_id(profile)}",
        method=HTTPMethod.PUT,
        payload={"paused": bool(paused)},
        label=f"{'Pause' if paused else 'Resume'} profile {profile.display_name}",
        risk_level=RiskLevel.LOW,
        queue_eligible=True,
    )


def set_profile_ad_block(network, profile, enabled):
    return Action(
        kind=ActionKind.SET_PROFILE_AD_BLOCK,
        network_id=network.id,
        target_id=profile.id,
        endpoint=f"/2.2/networks/{api_id(network)}/dns_policies/profiles/{api_id(profile)}",
        method=HTTPMethod.POST,
        payload={"ad_block": bool(enabled)},
        label=f"Set Ad Block for {profile.display_name} to {_on_off(enabled)}",
        risk_level=RiskLevel.MODERATE,
        queue_eligible=True,
    )


def set_profile_filter(network, profile, key, enabled):
    return Action(
        kind=ActionKind.SET_PROFILE_CONTENT_FILTER,
        network_id=network.id,
        target_id=profile.id,
        endpoint=f"/2.2/networks/{api_id(network)}/dns_policies/profiles/{api_id(profile)}",
        method=HTTPMethod.POST,
        payload={key: bool(enabled)},
        label=f"Set {profile.display_name} filter {key} to {_on_off(enabled)}",
        risk_level=RiskLevel.MODERATE,
        queue_eligible=True,
    )


def set_profile_blocked_apps(network, profile, apps):
    normalized = [a.strip() for a in (apps or []) if isinstance(a, str) and a.strip()]
    return Action(
        kind=ActionKind.SET_PROFILE_BLOCKED_APPS,
        network_id=network.id,
        target_id=profile.id,
        endpoint=(f"/2.2/networks/{api_id(network)}/dns_policies/profiles/"
                  f"{api_id(profile)}/applications/blocked"),
        method=HTTPMethod.PUT,
        payload={"applications": normalized},
        label=f"Update blocked apps for {profile.display_name}",
        risk_level=RiskLevel.MODERATE,
        queue_eligible=True,
    )


# ---------------------------------------------------------------------------
# eero node actions
# ---------------------------------------------------------------------------

def set_device_status_light(network, device, enabled):
    return Action(
        kind=ActionKind.SET_DEVICE_STATUS_LIGHT,
        network_id=network.id,
        target_id=device.id,
        endpoint=device.resources.get("led_action") or f"/2.2/eeros/{api_id(device)}/led",
        method=HTTPMethod.PUT,
        payload={"led_on": bool(enabled)},
        label=f"Set status light on {device.display_name} to {_on_off(enabled)}",
        risk_level=RiskLevel.LOW,
        queue_eligible=True,
    )


def reboot_device(network, device):
    return Action(
        kind=ActionKind.REBOOT_DEVICE,
        network_id=network.id,
        target_id=device.id,
        endpoint=device.resources.get("reboot") or f"/2.2/eeros/{api_id(device)}/reboot",
        method=HTTPMethod.POST,
        label=f"Reboot {device.display_name}",
        risk_level=RiskLevel.HIGH,
        queue_eligible=False,
    )


# ---------------------------------------------------------------------------
# Request dispatch
# ---------------------------------------------------------------------------

def _find(rows, target_id, what):
    row = next((r for r in rows if r.id == target_id), None)
    if row is None:
        raise LookupError(f"Unknown {what}: {target_id}")
    return row


def build_action(network, kind, target_id=None, value=None, key=None):
    """
    Build an Action from a loosely typed request (kind name, target id, value).

    Raises ValueError for unknown kinds or missing arguments and LookupError
    when the target is not part of *network*.
    """
    kind = ActionKind(kind)
    if kind == ActionKind.SET_GUEST_NETWORK:
        return set_guest_network(network, bool(value))
    if kind == ActionKind.SET_NETWORK_FEATURE:
        if not key:
            raise ValueError("A feature key is required.")
        return set_network_feature(network, key, bool(value))
    if kind == ActionKind.REBOOT_NETWORK:
        return reboot_network(network)
    if kind == ActionKind.RUN_SPEED_TEST:
        return run_speed_test(network)
    if kind == ActionKind.RUN_BURST_REPORTERS:
        return run_burst_reporters(network)
    if kind == ActionKind.SET_CLIENT_PAUSED:
        return set_client_paused(network, _find(network.clients, target_id, "client"), bool(value))

    if kind in (ActionKind.SET_DEVICE_STATUS_LIGHT, ActionKind.REBOOT_DEVICE):
        device = _find(network.devices, target_id, "eero")
        if kind == ActionKind.REBOOT_DEVICE:
            return reboot_device(network, device)
        return set_device_status_light(network, device, bool(value))

    profile = _find(network.profiles, target_id, "profile")
    if kind == ActionKind.SET_PROFILE_PAUSED:
        return set_profile_paused(network, profile, bool(value))
    if kind == ActionKind.SET_PROFILE_AD_BLOCK:
        return set_profile_ad_block(network, profile, bool(value))
    if kind == ActionKind.SET_PROFILE_CONTENT_FILTER:
        if not key:
            raise ValueError("A filter key is required.")
        return set_profile_filter(network, profile, key, bool(value))
    return set_profile_blocked_apps(network, profile, value if isinstance(value, list) else [])
