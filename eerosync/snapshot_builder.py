#!/usr/bin/env python3
"""
eerosync - Snapshot Builder
Walks the account's networks, fans out best-effort enrichment calls per
network and assembles one AccountSnapshot per refresh.
"""
import calendar
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time, timedelta
from urllib.parse import quote

import pytz

from eerosync import values as v
from eerosync.api_client import ACCOUNT_PATH
from eerosync.config import UpdateConfig, get_timezone
from eerosync.errors import EeroAPIError, InvalidPayload
from eerosync.models import AccountSnapshot
from eerosync.normalize import (
    PERIODS,
    needs_telemetry_detail,
    parse_network,
    telemetry_score,
)

logger = logging.getLogger(__name__)

MAX_ENRICHMENT_WORKERS = 6
CHANNEL_UTILIZATION_HOURS = 6
DEVICE_QUERY_VARIANTS = ("thread=true&proxied_node=true", "thread=true", "proxied_node=true", "")

# result key -> (resource link keys, conventional path suffix)
SIMPLE_RESOURCES = {
    "thread": (("thread",), "thread"),
    "guest_network": (("guestnetwork", "guest_network"), "guestnetwork"),
    "ac_compat": (("ac_compat",), "ac_compat"),
    "blacklist": (("blacklist", "device_blacklist"), "blacklist"),
    "diagnostics": (("diagnostics",), "diagnostics"),
    "forwards": (("forwards",), "forwards"),
    "reservations": (("reservations",), "reservations"),
    "routing": (("routing",), "routing"),
    "speedtest": (("speedtest",), "speedtest"),
    "updates": (("updates",), "updates"),
    "support": (("support",), "support"),
    "insights_response": (("insights",), "insights"),
    "ouicheck_response": (("ouicheck",), "ouicheck"),
}

MANAGED_FIELDS = (["proxied_nodes"], ["channel_utilization"], ["update_status"])


def _iso(moment):
    utc = moment.astimezone(pytz.UTC)
    return utc.strftime("%Y-%m-%dT%H:%M:%S") + f".{utc.microsecond // 1000:03d}Z"


def with_query(path, query):
    """Append *query* to *path*, which may already carry a query string."""
    if not query:
        return path
    return f"{path}{'&' if '?' in path else '?'}{query}"


def activity_window(period, tz_name=None, now=None):
    """
    Query window for a usage period in the network's local time.

    day -> today, hourly; week -> Sunday..Saturday, daily; month -> calendar month, daily.
    """
    tz = get_timezone(tz_name)
    today = (now or datetime.now(pytz.UTC)).astimezone(tz).date()
    if period == "day":
        start_date, days, cadence = today, 1, "hourly"
    elif period == "week":
        start_date, days, cadence = today - timedelta(days=(today.weekday() + 1) % 7), 7, "daily"
    elif period == "month":
        start_date = today.replace(day=1)
        days, cadence = calendar.monthrange(today.year, today.month)[1], "daily"
    else:
        raise ValueError(f"Unknown usage period: {period}")
    local_start = datetime.combine(start_date, time.min)
    start = tz.localize(local_start)
    end = tz.localize(local_start + timedelta(days=days) - timedelta(seconds=1))
    return {"start": _iso(start), "end": _iso(end), "cadence": cadence, "timezone": tz.zone}


def channel_utilization_has_data(payload):
    if isinstance(payload, list):
        return any(isinstance(row, dict) for row in payload)
    return bool(v.dict_array(payload, ["utilization"]))


class SnapshotBuilder:
    """Builds AccountSnapshots from the eero cloud through an EeroAPI client."""

    def __init__(self, api, max_workers=MAX_ENRICHMENT_WORKERS, telemetry_scorer=telemetry_score):
        self.api = api
        self.max_workers = max_workers
        self.telemetry_scorer = telemetry_scorer

    # ── account ────────────────────────────────────────────────────────────

    def fetch_account(self, update_config=None):
        """Fetch every network of the account. Raises if the account itself cannot be read."""
        update_config = update_config or UpdateConfig()
        fetched_at = datetime.now(pytz.UTC)
        account = self.api.get(ACCOUNT_PATH)
        if not isinstance(account, dict):
            raise InvalidPayload()

        refs = [ref for ref in v.dict_array(account, ["networks", "data"]) if v.string(ref, ["url"])]
        if update_config.network_ids:
            wanted = {str(n) for n in update_config.network_ids}
            refs = [ref for ref in refs if v.id_from_url(v.string(ref, ["url"])) in wanted]

        networks, skipped, last_error = [], [], None
        for ref in refs:
            url = v.string(ref, ["url"])
            try:
                raw = self.fetch_network(url, update_config)
                networks.append(parse_network(raw, sampled_at=fetched_at))
            except EeroAPIError as e:
                last_error = e
                skipped.append(v.stable_identifier(
                    "network", v.id_from_url(url),
                    [url, v.string(ref, ["name"]), v.string(ref, ["nickname_label"])]))
                logger.warning("Skipping network %s this cycle: %s", url, str(e))

        if refs and not networks and last_error is not None:
            raise last_error

        logger.info("Fetched %d network(s) for account", len(networks))
        return AccountSnapshot(
            fetched_at=fetched_at,
            networks=networks,
            account_name=v.first_string(account, [["name"], ["email", "value"]]),
            skipped_network_ids=skipped,
        )

    # ── network ────────────────────────────────────────────────────────────

    def fetch_network(self, network_url, update_config):
        """Network body plus every enrichment; only the body call is allowed to fail the network."""
        data = self.api.get(network_url)
        if not isinstance(data, dict):
            raise InvalidPayload()
        data.setdefault("url", network_url)
        network_id = v.id_from_url(network_url)
        base = f"/2.2/networks/{network_id}"
        resources = v.string_map(data, ["resources"])

        if any(v.value(data, path) is None for path in MANAGED_FIELDS):
            managed = self._best_effort("managed", self.api.fetch_resource_data,
                                        resources, ("managed",), f"{base}/managed")
            if isinstance(managed, dict):
                data = v.deep_merge(data, managed)

        tz_name = (v.first_string(data, [["timezone", "value"], ["timezone"]])
                   or update_config.timezone)
        tasks = {
            key: (self.api.fetch_resource_data, resources, keys, f"{base}/{suffix}")
            for key, (keys, suffix) in SIMPLE_RESOURCES.items()
        }
        tasks["devices"] = (self.fetch_clients, network_id, network_url, resources)
        tasks["profiles"] = (self.fetch_profiles, network_id, resources)
        tasks["eeros"] = (self.fetch_eeros, network_id, resources)
        if update_config.include_activity:
            tasks["activity"] = (self.fetch_activity, network_url, tz_name)
        if update_config.include_channel_utilization and not v.value(data, ["channel_utilization"]):
            tasks["channel_utilization"] = (self.fetch_channel_utilization, network_id,
                                            network_url, resources, tz_name)

        results = self._run_enrichments(tasks)

        profiles = results.pop("profiles", None)
        if profiles is not None:
            data["profiles"], data["applications_catalog"] = profiles
        for key, result in results.items():
            if result is None or v.is_empty(result):
                continue
            existing = data.get(key)
            if isinstance(existing, dict) and isinstance(result, dict):
                data[key] = v.deep_merge(existing, result)
            else:
                data[key] = result

        return data

    def _best_effort(self, label, func, *args):
        try:
            return func(*args)
        except EeroAPIError as e:
            logger.debug("Enrichment %s unavailable: %s", label, str(e))
            return None

    def _run_enrichments(self, tasks):
        results = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {key: pool.submit(self._best_effort, key, func, *args)
                       for key, (func, *args) in tasks.items()}
            for key, future in futures.items():
                try:
                    results[key] = future.result()
                except Exception as e:
                    logger.error("Enrichment %s crashed: %s", key, e)
                    results[key] = None
        return results

    # ── clients ────────────────────────────────────────────────────────────

    def fetch_clients(self, network_id, network_url, resources):
        """Probe the device-list variants, keep the richest, then detail-fetch sparse rows."""
        base = (resources.get("devices") or resources.get("clients")
                or f"/2.2/networks/{network_id}/devices")
        candidates = [with_query(base, variant) for variant in DEVICE_QUERY_VARIANTS]
        rows, _ = self.api.probe_candidates(candidates, scorer=self.telemetry_scorer)
        if rows is None:
            return None

        enriched = []
        for row in rows:
            if needs_telemetry_detail(row):
                mac = v.string(row, ["mac"])
                detail_path = v.string(row, ["url"]) or (
                    f"{network_url}/devices/{quote(mac)}" if mac else None)
                if detail_path:
                    detail = self._best_effort("client detail", self.api.get, detail_path)
                    if isinstance(detail, dict):
                        row = v.deep_merge(row, detail)
            enriched.append(row)
        return {"count": len(enriched), "data": enriched}

    # ── profiles ───────────────────────────────────────────────────────────

    def fetch_profiles(self, network_id, resources):
        payload = self.api.fetch_resource_data(resources, ("profiles",),
                                               f"/2.2/networks/{network_id}/profiles")
        rows = v.normalize_object_array(payload)
        catalogs = {}
        for row in rows:
            profile_id = v.id_from_url(v.string(row, ["url"]))
            if not profile_id:
                continue
            catalog = self._best_effort(
                "application catalog", self.api.get,
                f"/2.2/networks/{network_id}/dns_policies/profiles/{profile_id}/applications")
            if catalog is not None:
                catalogs[profile_id] = catalog
        return rows, catalogs

    # ── eeros ──────────────────────────────────────────────────────────────

    def fetch_eeros(self, network_id, resources):
        payload = self.api.fetch_resource_data(resources, ("eeros",),
                                               f"/2.2/networks/{network_id}/eeros")
        rows = []
        for row in v.normalize_object_array(payload):
            url = v.string(row, ["url"])
            if url:
                detail = self._best_effort("eero detail", self.api.get, url)
                if isinstance(detail, dict):
                    row = v.deep_merge(row, detail)
                eero_resources = v.string_map(row, ["resources"])
                connections = self._best_effort(
                    "eero connections", self.api.fetch_resource_data,
                    eero_resources, ("connections",), f"{url}/connections")
                if isinstance(connections, dict):
                    row = v.deep_merge(row, {"connections": connections})
            rows.append(row)
        return {"data": rows}

    # ── activity ───────────────────────────────────────────────────────────

    def _usage(self, paths, params):
        for path in paths:
            found = self._best_effort("usage", self.api.get, path, params)
            if found is not None:
                return found
        return None

    def fetch_activity(self, network_url, tz_name=None):
        activity = {"network": {}, "eeros": {}, "devices": {}}
        for period in PERIODS:
            params = activity_window(period, tz_name)
            groups = {
                "network": (f"{network_url}/data_usage", f"{network_url}/data_usage/breakdown"),
                "eeros": (f"{network_url}/data_usage/eeros", f"{network_url}/data_usage/eeros/summary"),
                "devices": (f"{network_url}/data_usage/devices",),
            }
            for group, paths in groups.items():
                found = self._usage(paths, params)
                if found is not None:
                    activity[group][period] = found
        if not any(activity.values()):
            return None
        return activity

    # ── radio utilization ──────────────────────────────────────────────────

    def fetch_channel_utilization(self, network_id, network_url, resources, tz_name=None):
        """Last few hours of per-radio utilization; the first query variant with data wins."""
        now = datetime.now(pytz.UTC)
        start = now - timedelta(hours=CHANNEL_UTILIZATION_HOURS)
        common = {"start": _iso(start), "end": _iso(now),
                  "granularity": "15", "gap_data_placeholder": "-1"}
        tz = get_timezone(tz_name).zone
        variants = [
            common,
            dict(common, timezone=tz),
            {"start": common["start"], "end": common["end"],
             "granularity": "fifteen_minutes", "gap_data_placeholder": "true", "timezone": tz},
        ]
        bases = [f"/2.2/networks/{network_id}/channel_utilization"]
        for candidate in (resources.get("channel_utilization"), f"{network_url}/channel_utilization"):
            if candidate and candidate not in bases:
                bases.append(candidate)

        for base in bases:
            for params in variants:
                found = self._best_effort("channel utilization", self.api.get, base, params)
                if found is not None and channel_utilization_has_data(found):
                    return found
        return None
