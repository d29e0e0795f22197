#!/usr/bin/env python3
"""
eerosync - Snapshot Reconciler
Merges a freshly built snapshot with the last-known-good one so partial or
degraded responses never erase facts we already knew.

Rules:
  * scalars take the fresh value unless it is None / blank / empty
  * nested summaries merge recursively with the same rule
  * row collections merge by id, falling back to MAC then resource URL
  * rows only present in the previous snapshot are kept
  * ethernet ports pair up by interface number / port name
  * networks missing from the fresh snapshot are dropped, unless the account
    still listed them and only their own fetch failed
"""
import dataclasses
import logging

from eerosync import values
from eerosync.models import (
    AccountSnapshot,
    ChannelUtilizationSummary,
    EthernetPortStatus,
    RealtimeSummary,
)
from eerosync.normalize import recompute_derived

logger = logging.getLogger(__name__)

# Summaries that describe one sampling window and are replaced whole, never blended
ATOMIC_TYPES = (ChannelUtilizationSummary, RealtimeSummary)


def _is_record(obj):
    return dataclasses.is_dataclass(obj) and not isinstance(obj, type)


def merge_value(fresh, previous):
    if _is_record(fresh) and _is_record(previous) and type(fresh) is type(previous):
        if isinstance(fresh, ATOMIC_TYPES):
            return fresh
        return merge_record(fresh, previous)
    if isinstance(fresh, (list, tuple)) and isinstance(previous, (list, tuple)):
        return merge_list(fresh, previous)
    if values.is_empty(fresh) and not values.is_empty(previous):
        return previous
    return fresh


def merge_record(fresh, previous):
    """Field-by-field ``fresh ?? previous`` over two records of the same type."""
    changes = {}
    for f in dataclasses.fields(fresh):
        if f.name == "id":
            continue
        new, old = getattr(fresh, f.name), getattr(previous, f.name)
        merged = merge_value(new, old)
        if merged is not new:
            changes[f.name] = merged
    return dataclasses.replace(fresh, **changes) if changes else fresh


def merge_list(fresh, previous):
    fresh, previous = tuple(fresh), tuple(previous)
    if not fresh:
        return previous
    if not previous:
        return fresh
    if all(isinstance(item, EthernetPortStatus) for item in fresh + previous):
        return merge_ports(fresh, previous)
    if all(_is_record(item) and hasattr(item, "id") for item in fresh + previous):
        return merge_rows(fresh, previous)
    return fresh


def _row_keys(row):
    """Identity keys in priority order: derived id, MAC, resource URL id."""
    keys = [("id", row.id)]
    mac = values.normalize_mac(getattr(row, "mac", None))
    if mac:
        keys.append(("mac", mac))
    url_id = values.id_from_url(getattr(row, "url", None))
    if url_id:
        keys.append(("url", url_id))
    return keys


def merge_rows(fresh, previous):
    """
    Merge two row lists. A fresh row matched to a previous row through a
    fallback key keeps the previous id so identity stays stable.
    """
    lookup = {}
    for index, row in enumerate(previous):
        for key in _row_keys(row):
            lookup.setdefault(key, index)

    merged, used = [], set()
    for row in fresh:
        match = next((lookup[k] for k in _row_keys(row) if k in lookup and lookup[k] not in used), None)
        if match is None:
            merged.append(row)
            continue
        used.add(match)
        old = previous[match]
        result = merge_record(row, old)
        if result.id != old.id:
            result = dataclasses.replace(result, id=old.id)
        merged.append(result)

    merged.extend(row for index, row in enumerate(previous) if index not in used)
    return tuple(merged)


def merge_ports(fresh, previous):
    lookup = {}
    for index, port in enumerate(previous):
        for key in port.lookup_keys() or [("id", port.id)]:
            lookup.setdefault(key, index)

    merged, used = [], set()
    for port in fresh:
        keys = port.lookup_keys() or [("id", port.id)]
        match = next((lookup[k] for k in keys if k in lookup and lookup[k] not in used), None)
        if match is None:
            merged.append(port)
            continue
        used.add(match)
        merged.append(merge_record(port, previous[match]))

    merged.extend(port for index, port in enumerate(previous) if index not in used)
    return tuple(merged)


def reconcile_network(fresh, previous, sampled_at=None):
    merged = merge_record(fresh, previous)
    return recompute_derived(merged, sampled_at)


def reconcile(fresh, previous):
    """Merge *fresh* onto *previous* and return a new snapshot. Inputs are not modified."""
    if previous is None:
        return fresh
    previous_by_id = {n.id: n for n in previous.networks}
    skipped = set(fresh.skipped_network_ids)
    networks, fresh_ids = [], set()
    for network in fresh.networks:
        old = previous_by_id.get(network.id)
        if old is None:
            networks.append(network)
        elif network.id in skipped:
            # Not fetched this cycle: the last-known-good copy stands unchanged
            networks.append(old)
        else:
            networks.append(reconcile_network(network, old, fresh.fetched_at))
        fresh_ids.add(network.id)

    for network_id in fresh.skipped_network_ids:
        if network_id in previous_by_id and network_id not in fresh_ids:
            networks.append(previous_by_id[network_id])
            fresh_ids.add(network_id)

    dropped = set(previous_by_id) - fresh_ids
    if dropped:
        logger.info("Networks no longer reported by account: %s", ", ".join(sorted(dropped)))

    return AccountSnapshot(
        fetched_at=fresh.fetched_at,
        networks=networks,
        account_name=merge_value(fresh.account_name, previous.account_name),
        skipped_network_ids=fresh.skipped_network_ids,
    )
