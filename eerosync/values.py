#!/usr/bin/env python3
"""
eerosync - Tolerant JSON Lookups
The eero API returns the same fact under different keys depending on firmware,
endpoint and account state. These helpers walk decoded JSON by path, coerce
loosely typed values and pick the first present value among alternate paths.
Every lookup returns None instead of raising when the shape does not match.
"""
import math
import re
from urllib.parse import urlparse

_NUMBER_RE = re.compile(r"[-+]?[0-9]*\.?[0-9]+")


# ---------------------------------------------------------------------------
# Path Lookups
# ---------------------------------------------------------------------------

def value(data, path):
    """Walk *path* (a list of keys / list indexes) through nested dicts and lists."""
    current = data
    for key in path:
        if isinstance(current, dict):
            if key not in current:
                return None
            current = current[key]
        elif isinstance(current, list) and isinstance(key, int):
            if key >= len(current) or key < -len(current):
                return None
            current = current[key]
        else:
            return None
    return current


def to_string(raw):
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        if isinstance(raw, float) and raw.is_integer():
            return str(int(raw))
        return str(raw)
    return None


def to_number(raw):
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if math.isfinite(raw) else None
    if isinstance(raw, str):
        try:
            parsed = float(raw.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def to_int(raw):
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    number = to_number(raw)
    if number is None:
        return None
    return int(round(number))


def to_bool(raw):
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in ("true", "yes", "1", "on", "enabled"):
            return True
        if lowered in ("false", "no", "0", "off", "disabled"):
            return False
    return None


def string(data, path):
    """String at *path*; blank strings count as absent."""
    text = to_string(value(data, path))
    if text is None or not text.strip():
        return None
    return text


def number(data, path):
    return to_number(value(data, path))


def integer(data, path):
    return to_int(value(data, path))


def boolean(data, path):
    return to_bool(value(data, path))


def dict_at(data, path):
    found = value(data, path)
    return found if isinstance(found, dict) else None


def dict_array(data, path):
    found = value(data, path)
    if isinstance(found, list):
        return [row for row in found if isinstance(row, dict)]
    return []


def string_map(data, path):
    """Dict of str -> str at *path*, dropping non-string values."""
    found = dict_at(data, path) or {}
    return {k: v for k, v in found.items() if isinstance(v, str) and v.strip()}


def string_list(raw):
    """Accept ["a", "b"] or [{"id"|"name"|"value"|"title": ...}] and return trimmed strings."""
    if not isinstance(raw, list):
        return []
    result = []
    for item in raw:
        if isinstance(item, dict):
            item = (string(item, ["id"]) or string(item, ["name"])
                    or string(item, ["value"]) or string(item, ["title"]))
        text = to_string(item)
        if text and text.strip():
            result.append(text.strip())
    return result


# ---------------------------------------------------------------------------
# First-present lookups over alternate paths
# ---------------------------------------------------------------------------

def first_value(data, paths):
    for path in paths:
        found = value(data, path)
        if found is not None:
            return found
    return None


def first_string(data, paths):
    for path in paths:
        found = string(data, path)
        if found is not None:
            return found
    return None


def first_number(data, paths):
    for path in paths:
        found = number(data, path)
        if found is not None:
            return found
    return None


def first_int(data, paths):
    for path in paths:
        found = integer(data, path)
        if found is not None:
            return found
    return None


def first_bool(data, paths):
    for path in paths:
        found = boolean(data, path)
        if found is not None:
            return found
    return None


def first_array_length(data, paths):
    for path in paths:
        found = value(data, path)
        if isinstance(found, list):
            return len(found)
    return None


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

def id_from_url(url):
    """Last non-empty path component of a resource URL ("/2.2/networks/123" -> "123")."""
    if not url or not isinstance(url, str):
        return None
    path = urlparse(url).path if "://" in url else url.split("?", 1)[0]
    parts = [p for p in path.split("/") if p]
    return parts[-1] if parts else None


def normalize_key(raw):
    """Lowercase alphanumerics only, so "AA:BB-cc" and "aabbcc" compare equal."""
    if raw is None:
        return ""
    text = to_string(raw) if not isinstance(raw, str) else raw
    text = (text or "").strip().lower()
    if not text:
        return ""
    compact = "".join(ch for ch in text if ch.isalnum())
    return compact or text


def normalize_mac(raw):
    """Twelve lowercase hex digits, or None when *raw* is not a MAC address."""
    key = normalize_key(raw)
    if len(key) == 12 and all(ch in "0123456789abcdef" for ch in key):
        return key
    return None


def stable_identifier(prefix, primary=None, fallbacks=()):
    """Deterministic "<prefix>-<key>" id from the first candidate that normalizes to something."""
    for candidate in (primary, *fallbacks):
        key = normalize_key(candidate)
        if key:
            return f"{prefix}-{key}"
    return f"{prefix}-unknown"


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------

def is_empty(raw):
    """None, blank strings and empty collections carry no information."""
    if raw is None:
        return True
    if isinstance(raw, str):
        return not raw.strip()
    if isinstance(raw, (list, dict, tuple, set)):
        return len(raw) == 0
    return False


def deep_merge(existing, incoming):
    """
    Overlay *incoming* on *existing*, used when a detail call enriches a row
    fetched from a list endpoint.

    Nested dicts merge recursively. Incoming None, blank strings and empty
    collections never replace an existing value.
    """
    merged = dict(existing)
    for key, new in incoming.items():
        if new is None:
            continue
        old = merged.get(key)
        if isinstance(old, dict) and isinstance(new, dict):
            merged[key] = deep_merge(old, new)
        elif is_empty(new) and not is_empty(old):
            continue
        else:
            merged[key] = new
    return merged


def normalize_object_array(raw):
    """Rows from a bare list, {"data": [...]}, {"data": {"data": [...]}} or {"values": [...]}."""
    if isinstance(raw, list):
        return [row for row in raw if isinstance(row, dict)]
    if isinstance(raw, dict):
        for key in ("data", "values"):
            nested = raw.get(key)
            if isinstance(nested, list):
                return [row for row in nested if isinstance(row, dict)]
            if isinstance(nested, dict):
                rows = normalize_object_array(nested)
                if rows:
                    return rows
    return []


# ---------------------------------------------------------------------------
# Rates
# ---------------------------------------------------------------------------

_MBPS_KEYS = ("rate_mbps", "rateMbps", "mbps", "value_mbps", "valueMbps",
              "link_speed_mbps", "linkSpeedMbps")
_BPS_KEYS = ("rate_bps", "rateBps", "bps", "value_bps", "valueBps")
_NESTED_RATE_KEYS = ("rate", "rate_info", "rateInfo", "value")


def parse_rate_string(text):
    """Parse strings such as "866.7 Mbit/s", "1.2Gbps" or "54000000" into Mbps."""
    normalized = text.lower().replace(" ", "")
    match = _NUMBER_RE.search(normalized)
    if not match:
        return None
    try:
        amount = float(match.group(0))
    except ValueError:
        return None
    if not math.isfinite(amount):
        return None
    unit = normalized[match.end():]
    if not unit:
        return amount / 1_000_000 if amount > 100_000 else amount
    if any(u in unit for u in ("gbit/s", "gbitps", "gbps")):
        return amount * 1_000
    if any(u in unit for u in ("mbit/s", "mbitps", "mbps")):
        return amount
    if any(u in unit for u in ("kbit/s", "kbitps", "kbps")):
        return amount / 1_000
    if "bit/s" in unit or "bps" in unit:
        return amount / 1_000_000
    return amount / 1_000_000 if amount > 100_000 else amount


def rate_mbps(raw):
    """Best-effort link/throughput rate in Mbps from any of the API's rate shapes."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        for key in _MBPS_KEYS:
            found = to_number(raw.get(key))
            if found is not None:
                return found
        for key in _BPS_KEYS:
            found = to_number(raw.get(key))
            if found is not None:
                return found / 1_000_000
        for key in _NESTED_RATE_KEYS:
            if key in raw:
                nested = rate_mbps(raw[key])
                if nested is not None:
                    return nested
        return None
    if isinstance(raw, str):
        trimmed = raw.strip()
        return parse_rate_string(trimmed) if trimmed else None
    found = to_number(raw)
    if found is None:
        return None
    return found / 1_000_000 if found > 100_000 else found
