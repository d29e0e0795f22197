#!/usr/bin/env python3
"""
eerosync - Configuration
Environment-driven paths and tunables, persisted user settings, and logging setup.
"""
import os
import json
import logging
from dataclasses import dataclass, asdict, replace
from datetime import datetime
from typing import List, Optional

import pytz

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

API_URL = os.environ.get("EERO_API_URL", "api-user.e2ro.com")
STATE_DIR = os.environ.get("EERO_STATE_DIR", os.path.join(BASE_DIR, "state"))
SETTINGS_FILE = os.environ.get("EERO_SETTINGS_FILE", os.path.join(STATE_DIR, "settings.json"))
LOG_DIR = os.environ.get("EERO_LOG_DIR", os.path.join(BASE_DIR, "logs"))

HTTP_TIMEOUT = float(os.environ.get("EERO_HTTP_TIMEOUT", "20"))  # seconds
PROBE_MIN_INTERVAL = float(os.environ.get("EERO_PROBE_MIN_INTERVAL", "30"))  # seconds
DEFAULT_TIMEZONE = os.environ.get("EERO_TIMEZONE", "UTC")

# Local HTTP surface. Loopback only unless EERO_HOST says otherwise.
SERVER_HOST = os.environ.get("EERO_HOST", "127.0.0.1")
SERVER_PORT = int(os.environ.get("EERO_PORT", "5000"))
SERVER_DEBUG = os.environ.get("EERO_ENV", "production") == "development"
CORS_ORIGINS = [o.strip() for o in os.environ.get(
    "EERO_CORS_ORIGINS", r"https?://localhost(:\d+)?$,https?://127\.0\.0\.1(:\d+)?$").split(",") if o.strip()]

DEFAULT_GATEWAY = "192.168.4.1"
DEFAULT_FOREGROUND_INTERVAL = float(os.environ.get("EERO_FOREGROUND_INTERVAL", "8"))
DEFAULT_BACKGROUND_INTERVAL = float(os.environ.get("EERO_BACKGROUND_INTERVAL", "90"))
MIN_FOREGROUND_INTERVAL = 3.0
MIN_BACKGROUND_INTERVAL = 15.0

SNAPSHOT_CACHE_FILE = "cached-account-snapshot.json"
SNAPSHOT_MAX_AGE_HOURS = 24 * 7


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def configure_logging(log_dir=None, level=logging.INFO):
    """Send log records to both the log file and stderr."""
    log_dir = log_dir or LOG_DIR
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(log_dir, 'eerosync.log')),
            logging.StreamHandler()
        ]
    )


# ---------------------------------------------------------------------------
# User Settings
# ---------------------------------------------------------------------------

def clamp_intervals(foreground, background):
    """Apply the lower bounds for the two polling cadences."""
    try:
        foreground = float(foreground)
    except (TypeError, ValueError):
        foreground = DEFAULT_FOREGROUND_INTERVAL
    try:
        background = float(background)
    except (TypeError, ValueError):
        background = DEFAULT_BACKGROUND_INTERVAL
    return max(MIN_FOREGROUND_INTERVAL, foreground), max(MIN_BACKGROUND_INTERVAL, background)


def _text(name, value):
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value.strip()


@dataclass(frozen=True)
class Settings:
    gateway_address: str = DEFAULT_GATEWAY
    default_login: str = ""
    ask_confirmation_for_moderate_risk: bool = False
    foreground_interval: float = DEFAULT_FOREGROUND_INTERVAL
    background_interval: float = DEFAULT_BACKGROUND_INTERVAL
    network_ids: Optional[List[str]] = None
    timezone: str = DEFAULT_TIMEZONE

    def normalized(self):
        """
        Trimmed copy with a usable gateway, clamped intervals and a valid timezone.
        Raises ValueError when a field has the wrong type.
        """
        gateway = _text("gateway_address", self.gateway_address) or DEFAULT_GATEWAY
        foreground, background = clamp_intervals(self.foreground_interval, self.background_interval)
        if not isinstance(self.ask_confirmation_for_moderate_risk, bool):
            raise ValueError("ask_confirmation_for_moderate_risk must be true or false")
        network_ids = None
        if self.network_ids is not None:
            if not isinstance(self.network_ids, (list, tuple)):
                raise ValueError("network_ids must be a list of network ids")
            if any(isinstance(n, (dict, list, tuple, bool)) for n in self.network_ids):
                raise ValueError("network_ids must contain plain ids")
            network_ids = [str(n).strip() for n in self.network_ids
                           if n is not None and str(n).strip()] or None
        tz_name = _text("timezone", self.timezone) or DEFAULT_TIMEZONE
        if tz_name not in pytz.all_timezones_set:
            logger.warning("Unknown timezone %s, using UTC", tz_name)
            tz_name = "UTC"
        return replace(
            self,
            gateway_address=gateway,
            default_login=_text("default_login", self.default_login),
            foreground_interval=foreground,
            background_interval=background,
            network_ids=network_ids,
            timezone=tz_name,
        )

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in (data or {}).items() if k in known}).normalized()


def load_settings(path=None):
    """Load settings from JSON, falling back to defaults when missing or unreadable."""
    path = path or SETTINGS_FILE
    try:
        if os.path.exists(path):
            with open(path, 'r') as f:
                return Settings.from_dict(json.load(f))
    except Exception as e:
        logger.error("Settings load error: %s", str(e))
    return Settings().normalized()


def save_settings(settings, path=None):
    """Persist settings as JSON. Returns True on success."""
    path = path or SETTINGS_FILE
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, 'w') as f:
            json.dump(settings.normalized().to_dict(), f, indent=2)
        return True
    except Exception as e:
        logger.error("Settings save error: %s", str(e))
        return False


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

def get_timezone(tz_name=None):
    try:
        return pytz.timezone(tz_name or DEFAULT_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        logger.warning("Timezone error, using UTC: %s", tz_name)
        return pytz.UTC


def timezone_aware_now(tz_name=None):
    """Current time in the configured timezone."""
    return datetime.now(get_timezone(tz_name))


@dataclass
class UpdateConfig:
    """Per-refresh options handed to the snapshot builder."""
    network_ids: Optional[List[str]] = None
    include_activity: bool = True
    include_channel_utilization: bool = True
    # Fallback for networks that do not report their own timezone
    timezone: Optional[str] = None
