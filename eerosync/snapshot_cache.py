#!/usr/bin/env python3
"""
eerosync - Snapshot Cache
Persists the last-known-good AccountSnapshot so a cold start can show data
before the first fetch completes. The snapshot is written to a JSON file
and mirrored into the database as an opaque blob keyed by account.
"""
import os
import json
import logging
from datetime import datetime

import pytz

from eerosync import database
from eerosync.config import SNAPSHOT_CACHE_FILE, SNAPSHOT_MAX_AGE_HOURS, STATE_DIR
from eerosync.models import AccountSnapshot

logger = logging.getLogger(__name__)


def _age_hours(saved_at):
    saved_time = datetime.fromisoformat(saved_at.replace('Z', '+00:00'))
    if saved_time.tzinfo is None:
        saved_time = pytz.UTC.localize(saved_time)
    return (datetime.now(pytz.UTC) - saved_time).total_seconds() / 3600


class SnapshotCache:
    def __init__(self, account_key="session", path=None, db_path=None,
                 max_age_hours=SNAPSHOT_MAX_AGE_HOURS, use_database=True):
        self.account_key = account_key
        self.path = path or os.path.join(STATE_DIR, SNAPSHOT_CACHE_FILE)
        self.db_path = db_path
        self.max_age_hours = max_age_hours
        self.use_database = use_database

    def save(self, snapshot):
        """Write *snapshot* to disk and to the database. Returns True if the file write succeeded."""
        payload = snapshot.to_dict()
        saved = False
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, 'w') as f:
                json.dump(dict(payload, _saved_at=datetime.now(pytz.UTC).isoformat()), f)
            saved = True
            logger.debug("Snapshot cache saved to disk")
        except Exception as e:
            logger.error("Failed to save snapshot cache: %s", str(e))

        if self.use_database:
            try:
                database.save_snapshot_blob(self.account_key, json.dumps(payload), db_path=self.db_path)
            except Exception as e:
                logger.error("Failed to save snapshot blob: %s", str(e))
        return saved

    def _from_payload(self, payload, saved_at, source):
        if saved_at:
            age = _age_hours(saved_at)
            if age > self.max_age_hours:
                logger.info("Cached snapshot (%s) is %.1f hours old, ignoring it", source, age)
                return None
        snapshot = AccountSnapshot.from_dict(payload)
        if snapshot.fetched_at is None:
            return None
        logger.info("Loaded cached snapshot from %s (%d networks)", source, len(snapshot.networks))
        return snapshot

    def load(self):
        """Most recent usable snapshot from disk, else from the database, else None."""
        try:
            if os.path.exists(self.path):
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                saved_at = saved.pop('_saved_at', None)
                snapshot = self._from_payload(saved, saved_at, "disk")
                if snapshot is not None:
                    return snapshot
        except Exception as e:
            logger.error("Failed to load snapshot cache: %s", str(e))

        if not self.use_database:
            return None
        try:
            blob = database.load_snapshot_blob(self.account_key, db_path=self.db_path)
            if blob is not None:
                saved_at, payload_json = blob
                return self._from_payload(json.loads(payload_json), saved_at, "database")
        except Exception as e:
            logger.error("Failed to load snapshot blob: %s", str(e))
        return None

    def clear(self):
        try:
            if os.path.exists(self.path):
                os.remove(self.path)
            if self.use_database:
                database.delete_snapshot_blob(self.account_key, db_path=self.db_path)
        except Exception as e:
            logger.error("Failed to clear snapshot cache: %s", str(e))
