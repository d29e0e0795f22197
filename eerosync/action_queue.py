#!/usr/bin/env python3
"""
eerosync - Action Queue & Executor
Runs actions against the cloud and parks queue-eligible ones while the cloud
is unreachable. Queue entries move pending -> replayed (then cleared) or
pending -> failed (kept until retried or removed). Entries are persisted in
SQLite so they survive restarts.
"""
import json
import logging
import threading

from eerosync import database
from eerosync.actions import ActionResult, QueueStatus, QueuedAction
from eerosync.errors import EeroAPIError, describe, is_transient

logger = logging.getLogger(__name__)

OFFLINE_REJECTION = "This action is not allowed while cloud access is unavailable."


class PendingActionQueue:
    """Persistent queue of actions waiting for the cloud, scoped to one account."""

    def __init__(self, account_key="session", db_path=None):
        self.account_key = account_key
        self.db_path = db_path
        self._lock = threading.Lock()

    def _to_queued(self, record):
        return QueuedAction.from_dict({
            "action": json.loads(record.action_json),
            "queued_at": record.queued_at,
            "status": record.status,
            "last_error": record.last_error,
        })

    def _save(self, queued):
        database.upsert_queued_action(
            action_id=queued.id,
            account_key=self.account_key,
            status=queued.status.value,
            queued_at=queued.queued_at.isoformat(),
            action_json=json.dumps(queued.action.to_dict()),
            last_error=queued.last_error,
            db_path=self.db_path,
        )

    def enqueue(self, action):
        """Store *action* as pending. An entry with the same id is replaced."""
        queued = QueuedAction(action=action)
        with self._lock:
            self._save(queued)
        logger.info("Queued action %s (%s)", action.label, action.id)
        return queued

    def all(self):
        with self._lock:
            records = database.get_queued_actions(self.account_key, db_path=self.db_path)
        return [self._to_queued(r) for r in records]

    def get(self, action_id):
        return next((q for q in self.all() if q.id == action_id), None)

    def remove(self, action_id):
        with self._lock:
            return database.delete_queued_action(action_id, db_path=self.db_path)

    def mark_replayed(self, action_id):
        with self._lock:
            return database.update_queued_action_status(
                action_id, QueueStatus.REPLAYED.value, db_path=self.db_path)

    def mark_failed(self, action_id, message):
        with self._lock:
            return database.update_queued_action_status(
                action_id, QueueStatus.FAILED.value, last_error=message, db_path=self.db_path)

    def reset_to_pending(self, action_id):
        with self._lock:
            return database.update_queued_action_status(
                action_id, QueueStatus.PENDING.value, db_path=self.db_path)

    def clear_replayed(self):
        with self._lock:
            return database.delete_queued_actions_by_status(
                self.account_key, QueueStatus.REPLAYED.value, db_path=self.db_path)


class ActionExecutor:
    """Sends actions through the API client, queueing them when that is safe."""

    def __init__(self, api, queue):
        self.api = api
        self.queue = queue

    def _send(self, action):
        self.api.call(action.method.value, action.endpoint, json=action.payload or {})

    def execute(self, action, cloud_reachable):
        """Run *action* now or queue it. Never raises; the outcome is an ActionResult."""
        if not cloud_reachable:
            if action.queue_eligible:
                self.queue.enqueue(action)
                return ActionResult.queued()
            logger.info("Rejected %s while cloud is unreachable", action.label)
            return ActionResult.rejected(OFFLINE_REJECTION)

        try:
            self._send(action)
        except EeroAPIError as e:
            if action.queue_eligible and is_transient(e):
                logger.warning("Action %s hit a transient error, queueing: %s", action.label, str(e))
                self.queue.enqueue(action)
                return ActionResult.queued()
            logger.error("Action %s failed: %s", action.label, str(e))
            return ActionResult.failed(describe(e))

        logger.info("Action %s succeeded", action.label)
        return ActionResult.success()

    def replay(self, include_failed=True):
        """
        Retry queued entries in queue order. Failed entries are only retried
        when *include_failed* is set (an explicit user replay).

        Successes are marked replayed and then cleared; failures stay in the
        queue as failed with the latest error. Returns ``(replayed, failed)`` counts.
        """
        replayed = failed = 0
        for queued in self.queue.all():
            if queued.status == QueueStatus.REPLAYED:
                continue
            if queued.status == QueueStatus.FAILED:
                if not include_failed:
                    continue
                self.queue.reset_to_pending(queued.id)
            try:
                self._send(queued.action)
            except EeroAPIError as e:
                self.queue.mark_failed(queued.id, describe(e))
                failed += 1
                logger.warning("Replay of %s failed: %s", queued.action.label, str(e))
                continue
            self.queue.mark_replayed(queued.id)
            replayed += 1
        self.queue.clear_replayed()
        if replayed or failed:
            logger.info("Queue replay finished: %d replayed, %d failed", replayed, failed)
        return replayed, failed

    def remove(self, action_id):
        return self.queue.remove(action_id)
