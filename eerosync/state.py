#!/usr/bin/env python3
"""
eerosync - Sync Engine
Owns the published state and drives the refresh cycle:

    fetch -> reconcile with last-known-good -> publish -> persist
          -> replay queued actions -> offline probes

Readers only ever see immutable PublishedState values. Each publish bumps
the version number and is pushed to subscribers.
"""
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

import pytz

from eerosync import actions as action_builders
from eerosync.action_queue import ActionExecutor, PendingActionQueue
from eerosync.actions import ActionResult, ResultStatus, requires_confirmation
from eerosync.config import UpdateConfig, load_settings, save_settings, timezone_aware_now
from eerosync.errors import EeroAPIError, describe
from eerosync.models import AccountSnapshot, OfflineProbeSnapshot, to_dict
from eerosync.probes import OfflineProbeSuite
from eerosync.reconciler import reconcile
from eerosync.scheduler import PollingScheduler, mode_for_visibility
from eerosync.snapshot_builder import SnapshotBuilder
from eerosync.snapshot_cache import SnapshotCache
from eerosync.throughput import LocalThroughput, ThroughputSampler

logger = logging.getLogger(__name__)


class CloudReachability(str, Enum):
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class AuthState(str, Enum):
    RESTORING = "restoring"
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_VERIFICATION = "awaiting_verification"
    AUTHENTICATED = "authenticated"


def cloud_and_lan_status(cloud_state, probes):
    if cloud_state == CloudReachability.REACHABLE:
        return f"{probes.health_label} / Cloud OK"
    if cloud_state in (CloudReachability.DEGRADED, CloudReachability.UNREACHABLE):
        return f"{probes.health_label} / Cloud Down"
    return "Status Unknown"


@dataclass(frozen=True)
class PublishedState:
    version: int = 0
    auth_state: AuthState = AuthState.RESTORING
    cloud_state: CloudReachability = CloudReachability.UNKNOWN
    snapshot: Optional[AccountSnapshot] = None
    probes: OfflineProbeSnapshot = field(default_factory=OfflineProbeSnapshot)
    queued_actions: Tuple = ()
    throughput: Optional[LocalThroughput] = None
    last_error: Optional[str] = None
    last_refresh_at: Optional[datetime] = None
    is_refreshing: bool = False
    polling_mode: str = "background"

    @property
    def status_label(self):
        return cloud_and_lan_status(self.cloud_state, self.probes)

    def snapshot_age(self, now=None):
        """How old the displayed snapshot is, never negative. None without a snapshot."""
        if self.snapshot is None or self.snapshot.fetched_at is None:
            return None
        now = now or datetime.now(pytz.UTC)
        return max(timedelta(0), now - self.snapshot.fetched_at)

    def to_dict(self, include_snapshot=False):
        age = self.snapshot_age()
        data = {
            "version": self.version,
            "auth_state": self.auth_state.value,
            "cloud_state": self.cloud_state.value,
            "status_label": self.status_label,
            "snapshot_fetched_at": (self.snapshot.fetched_at.isoformat()
                                    if self.snapshot is not None else None),
            "snapshot_age_seconds": age.total_seconds() if age is not None else None,
            "probes": dict(to_dict(self.probes), health_label=self.probes.health_label),
            "queued_actions": [q.to_dict() for q in self.queued_actions],
            "throughput": self.throughput.to_dict() if self.throughput else None,
            "last_error": self.last_error,
            "last_refresh_at": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
            "is_refreshing": self.is_refreshing,
            "polling_mode": self.polling_mode,
        }
        if include_snapshot:
            data["snapshot"] = self.snapshot.to_dict() if self.snapshot is not None else None
        return data


class SyncEngine:
    """Single writer of the published state. Collaborators are injectable for tests."""

    def __init__(self, api, settings=None, builder=None, queue=None, executor=None,
                 probes=None, scheduler=None, sampler=None, snapshot_cache=None,
                 settings_path=None, account_key="session", db_path=None):
        self.api = api
        self.settings_path = settings_path
        self.settings = (settings or load_settings(settings_path)).normalized()
        self.builder = builder or SnapshotBuilder(api)
        self.queue = queue or PendingActionQueue(account_key=account_key, db_path=db_path)
        self.executor = executor or ActionExecutor(api, self.queue)
        self.probes = probes or OfflineProbeSuite(gateway=self.settings.gateway_address)
        self.scheduler = scheduler or PollingScheduler(
            self.refresh,
            foreground_interval=self.settings.foreground_interval,
            background_interval=self.settings.background_interval,
        )
        self.sampler = sampler or ThroughputSampler(on_sample=self._on_throughput)
        self.snapshot_cache = snapshot_cache or SnapshotCache(account_key=account_key, db_path=db_path)

        self._state = PublishedState()
        self._state_lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        # Bumped on logout so a fetch already in flight cannot publish into the new session
        self._session = 0
        self._session_lock = threading.RLock()
        self._subscribers = []
        self._closed = False
        self._started = False
        self._popover_visible = False
        self._window_visible = True

    # ── published state ────────────────────────────────────────────────────

    @property
    def state(self):
        return self._state

    def subscribe(self, callback):
        """Register *callback(state)*. Returns a function that unsubscribes it."""
        with self._state_lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._state_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def _publish(self, **changes):
        with self._state_lock:
            self._state = replace(self._state, version=self._state.version + 1, **changes)
            state = self._state
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(state)
            except Exception as e:
                logger.error("State subscriber error: %s", e)
        return state

    def cloud_and_lan_status(self):
        return self._state.status_label

    def snapshot_age(self, now=None):
        return self._state.snapshot_age(now)

    def _reload_queue(self):
        try:
            queued = tuple(self.queue.all())
        except Exception as e:
            logger.error("Failed to read action queue: %s", e)
            return
        self._publish(queued_actions=queued)

    def _on_throughput(self, sample):
        current = self._state.throughput
        key = (sample.interface, sample.down_display, sample.up_display) if sample else None
        current_key = (current.interface, current.down_display, current.up_display) if current else None
        if key != current_key:
            self._publish(throughput=sample)

    # ── lifecycle ──────────────────────────────────────────────────────────

    def bootstrap(self):
        """Restore the session and the cached snapshot. Returns True when a session was restored."""
        restored = self.api.restore_session()
        cached = self.snapshot_cache.load()
        self._publish(
            auth_state=AuthState.AUTHENTICATED if restored else AuthState.UNAUTHENTICATED,
            snapshot=cached,
            cloud_state=CloudReachability.DEGRADED if cached is not None else CloudReachability.UNKNOWN,
        )
        self._reload_queue()
        logger.info("Bootstrap complete (session %s, cached snapshot %s)",
                    "restored" if restored else "absent", "loaded" if cached else "absent")
        return restored

    def start(self):
        """Bootstrap, then start the sampler and, when signed in, the poller."""
        if self._started:
            return
        self._started = True
        self._closed = False
        restored = self.bootstrap()
        self.sampler.start()
        self._update_polling_mode()
        if restored:
            self.scheduler.start()
        else:
            self.run_probes(force=True)

    def stop(self):
        self._closed = True
        self._started = False
        self.scheduler.stop()
        self.sampler.stop()

    # ── refresh cycle ──────────────────────────────────────────────────────

    def refresh(self, force=False, reason="poll"):
        """
        Run one fetch/reconcile/publish cycle. Returns False when another
        refresh was already running and this call was skipped.
        """
        if not self._refresh_lock.acquire(blocking=False):
            logger.debug("Refresh already in progress, skipping %s refresh", reason)
            return False
        try:
            self._refresh(force, reason)
            return True
        finally:
            self._refresh_lock.release()

    def _is_current(self, session):
        return not self._closed and session == self._session

    def _refresh(self, force, reason):
        session = self._session
        if not self.api.is_authenticated:
            self._publish(cloud_state=CloudReachability.UNKNOWN)
            self.run_probes(force=True)
            return

        self._publish(is_refreshing=True)
        try:
            fresh = self.builder.fetch_account(UpdateConfig(network_ids=self.settings.network_ids,
                                                            timezone=self.settings.timezone))
        except EeroAPIError as e:
            with self._session_lock:
                if not self._is_current(session):
                    logger.info("Discarding %s refresh error from an ended session", reason)
                    return
                snapshot = self._state.snapshot or self.snapshot_cache.load()
                cloud_state = (CloudReachability.DEGRADED if snapshot is not None
                               else CloudReachability.UNREACHABLE)
                logger.warning("%s refresh failed (%s): %s", reason.capitalize(), cloud_state.value, str(e))
                self._publish(
                    snapshot=snapshot,
                    cloud_state=cloud_state,
                    last_error=f"{reason.capitalize()} refresh failed: {describe(e)}",
                )
        else:
            with self._session_lock:
                if not self._is_current(session):
                    logger.info("Discarding %s refresh result from an ended session", reason)
                    return
                merged = reconcile(fresh, self._state.snapshot)
                self._publish(
                    snapshot=merged,
                    cloud_state=CloudReachability.REACHABLE,
                    last_error=None,
                    last_refresh_at=timezone_aware_now(self.settings.timezone),
                )
                self.snapshot_cache.save(merged)
            self._replay_pending()
        finally:
            with self._session_lock:
                if self._is_current(session):
                    self._publish(is_refreshing=False)

        if not self._is_current(session):
            return
        self.run_probes(force=force or self._state.cloud_state != CloudReachability.REACHABLE)

    def _replay_pending(self):
        try:
            if self._state.queued_actions or self.queue.all():
                self.executor.replay(include_failed=False)
        except Exception as e:
            logger.error("Queue replay error: %s", e)
        self._reload_queue()

    def run_probes(self, force=False):
        snapshot = self.probes.run(force=force, gateway=self.settings.gateway_address)
        if snapshot is not self._state.probes and not self._closed:
            self._publish(probes=snapshot)
        return snapshot

    # ── visibility & settings ──────────────────────────────────────────────

    def _update_polling_mode(self):
        mode = mode_for_visibility(self._popover_visible, self._window_visible)
        self.scheduler.set_mode(mode)
        if mode != self._state.polling_mode:
            self._publish(polling_mode=mode)

    def set_visibility(self, popover_visible=None, window_visible=None):
        if popover_visible is not None:
            self._popover_visible = bool(popover_visible)
        if window_visible is not None:
            self._window_visible = bool(window_visible)
        self._update_polling_mode()
        return self._state.polling_mode

    def update_settings(self, settings):
        self.settings = settings.normalized()
        save_settings(self.settings, self.settings_path)
        self.scheduler.update_intervals(self.settings.foreground_interval,
                                        self.settings.background_interval)
        self.probes.gateway = self.settings.gateway_address
        return self.settings

    # ── actions ────────────────────────────────────────────────────────────

    def needs_confirmation(self, action):
        return requires_confirmation(action, self.settings)

    def build_action(self, network_id, kind, target_id=None, value=None, key=None):
        snapshot = self._state.snapshot
        network = snapshot.network(network_id) if snapshot is not None else None
        if network is None:
            raise LookupError(f"Unknown network: {network_id}")
        return action_builders.build_action(network, kind, target_id=target_id, value=value, key=key)

    def submit_action(self, action, confirmed=False):
        """Execute *action* subject to the confirmation policy. Never raises."""
        if self.needs_confirmation(action) and not confirmed:
            return ActionResult.rejected(f"Confirmation required: {action.label}")

        reachable = self._state.cloud_state == CloudReachability.REACHABLE
        result = self.executor.execute(action, cloud_reachable=reachable)
        self._reload_queue()

        if result.status == ResultStatus.SUCCESS:
            self._publish(last_error=None)
            self.scheduler.trigger_now()
        else:
            self._publish(last_error=result.message)
        return result

    def replay_queued_actions(self):
        replayed, failed = self.executor.replay()
        self._reload_queue()
        self.refresh(force=True, reason="queue-replay")
        return replayed, failed

    def remove_queued_action(self, action_id):
        removed = self.executor.remove(action_id)
        self._reload_queue()
        return removed

    # ── authentication ─────────────────────────────────────────────────────

    def login(self, login):
        self.api.login(login)
        self._publish(auth_state=AuthState.AWAITING_VERIFICATION, last_error=None)

    def verify(self, code):
        account = self.api.verify(code)
        self._publish(auth_state=AuthState.AUTHENTICATED, last_error=None)
        self._update_polling_mode()
        if self._started:
            self.scheduler.start()
        else:
            self.refresh(force=True, reason="verify")
        return account

    def logout(self):
        with self._session_lock:
            self._session += 1
            self.snapshot_cache.clear()
            self._publish(
                auth_state=AuthState.UNAUTHENTICATED,
                cloud_state=CloudReachability.UNKNOWN,
                snapshot=None,
                is_refreshing=False,
            )
        self.scheduler.stop()
        self.api.logout()
        self._reload_queue()
