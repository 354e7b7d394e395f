from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Tuple

from ..config import DEFAULT_SNAPSHOT_RETENTION, TenantConfig
from ..health.status import ActivityLog, Severity
from ..logging import StepTimers, get_logger, log_event
from ..normalize.schema import PolicyRecord
from ..providers.base import PolicyProvider, Provider
from ..store.base import INTERRUPTED_MESSAGE, PolicyStore, SnapshotStatus, TenantStore
from ..util.concurrency import BackgroundTasks
from ..util.errors import CaptureCancelled, ConfigError, SnapshotStateError

LOG = get_logger(__name__)

BuildProvider = Callable[[TenantConfig], Provider]


class SnapshotOrchestrator:
    """
    Runs policy captures in the background and owns their lifecycle.

    A snapshot is created in 'capturing' and moves exactly once to 'complete'
    or 'error'. Every capture is tracked in a BackgroundTasks counter so
    shutdown can wait for in-flight work after setting the shared cancel event.
    """

    def __init__(
        self,
        policies: PolicyStore,
        tenants: TenantStore,
        build_provider: BuildProvider,
        activity: ActivityLog,
        *,
        retention: int = DEFAULT_SNAPSHOT_RETENTION,
        cancel: Optional[threading.Event] = None,
        tasks: Optional[BackgroundTasks] = None,
    ) -> None:
        self.policies = policies
        self.tenants = tenants
        self.build_provider = build_provider
        self.activity = activity
        self.retention = retention
        self.cancel = cancel or threading.Event()
        self.tasks = tasks or BackgroundTasks()
        self._recover_lock = threading.Lock()
        self._recovered = False

    # ---- startup ----

    def recover_stale(self) -> int:
        """
        Mark snapshots left in 'capturing' by a previous process as failed.
        Runs once; later calls are no-ops.
        """
        with self._recover_lock:
            if self._recovered:
                return 0
            count = self.policies.recover_stale_capturing(INTERRUPTED_MESSAGE)
            self._recovered = True
        if count:
            LOG.warning("Marked stale capturing snapshots as error", extra={"count": count})
            self.activity.logf("system", Severity.WARNING, "Marked %d interrupted snapshot(s) as error", count)
        return count

    # ---- triggers ----

    def _resolve(self, tenant_name: str) -> Tuple[TenantConfig, PolicyProvider]:
        cfg = self.tenants.get_by_name(tenant_name)
        if cfg is None:
            raise ConfigError(f"tenant not found: {tenant_name}")
        try:
            provider = self.build_provider(cfg)
        except Exception as e:
            self.activity.logf(cfg.name, Severity.ERROR, "Policy snapshot failed, could not init provider: %s", e)
            raise
        if not isinstance(provider, PolicyProvider):
            raise ConfigError(f"provider '{cfg.name}' does not support policy sync")
        return cfg, provider

    def start_capture(self, tenant_name: str, label: str = "") -> str:
        """
        Create a 'capturing' snapshot for tenant_name and start filling it in
        the background. Returns the snapshot id immediately.
        """
        if self.cancel.is_set():
            raise CaptureCancelled("engine is shutting down")
        self.recover_stale()
        cfg, provider = self._resolve(tenant_name)
        snap = self.policies.create_snapshot(cfg.name, cfg.type, label)
        self.activity.logf(cfg.name, Severity.INFO, "Policy snapshot started")
        self.tasks.spawn(self.run_capture, snap.id, cfg.name, provider, name=f"capture-{snap.id[:8]}")
        return snap.id

    def retry(self, snapshot_id: str) -> None:
        """
        Re-run a failed capture in place. Only snapshots in 'error' qualify.
        """
        if self.cancel.is_set():
            raise CaptureCancelled("engine is shutting down")
        self.recover_stale()
        snap = self.policies.get_snapshot(snapshot_id)
        if snap is None:
            raise SnapshotStateError(f"snapshot not found: {snapshot_id}")
        if snap.status != SnapshotStatus.ERROR:
            raise SnapshotStateError(f"snapshot {snapshot_id} is {snap.status.value}; only failed snapshots can be retried")
        cfg, provider = self._resolve(snap.tenant_name)
        self.policies.reset_snapshot_for_retry(snapshot_id)
        self.activity.logf(cfg.name, Severity.INFO, "Retrying policy snapshot")
        self.tasks.spawn(self.run_capture, snapshot_id, cfg.name, provider, name=f"capture-{snapshot_id[:8]}")

    # ---- capture ----

    def _mark(self, snapshot_id: str, status: SnapshotStatus, message: str = "") -> None:
        try:
            self.policies.update_snapshot_status(snapshot_id, status, message)
        except Exception as e:
            LOG.error(
                "Failed to update snapshot status",
                extra={"snapshot_id": snapshot_id, "status": status.value, "error": str(e)},
            )

    def run_capture(self, snapshot_id: str, tenant_name: str, provider: PolicyProvider) -> bool:
        """
        Fetch all policies for one snapshot and persist them. Returns True when
        the snapshot reached 'complete'.
        """
        timers = StepTimers()
        log_event(
            LOG, logging.INFO, "Policy capture started", step="capture", phase="start", timers=timers,
            tenant=tenant_name, snapshot_id=snapshot_id,
        )

        def progress(category: str, count: int) -> None:
            self.activity.logf(tenant_name, Severity.INFO, "Policy snapshot: fetched %s (%d total so far)", category, count)

        try:
            records: List[PolicyRecord] = provider.sync_policies(progress, self.cancel)
        except Exception as e:
            if self.cancel.is_set() or isinstance(e, CaptureCancelled):
                log_event(
                    LOG, logging.WARNING, "Policy capture interrupted by shutdown", step="capture", phase="cancelled",
                    timers=timers, tenant=tenant_name, snapshot_id=snapshot_id,
                )
                self.activity.logf(tenant_name, Severity.WARNING, "Policy snapshot interrupted, engine shutting down")
                self._mark(snapshot_id, SnapshotStatus.ERROR, INTERRUPTED_MESSAGE)
                return False
            log_event(
                LOG, logging.ERROR, "Policy capture failed", step="capture", phase="error", timers=timers,
                tenant=tenant_name, snapshot_id=snapshot_id, error=str(e),
            )
            self.activity.logf(tenant_name, Severity.ERROR, "Policy snapshot error: %s", e)
            self._mark(snapshot_id, SnapshotStatus.ERROR, str(e) or e.__class__.__name__)
            return False

        stored = 0
        for record in records:
            try:
                self.policies.insert_item(snapshot_id, record)
            except Exception as e:
                LOG.warning(
                    "Failed to store policy item",
                    extra={"snapshot_id": snapshot_id, "policy": record.name, "error": str(e)},
                )
                continue
            stored += 1

        try:
            self.policies.update_snapshot_counts(snapshot_id)
        except Exception as e:
            LOG.error("Failed to update snapshot counts", extra={"snapshot_id": snapshot_id, "error": str(e)})
        self._mark(snapshot_id, SnapshotStatus.COMPLETE)

        try:
            self.policies.delete_old_snapshots(self.retention)
        except Exception as e:
            LOG.warning("Failed to prune old snapshots", extra={"error": str(e)})

        self.activity.logf(tenant_name, Severity.SUCCESS, "Policy snapshot complete, %d policies captured", len(records))
        log_event(
            LOG, logging.INFO, "Policy capture complete", step="capture", phase="complete", timers=timers,
            tenant=tenant_name, snapshot_id=snapshot_id, count=stored,
        )
        return True

    # ---- shutdown ----

    def shutdown(self, grace: float) -> bool:
        """
        Signal cancellation and wait up to grace seconds for captures to settle.
        """
        self.cancel.set()
        done = self.tasks.wait(grace)
        if done:
            LOG.info("All background captures finished")
        else:
            LOG.warning("Timed out waiting for background captures", extra={"pending": self.tasks.pending})
        return done
