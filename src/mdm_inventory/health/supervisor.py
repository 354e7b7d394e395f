from __future__ import annotations

import logging
import threading
from time import perf_counter
from typing import Callable, Optional

from ..config import DEFAULT_HEALTH_INTERVAL_S, DEFAULT_HEALTH_TIMEOUT_S, TenantConfig
from ..logging import StepTimers, get_logger, log_event
from ..providers.base import Provider
from ..store.base import TenantStore
from ..util.concurrency import parallel_for_each
from ..util.time import utc_now
from .status import ActivityLog, HealthState, ProviderStatus, Severity, StatusTracker

LOG = get_logger(__name__)

SYSTEM_SUBJECT = "system"

BuildProvider = Callable[[TenantConfig], Provider]


class HealthSupervisor:
    """
    Periodically tests connectivity of every enabled tenant.

    Each round checks all tenants in parallel and waits for them. Failures are
    recorded and counted but never disable a tenant.
    """

    def __init__(
        self,
        tenants: TenantStore,
        build_provider: BuildProvider,
        tracker: StatusTracker,
        activity: ActivityLog,
        interval: float = DEFAULT_HEALTH_INTERVAL_S,
        timeout: float = DEFAULT_HEALTH_TIMEOUT_S,
    ) -> None:
        self.tenants = tenants
        self.build_provider = build_provider
        self.tracker = tracker
        self.activity = activity
        self.interval = interval
        self.timeout = timeout
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="health-supervisor", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        LOG.info("Health supervisor stopped")

    def _round(self) -> None:
        try:
            self.check_all()
        except Exception:
            LOG.exception("Health check round failed")

    def _loop(self) -> None:
        self._round()
        while not self._stop.wait(self.interval):
            self._round()

    def check_all(self) -> None:
        try:
            configs = self.tenants.list_enabled()
        except Exception as e:
            LOG.error("Failed to list tenants for health check", extra={"error": str(e)})
            return
        if not configs:
            return

        timers = StepTimers()
        log_event(LOG, logging.INFO, f"Checking {len(configs)} tenant(s)", step="health", phase="start", timers=timers)
        self.activity.logf(SYSTEM_SUBJECT, Severity.INFO, "Health check started for %d tenant(s)", len(configs))
        parallel_for_each(lambda cfg: self.check(cfg.name, cfg.type), configs)
        self.activity.logf(SYSTEM_SUBJECT, Severity.INFO, "Health check complete")
        log_event(LOG, logging.INFO, "Health check complete", step="health", phase="complete", timers=timers)

    def check_now(self, name: str, provider_type: str) -> ProviderStatus:
        """
        Operator-triggered connection test for one tenant.
        """
        self.activity.logf(name, Severity.INFO, "Manual connection test")
        return self.check(name, provider_type)

    def _fail(self, name: str, provider_type: str, error: str, fails: int, latency: float = 0.0, *, record: bool = True) -> ProviderStatus:
        status = ProviderStatus(
            name=name,
            type=provider_type,
            status=HealthState.ERROR,
            error=error,
            checked_at=utc_now(),
            latency=latency,
            consec_fails=fails,
        )
        self.tracker.set(status)
        if record:
            self._record(name, False, error, fails)
        return status

    def _record(self, name: str, ok: bool, error: str, fails: int) -> None:
        try:
            self.tenants.record_check_result(name, ok, error, fails)
        except Exception as e:
            LOG.warning("Failed to persist health result", extra={"tenant": name, "error": str(e)})

    def check(self, name: str, provider_type: str) -> ProviderStatus:
        previous = self.tracker.get(name)
        prev_fails = previous.consec_fails if previous is not None else 0
        self.tracker.set(
            ProviderStatus(
                name=name,
                type=provider_type,
                status=HealthState.CHECKING,
                checked_at=utc_now(),
                consec_fails=prev_fails,
            )
        )

        try:
            cfg = self.tenants.get_by_name(name)
        except Exception as e:
            LOG.error("Failed to load tenant config", extra={"tenant": name, "error": str(e)})
            cfg = None
        if cfg is None:
            self.activity.logf(name, Severity.ERROR, "Config not found")
            return self._fail(name, provider_type, "tenant config not found", prev_fails + 1, record=False)

        fails_if_error = cfg.consec_fails + 1
        try:
            provider = self.build_provider(cfg)
        except Exception as e:
            self.activity.logf(name, Severity.ERROR, "Build failed: %s", e)
            LOG.warning("Provider build failed", extra={"tenant": name, "error": str(e)})
            return self._fail(name, provider_type, str(e), fails_if_error)

        start = perf_counter()
        try:
            provider.test_connection(timeout=self.timeout)
        except Exception as e:
            latency = perf_counter() - start
            self.activity.logf(name, Severity.ERROR, "Connection failed (%dms): %s", int(latency * 1000), e)
            LOG.warning(
                "Health check failed",
                extra={"tenant": name, "duration_ms": int(latency * 1000), "error": str(e), "consec_fails": fails_if_error},
            )
            return self._fail(name, provider_type, str(e), fails_if_error, latency)

        latency = perf_counter() - start
        status = ProviderStatus(
            name=name,
            type=provider_type,
            status=HealthState.CONNECTED,
            checked_at=utc_now(),
            latency=latency,
            consec_fails=0,
        )
        self.tracker.set(status)
        self._record(name, True, "", 0)
        self.activity.logf(name, Severity.SUCCESS, "Connected (%dms)", int(latency * 1000))
        LOG.info("Health check ok", extra={"tenant": name, "duration_ms": int(latency * 1000)})
        return status
