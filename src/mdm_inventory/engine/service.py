from __future__ import annotations

import threading
from typing import Optional

from ..config import EngineConfig, TenantConfig
from ..health.status import ActivityLog, StatusTracker
from ..health.supervisor import HealthSupervisor
from ..logging import LogConfig, get_logger, setup_logging
from ..providers import build_provider
from ..providers.base import Provider
from ..store.base import DeviceStore, PolicyStore, TenantStore
from ..store.memory import MemoryDeviceStore, MemoryPolicyStore, MemoryTenantStore
from ..util.errors import ConfigError
from .devices import sync_devices
from .snapshots import BuildProvider, SnapshotOrchestrator

LOG = get_logger(__name__)


class Engine:
    """
    Wires the health supervisor and snapshot orchestrator around one set of stores.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        policies: Optional[PolicyStore] = None,
        tenants: Optional[TenantStore] = None,
        devices: Optional[DeviceStore] = None,
        provider_builder: Optional[BuildProvider] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.policies = policies if policies is not None else MemoryPolicyStore()
        self.tenants = tenants if tenants is not None else MemoryTenantStore(self.config.tenants)
        self.devices = devices if devices is not None else MemoryDeviceStore()
        self.build_provider: BuildProvider = provider_builder or self._default_builder
        self.cancel = threading.Event()
        self.tracker = StatusTracker()
        self.activity = ActivityLog(self.config.activity_capacity)
        self.supervisor = HealthSupervisor(
            self.tenants,
            self.build_provider,
            self.tracker,
            self.activity,
            interval=self.config.health_interval_s,
            timeout=self.config.health_timeout_s,
        )
        self.orchestrator = SnapshotOrchestrator(
            self.policies,
            self.tenants,
            self.build_provider,
            self.activity,
            retention=self.config.snapshot_retention,
            cancel=self.cancel,
        )

    def _default_builder(self, tenant: TenantConfig) -> Provider:
        return build_provider(tenant, self.config)

    def start(self) -> None:
        setup_logging(LogConfig(level=self.config.log_level, json_logs=self.config.json_logs))
        # Stale 'capturing' rows must be swept before any capture can be triggered.
        self.orchestrator.recover_stale()
        self.supervisor.start()
        LOG.info("Engine started", extra={"tenants": len(self.tenants.list_enabled())})

    def start_capture(self, tenant_name: str, label: str = "") -> str:
        return self.orchestrator.start_capture(tenant_name, label)

    def sync_tenant_devices(self, tenant_name: str) -> int:
        cfg = self.tenants.get_by_name(tenant_name)
        if cfg is None:
            raise ConfigError(f"tenant not found: {tenant_name}")
        provider = self.build_provider(cfg)
        self.activity.logf(cfg.name, "info", "Sync started")
        try:
            count = sync_devices(provider, self.devices, cancel=self.cancel)
        except Exception as e:
            self.activity.logf(cfg.name, "error", "Sync failed: %s", e)
            raise
        self.activity.logf(cfg.name, "success", "Sync complete, %d devices", count)
        return count

    def shutdown(self, grace: Optional[float] = None) -> bool:
        """
        Stop health checks, then cancel captures and wait up to grace seconds.
        """
        grace = self.config.shutdown_grace_s if grace is None else grace
        self.supervisor.stop(timeout=grace)
        done = self.orchestrator.shutdown(grace)
        LOG.info("Engine stopped", extra={"clean": done})
        return done
