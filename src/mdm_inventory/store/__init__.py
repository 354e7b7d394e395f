from __future__ import annotations

from .base import (
    INTERRUPTED_MESSAGE,
    DeviceStore,
    PolicyItem,
    PolicyStore,
    Snapshot,
    SnapshotStatus,
    TenantStore,
)
from .memory import MemoryDeviceStore, MemoryPolicyStore, MemoryTenantStore

__all__ = [
    "INTERRUPTED_MESSAGE",
    "DeviceStore",
    "MemoryDeviceStore",
    "MemoryPolicyStore",
    "MemoryTenantStore",
    "PolicyItem",
    "PolicyStore",
    "Snapshot",
    "SnapshotStatus",
    "TenantStore",
]
