from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..config import TenantConfig
from ..logging import get_logger
from ..normalize.schema import DeviceRecord, PolicyRecord
from ..util.errors import SnapshotStateError
from ..util.time import utc_now
from .base import INTERRUPTED_MESSAGE, PolicyItem, Snapshot, SnapshotStatus

LOG = get_logger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


class MemoryPolicyStore:
    """
    Thread-safe in-process PolicyStore. Returned snapshots are copies.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._snapshots: Dict[str, Snapshot] = {}
        self._order: Dict[str, int] = {}
        self._items: Dict[str, List[PolicyItem]] = {}
        self._seq = 0

    def _require(self, snapshot_id: str) -> Snapshot:
        snap = self._snapshots.get(snapshot_id)
        if snap is None:
            raise SnapshotStateError(f"snapshot not found: {snapshot_id}")
        return snap

    def create_snapshot(self, tenant_name: str, tenant_type: str, label: str = "") -> Snapshot:
        snap = Snapshot(
            id=new_id(),
            tenant_name=tenant_name,
            tenant_type=tenant_type,
            label=label,
            taken_at=self._clock(),
            status=SnapshotStatus.CAPTURING,
        )
        with self._lock:
            self._seq += 1
            self._snapshots[snap.id] = snap
            self._order[snap.id] = self._seq
            self._items[snap.id] = []
            return replace(snap)

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        with self._lock:
            snap = self._snapshots.get(snapshot_id)
            return replace(snap) if snap is not None else None

    def _newest_first(self, snaps: Iterable[Snapshot]) -> List[Snapshot]:
        return sorted(snaps, key=lambda s: (s.taken_at, self._order[s.id]), reverse=True)

    def list_snapshots(self) -> List[Snapshot]:
        with self._lock:
            return [replace(s) for s in self._newest_first(self._snapshots.values())]

    def update_snapshot_status(self, snapshot_id: str, status: SnapshotStatus, message: str = "") -> None:
        with self._lock:
            snap = self._require(snapshot_id)
            snap.status = SnapshotStatus(status)
            snap.status_message = message

    def insert_item(self, snapshot_id: str, record: PolicyRecord) -> PolicyItem:
        item = PolicyItem.from_record(new_id(), snapshot_id, record)
        with self._lock:
            self._require(snapshot_id)
            self._items[snapshot_id].append(item)
        return item

    def update_snapshot_counts(self, snapshot_id: str) -> None:
        with self._lock:
            snap = self._require(snapshot_id)
            items = self._items.get(snapshot_id, [])
            snap.policy_count = len(items)
            snap.category_count = len({i.category for i in items})

    def list_items(self, snapshot_id: str, category: str = "", search: str = "") -> List[PolicyItem]:
        with self._lock:
            items = list(self._items.get(snapshot_id, []))
        if category:
            items = [i for i in items if i.category == category]
        if search:
            needle = search.lower()
            items = [
                i
                for i in items
                if needle in i.name.lower() or needle in i.description.lower() or needle in i.type.lower()
            ]
        return sorted(items, key=lambda i: (i.category, i.name))

    def distinct_categories(self, snapshot_id: str) -> List[str]:
        with self._lock:
            return sorted({i.category for i in self._items.get(snapshot_id, [])})

    def recover_stale_capturing(self, message: str = INTERRUPTED_MESSAGE) -> int:
        count = 0
        with self._lock:
            for snap in self._snapshots.values():
                if snap.status == SnapshotStatus.CAPTURING:
                    snap.status = SnapshotStatus.ERROR
                    snap.status_message = message
                    count += 1
        return count

    def reset_snapshot_for_retry(self, snapshot_id: str) -> None:
        with self._lock:
            snap = self._require(snapshot_id)
            if snap.status != SnapshotStatus.ERROR:
                raise SnapshotStateError(f"snapshot {snapshot_id} is {snap.status.value}; only failed snapshots can be retried")
            snap.status = SnapshotStatus.CAPTURING
            snap.status_message = ""
            snap.policy_count = 0
            snap.category_count = 0
            self._items[snapshot_id] = []

    def delete_snapshot(self, snapshot_id: str) -> None:
        with self._lock:
            self._snapshots.pop(snapshot_id, None)
            self._order.pop(snapshot_id, None)
            self._items.pop(snapshot_id, None)

    def delete_old_snapshots(self, keep_per_tenant: int) -> int:
        """
        Keep the newest keep_per_tenant snapshots of each tenant. Returns the number deleted.
        """
        removed = 0
        with self._lock:
            by_tenant: Dict[str, List[Snapshot]] = {}
            for snap in self._snapshots.values():
                by_tenant.setdefault(snap.tenant_name, []).append(snap)
            for snaps in by_tenant.values():
                for old in self._newest_first(snaps)[max(keep_per_tenant, 0):]:
                    self._snapshots.pop(old.id, None)
                    self._order.pop(old.id, None)
                    self._items.pop(old.id, None)
                    removed += 1
        return removed


class MemoryTenantStore:
    """
    TenantStore over a fixed tenant list, recording the last health check per tenant.
    """

    def __init__(self, tenants: Iterable[TenantConfig] = ()) -> None:
        self._lock = threading.Lock()
        self._tenants: Dict[str, TenantConfig] = {t.name: t for t in tenants}
        self._checks: Dict[str, Tuple[bool, str, datetime]] = {}

    def add(self, tenant: TenantConfig) -> None:
        with self._lock:
            self._tenants[tenant.name] = tenant

    def list_enabled(self) -> List[TenantConfig]:
        with self._lock:
            return sorted((t for t in self._tenants.values() if t.enabled), key=lambda t: t.name)

    def get_by_name(self, name: str) -> Optional[TenantConfig]:
        with self._lock:
            return self._tenants.get(name)

    def record_check_result(self, name: str, ok: bool, error: str, consec_fails: int) -> None:
        with self._lock:
            tenant = self._tenants.get(name)
            if tenant is None:
                LOG.warning("Health result for unknown tenant dropped", extra={"tenant": name})
                return
            self._tenants[name] = replace(tenant, consec_fails=consec_fails)
            self._checks[name] = (ok, error, utc_now())

    def last_check(self, name: str) -> Optional[Tuple[bool, str, datetime]]:
        with self._lock:
            return self._checks.get(name)


class MemoryDeviceStore:
    """
    DeviceStore keyed by (tenant, source id); later upserts replace earlier ones.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._devices: Dict[Tuple[str, str], DeviceRecord] = {}

    def upsert(self, tenant_name: str, device: DeviceRecord) -> None:
        if not device.source_id:
            raise ValueError("device record has no source id")
        with self._lock:
            self._devices[(tenant_name, device.source_id)] = device

    def list_devices(self, tenant_name: str) -> List[DeviceRecord]:
        with self._lock:
            devices = [d for (t, _), d in self._devices.items() if t == tenant_name]
        return sorted(devices, key=lambda d: (d.device_name, d.source_id))
