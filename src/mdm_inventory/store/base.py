from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..config import TenantConfig
from ..normalize.schema import DeviceRecord, PolicyRecord

INTERRUPTED_MESSAGE = "interrupted: engine was stopped"


class SnapshotStatus(str, Enum):
    CAPTURING = "capturing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class Snapshot:
    id: str
    tenant_name: str
    tenant_type: str
    label: str
    taken_at: datetime
    status: SnapshotStatus = SnapshotStatus.CAPTURING
    status_message: str = ""
    policy_count: int = 0
    category_count: int = 0

    @property
    def display_name(self) -> str:
        return self.label or self.tenant_name


@dataclass(frozen=True)
class PolicyItem:
    id: str
    snapshot_id: str
    category: str
    source_id: str
    name: str
    type: str
    platform: str
    description: str = ""
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, item_id: str, snapshot_id: str, record: PolicyRecord) -> "PolicyItem":
        return cls(
            id=item_id,
            snapshot_id=snapshot_id,
            category=record.category,
            source_id=record.source_id,
            name=record.name,
            type=record.type,
            platform=record.platform,
            description=record.description,
            settings=dict(record.settings),
        )


@runtime_checkable
class PolicyStore(Protocol):
    def create_snapshot(self, tenant_name: str, tenant_type: str, label: str = "") -> Snapshot:
        ...

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        ...

    def list_snapshots(self) -> List[Snapshot]:
        ...

    def update_snapshot_status(self, snapshot_id: str, status: SnapshotStatus, message: str = "") -> None:
        ...

    def insert_item(self, snapshot_id: str, record: PolicyRecord) -> PolicyItem:
        ...

    def update_snapshot_counts(self, snapshot_id: str) -> None:
        ...

    def list_items(self, snapshot_id: str, category: str = "", search: str = "") -> List[PolicyItem]:
        ...

    def recover_stale_capturing(self, message: str = INTERRUPTED_MESSAGE) -> int:
        ...

    def reset_snapshot_for_retry(self, snapshot_id: str) -> None:
        ...

    def delete_snapshot(self, snapshot_id: str) -> None:
        ...

    def delete_old_snapshots(self, keep_per_tenant: int) -> int:
        ...


@runtime_checkable
class TenantStore(Protocol):
    def list_enabled(self) -> List[TenantConfig]:
        ...

    def get_by_name(self, name: str) -> Optional[TenantConfig]:
        ...

    def record_check_result(self, name: str, ok: bool, error: str, consec_fails: int) -> None:
        ...


@runtime_checkable
class DeviceStore(Protocol):
    def upsert(self, tenant_name: str, device: DeviceRecord) -> None:
        ...
