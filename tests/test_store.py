from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from mdm_inventory.export.jsonl import export_snapshot
from mdm_inventory.normalize.schema import DeviceRecord, PolicyRecord
from mdm_inventory.store import MemoryDeviceStore, MemoryPolicyStore, PolicyStore
from mdm_inventory.store.base import SnapshotStatus
from mdm_inventory.util.errors import SnapshotStateError

FIXED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _rec(name, category="Compliance", description="") -> PolicyRecord:
    return PolicyRecord(
        category=category, source_id=name.lower(), name=name, type="iosCompliancePolicy", platform="iOS",
        description=description, settings={"n": 1},
    )


def test_memory_store_satisfies_protocol() -> None:
    assert isinstance(MemoryPolicyStore(), PolicyStore)


def test_same_timestamp_snapshots_keep_creation_order() -> None:
    store = MemoryPolicyStore(clock=lambda: FIXED)
    first = store.create_snapshot("corp", "intune")
    second = store.create_snapshot("corp", "intune")
    assert [s.id for s in store.list_snapshots()] == [second.id, first.id]


def test_returned_snapshots_are_copies() -> None:
    store = MemoryPolicyStore()
    snap = store.create_snapshot("corp", "intune", "label")
    snap.status = SnapshotStatus.COMPLETE
    assert store.get_snapshot(snap.id).status == SnapshotStatus.CAPTURING


def test_items_filter_and_counts() -> None:
    store = MemoryPolicyStore()
    snap = store.create_snapshot("corp", "intune")
    store.insert_item(snap.id, _rec("Require PIN", description="passcode rules"))
    store.insert_item(snap.id, _rec("Helpdesk", category="Roles"))
    store.update_snapshot_counts(snap.id)

    got = store.get_snapshot(snap.id)
    assert (got.policy_count, got.category_count) == (2, 2)
    assert [i.name for i in store.list_items(snap.id, category="Roles")] == ["Helpdesk"]
    assert [i.name for i in store.list_items(snap.id, search="PASSCODE")] == ["Require PIN"]
    assert store.distinct_categories(snap.id) == ["Compliance", "Roles"]


def test_insert_into_missing_snapshot_raises() -> None:
    with pytest.raises(SnapshotStateError):
        MemoryPolicyStore().insert_item("missing", _rec("A"))


def test_reset_for_retry_clears_items() -> None:
    store = MemoryPolicyStore()
    snap = store.create_snapshot("corp", "intune")
    store.insert_item(snap.id, _rec("A"))
    with pytest.raises(SnapshotStateError):
        store.reset_snapshot_for_retry(snap.id)

    store.update_snapshot_status(snap.id, SnapshotStatus.ERROR, "boom")
    store.reset_snapshot_for_retry(snap.id)
    assert store.list_items(snap.id) == []
    assert store.get_snapshot(snap.id).status == SnapshotStatus.CAPTURING


def test_recover_stale_capturing_counts() -> None:
    store = MemoryPolicyStore()
    a = store.create_snapshot("corp", "intune")
    b = store.create_snapshot("corp", "intune")
    store.update_snapshot_status(b.id, SnapshotStatus.COMPLETE)
    assert store.recover_stale_capturing("gone") == 1
    assert store.get_snapshot(a.id).status_message == "gone"


def test_device_upsert_replaces_by_source_id() -> None:
    store = MemoryDeviceStore()
    store.upsert("corp", DeviceRecord(source_id="d1", device_name="old"))
    store.upsert("corp", DeviceRecord(source_id="d1", device_name="new"))
    store.upsert("lab", DeviceRecord(source_id="d1", device_name="lab"))
    assert [d.device_name for d in store.list_devices("corp")] == ["new"]
    with pytest.raises(ValueError):
        store.upsert("corp", DeviceRecord(source_id=""))


def test_export_snapshot_writes_sorted_jsonl(tmp_path) -> None:
    store = MemoryPolicyStore()
    snap = store.create_snapshot("corp", "intune")
    store.insert_item(snap.id, _rec("Zeta"))
    store.insert_item(snap.id, _rec("Alpha"))

    path = tmp_path / "out" / "policies.jsonl"
    assert export_snapshot(store, snap.id, path) == 2

    rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [r["name"] for r in rows] == ["Alpha", "Zeta"]
    assert rows[0]["settings"] == {"n": 1}
    assert set(rows[0]) == {"category", "name", "type", "platform", "source_id", "description", "settings"}


def test_delete_snapshot_drops_items() -> None:
    store = MemoryPolicyStore()
    snap = store.create_snapshot("corp", "intune")
    store.insert_item(snap.id, _rec("A"))
    store.delete_snapshot(snap.id)
    assert store.get_snapshot(snap.id) is None
    assert store.list_items(snap.id) == []
