from __future__ import annotations

import threading
import types
from datetime import datetime, timedelta, timezone

import pytest

from mdm_inventory.config import TenantConfig
from mdm_inventory.engine.snapshots import SnapshotOrchestrator
from mdm_inventory.health.status import ActivityLog
from mdm_inventory.normalize.schema import PolicyRecord
from mdm_inventory.store.base import INTERRUPTED_MESSAGE, SnapshotStatus
from mdm_inventory.store.memory import MemoryPolicyStore, MemoryTenantStore
from mdm_inventory.util.errors import CaptureCancelled, ConfigError, SnapshotStateError, TransportError

TENANT = TenantConfig(name="corp", tenant_id="t", client_id="c", client_secret="s")


def _records():
    return [
        PolicyRecord(category="Compliance", source_id="1", name="Require PIN", type="iosCompliancePolicy", platform="iOS"),
        PolicyRecord(category="Roles", source_id="2", name="Helpdesk", type="roleDefinition", platform=""),
    ]


def _provider(sync):
    return types.SimpleNamespace(name="corp", type="intune", sync_policies=sync)


def _orchestrator(sync, *, policies=None, retention=10, cancel=None) -> SnapshotOrchestrator:
    return SnapshotOrchestrator(
        policies or MemoryPolicyStore(),
        MemoryTenantStore([TENANT]),
        lambda cfg: _provider(sync),
        ActivityLog(),
        retention=retention,
        cancel=cancel,
    )


def _wait(orch: SnapshotOrchestrator) -> None:
    assert orch.tasks.wait(5.0)


def test_capture_completes_with_counts() -> None:
    seen = []

    def sync(progress, cancel):
        progress("Compliance", 1)
        seen.append(cancel)
        return _records()

    orch = _orchestrator(sync)
    snap_id = orch.start_capture("corp", "weekly")
    _wait(orch)

    snap = orch.policies.get_snapshot(snap_id)
    assert snap.status == SnapshotStatus.COMPLETE
    assert snap.display_name == "weekly"
    assert (snap.policy_count, snap.category_count) == (2, 2)
    assert seen == [orch.cancel]
    assert [i.name for i in orch.policies.list_items(snap_id)] == ["Require PIN", "Helpdesk"]
    assert "2 policies captured" in orch.activity.recent(1)[0].message


def test_snapshot_is_capturing_while_sync_runs() -> None:
    release = threading.Event()

    def sync(progress, cancel):
        release.wait(5.0)
        return []

    orch = _orchestrator(sync)
    snap_id = orch.start_capture("corp")
    try:
        assert orch.policies.get_snapshot(snap_id).status == SnapshotStatus.CAPTURING
    finally:
        release.set()
    _wait(orch)
    assert orch.policies.get_snapshot(snap_id).status == SnapshotStatus.COMPLETE


def test_sync_error_is_recorded_on_snapshot() -> None:
    def sync(progress, cancel):
        raise TransportError("Graph returned 403: forbidden", status_code=403)

    orch = _orchestrator(sync)
    snap_id = orch.start_capture("corp")
    _wait(orch)

    snap = orch.policies.get_snapshot(snap_id)
    assert snap.status == SnapshotStatus.ERROR
    assert "403" in snap.status_message


def test_shutdown_interrupts_capture() -> None:
    started = threading.Event()

    def sync(progress, cancel):
        started.set()
        cancel.wait(5.0)
        raise CaptureCancelled("stopped")

    orch = _orchestrator(sync)
    snap_id = orch.start_capture("corp")
    assert started.wait(5.0)

    assert orch.shutdown(5.0) is True
    snap = orch.policies.get_snapshot(snap_id)
    assert snap.status == SnapshotStatus.ERROR
    assert snap.status_message == INTERRUPTED_MESSAGE
    assert "interrupted" in snap.status_message

    with pytest.raises(CaptureCancelled):
        orch.start_capture("corp")


def test_shutdown_reports_timeout() -> None:
    release = threading.Event()

    def sync(progress, cancel):
        release.wait(5.0)
        return []

    orch = _orchestrator(sync)
    orch.start_capture("corp")
    try:
        assert orch.shutdown(0.05) is False
    finally:
        release.set()
    _wait(orch)


def test_stale_capturing_swept_before_first_capture() -> None:
    store = MemoryPolicyStore()
    stale = store.create_snapshot("corp", "intune")
    orch = _orchestrator(lambda progress, cancel: [], policies=store)

    new_id = orch.start_capture("corp")
    _wait(orch)

    assert store.get_snapshot(stale.id).status == SnapshotStatus.ERROR
    assert store.get_snapshot(stale.id).status_message == INTERRUPTED_MESSAGE
    assert store.get_snapshot(new_id).status == SnapshotStatus.COMPLETE
    # only once
    assert orch.recover_stale() == 0


def test_retry_only_from_error() -> None:
    attempts = []

    def sync(progress, cancel):
        attempts.append(1)
        if len(attempts) == 1:
            raise TransportError("throttled", status_code=429)
        return _records()

    orch = _orchestrator(sync)
    snap_id = orch.start_capture("corp")
    _wait(orch)
    assert orch.policies.get_snapshot(snap_id).status == SnapshotStatus.ERROR

    orch.retry(snap_id)
    _wait(orch)
    snap = orch.policies.get_snapshot(snap_id)
    assert snap.status == SnapshotStatus.COMPLETE
    assert snap.status_message == ""
    assert snap.policy_count == 2

    with pytest.raises(SnapshotStateError):
        orch.retry(snap_id)
    with pytest.raises(SnapshotStateError):
        orch.retry("missing")


def test_retention_prunes_oldest_per_tenant() -> None:
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    ticks = iter(range(100))
    store = MemoryPolicyStore(clock=lambda: base + timedelta(minutes=next(ticks)))
    other = store.create_snapshot("other", "intune")
    orch = _orchestrator(lambda progress, cancel: [], policies=store, retention=2)

    ids = []
    for _ in range(3):
        ids.append(orch.start_capture("corp"))
        _wait(orch)

    remaining = {s.id for s in store.list_snapshots()}
    assert ids[0] not in remaining
    assert {ids[1], ids[2], other.id} <= remaining


def test_unknown_tenant_and_non_policy_provider() -> None:
    orch = _orchestrator(lambda progress, cancel: [])
    with pytest.raises(ConfigError):
        orch.start_capture("nobody")

    plain = SnapshotOrchestrator(
        MemoryPolicyStore(),
        MemoryTenantStore([TENANT]),
        lambda cfg: types.SimpleNamespace(name="corp", type="uem"),
        ActivityLog(),
    )
    with pytest.raises(ConfigError, match="does not support policy sync"):
        plain.start_capture("corp")
    assert plain.policies.list_snapshots() == []


def test_retry_sweeps_stale_rows_before_running() -> None:
    store = MemoryPolicyStore()
    failed = store.create_snapshot("corp", "intune")
    store.update_snapshot_status(failed.id, SnapshotStatus.ERROR, "boom")
    stale = store.create_snapshot("corp", "intune")
    release = threading.Event()
    started = threading.Event()

    def sync(progress, cancel):
        started.set()
        release.wait(5.0)
        return []

    orch = _orchestrator(sync, policies=store)
    orch.retry(failed.id)
    assert started.wait(5.0)
    assert store.get_snapshot(stale.id).status == SnapshotStatus.ERROR

    try:
        orch.start_capture("corp")
        assert store.get_snapshot(failed.id).status == SnapshotStatus.CAPTURING
    finally:
        release.set()
    _wait(orch)
    assert store.get_snapshot(failed.id).status == SnapshotStatus.COMPLETE
