from __future__ import annotations

import threading

import pytest

from mdm_inventory.util.concurrency import BackgroundTasks, parallel_for_each


def test_parallel_for_each_visits_every_item() -> None:
    seen: list[int] = []
    lock = threading.Lock()

    def visit(i: int) -> None:
        with lock:
            seen.append(i)

    parallel_for_each(visit, range(6), max_workers=2)
    assert sorted(seen) == [0, 1, 2, 3, 4, 5]


def test_parallel_for_each_raises_after_all_items_finish() -> None:
    seen: list[int] = []

    def visit(i: int) -> None:
        if i == 0:
            raise RuntimeError("first item failed")
        seen.append(i)

    with pytest.raises(RuntimeError, match="first item failed"):
        parallel_for_each(visit, [0, 1, 2])
    assert sorted(seen) == [1, 2]


def test_background_tasks_wait_for_completion() -> None:
    tasks = BackgroundTasks()
    release = threading.Event()

    tasks.spawn(release.wait, 5.0, name="blocked")
    assert tasks.pending == 1
    assert tasks.wait(timeout=0.05) is False

    release.set()
    assert tasks.wait(timeout=5.0) is True
    assert tasks.pending == 0


def test_background_task_failure_still_decrements() -> None:
    tasks = BackgroundTasks()

    def boom() -> None:
        raise ValueError("boom")

    tasks.spawn(boom)
    assert tasks.wait(timeout=5.0) is True
