from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from ..logging import get_logger

T = TypeVar("T")

LOG = get_logger(__name__)


def parallel_for_each(
    func: Callable[[T], None],
    items: Sequence[T] | Iterable[T],
    max_workers: Optional[int] = None,
) -> None:
    """
    Execute func over items in a thread pool and wait for every item to finish.
    When max_workers is None, one worker per item is used.
    Exceptions are propagated once all futures have completed so that one
    failing item does not abandon the others.
    """
    if not isinstance(items, Sequence):
        items = list(items)
    if not items:
        return
    workers = max_workers if max_workers and max_workers > 0 else len(items)
    errors: List[BaseException] = []
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(func, item) for item in items]
        for fut in as_completed(futures):
            try:
                fut.result()
            except BaseException as e:  # collect and continue
                errors.append(e)
    if errors:
        raise errors[0]


class BackgroundTasks:
    """
    Counted set of outstanding background threads.

    spawn() increments the counter before the thread starts and the thread
    decrements it when its target returns or raises; wait() blocks until the
    counter reaches zero or the timeout expires.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending = 0

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def spawn(self, target: Callable[..., Any], *args: Any, name: Optional[str] = None) -> threading.Thread:
        with self._cond:
            self._pending += 1

        def _run() -> None:
            try:
                target(*args)
            except BaseException:
                LOG.exception("Background task failed", extra={"task": name or getattr(target, "__name__", "task")})
            finally:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()

        thread = threading.Thread(target=_run, name=name, daemon=True)
        try:
            thread.start()
        except BaseException:
            with self._cond:
                self._pending -= 1
                self._cond.notify_all()
            raise
        return thread

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for all tasks to finish. Returns False if the timeout expired first.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout=timeout)
