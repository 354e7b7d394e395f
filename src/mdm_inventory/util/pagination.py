from __future__ import annotations

import threading
from typing import Callable, Generator, Optional, Sequence, Tuple, TypeVar

from .errors import CaptureCancelled

T = TypeVar("T")


def paginate(
    fetch: Callable[[str], Tuple[Sequence[T], str]],
    *,
    cancel: Optional[threading.Event] = None,
) -> Generator[T, None, None]:
    """
    Generic paginator yielding items from a fetch(cursor) function.
    The fetch function must return (items, next_cursor). The first call receives
    an empty cursor; when next_cursor is falsy, pagination stops.
    Pages are fetched strictly one after another. If cancel is set between pages,
    CaptureCancelled is raised instead of requesting the next page.
    """
    cursor = ""
    while True:
        if cancel is not None and cancel.is_set():
            raise CaptureCancelled("pagination cancelled")
        items, next_cursor = fetch(cursor)
        for it in items:
            yield it
        if not next_cursor:
            break
        cursor = next_cursor
