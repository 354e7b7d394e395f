from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from ..util.time import utc_now

DEFAULT_ACTIVITY_CAPACITY = 200


class HealthState(str, Enum):
    UNCHECKED = "unchecked"
    CHECKING = "checking"
    CONNECTED = "connected"
    ERROR = "error"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ProviderStatus:
    name: str
    type: str
    status: HealthState = HealthState.UNCHECKED
    error: str = ""
    checked_at: Optional[datetime] = None
    latency: float = 0.0  # seconds
    consec_fails: int = 0


@dataclass(frozen=True)
class ActivityEvent:
    time: datetime
    subject: str
    severity: Severity
    message: str


class StatusTracker:
    """
    Latest connectivity status per tenant. Statuses are immutable so readers
    can hold them without copying.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: Dict[str, ProviderStatus] = {}

    def set(self, status: ProviderStatus) -> None:
        with self._lock:
            self._statuses[status.name] = status

    def get(self, name: str) -> Optional[ProviderStatus]:
        with self._lock:
            return self._statuses.get(name)

    def all(self) -> Dict[str, ProviderStatus]:
        with self._lock:
            return dict(self._statuses)

    def remove(self, name: str) -> None:
        with self._lock:
            self._statuses.pop(name, None)


class ActivityLog:
    """
    Bounded ring buffer of recent operator-facing events, newest evicting oldest.
    seq increases on every add so pollers can detect change cheaply.
    """

    def __init__(self, capacity: int = DEFAULT_ACTIVITY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("activity log capacity must be at least 1")
        self._lock = threading.Lock()
        self._events: Deque[ActivityEvent] = deque(maxlen=capacity)
        self._seq = 0

    @property
    def capacity(self) -> int:
        return self._events.maxlen or 0

    @property
    def seq(self) -> int:
        with self._lock:
            return self._seq

    def add(self, event: ActivityEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._seq += 1

    def logf(self, subject: str, severity: Severity | str, message: str, *args: Any) -> None:
        if args:
            message = message % args
        self.add(ActivityEvent(time=utc_now(), subject=subject, severity=Severity(severity), message=message))

    def recent(self, n: int) -> List[ActivityEvent]:
        """
        Up to n events, newest first.
        """
        with self._lock:
            events = list(self._events)
        if n <= 0:
            return []
        return events[::-1][:n]
