from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from ..normalize.schema import DeviceRecord, PolicyRecord

# (category or status text, records fetched so far)
ProgressCallback = Callable[[str, int], None]


@dataclass(frozen=True)
class Command:
    action: str  # reboot|lock|sync|retire|wipe|resetPasscode|shutDown|...
    params: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CommandStatus:
    id: str
    state: str  # pending|running|completed|failed
    detail: str
    updated_at: datetime


@runtime_checkable
class Provider(Protocol):
    """
    One connection to one tenant of a device-management backend.
    """

    name: str
    type: str

    def test_connection(self, timeout: Optional[float] = None) -> None:
        ...

    def sync_devices(self, cursor: str = "") -> Tuple[List[DeviceRecord], str]:
        ...

    def send_command(self, device_id: str, command: Command) -> str:
        ...

    def check_command_status(self, command_id: str) -> CommandStatus:
        ...


@runtime_checkable
class PolicyProvider(Protocol):
    """
    Optional capability for backends that can capture their full policy set.
    """

    def sync_policies(
        self,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[PolicyRecord]:
        ...
