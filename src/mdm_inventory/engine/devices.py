from __future__ import annotations

import logging
import threading
from typing import Optional

from ..logging import StepTimers, get_logger, log_event
from ..providers.base import Provider
from ..store.base import DeviceStore
from ..util.pagination import paginate

LOG = get_logger(__name__)


def sync_devices(provider: Provider, sink: DeviceStore, cancel: Optional[threading.Event] = None) -> int:
    """
    Pull every device page from provider into sink and return the number stored.
    Pages are requested one at a time; cancellation is honoured between pages.
    A record the sink rejects is logged and skipped.
    """
    timers = StepTimers()
    log_event(LOG, logging.INFO, "Device sync started", step="device_sync", phase="start", timers=timers, tenant=provider.name)
    total = 0
    for device in paginate(provider.sync_devices, cancel=cancel):
        try:
            sink.upsert(provider.name, device)
        except Exception as e:
            LOG.warning(
                "Device upsert failed",
                extra={"tenant": provider.name, "source_id": device.source_id, "error": str(e)},
            )
            continue
        total += 1
    log_event(
        LOG,
        logging.INFO,
        "Device sync complete",
        step="device_sync",
        phase="complete",
        timers=timers,
        tenant=provider.name,
        count=total,
    )
    return total
