from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import requests

from ..auth.credentials import CredentialCache
from ..config import EngineConfig, TenantConfig
from ..graph.client import GraphClient, graph_url
from ..graph.devices import fetch_device_page
from ..graph.endpoints import sync_legacy
from ..graph.export_jobs import ExportJobDriver
from ..logging import get_logger
from ..normalize.schema import DeviceRecord, PolicyRecord, catalog_resource_types
from ..normalize.transform import records_from_export
from ..util.errors import AuthenticationError, CaptureCancelled, ConfigError, InventoryError
from ..util.time import utc_now
from .base import Command, CommandStatus, ProgressCallback

LOG = get_logger(__name__)

PROVIDER_TYPE = "intune"
SNAPSHOT_LABEL_PREFIX = "Inventory"

# Console action name -> Graph managedDevice action.
COMMAND_ACTIONS: Dict[str, str] = {
    "reboot": "rebootNow",
    "lock": "remoteLock",
    "sync": "syncDevice",
    "retire": "retire",
    "wipe": "wipe",
    "resetPasscode": "resetPasscode",
    "shutDown": "shutDown",
    "windowsDefenderScan": "windowsDefenderScan",
    "windowsDefenderUpdateSignatures": "windowsDefenderUpdateSignatures",
}


class IntuneProvider:
    """
    Microsoft Intune backend reached through Microsoft Graph.
    """

    type = PROVIDER_TYPE

    def __init__(
        self,
        tenant: TenantConfig,
        settings: Optional[EngineConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not tenant.tenant_id or not tenant.client_id or not tenant.client_secret:
            raise ConfigError(f"Tenant '{tenant.name}' is missing tenant_id, client_id or client_secret")
        self.settings = settings or EngineConfig()
        self.name = tenant.name
        self._clock = clock
        session = session or requests.Session()
        self.credentials = CredentialCache(
            tenant.tenant_id,
            tenant.client_id,
            tenant.client_secret,
            session=session,
            refresh_margin=self.settings.token_refresh_margin_s,
            clock=clock,
        )
        self.client = GraphClient(self.credentials, session=session, timeout=self.settings.request_timeout_s)

    # ---- connectivity ----

    def test_connection(self, timeout: Optional[float] = None) -> None:
        """
        Acquire a token; this validates tenant, client id and secret without touching data.
        """
        try:
            self.credentials.get_token(timeout=timeout)
        except AuthenticationError as e:
            raise AuthenticationError(f"authentication failed: {e}") from e

    # ---- devices ----

    def sync_devices(self, cursor: str = "") -> Tuple[List[DeviceRecord], str]:
        return fetch_device_page(self.client, cursor, tenant=self.name)

    # ---- commands ----

    def send_command(self, device_id: str, command: Command) -> str:
        action = COMMAND_ACTIONS.get(command.action)
        if not action:
            raise ConfigError(f"unsupported command action: {command.action}")
        self.client.post_json(graph_url(f"deviceManagement/managedDevices/{device_id}/{action}"), None)
        # Graph returns no id for device actions.
        return f"{device_id}:{command.action}:{int(self._clock() * 1000)}"

    def check_command_status(self, command_id: str) -> CommandStatus:
        return CommandStatus(
            id=command_id,
            state="completed",
            detail="Intune actions are dispatched asynchronously",
            updated_at=utc_now(),
        )

    # ---- policies ----

    def export_driver(self) -> ExportJobDriver:
        return ExportJobDriver(
            self.client,
            poll_interval=self.settings.export_poll_interval_s,
            timeout=self.settings.export_timeout_s,
            tenant=self.name,
        )

    def sync_policies_export(
        self,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[PolicyRecord]:
        label = f"{SNAPSHOT_LABEL_PREFIX} {self.name} {int(self._clock() * 1000)}"
        started = time.monotonic()

        def on_status(status: str) -> None:
            if progress is not None:
                progress(f"Export: {status} ({int(time.monotonic() - started)}s)", 0)

        if progress is not None:
            progress("Export: creating snapshot", 0)
        result = self.export_driver().run(catalog_resource_types(), label, on_progress=on_status, cancel=cancel)
        records = records_from_export(result)
        if progress is not None:
            progress("Export: parsing complete", len(records))
        LOG.info(
            "Bulk export parsed",
            extra={"tenant": self.name, "count": len(records), "groups": len(result.groups)},
        )
        return records

    def sync_policies(
        self,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[PolicyRecord]:
        """
        Capture every policy. The bulk export is preferred; when it raises, the
        per-category collections are walked instead.
        """
        try:
            records = self.sync_policies_export(progress, cancel)
        except CaptureCancelled:
            raise
        except InventoryError as e:
            if cancel is not None and cancel.is_set():
                raise CaptureCancelled("policy sync cancelled") from e
            LOG.warning(
                "Bulk export failed; falling back to per-endpoint sync",
                extra={"tenant": self.name, "error": str(e)},
            )
            if progress is not None:
                progress("Bulk export unavailable, using per-endpoint sync", 0)
        else:
            if records or not self.settings.fallback_on_empty_export:
                return records
            LOG.info("Bulk export returned no policies; falling back", extra={"tenant": self.name})
        return sync_legacy(self.client, progress, cancel, tenant=self.name)
