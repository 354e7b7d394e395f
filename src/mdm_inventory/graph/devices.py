from __future__ import annotations

from typing import Any, Dict, List, Tuple

from ..logging import get_logger
from ..normalize.schema import DeviceRecord
from ..normalize.transform import normalize_device
from .client import GraphClient, graph_url

LOG = get_logger(__name__)

DEVICE_FIELDS = (
    "id",
    "deviceName",
    "operatingSystem",
    "osVersion",
    "model",
    "userDisplayName",
    "userPrincipalName",
    "complianceState",
    "lastSyncDateTime",
    "managementAgent",
    "isEncrypted",
    "jailBroken",
    "isSupervised",
    "partnerReportedThreatState",
)
DEVICE_PAGE_SIZE = 200
NEXT_LINK_KEY = "@odata.nextLink"


def first_devices_url() -> str:
    query = f"$select={','.join(DEVICE_FIELDS)}&$top={DEVICE_PAGE_SIZE}&$orderby=deviceName"
    return graph_url(f"deviceManagement/managedDevices?{query}")


def collection_page(body: Any) -> Tuple[List[Dict[str, Any]], str]:
    """
    Split an OData collection response into (items, next_link).
    Non-object items are dropped; a missing next link yields "".
    """
    if not isinstance(body, dict):
        return [], ""
    raw = body.get("value")
    items = [v for v in raw if isinstance(v, dict)] if isinstance(raw, list) else []
    next_link = body.get(NEXT_LINK_KEY)
    return items, next_link if isinstance(next_link, str) else ""


def fetch_device_page(client: GraphClient, cursor: str = "", *, tenant: str = "") -> Tuple[List[DeviceRecord], str]:
    """
    Fetch one page of managed devices. cursor is the previous page's next link,
    or empty for the first page.
    """
    url = cursor or first_devices_url()
    items, next_link = collection_page(client.get_json(url))
    devices: List[DeviceRecord] = []
    for raw in items:
        try:
            devices.append(normalize_device(raw))
        except Exception:
            LOG.warning("Skipping malformed device record", exc_info=True, extra={"tenant": tenant})
    LOG.debug(
        "Fetched device page",
        extra={"tenant": tenant, "count": len(devices), "has_next": bool(next_link)},
    )
    return devices, next_link
