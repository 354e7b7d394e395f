from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..logging import get_logger
from ..normalize.schema import LEGACY_ENDPOINTS, PolicyEndpoint, PolicyRecord, ResourceTypeMeta
from ..normalize.transform import normalize_policy
from ..util.errors import InventoryError
from ..util.pagination import paginate
from .client import GraphClient, graph_url
from .devices import collection_page

LOG = get_logger(__name__)

SETTINGS_KEY = "_settings"

Progress = Callable[[str, int], None]


def endpoint_url(endpoint: PolicyEndpoint, *suffix: str) -> str:
    path = "/".join((endpoint.relative_path,) + suffix)
    return graph_url(path, beta=endpoint.beta)


def _pager(client: GraphClient, first_url: str) -> Callable[[str], Tuple[List[Dict[str, Any]], str]]:
    def fetch(cursor: str) -> Tuple[List[Dict[str, Any]], str]:
        return collection_page(client.get_json(cursor or first_url))

    return fetch


def fetch_policy_settings(
    client: GraphClient,
    endpoint: PolicyEndpoint,
    policy_id: str,
    *,
    cancel: Optional[threading.Event] = None,
) -> List[Dict[str, Any]]:
    return list(paginate(_pager(client, endpoint_url(endpoint, policy_id, "settings")), cancel=cancel))


def fetch_endpoint(
    client: GraphClient,
    endpoint: PolicyEndpoint,
    *,
    cancel: Optional[threading.Event] = None,
    tenant: str = "",
) -> List[PolicyRecord]:
    """
    Fetch every item of one collection, following next links, and normalize it.
    Settings Catalog style endpoints also pull each item's settings sub-collection.
    """
    records: List[PolicyRecord] = []
    for raw in paginate(_pager(client, endpoint_url(endpoint)), cancel=cancel):
        odata_type = raw.get("@odata.type")
        meta = ResourceTypeMeta(
            resource_type=odata_type if isinstance(odata_type, str) else "",
            category=endpoint.category,
            platform="",
        )
        record = normalize_policy(raw, meta)
        if endpoint.settings and record.source_id:
            try:
                settings = fetch_policy_settings(client, endpoint, record.source_id, cancel=cancel)
            except InventoryError as e:
                if cancel is not None and cancel.is_set():
                    raise
                LOG.warning(
                    "Could not fetch policy settings",
                    extra={"tenant": tenant, "endpoint": endpoint.path, "policy_id": record.source_id, "error": str(e)},
                )
            else:
                if settings:
                    record.settings[SETTINGS_KEY] = settings
        records.append(record)
    return records


def sync_legacy(
    client: GraphClient,
    progress: Optional[Progress] = None,
    cancel: Optional[threading.Event] = None,
    *,
    endpoints: Sequence[PolicyEndpoint] = LEGACY_ENDPOINTS,
    tenant: str = "",
) -> List[PolicyRecord]:
    """
    Walk the known policy collections one after another. A failing collection
    (unlicensed, forbidden) is logged and skipped.
    """
    records: List[PolicyRecord] = []
    for endpoint in endpoints:
        try:
            items = fetch_endpoint(client, endpoint, cancel=cancel, tenant=tenant)
        except InventoryError as e:
            if cancel is not None and cancel.is_set():
                raise
            LOG.warning(
                "Could not fetch policy endpoint",
                extra={"tenant": tenant, "endpoint": endpoint.relative_path, "error": str(e)},
            )
            continue
        records.extend(items)
        if progress is not None:
            progress(endpoint.category, len(records))
        LOG.info(
            "Fetched policy endpoint",
            extra={"tenant": tenant, "category": endpoint.category, "count": len(items)},
        )
    return records
