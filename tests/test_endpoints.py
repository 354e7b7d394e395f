from __future__ import annotations

import threading
import types

import pytest

from mdm_inventory.graph.endpoints import SETTINGS_KEY, endpoint_url, fetch_endpoint, sync_legacy
from mdm_inventory.normalize.schema import LEGACY_ENDPOINTS, PolicyEndpoint
from mdm_inventory.util.errors import CaptureCancelled, TransportError

V1 = "https://graph.microsoft.com/v1.0/"
BETA = "https://graph.microsoft.com/beta/"

COMPLIANCE = PolicyEndpoint("Compliance Policies", path="deviceCompliancePolicies")
CATALOG = PolicyEndpoint("Settings Catalog", path="configurationPolicies", beta=True, settings=True)
APP = PolicyEndpoint("App Protection", full_path="deviceAppManagement/managedAppPolicies", beta=True)


def _client(responses):
    calls = []

    def get_json(url):
        calls.append(url)
        body = responses.get(url)
        if isinstance(body, Exception):
            raise body
        if body is None:
            raise TransportError(f"Graph returned 404 for {url}", status_code=404)
        return body

    return types.SimpleNamespace(get_json=get_json), calls


def test_endpoint_urls() -> None:
    assert endpoint_url(COMPLIANCE) == V1 + "deviceManagement/deviceCompliancePolicies"
    assert endpoint_url(APP) == BETA + "deviceAppManagement/managedAppPolicies"
    assert endpoint_url(CATALOG, "p1", "settings") == BETA + "deviceManagement/configurationPolicies/p1/settings"


def test_fetch_endpoint_follows_next_links_and_normalizes() -> None:
    first = endpoint_url(COMPLIANCE)
    client, calls = _client(
        {
            first: {
                "value": [
                    {
                        "@odata.type": "#microsoft.graph.iosCompliancePolicy",
                        "id": "1",
                        "displayName": "Require PIN",
                        "passcodeMinimumLength": 6,
                    }
                ],
                "@odata.nextLink": first + "?$skiptoken=2",
            },
            first + "?$skiptoken=2": {"value": [{"id": "2", "displayName": "Windows baseline", "platforms": "windows10"}]},
        }
    )

    records = fetch_endpoint(client, COMPLIANCE)

    assert calls == [first, first + "?$skiptoken=2"]
    pin, baseline = records
    assert (pin.category, pin.type, pin.platform) == ("Compliance Policies", "iosCompliancePolicy", "iOS")
    assert pin.settings == {"passcodeMinimumLength": 6}
    assert baseline.platform == "Windows"


def test_settings_catalog_items_carry_settings_subcollection() -> None:
    client, _ = _client(
        {
            endpoint_url(CATALOG): {"value": [{"id": "p1", "name": "Edge"}, {"id": "p2", "name": "Broken"}]},
            endpoint_url(CATALOG, "p1", "settings"): {"value": [{"settingInstance": {"id": "s"}}]},
        }
    )

    edge, broken = fetch_endpoint(client, CATALOG)

    assert edge.settings[SETTINGS_KEY] == [{"settingInstance": {"id": "s"}}]
    # settings fetch failure keeps the policy
    assert SETTINGS_KEY not in broken.settings


def test_sync_legacy_skips_failing_endpoints_and_reports_progress() -> None:
    client, _ = _client(
        {
            endpoint_url(COMPLIANCE): {"value": [{"id": "1", "displayName": "A"}]},
            endpoint_url(APP): TransportError("Graph returned 403", status_code=403),
            endpoint_url(CATALOG): {"value": [{"id": "2", "name": "B"}]},
        }
    )
    seen = []

    records = sync_legacy(client, lambda c, n: seen.append((c, n)), endpoints=[COMPLIANCE, APP, CATALOG])

    assert [r.name for r in records] == ["A", "B"]
    assert seen == [("Compliance Policies", 1), ("Settings Catalog", 2)]


def test_sync_legacy_cancel_propagates() -> None:
    cancel = threading.Event()
    cancel.set()
    client, calls = _client({})
    with pytest.raises(CaptureCancelled):
        sync_legacy(client, None, cancel, endpoints=[COMPLIANCE])
    assert calls == []


def test_legacy_endpoint_table_is_unique() -> None:
    paths = [e.relative_path for e in LEGACY_ENDPOINTS]
    assert len(paths) == len(set(paths))
