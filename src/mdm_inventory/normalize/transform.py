from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..util.serialization import stable_json_dumps
from ..util.time import parse_iso_utc
from .schema import (
    CATALOG_INDEX,
    DeviceRecord,
    ExportResult,
    PolicyRecord,
    PolicySetting,
    ResourceTypeMeta,
)

NAME_KEYS: Tuple[str, ...] = ("DisplayName", "displayName", "Name", "name")
ID_KEYS: Tuple[str, ...] = ("Identity", "Id", "id")
DESCRIPTION_KEYS: Tuple[str, ...] = ("Description", "description")
PLATFORM_KEYS: Tuple[str, ...] = ("Platform", "Platforms", "platforms", "platformType")

ENVELOPE_PREFIXES: Tuple[str, ...] = ("@odata", "@microsoft")
STRIPPED_KEYS = frozenset(
    {
        "Ensure",
        "createdDateTime",
        "lastModifiedDateTime",
        "version",
        "roleScopeTagIds",
        "creationSource",
    }
    | set(NAME_KEYS)
    | set(ID_KEYS)
    | set(DESCRIPTION_KEYS)
)

# Ordered substring rules for resource types missing from the catalog.
CATEGORY_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("compliance",), "Compliance"),
    (("deviceconfiguration",), "Configuration Profiles"),
    (
        (
            "antivirus",
            "attacksurface",
            "endpointdetection",
            "exploit",
            "accountprotection",
            "applicationcontrol",
        ),
        "Endpoint Security",
    ),
    (("appprotection",), "App Protection"),
    (("appconfiguration",), "App Configuration"),
    (("settingcatalog",), "Settings Catalog"),
    (("enrollment",), "Enrollment"),
    (("windowsupdate",), "Windows Update"),
    (("autopilot",), "Autopilot"),
    (("wifi",), "Configuration Profiles"),
    (("role",), "Roles"),
)

# Explicit platform values as sent by Settings Catalog and baseline templates.
PLATFORM_ENUM: Dict[str, str] = {
    "windows10": "Windows",
    "windows10x": "Windows",
    "windows10andlater": "Windows",
    "ios": "iOS",
    "macos": "macOS",
    "android": "Android",
    "androidenterprise": "Android",
    "androidopensourceproject": "Android",
    "linux": "Linux",
}

PLATFORM_FIELD_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("windows",), "Windows"),
    (("ios",), "iOS"),
    (("macos",), "macOS"),
    (("android",), "Android"),
    (("linux",), "Linux"),
    (("none", "all"), "All"),
)

PLATFORM_TYPE_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("windows", "win32"), "Windows"),
    (("ios", "iphone"), "iOS"),
    (("macos", "mac"), "macOS"),
    (("android",), "Android"),
)


def _match_rules(value: str, rules: Tuple[Tuple[Tuple[str, ...], str], ...]) -> str:
    lowered = value.lower()
    for needles, result in rules:
        if any(n in lowered for n in needles):
            return result
    return ""


def first_string(instance: Mapping[str, Any], keys: Iterable[str]) -> str:
    """
    Return the first present, non-empty string value among keys.
    """
    for key in keys:
        val = instance.get(key)
        if isinstance(val, str) and val:
            return val
    return ""


def guess_category(resource_type: str) -> str:
    return _match_rules(resource_type, CATEGORY_RULES) or "Other"


def platform_from_field(value: Any) -> str:
    if not isinstance(value, str) or not value:
        return ""
    exact = PLATFORM_ENUM.get(value.lower())
    if exact:
        return exact
    return _match_rules(value, PLATFORM_FIELD_RULES)


def platform_from_type(resource_type: str) -> str:
    return _match_rules(resource_type, PLATFORM_TYPE_RULES)


def short_type(resource_type: str) -> str:
    """
    '#microsoft.graph.windows10CompliancePolicy' -> 'windows10CompliancePolicy'
    """
    if not resource_type:
        return ""
    return resource_type.rsplit(".", 1)[-1]


def resolve_meta(resource_type: str, catalog: Optional[Mapping[str, ResourceTypeMeta]] = None) -> ResourceTypeMeta:
    index = CATALOG_INDEX if catalog is None else catalog
    meta = index.get(resource_type)
    if meta is not None:
        return meta
    return ResourceTypeMeta(resource_type=resource_type, category=guess_category(resource_type), platform="")


def clean_settings(instance: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in instance.items():
        if key.startswith(ENVELOPE_PREFIXES) or key in STRIPPED_KEYS:
            continue
        out[key] = value
    return out


def normalize_policy(instance: Mapping[str, Any], meta: ResourceTypeMeta) -> PolicyRecord:
    """
    Map one raw policy instance into a PolicyRecord.

    Platform precedence: explicit per-instance field, then the resource type's
    default, then a substring guess on the type name. Unknown shapes never
    raise; missing fields degrade to empty strings.
    """
    source_id = first_string(instance, ID_KEYS)
    name = first_string(instance, NAME_KEYS) or source_id

    platform = ""
    for key in PLATFORM_KEYS:
        platform = platform_from_field(instance.get(key))
        if platform:
            break
    if not platform:
        platform = meta.platform
    if not platform:
        platform = platform_from_type(meta.resource_type)

    return PolicyRecord(
        category=meta.category,
        source_id=source_id,
        name=name,
        type=short_type(meta.resource_type),
        platform=platform,
        description=first_string(instance, DESCRIPTION_KEYS),
        settings=clean_settings(instance),
    )


def sort_policies(records: List[PolicyRecord]) -> List[PolicyRecord]:
    return sorted(records, key=lambda r: (r.category, r.name))


def records_from_export(
    result: ExportResult,
    catalog: Optional[Mapping[str, ResourceTypeMeta]] = None,
) -> List[PolicyRecord]:
    records: List[PolicyRecord] = []
    for group in result.groups:
        meta = resolve_meta(group.resource_type, catalog)
        for instance in group.instances:
            if not isinstance(instance, Mapping):
                continue
            records.append(normalize_policy(instance, meta))
    return sort_policies(records)


def _whole_floats_to_int(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Mapping):
        return {k: _whole_floats_to_int(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_whole_floats_to_int(v) for v in value]
    return value


def format_setting_value(value: Any) -> str:
    """
    Render a setting value as comparable display text.
    Whole-valued numbers lose their fractional part so 4 and 4.0 compare equal.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, str):
        return value
    return stable_json_dumps(_whole_floats_to_int(value))


def flatten_settings(settings: Mapping[str, Any]) -> List[PolicySetting]:
    return [PolicySetting(name=k, value=format_setting_value(settings[k])) for k in sorted(settings)]


# ---- devices ----


def normalize_os(value: str) -> str:
    if value in ("iOS", "iPadOS"):
        return "iOS"
    return value


def normalize_compliance(value: str) -> str:
    if value == "compliant":
        return "compliant"
    if value == "noncompliant":
        return "non-compliant"
    return "unknown"


def _str(raw: Mapping[str, Any], key: str) -> str:
    val = raw.get(key)
    return val if isinstance(val, str) else ""


def _bool(raw: Mapping[str, Any], key: str) -> bool:
    val = raw.get(key)
    return val if isinstance(val, bool) else False


def normalize_device(raw: Mapping[str, Any]) -> DeviceRecord:
    return DeviceRecord(
        source_id=_str(raw, "id"),
        device_name=_str(raw, "deviceName"),
        os=normalize_os(_str(raw, "operatingSystem")),
        os_version=_str(raw, "osVersion"),
        model=_str(raw, "model"),
        user_name=_str(raw, "userDisplayName"),
        user_email=_str(raw, "userPrincipalName"),
        compliance=normalize_compliance(_str(raw, "complianceState")),
        is_encrypted=_bool(raw, "isEncrypted"),
        jail_broken=_str(raw, "jailBroken"),
        is_supervised=_bool(raw, "isSupervised"),
        threat_state=_str(raw, "partnerReportedThreatState"),
        last_seen=parse_iso_utc(raw.get("lastSyncDateTime")),
    )
