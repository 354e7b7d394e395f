from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .util.errors import ConfigError
from .util.serialization import sanitize_for_json

# --------
# Defaults
# --------
DEFAULT_HEALTH_INTERVAL_S = 120.0
DEFAULT_HEALTH_TIMEOUT_S = 15.0
DEFAULT_EXPORT_POLL_INTERVAL_S = 5.0
DEFAULT_EXPORT_TIMEOUT_S = 600.0
DEFAULT_TOKEN_REFRESH_MARGIN_S = 120.0
DEFAULT_REQUEST_TIMEOUT_S = 30.0
DEFAULT_ACTIVITY_CAPACITY = 200
DEFAULT_SNAPSHOT_RETENTION = 10
DEFAULT_SHUTDOWN_GRACE_S = 30.0

PROVIDER_TYPES = {"intune", "uem"}
ALLOWED_CONFIG_KEYS = {
    "health_interval_s",
    "health_timeout_s",
    "export_poll_interval_s",
    "export_timeout_s",
    "token_refresh_margin_s",
    "request_timeout_s",
    "activity_capacity",
    "snapshot_retention",
    "shutdown_grace_s",
    "fallback_on_empty_export",
    "log_level",
    "json_logs",
    "tenants",
}
BOOL_CONFIG_KEYS = {"fallback_on_empty_export", "json_logs"}
INT_CONFIG_KEYS = {"activity_capacity", "snapshot_retention"}
FLOAT_CONFIG_KEYS = {
    "health_interval_s",
    "health_timeout_s",
    "export_poll_interval_s",
    "export_timeout_s",
    "token_refresh_margin_s",
    "request_timeout_s",
    "shutdown_grace_s",
}
STR_CONFIG_KEYS = {"log_level"}
ALLOWED_TENANT_KEYS = {"name", "type", "tenant_id", "client_id", "client_secret", "client_secret_env", "enabled"}


@dataclass(frozen=True)
class TenantConfig:
    name: str
    type: str = "intune"
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    enabled: bool = True
    # Persisted health counter, carried so the supervisor can continue counting across restarts.
    consec_fails: int = 0


@dataclass(frozen=True)
class EngineConfig:
    health_interval_s: float = DEFAULT_HEALTH_INTERVAL_S
    health_timeout_s: float = DEFAULT_HEALTH_TIMEOUT_S
    export_poll_interval_s: float = DEFAULT_EXPORT_POLL_INTERVAL_S
    export_timeout_s: float = DEFAULT_EXPORT_TIMEOUT_S
    token_refresh_margin_s: float = DEFAULT_TOKEN_REFRESH_MARGIN_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    activity_capacity: int = DEFAULT_ACTIVITY_CAPACITY
    snapshot_retention: int = DEFAULT_SNAPSHOT_RETENTION
    shutdown_grace_s: float = DEFAULT_SHUTDOWN_GRACE_S
    fallback_on_empty_export: bool = False
    log_level: str = "INFO"
    json_logs: bool = False
    tenants: Tuple[TenantConfig, ...] = ()


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        elif path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            # Try YAML first then JSON
            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError:
                data = json.loads(text)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ConfigError(f"Config field '{key}' must be an integer")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            pass
    raise ConfigError(f"Config field '{key}' must be a number")


def _normalize_tenant(index: int, raw: Any) -> TenantConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Tenant entry #{index} must be an object")
    unknown = sorted(set(raw.keys()) - ALLOWED_TENANT_KEYS)
    if unknown:
        warnings.warn(f"Unknown tenant keys ignored: {', '.join(unknown)}")
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ConfigError(f"Tenant entry #{index} is missing 'name'")
    ptype = str(raw.get("type") or "intune").strip().lower()
    if ptype not in PROVIDER_TYPES:
        raise ConfigError(f"Tenant '{name}' has unsupported type '{ptype}'")
    secret = raw.get("client_secret")
    secret_env = raw.get("client_secret_env")
    if not secret and secret_env:
        secret = _env_str(str(secret_env))
    enabled = raw.get("enabled", True)
    return TenantConfig(
        name=name,
        type=ptype,
        tenant_id=str(raw.get("tenant_id") or ""),
        client_id=str(raw.get("client_id") or ""),
        client_secret=str(secret or ""),
        enabled=_coerce_bool("enabled", enabled),
    )


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS:
            continue
        if value is None:
            normalized[key] = None
            continue
        if key == "tenants":
            if not isinstance(value, list):
                raise ConfigError("Config field 'tenants' must be a list")
            tenants = [_normalize_tenant(i, t) for i, t in enumerate(value)]
            names = [t.name for t in tenants]
            dupes = sorted({n for n in names if names.count(n) > 1})
            if dupes:
                raise ConfigError(f"Duplicate tenant names: {', '.join(dupes)}")
            normalized[key] = tuple(tenants)
        elif key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in FLOAT_CONFIG_KEYS:
            normalized[key] = _coerce_float(key, value)
        elif key in STR_CONFIG_KEYS:
            if isinstance(value, str):
                normalized[key] = value
            else:
                raise ConfigError(f"Config field '{key}' must be a string")
    return _compact_dict(normalized)


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def _validate(cfg: EngineConfig) -> None:
    for key in FLOAT_CONFIG_KEYS:
        if getattr(cfg, key) <= 0:
            raise ConfigError(f"Config field '{key}' must be positive")
    if cfg.activity_capacity < 1:
        raise ConfigError("Config field 'activity_capacity' must be at least 1")
    if cfg.snapshot_retention < 1:
        raise ConfigError("Config field 'snapshot_retention' must be at least 1")


def load_engine_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """
    Build EngineConfig by merging defaults, an optional config file and env vars.
    Precedence (low -> high): defaults < config file < env.
    The config file path may also come from MDM_INV_CONFIG.
    """
    base: Dict[str, Any] = {
        "health_interval_s": DEFAULT_HEALTH_INTERVAL_S,
        "health_timeout_s": DEFAULT_HEALTH_TIMEOUT_S,
        "export_poll_interval_s": DEFAULT_EXPORT_POLL_INTERVAL_S,
        "export_timeout_s": DEFAULT_EXPORT_TIMEOUT_S,
        "token_refresh_margin_s": DEFAULT_TOKEN_REFRESH_MARGIN_S,
        "request_timeout_s": DEFAULT_REQUEST_TIMEOUT_S,
        "activity_capacity": DEFAULT_ACTIVITY_CAPACITY,
        "snapshot_retention": DEFAULT_SNAPSHOT_RETENTION,
        "shutdown_grace_s": DEFAULT_SHUTDOWN_GRACE_S,
        "fallback_on_empty_export": False,
        "log_level": "INFO",
        "json_logs": False,
        "tenants": (),
    }

    # config file
    file_cfg: Dict[str, Any] = {}
    config_path = path or _env_str("MDM_INV_CONFIG")
    if config_path:
        file_cfg = _normalize_config_file(_parse_config_file(Path(config_path)))

    # env
    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "health_interval_s": _env_float("MDM_INV_HEALTH_INTERVAL_S"),
            "health_timeout_s": _env_float("MDM_INV_HEALTH_TIMEOUT_S"),
            "export_poll_interval_s": _env_float("MDM_INV_EXPORT_POLL_INTERVAL_S"),
            "export_timeout_s": _env_float("MDM_INV_EXPORT_TIMEOUT_S"),
            "token_refresh_margin_s": _env_float("MDM_INV_TOKEN_REFRESH_MARGIN_S"),
            "request_timeout_s": _env_float("MDM_INV_REQUEST_TIMEOUT_S"),
            "activity_capacity": _env_int("MDM_INV_ACTIVITY_CAPACITY"),
            "snapshot_retention": _env_int("MDM_INV_SNAPSHOT_RETENTION"),
            "shutdown_grace_s": _env_float("MDM_INV_SHUTDOWN_GRACE_S"),
            "fallback_on_empty_export": _env_bool("MDM_INV_FALLBACK_ON_EMPTY_EXPORT"),
            "log_level": _env_str("MDM_INV_LOG_LEVEL"),
            "json_logs": _env_bool("MDM_INV_JSON_LOGS"),
        }
    )

    merged = _merge_dicts(base, _merge_dicts(file_cfg, env_cfg))
    cfg = EngineConfig(
        health_interval_s=float(merged["health_interval_s"]),
        health_timeout_s=float(merged["health_timeout_s"]),
        export_poll_interval_s=float(merged["export_poll_interval_s"]),
        export_timeout_s=float(merged["export_timeout_s"]),
        token_refresh_margin_s=float(merged["token_refresh_margin_s"]),
        request_timeout_s=float(merged["request_timeout_s"]),
        activity_capacity=int(merged["activity_capacity"]),
        snapshot_retention=int(merged["snapshot_retention"]),
        shutdown_grace_s=float(merged["shutdown_grace_s"]),
        fallback_on_empty_export=bool(merged["fallback_on_empty_export"]),
        log_level=str(merged.get("log_level") or "INFO").upper(),
        json_logs=bool(merged["json_logs"]),
        tenants=tuple(merged.get("tenants") or ()),
    )
    _validate(cfg)
    return cfg


def dump_config(cfg: EngineConfig) -> Dict[str, Any]:
    """
    Return a JSON-safe view of the config with client secrets redacted.
    """
    tenants: List[Dict[str, Any]] = [
        {
            "name": t.name,
            "type": t.type,
            "tenant_id": t.tenant_id,
            "client_id": t.client_id,
            "client_secret": t.client_secret,
            "enabled": t.enabled,
        }
        for t in cfg.tenants
    ]
    return sanitize_for_json(
        {
            "health_interval_s": cfg.health_interval_s,
            "health_timeout_s": cfg.health_timeout_s,
            "export_poll_interval_s": cfg.export_poll_interval_s,
            "export_timeout_s": cfg.export_timeout_s,
            "token_refresh_margin_s": cfg.token_refresh_margin_s,
            "request_timeout_s": cfg.request_timeout_s,
            "activity_capacity": cfg.activity_capacity,
            "snapshot_retention": cfg.snapshot_retention,
            "shutdown_grace_s": cfg.shutdown_grace_s,
            "fallback_on_empty_export": cfg.fallback_on_empty_export,
            "log_level": cfg.log_level,
            "json_logs": cfg.json_logs,
            "tenants": tenants,
        }
    )
