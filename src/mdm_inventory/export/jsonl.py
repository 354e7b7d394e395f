from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

from ..normalize.schema import PolicyRecord
from ..store.base import PolicyItem, PolicyStore
from ..util.serialization import stable_json_dumps

EXPORT_FIELDS = ("category", "name", "type", "platform", "source_id", "description", "settings")


def _as_row(item: Union[PolicyItem, PolicyRecord]) -> Dict[str, Any]:
    return {f: getattr(item, f) for f in EXPORT_FIELDS}


def write_policies_jsonl(items: Iterable[Union[PolicyItem, PolicyRecord]], path: Path) -> int:
    """
    Write policies to a JSONL file with stable key ordering and deterministic line order.
    Ordering: category, name, type, platform, source_id. Returns the line count.
    Setting values are written as captured; nothing is redacted.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    def _key(r: Dict[str, Any]) -> tuple[str, str, str, str, str]:
        return (r["category"], r["name"], r["type"], r["platform"], r["source_id"])

    rows: List[Dict[str, Any]] = sorted((_as_row(i) for i in items), key=_key)
    with path.open("w", encoding="utf-8") as f:
        for row in rows:
            f.write(stable_json_dumps(row))
            f.write("\n")
    return len(rows)


def export_snapshot(store: PolicyStore, snapshot_id: str, path: Path) -> int:
    """
    Dump every item of one snapshot for offline comparison with diff_files.
    """
    return write_policies_jsonl(store.list_items(snapshot_id), path)
