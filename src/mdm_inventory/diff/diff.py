from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from ..normalize.schema import PolicyRecord, PolicySetting
from ..normalize.transform import flatten_settings, format_setting_value
from ..util.serialization import sanitize_for_json, stable_json_dumps

DiffKey = Tuple[str, str, str, str]


class DiffStatus(str, Enum):
    DIFFERENT = "different"
    LEFT_ONLY = "left-only"
    RIGHT_ONLY = "right-only"
    MATCHING = "matching"


STATUS_PRIORITY: Dict[DiffStatus, int] = {
    DiffStatus.DIFFERENT: 0,
    DiffStatus.LEFT_ONLY: 1,
    DiffStatus.RIGHT_ONLY: 2,
    DiffStatus.MATCHING: 3,
}


@dataclass(frozen=True)
class SettingDiff:
    name: str
    left: str
    right: str
    changed: bool


@dataclass(frozen=True)
class DiffEntry:
    name: str
    category: str
    type: str
    platform: str
    status: DiffStatus
    setting_diffs: List[SettingDiff] = field(default_factory=list)
    settings: List[PolicySetting] = field(default_factory=list)


@dataclass(frozen=True)
class CompareStats:
    matching: int = 0
    different: int = 0
    left_only: int = 0
    right_only: int = 0
    total: int = 0


PolicyLike = Union[PolicyRecord, Mapping[str, Any], Any]


def parse_settings(value: Any) -> Dict[str, Any]:
    """
    Accept settings as a mapping or as JSON text. Unparsable text or a
    non-object document yields an empty map.
    """
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (str, bytes)):
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _field(obj: PolicyLike, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _to_record(obj: PolicyLike) -> PolicyRecord:
    if isinstance(obj, PolicyRecord):
        return obj
    return PolicyRecord(
        category=str(_field(obj, "category") or ""),
        source_id=str(_field(obj, "source_id") or ""),
        name=str(_field(obj, "name") or ""),
        type=str(_field(obj, "type") or ""),
        platform=str(_field(obj, "platform") or ""),
        description=str(_field(obj, "description") or ""),
        settings=parse_settings(_field(obj, "settings")),
    )


def _compare_settings(left: Mapping[str, Any], right: Mapping[str, Any]) -> List[SettingDiff]:
    out: List[SettingDiff] = []
    for key in sorted(set(left) | set(right)):
        lv = format_setting_value(left.get(key))
        rv = format_setting_value(right.get(key))
        out.append(SettingDiff(name=key, left=lv, right=rv, changed=lv != rv))
    return out


def _normalize_filter(status_filter: Optional[Union[str, DiffStatus, Iterable[Union[str, DiffStatus]]]]) -> Optional[Set[DiffStatus]]:
    if status_filter is None:
        return None
    if isinstance(status_filter, (str, DiffStatus)):
        status_filter = [status_filter]
    wanted = {DiffStatus(s) for s in status_filter}
    return wanted or None


def compute_diff(
    left: Iterable[PolicyLike],
    right: Iterable[PolicyLike],
    status_filter: Optional[Union[str, DiffStatus, Iterable[Union[str, DiffStatus]]]] = None,
) -> Tuple[CompareStats, List[DiffEntry]]:
    """
    Compare two policy sets keyed by (name, category, type, platform).

    Stats always count every entry; status_filter only trims the returned list.
    Entries are ordered by status (different, left-only, right-only, matching)
    and then by name.
    """
    left_recs = [_to_record(r) for r in left]
    right_recs = [_to_record(r) for r in right]

    right_by: Dict[DiffKey, PolicyRecord] = {}
    for r in right_recs:
        right_by[r.key] = r

    entries: List[DiffEntry] = []
    matched: Set[DiffKey] = set()

    for lrec in left_recs:
        rrec = right_by.get(lrec.key)
        if rrec is None:
            entries.append(
                DiffEntry(
                    name=lrec.name,
                    category=lrec.category,
                    type=lrec.type,
                    platform=lrec.platform,
                    status=DiffStatus.LEFT_ONLY,
                    settings=flatten_settings(lrec.settings),
                )
            )
            continue
        matched.add(lrec.key)
        setting_diffs = _compare_settings(lrec.settings, rrec.settings)
        status = DiffStatus.DIFFERENT if any(d.changed for d in setting_diffs) else DiffStatus.MATCHING
        entries.append(
            DiffEntry(
                name=lrec.name,
                category=lrec.category,
                type=lrec.type,
                platform=lrec.platform,
                status=status,
                setting_diffs=setting_diffs,
            )
        )

    for rrec in right_recs:
        if rrec.key in matched:
            continue
        entries.append(
            DiffEntry(
                name=rrec.name,
                category=rrec.category,
                type=rrec.type,
                platform=rrec.platform,
                status=DiffStatus.RIGHT_ONLY,
                settings=flatten_settings(rrec.settings),
            )
        )

    entries.sort(key=lambda e: (STATUS_PRIORITY[e.status], e.name))

    counts = {s: 0 for s in DiffStatus}
    for e in entries:
        counts[e.status] += 1
    stats = CompareStats(
        matching=counts[DiffStatus.MATCHING],
        different=counts[DiffStatus.DIFFERENT],
        left_only=counts[DiffStatus.LEFT_ONLY],
        right_only=counts[DiffStatus.RIGHT_ONLY],
        total=len(entries),
    )

    wanted = _normalize_filter(status_filter)
    if wanted is not None:
        entries = [e for e in entries if e.status in wanted]
    return stats, entries


def extract_dimensions(entries: Iterable[DiffEntry]) -> Tuple[List[str], List[str]]:
    """
    Return (platforms, categories) present in entries, sorted. An empty
    platform is reported as 'Other'.
    """
    platforms: Set[str] = set()
    categories: Set[str] = set()
    for e in entries:
        platforms.add(e.platform or "Other")
        if e.category:
            categories.add(e.category)
    return sorted(platforms), sorted(categories)


def _load_jsonl(path: Path) -> List[Dict[str, Any]]:
    recs: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            recs.append(json.loads(line))
    return recs


def diff_files(
    left_path: Path,
    right_path: Path,
    status_filter: Optional[Union[str, DiffStatus, Iterable[Union[str, DiffStatus]]]] = None,
) -> Tuple[CompareStats, List[DiffEntry]]:
    return compute_diff(_load_jsonl(left_path), _load_jsonl(right_path), status_filter=status_filter)


def write_diff(outdir: Path, stats: CompareStats, entries: List[DiffEntry]) -> Tuple[Path, Path]:
    """
    Write diff.json and diff_summary.json to outdir, returning their paths.
    """
    outdir.mkdir(parents=True, exist_ok=True)
    diff_path = outdir / "diff.json"
    summary_path = outdir / "diff_summary.json"
    summary = sanitize_for_json(stats)
    diff_obj = {"summary": summary, "entries": sanitize_for_json(entries)}
    diff_path.write_text(stable_json_dumps(diff_obj), encoding="utf-8")
    summary_path.write_text(stable_json_dumps(summary), encoding="utf-8")
    return diff_path, summary_path
