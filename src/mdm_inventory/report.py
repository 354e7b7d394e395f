from __future__ import annotations

from typing import Iterable, Mapping, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .diff.diff import CompareStats, DiffEntry, DiffStatus
from .health.status import ActivityEvent, HealthState, ProviderStatus

STATUS_STYLES = {
    HealthState.CONNECTED: "green",
    HealthState.ERROR: "red",
    HealthState.CHECKING: "yellow",
    HealthState.UNCHECKED: "dim",
}

DIFF_STYLES = {
    DiffStatus.DIFFERENT: "yellow",
    DiffStatus.LEFT_ONLY: "red",
    DiffStatus.RIGHT_ONLY: "green",
    DiffStatus.MATCHING: "dim",
}


def compare_stats_table(stats: CompareStats, *, left: str = "left", right: str = "right") -> Table:
    table = Table(title=f"Compare: {left} vs {right}", show_header=True, header_style="bold")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Different", str(stats.different))
    table.add_row(f"Only in {left}", str(stats.left_only))
    table.add_row(f"Only in {right}", str(stats.right_only))
    table.add_row("Matching", str(stats.matching))
    table.add_row("Total", str(stats.total))
    return table


def diff_entries_table(entries: Sequence[DiffEntry], *, show_settings: bool = True) -> Table:
    table = Table(title="Policy differences", show_header=True, header_style="bold")
    table.add_column("Status")
    table.add_column("Name", style="white")
    table.add_column("Category", style="cyan")
    table.add_column("Platform")
    table.add_column("Changed settings")
    for e in entries:
        changed = ""
        if show_settings and e.setting_diffs:
            changed = "\n".join(f"{d.name}: {d.left} -> {d.right}" for d in e.setting_diffs if d.changed)
        table.add_row(
            f"[{DIFF_STYLES[e.status]}]{e.status.value}[/]",
            e.name,
            e.category,
            e.platform or "Other",
            changed,
        )
    return table


def provider_status_table(statuses: Mapping[str, ProviderStatus]) -> Table:
    table = Table(title="Tenant health", show_header=True, header_style="bold")
    table.add_column("Tenant", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Latency (ms)", justify="right")
    table.add_column("Failures", justify="right")
    table.add_column("Checked at")
    table.add_column("Error", overflow="fold")
    for name in sorted(statuses):
        st = statuses[name]
        table.add_row(
            st.name,
            st.type,
            f"[{STATUS_STYLES[st.status]}]{st.status.value}[/]",
            str(int(st.latency * 1000)) if st.checked_at else "",
            str(st.consec_fails),
            st.checked_at.isoformat(timespec="seconds") if st.checked_at else "",
            st.error,
        )
    return table


def activity_table(events: Iterable[ActivityEvent]) -> Table:
    table = Table(title="Recent activity", show_header=True, header_style="bold")
    table.add_column("Time")
    table.add_column("Subject", style="cyan")
    table.add_column("Severity")
    table.add_column("Message", overflow="fold")
    for ev in events:
        table.add_row(ev.time.isoformat(timespec="seconds"), ev.subject, ev.severity.value, ev.message)
    return table


def render_compare(
    stats: CompareStats,
    entries: Sequence[DiffEntry],
    *,
    left: str = "left",
    right: str = "right",
    console: Optional[Console] = None,
) -> None:
    out = console or Console()
    out.print(compare_stats_table(stats, left=left, right=right))
    if entries:
        out.print(diff_entries_table(entries))


def render_status(
    statuses: Mapping[str, ProviderStatus],
    events: Iterable[ActivityEvent] = (),
    *,
    console: Optional[Console] = None,
) -> None:
    out = console or Console()
    out.print(provider_status_table(statuses))
    events = list(events)
    if events:
        out.print(activity_table(events))
