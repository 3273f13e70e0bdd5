"""Dashboard composition and rich rendering."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..core.config import Settings, settings
from ..core.event_tracker import FingerprintSet, format_time_ago, mark_new_events
from ..core.models import (
    InstallationStatus,
    InventorySnapshot,
    MachineIdentifier,
    StatusCounts,
    TrackedEvent,
)
from ..core.reconciliation import compute_counts, target_from_snapshot
from .dispatch_service import DispatchReport

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    InstallationStatus.SUCCEEDED: "green",
    InstallationStatus.FAILED: "red",
    InstallationStatus.COMPLETED_WITH_WARNINGS: "yellow",
    InstallationStatus.IN_PROGRESS: "cyan",
    InstallationStatus.UNKNOWN: "dim",
}

LIVE_KEYS = (
    "[bold]r[/bold] refresh  [bold]t[/bold] targets  [bold]f[/bold] failed  "
    "[bold]F[/bold] manage failed  [bold]d[/bold] deallocated  "
    "[bold]s[/bold] start deallocated  [bold]m[/bold] menu  [bold]q[/bold] quit"
)


@dataclass(slots=True)
class DashboardView:
    """Everything one dashboard frame displays."""

    captured_at: datetime
    counts: StatusCounts
    target: List[MachineIdentifier]
    target_preview: List[MachineIdentifier]
    events: List[TrackedEvent]
    warnings: List[str] = field(default_factory=list)
    refresh_interval: int = 30

    @property
    def new_event_count(self) -> int:
        return sum(1 for item in self.events if item.is_new)


def compose_view(
    snapshot: InventorySnapshot,
    fingerprints: FingerprintSet,
    config: Optional[Settings] = None,
) -> Tuple[DashboardView, FingerprintSet]:
    """Build a frame from ``snapshot`` and return the next fingerprint state."""

    config = config or settings
    target = target_from_snapshot(snapshot)
    counts = compute_counts(snapshot, target)
    events = snapshot.history[: max(0, config.history_display_limit)]
    tracked, updated = mark_new_events(events, fingerprints)
    view = DashboardView(
        captured_at=snapshot.captured_at,
        counts=counts,
        target=target,
        target_preview=target[: max(0, config.target_preview_limit)],
        events=tracked,
        warnings=list(snapshot.warnings),
        refresh_interval=config.refresh_interval_seconds,
    )
    return view, updated


def machine_table(title: str, machines: Sequence[MachineIdentifier]) -> Table:
    table = Table(title=title, box=box.ROUNDED, show_header=True)
    table.add_column("#", style="cyan", justify="right", width=4)
    table.add_column("VM Name", style="bold")
    table.add_column("Resource Group")
    table.add_column("Subscription", style="dim")
    for index, machine in enumerate(machines, 1):
        table.add_row(
            str(index),
            escape(machine.machine_name),
            escape(machine.resource_group),
            machine.short_subscription,
        )
    return table


class DashboardService:
    """Render dashboards, menus and reports to the terminal."""

    def __init__(self, console: Optional[Console] = None, config: Optional[Settings] = None):
        self.console = console or Console()
        self._settings = config or settings

    def render_dashboard(self, view: DashboardView) -> None:
        console = self.console
        console.clear()
        local_time = view.captured_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        console.rule(f"[bold]{self._settings.app_name}[/bold]  {local_time}")

        console.print(self._status_table(view.counts))
        self._render_target_preview(view)

        counts = view.counts
        console.print(
            f"\n[bold]Activity:[/bold] {counts.active} active operations "
            f"({counts.in_progress} installing, {counts.rebooting} rebooting), "
            f"{counts.completed} completed in the last hour, "
            f"{view.new_event_count} new events since last refresh"
        )

        console.print(self._events_table(view))
        for warning in view.warnings:
            console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")

        console.print(
            f"\n{LIVE_KEYS}\n[dim]Auto-refresh in {view.refresh_interval}s[/dim]"
        )

    def _status_table(self, counts: StatusCounts) -> Table:
        table = Table(title="Patch Status", box=box.ROUNDED)
        table.add_column("Pending", justify="right", style="yellow")
        table.add_column("Installing", justify="right", style="cyan")
        table.add_column("Rebooting", justify="right", style="magenta")
        table.add_column("Completed (1h)", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Deallocated", justify="right", style="dim")
        table.add_column("Unassessed", justify="right")
        table.add_column("Target", justify="right", style="bold")
        table.add_row(
            str(counts.pending),
            str(counts.in_progress),
            str(counts.rebooting),
            str(counts.completed),
            str(counts.failed),
            str(counts.deallocated),
            str(counts.unassessed),
            str(counts.target),
        )
        return table

    def _render_target_preview(self, view: DashboardView) -> None:
        if not view.target:
            self.console.print("[green]No machines awaiting updates.[/green]")
            return
        self.console.print(machine_table("Target Machines", view.target_preview))
        remaining = len(view.target) - len(view.target_preview)
        if remaining > 0:
            self.console.print(f"[dim]... and {remaining} more (press t for all)[/dim]")

    def _events_table(self, view: DashboardView) -> Table:
        now = datetime.now(timezone.utc)
        table = Table(
            title=f"Recent Installations (last {self._settings.history_window_minutes} min)",
            box=box.SIMPLE,
        )
        table.add_column("", width=3)
        table.add_column("When", justify="right")
        table.add_column("VM Name", style="bold")
        table.add_column("Resource Group")
        table.add_column("Status")
        table.add_column("Reboot")
        table.add_column("Details", overflow="fold")
        for item in view.events:
            event = item.event
            style = STATUS_STYLES.get(event.status, "")
            when = format_time_ago(event.last_modified, now) if event.last_modified else "-"
            details = event.error_message or event.error_code or event.started_by or ""
            table.add_row(
                "[bold green]NEW[/bold green]" if item.is_new else "",
                when,
                escape(event.resource_name),
                escape(event.resource_group),
                f"[{style}]{event.status.value}[/{style}]" if style else event.status.value,
                escape(event.reboot_status or ""),
                escape(details),
            )
        if not view.events:
            table.add_row("", "", "[dim]No recent installation activity[/dim]", "", "", "", "")
        return table

    def render_machines(
        self,
        title: str,
        machines: Sequence[MachineIdentifier],
        empty_message: str = "No machines found.",
    ) -> None:
        if not machines:
            self.console.print(f"[green]{empty_message}[/green]")
            return
        self.console.print(machine_table(f"{title} ({len(machines)})", machines))

    def render_details(self, title: str, machines: Sequence[MachineIdentifier]) -> None:
        """Print machines with their full subscription ids."""

        table = Table(title=f"{title} ({len(machines)})", box=box.SIMPLE)
        table.add_column("VM Name", style="bold")
        table.add_column("Resource Group")
        table.add_column("Subscription ID", no_wrap=True)
        for machine in machines:
            table.add_row(
                escape(machine.machine_name),
                escape(machine.resource_group),
                escape(machine.subscription_id),
            )
        self.console.print(table)

    def render_menu(
        self,
        counts: StatusCounts,
        target: Sequence[MachineIdentifier],
        warnings: Sequence[str] = (),
    ) -> None:
        console = self.console
        console.clear()
        console.rule(f"[bold]{self._settings.app_name}[/bold]")
        console.print(
            f"Pending: [yellow]{counts.pending}[/yellow]   "
            f"In progress: [cyan]{counts.in_progress}[/cyan]   "
            f"Target: [bold]{counts.target}[/bold]"
        )
        for warning in warnings:
            console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
        self.render_machines("Target Machines", target, "No machines awaiting updates.")

        console.print("\n[bold]Options:[/bold]")
        console.print("  [cyan]L[/cyan]  Live monitor")
        if target:
            console.print("  [cyan]1[/cyan]  Restart target machines")
            console.print("  [cyan]2[/cyan]  Install updates on target machines")
            console.print("  [cyan]3[/cyan]  Trigger assessment on target machines")
        console.print("  [cyan]4[/cyan]  Assess machines with no recent assessment")
        if target:
            console.print("  [cyan]5[/cyan]  Show detailed resource ids")
            console.print("  [cyan]6[/cyan]  Export target list")
            console.print("  [cyan]7[/cyan]  Refresh")
        console.print("  [cyan]D[/cyan]  Manage deallocated machines")
        console.print("  [cyan]F[/cyan]  Manage failed machines")
        console.print("  [cyan]8[/cyan]  Exit")
        console.print("  [cyan]9[/cyan]  Emergency exit (stop all dispatches)")

    def render_failed_menu(self, machines: Sequence[MachineIdentifier]) -> None:
        self.render_machines("Failed Installations", machines, "No failed installations.")
        if not machines:
            return
        self.console.print("\n[bold]Options:[/bold]")
        self.console.print("  [cyan]1[/cyan]  Restart all failed machines")
        self.console.print("  [cyan]2[/cyan]  Trigger assessment on failed machines")
        self.console.print("  [cyan]3[/cyan]  Retry update installation")
        self.console.print("  [cyan]4[/cyan]  Restart, wait, then retry installation")
        self.console.print("  [cyan]5[/cyan]  Export failed list")
        self.console.print("  [cyan]6[/cyan]  Back")

    def render_deallocated_menu(self, machines: Sequence[MachineIdentifier]) -> None:
        self.render_machines("Deallocated Machines", machines, "No deallocated machines.")
        if not machines:
            return
        self.console.print("\n[bold]Options:[/bold]")
        self.console.print("  [cyan]1[/cyan]  Start all deallocated machines")
        self.console.print("  [cyan]2[/cyan]  Export deallocated list")
        self.console.print("  [cyan]3[/cyan]  Back")

    def render_report(self, report: DispatchReport) -> None:
        colour = "red" if report.failed and not report.issued else "green"
        self.console.print(f"[{colour}]{report.summary()}[/{colour}]")
        for machine, message in report.failed[:10]:
            self.console.print(
                f"  [red]x[/red] {escape(machine.machine_name)}: {escape(message)}"
            )
        if report.failed_count > 10:
            self.console.print(f"  [dim]... and {report.failed_count - 10} more failures[/dim]")

    def render_countdown(self, remaining: int) -> None:
        self.console.print(
            f"Waiting for restarts to settle: [bold]{remaining:3d}s[/bold] remaining", end="\r"
        )

    def notice(self, message: str, style: str = "cyan") -> None:
        self.console.print(f"[{style}]{escape(message)}[/{style}]")


dashboard_service = DashboardService()

__all__ = [
    "DashboardService",
    "DashboardView",
    "compose_view",
    "dashboard_service",
    "machine_table",
]
