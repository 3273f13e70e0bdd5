"""Operator workflows shared by the main menu and the live monitor."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Sequence

from ..core.models import ClassificationSet, CommandKind, MachineIdentifier
from .dashboard_service import DashboardService, dashboard_service
from .dispatch_service import BulkCommandDispatcher, bulk_command_dispatcher
from .export_service import ExportService, export_service
from .inventory_service import InventoryService, inventory_service
from .terminal_service import TerminalService, terminal_service

logger = logging.getLogger(__name__)


class WorkflowOutcome(str, Enum):
    """What the caller should do once a workflow returns."""
    DONE = "done"
    SWITCH_TO_LIVE = "switch_to_live"


class Workflows:
    """Views and bulk actions over cohorts selected by classification."""

    def __init__(
        self,
        inventory: Optional[InventoryService] = None,
        dispatcher: Optional[BulkCommandDispatcher] = None,
        dashboard: Optional[DashboardService] = None,
        terminal: Optional[TerminalService] = None,
        exporter: Optional[ExportService] = None,
    ) -> None:
        self.inventory = inventory or inventory_service
        self.dispatcher = dispatcher or bulk_command_dispatcher
        self.dashboard = dashboard or dashboard_service
        self.terminal = terminal or terminal_service
        self.exporter = exporter or export_service

    def _load(self, classification_set: ClassificationSet) -> Sequence[MachineIdentifier]:
        if classification_set.error:
            self.dashboard.notice(f"Warning: {classification_set.error}", "yellow")
        return classification_set.machines

    async def _bulk(
        self,
        machines: Sequence[MachineIdentifier],
        kind: CommandKind,
        prompt: str,
        serial: bool = False,
    ) -> bool:
        if not machines:
            self.dashboard.notice("No machines to act on.", "yellow")
            return False
        if not await self.terminal.confirm(prompt):
            return False
        self.dashboard.notice(f"Issuing {kind.label} commands to {len(machines)} machines...")
        if serial:
            report = await self.dispatcher.dispatch_serial(machines, kind)
        else:
            report = await self.dispatcher.dispatch(machines, kind)
        self.dashboard.render_report(report)
        return True

    def _export(
        self,
        label: str,
        title: str,
        description: str,
        machines: Sequence[MachineIdentifier],
        subject: str,
    ) -> None:
        try:
            path = self.exporter.export(label, title, description, machines)
        except OSError as exc:
            logger.error("Export of %s failed: %s", label, exc)
            self.dashboard.notice(f"Export failed: {exc}", "red")
            return
        self.dashboard.notice(f"{subject} exported to: {path}", "green")

    # Views

    async def show_targets(self, target: Optional[Sequence[MachineIdentifier]] = None) -> WorkflowOutcome:
        if target is None:
            target, warnings = await self.inventory.get_target_cohort()
            for warning in warnings:
                self.dashboard.notice(f"Warning: {warning}", "yellow")
        self.dashboard.render_machines("Target Machines", target, "No machines awaiting updates.")
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    async def show_failed(self) -> WorkflowOutcome:
        machines = self._load(await self.inventory.get_failed())
        self.dashboard.render_machines("Failed Installations", machines, "No failed installations.")
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    async def show_deallocated(self) -> WorkflowOutcome:
        machines = self._load(await self.inventory.get_deallocated())
        self.dashboard.render_machines("Deallocated Machines", machines, "No deallocated machines.")
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    async def show_details(self, target: Sequence[MachineIdentifier]) -> WorkflowOutcome:
        self.dashboard.render_details("Target Machines", target)
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    # Target cohort actions

    async def restart_targets(self, target: Sequence[MachineIdentifier]) -> WorkflowOutcome:
        issued = await self._bulk(
            target,
            CommandKind.RESTART,
            f"Restart all {len(target)} target machines?",
        )
        return WorkflowOutcome.SWITCH_TO_LIVE if issued else WorkflowOutcome.DONE

    async def install_targets(self, target: Sequence[MachineIdentifier]) -> WorkflowOutcome:
        issued = await self._bulk(
            target,
            CommandKind.INSTALL_UPDATES,
            f"Install updates on all {len(target)} target machines?",
            serial=True,
        )
        return WorkflowOutcome.SWITCH_TO_LIVE if issued else WorkflowOutcome.DONE

    async def assess_targets(self, target: Sequence[MachineIdentifier]) -> WorkflowOutcome:
        await self._bulk(
            target,
            CommandKind.TRIGGER_ASSESSMENT,
            f"Trigger assessment on all {len(target)} target machines?",
        )
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    async def assess_unassessed(self) -> WorkflowOutcome:
        machines = self._load(await self.inventory.get_unassessed())
        self.dashboard.render_machines(
            "Machines Without a Recent Assessment",
            machines,
            "Every running machine has a recent assessment.",
        )
        if machines:
            await self._bulk(
                machines,
                CommandKind.TRIGGER_ASSESSMENT,
                f"Trigger assessment on {len(machines)} machines?",
            )
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    async def export_targets(self, target: Sequence[MachineIdentifier]) -> WorkflowOutcome:
        self._export(
            "vm_patch_list",
            "VMs Pending Patches",
            "Machines with pending updates that are not currently installing:",
            target,
            "Target list",
        )
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    # Failed machines

    async def manage_failed(self) -> WorkflowOutcome:
        machines = self._load(await self.inventory.get_failed())
        self.dashboard.render_failed_menu(machines)
        if not machines:
            await self.terminal.pause()
            return WorkflowOutcome.DONE

        choice = (await self.terminal.read_line("\nSelect an action (1-6): ")).strip()
        count = len(machines)
        if choice == "1":
            issued = await self._bulk(
                machines, CommandKind.RESTART, f"Restart all {count} failed machines?"
            )
            if issued:
                return WorkflowOutcome.SWITCH_TO_LIVE
        elif choice == "2":
            await self._bulk(
                machines,
                CommandKind.TRIGGER_ASSESSMENT,
                f"Trigger assessment on all {count} failed machines?",
            )
        elif choice == "3":
            self.dashboard.notice(
                "Retrying without a restart often fails again for the same reason.", "yellow"
            )
            issued = await self._bulk(
                machines,
                CommandKind.INSTALL_UPDATES,
                f"Retry update installation on all {count} failed machines?",
                serial=True,
            )
            if issued:
                return WorkflowOutcome.SWITCH_TO_LIVE
        elif choice == "4":
            if await self.restart_then_retry(machines):
                return WorkflowOutcome.SWITCH_TO_LIVE
        elif choice == "5":
            self._export(
                "failed_vms",
                "Failed VMs",
                "Machines with failed patch installations:",
                machines,
                "Failed machine list",
            )
        elif choice == "6":
            return WorkflowOutcome.DONE
        else:
            self.dashboard.notice("Invalid selection.", "red")
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    async def restart_then_retry(self, machines: Sequence[MachineIdentifier]) -> bool:
        """Restart, wait for the settle period, then retry installs serially."""

        if not await self.terminal.confirm(
            f"Restart {len(machines)} failed machines, wait, then retry installation?"
        ):
            return False
        restart_report, install_report = await self.dispatcher.restart_then_install(
            machines, on_tick=self.dashboard.render_countdown
        )
        self.dashboard.console.print()
        self.dashboard.render_report(restart_report)
        self.dashboard.render_report(install_report)
        return True

    # Deallocated machines

    async def start_deallocated(self) -> WorkflowOutcome:
        machines = self._load(await self.inventory.get_deallocated())
        self.dashboard.render_machines("Deallocated Machines", machines, "No deallocated machines.")
        if not machines:
            await self.terminal.pause()
            return WorkflowOutcome.DONE
        issued = await self._bulk(
            machines, CommandKind.START, f"Start all {len(machines)} deallocated machines?"
        )
        return WorkflowOutcome.SWITCH_TO_LIVE if issued else WorkflowOutcome.DONE

    async def manage_deallocated(self) -> WorkflowOutcome:
        machines = self._load(await self.inventory.get_deallocated())
        self.dashboard.render_deallocated_menu(machines)
        if not machines:
            await self.terminal.pause()
            return WorkflowOutcome.DONE

        choice = (await self.terminal.read_line("\nSelect an action (1-3): ")).strip()
        if choice == "1":
            issued = await self._bulk(
                machines,
                CommandKind.START,
                f"Start all {len(machines)} deallocated machines?",
            )
            if issued:
                return WorkflowOutcome.SWITCH_TO_LIVE
        elif choice == "2":
            self._export(
                "deallocated_vms",
                "Deallocated VMs",
                "Machines that are currently deallocated:",
                machines,
                "Deallocated machine list",
            )
        elif choice == "3":
            return WorkflowOutcome.DONE
        else:
            self.dashboard.notice("Invalid selection.", "red")
        await self.terminal.pause()
        return WorkflowOutcome.DONE


workflows = Workflows()

__all__ = ["WorkflowOutcome", "Workflows", "workflows"]
