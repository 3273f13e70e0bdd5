"""Main menu and interrupt routing."""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import List, Optional, Sequence, Tuple, Union

from .core.config import Settings, settings
from .core.live_state import LiveState
from .core.models import MachineIdentifier, StatusCounts
from .core.reconciliation import compute_target
from .services.dashboard_service import DashboardService, dashboard_service
from .services.dispatch_service import BulkCommandDispatcher, bulk_command_dispatcher
from .services.inventory_service import InventoryService, inventory_service
from .services.live_monitor import EmergencyExitRequested, LiveMonitor, live_monitor
from .services.terminal_service import TerminalService, terminal_service
from .services.workflows import WorkflowOutcome, Workflows, workflows

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_EMERGENCY = 1


class PatchConsole:
    """Top-level operator session.

    A first interrupt while the live monitor runs returns to the menu; an
    interrupt anywhere else, or a second one while the monitor is unwinding,
    is an emergency exit.
    """

    def __init__(
        self,
        inventory: Optional[InventoryService] = None,
        dispatcher: Optional[BulkCommandDispatcher] = None,
        dashboard: Optional[DashboardService] = None,
        terminal: Optional[TerminalService] = None,
        operator_workflows: Optional[Workflows] = None,
        monitor: Optional[LiveMonitor] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.inventory = inventory or inventory_service
        self.dispatcher = dispatcher or bulk_command_dispatcher
        self.dashboard = dashboard or dashboard_service
        self.terminal = terminal or terminal_service
        self.workflows = operator_workflows or workflows
        self.monitor = monitor or live_monitor
        self._settings = config or settings
        self._main_task: Optional[asyncio.Task] = None
        self._live_task: Optional[asyncio.Task] = None
        self._live_interrupted = False
        self._emergency = False

    async def run(self) -> int:
        """Run the menu until the operator exits; return the process exit code."""

        loop = asyncio.get_running_loop()
        self._main_task = asyncio.current_task()
        handler_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self.handle_interrupt)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            logger.warning("Interrupt handler could not be installed; Ctrl+C will abort")

        try:
            return await self._menu_loop()
        except EmergencyExitRequested:
            return await self._emergency_exit()
        except EOFError:
            logger.warning("Operator input closed; exiting")
            return await self._graceful_exit()
        except asyncio.CancelledError:
            if not self._emergency:
                raise
            return await self._emergency_exit()
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

    def handle_interrupt(self) -> None:
        """Route an operator interrupt."""

        if self._emergency:
            logger.warning("Interrupt ignored; emergency exit already in progress")
            return
        if (
            self._live_task is not None
            and not self._live_task.done()
            and not self._live_interrupted
        ):
            logger.info("Interrupt received in live mode; returning to menu")
            self._live_interrupted = True
            self._live_task.cancel()
            return
        logger.warning("Interrupt received; starting emergency exit")
        self._emergency = True
        if self._main_task is not None and not self._main_task.done():
            self._main_task.cancel()

    async def run_live(self) -> LiveState:
        """Run the live monitor until it returns to the menu."""

        self._live_interrupted = False
        self._live_task = asyncio.create_task(self.monitor.run(), name="live-monitor")
        try:
            state = await self._live_task
        except asyncio.CancelledError:
            if self._emergency or not self._live_task.cancelled():
                raise
            state = LiveState.RETURNED_TO_MENU
            self.dashboard.notice("\nInterrupted. Returning to menu...", "yellow")
        finally:
            self._live_task = None

        if state == LiveState.EMERGENCY_EXIT:
            raise EmergencyExitRequested()
        return state

    async def _load_menu(self) -> Tuple[StatusCounts, List[MachineIdentifier], List[str]]:
        pending, in_progress = await asyncio.gather(
            self.inventory.get_pending(), self.inventory.get_in_progress()
        )
        target = compute_target(pending.machines, in_progress.machines)
        counts = StatusCounts(
            pending=pending.count,
            in_progress=in_progress.count,
            target=len(target),
        )
        warnings: List[str] = [s.error for s in (pending, in_progress) if s.error]
        return counts, target, warnings

    async def _menu_loop(self) -> int:
        while True:
            self.dashboard.notice("Analyzing current patch status...")
            counts, target, warnings = await self._load_menu()
            self.dashboard.render_menu(counts, target, warnings)
            choice = (await self.terminal.read_line("\nSelect an action: ")).strip()
            result = await self.handle_choice(choice, target)
            if isinstance(result, int):
                return result
            if result == WorkflowOutcome.SWITCH_TO_LIVE:
                self.dashboard.notice("Switching to live monitor to track progress...")
                await self.run_live()

    async def handle_choice(
        self, choice: str, target: Sequence[MachineIdentifier]
    ) -> Union[int, WorkflowOutcome]:
        """Act on one menu selection; an int result is the exit code."""

        key = choice.upper()
        if key == "L":
            await self.run_live()
            return WorkflowOutcome.DONE
        if key == "4":
            return await self.workflows.assess_unassessed()
        if key == "D":
            return await self.workflows.manage_deallocated()
        if key == "F":
            return await self.workflows.manage_failed()
        if key == "8":
            return await self._graceful_exit()
        if key == "9":
            if await self.terminal.confirm(
                "Emergency exit: stop all running dispatches and quit?"
            ):
                raise EmergencyExitRequested()
            return WorkflowOutcome.DONE

        if target:
            if key == "1":
                return await self.workflows.restart_targets(target)
            if key == "2":
                return await self.workflows.install_targets(target)
            if key == "3":
                return await self.workflows.assess_targets(target)
            if key == "5":
                return await self.workflows.show_details(target)
            if key == "6":
                return await self.workflows.export_targets(target)
            if key == "7":
                return WorkflowOutcome.DONE

        self.dashboard.notice("Invalid selection.", "red")
        await self.terminal.pause()
        return WorkflowOutcome.DONE

    async def _graceful_exit(self) -> int:
        report = await self.dispatcher.supervisor.shutdown(
            self._settings.graceful_exit_grace_seconds
        )
        if report.total:
            logger.info(
                "Stopped %d dispatches on exit (%d forced)", report.total, report.forced
            )
        self.monitor.reset_history()
        self.dashboard.notice("Goodbye.", "green")
        return EXIT_OK

    async def _emergency_exit(self) -> int:
        self._emergency = True
        self.dashboard.notice("\nEmergency exit: stopping all dispatches...", "red")
        report = await self.dispatcher.supervisor.shutdown(self._settings.cancel_grace_seconds)
        logger.warning(
            "Emergency exit stopped %d dispatches (%d forced)", report.total, report.forced
        )
        self.dashboard.notice(
            "Commands already accepted by Azure keep running.", "yellow"
        )
        return EXIT_EMERGENCY


__all__ = ["EXIT_EMERGENCY", "EXIT_OK", "PatchConsole"]
