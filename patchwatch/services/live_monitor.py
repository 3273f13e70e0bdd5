"""Live refresh loop driving the dashboard."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from ..core.config import Settings, settings
from ..core.event_tracker import FingerprintSet
from ..core.live_state import (
    TERMINAL_STATES,
    LiveCommand,
    LiveState,
    next_state,
    parse_key,
)
from ..core.models import InventorySnapshot
from .dashboard_service import DashboardService, DashboardView, compose_view, dashboard_service
from .inventory_service import InventoryService, inventory_service
from .terminal_service import TerminalService, terminal_service
from .workflows import Workflows, workflows

logger = logging.getLogger(__name__)


class EmergencyExitRequested(Exception):
    """Raised when the operator confirms an emergency exit."""


class LiveMonitor:
    """Gather, render and wait for input until the operator leaves.

    The monitor owns the event fingerprint state. It survives leaving and
    re-entering live mode and is cleared only by :meth:`reset_history`.
    """

    def __init__(
        self,
        inventory: Optional[InventoryService] = None,
        dashboard: Optional[DashboardService] = None,
        terminal: Optional[TerminalService] = None,
        operator_workflows: Optional[Workflows] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.inventory = inventory or inventory_service
        self.dashboard = dashboard or dashboard_service
        self.terminal = terminal or terminal_service
        self.workflows = operator_workflows or workflows
        self._settings = config or settings
        self._fingerprints = FingerprintSet.empty()
        self.state = LiveState.IDLE
        self.last_view: Optional[DashboardView] = None
        self._snapshot: Optional[InventorySnapshot] = None
        self._pending: Optional[LiveCommand] = None

    @property
    def fingerprints(self) -> FingerprintSet:
        return self._fingerprints

    def reset_history(self) -> None:
        self._fingerprints = FingerprintSet.empty()

    def _advance(self, command: LiveCommand) -> None:
        previous = self.state
        self.state = next_state(self.state, command)
        logger.debug("Live state %s -(%s)-> %s", previous.value, command.value, self.state.value)

    async def run(self) -> LiveState:
        """Run until the operator returns to the menu or confirms quit."""

        self.state = LiveState.IDLE
        self._advance(LiveCommand.START)
        logger.info("Live monitor started")

        while self.state not in TERMINAL_STATES:
            if self.state == LiveState.GATHERING:
                self.dashboard.notice("Refreshing patch status...", "dim")
                self._snapshot = await self.inventory.gather_snapshot()
                self._advance(LiveCommand.GATHERED)
            elif self.state == LiveState.RENDERED:
                assert self._snapshot is not None
                view, self._fingerprints = compose_view(
                    self._snapshot, self._fingerprints, self._settings
                )
                self.last_view = view
                self.dashboard.render_dashboard(view)
                self._advance(LiveCommand.RENDER_COMPLETE)
            elif self.state == LiveState.AWAITING_INPUT:
                self._pending = await self._await_command()
                self._advance(self._pending)
            elif self.state == LiveState.REFRESHING:
                self._advance(LiveCommand.START)
            elif self.state == LiveState.DISPATCHING:
                assert self._pending is not None
                quit_confirmed = await self._handle(self._pending)
                self._advance(
                    LiveCommand.QUIT_CONFIRMED if quit_confirmed else LiveCommand.HANDLED
                )

        logger.info("Live monitor finished in state %s", self.state.value)
        return self.state

    async def _await_command(self) -> LiveCommand:
        """Wait up to one refresh interval for a recognised key."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.refresh_interval_seconds
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return LiveCommand.TIMEOUT
            key = await self.terminal.read_key(remaining)
            if key is None:
                return LiveCommand.TIMEOUT
            command = parse_key(key)
            if command is not None:
                return command
            logger.debug("Ignoring unrecognised key %r", key)

    async def _handle(self, command: LiveCommand) -> bool:
        """Run the sub-view or workflow for ``command``; True means quit confirmed."""

        if command == LiveCommand.QUIT:
            return await self.terminal.confirm(
                "Emergency exit: stop all running dispatches and quit?"
            )

        target = self.last_view.target if self.last_view is not None else None
        handlers: Dict[LiveCommand, Callable[[], Awaitable[object]]] = {
            LiveCommand.SHOW_TARGETS: lambda: self.workflows.show_targets(target),
            LiveCommand.SHOW_FAILED: self.workflows.show_failed,
            LiveCommand.MANAGE_FAILED: self.workflows.manage_failed,
            LiveCommand.SHOW_DEALLOCATED: self.workflows.show_deallocated,
            LiveCommand.START_DEALLOCATED: self.workflows.start_deallocated,
        }
        await handlers[command]()
        return False


live_monitor = LiveMonitor()

__all__ = ["EmergencyExitRequested", "LiveMonitor", "live_monitor"]
