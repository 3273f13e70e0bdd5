"""Bounded fan-out of remediation commands with supervised cancellation.

This module provides:
- A concurrency window for bulk submissions (10 in flight by default)
- Serial submission with a stagger for install commands
- The restart, settle, then retry-install composite workflow
- Two-phase shutdown of tracked submissions (SIGTERM, grace period, SIGKILL)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from ..core.config import Settings, settings
from ..core.models import CommandKind, MachineIdentifier
from .vm_control_service import VMControlError, VMControlService, vm_control_service

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
TickCallback = Callable[[int], None]


@dataclass(slots=True, eq=False)
class CommandHandle:
    """One tracked submission: its task and, once spawned, its CLI process."""

    machine: MachineIdentifier
    kind: CommandKind
    task: Optional[asyncio.Task[None]] = None
    process: Optional[asyncio.subprocess.Process] = None

    def attach(self, process: asyncio.subprocess.Process) -> None:
        self.process = process

    @property
    def done(self) -> bool:
        return self.task is None or self.task.done()

    def request_stop(self) -> None:
        """Ask the submission to stop cooperatively."""

        if self.process is not None and self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

    def force_stop(self) -> None:
        """Kill the process and cancel the task."""

        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
        if self.task is not None and not self.task.done():
            self.task.cancel()


@dataclass(slots=True)
class ShutdownReport:
    """Outcome of a supervisor shutdown."""

    graceful: int = 0
    forced: int = 0

    @property
    def total(self) -> int:
        return self.graceful + self.forced


@dataclass(slots=True)
class DispatchReport:
    """Aggregate result of one bulk dispatch.

    ``issued`` counts submissions the backend accepted; ``skipped`` counts
    machines never submitted (invalid identifier or shutdown in progress).
    """

    kind: CommandKind
    requested: int
    issued: int = 0
    failed: List[Tuple[MachineIdentifier, str]] = field(default_factory=list)
    skipped: int = 0

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def summary(self) -> str:
        text = f"{self.issued} {self.kind.label} commands issued"
        if self.failed:
            text += f", {self.failed_count} failed"
        if self.skipped:
            text += f", {self.skipped} skipped"
        return text


class DispatchSupervisor:
    """Track in-flight submissions so they can be stopped as a group."""

    def __init__(self) -> None:
        self._handles: Set[CommandHandle] = set()
        self._stopping = False

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def active(self) -> List[CommandHandle]:
        return [handle for handle in self._handles if not handle.done]

    def track(self, handle: CommandHandle) -> None:
        self._handles.add(handle)

    def discard(self, handle: CommandHandle) -> None:
        self._handles.discard(handle)

    def resume(self) -> None:
        self._stopping = False

    async def shutdown(self, grace_seconds: float, *, hold: bool = True) -> ShutdownReport:
        """Stop every tracked submission, gracefully first and then by force.

        With ``hold`` the supervisor stays in the stopping state so no new
        submissions start; otherwise it resumes once the survivors are gone.
        Commands the backend has already accepted are not undone.
        """

        self._stopping = True
        try:
            handles = self.active
            if not handles:
                return ShutdownReport()

            logger.warning(
                "Stopping %d in-flight submissions (grace %.1fs)", len(handles), grace_seconds
            )
            for handle in handles:
                handle.request_stop()

            tasks = [handle.task for handle in handles if handle.task is not None]
            if tasks:
                await asyncio.wait(tasks, timeout=max(0.0, grace_seconds))

            survivors = [handle for handle in handles if not handle.done]
            for handle in survivors:
                handle.force_stop()
            if survivors:
                await asyncio.gather(
                    *(handle.task for handle in survivors if handle.task is not None),
                    return_exceptions=True,
                )
                logger.warning("Force-stopped %d submissions", len(survivors))

            for handle in handles:
                self.discard(handle)
            return ShutdownReport(graceful=len(handles) - len(survivors), forced=len(survivors))
        finally:
            if not hold:
                self._stopping = False


class BulkCommandDispatcher:
    """Submit one command per machine of a cohort under a concurrency window."""

    def __init__(
        self,
        control: Optional[VMControlService] = None,
        supervisor: Optional[DispatchSupervisor] = None,
        config: Optional[Settings] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._control = control or vm_control_service
        self._supervisor = supervisor or DispatchSupervisor()
        self._settings = config or settings
        self._sleep = sleep

    @property
    def supervisor(self) -> DispatchSupervisor:
        return self._supervisor

    async def dispatch(
        self,
        cohort: Iterable[MachineIdentifier],
        kind: CommandKind,
        concurrency: Optional[int] = None,
    ) -> DispatchReport:
        """Fan ``kind`` out over ``cohort`` and wait for every submission to settle.

        Submission follows cohort order; completion order is unspecified. A
        failed submission never cancels its siblings.
        """

        machines = list(cohort)
        report = DispatchReport(kind=kind, requested=len(machines))
        window = max(1, concurrency or self._settings.dispatch_concurrency)
        semaphore = asyncio.Semaphore(window)
        tasks: List[asyncio.Task[None]] = []

        logger.info(
            "Dispatching %s to %d machines (window %d)", kind.label, len(machines), window
        )
        try:
            for machine in machines:
                if not self._admit(machine, report):
                    continue
                await semaphore.acquire()
                if self._supervisor.stopping:
                    semaphore.release()
                    report.skipped += 1
                    continue
                tasks.append(self._launch(machine, kind, report, semaphore))
            if tasks:
                await asyncio.wait(tasks)
        except asyncio.CancelledError:
            await self._abort(kind)
            raise

        logger.info("Dispatch finished: %s", report.summary())
        return report

    async def dispatch_serial(
        self,
        cohort: Iterable[MachineIdentifier],
        kind: CommandKind,
        stagger_seconds: Optional[float] = None,
    ) -> DispatchReport:
        """Submit one at a time, pausing ``stagger_seconds`` between submissions."""

        machines = list(cohort)
        report = DispatchReport(kind=kind, requested=len(machines))
        stagger = (
            self._settings.install_stagger_seconds
            if stagger_seconds is None
            else stagger_seconds
        )
        semaphore = asyncio.Semaphore(1)
        submitted = 0

        logger.info(
            "Dispatching %s serially to %d machines (stagger %.1fs)",
            kind.label,
            len(machines),
            stagger,
        )
        try:
            for machine in machines:
                if not self._admit(machine, report):
                    continue
                if submitted and stagger > 0:
                    await self._sleep(stagger)
                await semaphore.acquire()
                task = self._launch(machine, kind, report, semaphore)
                submitted += 1
                await asyncio.wait([task])
        except asyncio.CancelledError:
            await self._abort(kind)
            raise

        logger.info("Serial dispatch finished: %s", report.summary())
        return report

    async def restart_then_install(
        self,
        cohort: Sequence[MachineIdentifier],
        settle_seconds: Optional[int] = None,
        stagger_seconds: Optional[float] = None,
        on_tick: Optional[TickCallback] = None,
    ) -> Tuple[DispatchReport, DispatchReport]:
        """Restart the cohort, wait out the settle period, then retry installs serially."""

        machines = list(cohort)
        settle = (
            self._settings.settle_period_seconds if settle_seconds is None else settle_seconds
        )

        restart_report = await self.dispatch(machines, CommandKind.RESTART)

        logger.info("Waiting %ds for restarts to settle", settle)
        for remaining in range(int(settle), 0, -1):
            if on_tick is not None:
                on_tick(remaining)
            await self._sleep(1)

        install_report = await self.dispatch_serial(
            machines, CommandKind.INSTALL_UPDATES, stagger_seconds
        )
        return restart_report, install_report

    def _admit(self, machine: MachineIdentifier, report: DispatchReport) -> bool:
        if self._supervisor.stopping:
            report.skipped += 1
            return False
        if not machine.is_valid:
            logger.warning("Skipping incomplete machine identifier %r", machine)
            report.skipped += 1
            return False
        return True

    def _launch(
        self,
        machine: MachineIdentifier,
        kind: CommandKind,
        report: DispatchReport,
        semaphore: asyncio.Semaphore,
    ) -> asyncio.Task[None]:
        handle = CommandHandle(machine=machine, kind=kind)
        handle.task = asyncio.create_task(
            self._submit(handle, report, semaphore),
            name=f"dispatch-{kind.value}-{machine.machine_name}",
        )
        self._supervisor.track(handle)
        return handle.task

    async def _submit(
        self,
        handle: CommandHandle,
        report: DispatchReport,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            await self._control.run_command(
                handle.kind, handle.machine, on_spawn=handle.attach
            )
            report.issued += 1
        except VMControlError as exc:
            report.failed.append((handle.machine, exc.message))
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception(
                "Unexpected error submitting %s for %s", handle.kind.label, handle.machine
            )
            report.failed.append((handle.machine, str(exc)))
        finally:
            semaphore.release()
            self._supervisor.discard(handle)

    async def _abort(self, kind: CommandKind) -> None:
        logger.warning("Dispatch of %s interrupted; stopping in-flight submissions", kind.label)
        await self._supervisor.shutdown(self._settings.cancel_grace_seconds, hold=False)


dispatch_supervisor = DispatchSupervisor()
bulk_command_dispatcher = BulkCommandDispatcher(supervisor=dispatch_supervisor)

__all__ = [
    "BulkCommandDispatcher",
    "CommandHandle",
    "DispatchReport",
    "DispatchSupervisor",
    "ShutdownReport",
    "bulk_command_dispatcher",
    "dispatch_supervisor",
]
