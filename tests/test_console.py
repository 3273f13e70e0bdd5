import asyncio

import pytest

from patchwatch.console import EXIT_EMERGENCY, EXIT_OK, PatchConsole
from patchwatch.core.live_state import LiveState
from patchwatch.core.models import Classification
from patchwatch.core.resource_ids import build_classification_set
from patchwatch.services.dispatch_service import DispatchSupervisor
from patchwatch.services.live_monitor import EmergencyExitRequested
from patchwatch.services.workflows import WorkflowOutcome


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeInventory:
    async def get_pending(self):
        return build_classification_set(
            Classification.PENDING,
            ["/subscriptions/s1/resourceGroups/rgA/providers/Microsoft.Compute/virtualMachines/vm1"],
        )

    async def get_in_progress(self):
        return build_classification_set(Classification.IN_PROGRESS, [])


class FakeDispatcher:
    def __init__(self):
        self.supervisor = DispatchSupervisor()


class FakeDashboard:
    def __init__(self):
        self.menus = []
        self.notices = []

    def render_menu(self, counts, target, warnings=()):
        self.menus.append((counts, list(target)))

    def notice(self, message, style="cyan"):
        self.notices.append(message)


class FakeTerminal:
    def __init__(self, lines=(), confirmations=(), closed=False):
        self.lines = list(lines)
        self.confirmations = list(confirmations)
        self.closed = closed

    async def read_line(self, prompt=""):
        if not self.lines:
            if self.closed:
                raise EOFError("input closed")
            await asyncio.Event().wait()
        return self.lines.pop(0)

    async def confirm(self, prompt):
        return self.confirmations.pop(0)

    async def pause(self, prompt=""):
        return None


class FakeMonitor:
    def __init__(self, result=LiveState.RETURNED_TO_MENU, block=False, cleanup_delay=0.0):
        self.result = result
        self.block = block
        self.cleanup_delay = cleanup_delay
        self.runs = 0
        self.resets = 0

    async def run(self):
        self.runs += 1
        if self.block:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                await asyncio.sleep(self.cleanup_delay)
                raise
        return self.result

    def reset_history(self):
        self.resets += 1


class FakeWorkflows:
    def __init__(self):
        self.calls = []

    async def restart_targets(self, target):
        self.calls.append(("restart_targets", len(target)))
        return WorkflowOutcome.SWITCH_TO_LIVE

    async def manage_failed(self):
        self.calls.append(("manage_failed",))
        return WorkflowOutcome.DONE


def build_console(fast_settings, lines=(), confirmations=(), monitor=None, closed=False):
    dashboard = FakeDashboard()
    console = PatchConsole(
        inventory=FakeInventory(),
        dispatcher=FakeDispatcher(),
        dashboard=dashboard,
        terminal=FakeTerminal(lines, confirmations, closed),
        operator_workflows=FakeWorkflows(),
        monitor=monitor or FakeMonitor(),
        config=fast_settings,
    )
    return console, dashboard


@pytest.mark.anyio("asyncio")
async def test_graceful_exit_clears_history(fast_settings):
    console, dashboard = build_console(fast_settings, lines=["8"])

    exit_code = await console.run()

    assert exit_code == EXIT_OK
    assert console.monitor.resets == 1
    assert dashboard.menus[0][0].target == 1


@pytest.mark.anyio("asyncio")
async def test_closed_input_exits_gracefully(fast_settings):
    console, dashboard = build_console(fast_settings, closed=True)

    exit_code = await console.run()

    assert exit_code == EXIT_OK
    assert len(dashboard.menus) == 1
    assert console.monitor.resets == 1


@pytest.mark.anyio("asyncio")
async def test_emergency_exit_requires_confirmation(fast_settings):
    console, _ = build_console(fast_settings, lines=["9", "9"], confirmations=[False, True])

    exit_code = await console.run()

    assert exit_code == EXIT_EMERGENCY
    assert console.dispatcher.supervisor.stopping
    assert console.monitor.resets == 0


@pytest.mark.anyio("asyncio")
async def test_bulk_action_switches_to_live_monitor(fast_settings):
    console, _ = build_console(fast_settings, lines=["1", "8"], confirmations=[])

    exit_code = await console.run()

    assert exit_code == EXIT_OK
    assert console.workflows.calls == [("restart_targets", 1)]
    assert console.monitor.runs == 1


@pytest.mark.anyio("asyncio")
async def test_target_actions_unavailable_without_targets(fast_settings):
    console, dashboard = build_console(fast_settings)

    result = await console.handle_choice("1", [])

    assert result == WorkflowOutcome.DONE
    assert console.workflows.calls == []
    assert "Invalid selection." in dashboard.notices


@pytest.mark.anyio("asyncio")
async def test_confirmed_quit_in_live_mode_is_emergency(fast_settings):
    console, _ = build_console(
        fast_settings, monitor=FakeMonitor(result=LiveState.EMERGENCY_EXIT)
    )

    with pytest.raises(EmergencyExitRequested):
        await console.handle_choice("L", [])


@pytest.mark.anyio("asyncio")
async def test_interrupt_in_live_mode_returns_to_menu(fast_settings):
    console, _ = build_console(fast_settings, monitor=FakeMonitor(block=True))

    task = asyncio.create_task(console.run_live())
    await asyncio.sleep(0.01)
    console.handle_interrupt()
    state = await task

    assert state == LiveState.RETURNED_TO_MENU
    assert not console.dispatcher.supervisor.stopping


@pytest.mark.anyio("asyncio")
async def test_interrupt_in_menu_is_emergency_exit(fast_settings):
    console, _ = build_console(fast_settings)

    task = asyncio.create_task(console.run())
    await asyncio.sleep(0.01)
    console.handle_interrupt()

    assert await task == EXIT_EMERGENCY


@pytest.mark.anyio("asyncio")
async def test_second_interrupt_while_unwinding_is_emergency_exit(fast_settings):
    monitor = FakeMonitor(block=True, cleanup_delay=0.2)
    console, _ = build_console(fast_settings, lines=["L"], monitor=monitor)

    task = asyncio.create_task(console.run())
    await asyncio.sleep(0.01)
    console.handle_interrupt()
    await asyncio.sleep(0.01)
    console.handle_interrupt()

    assert await task == EXIT_EMERGENCY

