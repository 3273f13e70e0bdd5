import pytest

from patchwatch.core.config import Settings
from patchwatch.core.models import Classification, CommandKind
from patchwatch.core.resource_ids import build_classification_set
from patchwatch.services.dispatch_service import DispatchReport
from patchwatch.services.export_service import ExportService
from patchwatch.services.workflows import WorkflowOutcome, Workflows


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeInventory:
    def __init__(self, failed=(), deallocated=(), unassessed=(), error=None):
        self.failed = build_classification_set(Classification.FAILED, list(failed))
        self.deallocated = build_classification_set(
            Classification.DEALLOCATED, list(deallocated), error=error
        )
        self.unassessed = build_classification_set(Classification.UNASSESSED, list(unassessed))

    async def get_failed(self):
        return self.failed

    async def get_deallocated(self):
        return self.deallocated

    async def get_unassessed(self):
        return self.unassessed


class FakeDispatcher:
    def __init__(self):
        self.calls = []

    async def dispatch(self, machines, kind, concurrency=None):
        self.calls.append(("dispatch", kind, list(machines)))
        return DispatchReport(kind=kind, requested=len(machines), issued=len(machines))

    async def dispatch_serial(self, machines, kind, stagger_seconds=None):
        self.calls.append(("serial", kind, list(machines)))
        return DispatchReport(kind=kind, requested=len(machines), issued=len(machines))

    async def restart_then_install(self, machines, settle_seconds=None, stagger_seconds=None, on_tick=None):
        self.calls.append(("restart_then_install", None, list(machines)))
        if on_tick is not None:
            on_tick(1)
        return (
            DispatchReport(kind=CommandKind.RESTART, requested=len(machines), issued=len(machines)),
            DispatchReport(
                kind=CommandKind.INSTALL_UPDATES, requested=len(machines), issued=len(machines)
            ),
        )


class FakeConsole:
    def print(self, *args, **kwargs):
        return None


class FakeDashboard:
    def __init__(self):
        self.console = FakeConsole()
        self.notices = []
        self.reports = []
        self.ticks = []
        self.rendered = []

    def notice(self, message, style="cyan"):
        self.notices.append(message)

    def render_report(self, report):
        self.reports.append(report)

    def render_countdown(self, remaining):
        self.ticks.append(remaining)

    def render_machines(self, title, machines, empty_message=""):
        self.rendered.append((title, list(machines)))

    def render_details(self, title, machines):
        self.rendered.append((title, list(machines)))

    def render_failed_menu(self, machines):
        self.rendered.append(("failed-menu", list(machines)))

    def render_deallocated_menu(self, machines):
        self.rendered.append(("deallocated-menu", list(machines)))


class FakeTerminal:
    def __init__(self, lines=(), confirmations=()):
        self.lines = list(lines)
        self.confirmations = list(confirmations)
        self.pauses = 0

    async def read_line(self, prompt=""):
        return self.lines.pop(0)

    async def confirm(self, prompt):
        return self.confirmations.pop(0)

    async def pause(self, prompt=""):
        self.pauses += 1


class FakeExporter:
    def __init__(self):
        self.exports = []

    def export(self, label, title, description, machines, now=None):
        self.exports.append((label, list(machines)))
        return f"/tmp/{label}.txt"


def build(inventory=None, lines=(), confirmations=()):
    dispatcher = FakeDispatcher()
    dashboard = FakeDashboard()
    terminal = FakeTerminal(lines, confirmations)
    exporter = FakeExporter()
    flows = Workflows(
        inventory=inventory or FakeInventory(),
        dispatcher=dispatcher,
        dashboard=dashboard,
        terminal=terminal,
        exporter=exporter,
    )
    return flows, dispatcher, dashboard, terminal, exporter


@pytest.mark.anyio("asyncio")
async def test_restart_targets_switches_to_live_when_confirmed(machine):
    flows, dispatcher, dashboard, _, _ = build(confirmations=[True])

    outcome = await flows.restart_targets([machine("vm1"), machine("vm2")])

    assert outcome == WorkflowOutcome.SWITCH_TO_LIVE
    assert dispatcher.calls == [("dispatch", CommandKind.RESTART, [machine("vm1"), machine("vm2")])]
    assert dashboard.reports[0].issued == 2


@pytest.mark.anyio("asyncio")
async def test_declined_confirmation_issues_nothing(machine):
    flows, dispatcher, _, _, _ = build(confirmations=[False])

    outcome = await flows.install_targets([machine("vm1")])

    assert outcome == WorkflowOutcome.DONE
    assert dispatcher.calls == []


@pytest.mark.anyio("asyncio")
async def test_install_targets_submits_serially(machine):
    flows, dispatcher, _, _, _ = build(confirmations=[True])

    outcome = await flows.install_targets([machine("vm1")])

    assert outcome == WorkflowOutcome.SWITCH_TO_LIVE
    assert dispatcher.calls[0][:2] == ("serial", CommandKind.INSTALL_UPDATES)


@pytest.mark.anyio("asyncio")
async def test_assess_targets_stays_in_menu(machine):
    flows, dispatcher, _, terminal, _ = build(confirmations=[True])

    outcome = await flows.assess_targets([machine("vm1")])

    assert outcome == WorkflowOutcome.DONE
    assert dispatcher.calls[0][1] == CommandKind.TRIGGER_ASSESSMENT
    assert terminal.pauses == 1


@pytest.mark.anyio("asyncio")
async def test_manage_failed_restart_then_retry(vm_id, machine):
    inventory = FakeInventory(failed=[vm_id("vm1"), vm_id("vm2")])
    flows, dispatcher, dashboard, _, _ = build(inventory, lines=["4"], confirmations=[True])

    outcome = await flows.manage_failed()

    assert outcome == WorkflowOutcome.SWITCH_TO_LIVE
    assert dispatcher.calls == [("restart_then_install", None, [machine("vm1"), machine("vm2")])]
    assert dashboard.ticks == [1]
    assert [report.kind for report in dashboard.reports] == [
        CommandKind.RESTART,
        CommandKind.INSTALL_UPDATES,
    ]


@pytest.mark.anyio("asyncio")
async def test_manage_failed_export(vm_id, machine):
    inventory = FakeInventory(failed=[vm_id("vm1")])
    flows, dispatcher, dashboard, _, exporter = build(inventory, lines=["5"])

    outcome = await flows.manage_failed()

    assert outcome == WorkflowOutcome.DONE
    assert exporter.exports == [("failed_vms", [machine("vm1")])]
    assert dispatcher.calls == []
    assert any("failed_vms" in notice for notice in dashboard.notices)


@pytest.mark.anyio("asyncio")
async def test_manage_failed_without_machines_only_pauses():
    flows, dispatcher, _, terminal, _ = build(FakeInventory())

    outcome = await flows.manage_failed()

    assert outcome == WorkflowOutcome.DONE
    assert dispatcher.calls == []
    assert terminal.pauses == 1


@pytest.mark.anyio("asyncio")
async def test_manage_deallocated_start(vm_id, machine):
    inventory = FakeInventory(deallocated=[vm_id("vm1")])
    flows, dispatcher, _, _, _ = build(inventory, lines=["1"], confirmations=[True])

    outcome = await flows.manage_deallocated()

    assert outcome == WorkflowOutcome.SWITCH_TO_LIVE
    assert dispatcher.calls == [("dispatch", CommandKind.START, [machine("vm1")])]


@pytest.mark.anyio("asyncio")
async def test_degraded_query_is_surfaced():
    inventory = FakeInventory(error="deallocated query timed out after 1s")
    flows, _, dashboard, _, _ = build(inventory)

    await flows.show_deallocated()

    assert dashboard.notices == ["Warning: deallocated query timed out after 1s"]
    assert dashboard.rendered == [("Deallocated Machines", [])]


@pytest.mark.anyio("asyncio")
async def test_assess_unassessed_skips_prompt_when_empty():
    flows, dispatcher, _, terminal, _ = build(FakeInventory())

    outcome = await flows.assess_unassessed()

    assert outcome == WorkflowOutcome.DONE
    assert dispatcher.calls == []
    assert terminal.pauses == 1


@pytest.mark.anyio("asyncio")
async def test_export_to_unusable_directory_reports_failure(tmp_path, vm_id):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied", encoding="utf-8")
    inventory = FakeInventory(failed=[vm_id("vm1")])
    flows, _, dashboard, terminal, _ = build(inventory, lines=["5"])
    flows.exporter = ExportService(
        Settings(_env_file=None, export_directory=str(blocker / "exports"))
    )

    outcome = await flows.manage_failed()

    assert outcome == WorkflowOutcome.DONE
    assert dashboard.notices[-1].startswith("Export failed:")
    assert terminal.pauses == 1


@pytest.mark.anyio("asyncio")
async def test_export_targets_survives_write_error(machine):
    flows, _, dashboard, terminal, exporter = build()

    def failing_export(*args, **kwargs):
        raise PermissionError(13, "Permission denied")

    exporter.export = failing_export

    outcome = await flows.export_targets([machine("vm1")])

    assert outcome == WorkflowOutcome.DONE
    assert dashboard.notices == ["Export failed: [Errno 13] Permission denied"]
    assert terminal.pauses == 1
