import asyncio
import json
import subprocess

import pytest

from patchwatch.services import az_cli_service as az_module


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeProcess:
    def __init__(self, stdout=b"", stderr=b"", returncode=0, hang=False):
        self._stdout = stdout
        self._stderr = stderr
        self._final_returncode = returncode
        self.returncode = None
        self.hang = hang
        self.killed = False
        self.waited = False

    async def communicate(self):
        if self.hang:
            await asyncio.Event().wait()
        self.returncode = self._final_returncode
        return self._stdout, self._stderr

    async def wait(self):
        self.waited = True
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9


@pytest.fixture
def service(monkeypatch):
    monkeypatch.setattr(az_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    return az_module.AzCliService()


def install_processes(monkeypatch, processes):
    calls = []
    queue = list(processes)

    async def fake_exec(executable, *args, stdout=None, stderr=None):
        calls.append([executable, *args])
        return queue.pop(0)

    monkeypatch.setattr(az_module.asyncio, "create_subprocess_exec", fake_exec)
    return calls


@pytest.mark.anyio("asyncio")
async def test_run_json_decodes_output(service, monkeypatch):
    calls = install_processes(monkeypatch, [FakeProcess(stdout=b'["s1", "s2", null]')])

    subscriptions = await service.list_enabled_subscriptions()

    assert subscriptions == ["s1", "s2"]
    assert calls[0][0] == "/usr/bin/az"
    assert calls[0][1:3] == ["account", "list"]
    assert calls[0][-2:] == ["--output", "json"]


@pytest.mark.anyio("asyncio")
async def test_login_failure_is_classified(service, monkeypatch):
    install_processes(
        monkeypatch,
        [FakeProcess(stderr=b"ERROR: Please run 'az login' to setup account.", returncode=1)],
    )

    with pytest.raises(az_module.AzCliNotLoggedInError):
        await service.run_json(["account", "list"])


@pytest.mark.anyio("asyncio")
async def test_malformed_json_raises(service, monkeypatch):
    install_processes(monkeypatch, [FakeProcess(stdout=b"{not json")])

    with pytest.raises(az_module.AzCliError) as exc:
        await service.run_json(["graph", "query"])

    assert "malformed JSON" in exc.value.message


@pytest.mark.anyio("asyncio")
async def test_graph_records_follow_skip_tokens(service, monkeypatch):
    first = {"data": [{"id": "a"}, {"id": "b"}], "skip_token": "tok1"}
    second = {"data": [{"id": "c"}], "skip_token": None}
    calls = install_processes(
        monkeypatch,
        [
            FakeProcess(stdout=json.dumps(first).encode()),
            FakeProcess(stdout=json.dumps(second).encode()),
        ],
    )

    rows = [
        row
        async for row in service.iter_graph_records("Resources", ["s1", "s2"], page_size=2)
    ]

    assert [row["id"] for row in rows] == ["a", "b", "c"]
    assert "--skip-token" not in calls[0]
    assert calls[1][calls[1].index("--skip-token") + 1] == "tok1"
    assert calls[0][calls[0].index("--first") + 1] == "2"
    subscriptions_at = calls[0].index("--subscriptions")
    assert calls[0][subscriptions_at + 1:subscriptions_at + 3] == ["s1", "s2"]


@pytest.mark.anyio("asyncio")
async def test_timeout_kills_process(service, monkeypatch):
    process = FakeProcess(hang=True)
    install_processes(monkeypatch, [process])

    with pytest.raises(az_module.AzCliTimeoutError):
        await service.run(["vm", "restart"], timeout=0.05)

    assert process.killed
    assert process.waited


@pytest.mark.anyio("asyncio")
async def test_cancelled_run_kills_and_reaps_process(service, monkeypatch):
    process = FakeProcess(hang=True)
    install_processes(monkeypatch, [process])

    task = asyncio.create_task(service.run(["graph", "query"]))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert process.killed
    assert process.waited


@pytest.mark.anyio("asyncio")
async def test_on_spawn_receives_process(service, monkeypatch):
    process = FakeProcess()
    install_processes(monkeypatch, [process])
    seen = []

    result = await service.run(["vm", "start"], on_spawn=seen.append)

    assert seen == [process]
    assert result.returncode == 0


def test_missing_executable_is_reported(monkeypatch):
    monkeypatch.setattr(az_module.shutil, "which", lambda name: None)
    service = az_module.AzCliService()

    with pytest.raises(az_module.AzCliNotFoundError):
        service.resolve_executable()
    assert service.preflight() == ["Azure CLI is not installed or not in PATH."]


def test_preflight_reports_missing_login(service, monkeypatch):
    def fake_run(args, capture_output, text, timeout):
        return subprocess.CompletedProcess(args, 1, stdout="", stderr="Please run 'az login'")

    monkeypatch.setattr(az_module.subprocess, "run", fake_run)

    problems = service.preflight()

    assert len(problems) == 1
    assert "az login" in problems[0]


def test_preflight_passes_when_logged_in(service, monkeypatch):
    def fake_run(args, capture_output, text, timeout):
        return subprocess.CompletedProcess(args, 0, stdout="{}", stderr="")

    monkeypatch.setattr(az_module.subprocess, "run", fake_run)

    assert service.preflight() == []
