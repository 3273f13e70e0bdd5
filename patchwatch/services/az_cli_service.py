"""Azure CLI process runner for Resource Graph queries and VM commands."""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from ..core.config import settings

logger = logging.getLogger(__name__)

ProcessCallback = Callable[[asyncio.subprocess.Process], None]


class AzCliError(RuntimeError):
    """Raised when an Azure CLI invocation fails."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.returncode = returncode
        self.stderr = stderr


class AzCliNotFoundError(AzCliError):
    """Raised when the az executable cannot be located."""


class AzCliNotLoggedInError(AzCliError):
    """Raised when the CLI has no signed-in account."""


class AzCliTimeoutError(AzCliError):
    """Raised when an invocation exceeds its allotted time."""


@dataclass(slots=True)
class AzCliResult:
    """Captured output of one CLI process."""

    stdout: str
    stderr: str
    returncode: int


def _classify_failure(args: Sequence[str], returncode: int, stderr: str) -> AzCliError:
    lower = stderr.lower()
    if "az login" in lower:
        return AzCliNotLoggedInError(
            "Not logged in to Azure CLI. Please run 'az login' first.",
            returncode,
            stderr,
        )
    command = " ".join(args[:2])
    preview = stderr.strip()[:500] or "Unknown error"
    return AzCliError(f"az {command} exited with {returncode}: {preview}", returncode, stderr)


class AzCliService:
    """Run `az` commands as asyncio subprocesses."""

    def __init__(self, executable: Optional[str] = None) -> None:
        self._executable_name = executable
        self._resolved: Optional[str] = None

    def resolve_executable(self) -> str:
        if self._resolved:
            return self._resolved
        name = self._executable_name or settings.az_executable
        found = shutil.which(name)
        if not found:
            raise AzCliNotFoundError(
                "Azure CLI is not installed or not in PATH."
            )
        self._resolved = found
        return found

    async def run(
        self,
        args: Sequence[str],
        *,
        timeout: Optional[float] = None,
        on_spawn: Optional[ProcessCallback] = None,
    ) -> AzCliResult:
        """Execute ``az <args>`` and capture its output.

        ``on_spawn`` receives the process handle as soon as it exists so that
        callers can signal it. Cancellation kills the child process.
        """

        executable = self.resolve_executable()
        logger.debug("Running az %s", " ".join(args[:3]))
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AzCliNotFoundError(
                f"Azure CLI executable {executable} could not be started."
            ) from exc

        if on_spawn is not None:
            on_spawn(process)

        try:
            if timeout is not None:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=max(0.1, float(timeout))
                )
            else:
                stdout, stderr = await process.communicate()
        except asyncio.TimeoutError as exc:
            self._kill(process)
            await process.wait()
            message = f"az {' '.join(args[:2])} timed out after {timeout:.1f}s"
            logger.warning(message)
            raise AzCliTimeoutError(message) from exc
        finally:
            if process.returncode is None:
                self._kill(process)
                await process.wait()

        return AzCliResult(
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
            returncode=process.returncode if process.returncode is not None else -1,
        )

    async def run_json(
        self, args: Sequence[str], *, timeout: Optional[float] = None
    ) -> Any:
        """Execute a command with JSON output and return the decoded payload."""

        full_args = list(args) + ["--output", "json"]
        result = await self.run(full_args, timeout=timeout)
        if result.returncode != 0:
            raise _classify_failure(full_args, result.returncode, result.stderr)
        text = result.stdout.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise AzCliError(
                f"az {' '.join(full_args[:2])} returned malformed JSON: {exc}"
            ) from exc

    async def list_enabled_subscriptions(
        self, *, timeout: Optional[float] = None
    ) -> List[str]:
        """Return the ids of enabled subscriptions visible to the signed-in account."""

        payload = await self.run_json(
            ["account", "list", "--query", "[?state=='Enabled'].id"],
            timeout=timeout,
        )
        if not isinstance(payload, list):
            return []
        return [str(item) for item in payload if item]

    async def iter_graph_records(
        self,
        query: str,
        subscriptions: Sequence[str],
        *,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield Resource Graph rows page by page, following skip tokens."""

        first = page_size or settings.graph_page_size
        skip_token: Optional[str] = None
        while True:
            args = ["graph", "query", "-q", query, "--first", str(first)]
            if subscriptions:
                args.append("--subscriptions")
                args.extend(subscriptions)
            if skip_token:
                args.extend(["--skip-token", skip_token])

            payload = await self.run_json(args, timeout=timeout)
            if isinstance(payload, list):
                rows, skip_token = payload, None
            elif isinstance(payload, dict):
                rows = payload.get("data") or []
                skip_token = payload.get("skip_token") or payload.get("skipToken")
            elif payload is None:
                return
            else:
                raise AzCliError("az graph query returned an unexpected payload")

            for row in rows:
                if isinstance(row, dict):
                    yield row

            if not skip_token:
                return

    def preflight(self) -> List[str]:
        """Check the CLI is installed and signed in; return blocking problems."""

        try:
            executable = self.resolve_executable()
        except AzCliNotFoundError as exc:
            return [exc.message]

        try:
            result = subprocess.run(
                [executable, "account", "show", "--output", "json"],
                capture_output=True,
                text=True,
                timeout=60,
            )
        except subprocess.TimeoutExpired:
            logger.error("az account show timed out")
            return ["Timed out checking the Azure CLI login state."]
        except OSError as exc:
            logger.error("az account show could not be started: %s", exc)
            return [f"Azure CLI could not be started: {exc}"]

        if result.returncode != 0:
            logger.error("az account show failed: %s", result.stderr.strip())
            return ["Not logged in to Azure CLI. Please run 'az login' first."]
        return []

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass


# Global service instance
az_cli_service = AzCliService()

__all__ = [
    "AzCliError",
    "AzCliNotFoundError",
    "AzCliNotLoggedInError",
    "AzCliResult",
    "AzCliService",
    "AzCliTimeoutError",
    "az_cli_service",
]
