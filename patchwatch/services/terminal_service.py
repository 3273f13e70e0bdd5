"""Cancellable keyboard input for the console."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
import termios
import tty
from typing import IO, Any, Iterator, Optional

from rich.console import Console

logger = logging.getLogger(__name__)


class TerminalService:
    """Read single keys and whole lines from stdin without blocking the loop.

    Reads register the input descriptor with the running event loop, so a
    pending read is cancelled like any other awaitable.
    """

    def __init__(self, stream: Optional[IO[Any]] = None, console: Optional[Console] = None):
        self._stream = stream or sys.stdin
        self.console = console or Console()

    def _fileno(self) -> int:
        return self._stream.fileno()

    @contextlib.contextmanager
    def cbreak(self) -> Iterator[None]:
        """Put a TTY into cbreak mode for the duration of the block."""

        fd = self._fileno()
        if not os.isatty(fd):
            yield
            return
        saved = termios.tcgetattr(fd)
        try:
            tty.setcbreak(fd)
            yield
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)

    async def read_key(self, timeout: float) -> Optional[str]:
        """Return one keystroke, or ``None`` when ``timeout`` elapses first.

        Raises :class:`EOFError` once the input is closed.
        """

        loop = asyncio.get_running_loop()
        fd = self._fileno()
        future: asyncio.Future[str] = loop.create_future()

        def _on_readable() -> None:
            if future.done():
                return
            data = os.read(fd, 1)
            if not data:
                future.set_exception(EOFError("input closed"))
                return
            future.set_result(data.decode("utf-8", errors="ignore"))

        with self.cbreak():
            loop.add_reader(fd, _on_readable)
            try:
                return await asyncio.wait_for(future, timeout=max(0.0, timeout))
            except asyncio.TimeoutError:
                return None
            finally:
                loop.remove_reader(fd)

    async def read_line(self, prompt: str = "") -> str:
        """Print ``prompt`` and return the next line without its newline.

        A final unterminated line is returned as-is; after that, or on an empty
        input, :class:`EOFError` is raised.
        """

        if prompt:
            self.console.print(prompt, end="")
        loop = asyncio.get_running_loop()
        fd = self._fileno()
        future: asyncio.Future[str] = loop.create_future()
        buffer = bytearray()

        def _on_readable() -> None:
            if future.done():
                return
            chunk = os.read(fd, 1024)
            if not chunk:
                if buffer:
                    future.set_result(buffer.decode("utf-8", errors="ignore"))
                else:
                    future.set_exception(EOFError("input closed"))
                return
            buffer.extend(chunk)
            if b"\n" in buffer:
                line = buffer.split(b"\n", 1)[0]
                future.set_result(line.decode("utf-8", errors="ignore").rstrip("\r"))

        loop.add_reader(fd, _on_readable)
        try:
            return await future
        finally:
            loop.remove_reader(fd)

    async def confirm(self, prompt: str) -> bool:
        """Require the operator to type ``yes``."""

        answer = await self.read_line(f"{prompt} (type 'yes' to confirm): ")
        confirmed = answer.strip().lower() == "yes"
        if not confirmed:
            self.console.print("[yellow]Cancelled.[/yellow]")
        return confirmed

    async def pause(self, prompt: str = "Press Enter to continue...") -> None:
        await self.read_line(f"\n[dim]{prompt}[/dim]")


terminal_service = TerminalService()

__all__ = ["TerminalService", "terminal_service"]
