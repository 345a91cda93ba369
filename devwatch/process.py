"""Handles for supervised subprocesses."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from devwatch.errors import SpawnError

logger = logging.getLogger(__name__)

# Watchers can print very long compiler diagnostics on one line.
STREAM_LIMIT = 4 * 1024 * 1024


class _ExitNotifyingProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also resolves ``exited`` as soon as the child exits.

    ``Process.wait()`` only returns once every pipe has closed, which never
    happens while a grandchild (e.g. node under yarn) still holds stdout.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[int | None] = loop.create_future()
        self._subprocess: asyncio.SubprocessTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        super().connection_made(transport)
        self._subprocess = transport  # type: ignore[assignment]

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            code = self._subprocess.get_returncode() if self._subprocess else None
            self.exited.set_result(code)


async def exec_subprocess(
    command: list[str], *, cwd: str, capture: bool
) -> tuple[asyncio.subprocess.Process, asyncio.Future[int | None]]:
    """Spawn *command*; returns the process and a future resolved with its exit code."""
    loop = asyncio.get_running_loop()
    pipe = asyncio.subprocess.PIPE if capture else None
    transport, protocol = await loop.subprocess_exec(
        lambda: _ExitNotifyingProtocol(STREAM_LIMIT, loop),
        *command,
        stdout=pipe,
        stderr=pipe,
        cwd=cwd,
    )
    return asyncio.subprocess.Process(transport, protocol, loop), protocol.exited


@dataclass(slots=True)
class ManagedProcess:
    """A spawned subprocess plus the listener tasks attached to it."""

    process: asyncio.subprocess.Process
    exited: asyncio.Future[int | None]
    name: str
    command: list[str]
    cwd: Path
    tag: str | None = None
    listeners: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    async def wait_exit(self) -> int | None:
        """Exit code, available once the process itself exits (pipes may stay open)."""
        return await asyncio.shield(self.exited)

    def listen(self, task: asyncio.Task[None]) -> None:
        """Attach a listener task; it is cancelled by :meth:`detach`."""
        self.listeners.append(task)

    def detach(self) -> None:
        """Cancel every listener task (idempotent)."""
        current = asyncio.current_task()
        for task in self.listeners:
            if task is not current and not task.done():
                task.cancel()
        self.listeners.clear()

    def terminate(self) -> bool:
        """Send SIGTERM without waiting for the child. Returns True if a signal was sent."""
        if self.process.returncode is not None:
            return False
        try:
            self.process.terminate()
        except ProcessLookupError:
            return False
        logger.debug("Terminate sent: pid=%s name=%s", self.process.pid, self.name)
        return True


async def spawn_process(
    name: str,
    command: list[str],
    cwd: Path,
    *,
    capture: bool = True,
    tag: str | None = None,
) -> ManagedProcess:
    """Start *command* in *cwd*.

    With *capture*, stdout and stderr are piped for the supervisor to read;
    otherwise the child shares the supervisor's stdio.
    """
    try:
        process, exited = await exec_subprocess(command, cwd=str(cwd), capture=capture)
    except OSError as exc:
        msg = f"Failed to start {name} ({' '.join(command)}) in {cwd}: {exc}"
        raise SpawnError(msg) from exc
    logger.debug("Process started: pid=%s name=%s cwd=%s", process.pid, name, cwd)
    return ManagedProcess(
        process=process, exited=exited, name=name, command=command, cwd=cwd, tag=tag
    )
