"""Supervisor: runs the build watchers and restarts the server when they finish a build.

Every watcher is spawned once and lives for the whole session. Its stdout is framed
into lines and echoed with a ``[tag]`` prefix; a line containing the watcher's trigger
phrase restarts the application server. Its stderr is passed through untouched.

All subprocess events (lines, watcher exits, stop requests) go through one queue
consumed by a single dispatch loop. That loop is the only code that touches the server
slot, so a restart always finishes its kill-then-spawn before the next event is
handled. A watcher exiting on its own, or SIGINT/SIGTERM, ends the session through
:meth:`WatchSupervisor.cleanup`, which runs exactly once.
"""

from __future__ import annotations

import asyncio
import contextvars
import enum
import functools
import logging
import signal
import sys
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from devwatch.config import WatchConfig, WatcherConfig, resolve_cwd, server_command
from devwatch.errors import SpawnError
from devwatch.lines import drain, forward_stream, read_lines
from devwatch.log_context import ctx_source
from devwatch.process import ManagedProcess, spawn_process

logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SupervisorState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class LineEvent:
    """One stdout line from the watcher named *source*."""

    source: str
    line: str
    original: str


@dataclass(frozen=True, slots=True)
class ExitEvent:
    """The watcher named *source* exited with *code* (negative: killed by signal)."""

    source: str
    code: int | None


@dataclass(frozen=True, slots=True)
class StopEvent:
    """Shutdown requested from outside, e.g. by a signal."""

    code: int = 0


Event = LineEvent | ExitEvent | StopEvent


def _exit_code(code: int | None) -> int:
    """Positive child codes propagate; clean exits, signals and unknown codes map to 0."""
    if code is None or code < 0:
        return 0
    return code


class WatchSupervisor:
    """Owns every watcher handle and the server slot for one session."""

    def __init__(
        self,
        config: WatchConfig,
        argv: Sequence[str] = (),
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self._config = config
        self._argv = list(argv)
        self._out = stdout if stdout is not None else sys.stdout
        self._err = stderr if stderr is not None else sys.stderr

        self._specs: dict[str, WatcherConfig] = {w.name: w for w in config.watchers}
        self._watchers: list[ManagedProcess] = []
        self._server: ManagedProcess | None = None

        self._events: asyncio.Queue[Event] = asyncio.Queue()
        self._stopping = False
        self._exit_code = 0
        self._signals: list[signal.Signals] = []
        self.state = SupervisorState.STARTING

    @property
    def server(self) -> ManagedProcess | None:
        return self._server

    @property
    def watchers(self) -> list[ManagedProcess]:
        return list(self._watchers)

    @property
    def exit_code(self) -> int:
        return self._exit_code

    def _log(self, message: str) -> None:
        self._out.write(message + "\n")
        self._out.flush()

    # -- Startup --------------------------------------------------------------

    async def start(self) -> None:
        """Spawn every configured watcher and attach its listeners.

        If any spawn fails, the watchers already started are torn down before the
        error propagates.
        """
        try:
            for spec in self._config.watchers:
                proc = await spawn_process(
                    spec.name,
                    spec.command,
                    resolve_cwd(self._config, spec),
                    tag=spec.tag,
                )
                self._watchers.append(proc)
                self._attach_watcher(proc, spec)
        except BaseException:
            self.cleanup()
            raise
        self.state = SupervisorState.RUNNING
        logger.info("Started %d watcher(s)", len(self._watchers))

    def _listen(self, proc: ManagedProcess, source: str, coro: Coroutine[Any, Any, None]) -> None:
        ctx = contextvars.copy_context()
        ctx.run(ctx_source.set, source)
        task = asyncio.create_task(coro, name=f"devwatch:{source}", context=ctx)
        proc.listen(task)

    def _attach_watcher(self, proc: ManagedProcess, spec: WatcherConfig) -> None:
        stdout = proc.process.stdout
        stderr = proc.process.stderr
        if stdout is not None:
            if spec.tag is None:
                self._listen(proc, spec.name, drain(stdout))
            else:
                on_line = functools.partial(self._post_line, spec.name)
                self._listen(proc, spec.tag, read_lines(stdout, on_line))
        if stderr is not None:
            self._listen(proc, spec.tag or spec.name, forward_stream(stderr, self._err))
        self._listen(proc, spec.tag or spec.name, self._wait_watcher(proc))

    def _post_line(self, source: str, line: str, original: str) -> None:
        self.post(LineEvent(source, line, original))

    async def _wait_watcher(self, proc: ManagedProcess) -> None:
        code = await proc.wait_exit()
        logger.debug("Watcher exited: pid=%s code=%s", proc.pid, code)
        self.post(ExitEvent(proc.name, code))

    # -- Event handling -------------------------------------------------------

    def post(self, event: Event) -> None:
        """Queue *event* for the dispatch loop."""
        self._events.put_nowait(event)

    def request_stop(self, code: int = 0) -> None:
        """Signal handler entry point; repeated requests are ignored."""
        if self._stopping:
            logger.debug("Stop already in progress, ignoring request")
            return
        self.post(StopEvent(code))

    async def dispatch(self) -> int:
        """Handle queued events until cleanup has run. Returns the exit code."""
        while self.state is not SupervisorState.STOPPED:
            event = await self._events.get()
            await self.handle(event)
        return self._exit_code

    async def handle(self, event: Event) -> None:
        if self._stopping:
            return
        if isinstance(event, LineEvent):
            await self._on_line(event)
        elif isinstance(event, ExitEvent):
            spec = self._specs[event.source]
            self._log(f"{spec.exit_label or spec.name} terminated unexpectedly")
            self.cleanup(event.code)
        elif isinstance(event, StopEvent):
            self.cleanup(event.code)

    async def _on_line(self, event: LineEvent) -> None:
        spec = self._specs[event.source]
        # tsc prints blank lines between reports.
        if not (spec.skip_blank and event.line == ""):
            self._log(f"[{spec.tag}] {event.original}")
        if spec.trigger and spec.trigger in event.line:
            logger.debug("Trigger matched: %r", spec.trigger)
            await self.restart_server()

    # -- Server slot ----------------------------------------------------------

    async def restart_server(self) -> None:
        """Kill the current server, if any, then spawn and record a fresh one."""
        previous = self._server
        if previous is not None:
            previous.detach()
            previous.terminate()
            self._server = None

        tag = self._config.server.tag
        try:
            server = await spawn_process(
                "server",
                server_command(self._config, self._argv),
                Path.cwd(),
                capture=False,
                tag=tag,
            )
        except SpawnError as exc:
            logger.error("%s", exc)  # noqa: TRY400
            return

        self._log(f"[{tag}] spawned process {server.pid}")
        self._listen(server, tag, self._wait_server(server))
        self._server = server

    async def _wait_server(self, server: ManagedProcess) -> None:
        await server.wait_exit()
        self._log(f"[{self._config.server.tag}] process {server.pid} exited")

    # -- Shutdown -------------------------------------------------------------

    def cleanup(self, code: int | None = None) -> int:
        """Detach and terminate every subprocess once, in configured order.

        Termination is fire-and-forget: nothing here waits on a child.
        Returns the exit code the supervisor should end with.
        """
        if self._stopping:
            return self._exit_code
        self._stopping = True
        self.state = SupervisorState.STOPPING

        for proc in self._watchers:
            self._log(f"killing {proc.name}")
            proc.detach()
            proc.terminate()

        if self._server is not None:
            self._log("killing server")
            self._server.detach()
            self._server.terminate()

        self._log("killing watch")
        self._exit_code = _exit_code(code)
        self.state = SupervisorState.STOPPED
        return self._exit_code

    def _install_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            loop.add_signal_handler(sig, self.request_stop)
            self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    async def run(self) -> int:
        """Start the watchers, then react to events until the session ends."""
        self._install_signal_handlers()
        try:
            await self.start()
            return await self.dispatch()
        except asyncio.CancelledError:
            # KeyboardInterrupt where loop signal handlers are unavailable.
            self.cleanup()
            raise
        finally:
            self._remove_signal_handlers()
