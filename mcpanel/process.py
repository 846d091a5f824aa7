"""
mcpanel - Process Backend
===========================
Owns the table of managed server processes. This is the "process manager"
the supervisor talks to: one long-lived instance is created at startup and
shared by every request, so there is no connect/query/disconnect cycle per
call.

Each managed process is launched with ``asyncio.create_subprocess_exec``.
stdout and stderr are combined into a single stream that is copied, line
by line, into the instance's log file with a timestamp prefix:

    2026-02-08 12:00:00: [Server thread/INFO]: Done (3.2s)!

States:
    - "starting" : spawn requested, not yet confirmed
    - "online"   : process is running
    - "stopping" : stop requested, waiting for the process to exit
    - "stopped"  : exited after a stop request or with exit code 0
    - "errored"  : exited on its own with a non-zero code, or failed to launch

Entries stay in the table after the process exits (like a process manager
keeps crashed apps listed) until the application shuts down.

Listeners registered with add_listener() receive every state change and
every console line as a dict:
    {"type": "status",  "name": ..., "status": ..., "pid": ...}
    {"type": "console", "name": ..., "line": ...}
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
RUNNING_STATES = ("starting", "online")

# Longest console line kept whole; longer lines are truncated in the log
STREAM_LIMIT = 1024 * 1024

Listener = Callable[[dict[str, Any]], Awaitable[None]]


class BackendError(Exception):
    """Raised when the backend cannot carry out a request."""


async def read_console_line(stream: asyncio.StreamReader) -> bytes:
    """
    Read one line from a process stream; b"" at EOF.

    A line that outgrows the stream limit keeps only what was buffered when
    the limit was hit; the rest of it, up to the next newline, is discarded.
    """
    try:
        return await stream.readuntil(b"\n")
    except asyncio.IncompleteReadError as e:
        return e.partial
    except asyncio.LimitOverrunError as e:
        head = await stream.read(e.consumed)

    while True:
        try:
            await stream.readuntil(b"\n")
            break
        except asyncio.IncompleteReadError:
            break
        except asyncio.LimitOverrunError as e:
            await stream.read(e.consumed)
    return head + b"\n"


class LaunchSpec:
    """
    Everything needed to (re)launch one managed process.

    Attributes:
        name:         Process name (the server instance name).
        command:      argv list, e.g. ["java", "-Xmx1024M", ...].
        cwd:          Working directory (the instance root).
        log_path:     Combined stdout/stderr log file.
        stop_command: Console line written to stdin for a graceful stop.
        stop_timeout: Seconds to wait for a graceful stop before terminating.
    """

    def __init__(self, name: str, command: list[str], cwd: str, log_path: str,
                 stop_command: str | None = "stop", stop_timeout: float = 30):
        self.name = name
        self.command = command
        self.cwd = cwd
        self.log_path = log_path
        self.stop_command = stop_command
        self.stop_timeout = stop_timeout


class ManagedProcess:
    """Backend-side record of one managed process."""

    def __init__(self, spec: LaunchSpec):
        self.spec = spec
        self.status: str = "stopped"
        self.pid: int | None = None
        self.started_at: float | None = None
        self.restarts: int = 0
        self.exit_code: int | None = None
        self.proc: asyncio.subprocess.Process | None = None
        self.pump: asyncio.Task | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def is_running(self) -> bool:
        return self.status in RUNNING_STATES

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict copy handed out to callers."""
        return {
            "name": self.name,
            "status": self.status,
            "pid": self.pid,
            "started_at": self.started_at,
            "restarts": self.restarts,
            "exit_code": self.exit_code,
        }


class LocalProcessBackend:
    """
    In-process process manager built on asyncio subprocesses.

    Operations on one process name are serialized with a per-name lock, so
    two overlapping start requests can never launch two processes.
    """

    def __init__(self):
        self._procs: dict[str, ManagedProcess] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _lock(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    async def _emit(self, event: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Process listener failed")

    async def _set_status(self, mp: ManagedProcess, status: str) -> None:
        mp.status = status
        await self._emit({"type": "status", "name": mp.name, "status": status, "pid": mp.pid})

    # -- Queries ---------------------------------------------------------------

    async def list(self) -> list[dict[str, Any]]:
        return [mp.snapshot() for mp in self._procs.values()]

    async def describe(self, name: str) -> dict[str, Any] | None:
        mp = self._procs.get(name)
        return mp.snapshot() if mp else None

    # -- Lifecycle -------------------------------------------------------------

    async def start(self, spec: LaunchSpec) -> dict[str, Any]:
        """
        Register and launch a process, or relaunch an exited entry.

        Raises:
            BackendError: If the process is already running or cannot be spawned.
        """
        async with self._lock(spec.name):
            mp = self._procs.get(spec.name)
            if mp and mp.is_running:
                raise BackendError(f"Process '{spec.name}' is already running")
            if mp is None:
                mp = ManagedProcess(spec)
                self._procs[spec.name] = mp
            else:
                mp.spec = spec
            await self._launch(mp)
            return mp.snapshot()

    async def stop(self, name: str) -> dict[str, Any]:
        """
        Stop a process: console stop command, then SIGTERM, then SIGKILL.

        Raises:
            BackendError: If no process with that name is registered.
        """
        async with self._lock(name):
            mp = self._procs.get(name)
            if mp is None:
                raise BackendError(f"Process or namespace '{name}' not found")
            await self._terminate(mp)
            return mp.snapshot()

    async def restart(self, name: str) -> dict[str, Any]:
        """
        Stop (if running) and relaunch a registered process.

        Raises:
            BackendError: If no process with that name is registered.
        """
        async with self._lock(name):
            mp = self._procs.get(name)
            if mp is None:
                raise BackendError(f"Process or namespace '{name}' not found")
            await self._terminate(mp)
            mp.restarts += 1
            await self._launch(mp)
            return mp.snapshot()

    async def send(self, name: str, line: str) -> None:
        """
        Write one line to the process's standard input.

        Raises:
            BackendError: If the process is not registered or not running.
        """
        mp = self._procs.get(name)
        if mp is None or not mp.is_running or mp.proc is None or mp.proc.stdin is None:
            raise BackendError(f"Process '{name}' is not running")
        try:
            mp.proc.stdin.write((line.rstrip("\r\n") + "\n").encode("utf-8"))
            await mp.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise BackendError(f"Failed to write to '{name}': {e}")

    async def shutdown(self) -> None:
        """Stop every running process (called on application shutdown)."""
        for name in list(self._procs):
            mp = self._procs[name]
            if mp.is_running:
                try:
                    await self.stop(name)
                except BackendError:
                    logger.exception("Failed to stop %s during shutdown", name)

    # -- Internal helpers ------------------------------------------------------

    async def _launch(self, mp: ManagedProcess) -> None:
        spec = mp.spec
        mp.exit_code = None
        mp.pid = None
        await self._set_status(mp, "starting")

        os.makedirs(os.path.dirname(spec.log_path), exist_ok=True)
        try:
            mp.proc = await asyncio.create_subprocess_exec(
                *spec.command,
                cwd=spec.cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            mp.proc = None
            await self._set_status(mp, "errored")
            logger.error("Failed to launch %s: %s", spec.name, e)
            raise BackendError(f"Failed to launch '{spec.name}': {e}")

        mp.pid = mp.proc.pid
        mp.started_at = time.time()
        await self._set_status(mp, "online")
        mp.pump = asyncio.create_task(self._pump_output(mp, mp.proc))
        logger.info("Launched %s (pid %s): %s", spec.name, mp.pid, " ".join(spec.command))

    async def _pump_output(self, mp: ManagedProcess, proc: asyncio.subprocess.Process) -> None:
        """Copy combined output into the log file until EOF, then record the exit."""
        try:
            with open(mp.spec.log_path, "a", encoding="utf-8") as log:
                while True:
                    raw = await read_console_line(proc.stdout)
                    if not raw:
                        break
                    text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    log.write(f"{datetime.now().strftime(LOG_DATE_FORMAT)}: {text}\n")
                    log.flush()
                    await self._emit({"type": "console", "name": mp.name, "line": text})
        except OSError:
            logger.exception("Log pump for %s failed, discarding further output", mp.name)
            # The pipe must keep draining or the child blocks on write
            while await proc.stdout.read(STREAM_LIMIT):
                pass
        finally:
            code = await proc.wait()
            if mp.proc is proc:
                mp.exit_code = code
                status = "stopped" if mp.status == "stopping" or code == 0 else "errored"
                logger.info("%s exited with code %s (%s)", mp.name, code, status)
                await self._set_status(mp, status)

    async def _terminate(self, mp: ManagedProcess) -> None:
        proc = mp.proc
        if proc is None or proc.returncode is not None:
            if mp.status != "errored":
                mp.status = "stopped"
            return

        await self._set_status(mp, "stopping")
        spec = mp.spec
        if spec.stop_command and proc.stdin is not None:
            try:
                proc.stdin.write((spec.stop_command + "\n").encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("%s closed stdin before the stop command", mp.name)

        try:
            await asyncio.wait_for(proc.wait(), timeout=spec.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not stop in %ss, terminating", mp.name, spec.stop_timeout)
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=10)
            except asyncio.TimeoutError:
                logger.warning("%s ignored SIGTERM, killing", mp.name)
                proc.kill()
                await proc.wait()

        if mp.pump is not None:
            await mp.pump
        mp.status = "stopped"
