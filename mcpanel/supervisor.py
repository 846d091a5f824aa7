"""
mcpanel - Process Supervisor
==============================
Start/stop/restart/status/console operations for server instances.

The supervisor is a facade over the process backend, not a source of
truth: it keeps no process state of its own and asks the backend on every
call. The backend's process table is the only place a status lives.

States (observed, owned by the backend):
    stopped -> starting -> online -> stopping -> stopped
    online  -> errored   (process exited on its own with a non-zero code)

Start policy:
    - registered and starting/online : no-op, reported as already running
    - registered and stopped/errored : relaunched in place (same entry)
    - not registered                 : registered and launched

Usage:
    supervisor = ProcessSupervisor(backend, registry, config["minecraft"])
    await supervisor.start("survival")
    status = await supervisor.status("survival")
    lines = await supervisor.tail_log("survival", 100)
"""

import logging
import os
import time
from collections import deque
from typing import Any

from starlette.concurrency import run_in_threadpool

from mcpanel.errors import EmptyInput, NotFound, ServiceError
from mcpanel.process import RUNNING_STATES, BackendError, LaunchSpec, LocalProcessBackend
from mcpanel.registry import ServerRegistry

logger = logging.getLogger(__name__)

DEFAULT_CONSOLE_LINES = 100


def build_command(settings: dict) -> list[str]:
    """
    Build the java command line for a server from the minecraft settings.

    Example:
        ["java", "-Xmx1024M", "-Xms1024M", "-jar", "server.jar", "nogui"]
    """
    return [
        settings.get("java", "java"),
        f"-Xmx{settings.get('memory_max', '1024M')}",
        f"-Xms{settings.get('memory_min', '1024M')}",
        *[str(a) for a in settings.get("extra_args") or []],
        "-jar",
        settings.get("jar", "server.jar"),
        "nogui",
    ]


def read_last_lines(path: str, max_lines: int) -> list[str]:
    """Return the last ``max_lines`` lines of a text file, oldest first."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\r\n") for line in deque(f, maxlen=max_lines)]


class ProcessSupervisor:
    """
    Stateless lifecycle facade for server processes.

    Attributes:
        backend:  Long-lived process backend shared by all requests.
        registry: Server registry, used to locate instance roots.
        settings: The "minecraft" configuration section.
    """

    def __init__(self, backend: LocalProcessBackend, registry: ServerRegistry,
                 settings: dict | None = None):
        self.backend = backend
        self.registry = registry
        self.settings = settings or {}

    def _log_path(self, root: str) -> str:
        return os.path.join(root, "logs", self.settings.get("log_file", "server.log"))

    async def status(self, name: str) -> dict[str, Any]:
        """
        Current status of a server's process.

        An unregistered process is a normal result, never an error:
            {"running": False, "status": "stopped", "pid": None, "uptime": 0}
        """
        info = await self.backend.describe(name)
        if info is None:
            return {"running": False, "status": "stopped", "pid": None,
                    "uptime": 0, "restarts": 0}

        online = info["status"] == "online"
        uptime = int(time.time() - info["started_at"]) if online and info["started_at"] else 0
        return {
            "running": online,
            "status": info["status"],
            "pid": info["pid"],
            "uptime": max(uptime, 0),
            "restarts": info["restarts"],
        }

    async def start(self, name: str) -> dict[str, Any]:
        """
        Start a server unless it is already running.

        Raises:
            NotFound:     If the server instance does not exist.
            ServiceError: If the process cannot be launched.
        """
        info = await self.backend.describe(name)
        if info and info["status"] in RUNNING_STATES:
            return {"message": "Server is already running", "status": info["status"]}

        root = await self.registry.get_root(name)
        spec = LaunchSpec(
            name=name,
            command=build_command(self.settings),
            cwd=root,
            log_path=self._log_path(root),
            stop_command=self.settings.get("stop_command", "stop"),
            stop_timeout=float(self.settings.get("stop_timeout", 30)),
        )
        try:
            result = await self.backend.start(spec)
        except BackendError as e:
            if "already running" in str(e):
                return {"message": "Server is already running", "status": "online"}
            raise ServiceError(f"Failed to start server: {e}")
        logger.info("Server %s started (pid %s)", name, result["pid"])
        return {"message": "Server started successfully", "status": result["status"]}

    async def stop(self, name: str) -> dict[str, Any]:
        """
        Raises:
            ServiceError: If the backend reports a failure (including unknown name).
        """
        try:
            result = await self.backend.stop(name)
        except BackendError as e:
            raise ServiceError(f"Failed to stop server: {e}")
        logger.info("Server %s stopped", name)
        return {"message": "Server stopped successfully", "status": result["status"]}

    async def restart(self, name: str) -> dict[str, Any]:
        """
        Raises:
            ServiceError: If the backend reports a failure (including unknown name).
        """
        try:
            result = await self.backend.restart(name)
        except BackendError as e:
            raise ServiceError(f"Failed to restart server: {e}")
        logger.info("Server %s restarted (pid %s)", name, result["pid"])
        return {"message": "Server restarted successfully", "status": result["status"]}

    async def tail_log(self, name: str, max_lines: int | None = None) -> list[str]:
        """
        Last lines of the server log, oldest first.

        A missing log directory or file is created empty (first run). Read
        errors degrade to an empty list so the console view stays available.

        Raises:
            NotFound: If the server instance does not exist.
        """
        root = await self.registry.get_root(name)
        log_path = self._log_path(root)
        if not max_lines:
            max_lines = int(self.settings.get("console_lines", DEFAULT_CONSOLE_LINES))

        def _tail() -> list[str]:
            os.makedirs(os.path.dirname(log_path), exist_ok=True)
            if not os.path.exists(log_path):
                open(log_path, "a", encoding="utf-8").close()
            return read_last_lines(log_path, max_lines)

        try:
            return await run_in_threadpool(_tail)
        except OSError as e:
            logger.warning("Could not read console log for %s: %s", name, e)
            return []

    async def send_command(self, name: str, command: str | None) -> dict[str, Any]:
        """
        Forward one console command to the server's stdin.

        Raises:
            EmptyInput:   If the command is blank.
            NotFound:     If the server has no running process.
            ServiceError: If the backend fails to deliver the command.
        """
        command = (command or "").strip()
        if not command:
            raise EmptyInput("Command is required")

        info = await self.backend.describe(name)
        if info is None or info["status"] not in RUNNING_STATES:
            raise NotFound("Server not found or not running")

        try:
            await self.backend.send(name, command)
        except BackendError as e:
            raise ServiceError(f"Failed to send command: {e}")
        logger.info("Command sent to %s: %s", name, command)
        return {"message": "Command sent successfully"}
