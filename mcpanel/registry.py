"""
mcpanel - Server Registry
===========================
Creates, lists, deletes and archives server instances.

A server instance is nothing more than a directory under the servers root:

    servers/<name>/
        plugins/
        logs/
        world/
        server.properties   key=value
        config.yml          nested YAML
        bukkit.yml          nested YAML

The registry keeps no in-memory state; every call re-reads the servers
directory.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from typing import Any

import yaml
from starlette.concurrency import run_in_threadpool

from mcpanel import archive, paths
from mcpanel.errors import Conflict, InvalidArgument, NotFound, translate_os_error

logger = logging.getLogger(__name__)

SERVER_SUBDIRS = ("plugins", "logs", "world")
SERVER_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")

# Default server.properties values written for a new instance.
DEFAULT_PROPERTIES = {
    "gamemode": "survival",
    "difficulty": "normal",
    "level-type": "DEFAULT",
    "max-players": 20,
    "online-mode": "true",
}

DEFAULT_BUKKIT = {
    "settings": {
        "allow-end": True,
        "warn-on-overload": True,
        "permissions-file": "permissions.yml",
        "update-folder": "update",
        "plugin-profiling": False,
        "connection-throttle": 4000,
        "query-plugins": True,
        "deprecated-verbose": "default",
        "shutdown-message": "Server closed",
        "minimum-api": "none",
    },
    "spawn-limits": {
        "monsters": 70,
        "animals": 15,
        "water-animals": 5,
        "ambient": 15,
    },
    "chunk-gc": {"period-in-ticks": 600},
    "ticks-per": {
        "animal-spawns": 400,
        "monster-spawns": 1,
        "autosave": 6000,
    },
    "aliases": {"icanhasbukkit": "version $1-"},
}


def validate_server_name(name: str | None) -> str:
    """
    Check a server name: letters, digits, '.', '_' and '-', 1-64 chars,
    starting with a letter or digit.

    Raises:
        InvalidArgument: If the name is not acceptable.
    """
    name = (name or "").strip()
    if not SERVER_NAME_RE.match(name):
        raise InvalidArgument(
            "Invalid server name. Use letters, digits, '.', '_' and '-' (max 64)."
        )
    return name


def render_seed_files(name: str, created: datetime) -> dict[str, str]:
    """
    Build the three default config files for a new instance.

    The output depends only on ``name`` and ``created``.

    Returns:
        Mapping of file name to file content.
    """
    stamp = created.isoformat(timespec="seconds")

    properties = ["# Minecraft server properties", f"# Generated on {stamp}"]
    properties += [f"{key}={value}" for key, value in DEFAULT_PROPERTIES.items()]

    config = {
        "server-name": name,
        "motd": f"Welcome to {name} server!",
        "world": {"name": "world", "seed": 12345, "generator": "default"},
        "plugins": {"enabled": ["essentials", "worldedit"]},
    }

    def _dump(data: dict) -> str:
        return yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)

    return {
        "server.properties": "\n".join(properties) + "\n",
        "config.yml": f"# Configuration file for {name}\n# Generated on {stamp}\n" + _dump(config),
        "bukkit.yml": (
            "# Bukkit configuration file\n"
            "# Settings for the Bukkit server implementation\n\n" + _dump(DEFAULT_BUKKIT)
        ),
    }


class ServerRegistry:
    """
    Directory-backed registry of server instances.

    Attributes:
        servers_dir: Parent directory holding one subdirectory per instance.
        backups_dir: Where backup archives are written.
    """

    def __init__(self, servers_dir: str, backups_dir: str):
        self.servers_dir = os.path.abspath(servers_dir)
        self.backups_dir = os.path.abspath(backups_dir)

    def _path(self, name: str) -> str:
        return paths.resolve(self.servers_dir, validate_server_name(name))

    # -- Queries ---------------------------------------------------------------

    async def list(self) -> list[dict[str, Any]]:
        """List instances as [{name, last_modified}], sorted by name."""
        return await run_in_threadpool(self._list_sync)

    def _list_sync(self) -> list[dict[str, Any]]:
        os.makedirs(self.servers_dir, exist_ok=True)
        servers = []
        with os.scandir(self.servers_dir) as it:
            for entry in it:
                if not entry.is_dir():
                    continue
                servers.append({
                    "name": entry.name,
                    "last_modified": datetime.fromtimestamp(
                        entry.stat().st_mtime, tz=timezone.utc
                    ).isoformat(),
                })
        return sorted(servers, key=lambda s: s["name"])

    async def get_root(self, name: str) -> str:
        """
        Absolute root directory of an existing instance.

        Raises:
            NotFound: If the instance does not exist (or the name is invalid).
        """
        try:
            root = self._path(name)
        except InvalidArgument:
            raise NotFound("Server not found")
        if not await run_in_threadpool(os.path.isdir, root):
            raise NotFound("Server not found")
        return root

    # -- Mutations -------------------------------------------------------------

    async def create(self, name: str, now: datetime | None = None) -> dict[str, Any]:
        """
        Create a new instance with the standard layout and seed files.

        Raises:
            InvalidArgument: If the name is invalid.
            Conflict:        If an instance with that name already exists.
        """
        name = validate_server_name(name)
        root = self._path(name)
        created = now or datetime.now().astimezone()
        await run_in_threadpool(self._create_sync, name, root, created)
        logger.info("Created server %s", name)
        return {"name": name, "created_at": created.isoformat(timespec="seconds")}

    def _create_sync(self, name: str, root: str, created: datetime) -> None:
        os.makedirs(self.servers_dir, exist_ok=True)
        try:
            # Exclusive create: an existing instance is a conflict
            os.mkdir(root)
        except FileExistsError:
            raise Conflict(f"Server '{name}' already exists")

        try:
            for sub in SERVER_SUBDIRS:
                os.makedirs(os.path.join(root, sub), exist_ok=True)
            for filename, content in render_seed_files(name, created).items():
                with open(os.path.join(root, filename), "w", encoding="utf-8") as f:
                    f.write(content)
        except OSError as e:
            shutil.rmtree(root, ignore_errors=True)
            raise translate_os_error(e, name, "create server")

    async def delete(self, name: str) -> None:
        """
        Recursively delete an instance.

        Raises:
            NotFound: If the instance does not exist.
        """
        root = await self.get_root(name)
        try:
            await run_in_threadpool(shutil.rmtree, root)
        except OSError as e:
            raise translate_os_error(e, name, "delete server")
        logger.info("Deleted server %s", name)

    # -- Archives --------------------------------------------------------------

    async def backup(self, name: str) -> dict[str, Any]:
        """
        Write a timestamped zip of the instance into the backups directory.

        Returns:
            {filename, path, size_bytes}
        """
        root = await self.get_root(name)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        filename = f"{name}-backup-{stamp}.zip"
        target = os.path.join(self.backups_dir, filename)

        def _write() -> int:
            os.makedirs(self.backups_dir, exist_ok=True)
            return archive.write_tree(root, target)

        try:
            size = await run_in_threadpool(_write)
        except OSError as e:
            raise translate_os_error(e, name, "create backup")
        logger.info("Backed up %s to %s (%d bytes)", name, filename, size)
        return {"filename": filename, "path": target, "size_bytes": size}

    async def archive_to_temp(self, name: str) -> tuple[str, str]:
        """
        Zip the instance into a temporary file for download.

        The caller owns the returned file and must delete it.

        Returns:
            (absolute temp path, suggested download file name)
        """
        root = await self.get_root(name)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")
        download_name = f"{name}-{stamp}.zip"
        fd, tmp_path = tempfile.mkstemp(prefix="mcpanel-", suffix=".zip")
        os.close(fd)
        try:
            await run_in_threadpool(archive.write_tree, root, tmp_path)
        except OSError as e:
            os.remove(tmp_path)
            raise translate_os_error(e, name, "archive server")
        return tmp_path, download_name
