"""
mcpanel - File Gateway
========================
All file browser operations on a server's working directory.

Every public method takes the server root plus client-supplied relative
path(s), resolves them through ``mcpanel.paths`` first, and only then
touches the filesystem. Blocking work runs in the thread pool so the event
loop keeps serving other requests while a large copy or extraction runs.

Mutating operations (write, delete, upload, extract, copy, move, rename)
hold a per-path lock for their duration. Two writers to the same resolved
path are serialized instead of racing; locks are released on every exit
path, including errors.

Operations:
    list_dir        - list a directory, creating it if absent
    read_file       - read a text file
    write_file      - overwrite a file (parent must exist)
    delete_entry    - delete a file or a directory tree
    make_directory  - mkdir -p
    upload_many     - move staged uploads into a directory
    extract_archive - unzip into a directory
    copy / move / rename / move_many
    download_path   - absolute path of a file to stream
"""

import asyncio
import errno
import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from starlette.concurrency import run_in_threadpool

from mcpanel import archive, paths
from mcpanel.errors import (
    Conflict,
    InvalidArgument,
    NotFound,
    PanelError,
    translate_os_error,
)

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# Mode for files the gateway creates, as open() would give them
NEW_FILE_MODE = 0o666 & ~_current_umask()


@dataclass
class DirectoryEntry:
    """One row of a directory listing. Built fresh on every call."""
    name: str
    kind: str                   # "file" or "directory"
    size_bytes: int | None      # None for directories
    last_modified: str          # ISO-8601, UTC

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PathLocks:
    """
    Lazily created asyncio locks keyed by absolute path.

    A lock entry exists only while at least one task holds or waits for
    it. Several paths are always acquired in sorted order.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, *abs_paths: str):
        keys = sorted(set(abs_paths))
        for key in keys:
            self._users[key] = self._users.get(key, 0) + 1
            self._locks.setdefault(key, asyncio.Lock())

        held: list[str] = []
        try:
            for key in keys:
                await self._locks[key].acquire()
                held.append(key)
            yield
        finally:
            for key in reversed(held):
                self._locks[key].release()
            for key in keys:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


def _display(rel: str | None) -> str:
    return paths.normalize_relative(rel) or "/"


def _mtime_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# =============================================================================
# Blocking helpers (run in the thread pool)
# =============================================================================

def _list_dir(abs_dir: str, display: str) -> list[DirectoryEntry]:
    if os.path.exists(abs_dir) and not os.path.isdir(abs_dir):
        raise InvalidArgument(f"'{display}' is not a directory")
    os.makedirs(abs_dir, exist_ok=True)

    entries = []
    with os.scandir(abs_dir) as it:
        for entry in it:
            try:
                st = entry.stat()
            except OSError:
                # Dangling symlink
                st = entry.stat(follow_symlinks=False)
            is_dir = entry.is_dir()
            entries.append(DirectoryEntry(
                name=entry.name,
                kind="directory" if is_dir else "file",
                size_bytes=None if is_dir else st.st_size,
                last_modified=_mtime_iso(st.st_mtime),
            ))
    return entries


def _read_file(abs_path: str, display: str) -> str:
    if os.path.isdir(abs_path):
        raise InvalidArgument(f"'{display}' is a directory")
    with open(abs_path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def _write_file(abs_path: str, content: str, display: str) -> None:
    parent = os.path.dirname(abs_path)
    if not os.path.isdir(parent):
        raise NotFound(f"Directory for '{display}' not found")
    if os.path.isdir(abs_path):
        raise InvalidArgument(f"'{display}' is a directory")

    fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        _apply_mode(tmp_path, abs_path)
        os.replace(tmp_path, abs_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _apply_mode(tmp_path: str, target: str) -> None:
    """Give a staged temp file the mode of the file it replaces."""
    if os.path.exists(target):
        shutil.copymode(target, tmp_path)
    else:
        os.chmod(tmp_path, NEW_FILE_MODE)


def _delete_entry(abs_path: str, display: str) -> None:
    if not os.path.lexists(abs_path):
        raise NotFound(f"'{display}' not found")
    if os.path.isdir(abs_path) and not os.path.islink(abs_path):
        shutil.rmtree(abs_path)
    else:
        os.remove(abs_path)


def _store_upload(fileobj, target: str, max_bytes: int | None) -> None:
    """Stream one staged upload into a hidden .part file, then rename it."""
    target_dir = os.path.dirname(target)
    fd, part_path = tempfile.mkstemp(dir=target_dir, prefix=".upload-", suffix=".part")
    try:
        written = 0
        with os.fdopen(fd, "wb") as out:
            while True:
                chunk = fileobj.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if max_bytes is not None and written > max_bytes:
                    raise InvalidArgument("File exceeds the upload size limit")
                out.write(chunk)
        _apply_mode(part_path, target)
        os.replace(part_path, target)
    except BaseException:
        if os.path.exists(part_path):
            os.remove(part_path)
        raise


def _check_relocation(src: str, dest: str, src_display: str, dest_display: str) -> None:
    if not os.path.lexists(src):
        raise NotFound(f"Source '{src_display}' not found")
    if not os.path.isdir(os.path.dirname(dest)):
        raise NotFound(f"Destination directory for '{dest_display}' not found")
    if os.path.lexists(dest):
        raise Conflict(f"'{dest_display}' already exists")
    if os.path.isdir(src) and paths.is_within(src, dest):
        raise InvalidArgument(f"Cannot place '{src_display}' inside itself")


def _copy(src: str, dest: str) -> None:
    if os.path.isdir(src) and not os.path.islink(src):
        try:
            shutil.copytree(src, dest, symlinks=True)
        except BaseException:
            # Never leave a half-copied tree behind
            shutil.rmtree(dest, ignore_errors=True)
            raise
    else:
        shutil.copy2(src, dest, follow_symlinks=False)


def _move(src: str, dest: str) -> None:
    """Atomic rename on one volume, copy + delete across volumes."""
    try:
        os.rename(src, dest)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        logger.info("Cross-device move, falling back to copy + delete: %s", dest)
        shutil.move(src, dest)


# =============================================================================
# Gateway
# =============================================================================

class FileGateway:
    """
    Scoped file operations over server roots.

    The gateway itself is stateless apart from the lock table; the server
    root is passed to every call.

    Attributes:
        locks:            Per-path lock table shared by all operations.
        max_upload_bytes: Upper bound for a single uploaded file (None = no limit).
    """

    def __init__(self, max_upload_bytes: int | None = None):
        self.locks = PathLocks()
        self.max_upload_bytes = max_upload_bytes

    async def _run(self, action: str, display: str, func, *args):
        """Run a blocking helper and translate OS errors at the boundary."""
        try:
            return await run_in_threadpool(func, *args)
        except PanelError:
            raise
        except OSError as e:
            raise translate_os_error(e, display, action)

    # -- Read-only -------------------------------------------------------------

    async def list_dir(self, root: str, rel: str | None) -> list[DirectoryEntry]:
        """List a directory in filesystem order, creating it if absent."""
        abs_dir = paths.resolve(root, rel)
        display = _display(rel)
        return await self._run("list directory", display, _list_dir, abs_dir, display)

    async def read_file(self, root: str, rel: str | None) -> str:
        abs_path = paths.resolve(root, rel)
        display = _display(rel)
        return await self._run("read file", display, _read_file, abs_path, display)

    async def download_path(self, root: str, rel: str | None) -> str:
        """
        Return the absolute path of a regular file for streaming.

        Raises:
            NotFound: If the path is missing or is not a regular file.
        """
        abs_path = paths.resolve(root, rel)
        if not await run_in_threadpool(os.path.isfile, abs_path):
            raise NotFound(f"'{_display(rel)}' not found")
        return abs_path

    # -- Mutating --------------------------------------------------------------

    async def write_file(self, root: str, rel: str | None, content: str) -> None:
        """Overwrite a file with ``content``. The parent must already exist."""
        abs_path = paths.resolve(root, rel)
        display = _display(rel)
        async with self.locks.hold(abs_path):
            await self._run("write file", display, _write_file, abs_path, content, display)

    async def delete_entry(self, root: str, rel: str | None) -> None:
        abs_path = paths.resolve(root, rel, follow_leaf=False)
        display = _display(rel)
        if abs_path == paths.resolve(root, ""):
            raise InvalidArgument("Cannot delete the server root")
        async with self.locks.hold(abs_path):
            await self._run("delete", display, _delete_entry, abs_path, display)

    async def make_directory(self, root: str, rel: str | None) -> None:
        abs_path = paths.resolve(root, rel)
        display = _display(rel)
        await self._run("create directory", display,
                        lambda p: os.makedirs(p, exist_ok=True), abs_path)

    async def upload_many(self, root: str, target_rel: str | None,
                          files: Iterable[Any]) -> int:
        """
        Relocate staged uploads into a target directory.

        Args:
            root:       Server root.
            target_rel: Target directory relative to the root.
            files:      Objects with ``filename`` and a readable ``file``
                        (e.g. starlette UploadFile).

        Returns:
            Number of files stored. Same-named files are overwritten.
        """
        files = list(files)
        if not files:
            raise InvalidArgument("No file uploaded")

        target_dir = paths.resolve(root, target_rel)
        display = _display(target_rel)
        if not await run_in_threadpool(os.path.isdir, target_dir):
            raise NotFound(f"Directory '{display}' not found")

        # Resolve every name before storing anything
        planned = []
        for upload in files:
            original = (upload.filename or "").replace("\\", "/")
            target = paths.resolve_name(target_dir, os.path.basename(original), "file name")
            planned.append((upload, target, os.path.basename(target)))

        for upload, target, name in planned:
            async with self.locks.hold(target):
                await self._run("upload file", paths.join(display, name),
                                _store_upload, upload.file, target, self.max_upload_bytes)
        logger.info("Stored %d upload(s) in %s", len(planned), display)
        return len(planned)

    async def extract_archive(self, root: str, archive_rel: str | None,
                              target_rel: str | None) -> int:
        """
        Extract a .zip archive into a directory, overwriting existing files.

        Raises:
            InvalidArgument: If the archive name does not end in .zip.
            NotFound:        If the archive does not exist.
        """
        archive_display = _display(archive_rel)
        if not archive.is_zip_name(archive_display):
            raise InvalidArgument("File is not a ZIP archive")

        archive_path = paths.resolve(root, archive_rel)
        target_dir = paths.resolve(root, target_rel)
        if not await run_in_threadpool(os.path.isfile, archive_path):
            raise NotFound(f"'{archive_display}' not found")

        async with self.locks.hold(archive_path, target_dir):
            count = await self._run("extract archive", archive_display,
                                    archive.extract_all, archive_path, target_dir)
        logger.info("Extracted %d file(s) from %s", count, archive_display)
        return count

    async def copy(self, root: str, src_rel: str | None, dest_rel: str | None) -> None:
        """Copy a file or directory tree. Never overwrites."""
        await self._relocate(root, src_rel, dest_rel, _copy, "copy")

    async def move(self, root: str, src_rel: str | None, dest_rel: str | None) -> None:
        """Move a file or directory. Never overwrites."""
        await self._relocate(root, src_rel, dest_rel, _move, "move")

    async def rename(self, root: str, old_rel: str | None, new_rel: str | None) -> None:
        """Rename a file or directory. Never overwrites."""
        await self._relocate(root, old_rel, new_rel, _move, "rename")

    async def move_many(self, root: str, names: list[str], src_dir_rel: str | None,
                        dest_dir_rel: str | None) -> list[dict[str, str]]:
        """
        Move several entries from one directory to another.

        A failing item is reported in its result row and does not stop the
        remaining moves.

        Returns:
            One {filename, status, message} dict per requested name.
        """
        dest_dir = paths.resolve(root, dest_dir_rel)
        paths.resolve(root, src_dir_rel)
        if not await run_in_threadpool(os.path.isdir, dest_dir):
            raise NotFound(f"Destination directory '{_display(dest_dir_rel)}' not found")

        results = []
        for name in names:
            try:
                paths.validate_name(name, "file name")
                await self.move(root, paths.join(src_dir_rel, name),
                                paths.join(dest_dir_rel, name))
                results.append({"filename": name, "status": "success",
                                "message": "File moved successfully"})
            except PanelError as e:
                results.append({"filename": name, "status": "error", "message": e.message})
        return results

    async def _relocate(self, root, src_rel, dest_rel, func, action: str) -> None:
        src = paths.resolve(root, src_rel, follow_leaf=False)
        dest = paths.resolve(root, dest_rel, follow_leaf=False)
        src_display, dest_display = _display(src_rel), _display(dest_rel)
        if src == paths.resolve(root, ""):
            raise InvalidArgument(f"Cannot {action} the server root")

        async with self.locks.hold(src, dest):
            await self._run(action, src_display, _check_relocation,
                            src, dest, src_display, dest_display)
            await self._run(action, src_display, func, src, dest)
        logger.info("%s %s -> %s", action.capitalize(), src_display, dest_display)
