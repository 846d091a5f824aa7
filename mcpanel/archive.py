"""
mcpanel - ZIP Archive Helpers
===============================
Thin wrapper around ``zipfile`` used by the file gateway (extract) and the
server registry (backup / download as zip).

Every member name is resolved against the extraction directory with the
same resolver used for user paths, so an archive containing "../x" or an
absolute member name is rejected before anything is written.
"""

import os
import shutil
import zipfile

from mcpanel import paths
from mcpanel.errors import ServiceError


def is_zip_name(filename: str) -> bool:
    """True if the file name has a .zip extension (case-insensitive)."""
    return filename.lower().endswith(".zip")


def extract_all(archive_path: str, target_dir: str) -> int:
    """
    Extract every member of ``archive_path`` into ``target_dir``.

    Existing files are overwritten. The target directory is created if it
    does not exist.

    Returns:
        Number of files written.

    Raises:
        ContainmentError: If a member would land outside target_dir.
        ServiceError:     If the archive cannot be read.
    """
    try:
        with zipfile.ZipFile(archive_path) as zf:
            members = zf.infolist()
            # Validate the whole archive before writing anything
            planned = [(m, paths.resolve(target_dir, m.filename)) for m in members]

            os.makedirs(target_dir, exist_ok=True)
            written = 0
            for member, dest in planned:
                if member.is_dir():
                    os.makedirs(dest, exist_ok=True)
                    continue
                os.makedirs(os.path.dirname(dest), exist_ok=True)
                with zf.open(member) as src, open(dest, "wb") as out:
                    shutil.copyfileobj(src, out)
                written += 1
            return written
    except zipfile.BadZipFile as e:
        raise ServiceError(f"Failed to extract archive: {e}")


def write_tree(source_dir: str, archive_path: str) -> int:
    """
    Write the contents of ``source_dir`` to a new zip at ``archive_path``.

    Member names are relative to source_dir. Empty directories are kept.

    Returns:
        Size of the written archive in bytes.
    """
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for dirpath, dirnames, filenames in os.walk(source_dir):
            dirnames.sort()
            rel_dir = os.path.relpath(dirpath, source_dir)
            if rel_dir != "." and not filenames and not dirnames:
                zf.write(dirpath, rel_dir.replace(os.sep, "/") + "/")
            for fn in sorted(filenames):
                full = os.path.join(dirpath, fn)
                if os.path.abspath(full) == os.path.abspath(archive_path):
                    continue
                zf.write(full, os.path.relpath(full, source_dir).replace(os.sep, "/"))
    return os.path.getsize(archive_path)
