"""
mcpanel - Path Resolver
=========================
The single place where a user-supplied relative path is turned into an
absolute path under a server root.

Rules:
    - Null bytes are rejected outright.
    - Backslashes are treated as separators and leading separators are
      stripped, so "/plugins" means "<root>/plugins".
    - The joined path is normalized (".", "..", repeated separators) and
      must equal the root or sit below it. The comparison is done on path
      segments, so "/srv/root-evil" is never inside "/srv/root".
    - In strict mode (the default) symlinks are resolved before the
      comparison, so a link inside the root that points outside it is
      rejected as well.

No filesystem state is inspected before the check passes; callers must
never fall back to the unchecked path.
"""

import logging
import os

from mcpanel.errors import ContainmentError, InvalidArgument

logger = logging.getLogger(__name__)

# Characters never allowed in a single path segment created by the user
# (server names, new directory names, uploaded file names).
_FORBIDDEN_NAME_CHARS = set('/\\\0')


def is_within(root: str, candidate: str) -> bool:
    """Segment-wise containment test on two normalized absolute paths."""
    try:
        return os.path.commonpath([root, candidate]) == root
    except ValueError:
        # Different drives on Windows
        return False


def normalize_relative(relative_path: str | None) -> str:
    """
    Normalize a user-supplied relative path for display and joining.

    Returns "" for the root itself. The result may still start with ".."
    when the input escapes; resolve() is what rejects that.
    """
    if not relative_path:
        return ""
    if "\0" in relative_path:
        raise ContainmentError()
    cleaned = relative_path.replace("\\", "/").lstrip("/")
    if not cleaned:
        return ""
    normalized = os.path.normpath(cleaned).replace(os.sep, "/")
    return "" if normalized == "." else normalized


def resolve(root: str, relative_path: str | None, strict: bool = True,
            follow_leaf: bool = True) -> str:
    """
    Resolve ``relative_path`` against ``root`` with a containment check.

    Args:
        root:          Absolute path of the server root.
        relative_path: Path as sent by the client (may be empty or None).
        strict:        Also resolve symlinks before comparing.
        follow_leaf:   With strict, resolve the final component too. Pass
                       False for operations on the directory entry itself
                       (delete, rename), so a symlink inside the root can
                       be removed even when it points elsewhere.

    Returns:
        The normalized absolute path.

    Raises:
        ContainmentError: If the result escapes the root.
    """
    root_abs = os.path.normpath(os.path.abspath(root))
    rel = normalize_relative(relative_path)
    candidate = os.path.normpath(os.path.join(root_abs, rel)) if rel else root_abs

    if not is_within(root_abs, candidate):
        logger.warning("Rejected path outside root: %r -> %s", relative_path, candidate)
        raise ContainmentError()

    if strict:
        real_root = os.path.realpath(root_abs)
        if follow_leaf or candidate == root_abs:
            real_candidate = os.path.realpath(candidate)
        else:
            parent, leaf = os.path.split(candidate)
            real_candidate = os.path.join(os.path.realpath(parent), leaf)
        if not is_within(real_root, real_candidate):
            logger.warning("Rejected symlink escape: %r -> %s", relative_path, real_candidate)
            raise ContainmentError()

    return candidate


def join(*parts: str | None) -> str:
    """Join relative path fragments the way the client sends them."""
    return "/".join(p.strip("/\\") for p in parts if p and p.strip("/\\"))


def validate_name(name: str | None, what: str = "name") -> str:
    """
    Check that ``name`` is a single, safe path segment.

    Raises:
        InvalidArgument: If the name is empty, "." / "..", or contains a
                         separator or null byte.
    """
    name = (name or "").strip()
    if not name or name in (".", "..") or _FORBIDDEN_NAME_CHARS & set(name):
        raise InvalidArgument(f"Invalid {what}")
    return name


def resolve_name(root: str, name: str | None, what: str = "name") -> str:
    """Resolve a single validated segment directly under ``root``."""
    return resolve(root, validate_name(name, what))
