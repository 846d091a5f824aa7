"""
mcpanel - Error Taxonomy
==========================
Typed failures raised by the file gateway, the server registry and the
process supervisor. Every error carries a user-safe message and the HTTP
status it maps to; routes never build error responses by hand.

    ContainmentError  400  path escapes the server root
    InvalidArgument   400  wrong file type, bad name, empty command
    Unauthorized      401  no or invalid session
    NotFound          404  missing server, file or process
    Conflict          409  destination or name already exists
    ServiceError      500  process backend or archive failure

The JSON body of every error response is ``{"error": <message>}``.
"""

import errno
import logging

logger = logging.getLogger(__name__)


class PanelError(Exception):
    """Base class for all expected, user-visible failures."""

    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ContainmentError(PanelError):
    status_code = 400
    default_message = "Invalid path"


class InvalidArgument(PanelError):
    status_code = 400
    default_message = "Invalid argument"


class EmptyInput(InvalidArgument):
    default_message = "Input is required"


class Unauthorized(PanelError):
    status_code = 401
    default_message = "Unauthorized"


class NotFound(PanelError):
    status_code = 404
    default_message = "Not found"


class Conflict(PanelError):
    status_code = 409
    default_message = "Already exists"


class ServiceError(PanelError):
    status_code = 500
    default_message = "Service error"


def translate_os_error(exc: OSError, display: str, action: str) -> PanelError:
    """
    Map an OSError raised at an operation boundary to a taxonomy error.

    Args:
        exc:     The original OSError.
        display: Path as the user sees it (relative, never absolute).
        action:  Short verb phrase used in the ServiceError message.

    Returns:
        A PanelError instance ready to raise.
    """
    if isinstance(exc, FileNotFoundError):
        return NotFound(f"'{display}' not found")
    if isinstance(exc, FileExistsError):
        return Conflict(f"'{display}' already exists")
    if isinstance(exc, IsADirectoryError):
        return InvalidArgument(f"'{display}' is a directory")
    if isinstance(exc, NotADirectoryError):
        return InvalidArgument(f"'{display}' is not a directory")
    if exc.errno == errno.ENOTEMPTY:
        return Conflict(f"'{display}' already exists")

    logger.error("Failed to %s %s: %s", action, display, exc)
    return ServiceError(f"Failed to {action}")
