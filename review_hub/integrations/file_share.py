"""
Network file-share adapter.

Response attachments are picked from the project's network share.  Paths
may be absolute or relative to the project base path, but must resolve to
a location inside it.
"""

import logging
import os

from review_hub.core.exceptions import ExternalCallError

logger = logging.getLogger(__name__)


class FileShareError(ExternalCallError):
    """Raised when a file on the network share cannot be read."""


def validate_network_path(base_path: str | None) -> bool:
    """Return True if *base_path* is an accessible directory."""
    if not base_path:
        return False
    ok = os.path.isdir(base_path) and os.access(base_path, os.R_OK)
    if not ok:
        logger.warning("Network path validation failed path=%s", base_path)
    return ok


def resolve_path(path: str, base_path: str | None = None) -> str:
    """Resolve *path* against *base_path*; refuse anything outside it."""
    if not path:
        raise FileShareError("File path is empty")
    if not base_path:
        return os.path.realpath(path)

    root = os.path.realpath(base_path)
    full = os.path.realpath(os.path.join(root, path))
    if os.path.commonpath([root, full]) != root:
        raise FileShareError(f"Path escapes the project share: {path}")
    return full


def read_file_bytes(path: str, base_path: str | None = None) -> bytes:
    """Return the content of a file on the network share.

    Raises:
        FileShareError: If the path escapes *base_path* or the file cannot
            be read.
    """
    full = resolve_path(path, base_path)
    try:
        with open(full, "rb") as fh:
            return fh.read()
    except OSError as exc:
        logger.error("Failed to read file path=%s error=%s", full, exc)
        raise FileShareError(f"Failed to read file: {os.path.basename(path)}") from exc
