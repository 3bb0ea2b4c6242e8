"""Local and remote path normalisation, validation and quoting utilities."""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

# Characters that keep their special meaning inside a double-quoted shell word.
_DOUBLE_QUOTE_SPECIALS = ('\\', '"', "$", "`")


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB")."""
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* can be handed to the remote scp process.

    Rejects empty paths and paths containing null bytes or newlines, which
    would corrupt the remote command line.
    """
    if not path:
        logger.warning("Remote path rejected — empty")
        return False
    if "\x00" in path or "\n" in path:
        logger.warning("Remote path rejected — contains control character: %r", path)
        return False
    return True


def split_remote_path(path: str) -> tuple[str, str]:
    """Split a remote destination into ``(parent_directory, basename)``.

    ``/srv/data/report.csv`` → ``("/srv/data", "report.csv")``; a bare name is
    placed in the remote working directory (``"."``).
    """
    pure = PurePosixPath(path)
    return str(pure.parent), pure.name


def quote_remote_path(path: str) -> str:
    """Wrap *path* in double quotes for the remote shell, escaping specials."""
    escaped = "".join(f"\\{ch}" if ch in _DOUBLE_QUOTE_SPECIALS else ch for ch in path)
    return f'"{escaped}"'


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()
