"""Thin sysfs readers. Absent or unreadable attributes come back as None."""

from __future__ import annotations

import logging
import os

logger = logging.getLogger("drmstat.sysfs")

SYSFS_DRM = "/sys/class/drm"


def read_text(path: str) -> str:
    """Read a sysfs attribute, stripped. Raises OSError."""
    with open(path) as f:
        return f.read().strip()


def read_int(path: str, base: int = 10) -> int:
    """Read an integer attribute. Raises OSError or ValueError."""
    return int(read_text(path), base)


def try_text(path: str) -> str | None:
    try:
        return read_text(path)
    except OSError:
        logger.debug("Can't read %s", path, exc_info=True)
        return None


def try_int(path: str, base: int = 10) -> int | None:
    try:
        return read_int(path, base)
    except (OSError, ValueError):
        logger.debug("Can't read integer from %s", path, exc_info=True)
        return None


def link_name(path: str) -> str | None:
    """Basename of a symlink target, e.g. ``device/driver`` -> ``xe``."""
    try:
        return os.path.basename(os.readlink(path))
    except OSError:
        return None


def numbered_dirs(base: str, prefix: str) -> list[str]:
    """``prefix0``, ``prefix1``, ... under base, stopping at the first gap."""
    dirs: list[str] = []
    nr = 0
    while True:
        path = os.path.join(base, f"{prefix}{nr}")
        if not os.path.isdir(path):
            break
        dirs.append(path)
        nr += 1
    return dirs
