"""ioctl invoker with transparent EINTR retry, and DRM request number helpers."""

from __future__ import annotations

import fcntl
import functools
from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")

_IOC_NRBITS = 8
_IOC_TYPEBITS = 8
_IOC_SIZEBITS = 14

_IOC_NRSHIFT = 0
_IOC_TYPESHIFT = _IOC_NRSHIFT + _IOC_NRBITS
_IOC_SIZESHIFT = _IOC_TYPESHIFT + _IOC_TYPEBITS
_IOC_DIRSHIFT = _IOC_SIZESHIFT + _IOC_SIZEBITS

_IOC_WRITE = 1
_IOC_READ = 2

DRM_IOCTL_BASE = ord("d")
DRM_COMMAND_BASE = 0x40


def _ioc(direction: int, typ: int, nr: int, size: int) -> int:
    return (
        (direction << _IOC_DIRSHIFT)
        | (typ << _IOC_TYPESHIFT)
        | (nr << _IOC_NRSHIFT)
        | (size << _IOC_SIZESHIFT)
    )


def drm_iow(nr: int, size: int) -> int:
    """Request number of a driver-specific write-only DRM ioctl."""
    return _ioc(_IOC_WRITE, DRM_IOCTL_BASE, DRM_COMMAND_BASE + nr, size)


def drm_iowr(nr: int, size: int) -> int:
    """Request number of a driver-specific read/write DRM ioctl."""
    return _ioc(_IOC_READ | _IOC_WRITE, DRM_IOCTL_BASE, DRM_COMMAND_BASE + nr, size)


def retry_eintr(func: Callable[..., T]) -> Callable[..., T]:
    """Retry ``func`` for as long as it fails with an interrupted syscall."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        while True:
            try:
                return func(*args, **kwargs)
            except InterruptedError:
                continue

    return wrapper


@retry_eintr
def ioctl(fd: int, request: int, arg: Any) -> int:
    """Issue ``request`` on ``fd`` with a mutable ctypes struct or buffer.

    The kernel writes back into ``arg``. Raises OSError on failure.
    """
    return fcntl.ioctl(fd, request, arg, True)
