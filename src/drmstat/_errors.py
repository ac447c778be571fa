"""Error taxonomy for conditions that cross the backend boundary."""

from __future__ import annotations


class DrmstatError(Exception):
    """Base class for drmstat errors."""


class DeviceGoneError(DrmstatError):
    """The device disappeared (hot-unplug, driver unbind)."""

    def __init__(self, slot: str) -> None:
        super().__init__(f"device {slot} is gone")
        self.slot = slot


class MonitoredProcessExited(DrmstatError):
    """The root of the monitored process tree exited."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"monitored process {pid} exited")
        self.pid = pid
