"""perf_event_open counters and PMU discovery through sysfs.

Only what the GPU backends need: uncore/GPU PMU sources described under
``/sys/devices/<source>``, opened as one event group per device and read
with ``PERF_FORMAT_GROUP``.
"""

from __future__ import annotations

import ctypes
import errno
import logging
import os
import platform
import struct
from typing import Any

from drmstat._ioctl import retry_eintr

logger = logging.getLogger("drmstat.perf")

PERF_SRC_DIR = "/sys/devices"
PERF_BUS_DIR = "/sys/bus/event_source/devices"
PERF_PARANOID = "/proc/sys/kernel/perf_event_paranoid"

PERF_FORMAT_GROUP = 1 << 3

_NR_PERF_EVENT_OPEN = {
    "x86_64": 298,
    "aarch64": 241,
    "riscv64": 241,
    "i686": 336,
    "ppc64le": 319,
}


class PerfEventAttr(ctypes.Structure):
    """``struct perf_event_attr`` up to ``config3`` (PERF_ATTR_SIZE_VER8)."""

    _fields_ = [
        ("type", ctypes.c_uint32),
        ("size", ctypes.c_uint32),
        ("config", ctypes.c_uint64),
        ("sample_period", ctypes.c_uint64),
        ("sample_type", ctypes.c_uint64),
        ("read_format", ctypes.c_uint64),
        ("flags", ctypes.c_uint64),
        ("wakeup_events", ctypes.c_uint32),
        ("bp_type", ctypes.c_uint32),
        ("config1", ctypes.c_uint64),
        ("config2", ctypes.c_uint64),
        ("branch_sample_type", ctypes.c_uint64),
        ("sample_regs_user", ctypes.c_uint64),
        ("sample_stack_user", ctypes.c_uint32),
        ("clockid", ctypes.c_int32),
        ("sample_regs_intr", ctypes.c_uint64),
        ("aux_watermark", ctypes.c_uint32),
        ("sample_max_stack", ctypes.c_uint16),
        ("reserved_2", ctypes.c_uint16),
        ("aux_sample_size", ctypes.c_uint32),
        ("reserved_3", ctypes.c_uint32),
        ("sig_data", ctypes.c_uint64),
        ("config3", ctypes.c_uint64),
    ]


_libc: ctypes.CDLL | None = None


def _syscall() -> Any:
    global _libc  # noqa: PLW0603
    if _libc is None:
        _libc = ctypes.CDLL(None, use_errno=True)
        _libc.syscall.restype = ctypes.c_long
    return _libc.syscall


@retry_eintr
def perf_event_open(attr: PerfEventAttr, pid: int, cpu: int, group_fd: int, flags: int = 0) -> int:
    """Open a perf event and return its fd. Raises OSError."""
    nr = _NR_PERF_EVENT_OPEN.get(platform.machine())
    if nr is None:
        raise OSError(errno.ENOSYS, "perf_event_open not wired for this architecture")
    fd = _syscall()(
        ctypes.c_long(nr),
        ctypes.byref(attr),
        ctypes.c_int(pid),
        ctypes.c_int(cpu),
        ctypes.c_int(group_fd),
        ctypes.c_ulong(flags),
    )
    if fd < 0:
        err = ctypes.get_errno()
        raise OSError(err, os.strerror(err))
    return int(fd)


def is_capable() -> bool:
    """Whether this process can open system-wide PMU events."""
    if not os.path.isfile(PERF_PARANOID):
        logger.debug("No perf_event_open support in the kernel")
        return False
    # TODO: check CAP_PERFMON instead of requiring root
    if os.geteuid() != 0:
        logger.debug("Non-root user, no perf event support")
        return False
    return True


class PmuSource:
    """A named PMU under ``/sys/devices`` with its events and format fields."""

    def __init__(self, name: str, *, root: str = PERF_SRC_DIR) -> None:
        self.name = name
        self._dir = os.path.join(root, name)

    def exists(self) -> bool:
        return os.path.isdir(self._dir)

    def has_event(self, event: str) -> bool:
        return os.path.isfile(os.path.join(self._dir, "events", event))

    def _read(self, *parts: str) -> str:
        with open(os.path.join(self._dir, *parts)) as f:
            return f.read().strip()

    def type(self) -> int:
        return int(self._read("type"))

    def cpu(self) -> int:
        """First CPU of the source's cpumask, 0 when there is none."""
        try:
            mask = self._read("cpumask")
        except OSError:
            return 0
        first = mask.split(",")[0].split("-")[0]
        return int(first) if first else 0

    def event_config(self, event: str) -> int:
        """Parse ``events/<event>`` (``event=0x02,umask=0x1``) into a config."""
        raw = self._read("events", event)
        config: int | None = None
        umask = 0
        for term in raw.split(","):
            key, _, value = term.strip().partition("=")
            if key.startswith("event") or key == "config":
                config = int(value, 16) if value.startswith("0x") else int(value)
            elif key.startswith("umask"):
                umask = int(value, 0)
            else:
                raise ValueError(f"unknown term {key!r} in {self.name}/{event}")
        if config is None:
            raise ValueError(f"no event config in {self.name}/{event}")
        return (umask << 8) | config

    def event_unit(self, event: str) -> str:
        try:
            return self._read("events", f"{event}.unit")
        except OSError:
            return ""

    def event_scale(self, event: str) -> float:
        try:
            return float(self._read("events", f"{event}.scale"))
        except OSError:
            return 1.0

    def format_shift(self, param: str, value: int) -> int:
        """Place ``value`` into the config bits named by ``format/<param>``."""
        raw = self._read("format", param)
        if not raw.startswith("config:"):
            raise ValueError(f"invalid format {raw!r} for {self.name}/{param}")
        bits = raw[len("config:"):]
        shift = int(bits.split("-")[0])
        return value << shift

    def has_format(self, param: str) -> bool:
        return os.path.isfile(os.path.join(self._dir, "format", param))

    def format_config(self, params: list[tuple[str, int]], config: int) -> int:
        for param, value in params:
            config |= self.format_shift(param, value)
        return config


def has_source(name: str) -> bool:
    return os.path.islink(os.path.join(PERF_BUS_DIR, name)) and os.path.isdir(
        os.path.join(PERF_SRC_DIR, name)
    )


class PerfGroup:
    """A group of counters on one PMU, read together in one syscall."""

    def __init__(self, source: PmuSource, *, cpu: int | None = None) -> None:
        self._source = source
        self._type = source.type()
        self._cpu = source.cpu() if cpu is None else cpu
        self._leader = -1
        self._fds: list[int] = []

    def add(self, config: int) -> int:
        """Add one event; returns its index in ``read()`` results."""
        attr = PerfEventAttr()
        attr.type = self._type
        attr.size = ctypes.sizeof(PerfEventAttr)
        attr.config = config
        attr.read_format = PERF_FORMAT_GROUP
        fd = perf_event_open(attr, -1, self._cpu, self._leader)
        if self._leader == -1:
            self._leader = fd
        self._fds.append(fd)
        return len(self._fds) - 1

    def __len__(self) -> int:
        return len(self._fds)

    def read(self) -> list[int]:
        """Current values of all events, in ``add()`` order."""
        if self._leader == -1:
            return []
        nr = len(self._fds)
        size = 8 * (nr + 1)
        raw = _read(self._leader, size)
        if len(raw) < size:
            raise OSError(errno.EIO, f"short perf read: {len(raw)} of {size} bytes")
        values = struct.unpack(f"={nr + 1}Q", raw[:size])
        return list(values[1:])

    def close(self) -> None:
        for fd in reversed(self._fds):
            try:
                os.close(fd)
            except OSError:
                pass
        self._fds.clear()
        self._leader = -1


@retry_eintr
def _read(fd: int, size: int) -> bytes:
    return os.read(fd, size)
