"""DRM client fdinfo parsing and the /proc scan that finds DRM file descriptors."""

from __future__ import annotations

import logging
import os
import stat
import time
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from drmstat._devices import sysname_from_drm_minor
from drmstat._proc import PROC_ROOT, ProcStat, list_pids, read_cmdline, read_stat
from drmstat._sysfs import SYSFS_DRM
from drmstat._types import MemRegion

logger = logging.getLogger("drmstat.fdinfo")

DRM_MAJOR = 226

_UNITS = {"KiB": 1024, "MiB": 1024 * 1024, "GiB": 1024 * 1024 * 1024}

_MEM_KEYS = ("total", "shared", "resident", "purgeable", "active")


@dataclass(frozen=True)
class EngineUsage:
    """Per-engine counters for one client, as the kernel reports them."""

    name: str
    capacity: int = 1
    time_ns: int | None = None
    cycles: int | None = None
    total_cycles: int | None = None


@dataclass(frozen=True)
class DrmFdinfo:
    """Parsed ``drm-*`` keys of one DRM file descriptor."""

    minor: int
    pdev: str
    client_id: int
    driver: str = ""
    engines: dict[str, EngineUsage] = field(default_factory=dict)
    mem_regions: dict[str, MemRegion] = field(default_factory=dict)


def _bytes(value: str) -> int:
    parts = value.split()
    nr = int(parts[0])
    if len(parts) == 2:
        nr *= _UNITS.get(parts[1], 1)
    return nr


def parse_fdinfo(text: str, minor: int) -> DrmFdinfo:
    """Parse fdinfo text. Raises ValueError if it is malformed or not DRM."""
    pdev = ""
    client_id: int | None = None
    driver = ""
    engines: dict[str, dict[str, int]] = {}
    regions: dict[str, dict[str, int]] = {}

    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if not sep or not key.startswith("drm-"):
            continue
        value = value.strip()
        if key == "drm-pdev":
            pdev = value
        elif key == "drm-driver":
            driver = value
        elif key == "drm-client-id":
            client_id = int(value)
        elif key.startswith("drm-engine-capacity-"):
            engines.setdefault(key[len("drm-engine-capacity-"):], {})["capacity"] = int(value)
        elif key.startswith("drm-engine-"):
            engines.setdefault(key[len("drm-engine-"):], {})["time_ns"] = int(value.split()[0])
        elif key.startswith("drm-cycles-"):
            engines.setdefault(key[len("drm-cycles-"):], {})["cycles"] = int(value)
        elif key.startswith("drm-total-cycles-"):
            engines.setdefault(key[len("drm-total-cycles-"):], {})["total_cycles"] = int(value)
        elif key.startswith("drm-memory-"):
            # legacy key, resident memory of a region
            reg = regions.setdefault(key[len("drm-memory-"):], {})
            reg["resident"] = _bytes(value)
            reg.setdefault("total", reg["resident"])
        else:
            for mkey in _MEM_KEYS:
                prefix = f"drm-{mkey}-"
                if key.startswith(prefix):
                    regions.setdefault(key[len(prefix):], {})[mkey] = _bytes(value)
                    break

    if client_id is None:
        raise ValueError("no drm-client-id in fdinfo")

    return DrmFdinfo(
        minor=minor,
        pdev=pdev,
        client_id=client_id,
        driver=driver,
        engines={name: EngineUsage(name=name, **vals) for name, vals in engines.items()},
        mem_regions={name: MemRegion(name=name, **vals) for name, vals in regions.items()},
    )


def drm_minor_of(path: str) -> int | None:
    """DRM minor of the character device behind ``path``, or None."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not stat.S_ISCHR(st.st_mode) or os.major(st.st_rdev) != DRM_MAJOR:
        return None
    return os.minor(st.st_rdev)


@dataclass(frozen=True)
class FdinfoEntry:
    """One DRM client as seen through one process."""

    pid: int
    info: DrmFdinfo
    proc: ProcStat | None
    cmdline: str
    timestamp_ns: int
    shared_pids: tuple[int, ...] = ()


class FdinfoScanner:
    """Scans /proc once per iteration and hands entries out per device.

    A client reachable from several processes (fd passed or inherited) is
    attributed to the first PID found; the others go to ``shared_pids``.
    Drivers that do not print ``drm-pdev`` are matched to their device
    through the DRM minor under ``sysfs_root``.
    """

    def __init__(self, *, root: str = PROC_ROOT, sysfs_root: str = SYSFS_DRM) -> None:
        self._root = root
        self._sysfs_root = sysfs_root
        self._entries: dict[str, list[FdinfoEntry]] = {}
        self._minor_slots: dict[int, str | None] = {}

    def refresh(self, pids: Iterable[int] | None = None) -> None:
        self._minor_slots = {}
        by_key: dict[tuple[str, int, int], FdinfoEntry] = {}
        shared: dict[tuple[str, int, int], list[int]] = {}

        for pid in sorted(pids) if pids is not None else self._all_pids():
            for info in self._scan_pid(pid):
                key = (info.pdev, info.minor, info.client_id)
                owner = by_key.get(key)
                if owner is None:
                    by_key[key] = self._entry(pid, info)
                elif owner.pid != pid and pid not in shared.setdefault(key, []):
                    shared[key].append(pid)

        entries: dict[str, list[FdinfoEntry]] = {}
        for key, entry in by_key.items():
            if key in shared:
                entry = FdinfoEntry(
                    pid=entry.pid,
                    info=entry.info,
                    proc=entry.proc,
                    cmdline=entry.cmdline,
                    timestamp_ns=entry.timestamp_ns,
                    shared_pids=tuple(shared[key]),
                )
            entries.setdefault(key[0], []).append(entry)
        for lst in entries.values():
            lst.sort(key=lambda e: (e.info.minor, e.info.client_id))
        self._entries = entries

    def entries_for(self, pdev: str) -> list[FdinfoEntry]:
        return list(self._entries.get(pdev, []))

    def _all_pids(self) -> list[int]:
        try:
            return list_pids(root=self._root)
        except OSError:
            logger.debug("Can't list %s", self._root, exc_info=True)
            return []

    def _entry(self, pid: int, info: DrmFdinfo) -> FdinfoEntry:
        try:
            proc: ProcStat | None = read_stat(pid, root=self._root)
        except (OSError, ValueError):
            proc = None
        return FdinfoEntry(
            pid=pid,
            info=info,
            proc=proc,
            cmdline=read_cmdline(pid, root=self._root),
            timestamp_ns=time.monotonic_ns(),
        )

    def _scan_pid(self, pid: int) -> list[DrmFdinfo]:
        fd_dir = os.path.join(self._root, str(pid), "fd")
        try:
            fds = os.listdir(fd_dir)
        except OSError:
            return []

        found: list[DrmFdinfo] = []
        seen: set[tuple[int, int]] = set()
        for fd in fds:
            minor = drm_minor_of(os.path.join(fd_dir, fd))
            if minor is None:
                continue
            try:
                with open(os.path.join(self._root, str(pid), "fdinfo", fd)) as f:
                    info = parse_fdinfo(f.read(), minor)
            except (OSError, ValueError):
                # process exited or fd closed mid-read
                logger.debug("Skipping fdinfo %d/%s", pid, fd, exc_info=True)
                continue
            if not info.pdev:
                info = replace(info, pdev=self._slot_of_minor(info.minor) or "")
            if not info.pdev or (info.minor, info.client_id) in seen:
                continue
            seen.add((info.minor, info.client_id))
            found.append(info)
        return found

    def _slot_of_minor(self, minor: int) -> str | None:
        if minor not in self._minor_slots:
            self._minor_slots[minor] = sysname_from_drm_minor(minor, root=self._sysfs_root)
        return self._minor_slots[minor]
