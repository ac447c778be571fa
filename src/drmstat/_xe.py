"""xe backend: device queries by ioctl, tile/GT sysfs, and the xe PMU."""

from __future__ import annotations

import ctypes
import logging
import os
import time
from collections.abc import Callable
from typing import TypeVar

from drmstat import _perf
from drmstat._backend import Capability
from drmstat._devices import virt_fn_of
from drmstat._fdinfo import FdinfoScanner
from drmstat._intel import (
    ENGINES_PMU,
    FREQS_PMU,
    POWER_MSR,
    EnginesPmu,
    IntelBackend,
    mhz_file,
    read_throttle,
)
from drmstat._ioctl import drm_iowr, ioctl
from drmstat._sysfs import link_name, numbered_dirs
from drmstat._types import (
    Device,
    DeviceKind,
    DeviceType,
    FreqLimits,
    FreqReading,
    MemInfo,
    ThrottleReason,
)

logger = logging.getLogger("drmstat.backend.xe")

T = TypeVar("T")

DRM_XE_DEVICE_QUERY_ENGINES = 0
DRM_XE_DEVICE_QUERY_MEM_REGIONS = 1
DRM_XE_DEVICE_QUERY_CONFIG = 2

DRM_XE_MEM_REGION_CLASS_SYSMEM = 0
DRM_XE_MEM_REGION_CLASS_VRAM = 1

DRM_XE_QUERY_CONFIG_FLAGS = 1
DRM_XE_QUERY_CONFIG_FLAG_HAS_VRAM = 1 << 0

ENGINE_CLASS_NAMES = ("rcs", "bcs", "vcs", "vecs", "ccs")


class XeDeviceQuery(ctypes.Structure):
    _fields_ = [
        ("extensions", ctypes.c_uint64),
        ("query", ctypes.c_uint32),
        ("size", ctypes.c_uint32),
        ("data", ctypes.c_uint64),
        ("reserved", ctypes.c_uint64 * 2),
    ]


class XeQueryHeader(ctypes.Structure):
    """Leading ``num_*``/``pad`` pair shared by the array-returning queries."""

    _fields_ = [
        ("num", ctypes.c_uint32),
        ("pad", ctypes.c_uint32),
    ]


class XeMemRegion(ctypes.Structure):
    _fields_ = [
        ("mem_class", ctypes.c_uint16),
        ("instance", ctypes.c_uint16),
        ("min_page_size", ctypes.c_uint32),
        ("total_size", ctypes.c_uint64),
        ("used", ctypes.c_uint64),
        ("cpu_visible_size", ctypes.c_uint64),
        ("cpu_visible_used", ctypes.c_uint64),
        ("reserved", ctypes.c_uint64 * 6),
    ]


class XeEngine(ctypes.Structure):
    _fields_ = [
        ("engine_class", ctypes.c_uint16),
        ("engine_instance", ctypes.c_uint16),
        ("gt_id", ctypes.c_uint16),
        ("pad", ctypes.c_uint16),
        ("reserved", ctypes.c_uint64 * 3),
    ]


DRM_IOCTL_XE_DEVICE_QUERY = drm_iowr(0x00, ctypes.sizeof(XeDeviceQuery))


def device_query(fd: int, query_id: int) -> ctypes.Array[ctypes.c_char] | None:
    """Run one xe device query; None when the kernel reports nothing."""
    dq = XeDeviceQuery(query=query_id)
    ioctl(fd, DRM_IOCTL_XE_DEVICE_QUERY, dq)
    if dq.size == 0:
        logger.warning("xe query %d returned 0 size", query_id)
        return None
    buf = ctypes.create_string_buffer(dq.size)
    dq.data = ctypes.addressof(buf)
    ioctl(fd, DRM_IOCTL_XE_DEVICE_QUERY, dq)
    return buf


def _query_array(fd: int, query_id: int, item_t: type[ctypes.Structure]) -> list:
    buf = device_query(fd, query_id)
    if buf is None:
        return []
    header = XeQueryHeader.from_buffer(buf)
    array_t = item_t * header.num
    items = array_t.from_buffer(buf, ctypes.sizeof(XeQueryHeader))
    return [item_t.from_buffer_copy(i) for i in items]


def query_config(fd: int) -> list[int]:
    buf = device_query(fd, DRM_XE_DEVICE_QUERY_CONFIG)
    if buf is None:
        return []
    header = XeQueryHeader.from_buffer(buf)
    info = (ctypes.c_uint64 * header.num).from_buffer(buf, ctypes.sizeof(XeQueryHeader))
    return list(info)


def query_mem_regions(fd: int) -> list[XeMemRegion]:
    return _query_array(fd, DRM_XE_DEVICE_QUERY_MEM_REGIONS, XeMemRegion)


def query_engines(fd: int) -> list[XeEngine]:
    return _query_array(fd, DRM_XE_DEVICE_QUERY_ENGINES, XeEngine)


def mem_info_from(regions: list[XeMemRegion]) -> MemInfo:
    smem_used = smem_total = vram_used = vram_total = 0
    has_vram = False
    for region in regions:
        if region.mem_class == DRM_XE_MEM_REGION_CLASS_SYSMEM:
            smem_total += region.total_size
            smem_used += region.used
        elif region.mem_class == DRM_XE_MEM_REGION_CLASS_VRAM:
            has_vram = True
            vram_total += region.total_size
            vram_used += region.used
        else:
            logger.warning("Unknown xe memory class %d, skipping", region.mem_class)
    return MemInfo(
        smem_used=smem_used,
        smem_total=smem_total,
        vram_used=vram_used if has_vram else None,
        vram_total=vram_total if has_vram else None,
    )


def pf_slot_of(slot: str, sysfs_path: str) -> str:
    """Slot of the physical function that owns ``slot``; itself for a PF."""
    return link_name(os.path.join(sysfs_path, "physfn")) or slot


def sriov_fn_of(slot: str, sysfs_path: str) -> int:
    """SR-IOV function number: 0 for the PF, N+1 for ``virtfnN``."""
    pf_path = os.path.join(sysfs_path, "physfn")
    if not os.path.islink(pf_path):
        return 0
    for nr, vf_dir in enumerate(_virtfn_links(pf_path)):
        if link_name(vf_dir) == slot:
            return nr + 1
    raise ValueError(f"no SR-IOV function found for {slot}")


def _virtfn_links(pf_path: str) -> list[str]:
    links: list[str] = []
    nr = 0
    while os.path.islink(path := os.path.join(pf_path, f"virtfn{nr}")):
        links.append(path)
        nr += 1
    return links


class XeFreqsPmu:
    """Requested and actual GT frequency from cumulative MHz counters.

    Each read yields the average over the interval since the previous read;
    the first read yields nothing.
    """

    def __init__(self, group: _perf.PerfGroup, gts: list[str]) -> None:
        self._group = group
        self._gts = gts
        self._prev: tuple[int, list[int]] | None = None

    def read(self) -> dict[str, tuple[int | None, int | None]]:
        values = self._group.read()
        now = time.monotonic_ns()
        prev, self._prev = self._prev, (now, values)
        out: dict[str, tuple[int | None, int | None]] = {}
        for i, gt in enumerate(self._gts):
            if prev is None or now <= prev[0]:
                out[gt] = (None, None)
                continue
            if values[2 * i] < prev[1][2 * i] or values[2 * i + 1] < prev[1][2 * i + 1]:
                # counters reset
                out[gt] = (None, None)
                continue
            elapsed = (now - prev[0]) / 1e9
            requested = (values[2 * i] - prev[1][2 * i]) / elapsed
            actual = (values[2 * i + 1] - prev[1][2 * i + 1]) / elapsed
            out[gt] = (int(requested * 1_000_000), int(actual * 1_000_000))
        return out

    def close(self) -> None:
        self._group.close()


class XeBackend(IntelBackend):
    """Backend for the xe kernel driver. Only tile 0 is reported."""

    name = "xe"
    capabilities = frozenset(Capability)
    supported_options = frozenset({ENGINES_PMU, FREQS_PMU, POWER_MSR})

    def __init__(self, device: Device, scanner: FdinfoScanner) -> None:
        super().__init__(device, scanner)
        self._freqs_pmu: XeFreqsPmu | None = None

    def _gts_base(self) -> str:
        return os.path.join(self.device.sysfs_path, "tile0")

    def _gt_freq_dirs(self) -> list[tuple[str, str]]:
        return [
            (os.path.basename(gt), os.path.join(gt, "freq0"))
            for gt in numbered_dirs(self._gts_base(), "gt")
            if os.path.isdir(os.path.join(gt, "freq0"))
        ]

    def _read_dev_type(self) -> DeviceType:
        virt = virt_fn_of(self.device.sysfs_path)
        cfg = query_config(self.node_fd())
        if len(cfg) <= DRM_XE_QUERY_CONFIG_FLAGS:
            return DeviceType(virt=virt)
        if cfg[DRM_XE_QUERY_CONFIG_FLAGS] & DRM_XE_QUERY_CONFIG_FLAG_HAS_VRAM:
            return DeviceType(kind=DeviceKind.DISCRETE, virt=virt)
        return DeviceType(kind=DeviceKind.INTEGRATED, virt=virt)

    def _pmu_source(self) -> _perf.PmuSource:
        if not _perf.is_capable():
            raise OSError("no PMU support")
        pf_slot = pf_slot_of(self.device.slot, self.device.sysfs_path)
        name = f"xe_{pf_slot}".replace(":", "_")
        if not _perf.has_source(name):
            raise OSError(f"no PMU source {name!r}")
        return _perf.PmuSource(name)

    def _setup(self) -> None:
        if self.has_option(ENGINES_PMU) or self.has_option(FREQS_PMU):
            try:
                source = self._pmu_source()
            except OSError:
                logger.debug("%s: no xe PMU source", self.device.slot, exc_info=True)
            else:
                if self.has_option(ENGINES_PMU):
                    self._engines_pmu = self._try_open("engines", self._open_engines_pmu, source)
                if self.has_option(FREQS_PMU):
                    self._freqs_pmu = self._try_open("freqs", self._open_freqs_pmu, source)
        self.setup_power()

    def _try_open(
        self,
        what: str,
        opener: Callable[[_perf.PmuSource], T],
        source: _perf.PmuSource,
    ) -> T | None:
        try:
            pmu = opener(source)
        except (OSError, ValueError):
            logger.info("%s: %s PMU init FAILED", self.device.slot, what)
            logger.debug("%s PMU setup failed", what, exc_info=True)
            return None
        logger.info("%s: %s PMU init OK", self.device.slot, what)
        return pmu

    def _open_engines_pmu(self, source: _perf.PmuSource) -> EnginesPmu:
        sriov_fn = sriov_fn_of(self.device.slot, self.device.sysfs_path)
        active_cfg = source.event_config("engine-active-ticks")
        total_cfg = source.event_config("engine-total-ticks")
        has_fn = source.has_format("function")

        group = _perf.PerfGroup(source)
        pmu = EnginesPmu(group)
        try:
            for eng in query_engines(self.node_fd()):
                if eng.engine_class >= len(ENGINE_CLASS_NAMES):
                    continue
                params = [
                    ("gt", eng.gt_id),
                    ("engine_class", eng.engine_class),
                    ("engine_instance", eng.engine_instance),
                ]
                if has_fn:
                    params.append(("function", sriov_fn))
                busy = group.add(source.format_config(params, active_cfg))
                total = group.add(source.format_config(params, total_cfg))
                pmu.add_engine(ENGINE_CLASS_NAMES[eng.engine_class], busy, total)
        except (OSError, ValueError):
            group.close()
            raise
        if not pmu:
            group.close()
            raise ValueError("xe reported no engines")
        return pmu

    def _open_freqs_pmu(self, source: _perf.PmuSource) -> XeFreqsPmu:
        events = ("gt-requested-frequency", "gt-actual-frequency")
        for event in events:
            unit = source.event_unit(event)
            if unit != "MHz":
                raise ValueError(f"event {event} has unit {unit!r}, need MHz")
        configs = [source.event_config(e) for e in events]

        gts = [name for name, _ in self._gt_freq_dirs()]
        group = _perf.PerfGroup(source)
        try:
            for nr in range(len(gts)):
                for config in configs:
                    group.add(source.format_config([("gt", nr)], config))
        except (OSError, ValueError):
            group.close()
            raise
        return XeFreqsPmu(group, gts)

    def _read_mem(self) -> MemInfo:
        return mem_info_from(query_mem_regions(self.node_fd()))

    def _read_freqs(self) -> dict[str, FreqReading]:
        pmu_freqs = self._freqs_pmu.read() if self._freqs_pmu is not None else None
        out: dict[str, FreqReading] = {}
        for gt, freq_dir in self._gt_freq_dirs():
            if pmu_freqs is not None:
                requested, actual = pmu_freqs.get(gt, (None, None))
            else:
                requested = mhz_file(os.path.join(freq_dir, "cur_freq"))
                actual = mhz_file(os.path.join(freq_dir, "act_freq"))
            out[gt] = FreqReading(
                actual=actual,
                requested=requested,
                minimum=mhz_file(os.path.join(freq_dir, "min_freq")),
                maximum=mhz_file(os.path.join(freq_dir, "max_freq")),
            )
        return out

    def _read_freq_limits(self) -> dict[str, FreqLimits]:
        return {
            gt: FreqLimits(
                minimum=mhz_file(os.path.join(freq_dir, "rpn_freq")),
                efficient=mhz_file(os.path.join(freq_dir, "rpe_freq")),
                maximum=mhz_file(os.path.join(freq_dir, "rp0_freq")),
            )
            for gt, freq_dir in self._gt_freq_dirs()
        }

    def _read_throttle(self) -> dict[str, ThrottleReason]:
        return {
            gt: read_throttle(os.path.join(freq_dir, "throttle"), "reason_", "status")
            for gt, freq_dir in self._gt_freq_dirs()
        }

    def _region_bucket(self, region: str) -> str | None:
        if region.startswith(("system", "gtt")):
            return "smem"
        if region.startswith("vram"):
            return "vram"
        if region.startswith("stolen"):
            return "vram" if self.device.dev_type.is_discrete else "smem"
        return None

    def shutdown(self) -> None:
        if self._freqs_pmu is not None:
            self._freqs_pmu.close()
            self._freqs_pmu = None
        super().shutdown()
