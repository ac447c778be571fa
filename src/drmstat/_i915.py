"""i915 backend: memory regions by ioctl, per-GT freqs, engine busyness from perf."""

from __future__ import annotations

import ctypes
import logging
import os

from drmstat import _perf
from drmstat._backend import Capability
from drmstat._devices import virt_fn_of
from drmstat._intel import ENGINES_PMU, EnginesPmu, IntelBackend, mhz_file, read_throttle
from drmstat._ioctl import drm_iowr, ioctl
from drmstat._sysfs import numbered_dirs, read_int, read_text
from drmstat._types import (
    DeviceKind,
    DeviceType,
    FreqLimits,
    FreqReading,
    MemInfo,
    ThrottleReason,
)

logger = logging.getLogger("drmstat.backend.i915")

DRM_I915_QUERY_MEMORY_REGIONS = 4

I915_MEMORY_CLASS_SYSTEM = 0
I915_MEMORY_CLASS_DEVICE = 1

ENGINE_CLASS_NAMES = ("render", "copy", "video", "video-enhance", "compute")


class I915QueryItem(ctypes.Structure):
    _fields_ = [
        ("query_id", ctypes.c_uint64),
        ("length", ctypes.c_int32),
        ("flags", ctypes.c_uint32),
        ("data_ptr", ctypes.c_uint64),
    ]


class I915Query(ctypes.Structure):
    _fields_ = [
        ("num_items", ctypes.c_uint32),
        ("flags", ctypes.c_uint32),
        ("items_ptr", ctypes.c_uint64),
    ]


class I915MemoryRegionInfo(ctypes.Structure):
    _fields_ = [
        ("memory_class", ctypes.c_uint16),
        ("memory_instance", ctypes.c_uint16),
        ("rsvd0", ctypes.c_uint32),
        ("probed_size", ctypes.c_uint64),
        ("unallocated_size", ctypes.c_uint64),
        ("rsvd1", ctypes.c_uint64 * 8),
    ]


class I915QueryMemoryRegionsHeader(ctypes.Structure):
    _fields_ = [
        ("num_regions", ctypes.c_uint32),
        ("rsvd", ctypes.c_uint32 * 3),
    ]


DRM_IOCTL_I915_QUERY = drm_iowr(0x39, ctypes.sizeof(I915Query))


def query_memory_regions(fd: int) -> list[I915MemoryRegionInfo]:
    """Run ``DRM_I915_QUERY_MEMORY_REGIONS``: a sizing pass, then the real one."""
    item = I915QueryItem(query_id=DRM_I915_QUERY_MEMORY_REGIONS)
    query = I915Query(num_items=1, items_ptr=ctypes.addressof(item))

    ioctl(fd, DRM_IOCTL_I915_QUERY, query)
    if item.length <= 0:
        raise OSError(-item.length, "i915 memory regions query failed")

    buf = ctypes.create_string_buffer(item.length)
    item.data_ptr = ctypes.addressof(buf)
    ioctl(fd, DRM_IOCTL_I915_QUERY, query)
    if item.length <= 0:
        raise OSError(-item.length, "i915 memory regions query failed")

    header = I915QueryMemoryRegionsHeader.from_buffer(buf)
    array_t = I915MemoryRegionInfo * header.num_regions
    regions = array_t.from_buffer(buf, ctypes.sizeof(I915QueryMemoryRegionsHeader))
    return [I915MemoryRegionInfo.from_buffer_copy(r) for r in regions]


def mem_info_from(regions: list[I915MemoryRegionInfo]) -> MemInfo:
    smem_used = smem_total = vram_used = vram_total = 0
    has_vram = False
    for region in regions:
        used = region.probed_size - region.unallocated_size
        if region.memory_class == I915_MEMORY_CLASS_SYSTEM:
            smem_total += region.probed_size
            smem_used += used
        elif region.memory_class == I915_MEMORY_CLASS_DEVICE:
            has_vram = True
            vram_total += region.probed_size
            vram_used += used
        else:
            logger.warning("Unknown i915 memory class %d, skipping", region.memory_class)
    return MemInfo(
        smem_used=smem_used,
        smem_total=smem_total,
        vram_used=vram_used if has_vram else None,
        vram_total=vram_total if has_vram else None,
    )


class I915Backend(IntelBackend):
    """Backend for the i915 kernel driver."""

    name = "i915"
    # smem used is unreliable without CAP_PERFMON and always equals total
    capabilities = frozenset(Capability) - {Capability.SMEM_USED}

    def _gt_dirs(self) -> list[str]:
        return numbered_dirs(os.path.join(self.card_dir(), "gt"), "gt")

    def _read_dev_type(self) -> DeviceType:
        mem = mem_info_from(query_memory_regions(self.node_fd()))
        kind = DeviceKind.DISCRETE if mem.vram_total is not None else DeviceKind.INTEGRATED
        return DeviceType(kind=kind, virt=virt_fn_of(self.device.sysfs_path))

    def _setup(self) -> None:
        if self.has_option(ENGINES_PMU):
            try:
                self._engines_pmu = self._open_engines_pmu()
                logger.info("%s: engines PMU init OK", self.device.slot)
            except (OSError, ValueError):
                logger.info("%s: engines PMU init FAILED", self.device.slot)
                logger.debug("Engines PMU setup failed", exc_info=True)
        self.setup_power()

    def _engines_info(self) -> list[tuple[str, int]]:
        base = os.path.join(self.card_dir(), "engine")
        engines: list[tuple[str, int]] = []
        for entry in sorted(os.listdir(base)):
            path = os.path.join(base, entry)
            if not os.path.isdir(path):
                continue
            engines.append(
                (read_text(os.path.join(path, "name")), read_int(os.path.join(path, "class")))
            )
        return engines

    def _open_engines_pmu(self) -> EnginesPmu:
        if not _perf.is_capable():
            raise OSError("no PMU support")
        name = "i915"
        if self.device.dev_type.is_discrete:
            name = f"i915_{self.device.slot}"
        name = name.replace(":", "_")
        if not _perf.has_source(name):
            raise OSError(f"no PMU source {name!r}")

        source = _perf.PmuSource(name)
        # i915 engine events are only accepted on CPU 0
        group = _perf.PerfGroup(source, cpu=0)
        pmu = EnginesPmu(group)
        try:
            for eng_name, eng_class in self._engines_info():
                if eng_class >= len(ENGINE_CLASS_NAMES):
                    logger.debug("Skipping engine %s of class %d", eng_name, eng_class)
                    continue
                event = f"{eng_name}-busy"
                unit = source.event_unit(event)
                if unit != "ns":
                    raise ValueError(f"event {event} has unit {unit!r}, need ns")
                pmu.add_engine(ENGINE_CLASS_NAMES[eng_class], group.add(source.event_config(event)))
        except (OSError, ValueError):
            group.close()
            raise
        return pmu

    def _read_mem(self) -> MemInfo:
        return mem_info_from(query_memory_regions(self.node_fd()))

    def _read_freqs(self) -> dict[str, FreqReading]:
        out: dict[str, FreqReading] = {}
        for gt_dir in self._gt_dirs():
            out[os.path.basename(gt_dir)] = FreqReading(
                actual=mhz_file(os.path.join(gt_dir, "rps_act_freq_mhz")),
                requested=mhz_file(os.path.join(gt_dir, "rps_cur_freq_mhz")),
                minimum=mhz_file(os.path.join(gt_dir, "rps_min_freq_mhz")),
                maximum=mhz_file(os.path.join(gt_dir, "rps_max_freq_mhz")),
            )
        return out

    def _read_freq_limits(self) -> dict[str, FreqLimits]:
        out: dict[str, FreqLimits] = {}
        for gt_dir in self._gt_dirs():
            out[os.path.basename(gt_dir)] = FreqLimits(
                minimum=mhz_file(os.path.join(gt_dir, "rps_RPn_freq_mhz")),
                efficient=mhz_file(os.path.join(gt_dir, "rps_RP1_freq_mhz")),
                maximum=mhz_file(os.path.join(gt_dir, "rps_RP0_freq_mhz")),
            )
        return out

    def _read_throttle(self) -> dict[str, ThrottleReason]:
        return {
            os.path.basename(gt_dir): read_throttle(
                gt_dir, "throttle_reason_", "throttle_reason_status"
            )
            for gt_dir in self._gt_dirs()
        }

    def _region_bucket(self, region: str) -> str | None:
        if region.startswith(("system", "stolen-system")):
            return "smem"
        if region.startswith(("local", "stolen-local")):
            return "vram"
        return None
