"""amdgpu backend: AMDGPU_INFO queries, DPM clock tables and hwmon power."""

from __future__ import annotations

import ctypes
import logging
import os

from drmstat._backend import Capability, DrmBackend
from drmstat._devices import virt_fn_of
from drmstat._fdinfo import FdinfoScanner
from drmstat._hwmon import Sensor
from drmstat._ioctl import drm_iow, ioctl
from drmstat._sysfs import read_text
from drmstat._types import (
    Device,
    DeviceKind,
    DeviceType,
    FreqLimits,
    FreqReading,
    MemInfo,
    PowerReading,
)

logger = logging.getLogger("drmstat.backend.amdgpu")

AMDGPU_INFO_DEV_INFO = 0x16
AMDGPU_INFO_MEMORY = 0x19

AMDGPU_IDS_FLAGS_FUSION = 0x1

MICRO = 1e-6


class AmdgpuInfo(ctypes.Structure):
    _fields_ = [
        ("return_pointer", ctypes.c_uint64),
        ("return_size", ctypes.c_uint32),
        ("query", ctypes.c_uint32),
        ("extra", ctypes.c_uint32 * 4),
    ]


class AmdgpuInfoDevice(ctypes.Structure):
    """Leading part of ``drm_amdgpu_info_device``, up to ``ids_flags``.

    The kernel copies at most ``return_size`` bytes, so the tail can be left out.
    """

    _fields_ = [
        ("device_id", ctypes.c_uint32),
        ("chip_rev", ctypes.c_uint32),
        ("external_rev", ctypes.c_uint32),
        ("pci_rev", ctypes.c_uint32),
        ("family", ctypes.c_uint32),
        ("num_shader_engines", ctypes.c_uint32),
        ("num_shader_arrays_per_engine", ctypes.c_uint32),
        ("gpu_counter_freq", ctypes.c_uint32),
        ("max_engine_clock", ctypes.c_uint64),
        ("max_memory_clock", ctypes.c_uint64),
        ("cu_active_number", ctypes.c_uint32),
        ("cu_ao_mask", ctypes.c_uint32),
        ("cu_bitmap", (ctypes.c_uint32 * 4) * 4),
        ("enabled_rb_pipes_mask", ctypes.c_uint32),
        ("num_rb_pipes", ctypes.c_uint32),
        ("num_hw_gfx_contexts", ctypes.c_uint32),
        ("pcie_gen", ctypes.c_uint32),
        ("ids_flags", ctypes.c_uint64),
    ]


class AmdgpuHeapInfo(ctypes.Structure):
    _fields_ = [
        ("total_heap_size", ctypes.c_uint64),
        ("usable_heap_size", ctypes.c_uint64),
        ("heap_usage", ctypes.c_uint64),
        ("max_allocation", ctypes.c_uint64),
    ]


class AmdgpuMemoryInfo(ctypes.Structure):
    _fields_ = [
        ("vram", AmdgpuHeapInfo),
        ("cpu_accessible_vram", AmdgpuHeapInfo),
        ("gtt", AmdgpuHeapInfo),
    ]


DRM_IOCTL_AMDGPU_INFO = drm_iow(0x05, ctypes.sizeof(AmdgpuInfo))


def info_query(fd: int, query: int, out: ctypes.Structure) -> None:
    """Fill ``out`` from one AMDGPU_INFO query. Raises OSError."""
    req = AmdgpuInfo(
        return_pointer=ctypes.addressof(out),
        return_size=ctypes.sizeof(out),
        query=query,
    )
    ioctl(fd, DRM_IOCTL_AMDGPU_INFO, req)


def parse_dpm_levels(text: str) -> list[tuple[int, int, bool]]:
    """Parse a ``pp_dpm_*`` table into ``(level, MHz, current)`` rows.

    Lines look like ``1: 1200Mhz *``; the star marks the current level.
    """
    levels: list[tuple[int, int, bool]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        level, sep, value = line.partition(":")
        if not sep:
            raise ValueError(f"bad DPM line {line!r}")
        value = value.strip()
        current = value.endswith("*")
        value = value.removesuffix("*").strip()
        if not value.endswith("Mhz"):
            raise ValueError(f"bad DPM line {line!r}")
        levels.append((int(level), int(value[: -len("Mhz")]), current))
    return levels


def gfx_limits_from(levels: list[tuple[int, int, bool]]) -> FreqLimits:
    """Limits from the three-level sclk table.

    The clock can run below level 0 and well above level 2, so the minimum
    is pinned to zero and the maximum gets half again on top.
    """
    maximum: int | None = None
    for level, mhz, _ in levels:
        if level == 2:
            maximum = (mhz + mhz // 2) * 1_000_000
        elif level not in (0, 1):
            raise ValueError(f"unexpected DPM level {level}")
    return FreqLimits(minimum=0, maximum=maximum)


class AmdgpuBackend(DrmBackend):
    """Backend for the amdgpu kernel driver. Reports the gfx clock only."""

    name = "amdgpu"
    capabilities = frozenset(Capability) - {
        Capability.ENGINES,
        Capability.THROTTLE,
        Capability.PKG_POWER,
    }

    def __init__(self, device: Device, scanner: FdinfoScanner) -> None:
        super().__init__(device, scanner)
        self._node_fd = -1
        self._power_sensor: tuple[Sensor, str] | None = None

    def node_fd(self) -> int:
        if self._node_fd < 0:
            path = self.device.render_node()
            if path is None:
                raise FileNotFoundError(f"no render node for {self.device.slot}")
            self._node_fd = os.open(path, os.O_RDWR | os.O_CLOEXEC)
        return self._node_fd

    def _read_dev_type(self) -> DeviceType:
        info = AmdgpuInfoDevice()
        info_query(self.node_fd(), AMDGPU_INFO_DEV_INFO, info)
        kind = DeviceKind.INTEGRATED
        if not info.ids_flags & AMDGPU_IDS_FLAGS_FUSION:
            kind = DeviceKind.DISCRETE
        return DeviceType(kind=kind, virt=virt_fn_of(self.device.sysfs_path))

    def _setup(self) -> None:
        hwmon = self.hwmon()
        if not self.device.dev_type.is_discrete or hwmon is None:
            return
        for sensor in hwmon.of_type("power", "average"):
            self._power_sensor = (sensor, "average")
            break
        else:
            for sensor in hwmon.of_type("power", "input"):
                self._power_sensor = (sensor, "input")
                break
        logger.info(
            "%s: hwmon power reporting %s",
            self.device.slot, "OK" if self._power_sensor else "FAILED",
        )

    def _read_mem(self) -> MemInfo:
        mem = AmdgpuMemoryInfo()
        info_query(self.node_fd(), AMDGPU_INFO_MEMORY, mem)
        return MemInfo(
            smem_used=mem.gtt.heap_usage,
            smem_total=mem.gtt.total_heap_size,
            vram_used=mem.vram.heap_usage,
            vram_total=mem.vram.total_heap_size,
        )

    def _sclk_levels(self) -> list[tuple[int, int, bool]]:
        return parse_dpm_levels(read_text(os.path.join(self.device.sysfs_path, "pp_dpm_sclk")))

    def _read_freqs(self) -> dict[str, FreqReading]:
        actual = None
        for _, mhz, current in self._sclk_levels():
            if current:
                actual = mhz * 1_000_000
        return {"gfx": FreqReading(actual=actual)}

    def _read_freq_limits(self) -> dict[str, FreqLimits]:
        return {"gfx": gfx_limits_from(self._sclk_levels())}

    def _read_power(self) -> dict[str, PowerReading]:
        hwmon = self.hwmon()
        if self._power_sensor is None or hwmon is None:
            return {}
        sensor, item = self._power_sensor
        return {"gpu": PowerReading(watts=hwmon.read(sensor, item) * MICRO)}

    def _region_bucket(self, region: str) -> str | None:
        if region.startswith(("cpu", "gtt")):
            return "smem"
        if region.startswith("vram"):
            return "vram"
        return None

    def shutdown(self) -> None:
        if self._node_fd >= 0:
            os.close(self._node_fd)
            self._node_fd = -1
