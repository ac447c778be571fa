"""Tests for the shared Intel pieces, the i915 backend and Intel power sources."""

from __future__ import annotations

from pathlib import Path

import pytest

from drmstat._backend import Capability
from drmstat._fdinfo import FdinfoScanner
from drmstat._hwmon import Hwmon
from drmstat._i915 import (
    I915_MEMORY_CLASS_DEVICE,
    I915_MEMORY_CLASS_SYSTEM,
    I915Backend,
    I915MemoryRegionInfo,
    mem_info_from,
)
from drmstat._intel import ENGINES_PMU, POWER_MSR, EnginesPmu, mhz_file, read_throttle
from drmstat._intel_power import DGpuPowerHwmon, intel_power_source
from drmstat._types import Device, EngineCounter, ThrottleReason

SLOT = "0000:00:02.0"


class _FakeGroup:
    """Stands in for a perf group with scripted counter values."""

    def __init__(self, values: list[int]) -> None:
        self.values = values
        self.closed = False

    def read(self) -> list[int]:
        return list(self.values)

    def close(self) -> None:
        self.closed = True


def _i915_tree(root: Path) -> Device:
    sysfs = root / SLOT
    gt0 = sysfs / "drm" / "card0" / "gt" / "gt0"
    gt0.mkdir(parents=True)
    files = {
        "rps_act_freq_mhz": "350",
        "rps_cur_freq_mhz": "400",
        "rps_min_freq_mhz": "300",
        "rps_max_freq_mhz": "1300",
        "rps_RPn_freq_mhz": "100",
        "rps_RP1_freq_mhz": "350",
        "rps_RP0_freq_mhz": "1300",
        "throttle_reason_status": "1",
        "throttle_reason_pl1": "1",
        "throttle_reason_pl2": "0",
        "throttle_reason_thermal": "1",
    }
    for name, value in files.items():
        (gt0 / name).write_text(value + "\n")
    return Device(slot=SLOT, driver="i915", sysfs_path=str(sysfs))


def _region(mem_class: int, probed: int, unallocated: int) -> I915MemoryRegionInfo:
    return I915MemoryRegionInfo(
        memory_class=mem_class, probed_size=probed, unallocated_size=unallocated
    )


class TestReadThrottle:
    def test_flags_are_ored(self, tmp_path: Path) -> None:
        (tmp_path / "status").write_text("1\n")
        (tmp_path / "reason_pl1").write_text("1\n")
        (tmp_path / "reason_prochot").write_text("0\n")
        (tmp_path / "reason_vr_tdc").write_text("1\n")
        reasons = read_throttle(str(tmp_path), "reason_", "status")
        assert reasons == ThrottleReason.STATUS | ThrottleReason.PL1 | ThrottleReason.VR_TDC

    def test_not_throttled(self, tmp_path: Path) -> None:
        (tmp_path / "status").write_text("0\n")
        assert read_throttle(str(tmp_path), "reason_", "status") == ThrottleReason.NONE

    def test_no_files(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            read_throttle(str(tmp_path), "reason_", "status")


def test_mhz_file(tmp_path: Path) -> None:
    (tmp_path / "f").write_text("1250\n")
    assert mhz_file(str(tmp_path / "f")) == 1_250_000_000
    assert mhz_file(str(tmp_path / "missing")) is None


class TestEnginesPmu:
    def test_busy_and_total_events(self) -> None:
        group = _FakeGroup([10, 100, 30, 100, 5, 50])
        pmu = EnginesPmu(group)  # type: ignore[arg-type]
        pmu.add_engine("rcs", 0, 1)
        pmu.add_engine("ccs", 2, 3)
        pmu.add_engine("ccs", 4, 5)
        assert len(pmu) == 2
        out = pmu.read()
        assert out["rcs"] == EngineCounter(busy=10, total=100)
        assert out["ccs"] == EngineCounter(busy=35, total=150)

    def test_busy_only_uses_wall_clock(self) -> None:
        group = _FakeGroup([1000, 3000])
        pmu = EnginesPmu(group)  # type: ignore[arg-type]
        pmu.add_engine("video", 0)
        pmu.add_engine("video", 1)
        counter = pmu.read()["video"]
        assert counter.busy == 4000
        assert counter.capacity == 2
        assert counter.total is not None and counter.total > 0

    def test_close(self) -> None:
        group = _FakeGroup([])
        EnginesPmu(group).close()  # type: ignore[arg-type]
        assert group.closed


class TestI915MemInfo:
    def test_integrated(self) -> None:
        mem = mem_info_from([_region(I915_MEMORY_CLASS_SYSTEM, 16 << 30, 12 << 30)])
        assert mem.smem_total == 16 << 30
        assert mem.smem_used == 4 << 30
        assert mem.vram_total is None
        assert mem.vram_used is None

    def test_discrete(self) -> None:
        mem = mem_info_from([
            _region(I915_MEMORY_CLASS_SYSTEM, 16 << 30, 12 << 30),
            _region(I915_MEMORY_CLASS_DEVICE, 8 << 30, 6 << 30),
        ])
        assert mem.vram_total == 8 << 30
        assert mem.vram_used == 2 << 30

    def test_unknown_class_skipped(self) -> None:
        mem = mem_info_from([_region(7, 1, 0)])
        assert mem.smem_total == 0
        assert mem.vram_total is None


class TestI915Backend:
    def test_capabilities(self) -> None:
        assert Capability.SMEM_USED not in I915Backend.capabilities
        assert Capability.ENGINES in I915Backend.capabilities

    def test_options(self, tmp_path: Path) -> None:
        backend = I915Backend(_i915_tree(tmp_path), FdinfoScanner())
        backend.apply_options([f"{ENGINES_PMU},{POWER_MSR}", "freqs=pmu"])
        assert backend.has_option(ENGINES_PMU)
        assert backend.has_option(POWER_MSR)
        assert not backend.has_option("freqs=pmu")

    def test_freqs_and_limits(self, tmp_path: Path) -> None:
        backend = I915Backend(_i915_tree(tmp_path), FdinfoScanner())
        snap = backend.read_device_snapshot()
        freq = snap.freqs["gt0"]
        assert freq.actual == 350_000_000
        assert freq.requested == 400_000_000
        assert freq.minimum == 300_000_000
        assert freq.maximum == 1_300_000_000
        limits = snap.freq_limits["gt0"]
        assert limits.minimum == 100_000_000
        assert limits.efficient == 350_000_000
        assert limits.maximum == 1_300_000_000

    def test_throttle(self, tmp_path: Path) -> None:
        backend = I915Backend(_i915_tree(tmp_path), FdinfoScanner())
        snap = backend.read_device_snapshot()
        assert snap.throttle == {
            "gt0": ThrottleReason.STATUS | ThrottleReason.PL1 | ThrottleReason.THERMAL
        }

    def test_memory_absent_without_device_node(self, tmp_path: Path) -> None:
        backend = I915Backend(_i915_tree(tmp_path), FdinfoScanner())
        snap = backend.read_device_snapshot()
        assert snap.mem.smem_total is None
        assert snap.engines == {}
        assert snap.power == {}

    def test_region_buckets(self, tmp_path: Path) -> None:
        backend = I915Backend(_i915_tree(tmp_path), FdinfoScanner())
        assert backend._region_bucket("system0") == "smem"
        assert backend._region_bucket("stolen-system0") == "smem"
        assert backend._region_bucket("local0") == "vram"
        assert backend._region_bucket("stolen-local0") == "vram"
        assert backend._region_bucket("other") is None

    def test_shutdown_closes_engines_pmu(self, tmp_path: Path) -> None:
        backend = I915Backend(_i915_tree(tmp_path), FdinfoScanner())
        group = _FakeGroup([])
        backend._engines_pmu = EnginesPmu(group)  # type: ignore[arg-type]
        backend.shutdown()
        assert group.closed


def _power_hwmon(root: Path, files: dict[str, str]) -> Hwmon:
    path = root / "hwmon" / "hwmon2"
    path.mkdir(parents=True)
    for name, value in files.items():
        (path / name).write_text(value + "\n")
    return Hwmon(str(path))


class TestDGpuPowerHwmon:
    def test_instantaneous_power(self, tmp_path: Path) -> None:
        hwmon = _power_hwmon(tmp_path, {
            "power1_input": "25000000",
            "power1_label": "pkg",
            "power2_average": "40000000",
            "power2_label": "card",
        })
        readings = DGpuPowerHwmon(hwmon).read()
        assert readings["gpu"].watts == pytest.approx(25.0)
        assert readings["package"].watts == pytest.approx(40.0)
        assert readings["gpu"].energy is None

    def test_energy_fallback(self, tmp_path: Path) -> None:
        hwmon = _power_hwmon(tmp_path, {
            "energy1_input": "123456789",
            "energy1_label": "pkg",
            "power1_max": "100000000",
        })
        readings = DGpuPowerHwmon(hwmon).read()
        assert readings["gpu"].energy == 123456789
        assert readings["gpu"].energy_scale == pytest.approx(1e-6)
        assert readings["gpu"].watts is None

    def test_nothing_usable(self, tmp_path: Path) -> None:
        hwmon = _power_hwmon(tmp_path, {"temp1_input": "40000"})
        with pytest.raises(ValueError):
            DGpuPowerHwmon(hwmon)


class TestIntelPowerSource:
    def test_discrete_uses_hwmon(self, tmp_path: Path) -> None:
        hwmon = _power_hwmon(tmp_path, {"power1_input": "1000000", "power1_label": "pkg"})
        source = intel_power_source(discrete=True, hwmon=hwmon, use_msr=False)
        assert source is not None
        assert source.name == "dGPU:hwmon"

    def test_discrete_without_hwmon(self) -> None:
        assert intel_power_source(discrete=True, hwmon=None, use_msr=False) is None

