"""Intel GPU power sources.

Integrated GPUs share the CPU package RAPL domains: ``gpu`` is PP1 and
``package`` is the whole package (CPU, GPU and memory controller). Discrete
cards report through hwmon: ``gpu`` is the chip, ``package`` the card.
"""

from __future__ import annotations

import logging
from typing import Protocol

from drmstat import _perf
from drmstat._hwmon import Hwmon, Sensor
from drmstat._msr import (
    MSR_PKG_ENERGY_STATUS,
    MSR_PP1_ENERGY_STATUS,
    MSR_RAPL_POWER_UNIT,
    Msr,
    rapl_energy_scale,
)
from drmstat._types import PowerReading

logger = logging.getLogger("drmstat.backend.intel_power")

MICRO = 1e-6


class PowerSource(Protocol):
    name: str

    def read(self) -> dict[str, PowerReading]: ...

    def close(self) -> None: ...


class IGpuPowerPerf:
    """RAPL energy counters through the perf ``power`` PMU."""

    name = "iGPU:perf"

    def __init__(self, *, source: _perf.PmuSource | None = None) -> None:
        pmu = source or _perf.PmuSource("power")
        for event in ("energy-gpu", "energy-pkg"):
            unit = pmu.event_unit(event)
            if unit != "Joules":
                raise ValueError(f"{event} unit is {unit!r}, need Joules")
        self._gpu_scale = pmu.event_scale("energy-gpu")
        self._pkg_scale = pmu.event_scale("energy-pkg")
        if self._gpu_scale <= 0.0 or self._pkg_scale <= 0.0:
            raise ValueError("RAPL energy scales must be positive")
        self._group = _perf.PerfGroup(pmu)
        try:
            self._gpu_idx = self._group.add(pmu.event_config("energy-gpu"))
            self._pkg_idx = self._group.add(pmu.event_config("energy-pkg"))
        except (OSError, ValueError):
            self._group.close()
            raise

    def read(self) -> dict[str, PowerReading]:
        values = self._group.read()
        return {
            "gpu": PowerReading(energy=values[self._gpu_idx], energy_scale=self._gpu_scale),
            "package": PowerReading(energy=values[self._pkg_idx], energy_scale=self._pkg_scale),
        }

    def close(self) -> None:
        self._group.close()


class IGpuPowerMsr:
    """RAPL energy status MSRs; 32-bit counters that wrap."""

    name = "iGPU:MSR"

    def __init__(self, msr: Msr | None = None) -> None:
        self._msr = msr or Msr(0)
        try:
            self._scale = rapl_energy_scale(self._msr.read(MSR_RAPL_POWER_UNIT))
        except OSError:
            self._msr.close()
            raise

    def read(self) -> dict[str, PowerReading]:
        gpu = self._msr.read(MSR_PP1_ENERGY_STATUS) & 0xFFFFFFFF
        pkg = self._msr.read(MSR_PKG_ENERGY_STATUS) & 0xFFFFFFFF
        return {
            "gpu": PowerReading(energy=gpu, energy_scale=self._scale, width=32),
            "package": PowerReading(energy=pkg, energy_scale=self._scale, width=32),
        }

    def close(self) -> None:
        self._msr.close()


def _domain_of(sensor: Sensor) -> str | None:
    if sensor.label in ("pkg", ""):
        return "gpu"
    if sensor.label == "card":
        return "package"
    return None


class DGpuPowerHwmon:
    """Discrete card power from hwmon.

    Prefers instantaneous ``power*_input``/``power*_average`` (µW); falls
    back to ``energy*_input`` accumulators (µJ).
    """

    name = "dGPU:hwmon"

    def __init__(self, hwmon: Hwmon) -> None:
        self._hwmon = hwmon
        self._sensors: dict[str, tuple[Sensor, str]] = {}
        self._energy = False

        for sensor in hwmon.sensors:
            if sensor.stype != "power":
                continue
            item = "input" if "input" in sensor.items else "average"
            domain = _domain_of(sensor)
            if domain is not None and item in sensor.items:
                self._sensors.setdefault(domain, (sensor, item))

        if not self._sensors:
            for sensor in hwmon.of_type("energy"):
                domain = _domain_of(sensor)
                if domain is not None:
                    self._sensors.setdefault(domain, (sensor, "input"))
            self._energy = True

        if not self._sensors:
            raise ValueError(f"no usable power or energy sensors in {hwmon.path}")

    def read(self) -> dict[str, PowerReading]:
        out: dict[str, PowerReading] = {}
        for domain, (sensor, item) in self._sensors.items():
            value = self._hwmon.read(sensor, item)
            if self._energy:
                out[domain] = PowerReading(energy=value, energy_scale=MICRO)
            else:
                out[domain] = PowerReading(watts=value * MICRO)
        return out

    def close(self) -> None:
        pass


def intel_power_source(
    *, discrete: bool, hwmon: Hwmon | None, use_msr: bool
) -> PowerSource | None:
    """Pick the power source for an Intel GPU, or None if there is none."""
    if discrete:
        if hwmon is None:
            return None
        try:
            return DGpuPowerHwmon(hwmon)
        except ValueError:
            logger.debug("No hwmon power method", exc_info=True)
            return None

    if not use_msr and _perf.is_capable():
        try:
            return IGpuPowerPerf()
        except (OSError, ValueError):
            logger.debug("Can't get RAPL power from perf, trying MSR", exc_info=True)

    try:
        return IGpuPowerMsr()
    except OSError:
        logger.debug("Can't get RAPL power from MSR", exc_info=True)
        return None
