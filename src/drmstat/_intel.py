"""Pieces shared by the i915 and xe backends: options, node fd, power, throttling."""

from __future__ import annotations

import logging
import os
import time

from drmstat import _perf
from drmstat._backend import DrmBackend
from drmstat._fdinfo import FdinfoScanner
from drmstat._intel_power import PowerSource, intel_power_source
from drmstat._sysfs import try_int
from drmstat._types import Device, EngineCounter, PowerReading, ThrottleReason

logger = logging.getLogger("drmstat.backend.intel")

ENGINES_PMU = "engines=pmu"
FREQS_PMU = "freqs=pmu"
POWER_MSR = "power=msr"

THROTTLE_REASONS: tuple[tuple[str, ThrottleReason], ...] = (
    ("pl1", ThrottleReason.PL1),
    ("pl2", ThrottleReason.PL2),
    ("pl4", ThrottleReason.PL4),
    ("prochot", ThrottleReason.PROCHOT),
    ("ratl", ThrottleReason.RATL),
    ("thermal", ThrottleReason.THERMAL),
    ("vr_tdc", ThrottleReason.VR_TDC),
    ("vr_thermalert", ThrottleReason.VR_THERMALERT),
)


def read_throttle(directory: str, prefix: str, status: str) -> ThrottleReason:
    """OR together the throttle flag files found in ``directory``.

    ``status`` names the summary file, ``prefix`` precedes each reason.
    """
    reasons = ThrottleReason.NONE
    found = False
    files = [(status, ThrottleReason.STATUS)]
    files += [(f"{prefix}{suffix}", flag) for suffix, flag in THROTTLE_REASONS]
    for name, flag in files:
        value = try_int(os.path.join(directory, name))
        if value is None:
            continue
        found = True
        if value:
            reasons |= flag
    if not found:
        raise FileNotFoundError(f"no throttle reason files in {directory}")
    return reasons


def mhz_file(path: str) -> int | None:
    value = try_int(path)
    return value * 1_000_000 if value is not None else None


class IntelBackend(DrmBackend):
    """Base for Intel GPU drivers."""

    supported_options: frozenset[str] = frozenset({ENGINES_PMU, POWER_MSR})

    def __init__(self, device: Device, scanner: FdinfoScanner) -> None:
        super().__init__(device, scanner)
        self._options: set[str] = set()
        self._node_fd = -1
        self._power: PowerSource | None = None
        self._engines_pmu: EnginesPmu | None = None

    def accepts_option(self, key: str, value: str) -> bool:
        opt = f"{key}={value}"
        if opt not in self.supported_options:
            return False
        self._options.add(opt)
        return True

    def has_option(self, opt: str) -> bool:
        return opt in self._options

    def node_fd(self) -> int:
        """fd on the render node (or the card node), opened on first use."""
        if self._node_fd < 0:
            path = self.device.render_node() or (
                self.device.dev_nodes[0].path if self.device.dev_nodes else None
            )
            if path is None:
                raise FileNotFoundError(f"no device node for {self.device.slot}")
            self._node_fd = os.open(path, os.O_RDWR | os.O_CLOEXEC)
        return self._node_fd

    def card_dir(self) -> str:
        minor = self.device.card_minor()
        return os.path.join(self.device.sysfs_path, "drm", f"card{minor or 0}")

    def setup_power(self) -> None:
        self._power = intel_power_source(
            discrete=self.device.dev_type.is_discrete,
            hwmon=self.hwmon(),
            use_msr=self.has_option(POWER_MSR),
        )
        if self._power is None:
            logger.info("%s: no power reporting", self.device.slot)
        else:
            logger.info("%s: power reporting from %s", self.device.slot, self._power.name)

    def _read_engines(self) -> dict[str, EngineCounter]:
        if self._engines_pmu is None:
            return {}
        return self._engines_pmu.read()

    def _read_power(self) -> dict[str, PowerReading]:
        if self._power is None:
            return {}
        return self._power.read()

    def shutdown(self) -> None:
        if self._engines_pmu is not None:
            self._engines_pmu.close()
            self._engines_pmu = None
        if self._power is not None:
            self._power.close()
            self._power = None
        if self._node_fd >= 0:
            os.close(self._node_fd)
            self._node_fd = -1


class EnginesPmu:
    """Per-class engine busy counters from one perf group.

    Each engine contributes a busy event and, when the PMU has one, a total
    event; otherwise the total is wall time in nanoseconds.
    """

    def __init__(self, group: _perf.PerfGroup) -> None:
        self._group = group
        self._classes: dict[str, list[tuple[int, int | None]]] = {}

    def add_engine(self, class_name: str, busy: int, total: int | None = None) -> None:
        self._classes.setdefault(class_name, []).append((busy, total))

    def __len__(self) -> int:
        return len(self._classes)

    def read(self) -> dict[str, EngineCounter]:
        values = self._group.read()
        now = time.monotonic_ns()
        out: dict[str, EngineCounter] = {}
        for name, engines in self._classes.items():
            busy = sum(values[b] for b, _ in engines)
            if all(t is not None for _, t in engines):
                total = sum(values[t] for _, t in engines if t is not None)
                out[name] = EngineCounter(busy=busy, total=total)
            else:
                out[name] = EngineCounter(busy=busy, total=now, capacity=len(engines))
        return out

    def close(self) -> None:
        self._group.close()
