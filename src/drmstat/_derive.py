"""Stats derivation: rates from two consecutive raw snapshots.

Every function here is pure. Given the same ``(previous, current, elapsed)``
triple it returns the same rates, which is what makes recordings replayable.
A rate whose inputs are missing on either side is absent, never zero.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable

from drmstat._proc import CLK_TCK
from drmstat._types import (
    ABSENT,
    ClientStats,
    DerivedRate,
    DeviceSnapshot,
    DeviceStats,
    DrmClient,
    EngineCounter,
    PowerReading,
)

logger = logging.getLogger("drmstat.derive")

NCPUS = os.cpu_count() or 1


def counter_delta(prev: int, curr: int, width: int = 64) -> int:
    """Increment of a ``width``-bit counter, assuming at most one wrap."""
    return (curr - prev) % (1 << width)


def _clamp_ratio(value: float, what: str) -> float:
    if value > 1.0:
        logger.warning("%s utilization at %.1f%%, clamped to 100%%", what, value * 100.0)
        return 1.0
    return value


def engine_utilization(
    prev: EngineCounter | None, curr: EngineCounter | None, what: str = "engine"
) -> DerivedRate:
    """busy delta / (total delta * capacity), in [0, 1]."""
    if prev is None or curr is None:
        return ABSENT
    if prev.busy is None or curr.busy is None or prev.total is None or curr.total is None:
        return ABSENT
    busy = counter_delta(prev.busy, curr.busy, curr.width)
    total = counter_delta(prev.total, curr.total, curr.width)
    if total == 0:
        return ABSENT
    return DerivedRate(_clamp_ratio(busy / (total * max(curr.capacity, 1)), what))


def power_watts(
    prev: PowerReading | None, curr: PowerReading | None, elapsed_s: float
) -> DerivedRate:
    """Watts from an energy accumulator, or the reported instantaneous value."""
    if prev is None or curr is None:
        return ABSENT
    if curr.watts is not None:
        return DerivedRate(curr.watts)
    if prev.energy is None or curr.energy is None or elapsed_s <= 0.0:
        return ABSENT
    delta = counter_delta(prev.energy, curr.energy, curr.width)
    return DerivedRate(delta * curr.energy_scale / elapsed_s)


def cpu_percent(
    prev_ticks: int | None,
    curr_ticks: int | None,
    elapsed_s: float,
    *,
    threads: int | None = None,
    ncpus: int = NCPUS,
) -> DerivedRate:
    """CPU time over wall time as a percentage of one CPU.

    Capped at ``min(threads, ncpus) * 100``; a multi-threaded process can
    exceed 100.
    """
    if prev_ticks is None or curr_ticks is None or elapsed_s <= 0.0:
        return ABSENT
    if curr_ticks < prev_ticks:
        return ABSENT
    value = (curr_ticks - prev_ticks) / CLK_TCK / elapsed_s * 100.0
    cap = min(threads or 1, ncpus) * 100.0
    return DerivedRate(min(value, cap))


def derive_device(
    prev: DeviceSnapshot | None, curr: DeviceSnapshot, elapsed_s: float, what: str = ""
) -> DeviceStats:
    if prev is None:
        return DeviceStats(
            snapshot=curr,
            engines={name: ABSENT for name in curr.engines},
            power={name: ABSENT for name in curr.power},
        )
    return DeviceStats(
        snapshot=curr,
        engines={
            name: engine_utilization(prev.engines.get(name), counter, f"{what} {name}".strip())
            for name, counter in curr.engines.items()
        },
        power={
            name: power_watts(prev.power.get(name), reading, elapsed_s)
            for name, reading in curr.power.items()
        },
    )


def derive_client(
    prev: DrmClient | None, curr: DrmClient, elapsed_s: float, *, ncpus: int = NCPUS
) -> ClientStats:
    if prev is None:
        return ClientStats(client=curr, engines={name: ABSENT for name in curr.engines})
    what = f"client {curr.client_id} ({curr.comm})"
    cpu = ABSENT
    # CPU ticks belong to the process; a client passed to another PID starts over
    if prev.pid == curr.pid:
        cpu = cpu_percent(
            prev.cpu_ticks, curr.cpu_ticks, elapsed_s, threads=curr.threads, ncpus=ncpus
        )
    return ClientStats(
        client=curr,
        engines={
            name: engine_utilization(prev.engines.get(name), counter, f"{what} {name}")
            for name, counter in curr.engines.items()
        },
        cpu=cpu,
    )


def sum_engines(rates: Iterable[dict[str, DerivedRate]], what: str = "") -> dict[str, DerivedRate]:
    """Per-engine sum of several utilization maps, clamped to 1.

    An engine is absent in the result only if it is absent everywhere.
    """
    totals: dict[str, float | None] = {}
    for engines in rates:
        for name, rate in engines.items():
            if rate.value is None:
                totals.setdefault(name, None)
            else:
                totals[name] = (totals.get(name) or 0.0) + rate.value
    return {
        name: DerivedRate(_clamp_ratio(value, f"{what} {name}".strip()))
        if value is not None
        else ABSENT
        for name, value in totals.items()
    }
