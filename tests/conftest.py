"""Shared fixtures: a hand-built sample set with one discrete and one integrated GPU."""

from __future__ import annotations

import pytest

from drmstat._types import (
    ABSENT,
    ClientMemInfo,
    DerivedRate,
    Device,
    DeviceKind,
    DeviceSample,
    DeviceSnapshot,
    DeviceStats,
    DeviceType,
    DevNode,
    FreqLimits,
    FreqReading,
    MemInfo,
    PidStats,
    SampleSet,
    ThrottleReason,
)

MiB = 1024 * 1024
GiB = 1024 * MiB

DISCRETE_SLOT = "0000:03:00.0"
INTEGRATED_SLOT = "0000:00:02.0"


def make_discrete_sample() -> DeviceSample:
    device = Device(
        slot=DISCRETE_SLOT,
        driver="xe",
        sysfs_path=f"/sys/devices/pci0000:00/{DISCRETE_SLOT}",
        vendor_id="8086",
        device_id="e20b",
        vendor_name="Intel Corporation",
        dev_type=DeviceType(kind=DeviceKind.DISCRETE),
        dev_nodes=[
            DevNode(path="/dev/dri/card0", minor=0),
            DevNode(path="/dev/dri/renderD128", minor=128),
        ],
    )
    snapshot = DeviceSnapshot(
        timestamp_ns=5_000_000_000,
        mem=MemInfo(smem_used=1 * GiB, smem_total=16 * GiB, vram_used=2 * GiB, vram_total=8 * GiB),
        freqs={
            "gt0": FreqReading(
                actual=1_200_000_000,
                requested=1_300_000_000,
                minimum=300_000_000,
                maximum=2_400_000_000,
            )
        },
        freq_limits={
            "gt0": FreqLimits(minimum=300_000_000, efficient=600_000_000, maximum=2_400_000_000)
        },
        temps={"pkg": 45.0},
        fans={"fan1": 1200},
        throttle={"gt0": ThrottleReason.PL1 | ThrottleReason.THERMAL},
    )
    stats = DeviceStats(
        snapshot=snapshot,
        engines={"rcs": DerivedRate(0.25), "vcs": ABSENT},
        power={"gpu": DerivedRate(12.5)},
    )
    by_pid = (
        PidStats(
            pid=100,
            comm="glxgears",
            client_keys=((128, 1),),
            mem=ClientMemInfo(smem_used=64 * MiB, vram_used=128 * MiB),
            engines={"rcs": DerivedRate(0.25)},
            cpu=DerivedRate(12.0),
            active=True,
        ),
    )
    return DeviceSample(device=device, stats=stats, by_pid=by_pid)


def make_integrated_sample() -> DeviceSample:
    device = Device(
        slot=INTEGRATED_SLOT,
        driver="i915",
        sysfs_path=f"/sys/devices/pci0000:00/{INTEGRATED_SLOT}",
        vendor_id="8086",
        device_id="46a6",
        vendor_name="Intel Corporation",
        dev_type=DeviceType(kind=DeviceKind.INTEGRATED),
        dev_nodes=[DevNode(path="/dev/dri/card1", minor=1)],
    )
    snapshot = DeviceSnapshot(
        timestamp_ns=5_000_000_000,
        mem=MemInfo(smem_used=512 * MiB, smem_total=16 * GiB),
    )
    by_pid = (
        PidStats(
            pid=200,
            comm="mpv",
            client_keys=((1, 4),),
            mem=ClientMemInfo(smem_used=32 * MiB),
            engines={},
            cpu=ABSENT,
            active=True,
        ),
    )
    return DeviceSample(device=device, stats=DeviceStats(snapshot=snapshot), by_pid=by_pid)


@pytest.fixture()
def sample_set() -> SampleSet:
    return SampleSet(
        iteration=3,
        timestamp=1_700_000_000.0,
        elapsed_s=1.5,
        devices=(make_discrete_sample(), make_integrated_sample()),
    )
