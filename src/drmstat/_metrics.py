"""Flattening of a sample set into labelled gauges.

Units follow the metric name suffix: bytes, hertz, watts, degrees Celsius,
RPM, ratios in [0, 1] and CPU percentages. A field the device does not
expose produces no point at all.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from drmstat._types import DeviceSample, SampleSet, ThrottleReason


@dataclass(frozen=True)
class MetricSpec:
    name: str
    documentation: str
    unit: str
    label_names: tuple[str, ...]


@dataclass(frozen=True)
class MetricPoint:
    labels: tuple[str, ...]
    value: float


@dataclass
class MetricFamily:
    spec: MetricSpec
    points: list[MetricPoint] = field(default_factory=list)


_DEV = ("device",)
_CLIENT = ("device", "pid", "comm")

GPU_INFO = MetricSpec(
    "drmstat_gpu_info", "GPU identity", "",
    ("device", "pci_id", "vendor", "driver", "dev_type", "dev_nodes"),
)
SMEM_USED = MetricSpec("drmstat_gpu_smem_used_bytes", "System memory used by the GPU", "By", _DEV)
SMEM_TOTAL = MetricSpec(
    "drmstat_gpu_smem_total_bytes", "System memory available to the GPU", "By", _DEV
)
VRAM_USED = MetricSpec("drmstat_gpu_vram_used_bytes", "Device memory used", "By", _DEV)
VRAM_TOTAL = MetricSpec("drmstat_gpu_vram_total_bytes", "Device memory size", "By", _DEV)
ENGINE_UTIL = MetricSpec(
    "drmstat_gpu_engine_utilization_ratio", "Engine class busy ratio", "1", _DEV + ("engine",)
)
FREQUENCY = MetricSpec(
    "drmstat_gpu_frequency_hz", "Frequency domain clocks and limits", "Hz",
    _DEV + ("domain", "kind"),
)
POWER = MetricSpec("drmstat_gpu_power_watts", "Power draw per domain", "W", _DEV + ("domain",))
TEMPERATURE = MetricSpec(
    "drmstat_gpu_temperature_celsius", "Sensor temperature", "Cel", _DEV + ("sensor",)
)
FAN_SPEED = MetricSpec("drmstat_gpu_fan_speed_rpm", "Fan speed", "{rpm}", _DEV + ("sensor",))
THROTTLED = MetricSpec(
    "drmstat_gpu_throttled", "1 while the reason throttles the domain", "1",
    _DEV + ("domain", "reason"),
)
CLIENT_CPU = MetricSpec(
    "drmstat_client_cpu_percent", "Process CPU usage relative to one CPU", "%", _CLIENT
)
CLIENT_ENGINE_UTIL = MetricSpec(
    "drmstat_client_engine_utilization_ratio", "Per-process engine busy ratio", "1",
    _CLIENT + ("engine",),
)
CLIENT_MEMORY = MetricSpec(
    "drmstat_client_memory_bytes", "Per-process GPU memory", "By", _CLIENT + ("region",)
)

ALL_METRICS = (
    GPU_INFO, SMEM_USED, SMEM_TOTAL, VRAM_USED, VRAM_TOTAL, ENGINE_UTIL, FREQUENCY, POWER,
    TEMPERATURE, FAN_SPEED, THROTTLED, CLIENT_CPU, CLIENT_ENGINE_UTIL, CLIENT_MEMORY,
)

_FREQ_KINDS = ("actual", "requested", "minimum", "maximum")
_LIMIT_KINDS = (("minimum", "limit_min"), ("efficient", "limit_efficient"), ("maximum", "limit_max"))

_THROTTLE_FLAGS = [flag for flag in ThrottleReason if flag.value]


def _device_points(ds: DeviceSample, out: dict[str, MetricFamily]) -> None:
    def add(spec: MetricSpec, value: float | None, *labels: str) -> None:
        if value is not None:
            out[spec.name].points.append(MetricPoint((slot, *labels), float(value)))

    dev = ds.device
    slot = dev.slot
    snap = ds.stats.snapshot
    out[GPU_INFO.name].points.append(
        MetricPoint(
            (
                slot, dev.pci_id, dev.vendor_name, dev.driver, str(dev.dev_type),
                ",".join(n.path for n in dev.dev_nodes),
            ),
            1.0,
        )
    )

    add(SMEM_USED, snap.mem.smem_used)
    add(SMEM_TOTAL, snap.mem.smem_total)
    has_vram = snap.mem.vram_total is not None
    if has_vram:
        add(VRAM_USED, snap.mem.vram_used)
        add(VRAM_TOTAL, snap.mem.vram_total)

    for engine, rate in sorted(ds.stats.engines.items()):
        add(ENGINE_UTIL, rate.value, engine)
    for domain, freq in sorted(snap.freqs.items()):
        for kind in _FREQ_KINDS:
            add(FREQUENCY, getattr(freq, kind), domain, kind)
    for domain, limits in sorted(snap.freq_limits.items()):
        for attr, kind in _LIMIT_KINDS:
            add(FREQUENCY, getattr(limits, attr), domain, kind)
    for domain, rate in sorted(ds.stats.power.items()):
        add(POWER, rate.value, domain)
    for sensor, temp in sorted(snap.temps.items()):
        add(TEMPERATURE, temp, sensor)
    for sensor, rpm in sorted(snap.fans.items()):
        add(FAN_SPEED, rpm, sensor)
    for domain, reasons in sorted(snap.throttle.items()):
        for flag in _THROTTLE_FLAGS:
            add(THROTTLED, 1.0 if reasons & flag else 0.0, domain, flag.name.lower())

    for ps in ds.by_pid:
        pid = str(ps.pid)
        add(CLIENT_CPU, ps.cpu.value, pid, ps.comm)
        for engine, rate in sorted(ps.engines.items()):
            add(CLIENT_ENGINE_UTIL, rate.value, pid, ps.comm, engine)
        add(CLIENT_MEMORY, ps.mem.smem_used, pid, ps.comm, "smem")
        if has_vram:
            add(CLIENT_MEMORY, ps.mem.vram_used, pid, ps.comm, "vram")


def flatten(sample: SampleSet) -> list[MetricFamily]:
    """All metric families for ``sample``, empty ones included."""
    out = {spec.name: MetricFamily(spec) for spec in ALL_METRICS}
    for ds in sample.devices:
        _device_points(ds, out)
    return list(out.values())
