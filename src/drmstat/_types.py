"""Core types: device identity, raw snapshots and derived stats."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class VirtFn(enum.Enum):
    """Virtualization role of a PCI function."""

    NONE = ""
    SRIOV_PF = "PF"
    SRIOV_VF = "VF"
    VFIO = "VFIO"


class DeviceKind(enum.Enum):
    """Physical class of a GPU."""

    UNKNOWN = "Unknown"
    INTEGRATED = "Integrated"
    DISCRETE = "Discrete"


@dataclass(frozen=True)
class DeviceType:
    """Device kind plus optional virtualization role, e.g. ``Discrete (PF)``."""

    kind: DeviceKind = DeviceKind.UNKNOWN
    virt: VirtFn = VirtFn.NONE

    @property
    def is_discrete(self) -> bool:
        return self.kind is DeviceKind.DISCRETE

    def __str__(self) -> str:
        if self.virt is VirtFn.NONE or self.kind is DeviceKind.UNKNOWN:
            return self.kind.value
        return f"{self.kind.value} ({self.virt.value})"


@dataclass(frozen=True)
class DevNode:
    """A DRM character device node."""

    path: str    # "/dev/dri/renderD128"
    minor: int


@dataclass
class Device:
    """One GPU, identified at discovery time.

    Everything except ``dev_nodes`` is fixed for the process lifetime.
    """

    slot: str                # PCI slot name, or sysname for non-PCI devices
    driver: str
    sysfs_path: str          # resolved ".../device" directory
    vendor_id: str = ""
    device_id: str = ""
    revision: str = ""
    vendor_name: str = ""
    device_name: str = ""
    dev_type: DeviceType = field(default_factory=DeviceType)
    dev_nodes: list[DevNode] = field(default_factory=list)

    @property
    def pci_id(self) -> str:
        if not self.vendor_id or not self.device_id:
            return ""
        return f"{self.vendor_id}:{self.device_id}"

    def card_minor(self) -> int | None:
        for node in self.dev_nodes:
            if "card" in node.path:
                return node.minor
        return None

    def render_node(self) -> str | None:
        for node in self.dev_nodes:
            if "render" in node.path:
                return node.path
        return None

    def add_node(self, node: DevNode) -> None:
        if node not in self.dev_nodes:
            self.dev_nodes.append(node)
            self.dev_nodes.sort(key=lambda n: n.minor)


class ThrottleReason(enum.IntFlag):
    """Reasons the actual frequency sits below the requested one."""

    NONE = 0
    STATUS = 1 << 0
    PL1 = 1 << 1
    PL2 = 1 << 2
    PL4 = 1 << 3
    PROCHOT = 1 << 4
    RATL = 1 << 5
    THERMAL = 1 << 6
    VR_TDC = 1 << 7
    VR_THERMALERT = 1 << 8


@dataclass(frozen=True)
class MemInfo:
    """Device memory in bytes. ``None`` means not exposed, never zero."""

    smem_used: int | None = None
    smem_total: int | None = None
    vram_used: int | None = None
    vram_total: int | None = None


@dataclass(frozen=True)
class EngineCounter:
    """Monotonic busy/total counter pair for one engine class."""

    busy: int | None = None
    total: int | None = None
    capacity: int = 1
    width: int = 64


@dataclass(frozen=True)
class FreqReading:
    """Instantaneous frequencies of one domain, in Hz."""

    actual: int | None = None
    requested: int | None = None
    minimum: int | None = None
    maximum: int | None = None


@dataclass(frozen=True)
class FreqLimits:
    """Hardware frequency limits of one domain, in Hz."""

    minimum: int | None = None
    efficient: int | None = None
    maximum: int | None = None


@dataclass(frozen=True)
class PowerReading:
    """One power domain reading.

    Either an energy accumulator (``energy`` raw units times
    ``energy_scale`` joules, wrapping at ``width`` bits) or an
    instantaneous ``watts`` value.
    """

    energy: int | None = None
    energy_scale: float = 1.0
    width: int = 64
    watts: float | None = None


@dataclass(frozen=True)
class DeviceSnapshot:
    """Raw readings for one device in one iteration."""

    timestamp_ns: int
    mem: MemInfo = field(default_factory=MemInfo)
    engines: dict[str, EngineCounter] = field(default_factory=dict)
    freqs: dict[str, FreqReading] = field(default_factory=dict)
    freq_limits: dict[str, FreqLimits] = field(default_factory=dict)
    power: dict[str, PowerReading] = field(default_factory=dict)
    temps: dict[str, float] = field(default_factory=dict)
    fans: dict[str, int] = field(default_factory=dict)
    throttle: dict[str, ThrottleReason] = field(default_factory=dict)


@dataclass(frozen=True)
class MemRegion:
    """One ``drm-*-<region>`` group from fdinfo, in bytes."""

    name: str
    total: int = 0
    shared: int = 0
    resident: int = 0
    purgeable: int = 0
    active: int = 0


@dataclass(frozen=True)
class ClientMemInfo:
    """Client memory folded into system/device buckets, in bytes."""

    smem_used: int = 0
    smem_rss: int = 0
    vram_used: int = 0
    vram_rss: int = 0

    def __add__(self, other: ClientMemInfo) -> ClientMemInfo:
        return ClientMemInfo(
            smem_used=self.smem_used + other.smem_used,
            smem_rss=self.smem_rss + other.smem_rss,
            vram_used=self.vram_used + other.vram_used,
            vram_rss=self.vram_rss + other.vram_rss,
        )


@dataclass
class DrmClient:
    """One open DRM file, identified by (minor, client_id) on its device."""

    client_id: int
    pid: int
    minor: int
    pdev: str
    comm: str = ""
    cmdline: str = ""
    mem_regions: dict[str, MemRegion] = field(default_factory=dict)
    mem: ClientMemInfo = field(default_factory=ClientMemInfo)
    engines: dict[str, EngineCounter] = field(default_factory=dict)
    cpu_ticks: int | None = None
    threads: int | None = None
    timestamp_ns: int = 0
    shared_pids: list[int] = field(default_factory=list)
    last_seen: int = 0

    @property
    def key(self) -> tuple[int, int]:
        return (self.minor, self.client_id)

    @property
    def is_active(self) -> bool:
        if self.mem.smem_used > 0 or self.mem.vram_used > 0:
            return True
        return any((e.busy or 0) > 0 for e in self.engines.values())


@dataclass(frozen=True)
class DerivedRate:
    """A rate recomputed each iteration; ``value`` is None when not derivable."""

    value: float | None = None

    @property
    def valid(self) -> bool:
        return self.value is not None


ABSENT = DerivedRate()


@dataclass(frozen=True)
class DeviceStats:
    """Rates derived from two consecutive device snapshots.

    Engine utilization is a ratio in [0, 1]; power is in watts.
    """

    snapshot: DeviceSnapshot
    engines: dict[str, DerivedRate] = field(default_factory=dict)
    power: dict[str, DerivedRate] = field(default_factory=dict)


@dataclass(frozen=True)
class ClientStats:
    """Rates derived for one client. CPU is a percentage of one CPU."""

    client: DrmClient
    engines: dict[str, DerivedRate] = field(default_factory=dict)
    cpu: DerivedRate = ABSENT


@dataclass(frozen=True)
class PidStats:
    """Display aggregation of all clients owned by one PID."""

    pid: int
    comm: str
    client_keys: tuple[tuple[int, int], ...]
    mem: ClientMemInfo
    engines: dict[str, DerivedRate]
    cpu: DerivedRate
    active: bool = False


@dataclass(frozen=True)
class DeviceSample:
    """Everything one iteration produced for one device."""

    device: Device
    stats: DeviceStats
    clients: tuple[ClientStats, ...] = ()
    by_pid: tuple[PidStats, ...] = ()


@dataclass(frozen=True)
class SampleSet:
    """Immutable output of one sampling iteration."""

    iteration: int
    timestamp: float
    elapsed_s: float
    devices: tuple[DeviceSample, ...] = ()
