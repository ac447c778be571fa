"""Driver backend protocol and the shared DRM backend base."""

from __future__ import annotations

import enum
import functools
import logging
import os
import time
from collections.abc import Callable, Iterable
from typing import Protocol, TypeVar, runtime_checkable

from drmstat._errors import DeviceGoneError
from drmstat._fdinfo import EngineUsage, FdinfoEntry, FdinfoScanner
from drmstat._hwmon import Hwmon
from drmstat._types import (
    ClientMemInfo,
    Device,
    DeviceSnapshot,
    DeviceType,
    DrmClient,
    EngineCounter,
    FreqLimits,
    FreqReading,
    MemInfo,
    MemRegion,
    PowerReading,
    ThrottleReason,
)

logger = logging.getLogger("drmstat.backend")

T = TypeVar("T")


class Capability(enum.Enum):
    """Metrics a backend can ever produce for some device."""

    SMEM_USED = "smem_used"
    SMEM_TOTAL = "smem_total"
    VRAM = "vram"
    ENGINES = "engines"
    FREQS = "freqs"
    FREQ_LIMITS = "freq_limits"
    THROTTLE = "throttle"
    GPU_POWER = "gpu_power"
    PKG_POWER = "pkg_power"
    TEMPS = "temps"
    FANS = "fans"
    CLIENT_ENGINES = "client_engines"
    CLIENT_MEM = "client_mem"


_POWER_CAPS = {"gpu": Capability.GPU_POWER, "package": Capability.PKG_POWER}


@runtime_checkable
class DriverBackend(Protocol):
    """Structural protocol for per-device kernel driver backends."""

    name: str
    capabilities: frozenset[Capability]
    device: Device

    def discover(self) -> Device: ...

    def read_device_snapshot(self) -> DeviceSnapshot: ...

    def read_clients(self) -> list[DrmClient]: ...

    def accepts_option(self, key: str, value: str) -> bool: ...

    def shutdown(self) -> None: ...


def soft_read(what: str, reader: Callable[[], T], default: T) -> T:
    """Run one raw read; a failure means the field is absent this time."""
    try:
        return reader()
    except (OSError, ValueError):
        logger.debug("Reading %s failed", what, exc_info=True)
        return default


def scoped_options(option_strings: Iterable[str], slot: str) -> list[tuple[str, str]]:
    """Options from comma-separated strings that apply to device ``slot``.

    ``devslot=<slot>`` anywhere in a string scopes that whole string to one
    device; strings without it apply to all devices.
    """
    out: list[tuple[str, str]] = []
    for opts in option_strings:
        devslot = "all"
        wanted: list[tuple[str, str]] = []
        for opt in opts.split(","):
            opt = opt.strip()
            if not opt:
                continue
            key, _, value = opt.partition("=")
            if key == "devslot":
                devslot = value
            else:
                wanted.append((key, value))
        if devslot in ("all", slot):
            out.extend(wanted)
    return out


class DrmBackend:
    """Common behavior for all backends.

    Subclasses override the ``_read_*`` hooks they support; every hook is
    wrapped so that one failing source only blanks its own fields.
    """

    name = "drm"
    capabilities: frozenset[Capability] = frozenset()

    def __init__(self, device: Device, scanner: FdinfoScanner) -> None:
        self.device = device
        self._scanner = scanner
        self._hwmon: Hwmon | None = None
        self._hwmon_probed = False
        self._freq_limits: dict[str, FreqLimits] | None = None

    def discover(self) -> Device:
        self.device.dev_type = soft_read(
            f"{self.device.slot} device type", self._read_dev_type, DeviceType()
        )
        self._setup()
        logger.info(
            "Device %s: driver %s, type %s",
            self.device.slot, self.name, self.device.dev_type,
        )
        return self.device

    def apply_options(self, option_strings: Iterable[str]) -> None:
        for key, value in scoped_options(option_strings, self.device.slot):
            if not self.accepts_option(key, value):
                logger.warning(
                    "Option %s=%s not supported by %s on %s",
                    key, value, self.name, self.device.slot,
                )

    def accepts_option(self, key: str, value: str) -> bool:
        return False

    def read_device_snapshot(self) -> DeviceSnapshot:
        if not os.path.isdir(self.device.sysfs_path):
            raise DeviceGoneError(self.device.slot)

        slot = self.device.slot
        if self._freq_limits is None:
            self._freq_limits = self._field(
                Capability.FREQ_LIMITS, f"{slot} freq limits", self._read_freq_limits, None
            )
        return DeviceSnapshot(
            timestamp_ns=time.monotonic_ns(),
            mem=self._mask_mem(soft_read(f"{slot} memory", self._read_mem, MemInfo())),
            engines=self._field(Capability.ENGINES, f"{slot} engines", self._read_engines, {}),
            freqs=self._field(Capability.FREQS, f"{slot} freqs", self._read_freqs, {}),
            freq_limits=dict(self._freq_limits or {}),
            power=self._mask_power(soft_read(f"{slot} power", self._read_power, {})),
            temps=self._field(Capability.TEMPS, f"{slot} temperatures", self._read_temps, {}),
            fans=self._field(Capability.FANS, f"{slot} fans", self._read_fans, {}),
            throttle=self._field(
                Capability.THROTTLE, f"{slot} throttle reasons", self._read_throttle, {}
            ),
        )

    def _field(self, cap: Capability, what: str, reader: Callable[[], T], default: T) -> T:
        """``soft_read`` for a field the backend may never provide."""
        if cap not in self.capabilities:
            return default
        return soft_read(what, reader, default)

    def _mask_power(self, power: dict[str, PowerReading]) -> dict[str, PowerReading]:
        return {
            domain: reading
            for domain, reading in power.items()
            if _POWER_CAPS.get(domain) in self.capabilities
        }

    def _mask_mem(self, mem: MemInfo) -> MemInfo:
        caps = self.capabilities
        vram = Capability.VRAM in caps and self.device.dev_type.is_discrete
        return MemInfo(
            smem_used=mem.smem_used if Capability.SMEM_USED in caps else None,
            smem_total=mem.smem_total if Capability.SMEM_TOTAL in caps else None,
            vram_used=mem.vram_used if vram else None,
            vram_total=mem.vram_total if vram else None,
        )

    def read_clients(self) -> list[DrmClient]:
        clients: list[DrmClient] = []
        for entry in self._scanner.entries_for(self.device.slot):
            client = soft_read(
                f"{self.device.slot} client {entry.info.client_id}",
                functools.partial(self._client_from, entry),
                None,
            )
            if client is not None:
                clients.append(client)
        return clients

    def shutdown(self) -> None:
        pass

    def _client_from(self, entry: FdinfoEntry) -> DrmClient:
        info = entry.info
        proc = entry.proc
        engines = info.engines if Capability.CLIENT_ENGINES in self.capabilities else {}
        regions = info.mem_regions if Capability.CLIENT_MEM in self.capabilities else {}
        return DrmClient(
            client_id=info.client_id,
            pid=entry.pid,
            minor=info.minor,
            pdev=info.pdev,
            comm=proc.comm if proc else "",
            cmdline=entry.cmdline,
            mem_regions=dict(regions),
            mem=self._client_mem(regions),
            engines={
                name: self._client_engine(usage, entry.timestamp_ns)
                for name, usage in engines.items()
            },
            cpu_ticks=proc.cpu_ticks if proc else None,
            threads=proc.threads if proc else None,
            timestamp_ns=entry.timestamp_ns,
            shared_pids=list(entry.shared_pids),
        )

    @staticmethod
    def _client_engine(usage: EngineUsage, timestamp_ns: int) -> EngineCounter:
        if usage.cycles is not None and usage.total_cycles is not None:
            return EngineCounter(
                busy=usage.cycles, total=usage.total_cycles, capacity=usage.capacity
            )
        return EngineCounter(busy=usage.time_ns, total=timestamp_ns, capacity=usage.capacity)

    def _client_mem(self, regions: dict[str, MemRegion]) -> ClientMemInfo:
        smem_used = smem_rss = vram_used = vram_rss = 0
        for region in regions.values():
            bucket = self._region_bucket(region.name)
            if bucket == "smem":
                smem_used += region.total
                smem_rss += region.resident
            elif bucket == "vram":
                vram_used += region.total
                vram_rss += region.resident
            else:
                logger.debug("Unknown %s memory region %s", self.name, region.name)
        return ClientMemInfo(
            smem_used=smem_used, smem_rss=smem_rss, vram_used=vram_used, vram_rss=vram_rss
        )

    def _region_bucket(self, region: str) -> str | None:
        """``"smem"``, ``"vram"`` or None for a client memory region name."""
        return None

    def hwmon(self) -> Hwmon | None:
        if not self._hwmon_probed:
            self._hwmon_probed = True
            try:
                self._hwmon = Hwmon.from_device(self.device.sysfs_path)
            except OSError:
                logger.debug("No hwmon for %s", self.device.slot, exc_info=True)
        return self._hwmon

    def _setup(self) -> None:
        """Open long-lived sources once the device type is known."""

    def _read_dev_type(self) -> DeviceType:
        return DeviceType()

    def _read_mem(self) -> MemInfo:
        return MemInfo()

    def _read_engines(self) -> dict[str, EngineCounter]:
        return {}

    def _read_freqs(self) -> dict[str, FreqReading]:
        return {}

    def _read_freq_limits(self) -> dict[str, FreqLimits]:
        return {}

    def _read_power(self) -> dict[str, PowerReading]:
        return {}

    def _read_throttle(self) -> dict[str, ThrottleReason]:
        return {}

    def _read_temps(self) -> dict[str, float]:
        hwmon = self.hwmon()
        if hwmon is None or not self.device.dev_type.is_discrete:
            return {}
        return hwmon.temps()

    def _read_fans(self) -> dict[str, int]:
        hwmon = self.hwmon()
        if hwmon is None or not self.device.dev_type.is_discrete:
            return {}
        return hwmon.fans()
