"""Model-specific register reads through the msr driver."""

from __future__ import annotations

import os
import struct

from drmstat._ioctl import retry_eintr

MSR_RAPL_POWER_UNIT = 0x606
MSR_PKG_ENERGY_STATUS = 0x611
MSR_PP1_ENERGY_STATUS = 0x641


class Msr:
    """Open handle on ``/dev/cpu/<cpu>/msr``."""

    def __init__(self, cpu: int = 0, *, path_fmt: str = "/dev/cpu/{}/msr") -> None:
        self._fd = os.open(path_fmt.format(cpu), os.O_RDONLY)

    @retry_eintr
    def read(self, offset: int) -> int:
        raw = os.pread(self._fd, 8, offset)
        if len(raw) != 8:
            raise OSError(f"short MSR read at {offset:#x}")
        return struct.unpack("<Q", raw)[0]

    def close(self) -> None:
        if self._fd >= 0:
            os.close(self._fd)
            self._fd = -1


def rapl_energy_scale(unit_msr: int) -> float:
    """Joules per energy-status count from MSR_RAPL_POWER_UNIT."""
    return 1.0 / (1 << ((unit_msr >> 8) & 0x1F))
