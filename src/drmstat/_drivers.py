"""Backend selection by kernel driver name."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from drmstat._amdgpu import AmdgpuBackend
from drmstat._backend import DrmBackend
from drmstat._fallback import FallbackBackend
from drmstat._fdinfo import FdinfoScanner
from drmstat._i915 import I915Backend
from drmstat._intel import ENGINES_PMU
from drmstat._types import Device
from drmstat._xe import XeBackend

logger = logging.getLogger("drmstat.backend")

BACKENDS: dict[str, type[DrmBackend]] = {
    "i915": I915Backend,
    "xe": XeBackend,
    "amdgpu": AmdgpuBackend,
}

INTEL_DRIVERS = frozenset({"i915", "xe"})


def create_backend(
    device: Device,
    scanner: FdinfoScanner,
    *,
    options: Iterable[str] = (),
    use_fdinfo: bool = False,
) -> DrmBackend:
    """Build, configure and discover the backend for ``device``.

    Intel engines default to the PMU unless fdinfo was asked for.
    """
    cls = BACKENDS.get(device.driver, FallbackBackend)
    if cls is FallbackBackend:
        logger.info(
            "No dedicated backend for driver %r on %s, using %s",
            device.driver, device.slot, FallbackBackend.name,
        )
    backend = cls(device, scanner)

    opts = list(options)
    if device.driver in INTEL_DRIVERS and not use_fdinfo:
        opts.insert(0, ENGINES_PMU)
    backend.apply_options(opts)
    backend.discover()
    return backend
