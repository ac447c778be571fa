"""Generic backend for drivers without a dedicated implementation."""

from __future__ import annotations

from drmstat._backend import Capability, DrmBackend


class FallbackBackend(DrmBackend):
    """Reports only what the driver's fdinfo exposes for its clients.

    Regions named like device memory (``vram*``, ``local*``) count as VRAM,
    everything else (``memory``, ``system``, ``gtt``, ...) as system memory.
    """

    name = "generic"
    capabilities = frozenset({Capability.CLIENT_ENGINES, Capability.CLIENT_MEM})

    def _region_bucket(self, region: str) -> str | None:
        if region.startswith(("vram", "local")):
            return "vram"
        return "smem"
