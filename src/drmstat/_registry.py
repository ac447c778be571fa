"""Per-device DRM client registry.

Identity is ``(minor, client_id)``. Each update replaces the live set with
the clients just read; a key missing from that read is retired and its
last snapshot dropped. A key that comes back later starts over without
history.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from drmstat._derive import NCPUS, derive_client, sum_engines
from drmstat._types import ABSENT, ClientMemInfo, ClientStats, DrmClient, PidStats

logger = logging.getLogger("drmstat.registry")


class ClientRegistry:
    """Live clients of one device and their previous snapshots."""

    def __init__(self, slot: str = "", *, ncpus: int = NCPUS) -> None:
        self._slot = slot
        self._ncpus = ncpus
        self._live: dict[tuple[int, int], DrmClient] = {}
        self._by_pid: dict[int, tuple[tuple[int, int], ...]] = {}

    def update(
        self, clients: Iterable[DrmClient], iteration: int, elapsed_s: float
    ) -> list[ClientStats]:
        """Fold one iteration's clients in; returns their derived stats."""
        live: dict[tuple[int, int], DrmClient] = {}
        stats: list[ClientStats] = []
        for client in clients:
            key = client.key
            if key in live:
                logger.debug("%s: duplicate client %s, ignoring", self._slot, key)
                continue
            client.last_seen = iteration
            live[key] = client
            stats.append(
                derive_client(self._live.get(key), client, elapsed_s, ncpus=self._ncpus)
            )

        for key in self._live.keys() - live.keys():
            logger.debug("%s: client %s retired", self._slot, key)

        self._live = live
        by_pid: dict[int, list[tuple[int, int]]] = {}
        for key, client in live.items():
            by_pid.setdefault(client.pid, []).append(key)
        self._by_pid = {pid: tuple(keys) for pid, keys in by_pid.items()}
        return stats

    def __contains__(self, key: object) -> bool:
        return key in self._live

    def __len__(self) -> int:
        return len(self._live)

    def get(self, key: tuple[int, int]) -> DrmClient | None:
        return self._live.get(key)

    def clients(self) -> list[DrmClient]:
        return [self._live[k] for k in sorted(self._live)]

    def keys_for_pid(self, pid: int) -> tuple[tuple[int, int], ...]:
        return self._by_pid.get(pid, ())


def aggregate_by_pid(stats: Iterable[ClientStats]) -> list[PidStats]:
    """Group client stats by owning PID for display.

    Memory and engine utilization are summed over the PID's clients; CPU
    belongs to the process, so it is taken once. A PID is active when any
    of its clients is.
    """
    groups: dict[int, list[ClientStats]] = {}
    for cs in stats:
        groups.setdefault(cs.client.pid, []).append(cs)

    out: list[PidStats] = []
    for pid in sorted(groups):
        members = groups[pid]
        mem = ClientMemInfo()
        for cs in members:
            mem = mem + cs.client.mem
        cpu = next((cs.cpu for cs in members if cs.cpu.valid), ABSENT)
        out.append(
            PidStats(
                pid=pid,
                comm=members[0].client.comm,
                client_keys=tuple(cs.client.key for cs in members),
                mem=mem,
                engines=sum_engines((cs.engines for cs in members), f"pid {pid}"),
                cpu=cpu,
                active=any(cs.client.is_active for cs in members),
            )
        )
    return out
