"""JSON-lines recording of raw samples, and replay through the same derivation.

Each line holds one iteration: its number, wall timestamp, elapsed seconds
and, per device, the device identity, the raw device snapshot and the raw
clients. Derived rates are not stored; replay recomputes them.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Iterator
from typing import Any

from drmstat._derive import NCPUS
from drmstat._errors import DrmstatError
from drmstat._registry import ClientRegistry
from drmstat._sampler import build_device_sample
from drmstat._types import (
    ClientMemInfo,
    Device,
    DeviceKind,
    DeviceSample,
    DeviceSnapshot,
    DeviceType,
    DevNode,
    DrmClient,
    EngineCounter,
    FreqLimits,
    FreqReading,
    MemInfo,
    MemRegion,
    PowerReading,
    SampleSet,
    ThrottleReason,
    VirtFn,
)

logger = logging.getLogger("drmstat.recorder")

FORMAT_VERSION = 1


def device_to_dict(device: Device) -> dict[str, Any]:
    return {
        "slot": device.slot,
        "driver": device.driver,
        "sysfs_path": device.sysfs_path,
        "vendor_id": device.vendor_id,
        "device_id": device.device_id,
        "revision": device.revision,
        "vendor_name": device.vendor_name,
        "device_name": device.device_name,
        "dev_type": {"kind": device.dev_type.kind.value, "virt": device.dev_type.virt.value},
        "dev_nodes": [{"path": n.path, "minor": n.minor} for n in device.dev_nodes],
    }


def device_from_dict(d: dict[str, Any]) -> Device:
    return Device(
        slot=d["slot"],
        driver=d["driver"],
        sysfs_path=d["sysfs_path"],
        vendor_id=d.get("vendor_id", ""),
        device_id=d.get("device_id", ""),
        revision=d.get("revision", ""),
        vendor_name=d.get("vendor_name", ""),
        device_name=d.get("device_name", ""),
        dev_type=DeviceType(
            kind=DeviceKind(d["dev_type"]["kind"]), virt=VirtFn(d["dev_type"]["virt"])
        ),
        dev_nodes=[DevNode(**n) for n in d.get("dev_nodes", [])],
    )


def snapshot_to_dict(snapshot: DeviceSnapshot) -> dict[str, Any]:
    d = dataclasses.asdict(snapshot)
    d["throttle"] = {k: int(v) for k, v in snapshot.throttle.items()}
    return d


def snapshot_from_dict(d: dict[str, Any]) -> DeviceSnapshot:
    return DeviceSnapshot(
        timestamp_ns=d["timestamp_ns"],
        mem=MemInfo(**d["mem"]),
        engines={k: EngineCounter(**v) for k, v in d["engines"].items()},
        freqs={k: FreqReading(**v) for k, v in d["freqs"].items()},
        freq_limits={k: FreqLimits(**v) for k, v in d["freq_limits"].items()},
        power={k: PowerReading(**v) for k, v in d["power"].items()},
        temps=dict(d["temps"]),
        fans=dict(d["fans"]),
        throttle={k: ThrottleReason(v) for k, v in d["throttle"].items()},
    )


def client_to_dict(client: DrmClient) -> dict[str, Any]:
    return dataclasses.asdict(client)


def client_from_dict(d: dict[str, Any]) -> DrmClient:
    fields = dict(d)
    fields["mem_regions"] = {k: MemRegion(**v) for k, v in d["mem_regions"].items()}
    fields["mem"] = ClientMemInfo(**d["mem"])
    fields["engines"] = {k: EngineCounter(**v) for k, v in d["engines"].items()}
    fields["shared_pids"] = list(d["shared_pids"])
    return DrmClient(**fields)


def sample_to_record(sample: SampleSet, *, ncpus: int = NCPUS) -> dict[str, Any]:
    return {
        "version": FORMAT_VERSION,
        "iteration": sample.iteration,
        "timestamp": sample.timestamp,
        "elapsed_s": sample.elapsed_s,
        "ncpus": ncpus,
        "devices": [
            {
                "device": device_to_dict(ds.device),
                "snapshot": snapshot_to_dict(ds.stats.snapshot),
                "clients": [client_to_dict(cs.client) for cs in ds.clients],
            }
            for ds in sample.devices
        ],
    }


class JsonRecorder:
    """Sample handler appending one JSON line per iteration to ``path``."""

    def __init__(self, path: str, *, ncpus: int = NCPUS) -> None:
        self.path = path
        self._ncpus = ncpus
        self._file = open(path, "a", encoding="utf-8")

    def __call__(self, sample: SampleSet) -> None:
        self._file.write(json.dumps(sample_to_record(sample, ncpus=self._ncpus)))
        self._file.write("\n")
        self._file.flush()

    def close(self) -> None:
        self._file.close()


def read_records(path: str) -> Iterator[dict[str, Any]]:
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except ValueError as exc:
                raise DrmstatError(f"{path}:{lineno}: malformed record") from exc
            if record.get("version") != FORMAT_VERSION:
                raise DrmstatError(
                    f"{path}:{lineno}: unsupported record version {record.get('version')!r}"
                )
            yield record


def replay(path: str) -> Iterator[SampleSet]:
    """Rebuild the recorded sample sets, rates included."""
    registries: dict[str, ClientRegistry] = {}
    prevs: dict[str, DeviceSnapshot] = {}
    last_iteration: int | None = None

    for record in read_records(path):
        iteration = record["iteration"]
        if last_iteration is not None and iteration != last_iteration + 1:
            # a gap, or a new run appended to the same file
            logger.warning(
                "%s: iteration %d follows %d, restarting derivation",
                path, iteration, last_iteration,
            )
            registries.clear()
            prevs.clear()
        last_iteration = iteration
        elapsed = record["elapsed_s"]
        ncpus = record.get("ncpus", NCPUS)
        samples: list[DeviceSample] = []
        seen: set[str] = set()
        for entry in record["devices"]:
            device = device_from_dict(entry["device"])
            snapshot = snapshot_from_dict(entry["snapshot"])
            clients = [client_from_dict(c) for c in entry["clients"]]
            registry = registries.setdefault(
                device.slot, ClientRegistry(device.slot, ncpus=ncpus)
            )
            samples.append(
                build_device_sample(
                    registry, device, prevs.get(device.slot), snapshot, clients,
                    iteration=iteration, elapsed_s=elapsed,
                )
            )
            prevs[device.slot] = snapshot
            seen.add(device.slot)

        # a device missing from a record starts over, as it does live
        for slot in set(registries) - seen:
            logger.debug("Device %s absent from iteration %d", slot, iteration)
            del registries[slot]
            prevs.pop(slot, None)

        yield SampleSet(
            iteration=iteration,
            timestamp=record["timestamp"],
            elapsed_s=elapsed,
            devices=tuple(samples),
        )
