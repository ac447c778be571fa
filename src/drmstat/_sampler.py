"""The sampling loop and its single-slot handoff to consumers."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Sequence

from drmstat._backend import DriverBackend
from drmstat._buffer import History
from drmstat._config import DrmstatConfig
from drmstat._derive import NCPUS, derive_device, sum_engines
from drmstat._devices import enumerate_devices
from drmstat._dispatch import Dispatcher
from drmstat._drivers import create_backend
from drmstat._errors import DeviceGoneError, MonitoredProcessExited
from drmstat._fdinfo import FdinfoScanner
from drmstat._proc import PROC_ROOT, process_tree
from drmstat._registry import ClientRegistry, aggregate_by_pid
from drmstat._sysfs import SYSFS_DRM
from drmstat._types import Device, DeviceSample, DeviceSnapshot, DrmClient, SampleSet

logger = logging.getLogger("drmstat.sampler")


def build_device_sample(
    registry: ClientRegistry,
    device: Device,
    prev: DeviceSnapshot | None,
    snapshot: DeviceSnapshot,
    clients: Sequence[DrmClient],
    *,
    iteration: int,
    elapsed_s: float,
) -> DeviceSample:
    """Derive one device's stats and fold its clients into ``registry``.

    Without device-level engine counters, device engine utilization is the
    sum over its clients.
    """
    stats = derive_device(prev, snapshot, elapsed_s, device.slot)
    client_stats = registry.update(clients, iteration, elapsed_s)
    if not snapshot.engines and client_stats:
        stats = dataclasses.replace(
            stats, engines=sum_engines((cs.engines for cs in client_stats), device.slot)
        )
    return DeviceSample(
        device=device,
        stats=stats,
        clients=tuple(client_stats),
        by_pid=tuple(aggregate_by_pid(client_stats)),
    )


class LatestSlot:
    """Holds the newest completed sample set.

    Readers never block the writer for longer than a pointer swap.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._value: SampleSet | None = None
        self._version = 0

    def put(self, value: SampleSet) -> None:
        with self._cond:
            self._value = value
            self._version += 1
            self._cond.notify_all()

    def get(self) -> SampleSet | None:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    def wait_newer(self, version: int, timeout: float | None = None) -> SampleSet | None:
        """Wait until something newer than ``version`` has been put."""
        with self._cond:
            self._cond.wait_for(lambda: self._version > version, timeout=timeout)
            return self._value


class _DeviceState:
    def __init__(self, backend: DriverBackend, ncpus: int) -> None:
        self.backend = backend
        self.registry = ClientRegistry(backend.device.slot, ncpus=ncpus)
        self.prev: DeviceSnapshot | None = None

    def reset(self, ncpus: int) -> None:
        self.registry = ClientRegistry(self.backend.device.slot, ncpus=ncpus)
        self.prev = None


class Sampler:
    """Samples every device once per interval.

    Runs either in the caller's thread (``run``) or on a daemon thread
    (``start``/``stop``). Completed sample sets go to the latest slot, the
    history buffer and, when one is given, the dispatcher.
    """

    def __init__(
        self,
        backends: Sequence[DriverBackend],
        scanner: FdinfoScanner,
        *,
        interval_ms: int = 1500,
        iterations: int = -1,
        pid: int | None = None,
        history_size: int = 40,
        dispatcher: Dispatcher | None = None,
        proc_root: str = PROC_ROOT,
        clock: Callable[[], float] = time.monotonic,
        ncpus: int = NCPUS,
    ) -> None:
        self._ncpus = ncpus
        self._devices = [_DeviceState(b, ncpus) for b in backends]
        self._scanner = scanner
        self._interval_s = interval_ms / 1000.0
        self._iterations = iterations
        self._pid = pid
        self._proc_root = proc_root
        self._clock = clock
        self._dispatcher = dispatcher

        self.latest = LatestSlot()
        self.history = History(history_size)

        self._iteration = 0
        self._last_time: float | None = None
        self._stop_event = threading.Event()
        self._done = threading.Event()
        self._thread: threading.Thread | None = None
        self.exit_reason: MonitoredProcessExited | None = None

    @property
    def iteration(self) -> int:
        return self._iteration

    @property
    def backends(self) -> list[DriverBackend]:
        return [d.backend for d in self._devices]

    def sample_once(self) -> SampleSet:
        """Run one iteration. Raises MonitoredProcessExited."""
        pids: set[int] | None = None
        if self._pid is not None:
            pids = process_tree(self._pid, root=self._proc_root)
            if not pids:
                raise MonitoredProcessExited(self._pid)

        self._scanner.refresh(pids)

        now = self._clock()
        elapsed = 0.0 if self._last_time is None else max(now - self._last_time, 0.0)
        self._last_time = now
        self._iteration += 1

        samples: list[DeviceSample] = []
        for state in list(self._devices):
            sample = self._sample_device(state, elapsed, pids)
            if sample is not None:
                samples.append(sample)

        result = SampleSet(
            iteration=self._iteration,
            timestamp=time.time(),
            elapsed_s=elapsed,
            devices=tuple(samples),
        )
        self.history.append(result)
        self.latest.put(result)
        if self._dispatcher is not None:
            self._dispatcher.submit(result)
        return result

    def _sample_device(
        self, state: _DeviceState, elapsed: float, pids: set[int] | None
    ) -> DeviceSample | None:
        backend = state.backend
        slot = backend.device.slot
        try:
            snapshot = backend.read_device_snapshot()
            clients = backend.read_clients()
        except DeviceGoneError:
            logger.warning("Device %s is gone, dropping it", slot)
            self._drop(state)
            return None
        except MemoryError:
            raise
        except Exception:  # noqa: BLE001
            logger.warning("Sampling %s failed, skipping this iteration", slot, exc_info=True)
            state.reset(self._ncpus)
            return None

        if pids is not None:
            clients = [c for c in clients if c.pid in pids]
        sample = build_device_sample(
            state.registry, backend.device, state.prev, snapshot, clients,
            iteration=self._iteration, elapsed_s=elapsed,
        )
        state.prev = snapshot
        return sample

    def _drop(self, state: _DeviceState) -> None:
        self._devices.remove(state)
        try:
            state.backend.shutdown()
        except OSError:
            logger.debug("Shutting down %s failed", state.backend.device.slot, exc_info=True)

    def run(self) -> None:
        """Loop until stopped, out of iterations, or the monitored process exits."""
        self._done.clear()
        try:
            while not self._stop_event.is_set():
                if 0 <= self._iterations <= self._iteration:
                    break
                started = self._clock()
                try:
                    self.sample_once()
                except MonitoredProcessExited as exc:
                    logger.info("%s, stopping", exc)
                    self.exit_reason = exc
                    break
                remaining = self._interval_s - (self._clock() - started)
                if self._stop_event.wait(max(remaining, 0.0)):
                    break
        finally:
            self._done.set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="drmstat-sampler", daemon=True)
        self._thread.start()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the loop to end on its own; True if it did."""
        return self._done.wait(timeout)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None

    def close(self) -> None:
        """Stop the loop and release every backend."""
        self.stop()
        for state in self._devices:
            try:
                state.backend.shutdown()
            except OSError:
                logger.debug("Shutting down %s failed", state.backend.device.slot, exc_info=True)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def create_sampler(
    config: DrmstatConfig,
    *,
    dispatcher: Dispatcher | None = None,
    sysfs_root: str = SYSFS_DRM,
    proc_root: str = PROC_ROOT,
) -> Sampler:
    """Enumerate devices, build their backends and wire up a sampler."""
    scanner = FdinfoScanner(root=proc_root, sysfs_root=sysfs_root)
    backends = [
        create_backend(
            device, scanner, options=config.drv_options, use_fdinfo=config.use_fdinfo
        )
        for device in enumerate_devices(root=sysfs_root, slots=config.dev_slots)
    ]
    if not backends:
        logger.warning("No DRM devices found")
    return Sampler(
        backends,
        scanner,
        interval_ms=config.interval_ms,
        iterations=config.iterations,
        pid=config.pid,
        history_size=config.history_size,
        dispatcher=dispatcher,
        proc_root=proc_root,
    )
