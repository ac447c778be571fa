"""drmstat: GPU telemetry for Linux DRM devices."""

from __future__ import annotations

from drmstat._backend import Capability, DriverBackend
from drmstat._config import DrmstatConfig
from drmstat._dispatch import Dispatcher
from drmstat._drivers import create_backend
from drmstat._errors import DeviceGoneError, DrmstatError, MonitoredProcessExited
from drmstat._metrics import flatten
from drmstat._recorder import JsonRecorder, replay
from drmstat._sampler import LatestSlot, Sampler, create_sampler
from drmstat._types import (
    ClientStats,
    Device,
    DeviceSample,
    DeviceSnapshot,
    DeviceStats,
    DeviceType,
    DerivedRate,
    DrmClient,
    PidStats,
    SampleSet,
    ThrottleReason,
)

__version__ = "0.1.0"

__all__ = [
    "Capability",
    "ClientStats",
    "DerivedRate",
    "Device",
    "DeviceGoneError",
    "DeviceSample",
    "DeviceSnapshot",
    "DeviceStats",
    "DeviceType",
    "Dispatcher",
    "DriverBackend",
    "DrmClient",
    "DrmstatConfig",
    "DrmstatError",
    "JsonRecorder",
    "LatestSlot",
    "MonitoredProcessExited",
    "PidStats",
    "SampleSet",
    "Sampler",
    "ThrottleReason",
    "__version__",
    "create_backend",
    "create_sampler",
    "flatten",
    "replay",
]
