"""Sampler configuration."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DrmstatConfig:
    """Immutable sampler configuration."""

    interval_ms: int = 1500
    iterations: int = -1
    dev_slots: tuple[str, ...] = ()
    pid: int | None = None
    use_fdinfo: bool = False
    drv_options: tuple[str, ...] = ()
    history_size: int = 40
    otlp_endpoint: str | None = None
    service_name: str = "drmstat"
    prometheus_addr: str = "0.0.0.0"
    prometheus_port: int | None = None
    record_path: str | None = None

    @property
    def interval_s(self) -> float:
        return self.interval_ms / 1000.0
