"""Prometheus exposition of the latest sample set."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from prometheus_client import REGISTRY, CollectorRegistry, start_http_server
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from drmstat._metrics import flatten
from drmstat._sampler import LatestSlot

logger = logging.getLogger("drmstat.prometheus")


class SampleCollector(Collector):
    """Custom collector rebuilding gauges from the newest sample set on scrape.

    Scrapes never touch the hardware; before the first sample there is
    nothing to expose.
    """

    def __init__(self, latest: LatestSlot) -> None:
        self._latest = latest

    def collect(self) -> Iterator[GaugeMetricFamily]:
        sample = self._latest.get()
        if sample is None:
            return
        for family in flatten(sample):
            if not family.points:
                continue
            spec = family.spec
            gauge = GaugeMetricFamily(spec.name, spec.documentation, labels=spec.label_names)
            for point in family.points:
                gauge.add_metric(list(point.labels), point.value)
            yield gauge


def serve_prometheus(
    latest: LatestSlot,
    port: int,
    addr: str = "0.0.0.0",
    registry: CollectorRegistry = REGISTRY,
) -> SampleCollector:
    """Register a collector for ``latest`` and start the scrape endpoint."""
    collector = SampleCollector(latest)
    registry.register(collector)
    start_http_server(port, addr=addr, registry=registry)
    logger.info("Serving Prometheus metrics on %s:%d", addr, port)
    return collector
