"""Tests for the Prometheus collector."""

from __future__ import annotations

from conftest import DISCRETE_SLOT, INTEGRATED_SLOT
from prometheus_client import CollectorRegistry

from drmstat._prometheus import SampleCollector
from drmstat._sampler import LatestSlot
from drmstat._types import SampleSet


def _registry(latest: LatestSlot) -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register(SampleCollector(latest))
    return registry


class TestSampleCollector:
    def test_nothing_before_first_sample(self) -> None:
        latest = LatestSlot()
        assert list(SampleCollector(latest).collect()) == []
        registry = _registry(latest)
        assert registry.get_sample_value("drmstat_gpu_power_watts", {
            "device": DISCRETE_SLOT, "domain": "gpu",
        }) is None

    def test_values_from_latest_sample(self, sample_set: SampleSet) -> None:
        latest = LatestSlot()
        registry = _registry(latest)
        latest.put(sample_set)

        assert registry.get_sample_value("drmstat_gpu_power_watts", {
            "device": DISCRETE_SLOT, "domain": "gpu",
        }) == 12.5
        assert registry.get_sample_value("drmstat_gpu_engine_utilization_ratio", {
            "device": DISCRETE_SLOT, "engine": "rcs",
        }) == 0.25
        assert registry.get_sample_value("drmstat_client_cpu_percent", {
            "device": DISCRETE_SLOT, "pid": "100", "comm": "glxgears",
        }) == 12.0
        assert registry.get_sample_value("drmstat_gpu_vram_total_bytes", {
            "device": INTEGRATED_SLOT,
        }) is None

    def test_empty_families_not_exported(self, sample_set: SampleSet) -> None:
        latest = LatestSlot()
        latest.put(SampleSet(iteration=1, timestamp=0.0, elapsed_s=0.0))
        assert list(SampleCollector(latest).collect()) == []

        latest.put(sample_set)
        names = [m.name for m in SampleCollector(latest).collect()]
        assert "drmstat_gpu_info" in names
        assert len(names) == len(set(names))

    def test_scrape_follows_newest_sample(self, sample_set: SampleSet) -> None:
        latest = LatestSlot()
        registry = _registry(latest)
        latest.put(sample_set)
        assert registry.get_sample_value("drmstat_gpu_smem_used_bytes", {
            "device": INTEGRATED_SLOT,
        }) == float(512 * 1024 * 1024)

        latest.put(SampleSet(iteration=4, timestamp=1.0, elapsed_s=1.5))
        assert registry.get_sample_value("drmstat_gpu_smem_used_bytes", {
            "device": INTEGRATED_SLOT,
        }) is None
