"""OTLP gRPC exporter: ships each sample set as a batch of gauges."""

from __future__ import annotations

import logging

import grpc
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import (
    ExportMetricsServiceRequest,
)
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2_grpc import (
    MetricsServiceStub,
)
from opentelemetry.proto.common.v1.common_pb2 import (
    AnyValue,
    InstrumentationScope,
    KeyValue,
)
from opentelemetry.proto.metrics.v1.metrics_pb2 import (
    Gauge,
    Metric,
    NumberDataPoint,
    ResourceMetrics,
    ScopeMetrics,
)
from opentelemetry.proto.resource.v1.resource_pb2 import Resource

from drmstat._metrics import MetricFamily, flatten
from drmstat._types import SampleSet

logger = logging.getLogger("drmstat.exporter")

_SDK_VERSION = "0.1.0"


def _make_attribute(key: str, value: str | int | float | bool) -> KeyValue:
    """Convert a Python key-value pair to an OTLP KeyValue protobuf."""
    if isinstance(value, bool):
        av = AnyValue(bool_value=value)
    elif isinstance(value, int):
        av = AnyValue(int_value=value)
    elif isinstance(value, float):
        av = AnyValue(double_value=value)
    else:
        av = AnyValue(string_value=str(value))
    return KeyValue(key=key, value=av)


def _family_to_otlp(family: MetricFamily, time_unix_nano: int) -> Metric:
    spec = family.spec
    points = [
        NumberDataPoint(
            attributes=[_make_attribute(k, v) for k, v in zip(spec.label_names, p.labels)],
            time_unix_nano=time_unix_nano,
            as_double=p.value,
        )
        for p in family.points
    ]
    return Metric(
        name=spec.name,
        description=spec.documentation,
        unit=spec.unit,
        gauge=Gauge(data_points=points),
    )


def build_export_request(sample: SampleSet, service_name: str) -> ExportMetricsServiceRequest:
    """Build an ExportMetricsServiceRequest holding every non-empty family."""
    resource = Resource(attributes=[
        _make_attribute("service.name", service_name),
        _make_attribute("telemetry.sdk.name", "drmstat"),
        _make_attribute("telemetry.sdk.version", _SDK_VERSION),
    ])
    scope = InstrumentationScope(name="drmstat", version=_SDK_VERSION)

    ts = int(sample.timestamp * 1e9)
    metrics = [_family_to_otlp(f, ts) for f in flatten(sample) if f.points]

    scope_metrics = ScopeMetrics(scope=scope, metrics=metrics)
    resource_metrics = ResourceMetrics(resource=resource, scope_metrics=[scope_metrics])
    return ExportMetricsServiceRequest(resource_metrics=[resource_metrics])


class OTLPExporter:
    """Exports sample sets over gRPC using the OTLP metrics protocol.

    Used as a sample handler on the dispatcher thread. Failures are logged
    but never raised; telemetry export must not stop sampling.
    """

    def __init__(
        self,
        endpoint: str,
        service_name: str = "drmstat",
        *,
        insecure: bool = True,
        timeout_s: float = 10.0,
    ) -> None:
        self._service_name = service_name
        self._timeout_s = timeout_s

        if insecure:
            self._channel = grpc.insecure_channel(endpoint)
        else:
            self._channel = grpc.secure_channel(endpoint, grpc.ssl_channel_credentials())

        self._stub = MetricsServiceStub(self._channel)  # type: ignore[no-untyped-call]

    def __call__(self, sample: SampleSet) -> None:
        self.export(sample)

    def export(self, sample: SampleSet) -> None:
        """Export one sample set. Logs and swallows all errors."""
        if not sample.devices:
            return
        try:
            request = build_export_request(sample, self._service_name)
            self._stub.Export(request, timeout=self._timeout_s)
        except Exception:  # noqa: BLE001
            logger.debug("Failed to export iteration %d", sample.iteration, exc_info=True)

    def shutdown(self) -> None:
        """Close the gRPC channel."""
        try:
            self._channel.close()
        except Exception:  # noqa: BLE001
            pass
