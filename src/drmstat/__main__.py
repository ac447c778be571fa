"""Command-line entry point.

Usage::

    drmstat -m 1000 -n 10
    drmstat -x 9101 -i 127.0.0.1 -t samples.jsonl
    drmstat --replay samples.jsonl
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from drmstat import __version__
from drmstat._config import DrmstatConfig
from drmstat._dispatch import Dispatcher, SampleHandler
from drmstat._errors import DrmstatError
from drmstat._recorder import JsonRecorder, replay
from drmstat._sampler import create_sampler
from drmstat._types import DerivedRate, SampleSet

logger = logging.getLogger("drmstat.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="drmstat", description="Linux DRM GPU telemetry")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-d", "--dev-slots", action="append", default=[],
        help="PCI slot(s) to monitor, comma separated or repeated (default: all)",
    )
    parser.add_argument(
        "-m", "--ms-interval", type=int, default=1500, help="Sampling interval in milliseconds"
    )
    parser.add_argument(
        "-n", "--nr-iterations", type=int, default=-1,
        help="Stop after this many iterations (default: run until interrupted)",
    )
    parser.add_argument("-p", "--pid", type=int, help="Only report clients in this process tree")
    parser.add_argument(
        "-f", "--use-fdinfo", action="store_true",
        help="Derive device engine usage from fdinfo instead of PMU counters",
    )
    parser.add_argument(
        "-o", "--drv-options", action="append", default=[],
        help="Driver options, e.g. 'devslot=0000:03:00.0,engines=pmu' (repeatable)",
    )
    parser.add_argument("-t", "--to-json", metavar="PATH", help="Append raw samples to PATH")
    parser.add_argument(
        "-x", "--prometheus-port", type=int, help="Serve Prometheus metrics on this port"
    )
    parser.add_argument(
        "-i", "--ip", default="0.0.0.0", help="Address for the Prometheus endpoint"
    )
    parser.add_argument("--otlp-endpoint", help="Export samples to this OTLP gRPC endpoint")
    parser.add_argument("-l", "--log-file", help="Write logs to this file instead of stderr")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("--replay", metavar="PATH", help="Print the samples recorded in PATH")
    return parser


def _split(values: Sequence[str]) -> tuple[str, ...]:
    return tuple(s.strip() for v in values for s in v.split(",") if s.strip())


def config_from_args(args: argparse.Namespace) -> DrmstatConfig:
    return DrmstatConfig(
        interval_ms=args.ms_interval,
        iterations=args.nr_iterations,
        dev_slots=_split(args.dev_slots),
        pid=args.pid,
        use_fdinfo=args.use_fdinfo,
        drv_options=tuple(args.drv_options),
        otlp_endpoint=args.otlp_endpoint,
        prometheus_addr=args.ip,
        prometheus_port=args.prometheus_port,
        record_path=args.to_json,
    )


def _setup_logging(verbose: int, log_file: str | None) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        filename=log_file,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _rate(rate: DerivedRate, fmt: str) -> str:
    return "-" if rate.value is None else fmt.format(rate.value)


def format_sample(sample: SampleSet) -> list[str]:
    """Short human-readable summary of one iteration."""
    lines = [f"iteration {sample.iteration} ({sample.elapsed_s:.3f}s)"]
    for ds in sample.devices:
        dev = ds.device
        lines.append(f"{dev.slot} {dev.driver} [{dev.dev_type}]")
        if ds.stats.engines:
            engines = " ".join(
                f"{name} {_rate(rate, '{:.1%}')}" for name, rate in sorted(ds.stats.engines.items())
            )
            lines.append(f"  engines: {engines}")
        if ds.stats.power:
            power = " ".join(
                f"{name} {_rate(rate, '{:.2f} W')}" for name, rate in sorted(ds.stats.power.items())
            )
            lines.append(f"  power: {power}")
        # active PIDs first
        for ps in sorted(ds.by_pid, key=lambda ps: not ps.active):
            mem_mib = (ps.mem.smem_used + ps.mem.vram_used) / (1024 * 1024)
            lines.append(
                f"  {ps.pid:>7} {ps.comm:<16} cpu {_rate(ps.cpu, '{:.1f}%')} mem {mem_mib:.1f} MiB"
            )
    return lines


def _print_sample(sample: SampleSet) -> None:
    print("\n".join(format_sample(sample)), flush=True)


def _replay(path: str) -> int:
    try:
        for sample in replay(path):
            _print_sample(sample)
    except (OSError, DrmstatError) as exc:
        print(f"drmstat: {exc}", file=sys.stderr)
        return 1
    return 0


def run(config: DrmstatConfig) -> int:
    """Sample in the foreground until done or interrupted."""
    handlers: list[SampleHandler] = [_print_sample]
    recorder: JsonRecorder | None = None
    exporter = None
    if config.record_path:
        recorder = JsonRecorder(config.record_path)
    if config.otlp_endpoint:
        from drmstat._exporter import OTLPExporter

        exporter = OTLPExporter(config.otlp_endpoint, config.service_name)
        handlers.append(exporter)

    dispatcher = Dispatcher(handlers, lossless=[recorder] if recorder is not None else [])
    sampler = create_sampler(config, dispatcher=dispatcher)
    if config.prometheus_port is not None:
        from drmstat._prometheus import serve_prometheus

        serve_prometheus(sampler.latest, config.prometheus_port, config.prometheus_addr)

    dispatcher.start()
    try:
        sampler.run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        sampler.close()
        dispatcher.stop()
        if recorder is not None:
            recorder.close()
        if exporter is not None:
            exporter.shutdown()

    if sampler.exit_reason is not None:
        print(f"drmstat: {sampler.exit_reason}", file=sys.stderr)
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose, args.log_file)
    if args.replay:
        sys.exit(_replay(args.replay))
    sys.exit(run(config_from_args(args)))


if __name__ == "__main__":
    main()
