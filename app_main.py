"""
Ping Exporter – ICMP latency/loss prober with a pull-based metrics endpoint. Entry point.
- Flags override an optional JSON config file
- One sweep at startup, then on a fixed cadence
- Serves over TCP (host:port) or a unix socket
"""
import argparse
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import uvicorn

from ping_exporter.config import Settings, build_settings, load_config, parse_listen_address
from ping_exporter.errors import ConfigurationError
from ping_exporter.logging_setup import setup_logging
from ping_exporter.publisher import ResultPublisher
from ping_exporter.resolver import DnsResolver
from ping_exporter.runner import ProbeRunner
from ping_exporter.scheduler import run_schedule
from ping_exporter.session import raw_socket_permitted
from ping_exporter.sweep import SweepCoordinator
from ping_exporter.system_ping import SystemPingRunner
from ping_exporter.web import create_app

# flag -> config key; flags left unset keep the config file / default value
FLAG_KEYS = (
    "dest", "count", "listen_address", "unix_sock", "metrics_path", "namespace", "interval",
    "timeout", "round_delay", "ttl", "concurrency", "result_ttl", "dns_timeout", "backend", "log_path", "log_level",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ping Exporter – ICMP latency and loss metrics")
    parser.add_argument("--config", help="JSON config file; flags override its values")
    parser.add_argument("--dest", help="Destination list to ping, comma separated IPv4 addresses and domains")
    parser.add_argument("--count", type=int, help="Echo requests per destination per cycle (default 5)")
    parser.add_argument("--listen-address", dest="listen_address", help="host:port to serve metrics on")
    parser.add_argument("--unix-sock", dest="unix_sock", help="Serve on this unix socket instead of TCP")
    parser.add_argument("--web.telemetry-path", dest="metrics_path", help="Path under which to expose metrics")
    parser.add_argument("--namespace", help="Metric name prefix (default 'ping')")
    parser.add_argument("--interval", type=int, help="Seconds between measurement cycles (default 60)")
    parser.add_argument("--timeout", type=float, help="Per-echo reply timeout in seconds (default 3)")
    parser.add_argument("--round-delay", dest="round_delay", type=float, help="Pause between echoes in seconds")
    parser.add_argument("--ttl", type=int, help="Outgoing IP TTL (default 254)")
    parser.add_argument("--concurrency", type=int, help="Max addresses probed at once")
    parser.add_argument("--result-ttl", dest="result_ttl", type=float, help="Drop results older than this (0 = never)")
    parser.add_argument("--dns-timeout", dest="dns_timeout", type=float, help="DNS lookup timeout in seconds")
    parser.add_argument(
        "--backend", choices=("auto", "raw", "system"),
        help="raw: ICMP sockets (root/CAP_NET_RAW); system: the ping binary; auto: raw if permitted",
    )
    parser.add_argument("--log-path", dest="log_path", help="Directory for daily rotated log files")
    parser.add_argument("--log-level", dest="log_level", help="Console log level (default INFO)")
    return parser


def load_settings(argv: Optional[list[str]] = None) -> Settings:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    for key in FLAG_KEYS:
        value = getattr(args, key)
        if value is not None:
            config[key] = value
    return build_settings(config)


def select_backend(settings: Settings) -> str:
    """'raw' or 'system'; 'auto' picks raw sockets when the process may open them."""
    if settings.backend != "auto":
        return settings.backend
    if raw_socket_permitted():
        return "raw"
    logging.getLogger("ping_exporter").warning(
        "Raw ICMP sockets not permitted (need root or CAP_NET_RAW); using the system ping binary"
    )
    return "system"


def build_coordinator(
    settings: Settings,
    publisher: ResultPublisher,
    executor: Optional[ThreadPoolExecutor] = None,
) -> SweepCoordinator:
    resolver = None
    if any(not d.is_literal for d in settings.destinations):
        resolver = DnsResolver(timeout=settings.dns_timeout)

    if select_backend(settings) == "system":
        def runner_factory():
            return SystemPingRunner(
                round_count=settings.count,
                round_timeout=settings.timeout,
                round_delay=settings.round_delay,
                ttl=settings.ttl,
            )
    else:
        # one blocking session thread per address pinged at once
        if executor is None:
            executor = ThreadPoolExecutor(max_workers=settings.concurrency, thread_name_prefix="icmp")

        def runner_factory():
            return ProbeRunner(
                round_count=settings.count,
                round_timeout=settings.timeout,
                round_delay=settings.round_delay,
                ttl=settings.ttl,
                executor=executor,
            )

    return SweepCoordinator(
        runner_factory,
        publisher,
        destinations=settings.destinations,
        resolver=resolver,
        concurrency=settings.concurrency,
    )


def serve(settings: Settings) -> None:
    publisher = ResultPublisher(max_age=settings.result_ttl)
    executor = ThreadPoolExecutor(max_workers=settings.concurrency, thread_name_prefix="icmp")
    coordinator = build_coordinator(settings, publisher, executor)
    app = create_app(
        publisher,
        metrics_path=settings.metrics_path,
        namespace=settings.namespace,
        background=lambda: run_schedule(coordinator, settings.interval),
    )
    if settings.unix_sock:
        if os.path.exists(settings.unix_sock):
            os.remove(settings.unix_sock)
        config = uvicorn.Config(app, uds=settings.unix_sock, log_config=None)
    else:
        host, port = parse_listen_address(settings.listen_address)
        config = uvicorn.Config(app, host=host, port=port, log_config=None)
    try:
        uvicorn.Server(config).run()
    finally:
        executor.shutdown(wait=False)


def main(argv: Optional[list[str]] = None) -> int:
    try:
        settings = load_settings(argv)
    except ConfigurationError as e:
        print(f"ping_exporter: {e}", file=sys.stderr)
        return 2

    logger = setup_logging(settings.log_path or None, settings.log_level)
    for item in settings.rejected:
        logger.warning("Ignoring invalid destination %r", item)
    logger.info(
        "Ping Exporter started: %d destinations, %d echoes every %ss",
        len(settings.destinations),
        settings.count,
        settings.interval,
    )
    try:
        serve(settings)
    except ConfigurationError as e:
        logger.error("%s", e)
        return 2
    except KeyboardInterrupt:
        pass
    logging.getLogger("ping_exporter").info("Ping Exporter stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
