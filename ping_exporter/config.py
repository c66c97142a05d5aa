"""
Startup configuration: defaults, optional JSON file, destination list parsing.
Command-line flags (app_main) are merged over the file; anything invalid raises
ConfigurationError and the process does not start.
"""
import ipaddress
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ping_exporter.errors import ConfigurationError
from ping_exporter.resolver import DEFAULT_DNS_TIMEOUT
from ping_exporter.runner import DEFAULT_ROUND_COUNT, DEFAULT_ROUND_DELAY, DEFAULT_ROUND_TIMEOUT, DEFAULT_TTL

DEFAULT_LISTEN_ADDRESS = "127.0.0.1:9427"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_NAMESPACE = "ping"
DEFAULT_INTERVAL = 60
DEFAULT_CONCURRENCY = 32
DEFAULT_RESULT_TTL = 300.0
BACKENDS = ("auto", "raw", "system")

_DOMAIN_RE = re.compile(
    r"(?=.{1,253}\.?$)"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+\.?"
)
_NAMESPACE_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


def get_default_config() -> dict[str, Any]:
    return {
        "dest": "",
        "count": DEFAULT_ROUND_COUNT,
        "listen_address": DEFAULT_LISTEN_ADDRESS,
        "unix_sock": "",
        "metrics_path": DEFAULT_METRICS_PATH,
        "namespace": DEFAULT_NAMESPACE,
        "interval": DEFAULT_INTERVAL,
        "timeout": DEFAULT_ROUND_TIMEOUT,
        "round_delay": DEFAULT_ROUND_DELAY,
        "ttl": DEFAULT_TTL,
        "concurrency": DEFAULT_CONCURRENCY,
        "result_ttl": DEFAULT_RESULT_TTL,
        "dns_timeout": DEFAULT_DNS_TIMEOUT,
        "backend": "auto",
        "log_path": "",
        "log_level": "INFO",
    }


def load_config(path: Optional[str]) -> dict[str, Any]:
    """Read a JSON config file and merge it over the defaults."""
    config = get_default_config()
    if not path:
        return config
    try:
        with open(Path(path), "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigurationError(f"cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a JSON object")
    unknown = set(data) - set(config)
    if unknown:
        raise ConfigurationError(f"unknown config keys: {', '.join(sorted(unknown))}")
    config.update(data)
    return config


class Destination:
    """One configured entry: an IPv4 literal or a domain name to resolve each cycle."""
    __slots__ = ("name", "is_literal")

    def __init__(self, name: str, is_literal: bool):
        self.name = name
        self.is_literal = is_literal

    def __eq__(self, other):
        if not isinstance(other, Destination):
            return NotImplemented
        return (self.name, self.is_literal) == (other.name, other.is_literal)

    def __hash__(self):
        return hash((self.name, self.is_literal))

    def __repr__(self):
        return f"Destination({self.name!r}, is_literal={self.is_literal})"


def classify_destination(value: str) -> Optional[Destination]:
    """IPv4 literal, domain name, or None for anything else (IPv6 included)."""
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        addr = None
    if addr is not None:
        if addr.version == 4:
            return Destination(str(addr), True)
        return None
    name = value.rstrip(".")
    # a numeric last label is a mistyped address, not a name
    if _DOMAIN_RE.fullmatch(value) and not name.rsplit(".", 1)[-1].isdigit():
        return Destination(name, False)
    return None


def split_destinations(value) -> tuple[list[Destination], list[str]]:
    """Accepts 'a,b,c' or a list of strings. Returns (valid destinations, rejected entries)."""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise ConfigurationError("dest must be a comma-separated string or a list")

    destinations: list[Destination] = []
    rejected: list[str] = []
    for raw in items:
        item = raw.strip()
        if not item:
            continue
        dest = classify_destination(item)
        if dest is None:
            rejected.append(item)
        elif dest not in destinations:
            destinations.append(dest)
    return destinations, rejected


def parse_destinations(value) -> list[Destination]:
    """Like split_destinations, but an empty result is fatal."""
    destinations, rejected = split_destinations(value)
    if not destinations:
        if rejected:
            raise ConfigurationError(f"no valid destination to ping (rejected: {', '.join(rejected)})")
        raise ConfigurationError("no destination to ping")
    return destinations


def parse_listen_address(value: str) -> tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigurationError(f"listen address must be host:port, got {value!r}")
    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ConfigurationError(f"listen port out of range: {port_num}")
    return host.strip("[]") or "0.0.0.0", port_num


@dataclass
class Settings:
    destinations: list[Destination]
    count: int = DEFAULT_ROUND_COUNT
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    unix_sock: str = ""
    metrics_path: str = DEFAULT_METRICS_PATH
    namespace: str = DEFAULT_NAMESPACE
    interval: int = DEFAULT_INTERVAL
    timeout: float = DEFAULT_ROUND_TIMEOUT
    round_delay: float = DEFAULT_ROUND_DELAY
    ttl: int = DEFAULT_TTL
    concurrency: int = DEFAULT_CONCURRENCY
    result_ttl: Optional[float] = DEFAULT_RESULT_TTL
    dns_timeout: float = DEFAULT_DNS_TIMEOUT
    backend: str = "auto"
    log_path: str = ""
    log_level: str = "INFO"
    rejected: list[str] = field(default_factory=list)


def build_settings(config: dict[str, Any]) -> Settings:
    raw_dest = config.get("dest") or ""
    destinations = parse_destinations(raw_dest)
    _, rejected = split_destinations(raw_dest)
    try:
        count = int(config["count"])
        interval = int(config["interval"])
        timeout = float(config["timeout"])
        round_delay = float(config["round_delay"])
        ttl = int(config["ttl"])
        concurrency = int(config["concurrency"])
        result_ttl = float(config["result_ttl"] or 0)
        dns_timeout = float(config["dns_timeout"])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid numeric setting: {e}") from e

    if count < 1:
        raise ConfigurationError("count must be at least 1")
    if interval < 1:
        raise ConfigurationError("interval must be at least 1 second")
    if timeout <= 0:
        raise ConfigurationError("timeout must be positive")
    if round_delay < 0:
        raise ConfigurationError("round delay must not be negative")
    if not 1 <= ttl <= 255:
        raise ConfigurationError("ttl must be between 1 and 255")
    if concurrency < 1:
        raise ConfigurationError("concurrency must be at least 1")

    metrics_path = str(config["metrics_path"])
    if not metrics_path.startswith("/") or metrics_path == "/":
        raise ConfigurationError(f"metrics path must start with '/' and not be the root: {metrics_path!r}")
    namespace = str(config["namespace"])
    if not _NAMESPACE_RE.fullmatch(namespace):
        raise ConfigurationError(f"invalid metrics namespace {namespace!r}")

    backend = str(config.get("backend") or "auto").lower()
    if backend not in BACKENDS:
        raise ConfigurationError(f"backend must be one of {', '.join(BACKENDS)}, got {backend!r}")

    unix_sock = str(config.get("unix_sock") or "")
    listen_address = str(config["listen_address"])
    if not unix_sock:
        parse_listen_address(listen_address)

    return Settings(
        destinations=destinations,
        count=count,
        listen_address=listen_address,
        unix_sock=unix_sock,
        metrics_path=metrics_path,
        namespace=namespace,
        interval=interval,
        timeout=timeout,
        round_delay=round_delay,
        ttl=ttl,
        concurrency=concurrency,
        result_ttl=result_ttl if result_ttl > 0 else None,
        dns_timeout=dns_timeout,
        backend=backend,
        log_path=str(config.get("log_path") or ""),
        log_level=str(config.get("log_level") or "INFO").upper(),
        rejected=rejected,
    )
