"""
Text rendering of a ResultSet, one line per (target, field):
<namespace>_<field>{domain="<name>",addr="<address>"} <value>
"""
import math
from typing import Optional

from ping_exporter.stats import PingStat, ResultSet

FIELDS = (
    ("max_delay", lambda s: s.max_delay_ms),
    ("min_delay", lambda s: s.min_delay_ms),
    ("avg_delay", lambda s: s.avg_delay_ms),
    ("send", lambda s: s.sent),
    ("lost", lambda s: s.lost),
)


def escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def format_value(value: float) -> str:
    """Shortest form, integers without a trailing '.0' (Go's %g)."""
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def render_stat(namespace: str, name: str, address: str, stat: PingStat) -> list[str]:
    labels = f'domain="{escape_label(name)}",addr="{escape_label(address)}"'
    return [f"{namespace}_{field}{{{labels}}} {format_value(get(stat))}" for field, get in FIELDS]


def render_metrics(result_set: Optional[ResultSet], namespace: str = "ping") -> str:
    if result_set is None:
        return ""
    lines: list[str] = []
    for key, stat in result_set:
        lines.extend(render_stat(namespace, key.name, key.address, stat))
    return "".join(line + "\n" for line in lines)
