"""
Console logging always; daily rotating file (midnight) when a log directory is given.
Logged: cycle summaries, per-address results, socket and resolution failures, start/stop.
"""
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional


def setup_logging(log_path: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """
    Configure the root logger and return the app logger ('ping_exporter').
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))
    ch.setFormatter(fmt)
    root.addHandler(ch)

    if log_path:
        log_dir = Path(log_path)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = TimedRotatingFileHandler(log_dir / "ping_exporter.log", when="midnight", backupCount=30, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    logger = logging.getLogger("ping_exporter")
    logger.setLevel(logging.DEBUG)
    return logger
