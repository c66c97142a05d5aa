"""
Exception types shared by the probe engine and its collaborators.
Timeouts and unreachable hosts are outcomes, not exceptions (see session.ProbeOutcome).
"""


class PingExporterError(Exception):
    """Base class for exporter errors."""


class MalformedPacket(PingExporterError):
    """Inbound buffer too short for the ICMP type it claims to be."""


class ResolutionFailure(PingExporterError):
    """DNS lookup for one destination name returned no usable address."""

    def __init__(self, name: str, cause: str = ""):
        self.name = name
        self.cause = cause
        super().__init__(f"cannot resolve {name}: {cause}" if cause else f"cannot resolve {name}")


class ConfigurationError(PingExporterError):
    """Fatal startup problem; the process must not start."""
