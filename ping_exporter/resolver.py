"""
DNS collaborator: name -> IPv4 addresses via dnspython (system resolv.conf).
A failure for one name raises ResolutionFailure for that name only.
"""
import logging

import dns.asyncresolver
import dns.exception
import dns.resolver

from ping_exporter.errors import ConfigurationError, ResolutionFailure

logger = logging.getLogger("ping_exporter.resolver")

DEFAULT_DNS_TIMEOUT = 2.0


class DnsResolver:
    def __init__(self, timeout: float = DEFAULT_DNS_TIMEOUT, resolver=None):
        if resolver is None:
            try:
                resolver = dns.asyncresolver.Resolver()
            except dns.resolver.NoResolverConfiguration as e:
                raise ConfigurationError(f"no usable resolver configuration: {e}") from e
        resolver.lifetime = timeout
        self._resolver = resolver

    async def lookup(self, name: str) -> list[str]:
        try:
            answer = await self._resolver.resolve(name, "A")
        except dns.exception.DNSException as e:
            raise ResolutionFailure(name, type(e).__name__) from e
        addresses = list(dict.fromkeys(rdata.address for rdata in answer))
        if not addresses:
            raise ResolutionFailure(name, "no A records")
        logger.debug("Resolved %s -> %s", name, ", ".join(addresses))
        return addresses
