"""DNS resolution for direct dials, with a dnspython fallback.

Restrictive networks often poison or drop the system resolver. When the relay
has to dial a target directly it first asks the system, then public
resolvers one by one.
"""

import socket
import threading
from collections import OrderedDict
from typing import ClassVar, Final

import dns.exception
import dns.resolver
from loguru import logger

from bulletproof.core.exceptions import DNSResolutionError

# DNS resolver constants
DEFAULT_TIMEOUT: Final = 1.0  # seconds
DEFAULT_LIFETIME: Final = 3.0  # seconds
CACHE_SIZE: Final = 1024  # most recently resolved names kept
DEFAULT_NAMESERVERS: Final = (
    "1.1.1.1",  # Cloudflare
    "8.8.8.8",  # Google
    "9.9.9.9",  # Quad9
)


class DNSResolver:
    """Resolve host names to IPv4 addresses with a small shared LRU cache."""

    _resolve_cache: ClassVar[OrderedDict[str, str]] = OrderedDict()
    _cache_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, nameservers: tuple[str, ...] = DEFAULT_NAMESERVERS) -> None:
        self.nameservers = nameservers

    def _remember(self, domain: str, ip: str) -> str:
        with self._cache_lock:
            self._resolve_cache[domain] = ip
            self._resolve_cache.move_to_end(domain)
            while len(self._resolve_cache) > CACHE_SIZE:
                self._resolve_cache.popitem(last=False)
        return ip

    def _try_system_dns(self, domain: str) -> str | None:
        """Try resolving using system DNS."""
        try:
            return self._remember(domain, socket.gethostbyname(domain))
        except OSError as e:
            logger.debug(f"System DNS resolution failed for {domain}: {e}")
            return None

    def _try_nameserver(self, domain: str, nameserver: str) -> str | None:
        resolver = dns.resolver.Resolver(configure=False)
        resolver.timeout = DEFAULT_TIMEOUT
        resolver.lifetime = DEFAULT_LIFETIME
        resolver.nameservers = [nameserver]
        try:
            answer = resolver.resolve(domain, "A")
        except dns.exception.DNSException as e:
            logger.debug(f"Nameserver {nameserver} failed for {domain}: {e}")
            return None
        return self._remember(domain, str(answer[0]))

    def resolve(self, domain: str) -> str:
        """Resolve domain name to IP address.

        Args:
            domain: Domain name to resolve

        Returns:
            str: Resolved IP address

        Raises:
            DNSResolutionError: If resolution fails
        """
        with self._cache_lock:
            cached = self._resolve_cache.get(domain)
            if cached:
                self._resolve_cache.move_to_end(domain)
        if cached:
            return cached

        if ip := self._try_system_dns(domain):
            return ip
        for nameserver in self.nameservers:
            if ip := self._try_nameserver(domain, nameserver):
                return ip

        error_msg = f"Could not resolve {domain} using any available method"
        logger.warning(error_msg)
        raise DNSResolutionError(error_msg)


# Global resolver instance
dns_resolver = DNSResolver()
