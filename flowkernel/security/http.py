"""Outbound HTTP policy: URL, method and header checks plus the DNS guard."""
from __future__ import annotations

import asyncio
import ipaddress
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from flowkernel.errors import InvalidURLError, SecurityBlockedError, ValidationError
from flowkernel.logging import get_logger
from flowkernel.security.dns import DNSQueryMonitor

logger = get_logger(__name__)

METADATA_IPS = frozenset({"169.254.169.254", "fd00:ec2::254"})
METADATA_HOSTS = frozenset({"metadata.google.internal", "metadata"})

DEFAULT_ALLOWED_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD")

Resolver = Callable[[str], Awaitable[List[str]]]


def normalize_hosts(entries: Sequence[str] | None) -> List[str]:
    normalized: List[str] = []
    for entry in entries or []:
        stripped = entry.strip().lower()
        if stripped and stripped not in normalized:
            normalized.append(stripped)
    return normalized


def host_matches_allowlist(host: str, allowlist: Sequence[str], *, allow_subdomains: bool = False) -> bool:
    if not host:
        return False
    lowered = host.lower()
    for entry in allowlist:
        candidate = entry.lower()
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]):
                return True
        elif lowered == candidate:
            return True
        elif allow_subdomains and lowered.endswith("." + candidate):
            return True
        elif "/" in candidate:
            try:
                if ipaddress.ip_address(host) in ipaddress.ip_network(candidate, strict=False):
                    return True
            except ValueError:
                continue
    return False


def is_private_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_multicast
        or ip.is_reserved
    )


@dataclass(frozen=True)
class HTTPSecurityConfig:
    """Policy applied to every request made by the http tool.

    Empty ``allowed_hosts`` or ``allowed_headers`` leave those checks off.
    """

    allowed_schemes: Tuple[str, ...] = ("http", "https")
    require_https: bool = False
    allowed_hosts: List[str] = field(default_factory=list)
    allow_subdomains: bool = False
    deny_private_ips: bool = True
    deny_metadata: bool = True
    allowed_methods: Tuple[str, ...] = DEFAULT_ALLOWED_METHODS
    allowed_headers: List[str] = field(default_factory=list)
    max_request_size: int = 1024 * 1024
    max_response_size: int = 10 * 1024 * 1024
    max_redirects: int = 0
    validate_redirects: bool = True
    dns_rebinding_guard: bool = True
    dns_cache_timeout: float = 30.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "allowed_hosts", normalize_hosts(self.allowed_hosts))
        object.__setattr__(self, "allowed_schemes", tuple(s.lower() for s in self.allowed_schemes))
        object.__setattr__(self, "allowed_methods", tuple(m.upper() for m in self.allowed_methods))
        object.__setattr__(self, "allowed_headers", [h.lower() for h in self.allowed_headers])

    def validate_url(self, url: str) -> Tuple[str, str, Optional[int]]:
        """Check ``url`` and return ``(scheme, hostname, port)``."""
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as exc:
            raise InvalidURLError(f"invalid URL: {exc}") from exc

        scheme = parts.scheme.lower()
        if scheme not in ("http", "https"):
            raise InvalidURLError(f"unsupported URL scheme: {scheme or '(none)'}")
        if scheme not in self.allowed_schemes:
            raise SecurityBlockedError(f"URL scheme not allowed: {scheme}")
        if self.require_https and scheme != "https":
            raise SecurityBlockedError("only HTTPS URLs are allowed")

        host = (parts.hostname or "").lower()
        if not host:
            raise InvalidURLError("URL must include a hostname")

        self.validate_host(host)
        return scheme, host, port

    def validate_host(self, host: str) -> None:
        try:
            literal = ipaddress.ip_address(host)
        except ValueError:
            literal = None

        if literal is not None:
            self.validate_ip(str(literal))
        else:
            if self.deny_metadata and host in METADATA_HOSTS:
                raise SecurityBlockedError("requests to cloud metadata endpoints not allowed")
            if self.deny_private_ips and (host == "localhost" or host.endswith(".localhost")):
                raise SecurityBlockedError("requests to private IP addresses not allowed")

        if self.allowed_hosts and not host_matches_allowlist(
            host, self.allowed_hosts, allow_subdomains=self.allow_subdomains
        ):
            logger.warning("http_host_blocked", host=host)
            raise SecurityBlockedError("host not in allowed list")

    def validate_ip(self, ip_text: str) -> None:
        ip = ipaddress.ip_address(ip_text)
        if self.deny_metadata and str(ip) in METADATA_IPS:
            raise SecurityBlockedError("requests to cloud metadata endpoints not allowed")
        if self.deny_private_ips and is_private_ip(ip):
            raise SecurityBlockedError("requests to private IP addresses not allowed")

    def validate_method(self, method: str) -> str:
        upper = method.upper()
        if upper not in self.allowed_methods:
            raise SecurityBlockedError(f"HTTP method not allowed: {upper}")
        return upper

    def validate_headers(self, headers: Dict[str, str]) -> None:
        if not self.allowed_headers:
            return
        for name in headers:
            if name.lower() not in self.allowed_headers:
                raise SecurityBlockedError(f"header not allowed: {name}")


async def system_resolver(host: str) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    addresses: List[str] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        address = sockaddr[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


class DNSCache:
    """TTL cache of validated host addresses.

    The http tool connects to the cached address, so a DNS answer that flips
    to a private IP after validation cannot redirect the connection.
    """

    def __init__(
        self,
        config: HTTPSecurityConfig,
        *,
        resolver: Optional[Resolver] = None,
        monitor: Optional[DNSQueryMonitor] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._resolver = resolver or system_resolver
        self._monitor = monitor
        self._clock = clock
        self._entries: Dict[str, Tuple[List[str], float]] = {}
        self._lock = threading.Lock()

    def lookup(self, host: str) -> Optional[List[str]]:
        with self._lock:
            entry = self._entries.get(host)
            if entry is None:
                return None
            addresses, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[host]
                return None
            return list(addresses)

    async def resolve(self, host: str) -> List[str]:
        """Return validated addresses for ``host``, resolving on cache miss."""
        try:
            ipaddress.ip_address(host)
        except ValueError:
            pass
        else:
            self.config.validate_ip(host)
            return [host]

        cached = self.lookup(host)
        if cached is not None:
            return cached

        if self._monitor is not None:
            self._monitor.check(host)

        try:
            addresses = await self._resolver(host)
        except OSError as exc:
            raise InvalidURLError(f"DNS resolution failed for {host}: {exc}") from exc
        if not addresses:
            raise InvalidURLError(f"DNS resolution returned no addresses for {host}")

        for address in addresses:
            try:
                self.config.validate_ip(address)
            except SecurityBlockedError:
                logger.warning("dns_rebinding_blocked", host=host, address=address)
                raise

        with self._lock:
            self._entries[host] = (list(addresses), self._clock() + self.config.dns_cache_timeout)
        return list(addresses)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def ensure_size(payload: bytes, limit: int, what: str) -> None:
    if limit > 0 and len(payload) > limit:
        raise ValidationError(f"{what} size ({len(payload)} bytes) exceeds maximum allowed ({limit} bytes)")
