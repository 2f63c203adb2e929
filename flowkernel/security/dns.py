from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List

from flowkernel.errors import SecurityBlockedError
from flowkernel.logging import get_logger

logger = get_logger(__name__)

DYNAMIC_DNS_SUFFIXES = (
    ".dyndns.org",
    ".no-ip.com",
    ".duckdns.org",
    ".freedns.afraid.org",
    ".ddns.net",
    ".ngrok.io",
    ".localhost.run",
    ".tunnelto.dev",
)

_RATE_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class DNSSecurityConfig:
    block_dynamic_dns: bool = True
    allowlist: List[str] = field(default_factory=list)
    max_queries_per_minute: int = 100
    max_subdomain_depth: int = 5
    max_label_length: int = 63


class DNSQueryMonitor:
    """Rejects host lookups that look like tunnelling or DNS exfiltration."""

    def __init__(
        self,
        config: DNSSecurityConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or DNSSecurityConfig()
        self._clock = clock
        self._history: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def check(self, hostname: str) -> None:
        host = hostname.lower().rstrip(".")
        with self._lock:
            if self.config.block_dynamic_dns:
                self._check_dynamic_dns(host)
            labels = [label for label in host.split(".") if label]
            if self.config.max_subdomain_depth > 0 and len(labels) > self.config.max_subdomain_depth:
                self._block(
                    host,
                    "subdomain_depth",
                    f"subdomain depth ({len(labels)}) exceeds maximum ({self.config.max_subdomain_depth}): {host}",
                )
            if self.config.max_label_length > 0:
                for label in labels:
                    if len(label) > self.config.max_label_length:
                        self._block(
                            host,
                            "label_length",
                            f"DNS label length ({len(label)}) exceeds maximum ({self.config.max_label_length})",
                        )
            if self.config.max_queries_per_minute > 0:
                self._check_rate(host)
            self._record(host)

    def _block(self, host: str, reason: str, message: str) -> None:
        logger.warning("dns_query_blocked", host=host, reason=reason)
        raise SecurityBlockedError(message)

    def _check_dynamic_dns(self, host: str) -> None:
        for allowed in self.config.allowlist:
            allowed = allowed.lower()
            if host == allowed or host.endswith("." + allowed):
                return
        for suffix in DYNAMIC_DNS_SUFFIXES:
            if host.endswith(suffix):
                self._block(host, "dynamic_dns", f"dynamic DNS provider blocked: {host}")

    def _prune(self, host: str, now: float) -> Deque[float]:
        history = self._history.setdefault(host, deque())
        cutoff = now - _RATE_WINDOW_SECONDS
        while history and history[0] <= cutoff:
            history.popleft()
        return history

    def _check_rate(self, host: str) -> None:
        history = self._prune(host, self._clock())
        if len(history) >= self.config.max_queries_per_minute:
            self._block(
                host,
                "rate_limit",
                f"DNS query rate limit exceeded for {host}: {len(history)} queries/minute "
                f"(max: {self.config.max_queries_per_minute})",
            )

    def _record(self, host: str) -> None:
        now = self._clock()
        self._prune(host, now).append(now)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "total_domains": len(self._history),
                "total_queries": sum(len(h) for h in self._history.values()),
            }
