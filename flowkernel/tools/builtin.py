from __future__ import annotations

import concurrent.futures
from typing import Optional

import httpx

from flowkernel.config import Settings
from flowkernel.security.dns import DNSQueryMonitor
from flowkernel.security.file import FileSecurityConfig
from flowkernel.security.http import HTTPSecurityConfig, Resolver
from flowkernel.security.shell import ShellSecurityConfig
from flowkernel.tools.file import FileTool
from flowkernel.tools.http import HTTPTool
from flowkernel.tools.registry import ToolRegistry
from flowkernel.tools.shell import ShellTool


def register_builtin_tools(
    registry: ToolRegistry,
    settings: Optional[Settings] = None,
    *,
    file_security: Optional[FileSecurityConfig] = None,
    http_security: Optional[HTTPSecurityConfig] = None,
    shell_security: Optional[ShellSecurityConfig] = None,
    executor: Optional[concurrent.futures.Executor] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    resolver: Optional[Resolver] = None,
    dns_monitor: Optional[DNSQueryMonitor] = None,
) -> ToolRegistry:
    """Register the ``file``, ``http`` and ``shell`` tools.

    Policies not passed explicitly are built from ``settings`` limits.
    """
    settings = settings or Settings()
    if file_security is None:
        file_security = FileSecurityConfig(max_file_size=settings.file_max_size_bytes)
    if http_security is None:
        http_security = HTTPSecurityConfig(
            max_redirects=settings.http_max_redirects,
            dns_cache_timeout=settings.dns_cache_ttl_s,
        )
    if shell_security is None:
        shell_security = ShellSecurityConfig(max_output_size=settings.shell_max_output_bytes)

    registry.register(FileTool(file_security, executor=executor))
    registry.register(
        HTTPTool(
            http_security,
            timeout=settings.default_tool_timeout_s,
            transport=transport,
            resolver=resolver,
            monitor=dns_monitor,
        )
    )
    registry.register(ShellTool(shell_security, timeout=settings.default_tool_timeout_s))
    return registry
