"""Built-in ``http`` tool."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Union

import httpx

from flowkernel.errors import InvalidURLError, SecurityBlockedError, ValidationError
from flowkernel.logging import get_logger
from flowkernel.security.dns import DNSQueryMonitor
from flowkernel.security.http import DNSCache, HTTPSecurityConfig, Resolver, ensure_size
from flowkernel.tools.base import ParameterSchema, Property, Tool, ToolSchema

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 30.0
USER_AGENT = "flowkernel-http-tool/1.0"

_REDIRECT_CODES = (301, 302, 303, 307, 308)


def _collect_headers(headers: httpx.Headers) -> Dict[str, Union[str, List[str]]]:
    collected: Dict[str, Union[str, List[str]]] = {}
    for key, value in headers.multi_items():
        existing = collected.get(key)
        if existing is None:
            collected[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            collected[key] = [existing, value]
    return collected


class HTTPTool(Tool):
    name = "http"
    description = "Make HTTP requests to external APIs"

    def __init__(
        self,
        security: Optional[HTTPSecurityConfig] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver: Optional[Resolver] = None,
        monitor: Optional[DNSQueryMonitor] = None,
    ) -> None:
        self.security = security or HTTPSecurityConfig()
        self.timeout = timeout
        self._transport = transport
        self._dns = DNSCache(self.security, resolver=resolver, monitor=monitor)

    def schema(self) -> ToolSchema:
        return ToolSchema(
            inputs=ParameterSchema(
                properties={
                    "url": Property(type="string", description="The URL to request", format="uri"),
                    "method": Property(
                        type="string",
                        description="HTTP method (GET, POST, PUT, DELETE, etc.)",
                        default="GET",
                    ),
                    "headers": Property(type="object", description="HTTP headers to include"),
                    "body": Property(type="string", description="Request body"),
                },
                required=["url"],
            ),
            outputs=ParameterSchema(
                properties={
                    "success": Property(type="boolean", description="Whether the request returned 2xx"),
                    "status_code": Property(type="integer"),
                    "headers": Property(type="object"),
                    "body": Property(type="string"),
                    "error": Property(type="string"),
                },
            ),
        )

    def _parse(self, inputs: Dict[str, Any]):
        url = inputs.get("url")
        if not isinstance(url, str) or not url:
            raise ValidationError("url must be a non-empty string")

        method = inputs.get("method", "GET")
        if method is None:
            method = "GET"
        if not isinstance(method, str):
            raise ValidationError("method must be a string")

        raw_headers = inputs.get("headers") or {}
        if not isinstance(raw_headers, dict):
            raise ValidationError("headers must be an object")
        headers: Dict[str, str] = {}
        for key, value in raw_headers.items():
            if not isinstance(value, str):
                raise ValidationError(f"header values must be strings: headers.{key}")
            headers[str(key)] = value

        body = inputs.get("body")
        payload: Optional[bytes] = None
        if isinstance(body, str):
            payload = body.encode("utf-8")
        elif body is not None:
            raise ValidationError("body must be a string")
        return url, method, headers, payload

    async def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        url, method, headers, payload = self._parse(inputs)

        method = self.security.validate_method(method)
        self.security.validate_url(url)
        self.security.validate_headers(headers)
        if payload is not None:
            ensure_size(payload, self.security.max_request_size, "request body")

        if method in ("POST", "PUT") and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
        headers.setdefault("User-Agent", USER_AGENT)

        try:
            return await asyncio.wait_for(self._perform(method, url, headers, payload), self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("http_request_timeout", url=url, timeout=self.timeout)
            return {"success": False, "error": f"timeout after {self.timeout:g}s"}
        except httpx.HTTPError as exc:
            return {"success": False, "error": f"request failed: {exc}"}
        except InvalidURLError as exc:
            # raised by name resolution; URL syntax was checked above
            logger.warning("http_resolution_failed", url=url, error=str(exc))
            return {"success": False, "error": f"request failed: {exc}"}

    async def _perform(
        self, method: str, url: str, headers: Dict[str, str], payload: Optional[bytes]
    ) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=False,
        ) as client:
            current = url
            for hop in range(self.security.max_redirects + 1):
                response = await self._send(client, method, current, headers, payload)
                location = response.headers.get("location")
                if response.status_code not in _REDIRECT_CODES or not location:
                    return await self._read_response(response)

                await response.aclose()
                if hop >= self.security.max_redirects:
                    return {
                        "success": False,
                        "status_code": response.status_code,
                        "error": "request failed: too many redirects",
                    }

                target = str(httpx.URL(current).join(location))
                if self.security.validate_redirects:
                    try:
                        self.security.validate_url(target)
                    except (SecurityBlockedError, InvalidURLError) as exc:
                        logger.warning("http_redirect_blocked", url=target, reason=str(exc))
                        raise SecurityBlockedError(f"redirect blocked: {exc}") from exc

                if response.status_code == 303 or (response.status_code in (301, 302) and method == "POST"):
                    method = "GET"
                    payload = None
                current = target

        return {"success": False, "error": "request failed: too many redirects"}

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Dict[str, str],
        payload: Optional[bytes],
    ) -> httpx.Response:
        scheme, host, port = self.security.validate_url(url)
        target = httpx.URL(url)
        request_headers = dict(headers)
        extensions: Dict[str, Any] = {}

        if self.security.dns_rebinding_guard:
            address = (await self._dns.resolve(host))[0]
            if address != host:
                pinned = f"[{address}]" if ":" in address else address
                target = target.copy_with(host=pinned)
                request_headers["Host"] = host if port is None else f"{host}:{port}"
                if scheme == "https":
                    extensions["sni_hostname"] = host

        request = client.build_request(
            method, target, headers=request_headers, content=payload, extensions=extensions
        )
        logger.debug("http_request", method=method, host=host)
        return await client.send(request, stream=True)

    async def _read_response(self, response: httpx.Response) -> Dict[str, Any]:
        limit = self.security.max_response_size
        chunks: List[bytes] = []
        total = 0
        try:
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if limit > 0 and total > limit:
                    return {
                        "success": False,
                        "status_code": response.status_code,
                        "error": f"response body exceeds maximum size of {limit} bytes",
                    }
                chunks.append(chunk)
        finally:
            await response.aclose()

        body = b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
        return {
            "success": 200 <= response.status_code < 300,
            "status_code": response.status_code,
            "headers": _collect_headers(response.headers),
            "body": body,
        }
