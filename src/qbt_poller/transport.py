"""
HTTP transport for the qBittorrent Web API.

This module issues single HTTP(S) requests with a hard deadline and returns a
normalized response object, wrapping httpx errors into the poller's own
exception types.
"""

import asyncio
import json
from typing import Any

import httpx
import structlog

from .exceptions import RequestTimeoutError, TransportError
from .tls import TlsMaterialCache

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class HttpResponse:
    """
    Normalized HTTP response.

    Headers are folded into a lowercase map once; repeated ``Set-Cookie``
    headers are joined with ``"; "`` and all other repeats with ``", "``.
    """

    def __init__(
        self,
        status: int,
        headers: list[tuple[str, str]],
        body: bytes,
    ):
        self.status = status
        self.body = body
        self._json: Any = None
        self._json_loaded = False

        grouped: dict[str, list[str]] = {}
        for name, value in headers:
            grouped.setdefault(name.lower(), []).append(value)

        self.headers = {
            name: ("; " if name == "set-cookie" else ", ").join(values)
            for name, values in grouped.items()
        }
        self.cookie_pairs = [
            value.split(";", 1)[0].strip()
            for value in grouped.get("set-cookie", [])
            if value.split(";", 1)[0].strip()
        ]

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "HttpResponse":
        """Build a normalized response from an httpx response."""
        return cls(
            status=response.status_code,
            headers=list(response.headers.multi_items()),
            body=response.content,
        )

    @property
    def ok(self) -> bool:
        """Check if the status is in the 2xx class."""
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower())

    def text(self) -> str:
        """Decode the body as UTF-8 text."""
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Parse the body as JSON on first access."""
        if not self._json_loaded:
            self._json = json.loads(self.body)
            self._json_loaded = True
        return self._json

    def __repr__(self) -> str:
        return f"<HttpResponse status={self.status} bytes={len(self.body)}>"


class Transport:
    """
    Issues one request at a time against the remote service.

    Plain and TLS endpoints are handled transparently based on the URL
    scheme; HTTPS requests use the cached TLS material.
    """

    def __init__(
        self,
        tls_cache: TlsMaterialCache,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the transport.

        Args:
            tls_cache: Cache providing the SSL context for HTTPS requests
            http_transport: Optional httpx transport, used by tests
        """
        self.tls_cache = tls_cache
        self.http_transport = http_transport

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> HttpResponse:
        """
        Perform a single request.

        Args:
            url: Absolute request URL
            method: HTTP method
            headers: Request headers
            body: Optional request body
            timeout: Deadline for the whole request in seconds

        Returns:
            Normalized response

        Raises:
            RequestTimeoutError: If the deadline is exceeded
            TransportError: On network level failures or an unusable URL
        """
        # Snapshot the context so a concurrent invalidate cannot change it mid-request
        verify: Any = True
        if url.lower().startswith("https://"):
            verify = self.tls_cache.ssl_context()

        try:
            return await asyncio.wait_for(
                self._send(url, method, headers or {}, body, verify), timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(timeout, {"url": url, "method": method}) from e
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
            raise TransportError(
                f"{type(e).__name__}: {e}", {"url": url, "method": method}
            ) from e

    async def _send(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        body: str | None,
        verify: Any,
    ) -> HttpResponse:
        async with httpx.AsyncClient(
            verify=verify,
            timeout=None,
            transport=self.http_transport,
        ) as client:
            response = await client.request(
                method,
                url,
                headers=headers,
                content=body.encode("utf-8") if body is not None else None,
            )
            return HttpResponse.from_httpx(response)
