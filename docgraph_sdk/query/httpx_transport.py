# docgraph_sdk/query/httpx_transport.py
# SPDX-License-Identifier: Apache-2.0
"""
HTTP transport backed by httpx.

Maps a Request onto `{endpoint}/_db/{database}{path}` and returns every
response, error statuses included, as a RawResponse. Only failures that
never produced a response are raised:

    httpx.TimeoutException -> TransportError(code="TRANSPORT_TIMEOUT")
    httpx.HTTPError        -> TransportError

Configuration comes from constructor kwargs, or from the environment via
`HttpxTransport.from_env()`:

    DOCGRAPH_ENDPOINT    base URL (default http://localhost:8529)
    DOCGRAPH_USERNAME    basic-auth user (optional)
    DOCGRAPH_PASSWORD    basic-auth password (optional)
    DOCGRAPH_TIMEOUT_S   per-request timeout in seconds (default 30)
"""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx

from docgraph_sdk.query.query_base import BadRequest, RawResponse, Request, TransportError

LOG = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:8529"
DEFAULT_TIMEOUT_S = 30.0


class HttpxTransport:
    """
    Pooled async HTTP transport.

    Safe for many concurrent send() calls; the underlying AsyncClient owns
    the connection pool. A caller-supplied `client` is used as-is and is
    not closed by close().
    """

    def __init__(
        self,
        base_url: str = DEFAULT_ENDPOINT,
        *,
        auth: Optional[Tuple[str, str]] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        headers: Optional[Mapping[str, str]] = None,
        max_connections: int = 20,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise BadRequest("base_url is required")
        if timeout_s <= 0:
            raise BadRequest("timeout_s must be positive")
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(
                auth=auth,
                timeout=timeout_s,
                headers={"accept": "application/json", **dict(headers or {})},
                limits=httpx.Limits(max_connections=max(1, int(max_connections))),
            )
        self._client = client

    @classmethod
    def from_env(cls, **overrides: Any) -> "HttpxTransport":
        """Build a transport from DOCGRAPH_* environment variables."""
        username = os.environ.get("DOCGRAPH_USERNAME")
        password = os.environ.get("DOCGRAPH_PASSWORD", "")
        raw_timeout = os.environ.get("DOCGRAPH_TIMEOUT_S")
        try:
            timeout_s = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT_S
        except ValueError:
            LOG.warning("Ignoring invalid DOCGRAPH_TIMEOUT_S=%r", raw_timeout)
            timeout_s = DEFAULT_TIMEOUT_S
        kwargs: dict = {
            "base_url": os.environ.get("DOCGRAPH_ENDPOINT", DEFAULT_ENDPOINT),
            "auth": (username, password) if username else None,
            "timeout_s": timeout_s,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def base_url(self) -> str:
        return self._base_url

    def url_for(self, request: Request) -> str:
        return f"{self._base_url}/_db/{quote(request.database, safe='')}{request.path}"

    async def send(self, request: Request) -> RawResponse:
        headers = dict(request.headers)
        if request.body is not None:
            headers.setdefault("content-type", "application/json")
        try:
            response = await self._client.request(
                request.method,
                self.url_for(request),
                params=dict(request.query_params) or None,
                headers=headers,
                content=request.body,
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"request timed out: {e}",
                code="TRANSPORT_TIMEOUT",
                details={"op": request.op, "method": request.method},
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"http failure: {type(e).__name__}: {e}",
                details={"op": request.op, "method": request.method},
            ) from e
        LOG.debug("%s %s -> %d", request.method, request.path, response.status_code)
        return RawResponse(
            status=response.status_code,
            body=response.content,
            headers={k.lower(): v for k, v in response.headers.items()},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "DEFAULT_ENDPOINT",
    "DEFAULT_TIMEOUT_S",
    "HttpxTransport",
]
