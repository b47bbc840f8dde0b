# docgraph_sdk/query/query_base.py
# SPDX-License-Identifier: Apache-2.0
"""
DocGraph Client SDK - Request Execution Core V1.0

Purpose
-------
A small, async-first dispatch core for talking to a remote document/graph
database server:

- Immutable request descriptors and raw responses
- Structured, normalized error taxonomy (machine-actionable codes)
- Pluggable Codec (payload encode/decode) and Transport (send/receive)
- Response decoding strategies (plain value, document representation,
  existence checks, result batches)
- RequestExecutor: dispatch + decode, resolving to a typed value or a
  structured failure

Design Philosophy
-----------------
- The executor is a dispatch-and-decode boundary only. No retries, no
  caching, no connection management.
- Successes and failures share a single channel: either raised from
  `await execute(...)`, or carried by an `Outcome` from `submit(...)`.
- Transport and codec are opaque collaborators; this module never assumes
  a concrete HTTP stack or wire format beyond the JSON error envelope.

Mode Strategy
-------------
mode: "thin" (default)
    - For composition under an external manager. Deadline and limiter
      policies are no-ops.

mode: "standalone"
    - For direct use in services. Enables SimpleDeadline
      (ctx.deadline_ms) and SimpleTokenBucketLimiter.

Server Error Envelope
---------------------
Non-success responses are expected to carry:

    {
        "error": true,
        "code": 404,                 # HTTP status echoed by the server
        "errorNum": 1600,            # server-specific error number
        "errorMessage": "cursor not found"
    }

errorNum 1600 is reported as CursorExpired; everything else as
TransportError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    FrozenSet,
    Generic,
    Mapping,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from docgraph_sdk.core.error_context import attach_context

LOG = logging.getLogger(__name__)

DOCGRAPH_PROTOCOL_VERSION = "1.0.0"
DOCGRAPH_PROTOCOL_ID = "docgraph/v1.0"

#: Server error number for an unknown (expired or released) cursor id.
ERROR_CURSOR_NOT_FOUND = 1600

T = TypeVar("T")


# =============================================================================
# Normalized Errors
# =============================================================================

class DocGraphError(Exception):
    """
    Base exception for client errors.

    Attributes:
        message: Human-readable description.
        code: Machine-readable, UPPER_SNAKE_CASE error code.
        retry_after_ms: Suggested client backoff (if the server sent one).
        details: Additional machine context (no payload data).
    """
    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retry_after_ms = retry_after_ms
        self.details = dict(details or {})

    def __str__(self) -> str:
        base = self.message or self.__class__.__name__
        if self.code:
            base += f" [code={self.code}]"
        if self.retry_after_ms is not None:
            base += f" retry_after_ms={self.retry_after_ms}"
        if self.details:
            base += f" details={self.details}"
        return base


class BadRequest(DocGraphError):
    """Client error: invalid options or arguments, detected before sending."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "BAD_REQUEST")
        super().__init__(message, **kw)


class TransportError(DocGraphError):
    """
    Connectivity or protocol-level failure.

    Carries the server-reported HTTP status and error number when the
    failure came back as a response rather than a broken connection.
    """
    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        error_num: Optional[int] = None,
        **kw: Any,
    ):
        kw.setdefault("code", "TRANSPORT_ERROR")
        super().__init__(message, **kw)
        self.status = status
        self.error_num = error_num


class DeadlineExceeded(TransportError):
    """Operation exceeded ctx.deadline_ms."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "DEADLINE_EXCEEDED")
        super().__init__(message, **kw)


class DecodeError(DocGraphError):
    """Response payload did not match the expected shape. Never retried."""
    def __init__(self, message: str, **kw: Any):
        kw.setdefault("code", "DECODE_ERROR")
        super().__init__(message, **kw)


class CursorClosed(DocGraphError):
    """Read attempted on a cursor after close()."""
    def __init__(self, message: str = "cursor is closed", **kw: Any):
        kw.setdefault("code", "CURSOR_CLOSED")
        super().__init__(message, **kw)


class CursorExhausted(DocGraphError):
    """next() called with nothing buffered and no more batches on the server."""
    def __init__(self, message: str = "cursor is exhausted", **kw: Any):
        kw.setdefault("code", "CURSOR_EXHAUSTED")
        super().__init__(message, **kw)


class CursorExpired(DocGraphError):
    """
    The server no longer recognizes the cursor id (time-to-live elapsed or
    already released). Kept apart from TransportError so callers can tell
    "waited too long" from connectivity trouble.
    """
    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        error_num: Optional[int] = None,
        **kw: Any,
    ):
        kw.setdefault("code", "CURSOR_EXPIRED")
        super().__init__(message, **kw)
        self.status = status
        self.error_num = error_num


# =============================================================================
# Outcome
# =============================================================================

@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Success-or-failure result of one asynchronous operation.

    Exactly one of `value` / `failure` holds. A value of None is a valid
    success (e.g. a delete that returns nothing), so `ok` is tracked
    explicitly rather than inferred from the value.
    """
    ok: bool
    value: Optional[T] = None
    failure: Optional[DocGraphError] = None

    def __post_init__(self) -> None:
        if self.ok and self.failure is not None:
            raise ValueError("successful Outcome cannot carry a failure")
        if not self.ok and self.failure is None:
            raise ValueError("failed Outcome requires a failure")
        if not self.ok and self.value is not None:
            raise ValueError("failed Outcome cannot carry a value")

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failed(cls, failure: DocGraphError) -> "Outcome[T]":
        return cls(ok=False, failure=failure)

    def unwrap(self) -> T:
        """Return the value, or raise the carried failure."""
        if not self.ok:
            raise self.failure  # type: ignore[misc]
        return self.value  # type: ignore[return-value]


# =============================================================================
# Request / Response
# =============================================================================

@dataclass(frozen=True)
class Request:
    """
    Immutable request descriptor.

    Attributes:
        method: HTTP-style verb ("GET", "POST", "PUT", "DELETE", "HEAD").
        path: Endpoint path relative to the database, e.g. "/_api/cursor".
        database: Target database name.
        headers: Extra headers (session token etc.), passed through verbatim.
        query_params: URL query parameters.
        body: Already-encoded payload, or None.
        op: Low-cardinality operation label for logs and metrics.
        response_type: Optional hint describing the expected payload.
    """
    method: str
    path: str
    database: str = "_system"
    headers: Mapping[str, str] = None
    query_params: Mapping[str, Any] = None
    body: Optional[bytes] = None
    op: str = "request"
    response_type: Optional[str] = None

    def __post_init__(self) -> None:
        if self.headers is None:
            object.__setattr__(self, "headers", {})
        if self.query_params is None:
            object.__setattr__(self, "query_params", {})
        if not isinstance(self.method, str) or not self.method:
            raise BadRequest("request.method must be a non-empty string")
        object.__setattr__(self, "method", self.method.upper())
        if not isinstance(self.path, str) or not self.path.startswith("/"):
            raise BadRequest(f"request.path must start with '/', got {self.path!r}")


@dataclass(frozen=True)
class RawResponse:
    """Raw response as produced by a Transport."""
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = None

    def __post_init__(self) -> None:
        if self.headers is None:
            object.__setattr__(self, "headers", {})

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300


@dataclass(frozen=True)
class OperationContext:
    """
    Per-call context.

    Attributes:
        request_id: Correlation ID for tracing.
        deadline_ms: Absolute epoch ms for operation timeout.
        traceparent: W3C traceparent header.
        attrs: Extra attributes for middleware.
    """
    request_id: Optional[str] = None
    deadline_ms: Optional[int] = None
    traceparent: Optional[str] = None
    attrs: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        if self.attrs is None:
            object.__setattr__(self, "attrs", {})

    def remaining_ms(self) -> Optional[int]:
        """Return non-negative ms remaining until deadline, or None."""
        if self.deadline_ms is None:
            return None
        now = int(time.time() * 1000)
        return max(0, self.deadline_ms - now)


# =============================================================================
# Codec
# =============================================================================

@runtime_checkable
class Codec(Protocol):
    """Payload serialization boundary. Pure functions, no I/O."""

    def encode(self, value: Any) -> bytes:
        ...

    def decode(self, data: bytes, shape: Optional[Callable[[Any], Any]] = None) -> Any:
        ...


class JsonCodec:
    """
    UTF-8 JSON codec.

    `shape`, when given, is applied to the decoded value (a dataclass, a
    constructor, or any one-argument callable). Errors from either step are
    reported as DecodeError.
    """

    def __init__(self, *, sort_keys: bool = False) -> None:
        self._sort_keys = bool(sort_keys)

    def encode(self, value: Any) -> bytes:
        try:
            return json.dumps(
                value,
                ensure_ascii=False,
                separators=(",", ":"),
                sort_keys=self._sort_keys,
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise BadRequest(f"value is not JSON-serializable: {e}") from e

    def decode(self, data: bytes, shape: Optional[Callable[[Any], Any]] = None) -> Any:
        try:
            value = json.loads(data.decode("utf-8")) if data else None
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(
                f"malformed payload: {e}",
                details={"bytes": len(data or b"")},
            ) from e
        if shape is None:
            return value
        try:
            if isinstance(value, Mapping) and hasattr(shape, "__dataclass_fields__"):
                return shape(**value)
            return shape(value)
        except (TypeError, ValueError, KeyError) as e:
            name = getattr(shape, "__name__", type(shape).__name__)
            raise DecodeError(f"payload does not match {name}: {e}") from e


# =============================================================================
# Transport
# =============================================================================

@runtime_checkable
class Transport(Protocol):
    """
    Opaque "send request, receive response" collaborator.

    Implementations own connection pooling and must support many
    concurrent send() calls. Broken connections and timeouts are raised
    (ideally as TransportError); any response, including error statuses, is
    returned as a RawResponse.
    """

    async def send(self, request: Request) -> RawResponse:
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# Response decoders
# =============================================================================

class ResponseDecoder(Protocol[T]):
    """
    Strategy turning a RawResponse into a typed value.

    `accepted_statuses` lists non-2xx statuses the decoder treats as a
    valid answer (e.g. 404 for existence checks); everything else outside
    2xx is a TransportError before decode() is ever called.
    """
    accepted_statuses: FrozenSet[int]

    def decode(self, response: RawResponse, codec: Codec) -> T:
        ...


class ValueDecoder:
    """
    Decode the body, optionally pick one top-level field, then apply `shape`.
    """
    accepted_statuses: FrozenSet[int] = frozenset()

    def __init__(
        self,
        shape: Optional[Callable[[Any], Any]] = None,
        *,
        field: Optional[str] = None,
    ) -> None:
        self._shape = shape
        self._field = field

    def decode(self, response: RawResponse, codec: Codec) -> Any:
        if self._field is None:
            return codec.decode(response.body, self._shape)
        payload = codec.decode(response.body)
        if not isinstance(payload, Mapping) or self._field not in payload:
            raise DecodeError(f"response has no field '{self._field}'")
        value = payload[self._field]
        if self._shape is None:
            return value
        try:
            if isinstance(value, Mapping) and hasattr(self._shape, "__dataclass_fields__"):
                return self._shape(**value)
            return self._shape(value)
        except (TypeError, ValueError, KeyError) as e:
            raise DecodeError(f"field '{self._field}' does not match shape: {e}") from e


class DocumentDecoder:
    """
    Decode a document into the caller's representation.

    representation:
        dict  -> decoded mapping (default)
        str   -> raw JSON text, undecoded
        bytes -> raw body bytes
        other -> callable applied to the decoded mapping
    """
    accepted_statuses: FrozenSet[int] = frozenset()

    def __init__(self, representation: Any = dict) -> None:
        self._representation = representation

    def decode(self, response: RawResponse, codec: Codec) -> Any:
        rep = self._representation
        if rep is bytes:
            return bytes(response.body)
        if rep is str:
            try:
                return response.body.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError(f"document is not valid UTF-8: {e}") from e
        value = codec.decode(response.body)
        if not isinstance(value, Mapping):
            raise DecodeError(
                f"expected a document object, got {type(value).__name__}"
            )
        if rep is dict:
            return dict(value)
        return codec.decode(response.body, rep)


class ExistsDecoder:
    """True on 2xx, False on 404. Body is ignored."""
    accepted_statuses: FrozenSet[int] = frozenset({404})

    def decode(self, response: RawResponse, codec: Codec) -> bool:
        return response.is_success


class NoneDecoder:
    """Discard the body; used for deletes and fire-and-forget calls."""
    accepted_statuses: FrozenSet[int] = frozenset()

    def decode(self, response: RawResponse, codec: Codec) -> None:
        return None


# =============================================================================
# Metrics
# =============================================================================

class MetricsSink(Protocol):
    """
    Metrics collection protocol (low-cardinality).
    """
    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        ...


class NoopMetrics:
    def observe(self, **_: Any) -> None:
        ...
    def counter(self, **_: Any) -> None:
        ...


# =============================================================================
# Policy Extension Points
# =============================================================================

class DeadlinePolicy(Protocol):
    async def wrap(self, awaitable: Awaitable[Any], ctx: Optional[OperationContext]) -> Any:
        ...


class RateLimiter(Protocol):
    async def acquire(self) -> None:
        ...
    def release(self) -> None:
        ...


class NoopDeadline:
    async def wrap(self, awaitable: Awaitable[Any], ctx: Optional[OperationContext]) -> Any:
        return await awaitable


class SimpleDeadline:
    """Enforce ctx.deadline_ms using asyncio.wait_for."""
    async def wrap(self, awaitable: Awaitable[Any], ctx: Optional[OperationContext]) -> Any:
        if ctx is None or ctx.deadline_ms is None:
            return await awaitable
        rem = ctx.remaining_ms()
        if rem is not None and rem <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceeded("deadline already exceeded", details={"remaining_ms": 0})
        try:
            return await asyncio.wait_for(awaitable, timeout=rem / 1000.0)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded("operation timed out", details={"remaining_ms": 0}) from e


class NoopLimiter:
    async def acquire(self) -> None:
        ...
    def release(self) -> None:
        ...


class SimpleTokenBucketLimiter:
    """
    Simple token-bucket limiter; per-process; fail-open on internal error.

    Not concurrency-safe across threads or processes.
    """
    def __init__(self, rate_per_sec: int = 50, burst: int = 100) -> None:
        self._capacity = max(1, int(burst))
        self._rate = max(1, int(rate_per_sec))
        self._tokens = self._capacity
        self._last = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        delta = now - self._last
        if delta <= 0:
            return
        add = int(delta * self._rate)
        if add > 0:
            self._tokens = min(self._capacity, self._tokens + add)
            self._last = now

    async def acquire(self) -> None:
        while True:
            self._refill()
            if self._tokens > 0:
                self._tokens -= 1
                return
            await asyncio.sleep(0.02)

    def release(self) -> None:
        return


# =============================================================================
# Wire-Level Helpers
# =============================================================================

def _error_from_response(
    request: Request,
    response: RawResponse,
    codec: Codec,
) -> DocGraphError:
    """
    Map a non-accepted response to TransportError / CursorExpired.

    The body is parsed best-effort; a missing or malformed error envelope
    still yields a TransportError carrying the HTTP status.
    """
    error_num: Optional[int] = None
    error_message: Optional[str] = None
    try:
        payload = codec.decode(response.body) if response.body else None
    except DocGraphError:
        payload = None
    if isinstance(payload, Mapping):
        num = payload.get("errorNum")
        if isinstance(num, int):
            error_num = num
        msg = payload.get("errorMessage")
        if isinstance(msg, str):
            error_message = msg

    if error_num is not None:
        message = f"Response: {response.status}, Error: {error_num} - {error_message or ''}".rstrip(" -")
    else:
        message = f"Response: {response.status}"

    retry_after_ms: Optional[int] = None
    retry_after = response.headers.get("retry-after") or response.headers.get("Retry-After")
    if retry_after:
        try:
            retry_after_ms = max(0, int(float(retry_after) * 1000))
        except ValueError:
            retry_after_ms = None

    details = {"op": request.op, "method": request.method}
    if error_num == ERROR_CURSOR_NOT_FOUND:
        return CursorExpired(
            message,
            status=response.status,
            error_num=error_num,
            details=details,
        )
    return TransportError(
        message,
        status=response.status,
        error_num=error_num,
        retry_after_ms=retry_after_ms,
        details=details,
    )


def _transport_failure(request: Request, exc: BaseException) -> TransportError:
    return TransportError(
        f"transport failure: {type(exc).__name__}: {exc}",
        details={"op": request.op, "method": request.method},
    )


# =============================================================================
# Request Executor
# =============================================================================

class RequestExecutor:
    """
    Async dispatch core.

    Pairs a Request with a ResponseDecoder, submits it to the Transport and
    resolves to the decoded value or a structured failure. Stateless across
    calls apart from the transport's own pooling; safe for concurrent use.

    Responsibilities:
        - Deadline enforcement via DeadlinePolicy.
        - Optional rate limiting.
        - Mapping transport exceptions and error responses to the
          normalized taxonomy.
        - Metrics per call.

    No retries: wrap calls in docgraph_sdk.core.retry.retry_async if needed.
    """

    _component = "executor"

    def __init__(
        self,
        transport: Transport,
        *,
        codec: Optional[Codec] = None,
        metrics: Optional[MetricsSink] = None,
        mode: str = "thin",
        deadline_policy: Optional[DeadlinePolicy] = None,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        if transport is None:
            raise BadRequest("transport is required")
        self._transport = transport
        self._codec: Codec = codec or JsonCodec()
        self._metrics: MetricsSink = metrics or NoopMetrics()

        m = (mode or "thin").strip().lower()
        if m not in {"thin", "standalone"}:
            LOG.warning("Unknown executor mode %r; falling back to 'thin'", mode)
            m = "thin"
        self._mode = m

        if self._mode == "standalone":
            self._deadline = deadline_policy or SimpleDeadline()
            self._limiter = limiter or SimpleTokenBucketLimiter()
        else:
            self._deadline = deadline_policy or NoopDeadline()
            self._limiter = limiter or NoopLimiter()

    @property
    def codec(self) -> Codec:
        return self._codec

    @property
    def mode(self) -> str:
        return self._mode

    # ---- lifecycle helpers --------------------------------------------------

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying transport."""
        await self._transport.close()

    # ---- internal helpers ---------------------------------------------------

    def _record(self, op: str, t0: float, ok: bool, *, code: str = "OK", **extra: Any) -> None:
        try:
            ms = (time.monotonic() - t0) * 1000.0
            self._metrics.observe(
                component=self._component,
                op=op,
                ms=ms,
                ok=ok,
                code=code,
                extra=dict(extra) or None,
            )
        except Exception:
            # never let metrics break caller
            pass

    async def _send(self, request: Request, ctx: Optional[OperationContext]) -> RawResponse:
        try:
            return await self._deadline.wrap(self._transport.send(request), ctx)
        except DocGraphError:
            raise
        except asyncio.TimeoutError as e:
            if ctx is not None and ctx.deadline_ms is not None:
                raise DeadlineExceeded("operation timed out", details={"remaining_ms": 0}) from e
            # without a caller deadline this is an ordinary transport failure
            raise _transport_failure(request, e) from e
        except Exception as e:
            raise _transport_failure(request, e) from e

    # ---- public API ---------------------------------------------------------

    async def execute(
        self,
        request: Request,
        decoder: ResponseDecoder[T],
        *,
        ctx: Optional[OperationContext] = None,
    ) -> T:
        """
        Send `request` and decode the response with `decoder`.

        Raises:
            TransportError: connectivity failure or non-accepted status.
            CursorExpired: the server reported the cursor id as unknown.
            DecodeError: the payload did not match the decoder's shape.
        """
        t0 = time.monotonic()
        LOG.debug("dispatch %s %s (op=%s)", request.method, request.path, request.op)
        await self._limiter.acquire()
        try:
            response = await self._send(request, ctx)
            if not response.is_success and response.status not in decoder.accepted_statuses:
                raise _error_from_response(request, response, self._codec)
            try:
                value = decoder.decode(response, self._codec)
            except DocGraphError:
                raise
            except Exception as e:
                raise DecodeError(
                    f"failed to decode response: {type(e).__name__}: {e}",
                    details={"op": request.op},
                ) from e
            self._record(request.op, t0, True)
            return value
        except DocGraphError as e:
            self._record(request.op, t0, False, code=e.code or type(e).__name__)
            attach_context(
                e,
                component=self._component,
                operation=request.op,
                method=request.method,
                path=request.path,
                database=request.database,
                request_id=ctx.request_id if ctx else None,
            )
            raise
        finally:
            self._limiter.release()

    def submit(
        self,
        request: Request,
        decoder: ResponseDecoder[T],
        *,
        ctx: Optional[OperationContext] = None,
    ) -> "asyncio.Future[Outcome[T]]":
        """
        Schedule `execute` and return a future resolving to an Outcome.

        The future resolves exactly once; normalized failures are carried
        in the Outcome rather than raised. Must be called with a running
        event loop. Abandoning the future does not cancel the request.
        """
        async def _run() -> Outcome[T]:
            try:
                return Outcome.success(await self.execute(request, decoder, ctx=ctx))
            except DocGraphError as e:
                return Outcome.failed(e)

        return asyncio.ensure_future(_run())


__all__ = [
    "DOCGRAPH_PROTOCOL_VERSION",
    "DOCGRAPH_PROTOCOL_ID",
    "ERROR_CURSOR_NOT_FOUND",
    # errors
    "DocGraphError",
    "BadRequest",
    "TransportError",
    "DeadlineExceeded",
    "DecodeError",
    "CursorClosed",
    "CursorExhausted",
    "CursorExpired",
    # model
    "Outcome",
    "Request",
    "RawResponse",
    "OperationContext",
    # collaborators
    "Codec",
    "JsonCodec",
    "Transport",
    # decoders
    "ResponseDecoder",
    "ValueDecoder",
    "DocumentDecoder",
    "ExistsDecoder",
    "NoneDecoder",
    # metrics / policies
    "MetricsSink",
    "NoopMetrics",
    "DeadlinePolicy",
    "RateLimiter",
    "NoopDeadline",
    "SimpleDeadline",
    "NoopLimiter",
    "SimpleTokenBucketLimiter",
    # executor
    "RequestExecutor",
]
