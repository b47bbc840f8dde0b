# docgraph_sdk/query/cursor.py
# SPDX-License-Identifier: Apache-2.0
"""
Paginated query cursor.

An AsyncCursor is a pull-based, lazily fetched, ordered view over a query
result that is larger than one network round trip. It holds at most one
batch in memory and requests the next one (by cursor id) only after the
current batch has been handed out completely.

State machine
-------------

    {id?, buffer, has_more, closed}

    OPEN/BUFFERED   buffer non-empty                     -> next() pops
    OPEN/PENDING    buffer empty, has_more               -> next() fetches
    EXHAUSTED       buffer empty, not has_more           -> next() raises CursorExhausted
    CLOSED          close() called                       -> every read raises CursorClosed

The id is held only while has_more is true. A query whose result fits in
the first response never gets an id and starts in "no more to fetch",
still serving its buffered items.

Wire contract (one batch):

    {
        "id": "12345",            # absent when the result fits in one batch
        "hasMore": true,
        "result": [ ... ],
        "count": 10,              # only when the query asked for it
        "cached": false,
        "extra": {
            "stats": {"fullCount": 10, ...},
            "warnings": [{"code": 1562, "message": "..."}]
        }
    }

Cursors are single-reader: no internal locking. Pull (`next`) and push
(`for_each_remaining`, `async for`) styles operate on the same state and
must not be interleaved from concurrent tasks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import weakref
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Deque,
    FrozenSet,
    Generic,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

from docgraph_sdk.core.async_bridge import AsyncBridge
from docgraph_sdk.core.error_context import attach_context
from docgraph_sdk.query.query_base import (
    Codec,
    CursorClosed,
    CursorExhausted,
    DecodeError,
    DocGraphError,
    NoneDecoder,
    OperationContext,
    RawResponse,
    Request,
    RequestExecutor,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

CURSOR_API_PATH = "/_api/cursor"


# =============================================================================
# Batch model
# =============================================================================

@dataclass(frozen=True)
class CursorWarning:
    """Non-fatal server notice attached to a query."""
    code: int
    message: str


@dataclass(frozen=True)
class CursorStats:
    """
    Execution statistics reported with a batch.

    Attributes:
        writes_executed: Number of modified documents.
        writes_ignored: Number of failed writes ignored by the query.
        scanned_full: Documents scanned via full collection scans.
        scanned_index: Documents scanned via indexes.
        filtered: Documents removed by filter conditions.
        full_count: Matching rows before the final limit; only when the
                    query ran with the full-count option.
        execution_time: Server-side execution time in seconds.
        extra: Any remaining, unrecognized stats fields.
    """
    writes_executed: int = 0
    writes_ignored: int = 0
    scanned_full: int = 0
    scanned_index: int = 0
    filtered: int = 0
    full_count: Optional[int] = None
    execution_time: Optional[float] = None
    extra: Mapping[str, Any] = None

    def __post_init__(self) -> None:
        if self.extra is None:
            object.__setattr__(self, "extra", {})

    _FIELDS = {
        "writesExecuted": "writes_executed",
        "writesIgnored": "writes_ignored",
        "scannedFull": "scanned_full",
        "scannedIndex": "scanned_index",
        "filtered": "filtered",
        "fullCount": "full_count",
        "executionTime": "execution_time",
    }

    @classmethod
    def from_wire(cls, raw: Optional[Mapping[str, Any]]) -> "CursorStats":
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise DecodeError(f"extra.stats must be an object, got {type(raw).__name__}")
        known = {}
        extra = {}
        for key, value in raw.items():
            name = cls._FIELDS.get(key)
            if name is None:
                extra[key] = value
            else:
                known[name] = value
        return cls(extra=extra, **known)


@dataclass(frozen=True)
class ResultBatch:
    """
    One network response worth of query results.

    Attributes:
        id: Server cursor id; None when the whole result fit in this batch.
        result: Raw items in server order.
        has_more: True if the server holds further batches for `id`.
        count: Total result count, only when the query requested counting.
        cached: Whether the result was served from the server's query cache.
        warnings: Query warnings reported with this batch.
        stats: Execution statistics reported with this batch, or None when
            the response carried none.
    """
    id: Optional[str]
    result: Tuple[Any, ...]
    has_more: bool
    count: Optional[int] = None
    cached: bool = False
    warnings: Tuple[CursorWarning, ...] = ()
    stats: Optional[CursorStats] = None

    @classmethod
    def from_wire(cls, payload: Any) -> "ResultBatch":
        if not isinstance(payload, Mapping):
            raise DecodeError(f"cursor response must be an object, got {type(payload).__name__}")
        if "result" not in payload or "hasMore" not in payload:
            raise DecodeError("cursor response requires 'result' and 'hasMore'")

        result = payload["result"]
        if not isinstance(result, list):
            raise DecodeError("cursor 'result' must be a list")
        has_more = payload["hasMore"]
        if not isinstance(has_more, bool):
            raise DecodeError("cursor 'hasMore' must be a boolean")

        cursor_id = payload.get("id")
        if cursor_id is not None:
            cursor_id = str(cursor_id)
        if has_more and cursor_id is None:
            raise DecodeError("cursor response has more results but no 'id'")

        count = payload.get("count")
        if count is not None and (isinstance(count, bool) or not isinstance(count, int)):
            raise DecodeError("cursor 'count' must be an integer")

        extra = payload.get("extra") or {}
        if not isinstance(extra, Mapping):
            raise DecodeError("cursor 'extra' must be an object")
        warnings = []
        for w in extra.get("warnings") or []:
            if not isinstance(w, Mapping):
                raise DecodeError("cursor warnings must be objects")
            warnings.append(
                CursorWarning(code=int(w.get("code", 0)), message=str(w.get("message", "")))
            )

        return cls(
            id=cursor_id,
            result=tuple(result),
            has_more=has_more,
            count=count,
            cached=bool(payload.get("cached", False)),
            warnings=tuple(warnings),
            stats=None if extra.get("stats") is None else CursorStats.from_wire(extra["stats"]),
        )


class ResultBatchDecoder:
    """Decode a cursor response body into a ResultBatch."""
    accepted_statuses: FrozenSet[int] = frozenset()

    def decode(self, response: RawResponse, codec: Codec) -> ResultBatch:
        return ResultBatch.from_wire(codec.decode(response.body))


# =============================================================================
# Registry
# =============================================================================

class CursorRegistry:
    """
    Tracks open cursors and in-flight best-effort releases for one client.

    Cursors are held weakly; an abandoned cursor simply drops out and its
    server-side resources are reclaimed by the server's time-to-live.
    Release tasks are kept referenced until done so the event loop does not
    garbage-collect them mid-flight. Lives on a single event loop; no
    locking.
    """

    def __init__(self) -> None:
        self._open: "weakref.WeakSet[AsyncCursor[Any]]" = weakref.WeakSet()
        self._pending: Set["asyncio.Task[None]"] = set()

    def register(self, cursor: "AsyncCursor[Any]") -> None:
        self._open.add(cursor)

    def discard(self, cursor: "AsyncCursor[Any]") -> None:
        self._open.discard(cursor)

    @property
    def open_count(self) -> int:
        return len(self._open)

    @property
    def pending_releases(self) -> int:
        return len(self._pending)

    def schedule_release(
        self,
        executor: RequestExecutor,
        request: Request,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        """Fire-and-forget the release request; failures are logged and dropped."""
        task = asyncio.get_running_loop().create_task(self._release(executor, request, ctx))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _release(
        executor: RequestExecutor,
        request: Request,
        ctx: Optional[OperationContext],
    ) -> None:
        try:
            await executor.execute(request, NoneDecoder(), ctx=ctx)
            LOG.debug("released cursor %s", request.path)
        except Exception as e:
            # the caller has already moved on; TTL expiry is the backstop
            LOG.debug("cursor release %s failed: %s", request.path, e)

    async def close_all(self) -> None:
        """Close every tracked cursor (each schedules its own release)."""
        for cursor in list(self._open):
            await cursor.close()

    async def drain(self) -> None:
        """Wait for in-flight release requests to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# =============================================================================
# AsyncCursor
# =============================================================================

class AsyncCursor(Generic[T]):
    """
    Lazily-fetched, strictly sequential cursor over a query result.

    Created by Database.query() from the first batch. Exclusively owned by
    the caller; not safe for concurrent use.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        first: ResultBatch,
        *,
        database: str = "_system",
        item_shape: Optional[Callable[[Any], T]] = None,
        registry: Optional[CursorRegistry] = None,
        ttl: Optional[int] = None,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        self._executor = executor
        self._database = database
        self._item_shape = item_shape
        self._registry = registry or CursorRegistry()
        self._ttl = ttl
        self._ctx = ctx

        self._id: Optional[str] = None
        self._buffer: Deque[Any] = deque()
        self._has_more = False
        self._closed = False
        self._count: Optional[int] = None
        self._stats = CursorStats()
        self._warnings: List[CursorWarning] = []
        self._cached = bool(first.cached)
        self._fetches = 0

        self._apply(first)
        if self._has_more:
            self._registry.register(self)

    def __repr__(self) -> str:
        return (
            f"AsyncCursor(id={self._id!r}, buffered={len(self._buffer)}, "
            f"has_more={self._has_more}, closed={self._closed})"
        )

    # ---- accessors ----------------------------------------------------------

    @property
    def id(self) -> Optional[str]:
        """Server cursor id while unconsumed batches remain, else None."""
        return self._id

    @property
    def ttl(self) -> Optional[int]:
        return self._ttl

    @property
    def count(self) -> Optional[int]:
        """Total result count if the query requested counting, else None."""
        return self._count

    @property
    def stats(self) -> CursorStats:
        return self._stats

    @property
    def warnings(self) -> List[CursorWarning]:
        """Warnings from every batch fetched so far, in arrival order."""
        return list(self._warnings)

    @property
    def cached(self) -> bool:
        """Whether the initial batch came from the server's query cache."""
        return self._cached

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exhausted(self) -> bool:
        return not self._buffer and not self._has_more

    @property
    def fetch_count(self) -> int:
        """Follow-up batch requests issued (the initial response excluded)."""
        return self._fetches

    # ---- state transitions --------------------------------------------------

    def _apply(self, batch: ResultBatch) -> None:
        self._buffer = deque(batch.result)
        self._has_more = batch.has_more
        self._id = batch.id if batch.has_more else None
        if batch.count is not None:
            self._count = batch.count
        if batch.stats is not None:
            self._stats = batch.stats
        self._warnings.extend(batch.warnings)

    def _ensure_open(self) -> None:
        if self._closed:
            raise CursorClosed(details={"cursor_id": self._id})

    def _batch_request(self) -> Request:
        return Request(
            method="PUT",
            path=f"{CURSOR_API_PATH}/{self._id}",
            database=self._database,
            op="cursor.next",
        )

    def _release_request(self, cursor_id: str) -> Request:
        return Request(
            method="DELETE",
            path=f"{CURSOR_API_PATH}/{cursor_id}",
            database=self._database,
            op="cursor.delete",
        )

    async def _fetch_next_batch(self) -> None:
        request = self._batch_request()
        try:
            batch = await self._executor.execute(request, ResultBatchDecoder(), ctx=self._ctx)
        except DocGraphError as e:
            # state untouched: the caller may call next() again
            attach_context(e, component="cursor", cursor_id=self._id, fetches=self._fetches)
            raise
        self._fetches += 1
        self._apply(batch)
        if not self._has_more:
            self._registry.discard(self)
        LOG.debug(
            "cursor fetched batch of %d (has_more=%s)", len(self._buffer), self._has_more
        )

    def _shape(self, item: Any) -> T:
        if self._item_shape is None:
            return item
        try:
            return self._item_shape(item)
        except (TypeError, ValueError, KeyError) as e:
            raise DecodeError(f"result item does not match item shape: {e}") from e

    # ---- public API ---------------------------------------------------------

    def has_next(self) -> bool:
        """
        True if an item is buffered or the server holds more batches.

        A True answer with an empty buffer is a promise that a fetch will be
        attempted, not that it will succeed.
        """
        self._ensure_open()
        return bool(self._buffer) or self._has_more

    async def next(self) -> T:
        """
        Return the next item, fetching the next batch if the buffer is empty.

        Raises:
            CursorClosed: after close().
            CursorExhausted: nothing buffered and nothing left on the server.
            CursorExpired: the server forgot the cursor id.
            TransportError / DecodeError: the batch fetch failed.
        """
        self._ensure_open()
        while not self._buffer:
            if not self._has_more:
                raise CursorExhausted(details={"count": self._count})
            await self._fetch_next_batch()
        # shape before popping so a DecodeError leaves the item buffered
        item = self._shape(self._buffer[0])
        self._buffer.popleft()
        return item

    async def for_each_remaining(self, visitor: Callable[[T], Any]) -> None:
        """
        Drain the cursor, calling `visitor` once per remaining item in order.

        `visitor` may be a plain function or a coroutine function. The first
        failure (fetch or visitor) propagates and stops the drain.
        """
        while self.has_next():
            result = visitor(await self.next())
            if inspect.isawaitable(result):
                await result

    async def as_list_remaining(self) -> List[T]:
        """Drain all remaining items into a list."""
        items: List[T] = []
        await self.for_each_remaining(items.append)
        return items

    async def stream_remaining(self) -> AsyncIterator[T]:
        """
        Lazy, single-pass view equivalent to repeated next() calls.

        Consuming it advances this cursor; breaking out early leaves the
        cursor open.
        """
        while self.has_next():
            yield await self.next()

    def __aiter__(self) -> "AsyncCursor[T]":
        return self

    async def __anext__(self) -> T:
        if not self.has_next():
            raise StopAsyncIteration
        return await self.next()

    async def close(self) -> None:
        """
        Close the cursor. Idempotent.

        If the server still holds batches for this cursor, a release request
        is scheduled and not awaited; its failure is swallowed.
        """
        if self._closed:
            return
        self._closed = True
        cursor_id = self._id
        if cursor_id is not None and self._has_more:
            self._registry.schedule_release(
                self._executor, self._release_request(cursor_id), ctx=self._ctx
            )
        self._registry.discard(self)

    async def __aenter__(self) -> "AsyncCursor[T]":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


# =============================================================================
# Sync facade
# =============================================================================

class SyncCursor(Generic[T]):
    """
    Blocking iterator over an AsyncCursor.

    Every call that may suspend is run on the bridge's event-loop thread
    and blocks the calling thread until it resolves. Same single-reader
    contract as the wrapped cursor.
    """

    def __init__(self, cursor: AsyncCursor[T], bridge: AsyncBridge) -> None:
        self._cursor = cursor
        self._bridge = bridge

    @property
    def cursor(self) -> AsyncCursor[T]:
        return self._cursor

    @property
    def count(self) -> Optional[int]:
        return self._cursor.count

    @property
    def stats(self) -> CursorStats:
        return self._cursor.stats

    @property
    def warnings(self) -> List[CursorWarning]:
        return self._cursor.warnings

    @property
    def cached(self) -> bool:
        return self._cursor.cached

    def has_next(self) -> bool:
        return self._cursor.has_next()

    def next(self) -> T:
        return self._bridge.run(self._cursor.next())

    def for_each_remaining(self, visitor: Callable[[T], Any]) -> None:
        for item in self:
            visitor(item)

    def as_list_remaining(self) -> List[T]:
        return list(self)

    def __iter__(self) -> Iterator[T]:
        return self

    def __next__(self) -> T:
        if not self.has_next():
            raise StopIteration
        return self.next()

    def close(self) -> None:
        self._bridge.run(self._cursor.close())

    def __enter__(self) -> "SyncCursor[T]":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


__all__ = [
    "CURSOR_API_PATH",
    "CursorWarning",
    "CursorStats",
    "ResultBatch",
    "ResultBatchDecoder",
    "CursorRegistry",
    "AsyncCursor",
    "SyncCursor",
]
