# docgraph_sdk/mock/mock_transport.py
# SPDX-License-Identifier: Apache-2.0
"""
In-memory document server used by example scripts and tests.

Implements the Transport protocol with deterministic behavior:
- Cursor API: create (POST), next batch (PUT/POST by id), release (DELETE)
- Batching by batchSize, optional total count, fullCount with a LIMIT
- Query result cache keyed by query text (opt-in per query)
- Per-batch warnings, failOnWarning / maxWarningCount
- Cursor time-to-live on a manual clock: advance() ages every cursor
- A tiny document store (insert / get / head)
- Request log and queued fault injection (exceptions or canned responses)

Results are registered up front; the server does not evaluate queries:

    server = MockDocumentServer()
    server.add_result("FOR u IN users RETURN u", [{"name": "a"}, {"name": "b"}])
    executor = RequestExecutor(server)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from urllib.parse import unquote

from docgraph_sdk.query.query_base import (
    ERROR_CURSOR_NOT_FOUND,
    RawResponse,
    Request,
    TransportError,
)

LOG = logging.getLogger(__name__)

ERROR_HTTP_NOT_FOUND = 404
ERROR_DOCUMENT_NOT_FOUND = 1202
ERROR_UNIQUE_CONSTRAINT = 1210
ERROR_QUERY_PARSE = 1501

WarningPair = Tuple[int, str]


@dataclass
class _RegisteredResult:
    rows: List[Any]
    warnings: Dict[int, List[WarningPair]]
    limit: Optional[int]


@dataclass
class _ServerCursor:
    id: str
    pending: Deque[Any]
    batch_size: int
    ttl: float
    expires_at: float
    count: Optional[int]
    cached: bool
    stats: Dict[str, Any]
    warnings: Dict[int, List[WarningPair]]
    batches_sent: int = 1


@dataclass
class MockDocumentServer:
    """A deterministic in-memory stand-in for a document database server."""

    name: str = "mock-docgraph"
    default_batch_size: int = 1000
    default_ttl: float = 30.0
    query_cache_enabled: bool = True
    clock: Optional[Callable[[], float]] = None

    requests: List[Request] = field(default_factory=list, init=False)
    released: List[str] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        if self.default_batch_size < 1:
            raise ValueError("default_batch_size must be >= 1")
        if self.default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self._now = 0.0
        self._next_id = 1000
        self._closed = False
        self._results: Dict[str, _RegisteredResult] = {}
        self._cache: Dict[str, List[Any]] = {}
        self._cursors: Dict[str, _ServerCursor] = {}
        self._documents: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._faults: Deque[Union[BaseException, RawResponse]] = deque()

    # -------------------------------------------------------------------------
    # Setup & inspection
    # -------------------------------------------------------------------------
    def add_result(
        self,
        query: str,
        rows: Sequence[Any],
        *,
        warnings: Union[Sequence[WarningPair], Mapping[int, Sequence[WarningPair]], None] = None,
        limit: Optional[int] = None,
    ) -> None:
        """
        Register the result of `query`.

        `warnings` is either a list of (code, message) pairs sent with the
        first batch, or a mapping of batch index to such a list. `limit`
        truncates the result the way a trailing LIMIT would; fullCount then
        reports the untruncated size.
        """
        if isinstance(warnings, Mapping):
            per_batch = {int(k): list(v) for k, v in warnings.items()}
        else:
            per_batch = {0: list(warnings or [])}
        self._results[query] = _RegisteredResult(rows=list(rows), warnings=per_batch, limit=limit)
        self._cache.pop(query, None)

    def fail_next(self, exc: BaseException, *, times: int = 1) -> None:
        """Raise `exc` from the next `times` send() calls."""
        for _ in range(times):
            self._faults.append(exc)

    def respond_next(
        self,
        status: int,
        *,
        error_num: Optional[int] = None,
        message: str = "",
        headers: Optional[Mapping[str, str]] = None,
        times: int = 1,
    ) -> None:
        """Answer the next `times` send() calls with an error envelope."""
        response = self._error(status, error_num, message, headers=headers)
        for _ in range(times):
            self._faults.append(response)

    def respond_raw(self, response: RawResponse, *, times: int = 1) -> None:
        """Answer the next `times` send() calls with `response` verbatim."""
        for _ in range(times):
            self._faults.append(response)

    def advance(self, seconds: float) -> None:
        """Move the manual clock forward."""
        self._now += float(seconds)

    def now(self) -> float:
        return self.clock() if self.clock is not None else self._now

    def expire_cursor(self, cursor_id: str) -> None:
        """Forget a cursor as if its time-to-live elapsed."""
        self._cursors.pop(cursor_id, None)

    @property
    def open_cursors(self) -> int:
        return len(self._cursors)

    @property
    def closed(self) -> bool:
        return self._closed

    def calls(self, method: Optional[str] = None, path_prefix: str = "") -> List[Request]:
        return [
            r for r in self.requests
            if (method is None or r.method == method.upper()) and r.path.startswith(path_prefix)
        ]

    def documents(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return dict(self._documents.get(collection, {}))

    # -------------------------------------------------------------------------
    # Transport protocol
    # -------------------------------------------------------------------------
    async def send(self, request: Request) -> RawResponse:
        await asyncio.sleep(0)
        if self._closed:
            raise TransportError("transport is closed", details={"op": request.op})
        self.requests.append(request)
        if self._faults:
            fault = self._faults.popleft()
            if isinstance(fault, RawResponse):
                return fault
            raise fault

        parts = [unquote(p) for p in request.path.split("/") if p]
        method = request.method
        if parts[:2] == ["_api", "cursor"]:
            if len(parts) == 2 and method == "POST":
                return self._create_cursor(self._body(request))
            if len(parts) == 3 and method in ("PUT", "POST"):
                return self._next_batch(parts[2])
            if len(parts) == 3 and method == "DELETE":
                return self._release(parts[2])
        if parts[:2] == ["_api", "document"]:
            if len(parts) == 3 and method == "POST":
                return self._insert(parts[2], self._body(request))
            if len(parts) == 4 and method in ("GET", "HEAD"):
                return self._read(parts[2], parts[3], head=(method == "HEAD"))
        return self._error(404, ERROR_HTTP_NOT_FOUND, "unknown path")

    async def close(self) -> None:
        self._closed = True

    # -------------------------------------------------------------------------
    # Cursor API
    # -------------------------------------------------------------------------
    def _create_cursor(self, body: Mapping[str, Any]) -> RawResponse:
        query = body.get("query")
        registered = self._results.get(query) if isinstance(query, str) else None
        if registered is None:
            return self._error(400, ERROR_QUERY_PARSE, f"query not registered: {query!r}")

        options = body.get("options") or {}
        warnings = {k: list(v) for k, v in registered.warnings.items()}
        if options.get("failOnWarning") and any(warnings.values()):
            code, message = next(w for ws in warnings.values() for w in ws)
            return self._error(400, code, message)
        max_warnings = options.get("maxWarningCount")
        if max_warnings is not None:
            warnings = self._cap_warnings(warnings, int(max_warnings))

        use_cache = bool(body.get("cache")) and self.query_cache_enabled
        cached = use_cache and query in self._cache
        full = list(registered.rows)
        rows = full if registered.limit is None else full[: registered.limit]
        if cached:
            rows = list(self._cache[query])
        elif use_cache:
            self._cache[query] = list(rows)

        stats: Dict[str, Any] = {
            "writesExecuted": 0,
            "writesIgnored": 0,
            "scannedFull": 0 if cached else len(full),
            "scannedIndex": 0,
            "filtered": 0,
            "executionTime": 0.0 if cached else 0.001,
        }
        if options.get("fullCount"):
            stats["fullCount"] = len(full)

        batch_size = int(body.get("batchSize") or self.default_batch_size)
        ttl = float(body.get("ttl") or self.default_ttl)
        count = len(rows) if body.get("count") else None
        first, rest = rows[:batch_size], deque(rows[batch_size:])

        payload: Dict[str, Any] = {
            "result": first,
            "hasMore": bool(rest),
            "cached": cached,
            "extra": {"stats": stats, "warnings": self._warnings_wire(warnings.get(0))},
            "error": False,
            "code": 201,
        }
        if count is not None:
            payload["count"] = count
        if rest:
            cursor_id = str(self._next_id)
            self._next_id += 1
            self._cursors[cursor_id] = _ServerCursor(
                id=cursor_id,
                pending=rest,
                batch_size=batch_size,
                ttl=ttl,
                expires_at=self.now() + ttl,
                count=count,
                cached=cached,
                stats=stats,
                warnings=warnings,
            )
            payload["id"] = cursor_id
            LOG.debug("mock cursor %s opened (%d pending)", cursor_id, len(rest))
        return self._ok(201, payload)

    def _live_cursor(self, cursor_id: str) -> Optional[_ServerCursor]:
        cursor = self._cursors.get(cursor_id)
        if cursor is not None and self.now() > cursor.expires_at:
            del self._cursors[cursor_id]
            LOG.debug("mock cursor %s expired", cursor_id)
            return None
        return cursor

    def _next_batch(self, cursor_id: str) -> RawResponse:
        cursor = self._live_cursor(cursor_id)
        if cursor is None:
            return self._error(404, ERROR_CURSOR_NOT_FOUND, "cursor not found")

        batch = [cursor.pending.popleft() for _ in range(min(cursor.batch_size, len(cursor.pending)))]
        index = cursor.batches_sent
        cursor.batches_sent += 1
        has_more = bool(cursor.pending)
        if has_more:
            cursor.expires_at = self.now() + cursor.ttl
        else:
            del self._cursors[cursor_id]

        payload: Dict[str, Any] = {
            "id": cursor_id,
            "result": batch,
            "hasMore": has_more,
            "cached": cursor.cached,
            "extra": {
                "stats": cursor.stats,
                "warnings": self._warnings_wire(cursor.warnings.get(index)),
            },
            "error": False,
            "code": 200,
        }
        if cursor.count is not None:
            payload["count"] = cursor.count
        return self._ok(200, payload)

    def _release(self, cursor_id: str) -> RawResponse:
        if self._live_cursor(cursor_id) is None:
            return self._error(404, ERROR_CURSOR_NOT_FOUND, "cursor not found")
        del self._cursors[cursor_id]
        self.released.append(cursor_id)
        return self._ok(202, {"id": cursor_id, "error": False, "code": 202})

    # -------------------------------------------------------------------------
    # Document API
    # -------------------------------------------------------------------------
    def _insert(self, collection: str, body: Mapping[str, Any]) -> RawResponse:
        docs = self._documents.setdefault(collection, {})
        key = str(body.get("_key") or self._next_id)
        self._next_id += 1
        if key in docs:
            return self._error(409, ERROR_UNIQUE_CONSTRAINT, "unique constraint violated")
        meta = {"_id": f"{collection}/{key}", "_key": key, "_rev": f"_r{len(docs) + 1}"}
        docs[key] = {**body, **meta}
        return self._ok(201, meta)

    def _read(self, collection: str, key: str, *, head: bool) -> RawResponse:
        doc = self._documents.get(collection, {}).get(key)
        if doc is None:
            if head:
                return RawResponse(status=404)
            return self._error(404, ERROR_DOCUMENT_NOT_FOUND, "document not found")
        if head:
            return RawResponse(status=200)
        return self._ok(200, doc)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    @staticmethod
    def _body(request: Request) -> Mapping[str, Any]:
        if not request.body:
            return {}
        return json.loads(request.body.decode("utf-8"))

    @staticmethod
    def _warnings_wire(warnings: Optional[List[WarningPair]]) -> List[Dict[str, Any]]:
        return [{"code": code, "message": message} for code, message in warnings or []]

    @staticmethod
    def _cap_warnings(
        warnings: Dict[int, List[WarningPair]], limit: int
    ) -> Dict[int, List[WarningPair]]:
        capped: Dict[int, List[WarningPair]] = {}
        left = max(0, limit)
        for index in sorted(warnings):
            capped[index] = warnings[index][:left]
            left -= len(capped[index])
        return capped

    @staticmethod
    def _ok(status: int, payload: Any) -> RawResponse:
        return RawResponse(
            status=status,
            body=json.dumps(payload).encode("utf-8"),
            headers={"content-type": "application/json"},
        )

    @staticmethod
    def _error(
        status: int,
        error_num: Optional[int],
        message: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> RawResponse:
        envelope: Dict[str, Any] = {"error": True, "code": status, "errorMessage": message}
        if error_num is not None:
            envelope["errorNum"] = error_num
        return RawResponse(
            status=status,
            body=json.dumps(envelope).encode("utf-8"),
            headers={"content-type": "application/json", **dict(headers or {})},
        )


__all__ = [
    "ERROR_DOCUMENT_NOT_FOUND",
    "ERROR_UNIQUE_CONSTRAINT",
    "ERROR_QUERY_PARSE",
    "MockDocumentServer",
]
