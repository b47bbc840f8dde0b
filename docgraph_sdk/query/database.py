# docgraph_sdk/query/database.py
# SPDX-License-Identifier: Apache-2.0
"""
Database handle: query entry point and a few thin request builders.

Every method here only builds a Request, picks a decoder and hands both to
the RequestExecutor. `query()` is the one that matters: its decoder turns
the first cursor response into an AsyncCursor which then pages through the
rest of the result on demand.

    executor = RequestExecutor(HttpxTransport("http://localhost:8529"))
    db = Database(executor, "shop")

    async with await db.query(
        "FOR o IN orders FILTER o.total > @min RETURN o",
        bind_vars={"min": 100},
        options=QueryOptions(batch_size=500, count=True),
    ) as cursor:
        async for order in cursor:
            ...

    await db.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import quote
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, TypeVar

from docgraph_sdk.core.async_bridge import AsyncBridge
from docgraph_sdk.query.cursor import (
    CURSOR_API_PATH,
    AsyncCursor,
    CursorRegistry,
    ResultBatch,
    SyncCursor,
)
from docgraph_sdk.query.query_base import (
    BadRequest,
    Codec,
    DocumentDecoder,
    ExistsDecoder,
    OperationContext,
    RawResponse,
    Request,
    RequestExecutor,
    ValueDecoder,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

DOCUMENT_API_PATH = "/_api/document"


def document_path(collection: str, key: Optional[str] = None) -> str:
    """Document API path with each segment percent-encoded."""
    path = f"{DOCUMENT_API_PATH}/{quote(collection, safe='')}"
    if key is not None:
        path = f"{path}/{quote(key, safe='')}"
    return path


@dataclass(frozen=True)
class QueryOptions:
    """
    Query execution options.

    Attributes:
        batch_size: Max items per batch; fixed for the cursor's lifetime.
        ttl: Seconds an idle server-side cursor is kept alive.
        count: Ask the server to return the total result count.
        cache: Allow serving/storing the result in the server query cache.
        full_count: Report the number of rows before the final LIMIT in
                    stats.full_count.
        fail_on_warning: Turn query warnings into errors server-side.
        max_warning_count: Cap on warnings returned with the result.
    """
    batch_size: Optional[int] = None
    ttl: Optional[int] = None
    count: bool = False
    cache: Optional[bool] = None
    full_count: Optional[bool] = None
    fail_on_warning: Optional[bool] = None
    max_warning_count: Optional[int] = None

    def __post_init__(self) -> None:
        if self.batch_size is not None and self.batch_size < 1:
            raise BadRequest("batch_size must be at least 1")
        if self.ttl is not None and self.ttl < 0:
            raise BadRequest("ttl must be non-negative")
        if self.max_warning_count is not None and self.max_warning_count < 0:
            raise BadRequest("max_warning_count must be non-negative")

    def to_wire(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"count": bool(self.count)}
        if self.batch_size is not None:
            body["batchSize"] = self.batch_size
        if self.ttl is not None:
            body["ttl"] = self.ttl
        if self.cache is not None:
            body["cache"] = self.cache
        options: Dict[str, Any] = {}
        if self.full_count is not None:
            options["fullCount"] = self.full_count
        if self.fail_on_warning is not None:
            options["failOnWarning"] = self.fail_on_warning
        if self.max_warning_count is not None:
            options["maxWarningCount"] = self.max_warning_count
        if options:
            body["options"] = options
        return body


class CursorDecoder:
    """
    Decoder for a query's first response: builds the AsyncCursor.

    This is the "first page of results" strategy; the executor hands back
    the cursor instead of a plain value.
    """
    accepted_statuses: FrozenSet[int] = frozenset()

    def __init__(
        self,
        executor: RequestExecutor,
        *,
        database: str,
        registry: CursorRegistry,
        item_shape: Optional[Callable[[Any], Any]] = None,
        ttl: Optional[int] = None,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        self._executor = executor
        self._database = database
        self._registry = registry
        self._item_shape = item_shape
        self._ttl = ttl
        self._ctx = ctx

    def decode(self, response: RawResponse, codec: Codec) -> AsyncCursor[Any]:
        batch = ResultBatch.from_wire(codec.decode(response.body))
        return AsyncCursor(
            self._executor,
            batch,
            database=self._database,
            item_shape=self._item_shape,
            registry=self._registry,
            ttl=self._ttl,
            ctx=self._ctx,
        )


class Database:
    """
    Async handle for one database on the server.

    Owns a CursorRegistry so that close() can release every cursor this
    handle opened. close() also closes the executor unless `owns_executor`
    is False, for an executor shared with other handles.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        name: str = "_system",
        *,
        registry: Optional[CursorRegistry] = None,
        default_options: Optional[QueryOptions] = None,
        owns_executor: bool = True,
    ) -> None:
        if not isinstance(name, str) or not name.strip():
            raise BadRequest("database name must be a non-empty string")
        self._executor = executor
        self._name = name
        self._registry = registry or CursorRegistry()
        self._default_options = default_options or QueryOptions()
        self._owns_executor = bool(owns_executor)

    @property
    def name(self) -> str:
        return self._name

    @property
    def executor(self) -> RequestExecutor:
        return self._executor

    @property
    def registry(self) -> CursorRegistry:
        return self._registry

    # ---- request builders ---------------------------------------------------

    def _request(self, method: str, path: str, *, op: str, body: Any = None, **kw: Any) -> Request:
        encoded = None if body is None else self._executor.codec.encode(body)
        return Request(method=method, path=path, database=self._name, body=encoded, op=op, **kw)

    def query_request(
        self,
        query: str,
        bind_vars: Optional[Mapping[str, Any]] = None,
        options: Optional[QueryOptions] = None,
    ) -> Request:
        if not isinstance(query, str) or not query.strip():
            raise BadRequest("query must be a non-empty string")
        opts = options or self._default_options
        body: Dict[str, Any] = {"query": query}
        if bind_vars:
            body["bindVars"] = dict(bind_vars)
        body.update(opts.to_wire())
        return self._request("POST", CURSOR_API_PATH, op="cursor.create", body=body,
                             response_type="cursor")

    # ---- public API ---------------------------------------------------------

    async def query(
        self,
        query: str,
        bind_vars: Optional[Mapping[str, Any]] = None,
        options: Optional[QueryOptions] = None,
        *,
        item_shape: Optional[Callable[[Any], T]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> AsyncCursor[T]:
        """
        Run a query and return a cursor over its result.

        The first batch arrives with this call; later batches are fetched
        lazily as the cursor is consumed. `item_shape` is applied to every
        item handed out.
        """
        opts = options or self._default_options
        request = self.query_request(query, bind_vars, opts)
        decoder = CursorDecoder(
            self._executor,
            database=self._name,
            registry=self._registry,
            item_shape=item_shape,
            ttl=opts.ttl,
            ctx=ctx,
        )
        cursor = await self._executor.execute(request, decoder, ctx=ctx)
        LOG.debug("query opened %r", cursor)
        return cursor

    async def insert_document(
        self,
        collection: str,
        document: Mapping[str, Any],
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        """Insert a document; returns its metadata (_id, _key, _rev)."""
        request = self._request(
            "POST", document_path(collection), op="document.insert", body=dict(document)
        )
        return await self._executor.execute(request, ValueDecoder(dict), ctx=ctx)

    async def get_document(
        self,
        collection: str,
        key: str,
        representation: Any = dict,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Any:
        """
        Fetch a document in the caller's representation: dict, str (raw
        JSON), bytes, or any callable taking the decoded mapping.
        """
        request = self._request("GET", document_path(collection, key), op="document.get")
        return await self._executor.execute(request, DocumentDecoder(representation), ctx=ctx)

    async def document_exists(
        self,
        collection: str,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> bool:
        """True if the document exists; a 404 is a valid negative answer."""
        request = self._request("HEAD", document_path(collection, key), op="document.exists")
        return await self._executor.execute(request, ExistsDecoder(), ctx=ctx)

    async def close(self) -> None:
        """Close open cursors, wait for their releases, close the executor."""
        await self._registry.close_all()
        await self._registry.drain()
        if self._owns_executor:
            await self._executor.close()

    async def __aenter__(self) -> "Database":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class SyncDatabase:
    """
    Blocking facade over Database.

    All calls run on a private event-loop thread (AsyncBridge), so the
    executor and transport stay bound to one loop for their whole life.
    """

    def __init__(self, database: Database, *, bridge: Optional[AsyncBridge] = None) -> None:
        self._db = database
        self._owns_bridge = bridge is None
        self._bridge = bridge or AsyncBridge(name=f"docgraph_sync_{database.name}")

    @property
    def database(self) -> Database:
        return self._db

    def query(
        self,
        query: str,
        bind_vars: Optional[Mapping[str, Any]] = None,
        options: Optional[QueryOptions] = None,
        *,
        item_shape: Optional[Callable[[Any], T]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> SyncCursor[T]:
        cursor = self._bridge.run(
            self._db.query(query, bind_vars, options, item_shape=item_shape, ctx=ctx)
        )
        return SyncCursor(cursor, self._bridge)

    def insert_document(self, collection: str, document: Mapping[str, Any]) -> Dict[str, Any]:
        return self._bridge.run(self._db.insert_document(collection, document))

    def get_document(self, collection: str, key: str, representation: Any = dict) -> Any:
        return self._bridge.run(self._db.get_document(collection, key, representation))

    def document_exists(self, collection: str, key: str) -> bool:
        return self._bridge.run(self._db.document_exists(collection, key))

    def close(self) -> None:
        try:
            self._bridge.run(self._db.close())
        finally:
            if self._owns_bridge:
                self._bridge.shutdown()

    def __enter__(self) -> "SyncDatabase":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


__all__ = [
    "DOCUMENT_API_PATH",
    "document_path",
    "QueryOptions",
    "CursorDecoder",
    "Database",
    "SyncDatabase",
]
