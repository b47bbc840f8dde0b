# docgraph_sdk/query/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
DocGraph Query Client V1 - Public API

Request execution core, paginated cursors and the database handle.
All public types are re-exported here for clean imports.
"""

from docgraph_sdk.query.query_base import (
    # Protocol version
    DOCGRAPH_PROTOCOL_VERSION,
    DOCGRAPH_PROTOCOL_ID,
    ERROR_CURSOR_NOT_FOUND,

    # Error types
    DocGraphError,
    BadRequest,
    TransportError,
    DeadlineExceeded,
    DecodeError,
    CursorClosed,
    CursorExhausted,
    CursorExpired,

    # Core types
    Outcome,
    Request,
    RawResponse,
    OperationContext,

    # Collaborators
    Codec,
    JsonCodec,
    Transport,

    # Decoders
    ResponseDecoder,
    ValueDecoder,
    DocumentDecoder,
    ExistsDecoder,
    NoneDecoder,

    # Metrics and policies
    MetricsSink,
    NoopMetrics,
    SimpleDeadline,
    SimpleTokenBucketLimiter,

    # Executor
    RequestExecutor,
)

from docgraph_sdk.query.cursor import (
    CURSOR_API_PATH,
    CursorWarning,
    CursorStats,
    ResultBatch,
    ResultBatchDecoder,
    CursorRegistry,
    AsyncCursor,
    SyncCursor,
)

from docgraph_sdk.query.database import (
    QueryOptions,
    CursorDecoder,
    Database,
    SyncDatabase,
)

from docgraph_sdk.query.httpx_transport import HttpxTransport

__all__ = [
    "DOCGRAPH_PROTOCOL_VERSION",
    "DOCGRAPH_PROTOCOL_ID",
    "ERROR_CURSOR_NOT_FOUND",
    "DocGraphError",
    "BadRequest",
    "TransportError",
    "DeadlineExceeded",
    "DecodeError",
    "CursorClosed",
    "CursorExhausted",
    "CursorExpired",
    "Outcome",
    "Request",
    "RawResponse",
    "OperationContext",
    "Codec",
    "JsonCodec",
    "Transport",
    "ResponseDecoder",
    "ValueDecoder",
    "DocumentDecoder",
    "ExistsDecoder",
    "NoneDecoder",
    "MetricsSink",
    "NoopMetrics",
    "SimpleDeadline",
    "SimpleTokenBucketLimiter",
    "RequestExecutor",
    "CURSOR_API_PATH",
    "CursorWarning",
    "CursorStats",
    "ResultBatch",
    "ResultBatchDecoder",
    "CursorRegistry",
    "AsyncCursor",
    "SyncCursor",
    "QueryOptions",
    "CursorDecoder",
    "Database",
    "SyncDatabase",
    "HttpxTransport",
]
