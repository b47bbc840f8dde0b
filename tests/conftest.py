# SPDX-License-Identifier: Apache-2.0
"""
Shared fixtures.

Every test talks to an in-memory MockDocumentServer through a real
RequestExecutor, so the full dispatch/decode path is exercised without a
network. Fixtures are plain (synchronous) on purpose: constructing the
executor and database does not touch the event loop.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import pytest

from docgraph_sdk.mock.mock_transport import MockDocumentServer
from docgraph_sdk.query.database import Database
from docgraph_sdk.query.query_base import RequestExecutor

ITEMS_QUERY = "FOR i IN items RETURN i"


def make_rows(n: int) -> List[Dict[str, Any]]:
    return [{"_key": str(i), "n": i} for i in range(n)]


class RecordingMetrics:
    """MetricsSink that keeps every observation for assertions."""

    def __init__(self) -> None:
        self.observations: List[Mapping[str, Any]] = []
        self.counters: List[Mapping[str, Any]] = []

    def observe(self, *, component: str, op: str, ms: float, ok: bool,
                code: str = "OK", extra: Optional[Mapping[str, Any]] = None) -> None:
        self.observations.append({"component": component, "op": op, "ok": ok, "code": code})

    def counter(self, *, component: str, name: str, value: int = 1,
                extra: Optional[Mapping[str, Any]] = None) -> None:
        self.counters.append({"component": component, "name": name, "value": value})


@pytest.fixture
def server() -> MockDocumentServer:
    srv = MockDocumentServer()
    srv.add_result(ITEMS_QUERY, make_rows(10))
    return srv


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def executor(server: MockDocumentServer, metrics: RecordingMetrics) -> RequestExecutor:
    return RequestExecutor(server, metrics=metrics)


@pytest.fixture
def db(executor: RequestExecutor) -> Database:
    return Database(executor, "shop")
