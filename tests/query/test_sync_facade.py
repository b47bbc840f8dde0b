# SPDX-License-Identifier: Apache-2.0
"""
Blocking facade over the async core.

Asserts:
  • SyncCursor iterates across batches in order
  • pull-style has_next()/next() and push-style for_each_remaining()
  • errors from the async core propagate unchanged
  • closing the database releases cursors and stops the loop thread
"""
import pytest

from docgraph_sdk.core.async_bridge import AsyncBridge
from docgraph_sdk.query.database import QueryOptions, SyncDatabase
from docgraph_sdk.query.query_base import CursorClosed, CursorExhausted, CursorExpired
from tests.conftest import ITEMS_QUERY


@pytest.fixture
def sync_db(db):
    facade = SyncDatabase(db)
    yield facade
    facade.close()


def test_sync_cursor_iterates_all_batches(server, sync_db):
    cursor = sync_db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3, count=True))

    assert cursor.count == 10
    assert [item["n"] for item in cursor] == list(range(10))
    assert len(server.calls("PUT")) == 3


def test_sync_cursor_pull_and_push(sync_db):
    cursor = sync_db.query(ITEMS_QUERY, options=QueryOptions(batch_size=4))
    first = cursor.next()
    seen = []
    cursor.for_each_remaining(lambda item: seen.append(item["n"]))

    assert first["n"] == 0
    assert seen == list(range(1, 10))
    assert cursor.has_next() is False
    with pytest.raises(CursorExhausted):
        cursor.next()


def test_sync_cursor_as_list_remaining(sync_db):
    cursor = sync_db.query(ITEMS_QUERY, options=QueryOptions(batch_size=6))
    cursor.next()
    assert len(cursor.as_list_remaining()) == 9


def test_sync_cursor_close_and_context_manager(server, sync_db):
    with sync_db.query(ITEMS_QUERY, options=QueryOptions(batch_size=2)) as cursor:
        cursor.next()

    with pytest.raises(CursorClosed):
        cursor.next()
    with pytest.raises(CursorClosed):
        cursor.has_next()


def test_sync_cursor_expiry_propagates(server, sync_db):
    cursor = sync_db.query(ITEMS_QUERY, options=QueryOptions(batch_size=1, ttl=5))
    cursor.next()
    server.advance(6)

    with pytest.raises(CursorExpired):
        cursor.next()


def test_sync_documents(sync_db):
    sync_db.insert_document("users", {"_key": "ada", "name": "Ada"})

    assert sync_db.get_document("users", "ada")["name"] == "Ada"
    assert sync_db.document_exists("users", "ada") is True
    assert sync_db.document_exists("users", "nobody") is False


def test_sync_close_releases_cursors_keeps_caller_bridge(server, db):
    bridge = AsyncBridge(name="test_sync_close")
    facade = SyncDatabase(db, bridge=bridge)
    cursor = facade.query(ITEMS_QUERY, options=QueryOptions(batch_size=2))

    facade.close()

    assert cursor.cursor.closed is True
    assert server.released == ["1000"]
    assert server.closed is True
    # caller-owned bridge stays usable
    assert bridge.loop.is_running()
    bridge.shutdown()


def test_sync_owned_bridge_is_shut_down(db):
    facade = SyncDatabase(db)
    facade.close()
    with pytest.raises(RuntimeError):
        facade.insert_document("users", {"_key": "late"})
