# SPDX-License-Identifier: Apache-2.0
"""
Cursor lifecycle: close, release, expiry and fetch failures.

Asserts:
  • close() is idempotent and sends at most one release
  • reads after close raise CursorClosed, buffered items included
  • no release for cursors the server no longer holds
  • release failures are swallowed
  • time-to-live expiry surfaces CursorExpired
  • a failed fetch leaves the cursor untouched so next() can be retried
  • Database.close() releases every open cursor
"""
import pytest

from docgraph_sdk.core.error_context import get_context
from docgraph_sdk.query.cursor import CURSOR_API_PATH
from docgraph_sdk.query.database import QueryOptions
from docgraph_sdk.query.query_base import (
    CursorClosed,
    CursorExpired,
    DocGraphError,
    TransportError,
)
from tests.conftest import ITEMS_QUERY

pytestmark = pytest.mark.asyncio


async def test_lifecycle_close_twice_sends_one_release(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3))
    cursor_id = cursor.id

    await cursor.close()
    await cursor.close()
    await db.registry.drain()

    assert cursor.closed is True
    assert len(server.calls("DELETE", CURSOR_API_PATH)) == 1
    assert server.released == [cursor_id]
    assert server.open_cursors == 0


async def test_lifecycle_reads_after_close_raise_even_with_buffered_items(db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=5))
    await cursor.next()

    await cursor.close()

    with pytest.raises(CursorClosed) as exc_info:
        await cursor.next()
    assert exc_info.value.code == "CURSOR_CLOSED"
    with pytest.raises(CursorClosed):
        cursor.has_next()
    with pytest.raises(CursorClosed):
        await cursor.as_list_remaining()


async def test_lifecycle_close_after_one_item_stops_fetching(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=1))
    await cursor.next()

    await cursor.close()
    with pytest.raises(CursorClosed):
        await cursor.next()
    await db.registry.drain()

    assert server.calls("PUT", CURSOR_API_PATH) == []
    assert len(server.calls("DELETE", CURSOR_API_PATH)) == 1


async def test_lifecycle_no_release_without_server_side_cursor(server, db):
    server.add_result("RETURN 1", [1])
    single = await db.query("RETURN 1")
    await single.close()

    drained = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=4))
    await drained.as_list_remaining()
    await drained.close()
    await db.registry.drain()

    assert server.calls("DELETE", CURSOR_API_PATH) == []


async def test_lifecycle_release_failure_is_swallowed(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3))
    server.respond_next(503, message="unavailable")

    await cursor.close()
    await db.registry.drain()

    assert cursor.closed is True
    assert db.registry.pending_releases == 0


async def test_lifecycle_async_context_manager_closes(server, db):
    async with await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3)) as cursor:
        await cursor.next()
    await db.registry.drain()

    assert cursor.closed is True
    assert len(server.released) == 1


async def test_lifecycle_ttl_expiry_surfaces_cursor_expired(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=5, ttl=10))
    assert cursor.ttl == 10
    for _ in range(5):
        await cursor.next()

    server.advance(11)

    with pytest.raises(CursorExpired) as exc_info:
        await cursor.next()
    err = exc_info.value
    assert err.code == "CURSOR_EXPIRED"
    assert err.status == 404
    assert err.error_num == 1600
    assert "cursor not found" in err.message
    assert not isinstance(err, TransportError)


async def test_lifecycle_ttl_refreshed_by_each_fetch(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=2, ttl=10))
    for _ in range(2):
        await cursor.next()

    server.advance(8)
    await cursor.next()
    await cursor.next()
    server.advance(8)
    await cursor.next()

    assert cursor.fetch_count == 2


async def test_lifecycle_failed_fetch_leaves_state_untouched(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=5))
    for _ in range(5):
        await cursor.next()
    cursor_id = cursor.id

    server.fail_next(ConnectionResetError("peer reset"))
    with pytest.raises(TransportError) as exc_info:
        await cursor.next()

    ctx = get_context(exc_info.value)
    assert ctx["component"] == "executor"
    assert "cursor" in ctx["layers"]
    assert ctx["cursor_id"] == cursor_id
    assert cursor.id == cursor_id
    assert cursor.has_next() is True
    assert cursor.fetch_count == 0

    assert (await cursor.next())["n"] == 5
    assert cursor.fetch_count == 1


async def test_lifecycle_server_error_on_fetch_is_transport_error(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=5))
    for _ in range(5):
        await cursor.next()

    server.respond_next(500, error_num=4, message="internal error")
    with pytest.raises(TransportError) as exc_info:
        await cursor.next()

    assert exc_info.value.status == 500
    assert exc_info.value.error_num == 4
    assert (await cursor.next())["n"] == 5


async def test_lifecycle_registry_tracks_only_cursors_with_more(server, db):
    server.add_result("RETURN 1", [1])
    await db.query("RETURN 1")
    assert db.registry.open_count == 0

    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=5))
    assert db.registry.open_count == 1

    await cursor.as_list_remaining()
    assert db.registry.open_count == 0


async def test_lifecycle_database_close_releases_open_cursors(server, db):
    first = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3))
    second = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=4))

    await db.close()

    assert first.closed and second.closed
    assert sorted(server.released) == ["1000", "1001"]
    assert server.closed is True


async def test_lifecycle_errors_share_a_common_base(db):
    cursor = await db.query(ITEMS_QUERY)
    await cursor.close()
    with pytest.raises(DocGraphError):
        await cursor.next()
