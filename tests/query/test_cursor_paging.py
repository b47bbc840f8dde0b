# SPDX-License-Identifier: Apache-2.0
"""
Cursor paging behavior.

Asserts:
  • single-batch results never issue a follow-up fetch
  • N batches -> exactly N-1 sequential follow-up fetches, order preserved
  • count / CursorExhausted past the end
  • full count with a limit, kept across batches that carry no stats
  • warnings accumulate across batches in arrival order
  • cached flag comes from the initial batch only
  • pull, push, list and async-iterator styles see the same items
  • an item that fails its shape stays buffered
"""
import json
from dataclasses import dataclass

import pytest

from docgraph_sdk.query.cursor import CURSOR_API_PATH
from docgraph_sdk.query.database import QueryOptions
from docgraph_sdk.query.query_base import CursorExhausted, DecodeError, RawResponse
from tests.conftest import ITEMS_QUERY, make_rows

pytestmark = pytest.mark.asyncio


async def test_paging_single_batch_has_no_follow_up_fetch(server, db):
    server.add_result("RETURN [1, 2, 3]", [1, 2, 3])
    cursor = await db.query("RETURN [1, 2, 3]", options=QueryOptions(batch_size=10))

    assert cursor.id is None
    items = []
    while cursor.has_next():
        items.append(await cursor.next())

    assert items == [1, 2, 3]
    assert cursor.has_next() is False
    assert cursor.fetch_count == 0
    assert len(server.calls(path_prefix=CURSOR_API_PATH)) == 1


async def test_paging_n_batches_issue_n_minus_one_fetches(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3))

    items = await cursor.as_list_remaining()

    # 10 items / batch 3 -> 4 batches
    assert [i["n"] for i in items] == list(range(10))
    assert cursor.fetch_count == 3
    follow_ups = server.calls("PUT", CURSOR_API_PATH)
    assert len(follow_ups) == 3
    assert {r.path for r in follow_ups} == {f"{CURSOR_API_PATH}/1000"}
    assert len(server.calls(path_prefix=CURSOR_API_PATH)) == 4


async def test_paging_fetches_only_when_buffer_is_empty(server, db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=5))

    for _ in range(5):
        await cursor.next()
    assert cursor.fetch_count == 0
    assert cursor.has_next() is True

    await cursor.next()
    assert cursor.fetch_count == 1


async def test_paging_count_and_exhaustion(db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=5, count=True))

    assert cursor.count == 10
    for _ in range(10):
        await cursor.next()

    assert cursor.has_next() is False
    assert cursor.exhausted is True
    with pytest.raises(CursorExhausted) as exc_info:
        await cursor.next()
    assert exc_info.value.code == "CURSOR_EXHAUSTED"


async def test_paging_count_absent_unless_requested(db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=5))
    assert cursor.count is None


async def test_paging_full_count_with_limit(server, db):
    server.add_result("FOR i IN items LIMIT 5 RETURN i", make_rows(10), limit=5)

    cursor = await db.query(
        "FOR i IN items LIMIT 5 RETURN i",
        options=QueryOptions(batch_size=2, full_count=True),
    )
    items = await cursor.as_list_remaining()

    assert len(items) == 5
    assert cursor.stats.full_count == 10


async def test_paging_stats_survive_batch_without_extra(server, db):
    server.add_result("FOR i IN items LIMIT 5 RETURN i", make_rows(10), limit=5)
    cursor = await db.query(
        "FOR i IN items LIMIT 5 RETURN i",
        options=QueryOptions(batch_size=3, full_count=True, count=True),
    )
    assert cursor.stats.full_count == 10

    final = {"id": cursor.id, "result": make_rows(5)[3:], "hasMore": False}
    server.respond_raw(RawResponse(status=200, body=json.dumps(final).encode("utf-8")))
    items = await cursor.as_list_remaining()

    assert [i["n"] for i in items] == [0, 1, 2, 3, 4]
    assert cursor.count == 5
    assert cursor.stats.full_count == 10
    assert cursor.stats.scanned_full == 10


async def test_paging_full_count_absent_unless_requested(server, db):
    server.add_result("FOR i IN items LIMIT 5 RETURN i", make_rows(10), limit=5)
    cursor = await db.query("FOR i IN items LIMIT 5 RETURN i")
    assert cursor.stats.full_count is None


async def test_paging_warnings_accumulate_in_arrival_order(server, db):
    server.add_result(
        "FOR w IN warn RETURN w",
        make_rows(6),
        warnings={0: [(1562, "division by zero")], 2: [(1542, "invalid argument type")]},
    )
    cursor = await db.query("FOR w IN warn RETURN w", options=QueryOptions(batch_size=2))

    assert [w.code for w in cursor.warnings] == [1562]
    await cursor.as_list_remaining()

    assert [(w.code, w.message) for w in cursor.warnings] == [
        (1562, "division by zero"),
        (1542, "invalid argument type"),
    ]


async def test_paging_warnings_returned_as_copy(server, db):
    server.add_result("FOR w IN warn RETURN w", [1], warnings=[(1562, "division by zero")])
    cursor = await db.query("FOR w IN warn RETURN w")

    cursor.warnings.clear()
    assert len(cursor.warnings) == 1


async def test_paging_cached_flag_reflects_query_cache(db):
    opts = QueryOptions(batch_size=4, cache=True)

    first = await db.query(ITEMS_QUERY, options=opts)
    assert first.cached is False
    await first.as_list_remaining()
    assert first.cached is False

    second = await db.query(ITEMS_QUERY, options=opts)
    assert second.cached is True
    assert [i["n"] for i in await second.as_list_remaining()] == list(range(10))
    assert second.cached is True


async def test_paging_cache_off_by_default(db):
    await db.query(ITEMS_QUERY)
    again = await db.query(ITEMS_QUERY)
    assert again.cached is False


async def test_paging_for_each_remaining_accepts_sync_and_async_visitors(db):
    seen = []

    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=4))
    await cursor.next()
    await cursor.for_each_remaining(lambda item: seen.append(item["n"]))
    assert seen == list(range(1, 10))

    async def visit(item):
        seen.append(item["n"])

    seen.clear()
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=4))
    await cursor.for_each_remaining(visit)
    assert seen == list(range(10))


async def test_paging_visitor_failure_stops_the_drain(db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=4))
    seen = []

    def visit(item):
        if item["n"] == 3:
            raise RuntimeError("stop")
        seen.append(item["n"])

    with pytest.raises(RuntimeError):
        await cursor.for_each_remaining(visit)
    assert seen == [0, 1, 2]
    assert (await cursor.next())["n"] == 4


async def test_paging_async_iteration_and_stream(db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3))
    assert [i["n"] async for i in cursor] == list(range(10))

    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3))
    await cursor.next()
    streamed = [i["n"] async for i in cursor.stream_remaining()]
    assert streamed == list(range(1, 10))


async def test_paging_stream_break_leaves_cursor_usable(db):
    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=3))
    async for item in cursor.stream_remaining():
        if item["n"] == 4:
            break

    assert (await cursor.next())["n"] == 5


async def test_paging_empty_result(server, db):
    server.add_result("FOR x IN empty RETURN x", [])
    cursor = await db.query("FOR x IN empty RETURN x", options=QueryOptions(count=True))

    assert cursor.count == 0
    assert cursor.has_next() is False
    assert await cursor.as_list_remaining() == []


@dataclass(frozen=True)
class Item:
    key: str
    n: int


async def test_paging_item_shape_applied_to_every_item(db):
    cursor = await db.query(
        ITEMS_QUERY,
        options=QueryOptions(batch_size=4),
        item_shape=lambda raw: Item(key=raw["_key"], n=raw["n"]),
    )
    items = await cursor.as_list_remaining()

    assert all(isinstance(i, Item) for i in items)
    assert items[9] == Item(key="9", n=9)


async def test_paging_item_shape_mismatch_is_decode_error(db):
    cursor = await db.query(ITEMS_QUERY, item_shape=lambda raw: raw["missing"])
    with pytest.raises(DecodeError):
        await cursor.next()


async def test_paging_bind_vars_and_options_reach_the_wire(server, executor, db):
    await db.query(
        ITEMS_QUERY,
        bind_vars={"min": 3},
        options=QueryOptions(batch_size=2, ttl=60, count=True, full_count=True, max_warning_count=5),
    )

    body = executor.codec.decode(server.calls("POST", CURSOR_API_PATH)[0].body)
    assert body == {
        "query": ITEMS_QUERY,
        "bindVars": {"min": 3},
        "count": True,
        "batchSize": 2,
        "ttl": 60,
        "options": {"fullCount": True, "maxWarningCount": 5},
    }


async def test_paging_shape_failure_keeps_item_buffered(server, db):
    attempts = []

    def flaky_shape(raw):
        attempts.append(raw["n"])
        if len(attempts) == 1:
            raise KeyError("n")
        return raw["n"]

    cursor = await db.query(ITEMS_QUERY, options=QueryOptions(batch_size=2), item_shape=flaky_shape)

    with pytest.raises(DecodeError):
        await cursor.next()

    assert await cursor.next() == 0
    assert await cursor.next() == 1
    assert attempts == [0, 0, 1]
    assert server.calls("PUT") == []
