# SPDX-License-Identifier: Apache-2.0
"""
Demonstrates: paged query over the in-memory server
Expected: prints count/full count, items arriving in batches of 4, the
warnings collected along the way, then a CursorClosed after early close
"""
import asyncio
import logging

from docgraph_sdk.mock.mock_transport import MockDocumentServer
from docgraph_sdk.query.database import Database, QueryOptions
from docgraph_sdk.query.query_base import CursorClosed, RequestExecutor
from examples.common.printing import box, print_kv, print_rows

QUERY = "FOR o IN orders SORT o.total DESC LIMIT 10 RETURN o"


async def main():
    logging.basicConfig(level=logging.INFO)
    box("ex01_paged_query")

    server = MockDocumentServer()
    server.add_result(
        QUERY,
        [{"_key": f"o{i}", "total": 100 - i} for i in range(25)],
        limit=10,
        warnings={1: [(1562, "division by zero")]},
    )
    db = Database(RequestExecutor(server), "shop")

    cursor = await db.query(QUERY, options=QueryOptions(batch_size=4, count=True, full_count=True))
    print_kv({"count": cursor.count, "full_count": cursor.stats.full_count, "cached": cursor.cached})

    rows = [row async for row in cursor]
    print_rows(rows)
    print_kv({
        "batches fetched": cursor.fetch_count,
        "warnings": [(w.code, w.message) for w in cursor.warnings],
    })

    box("early close")
    cursor = await db.query(QUERY, options=QueryOptions(batch_size=2))
    print_kv({"first": await cursor.next()})
    await cursor.close()
    try:
        await cursor.next()
    except CursorClosed as e:
        print_kv({"after close": e.code})

    await db.close()
    print_kv({"released": server.released, "lesson": "batches arrive on demand; close releases"})


if __name__ == "__main__":
    asyncio.run(main())
