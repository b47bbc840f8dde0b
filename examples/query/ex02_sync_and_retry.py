# SPDX-License-Identifier: Apache-2.0
"""
Demonstrates: blocking facade, caller-side retry, cursor expiry
Expected: a sync iteration, a fetch that recovers after two 503s, then a
CursorExpired once the server clock passes the cursor's ttl
"""
import asyncio

from docgraph_sdk.core.retry import RetryPolicy, retry_async
from docgraph_sdk.mock.mock_transport import MockDocumentServer
from docgraph_sdk.query.database import Database, QueryOptions, SyncDatabase
from docgraph_sdk.query.query_base import CursorExpired, RequestExecutor
from examples.common.printing import box, print_kv

QUERY = "FOR u IN users RETURN u.name"


def sync_part(server: MockDocumentServer) -> None:
    box("sync facade")
    with SyncDatabase(Database(RequestExecutor(server))) as db:
        with db.query(QUERY, options=QueryOptions(batch_size=2)) as cursor:
            print_kv({"names": list(cursor)})


async def async_part(server: MockDocumentServer) -> None:
    box("retry a failed fetch")
    db = Database(RequestExecutor(server))
    cursor = await db.query(QUERY, options=QueryOptions(batch_size=2, ttl=30))
    await cursor.next()
    await cursor.next()

    server.respond_next(503, message="unavailable", times=2)
    policy = RetryPolicy(max_attempts=4, base_ms=10, max_ms=50)
    name, stats = await retry_async(cursor.next, policy=policy, return_stats=True)
    print_kv({"next": name, "attempts": stats.attempts})

    box("cursor expiry")
    await cursor.next()
    server.advance(31)
    try:
        await cursor.next()
    except CursorExpired as e:
        print_kv({"error": e.code, "message": e.message})
    await db.close()


def make_server() -> MockDocumentServer:
    server = MockDocumentServer()
    server.add_result(QUERY, ["ada", "grace", "barbara", "frances", "margaret", "hedy"])
    return server


if __name__ == "__main__":
    sync_part(make_server())
    asyncio.run(async_part(make_server()))
