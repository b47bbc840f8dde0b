# docgraph_sdk/core/async_bridge.py
# SPDX-License-Identifier: Apache-2.0

"""
Async bridge for the synchronous facade.

The client core is async-first: cursors, the request executor and pooled
transports are bound to the event loop they were first used on. A blocking
facade therefore cannot spin up a fresh loop per call (as `asyncio.run`
would); it needs one long-lived loop that every call is submitted to.

AsyncBridge owns that loop on a dedicated daemon thread:

    bridge = AsyncBridge(name="docgraph_sync")
    cursor = bridge.run(db.query("FOR d IN docs RETURN d"))
    first = bridge.run(cursor.next())
    bridge.shutdown()

Key concerns handled here:

- Lazy start, idempotent shutdown
- Optional per-call timeout surfaced as AsyncBridgeTimeoutError
- Refusing calls made from the loop thread itself (would deadlock)
- Thread-safe submission from any number of caller threads
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

#: Optional default timeout (seconds) for AsyncBridge.run when no explicit
#: timeout is given. None means "no timeout".
DEFAULT_RUN_TIMEOUT: Optional[float] = None


class AsyncBridgeTimeoutError(TimeoutError):
    """Raised when a bridged call exceeds its timeout."""


class AsyncBridge:
    """
    Run coroutines on a private event loop from synchronous code.

    Thread Safety
    -------------
    - `run` may be called from any thread except the bridge's own loop
      thread.
    - Start/shutdown are guarded by a lock.

    Lifecycle
    ---------
    - The loop thread is started on first use.
    - `shutdown()` stops the loop and joins the thread; it is safe to call
      multiple times. A bridge cannot be restarted after shutdown.
    """

    def __init__(self, *, name: str = "docgraph_bridge", default_timeout: Optional[float] = None) -> None:
        self._name = name
        self._default_timeout = default_timeout
        self._lock = threading.RLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = False

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._stopped:
                raise RuntimeError("AsyncBridge has been shut down")
            if self._loop is not None:
                return self._loop

            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def _serve() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                try:
                    loop.run_forever()
                finally:
                    loop.close()

            thread = threading.Thread(target=_serve, name=self._name, daemon=True)
            thread.start()
            ready.wait()
            self._loop = loop
            self._thread = thread
            logger.debug("AsyncBridge %s: loop thread started", self._name)
            return loop

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._ensure_started()

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """
        Run `coro` on the bridge loop and block until it resolves.

        Raises:
            AsyncBridgeTimeoutError: On timeout (the coroutine is cancelled).
            RuntimeError: When called from the bridge's own loop thread.
            Any exception raised by the coroutine itself.
        """
        try:
            loop = self._ensure_started()
        except RuntimeError:
            coro.close()
            raise
        if threading.current_thread() is self._thread:
            coro.close()
            raise RuntimeError("AsyncBridge.run called from its own loop thread")

        effective_timeout = timeout
        if effective_timeout is None:
            effective_timeout = self._default_timeout
        if effective_timeout is None:
            effective_timeout = DEFAULT_RUN_TIMEOUT

        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return future.result(timeout=effective_timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise AsyncBridgeTimeoutError(
                f"bridged call exceeded timeout={effective_timeout!r} seconds"
            ) from exc

    def shutdown(self, *, join_timeout_s: float = 5.0) -> None:
        """Stop the loop thread. Safe to call multiple times."""
        with self._lock:
            self._stopped = True
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout_s)
        logger.debug("AsyncBridge %s: loop thread stopped", self._name)


__all__ = [
    "AsyncBridge",
    "AsyncBridgeTimeoutError",
    "DEFAULT_RUN_TIMEOUT",
]
