# docgraph_sdk/core/error_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Error context utilities.

Failures raised by the request executor and cursors travel through several
layers (executor -> cursor -> sync facade -> caller). This module lets each
layer attach request metadata to the exception without changing its type,
message or traceback:

    try:
        batch = await executor.execute(request, decoder)
    except DocGraphError as exc:
        attach_context(exc, component="cursor", cursor_id="123")
        raise

Later, in error handlers:

    except DocGraphError as exc:
        ctx = get_context(exc)
        logger.error("query failed", extra={"operation": ctx.get("operation")})

Context is stored on `__docgraph_context__`. Repeated calls merge; the first
`component` recorded is kept. Values that are None are dropped so that
optional fields (request ids, cursor ids) do not clutter the mapping.
Attachment is best-effort and never masks the original exception.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping

logger = logging.getLogger(__name__)

_ATTR = "__docgraph_context__"


def attach_context(
    exc: BaseException,
    component: str,
    **context: Any,
) -> None:
    """
    Attach debugging context to an exception.

    Parameters
    ----------
    exc:
        The exception to enrich.

    component:
        Origin of this context, e.g. "executor", "cursor", "sync_cursor".
        Stored under the "component" key unless an earlier layer already
        set it; later layers are recorded in "layers".

    **context:
        Extra fields (operation, method, path, database, cursor_id,
        request_id ...). Avoid payload data.
    """
    try:
        merged: MutableMapping[str, Any] = {}
        existing = getattr(exc, _ATTR, None)
        if isinstance(existing, Mapping):
            merged.update(existing)

        merged.setdefault("component", component)
        layers = list(merged.get("layers") or [])
        if component not in layers:
            layers.append(component)
        merged["layers"] = layers

        merged.update({k: v for k, v in context.items() if v is not None})
        setattr(exc, _ATTR, merged)
    except Exception as attachment_error:  # noqa: BLE001
        logger.debug(
            "Failed to attach error context to %s: %s",
            type(exc).__name__,
            attachment_error,
        )


def get_context(exc: BaseException) -> Mapping[str, Any]:
    """Return the attached context, or an empty dict."""
    ctx = getattr(exc, _ATTR, None)
    if isinstance(ctx, Mapping):
        return ctx
    return {}


__all__ = [
    "attach_context",
    "get_context",
]
