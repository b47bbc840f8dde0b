# SPDX-License-Identifier: Apache-2.0
"""
Error context attachment.
"""
from docgraph_sdk.core.error_context import attach_context, get_context
from docgraph_sdk.query.query_base import TransportError


def test_error_context_merges_layers_and_keeps_first_component():
    err = TransportError("down")
    attach_context(err, component="executor", operation="cursor.next", request_id=None)
    attach_context(err, component="cursor", cursor_id="42")

    ctx = get_context(err)
    assert ctx["component"] == "executor"
    assert ctx["layers"] == ["executor", "cursor"]
    assert ctx["operation"] == "cursor.next"
    assert ctx["cursor_id"] == "42"
    assert "request_id" not in ctx


def test_error_context_missing_is_empty():
    assert get_context(ValueError("plain")) == {}


def test_error_context_never_raises_on_unwritable_exceptions():
    class Frozen(Exception):
        __slots__ = ()

        def __setattr__(self, name, value):
            raise AttributeError("frozen")

    err = Frozen()
    attach_context(err, component="executor")
    assert get_context(err) == {}
