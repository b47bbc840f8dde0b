# SPDX-License-Identifier: Apache-2.0
"""
DocGraph SDK Tests

Behavior tests for the request executor, paginated cursors, the database
handle, transports and caller-side helpers.
"""
