# SPDX-License-Identifier: Apache-2.0
"""
Console helpers for the example scripts.

  • box        : section header
  • print_kv   : aligned key/value lines
  • print_rows : one compact JSON line per row
"""
from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

__all__ = ["box", "print_kv", "print_rows"]


def box(title: str, *, fill: str = "─") -> None:
    """Print a boxed section title."""
    label = f" {title.strip()} "
    bar = fill * len(label)
    print(f"\n┌{bar}┐\n│{label}│\n└{bar}┘")


def print_kv(pairs: Mapping[str, Any], *, indent: int = 2) -> None:
    """Print key/value pairs with keys right-aligned."""
    if not pairs:
        return
    width = max(len(str(k)) for k in pairs)
    for k, v in pairs.items():
        print(" " * indent + f"{str(k).rjust(width)}: {v}")


def print_rows(rows: Iterable[Any], *, indent: int = 2) -> None:
    for row in rows:
        print(" " * indent + json.dumps(row, ensure_ascii=False, default=str))
