# src/dcloud/runtime/apply/__init__.py
"""Domain-specific apply modules.

Each module stages its state transitions in an ApplyContext; nothing here
writes to a store directly.
"""

from __future__ import annotations

__all__ = [
    "storage",
    "files",
]
