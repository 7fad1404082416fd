# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Background store abstraction: filter statistics, per-domain history, config.

Defines ``StatsStoreProtocol`` and ``InMemoryStore`` for tests and one-shot
CLI runs. ``store_sqlite.SqliteStore`` is the persistent implementation.

History entries are kept per (domain, kind) in arrival order; an entry's
position in that list is its ``entry_index``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from . import ContentKind

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Stats:
    """Lifetime redaction counters."""

    text_filtered: int = 0
    images_filtered: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"textFiltered": self.text_filtered, "imagesFiltered": self.images_filtered}


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One reported redaction, as shown in the history view."""

    kind: ContentKind
    content: str
    replacement: str
    timestamp: float = field(default_factory=time.time)
    recovered: bool = False


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class StatsStoreProtocol(Protocol):
    """Interface for the background store: in-memory or SQLite."""

    async def update_stats(self, kind: ContentKind) -> None: ...

    async def add_to_history(self, domain: str, kind: ContentKind, content: str, replacement: str) -> None: ...

    async def get_stats(self) -> Stats: ...

    async def get_history(self, domain: str) -> dict[ContentKind, list[HistoryEntry]]: ...

    async def mark_recovered(self, domain: str, kind: ContentKind, entry_index: int) -> bool: ...

    async def load_config(self) -> dict[str, Any]: ...

    async def save_config(self, data: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Non-persistent store. History lives in plain lists."""

    def __init__(self) -> None:
        self._counts: dict[ContentKind, int] = {kind: 0 for kind in ContentKind}
        self._history: dict[str, dict[ContentKind, list[HistoryEntry]]] = {}
        self._config: dict[str, Any] = {}

    async def update_stats(self, kind: ContentKind) -> None:
        self._counts[ContentKind(kind)] += 1

    async def add_to_history(self, domain: str, kind: ContentKind, content: str, replacement: str) -> None:
        bucket = self._history.setdefault(domain, {k: [] for k in ContentKind})
        bucket[ContentKind(kind)].append(HistoryEntry(kind=ContentKind(kind), content=content, replacement=replacement))

    async def get_stats(self) -> Stats:
        return Stats(text_filtered=self._counts[ContentKind.TEXT], images_filtered=self._counts[ContentKind.IMAGE])

    async def get_history(self, domain: str) -> dict[ContentKind, list[HistoryEntry]]:
        bucket = self._history.get(domain, {})
        return {kind: list(bucket.get(kind, [])) for kind in ContentKind}

    async def mark_recovered(self, domain: str, kind: ContentKind, entry_index: int) -> bool:
        """Flag a history entry as recovered. False if it does not exist."""
        entries = self._history.get(domain, {}).get(ContentKind(kind), [])
        if not 0 <= entry_index < len(entries):
            return False
        entry = entries[entry_index]
        entries[entry_index] = HistoryEntry(
            kind=entry.kind,
            content=entry.content,
            replacement=entry.replacement,
            timestamp=entry.timestamp,
            recovered=True,
        )
        return True

    async def load_config(self) -> dict[str, Any]:
        return dict(self._config)

    async def save_config(self, data: dict[str, Any]) -> None:
        self._config.update(data)

    async def close(self) -> None:
        """No-op for the in-memory store."""
