# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""SQLite-backed background store: statistics, per-domain history, config.

Uses ``aiosqlite`` with a single long-lived connection. WAL journal mode
enables concurrent reads with serialized writes. Schema versioned via
``PRAGMA user_version``.

Dependencies: store.py (Stats, HistoryEntry, StatsStoreProtocol).
"""

from __future__ import annotations

import json
import time
from contextlib import suppress
from pathlib import Path
from typing import Any

import aiosqlite

from . import ContentKind
from .store import HistoryEntry, Stats

_SCHEMA_VERSION = 1


def _row_to_history_entry(row: aiosqlite.Row) -> HistoryEntry:
    """Convert a positional row to a ``HistoryEntry``."""
    return HistoryEntry(
        kind=ContentKind(row[0]),
        content=row[1],
        replacement=row[2],
        timestamp=row[3],
        recovered=bool(row[4]),
    )


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_CREATE_STATS = """
CREATE TABLE IF NOT EXISTS stats (
    kind  TEXT PRIMARY KEY,
    count INTEGER NOT NULL DEFAULT 0
)
"""

_CREATE_HISTORY = """
CREATE TABLE IF NOT EXISTS history (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    domain      TEXT NOT NULL,
    kind        TEXT NOT NULL,
    content     TEXT NOT NULL,
    replacement TEXT NOT NULL,
    timestamp   REAL NOT NULL,
    recovered   INTEGER NOT NULL DEFAULT 0
)
"""

_CREATE_SETTINGS = """
CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_history_domain_kind ON history(domain, kind, id)",
]


# ---------------------------------------------------------------------------
# SqliteStore
# ---------------------------------------------------------------------------


class SqliteStore:
    """SQLite-backed store implementing ``StatsStoreProtocol``.

    Use the ``create()`` async classmethod factory — never instantiate directly.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    @classmethod
    async def create(cls, db_path: str | Path) -> SqliteStore:
        """Open (or create) a SQLite database and initialise the schema.

        Resolves ``~`` and creates parent directories automatically.

        Raises:
            ValueError: If the existing database has a newer schema version.
        """
        path = Path(db_path).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)

        db = await aiosqlite.connect(str(path))
        try:
            await db.execute("PRAGMA journal_mode = WAL")

            cursor = await db.execute("PRAGMA user_version")
            row = await cursor.fetchone()
            current_version = row[0] if row else 0

            if current_version > _SCHEMA_VERSION:
                raise ValueError(
                    f"Database schema version {current_version} is newer than supported version {_SCHEMA_VERSION}"
                )

            if current_version < _SCHEMA_VERSION:
                await db.execute(_CREATE_STATS)
                await db.execute(_CREATE_HISTORY)
                await db.execute(_CREATE_SETTINGS)
                for idx_sql in _CREATE_INDEXES:
                    await db.execute(idx_sql)
                await db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
                await db.commit()
        except BaseException:
            await db.close()
            raise

        return cls(db)

    # ── StatsStoreProtocol methods ────────────────────────────────

    async def update_stats(self, kind: ContentKind) -> None:
        """Increment the lifetime counter for *kind*."""
        await self._db.execute(
            "INSERT INTO stats (kind, count) VALUES (?, 1) ON CONFLICT(kind) DO UPDATE SET count = count + 1",
            (ContentKind(kind).value,),
        )
        await self._db.commit()

    async def add_to_history(self, domain: str, kind: ContentKind, content: str, replacement: str) -> None:
        """Append a history entry for *domain*."""
        await self._db.execute(
            "INSERT INTO history (domain, kind, content, replacement, timestamp) VALUES (?, ?, ?, ?, ?)",
            (domain, ContentKind(kind).value, content, replacement, time.time()),
        )
        await self._db.commit()

    async def get_stats(self) -> Stats:
        cursor = await self._db.execute("SELECT kind, count FROM stats")
        counts = {row[0]: row[1] for row in await cursor.fetchall()}
        return Stats(
            text_filtered=counts.get(ContentKind.TEXT.value, 0),
            images_filtered=counts.get(ContentKind.IMAGE.value, 0),
        )

    async def get_history(self, domain: str) -> dict[ContentKind, list[HistoryEntry]]:
        """History for *domain*, per kind, in insertion order."""
        cursor = await self._db.execute(
            "SELECT kind, content, replacement, timestamp, recovered FROM history WHERE domain = ? ORDER BY id",
            (domain,),
        )
        history: dict[ContentKind, list[HistoryEntry]] = {kind: [] for kind in ContentKind}
        for row in await cursor.fetchall():
            entry = _row_to_history_entry(row)
            history[entry.kind].append(entry)
        return history

    async def mark_recovered(self, domain: str, kind: ContentKind, entry_index: int) -> bool:
        """Flag the *entry_index*-th entry of (domain, kind). ``False`` if absent."""
        if entry_index < 0:
            return False
        cursor = await self._db.execute(
            "UPDATE history SET recovered = 1 WHERE id = ("
            "SELECT id FROM history WHERE domain = ? AND kind = ? ORDER BY id LIMIT 1 OFFSET ?)",
            (domain, ContentKind(kind).value, entry_index),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def load_config(self) -> dict[str, Any]:
        cursor = await self._db.execute("SELECT key, value FROM settings ORDER BY key")
        return {row[0]: json.loads(row[1]) for row in await cursor.fetchall()}

    async def save_config(self, data: dict[str, Any]) -> None:
        """Upsert each key of *data*; keys not present are left alone."""
        await self._db.executemany(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
            [(key, json.dumps(value)) for key, value in data.items()],
        )
        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection. Idempotent."""
        with suppress(Exception):
            await self._db.close()
