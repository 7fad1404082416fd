# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Telemetry relay: fire-and-forget reporting of redactions to the background store.

Usage:
    relay = TelemetryRelay(store, domain="example.com")
    relay.report(ContentKind.TEXT, "this is explicit", "this is ********")
    await relay.drain()  # only needed before shutdown

``report()`` never raises and never blocks the filtering pipeline. Store
failures are logged at warning level and counted.
"""

from __future__ import annotations

import asyncio
import logging

from . import ContentKind
from .store import StatsStoreProtocol

logger = logging.getLogger(__name__)


class RelayMeta:
    """Approximate relay counters (diagnostics only)."""

    __slots__ = ("reported", "failed", "dropped")

    def __init__(self) -> None:
        self.reported: int = 0
        self.failed: int = 0
        self.dropped: int = 0

    def snapshot(self) -> dict:
        return {"reported": self.reported, "failed": self.failed, "dropped": self.dropped}


class TelemetryRelay:
    """Forwards ``updateStats`` + ``addToHistory`` for each redaction."""

    def __init__(self, store: StatsStoreProtocol | None, domain: str = "") -> None:
        self.store = store
        self.domain = domain
        self.meta = RelayMeta()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def report(self, kind: ContentKind, original: str, replacement: str) -> None:
        """Schedule the store writes for one redaction. Never raises."""
        if self.store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.meta.dropped += 1
            logger.debug("No running loop, %s report dropped", kind)
            return
        task = loop.create_task(self._send(ContentKind(kind), original, replacement))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, kind: ContentKind, original: str, replacement: str) -> None:
        ok = True
        try:
            await self.store.update_stats(kind)
        except Exception as e:
            ok = False
            logger.warning("Relay of %s stats to background store failed: %s", kind, e)
        try:
            await self.store.add_to_history(self.domain, kind, original, replacement)
        except Exception as e:
            ok = False
            logger.warning("Relay of %s history to background store failed: %s", kind, e)
        if ok:
            self.meta.reported += 1
        else:
            self.meta.failed += 1

    async def mark_recovered(self, kind: ContentKind, entry_index: int) -> bool:
        """Flag a history entry as recovered. False on a miss or store failure."""
        if self.store is None:
            return False
        try:
            return await self.store.mark_recovered(self.domain, ContentKind(kind), entry_index)
        except Exception as e:
            logger.warning("Could not mark %s entry %d recovered: %s", kind, entry_index, e)
            return False

    async def drain(self) -> None:
        """Wait for every scheduled report to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
