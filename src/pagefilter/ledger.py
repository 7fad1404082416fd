# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Recovery ledger: session-scoped index of every redaction, for exact undo.

Indices are assigned per content kind in completion order and are never
reused within a ledger instance, not even across ``reset()``. A recovery
request carrying an index issued before a reset therefore resolves to
``MISSING`` instead of touching an unrelated, newer redaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from lxml import etree

from . import ContentKind
from .redaction import ImageRedaction, TextRedaction

logger = logging.getLogger(__name__)


class RecoveryOutcome(StrEnum):
    RECOVERED = "recovered"
    MISSING = "missing"
    ALREADY_RECOVERED = "already_recovered"
    STALE = "stale"  # element left the document or the page rewrote it


@dataclass(slots=True)
class RedactionRecord:
    """One redaction owned by the ledger."""

    index: int
    kind: ContentKind
    original_value: str
    applied_value: str
    ref: TextRedaction | ImageRedaction
    recovered: bool = False


class RecoveryLedger:
    """Append-only (per kind) record of redactions for the current document view."""

    __slots__ = ("_root", "_records", "_next_index", "_generation")

    def __init__(self, root: etree._Element) -> None:
        self._root = root
        self._records: dict[ContentKind, dict[int, RedactionRecord]] = {kind: {} for kind in ContentKind}
        self._next_index: dict[ContentKind, int] = {kind: 0 for kind in ContentKind}
        self._generation = 0

    @property
    def generation(self) -> int:
        """Bumped on every ``reset()``."""
        return self._generation

    def record(
        self,
        kind: ContentKind,
        original_value: str,
        applied_value: str,
        ref: TextRedaction | ImageRedaction,
    ) -> int:
        """Store a redaction and return its index."""
        kind = ContentKind(kind)
        index = self._next_index[kind]
        self._next_index[kind] = index + 1
        self._records[kind][index] = RedactionRecord(
            index=index,
            kind=kind,
            original_value=original_value,
            applied_value=applied_value,
            ref=ref,
        )
        return index

    def get(self, kind: ContentKind, index: int) -> RedactionRecord | None:
        return self._records[ContentKind(kind)].get(index)

    def records(self, kind: ContentKind) -> list[RedactionRecord]:
        return sorted(self._records[ContentKind(kind)].values(), key=lambda r: r.index)

    def recover(self, kind: ContentKind, index: int) -> RecoveryOutcome:
        """Undo one redaction. Misses and repeats are reported, never raised."""
        record = self.get(kind, index)
        if record is None:
            logger.info("Recovery skipped: no %s redaction with index %s", kind, index)
            return RecoveryOutcome.MISSING
        if record.recovered:
            logger.info("Recovery skipped: %s redaction %d already recovered", kind, index)
            return RecoveryOutcome.ALREADY_RECOVERED
        if not record.ref.is_attached_to(self._root) or not record.ref.restore():
            logger.info("Recovery skipped: %s redaction %d is stale", kind, index)
            return RecoveryOutcome.STALE
        record.recovered = True
        logger.debug("Recovered %s redaction %d", kind, index)
        return RecoveryOutcome.RECOVERED

    def reset(self) -> None:
        """Discard all records (full re-filter pass). Indices keep counting up."""
        for bucket in self._records.values():
            bucket.clear()
        self._generation += 1

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._records.values())
