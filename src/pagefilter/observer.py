# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Change observer: turns batched mutation records into rescan requests.

Subscribes to a ``LiveDocument`` and, for each delivered batch, reports the
added element subtrees that may hold new text or images. Rescans are scoped
to those subtrees; the observer never resets the recovery ledger.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from lxml import etree

from .document import LiveDocument, MutationRecord, Subscription
from .redaction import SYNTHETIC_ATTR

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Subtrees to rescan, per content kind, in arrival order."""

    text_roots: tuple[etree._Element, ...] = field(default=())
    image_roots: tuple[etree._Element, ...] = field(default=())

    def __bool__(self) -> bool:
        return bool(self.text_roots or self.image_roots)


def _contains_image(node: etree._Element) -> bool:
    if node.tag == "img":
        return True
    return next(node.iter("img"), None) is not None


def _has_text(node: etree._Element) -> bool:
    return bool("".join(node.itertext()).strip())


class ChangeObserver:
    """Watches a document for added content while connected."""

    def __init__(
        self,
        document: LiveDocument,
        on_change: Callable[[ChangeSet], None],
        *,
        filter_text: bool = True,
        filter_images: bool = True,
    ) -> None:
        self.document = document
        self.on_change = on_change
        self.filter_text = filter_text
        self.filter_images = filter_images
        self._subscription: Subscription | None = document.observe(self._handle)

    @property
    def connected(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def disconnect(self) -> None:
        if self._subscription is not None:
            self._subscription.disconnect()
            self._subscription = None

    def _handle(self, records: list[MutationRecord]) -> None:
        if not self.connected:
            return
        text_roots: list[etree._Element] = []
        image_roots: list[etree._Element] = []
        seen: set[int] = set()
        for record in records:
            for node in record.added_nodes:
                if not isinstance(node.tag, str) or id(node) in seen:
                    continue
                seen.add(id(node))
                if node.get(SYNTHETIC_ATTR) is not None or not self.document.is_attached(node):
                    continue
                if self.filter_images and _contains_image(node):
                    image_roots.append(node)
                if self.filter_text and _has_text(node):
                    text_roots.append(node)

        changes = ChangeSet(tuple(text_roots), tuple(image_roots))
        if not changes:
            return
        logger.debug(
            "Mutation batch: %d text root(s), %d image root(s)", len(changes.text_roots), len(changes.image_roots)
        )
        self.on_change(changes)
