# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Live document host: an lxml tree plus batched structural-change records.

Page code mutates the tree through ``LiveDocument`` (``append``, ``insert``,
``insert_html``, ``remove``). Every mutation queues a ``MutationRecord``; all
records queued during one event-loop turn are delivered together to each
observer via ``loop.call_soon``, the way a browser MutationObserver batches
its callbacks. Outside a running loop, records wait for ``flush_mutations()``.

Redactions applied by pagefilter itself edit the tree directly and produce no
records.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlparse

import lxml.html
from lxml import etree

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MutationRecord:
    """One structural change under ``target``."""

    type: str  # "childList"
    target: etree._Element
    added_nodes: tuple[etree._Element, ...] = ()
    removed_nodes: tuple[etree._Element, ...] = ()


MutationCallback = Callable[[list[MutationRecord]], None]


class Subscription:
    """Handle returned by ``LiveDocument.observe``."""

    __slots__ = ("_document", "_callback")

    def __init__(self, document: LiveDocument, callback: MutationCallback) -> None:
        self._document = document
        self._callback = callback

    @property
    def active(self) -> bool:
        return self._callback in self._document._observers

    def disconnect(self) -> None:
        if self.active:
            self._document._observers.remove(self._callback)


class LiveDocument:
    """Mutable HTML document with observable child-list changes."""

    def __init__(self, root: lxml.html.HtmlElement, *, url: str = "") -> None:
        self.root = root
        self.url = url
        self._observers: list[MutationCallback] = []
        self._pending: list[MutationRecord] = []
        self._delivery_scheduled = False

    @classmethod
    def from_html(cls, html: str, *, url: str = "") -> LiveDocument:
        return cls(lxml.html.document_fromstring(html), url=url)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def body(self) -> lxml.html.HtmlElement:
        body = self.root.find("body")
        return body if body is not None else self.root

    @property
    def domain(self) -> str:
        """Hostname of the page, the history partition key."""
        return (urlparse(self.url).hostname or "") if self.url else ""

    def is_attached(self, node: etree._Element) -> bool:
        """True while *node* is still reachable from the document root."""
        while node is not None:
            if node is self.root:
                return True
            node = node.getparent()
        return False

    def serialize(self) -> str:
        return lxml.html.tostring(self.root, encoding="unicode", doctype="<!DOCTYPE html>")

    # ------------------------------------------------------------------
    # Mutations (observed)
    # ------------------------------------------------------------------

    def append(self, parent: etree._Element, node: etree._Element) -> etree._Element:
        parent.append(node)
        self._queue(MutationRecord("childList", parent, added_nodes=(node,)))
        return node

    def insert(self, parent: etree._Element, index: int, node: etree._Element) -> etree._Element:
        parent.insert(index, node)
        self._queue(MutationRecord("childList", parent, added_nodes=(node,)))
        return node

    def insert_html(self, parent: etree._Element, html: str) -> list[etree._Element]:
        """Parse *html* as a fragment and append its elements to *parent*."""
        fragments = lxml.html.fragments_fromstring(html)
        added: list[etree._Element] = []
        for frag in fragments:
            if isinstance(frag, str):
                # Leading text of the fragment goes after the current last child.
                if len(parent):
                    parent[-1].tail = (parent[-1].tail or "") + frag
                else:
                    parent.text = (parent.text or "") + frag
                continue
            parent.append(frag)
            added.append(frag)
        if added:
            self._queue(MutationRecord("childList", parent, added_nodes=tuple(added)))
        return added

    def remove(self, node: etree._Element) -> None:
        """Detach *node*, keeping its tail text in place."""
        parent = node.getparent()
        if parent is None:
            return
        _drop_preserving_tail(node)
        self._queue(MutationRecord("childList", parent, removed_nodes=(node,)))

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe(self, callback: MutationCallback) -> Subscription:
        self._observers.append(callback)
        return Subscription(self, callback)

    def flush_mutations(self) -> int:
        """Deliver pending records now. Returns the number delivered."""
        self._delivery_scheduled = False
        records, self._pending = self._pending, []
        if not records:
            return 0
        for callback in list(self._observers):
            try:
                callback(list(records))
            except Exception:
                logger.exception("Mutation observer callback failed")
        return len(records)

    def _queue(self, record: MutationRecord) -> None:
        if not self._observers:
            return
        self._pending.append(record)
        if self._delivery_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: caller flushes explicitly
        loop.call_soon(self.flush_mutations)
        self._delivery_scheduled = True


def _drop_preserving_tail(node: etree._Element) -> None:
    parent = node.getparent()
    tail = node.tail
    if tail:
        previous = node.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or "") + tail
        else:
            parent.text = (parent.text or "") + tail
    node.tail = None
    parent.remove(node)
