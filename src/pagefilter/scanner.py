# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Document scanner: candidate discovery and cooperative batching.

Text candidates are the ``text``/``tail`` slots of lxml nodes, in document
order, excluding slots whose nearest element ancestor does not render
(script, style, noscript, ...) and anything inside pagefilter's own overlays.
Image candidates are ``<img>`` elements at least ``min_size`` px on both
sides that have not been marked processed or filtered.

Both sources snapshot the node list when iteration starts and check each
node's eligibility lazily, so an element marked while a scan is in progress
is not yielded twice. Iterating a source again starts a fresh scan.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Iterable, Iterator
from typing import TypeVar

from lxml import etree

from . import SYNTHETIC_ATTR, ImageCandidate, TextCandidate
from .redaction import FILTERED_CLASS, PROCESSED_ATTR, has_class

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Elements whose text never renders as page content
NON_CONTENT_TAGS = frozenset({"script", "style", "noscript", "template", "textarea", "title", "head"})

_PX_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:px)?\s*$", re.IGNORECASE)
_STYLE_DIM_RE = re.compile(r"(?:^|;)\s*(width|height)\s*:\s*(\d+(?:\.\d+)?)px", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


class TextMarks:
    """Per-session index of examined text slots and the value last seen.

    A slot counts as processed while its value is unchanged; when page code
    rewrites it, the slot becomes a candidate again. Holding the element
    keeps lxml's proxy alive, so ``id()`` stays a stable key.
    """

    __slots__ = ("_seen",)

    def __init__(self) -> None:
        self._seen: dict[tuple[int, str], tuple[etree._Element, str]] = {}

    def is_current(self, candidate: TextCandidate) -> bool:
        entry = self._seen.get((id(candidate.element), candidate.slot))
        return entry is not None and entry[0] is candidate.element and entry[1] == candidate.value

    def mark(self, candidate: TextCandidate, value: str | None = None) -> None:
        key = (id(candidate.element), candidate.slot)
        self._seen[key] = (candidate.element, candidate.value if value is None else value)

    def prune(self, root: etree._Element) -> int:
        """Forget slots whose element has left *root*'s tree. Returns how many were dropped."""
        stale = [
            key
            for key, (element, _) in self._seen.items()
            if element is not root and not any(a is root for a in element.iterancestors())
        ]
        for key in stale:
            del self._seen[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._seen)


def _walk_slots(root: etree._Element) -> Iterator[tuple[etree._Element, str]]:
    """(node, slot) pairs in document order; the root's own tail is excluded."""
    stack: list[tuple[etree._Element, str]] = [(root, "text")]
    while stack:
        node, slot = stack.pop()
        yield node, slot
        if slot == "text":
            for child in reversed(node):
                stack.append((child, "tail"))
                stack.append((child, "text"))


def _is_excluded(owner: etree._Element) -> bool:
    tag = owner.tag
    if isinstance(tag, str) and tag.lower() in NON_CONTENT_TAGS:
        return True
    node = owner
    while node is not None:
        if node.get(SYNTHETIC_ATTR) is not None:
            return True
        node = node.getparent()
    return False


class TextCandidates:
    """Restartable source of non-blank, renderable text slots under ``root``."""

    def __init__(self, root: etree._Element, marks: TextMarks | None = None) -> None:
        self.root = root
        self.marks = marks

    def __iter__(self) -> Iterator[TextCandidate]:
        for node, slot in list(_walk_slots(self.root)):
            if slot == "text" and not isinstance(node.tag, str):
                continue  # comment/PI bodies are not content
            if slot == "tail" and node.get(SYNTHETIC_ATTR) == "wrapper":
                continue  # reported through the wrapped image's tail slot
            candidate = TextCandidate(node, slot)
            if not candidate.value.strip():
                continue
            owner = candidate.owner
            if owner is None or _is_excluded(owner):
                continue
            if self.marks is not None and self.marks.is_current(candidate):
                continue
            yield candidate


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def _parse_px(value: str | None) -> int:
    if not value:
        return 0
    m = _PX_RE.match(value)
    return int(float(m.group(1))) if m else 0


def image_dimensions(img: etree._Element) -> tuple[int, int]:
    """Pixel size from ``width``/``height`` attributes, else inline style.

    Unknown sides are 0, which keeps unsized images below any minimum.
    """
    width = _parse_px(img.get("width"))
    height = _parse_px(img.get("height"))
    if not width or not height:
        for m in _STYLE_DIM_RE.finditer(img.get("style") or ""):
            px = int(float(m.group(2)))
            if m.group(1).lower() == "width" and not width:
                width = px
            elif m.group(1).lower() == "height" and not height:
                height = px
    return width, height


def is_image_processed(img: etree._Element) -> bool:
    return img.get(PROCESSED_ATTR) is not None or has_class(img, FILTERED_CLASS)


def mark_image_processed(img: etree._Element) -> None:
    img.set(PROCESSED_ATTR, "true")


class ImageCandidates:
    """Restartable source of unprocessed, non-icon ``<img>`` elements under ``root``."""

    def __init__(self, root: etree._Element, *, min_size: int = 50) -> None:
        self.root = root
        self.min_size = min_size

    def __iter__(self) -> Iterator[ImageCandidate]:
        for img in list(self.root.iter("img")):
            if is_image_processed(img):
                continue
            width, height = image_dimensions(img)
            if width < self.min_size or height < self.min_size:
                continue
            yield ImageCandidate(img, width, height)


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


async def iter_batches(candidates: Iterable[T], size: int) -> AsyncIterator[list[T]]:
    """Yield fixed-size batches, handing control to the event loop between them."""
    if size < 1:
        raise ValueError("batch size must be positive")
    batch: list[T] = []
    for candidate in candidates:
        batch.append(candidate)
        if len(batch) >= size:
            yield batch
            batch = []
            await asyncio.sleep(0)
    if batch:
        yield batch


def iter_text_candidates(root: etree._Element, marks: TextMarks | None = None) -> TextCandidates:
    return TextCandidates(root, marks)


def iter_image_candidates(root: etree._Element, *, min_size: int = 50) -> ImageCandidates:
    return ImageCandidates(root, min_size=min_size)
