# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""pagefilter: reversible explicit-content filtering for live HTML documents.

Scans a document for text and images, masks explicit terms, blurs images the
moderation backend flags, and keeps a per-session ledger so every redaction
can be undone exactly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum

from lxml import etree

# Marks nodes pagefilter inserted (image wrappers and overlays)
SYNTHETIC_ATTR = "data-pagefilter-synthetic"


class ContentKind(StrEnum):
    """Kind of content a candidate or redaction refers to."""

    TEXT = "text"
    IMAGE = "image"


class ClassificationMethod(StrEnum):
    """Which path produced a classification result."""

    LOCAL = "local"
    REMOTE_PRIMARY = "remote-primary"
    REMOTE_SECONDARY = "remote-secondary"
    FALLBACK = "fallback"


@dataclass(frozen=True, slots=True)
class TextCandidate:
    """One text slot of an lxml element: its leading ``text`` or its ``tail``.

    While an image is wrapped for redaction its tail lives on the wrapper;
    the image's ``tail`` slot keeps addressing that text until unwrapped.
    """

    element: etree._Element
    slot: str  # "text" | "tail"

    def location(self) -> tuple[etree._Element, str]:
        """The node and attribute currently holding this slot's text."""
        if self.slot == "tail":
            parent = self.element.getparent()
            if parent is not None and parent.get(SYNTHETIC_ATTR) == "wrapper" and parent[0] is self.element:
                return parent, "tail"
        return self.element, self.slot

    @property
    def value(self) -> str:
        node, slot = self.location()
        return getattr(node, slot) or ""

    @property
    def length(self) -> int:
        return len(self.value)

    @property
    def owner(self) -> etree._Element | None:
        """Nearest element ancestor of the text (the parent for tails)."""
        node, slot = self.location()
        if slot == "text":
            return node
        return node.getparent()

    def write(self, value: str) -> None:
        node, slot = self.location()
        setattr(node, slot, value)


@dataclass(frozen=True, slots=True)
class ImageCandidate:
    """An ``<img>`` element with its rendered pixel size."""

    element: etree._Element
    width: int
    height: int

    @property
    def src(self) -> str:
        return (self.element.get("src") or "").strip()

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """Outcome of classifying one candidate, tagged with the producing path."""

    is_explicit: bool
    confidence: float  # 0.0-1.0
    method: ClassificationMethod
    categories: frozenset[str] = field(default_factory=frozenset)
    safe_score: float = 1.0
    filtered_text: str | None = None  # masked text proposed by the producer
    detected_terms: tuple[str, ...] = ()
    provider: str = ""  # backend's own label, e.g. "vertex"

    @property
    def display_method(self) -> str:
        return self.provider or self.method.value

    @property
    def confidence_percent(self) -> int:
        return math.floor(self.confidence * 100 + 0.5)

    @classmethod
    def clean(cls, method: ClassificationMethod) -> ClassificationResult:
        """A not-explicit result with zero confidence."""
        return cls(is_explicit=False, confidence=0.0, method=method)
