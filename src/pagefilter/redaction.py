# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Redaction engine: reversible text masking and image blur + overlay.

Every redaction returns an explicit ownership record (``TextRedaction`` or
``ImageRedaction``) holding the elements it touched and their original
values, so recovery never has to rediscover structure from the tree.

Image layout after redaction::

    <div class="pagefilter-image-wrapper" data-pagefilter-synthetic="wrapper">
      <img class="... pagefilter-filtered" style="...; filter: blur(25px)">
      <div class="pagefilter-overlay" data-pagefilter-synthetic="overlay">...</div>
    </div>
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import lxml.html
from lxml import etree

from . import SYNTHETIC_ATTR, ClassificationResult, ImageCandidate, TextCandidate
from .config import FilterConfig
from .errors import StaleElementError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------------

PROCESSED_ATTR = "data-pagefilter-processed"
PENDING_ATTR = "data-pagefilter-pending"
VIEWED_ATTR = "data-pagefilter-viewed"
INDEX_ATTR = "data-pagefilter-index"

FILTERED_CLASS = "pagefilter-filtered"
WRAPPER_CLASS = "pagefilter-image-wrapper"
OVERLAY_CLASS = "pagefilter-overlay"
VIEW_BUTTON_CLASS = "pagefilter-view-btn"

_OVERLAY_STYLE = (
    "position: absolute; top: 0; left: 0; right: 0; bottom: 0; display: flex; "
    "align-items: center; justify-content: center; text-align: center; "
    "background-color: rgba(0, 0, 0, 0.5); color: #fff; z-index: 9999;"
)
_FILTER_INFO_STYLE = "font-size: 12px; color: #aaa; margin-bottom: 8px;"

_MARGIN_RE = re.compile(r"(?:^|;)\s*margin\s*:\s*([^;]+)", re.IGNORECASE)


def has_class(el: etree._Element, name: str) -> bool:
    return name in (el.get("class") or "").split()


def _add_class(el: etree._Element, name: str) -> None:
    classes = (el.get("class") or "").split()
    if name not in classes:
        classes.append(name)
    el.set("class", " ".join(classes))


def _restore_attr(el: etree._Element, name: str, value: str | None) -> None:
    if value is None:
        el.attrib.pop(name, None)
    else:
        el.set(name, value)


def _append_declaration(style: str | None, declaration: str) -> str:
    base = (style or "").strip().rstrip(";").strip()
    return f"{base}; {declaration}" if base else declaration


# ---------------------------------------------------------------------------
# Ownership records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TextRedaction:
    """A masked text slot and the exact value it replaced."""

    candidate: TextCandidate
    original: str
    applied: str

    def restore(self) -> bool:
        """Write the original value back. False if the page changed the slot since."""
        if self.candidate.value != self.applied:
            return False
        self.candidate.write(self.original)
        return True

    def is_attached_to(self, root: etree._Element) -> bool:
        owner = self.candidate.owner
        return owner is not None and _reaches(owner, root)


@dataclass(slots=True)
class ImageRedaction:
    """A wrapped, blurred image with its synthetic wrapper and overlay."""

    img: etree._Element
    wrapper: etree._Element
    overlay: etree._Element
    original_style: str | None
    original_class: str | None
    result: ClassificationResult
    index: int = -1
    revealed: bool = field(default=False)

    @property
    def src(self) -> str:
        return self.img.get("src") or ""

    def bind(self, index: int) -> None:
        """Stamp the ledger index onto the wrapper and its view button."""
        self.index = index
        self.wrapper.set(INDEX_ATTR, str(index))
        for button in self.overlay.iter("button"):
            button.set(INDEX_ATTR, str(index))

    def restore(self) -> bool:
        """Unwrap the image back into the wrapper's place with its original attributes."""
        parent = self.wrapper.getparent()
        if parent is None or self.img.getparent() is not self.wrapper:
            return False
        _restore_attr(self.img, "style", self.original_style)
        _restore_attr(self.img, "class", self.original_class)
        self.img.attrib.pop(VIEWED_ATTR, None)
        self.wrapper.remove(self.img)
        self.img.tail = self.wrapper.tail
        self.wrapper.tail = None
        parent.replace(self.wrapper, self.img)
        return True

    def is_attached_to(self, root: etree._Element) -> bool:
        return _reaches(self.wrapper, root)


def _reaches(node: etree._Element | None, root: etree._Element) -> bool:
    while node is not None:
        if node is root:
            return True
        node = node.getparent()
    return False


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RedactionEngine:
    """Applies redactions to one document tree."""

    def __init__(self, root: etree._Element, config: FilterConfig | None = None) -> None:
        self.root = root
        self.config = config or FilterConfig()

    def redact_text(self, candidate: TextCandidate, masked: str) -> TextRedaction | None:
        """Replace the slot's value with *masked*. None when nothing would change."""
        owner = candidate.owner
        if owner is None or not _reaches(owner, self.root):
            raise StaleElementError("text slot is no longer in the document")
        original = candidate.value
        if masked == original:
            return None
        candidate.write(masked)
        return TextRedaction(candidate=candidate, original=original, applied=masked)

    def redact_image(self, candidate: ImageCandidate, result: ClassificationResult) -> ImageRedaction | None:
        """Blur the image and cover it with a disclaimer overlay. None if already filtered."""
        img = candidate.element
        if has_class(img, FILTERED_CLASS):
            return None
        parent = img.getparent()
        if parent is None or not _reaches(parent, self.root):
            raise StaleElementError("image is no longer in the document")

        original_style = img.get("style")
        original_class = img.get("class")

        wrapper = lxml.html.Element("div")
        wrapper.set("class", WRAPPER_CLASS)
        wrapper.set(SYNTHETIC_ATTR, "wrapper")
        wrapper.set("style", self._wrapper_style(candidate, original_style))

        _add_class(img, FILTERED_CLASS)
        img.set("style", _append_declaration(original_style, self._degradation()))

        wrapper.tail, img.tail = img.tail, None
        parent.replace(img, wrapper)
        wrapper.append(img)
        overlay = self._build_overlay(result)
        wrapper.append(overlay)

        return ImageRedaction(
            img=img,
            wrapper=wrapper,
            overlay=overlay,
            original_style=original_style,
            original_class=original_class,
            result=result,
        )

    def reveal(self, redaction: ImageRedaction) -> bool:
        """Reveal ("View Image"): drop the blur and hide the overlay for this session.

        Display override only; the ledger's ``recovered`` flag is untouched.
        """
        if redaction.revealed or redaction.img.getparent() is not redaction.wrapper:
            return False
        _restore_attr(redaction.img, "style", redaction.original_style)
        redaction.img.set(VIEWED_ATTR, "true")
        redaction.overlay.set("style", _append_declaration(_OVERLAY_STYLE, "display: none"))
        redaction.revealed = True
        return True

    # ------------------------------------------------------------------

    def _degradation(self) -> str:
        value = f"blur({self.config.blur_radius}px)"
        if self.config.desaturate:
            value += " grayscale(100%)"
        return f"filter: {value}"

    @staticmethod
    def _wrapper_style(candidate: ImageCandidate, img_style: str | None) -> str:
        m = _MARGIN_RE.search(img_style or "")
        margin = m.group(1).strip() if m else "0"
        return (
            f"position: relative; display: inline-block; "
            f"width: {candidate.width}px; height: {candidate.height}px; margin: {margin};"
        )

    @staticmethod
    def _build_overlay(result: ClassificationResult) -> etree._Element:
        overlay = lxml.html.Element("div")
        overlay.set("class", OVERLAY_CLASS)
        overlay.set(SYNTHETIC_ATTR, "overlay")
        overlay.set("style", _OVERLAY_STYLE)

        disclaimer = etree.SubElement(overlay, "div")
        disclaimer.set("class", "pagefilter-disclaimer")
        message = etree.SubElement(disclaimer, "span")
        message.text = explain(result)

        info = etree.SubElement(disclaimer, "div")
        info.set("class", "pagefilter-filter-info")
        info.set("style", _FILTER_INFO_STYLE)
        confidence = etree.SubElement(info, "span")
        confidence.set("class", "pagefilter-confidence")
        confidence.text = f"Confidence: {result.confidence_percent}%"
        method = etree.SubElement(info, "span")
        method.set("class", "pagefilter-method")
        method.text = f"Method: {result.display_method}"

        button = etree.SubElement(disclaimer, "button")
        button.set("class", VIEW_BUTTON_CLASS)
        button.set("type", "button")
        button.text = "View Image"
        return overlay


def explain(result: ClassificationResult) -> str:
    """Human-readable reason shown on the overlay."""
    if result.categories:
        labels = ", ".join(sorted(c.replace("_", " ") for c in result.categories))
        return f"This image is blurred because it may contain {labels} content."
    return "This image is blurred by the content filter."
