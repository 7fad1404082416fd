# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagefilter.ledger: indexing, recovery outcomes, reset."""

from __future__ import annotations

import lxml.html
import pytest

from pagefilter import ClassificationMethod, ClassificationResult, ContentKind, ImageCandidate, TextCandidate
from pagefilter.document import LiveDocument
from pagefilter.ledger import RecoveryLedger, RecoveryOutcome
from pagefilter.redaction import RedactionEngine

_RESULT = ClassificationResult(
    is_explicit=True, confidence=0.9, method=ClassificationMethod.REMOTE_PRIMARY, categories=frozenset({"adult"})
)


@pytest.fixture
def page() -> LiveDocument:
    return LiveDocument.from_html(
        "<html><body>"
        "<p id='a'>first explicit line</p>"
        "<p id='b'>second obscene line</p>"
        "<span><img id='pic' src='https://cdn.example.com/x.jpg' width='300' height='300' style='opacity: 0.9'>"
        " caption</span>"
        "</body></html>"
    )


def _redact_text(page, engine, ledger, element_id, masked):
    el = page.root.get_element_by_id(element_id)
    candidate = TextCandidate(el, "text")
    original = candidate.value
    redaction = engine.redact_text(candidate, masked)
    return ledger.record(ContentKind.TEXT, original, masked, redaction)


def _redact_image(page, engine, ledger):
    img = page.root.get_element_by_id("pic")
    redaction = engine.redact_image(ImageCandidate(img, 300, 300), _RESULT)
    index = ledger.record(ContentKind.IMAGE, img.get("src"), "filtered-image", redaction)
    redaction.bind(index)
    return index


class TestRecord:
    def test_indices_per_kind_from_zero(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        assert _redact_text(page, engine, ledger, "a", "first ******** line") == 0
        assert _redact_text(page, engine, ledger, "b", "second ******* line") == 1
        assert _redact_image(page, engine, ledger) == 0

    def test_get_and_records(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        _redact_text(page, engine, ledger, "a", "first ******** line")
        record = ledger.get(ContentKind.TEXT, 0)
        assert record.original_value == "first explicit line"
        assert record.applied_value == "first ******** line"
        assert not record.recovered
        assert [r.index for r in ledger.records(ContentKind.TEXT)] == [0]
        assert ledger.records(ContentKind.IMAGE) == []
        assert len(ledger) == 1

    def test_accepts_plain_string_kind(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        _redact_text(page, engine, ledger, "a", "first ******** line")
        assert ledger.get("text", 0) is not None


class TestRecover:
    def test_text_round_trip_byte_exact(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        index = _redact_text(page, engine, ledger, "a", "first ******** line")
        assert ledger.recover(ContentKind.TEXT, index) is RecoveryOutcome.RECOVERED
        assert page.root.get_element_by_id("a").text == "first explicit line"
        assert ledger.get(ContentKind.TEXT, index).recovered

    def test_image_round_trip(self, page):
        before = lxml.html.tostring(page.root)
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        index = _redact_image(page, engine, ledger)
        assert ledger.recover(ContentKind.IMAGE, index) is RecoveryOutcome.RECOVERED
        img = page.root.get_element_by_id("pic")
        assert img.getparent().tag == "span"
        assert img.get("style") == "opacity: 0.9"
        assert img.get("src") == "https://cdn.example.com/x.jpg"
        assert img.tail == " caption"
        assert lxml.html.tostring(page.root) == before

    def test_recover_twice(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        index = _redact_text(page, engine, ledger, "a", "first ******** line")
        ledger.recover(ContentKind.TEXT, index)
        assert ledger.recover(ContentKind.TEXT, index) is RecoveryOutcome.ALREADY_RECOVERED
        assert page.root.get_element_by_id("a").text == "first explicit line"

    def test_missing_index(self, page):
        ledger = RecoveryLedger(page.root)
        assert ledger.recover(ContentKind.TEXT, 0) is RecoveryOutcome.MISSING
        assert ledger.recover(ContentKind.IMAGE, -1) is RecoveryOutcome.MISSING

    def test_other_kind_does_not_match(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        _redact_text(page, engine, ledger, "a", "first ******** line")
        assert ledger.recover(ContentKind.IMAGE, 0) is RecoveryOutcome.MISSING

    def test_detached_is_stale(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        index = _redact_text(page, engine, ledger, "a", "first ******** line")
        p = page.root.get_element_by_id("a")
        p.getparent().remove(p)
        assert ledger.recover(ContentKind.TEXT, index) is RecoveryOutcome.STALE
        assert not ledger.get(ContentKind.TEXT, index).recovered

    def test_rewritten_slot_is_stale(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        index = _redact_text(page, engine, ledger, "a", "first ******** line")
        page.root.get_element_by_id("a").text = "page changed it"
        assert ledger.recover(ContentKind.TEXT, index) is RecoveryOutcome.STALE
        assert page.root.get_element_by_id("a").text == "page changed it"


class TestReset:
    def test_reset_clears_records_and_bumps_generation(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        _redact_text(page, engine, ledger, "a", "first ******** line")
        assert ledger.generation == 0
        ledger.reset()
        assert ledger.generation == 1
        assert len(ledger) == 0
        assert ledger.recover(ContentKind.TEXT, 0) is RecoveryOutcome.MISSING

    def test_indices_never_reused_after_reset(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        first = _redact_text(page, engine, ledger, "a", "first ******** line")
        ledger.reset()
        second = _redact_text(page, engine, ledger, "b", "second ******* line")
        assert second != first
        # a request carrying the pre-reset index must not touch the new redaction
        assert ledger.recover(ContentKind.TEXT, first) is RecoveryOutcome.MISSING
        assert page.root.get_element_by_id("b").text == "second ******* line"

    def test_indices_unique_across_many_records(self, page):
        engine, ledger = RedactionEngine(page.root), RecoveryLedger(page.root)
        p = page.root.get_element_by_id("a")
        seen = set()
        for i in range(25):
            candidate = TextCandidate(p, "text")
            original = candidate.value
            masked = "*" * (i + 1)
            seen.add(ledger.record(ContentKind.TEXT, original, masked, engine.redact_text(candidate, masked)))
            if i % 10 == 9:
                ledger.reset()
        assert seen == set(range(25))
