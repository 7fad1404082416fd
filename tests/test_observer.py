# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagefilter.document + pagefilter.observer: batched mutation delivery."""

from __future__ import annotations

import asyncio

import lxml.html

from pagefilter.document import LiveDocument
from pagefilter.observer import ChangeObserver, ChangeSet
from pagefilter.redaction import SYNTHETIC_ATTR


def _page() -> LiveDocument:
    return LiveDocument.from_html(
        "<html><body><div id='feed'><p>first</p></div></body></html>", url="https://m.example.com/feed"
    )


# ── LiveDocument ─────────────────────────────────────────────────


class TestLiveDocument:
    def test_domain(self):
        assert _page().domain == "m.example.com"
        assert LiveDocument.from_html("<p>x</p>").domain == ""

    def test_body(self):
        assert _page().body.tag == "body"

    def test_is_attached(self):
        page = _page()
        feed = page.root.get_element_by_id("feed")
        assert page.is_attached(feed)
        page.remove(feed)
        assert not page.is_attached(feed)

    def test_remove_keeps_tail(self):
        page = LiveDocument.from_html("<html><body><p>a<b>x</b>tail</p></body></html>")
        p = page.body[0]
        page.remove(p[0])
        assert p.text == "atail"

    def test_insert_html_returns_elements(self):
        page = _page()
        feed = page.root.get_element_by_id("feed")
        added = page.insert_html(feed, "loose text<p>two</p><p>three</p>")
        assert [el.text for el in added] == ["two", "three"]
        assert feed[0].tail == "loose text"

    def test_serialize_has_doctype(self):
        assert _page().serialize().startswith("<!DOCTYPE html>")

    def test_no_records_without_observers(self):
        page = _page()
        page.append(page.body, lxml.html.Element("div"))
        assert page.flush_mutations() == 0

    def test_flush_outside_loop(self):
        page = _page()
        batches = []
        page.observe(batches.append)
        page.append(page.body, lxml.html.Element("div"))
        page.append(page.body, lxml.html.Element("span"))
        assert batches == []
        assert page.flush_mutations() == 2
        assert len(batches) == 1
        assert [r.added_nodes[0].tag for r in batches[0]] == ["div", "span"]

    async def test_coalesced_per_loop_turn(self):
        page = _page()
        batches = []
        page.observe(batches.append)
        page.append(page.body, lxml.html.Element("div"))
        page.append(page.body, lxml.html.Element("span"))
        assert batches == []
        await asyncio.sleep(0)
        assert len(batches) == 1
        assert len(batches[0]) == 2

    async def test_failing_callback_does_not_block_others(self):
        page = _page()
        delivered = []

        def _broken(records):
            raise RuntimeError("observer bug")

        page.observe(_broken)
        page.observe(delivered.append)
        page.append(page.body, lxml.html.Element("div"))
        await asyncio.sleep(0)
        assert len(delivered) == 1

    def test_subscription_disconnect(self):
        page = _page()
        batches = []
        subscription = page.observe(batches.append)
        assert subscription.active
        subscription.disconnect()
        assert not subscription.active
        page.append(page.body, lxml.html.Element("div"))
        page.flush_mutations()
        assert batches == []


# ── ChangeObserver ───────────────────────────────────────────────


class TestChangeObserver:
    async def test_injected_image_reported_once(self):
        page = _page()
        changes: list[ChangeSet] = []
        ChangeObserver(page, changes.append)
        page.insert_html(page.body, '<div><img width="300" height="300"></div>')
        await asyncio.sleep(0)
        assert len(changes) == 1
        (root,) = changes[0].image_roots
        assert root.tag == "div"
        assert changes[0].text_roots == ()

    async def test_text_roots(self):
        page = _page()
        changes: list[ChangeSet] = []
        ChangeObserver(page, changes.append)
        page.insert_html(page.root.get_element_by_id("feed"), "<p>new comment</p><p>   </p>")
        await asyncio.sleep(0)
        assert [el.text for el in changes[0].text_roots] == ["new comment"]
        assert changes[0].image_roots == ()

    async def test_disabled_kinds_ignored(self):
        page = _page()
        changes: list[ChangeSet] = []
        ChangeObserver(page, changes.append, filter_text=False)
        page.insert_html(page.body, "<p>words only</p>")
        await asyncio.sleep(0)
        assert changes == []

    async def test_removals_and_detached_nodes_ignored(self):
        page = _page()
        changes: list[ChangeSet] = []
        ChangeObserver(page, changes.append)
        (added,) = page.insert_html(page.body, "<p>short lived</p>")
        page.remove(added)
        page.remove(page.root.get_element_by_id("feed"))
        await asyncio.sleep(0)
        assert changes == []

    async def test_synthetic_nodes_ignored(self):
        page = _page()
        changes: list[ChangeSet] = []
        ChangeObserver(page, changes.append)
        overlay = lxml.html.Element("div")
        overlay.set(SYNTHETIC_ATTR, "overlay")
        overlay.text = "Confidence: 90%"
        page.append(page.body, overlay)
        await asyncio.sleep(0)
        assert changes == []

    async def test_disconnect_stops_delivery(self):
        page = _page()
        changes: list[ChangeSet] = []
        observer = ChangeObserver(page, changes.append)
        assert observer.connected
        observer.disconnect()
        assert not observer.connected
        page.insert_html(page.body, "<p>after disconnect</p>")
        await asyncio.sleep(0)
        assert changes == []

    async def test_one_change_set_per_batch(self):
        page = _page()
        changes: list[ChangeSet] = []
        ChangeObserver(page, changes.append)
        page.insert_html(page.body, "<p>one</p>")
        page.insert_html(page.body, "<p>two</p><img width='80' height='80'>")
        await asyncio.sleep(0)
        assert len(changes) == 1
        assert [el.text for el in changes[0].text_roots] == ["one", "two"]
        assert [el.tag for el in changes[0].image_roots] == ["img"]
