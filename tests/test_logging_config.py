# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagefilter.logging_config: what filter passes actually log."""

from __future__ import annotations

import io
import json
import logging

import pytest
import structlog

from pagefilter.classifier import RemoteClassifier
from pagefilter.config import FilterConfig
from pagefilter.content_filter import ContentFilter
from pagefilter.logging_config import bind_page, clear_page, configure


@pytest.fixture(autouse=True)
def _reset_logging():
    root = logging.getLogger()
    old_handlers = root.handlers[:]
    old_level = root.level
    structlog.contextvars.clear_contextvars()
    yield
    root.handlers = old_handlers
    root.setLevel(old_level)
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture
def stream() -> io.StringIO:
    return io.StringIO()


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestPassContext:
    async def test_pass_lines_carry_page_domain(self, document, stream):
        configure(json_output=True, level="DEBUG", stream=stream)
        cf = ContentFilter(document)
        await cf.start_filtering()
        await cf.drain()

        pass_lines = [line for line in _lines(stream) if line["logger"] == "pagefilter.content_filter"]
        assert any(line["event"].startswith("Filter pass scheduled") for line in pass_lines)
        assert any(line["event"].startswith("Text redaction 0 via local") for line in pass_lines)
        assert {line["domain"] for line in pass_lines} == {"www.example.com"}
        assert all("session_id" not in line for line in pass_lines)
        await cf.aclose()

    async def test_domain_unbound_after_close(self, document, stream):
        configure(json_output=True, stream=stream)
        async with ContentFilter(document) as cf:
            await cf.start_filtering()
        logging.getLogger("pagefilter.cli").info("after close")
        (line,) = [line for line in _lines(stream) if line["event"] == "after close"]
        assert "domain" not in line

    def test_session_id_rendered_when_bound(self, stream):
        configure(json_output=True, stream=stream)
        bind_page("news.example.org", session_id="tab-7")
        logging.getLogger("pagefilter.ledger").info("Recovered text redaction 3")
        clear_page()
        (line,) = _lines(stream)
        assert line["domain"] == "news.example.org"
        assert line["session_id"] == "tab-7"
        assert line["level"] == "info"

    def test_empty_domain_left_out(self, stream):
        configure(json_output=True, stream=stream)
        bind_page("")
        logging.getLogger("pagefilter.content_filter").info("Filtering disabled (config v0)")
        (line,) = _lines(stream)
        assert "domain" not in line


class TestClassifierWarnings:
    async def test_fallback_warning_is_logged(self, backend, http_client, stream):
        configure(json_output=True, stream=stream)
        backend.fail = True
        classifier = RemoteClassifier(FilterConfig(api_url=backend.base_url), client=http_client)
        result = await classifier.classify_text("some nsfw stuff here")
        assert result.method == "fallback"

        (line,) = [line for line in _lines(stream) if line["logger"] == "pagefilter.classifier"]
        assert line["level"] == "warning"
        assert "Text classification degraded to fallback" in line["event"]
        assert "ConnectError" in line["event"]

    async def test_request_lines_suppressed_at_debug(self, backend, http_client, stream):
        configure(json_output=True, level="DEBUG", stream=stream)
        classifier = RemoteClassifier(FilterConfig(api_url=backend.base_url), client=http_client)
        await classifier.classify_text("a perfectly ordinary sentence")
        assert backend.count("/filter/text") == 1
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING
        assert logging.getLogger("aiosqlite").level == logging.WARNING
        assert not [line for line in _lines(stream) if line["logger"].startswith(("httpx", "httpcore"))]


class TestConfigure:
    def test_reconfigure_replaces_handler(self, stream):
        configure(json_output=False)
        configure(json_output=True, stream=stream)
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.handlers[0].stream is stream

    def test_console_mode_is_not_json(self, stream):
        configure(json_output=False, stream=stream)
        logging.getLogger("pagefilter.relay").warning("Relay of text stats to background store failed: disk full")
        output = stream.getvalue()
        assert "disk full" in output
        assert not output.lstrip().startswith("{")

    @pytest.mark.parametrize(("level", "expected"), [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("LOUD", logging.INFO)])
    def test_levels(self, level, expected):
        configure(level=level)
        assert logging.getLogger().level == expected
