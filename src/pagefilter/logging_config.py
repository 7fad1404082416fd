# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge. Terminal: ConsoleRenderer, machine output: JSONRenderer.

Leaf module, no pagefilter imports. Modules keep logging through
``logging.getLogger(__name__)``; records are rendered by structlog with the
page context bound by ``bind_page`` (domain, optional session id).
"""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog

# httpx/httpcore log every request at INFO, one line per classified candidate.
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_PAGE_KEYS = ("domain", "session_id")


def _drop_empty_page_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Leave unset page keys out of the line instead of rendering ``domain=''``."""
    for key in _PAGE_KEYS:
        if key in event_dict and not event_dict[key]:
            del event_dict[key]
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        _drop_empty_page_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _formatter(json_output: bool, shared: list) -> structlog.stdlib.ProcessorFormatter:
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared,
    )


def configure(*, json_output: bool = False, level: str = "INFO", stream: TextIO | None = None) -> None:
    """Route pagefilter's stdlib loggers through structlog.

    Args:
        json_output: True for JSON lines (``--json-logs``), False for console output.
        level: Root logger level; unknown names fall back to INFO.
        stream: Destination, stderr by default.
    """
    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(_formatter(json_output, shared))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # even with -v, per-request transport lines stay out
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_page(domain: str, *, session_id: str | None = None) -> None:
    """Attach the page domain (and session, when known) to every log line of this context."""
    if session_id is None:
        structlog.contextvars.bind_contextvars(domain=domain)
    else:
        structlog.contextvars.bind_contextvars(domain=domain, session_id=session_id)


def clear_page() -> None:
    structlog.contextvars.unbind_contextvars(*_PAGE_KEYS)
