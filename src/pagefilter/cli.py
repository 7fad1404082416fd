# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""pagefilter CLI: filter, health, stats, history commands.

Usage:
    pagefilter filter INPUT [--output FILE] [--api-url URL] [--url PAGE_URL] [--db PATH]
                            [--no-text] [--no-images] [--method M]
    pagefilter health --api-url URL
    pagefilter stats --db PATH
    pagefilter history DOMAIN --db PATH [--type text|images]

Configuration precedence (lowest first): defaults, ``--config`` YAML, config
saved in ``--db``, ``PAGEFILTER_*`` environment variables, command-line flags.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from tabulate import tabulate

from . import ContentKind
from .config import FilterConfig, config_from_env, config_to_dict, load_config, load_from_yaml, validate_config
from .errors import PageFilterError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "~/.pagefilter/pagefilter.db"


def _read_input(path_str: str) -> str:
    if path_str == "-":
        return sys.stdin.read()
    return Path(path_str).read_text(encoding="utf-8")


def _write_output(path_str: str | None, html: str) -> None:
    if not path_str or path_str == "-":
        sys.stdout.write(html)
        return
    path = Path(path_str)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(html, encoding="utf-8")


def _resolve_config(args: argparse.Namespace, stored: dict | None = None) -> FilterConfig:
    """Merge config sources in precedence order."""
    config = load_from_yaml(args.config) if getattr(args, "config", None) else FilterConfig()
    if stored:
        merged = {**config_to_dict(config), **stored}
        config = load_config(merged)
    config = config_from_env(config)

    flags: dict = {}
    if getattr(args, "api_url", None) is not None:
        flags["api_url"] = args.api_url
    if getattr(args, "method", None):
        flags["image_filter_method"] = args.method
    if getattr(args, "no_text", False):
        flags["filter_text"] = False
    if getattr(args, "no_images", False):
        flags["filter_images"] = False
    if getattr(args, "timeout", None) is not None:
        flags["request_timeout"] = args.timeout
    return validate_config(dataclasses.replace(config, **flags)) if flags else config


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_filter(args: argparse.Namespace) -> None:
    """Filter an HTML file and write the redacted document."""
    html = _read_input(args.input)
    output, summary = asyncio.run(_filter_document(html, args))
    _write_output(args.output, output)
    if not args.quiet:
        print(tabulate(summary, headers=["kind", "redactions"], tablefmt="simple"), file=sys.stderr)


async def _filter_document(html: str, args: argparse.Namespace) -> tuple[str, list[list]]:
    from .config import ConfigStore
    from .content_filter import ContentFilter
    from .document import LiveDocument

    store = None
    stored: dict = {}
    if args.db:
        from .store_sqlite import SqliteStore

        store = await SqliteStore.create(args.db)
        stored = await store.load_config()
    try:
        config = _resolve_config(args, stored)
        document = LiveDocument.from_html(html, url=args.url or "")
        async with ContentFilter(document, ConfigStore(config), store=store) as content_filter:
            await content_filter.start_filtering()
            await content_filter.drain()
            summary = [[kind.value, len(content_filter.ledger.records(kind))] for kind in ContentKind]
        return document.serialize(), summary
    finally:
        if store is not None:
            await store.close()


def cmd_health(args: argparse.Namespace) -> None:
    """Check the moderation backend's health endpoint."""
    from .classifier import RemoteClassifier

    config = _resolve_config(args)

    async def _check() -> dict:
        async with RemoteClassifier(config) as classifier:
            return await classifier.check_health()

    print(json.dumps(asyncio.run(_check()), indent=2))


def cmd_stats(args: argparse.Namespace) -> None:
    """Print lifetime redaction counters."""
    from .store_sqlite import SqliteStore

    async def _load():
        store = await SqliteStore.create(args.db)
        try:
            return await store.get_stats()
        finally:
            await store.close()

    stats = asyncio.run(_load())
    rows = [["text", stats.text_filtered], ["images", stats.images_filtered]]
    print(tabulate(rows, headers=["kind", "filtered"], tablefmt="simple"))


def cmd_history(args: argparse.Namespace) -> None:
    """Print the redaction history recorded for a domain."""
    from .content_filter import parse_kind
    from .store_sqlite import SqliteStore

    async def _load():
        store = await SqliteStore.create(args.db)
        try:
            return await store.get_history(args.domain)
        finally:
            await store.close()

    history = asyncio.run(_load())
    kinds = [parse_kind(args.type)] if args.type else list(ContentKind)
    rows = []
    for kind in kinds:
        for index, entry in enumerate(history[kind]):
            rows.append(
                [
                    kind.value,
                    index,
                    datetime.fromtimestamp(entry.timestamp, UTC).isoformat(timespec="seconds"),
                    _truncate(entry.content),
                    _truncate(entry.replacement),
                    "yes" if entry.recovered else "",
                ]
            )
    if not rows:
        print(f"No history for {args.domain}")
        return
    print(tabulate(rows, headers=["kind", "#", "time", "content", "replacement", "recovered"], tablefmt="simple"))


def _truncate(value: str, limit: int = 60) -> str:
    value = " ".join(value.split())
    return value if len(value) <= limit else value[: limit - 1] + "…"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reversible explicit-content filter for HTML documents", prog="pagefilter")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")
    parser.add_argument("--config", type=str, metavar="FILE", help="YAML config file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    _filter_epilog = """\
examples:
  %(prog)s page.html -o clean.html                          Local word lists only
  %(prog)s page.html --api-url http://localhost:5000 \\
      --url https://example.com/article                     Classify with the backend
  cat page.html | %(prog)s - --db ~/.pagefilter/pf.db       Record stats and history
"""
    p_filter = subparsers.add_parser(
        "filter",
        help="Filter an HTML document",
        epilog=_filter_epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_filter.add_argument("input", type=str, help="HTML file, or - for stdin")
    p_filter.add_argument("-o", "--output", type=str, metavar="FILE", help="Output file (default: stdout)")
    p_filter.add_argument("--api-url", type=str, metavar="URL", help="Moderation backend base URL")
    p_filter.add_argument("--url", type=str, metavar="PAGE_URL", help="Page URL (resolves images, history domain)")
    p_filter.add_argument("--db", type=str, metavar="PATH", help="SQLite store for stats and history")
    p_filter.add_argument("--no-text", action="store_true", help="Skip text filtering")
    p_filter.add_argument("--no-images", action="store_true", help="Skip image filtering")
    p_filter.add_argument("--method", type=str, choices=["auto", "vertex", "deepai"], help="Image filter method")
    p_filter.add_argument("--timeout", type=float, metavar="SECONDS", help="Backend request timeout")
    p_filter.add_argument("-q", "--quiet", action="store_true", help="Do not print the summary")

    p_health = subparsers.add_parser("health", help="Check the moderation backend")
    p_health.add_argument("--api-url", type=str, metavar="URL", help="Moderation backend base URL")
    p_health.add_argument("--timeout", type=float, metavar="SECONDS", help="Request timeout")

    p_stats = subparsers.add_parser("stats", help="Show redaction counters")
    p_stats.add_argument("--db", type=str, default=DEFAULT_DB_PATH, metavar="PATH")

    p_history = subparsers.add_parser("history", help="Show redaction history for a domain")
    p_history.add_argument("domain", type=str)
    p_history.add_argument("--db", type=str, default=DEFAULT_DB_PATH, metavar="PATH")
    p_history.add_argument("--type", type=str, choices=["text", "images"], help="Only this kind")

    return parser


COMMANDS = {
    "filter": cmd_filter,
    "health": cmd_health,
    "stats": cmd_stats,
    "history": cmd_history,
}


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    from .logging_config import configure

    parser = build_parser()
    args = parser.parse_args(argv)
    configure(json_output=args.json_logs, level="DEBUG" if args.verbose else "WARNING")

    try:
        COMMANDS[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except SystemExit:
        raise
    except (PageFilterError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
