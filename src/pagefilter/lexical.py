# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Local lexical filter: whole-word term masking against static word lists.

Runs before any remote call and is near-zero cost. Each matched term is
replaced by a mask of the same length, so layout is preserved (the term's
length is revealed, which is accepted).

Word lists live in ``pagefilter/wordlists/*.txt`` as package data:
``basic`` for the first-pass filter, ``extended`` for the offline fallback.
"""

from __future__ import annotations

import functools
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from importlib.resources import files

MASK_CHAR = "*"

BASIC_WORDLIST = "basic"
EXTENDED_WORDLIST = "extended"


@dataclass(frozen=True, slots=True)
class LexicalMatch:
    """Result of lexical filtering."""

    text: str  # rewritten text (identical to input when nothing matched)
    matched: list[str] = field(default_factory=list)  # lowercase, term-list order

    @property
    def changed(self) -> bool:
        return bool(self.matched)


@functools.cache
def load_wordlist(name: str) -> tuple[str, ...]:
    """Load a bundled word list. Blank lines and ``#`` comments are ignored."""
    raw = (files("pagefilter") / "wordlists" / f"{name}.txt").read_text(encoding="utf-8")
    terms: list[str] = []
    seen: set[str] = set()
    for line in raw.splitlines():
        term = line.split("#", 1)[0].strip().lower()
        if term and term not in seen:
            seen.add(term)
            terms.append(term)
    return tuple(terms)


@functools.lru_cache(maxsize=64)
def _compile(terms: tuple[str, ...]) -> re.Pattern[str] | None:
    if not terms:
        return None
    # Longest first so a term never loses to one of its own prefixes.
    alternation = "|".join(re.escape(t) for t in sorted(terms, key=len, reverse=True))
    # ASCII word boundaries: "\b" treats only [A-Za-z0-9_] as word characters.
    return re.compile(rf"\b(?:{alternation})\b", re.IGNORECASE | re.ASCII)


def mask_terms(text: str, terms: Iterable[str]) -> LexicalMatch:
    """Mask every whole-word, case-insensitive occurrence of *terms* in *text*."""
    ordered = tuple(dict.fromkeys(t.strip().lower() for t in terms if t and t.strip()))
    pattern = _compile(ordered)
    if pattern is None or not text:
        return LexicalMatch(text=text)

    hits: set[str] = set()

    def _mask(m: re.Match[str]) -> str:
        hits.add(m.group().lower())
        return MASK_CHAR * len(m.group())

    rewritten = pattern.sub(_mask, text)
    if not hits:
        return LexicalMatch(text=text)
    return LexicalMatch(text=rewritten, matched=[t for t in ordered if t in hits])


def local_filter(text: str, terms: Iterable[str] | None = None) -> LexicalMatch:
    """First-pass filter against the basic word list (or explicit *terms*).

    >>> local_filter("this content is explicit")
    LexicalMatch(text='this content is ********', matched=['explicit'])
    """
    return mask_terms(text, load_wordlist(BASIC_WORDLIST) if terms is None else terms)
