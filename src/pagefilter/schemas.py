# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Pydantic models for moderation backend responses.

Field names follow the backend's camelCase JSON; Python attributes are
snake_case via aliases. Unknown fields are ignored so the backend can add
keys without breaking older clients.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

_MODEL_CONFIG = ConfigDict(populate_by_name=True, extra="ignore")

# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


class TextAnalysis(BaseModel):
    """AI verdict nested under ``ai`` in the text response."""

    model_config = _MODEL_CONFIG

    is_explicit: bool = Field(False, alias="isExplicit")
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    categories: list[str] = Field(default_factory=list)
    detected_terms: list[str] = Field(default_factory=list, alias="detectedTerms")


class TextFilterResponse(BaseModel):
    """``POST /filter/text`` response body."""

    model_config = _MODEL_CONFIG

    original: str = ""
    filtered: str | None = None
    has_explicit_content: bool = Field(False, alias="hasExplicitContent")
    ai: TextAnalysis = Field(default_factory=TextAnalysis)


# ---------------------------------------------------------------------------
# Image
# ---------------------------------------------------------------------------


class ImageScores(BaseModel):
    """Raw provider likelihoods, each 0.0-1.0. ``safe`` defaults to fully safe."""

    model_config = _MODEL_CONFIG

    adult: float = Field(0.0, ge=0.0, le=1.0)
    violence: float = Field(0.0, ge=0.0, le=1.0)
    racy: float = Field(0.0, ge=0.0, le=1.0)
    medical: float = Field(0.0, ge=0.0, le=1.0)
    safe: float = Field(1.0, ge=0.0, le=1.0)


class ImageFilterResponse(BaseModel):
    """``POST /filter/image`` response body."""

    model_config = _MODEL_CONFIG

    should_filter: bool = Field(False, alias="shouldFilter")
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    categories: list[str] = Field(default_factory=list)
    safe_score: float = Field(1.0, ge=0.0, le=1.0, alias="safeScore")
    method: str = ""
    scores: ImageScores | None = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """``GET /health`` response body."""

    model_config = ConfigDict(extra="allow")

    status: str
