# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Remote classifier client for the moderation backend.

Fail-open: every public ``classify_*`` call resolves to a
``ClassificationResult``. Network errors, timeouts, non-2xx answers and
malformed bodies are raised internally as ``ClassifierError`` and converted to
a deterministic local fallback at this boundary.

Endpoints (relative to ``api_url``):
    POST /filter/text   JSON {"text": ...}
    POST /filter/image  multipart "image" + optional "method"
    GET  /health
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import ValidationError

from . import ClassificationMethod, ClassificationResult
from .config import FilterConfig
from .errors import ClassifierError, ConfigurationError, ImageFetchError, MalformedResponseError
from .lexical import EXTENDED_WORDLIST, load_wordlist, mask_terms
from .schemas import HealthResponse, ImageFilterResponse, ImageScores, TextFilterResponse

logger = logging.getLogger(__name__)

# Image thresholds (strictly greater / strictly less)
ADULT_THRESHOLD = 0.7
VIOLENCE_THRESHOLD = 0.7
MEDICAL_THRESHOLD = 0.7
RACY_THRESHOLD = 0.8
SAFE_THRESHOLD = 0.5

# Text thresholds
TEXT_CONFIDENCE_THRESHOLD = 0.7
EXPLICIT_TEXT_CATEGORIES = frozenset({"adult", "violence", "hate_speech", "harassment"})

# Offline fallbacks
FALLBACK_TEXT_CONFIDENCE = 0.6
FALLBACK_IMAGE_CONFIDENCE = 0.8
BANNER_WIDE_RATIO = 3.0
BANNER_TALL_RATIO = 0.3
BANNER_MIN_SIDE = 300

_SCORE_KEYS = frozenset({"adult", "violence", "racy", "medical", "safe"})
_SECONDARY_PROVIDERS = frozenset({"deepai"})


# ---------------------------------------------------------------------------
# Interpretation (pure)
# ---------------------------------------------------------------------------


def interpret_image_scores(
    scores: ImageScores,
    *,
    method: ClassificationMethod = ClassificationMethod.REMOTE_PRIMARY,
    provider: str = "",
) -> ClassificationResult:
    """Apply the image thresholds to raw provider likelihoods.

    >>> interpret_image_scores(ImageScores(adult=0.9)).categories
    frozenset({'adult'})
    """
    categories: set[str] = set()
    if scores.adult > ADULT_THRESHOLD:
        categories.add("adult")
    if scores.violence > VIOLENCE_THRESHOLD:
        categories.add("violence")
    if scores.medical > MEDICAL_THRESHOLD:
        categories.add("medical")
    if scores.racy > RACY_THRESHOLD:
        categories.add("racy")
    # medical alone never flags an image
    is_explicit = (
        scores.adult > ADULT_THRESHOLD
        or scores.violence > VIOLENCE_THRESHOLD
        or scores.racy > RACY_THRESHOLD
        or scores.safe < SAFE_THRESHOLD
    )
    return ClassificationResult(
        is_explicit=is_explicit,
        confidence=max(scores.adult, scores.violence, scores.racy),
        method=method,
        categories=frozenset(categories),
        safe_score=scores.safe,
        provider=provider,
    )


def is_explicit_text(confidence: float, categories: list[str] | frozenset[str]) -> bool:
    if confidence > TEXT_CONFIDENCE_THRESHOLD:
        return True
    return any(c.lower() in EXPLICIT_TEXT_CATEGORIES for c in categories)


def fallback_text(text: str) -> ClassificationResult:
    """Offline text verdict from the extended word list."""
    match = mask_terms(text, load_wordlist(EXTENDED_WORDLIST))
    if not match.changed:
        return ClassificationResult.clean(ClassificationMethod.FALLBACK)
    return ClassificationResult(
        is_explicit=True,
        confidence=FALLBACK_TEXT_CONFIDENCE,
        method=ClassificationMethod.FALLBACK,
        filtered_text=match.text,
        detected_terms=tuple(match.matched),
    )


def fallback_image(width: int, height: int) -> ClassificationResult:
    """Offline image verdict: flag large banner-shaped images."""
    if width <= 0 or height <= 0:
        return ClassificationResult.clean(ClassificationMethod.FALLBACK)
    ratio = width / height
    banner_shaped = ratio > BANNER_WIDE_RATIO or ratio < BANNER_TALL_RATIO
    if banner_shaped and (width > BANNER_MIN_SIDE or height > BANNER_MIN_SIDE):
        return ClassificationResult(
            is_explicit=True,
            confidence=FALLBACK_IMAGE_CONFIDENCE,
            method=ClassificationMethod.FALLBACK,
            categories=frozenset({"banner"}),
        )
    return ClassificationResult.clean(ClassificationMethod.FALLBACK)


def _image_method(provider: str) -> ClassificationMethod:
    if provider.lower() in _SECONDARY_PROVIDERS:
        return ClassificationMethod.REMOTE_SECONDARY
    return ClassificationMethod.REMOTE_PRIMARY


def parse_image_response(data: Any) -> ClassificationResult:
    """Turn a ``/filter/image`` body into a result. Raises MalformedResponseError."""
    if not isinstance(data, Mapping):
        raise MalformedResponseError(f"expected a JSON object, got {type(data).__name__}")
    try:
        if _SCORE_KEYS & data.keys() and "shouldFilter" not in data:
            # bare provider scores, e.g. {"adult": 0.9}
            provider = str(data.get("method") or "")
            return interpret_image_scores(
                ImageScores.model_validate(data), method=_image_method(provider), provider=provider
            )
        response = ImageFilterResponse.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(f"invalid image response: {e.error_count()} error(s)") from e

    method = _image_method(response.method)
    if response.scores is not None:
        scores = response.scores
        raw_scores = data.get("scores")
        if isinstance(raw_scores, Mapping) and "safe" not in raw_scores:
            scores = scores.model_copy(update={"safe": response.safe_score})
        return interpret_image_scores(scores, method=method, provider=response.method)
    return ClassificationResult(
        is_explicit=response.should_filter,
        confidence=response.confidence,
        method=method,
        categories=frozenset(c.lower() for c in response.categories),
        safe_score=response.safe_score,
        provider=response.method,
    )


def parse_text_response(data: Any, text: str) -> ClassificationResult:
    """Turn a ``/filter/text`` body into a result. Raises MalformedResponseError."""
    try:
        response = TextFilterResponse.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(f"invalid text response: {e.error_count()} error(s)") from e
    ai = response.ai
    is_explicit = response.has_explicit_content or is_explicit_text(ai.confidence, ai.categories)
    filtered = response.filtered if response.filtered and response.filtered != text else None
    return ClassificationResult(
        is_explicit=is_explicit,
        confidence=ai.confidence,
        method=ClassificationMethod.REMOTE_PRIMARY,
        categories=frozenset(c.lower() for c in ai.categories),
        filtered_text=filtered,
        detected_terms=tuple(ai.detected_terms),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RemoteClassifier:
    """Async client for the moderation backend with local fallbacks.

    The config snapshot is fixed per instance; ``ContentFilter`` rebuilds the
    classifier when ``api_url`` or the timeout changes.
    """

    def __init__(self, config: FilterConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._timeout = httpx.Timeout(config.request_timeout)

    async def __aenter__(self) -> RemoteClassifier:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    def _endpoint(self, path: str) -> str:
        return f"{self.config.api_url}{path}"

    # -- text ---------------------------------------------------------------

    async def classify_text(self, text: str) -> ClassificationResult:
        if not self.config.remote_enabled:
            return fallback_text(text)
        try:
            data = await self._request("POST", "/filter/text", json={"text": text})
            return parse_text_response(data, text)
        except ClassifierError as e:
            logger.warning("Text classification degraded to fallback: %s", e)
            return fallback_text(text)

    # -- image --------------------------------------------------------------

    async def classify_image(
        self,
        image_bytes: bytes,
        method: str = "auto",
        *,
        width: int,
        height: int,
    ) -> ClassificationResult:
        """Classify encoded image bytes. *width*/*height* feed the fallback only."""
        if not self.config.remote_enabled or not image_bytes:
            return fallback_image(width, height)
        try:
            data = await self._request(
                "POST",
                "/filter/image",
                files={"image": ("image", image_bytes, "application/octet-stream")},
                data={"method": method} if method else None,
            )
            return parse_image_response(data)
        except ClassifierError as e:
            logger.warning("Image classification degraded to fallback: %s", e)
            return fallback_image(width, height)

    async def fetch_image(self, src: str, base_url: str = "") -> bytes:
        """Download the bytes behind an ``<img src>``. Raises ImageFetchError."""
        src = (src or "").strip()
        if not src or src.startswith("data:"):
            raise ImageFetchError("image has no fetchable source")
        limit = self.config.max_image_bytes
        try:
            url = urljoin(base_url, src) if base_url else src
            if urlparse(url).scheme not in ("http", "https"):
                raise ImageFetchError(f"unsupported image URL: {url[:100]}")
            async with self.client.stream("GET", url, timeout=self._timeout) as response:
                if response.is_error:
                    raise ImageFetchError(
                        f"image fetch returned HTTP {response.status_code}", status_code=response.status_code
                    )
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise ImageFetchError(f"image exceeds {limit} bytes")
                chunks: list[bytes] = []
                total = 0
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > limit:
                        raise ImageFetchError(f"image exceeds {limit} bytes")
                    chunks.append(chunk)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ImageFetchError(f"image fetch failed: {type(e).__name__}") from e
        except ValueError as e:
            # urljoin/urlparse reject malformed netlocs, e.g. "http://[::1/x.jpg"
            raise ImageFetchError(f"malformed image URL: {src[:100]}") from e
        return b"".join(chunks)

    # -- health -------------------------------------------------------------

    async def check_health(self) -> dict[str, Any]:
        """Call ``GET /health``. Raises ConfigurationError unless status is "ok"."""
        if not self.config.remote_enabled:
            raise ConfigurationError("api_url is not configured")
        try:
            data = await self._request("GET", "/health")
            health = HealthResponse.model_validate(data)
        except (ClassifierError, ValidationError) as e:
            raise ConfigurationError(f"backend health check failed: {e}") from e
        if health.status != "ok":
            raise ConfigurationError(f"backend reported status {health.status!r}")
        return health.model_dump()

    # -- transport ----------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, self._endpoint(path), timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ClassifierError(f"{path} timed out after {self.config.request_timeout}s") from e
        except httpx.HTTPError as e:
            raise ClassifierError(f"{path} request failed: {type(e).__name__}: {e}") from e
        if response.is_error:
            raise ClassifierError(f"{path} returned HTTP {response.status_code}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{path} returned a non-JSON body") from e
