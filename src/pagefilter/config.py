# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Filter configuration: immutable, versioned snapshots and a live store.

A scan pass reads one ``FilterConfig`` snapshot at its start and never looks
at the store again, so an update delivered mid-pass only takes effect on the
next pass.

Example YAML:

    pagefilter:
      enabled: true
      filter_text: true
      filter_images: true
      api_url: https://moderation.example.com
      image_filter_method: auto      # auto | vertex | deepai
      request_timeout: 10
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

IMAGE_FILTER_METHODS = frozenset({"auto", "vertex", "deepai"})

# camelCase keys used by the extension's stored config → field names
_KEY_ALIASES = {
    "filterText": "filter_text",
    "filterImages": "filter_images",
    "apiUrl": "api_url",
    "imageFilterMethod": "image_filter_method",
    "requestTimeout": "request_timeout",
}


@dataclass(frozen=True, slots=True)
class FilterConfig:
    """Immutable snapshot of the filter configuration."""

    enabled: bool = True
    filter_text: bool = True
    filter_images: bool = True
    api_url: str = ""
    image_filter_method: str = "auto"
    version: int = 0

    # Scanning
    text_batch_size: int = 50
    image_batch_size: int = 10
    min_text_length: int = 10  # remote check only above this many chars
    min_image_size: int = 50  # icons below this (either side) are skipped
    remote_image_min_size: int = 100  # classify only above this (both sides)

    # Remote classification
    request_timeout: float = 10.0
    max_concurrent_requests: int = 6
    max_image_bytes: int = 5 * 1024 * 1024

    # Redaction
    blur_radius: int = 25
    desaturate: bool = False

    @property
    def remote_enabled(self) -> bool:
        return bool(self.api_url)


def validate_config(config: FilterConfig) -> FilterConfig:
    """Check field values, normalising ``api_url``. Raises ConfigurationError."""
    api_url = normalize_api_url(config.api_url)
    if config.image_filter_method not in IMAGE_FILTER_METHODS:
        raise ConfigurationError(
            f"image_filter_method must be one of {sorted(IMAGE_FILTER_METHODS)}, got {config.image_filter_method!r}"
        )
    if config.text_batch_size < 1 or config.image_batch_size < 1:
        raise ConfigurationError("batch sizes must be positive")
    if config.request_timeout <= 0:
        raise ConfigurationError("request_timeout must be positive")
    if config.max_concurrent_requests < 1:
        raise ConfigurationError("max_concurrent_requests must be positive")
    if api_url != config.api_url:
        return dataclasses.replace(config, api_url=api_url)
    return config


def normalize_api_url(url: str) -> str:
    """Strip whitespace and trailing slashes; empty means "no backend"."""
    url = (url or "").strip().rstrip("/")
    if not url:
        return ""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"api_url must be an http(s) URL, got {url!r}")
    return url


def load_config(data: Mapping[str, Any]) -> FilterConfig:
    """Build a validated snapshot from a dict (flat or nested under ``pagefilter``)."""
    if "pagefilter" in data:
        data = data["pagefilter"] or {}

    known = {f.name for f in dataclasses.fields(FilterConfig)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = _KEY_ALIASES.get(key, key)
        if name in known:
            kwargs[name] = value
    try:
        config = FilterConfig(**kwargs)
    except TypeError as e:
        raise ConfigurationError(str(e)) from e
    return validate_config(config)


def load_from_yaml(path: str | Path) -> FilterConfig:
    """Load config from a YAML file."""
    import yaml

    with open(path, encoding="utf-8") as f:
        return load_config(yaml.safe_load(f) or {})


def config_from_env(base: FilterConfig | None = None) -> FilterConfig:
    """Overlay ``PAGEFILTER_*`` environment variables onto *base*."""
    config = base or FilterConfig()
    changes: dict[str, Any] = {}
    if "PAGEFILTER_API_URL" in os.environ:
        changes["api_url"] = os.environ["PAGEFILTER_API_URL"]
    if "PAGEFILTER_IMAGE_METHOD" in os.environ:
        changes["image_filter_method"] = os.environ["PAGEFILTER_IMAGE_METHOD"]
    if "PAGEFILTER_TIMEOUT" in os.environ:
        try:
            changes["request_timeout"] = float(os.environ["PAGEFILTER_TIMEOUT"])
        except ValueError as e:
            raise ConfigurationError(f"PAGEFILTER_TIMEOUT is not a number: {e}") from e
    return validate_config(dataclasses.replace(config, **changes)) if changes else config


def config_to_dict(config: FilterConfig) -> dict[str, Any]:
    """Serialise a snapshot (without its version) for persistence."""
    data = dataclasses.asdict(config)
    data.pop("version", None)
    return data


class ConfigStore:
    """Holds the current snapshot and notifies subscribers on every update.

    NOTE: single event loop only. Subscribers run synchronously inside
    ``update()``; they should schedule work rather than do it.
    """

    def __init__(self, initial: FilterConfig | None = None) -> None:
        self._current = validate_config(initial or FilterConfig())
        self._subscribers: list[Callable[[FilterConfig], None]] = []

    @property
    def current(self) -> FilterConfig:
        return self._current

    def snapshot(self) -> FilterConfig:
        """The snapshot a scan pass should use from start to finish."""
        return self._current

    def update(self, **changes: Any) -> FilterConfig:
        """Apply *changes* (field names or extension aliases) as a new version."""
        normalized = {_KEY_ALIASES.get(k, k): v for k, v in changes.items()}
        normalized.pop("version", None)
        known = {f.name for f in dataclasses.fields(FilterConfig)}
        unknown = set(normalized) - known
        if unknown:
            logger.debug("Ignoring unknown config keys: %s", sorted(unknown))
        applied = {k: v for k, v in normalized.items() if k in known}
        new = validate_config(dataclasses.replace(self._current, version=self._current.version + 1, **applied))
        self._current = new
        logger.info("Config updated to version %d", new.version)
        for callback in list(self._subscribers):
            callback(new)
        return new

    def subscribe(self, callback: Callable[[FilterConfig], None]) -> Callable[[], None]:
        """Register *callback*; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe
