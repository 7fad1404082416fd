# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""pagefilter exception hierarchy.

All pagefilter-specific errors inherit from PageFilterError. None of them
escape the filtering pipeline: classifier errors degrade to fallback results,
stale elements are discarded, and relay failures are logged.
"""

from __future__ import annotations


class PageFilterError(Exception):
    """Base exception for all pagefilter errors."""


class ConfigurationError(PageFilterError):
    """Invalid filter configuration or an unusable backend URL."""


class ClassifierError(PageFilterError):
    """Transient remote classification failure (network, timeout, non-2xx)."""

    def __init__(self, message: str, *, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(ClassifierError):
    """Backend answered 2xx with a body that does not match the contract."""


class ImageFetchError(ClassifierError):
    """Image bytes could not be obtained for classification."""


class StaleElementError(PageFilterError):
    """Element was detached from the document before redaction."""
