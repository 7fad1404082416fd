# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Filtering pipeline orchestrator for one live document.

Flow per pass:
    snapshot config → reset ledger → observe mutations
    → scan text (local filter, then remote/fallback for substantial slots)
    → scan images (processed marker, then remote/fallback for substantial images)
    → redact → record in ledger → relay to the background store

Redactions are applied in completion order, so ledger indices reflect the
order in which classifications finished, not document order. Nothing in here
raises into the host: classifier failures arrive as fallback results, stale
elements are skipped, relay failures are logged.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

import httpx
from lxml import etree

from . import ClassificationMethod, ClassificationResult, ContentKind, ImageCandidate, TextCandidate
from .classifier import RemoteClassifier, fallback_image, fallback_text
from .config import ConfigStore, FilterConfig
from .document import LiveDocument
from .errors import ConfigurationError, ImageFetchError, StaleElementError
from .ledger import RecoveryLedger, RecoveryOutcome
from .lexical import local_filter, mask_terms
from .logging_config import bind_page, clear_page
from .observer import ChangeObserver, ChangeSet
from .redaction import PENDING_ATTR, ImageRedaction, RedactionEngine, TextRedaction
from .relay import TelemetryRelay
from .scanner import TextMarks, iter_batches, iter_image_candidates, iter_text_candidates, mark_image_processed
from .store import StatsStoreProtocol

logger = logging.getLogger(__name__)

FILTERED_IMAGE_REPLACEMENT = "filtered-image"

# Message actions
ACTION_REFRESH = "refreshFilters"
ACTION_UPDATE_CONFIG = "updateConfig"
ACTION_RECOVER = "recoverContent"
ACTION_REVEAL = "revealImage"

# Message "type" values; history views use the plural "images"
_KIND_ALIASES = {"text": ContentKind.TEXT, "image": ContentKind.IMAGE, "images": ContentKind.IMAGE}


def parse_kind(value: Any) -> ContentKind:
    try:
        return _KIND_ALIASES[str(value).lower()]
    except KeyError:
        raise ValueError(f"unknown content type: {value!r}") from None


@dataclass(slots=True)
class FilterPass:
    """What one pass works with, fixed when the pass starts.

    Classifications spawned by a pass keep using its snapshot even when a
    config update starts the next pass before they finish.
    """

    config: FilterConfig
    engine: RedactionEngine
    semaphore: asyncio.Semaphore
    classifier: RemoteClassifier | None = None


class ContentFilter:
    """Runs filter passes over a ``LiveDocument`` and answers runtime messages.

    Args:
        document: The page to filter.
        config_store: Live configuration; a new version re-triggers a full pass.
        classifier: Injected classifier (tests), used whenever a backend is
            configured. When omitted, one is built from the pass's snapshot
            and reused by later passes with an equal snapshot.
        store: Background store for statistics and history, or None.
        http_client: Shared client for built classifiers. Owned (and closed)
            by this filter when omitted.
    """

    def __init__(
        self,
        document: LiveDocument,
        config_store: ConfigStore | None = None,
        *,
        classifier: RemoteClassifier | None = None,
        store: StatsStoreProtocol | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.document = document
        self.config_store = config_store or ConfigStore()
        self.relay = TelemetryRelay(store, document.domain)
        self.ledger = RecoveryLedger(document.root)
        self.marks = TextMarks()

        self._injected_classifier = classifier
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._pass = self._new_pass(self.config_store.snapshot())

        self._observer: ChangeObserver | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe = self.config_store.subscribe(self._on_config_update)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def config(self) -> FilterConfig:
        """Snapshot used by the current pass."""
        return self._pass.config

    async def start_filtering(self) -> None:
        """Run a full filter pass with a fresh config snapshot."""
        config = self.config_store.snapshot()
        self._disconnect_observer()
        current = self._pass = self._new_pass(config)
        bind_page(self.document.domain)
        if not config.enabled:
            logger.info("Filtering disabled (config v%d)", config.version)
            return

        self.ledger.reset()
        pruned = self.marks.prune(self.document.root)
        if pruned:
            logger.debug("Dropped %d text mark(s) for detached nodes", pruned)
        self._observer = ChangeObserver(
            self.document,
            functools.partial(self._on_change, current),
            filter_text=config.filter_text,
            filter_images=config.filter_images,
        )
        root = self.document.body
        if config.filter_text:
            await self._scan_text(root, current)
        if config.filter_images:
            await self._scan_images(root, current)
        logger.info(
            "Filter pass scheduled (config v%d, ledger generation %d, %d classification(s) in flight)",
            config.version,
            self.ledger.generation,
            len(self._tasks),
        )

    async def drain(self) -> None:
        """Wait for in-flight classifications, mutation rescans and relay writes."""
        while True:
            await asyncio.sleep(0)  # let queued mutation deliveries run
            if not self._tasks and not self.relay.pending:
                return
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await self.relay.drain()

    async def aclose(self) -> None:
        self._disconnect_observer()
        self._unsubscribe()
        await self.drain()
        logger.debug("Relay totals: %s", self.relay.meta.snapshot())
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        clear_page()

    async def __aenter__(self) -> ContentFilter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _new_pass(self, config: FilterConfig) -> FilterPass:
        previous: FilterPass | None = getattr(self, "_pass", None)
        if previous is not None and previous.config.max_concurrent_requests == config.max_concurrent_requests:
            semaphore = previous.semaphore
        else:
            semaphore = asyncio.Semaphore(config.max_concurrent_requests)

        classifier = None
        if config.remote_enabled:
            if self._injected_classifier is not None:
                classifier = self._injected_classifier
            elif previous is not None and previous.classifier is not None and previous.classifier.config == config:
                classifier = previous.classifier
            else:
                classifier = self._build_classifier(config)
        return FilterPass(
            config=config,
            engine=RedactionEngine(self.document.root, config),
            semaphore=semaphore,
            classifier=classifier,
        )

    def _build_classifier(self, config: FilterConfig) -> RemoteClassifier:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(follow_redirects=True)
        return RemoteClassifier(config, client=self._http_client)

    def _disconnect_observer(self) -> None:
        if self._observer is not None:
            self._observer.disconnect()
            self._observer = None

    def _on_config_update(self, config: FilterConfig) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Config v%d stored; no running loop, next pass picks it up", config.version)
            return
        self._track(loop.create_task(self.start_filtering()))

    def _on_change(self, current: FilterPass, changes: ChangeSet) -> None:
        self._spawn(self._rescan(changes, current))

    async def _rescan(self, changes: ChangeSet, current: FilterPass) -> None:
        for root in changes.text_roots:
            await self._scan_text(root, current)
        for root in changes.image_roots:
            await self._scan_images(root, current)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        self._track(asyncio.get_running_loop().create_task(coro))

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Filter task failed: %s", exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    async def _scan_text(self, root: etree._Element, current: FilterPass) -> None:
        candidates = iter_text_candidates(root, self.marks)
        async for batch in iter_batches(candidates, current.config.text_batch_size):
            for candidate in batch:
                self._handle_text(candidate, current)

    def _handle_text(self, candidate: TextCandidate, current: FilterPass) -> None:
        value = candidate.value
        self.marks.mark(candidate)

        match = local_filter(value)
        if match.changed:
            result = ClassificationResult(
                is_explicit=True,
                confidence=1.0,
                method=ClassificationMethod.LOCAL,
                filtered_text=match.text,
                detected_terms=tuple(match.matched),
            )
            self._apply_text(candidate, value, match.text, result, current)
            return

        if len(value) <= current.config.min_text_length:
            return
        if current.classifier is None:
            self._apply_text_result(candidate, value, fallback_text(value), current)
            return
        self._spawn(self._classify_text(candidate, value, current))

    async def _classify_text(self, candidate: TextCandidate, value: str, current: FilterPass) -> None:
        async with current.semaphore:
            result = await current.classifier.classify_text(value)
        self._apply_text_result(candidate, value, result, current)

    def _apply_text_result(
        self,
        candidate: TextCandidate,
        value: str,
        result: ClassificationResult,
        current: FilterPass,
    ) -> None:
        if not result.is_explicit:
            return
        if candidate.value != value:
            logger.debug("Discarding %s text result: slot changed while classifying", result.method)
            return
        masked = result.filtered_text
        if masked is None and result.detected_terms:
            masked = mask_terms(value, result.detected_terms).text
        if not masked or masked == value:
            logger.debug("Explicit %s text result carried no usable mask", result.method)
            return
        self._apply_text(candidate, value, masked, result, current)

    def _apply_text(
        self,
        candidate: TextCandidate,
        value: str,
        masked: str,
        result: ClassificationResult,
        current: FilterPass,
    ) -> None:
        try:
            redaction = current.engine.redact_text(candidate, masked)
        except StaleElementError as e:
            logger.debug("Skipping text redaction: %s", e)
            return
        if redaction is None:
            return
        self.marks.mark(candidate, masked)
        index = self.ledger.record(ContentKind.TEXT, value, masked, redaction)
        self.relay.report(ContentKind.TEXT, value, masked)
        logger.debug("Text redaction %d via %s (%s)", index, result.method, ", ".join(result.detected_terms))

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def _scan_images(self, root: etree._Element, current: FilterPass) -> None:
        candidates = iter_image_candidates(root, min_size=current.config.min_image_size)
        async for batch in iter_batches(candidates, current.config.image_batch_size):
            for candidate in batch:
                self._handle_image(candidate, current)

    def _handle_image(self, candidate: ImageCandidate, current: FilterPass) -> None:
        src = candidate.src
        if not src or src.startswith("data:"):
            return
        mark_image_processed(candidate.element)

        threshold = current.config.remote_image_min_size
        if candidate.width <= threshold or candidate.height <= threshold:
            return
        if current.classifier is None:
            self._apply_image_result(candidate, fallback_image(candidate.width, candidate.height), current)
            return
        candidate.element.set(PENDING_ATTR, "true")
        self._spawn(self._classify_image(candidate, current))

    async def _classify_image(self, candidate: ImageCandidate, current: FilterPass) -> None:
        img = candidate.element
        classifier = current.classifier
        try:
            async with current.semaphore:
                try:
                    image_bytes = await classifier.fetch_image(candidate.src, self.document.url)
                except ImageFetchError as e:
                    logger.warning("Image fetch degraded to fallback: %s", e)
                    result = fallback_image(candidate.width, candidate.height)
                else:
                    result = await classifier.classify_image(
                        image_bytes,
                        current.config.image_filter_method,
                        width=candidate.width,
                        height=candidate.height,
                    )
        finally:
            img.attrib.pop(PENDING_ATTR, None)
        self._apply_image_result(candidate, result, current)

    def _apply_image_result(self, candidate: ImageCandidate, result: ClassificationResult, current: FilterPass) -> None:
        if not result.is_explicit:
            return
        src = candidate.element.get("src") or ""
        try:
            redaction = current.engine.redact_image(candidate, result)
        except StaleElementError as e:
            logger.debug("Skipping image redaction: %s", e)
            return
        if redaction is None:
            return
        index = self.ledger.record(ContentKind.IMAGE, src, FILTERED_IMAGE_REPLACEMENT, redaction)
        redaction.bind(index)
        self.relay.report(ContentKind.IMAGE, src, FILTERED_IMAGE_REPLACEMENT)
        logger.debug("Image redaction %d via %s (confidence %.2f)", index, result.display_method, result.confidence)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self, kind: ContentKind, index: int) -> RecoveryOutcome:
        """Undo one redaction from the current ledger."""
        outcome = self.ledger.recover(kind, index)
        if outcome is RecoveryOutcome.RECOVERED:
            record = self.ledger.get(kind, index)
            if isinstance(record.ref, TextRedaction):
                # the restored value counts as examined
                self.marks.mark(record.ref.candidate)
        return outcome

    def reveal_image(self, index: int) -> bool:
        """Show a filtered image without recovering it."""
        record = self.ledger.get(ContentKind.IMAGE, index)
        if record is None or record.recovered or not isinstance(record.ref, ImageRedaction):
            return False
        return self._pass.engine.reveal(record.ref)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]:
        """Answer a runtime message. Always returns ``{"success": bool, ...}``."""
        action = message.get("action")
        try:
            if action == ACTION_REFRESH:
                await self.start_filtering()
                return {"success": True}

            if action == ACTION_UPDATE_CONFIG:
                changes = message.get("config") or {}
                if not isinstance(changes, dict):
                    raise ValueError("config must be an object")
                config = self.config_store.update(**changes)
                return {"success": True, "version": config.version}

            if action == ACTION_RECOVER:
                kind = parse_kind(message.get("type"))
                outcome = self.recover(kind, int(message["entryIndex"]))
                response: dict[str, Any] = {
                    "success": outcome is RecoveryOutcome.RECOVERED,
                    "outcome": outcome.value,
                }
                if outcome is RecoveryOutcome.RECOVERED and "historyIndex" in message:
                    response["historyUpdated"] = await self.relay.mark_recovered(kind, int(message["historyIndex"]))
                return response

            if action == ACTION_REVEAL:
                return {"success": self.reveal_image(int(message["entryIndex"]))}
        except (ConfigurationError, KeyError, TypeError, ValueError) as e:
            logger.warning("Rejected %r message: %s", action, e)
            return {"success": False, "error": str(e)}

        logger.warning("Unknown message action %r", action)
        return {"success": False, "error": f"unknown action: {action!r}"}
