"""
Fixed-interval extraction scheduler.

Every tick checks, in order: that a template is available, that enough new
transcript has arrived, and that no extraction is already in flight. Passing
ticks launch one extraction in the background so the interval keeps running;
the in-flight flag guarantees at most one call per session at a time.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable

from .field_store import FieldStore
from .llm_client import BaseLLMClient, GenerationError, build_extraction_prompt, estimate_token_count, parse_extraction
from .merge import apply_updates
from .transcript_buffer import Checkpoint, TranscriptBuffer

logger = logging.getLogger(__name__)

EXTRACTION_INTERVAL_SECONDS = 10.0
EXTRACTION_TIMEOUT_SECONDS = 15.0
MIN_DELTA_CHARS = 10
# The HTTP call gets extra time so the safety timeout always fires first.
CALL_TIMEOUT_MARGIN_SECONDS = 5.0

Emit = Callable[[dict[str, Any]], Awaitable[None]]


class ExtractionScheduler:
    """Decides when to call the text generator and applies what it returns."""

    def __init__(
        self,
        buffer: TranscriptBuffer,
        store: FieldStore,
        client: BaseLLMClient,
        emit: Emit,
        interval: float = EXTRACTION_INTERVAL_SECONDS,
        timeout: float = EXTRACTION_TIMEOUT_SECONDS,
        min_delta_chars: int = MIN_DELTA_CHARS,
    ):
        self.buffer = buffer
        self.store = store
        self.client = client
        self.emit = emit
        self.interval = interval
        self.timeout = timeout
        self.min_delta_chars = min_delta_chars
        self.in_flight = False
        self._stopped = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._extraction_task: asyncio.Task | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        if self._loop_task is None:
            logger.info("Extraction scheduler started (every %.1fs)", self.interval)
            self._loop_task = asyncio.create_task(self.run())

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                self.tick()
            except Exception as e:
                logger.error("Extraction tick failed: %r", e)

    async def stop(self) -> None:
        """Stop ticking. An extraction already in flight is left to finish and discarded."""
        self._stopped.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

    async def wait_for_extraction(self) -> None:
        """Wait for the most recently launched extraction to settle."""
        if self._extraction_task is not None:
            await self._extraction_task

    def tick(self) -> bool:
        """Evaluate the guards and launch an extraction. Returns True if one was launched."""
        if self._stopped.is_set():
            return False

        template = self.store.active_template()
        if not template:
            logger.debug("Tick skipped: no template")
            return False

        delta = self.buffer.delta()
        if len(delta.strip()) < self.min_delta_chars:
            logger.debug("Tick skipped: delta too short (%d chars)", len(delta.strip()))
            return False

        if self.in_flight:
            logger.debug("Tick skipped: extraction already in flight")
            return False

        self.in_flight = True
        self._extraction_task = asyncio.create_task(self._extract(delta, self.buffer.checkpoint()))
        return True

    async def _extract(self, delta: str, checkpoint: Checkpoint) -> None:
        prompt = build_extraction_prompt(
            self.store.active_template(),
            self.store.state.values(),
            self.store.state.user_notes,
            delta,
        )
        logger.info("Extraction started: %d new chars, prompt ~%d tokens", len(delta), estimate_token_count(prompt))

        try:
            await self.emit({"type": "status", "active": True})
            try:
                raw = await asyncio.wait_for(
                    self.client.extract(prompt, timeout=self.timeout + CALL_TIMEOUT_MARGIN_SECONDS),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Extraction timed out after %.1fs; releasing session", self.timeout)
                return
            except GenerationError as e:
                logger.error("Extraction call failed: %s", e)
                await self._emit_if_running({"type": "error", "message": str(e)})
                return
            except Exception as e:
                logger.error("Extraction call failed: %r", e)
                await self._emit_if_running({"type": "error", "message": "Extraction failed"})
                return

            if self._stopped.is_set():
                logger.info("Session closed during extraction; discarding result")
                return

            result = parse_extraction(raw)
            if result is None:
                logger.warning("Extraction produced no usable output; treating as no-op")
            else:
                changed = apply_updates(self.store.state, result.updates)
                logger.info("Extraction applied: %d proposed, %d fields changed", len(result.updates), len(changed))
                if changed:
                    await self.emit({"type": "templateUpdate", "data": changed})

            self.buffer.advance_to(checkpoint)
        finally:
            self.in_flight = False
            await self._emit_if_running({"type": "status", "active": False})

    async def _emit_if_running(self, payload: dict[str, Any]) -> None:
        if not self._stopped.is_set():
            await self.emit(payload)
