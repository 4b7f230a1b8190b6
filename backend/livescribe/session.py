"""
Per-connection session wiring.

A ``Session`` owns the transcript buffer, the field store, the extraction
scheduler and the upstream transcription adapter for one client. Inbound
frames are applied on the connection's event loop; finalized transcript
segments arrive on a queue and are applied in order by a consumer task.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from typing import Any, Callable

from pydantic import ValidationError

from .deepgram_client import TranscriptionAdapter, TranscriptSegment
from .field_store import FieldStore
from .llm_client import BaseLLMClient, get_llm_client
from .runtime_config import RuntimeConfig
from .scheduler import ExtractionScheduler
from .schemas import ContextUpdate, template_adapter
from .transcript_buffer import TranscriptBuffer

logger = logging.getLogger(__name__)

TEMPLATE_COMMAND_PREFIX = "updateTemplate:"

AdapterFactory = Callable[[asyncio.Queue, RuntimeConfig], TranscriptionAdapter]


def default_adapter_factory(segments: asyncio.Queue, config: RuntimeConfig) -> TranscriptionAdapter:
    return TranscriptionAdapter(segments, config.deepgram_options, config.upstream_handoff_seconds)


class Session:
    """Server-side state for one client connection."""

    def __init__(
        self,
        websocket,
        config: RuntimeConfig | None = None,
        llm_client: BaseLLMClient | None = None,
        adapter_factory: AdapterFactory = default_adapter_factory,
    ):
        self.id = uuid.uuid4()
        self.websocket = websocket
        self.config = config or RuntimeConfig()
        self.started_at = time.time()
        self.closed = False

        self.buffer = TranscriptBuffer(self.config.transcript_trim_threshold, self.config.transcript_keep_chars)
        self.store = FieldStore()
        self.segments: asyncio.Queue[TranscriptSegment] = asyncio.Queue()
        self.adapter = adapter_factory(self.segments, self.config)
        self.scheduler = ExtractionScheduler(
            self.buffer,
            self.store,
            llm_client or get_llm_client(),
            self.send,
            interval=self.config.extraction_interval_seconds,
            timeout=self.config.extraction_timeout_seconds,
            min_delta_chars=self.config.min_delta_chars,
        )
        self._consumer_task: asyncio.Task | None = None

    async def start(self) -> None:
        self.scheduler.start()
        self._consumer_task = asyncio.create_task(self._consume_segments())
        logger.info("Session %s started", self.id)

    async def send(self, payload: dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            await self.websocket.send_json(payload)
        except Exception as e:
            logger.warning("Session %s: failed to send %s: %s", self.id, payload.get("type"), e)

    async def handle_text(self, text: str) -> None:
        """Apply a text control message; malformed input is ignored."""
        if text.startswith(TEMPLATE_COMMAND_PREFIX):
            try:
                descriptors = template_adapter.validate_json(text[len(TEMPLATE_COMMAND_PREFIX):])
            except ValidationError as e:
                logger.debug("Ignoring malformed template command: %s", e)
                return
            if self.store.set_template(descriptors):
                self.buffer.reset_cursor()
            return

        try:
            data = json.loads(text)
        except ValueError:
            logger.debug("Ignoring non-JSON text message")
            return
        if not isinstance(data, dict):
            return

        if data.get("type") != "contextUpdate":
            logger.debug("Ignoring message of type %r", data.get("type"))
            return
        try:
            update = ContextUpdate.model_validate(data)
        except ValidationError as e:
            logger.debug("Ignoring malformed context update: %s", e)
            return

        if self.store.apply_context(update.fields, update.user_notes):
            logger.info("Session %s: field set changed; rescanning full transcript", self.id)
            self.buffer.reset_cursor()

    async def handle_audio(self, frame: bytes) -> None:
        await self.adapter.send_audio(frame)

    async def ingest_segment(self, segment: TranscriptSegment) -> None:
        labeled = segment.labeled
        self.buffer.append(labeled)
        await self.send({"type": "transcript", "text": labeled, "isFinal": True})

    async def _consume_segments(self) -> None:
        while True:
            segment = await self.segments.get()
            try:
                await self.ingest_segment(segment)
            except Exception as e:
                logger.error("Session %s: failed to apply transcript segment: %r", self.id, e)

    async def close(self) -> None:
        """Stop the scheduler, close the upstream stream and drop pending segments."""
        if self.closed:
            return
        self.closed = True
        await self.scheduler.stop()
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer_task
        try:
            await self.adapter.close()
        except Exception as e:
            logger.warning("Session %s: error closing transcription stream: %s", self.id, e)
        logger.info("Session %s closed after %.0fs (%d transcript chars)", self.id, time.time() - self.started_at, len(self.buffer))
