"""
Streaming Deepgram client.

``DeepgramStream`` owns one upstream websocket: it forwards linear PCM frames
and turns finalized ``Results`` messages into ``TranscriptSegment`` objects
on a queue the session consumes. ``TranscriptionAdapter`` sits in front of it
and replaces the stream before the upstream's maximum session duration is
reached, checking on every inbound frame before forwarding it.

Frames are not buffered across a handoff that fails: the frame that triggered
it is dropped and the next frame retries the setup. Results still in flight
on a retiring stream are drained and may interleave with the first results of
the new one.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from .config import settings

logger = logging.getLogger(__name__)

OPEN_TIMEOUT_SECONDS = 10.0
DRAIN_TIMEOUT_SECONDS = 5.0
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


class TranscriptionError(Exception):
    """The upstream transcription connection could not be established."""


@dataclass(frozen=True)
class TranscriptSegment:
    """A finalized piece of transcript attributed to one speaker."""

    speaker: int
    text: str

    @property
    def labeled(self) -> str:
        return f"[Speaker {self.speaker}] {self.text}"


def parse_result(message: str | bytes) -> TranscriptSegment | None:
    """Turn a Deepgram message into a segment; None for interim or non-result messages."""
    try:
        data = json.loads(message)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-JSON upstream message")
        return None
    if not isinstance(data, dict) or data.get("type", "Results") != "Results":
        return None
    if not data.get("is_final"):
        return None

    channel = data.get("channel")
    alternatives = channel.get("alternatives") if isinstance(channel, dict) else None
    if not isinstance(alternatives, list) or not alternatives or not isinstance(alternatives[0], dict):
        return None
    transcript = alternatives[0].get("transcript")
    if not isinstance(transcript, str) or not transcript.strip():
        return None

    words = alternatives[0].get("words")
    speaker = words[0].get("speaker") if isinstance(words, list) and words and isinstance(words[0], dict) else None
    return TranscriptSegment(speaker=_speaker_index(speaker), text=transcript.strip())


def _speaker_index(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        logger.debug("Unusable speaker label %r; using 0", value)
        return 0


def build_listen_url(base_url: str, options: dict[str, Any]) -> str:
    params = {}
    for key, value in options.items():
        if value is None:
            continue
        params[key] = str(value).lower() if isinstance(value, bool) else value
    return f"{base_url}?{urllib.parse.urlencode(params)}"


Connector = Callable[..., Awaitable[Any]]


class DeepgramStream:
    """One live transcription connection."""

    def __init__(
        self,
        segments: asyncio.Queue,
        options: dict[str, Any],
        api_key: str = "",
        base_url: str = "",
        connect: Connector = ws_connect,
    ):
        self.segments = segments
        self.url = build_listen_url(base_url or settings.deepgram_url, options)
        self.api_key = api_key or settings.deepgram_api_key
        self._connect = connect
        self._ws = None
        self._receiver: asyncio.Task | None = None
        self._finishing = False

    @property
    def is_open(self) -> bool:
        return (
            self._ws is not None
            and not self._finishing
            and self._receiver is not None
            and not self._receiver.done()
        )

    async def open(self) -> None:
        try:
            self._ws = await asyncio.wait_for(
                self._connect(self.url, additional_headers={"Authorization": f"Token {self.api_key}"}),
                timeout=OPEN_TIMEOUT_SECONDS,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            raise TranscriptionError(f"Failed to open transcription stream: {e!r}") from e
        self._receiver = asyncio.create_task(self._receive())
        logger.info("Transcription stream opened")

    async def send(self, frame: bytes) -> None:
        await self._ws.send(frame)

    async def _receive(self) -> None:
        try:
            async for message in self._ws:
                try:
                    segment = parse_result(message)
                except Exception as e:
                    logger.error("Skipping unreadable transcription message: %r", e)
                    continue
                if segment is not None:
                    self.segments.put_nowait(segment)
        except ConnectionClosedError as e:
            logger.warning("Transcription stream closed with error: %s", e)
        except Exception as e:
            logger.error("Transcription stream receive error: %r", e)
        else:
            logger.info("Transcription stream closed by upstream")

    async def finish(self, drain_timeout: float = DRAIN_TIMEOUT_SECONDS) -> None:
        """Ask upstream to flush pending results, drain them, then close."""
        if self._ws is None:
            return
        self._finishing = True
        with contextlib.suppress(ConnectionClosed):
            await self._ws.send(CLOSE_STREAM_MESSAGE)

        if self._receiver is not None and not self._receiver.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._receiver), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Transcription stream did not drain in %.1fs; closing", drain_timeout)
                self._receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._receiver

        try:
            await self._ws.close()
        except Exception as e:
            logger.warning("Error closing transcription stream: %s", e)


class TranscriptionAdapter:
    """Keeps one live upstream stream per session and hands it off before it ages out."""

    def __init__(
        self,
        segments: asyncio.Queue,
        options: dict[str, Any],
        handoff_after_seconds: float = settings.upstream_handoff_seconds,
        api_key: str = "",
        base_url: str = "",
        connect: Connector = ws_connect,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.segments = segments
        self.options = dict(options)
        self.handoff_after_seconds = handoff_after_seconds
        self.api_key = api_key
        self.base_url = base_url
        self._connect = connect
        self._clock = clock
        self.connection_start = clock()
        self.stream: DeepgramStream | None = None
        self._retiring: set[asyncio.Task] = set()
        self._closed = False

    @property
    def connection_age(self) -> float:
        return self._clock() - self.connection_start

    def needs_handoff(self) -> bool:
        return self.stream is None or not self.stream.is_open or self.connection_age > self.handoff_after_seconds

    async def send_audio(self, frame: bytes) -> bool:
        """Forward one audio frame, renewing the upstream connection first if needed."""
        if self._closed:
            return False
        if self.needs_handoff():
            await self._handoff()
        if self.stream is None or not self.stream.is_open:
            return False

        try:
            await self.stream.send(frame)
        except ConnectionClosed as e:
            logger.warning("Dropping audio frame; transcription stream closed: %s", e)
            return False
        return True

    async def _handoff(self) -> None:
        if self.stream is not None:
            logger.info("Handing off transcription stream (age %.0fs)", self.connection_age)
            self._retire(self.stream)
            self.stream = None

        stream = DeepgramStream(
            self.segments,
            self.options,
            api_key=self.api_key,
            base_url=self.base_url,
            connect=self._connect,
        )
        try:
            await stream.open()
        except TranscriptionError as e:
            logger.error("%s", e)
            return
        self.stream = stream
        self.connection_start = self._clock()

    def _retire(self, stream: DeepgramStream) -> None:
        task = asyncio.create_task(stream.finish())
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def close(self) -> None:
        """Finish the live stream and wait for retiring streams to drain."""
        self._closed = True
        if self.stream is not None:
            self._retire(self.stream)
            self.stream = None
        if self._retiring:
            await asyncio.gather(*list(self._retiring), return_exceptions=True)
