"""
Copyright © 2026 Vladimir Vaulin-Belskii. All rights reserved.

API router definitions for health and the live session WebSocket.
"""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .config import settings
from .llm_client import get_llm_client
from .runtime_config import RuntimeConfig
from .session import TEMPLATE_COMMAND_PREFIX, Session

logger = logging.getLogger(__name__)

# Sessions currently connected; only used for reporting.
active_sessions: set[Session] = set()

router = APIRouter()


@router.get("/health")
async def health():
    """Liveness check for the API service."""
    return {"status": "ok", "service": settings.app_name, "sessions": len(active_sessions)}


def _looks_like_control(payload: bytes) -> bool:
    stripped = payload.lstrip()
    return stripped.startswith(b"{") or stripped.startswith(TEMPLATE_COMMAND_PREFIX.encode())


def classify_frame(message: dict, sniff_binary_control: bool = False) -> tuple[str | None, str | bytes | None]:
    """Split a raw ASGI websocket message into ("text", str) or ("audio", bytes).

    The frame type is authoritative. With ``sniff_binary_control`` a binary
    frame that decodes as a JSON object or template command is treated as
    text, for clients that send everything as binary.
    """
    text = message.get("text")
    if text is not None:
        return "text", text

    data = message.get("bytes")
    if not data:
        return None, None

    if sniff_binary_control and _looks_like_control(data):
        try:
            return "text", data.decode("utf-8")
        except UnicodeDecodeError:
            pass
    return "audio", data


def create_session(websocket: WebSocket) -> Session:
    return Session(websocket, config=RuntimeConfig(), llm_client=get_llm_client())


@router.websocket("/ws")
@router.websocket("/")
async def websocket_session(websocket: WebSocket):
    """Relay audio to transcription and stream transcript/extraction updates back."""
    await websocket.accept()
    session = create_session(websocket)
    active_sessions.add(session)
    logger.info("Client connected: session %s (%d active)", session.id, len(active_sessions))

    await session.start()
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            kind, payload = classify_frame(message, session.config.sniff_binary_control)
            if kind == "text":
                await session.handle_text(payload)
            elif kind == "audio":
                await session.handle_audio(payload)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("Session %s streaming error: %r", session.id, e)
    finally:
        await session.close()
        active_sessions.discard(session)
        logger.info("Client disconnected: session %s (%d active)", session.id, len(active_sessions))
