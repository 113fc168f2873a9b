"""WebSocket transport: one connection, one session"""
from __future__ import annotations
import logging
import uuid
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect, status

from .asr import WhisperTranscriber
from .codec import ErrorMessage, UserTurnMessage, decode, encode
from .config import RelaySettings
from .errors import FATAL_CLOSE, DecodeError, ProtocolError, RegistryError, RelayError, TranscriptionError, log_event
from .session import SessionRegistry

logger = logging.getLogger(__name__)


async def send_text_safe(ws: WebSocket, raw: str) -> None:
    try:
        await ws.send_text(raw)
    except Exception as e:
        # peer went away; the receive loop sees the disconnect next
        logger.debug(f"Dropped outbound frame: {e}")


async def send_error_safe(ws: WebSocket, exc: RelayError) -> None:
    await send_text_safe(ws, encode(ErrorMessage.from_exception(exc)))
    if exc.code in FATAL_CLOSE:
        try:
            await ws.close(code=status.WS_1011_INTERNAL_ERROR)
        except Exception as close_err:
            logger.debug(f"Close after error failed: {close_err}")


async def handle(
    ws: WebSocket,
    registry: SessionRegistry,
    settings: RelaySettings,
    transcriber: Optional[WhisperTranscriber] = None,
) -> None:
    await ws.accept()
    if not settings.relay_enabled:
        await send_error_safe(ws, RelayError("Relay disabled", code="INTERNAL"))
        return

    conn_id = str(uuid.uuid4())

    async def transmit(raw: str) -> None:
        await send_text_safe(ws, raw)

    try:
        registry.create(conn_id, transmit)
    except RegistryError as e:
        logger.error(f"Registry violation on connect: {e}")
        await send_error_safe(ws, e)
        return

    try:
        while True:
            data = await ws.receive()
            if data.get("type") == "websocket.disconnect":
                break
            text = data.get("text")
            try:
                if text is None:
                    raise DecodeError("Binary frames are not supported; send JSON text frames")
                size = len(text.encode("utf-8"))
                if size > settings.relay_max_frame_bytes:
                    raise DecodeError(f"Frame too large: {size} bytes (max: {settings.relay_max_frame_bytes})")
                event = decode(text)
            except DecodeError as e:
                log_event("decode_error", session_id=conn_id, message=e.message)
                session = registry.get(conn_id)
                if session is not None:
                    await session.report_error(e)
                else:
                    await send_error_safe(ws, e)
                continue

            session = registry.get(conn_id)
            if session is None:
                log_event("protocol_error", session_id=conn_id, phase="ENDED", event_type=type(event).__name__)
                await send_error_safe(ws, ProtocolError("Conversation has ended; open a new connection to start again"))
                continue

            # phase check comes first; the controller reports turns outside a conversation
            if transcriber is not None and isinstance(event, UserTurnMessage) and session.controller.active:
                try:
                    event = await transcriber.prepare(event)
                except TranscriptionError as e:
                    await session.report_error(e)
                    continue

            await session.handle_inbound(event)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Error in WebSocket handler for connection {conn_id}: {e}")
        await send_error_safe(ws, RelayError(f"Connection error: {e}", code="INTERNAL"))
    finally:
        session = registry.get(conn_id)
        if session is not None:
            await session.on_close()
        log_event("connection_closed", session_id=conn_id)
