"""Wire protocol: JSON text frames <-> typed events.

Every frame is a JSON object tagged by ``type``. Inbound and outbound events
are closed unions of pydantic models, so an unknown tag or a malformed field
is rejected here and never reaches the session.
"""
from __future__ import annotations
import json
from typing import Annotated, Literal, Optional, Union

from pydantic import Base64Bytes, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from .errors import DecodeError, RelayError


class MessageType:
    """Message type constants for the relay protocol"""
    # client -> server
    START = "start"
    USER_TURN = "user_turn"
    INTERRUPT = "interrupt"
    END = "end"
    SPEAKING_FINISHED = "speaking_finished"
    # server -> client
    STARTED = "started"
    ASSISTANT_TURN = "assistant_turn"
    SPEAKING_STARTED = "speaking_started"
    SPEAKING_STOPPED = "speaking_stopped"
    INTERRUPTED = "interrupted"
    ENDED = "ended"
    ERROR = "error"


# Tags spoken by first-generation browser clients
LEGACY_TYPES = {
    "start_conversation": MessageType.START,
    "audio_data": MessageType.USER_TURN,
    "natural_interrupt": MessageType.INTERRUPT,
    "end_conversation": MessageType.END,
}


class Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


# WebSocket protocol message models (client -> server)
class StartMessage(Event):
    type: Literal["start"] = "start"


class UserTurnMessage(Event):
    """One user turn: text, an opaque base64 audio payload, or both"""
    type: Literal["user_turn"] = "user_turn"
    text: Optional[str] = None
    audio: Optional[Base64Bytes] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")

    @field_validator("text", "mime_type")
    @classmethod
    def _encodable(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                v.encode("utf-8")
            except UnicodeEncodeError:
                raise ValueError("must be valid UTF-8 text")
        return v

    @model_validator(mode="after")
    def _require_content(self):
        has_text = bool(self.text and self.text.strip())
        if not has_text and not self.audio:
            raise ValueError("user_turn requires non-empty text or audio")
        if self.audio and not self.mime_type:
            raise ValueError("user_turn audio requires mimeType")
        return self


class InterruptMessage(Event):
    type: Literal["interrupt"] = "interrupt"


class EndMessage(Event):
    type: Literal["end"] = "end"


class SpeakingFinishedMessage(Event):
    """Client acknowledgment that playback of the assistant turn completed"""
    type: Literal["speaking_finished"] = "speaking_finished"


# server -> client
class StartedMessage(Event):
    type: Literal["started"] = "started"
    message: str


class AssistantTurnMessage(Event):
    type: Literal["assistant_turn"] = "assistant_turn"
    text: str
    latency_ms: float = Field(alias="latencyMs", ge=0)


class SpeakingStartedMessage(Event):
    type: Literal["speaking_started"] = "speaking_started"


class SpeakingStoppedMessage(Event):
    type: Literal["speaking_stopped"] = "speaking_stopped"


class InterruptedMessage(Event):
    type: Literal["interrupted"] = "interrupted"
    message: str


class EndedMessage(Event):
    type: Literal["ended"] = "ended"
    message: str


class ErrorMessage(Event):
    type: Literal["error"] = "error"
    message: str
    code: str
    recoverable: bool

    @classmethod
    def from_exception(cls, exc: RelayError) -> "ErrorMessage":
        return cls(message=exc.message, code=exc.code, recoverable=exc.recoverable)


InboundEvent = Annotated[
    Union[StartMessage, UserTurnMessage, InterruptMessage, EndMessage, SpeakingFinishedMessage],
    Field(discriminator="type"),
]
OutboundEvent = Annotated[
    Union[
        StartedMessage,
        AssistantTurnMessage,
        SpeakingStartedMessage,
        SpeakingStoppedMessage,
        InterruptedMessage,
        EndedMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES = {
    MessageType.START,
    MessageType.USER_TURN,
    MessageType.INTERRUPT,
    MessageType.END,
    MessageType.SPEAKING_FINISHED,
}

_inbound = TypeAdapter(InboundEvent)
_outbound = TypeAdapter(OutboundEvent)


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()) if p not in INBOUND_TYPES)
    msg = first.get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg


def decode(raw: Union[str, bytes]):
    """Parse one inbound frame; raises DecodeError for anything not in the protocol."""
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError):
        # deeply nested input raises RecursionError
        raise DecodeError("Invalid JSON")
    if not isinstance(data, dict):
        raise DecodeError("Message must be a JSON object")
    mtype = data.get("type")
    if not isinstance(mtype, str) or not mtype:
        raise DecodeError("Message must contain a 'type' field")
    mtype = LEGACY_TYPES.get(mtype, mtype)
    if mtype not in INBOUND_TYPES:
        raise DecodeError(f"Unknown message type: {mtype}")
    data["type"] = mtype
    try:
        return _inbound.validate_python(data)
    except ValidationError as e:
        raise DecodeError(f"Malformed {mtype} message ({_describe(e)})")


def decode_outbound(raw: Union[str, bytes]):
    """Parse a server frame; used by clients and tests."""
    try:
        return _outbound.validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"Malformed server message ({_describe(e)})")


def encode(event: Event) -> str:
    return event.model_dump_json(by_alias=True, exclude_none=True)
