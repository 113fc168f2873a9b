import base64
import json

import pytest

from backend.relay.codec import (
    AssistantTurnMessage,
    EndMessage,
    ErrorMessage,
    InterruptMessage,
    SpeakingFinishedMessage,
    StartMessage,
    UserTurnMessage,
    decode,
    decode_outbound,
    encode,
)
from backend.relay.errors import DecodeError, ProtocolError


def test_decode_inbound_tags():
    assert isinstance(decode('{"type":"start"}'), StartMessage)
    assert isinstance(decode('{"type":"interrupt"}'), InterruptMessage)
    assert isinstance(decode('{"type":"end"}'), EndMessage)
    assert isinstance(decode('{"type":"speaking_finished"}'), SpeakingFinishedMessage)


def test_decode_user_turn_text_and_audio():
    ev = decode(json.dumps({"type": "user_turn", "text": "price?"}))
    assert isinstance(ev, UserTurnMessage)
    assert ev.text == "price?"
    assert ev.audio is None

    payload = base64.b64encode(b"RIFF....WAVE").decode()
    ev = decode(json.dumps({"type": "user_turn", "audio": payload, "mimeType": "audio/wav"}))
    assert ev.audio == b"RIFF....WAVE"
    assert ev.mime_type == "audio/wav"


def test_decode_legacy_tags():
    payload = base64.b64encode(b"\x00\x01").decode()
    assert isinstance(decode('{"type":"start_conversation"}'), StartMessage)
    assert isinstance(decode('{"type":"natural_interrupt"}'), InterruptMessage)
    assert isinstance(decode('{"type":"end_conversation"}'), EndMessage)
    ev = decode(json.dumps({"type": "audio_data", "audio": payload, "mimeType": "audio/webm"}))
    assert isinstance(ev, UserTurnMessage)


@pytest.mark.parametrize("raw,fragment", [
    ("not json", "Invalid JSON"),
    ("[1, 2]", "JSON object"),
    ('{"text": "hi"}', "'type'"),
    ('{"type": "dance"}', "Unknown message type: dance"),
    ('{"type": "user_turn"}', "user_turn"),
    ('{"type": "user_turn", "text": "   "}', "user_turn"),
    ('{"type": "user_turn", "audio": "AAAA"}', "mimeType"),
    ('{"type": "user_turn", "audio": "***", "mimeType": "audio/wav"}', "user_turn"),
])
def test_decode_rejects_malformed(raw, fragment):
    with pytest.raises(DecodeError) as exc:
        decode(raw)
    assert fragment in exc.value.message
    assert exc.value.recoverable is True


def test_decode_ignores_unknown_fields():
    ev = decode('{"type":"start","sample_rate":16000}')
    assert isinstance(ev, StartMessage)


def test_encode_uses_wire_field_names():
    raw = encode(AssistantTurnMessage(text="Hello", latency_ms=12.5))
    assert json.loads(raw) == {"type": "assistant_turn", "text": "Hello", "latencyMs": 12.5}


def test_error_message_from_exception():
    msg = ErrorMessage.from_exception(ProtocolError("Conversation not started"))
    data = json.loads(encode(msg))
    assert data == {
        "type": "error",
        "message": "Conversation not started",
        "code": "PROTOCOL_VIOLATION",
        "recoverable": True,
    }


def test_decode_outbound():
    ev = decode_outbound('{"type":"assistant_turn","text":"hi","latencyMs":3}')
    assert isinstance(ev, AssistantTurnMessage)
    assert ev.latency_ms == 3
    with pytest.raises(DecodeError):
        decode_outbound('{"type":"assistant_turn","text":"hi","latencyMs":-1}')


def test_deeply_nested_json_is_decode_error():
    raw = '{"type":"start","x":' + "[" * 100000 + "]" * 100000 + "}"
    with pytest.raises(DecodeError) as exc:
        decode(raw)
    assert exc.value.message == "Invalid JSON"


def test_lone_surrogate_text_is_decode_error():
    with pytest.raises(DecodeError) as exc:
        decode('{"type":"user_turn","text":"hi \\ud800"}')
    assert "UTF-8" in exc.value.message
    with pytest.raises(DecodeError):
        decode('{"type":"user_turn","audio":"AAE=","mimeType":"audio/\\udfff"}')
