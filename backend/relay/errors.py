"""Error taxonomy & structured logging helpers"""
from __future__ import annotations
import time, json, logging
from typing import Any, Optional

logger = logging.getLogger("voicerelay.relay")

FATAL_CLOSE = {"REGISTRY_VIOLATION", "INTERNAL"}
RECOVERABLE = {"DECODE_ERROR", "PROTOCOL_VIOLATION", "PROVIDER_FAIL", "PROVIDER_TIMEOUT", "ASR_FAIL"}


class RelayError(Exception):
    """Base for every failure that is reported to the client as an ``error`` frame."""
    code = "INTERNAL"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    @property
    def recoverable(self) -> bool:
        return self.code in RECOVERABLE


class DecodeError(RelayError):
    """Inbound frame could not be parsed into a known event."""
    code = "DECODE_ERROR"


class ProtocolError(RelayError):
    """Event is well formed but illegal in the current phase."""
    code = "PROTOCOL_VIOLATION"


class ProviderError(RelayError):
    code = "PROVIDER_FAIL"


class ProviderTimeout(ProviderError):
    code = "PROVIDER_TIMEOUT"


class TranscriptionError(RelayError):
    code = "ASR_FAIL"


class RegistryError(RelayError):
    """Lifecycle bug: the connection registry invariant was violated."""
    code = "REGISTRY_VIOLATION"


def log_event(event: str, **fields: Any) -> None:
    payload = {"ts": time.time(), "event": event, **fields}
    logger.info(json.dumps(payload, ensure_ascii=False, default=str))
