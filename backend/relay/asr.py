"""Speech-to-text for audio-only user turns (faster-whisper)"""
from __future__ import annotations
import asyncio
import io
import threading
import time
from typing import Any, Optional, Tuple

import numpy as np

from .codec import UserTurnMessage
from .config import RelaySettings
from .errors import TranscriptionError, log_event

SAMPLE_RATE = 16000
PCM_MIME_TYPES = {"audio/pcm", "audio/l16", "audio/x-raw"}


def _canonical_model_name(name: str) -> str:
    # Normalize names like 'small-int8' -> 'small'
    if name.endswith('-int8'):
        return name.rsplit('-int8', 1)[0]
    return name


def pcm_int16_bytes_to_float32(pcm: bytes) -> np.ndarray:
    if not pcm:
        return np.zeros(0, dtype=np.float32)
    usable = len(pcm) - (len(pcm) % 2)
    return np.frombuffer(pcm[:usable], dtype=np.int16).astype(np.float32) / 32768.0


class WhisperTranscriber:
    """Lazy-loaded Whisper model; audio is decoded on a worker thread."""

    def __init__(self, model_name: str = "small-int8", timeout_s: float = 10.0, model: Any = None):
        self.model_name = model_name
        self.timeout_s = timeout_s
        self._model = model
        self._model_lock = threading.Lock()
        self._model_load_failed = False

    def load_model(self) -> Optional[Any]:
        if self._model is not None:
            return self._model
        with self._model_lock:
            if self._model is None and not self._model_load_failed:
                try:
                    from faster_whisper import WhisperModel
                    self._model = WhisperModel(_canonical_model_name(self.model_name), device="cpu", compute_type="int8")
                except Exception as e:
                    self._model_load_failed = True
                    log_event("asr_model_load_fail", model=self.model_name, error=str(e))
        return self._model

    def model_available(self) -> bool:
        return self.load_model() is not None

    def transcribe(self, audio: bytes, mime_type: Optional[str]) -> Tuple[str, float]:
        """Transcribe one payload; returns (text, decode_ms)."""
        model = self.load_model()
        if model is None:
            raise TranscriptionError("Speech recognition model unavailable")
        mime = (mime_type or "").split(";")[0].strip().lower()
        if mime in PCM_MIME_TYPES:
            source: Any = pcm_int16_bytes_to_float32(audio)
            if source.size == 0:
                return "", 0.0
        else:
            # container formats (wav, webm, ogg, mp3) are demuxed by faster-whisper
            source = io.BytesIO(audio)
        start = time.time()
        segments, _info = model.transcribe(source, beam_size=1, vad_filter=True)
        text = " ".join(seg.text.strip() for seg in segments if seg.text.strip()).strip()
        return text, (time.time() - start) * 1000.0

    async def prepare(self, event: UserTurnMessage) -> UserTurnMessage:
        """Fill in ``text`` for audio-only turns; other turns pass through untouched."""
        if (event.text and event.text.strip()) or not event.audio:
            return event
        loop = asyncio.get_running_loop()
        try:
            text, decode_ms = await asyncio.wait_for(
                loop.run_in_executor(None, self.transcribe, event.audio, event.mime_type),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            raise TranscriptionError(f"Speech recognition timed out after {self.timeout_s}s")
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"Speech recognition failed: {e}") from e
        log_event("transcribed", chars=len(text), decode_ms=round(decode_ms, 2))
        if not text:
            raise TranscriptionError("No speech detected in audio")
        return event.model_copy(update={"text": text})


def build_transcriber(settings: RelaySettings) -> Optional[WhisperTranscriber]:
    if settings.relay_transcriber == "whisper":
        return WhisperTranscriber(settings.relay_model_whisper, timeout_s=settings.relay_asr_timeout_s)
    return None
