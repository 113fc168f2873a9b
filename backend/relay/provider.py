"""Provider adapters: conversation context + new turn -> reply text"""
from __future__ import annotations
import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from .config import RelaySettings
from .errors import ProviderError, ProviderTimeout
from .turns import Role, Turn

logger = logging.getLogger(__name__)

# input_audio formats accepted by the chat completions API
AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
}

VOICE_PLACEHOLDER = "(voice message)"


@dataclass(frozen=True)
class Reply:
    text: str


class Provider(ABC):
    """Stateless: the session passes the full conversation on every call."""

    name = "base"

    @abstractmethod
    async def submit_turn(self, context: Sequence[Turn], turn: Turn) -> Reply:
        ...


class EchoProvider(Provider):
    """Local fallback that echoes the user's text"""

    name = "echo"

    def __init__(self, delay_s: float = 0.0):
        self.delay_s = delay_s

    async def submit_turn(self, context: Sequence[Turn], turn: Turn) -> Reply:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if turn.content.strip():
            text = f"I heard: {turn.content.strip()}. Thanks for chatting with the relay."
        else:
            text = "I received your voice message, but I can only echo text in local mode."
        return Reply(text=text)


class OpenAIProvider(Provider):
    """Chat completions via the OpenAI API"""

    name = "openai"

    def __init__(self, settings: RelaySettings, client: Any = None):
        self.settings = settings
        if client is None:
            import openai
            client = openai.AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.relay_provider_timeout_s,
            )
        self.client = client

    def _window(self, context: Sequence[Turn]) -> Sequence[Turn]:
        limit = self.settings.relay_max_context_turns
        if limit and len(context) > limit:
            return context[-limit:]
        return context

    @staticmethod
    def _history_message(t: Turn) -> Dict[str, Any]:
        return {"role": t.role.value, "content": t.content or VOICE_PLACEHOLDER}

    @staticmethod
    def _turn_message(turn: Turn) -> Dict[str, Any]:
        if turn.content.strip() or not turn.audio:
            return {"role": "user", "content": turn.content}
        fmt = AUDIO_FORMATS.get((turn.mime_type or "").split(";")[0].strip().lower())
        if fmt is None:
            raise ProviderError(f"Unsupported audio type for provider: {turn.mime_type}")
        return {
            "role": "user",
            "content": [
                {"type": "input_audio", "input_audio": {"data": base64.b64encode(turn.audio).decode(), "format": fmt}},
                {"type": "text", "text": "Respond naturally to the audio message, in the language the user spoke."},
            ],
        }

    def build_messages(self, context: Sequence[Turn], turn: Turn) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if self.settings.relay_system_prompt:
            messages.append({"role": "system", "content": self.settings.relay_system_prompt})
        messages.extend(self._history_message(t) for t in self._window(context))
        messages.append(self._turn_message(turn))
        return messages

    async def submit_turn(self, context: Sequence[Turn], turn: Turn) -> Reply:
        import openai

        messages = self.build_messages(context, turn)
        try:
            resp = await self.client.chat.completions.create(
                model=self.settings.openai_model,
                messages=messages,
                max_tokens=self.settings.openai_max_tokens,
                temperature=self.settings.openai_temperature,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeout(f"Provider timed out: {e}") from e
        except openai.RateLimitError as e:
            raise ProviderError("Provider rate limit reached, please retry shortly") from e
        except openai.APIError as e:
            raise ProviderError(f"Provider request failed: {e}") from e

        text = ""
        if resp.choices:
            text = (resp.choices[0].message.content or "").strip()
        if not text:
            raise ProviderError("Provider returned an empty reply")
        return Reply(text=text)


def build_provider(settings: RelaySettings) -> Provider:
    if settings.relay_provider == "openai":
        if settings.openai_api_key:
            logger.info(f"Using OpenAI provider with model {settings.openai_model}")
            return OpenAIProvider(settings)
        logger.info("No OpenAI API key provided, using local fallback mode")
    return EchoProvider(delay_s=settings.relay_echo_delay_s)
