"""Relay configuration (environment / .env driven)"""
from __future__ import annotations
import logging
from typing import Any, Dict
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

PROVIDERS = {"openai", "echo"}
SPEAKING_POLICIES = {"estimate", "client_ack"}
TRANSCRIBERS = {"none", "whisper"}


class RelaySettings(BaseSettings):
    """Configuration settings for the conversational relay"""

    relay_enabled: bool = True
    relay_protocol_version: int = 1

    # Provider settings
    relay_provider: str = "openai"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 256
    openai_temperature: float = 0.7
    relay_system_prompt: str = "You are a friendly voice assistant. Keep replies to two or three conversational sentences."
    relay_provider_timeout_s: float = 30.0
    # 0 sends the whole conversation to the provider
    relay_max_context_turns: int = 0
    relay_echo_delay_s: float = 0.0

    # Conversation settings
    relay_started_message: str = "Ready to chat!"
    relay_opening_turn: str = ""

    # Turn-taking settings
    relay_speaking_policy: str = "estimate"
    relay_speaking_ms_per_char: int = 60
    relay_speaking_min_ms: int = 500
    relay_speaking_max_ms: int = 30000

    # Transport settings
    relay_max_frame_bytes: int = 8 * 1024 * 1024

    # Speech-to-text settings
    relay_transcriber: str = "none"
    relay_model_whisper: str = "small-int8"
    relay_asr_timeout_s: float = 10.0

    relay_log_latency: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._validate_config()

    def _validate_config(self):
        """Validate configuration values and raise errors for invalid settings"""
        errors = []

        if self.relay_provider not in PROVIDERS:
            errors.append(f"relay_provider must be one of {sorted(PROVIDERS)}, got {self.relay_provider!r}")
        if self.relay_speaking_policy not in SPEAKING_POLICIES:
            errors.append(f"relay_speaking_policy must be one of {sorted(SPEAKING_POLICIES)}, got {self.relay_speaking_policy!r}")
        if self.relay_transcriber not in TRANSCRIBERS:
            errors.append(f"relay_transcriber must be one of {sorted(TRANSCRIBERS)}, got {self.relay_transcriber!r}")

        if self.relay_provider_timeout_s <= 0 or self.relay_provider_timeout_s > 300:
            errors.append(f"relay_provider_timeout_s must be between 0 and 300, got {self.relay_provider_timeout_s}")
        if self.relay_max_context_turns < 0:
            errors.append(f"relay_max_context_turns must be >= 0, got {self.relay_max_context_turns}")
        if self.relay_echo_delay_s < 0:
            errors.append(f"relay_echo_delay_s must be >= 0, got {self.relay_echo_delay_s}")

        if self.relay_speaking_ms_per_char < 0:
            errors.append(f"relay_speaking_ms_per_char must be >= 0, got {self.relay_speaking_ms_per_char}")
        if self.relay_speaking_min_ms < 0 or self.relay_speaking_min_ms > self.relay_speaking_max_ms:
            errors.append(
                f"relay_speaking_min_ms must be between 0 and relay_speaking_max_ms ({self.relay_speaking_max_ms}), "
                f"got {self.relay_speaking_min_ms}"
            )
        if self.relay_speaking_max_ms > 120000:
            errors.append(f"relay_speaking_max_ms must be <= 120000, got {self.relay_speaking_max_ms}")

        if self.relay_max_frame_bytes < 1024:
            errors.append(f"relay_max_frame_bytes must be >= 1024, got {self.relay_max_frame_bytes}")
        if self.relay_asr_timeout_s < 1.0 or self.relay_asr_timeout_s > 60.0:
            errors.append(f"relay_asr_timeout_s must be between 1.0 and 60.0, got {self.relay_asr_timeout_s}")
        if not 0.0 <= self.openai_temperature <= 2.0:
            errors.append(f"openai_temperature must be between 0.0 and 2.0, got {self.openai_temperature}")
        if self.openai_max_tokens < 1:
            errors.append("openai_max_tokens must be >= 1")

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
            logger.error(error_msg)
            raise ValueError(error_msg)

    def speaking_duration_ms(self, text: str) -> int:
        """Server-side estimate of how long the client needs to play back ``text``."""
        estimate = len(text) * self.relay_speaking_ms_per_char
        return max(self.relay_speaking_min_ms, min(self.relay_speaking_max_ms, estimate))

    def as_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        if data.get("openai_api_key"):
            data["openai_api_key"] = "***"
        return data


def load_settings(**overrides: Any) -> RelaySettings:
    return RelaySettings(**overrides)
