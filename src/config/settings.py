"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INSTRUCTIONS = (
    "You are a helpful Turkish-speaking AI assistant. "
    "You are speaking with a caller on a phone line. "
    "Keep responses concise and natural (1-3 sentences max). "
    "Respond ONLY in Turkish language. Do not respond in English. "
    "Be polite and professional."
)


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")

    # SIP account
    sip_domain: str | None = Field(default=None, description="Registrar host, e.g. sip.example.com")
    sip_user: str | None = Field(default=None)
    sip_password: str | None = Field(default=None)

    # Telephony runtime
    telephony_backend: str | None = Field(
        default=None,
        description=(
            "Import path 'module:attribute' of a factory returning the telephony stack. "
            "The factory is called with the Settings instance."
        ),
    )

    # Realtime AI backend
    openai_api_key: str | None = Field(default=None)
    realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    realtime_model: str = Field(default="gpt-realtime-mini")
    realtime_voice: str = Field(default="alloy")
    realtime_instructions: str = Field(default=DEFAULT_INSTRUCTIONS)
    realtime_transcription_model: str | None = Field(
        default="whisper-1",
        description="Input transcription model; empty disables caller transcripts.",
    )
    realtime_connect_timeout_s: float = Field(default=10.0, gt=0)
    realtime_server_vad: bool = Field(
        default=True,
        description="If true, the backend detects turn boundaries (server_vad).",
    )
    realtime_vad_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    realtime_prefix_padding_ms: int = Field(default=300, ge=0)
    realtime_silence_duration_ms: int = Field(default=500, ge=0)

    # Audio
    telephony_sample_rate: int = Field(default=16000, description="Sample rate of recorder/player files.")
    ai_sample_rate: int = Field(default=24000, description="PCM16 sample rate spoken by the AI backend.")
    vad_threshold: int = Field(default=1000, ge=0, le=32767)
    vad_silence_ms: int = Field(default=500, ge=0)
    poll_interval_ms: int = Field(default=100, ge=20, le=1000)
    local_commit_on_silence: bool = Field(
        default=False,
        description="Commit the input buffer when local VAD sees the silence window elapse.",
    )

    # Playback
    playback_grace_ms: int = Field(default=500, ge=0)
    connection_tone_ms: int = Field(default=300, gt=0)
    connection_tone_hz: float = Field(default=440.0, gt=0)
    greeting_path: Path | None = Field(
        default=None,
        description="Pre-generated greeting WAV (see call-bridge-greeting).",
    )
    greeting_cache_enabled: bool = Field(
        default=True,
        description="Ask the AI for a greeting when none is available and cache its audio.",
    )
    greeting_prompt: str = Field(default="Greet caller, ask how to help.")

    scratch_dir: Path = Field(default=Path("./data/scratch"))

    @field_validator("scratch_dir")
    @classmethod
    def ensure_scratch_dir(cls, value: Path) -> Path:
        value.mkdir(parents=True, exist_ok=True)
        return value

    @property
    def greeting_cache_path(self) -> Path:
        return self.scratch_dir / "ai_greeting_cached.wav"

    def missing_credentials(self) -> list[str]:
        """Return the names of required settings that are not configured."""

        required = {
            "SIP_DOMAIN": self.sip_domain,
            "SIP_USER": self.sip_user,
            "SIP_PASSWORD": self.sip_password,
            "OPENAI_API_KEY": self.openai_api_key,
            "TELEPHONY_BACKEND": self.telephony_backend,
        }
        return [name for name, value in required.items() if not value]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
