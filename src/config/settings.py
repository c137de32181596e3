"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from urllib.parse import urlencode

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    log_level: str = Field(default="INFO")

    # Inbound listener (Twilio Media Streams)
    listen_host: str = Field(default="0.0.0.0")
    listen_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("PORT", "LISTEN_PORT", "listen_port"),
    )
    media_stream_path: str = Field(
        default="/",
        description="WebSocket path Twilio <Stream url=...> points at.",
    )
    inbound_track: str | None = Field(
        default=None,
        description="If set, only forward media frames from this Twilio track (e.g. 'inbound').",
    )

    # Audio format announced to the transcription backend
    audio_encoding: str = Field(default="mulaw")  # Twilio sends PCMU
    sample_rate: int = Field(default=8000, gt=0)
    channels: int = Field(default=1, ge=1)

    # Transcription backend
    ws_url: str | None = Field(
        default=None,
        description="Full streaming URL. When unset it is built from deepgram_base_url + audio params.",
    )
    deepgram_base_url: str = Field(default="wss://api.deepgram.com/v1/listen")
    deepgram_api_key: str | None = Field(default=None)
    deepgram_options: dict[str, str | int | float | bool] = Field(
        default_factory=dict,
        description='Extra query options passed through verbatim, e.g. {"model": "nova-2", "punctuate": true}.',
    )
    outbound_open_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Optional bound (seconds) on the backend handshake. Unset means no bound.",
    )

    # Shutdown
    shutdown_grace_seconds: float = Field(default=5.0, ge=0.0)

    @field_validator("media_stream_path")
    @classmethod
    def ensure_leading_slash(cls, value: str) -> str:
        value = value.strip() or "/"
        if not value.startswith("/"):
            value = "/" + value
        return value

    @field_validator("audio_encoding")
    @classmethod
    def encoding_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("audio_encoding may not be empty.")
        return value


def _query_value(value: str | int | float | bool) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_backend_url(settings: Settings) -> str:
    """Return the transcription backend URL for the configured audio format."""

    if settings.ws_url:
        return settings.ws_url

    params: dict[str, str] = {
        "encoding": settings.audio_encoding,
        "sample_rate": str(settings.sample_rate),
        "channels": str(settings.channels),
    }
    for key, value in settings.deepgram_options.items():
        params[key] = _query_value(value)

    return f"{settings.deepgram_base_url.rstrip('?')}?{urlencode(params)}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
