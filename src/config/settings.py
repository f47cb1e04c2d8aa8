"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from realtime.errors import ConfigurationMissing


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")
    port: int = Field(
        default=3000,
        validation_alias=AliasChoices("vcr_port", "port"),
        description="Listening port; the hosting platform injects VCR_PORT.",
    )

    # OpenAI Realtime
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("openai_api_key_secret", "openai_api_key"),
    )
    openai_model: str | None = Field(default=None, description="Realtime model identifier.")
    openai_realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    openai_voice: str = Field(default="alloy")
    openai_temperature: float = Field(default=0.8, ge=0.6, le=1.2)
    openai_transcription_model: str = Field(default="whisper-1")
    system_message_path: Path = Field(
        default=Path("./system-message.txt"),
        description="Optional instructions file; the bundled prompt is used when absent or empty.",
    )

    # Vonage Voice
    server_url: str | None = Field(
        default=None,
        description="Public host (optionally with scheme) Vonage uses for webhooks and the media socket.",
    )
    answer_greeting_text: str = Field(
        default="担当者にお繋ぎいたしますので、このまま少々お待ちください。",
    )
    answer_language: str = Field(default="ja-JP")

    # Relay policy
    inbound_sample_rate: int = Field(default=16000, gt=0)
    ai_sample_rate: int = Field(default=24000, gt=0)
    frame_ms: int = Field(default=20, gt=0)
    resample_method: Literal["decimate", "linear"] = Field(default="decimate")
    delivery_policy: Literal["immediate", "buffered"] = Field(default="immediate")
    flush_interval_ms: int = Field(default=1000, gt=0)
    session_update_delay_ms: int = Field(default=250, ge=0)
    greeting_delay_ms: int = Field(default=1000, ge=0)
    send_initial_greeting: bool = Field(default=True)
    truncate_min_ms: int = Field(default=500, ge=0)
    truncate_max_ms: int = Field(default=5000, ge=0)
    truncate_default_ms: int = Field(
        default=1500,
        ge=0,
        description="Offset used when a barge-in happens before any audio of the item arrived.",
    )

    # Weather tool
    open_weather_api_key: str | None = Field(default=None)
    weather_country_code: str = Field(default="JP")
    weather_language: str = Field(default="ja")
    weather_units: str = Field(default="metric")


REQUIRED_SETTINGS: dict[str, str] = {
    "openai_api_key": "OPENAI_API_KEY_SECRET or OPENAI_API_KEY",
    "openai_model": "OPENAI_MODEL",
    "server_url": "SERVER_URL",
}


def validate_required_settings(settings: Settings) -> None:
    """Raise ConfigurationMissing when a setting the relay cannot run without is absent."""

    missing = [
        env_name
        for field_name, env_name in REQUIRED_SETTINGS.items()
        if not (getattr(settings, field_name) or "").strip()
    ]
    if missing:
        raise ConfigurationMissing(missing)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
