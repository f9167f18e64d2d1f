"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bridge.errors import ConfigError

DEFAULT_REALTIME_URL = "wss://api.openai.com/v1/realtime"


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # OpenAI Realtime
    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_realtime_model: str = Field(default="gpt-realtime", validation_alias="OPENAI_REALTIME_MODEL")
    openai_realtime_voice: str | None = Field(default=None, validation_alias="OPENAI_REALTIME_VOICE")
    openai_transcription_model: str | None = Field(
        default="gpt-4o-transcribe",
        validation_alias="OPENAI_TRANSCRIPTION_MODEL",
    )
    openai_realtime_url: str = Field(default=DEFAULT_REALTIME_URL, validation_alias="OPENAI_REALTIME_URL")
    # Twilio Media Streams only speaks G.711 mu-law.
    openai_audio_format: str = Field(default="audio/pcmu")

    # Bridge
    public_base_url: str | None = Field(
        default=None,
        validation_alias="VOX_PUBLIC_BASE_URL",
        description="Public https base URL Twilio can reach (e.g. https://<ngrok>.ngrok-free.app).",
    )
    agent_url: str | None = Field(
        default=None,
        validation_alias="VOX_AGENT_URL",
        description="HTTP endpoint answering query_agent tool calls.",
    )
    agent_cmd: str | None = Field(
        default=None,
        validation_alias="VOX_AGENT_CMD",
        description="Shell command of a JSON-lines agent answering query_agent tool calls.",
    )
    log_dir: Path = Field(default=Path("./logs"), validation_alias="VOX_LOG_DIR")
    initial_greeting: str | None = Field(default=None, validation_alias="VOX_INITIAL_GREETING")

    # Twilio (outbound dialing)
    twilio_account_sid: str | None = Field(default=None, validation_alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = Field(default=None, validation_alias="TWILIO_AUTH_TOKEN")

    @field_validator(
        "openai_api_key",
        "openai_realtime_voice",
        "openai_transcription_model",
        "public_base_url",
        "agent_url",
        "agent_cmd",
        "initial_greeting",
        "twilio_account_sid",
        "twilio_auth_token",
        mode="before",
    )
    @classmethod
    def blank_is_unset(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("public_base_url", "agent_url")
    @classmethod
    def require_http_url(cls, value: str | None) -> str | None:
        if value is None:
            return value
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"Invalid URL: {value}")
        return value

    @model_validator(mode="after")
    def single_agent_transport(self) -> Settings:
        if self.agent_url and self.agent_cmd:
            raise ValueError("Set only one of VOX_AGENT_URL or VOX_AGENT_CMD")
        return self


def load_settings(*, env_file: str | Path | None = ".env") -> Settings:
    """Build and validate settings, raising ConfigError on any problem."""

    try:
        settings = Settings(_env_file=env_file)
    except ValidationError as exc:
        messages = "; ".join(str(err.get("msg", "")) for err in exc.errors())
        raise ConfigError(messages or str(exc)) from exc

    if not settings.openai_api_key:
        raise ConfigError("Missing OPENAI_API_KEY")
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated Settings instance."""

    return load_settings()
