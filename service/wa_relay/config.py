"""Central configuration for the WhatsApp relay service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class ReconnectSettings(BaseModel):
    """Connection lifecycle timing (seconds)."""
    max_attempts: int = Field(5, ge=0, description="Counted reconnects before giving up until /init")
    logged_out_delay: float = Field(5.0, description="Wait after a logout before asking for a new QR")
    restart_delay: float = Field(3.0, description="Wait after a restart-required close")
    timeout_delay: float = Field(5.0, description="Wait after a timed-out connection")
    unknown_delay: float = Field(5.0, description="Wait after a close with an unrecognised reason")
    init_failure_delay: float = Field(30.0, description="Wait after the handshake itself could not be set up")
    keepalive_interval: float = Field(300.0, gt=0, description="Presence ping period while connected")


class Settings(BaseSettings):
    """Environment-driven settings for the relay."""

    # HTTP Server
    host: str = Field("0.0.0.0", description="Host interface for the FastAPI server")
    port: int = Field(3002, description="Port for the FastAPI server")

    # Bridge sidecar
    bridge_ws_url: str = Field("ws://127.0.0.1:8765", description="WebSocket URL of the WhatsApp bridge")
    bridge_request_timeout: float = Field(20.0, description="Max wait for a bridge command response (seconds)")
    wa_version_url: str = Field(
        "https://raw.githubusercontent.com/WhiskeySockets/Baileys/master/src/Defaults/baileys-version.json",
        description="Where to look up the current WhatsApp Web version",
    )
    browser_name: str = Field("Expirel", description="Linked device name shown on the phone")
    browser_agent: str = Field("Chrome", description="Linked device browser label")
    browser_version: str = Field("1.0.0", description="Linked device browser version")

    # Credentials
    auth_dir: Path = Field(ROOT_DIR / "auth_info", description="Directory holding session key material")

    # Messages
    default_country_code: str = Field("92", description="Prefix added to numbers without a country code")
    brand_url: str = Field("https://expirel.com", description="Link appended to expiry reminders")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    reconnect: ReconnectSettings = Field(default_factory=ReconnectSettings, description="Reconnect policy")

    @field_validator("default_country_code", mode="before")
    @classmethod
    def _digits_only(cls, value: object) -> object:
        if isinstance(value, str):
            digits = "".join(ch for ch in value if ch.isdigit())
            if not digits:
                raise ValueError("DEFAULT_COUNTRY_CODE must contain at least one digit")
            return digits
        return value

    @property
    def browser(self) -> list[str]:
        return [self.browser_name, self.browser_agent, self.browser_version]

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
