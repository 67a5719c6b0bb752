"""
Application settings and configuration.
All secrets are loaded from environment variables.
"""

from datetime import timedelta
from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MONITOR_INTERVAL_SECONDS = 30
DEFAULT_MAX_NUM_TRIES = 5
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Twilio Configuration
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_whatsapp_number: str  # Format: whatsapp:+14155238886

    # OpenAI Configuration
    openai_api_key: str
    openai_model: str = DEFAULT_OPENAI_MODEL

    # Senders allowed to talk to the bot, e.g. ["whatsapp:+923001234567"]
    allowed_whatsapp_numbers: List[str] = []

    # Database - Use DATA_DIR for Railway persistent volume
    data_dir: str = "."

    @property
    def database_url(self) -> str:
        """Database URL with support for Railway persistent volumes."""
        return f"sqlite+aiosqlite:///{self.data_dir}/reminders.db"

    # Queue
    monitor_interval_seconds: int = DEFAULT_MONITOR_INTERVAL_SECONDS
    max_num_tries: int = DEFAULT_MAX_NUM_TRIES
    default_hour: int = 0
    selection_ttl_hours: int = 24

    @property
    def selection_ttl(self) -> Optional[timedelta]:
        """How long a pending selection stays answerable; None keeps it forever."""
        if self.selection_ttl_hours <= 0:
            return None
        return timedelta(hours=self.selection_ttl_hours)

    # Application Settings
    debug: bool = False
    verbose: bool = False
    validate_twilio_signature: bool = True
    privacy_policy_url: str = ""

    # Timezone used for inferring, storing choices and displaying datetimes
    timezone: str = "Asia/Karachi"

    @field_validator("monitor_interval_seconds")
    @classmethod
    def _fallback_monitor_interval(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_MONITOR_INTERVAL_SECONDS

    @field_validator("max_num_tries")
    @classmethod
    def _fallback_max_num_tries(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_MAX_NUM_TRIES

    @field_validator("default_hour")
    @classmethod
    def _fallback_default_hour(cls, value: int) -> int:
        return value if 0 <= value < 24 else 0

    @field_validator("openai_model")
    @classmethod
    def _fallback_openai_model(cls, value: str) -> str:
        return value or DEFAULT_OPENAI_MODEL


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
