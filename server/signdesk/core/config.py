from functools import lru_cache
from typing import List, Optional

from pydantic import AnyHttpUrl, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from signdesk.core.logging import get_logger

logger = get_logger(__name__)

RECOVERY_POSTURES = {"verified", "aggressive"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = Field(default="SignDesk")
    environment: str = Field(default="development")
    database_url: str = Field(default="sqlite+aiosqlite:///./signdesk.db")
    allowed_origins: List[AnyHttpUrl] = Field(default_factory=list)

    # Signing provider (Adobe Sign REST v6 compatible)
    esign_base_url: Optional[str] = Field(default=None, description="Provider API access point, e.g. https://api.na1.adobesign.com/")
    esign_access_token: Optional[str] = Field(default=None, description="Bearer token used for every provider call")
    esign_client_id: Optional[str] = Field(default=None, description="Client id echoed back during webhook verification")
    esign_webhook_url: Optional[str] = Field(default=None, description="Public URL registered for provider webhooks")

    # Transport retry policy
    esign_max_attempts: int = Field(default=5, description="Attempts per provider call, including the first")
    esign_retry_base_delay_seconds: float = Field(default=3.0, description="Base delay of the exponential backoff")
    esign_retry_jitter_seconds: float = Field(default=1.0, description="Upper bound of the random jitter added to each delay")
    esign_timeout_seconds: float = Field(default=180.0, description="Total timeout of the first attempt")
    esign_timeout_step_seconds: float = Field(default=30.0, description="Timeout added for every further attempt")
    esign_connect_timeout_seconds: float = Field(default=30.0, description="Connect timeout of every attempt")
    esign_default_retry_after_seconds: int = Field(
        default=3600,
        description="Wait applied when a 429 response carries no retryAfter hint",
    )

    # Ambiguous creation recovery
    recovery_posture: str = Field(
        default="verified",
        description="'verified' reports NotFound as failure; 'aggressive' marks the document sent with recoveryApplied",
    )
    recovery_search_window_minutes: int = Field(default=60, description="How far back agreement searches look")

    @model_validator(mode="before")
    @classmethod
    def validate_recovery_configuration(cls, data: dict) -> dict:
        """
        Normalise and validate the recovery posture.

        The aggressive posture trades correctness for availability, so an
        explicit opt-in is logged every time settings are built with it.
        """
        data = dict(data)
        posture = str(data.get("recovery_posture", "verified")).strip().lower()
        if posture not in RECOVERY_POSTURES:
            raise ValueError(f"recovery_posture must be one of {RECOVERY_POSTURES}, got '{posture}'")
        data["recovery_posture"] = posture
        if posture == "aggressive":
            logger.warning("settings.recovery_posture.aggressive")
        return data

    @model_validator(mode="after")
    def check_retry_policy(self) -> "Settings":
        if self.esign_max_attempts < 1:
            raise ValueError("esign_max_attempts must be at least 1")
        for name in (
            "esign_retry_base_delay_seconds",
            "esign_timeout_seconds",
            "esign_connect_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.esign_retry_jitter_seconds < 0 or self.esign_timeout_step_seconds < 0:
            raise ValueError("jitter and timeout step cannot be negative")
        if self.esign_default_retry_after_seconds <= 0:
            raise ValueError("esign_default_retry_after_seconds must be positive")
        return self

    @property
    def provider_configured(self) -> bool:
        return bool(self.esign_base_url and self.esign_access_token)


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    The same instance is returned for the whole application lifecycle so
    that every component sees one consistent configuration.
    """
    return Settings()


def clear_settings_cache() -> None:
    """
    Clear the cached settings instance.

    Useful for testing or when configuration needs to be reloaded.
    """
    get_settings.cache_clear()
