"""Hub configuration, loaded once at startup.

Every component receives a ``Settings`` instance through its constructor;
nothing below this module reads the process environment.

Fields are read from environment variables of the same name (upper case) or
a ``.env`` file; blank variables keep their defaults.
"""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised at startup when a required setting is missing or invalid."""


class SinkTimeouts(BaseModel):
    """Per-target delivery deadlines (seconds)."""

    analytics: float = 8.0
    crm: float = 5.0
    alert: float = 5.0
    log: float = 3.0


class Settings(BaseSettings):
    """Runtime configuration for the webhook hub."""

    # Square
    square_signature_key: str = ""
    square_access_token: str = ""
    square_environment: Literal["production", "sandbox"] = "sandbox"
    square_api_version: str = "2024-01-18"
    enrichment_enabled: bool = True
    enrichment_timeout_s: float = 7.0
    api_call_timeout_s: float = Field(
        3.0, validation_alias=AliasChoices("api_call_timeout_s", "square_api_timeout_s")
    )

    # Storage
    redis_url: str = "redis://localhost:6379/0"
    dedup_ttl_seconds: int = 86400

    # Distribution targets
    gtm_server_url: str = ""
    crm_webhook_url: str = ""
    notification_webhook_url: str = ""
    log_sink_enabled: bool = True
    high_value_threshold: float = 100.0
    analytics_sink_timeout_s: float = 8.0
    crm_sink_timeout_s: float = 5.0
    alert_sink_timeout_s: float = 5.0
    log_sink_timeout_s: float = 3.0

    # Retry
    retry_secret_key: str = ""
    max_retries: int = 5
    retry_sweep_interval_s: float = 7200.0

    max_concurrent_events: int = 32

    # legacy deployments select the live API with NODE_ENV=production
    node_env: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _apply_legacy_environment(self) -> Settings:
        if "square_environment" not in self.model_fields_set and self.node_env == "production":
            self.square_environment = "production"
        return self

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from the process environment and ``.env``."""
        return cls()

    @property
    def square_base_url(self) -> str:
        if self.square_environment == "production":
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"

    @property
    def sink_timeouts(self) -> SinkTimeouts:
        return SinkTimeouts(
            analytics=self.analytics_sink_timeout_s,
            crm=self.crm_sink_timeout_s,
            alert=self.alert_sink_timeout_s,
            log=self.log_sink_timeout_s,
        )

    def validate_settings(self) -> dict[str, list[str]]:
        """Check settings for problems.

        Returns ``{"errors": [...], "warnings": [...]}``. Errors make the hub
        unusable; warnings only disable an optional feature.
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not self.square_signature_key:
            errors.append("SQUARE_SIGNATURE_KEY is not set (webhooks will be answered with 500)")
        if self.enrichment_enabled and not self.square_access_token:
            errors.append("SQUARE_ACCESS_TOKEN is not set but enrichment is enabled")
        if "://" not in self.redis_url:
            errors.append("REDIS_URL must be a URL")

        for name, url in (
            ("GTM_SERVER_URL", self.gtm_server_url),
            ("CRM_WEBHOOK_URL", self.crm_webhook_url),
            ("NOTIFICATION_WEBHOOK_URL", self.notification_webhook_url),
        ):
            if url and "://" not in url:
                warnings.append(f"{name} is not a URL; target disabled")

        if self.retry_secret_key and len(self.retry_secret_key) <= 10:
            warnings.append("RETRY_SECRET_KEY is shorter than 11 characters")
        if self.high_value_threshold < 0:
            warnings.append("HIGH_VALUE_THRESHOLD is negative; every order will alert")

        return {"errors": errors, "warnings": warnings}

    def missing_required(self) -> list[str]:
        """Names of required env vars that are unset (for the health endpoint)."""
        missing = []
        if not self.square_signature_key:
            missing.append("SQUARE_SIGNATURE_KEY")
        if self.enrichment_enabled and not self.square_access_token:
            missing.append("SQUARE_ACCESS_TOKEN")
        return missing
