"""Service configuration using pydantic-settings.

This module defines the AutotriageSettings class that reads configuration
from environment variables with the AUTOTRIAGE_ prefix.

Credentials (agent API key, webhook secret, GitHub token) are optional at
startup. Their absence is a fatal ConfigurationError at first use, so the
service can run with only the parts it needs configured.
"""

from typing import List, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when a required setting is missing or unusable.

    Configuration errors are not retried; the HTTP layer maps them to 500.

    Attributes:
        setting: Name of the missing or invalid setting.
    """

    def __init__(self, setting: str, message: Optional[str] = None):
        self.setting = setting
        super().__init__(message or f"{setting} is not configured")


class AutotriageSettings(BaseSettings):
    """Service configuration from environment variables.

    All environment variables are prefixed with AUTOTRIAGE_
    (e.g., AUTOTRIAGE_AGENT_API_KEY).
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOTRIAGE_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Agent task service
    # -------------------------------------------------------------------------
    agent_api_key: Optional[str] = None

    agent_api_base_url: str = "https://api.devin.ai/v1"

    agent_timeout_seconds: float = 30.0

    # -------------------------------------------------------------------------
    # GitHub
    # -------------------------------------------------------------------------
    # Shared secret for X-Hub-Signature-256 verification
    github_webhook_secret: Optional[str] = None

    # Token used to post status comments and read them back
    github_token: Optional[str] = None

    github_base_url: str = "https://api.github.com"

    # Comment phrases that request a new triage (case-insensitive)
    retriage_phrases: List[str] = ["/retriage", "@devin retriage"]

    # -------------------------------------------------------------------------
    # Workflow store
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; the in-memory store is used when unset
    database_url: Optional[str] = None

    # Where triage status is read from for dashboards: the workflow store
    # or, for deployments without one, the issue's status comments
    triage_status_source: Literal["store", "comments"] = "store"

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------
    # Bearer token callers must present on /api routes, when set
    api_token: Optional[str] = None

    log_level: str = "INFO"

    host: str = "0.0.0.0"

    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("agent_api_base_url", "github_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate that API base URLs are http(s) URLs."""
        if not v or not v.strip():
            raise ValueError("base URL cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the database URL, when given, is a PostgreSQL URL."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("retriage_phrases")
    @classmethod
    def validate_retriage_phrases(cls, v: List[str]) -> List[str]:
        """Drop blank phrases; at least one must remain."""
        phrases = [p.strip() for p in v if p and p.strip()]
        if not phrases:
            raise ValueError("retriage_phrases must contain at least one phrase")
        return phrases

    @field_validator("agent_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("agent_timeout_seconds must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> AutotriageSettings:
    """Create and return AutotriageSettings from the environment.

    Raises:
        pydantic.ValidationError: If a setting is present but invalid.
    """
    return AutotriageSettings()
