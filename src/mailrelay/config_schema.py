"""Pydantic configuration schema for mailrelay.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models at startup.

Usage:
    from mailrelay.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

import os
from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(
        default="data/mailrelay.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Reject empty paths and path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class ServerConfig(BaseModel):
    """HTTP server binding."""

    host: str = Field(default="127.0.0.1", description="Interface to bind")
    port: int = Field(default=8000, ge=1, le=65535, description="Port to listen on")


class ThreadingConfig(BaseModel):
    """Conversation threading heuristics."""

    subject_window_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Only match threads by subject if active within this many days",
    )
    min_subject_length: int = Field(
        default=5,
        ge=1,
        description="Normalized subjects shorter than this never match by subject",
    )
    require_participant_overlap: bool = Field(
        default=True,
        description="Subject matches also need at least one shared participant",
    )


class DeliveryConfig(BaseModel):
    """Endpoint delivery settings."""

    webhook_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Default webhook timeout when the endpoint config sets none",
    )
    user_agent: str = Field(default="mailrelay-webhook/1.0")
    max_response_body: int = Field(
        default=2000,
        ge=0,
        description="Webhook response bodies are truncated to this many characters",
    )
    max_payload_bytes: int = Field(
        default=1_000_000,
        ge=1024,
        description="Webhook payloads above this size drop the HTML body",
    )


class SmtpConfig(BaseModel):
    """Outgoing mail server used for forwarding endpoints and replies."""

    host: str = Field(default="localhost")
    port: int = Field(default=587, ge=1, le=65535)
    username: str | None = None
    password_env: str = Field(
        default="MAILRELAY_SMTP_PASSWORD",
        description="Environment variable holding the SMTP password",
    )
    use_starttls: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0)
    default_from: str | None = Field(
        default=None,
        description="From address for forwards when the endpoint config sets none",
    )

    @property
    def password(self) -> str | None:
        """Read the SMTP password from the environment at use time."""
        return os.environ.get(self.password_env)


class RateLimitConfig(BaseModel):
    """Per-API-key request limits."""

    enabled: bool = True
    requests_per_second: float = Field(default=10.0, gt=0)
    burst: int = Field(default=20, ge=1)


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = True


class AppConfig(BaseModel):
    """Root configuration schema for mailrelay.

    Every section has defaults, so an empty config.yaml is valid.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    threading: ThreadingConfig = Field(default_factory=ThreadingConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL used in webhook payload links",
    )
