"""Ledger configuration using pydantic-settings.

This module defines the PipelineSettings class that reads configuration
from environment variables with the AGENT_PIPELINE_ prefix. Every field has
a default, so the CLI works out of the box against a local state directory.

Label sync to GitHub is enabled only when both AGENT_PIPELINE_GITHUB_TOKEN
and AGENT_PIPELINE_GITHUB_REPOSITORY are set.
"""

import logging
from typing import List, Optional, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_pipeline.events.emitter import EventSinkType


STORE_BACKENDS = ("memory", "file", "postgres")


class PipelineSettings(BaseSettings):
    """Ledger configuration from environment variables.

    All environment variables are prefixed with AGENT_PIPELINE_ (e.g.,
    AGENT_PIPELINE_STATE_DIR).
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_PIPELINE_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Storage Configuration
    # -------------------------------------------------------------------------
    # One of memory, file, postgres
    store_backend: str = "file"

    # Root directory of the file store (one subdirectory per entity)
    state_dir: str = ".agent/state"

    # PostgreSQL connection string, required for the postgres backend
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: Optional[str] = None

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Repository whose issue labels mirror entity phases, as owner/repo
    github_repository: Optional[str] = None

    # Prefix shared by all phase labels
    label_prefix: str = "agent:"

    # -------------------------------------------------------------------------
    # Retry Configuration
    # -------------------------------------------------------------------------
    max_conflict_retries: int = 5
    conflict_base_delay: float = 0.05
    conflict_max_delay: float = 2.0

    sync_max_retries: int = 3
    sync_base_delay: float = 1.0
    sync_max_delay: float = 30.0
    sync_timeout_seconds: float = 10.0

    # -------------------------------------------------------------------------
    # Observability Configuration
    # -------------------------------------------------------------------------
    # Comma-separated event sinks (logging, metrics)
    event_sinks: str = "logging"

    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in STORE_BACKENDS:
            raise ValueError(
                f"store_backend must be one of {', '.join(STORE_BACKENDS)}"
            )
        return v

    @field_validator("state_dir")
    @classmethod
    def validate_state_dir(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("state_dir cannot be empty")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that database URL has a PostgreSQL scheme."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("github_base_url")
    @classmethod
    def validate_github_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("github_base_url must start with http:// or https://")
        return v

    @field_validator("github_repository")
    @classmethod
    def validate_github_repository(cls, v: Optional[str]) -> Optional[str]:
        """Validate the owner/repo format."""
        if v is None or not v.strip():
            return None
        owner, _, repo = v.strip().partition("/")
        if not owner or not repo or "/" in repo:
            raise ValueError("github_repository must be in owner/repo format")
        return f"{owner}/{repo}"

    @field_validator("label_prefix")
    @classmethod
    def validate_label_prefix(cls, v: str) -> str:
        if not v:
            raise ValueError("label_prefix cannot be empty")
        return v

    @field_validator("max_conflict_retries", "sync_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry counts cannot be negative")
        return v

    @field_validator(
        "conflict_base_delay",
        "conflict_max_delay",
        "sync_base_delay",
        "sync_max_delay",
    )
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry delays cannot be negative")
        return v

    @field_validator("sync_timeout_seconds")
    @classmethod
    def validate_sync_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("sync_timeout_seconds must be positive")
        return v

    @field_validator("event_sinks")
    @classmethod
    def validate_event_sinks(cls, v: str) -> str:
        valid = {sink.value for sink in EventSinkType}
        for name in _split_csv(v):
            if name not in valid:
                raise ValueError(
                    f"unknown event sink {name!r}; expected one of "
                    f"{', '.join(sorted(valid))}"
                )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {v!r}")
        return level

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @property
    def sync_enabled(self) -> bool:
        return bool(self.github_token and self.github_repository)

    @property
    def repository_parts(self) -> Tuple[str, str]:
        """The configured repository as (owner, repo)."""
        if not self.github_repository:
            raise ValueError("github_repository is not configured")
        owner, _, repo = self.github_repository.partition("/")
        return owner, repo

    @property
    def event_sink_types(self) -> List[EventSinkType]:
        return [EventSinkType(name) for name in _split_csv(self.event_sinks)]


def _split_csv(value: str) -> List[str]:
    return [part.strip().lower() for part in value.split(",") if part.strip()]


def get_settings() -> PipelineSettings:
    """Create and return a PipelineSettings instance.

    Raises:
        pydantic.ValidationError: If any configured value is invalid.
    """
    return PipelineSettings()
