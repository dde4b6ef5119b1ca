"""
Application configuration management using Pydantic Settings.

Settings are read from ``ADFLOW_*`` environment variables and an optional
``.env`` file. ``get_settings`` returns a cached instance so every
component sees the same configuration.
"""
from __future__ import annotations

import logging
import os
import sys
import tempfile
from functools import lru_cache
from typing import Any, Dict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the flow engine, scheduler and rule checker."""

    model_config = SettingsConfigDict(
        env_prefix="ADFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Persistence
    database_url: str = Field(default="sqlite:///adflow.db", description="SQLAlchemy URL of the engine store")
    database_echo: bool = Field(default=False)
    metrics_database_url: str = Field(
        default="sqlite:///adflow.db",
        description="SQLAlchemy URL of the database holding the wide metrics table",
    )
    metrics_table: str = Field(default="ads_merge_data")

    # Scheduling
    scheduler_timezone: str = Field(default="UTC")
    rule_check_cron: str = Field(default="0 * * * *", description="Cadence of the automation rule check")

    # Node collaborators
    scratch_dir: str = Field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "adflow"))
    datasources: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Registered datasources by id, each with db_type, host, port, username, password, database",
    )
    hosts: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Registered remote hosts by id, each with host, port, username and credentials",
    )

    # Logging
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()


def configure_logging(settings: Settings) -> None:
    """Configure the root logger from settings."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
