"""
Configuration model for the StudyBuddy voice subsystem.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("studybuddy-voice.config")

DEFAULT_SPEECHIFY_URL = "https://api.sws.speechify.com/v1/audio/speech"


class VoiceSettings(BaseModel):
    """Settings for the voice router, the usage ledger and the HTTP service.

    Every field can be set from the environment (or a ``.env`` file) via
    :meth:`from_env`; the environment variable is the upper-cased field name.
    """

    # Premium vendor
    speechify_api_key: Optional[str] = Field(
        default=None,
        description="Bearer key for the premium speech vendor; premium is disabled without it"
    )
    speechify_api_url: str = Field(
        default=DEFAULT_SPEECHIFY_URL,
        description="Premium synthesis endpoint"
    )
    tts_model: str = Field(
        default="simba-multilingual",
        description="Vendor model identifier"
    )
    premium_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Timeout for one premium synthesis call"
    )
    max_input_chars: int = Field(
        default=2000,
        ge=10,
        description="Premium input ceiling; longer text is truncated with '...'"
    )

    # Quota
    monthly_character_limit: int = Field(
        default=150000,
        ge=0,
        description="Default characters_limit for new subscriptions"
    )
    pro_term_days: int = Field(
        default=30,
        ge=1,
        description="Length of a pro term granted on approval"
    )
    low_quota_threshold: int = Field(
        default=10000,
        ge=0,
        description="Remaining characters under which the status message warns"
    )

    # Cache
    server_cache_size: int = Field(default=100, ge=1)
    client_cache_size: int = Field(default=50, ge=1)
    cache_ttl_seconds: float = Field(default=1800.0, gt=0.0)
    cache_key_prefix_chars: int = Field(default=200, ge=1)

    # Fallback voice
    default_voice: str = Field(default="henry")
    default_language: str = Field(default="en-IN")
    keepalive_interval_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Pause/resume interval keeping long on-device utterances alive"
    )

    # Service
    database_url: str = Field(default="sqlite:///studybuddy_voice.db")
    operator_token: Optional[str] = Field(
        default=None,
        description="Bearer token required for operator subscription actions"
    )
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: str = Field(default="INFO")

    @field_validator("database_url")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Accept Heroku-style ``postgres://`` URLs."""
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "VoiceSettings":
        """Build settings from environment variables.

        Args:
            dotenv: Load a ``.env`` file first when present.

        Returns:
            VoiceSettings with environment overrides applied.
        """
        if dotenv and not load_dotenv():
            logger.debug(".env file not found, using process environment only")

        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = os.getenv(name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)
