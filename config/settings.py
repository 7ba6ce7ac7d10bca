"""Application settings and configuration management."""
from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or defaults."""

    DB_PATH: str = Field(default="data/interview.db")

    DEFAULT_LANGUAGE: str = "it"
    DEFAULT_MAX_DURATION_MINS: int = Field(default=10, ge=1)
    SECONDS_PER_TURN: int = Field(default=45, ge=5)

    QUALITY_GATE_ENABLED: bool = True
    QUALITY_PASS_SCORE: int = Field(default=80, ge=0, le=100)
    MAX_REGENERATIONS: int = Field(default=1, ge=0, le=1)
    BRIDGE_STEM_LIMIT: int = Field(default=14, ge=1)

    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com"
    AI_REVIEW_MODEL: str = "gpt-4o-mini"
    DASHBOARD_WINDOW_HOURS: int = Field(default=24, ge=1, le=168)
    DASHBOARD_MAX_TURNS: int = Field(default=5000, ge=500, le=20000)

    LEXICON_OVERRIDES: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", validate_assignment=True, extra="ignore")


settings = Settings()
