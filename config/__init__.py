"""Configuration package for the interview conversation engine."""
from .lexicons import Language, LanguagePack, pack_for, resolve_language
from .registry import (
    FALLBACK_QUESTION_KEY,
    QUALITY_REVIEW_KEY,
    TURN_KEY,
    bind_model,
    get_model,
    is_ready,
    model_id_for,
)
from .routes import AppConfig, LlmRoute, load_config, resolve_routes
from .settings import Settings, settings

__all__ = [
    "AppConfig",
    "LlmRoute",
    "load_config",
    "resolve_routes",
    "Language",
    "LanguagePack",
    "pack_for",
    "resolve_language",
    "TURN_KEY",
    "FALLBACK_QUESTION_KEY",
    "QUALITY_REVIEW_KEY",
    "bind_model",
    "get_model",
    "is_ready",
    "model_id_for",
    "Settings",
    "settings",
]
