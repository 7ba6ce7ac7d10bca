"""JSON configuration schema for LLM routing."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict

from pydantic import BaseModel, Field


class LlmRoute(BaseModel):  # LLM endpoint configuration
    name: str
    base_url: str
    endpoint: str = "/v1/chat/completions"
    model: str
    timeout_s: float = Field(default=20.0, ge=0.1)
    max_retries: int = Field(default=1, ge=0)
    api_key_env: str | None = None
    response_format: str | None = None
    extra_headers: Dict[str, str] = Field(default_factory=dict)
    sequential: bool = False
    enforce_json: bool = True
    temperature: float | None = None

    def has_credentials(self) -> bool:  # No key needed, or its env var is set
        return not self.api_key_env or bool(os.getenv(self.api_key_env))


class AppConfig(BaseModel):  # Route table plus registry-key bindings
    llm_routes: Dict[str, LlmRoute]
    registry: Dict[str, str]


def load_config(path: Path) -> AppConfig:  # Load configuration from disk
    data = path.read_text(encoding="utf-8")
    return AppConfig.model_validate_json(data)


def resolve_routes(cfg: AppConfig) -> Dict[str, LlmRoute]:  # Map registry keys to their routes
    resolved: Dict[str, LlmRoute] = {}
    for target, route_id in cfg.registry.items():
        if route_id not in cfg.llm_routes:
            raise KeyError(f"Route '{route_id}' missing for '{target}'")
        resolved[target] = cfg.llm_routes[route_id]
    return resolved
