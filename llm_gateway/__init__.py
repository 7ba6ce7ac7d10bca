from __future__ import annotations  # Re-export llm_gateway public API

from .llm_gateway import (
    Generation,
    HttpClient,
    HttpResponse,
    LlmGatewayError,
    bind_routes,
    chat,
    generate_object,
    generate_text,
    route_model,
)

__all__ = [
    "Generation",
    "HttpClient",
    "HttpResponse",
    "LlmGatewayError",
    "bind_routes",
    "chat",
    "generate_object",
    "generate_text",
    "route_model",
]
