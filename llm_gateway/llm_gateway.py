from __future__ import annotations  # LLM request gateway module

import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Generic, Optional, Protocol, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from agents.types import Usage
from config.registry import bind_model, get_model, model_id_for
from config.routes import AppConfig, LlmRoute, resolve_routes


logger = logging.getLogger(__name__)  # Module logger setup


_MODEL_LOCKS: Dict[str, threading.Lock] = {}
_MODEL_LOCKS_GUARD = threading.Lock()


class HttpClient(Protocol):  # Minimal HTTP client protocol
    def post(self, url: str, *, json: Dict[str, Any], headers: Dict[str, str], timeout: float) -> "HttpResponse": ...


class HttpResponse(Protocol):  # Minimal HTTP response protocol
    @property
    def status_code(self) -> int: ...

    def json(self) -> Any: ...

    @property
    def text(self) -> str: ...


class LlmGatewayError(RuntimeError):  # Base gateway error
    pass


T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class Generation(Generic[T]):  # Generated value plus its usage side channel
    def __init__(self, value: T, usage: Optional[Usage], model_id: Optional[str]) -> None:
        self.value = value
        self.usage = usage
        self.model_id = model_id


def _lock_for(cfg: LlmRoute) -> threading.Lock:
    key = cfg.name or f"{cfg.base_url}{cfg.endpoint}"
    with _MODEL_LOCKS_GUARD:
        lock = _MODEL_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _MODEL_LOCKS[key] = lock
    return lock


def chat(
    messages: Sequence[Dict[str, str]],
    schema: Optional[Type[M]],
    *,
    cfg: LlmRoute,
    client: Optional[HttpClient] = None,
    options: Optional[Dict[str, Any]] = None,
) -> Tuple[Any, Optional[Usage]]:  # Invoke a route; returns validated object (or text) and usage
    def _execute() -> Tuple[Any, Optional[Usage]]:
        input_messages = _normalize_messages(messages)
        base_messages: list[Dict[str, str]] = []
        enforce_json = cfg.enforce_json and schema is not None
        if enforce_json:
            schema_json = json.dumps(schema.model_json_schema(), indent=2)
            system_prompt = "Reply with a single JSON object matching this schema:\n" + schema_json
            base_messages.append({"role": "system", "content": system_prompt})
        base_messages.extend(input_messages)
        attempts = cfg.max_retries + 1
        last_error: Optional[Exception] = None
        last_error_text: Optional[str] = None
        preview = _preview(base_messages)
        if len(preview) > 120:
            preview = preview[:117] + "..."
        logger.info(
            "LLM request start route=%s model=%s attempts=%d preview=%s",
            cfg.name,
            cfg.model,
            attempts,
            preview,
        )
        for attempt in range(attempts):
            attempt_messages = list(base_messages)
            if attempt > 0:
                attempt_messages.append(
                    {
                        "role": "system",
                        "content": _retry_hint(last_error_text, enforce_json),
                    }
                )
            payload: Dict[str, Any] = {"model": cfg.model, "messages": attempt_messages}
            if cfg.temperature is not None:
                payload["temperature"] = cfg.temperature
            if options:
                payload.update(options)
            if cfg.response_format and enforce_json:
                payload["response_format"] = {"type": cfg.response_format}
            headers = {"Content-Type": "application/json"}
            if cfg.api_key_env:
                api_key = os.getenv(cfg.api_key_env)
                if api_key:
                    headers["Authorization"] = f"Bearer {api_key}"
            headers.update(cfg.extra_headers)
            try:
                response, close_cb = _post(f"{cfg.base_url}{cfg.endpoint}", payload, headers, cfg.timeout_s, client)
            except Exception as exc:  # noqa: BLE001
                logger.error("LLM transport failure: %s", exc)
                raise LlmGatewayError("LLM transport failed") from exc
            try:
                if response.status_code >= 400:
                    logger.error("LLM error status: %s", response.status_code)
                    raise LlmGatewayError(f"LLM returned status {response.status_code}")
                try:
                    data = response.json()
                except Exception as exc:  # noqa: BLE001
                    logger.error("Invalid JSON payload from LLM: %s", exc)
                    raise LlmGatewayError("LLM payload was not JSON") from exc
            finally:
                _close_safely(close_cb)
            content = _extract_content(data)
            usage = _extract_usage(data)
            if schema is None:
                return content, usage
            try:
                parsed = _validate(schema, content)
            except (json.JSONDecodeError, ValidationError) as exc:
                logger.warning("LLM output validation failed: %s", exc)
                last_error = exc
                last_error_text = str(exc)
                continue
            logger.info(
                "LLM request done route=%s model=%s attempt=%d",
                cfg.name,
                cfg.model,
                attempt + 1,
            )
            return parsed, usage
        raise LlmGatewayError("LLM output validation failed") from last_error

    if getattr(cfg, "sequential", False):
        lock = _lock_for(cfg)
        with lock:
            return _execute()
    return _execute()


def route_model(route: LlmRoute, *, client: Optional[HttpClient] = None) -> Callable[..., Dict[str, Any]]:  # Adapt a route to the registry calling convention
    def _invoke(
        *,
        prompt: Optional[str] = None,
        messages: Optional[Sequence[Dict[str, str]]] = None,
        schema: Optional[Type[BaseModel]] = None,
        temperature: Optional[float] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        convo = list(messages or [])
        if prompt and convo:
            convo.insert(0, {"role": "system", "content": prompt})
        elif prompt:
            convo.append({"role": "user", "content": prompt})
        options = {"temperature": temperature} if temperature is not None else None
        value, usage = chat(convo, schema, cfg=route, client=client, options=options)
        output = value.model_dump() if isinstance(value, BaseModel) else value
        return {"output": output, "usage": usage.model_dump() if usage else None}

    return _invoke


def generate_object(
    key: str,
    schema: Type[M],
    *,
    prompt: Optional[str] = None,
    messages: Optional[Sequence[Dict[str, str]]] = None,
    temperature: float = 0.2,
) -> Generation[M]:  # Registry-bound schema-constrained generation
    raw = _invoke_bound(key, prompt=prompt, messages=messages, schema=schema, temperature=temperature)
    output, usage = _split_output(raw)
    try:
        value = output if isinstance(output, schema) else schema.model_validate(output)
    except ValidationError as exc:
        raise LlmGatewayError(f"Output for {key} failed schema validation") from exc
    return Generation(value, usage, model_id_for(key))


def generate_text(
    key: str,
    *,
    prompt: Optional[str] = None,
    messages: Optional[Sequence[Dict[str, str]]] = None,
    temperature: float = 0.6,
) -> Generation[str]:  # Registry-bound free-form generation
    raw = _invoke_bound(key, prompt=prompt, messages=messages, schema=None, temperature=temperature)
    output, usage = _split_output(raw)
    if isinstance(output, dict):
        output = output.get("message") or output.get("text")
    if not isinstance(output, str) or not output.strip():
        raise LlmGatewayError(f"Empty text output for {key}")
    return Generation(output.strip(), usage, model_id_for(key))


def _invoke_bound(key: str, **kwargs: Any) -> Any:
    try:
        llm = get_model(key)
    except KeyError as exc:
        raise LlmGatewayError(str(exc)) from exc
    try:
        return llm(**kwargs)
    except LlmGatewayError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("Bound model %s failed: %s", key, exc)
        raise LlmGatewayError(f"Model call failed for {key}") from exc


def _split_output(raw: Any) -> Tuple[Any, Optional[Usage]]:  # Separate payload from usage record
    if isinstance(raw, dict) and "output" in raw:
        usage_raw = raw.get("usage")
        usage = None
        if isinstance(usage_raw, Usage):
            usage = usage_raw
        elif isinstance(usage_raw, dict):
            try:
                usage = Usage.model_validate(usage_raw)
            except ValidationError:
                usage = None
        return raw["output"], usage
    return raw, None


def _post(url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float, client: Optional[HttpClient]) -> Tuple[HttpResponse, Optional[Callable[[], None]]]:  # Dispatch HTTP request
    if client is not None:
        response = client.post(url, json=payload, headers=headers, timeout=timeout)
        return response, None
    import httpx

    http_client = httpx.Client(timeout=timeout)
    response = http_client.post(url, json=payload, headers=headers)
    return response, http_client.close


def _close_safely(close_cb: Optional[Callable[[], None]]) -> None:  # Close HTTP client callback when provided
    if close_cb is not None:
        close_cb()


def _normalize_messages(messages: Sequence[Dict[str, str]]) -> list[Dict[str, str]]:  # Ensure message payload shape
    normalized: list[Dict[str, str]] = []
    for item in messages:
        if not isinstance(item, dict):
            raise TypeError("Each chat message must be a dict with role/content")
        role = str(item.get("role", "")).strip()
        content = str(item.get("content", ""))
        if not role:
            raise ValueError("Chat message missing role")
        normalized.append({"role": role, "content": content})
    return normalized


def _preview(messages: Sequence[Dict[str, str]]) -> str:  # Build preview string for logging
    for message in messages:
        text = message.get("content", "").strip()
        if text:
            return text.splitlines()[0]
    return ""


def _extract_content(data: Any) -> str:  # Extract message content from LLM response
    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message") if isinstance(choices[0], dict) else None
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str):
                return content
        if isinstance(data.get("content"), str):
            return data["content"]
    raise LlmGatewayError("LLM response missing content")


def _extract_usage(data: Any) -> Optional[Usage]:  # Map OpenAI-style usage block
    usage = data.get("usage") if isinstance(data, dict) else None
    if not isinstance(usage, dict):
        return None
    return Usage(
        input_tokens=usage.get("prompt_tokens", usage.get("input_tokens")),
        output_tokens=usage.get("completion_tokens", usage.get("output_tokens")),
        total_tokens=usage.get("total_tokens"),
    )


def _validate(schema: Type[M], content: str) -> M:  # Parse JSON content with schema
    cleaned = _strip_code_fences(content)
    return schema.model_validate_json(cleaned)


def _strip_code_fences(content: str) -> str:  # Remove common markdown fences from LLM output
    text = content.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        if lines:
            lines = lines[1:]
            while lines and lines[0].strip() == "":
                lines = lines[1:]
            while lines and lines[-1].strip() == "":
                lines = lines[:-1]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            text = "\n".join(lines).strip()
    return text


def _retry_hint(error_text: Optional[str], enforce_json: bool) -> str:  # Compose retry instructions including last error
    base = "The previous reply failed validation."
    if error_text:
        truncated = error_text.splitlines()[0].strip()
        if len(truncated) > 200:
            truncated = truncated[:197] + "..."
        base += f" Reason: {truncated}."
    if enforce_json:
        return base + " Return a single JSON object that matches the schema."
    return base + " Follow the requested format precisely."


def bind_routes(cfg: AppConfig, *, client: Optional[HttpClient] = None) -> None:  # Bind every configured route into the model registry
    for key, route in resolve_routes(cfg).items():
        bind_model(key, route_model(route, client=client), model_id=route.model, ready=route.has_credentials)
