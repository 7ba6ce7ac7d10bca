"""In-memory model registry for engine components."""
from typing import Any, Callable, Dict, Optional

_REGISTRY: Dict[str, Callable[..., Any]] = {}
_MODEL_IDS: Dict[str, str] = {}
_READY_CHECKS: Dict[str, Callable[[], bool]] = {}


def bind_model(
    key: str,
    fn: Callable[..., Any],
    *,
    model_id: Optional[str] = None,
    ready: Optional[Callable[[], bool]] = None,
) -> None:
    """Bind a callable implementation to a registry key.

    ``model_id`` is only used to tag usage telemetry. ``ready`` reports
    whether the binding can be called right now (e.g. its API key is set).
    """
    _REGISTRY[key] = fn
    if ready is not None:
        _READY_CHECKS[key] = ready
    else:
        _READY_CHECKS.pop(key, None)
    if model_id:
        _MODEL_IDS[key] = model_id
    else:
        _MODEL_IDS.pop(key, None)


def unbind_model(key: str) -> None:
    _REGISTRY.pop(key, None)
    _MODEL_IDS.pop(key, None)
    _READY_CHECKS.pop(key, None)


def is_bound(key: str) -> bool:
    return key in _REGISTRY


def is_ready(key: str) -> bool:
    if key not in _REGISTRY:
        return False
    check = _READY_CHECKS.get(key)
    return check() if check is not None else True


def get_model(key: str) -> Callable[..., Any]:
    """Retrieve a callable from the registry.

    Raises:
        KeyError: If no callable has been bound for ``key``.
    """

    if key not in _REGISTRY:
        raise KeyError(f"Model not bound in registry: {key}")
    return _REGISTRY[key]


def model_id_for(key: str) -> Optional[str]:
    return _MODEL_IDS.get(key)


TURN_KEY = "models.interview_turn"
FALLBACK_QUESTION_KEY = "models.fallback_question"
QUALITY_REVIEW_KEY = "models.quality_review"
