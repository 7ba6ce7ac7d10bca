"""Structured event logging for interview turns.

Every event is written twice: a short ``key=value`` line for people
(stdout and ``<LOG_FILE>-human.log``) and a JSON line for tooling
(``LOG_FILE``). Events whose kind ends in ``failed`` are logged at WARNING.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
import logging.handlers
import os
import sys
import uuid
from typing import Any, Callable

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENABLE_FILE_LOGS = os.getenv("ENABLE_FILE_LOGS", "1") in ("1", "true", "True")
LOG_FILE = os.getenv("LOG_FILE", "logs/interview.log")
LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", "5242880"))
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))

HUMAN_KEYS = ("phase", "signal", "decision", "outcome", "score", "passed", "ms", "error")

_logger = logging.getLogger("interview")
_logger.setLevel(LOG_LEVEL)
_logger.propagate = False

_HUMAN_FORMAT = logging.Formatter(
    "[%(asctime)s] %(levelname)s %(name)s :: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _is_json(record: logging.LogRecord) -> bool:
    return getattr(record, "is_json", False) is True


def _attach(handler: logging.Handler, formatter: logging.Formatter, accept: Callable[[logging.LogRecord], bool]) -> None:
    handler.setLevel(LOG_LEVEL)
    handler.setFormatter(formatter)
    handler.addFilter(accept)
    _logger.addHandler(handler)


def _rotating(path: str) -> logging.Handler:
    return logging.handlers.RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT)


def human_log_path(log_file: str) -> str:
    stem = log_file[: -len(".log")] if log_file.endswith(".log") else log_file
    return f"{stem}-human.log"


def _ensure_handlers() -> None:
    if _logger.handlers:
        return
    _attach(logging.StreamHandler(stream=sys.stdout), _HUMAN_FORMAT, lambda record: not _is_json(record))
    if not ENABLE_FILE_LOGS:
        return
    log_dir = os.path.dirname(LOG_FILE)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    _attach(_rotating(LOG_FILE), logging.Formatter("%(message)s"), _is_json)
    _attach(_rotating(human_log_path(LOG_FILE)), _HUMAN_FORMAT, lambda record: not _is_json(record))


def reset_handlers() -> None:
    """Close and drop handlers so the next event rebuilds them from the module settings."""

    for handler in list(_logger.handlers):
        _logger.removeHandler(handler)
        handler.close()


def _format_human(evt: dict[str, Any]) -> str:
    parts = [f"conversation={evt.get('conversation_id')}", f"kind={evt.get('kind')}"]
    parts.extend(f"{key}={evt[key]}" for key in HUMAN_KEYS if key in evt)
    return " ".join(parts)


def _emit(level: int, message: str, *, is_json: bool) -> None:
    record = _logger.makeRecord(_logger.name, level, "", 0, message, (), None)
    record.is_json = is_json  # type: ignore[attr-defined]
    _logger.handle(record)


def log_event(kind: str, conversation_id: str, **fields: Any) -> None:
    """Emit one event; a ``trace`` field from the caller is kept, otherwise one is minted."""

    _ensure_handlers()
    payload: dict[str, Any] = {
        "ts": dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds"),
        "trace": fields.pop("trace", None) or uuid.uuid4().hex,
        "kind": kind,
        "conversation_id": conversation_id,
    }
    payload.update(fields)
    level = logging.WARNING if kind.endswith("failed") else logging.INFO

    _emit(level, _format_human(payload), is_json=False)
    if ENABLE_FILE_LOGS:
        _emit(level, json.dumps(payload, ensure_ascii=False, default=str), is_json=True)


__all__ = ["human_log_path", "log_event", "reset_handlers"]
