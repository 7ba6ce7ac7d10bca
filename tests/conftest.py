import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from storage.migrate import migrate
from config.settings import settings
from config.lexicons import reset_overrides
from config.registry import (
    FALLBACK_QUESTION_KEY,
    QUALITY_REVIEW_KEY,
    TURN_KEY,
    bind_model,
    unbind_model,
)


@pytest.fixture(autouse=True)
def tmp_db(monkeypatch):
    td = tempfile.TemporaryDirectory()
    db_path = os.path.join(td.name, "test.db")
    monkeypatch.setattr(settings, "DB_PATH", db_path, raising=False)
    monkeypatch.setattr(settings, "OPENAI_API_KEY", None, raising=False)
    migrate(db_path)
    try:
        yield
    finally:
        td.cleanup()


@pytest.fixture(autouse=True)
def clean_registry():
    yield
    for key in (TURN_KEY, FALLBACK_QUESTION_KEY, QUALITY_REVIEW_KEY):
        unbind_model(key)
    reset_overrides()


class ScriptedModel:
    """Registry callable returning queued replies and recording every call."""

    def __init__(self, *replies, usage=None):
        self.replies = list(replies)
        self.calls = []
        self.usage = usage

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if self.usage is not None:
            return {"output": reply, "usage": self.usage}
        return reply


@pytest.fixture
def scripted():
    return ScriptedModel


@pytest.fixture
def fake_models():
    turn = ScriptedModel("Interessante: quali strumenti usi oggi per pianificare il lavoro del team?")
    fallback = ScriptedModel({"question": "Posso raccogliere i tuoi contatti per un eventuale follow-up?"})
    bind_model(TURN_KEY, turn, model_id="fake-turn")
    bind_model(FALLBACK_QUESTION_KEY, fallback, model_id="fake-fallback")
    return {"turn": turn, "fallback": fallback}
