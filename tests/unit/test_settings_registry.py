import json

import pytest

from config.registry import TURN_KEY, bind_model, get_model, is_bound, is_ready, model_id_for, unbind_model
from config.routes import LlmRoute, load_config, resolve_routes
from config.settings import Settings


def test_settings_defaults():
    settings = Settings(_env_file=None)
    assert settings.DB_PATH.endswith(".db")
    assert settings.DEFAULT_LANGUAGE == "it"
    assert settings.QUALITY_PASS_SCORE == 80
    assert settings.MAX_REGENERATIONS == 1
    assert settings.DASHBOARD_WINDOW_HOURS == 24


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("QUALITY_PASS_SCORE", "70")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    settings = Settings(_env_file=None)
    assert settings.QUALITY_PASS_SCORE == 70
    assert settings.OPENAI_API_KEY == "sk-env"


def test_registry_bind_and_retrieve():
    marker = object()
    bind_model(TURN_KEY, lambda **_: marker, model_id="m-1")
    assert is_bound(TURN_KEY)
    assert get_model(TURN_KEY)() is marker
    assert model_id_for(TURN_KEY) == "m-1"

    unbind_model(TURN_KEY)
    assert not is_bound(TURN_KEY)
    with pytest.raises(KeyError):
        get_model(TURN_KEY)


def test_route_config_maps_registry_keys(tmp_path):
    path = tmp_path / "app_config.json"
    path.write_text(
        json.dumps(
            {
                "llm_routes": {
                    "turn": {"name": "turn", "base_url": "http://llm", "model": "m", "enforce_json": False}
                },
                "registry": {TURN_KEY: "turn"},
            }
        ),
        encoding="utf-8",
    )
    routes = resolve_routes(load_config(path))
    assert routes[TURN_KEY].model == "m"
    assert routes[TURN_KEY].endpoint == "/v1/chat/completions"


def test_registry_ready_follows_route_credentials(monkeypatch):
    route = LlmRoute(name="review", base_url="http://llm", model="m", api_key_env="REVIEW_API_KEY")
    monkeypatch.delenv("REVIEW_API_KEY", raising=False)
    bind_model(TURN_KEY, lambda **_: None, ready=route.has_credentials)
    assert is_bound(TURN_KEY)
    assert not is_ready(TURN_KEY)

    monkeypatch.setenv("REVIEW_API_KEY", "sk-review")
    assert is_ready(TURN_KEY)

    bind_model(TURN_KEY, lambda **_: None)
    monkeypatch.delenv("REVIEW_API_KEY")
    assert is_ready(TURN_KEY)
    unbind_model(TURN_KEY)
    assert not is_ready(TURN_KEY)
    assert LlmRoute(name="local", base_url="http://llm", model="m").has_credentials()
