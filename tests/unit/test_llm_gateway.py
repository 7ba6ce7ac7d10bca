import pytest

from agents.types import QuestionOnly, Usage
from config.registry import FALLBACK_QUESTION_KEY, TURN_KEY, bind_model, model_id_for
from config.routes import AppConfig, LlmRoute
from llm_gateway import LlmGatewayError, bind_routes, chat, generate_object, generate_text, route_model


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeClient:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, *, json, headers, timeout):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return self.responses.pop(0)


def _completion(content, usage=None):
    payload = {"choices": [{"message": {"content": content}}]}
    if usage is not None:
        payload["usage"] = usage
    return FakeResponse(payload=payload)


ROUTE = LlmRoute(
    name="structured",
    base_url="http://llm.local",
    model="tiny",
    response_format="json_object",
    extra_headers={"X-Team": "research"},
    max_retries=1,
)


def test_chat_validates_schema_and_maps_usage():
    client = FakeClient(
        _completion('```json\n{"question": "Come va?"}\n```', {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5})
    )
    value, usage = chat([{"role": "user", "content": "Ciao"}], QuestionOnly, cfg=ROUTE, client=client)
    assert value == QuestionOnly(question="Come va?")
    assert usage == Usage(input_tokens=3, output_tokens=2, total_tokens=5)

    request = client.requests[0]
    assert request["url"] == "http://llm.local/v1/chat/completions"
    assert request["json"]["response_format"] == {"type": "json_object"}
    assert request["json"]["messages"][0]["role"] == "system"
    assert request["headers"]["X-Team"] == "research"


def test_chat_retries_invalid_output_with_hint():
    client = FakeClient(_completion("not json"), _completion('{"question": "Quando?"}'))
    value, usage = chat([{"role": "user", "content": "Ciao"}], QuestionOnly, cfg=ROUTE, client=client)
    assert value.question == "Quando?"
    assert usage is None
    retry_messages = client.requests[1]["json"]["messages"]
    assert retry_messages[-1]["content"].startswith("The previous reply failed validation.")


def test_chat_raises_after_exhausting_retries():
    client = FakeClient(_completion("nope"), _completion("still nope"))
    with pytest.raises(LlmGatewayError):
        chat([{"role": "user", "content": "Ciao"}], QuestionOnly, cfg=ROUTE, client=client)


@pytest.mark.parametrize("response", [FakeResponse(status_code=503, payload={}), FakeResponse(payload=None)])
def test_chat_transport_errors(response):
    with pytest.raises(LlmGatewayError):
        chat([{"role": "user", "content": "Ciao"}], None, cfg=ROUTE, client=FakeClient(response))


def test_route_model_puts_prompt_first_as_system_message():
    client = FakeClient(_completion("Testo libero"))
    invoke = route_model(ROUTE.model_copy(update={"enforce_json": False}), client=client)
    result = invoke(prompt="Sei un intervistatore", messages=[{"role": "user", "content": "Ciao"}], temperature=0.6)
    assert result == {"output": "Testo libero", "usage": None}
    sent = client.requests[0]["json"]
    assert sent["messages"] == [
        {"role": "system", "content": "Sei un intervistatore"},
        {"role": "user", "content": "Ciao"},
    ]
    assert sent["temperature"] == 0.6


def test_bind_routes_feeds_registry_generation():
    client = FakeClient(_completion('{"question": "Posso avere la tua email"}', {"total_tokens": 9}))
    bind_routes(AppConfig(llm_routes={"structured": ROUTE}, registry={FALLBACK_QUESTION_KEY: "structured"}), client=client)
    assert model_id_for(FALLBACK_QUESTION_KEY) == "tiny"

    generation = generate_object(FALLBACK_QUESTION_KEY, QuestionOnly, prompt="Chiedi l'email")
    assert generation.value.question == "Posso avere la tua email"
    assert generation.usage.total_tokens == 9
    assert generation.model_id == "tiny"
    assert client.requests[0]["json"]["messages"][-1] == {"role": "user", "content": "Chiedi l'email"}


def test_generate_text_accepts_strings_and_message_dicts():
    bind_model(TURN_KEY, lambda **_: {"output": {"message": "  Come va?  "}, "usage": {"total_tokens": 4}})
    generation = generate_text(TURN_KEY, prompt="p")
    assert generation.value == "Come va?"
    assert generation.usage.total_tokens == 4

    bind_model(TURN_KEY, lambda **_: "   ")
    with pytest.raises(LlmGatewayError):
        generate_text(TURN_KEY, prompt="p")


def test_generation_errors_are_wrapped():
    with pytest.raises(LlmGatewayError):
        generate_text(TURN_KEY, prompt="unbound")
    bind_model(FALLBACK_QUESTION_KEY, lambda **_: {"wrong": "shape"})
    with pytest.raises(LlmGatewayError):
        generate_object(FALLBACK_QUESTION_KEY, QuestionOnly, prompt="p")
