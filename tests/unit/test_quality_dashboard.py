from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import services.quality_dashboard as dashboard
from agents.types import InterviewState, TopicBlock
from config.registry import QUALITY_REVIEW_KEY, bind_model
from config.routes import load_config
from config.settings import settings
from services.quality_dashboard import (
    NO_CREDENTIAL_SUMMARY,
    AiReviewDraft,
    AssistantTurnRow,
    build_interview_quality_alerts,
    build_quality_delta,
    clamp_int,
    generate_interview_quality_ai_review,
    get_interview_quality_dashboard_data,
    resolve_thresholds,
    round_half_up,
    safe_rate,
    select_top_failing_bots,
    summarize_interview_quality_turns,
)
from storage.conversations import BotRecord, create_conversation, insert_bot
from storage.messages import fetch_assistant_turns, insert_message
from llm_gateway import bind_routes

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
APP_CONFIG = Path(__file__).resolve().parents[2] / "app_config.json"


def _quality(*, passed=True, score=None, gate=False, regenerated=False, fallback=False, evaluated=True):
    return {
        "eligible": True,
        "evaluated": evaluated,
        "score": (score if score is not None else (96 if passed else 62)) if evaluated else None,
        "passed": passed if evaluated else None,
        "gateTriggered": gate,
        "regenerated": regenerated,
        "fallbackUsed": fallback,
    }


def _flow(*, topic=False, deep=False, guard=False, consent=False, field=False):
    return {
        "topicClosureIntercepted": topic,
        "deepOfferClosureIntercepted": deep,
        "completionGuardIntercepted": guard,
        "completionBlockedForConsent": consent,
        "completionBlockedForMissingField": field,
    }


def _turn(bot="bot-1", metadata=None, **quality):
    return {
        "bot_id": bot,
        "bot_name": bot.replace("bot-", "Bot "),
        "organization_id": "org-1",
        "organization_name": "Org 1",
        "metadata": metadata if metadata is not None else {"quality": _quality(**quality), "flowFlags": _flow()},
    }


def _window(evaluated, passed, *, gate_on_fail=True, fallback_on_fail=False, bot="bot-1"):
    turns = []
    for index in range(evaluated):
        ok = index < passed
        turns.append(
            _turn(bot, passed=ok, gate=gate_on_fail and not ok, regenerated=gate_on_fail and not ok,
                  fallback=fallback_on_fail and not ok)
        )
    return summarize_interview_quality_turns(turns)


def test_summary_counts_rates_and_missing_telemetry():
    summary = summarize_interview_quality_turns(
        [
            _turn(metadata={"quality": _quality(score=96), "flowFlags": _flow()}),
            _turn(metadata={"quality": _quality(passed=False, score=70, gate=True, regenerated=True),
                            "flowFlags": _flow(topic=True)}),
            _turn("bot-2", metadata={"quality": _quality(passed=False, score=62, gate=True, regenerated=True,
                                                         fallback=True),
                                     "flowFlags": _flow(deep=True, guard=True, consent=True)}),
            _turn("bot-2", metadata={}),
        ]
    )
    assert summary.assistant_turns == 4
    assert summary.telemetry_turns == 3
    assert summary.telemetry_coverage == pytest.approx(0.75)
    assert summary.evaluated_turns == 3
    assert summary.pass_turns == 1 and summary.fail_turns == 2
    assert summary.pass_rate == pytest.approx(1 / 3)
    assert summary.avg_score == 76
    assert summary.gate_triggered_turns == 2
    assert summary.gate_trigger_rate == pytest.approx(2 / 3)
    assert summary.regeneration_rate == pytest.approx(2 / 3)
    assert summary.fallback_turns == 1
    assert summary.fallback_rate == pytest.approx(1 / 3)
    assert summary.topic_closure_intercepts == 1
    assert summary.deep_offer_closure_intercepts == 1
    assert summary.completion_guard_intercepts == 1
    assert summary.completion_blocked_for_consent == 1
    assert [bot.bot_id for bot in summary.by_bot] == ["bot-1", "bot-2"]
    assert summary.by_bot[1].telemetry_turns == 1
    assert summary.by_bot[1].assistant_turns == 2


def test_summary_is_pure_and_idempotent():
    turns = [_turn(passed=False, gate=True), _turn(), _turn(metadata={})]
    assert summarize_interview_quality_turns(turns) == summarize_interview_quality_turns(turns)
    assert summarize_interview_quality_turns([AssistantTurnRow(**t) for t in turns]) == summarize_interview_quality_turns(turns)


def test_empty_window_has_zero_rates():
    summary = summarize_interview_quality_turns([], truncated=True)
    assert summary.pass_rate == 0.0 and summary.telemetry_coverage == 0.0
    assert summary.avg_score is None
    assert summary.truncated


def test_rate_and_clamp_helpers():
    assert safe_rate(3, 0) == 0.0
    assert safe_rate(1, 4) == 0.25
    assert clamp_int(0, 1, 168) == 1
    assert clamp_int(1000, 1, 168) == 168
    assert clamp_int("12.9", 1, 168) == 12
    assert clamp_int("abc", 500, 20000) == 500
    assert clamp_int(float("inf"), 500, 20000) == 500
    assert clamp_int(10**400, 1, 168) == 168
    assert clamp_int(-(10**400), 1, 168) == 1
    assert round_half_up(82.5) == 83
    assert round_half_up(82.49) == 82


def test_average_score_rounds_halves_up():
    summary = summarize_interview_quality_turns([_turn(score=80), _turn(score=85)])
    assert summary.avg_score == 83
    assert summary.by_bot[0].avg_score == 83


def test_oversized_stored_score_does_not_break_the_summary():
    rows = [
        _turn(),
        _turn(metadata='{"quality": {"eligible": true, "evaluated": true, "score": 1' + "0" * 400 + "}}"),
    ]
    summary = summarize_interview_quality_turns(rows)
    assert summary.assistant_turns == 2
    assert summary.avg_score == 96


def test_small_samples_only_report_sample_size():
    current = _window(10, 0, fallback_on_fail=True)
    alerts = build_interview_quality_alerts(current, summarize_interview_quality_turns([]))
    assert [alert.id for alert in alerts] == ["sample-too-small"]
    assert alerts[0].severity == "info"
    assert alerts[0].description.startswith("Turni valutati 10/40")


def test_low_coverage_warns_before_info():
    turns = [_turn() for _ in range(30)] + [_turn(metadata={}) for _ in range(10)]
    alerts = build_interview_quality_alerts(summarize_interview_quality_turns(turns), summarize_interview_quality_turns([]))
    assert [alert.id for alert in alerts] == ["telemetry-coverage-low", "sample-too-small"]
    assert "75.0%" in alerts[0].description


@pytest.mark.parametrize(
    "passed,expected",
    [
        (60, ["pass-rate-critical", "gate-trigger-warning"]),
        (80, ["pass-rate-warning"]),
        (90, []),
    ],
)
def test_pass_rate_bands_on_hundred_turns(passed, expected):
    current = _window(100, passed)
    alerts = build_interview_quality_alerts(current, summarize_interview_quality_turns([]))
    assert [alert.id for alert in alerts] == expected


def test_custom_thresholds_fire_every_degradation_alert():
    current = summarize_interview_quality_turns(
        [
            _turn(metadata={"quality": _quality(passed=False, score=60, gate=True, regenerated=True, fallback=True),
                            "flowFlags": _flow(guard=True, field=True)}),
            _turn(metadata={"quality": _quality(passed=False, gate=True, regenerated=True, fallback=True),
                            "flowFlags": _flow()}),
            _turn(metadata={}),
        ]
    )
    previous = summarize_interview_quality_turns([_turn(score=98), _turn(score=95)])
    thresholds = {
        "minEvaluatedTurns": 2,
        "minAssistantTurnsForCoverage": 1,
        "telemetryCoverageWarn": 0.95,
        "passRateWarn": 0.8,
        "passRateCritical": 0.6,
        "gateTriggerWarn": 0.2,
        "gateTriggerCritical": 0.4,
        "fallbackWarn": 0.1,
        "fallbackCritical": 0.2,
        "completionGuardWarn": 0.2,
        "passRateDropWarn": 0.1,
    }
    alerts = build_interview_quality_alerts(current, previous, thresholds)
    ids = [alert.id for alert in alerts]
    assert ids[:3] == ["pass-rate-critical", "gate-trigger-critical", "fallback-critical"]
    assert set(ids[3:]) == {"telemetry-coverage-low", "completion-guard-warning", "pass-rate-drop"}
    ranks = [{"critical": 3, "warning": 2, "info": 1}[alert.severity] for alert in alerts]
    assert ranks == sorted(ranks, reverse=True)


def test_resolve_thresholds_accepts_snake_and_camel_keys():
    resolved = resolve_thresholds({"pass_rate_warn": 0.7, "fallbackCritical": 0.5})
    assert resolved.pass_rate_warn == 0.7
    assert resolved.fallback_critical == 0.5
    assert resolved.min_evaluated_turns == 40
    assert resolve_thresholds(None) == dashboard.DEFAULT_THRESHOLDS


def test_top_failing_bots_order_and_floor():
    turns = []
    for bot, evaluated, passed in (("bot-a", 10, 5), ("bot-b", 10, 2), ("bot-c", 7, 0), ("bot-d", 8, 4)):
        turns.extend(_turn(bot, passed=index < passed) for index in range(evaluated))
    summary = summarize_interview_quality_turns(turns)
    top = select_top_failing_bots(summary.by_bot)
    assert [bot.bot_id for bot in top] == ["bot-b", "bot-a", "bot-d"]


def test_delta_between_windows():
    current = _window(10, 5)
    previous = _window(10, 10)
    delta = build_quality_delta(current, previous)
    assert delta.pass_rate == pytest.approx(-0.5)
    assert delta.avg_score == current.avg_score - previous.avg_score
    assert build_quality_delta(current, summarize_interview_quality_turns([])).avg_score is None


def _review_inputs():
    current = _window(50, 30)
    previous = _window(50, 45)
    delta = build_quality_delta(current, previous)
    alerts = build_interview_quality_alerts(current, previous)
    return dict(window_hours=24, current=current, previous=previous, delta=delta, alerts=alerts,
                top_failing_bots=select_top_failing_bots(current.by_bot))


def test_ai_review_without_credentials_is_a_stub(monkeypatch):
    def _fail(*_args, **_kwargs):
        raise AssertionError("no LLM call expected")

    monkeypatch.setattr(dashboard, "chat", _fail)
    review = generate_interview_quality_ai_review(**_review_inputs())
    assert review.generated is False
    assert review.summary == NO_CREDENTIAL_SUMMARY
    assert review.model == settings.AI_REVIEW_MODEL
    assert review.priorities == [] and review.risks == []


def test_ai_review_uses_bound_model(scripted):
    model = scripted(
        {
            "summary": "Il pass-rate scende di 30 punti rispetto alla finestra precedente.",
            "priorities": ["Rivedere il prompt di transizione  "],
            "risks": ["Fallback frequenti su un solo bot"],
        }
    )
    bind_model(QUALITY_REVIEW_KEY, model, model_id="review-model")
    review = generate_interview_quality_ai_review(**_review_inputs())
    assert review.generated is True
    assert review.model == "review-model"
    assert review.priorities == ["Rivedere il prompt di transizione"]
    prompt = model.calls[0]["prompt"]
    assert prompt.startswith("Sei un reviewer QA per interview-bot.")
    assert '"windowHours": 24' in prompt
    assert "pass-rate-critical" not in prompt


def test_ai_review_failure_degrades(scripted):
    bind_model(QUALITY_REVIEW_KEY, scripted({"summary": "troppo corto"}))
    review = generate_interview_quality_ai_review(**_review_inputs())
    assert review.generated is False
    assert review.summary.startswith("Generazione AI non riuscita:")


class _RecordingClient:
    def __init__(self):
        self.requests = []

    def post(self, url, *, json, headers, timeout):
        self.requests.append({"url": url, "headers": headers})
        raise AssertionError("unexpected LLM request")


def test_configured_review_route_without_key_is_a_stub(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = _RecordingClient()
    bind_routes(load_config(APP_CONFIG), client=client)

    review = generate_interview_quality_ai_review(**_review_inputs())
    assert client.requests == []
    assert review.generated is False
    assert review.summary == NO_CREDENTIAL_SUMMARY


def test_configured_review_route_with_key_is_called(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    client = _RecordingClient()
    bind_routes(load_config(APP_CONFIG), client=client)

    review = generate_interview_quality_ai_review(**_review_inputs())
    assert len(client.requests) == 1
    assert client.requests[0]["headers"]["Authorization"] == "Bearer sk-env"
    assert review.generated is False
    assert review.summary.startswith("Generazione AI non riuscita:")


def test_ai_review_calls_openai_route_when_key_configured(monkeypatch):
    seen = {}

    def fake_chat(messages, schema, *, cfg, client=None, options=None):
        seen["cfg"] = cfg
        seen["messages"] = messages
        draft = AiReviewDraft(
            summary="Qualita stabile, nessuna regressione evidente.",
            priorities=["Monitorare il fallback"],
            risks=["Campione ridotto nel weekend"],
        )
        return draft, None

    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(dashboard, "chat", fake_chat)
    review = generate_interview_quality_ai_review(**_review_inputs())
    assert review.generated is True
    assert seen["cfg"].extra_headers == {"Authorization": "Bearer sk-test"}
    assert seen["cfg"].model == settings.AI_REVIEW_MODEL
    assert seen["messages"][0]["role"] == "user"


class _RecordingFetcher:
    def __init__(self, current, previous=()):
        self.calls = []
        self.results = [(list(current), False), (list(previous), False)]

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        return self.results[len(self.calls) - 1]


def test_dashboard_windows_and_clamping():
    fetcher = _RecordingFetcher([_turn(passed=False, gate=True)], [_turn()])
    data = get_interview_quality_dashboard_data(
        window_hours=0, max_turns=10, bot_id="bot-1", now=datetime(2026, 3, 10, 12, 0), fetch_turns=fetcher
    )
    assert data.window_hours == 1
    assert data.max_turns == 500
    assert data.generated_at == "2026-03-10T12:00:00+00:00"
    assert fetcher.calls[0] == {"start": NOW - timedelta(hours=1), "end": NOW, "max_turns": 500, "bot_id": "bot-1"}
    assert fetcher.calls[1]["start"] == NOW - timedelta(hours=2)
    assert fetcher.calls[1]["end"] == NOW - timedelta(hours=1)
    assert data.current.fail_turns == 1 and data.previous.pass_turns == 1
    assert data.delta.pass_rate == -1.0
    assert data.ai_review is None

    payload = data.model_dump(by_alias=True)
    assert {"generatedAt", "windowHours", "maxTurns", "topFailingBots", "alerts", "thresholds", "aiReview"} <= set(payload)
    assert payload["current"]["passRate"] == 0.0


def test_dashboard_is_idempotent_and_includes_stub_review():
    args = dict(window_hours=24, now=NOW, include_ai_review=True)
    first = get_interview_quality_dashboard_data(fetch_turns=_RecordingFetcher([_turn()]), **args)
    second = get_interview_quality_dashboard_data(fetch_turns=_RecordingFetcher([_turn()]), **args)
    assert first == second
    assert first.ai_review.generated is False


def _seed_conversation(bot_id="bot-1", name="Bot 1"):
    insert_bot(BotRecord(id=bot_id, name=name, topics=[TopicBlock(id="t", label="Topic")], organization_id="org-1"))
    return create_conversation(bot_id, InterviewState(), started_at=NOW - timedelta(hours=3))


def test_fetch_assistant_turns_window_order_and_cap():
    conversation = _seed_conversation()
    for minutes, score in ((10, 90), (20, 80), (30, 70)):
        insert_message(conversation, "assistant", f"Domanda {score}?",
                       {"quality": _quality(score=score)}, created_at=NOW - timedelta(minutes=minutes))
    insert_message(conversation, "user", "Risposta", created_at=NOW - timedelta(minutes=5))
    insert_message(conversation, "assistant", "Fuori finestra?", {"quality": _quality()},
                   created_at=NOW - timedelta(hours=2))
    insert_message(conversation, "assistant", "Adesso?", {"quality": _quality()}, created_at=NOW)

    rows, truncated = fetch_assistant_turns(start=NOW - timedelta(hours=1), end=NOW, max_turns=500)
    assert not truncated
    assert len(rows) == 3
    assert rows[0].bot_name == "Bot 1" and rows[0].organization_id == "org-1"
    assert summarize_interview_quality_turns(rows).avg_score == 80

    capped, truncated = fetch_assistant_turns(start=NOW - timedelta(hours=1), end=NOW, max_turns=2)
    assert truncated and len(capped) == 2
    assert '"score": 90' in capped[0].metadata


def test_fetch_assistant_turns_filters_by_bot():
    first = _seed_conversation()
    second = _seed_conversation("bot-2", "Bot 2")
    insert_message(first, "assistant", "Uno?", {"quality": _quality()}, created_at=NOW - timedelta(minutes=1))
    insert_message(second, "assistant", "Due?", {"quality": _quality()}, created_at=NOW - timedelta(minutes=1))

    data = get_interview_quality_dashboard_data(window_hours=1, bot_id="bot-2", now=NOW)
    assert data.current.assistant_turns == 1
    assert data.current.by_bot[0].bot_name == "Bot 2"
