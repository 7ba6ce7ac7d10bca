"""Read-side aggregation of assistant-turn telemetry into a quality dashboard.

Every number here comes from ``metadata.quality`` / ``metadata.flowFlags`` of
persisted assistant messages; conversation content is never inspected.
Aggregation is pure; only ``get_interview_quality_dashboard_data`` touches
storage (through an injectable fetcher) and, on request, an LLM.
"""
from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, constr
from pydantic.alias_generators import to_camel

from agents.quality_gate import parse_interview_assistant_telemetry
from config.registry import QUALITY_REVIEW_KEY, is_ready, model_id_for
from config.routes import LlmRoute
from config.settings import settings
from llm_gateway import chat, generate_object

logger = logging.getLogger(__name__)

AlertSeverity = Literal["critical", "warning", "info"]

TOP_FAILING_MIN_EVALUATED = 8
TOP_FAILING_LIMIT = 12
WINDOW_HOURS_RANGE = (1, 168)
MAX_TURNS_RANGE = (500, 20000)
NO_CREDENTIAL_SUMMARY = "OPENAI_API_KEY non configurata: report AI non disponibile."


class _DashboardModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InterviewQualityThresholds(_DashboardModel):
    min_evaluated_turns: int = 40
    min_assistant_turns_for_coverage: int = 30
    telemetry_coverage_warn: float = 0.9
    pass_rate_warn: float = 0.85
    pass_rate_critical: float = 0.75
    gate_trigger_warn: float = 0.25
    gate_trigger_critical: float = 0.4
    fallback_warn: float = 0.03
    fallback_critical: float = 0.08
    completion_guard_warn: float = 0.05
    pass_rate_drop_warn: float = 0.1


DEFAULT_THRESHOLDS = InterviewQualityThresholds()


class InterviewQualityAlert(_DashboardModel):
    id: str
    severity: AlertSeverity
    title: str
    description: str


class InterviewQualityBotSummary(_DashboardModel):
    bot_id: str
    bot_name: str
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    assistant_turns: int = 0
    telemetry_turns: int = 0
    eligible_turns: int = 0
    evaluated_turns: int = 0
    pass_turns: int = 0
    fail_turns: int = 0
    pass_rate: float = 0.0
    avg_score: Optional[int] = None
    gate_triggered_turns: int = 0
    gate_trigger_rate: float = 0.0
    fallback_turns: int = 0
    fallback_rate: float = 0.0
    completion_guard_intercepts: int = 0


class InterviewQualityWindowSummary(_DashboardModel):
    assistant_turns: int = 0
    telemetry_turns: int = 0
    telemetry_coverage: float = 0.0
    eligible_turns: int = 0
    evaluated_turns: int = 0
    pass_turns: int = 0
    fail_turns: int = 0
    pass_rate: float = 0.0
    avg_score: Optional[int] = None
    gate_triggered_turns: int = 0
    gate_trigger_rate: float = 0.0
    regenerated_turns: int = 0
    regeneration_rate: float = 0.0
    fallback_turns: int = 0
    fallback_rate: float = 0.0
    topic_closure_intercepts: int = 0
    deep_offer_closure_intercepts: int = 0
    completion_guard_intercepts: int = 0
    completion_blocked_for_consent: int = 0
    completion_blocked_for_missing_field: int = 0
    completion_guard_rate: float = 0.0
    truncated: bool = False
    by_bot: List[InterviewQualityBotSummary] = Field(default_factory=list)


class InterviewQualityDelta(_DashboardModel):
    pass_rate: float
    avg_score: Optional[int] = None
    gate_trigger_rate: float
    fallback_rate: float


class InterviewQualityAiReview(_DashboardModel):
    generated: bool
    model: str
    summary: str
    priorities: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)


class InterviewQualityDashboardData(_DashboardModel):
    generated_at: str
    window_hours: int
    max_turns: int
    current: InterviewQualityWindowSummary
    previous: InterviewQualityWindowSummary
    delta: InterviewQualityDelta
    top_failing_bots: List[InterviewQualityBotSummary]
    alerts: List[InterviewQualityAlert]
    thresholds: InterviewQualityThresholds
    ai_review: Optional[InterviewQualityAiReview] = None


class AssistantTurnRow(BaseModel):
    bot_id: str
    bot_name: str = "Untitled bot"
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    metadata: Any = None


class AiReviewDraft(BaseModel):
    summary: constr(min_length=20, max_length=400)
    priorities: List[constr(min_length=8, max_length=220)] = Field(min_length=1, max_length=5)
    risks: List[constr(min_length=8, max_length=220)] = Field(min_length=1, max_length=5)


TurnFetcher = Callable[..., Tuple[List[AssistantTurnRow], bool]]


def safe_rate(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def round_half_up(value: float) -> int:
    """Halves round up (82.5 -> 83), unlike the banker's rounding of ``round``."""

    return math.floor(value + 0.5)


def clamp_int(value: Any, low: int, high: int) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low
    except OverflowError:
        return high if value > 0 else low
    if not math.isfinite(number):
        return low
    return int(min(high, max(low, math.floor(number))))


# --- aggregation -------------------------------------------------------------


class _Counter:
    def __init__(self) -> None:
        self.assistant = 0
        self.telemetry = 0
        self.eligible = 0
        self.evaluated = 0
        self.passed = 0
        self.failed = 0
        self.score_sum = 0.0
        self.scored = 0
        self.gate = 0
        self.regenerated = 0
        self.fallback = 0
        self.topic_closure = 0
        self.deep_offer_closure = 0
        self.guard = 0
        self.blocked_consent = 0
        self.blocked_field = 0

    def add(self, metadata: Any) -> None:
        parsed = parse_interview_assistant_telemetry(metadata)
        quality, flow = parsed.quality, parsed.flow
        self.assistant += 1
        if parsed.has_quality_telemetry or parsed.has_flow_telemetry:
            self.telemetry += 1
        if quality.eligible:
            self.eligible += 1
        if quality.evaluated:
            self.evaluated += 1
            if quality.passed is True:
                self.passed += 1
            else:
                self.failed += 1
            if quality.score is not None:
                self.scored += 1
                self.score_sum += quality.score
        self.gate += quality.gate_triggered
        self.regenerated += quality.regenerated
        self.fallback += quality.fallback_used
        self.topic_closure += flow.topic_closure_intercepted
        self.deep_offer_closure += flow.deep_offer_closure_intercepted
        self.guard += flow.completion_guard_intercepted
        self.blocked_consent += flow.completion_blocked_for_consent
        self.blocked_field += flow.completion_blocked_for_missing_field

    @property
    def avg_score(self) -> Optional[int]:
        return round_half_up(self.score_sum / self.scored) if self.scored else None


def _row(turn: Union[AssistantTurnRow, Mapping[str, Any]]) -> AssistantTurnRow:
    if isinstance(turn, AssistantTurnRow):
        return turn
    return AssistantTurnRow.model_validate(dict(turn))


def summarize_interview_quality_turns(
    turns: Sequence[Union[AssistantTurnRow, Mapping[str, Any]]],
    truncated: bool = False,
) -> InterviewQualityWindowSummary:
    """Pure aggregation of one window of assistant turns."""

    total = _Counter()
    per_bot: Dict[str, Tuple[AssistantTurnRow, _Counter]] = {}
    for raw in turns:
        turn = _row(raw)
        total.add(turn.metadata)
        if turn.bot_id not in per_bot:
            per_bot[turn.bot_id] = (turn, _Counter())
        per_bot[turn.bot_id][1].add(turn.metadata)

    by_bot = [
        InterviewQualityBotSummary(
            bot_id=first.bot_id,
            bot_name=first.bot_name,
            organization_id=first.organization_id,
            organization_name=first.organization_name,
            assistant_turns=counter.assistant,
            telemetry_turns=counter.telemetry,
            eligible_turns=counter.eligible,
            evaluated_turns=counter.evaluated,
            pass_turns=counter.passed,
            fail_turns=counter.failed,
            pass_rate=safe_rate(counter.passed, counter.evaluated),
            avg_score=counter.avg_score,
            gate_triggered_turns=counter.gate,
            gate_trigger_rate=safe_rate(counter.gate, counter.eligible),
            fallback_turns=counter.fallback,
            fallback_rate=safe_rate(counter.fallback, counter.evaluated),
            completion_guard_intercepts=counter.guard,
        )
        for first, counter in per_bot.values()
    ]

    return InterviewQualityWindowSummary(
        assistant_turns=total.assistant,
        telemetry_turns=total.telemetry,
        telemetry_coverage=safe_rate(total.telemetry, total.assistant),
        eligible_turns=total.eligible,
        evaluated_turns=total.evaluated,
        pass_turns=total.passed,
        fail_turns=total.failed,
        pass_rate=safe_rate(total.passed, total.evaluated),
        avg_score=total.avg_score,
        gate_triggered_turns=total.gate,
        gate_trigger_rate=safe_rate(total.gate, total.eligible),
        regenerated_turns=total.regenerated,
        regeneration_rate=safe_rate(total.regenerated, total.evaluated),
        fallback_turns=total.fallback,
        fallback_rate=safe_rate(total.fallback, total.evaluated),
        topic_closure_intercepts=total.topic_closure,
        deep_offer_closure_intercepts=total.deep_offer_closure,
        completion_guard_intercepts=total.guard,
        completion_blocked_for_consent=total.blocked_consent,
        completion_blocked_for_missing_field=total.blocked_field,
        completion_guard_rate=safe_rate(total.guard, total.eligible),
        truncated=truncated,
        by_bot=by_bot,
    )


def resolve_thresholds(
    overrides: Optional[Union[InterviewQualityThresholds, Mapping[str, Any]]] = None,
) -> InterviewQualityThresholds:
    """Defaults merged with a partial override (snake_case or camelCase keys)."""

    if isinstance(overrides, InterviewQualityThresholds):
        return overrides
    names = {field.alias or name: name for name, field in InterviewQualityThresholds.model_fields.items()}
    data = DEFAULT_THRESHOLDS.model_dump()
    for key, value in (overrides or {}).items():
        data[names.get(key, key)] = value
    return InterviewQualityThresholds.model_validate(data)


def _pct(rate: float, digits: int = 1) -> str:
    return f"{rate * 100:.{digits}f}"


_SEVERITY_RANK = {"critical": 3, "warning": 2, "info": 1}


def build_interview_quality_alerts(
    current: InterviewQualityWindowSummary,
    previous: InterviewQualityWindowSummary,
    thresholds: Optional[Union[InterviewQualityThresholds, Mapping[str, Any]]] = None,
) -> List[InterviewQualityAlert]:
    """Threshold battery over the current window, most severe first.

    Below ``min_evaluated_turns`` only the coverage warning and the
    ``sample-too-small`` info alert can fire.
    """

    t = resolve_thresholds(thresholds)
    alerts: List[InterviewQualityAlert] = []

    if (
        current.assistant_turns >= t.min_assistant_turns_for_coverage
        and current.telemetry_coverage < t.telemetry_coverage_warn
    ):
        alerts.append(
            InterviewQualityAlert(
                id="telemetry-coverage-low",
                severity="warning",
                title="Copertura telemetria bassa",
                description=f"Solo il {_pct(current.telemetry_coverage)}% dei turni ha telemetry quality/flow.",
            )
        )

    if current.evaluated_turns < t.min_evaluated_turns:
        alerts.append(
            InterviewQualityAlert(
                id="sample-too-small",
                severity="info",
                title="Campione ancora limitato",
                description=(
                    f"Turni valutati {current.evaluated_turns}/{t.min_evaluated_turns}: "
                    "attendi piu traffico prima di decisioni forti."
                ),
            )
        )
    else:
        if current.pass_rate < t.pass_rate_critical:
            alerts.append(
                InterviewQualityAlert(
                    id="pass-rate-critical",
                    severity="critical",
                    title="Quality pass-rate critico",
                    description=(
                        f"Pass-rate {_pct(current.pass_rate)}%, sotto la soglia critica "
                        f"{_pct(t.pass_rate_critical, 0)}%."
                    ),
                )
            )
        elif current.pass_rate < t.pass_rate_warn:
            alerts.append(
                InterviewQualityAlert(
                    id="pass-rate-warning",
                    severity="warning",
                    title="Quality pass-rate in calo",
                    description=(
                        f"Pass-rate {_pct(current.pass_rate)}%, sotto la soglia {_pct(t.pass_rate_warn, 0)}%."
                    ),
                )
            )

        gate_text = f"Il gate interviene nel {_pct(current.gate_trigger_rate)}% dei turni eleggibili."
        if current.gate_trigger_rate > t.gate_trigger_critical:
            alerts.append(
                InterviewQualityAlert(
                    id="gate-trigger-critical",
                    severity="critical",
                    title="Quality gate trigger troppo alto",
                    description=gate_text,
                )
            )
        elif current.gate_trigger_rate > t.gate_trigger_warn:
            alerts.append(
                InterviewQualityAlert(
                    id="gate-trigger-warning",
                    severity="warning",
                    title="Quality gate trigger elevato",
                    description=gate_text,
                )
            )

        fallback_text = f"Fallback attivato nel {_pct(current.fallback_rate)}% dei turni valutati."
        if current.fallback_rate > t.fallback_critical:
            alerts.append(
                InterviewQualityAlert(
                    id="fallback-critical",
                    severity="critical",
                    title="Fallback deterministico frequente",
                    description=fallback_text,
                )
            )
        elif current.fallback_rate > t.fallback_warn:
            alerts.append(
                InterviewQualityAlert(
                    id="fallback-warning",
                    severity="warning",
                    title="Fallback deterministico sopra soglia",
                    description=fallback_text,
                )
            )

        if current.completion_guard_rate > t.completion_guard_warn:
            alerts.append(
                InterviewQualityAlert(
                    id="completion-guard-warning",
                    severity="warning",
                    title="Intercettazioni completion elevate",
                    description=(
                        f"Completion guard intervenuto {current.completion_guard_intercepts} volte "
                        f"({_pct(current.completion_guard_rate)}%)."
                    ),
                )
            )

    if current.evaluated_turns >= t.min_evaluated_turns and previous.evaluated_turns >= t.min_evaluated_turns:
        drop = current.pass_rate - previous.pass_rate
        if drop <= -t.pass_rate_drop_warn:
            alerts.append(
                InterviewQualityAlert(
                    id="pass-rate-drop",
                    severity="warning",
                    title="Calo quality rispetto alla finestra precedente",
                    description=f"Pass-rate {_pct(current.pass_rate)}% (delta {_pct(drop)} punti).",
                )
            )

    return sorted(alerts, key=lambda alert: _SEVERITY_RANK[alert.severity], reverse=True)


def select_top_failing_bots(by_bot: Sequence[InterviewQualityBotSummary]) -> List[InterviewQualityBotSummary]:
    candidates = [bot for bot in by_bot if bot.evaluated_turns >= TOP_FAILING_MIN_EVALUATED]
    candidates.sort(key=lambda bot: (bot.pass_rate, -bot.fail_turns))
    return candidates[:TOP_FAILING_LIMIT]


def build_quality_delta(
    current: InterviewQualityWindowSummary,
    previous: InterviewQualityWindowSummary,
) -> InterviewQualityDelta:
    avg_delta = None
    if current.avg_score is not None and previous.avg_score is not None:
        avg_delta = current.avg_score - previous.avg_score
    return InterviewQualityDelta(
        pass_rate=current.pass_rate - previous.pass_rate,
        avg_score=avg_delta,
        gate_trigger_rate=current.gate_trigger_rate - previous.gate_trigger_rate,
        fallback_rate=current.fallback_rate - previous.fallback_rate,
    )


# --- AI review -----------------------------------------------------------------


def _review_payload(
    window_hours: int,
    current: InterviewQualityWindowSummary,
    previous: InterviewQualityWindowSummary,
    delta: InterviewQualityDelta,
    alerts: Sequence[InterviewQualityAlert],
    top_failing_bots: Sequence[InterviewQualityBotSummary],
) -> Dict[str, Any]:
    return {
        "windowHours": window_hours,
        "current": current.model_dump(
            by_alias=True,
            include={
                "pass_rate", "avg_score", "gate_trigger_rate", "fallback_rate",
                "completion_guard_rate", "evaluated_turns",
            },
        ),
        "previous": previous.model_dump(
            by_alias=True,
            include={"pass_rate", "avg_score", "gate_trigger_rate", "fallback_rate", "evaluated_turns"},
        ),
        "delta": delta.model_dump(by_alias=True),
        "alerts": [alert.model_dump(include={"severity", "title", "description"}) for alert in alerts[:8]],
        "topFailingBots": [
            bot.model_dump(
                by_alias=True,
                include={
                    "bot_name", "organization_name", "evaluated_turns",
                    "pass_rate", "gate_trigger_rate", "fallback_rate",
                },
            )
            for bot in top_failing_bots[:6]
        ],
    }


def _review_prompt(payload: Dict[str, Any]) -> str:
    return (
        "Sei un reviewer QA per interview-bot.\n"
        "Analizza il seguente report sintetico e produci output operativo per admin.\n"
        "\n"
        "Regole:\n"
        "- Sii concreto e sintetico.\n"
        "- Non inventare metriche.\n"
        "- Evidenzia priorita tecniche che riducono errori di flow e qualità.\n"
        "- Rispondi in italiano.\n"
        "\n"
        "Report:\n"
        f"{json.dumps(payload, indent=2, ensure_ascii=False)}"
    )


def _openai_review_route() -> LlmRoute:
    return LlmRoute(
        name="quality_review",
        base_url=settings.OPENAI_BASE_URL,
        model=settings.AI_REVIEW_MODEL,
        response_format="json_object",
        extra_headers={"Authorization": f"Bearer {settings.OPENAI_API_KEY}"},
        temperature=0.2,
    )


def generate_interview_quality_ai_review(
    *,
    window_hours: int,
    current: InterviewQualityWindowSummary,
    previous: InterviewQualityWindowSummary,
    delta: InterviewQualityDelta,
    alerts: Sequence[InterviewQualityAlert],
    top_failing_bots: Sequence[InterviewQualityBotSummary],
) -> InterviewQualityAiReview:
    """Narrative review of the report; degrades to a stub, never raises."""

    bound = is_ready(QUALITY_REVIEW_KEY)
    model_name = (model_id_for(QUALITY_REVIEW_KEY) if bound else None) or settings.AI_REVIEW_MODEL
    if not bound and not settings.OPENAI_API_KEY:
        return InterviewQualityAiReview(generated=False, model=model_name, summary=NO_CREDENTIAL_SUMMARY)

    prompt = _review_prompt(_review_payload(window_hours, current, previous, delta, alerts, top_failing_bots))
    try:
        if bound:
            draft = generate_object(QUALITY_REVIEW_KEY, AiReviewDraft, prompt=prompt, temperature=0.2).value
        else:
            draft, _ = chat([{"role": "user", "content": prompt}], AiReviewDraft, cfg=_openai_review_route())
    except Exception as exc:  # noqa: BLE001
        logger.error("Interview quality AI review failed: %s", exc)
        return InterviewQualityAiReview(
            generated=False,
            model=model_name,
            summary=f"Generazione AI non riuscita: {exc}",
        )
    return InterviewQualityAiReview(
        generated=True,
        model=model_name,
        summary=draft.summary.strip(),
        priorities=[item.strip() for item in draft.priorities if item.strip()],
        risks=[item.strip() for item in draft.risks if item.strip()],
    )


# --- entry point -------------------------------------------------------------


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _default_fetcher() -> TurnFetcher:
    from storage.messages import fetch_assistant_turns

    return fetch_assistant_turns


def get_interview_quality_dashboard_data(
    *,
    window_hours: Optional[int] = None,
    max_turns: Optional[int] = None,
    bot_id: Optional[str] = None,
    now: Optional[datetime] = None,
    thresholds: Optional[Union[InterviewQualityThresholds, Mapping[str, Any]]] = None,
    include_ai_review: bool = False,
    fetch_turns: Optional[TurnFetcher] = None,
) -> InterviewQualityDashboardData:
    """Current window ``[now-w, now)`` compared with ``[now-2w, now-w)``."""

    hours = clamp_int(window_hours if window_hours is not None else settings.DASHBOARD_WINDOW_HOURS, *WINDOW_HOURS_RANGE)
    cap = clamp_int(max_turns if max_turns is not None else settings.DASHBOARD_MAX_TURNS, *MAX_TURNS_RANGE)
    moment = _as_utc(now or datetime.now(timezone.utc))
    window = timedelta(hours=hours)
    current_from = moment - window
    previous_from = moment - 2 * window
    fetch = fetch_turns or _default_fetcher()

    current_rows, current_truncated = fetch(start=current_from, end=moment, max_turns=cap, bot_id=bot_id)
    previous_rows, previous_truncated = fetch(start=previous_from, end=current_from, max_turns=cap, bot_id=bot_id)

    current = summarize_interview_quality_turns(current_rows, current_truncated)
    previous = summarize_interview_quality_turns(previous_rows, previous_truncated)
    resolved = resolve_thresholds(thresholds)
    top_failing = select_top_failing_bots(current.by_bot)
    alerts = build_interview_quality_alerts(current, previous, resolved)
    delta = build_quality_delta(current, previous)

    ai_review = None
    if include_ai_review:
        ai_review = generate_interview_quality_ai_review(
            window_hours=hours,
            current=current,
            previous=previous,
            delta=delta,
            alerts=alerts,
            top_failing_bots=top_failing,
        )

    return InterviewQualityDashboardData(
        generated_at=moment.isoformat(),
        window_hours=hours,
        max_turns=cap,
        current=current,
        previous=previous,
        delta=delta,
        top_failing_bots=top_failing,
        alerts=alerts,
        thresholds=resolved,
        ai_review=ai_review,
    )


__all__ = [
    "AssistantTurnRow",
    "DEFAULT_THRESHOLDS",
    "InterviewQualityAiReview",
    "InterviewQualityAlert",
    "InterviewQualityBotSummary",
    "InterviewQualityDashboardData",
    "InterviewQualityDelta",
    "InterviewQualityThresholds",
    "InterviewQualityWindowSummary",
    "build_interview_quality_alerts",
    "build_quality_delta",
    "clamp_int",
    "generate_interview_quality_ai_review",
    "get_interview_quality_dashboard_data",
    "resolve_thresholds",
    "round_half_up",
    "safe_rate",
    "select_top_failing_bots",
    "summarize_interview_quality_turns",
]
