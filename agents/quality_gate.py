"""Quality gate for assistant turns and the telemetry it persists.

A candidate reply is evaluated only in open phases. A failing candidate
triggers the gate: one regeneration with corrective feedback, then a
deterministic fallback question. Only a failing fallback escapes as
``TurnGenerationError``; everything else degrades quietly.

``parse_interview_assistant_telemetry`` is the only reader of persisted
metadata and the single place where "missing" and "false" are told apart.
"""
from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from agents.question_dedup import DuplicateQuestionMatch, find_duplicate_question_match
from agents.response_builder import is_clarification_handled_response, is_scope_boundary_handled_response
from agents.types import (
    COMPLETION_TAG,
    OPEN_PHASES,
    AssistantTurnMetadata,
    CompletionGuardAction,
    FlowFlags,
    ParsedAssistantTurnTelemetry,
    ParsedFlow,
    ParsedQuality,
    QualitativeChecks,
    QualitativeResult,
    QualityTelemetry,
    TransitionMode,
    UserTurnSignal,
)
from config.lexicons import Language, pack_for, resolve_language
from config.settings import settings

logger = logging.getLogger(__name__)

BRIEF_USER_MAX_WORDS = 5
CONTEXT_USER_MIN_WORDS = 8
KEYWORD_MIN_LENGTH = 4

_NON_WORD = re.compile(r"[^\w]")


class TurnGenerationError(RuntimeError):
    """Raised when neither the model nor the fallback produced a reply."""


# --- heuristic evaluator -----------------------------------------------------


_ISSUES = {
    Language.IT: {
        "avoids_closure": "Chiude prematuramente l'intervista in una fase topic.",
        "avoids_premature_contact": "Richiede dati di contatto fuori dalla fase DATA_COLLECTION.",
        "deep_offer_intent": "In DEEP_OFFER deve proporre continuazione, non porre una domanda topic.",
        "probing_when_user_is_brief": "Risposta breve dell'utente richiede probing specifico, non domanda generica.",
        "references_user_context": (
            "Non aggancia chiaramente alla risposta dell'utente: manca riferimento al contenuto condiviso."
        ),
        "non_repetitive": "Domanda identica a quella precedente.",
    },
    Language.EN: {
        "avoids_closure": "Closes the interview prematurely in a topic phase.",
        "avoids_premature_contact": "Requests contact data outside DATA_COLLECTION phase.",
        "deep_offer_intent": "In DEEP_OFFER must offer to continue, not ask a topic question.",
        "probing_when_user_is_brief": "Brief user response requires specific probing, not a generic question.",
        "references_user_context": "Does not clearly anchor to the user's response: missing reference to shared content.",
        "non_repetitive": "Question is identical to the previous one.",
    },
}


def _normalize(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def _keywords(text: Optional[str]) -> List[str]:
    words = (_NON_WORD.sub("", word) for word in _normalize(text).split(" "))
    return [word for word in words if len(word) >= KEYWORD_MIN_LENGTH]


def _result_from_checks(checks: QualitativeChecks, language: Language) -> QualitativeResult:
    values = checks.model_dump()
    passed_checks = sum(1 for ok in values.values() if ok)
    score = round(passed_checks / len(values) * 100)
    issues = [_ISSUES[language][name] for name, ok in values.items() if not ok]
    return QualitativeResult(passed=not issues, score=score, checks=checks, issues=issues)


def evaluate_interview_question_quality(
    *,
    phase: str,
    topic_label: str,
    user_response: Optional[str],
    assistant_response: Optional[str],
    previous_assistant_response: Optional[str] = None,
    language,
) -> QualitativeResult:
    """Six stateless checks on one assistant reply; score is the share passed."""

    lang = resolve_language(language)
    pack = pack_for(lang)
    response = assistant_response or ""
    data_collection = phase == "DATA_COLLECTION"
    deep_offer = phase == "DEEP_OFFER"
    user_words = len(_normalize(user_response).split())

    if data_collection or deep_offer or user_words > BRIEF_USER_MAX_WORDS:
        probing = True
    else:
        probing = bool(pack.specific_probe.search(response))

    if data_collection or deep_offer or user_words <= CONTEXT_USER_MIN_WORDS:
        references = True
    else:
        lowered = _normalize(response)
        references = any(keyword in lowered for keyword in _keywords(user_response))

    checks = QualitativeChecks(
        avoids_closure=not pack.closure.search(response),
        avoids_premature_contact=data_collection or not pack.contact_request.search(response),
        deep_offer_intent=not deep_offer or bool(pack.continuation.search(response)),
        probing_when_user_is_brief=probing,
        references_user_context=references,
        non_repetitive=(
            not previous_assistant_response
            or _normalize(response) != _normalize(previous_assistant_response)
        ),
    )
    return _result_from_checks(checks, lang)


# --- closure signals -----------------------------------------------------------


class ClosureSignals(BaseModel):
    is_goodbye_response: bool = False
    is_goodbye_with_question: bool = False
    has_no_question: bool = False
    is_premature_contact_request: bool = False
    has_completion_tag: bool = False


def detect_closure_signals(response: Optional[str], language, *, phase: str) -> ClosureSignals:
    pack = pack_for(language)
    text = response or ""
    has_tag = COMPLETION_TAG in text
    goodbye = bool(pack.closure.search(text.replace(COMPLETION_TAG, "")))
    has_question = "?" in text
    return ClosureSignals(
        is_goodbye_response=goodbye and not has_question,
        is_goodbye_with_question=goodbye and has_question,
        has_no_question=not has_question,
        is_premature_contact_request=phase != "DATA_COLLECTION" and bool(pack.contact_request.search(text)),
        has_completion_tag=has_tag,
    )


# --- gate --------------------------------------------------------------------


class QualityGateConfig(BaseModel):
    enabled: bool = True
    pass_score: int = Field(default=80, ge=0, le=100)
    max_regenerations: int = Field(default=1, ge=0)
    allow_fallback: bool = True

    @classmethod
    def from_settings(cls) -> "QualityGateConfig":
        return cls(
            enabled=settings.QUALITY_GATE_ENABLED,
            pass_score=settings.QUALITY_PASS_SCORE,
            max_regenerations=settings.MAX_REGENERATIONS,
        )


class GateContext(BaseModel):
    phase: str
    topic_label: str = ""
    user_message: str = ""
    previous_assistant_message: Optional[str] = None
    assistant_history: List[str] = Field(default_factory=list)
    user_signal: UserTurnSignal = "none"
    language: Language = Language.EN


class GateAssessment(BaseModel):
    passed: bool
    score: int
    result: QualitativeResult
    duplicate: DuplicateQuestionMatch


class GateOutcome(BaseModel):
    message: str
    quality: QualityTelemetry
    assessment: Optional[GateAssessment] = None


def _interruption_handled(candidate: str, context: GateContext) -> bool:
    if context.user_signal == "clarification":
        return is_clarification_handled_response(candidate, context.language)
    if context.user_signal == "off_topic_question":
        return is_scope_boundary_handled_response(candidate, context.language)
    return False


def assess_candidate(candidate: str, context: GateContext, config: QualityGateConfig) -> GateAssessment:
    result = evaluate_interview_question_quality(
        phase=context.phase,
        topic_label=context.topic_label,
        user_response=context.user_message,
        assistant_response=candidate,
        previous_assistant_response=context.previous_assistant_message,
        language=context.language,
    )
    if _interruption_handled(candidate, context):
        # an answered interruption carries no user content to probe or reference
        checks = result.checks.model_copy(
            update={"probing_when_user_is_brief": True, "references_user_context": True}
        )
        result = _result_from_checks(checks, context.language)
    duplicate = find_duplicate_question_match(candidate, context.assistant_history, context.language)
    passed = result.score >= config.pass_score and not duplicate.is_duplicate
    return GateAssessment(passed=passed, score=result.score, result=result, duplicate=duplicate)


def build_regeneration_feedback(assessment: Optional[GateAssessment], language) -> str:
    """Corrective instructions handed to the model for its one retry."""

    lang = resolve_language(language)
    lines: List[str] = []
    if assessment is not None:
        lines.extend(assessment.result.issues)
        if assessment.duplicate.is_duplicate and assessment.duplicate.matched_question:
            if lang is Language.IT:
                lines.append(f'Non ripetere la domanda gia posta: "{assessment.duplicate.matched_question}".')
            else:
                lines.append(f'Do not repeat the question already asked: "{assessment.duplicate.matched_question}".')
    if lang is Language.IT:
        header = "La risposta precedente non ha superato il controllo qualita. Correggi:"
        footer = "Scrivi una sola domanda, specifica e coerente con la risposta dell'utente."
    else:
        header = "The previous reply failed the quality check. Fix the following:"
        footer = "Write exactly one specific question that builds on the user's answer."
    return "\n".join([header, *(f"- {line}" for line in lines), footer])


def run_quality_gate(
    candidate: Optional[str],
    context: GateContext,
    *,
    regenerate: Callable[[str], str],
    fallback: Callable[[], str],
    config: Optional[QualityGateConfig] = None,
) -> GateOutcome:
    """Evaluate ``candidate`` and repair it when needed.

    ``candidate`` is ``None`` when the first generation already failed; the
    gate then goes straight to regeneration (open phases) or to the fallback.
    """

    cfg = config or QualityGateConfig.from_settings()
    eligible = cfg.enabled and context.phase in OPEN_PHASES

    if not eligible:
        if candidate:
            return GateOutcome(message=candidate, quality=QualityTelemetry(eligible=False))
        return GateOutcome(
            message=_run_fallback(fallback, context),
            quality=QualityTelemetry(eligible=False, fallback_used=True),
        )

    assessment: Optional[GateAssessment] = None
    if candidate:
        assessment = assess_candidate(candidate, context, cfg)
        if assessment.passed:
            return GateOutcome(
                message=candidate,
                quality=QualityTelemetry(eligible=True, evaluated=True, score=assessment.score, passed=True),
                assessment=assessment,
            )

    regenerated = False
    for attempt in range(cfg.max_regenerations):
        try:
            retry = regenerate(build_regeneration_feedback(assessment, context.language))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Regeneration attempt %d failed: %s", attempt + 1, exc)
            break
        regenerated = True
        if not retry or not retry.strip():
            continue
        assessment = assess_candidate(retry, context, cfg)
        if assessment.passed:
            return GateOutcome(
                message=retry,
                quality=QualityTelemetry(
                    eligible=True,
                    evaluated=True,
                    score=assessment.score,
                    passed=True,
                    gate_triggered=True,
                    regenerated=True,
                ),
                assessment=assessment,
            )

    evaluated = assessment is not None
    quality = QualityTelemetry(
        eligible=True,
        evaluated=evaluated,
        score=assessment.score if evaluated else None,
        passed=False if evaluated else None,
        gate_triggered=True,
        regenerated=regenerated,
    )
    if not cfg.allow_fallback and candidate:
        return GateOutcome(message=candidate, quality=quality, assessment=assessment)
    message = _run_fallback(fallback, context)
    quality = quality.model_copy(update={"fallback_used": True})
    return GateOutcome(message=message, quality=quality, assessment=assessment)


def _run_fallback(fallback: Callable[[], str], context: GateContext) -> str:
    try:
        message = fallback()
    except Exception as exc:  # noqa: BLE001
        logger.error("Fallback question failed in phase %s: %s", context.phase, exc)
        raise TurnGenerationError("Fallback question generation failed") from exc
    if not message or not message.strip():
        raise TurnGenerationError("Fallback question generation returned an empty message")
    return message.strip()


# --- metadata ------------------------------------------------------------------


def build_flow_flags(
    *,
    topic_closure_intercepted: bool = False,
    deep_offer_closure_intercepted: bool = False,
    completion_guard_action: Optional[CompletionGuardAction] = None,
) -> FlowFlags:
    """``completion_guard_action`` is the action the guard enforced, if it fired."""

    blocked_for_consent = completion_guard_action == "ask_consent"
    blocked_for_field = completion_guard_action == "ask_missing_field"
    return FlowFlags(
        topic_closure_intercepted=topic_closure_intercepted,
        deep_offer_closure_intercepted=deep_offer_closure_intercepted,
        completion_guard_intercepted=blocked_for_consent or blocked_for_field,
        completion_blocked_for_consent=blocked_for_consent,
        completion_blocked_for_missing_field=blocked_for_field,
    )


def build_assistant_metadata(
    *,
    quality: Optional[QualityTelemetry],
    flow_flags: Optional[FlowFlags],
    phase: Optional[str],
    topic_id: Optional[str] = None,
    signal: UserTurnSignal = "none",
    transition_mode: Optional[TransitionMode] = None,
) -> Dict[str, Any]:
    metadata = AssistantTurnMetadata(
        quality=quality,
        flow_flags=flow_flags,
        phase=phase,
        topic_id=topic_id,
        signal=signal,
        transition_mode=transition_mode,
    )
    return metadata.to_json_dict()


def _as_object(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def _as_bool(value: Any) -> bool:
    return value if isinstance(value, bool) else False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def parse_interview_assistant_telemetry(metadata: Any) -> ParsedAssistantTurnTelemetry:
    """Read ``quality``/``flowFlags`` from any metadata shape without raising."""

    if isinstance(metadata, (str, bytes)):
        try:
            metadata = json.loads(metadata)
        except (ValueError, RecursionError):
            metadata = None
    meta = _as_object(metadata)
    quality = _as_object(meta.get("quality")) if meta else None
    flow = _as_object(meta.get("flowFlags")) if meta else None
    q = quality or {}
    f = flow or {}
    passed = q.get("passed")
    return ParsedAssistantTurnTelemetry(
        has_quality_telemetry=quality is not None,
        has_flow_telemetry=flow is not None,
        quality=ParsedQuality(
            eligible=_as_bool(q.get("eligible")),
            evaluated=_as_bool(q.get("evaluated")),
            score=_as_number(q.get("score")),
            passed=passed if isinstance(passed, bool) else None,
            gate_triggered=_as_bool(q.get("gateTriggered")),
            regenerated=_as_bool(q.get("regenerated")),
            fallback_used=_as_bool(q.get("fallbackUsed")),
        ),
        flow=ParsedFlow(
            topic_closure_intercepted=_as_bool(f.get("topicClosureIntercepted")),
            deep_offer_closure_intercepted=_as_bool(f.get("deepOfferClosureIntercepted")),
            completion_guard_intercepted=_as_bool(f.get("completionGuardIntercepted")),
            completion_blocked_for_consent=_as_bool(f.get("completionBlockedForConsent")),
            completion_blocked_for_missing_field=_as_bool(f.get("completionBlockedForMissingField")),
        ),
    )


def recent_assistant_messages(messages: Sequence[Any]) -> List[str]:
    out: List[str] = []
    for message in messages:
        role = message.get("role") if isinstance(message, dict) else getattr(message, "role", None)
        content = message.get("content") if isinstance(message, dict) else getattr(message, "content", None)
        if role == "assistant" and content:
            out.append(content)
    return out


__all__ = [
    "COMPLETION_TAG",
    "ClosureSignals",
    "GateAssessment",
    "GateContext",
    "GateOutcome",
    "QualityGateConfig",
    "TurnGenerationError",
    "assess_candidate",
    "build_assistant_metadata",
    "build_flow_flags",
    "build_regeneration_feedback",
    "detect_closure_signals",
    "evaluate_interview_question_quality",
    "parse_interview_assistant_telemetry",
    "recent_assistant_messages",
]
