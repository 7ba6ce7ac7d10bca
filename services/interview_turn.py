"""Turn pipeline: one user message in, one persisted assistant reply out.

load -> supervise -> build prompt -> generate -> quality gate -> closure
and completion guards -> persist. Nothing is written when no reply could be
produced; the user message, the assistant message with its telemetry and
the next state are committed together.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from agents.quality_gate import (
    COMPLETION_TAG,
    GateContext,
    QualityGateConfig,
    build_assistant_metadata,
    build_flow_flags,
    detect_closure_signals,
    recent_assistant_messages,
    run_quality_gate,
)
from agents.response_builder import (
    build_runtime_semantic_context_prompt,
    build_soft_diagnostic_hint,
    build_natural_topic_cue,
    collect_recent_bridge_stems,
    enforce_deep_offer_question,
    generate_consent_question_only,
    generate_field_question_only,
    generate_topic_question,
)
from agents.supervisor import (
    SupervisorDecision,
    current_topic,
    get_completion_guard_action,
    init_interview_state,
    interesting_topics,
    should_intercept_deep_offer_closure,
    should_intercept_topic_phase_closure,
    supervise_turn,
)
from agents.types import OPEN_PHASES, CompletionGuardAction, FlowFlags, InterviewState, QualityTelemetry, TopicBlock
from config.lexicons import Language, pack_for, resolve_language
from config.registry import TURN_KEY
from config.settings import settings
from llm_gateway import LlmGatewayError, generate_text
from observability.logger import log_event
from observability.tracing import span
from services.usage import UsageReporter, report_usage
from storage.conversations import (
    BotRecord,
    ConversationRecord,
    create_conversation,
    get_bot,
    get_conversation,
    save_state,
    utc_now,
)
from storage.messages import insert_message, list_messages
from storage.sqlite import get_conn

HISTORY_LIMIT = 80


class ConversationNotFoundError(LookupError):
    """Raised when the conversation (or its bot) does not exist."""


class TurnResult(BaseModel):
    conversation_id: str
    message: str
    phase: str
    status: str
    topic_id: Optional[str] = None
    quality: QualityTelemetry
    flow_flags: FlowFlags
    completed: bool = False
    events: List[Dict[str, Any]] = Field(default_factory=list)


_BASE_PROMPT = {
    Language.IT: (
        "Sei l'intervistatore di \"{name}\". Obiettivo dell'intervista: {objective}\n"
        "Rispondi in italiano, con tono naturale e professionale.\n"
        "Fai una sola domanda per turno e non chiudere l'intervista di tua iniziativa."
    ),
    Language.EN: (
        "You are the interviewer for \"{name}\". Interview objective: {objective}\n"
        "Reply in English, with a natural and professional tone.\n"
        "Ask exactly one question per turn and never close the interview on your own."
    ),
}

_DIRECTIVES = {
    Language.IT: {
        "EXPLORING": "Resta sul tema \"{topic}\"{sub_goal}.",
        "EXPLORING_DEEP": "L'utente e coinvolto: approfondisci \"{topic}\" partendo da \"{snippet}\".",
        "TRANSITION": "Passa al tema \"{topic}\"{sub_goal}.",
        "DEEPENING": "Approfondisci \"{topic}\" concentrandoti su: {focus}.",
        "DEEP_OFFER_ASK": (
            "Chiedi se l'utente vuole continuare ancora qualche minuto con domande di approfondimento. "
            "Non fare domande sui temi."
        ),
        "DATA_COLLECTION_CONSENT": "Chiedi il permesso di raccogliere i dati di contatto, con una domanda si/no.",
        "DATA_COLLECTION": "Chiedi solo questo dato: {field}.",
        "COMPLETE_WITHOUT_DATA": f"Ringrazia e chiudi l'intervista. Termina con {COMPLETION_TAG}.",
        "FINAL_GOODBYE": f"Ringrazia e chiudi l'intervista. Termina con {COMPLETION_TAG}.",
        "CLARIFY": "L'utente non ha capito: riformula la domanda precedente in modo piu semplice.",
        "SCOPE_REDIRECT": (
            "La domanda dell'utente e fuori tema: spiega in breve che non rientra nell'intervista "
            "e torna su \"{topic}\"."
        ),
    },
    Language.EN: {
        "EXPLORING": "Stay on the topic \"{topic}\"{sub_goal}.",
        "EXPLORING_DEEP": "The user is engaged: dig deeper into \"{topic}\" starting from \"{snippet}\".",
        "TRANSITION": "Move on to the topic \"{topic}\"{sub_goal}.",
        "DEEPENING": "Deepen \"{topic}\" focusing on: {focus}.",
        "DEEP_OFFER_ASK": (
            "Ask whether the user wants to continue for a few more minutes with deep-dive questions. "
            "Do not ask topic questions."
        ),
        "DATA_COLLECTION_CONSENT": "Ask permission to collect contact details, as a yes/no question.",
        "DATA_COLLECTION": "Ask only for this detail: {field}.",
        "COMPLETE_WITHOUT_DATA": f"Thank the user and close the interview. End with {COMPLETION_TAG}.",
        "FINAL_GOODBYE": f"Thank the user and close the interview. End with {COMPLETION_TAG}.",
        "CLARIFY": "The user did not understand: rephrase the previous question in simpler words.",
        "SCOPE_REDIRECT": (
            "The user's question is off topic: briefly say it is outside the interview "
            "and return to \"{topic}\"."
        ),
    },
}

_SUB_GOAL = {Language.IT: " (obiettivo: {goal})", Language.EN: " (goal: {goal})"}


def _topic_by_id(topics: Sequence[TopicBlock], topic_id: Optional[str]) -> Optional[TopicBlock]:
    for topic in topics:
        if topic.id == topic_id:
            return topic
    return None


def _field_label(bot: BotRecord, field_id: Optional[str]) -> str:
    for field in bot.candidate_fields:
        if field.id == field_id:
            return field.label
    return field_id or ""


def build_interview_prompt(
    bot: BotRecord,
    decision: SupervisorDecision,
    *,
    language,
    user_message: str,
    previous_assistant_message: Optional[str] = None,
    recent_bridge_stems: Optional[Sequence[str]] = None,
) -> str:
    """System prompt for the next reply: persona, semantic context, diagnostic hint, phase directive."""

    lang = resolve_language(language)
    insight = decision.insight
    topic = _topic_by_id(bot.topics, decision.next_topic_id) or current_topic(decision.next_state, bot.topics)
    topic_label = topic.label if topic else ""
    sub_goal = _SUB_GOAL[lang].format(goal=insight.next_sub_goal) if insight.next_sub_goal else ""
    directive = _DIRECTIVES[lang][insight.status].format(
        topic=topic_label,
        sub_goal=sub_goal,
        snippet=insight.engaging_snippet or user_message,
        focus=insight.focus_point or topic_label,
        field=_field_label(bot, insight.missing_field),
    )

    sections = [_BASE_PROMPT[lang].format(name=bot.name, objective=bot.objective or "-")]
    if decision.phase in OPEN_PHASES:
        sections.append(
            build_runtime_semantic_context_prompt(
                language=lang,
                phase=decision.phase,
                target_topic_label=topic_label,
                supervisor_insight=insight,
                last_user_message=user_message,
                previous_assistant_message=previous_assistant_message,
                recent_bridge_stems=recent_bridge_stems,
            )
        )
        if insight.status not in ("CLARIFY", "SCOPE_REDIRECT"):
            sections.append(build_soft_diagnostic_hint(language=lang, last_user_message=user_message))
    sections.append(directive)
    return "\n\n".join(section for section in sections if section)


class _TurnTrace:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []


class InterviewTurnEngine:
    """Runs a single interview turn against the stored conversation."""

    def __init__(
        self,
        *,
        usage_reporter: Optional[UsageReporter] = None,
        gate_config: Optional[QualityGateConfig] = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.usage_reporter = usage_reporter
        self.gate_config = gate_config
        self.clock = clock

    def start_conversation(self, bot_id: str, *, conversation_id: Optional[str] = None) -> str:
        bot = get_bot(bot_id)
        if bot is None:
            raise ConversationNotFoundError(f"Unknown bot {bot_id}")
        state = init_interview_state(bot.topics, max_duration_mins=bot.max_duration_mins)
        conversation_id = create_conversation(bot.id, state, conversation_id=conversation_id, started_at=self.clock())
        log_event("conversation.start", conversation_id, bot_id=bot.id, topics=len(bot.topics))
        return conversation_id

    def _load(self, conversation_id: str) -> tuple[ConversationRecord, BotRecord]:
        conversation = get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Unknown conversation {conversation_id}")
        bot = get_bot(conversation.bot_id)
        if bot is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} has no bot")
        return conversation, bot

    def _elapsed_sec(self, conversation: ConversationRecord) -> float:
        started = dt.datetime.fromisoformat(conversation.started_at)
        return max(0.0, (self.clock() - started).total_seconds())

    def _generate(self, system_prompt: str, history: List[Dict[str, str]], source: str) -> str:
        generation = generate_text(TURN_KEY, prompt=system_prompt, messages=history, temperature=0.6)
        report_usage(self.usage_reporter, source=source, model=generation.model_id, usage=generation.usage)
        return generation.value

    def _mandatory_question(self, bot: BotRecord, action: CompletionGuardAction, field_id: Optional[str], language) -> str:
        if action == "ask_missing_field":
            return generate_field_question_only(
                language=language,
                field_label=_field_label(bot, field_id),
                usage_reporter=self.usage_reporter,
            )
        return generate_consent_question_only(language=language, usage_reporter=self.usage_reporter)

    def _extension_offer(self, bot: BotRecord, state: InterviewState, current_text: Optional[str], language) -> str:
        preview = [
            build_natural_topic_cue(item.topic_label, language)
            for item in interesting_topics(state, bot.topics)
            if item.best_snippet
        ]
        return enforce_deep_offer_question(
            language=language,
            current_text=current_text,
            extension_preview=preview[:1],
            usage_reporter=self.usage_reporter,
        )

    def handle_turn(self, conversation_id: str, user_message: str) -> TurnResult:
        """Process ``user_message`` and persist the resulting assistant turn.

        Raises ``ConversationNotFoundError`` for unknown conversations and
        ``TurnGenerationError`` when even the fallback reply failed.
        """

        trace = _TurnTrace()
        conversation, bot = self._load(conversation_id)
        language = resolve_language(bot.language or settings.DEFAULT_LANGUAGE)
        pack = pack_for(language)
        message_in = (user_message or "").strip()
        log_event("turn.start", conversation_id, phase=conversation.state.phase)

        history = list_messages(conversation_id, limit=HISTORY_LIMIT)
        assistant_history = recent_assistant_messages(history)
        last_assistant = assistant_history[-1] if assistant_history else None
        field_ids = [field.id for field in bot.candidate_fields]

        with span(trace, "supervisor"):
            decision = supervise_turn(
                conversation.state,
                bot.topics,
                user_message=message_in,
                language=language,
                objective=bot.objective,
                elapsed_sec=self._elapsed_sec(conversation),
                max_duration_mins=bot.max_duration_mins,
                should_collect_data=bot.should_collect_data,
                candidate_fields=field_ids,
                last_assistant_message=last_assistant,
            )
        insight = decision.insight
        phase = decision.phase
        state = decision.next_state
        topic = _topic_by_id(bot.topics, decision.next_topic_id) or current_topic(state, bot.topics)
        log_event(
            "node.end",
            conversation_id,
            node="supervisor",
            decision=insight.status,
            phase=phase,
            signal=insight.user_signal,
        )

        recent_stems = collect_recent_bridge_stems(history, settings.BRIDGE_STEM_LIMIT)
        system_prompt = build_interview_prompt(
            bot,
            decision,
            language=language,
            user_message=message_in,
            previous_assistant_message=last_assistant,
            recent_bridge_stems=recent_stems,
        )
        chat_history = [{"role": item.role, "content": item.content} for item in history]
        chat_history.append({"role": "user", "content": message_in})

        candidate: Optional[str] = None
        with span(trace, "generate"):
            try:
                candidate = self._generate(system_prompt, chat_history, "interview_turn")
            except LlmGatewayError as exc:
                log_event("turn.generate_failed", conversation_id, phase=phase, error=str(exc))

        def regenerate(feedback: str) -> str:
            return self._generate(f"{system_prompt}\n\n{feedback}", chat_history, "interview_turn_regeneration")

        def topic_question() -> str:
            return generate_topic_question(
                topic,
                language=language,
                insight=insight,
                last_user_message=message_in,
                previous_assistant_message=last_assistant,
                avoid_bridge_stems=recent_stems,
                usage_reporter=self.usage_reporter,
            )

        def fallback() -> str:
            if phase in OPEN_PHASES:
                return topic_question()
            if phase == "DEEP_OFFER":
                return self._extension_offer(bot, state, None, language)
            if phase == "DATA_COLLECTION":
                return self._mandatory_question(
                    bot, insight.completion_guard_action or "ask_consent", insight.missing_field, language
                )
            return pack.farewell

        context = GateContext(
            phase=phase,
            topic_label=topic.label if topic else "",
            user_message=message_in,
            previous_assistant_message=last_assistant,
            assistant_history=assistant_history,
            user_signal=insight.user_signal,
            language=language,
        )
        with span(trace, "quality_gate"):
            outcome = run_quality_gate(
                candidate, context, regenerate=regenerate, fallback=fallback, config=self.gate_config
            )
        message = outcome.message
        log_event(
            "node.end",
            conversation_id,
            node="quality_gate",
            outcome="pass" if outcome.quality.passed else "degraded",
            score=outcome.quality.score,
            gate_triggered=outcome.quality.gate_triggered,
            fallback_used=outcome.quality.fallback_used,
        )

        closure = detect_closure_signals(message, language, phase=phase)
        topic_closure = should_intercept_topic_phase_closure(phase=phase, **closure.model_dump())
        deep_offer_closure = should_intercept_deep_offer_closure(
            phase=phase,
            is_goodbye_response=closure.is_goodbye_response,
            is_goodbye_with_question=closure.is_goodbye_with_question,
            has_no_question=closure.has_no_question,
            has_completion_tag=closure.has_completion_tag,
        )
        guard_action: Optional[CompletionGuardAction] = None

        if topic_closure:
            message = topic_question()
        elif phase == "DEEP_OFFER":
            message = self._extension_offer(bot, state, None if deep_offer_closure else message, language)
        elif phase == "DATA_COLLECTION" and (
            closure.is_goodbye_response or closure.has_completion_tag or closure.has_no_question
        ):
            enforced = get_completion_guard_action(
                should_collect_data=bot.should_collect_data,
                candidate_field_ids=field_ids,
                consent_given=state.consent_given,
                data_collection_refused=state.data_collection_refused,
                missing_field=insight.missing_field,
            )
            if enforced != "allow_completion":
                guard_action = enforced
                message = self._mandatory_question(bot, enforced, insight.missing_field, language)
        elif phase == "COMPLETE":
            message = message.replace(COMPLETION_TAG, "").strip() or pack.farewell

        flow_flags = build_flow_flags(
            topic_closure_intercepted=topic_closure,
            deep_offer_closure_intercepted=deep_offer_closure,
            completion_guard_action=guard_action,
        )
        metadata = build_assistant_metadata(
            quality=outcome.quality,
            flow_flags=flow_flags,
            phase=phase,
            topic_id=topic.id if topic else None,
            signal=insight.user_signal,
            transition_mode=insight.transition_mode,
        )

        with span(trace, "persist"):
            with get_conn() as conn:
                now = self.clock()
                insert_message(conversation_id, "user", message_in, created_at=now, conn=conn)
                insert_message(conversation_id, "assistant", message, metadata, created_at=now, conn=conn)
                save_state(conversation_id, state, conn=conn)

        log_event(
            "turn.end",
            conversation_id,
            phase=phase,
            decision=insight.status,
            topic_closure=topic_closure,
            deep_offer_closure=deep_offer_closure,
            completion_guard=guard_action,
        )
        return TurnResult(
            conversation_id=conversation_id,
            message=message,
            phase=phase,
            status=insight.status,
            topic_id=topic.id if topic else None,
            quality=outcome.quality,
            flow_flags=flow_flags,
            completed=phase == "COMPLETE",
            events=trace.events,
        )


__all__ = [
    "ConversationNotFoundError",
    "InterviewTurnEngine",
    "TurnResult",
    "build_interview_prompt",
]
