"""Phase and topic supervisor for the interview state machine.

Each user turn is folded into a new ``InterviewState`` plus a
``SupervisorInsight`` telling the prompt builder what the next assistant
message should do. Phases move EXPLORE -> DEEPEN -> DEEP_OFFER ->
DATA_COLLECTION -> COMPLETE; EXPLORE and DEEPEN are the only open phases.

Topic budgets are hard caps: engagement can earn bonus turns above
``base_turns`` but a topic never runs past ``max_turns``.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from agents.response_builder import (
    has_meaningful_topic_overlap,
    is_usable_bridge_snippet,
    sanitize_user_snippet,
)
from agents.topic_anchors import extract_tokens, normalize_anchor
from agents.turn_signals import (
    classify_offer_reply,
    detect_user_turn_signal,
    is_extension_offer_question,
    word_count,
)
from agents.types import (
    OPEN_PHASES,
    BudgetAction,
    CompletionGuardAction,
    EngagementBand,
    EngagementSignal,
    InterestingTopic,
    InterviewState,
    SupervisorInsight,
    TopicBlock,
    TopicBudget,
    TransitionMode,
)
from config.lexicons import THRESHOLDS, pack_for
from config.settings import settings

logger = logging.getLogger(__name__)

ENGAGEMENT_WORDS_FOR_FULL_SCORE = 60
HIGH_ENGAGEMENT = 0.6
MEDIUM_ENGAGEMENT = 0.3
KEY_INSIGHT_MIN_SCORE = 0.5
MAX_DEEP_TURNS_PER_TOPIC = 2
MAX_EXTENSION_OFFER_ATTEMPTS = 2
BRIDGE_SNIPPET_WORDS = 12

_DIGIT_RE = re.compile(r"\d")


class SupervisorDecision(BaseModel):
    next_state: InterviewState
    insight: SupervisorInsight
    next_topic_id: Optional[str] = None

    @property
    def phase(self) -> str:
        return self.next_state.phase


# --- budgets -----------------------------------------------------------------


def build_topic_budgets(
    topics: Sequence[TopicBlock],
    max_duration_mins: float,
    seconds_per_turn: int,
) -> Dict[str, TopicBudget]:
    """Spread the interview's turn allowance over its topics."""

    if not topics:
        return {}
    total_turns = int(max(0, max_duration_mins) * 60 // max(1, seconds_per_turn))
    total_turns = max(len(topics), total_turns)
    share, remainder = divmod(total_turns, len(topics))
    budgets: Dict[str, TopicBudget] = {}
    for index, topic in enumerate(topics):
        base = max(1, share + (1 if index < remainder else 0))
        budgets[topic.id] = TopicBudget(base_turns=base, min_turns=max(1, base - 1), max_turns=base + 2)
    return budgets


def init_interview_state(
    topics: Sequence[TopicBlock],
    plan: Optional[Mapping[str, TopicBudget]] = None,
    *,
    max_duration_mins: Optional[float] = None,
    seconds_per_turn: Optional[int] = None,
) -> InterviewState:
    """Fresh EXPLORE state; ``plan`` budgets win over the derived ones."""

    budgets = build_topic_budgets(
        topics,
        max_duration_mins if max_duration_mins is not None else settings.DEFAULT_MAX_DURATION_MINS,
        seconds_per_turn or settings.SECONDS_PER_TURN,
    )
    for topic_id, budget in (plan or {}).items():
        budgets[topic_id] = budget.model_copy()
    return InterviewState(phase="EXPLORE", topic_index=0, topic_budgets=budgets)


def compute_budget_action(band: EngagementBand, budget: TopicBudget) -> BudgetAction:
    if budget.turns_used + 1 >= budget.max_turns:
        return "advance"
    if budget.turns_used < budget.base_turns:
        return "continue"
    if band == "high":
        return "bonus"
    return "advance"


def steal_bonus_turn(current_id: str, budgets: Dict[str, TopicBudget]) -> Optional[str]:
    """Fund one bonus turn by shrinking an untouched topic; returns the donor id.

    The donor keeps ``min_turns <= base_turns <= max_turns``. ``budgets`` is
    updated in place when a donor is found.
    """

    for topic_id, budget in budgets.items():
        if topic_id == current_id or budget.turns_used > 0:
            continue
        if budget.max_turns <= budget.min_turns:
            continue
        new_max = budget.max_turns - 1
        budgets[topic_id] = budget.model_copy(
            update={"max_turns": new_max, "base_turns": min(budget.base_turns, new_max)}
        )
        return topic_id
    return None


# --- engagement --------------------------------------------------------------


def compute_engagement(text: Optional[str], language) -> EngagementSignal:
    """Score a reply by length with a small bonus for concrete detail."""

    message = (text or "").strip()
    if not message:
        return EngagementSignal(score=0.0, band="low", snippet="")
    pack = pack_for(language)
    score = min(1.0, word_count(message) / ENGAGEMENT_WORDS_FOR_FULL_SCORE)
    if _DIGIT_RE.search(message):
        score += 0.15
    if pack.specific_probe.search(message):
        score += 0.1
    if pack.impact_signal.search(message.lower()):
        score += 0.1
    score = round(min(1.0, score), 3)
    if score >= HIGH_ENGAGEMENT:
        band: EngagementBand = "high"
    elif score >= MEDIUM_ENGAGEMENT:
        band = "medium"
    else:
        band = "low"
    return EngagementSignal(score=score, band=band, snippet=sanitize_user_snippet(message, 18))


def interesting_topics(state: InterviewState, topics: Sequence[TopicBlock]) -> List[InterestingTopic]:
    """Topics with recorded engagement, most engaging first."""

    ranked = [
        InterestingTopic(
            topic_id=topic.id,
            topic_label=topic.label,
            engagement_score=state.engagement_scores[topic.id],
            best_snippet=state.key_insights.get(topic.id),
        )
        for topic in topics
        if topic.id in state.engagement_scores
    ]
    ranked.sort(key=lambda item: item.engagement_score, reverse=True)
    return ranked


def _record_engagement(state: InterviewState, topic_id: str, signal: EngagementSignal) -> None:
    state.engagement_scores[topic_id] = max(state.engagement_scores.get(topic_id, 0.0), signal.score)
    if signal.score >= KEY_INSIGHT_MIN_SCORE and signal.snippet:
        state.key_insights[topic_id] = signal.snippet


# --- focus & transitions -----------------------------------------------------


def _content_roots(text: Optional[str], language) -> set:
    pack = pack_for(language)
    roots = set()
    for token in extract_tokens(text):
        plain = normalize_anchor(token)
        if len(plain) < THRESHOLDS.anchor_min_length or plain in pack.stopwords:
            continue
        roots.add(plain[: THRESHOLDS.anchor_root_length])
    return roots


def _overlap_score(sub_goal: str, context: str, language) -> float:
    goal_roots = _content_roots(sub_goal, language)
    if not goal_roots:
        return 0.0
    return len(goal_roots & _content_roots(context, language)) / len(goal_roots)


def select_deep_focus_point(
    topic: Optional[TopicBlock],
    available_sub_goals: Sequence[str],
    engaging_snippet: Optional[str],
    last_user_message: Optional[str],
    language,
    interview_objective: Optional[str] = None,
) -> str:
    """Pick the sub-goal closest to the objective and to what the user said."""

    if not available_sub_goals:
        return topic.label if topic else ""
    context = " ".join(part for part in (engaging_snippet, last_user_message) if part).strip()
    objective = (interview_objective or "").strip()
    best, best_score = available_sub_goals[0], -1.0
    for sub_goal in available_sub_goals:
        objective_score = _overlap_score(sub_goal, objective, language) if objective else 0.0
        context_score = _overlap_score(sub_goal, context, language) if context else 0.0
        score = objective_score * 0.6 + context_score * 0.4
        if score > best_score:
            best, best_score = sub_goal, score
    return best


def _remaining_sub_goals(state: InterviewState, topic: TopicBlock) -> List[str]:
    used = state.sub_goal_history.get(topic.id, [])
    return [goal for goal in topic.sub_goals if goal not in used]


def _claim_sub_goal(state: InterviewState, topic: TopicBlock) -> Optional[str]:
    remaining = _remaining_sub_goals(state, topic)
    if not remaining:
        return None
    state.sub_goal_history.setdefault(topic.id, []).append(remaining[0])
    return remaining[0]


def choose_transition_mode(user_message: Optional[str], next_topic: Optional[TopicBlock], language) -> TransitionMode:
    if next_topic is not None and is_usable_bridge_snippet(user_message, language):
        if has_meaningful_topic_overlap(user_message, next_topic, language):
            return "bridge"
    return "clean_pivot"


def _transition_insight(
    status: str,
    user_message: Optional[str],
    next_topic: TopicBlock,
    language,
    **fields,
) -> SupervisorInsight:
    mode = choose_transition_mode(user_message, next_topic, language)
    snippet = sanitize_user_snippet(user_message, BRIDGE_SNIPPET_WORDS) if mode == "bridge" else None
    return SupervisorInsight(
        status=status,
        transition_mode=mode,
        next_topic_id=next_topic.id,
        transition_bridge_snippet=snippet,
        **fields,
    )


# --- completion guard & closure interception ---------------------------------


def get_completion_guard_action(
    *,
    should_collect_data: bool,
    candidate_field_ids: Sequence[str],
    consent_given: Optional[bool],
    data_collection_refused: bool,
    missing_field: Optional[str],
) -> CompletionGuardAction:
    if not should_collect_data or not candidate_field_ids or data_collection_refused:
        return "allow_completion"
    if consent_given is not True:
        return "ask_consent"
    if missing_field:
        return "ask_missing_field"
    return "allow_completion"


def should_intercept_topic_phase_closure(
    *,
    phase: str,
    is_goodbye_response: bool,
    is_goodbye_with_question: bool,
    has_no_question: bool,
    is_premature_contact_request: bool,
    has_completion_tag: bool,
) -> bool:
    if phase not in OPEN_PHASES:
        return False
    return (
        is_goodbye_response
        or is_goodbye_with_question
        or has_no_question
        or is_premature_contact_request
        or has_completion_tag
    )


def should_intercept_deep_offer_closure(
    *,
    phase: str,
    is_goodbye_response: bool,
    is_goodbye_with_question: bool,
    has_no_question: bool,
    has_completion_tag: bool,
) -> bool:
    if phase != "DEEP_OFFER":
        return False
    return is_goodbye_response or is_goodbye_with_question or has_no_question or has_completion_tag


def should_offer_continuation_after_deep(*, remaining_sec: float, deep_accepted: Optional[bool]) -> bool:
    return remaining_sec > 0 and deep_accepted is not True


# --- phase handlers ----------------------------------------------------------


def _missing_fields(state: InterviewState, candidate_fields: Sequence[str]) -> List[str]:
    return [field_id for field_id in candidate_fields if not state.collected_fields.get(field_id)]


def _enter_data_collection(
    state: InterviewState,
    *,
    should_collect_data: bool,
    candidate_fields: Sequence[str],
) -> SupervisorInsight:
    state.extension_offer_attempts = 0
    if should_collect_data and _missing_fields(state, candidate_fields) and not state.data_collection_refused:
        state.phase = "DATA_COLLECTION"
        state.consent_given = None
        state.pending_field = None
        return SupervisorInsight(status="DATA_COLLECTION_CONSENT", completion_guard_action="ask_consent")
    state.phase = "COMPLETE"
    return SupervisorInsight(status="COMPLETE_WITHOUT_DATA", completion_guard_action="allow_completion")


def _enter_deep_offer(state: InterviewState) -> SupervisorInsight:
    state.phase = "DEEP_OFFER"
    state.extension_offer_attempts = 0
    return SupervisorInsight(status="DEEP_OFFER_ASK")


def _remaining_sec(elapsed_sec: float, max_duration_mins: float) -> float:
    return max_duration_mins * 60 - elapsed_sec


def _uncovered_by_engagement(state: InterviewState, topics: Sequence[TopicBlock]) -> List[str]:
    uncovered = [
        topic.id
        for topic in topics
        if topic.id in state.topic_budgets
        and state.topic_budgets[topic.id].turns_used < state.topic_budgets[topic.id].base_turns
    ]
    return sorted(uncovered, key=lambda topic_id: state.engagement_scores.get(topic_id, 0.0), reverse=True)


def _deep_insight(
    state: InterviewState,
    topic: TopicBlock,
    *,
    user_message: str,
    language,
    objective: Optional[str],
) -> SupervisorInsight:
    snippet = state.key_insights.get(topic.id)
    focus = select_deep_focus_point(
        topic, _remaining_sub_goals(state, topic), snippet, user_message, language, objective
    )
    if focus and focus in topic.sub_goals:
        state.sub_goal_history.setdefault(topic.id, []).append(focus)
    return SupervisorInsight(
        status="DEEPENING",
        next_topic_id=topic.id,
        focus_point=focus or topic.label,
        engaging_snippet=snippet,
    )


def _handle_explore(
    state: InterviewState,
    topics: Sequence[TopicBlock],
    *,
    user_message: str,
    language,
    remaining_sec: float,
    should_collect_data: bool,
    candidate_fields: Sequence[str],
) -> SupervisorDecision:
    index = min(max(state.topic_index, 0), len(topics) - 1)
    current = topics[index]
    budget = state.topic_budgets.get(current.id)
    if budget is None:
        share = settings.DEFAULT_MAX_DURATION_MINS / len(topics)
        budget = build_topic_budgets([current], share, settings.SECONDS_PER_TURN)[current.id]
        state.topic_budgets[current.id] = budget

    signal = compute_engagement(user_message, language)
    _record_engagement(state, current.id, signal)
    action = compute_budget_action(signal.band, budget)
    logger.debug(
        "explore topic=%s band=%s action=%s turns=%d/%d",
        current.id,
        signal.band,
        action,
        budget.turns_used,
        budget.base_turns,
    )

    if action == "continue":
        state.topic_budgets[current.id] = budget.model_copy(update={"turns_used": budget.turns_used + 1})
        state.turns_used_total += 1
        insight = SupervisorInsight(status="EXPLORING", next_sub_goal=_claim_sub_goal(state, current))
        return SupervisorDecision(next_state=state, insight=insight, next_topic_id=current.id)

    if action == "bonus":
        donor = steal_bonus_turn(current.id, state.topic_budgets)
        if donor is not None:
            state.topic_budgets[current.id] = budget.model_copy(
                update={
                    "turns_used": budget.turns_used + 1,
                    "bonus_turns_granted": budget.bonus_turns_granted + 1,
                }
            )
            state.turns_used_total += 1
            insight = SupervisorInsight(
                status="EXPLORING_DEEP",
                engaging_snippet=signal.snippet or None,
                next_sub_goal=_claim_sub_goal(state, current),
            )
            logger.debug("bonus turn for %s funded by %s", current.id, donor)
            return SupervisorDecision(next_state=state, insight=insight, next_topic_id=current.id)

    # advance
    state.turns_used_total += 1
    if index + 1 < len(topics):
        next_topic = topics[index + 1]
        state.topic_index = index + 1
        insight = _transition_insight(
            "TRANSITION", user_message, next_topic, language, next_sub_goal=_claim_sub_goal(state, next_topic)
        )
        return SupervisorDecision(next_state=state, insight=insight, next_topic_id=next_topic.id)

    state.uncovered_topics = _uncovered_by_engagement(state, topics)
    state.deep_index = 0
    state.deep_turn_in_topic = 0
    if remaining_sec <= 0:
        return SupervisorDecision(next_state=state, insight=_enter_deep_offer(state), next_topic_id=current.id)
    if not state.uncovered_topics:
        return _finish_deepen(
            state,
            topics,
            remaining_sec=remaining_sec,
            should_collect_data=should_collect_data,
            candidate_fields=candidate_fields,
        )
    state.phase = "DEEPEN"
    return SupervisorDecision(
        next_state=state,
        insight=SupervisorInsight(status="DEEPENING", next_topic_id=state.uncovered_topics[0]),
        next_topic_id=state.uncovered_topics[0],
    )


def _finish_deepen(
    state: InterviewState,
    topics: Sequence[TopicBlock],
    *,
    remaining_sec: float,
    should_collect_data: bool,
    candidate_fields: Sequence[str],
) -> SupervisorDecision:
    if topics and should_offer_continuation_after_deep(remaining_sec=remaining_sec, deep_accepted=state.deep_accepted):
        return SupervisorDecision(next_state=state, insight=_enter_deep_offer(state))
    insight = _enter_data_collection(state, should_collect_data=should_collect_data, candidate_fields=candidate_fields)
    return SupervisorDecision(next_state=state, insight=insight)


def _handle_deepen(
    state: InterviewState,
    topics: Sequence[TopicBlock],
    *,
    user_message: str,
    language,
    objective: Optional[str],
    remaining_sec: float,
    should_collect_data: bool,
    candidate_fields: Sequence[str],
) -> SupervisorDecision:
    by_id = {topic.id: topic for topic in topics}
    uncovered = [topic_id for topic_id in state.uncovered_topics if topic_id in by_id]
    if state.deep_index >= len(uncovered):
        return _finish_deepen(
            state,
            topics,
            remaining_sec=remaining_sec,
            should_collect_data=should_collect_data,
            candidate_fields=candidate_fields,
        )

    current = by_id[uncovered[state.deep_index]]
    _record_engagement(state, current.id, compute_engagement(user_message, language))
    budget = state.topic_budgets.get(current.id)
    slack = (budget.max_turns - budget.turns_used) if budget else MAX_DEEP_TURNS_PER_TOPIC
    max_deep_turns = min(MAX_DEEP_TURNS_PER_TOPIC, max(1, slack))
    state.turns_used_total += 1

    if state.deep_turn_in_topic >= max_deep_turns:
        state.deep_index += 1
        state.deep_turn_in_topic = 0
        if state.deep_index >= len(uncovered):
            return _finish_deepen(
                state,
                topics,
                remaining_sec=remaining_sec,
                should_collect_data=should_collect_data,
                candidate_fields=candidate_fields,
            )
        current = by_id[uncovered[state.deep_index]]
        insight = _deep_insight(state, current, user_message=user_message, language=language, objective=objective)
        mode = choose_transition_mode(user_message, current, language)
        insight.transition_mode = mode
        if mode == "bridge":
            insight.transition_bridge_snippet = sanitize_user_snippet(user_message, BRIDGE_SNIPPET_WORDS)
    else:
        state.deep_turn_in_topic += 1
        insight = _deep_insight(state, current, user_message=user_message, language=language, objective=objective)

    if remaining_sec <= 0 and state.deep_accepted is not True:
        return SupervisorDecision(next_state=state, insight=_enter_deep_offer(state), next_topic_id=current.id)
    return SupervisorDecision(next_state=state, insight=insight, next_topic_id=current.id)


def _handle_deep_offer(
    state: InterviewState,
    topics: Sequence[TopicBlock],
    *,
    user_message: str,
    language,
    objective: Optional[str],
    should_collect_data: bool,
    candidate_fields: Sequence[str],
    last_assistant_message: Optional[str],
) -> SupervisorDecision:
    if not user_message:
        return SupervisorDecision(next_state=state, insight=SupervisorInsight(status="DEEP_OFFER_ASK"))

    reply = classify_offer_reply(user_message, language)
    if reply == "ACCEPT" and topics:
        state.deep_accepted = True
        state.extension_offer_attempts = 0
        state.phase = "DEEPEN"
        by_id = {topic.id: topic for topic in topics}
        pending = [topic_id for topic_id in state.uncovered_topics[state.deep_index:] if topic_id in by_id]
        if not pending:
            ranked = [item.topic_id for item in interesting_topics(state, topics)]
            pending = ranked + [topic.id for topic in topics if topic.id not in ranked]
        state.uncovered_topics = pending
        state.deep_index = 0
        state.deep_turn_in_topic = 0
        current = by_id[pending[0]]
        insight = _deep_insight(state, current, user_message=user_message, language=language, objective=objective)
        return SupervisorDecision(next_state=state, insight=insight, next_topic_id=current.id)

    if reply != "NEUTRAL":
        if reply == "REFUSE":
            state.deep_accepted = False
        insight = _enter_data_collection(state, should_collect_data=should_collect_data, candidate_fields=candidate_fields)
        return SupervisorDecision(next_state=state, insight=insight)

    if not is_extension_offer_question(last_assistant_message, language):
        # the offer was never actually asked, so this reply does not count
        return SupervisorDecision(next_state=state, insight=SupervisorInsight(status="DEEP_OFFER_ASK"))
    attempts = state.extension_offer_attempts + 1
    if attempts >= MAX_EXTENSION_OFFER_ATTEMPTS:
        insight = _enter_data_collection(state, should_collect_data=should_collect_data, candidate_fields=candidate_fields)
        return SupervisorDecision(next_state=state, insight=insight)
    state.extension_offer_attempts = attempts
    return SupervisorDecision(next_state=state, insight=SupervisorInsight(status="DEEP_OFFER_ASK"))


def _looks_like_field_refusal(text: str, language) -> bool:
    if "@" in text or _DIGIT_RE.search(text):  # an email or phone number is an answer
        return False
    return word_count(text) <= 4 and classify_offer_reply(text, language) == "REFUSE"


def _handle_data_collection(
    state: InterviewState,
    *,
    user_message: str,
    language,
    candidate_fields: Sequence[str],
) -> SupervisorDecision:
    if state.consent_given is not True:
        reply = classify_offer_reply(user_message, language)
        if reply == "REFUSE":
            state.consent_given = False
            state.data_collection_refused = True
            state.phase = "COMPLETE"
            insight = SupervisorInsight(status="COMPLETE_WITHOUT_DATA", completion_guard_action="allow_completion")
            return SupervisorDecision(next_state=state, insight=insight)
        if reply == "NEUTRAL":
            insight = SupervisorInsight(status="DATA_COLLECTION_CONSENT", completion_guard_action="ask_consent")
            return SupervisorDecision(next_state=state, insight=insight)
        state.consent_given = True
    elif state.pending_field:
        if _looks_like_field_refusal(user_message, language):
            state.data_collection_refused = True
            state.pending_field = None
            state.phase = "COMPLETE"
            insight = SupervisorInsight(status="FINAL_GOODBYE", completion_guard_action="allow_completion")
            return SupervisorDecision(next_state=state, insight=insight)
        if user_message:
            state.collected_fields[state.pending_field] = user_message

    missing = _missing_fields(state, candidate_fields)
    if missing:
        state.pending_field = missing[0]
        insight = SupervisorInsight(
            status="DATA_COLLECTION",
            completion_guard_action="ask_missing_field",
            missing_field=missing[0],
        )
        return SupervisorDecision(next_state=state, insight=insight)

    state.pending_field = None
    state.phase = "COMPLETE"
    insight = SupervisorInsight(status="FINAL_GOODBYE", completion_guard_action="allow_completion")
    return SupervisorDecision(next_state=state, insight=insight)


def _handle_without_topics(
    state: InterviewState,
    *,
    max_duration_mins: float,
    should_collect_data: bool,
    candidate_fields: Sequence[str],
) -> SupervisorDecision:
    state.turns_used_total += 1
    allowance = max(1, math.floor(max_duration_mins * 60 / max(1, settings.SECONDS_PER_TURN)))
    if state.turns_used_total >= allowance:
        insight = _enter_data_collection(state, should_collect_data=should_collect_data, candidate_fields=candidate_fields)
        return SupervisorDecision(next_state=state, insight=insight)
    return SupervisorDecision(next_state=state, insight=SupervisorInsight(status="EXPLORING"))


def current_topic(state: InterviewState, topics: Sequence[TopicBlock]) -> Optional[TopicBlock]:
    """The topic the conversation is on before this turn is applied."""

    if not topics:
        return None
    if state.phase == "DEEPEN" and state.deep_index < len(state.uncovered_topics):
        topic_id = state.uncovered_topics[state.deep_index]
        for topic in topics:
            if topic.id == topic_id:
                return topic
    return topics[min(max(state.topic_index, 0), len(topics) - 1)]


def _upcoming_topic(state: InterviewState, topics: Sequence[TopicBlock]) -> Optional[TopicBlock]:
    if state.phase == "EXPLORE" and state.topic_index + 1 < len(topics):
        return topics[state.topic_index + 1]
    return None


def supervise_turn(
    state: InterviewState,
    topics: Sequence[TopicBlock],
    *,
    user_message: Optional[str],
    language,
    objective: Optional[str] = None,
    elapsed_sec: float = 0.0,
    max_duration_mins: Optional[float] = None,
    should_collect_data: bool = False,
    candidate_fields: Sequence[str] = (),
    last_assistant_message: Optional[str] = None,
) -> SupervisorDecision:
    """Fold one user turn into the interview state.

    The input state is never mutated. Clarification and off-topic turns in
    open phases leave budgets untouched and only set the insight status.
    """

    next_state = state.model_copy(deep=True)
    message = (user_message or "").strip()
    duration = max_duration_mins if max_duration_mins is not None else settings.DEFAULT_MAX_DURATION_MINS
    remaining = _remaining_sec(elapsed_sec, duration)
    active = current_topic(state, topics)

    if state.phase in OPEN_PHASES:
        signal = detect_user_turn_signal(
            user_message=message,
            language=language,
            phase=state.phase,
            current_topic=active,
            target_topic=_upcoming_topic(state, topics),
            interview_objective=objective,
        )
        if signal != "none":
            status = "CLARIFY" if signal == "clarification" else "SCOPE_REDIRECT"
            insight = SupervisorInsight(
                status=status,
                user_signal=signal,
                next_topic_id=active.id if active else None,
            )
            return SupervisorDecision(
                next_state=next_state, insight=insight, next_topic_id=active.id if active else None
            )

    if state.phase in OPEN_PHASES and not topics:
        return _handle_without_topics(
            next_state,
            max_duration_mins=duration,
            should_collect_data=should_collect_data,
            candidate_fields=candidate_fields,
        )
    if state.phase == "EXPLORE":
        return _handle_explore(
            next_state,
            topics,
            user_message=message,
            language=language,
            remaining_sec=remaining,
            should_collect_data=should_collect_data,
            candidate_fields=candidate_fields,
        )
    if state.phase == "DEEPEN":
        return _handle_deepen(
            next_state,
            topics,
            user_message=message,
            language=language,
            objective=objective,
            remaining_sec=remaining,
            should_collect_data=should_collect_data,
            candidate_fields=candidate_fields,
        )
    if state.phase == "DEEP_OFFER":
        return _handle_deep_offer(
            next_state,
            topics,
            user_message=message,
            language=language,
            objective=objective,
            should_collect_data=should_collect_data,
            candidate_fields=candidate_fields,
            last_assistant_message=last_assistant_message,
        )
    if state.phase == "DATA_COLLECTION":
        return _handle_data_collection(
            next_state,
            user_message=message,
            language=language,
            candidate_fields=candidate_fields,
        )
    return SupervisorDecision(next_state=next_state, insight=SupervisorInsight(status="FINAL_GOODBYE"))


__all__ = [
    "SupervisorDecision",
    "build_topic_budgets",
    "choose_transition_mode",
    "compute_budget_action",
    "compute_engagement",
    "current_topic",
    "get_completion_guard_action",
    "init_interview_state",
    "interesting_topics",
    "select_deep_focus_point",
    "should_intercept_deep_offer_closure",
    "should_intercept_topic_phase_closure",
    "should_offer_continuation_after_deep",
    "steal_bonus_turn",
    "supervise_turn",
]
