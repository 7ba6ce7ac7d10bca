"""Tests for the phase/topic supervisor state machine."""
from __future__ import annotations

import pytest

from agents.supervisor import (
    build_topic_budgets,
    choose_transition_mode,
    compute_budget_action,
    compute_engagement,
    get_completion_guard_action,
    init_interview_state,
    should_intercept_deep_offer_closure,
    should_intercept_topic_phase_closure,
    should_offer_continuation_after_deep,
    steal_bonus_turn,
    supervise_turn,
)
from agents.types import InterviewState, TopicBlock, TopicBudget
from config.lexicons import pack_for


TOPICS = [
    TopicBlock(id="plan", label="Pianificazione del lavoro", sub_goals=["strumenti usati", "priorita settimanali"]),
    TopicBlock(id="team", label="Comunicazione nel team"),
]
SHORT = "Usiamo Excel."
LONG = " ".join(["Organizziamo le attività del gruppo con riunioni brevi e una lavagna condivisa"] * 4)


def _state() -> InterviewState:
    return init_interview_state(TOPICS, max_duration_mins=2, seconds_per_turn=45)


def _turn(state, message, **kwargs):
    kwargs.setdefault("language", "it")
    return supervise_turn(state, TOPICS, user_message=message, **kwargs)


def test_budgets_spread_turn_allowance():
    budgets = build_topic_budgets(TOPICS, max_duration_mins=10, seconds_per_turn=45)
    assert budgets["plan"].base_turns == 7
    assert budgets["team"].base_turns == 6
    assert budgets["plan"].min_turns == 6
    assert budgets["plan"].max_turns == 9
    tiny = build_topic_budgets(TOPICS, max_duration_mins=0, seconds_per_turn=45)
    assert all(b.base_turns == 1 and b.min_turns == 1 for b in tiny.values())
    assert build_topic_budgets([], 10, 45) == {}


def test_budget_rejects_inverted_range():
    with pytest.raises(ValueError):
        TopicBudget(base_turns=5, min_turns=6, max_turns=7)


def test_budget_action_ceiling_wins_over_engagement():
    budget = TopicBudget(base_turns=1, min_turns=1, max_turns=3, turns_used=2)
    assert compute_budget_action("high", budget) == "advance"
    assert compute_budget_action("high", budget.model_copy(update={"turns_used": 1})) == "bonus"
    assert compute_budget_action("low", budget.model_copy(update={"turns_used": 1})) == "advance"
    assert compute_budget_action("low", budget.model_copy(update={"turns_used": 0})) == "continue"


def test_steal_bonus_turn_keeps_donor_consistent():
    budgets = {
        "a": TopicBudget(base_turns=2, min_turns=1, max_turns=4, turns_used=2),
        "b": TopicBudget(base_turns=2, min_turns=2, max_turns=2),
        "c": TopicBudget(base_turns=3, min_turns=2, max_turns=3),
    }
    assert steal_bonus_turn("a", budgets) == "c"
    assert budgets["c"].max_turns == 2
    assert budgets["c"].base_turns == 2
    assert steal_bonus_turn("a", budgets) is None


def test_engagement_scores_length_and_detail():
    low = compute_engagement(SHORT, "it")
    assert low.band == "low"
    high = compute_engagement(LONG, "it")
    assert high.band == "high"
    assert 0.0 <= high.score <= 1.0
    assert len(high.snippet.split()) <= 18
    assert compute_engagement("", "it").score == 0.0


def test_explore_continue_then_transition():
    first = _turn(_state(), SHORT)
    assert first.insight.status == "EXPLORING"
    assert first.next_state.topic_budgets["plan"].turns_used == 1
    assert first.insight.next_sub_goal == "strumenti usati"

    second = _turn(first.next_state, SHORT)
    assert second.insight.status == "TRANSITION"
    assert second.next_state.topic_index == 1
    assert second.next_topic_id == "team"
    assert second.insight.transition_mode == "clean_pivot"
    assert second.next_state.topic_budgets["team"].turns_used == 0


def test_supervisor_never_mutates_input_state():
    state = _state()
    before = state.model_dump()
    _turn(state, LONG)
    assert state.model_dump() == before


def test_clarification_and_off_topic_hold_progress():
    state = _state()
    clarify = _turn(state, "Non ho capito, cosa intendi?")
    assert clarify.insight.status == "CLARIFY"
    assert clarify.insight.user_signal == "clarification"
    assert clarify.next_state.topic_budgets == state.topic_budgets

    redirect = _turn(state, "Che tempo fa oggi a Milano? meteo")
    assert redirect.insight.status == "SCOPE_REDIRECT"
    assert redirect.insight.user_signal == "off_topic_question"
    assert redirect.next_state.turns_used_total == state.turns_used_total


def test_turns_used_never_exceeds_max_turns():
    state = _state()
    for _ in range(12):
        decision = _turn(state, LONG)
        state = decision.next_state
        for budget in state.topic_budgets.values():
            assert budget.turns_used <= budget.max_turns
            assert budget.min_turns <= budget.base_turns <= budget.max_turns


def test_bonus_turn_granted_on_high_engagement():
    state = _turn(_state(), LONG).next_state
    decision = _turn(state, LONG)
    assert decision.insight.status == "EXPLORING_DEEP"
    assert decision.next_state.topic_budgets["plan"].bonus_turns_granted == 1
    assert decision.next_state.topic_budgets["team"].max_turns == 2


def test_full_flow_without_data_collection():
    state = _state()
    statuses = []
    for message in (SHORT, SHORT, SHORT, SHORT):
        decision = _turn(state, message)
        statuses.append(decision.insight.status)
        state = decision.next_state
    assert statuses == ["EXPLORING", "TRANSITION", "EXPLORING", "DEEP_OFFER_ASK"]
    assert state.phase == "DEEP_OFFER"

    refuse = _turn(state, "No, grazie")
    assert refuse.phase == "COMPLETE"
    assert refuse.insight.status == "COMPLETE_WITHOUT_DATA"
    assert refuse.next_state.deep_accepted is False


def _deep_offer_state() -> InterviewState:
    state = _state()
    for _ in range(4):
        state = _turn(state, SHORT).next_state
    assert state.phase == "DEEP_OFFER"
    return state


def test_deep_offer_accept_enters_deepen():
    decision = _turn(_deep_offer_state(), "Sì, va bene")
    assert decision.phase == "DEEPEN"
    assert decision.insight.status == "DEEPENING"
    assert decision.next_state.deep_accepted is True
    assert decision.insight.focus_point


def test_deep_offer_neutral_reply_counts_only_after_real_offer():
    state = _deep_offer_state()
    offer = pack_for("it").extension_offer_question

    unasked = _turn(state, "Dipende", last_assistant_message="Come organizzate il lavoro?")
    assert unasked.insight.status == "DEEP_OFFER_ASK"
    assert unasked.next_state.extension_offer_attempts == 0

    once = _turn(state, "Dipende", last_assistant_message=offer)
    assert once.insight.status == "DEEP_OFFER_ASK"
    assert once.next_state.extension_offer_attempts == 1

    twice = _turn(once.next_state, "Dipende", last_assistant_message=offer)
    assert twice.phase == "COMPLETE"


def test_data_collection_sequence():
    kwargs = {"should_collect_data": True, "candidate_fields": ["email"]}
    consent = _turn(_deep_offer_state(), "No, grazie", **kwargs)
    assert consent.phase == "DATA_COLLECTION"
    assert consent.insight.status == "DATA_COLLECTION_CONSENT"
    assert consent.insight.completion_guard_action == "ask_consent"

    field = _turn(consent.next_state, "Sì, va bene", **kwargs)
    assert field.insight.status == "DATA_COLLECTION"
    assert field.insight.missing_field == "email"
    assert field.next_state.consent_given is True

    done = _turn(field.next_state, "mario.rossi@example.com", **kwargs)
    assert done.phase == "COMPLETE"
    assert done.insight.status == "FINAL_GOODBYE"
    assert done.next_state.collected_fields == {"email": "mario.rossi@example.com"}


def test_field_value_with_refusal_word_is_collected():
    kwargs = {"should_collect_data": True, "candidate_fields": ["email", "phone"], "language": "en"}
    state = _deep_offer_state()
    state.phase = "DATA_COLLECTION"
    state.consent_given = True
    state.pending_field = "email"

    email = _turn(state, "stop@acme.io", **kwargs)
    assert email.insight.status == "DATA_COLLECTION"
    assert email.insight.missing_field == "phone"
    assert email.next_state.collected_fields == {"email": "stop@acme.io"}

    refused = _turn(email.next_state, "no, stop", **kwargs)
    assert refused.phase == "COMPLETE"
    assert refused.next_state.data_collection_refused is True


def test_data_collection_refused_consent_completes():
    kwargs = {"should_collect_data": True, "candidate_fields": ["email"]}
    consent = _turn(_deep_offer_state(), "No, grazie", **kwargs)
    refused = _turn(consent.next_state, "No", **kwargs)
    assert refused.phase == "COMPLETE"
    assert refused.next_state.data_collection_refused is True


def test_time_exhaustion_goes_to_deep_offer():
    state = _state()
    for _ in range(3):
        state = _turn(state, SHORT).next_state
    decision = _turn(state, SHORT, elapsed_sec=10_000)
    assert decision.insight.status == "DEEP_OFFER_ASK"


def test_no_topics_degrades_to_turn_count():
    state = InterviewState()
    decision = supervise_turn(state, [], user_message=SHORT, language="it", max_duration_mins=1)
    assert decision.phase == "COMPLETE"
    longer = supervise_turn(state, [], user_message=SHORT, language="it", max_duration_mins=10)
    assert longer.insight.status == "EXPLORING"


def test_transition_mode_bridges_on_shared_anchor():
    target = TopicBlock(id="ret", label="Customer retention strategy")
    assert choose_transition_mode("We improved customer retention with monthly calls", target, "en") == "bridge"
    assert choose_transition_mode("We mostly use spreadsheets daily", target, "en") == "clean_pivot"
    assert choose_transition_mode("ok", target, "en") == "clean_pivot"


def test_completion_guard_and_closure_rules():
    assert (
        get_completion_guard_action(
            should_collect_data=True,
            candidate_field_ids=["email"],
            consent_given=None,
            data_collection_refused=False,
            missing_field=None,
        )
        == "ask_consent"
    )
    assert (
        get_completion_guard_action(
            should_collect_data=True,
            candidate_field_ids=["email"],
            consent_given=True,
            data_collection_refused=False,
            missing_field="email",
        )
        == "ask_missing_field"
    )
    assert (
        get_completion_guard_action(
            should_collect_data=True,
            candidate_field_ids=["email"],
            consent_given=None,
            data_collection_refused=True,
            missing_field="email",
        )
        == "allow_completion"
    )
    closure = dict(
        is_goodbye_response=False,
        is_goodbye_with_question=False,
        has_no_question=True,
        has_completion_tag=False,
    )
    assert should_intercept_topic_phase_closure(phase="EXPLORE", is_premature_contact_request=False, **closure)
    assert not should_intercept_topic_phase_closure(
        phase="DATA_COLLECTION", is_premature_contact_request=False, **closure
    )
    assert should_intercept_deep_offer_closure(phase="DEEP_OFFER", **closure)
    assert not should_intercept_deep_offer_closure(phase="DEEPEN", **closure)
    assert should_offer_continuation_after_deep(remaining_sec=30, deep_accepted=None)
    assert not should_offer_continuation_after_deep(remaining_sec=30, deep_accepted=True)
    assert not should_offer_continuation_after_deep(remaining_sec=0, deep_accepted=None)
