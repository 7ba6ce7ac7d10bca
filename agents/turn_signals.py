"""Heuristic classification of user turns (clarification, off-topic, depth)."""
from __future__ import annotations

from typing import Optional

from agents.topic_anchors import build_message_anchors, build_topic_anchors, has_any_anchor_overlap
from agents.types import OPEN_PHASES, OfferReply, ResponseDepth, TopicBlock, UserTurnSignal
from config.lexicons import CLARIFICATION_FILLER, THRESHOLDS, pack_for


def _clean(text: Optional[str]) -> str:
    return str(text or "").strip().lower()


def word_count(text: Optional[str]) -> int:
    return len(str(text or "").split())


def is_clarification_signal(text: Optional[str], language) -> bool:
    """True for filler replies, explicit clarification asks, or short either/or questions."""

    sample = _clean(text)
    if not sample:
        return False
    if CLARIFICATION_FILLER.match(sample):
        return True
    pack = pack_for(language)
    if pack.clarification.search(sample):
        return True
    return (
        "?" in sample
        and word_count(sample) <= THRESHOLDS.either_or_max_words
        and bool(pack.either_or.search(sample))
    )


def is_likely_user_question(text: Optional[str], language) -> bool:
    sample = _clean(text)
    if not sample:
        return False
    if "?" in sample:
        return True
    return bool(pack_for(language).question_starters.match(sample))


def detect_user_turn_signal(
    *,
    user_message: Optional[str],
    language,
    phase: str,
    current_topic: Optional[TopicBlock] = None,
    target_topic: Optional[TopicBlock] = None,
    interview_objective: Optional[str] = None,
) -> UserTurnSignal:
    """Classify the latest user turn; only open phases are ever flagged."""

    message = str(user_message or "").strip()
    if not message or phase not in OPEN_PHASES:
        return "none"
    if is_clarification_signal(message, language):
        return "clarification"
    if not is_likely_user_question(message, language):
        return "none"

    user_roots = build_message_anchors(message, language).anchor_roots
    overlaps = (
        has_any_anchor_overlap(user_roots, build_topic_anchors(current_topic, language).anchor_roots)
        or has_any_anchor_overlap(user_roots, build_topic_anchors(target_topic, language).anchor_roots)
        or has_any_anchor_overlap(user_roots, build_message_anchors(interview_objective, language).anchor_roots)
    )
    if overlaps:
        return "none"

    pack = pack_for(language)
    if pack.off_topic.search(message):
        return "off_topic_question"
    if word_count(message) <= THRESHOLDS.meta_question_max_words and pack.meta_question.search(message):
        return "off_topic_question"
    return "none"


def get_user_response_depth(text: Optional[str]) -> ResponseDepth:
    words = word_count(text)
    if words <= THRESHOLDS.brief_max_words:
        return "brief"
    if words >= THRESHOLDS.rich_min_words:
        return "rich"
    return "balanced"


def is_extension_offer_question(message: Optional[str], language) -> bool:
    sample = _clean(message)
    if not sample or "?" not in sample:
        return False
    return bool(pack_for(language).extension_offer.search(sample))


def classify_offer_reply(text: Optional[str], language) -> OfferReply:
    """Read a yes/no reply to a consent or extension offer; ambiguous -> NEUTRAL."""

    sample = _clean(text)
    if not sample:
        return "NEUTRAL"
    pack = pack_for(language)
    accepts = bool(pack.accept_reply.search(sample))
    refuses = bool(pack.refuse_reply.search(sample))
    if accepts and not refuses:
        return "ACCEPT"
    if refuses and not accepts:
        return "REFUSE"
    return "NEUTRAL"


__all__ = [
    "classify_offer_reply",
    "detect_user_turn_signal",
    "get_user_response_depth",
    "is_clarification_signal",
    "is_extension_offer_question",
    "is_likely_user_question",
    "word_count",
]
