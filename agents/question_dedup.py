"""Detect when a candidate assistant question repeats one already asked."""
from __future__ import annotations

import re
from collections import Counter
from typing import List, Literal, Optional, Sequence

from pydantic import BaseModel

from agents.topic_anchors import strip_diacritics
from config.lexicons import pack_for

DuplicateReason = Literal["none", "exact", "high_similarity", "same_prefix"]

HISTORY_LIMIT = 80
MIN_TOKEN_LENGTH = 3
MIN_INFORMATIVE_TOKENS = 5
PREFIX_TOKENS = 4
JACCARD_DUPLICATE = 0.72
DICE_DUPLICATE = 0.87
PREFIX_JACCARD = 0.45
NGRAM_SIZE = 3

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_SENTENCE_BREAK = re.compile(r"[.!]")


class DuplicateQuestionMatch(BaseModel):
    is_duplicate: bool = False
    matched_question: Optional[str] = None
    similarity: float = 0.0
    reason: DuplicateReason = "none"


def normalize_question(text: Optional[str]) -> str:
    plain = strip_diacritics(text or "").lower()
    return _WHITESPACE.sub(" ", _NON_ALNUM.sub(" ", plain)).strip()


def extract_questions(text: Optional[str]) -> List[str]:
    """Every ``?`` clause of a message, trimmed to its last sentence."""

    compact = _WHITESPACE.sub(" ", text or "").strip()
    if not compact or "?" not in compact:
        return []
    questions: List[str] = []
    for piece in compact.split("?"):
        trimmed = piece.strip()
        if not trimmed:
            continue
        sentences = [part.strip() for part in _SENTENCE_BREAK.split(trimmed) if part.strip()]
        questions.append(f"{sentences[-1] if sentences else trimmed}?")
    return questions


def _tokens(text: str, language) -> List[str]:
    stopwords = pack_for(language).dedup_stopwords
    return [
        token
        for token in normalize_question(text).split(" ")
        if len(token) >= MIN_TOKEN_LENGTH and token not in stopwords
    ]


def _jaccard(a: Sequence[str], b: Sequence[str]) -> float:
    if not a or not b:
        return 0.0
    left, right = set(a), set(b)
    union = len(left | right)
    return len(left & right) / union if union else 0.0


def _ngrams(text: str) -> List[str]:
    clean = normalize_question(text).replace(" ", "")
    if not clean:
        return []
    if len(clean) <= NGRAM_SIZE:
        return [clean]
    return [clean[i : i + NGRAM_SIZE] for i in range(len(clean) - NGRAM_SIZE + 1)]


def _dice(a: str, b: str) -> float:
    left, right = _ngrams(a), _ngrams(b)
    if not left or not right:
        return 0.0
    shared = sum((Counter(left) & Counter(right)).values())
    return 2 * shared / (len(left) + len(right))


def _same_prefix(a: Sequence[str], b: Sequence[str]) -> bool:
    if len(a) < PREFIX_TOKENS or len(b) < PREFIX_TOKENS:
        return False
    return list(a[:PREFIX_TOKENS]) == list(b[:PREFIX_TOKENS])


def find_duplicate_question_match(
    candidate: Optional[str],
    history: Sequence[str],
    language,
) -> DuplicateQuestionMatch:
    """Compare the candidate's main question with the last 80 assistant messages.

    Exact matches return immediately; otherwise the most similar
    high-similarity or same-prefix match wins.
    """

    questions = extract_questions(candidate)
    if not questions:
        return DuplicateQuestionMatch()
    candidate_question = questions[-1]
    candidate_norm = normalize_question(candidate_question)
    if not candidate_norm:
        return DuplicateQuestionMatch()
    candidate_tokens = _tokens(candidate_question, language)

    best = DuplicateQuestionMatch()
    for message in reversed(list(history)[-HISTORY_LIMIT:]):
        for previous in extract_questions(message):
            previous_norm = normalize_question(previous)
            if not previous_norm:
                continue
            if previous_norm == candidate_norm:
                return DuplicateQuestionMatch(
                    is_duplicate=True, matched_question=previous, similarity=1.0, reason="exact"
                )
            previous_tokens = _tokens(previous, language)
            jaccard = _jaccard(candidate_tokens, previous_tokens)
            dice = _dice(candidate_norm, previous_norm)
            informative = min(len(candidate_tokens), len(previous_tokens)) >= MIN_INFORMATIVE_TOKENS
            high_similarity = informative and (jaccard >= JACCARD_DUPLICATE or dice >= DICE_DUPLICATE)
            prefix_duplicate = (
                informative and _same_prefix(candidate_tokens, previous_tokens) and jaccard >= PREFIX_JACCARD
            )
            if not (high_similarity or prefix_duplicate):
                continue
            score = max(jaccard, dice)
            if not best.is_duplicate or score > best.similarity:
                best = DuplicateQuestionMatch(
                    is_duplicate=True,
                    matched_question=previous,
                    similarity=score,
                    reason="same_prefix" if prefix_duplicate else "high_similarity",
                )
    return best


__all__ = [
    "DuplicateQuestionMatch",
    "extract_questions",
    "find_duplicate_question_match",
    "normalize_question",
]
