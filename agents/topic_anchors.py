"""Keyword anchors for semantic-overlap checks between messages and topics."""
from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional

from agents.types import AnchorSet, TopicBlock
from config.lexicons import THRESHOLDS, LanguagePack, pack_for

TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)
ACRONYM_RE = re.compile(r"^[A-Z]{2,3}$")


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_anchor(token: str) -> str:
    """Lowercase and strip diacritics so variants compare equal."""

    return strip_diacritics(token or "").lower()


def anchor_root(anchor: str) -> str:
    normalized = normalize_anchor(anchor)
    size = THRESHOLDS.anchor_root_length
    return normalized[:size] if len(normalized) >= size else normalized


def extract_tokens(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [token for token in TOKEN_RE.findall(text) if token]


def _is_functional(token: str, pack: LanguagePack) -> bool:
    if token in pack.functional_words:
        return True
    return bool(pack.functional_suffix and pack.functional_suffix.search(token))


def _to_anchor_set(anchors: Iterable[str], limit: int) -> AnchorSet:
    unique: List[str] = []
    for anchor in anchors:
        if anchor not in unique:
            unique.append(anchor)
    limited = unique[:limit]
    return AnchorSet(anchors=limited, anchor_roots=[anchor_root(a) for a in limited])


def build_topic_anchors(topic: Optional[TopicBlock], language) -> AnchorSet:
    """Anchors for a topic label and its sub-goals (up to six)."""

    if topic is None:
        return AnchorSet()
    pack = pack_for(language)
    source = " ".join([topic.label or "", *(topic.sub_goals or [])])
    anchors: List[str] = []
    for token in extract_tokens(source):
        lower = token.lower()
        if len(lower) < THRESHOLDS.anchor_min_length:
            # short tokens survive only as acronyms (CRM, KPI, AI)
            if ACRONYM_RE.match(token):
                anchors.append(lower)
            continue
        if normalize_anchor(lower) in pack.stopwords:
            continue
        anchors.append(lower)
    return _to_anchor_set(anchors, THRESHOLDS.topic_anchor_limit)


def build_message_anchors(text: Optional[str], language) -> AnchorSet:
    """Anchors for free text such as a user message or the interview objective."""

    if not text or not text.strip():
        return AnchorSet()
    pack = pack_for(language)
    anchors: List[str] = []
    for token in extract_tokens(text):
        lower = token.lower()
        if len(lower) < THRESHOLDS.anchor_min_length:
            continue
        plain = normalize_anchor(lower)
        if plain in pack.stopwords or _is_functional(plain, pack):
            continue
        anchors.append(lower)
    return _to_anchor_set(anchors, THRESHOLDS.message_anchor_limit)


def response_mentions_anchors(response_text: Optional[str], anchor_roots: List[str]) -> bool:
    if not response_text or not anchor_roots:
        return False
    haystack = normalize_anchor(response_text)
    return any(root and root in haystack for root in anchor_roots)


def has_any_anchor_overlap(source: List[str], target: List[str]) -> bool:
    if not source or not target:
        return False
    target_set = set(target)
    return any(root in target_set for root in source)


__all__ = [
    "anchor_root",
    "build_message_anchors",
    "build_topic_anchors",
    "extract_tokens",
    "has_any_anchor_overlap",
    "normalize_anchor",
    "response_mentions_anchors",
    "strip_diacritics",
]
