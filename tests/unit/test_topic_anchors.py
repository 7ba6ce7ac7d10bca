"""Tests for topic and message anchor extraction."""
from __future__ import annotations

import pytest

from agents.topic_anchors import (
    anchor_root,
    build_message_anchors,
    build_topic_anchors,
    has_any_anchor_overlap,
    normalize_anchor,
    response_mentions_anchors,
    strip_diacritics,
)
from agents.types import TopicBlock


def test_normalize_strips_diacritics_and_case():
    assert strip_diacritics("perché già") == "perche gia"
    assert normalize_anchor("Qualità") == "qualita"
    assert anchor_root("Fatturazione") == "fattur"
    assert anchor_root("CRM") == "crm"


def test_topic_anchors_keep_acronyms_and_drop_stopwords():
    topic = TopicBlock(id="t1", label="Uso del CRM per la gestione clienti", sub_goals=["priorità commerciali"])
    anchors = build_topic_anchors(topic, "it")
    assert "crm" in anchors.anchors
    assert "del" not in anchors.anchors
    assert "gestione" in anchors.anchors
    assert len(anchors.anchors) <= 6
    assert anchors.anchor_roots == [anchor_root(a) for a in anchors.anchors]


def test_message_anchors_skip_functional_words_and_gerunds():
    anchors = build_message_anchors("Vorrei davvero migliorare lavorando sulla fidelizzazione", "it")
    assert "vorrei" not in anchors.anchors
    assert "lavorando" not in anchors.anchors
    assert "fidelizzazione" in anchors.anchors
    assert len(anchors.anchors) <= 4


@pytest.mark.parametrize("text", ["", "   ", None, "?!", "a b c"])
def test_empty_or_degenerate_input_yields_empty_sets(text):
    assert build_message_anchors(text, "en").anchors == []
    assert build_topic_anchors(None, "en").anchor_roots == []


@pytest.mark.parametrize(
    "text",
    [
        "Customer Retention and Churn",
        "Perché l'attività è cresciuta così tanto?",
        "ÀÉÎÕÜ straße naïve café",
        "123 456 7890",
    ],
)
def test_roots_are_lowercase_ascii_and_drawn_from_input(text):
    anchors = build_message_anchors(text, "it")
    plain_input = normalize_anchor(text)
    for root in anchors.anchor_roots:
        assert root == root.lower()
        assert root == strip_diacritics(root)
        assert root in plain_input


def test_overlap_helpers():
    assert has_any_anchor_overlap(["fideli", "client"], ["client"])
    assert not has_any_anchor_overlap([], ["client"])
    assert response_mentions_anchors("Parliamo dei Clienti fedeli", ["client"])
    assert not response_mentions_anchors("", ["client"])
