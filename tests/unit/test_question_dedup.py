from agents.question_dedup import (
    extract_questions,
    find_duplicate_question_match,
    normalize_question,
)


def test_normalize_question_strips_accents_and_punctuation():
    assert normalize_question("  Perché è così?! ") == "perche e cosi"
    assert normalize_question(None) == ""


def test_extract_questions_keeps_last_sentence_of_each_clause():
    assert extract_questions("Ciao. Come stai? E il lavoro?") == ["Come stai?", "E il lavoro?"]
    assert extract_questions("Nessuna domanda qui.") == []


def test_exact_match_ignores_opening_sentence():
    history = ["Capisco. Quali strumenti usate per pianificare?"]
    match = find_duplicate_question_match("Ottimo. Quali strumenti usate per pianificare?", history, "it")
    assert match.is_duplicate
    assert match.reason == "exact"
    assert match.similarity == 1.0
    assert match.matched_question == "Quali strumenti usate per pianificare?"


def test_same_prefix_duplicate():
    history = ["How does your team prioritize customer support tickets every week?"]
    match = find_duplicate_question_match(
        "How does your team prioritize customer support requests every week?", history, "en"
    )
    assert match.is_duplicate
    assert match.reason == "same_prefix"
    assert match.similarity >= 0.72


def test_high_similarity_duplicate():
    history = ["Which metrics show that onboarding is working well for new customers?"]
    match = find_duplicate_question_match(
        "Which metrics tell you that onboarding is working well for new customers?", history, "en"
    )
    assert match.is_duplicate
    assert match.reason == "high_similarity"


def test_distinct_and_short_questions_are_not_duplicates():
    history = ["Who approves hiring decisions in your team?", "Come va?"]
    assert not find_duplicate_question_match("What budget do you have for marketing this year?", history, "en").is_duplicate
    assert not find_duplicate_question_match("Come va adesso?", history, "it").is_duplicate
    assert find_duplicate_question_match("No question here.", history, "en").reason == "none"


def test_only_recent_history_is_scanned():
    old = "Quali strumenti usate per pianificare?"
    history = [old] + ["Messaggio senza domande."] * 80
    assert not find_duplicate_question_match(old, history, "it").is_duplicate
    assert find_duplicate_question_match(old, history[1:] + [old], "it").is_duplicate
