from config.lexicons import ENGLISH, ITALIAN, Language, load_overrides, pack_for, reset_overrides, resolve_language


def test_resolve_language_defaults_to_english():
    assert resolve_language("it-IT") is Language.IT
    assert resolve_language("IT") is Language.IT
    assert resolve_language("fr") is Language.EN
    assert resolve_language(None) is Language.EN
    assert pack_for("it") is ITALIAN
    assert pack_for(Language.EN) is ENGLISH


def test_yaml_overrides_replace_fields(tmp_path):
    path = tmp_path / "lexicons.yaml"
    path.write_text(
        "it:\n"
        "  farewell: \"Ciao e grazie!\"\n"
        "  off_topic: [\"fantacalcio\"]\n"
        "  stopwords: [\"Tipo\"]\n"
        "  unknown_field: [1]\n"
        "en:\n"
        "  impact_signal: [\"churn\"]\n",
        encoding="utf-8",
    )
    load_overrides(str(path))

    italian = pack_for("it")
    assert italian.farewell == "Ciao e grazie!"
    assert italian.off_topic.search("parliamo di fantacalcio")
    assert not italian.off_topic.search("che tempo fa")
    assert italian.stopwords == frozenset({"tipo"})
    assert italian.apology == ITALIAN.apology
    assert pack_for("en").impact_signal.search("our churnrate")

    reset_overrides()
    assert pack_for("it") is ITALIAN
