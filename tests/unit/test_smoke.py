"""Basic smoke tests for the engine scaffolding."""

def test_imports():
    import agents.supervisor  # noqa: F401
    import services.interview_turn  # noqa: F401
    import services.quality_dashboard  # noqa: F401
    from config.settings import settings

    assert settings.DB_PATH.endswith(".db")
