from shared.config import Settings


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("MEDLEDGER_UNDO_WINDOW_SECONDS", "45")
    monkeypatch.setenv("MEDLEDGER_RXNORM_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("UNDO_WINDOW_SECONDS", "999")

    settings = Settings(_env_file=None)

    assert settings.UNDO_WINDOW_SECONDS == 45
    assert settings.RXNORM_TIMEOUT_SECONDS == 2.5


def test_unused_settings_are_ignored(monkeypatch):
    monkeypatch.setenv("MEDLEDGER_RXNORM_API_KEY", "secret")
    monkeypatch.setenv("MEDLEDGER_APP_NAME", "other")

    settings = Settings(_env_file=None)

    assert "RXNORM_API_KEY" not in Settings.model_fields
    assert "APP_NAME" not in Settings.model_fields
    assert not hasattr(settings, "RXNORM_API_KEY")
