from sprintplanio.backend.config import load_settings
from sprintplanio.backend.state import DEFAULT_DECK


def test_load_settings_reads_expected_env(monkeypatch) -> None:
    monkeypatch.setenv("SPRINTPLANIO_DATABASE_URL", "postgresql://local")
    monkeypatch.setenv("SPRINTPLANIO_HOST", "localhost")
    monkeypatch.setenv("SPRINTPLANIO_PORT", "9000")
    monkeypatch.setenv("SPRINTPLANIO_LOG_LEVEL", "debug")
    monkeypatch.setenv("SPRINTPLANIO_DEFAULT_DECK", "1, 2, 3,,5")
    monkeypatch.setenv("SPRINTPLANIO_AUTO_ADVANCE_DELAY", "0")
    monkeypatch.setenv("SPRINTPLANIO_TRACKER_AUTH_TYPE", "OAuth")
    monkeypatch.setenv("SPRINTPLANIO_TRACKER_CLOUD_ID", "cloud-1")

    settings = load_settings()

    assert settings.database_url == "postgresql://local"
    assert settings.host == "localhost"
    assert settings.port == 9000
    assert settings.log_level == "DEBUG"
    assert settings.default_deck == ("1", "2", "3", "5")
    assert settings.auto_advance_delay == 0.0
    assert settings.tracker_auth_type == "oauth"
    assert settings.tracker_cloud_id == "cloud-1"


def test_load_settings_applies_defaults(monkeypatch) -> None:
    for name in (
        "SPRINTPLANIO_DATABASE_URL",
        "SPRINTPLANIO_HOST",
        "SPRINTPLANIO_PORT",
        "SPRINTPLANIO_LOG_LEVEL",
        "SPRINTPLANIO_DEFAULT_DECK",
        "SPRINTPLANIO_AUTO_ADVANCE_DELAY",
        "SPRINTPLANIO_LEADER_RECONCILE_DELAY",
        "SPRINTPLANIO_TRACKER_AUTH_TYPE",
        "SPRINTPLANIO_TRACKER_DOMAIN",
        "SPRINTPLANIO_TRACKER_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.database_url is None
    assert settings.host == "127.0.0.1"
    assert settings.port == 8000
    assert settings.log_level == "INFO"
    assert settings.default_deck == DEFAULT_DECK
    assert settings.auto_advance_delay == 0.3
    assert settings.leader_reconcile_delay == 0.5
    assert settings.tracker_auth_type == "basic"
    assert settings.tracker_domain is None
    assert settings.tracker_timeout == 10.0
