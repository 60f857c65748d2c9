"""Tests for YAML settings loading."""
import pytest

from config.settings import Settings, get_settings, load_settings, reset_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings.database.store_backend == "memory"
    assert settings.scheduler.interval == 60.0
    assert settings.outbox.max_retries == 5
    assert settings.channels == {}


def test_yaml_sections_and_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_JWT_SECRET", "s3cret")
    monkeypatch.setenv("TEST_WA_TOKEN", "EAAG-abc")
    path = tmp_path / "settings.yaml"
    path.write_text(
        "debug: true\n"
        "auth:\n"
        "  jwt_secret: ${TEST_JWT_SECRET}\n"
        "scheduler:\n"
        "  interval: 5\n"
        "  max_retries: 4\n"
        "  not_a_field: ignored\n"
        "queue:\n"
        "  backend: redis\n"
        "channels:\n"
        "  whatsapp:\n"
        "    enabled: true\n"
        "    credentials:\n"
        "      access_token: ${TEST_WA_TOKEN}\n"
        "      verify_token: ${TEST_UNSET_VAR}\n"
    )
    settings = load_settings(str(path))
    assert settings.debug is True
    assert settings.auth.jwt_secret == "s3cret"
    assert settings.scheduler.interval == 5
    assert settings.scheduler.max_retries == 4
    assert settings.scheduler.batch_size == 100
    assert settings.queue.backend == "redis"
    whatsapp = settings.channels["whatsapp"]
    assert whatsapp.enabled
    assert whatsapp.credentials["access_token"] == "EAAG-abc"
    assert whatsapp.credentials["verify_token"] == ""


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "alt.yaml"
    path.write_text("app_name: Staging\n")
    monkeypatch.setenv("PIPELINE_CONFIG", str(path))
    assert get_settings().app_name == "Staging"
    assert get_settings() is get_settings()


def test_reset_reloads(tmp_path, monkeypatch):
    monkeypatch.setenv("PIPELINE_CONFIG", str(tmp_path / "none.yaml"))
    first = get_settings()
    reset_settings()
    assert get_settings() is not first
    assert isinstance(first, Settings)
