import pytest

from mascot_backend.server import config_loader
from mascot_backend.server.config import DEFAULT_SYSTEM_PROMPT, ServerConfig


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    path = tmp_path / "mascot.toml"
    monkeypatch.setenv(config_loader.CONFIG_FILE_ENV, str(path))
    return path


def test_defaults_when_file_missing(config_path):
    cfg = config_loader.load_server_config()

    assert not config_path.exists()
    assert cfg.port == 8080
    assert cfg.chat_model == "gpt-4o-mini"
    assert cfg.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert cfg.rate_limit_window_ms == 10_000
    assert cfg.rate_limit_max == 8
    assert cfg.max_upload_bytes == 5_242_880
    assert cfg.cors_origins == ["*"]
    assert cfg.access_log_path is None
    assert cfg.config_file_path == str(config_path)
    assert not cfg.has_credential


def test_file_values_are_applied(config_path):
    config_path.write_text(
        "\n".join(
            [
                "[server]",
                "port = 9000",
                'cors_origins = ["https://a.example", "https://b.example"]',
                "[upstream]",
                "temperature = 0.2",
                "[rate_limit]",
                "rate_limit_max = 3",
                "[uploads]",
                'upload_dir = "/srv/mascots"',
                "[logging]",
                'access_log_path = "logs/access.jsonl"',
            ]
        )
    )

    cfg = config_loader.load_server_config()

    assert cfg.port == 9000
    assert cfg.cors_origins == ["https://a.example", "https://b.example"]
    assert cfg.temperature == 0.2
    assert cfg.rate_limit_max == 3
    assert cfg.upload_dir == "/srv/mascots"
    assert cfg.access_log_path == "logs/access.jsonl"


def test_keys_outside_their_section_are_ignored(config_path):
    config_path.write_text("[server]\nrate_limit_max = 1\n")
    assert config_loader.load_server_config().rate_limit_max == 8


def test_invalid_file_value_falls_back_to_default(config_path):
    config_path.write_text('[server]\nport = "eighty"\n')
    assert config_loader.load_server_config().port == 8080


def test_env_overrides_take_precedence(config_path, monkeypatch):
    config_path.write_text("[rate_limit]\nrate_limit_max = 3\nrate_limit_window_ms = 500\n")
    monkeypatch.setenv("RATE_LIMIT_MAX", "20")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("MASCOT_CORS_ORIGINS", "https://a.example, https://b.example")

    cfg = config_loader.load_server_config()

    assert cfg.rate_limit_max == 20
    assert cfg.rate_limit_window_ms == 500
    assert cfg.openai_api_key == "sk-env"
    assert cfg.has_credential
    assert cfg.cors_origins == ["https://a.example", "https://b.example"]


def test_port_reads_platform_variable(config_path, monkeypatch):
    monkeypatch.setenv("PORT", "3000")
    assert config_loader.load_server_config().port == 3000

    monkeypatch.setenv("MASCOT_PORT", "4000")
    assert config_loader.load_server_config().port == 4000


def test_unparsable_env_keeps_previous_value(config_path, monkeypatch):
    config_path.write_text("[rate_limit]\nrate_limit_max = 3\n")
    monkeypatch.setenv("RATE_LIMIT_MAX", "lots")
    monkeypatch.setenv("MASCOT_TEMPERATURE", "warm")

    cfg = config_loader.load_server_config()

    assert cfg.rate_limit_max == 3
    assert cfg.temperature == 0.6


def test_empty_optional_env_clears_value(config_path, monkeypatch):
    config_path.write_text('[logging]\naccess_log_path = "logs/a.jsonl"\n')
    monkeypatch.setenv("MASCOT_ACCESS_LOG_PATH", "")
    assert config_loader.load_server_config().access_log_path is None


def test_list_env_overrides_masks_credential(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-very-secret")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "2000")

    overrides = config_loader.list_env_overrides()

    assert overrides["OPENAI_API_KEY"] == "***"
    assert overrides["RATE_LIMIT_WINDOW_MS"] == "2000"
    assert "MASCOT_PORT" not in overrides


def test_server_config_load_delegates(config_path, monkeypatch):
    monkeypatch.setenv("MASCOT_SERVICE_NAME", "mascot-test")
    cfg = ServerConfig.load()
    assert isinstance(cfg, ServerConfig)
    assert cfg.service_name == "mascot-test"


def test_boolean_looking_override_does_not_become_a_number(config_path, monkeypatch):
    config_path.write_text("[rate_limit]\nrate_limit_max = 3\n")
    monkeypatch.setenv("RATE_LIMIT_MAX", "true")
    assert config_loader.load_server_config().rate_limit_max == 3


def test_every_scalar_setting_has_a_caster():
    scalar_types = {
        t for t in config_loader._field_types().values() if isinstance(t, type)
    }
    assert scalar_types == set(config_loader._CASTERS)
