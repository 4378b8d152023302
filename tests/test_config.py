import json

import pytest

from wa_tg_bridge.config import Config, ConfigError, DEFAULT_ENCRYPTION_KEY

ENV_VARS = [
    "TELEGRAM_BOT_TOKEN", "TELEGRAM_ADMIN_CHAT_ID", "ENCRYPTION_KEY", "ADMIN_PASSWORD",
    "TIMEZONE", "LOG_LEVEL", "DB_PATH", "MEDIA_DIR", "LOG_DIR", "WA_SESSION_DIR",
    "MAX_MESSAGES_PER_MINUTE", "MAX_MEDIA_SIZE_MB", "DASHBOARD_ENABLED", "DASHBOARD_PORT",
    "WHATSAPP_BRIDGE_URL",
]


@pytest.fixture
def env(monkeypatch, tmp_path):
    """Isolated environment with the two required settings present"""
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:secret-token")
    monkeypatch.setenv("TELEGRAM_ADMIN_CHAT_ID", "1000")
    return monkeypatch


def test_defaults(env):
    config = Config()

    assert config.telegram.admin_chat_id == "1000"
    assert config.paths.db == "data/bridge.db"
    assert config.rate_limit.max_messages_per_minute == 30
    assert config.reconnect.max_attempts == 10
    assert config.scheduler.interval_seconds == 30
    assert config.media.retention_days == 7
    assert config.dashboard.port == 3001
    assert config.get_timezone().zone == "UTC"


def test_missing_token(env):
    env.delenv("TELEGRAM_BOT_TOKEN")
    with pytest.raises(ConfigError, match="TELEGRAM_BOT_TOKEN"):
        Config()


def test_non_numeric_admin_chat(env):
    env.setenv("TELEGRAM_ADMIN_CHAT_ID", "@someone")
    with pytest.raises(ConfigError, match="numeric"):
        Config()


def test_invalid_integer(env):
    env.setenv("MAX_MESSAGES_PER_MINUTE", "lots")
    with pytest.raises(ConfigError, match="MAX_MESSAGES_PER_MINUTE"):
        Config()


def test_invalid_timezone(env):
    env.setenv("TIMEZONE", "Mars/Olympus")
    with pytest.raises(ConfigError, match="Invalid timezone"):
        Config()


def test_json_sections(env, tmp_path):
    (tmp_path / "bridge.json").write_text(json.dumps({
        "reconnect": {"base_delay_seconds": 2, "max_attempts": 4},
        "scheduler": {"interval_seconds": 10},
        "media": {"retention_days": 3},
    }))

    config = Config()

    assert config.reconnect.base_delay_seconds == 2
    assert config.reconnect.max_attempts == 4
    assert config.reconnect.max_delay_seconds == 300
    assert config.scheduler.interval_seconds == 10
    assert config.media.retention_days == 3


def test_json_unknown_key(env, tmp_path):
    (tmp_path / "bridge.json").write_text(json.dumps({"scheduler": {"every": 5}}))
    with pytest.raises(ConfigError, match="Unknown setting"):
        Config()


def test_json_out_of_range(env, tmp_path):
    (tmp_path / "bridge.json").write_text(json.dumps({"scheduler": {"interval_seconds": 0}}))
    with pytest.raises(ConfigError, match="interval_seconds"):
        Config()


def test_json_malformed(env, tmp_path):
    (tmp_path / "bridge.json").write_text("{not json")
    with pytest.raises(ConfigError, match="Invalid JSON"):
        Config()


def test_env_file_is_loaded(env, tmp_path):
    # Recorded so the values loaded from the file are undone afterwards
    env.setenv("DASHBOARD_ENABLED", "true")
    env_file = tmp_path / "bridge.env"
    env_file.write_text("TELEGRAM_BOT_TOKEN=from-file\nDASHBOARD_ENABLED=false\n")

    config = Config(env_file=str(env_file))

    assert config.telegram.bot_token == "from-file"
    assert config.dashboard.enabled is False


def test_security_warnings_and_secrets(env):
    config = Config()
    warnings = config.security_warnings()
    assert any("ADMIN_PASSWORD" in w for w in warnings)
    assert any("ENCRYPTION_KEY is default" in w for w in warnings)
    assert config.security.encryption_key == DEFAULT_ENCRYPTION_KEY
    assert config.secrets() == ["123:secret-token", "changeme"]

    env.setenv("ENCRYPTION_KEY", "x" * 40)
    env.setenv("ADMIN_PASSWORD", "a-long-unique-password")
    assert Config().security_warnings() == []


def test_ensure_directories(env, tmp_path):
    env.setenv("DB_PATH", str(tmp_path / "d" / "bridge.db"))
    env.setenv("MEDIA_DIR", str(tmp_path / "m"))
    env.setenv("LOG_DIR", str(tmp_path / "l"))

    Config().ensure_directories()

    assert (tmp_path / "d").is_dir()
    assert (tmp_path / "m").is_dir()
    assert (tmp_path / "l").is_dir()
