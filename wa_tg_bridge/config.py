"""
Configuration Management Module

Loads and validates configuration from .env and an optional bridge.json file.
Provides typed access to all configuration settings.
"""

import os
import json
import logging
from dataclasses import dataclass
from typing import List, Optional
from pathlib import Path

import pytz
from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_ENCRYPTION_KEY = "default_key_change_in_production!"
DEFAULT_KEYS = [DEFAULT_ENCRYPTION_KEY, "change_this_to_random_32_chars!!"]
WEAK_PASSWORDS = ["changeme", "password", "123456", "admin", "test", ""]


@dataclass
class TelegramConfig:
    """Telegram bot settings"""
    bot_token: str
    admin_chat_id: str
    api_base: str = "https://api.telegram.org"

    def validate(self):
        """Validate Telegram configuration"""
        missing = []
        if not self.bot_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if not self.admin_chat_id:
            missing.append("TELEGRAM_ADMIN_CHAT_ID")
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
        if not self.admin_chat_id.lstrip("-").isdigit():
            raise ConfigError("TELEGRAM_ADMIN_CHAT_ID must be a numeric value")


@dataclass
class SecurityConfig:
    """Secrets used for content encryption and operator auth"""
    encryption_key: str = DEFAULT_ENCRYPTION_KEY
    admin_password: str = "changeme"

    def warnings(self) -> List[str]:
        """Return human-readable warnings for weak settings (never fatal)"""
        found = []
        if self.admin_password in WEAK_PASSWORDS:
            found.append("⚠️  ADMIN_PASSWORD is weak or default. Change it in .env!")
        if self.encryption_key in DEFAULT_KEYS:
            found.append("⚠️  ENCRYPTION_KEY is default. Set a random 32+ char string in .env!")
        if len(self.encryption_key) < 16:
            found.append("⚠️  ENCRYPTION_KEY is too short (< 16 chars). Use 32+ characters.")
        return found


@dataclass
class PathsConfig:
    """Filesystem locations"""
    db: str = "data/bridge.db"
    media: str = "media"
    logs: str = "logs"
    wa_session: str = "wa_session"


@dataclass
class RateLimitConfig:
    """Admission control and media limits"""
    max_messages_per_minute: int = 30
    max_media_size_mb: int = 50

    def validate(self):
        """Validate rate limit configuration"""
        if self.max_messages_per_minute < 1:
            raise ConfigError("MAX_MESSAGES_PER_MINUTE must be >= 1")
        if self.max_media_size_mb < 1:
            raise ConfigError("MAX_MEDIA_SIZE_MB must be >= 1")


@dataclass
class ReconnectConfig:
    """WhatsApp pairing and reconnect policy"""
    base_delay_seconds: float = 5
    max_delay_seconds: float = 300
    max_attempts: int = 10
    max_qr_attempts: int = 5

    def validate(self):
        """Validate reconnect configuration"""
        if self.base_delay_seconds <= 0:
            raise ConfigError("reconnect.base_delay_seconds must be greater than 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ConfigError("reconnect.max_delay_seconds must be >= base_delay_seconds")
        if self.max_attempts < 1:
            raise ConfigError("reconnect.max_attempts must be >= 1")
        if self.max_qr_attempts < 1:
            raise ConfigError("reconnect.max_qr_attempts must be >= 1")


@dataclass
class SchedulerConfig:
    """Deferred delivery settings"""
    interval_seconds: int = 30

    def validate(self):
        """Validate scheduler configuration"""
        if self.interval_seconds < 1 or self.interval_seconds > 3600:
            raise ConfigError("scheduler.interval_seconds must be between 1 and 3600")


@dataclass
class MediaConfig:
    """Media file retention settings"""
    retention_days: int = 7
    cleanup_interval_hours: int = 24

    def validate(self):
        """Validate media configuration"""
        if self.retention_days < 1 or self.retention_days > 365:
            raise ConfigError("media.retention_days must be between 1 and 365")
        if self.cleanup_interval_hours < 1 or self.cleanup_interval_hours > 168:
            raise ConfigError("media.cleanup_interval_hours must be between 1 and 168")


@dataclass
class DashboardConfig:
    """Health/status HTTP endpoint"""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3001


@dataclass
class WhatsAppBridgeConfig:
    """Local WhatsApp bridge process"""
    url: str = "http://localhost:8080"
    poll_timeout_seconds: int = 25


class Config:
    """Main configuration class"""

    def __init__(self, config_file: str = "bridge.json", env_file: str = ".env"):
        # Load from .env
        load_dotenv(env_file, override=env_file != ".env")
        self.env_file = env_file

        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.timezone = os.getenv("TIMEZONE", "UTC")

        self.telegram = TelegramConfig(
            bot_token=os.getenv("TELEGRAM_BOT_TOKEN", "").strip(),
            admin_chat_id=os.getenv("TELEGRAM_ADMIN_CHAT_ID", "").strip(),
        )
        self.telegram.validate()

        self.security = SecurityConfig(
            encryption_key=os.getenv("ENCRYPTION_KEY", DEFAULT_ENCRYPTION_KEY),
            admin_password=os.getenv("ADMIN_PASSWORD", "changeme"),
        )

        self.paths = PathsConfig(
            db=os.getenv("DB_PATH", PathsConfig.db),
            media=os.getenv("MEDIA_DIR", PathsConfig.media),
            logs=os.getenv("LOG_DIR", PathsConfig.logs),
            wa_session=os.getenv("WA_SESSION_DIR", PathsConfig.wa_session),
        )

        self.rate_limit = RateLimitConfig(
            max_messages_per_minute=_env_int("MAX_MESSAGES_PER_MINUTE", 30),
            max_media_size_mb=_env_int("MAX_MEDIA_SIZE_MB", 50),
        )
        self.rate_limit.validate()

        self.dashboard = DashboardConfig(
            enabled=os.getenv("DASHBOARD_ENABLED", "true").lower() != "false",
            port=_env_int("DASHBOARD_PORT", 3001),
        )

        self.whatsapp_bridge = WhatsAppBridgeConfig(
            url=os.getenv("WHATSAPP_BRIDGE_URL", WhatsAppBridgeConfig.url),
        )

        self.get_timezone()

        # Load tuning sections from bridge.json
        self.config_file = config_file
        self._load_app_config()

    def _load_app_config(self):
        """Load and parse the optional JSON settings file"""
        data = {}
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, "r") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {self.config_file}: {e}")
        else:
            logger.debug(f"{self.config_file} not found, using defaults")

        try:
            self.reconnect = ReconnectConfig(**data.get("reconnect", {}))
            self.scheduler = SchedulerConfig(**data.get("scheduler", {}))
            self.media = MediaConfig(**data.get("media", {}))
        except TypeError as e:
            raise ConfigError(f"Unknown setting in {self.config_file}: {e}")

        self.reconnect.validate()
        self.scheduler.validate()
        self.media.validate()

    def get_timezone(self):
        """Returns pytz timezone object used for operator-facing times"""
        try:
            return pytz.timezone(self.timezone)
        except pytz.exceptions.UnknownTimeZoneError:
            raise ConfigError(f"Invalid timezone: {self.timezone}")

    def security_warnings(self) -> List[str]:
        return self.security.warnings()

    def secrets(self) -> List[str]:
        """Values that must never appear in logs"""
        values = [self.telegram.bot_token]
        if len(self.security.admin_password) > 3:
            values.append(self.security.admin_password)
        return [v for v in values if v]

    def ensure_directories(self):
        """Create data/media/log directories if missing"""
        Path(self.paths.db).parent.mkdir(parents=True, exist_ok=True)
        Path(self.paths.media).mkdir(parents=True, exist_ok=True)
        Path(self.paths.logs).mkdir(parents=True, exist_ok=True)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


# Global config instance - loaded once at startup
_config_instance: Optional[Config] = None


def get_config(config_file: str = "bridge.json", env_file: str = ".env") -> Config:
    """Get or create config singleton"""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_file, env_file)
    return _config_instance


def reload_config(config_file: str = "bridge.json", env_file: str = ".env") -> Config:
    """Force reload config (useful for testing or live updates)"""
    global _config_instance
    _config_instance = Config(config_file, env_file)
    return _config_instance
