import json
import logging
import os
import threading
from dataclasses import dataclass, fields
from typing import Dict, Optional, Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_FILE_PATH = "config.json"

DEFAULT_USER_AGENT = "SiteHealthMonitor/1.0"
RATE_LIMIT_POLICIES = ("cooldown", "none")

# Environment variables that take precedence over config.json
ENV_OVERRIDES = {
    "SHM_RECIPIENT_EMAIL": "recipient_email",
    "SHM_SITEMAP_URL": "sitemap_url",
    "SMTP_PASSWORD": "smtp_password",
}


@dataclass(frozen=True)
class MonitorConfig:
    """Typed view of the monitor settings. Empty sitemap_url disables sitemap checks."""
    recipient_email: str = ""
    admin_email: str = ""
    sitemap_url: str = ""
    site_name: str = "Website"
    site_url: str = ""
    cooldown_seconds: int = 3600
    rate_limit_policy: str = "cooldown"
    check_interval_hours: float = 12
    fetch_timeout: float = 30
    max_redirects: int = 5
    max_retries: int = 0
    user_agent: str = DEFAULT_USER_AGENT
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_ssl: bool = False
    from_email: str = ""
    rate_limit_state_file: str = ""

    @property
    def sitemap_monitoring_enabled(self) -> bool:
        return bool(self.sitemap_url.strip())

    @property
    def sender_email(self) -> str:
        return self.from_email or self.admin_email


_FIELD_TYPES = {f.name: f.type for f in fields(MonitorConfig)}


def validate_config(config: Dict[str, Any]) -> bool:
    """Validates the structure and content of the configuration."""
    if not isinstance(config, dict):
        logger.error("Configuration must be a dictionary.")
        return False

    unknown = sorted(set(config) - set(_FIELD_TYPES))
    if unknown:
        logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")

    for key in ("recipient_email", "admin_email", "sitemap_url", "site_name", "site_url",
                "user_agent", "smtp_host", "smtp_username", "from_email", "rate_limit_state_file"):
        if key in config and not isinstance(config[key], str):
            logger.error(f"Value for key '{key}' must be a string.")
            return False

    for key in ("cooldown_seconds", "check_interval_hours", "fetch_timeout",
                "max_redirects", "max_retries", "smtp_port"):
        if key not in config:
            continue
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            logger.error(f"Value for key '{key}' must be a non-negative number.")
            return False

    if config.get("check_interval_hours") == 0:
        logger.error("'check_interval_hours' must be greater than zero.")
        return False

    if "smtp_use_ssl" in config and not isinstance(config["smtp_use_ssl"], bool):
        logger.error("Value for key 'smtp_use_ssl' must be true or false.")
        return False

    policy = config.get("rate_limit_policy", "cooldown")
    if policy not in RATE_LIMIT_POLICIES:
        logger.error(f"'rate_limit_policy' must be one of {RATE_LIMIT_POLICIES}, got '{policy}'.")
        return False

    sitemap_url = config.get("sitemap_url", "")
    if sitemap_url and not sitemap_url.startswith(("http://", "https://")):
        logger.error(f"Invalid sitemap URL: {sitemap_url}")
        return False

    if "smtp_password" in config:
        logger.warning("'smtp_password' found in config file. Prefer the SMTP_PASSWORD environment variable.")

    logger.debug("Configuration validation successful.")
    return True


def config_from_dict(data: Dict[str, Any]) -> MonitorConfig:
    """Builds a MonitorConfig from a validated dict, applying environment overrides."""
    values = {key: value for key, value in data.items() if key in _FIELD_TYPES}
    for env_key, field_name in ENV_OVERRIDES.items():
        env_value = os.getenv(env_key)
        if env_value:
            values[field_name] = env_value.strip()
    return MonitorConfig(**values)


def load_config(path: str = CONFIG_FILE_PATH) -> Optional[MonitorConfig]:
    """Loads the configuration from a JSON file. Returns None if missing or invalid."""
    if not os.path.exists(path):
        logger.error(f"Configuration file not found: {path}")
        return None
    try:
        with open(path, 'r') as f:
            config_data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Error decoding JSON from {path}: {e}")
        return None
    except OSError as e:
        logger.error(f"Could not read configuration file {path}: {e}")
        return None

    if not validate_config(config_data):
        return None
    return config_from_dict(config_data)


class FileConfigProvider:
    """
    Re-reads the configuration file whenever it changes so edits apply to the next decision.

    Falls back to the last configuration that loaded successfully, or to
    defaults when the file has never been valid. A missing or broken file
    is reported once per change, not on every call.
    """

    def __init__(self, path: str = CONFIG_FILE_PATH):
        self.path = path
        self._last_good: Optional[MonitorConfig] = None
        self._current: Optional[MonitorConfig] = None
        self._signature = None
        self._lock = threading.Lock()

    def _read_signature(self):
        try:
            stat = os.stat(self.path)
            file_signature = (stat.st_mtime_ns, stat.st_size)
        except OSError:
            file_signature = None
        return file_signature, tuple(os.getenv(key, "") for key in ENV_OVERRIDES)

    def __call__(self) -> MonitorConfig:
        signature = self._read_signature()
        with self._lock:
            if self._current is not None and signature == self._signature:
                return self._current

            config = load_config(self.path)
            if config is not None:
                self._last_good = config
            elif self._last_good is not None:
                logger.warning(f"Using last known good configuration for {self.path}")
                config = self._last_good
            else:
                logger.warning("No valid configuration available. Using defaults.")
                config = config_from_dict({})

            self._current = config
            self._signature = signature
            return config


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    config = load_config()
    if config:
        logger.info(f"Notification recipient: {config.recipient_email or config.admin_email}")
        logger.info(f"Sitemap monitoring enabled: {config.sitemap_monitoring_enabled}")
    else:
        logger.error("Failed to load or validate configuration.")
