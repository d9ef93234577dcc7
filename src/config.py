import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

# Environment variables (secrets)
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
ADMIN_CHANNEL_ID = os.getenv("ADMIN_CHANNEL_ID", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CONFIG_FILE = os.getenv("CONFIG_FILE", "./configs/default.yaml")

DEFAULT_CHECK_INTERVAL = 300  # 5 minutes
DEFAULT_PRICE_TIMEOUT = 40.0
DEFAULT_SHUTDOWN_GRACE = 30.0


class ConfigLoader:
    """Loads and validates YAML configuration with environment variable substitution."""

    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self._config: Optional[Dict[str, Any]] = None
        self._load()

    def _load(self):
        """Load YAML config file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            self._config = yaml.safe_load(f) or {}

        required_sections = ['bot', 'telegram', 'engine', 'price_oracle']
        for section in required_sections:
            if section not in self._config:
                raise ValueError(f"Missing required config section: {section}")

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get config value by dot-notation path.
        Example: config.get('engine.check_interval') -> 300
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
                if value is None:
                    return default
            else:
                return default

        # ${VAR} strings are resolved from the environment
        if isinstance(value, str) and value.startswith('${') and value.endswith('}'):
            env_var = value[2:-1]
            return os.getenv(env_var, default)

        return value

    @property
    def raw(self) -> Dict[str, Any]:
        """Get raw config dict."""
        return self._config


# Global config instance (lazy-loaded)
_config_instance: Optional[ConfigLoader] = None


def get_config() -> ConfigLoader:
    """Get global config instance (singleton pattern)."""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigLoader(os.getenv("CONFIG_FILE", CONFIG_FILE))
    return _config_instance


def get_bot_version() -> str:
    return get_config().get('bot.version', '1.0.0')


def get_bot_name() -> str:
    return get_config().get('bot.name', 'Crypto Alert Bot')


def get_display_timezone() -> str:
    return get_config().get('bot.timezone', 'UTC')


def is_polling_enabled() -> bool:
    return bool(get_config().get('telegram.polling', True))


def should_send_startup_message() -> bool:
    return get_config().get('telegram.startup_message', True)


def get_engine_config() -> Dict[str, Any]:
    """Get alert engine config with validation and safe defaults."""
    engine_config = get_config().get('engine', {})

    if not isinstance(engine_config, dict):
        engine_config = {}
    engine_config = dict(engine_config)

    try:
        interval = int(engine_config.get('check_interval', DEFAULT_CHECK_INTERVAL))
        if interval < 10:
            interval = DEFAULT_CHECK_INTERVAL
        engine_config['check_interval'] = interval
    except (ValueError, TypeError):
        engine_config['check_interval'] = DEFAULT_CHECK_INTERVAL

    try:
        price_timeout = float(engine_config.get('price_timeout', DEFAULT_PRICE_TIMEOUT))
        if price_timeout <= 0:
            price_timeout = DEFAULT_PRICE_TIMEOUT
        engine_config['price_timeout'] = price_timeout
    except (ValueError, TypeError):
        engine_config['price_timeout'] = DEFAULT_PRICE_TIMEOUT

    # the engine's bound must leave room for every oracle attempt
    engine_config['price_timeout'] = max(engine_config['price_timeout'], get_price_lookup_budget())

    try:
        grace = float(engine_config.get('shutdown_grace', DEFAULT_SHUTDOWN_GRACE))
        if grace < 0:
            grace = DEFAULT_SHUTDOWN_GRACE
        engine_config['shutdown_grace'] = grace
    except (ValueError, TypeError):
        engine_config['shutdown_grace'] = DEFAULT_SHUTDOWN_GRACE

    engine_config['deactivate_exhausted_alerts'] = bool(
        engine_config.get('deactivate_exhausted_alerts', True)
    )

    return engine_config


def get_price_oracle_config() -> Dict[str, Any]:
    """Get CoinGecko client config with safe defaults."""
    oracle_config = get_config().get('price_oracle', {})

    if not isinstance(oracle_config, dict):
        oracle_config = {}
    oracle_config = dict(oracle_config)

    oracle_config.setdefault('base_url', 'https://api.coingecko.com/api/v3')
    oracle_config.setdefault('vs_currency', 'usd')
    # dot-path lookup resolves ${VAR} substitution
    oracle_config['api_key'] = get_config().get('price_oracle.api_key') or None

    try:
        oracle_config['timeout'] = float(oracle_config.get('timeout', 10))
    except (ValueError, TypeError):
        oracle_config['timeout'] = 10.0

    delays = oracle_config.get('retry_delays', [2, 4])
    if not isinstance(delays, list) or not all(isinstance(d, (int, float)) and d >= 0 for d in delays):
        delays = [2, 4]
    oracle_config['retry_delays'] = delays

    return oracle_config


def get_price_lookup_budget() -> float:
    """Worst-case duration of one oracle lookup: every attempt times out, plus all retry delays."""
    oracle_config = get_price_oracle_config()
    delays = oracle_config['retry_delays']
    return (len(delays) + 1) * oracle_config['timeout'] + sum(delays)


if not BOT_TOKEN:
    print("WARNING: BOT_TOKEN not set - running in dry-run mode")

if not ADMIN_CHANNEL_ID:
    print("WARNING: ADMIN_CHANNEL_ID not set - admin messages will be logged only")
