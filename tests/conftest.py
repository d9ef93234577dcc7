"""Shared test fixtures and configuration."""
import os

# Must be set before src.storage.db is imported anywhere
os.environ.setdefault("DB_URL", "sqlite:///:memory:")

from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import yaml

import src.config as config_module
from src.storage.db import make_engine, make_session_factory, init_db
from src.storage.repo import AlertStore
from src.telegram_bot import NotifyResult, NotifyStatus


@pytest.fixture
def test_config_yaml(tmp_path: Path) -> Path:
    """Create a temporary test config YAML file."""
    config = {
        'bot': {
            'name': 'Crypto Alert Bot Test',
            'version': '1.0.0',
            'timezone': 'UTC'
        },
        'telegram': {
            'polling': False,
            'startup_message': False
        },
        'engine': {
            'check_interval': 300,
            'price_timeout': 10,
            'shutdown_grace': 1,
            'deactivate_exhausted_alerts': True
        },
        'price_oracle': {
            'base_url': 'https://api.coingecko.test/api/v3',
            'vs_currency': 'usd',
            'timeout': 3,
            'retry_delays': [0, 0]
        }
    }

    config_file = tmp_path / 'test_config.yaml'
    with open(config_file, 'w', encoding='utf-8') as f:
        yaml.dump(config, f)

    return config_file


@pytest.fixture(autouse=True)
def test_env_vars(monkeypatch, test_config_yaml: Path):
    """Point the config singleton at the test YAML for every test."""
    monkeypatch.setenv('CONFIG_FILE', str(test_config_yaml))
    monkeypatch.setenv('LOG_LEVEL', 'DEBUG')
    monkeypatch.setattr(config_module, '_config_instance', None)


@pytest.fixture
def store(tmp_path: Path):
    """AlertStore on a fresh SQLite file."""
    db_engine = make_engine(f"sqlite:///{tmp_path / 'alerts_test.db'}")
    init_db(db_engine)
    yield AlertStore(make_session_factory(db_engine))
    db_engine.dispose()


@pytest.fixture
def user_id(store: AlertStore) -> int:
    """User with a linked Telegram chat."""
    return store.create_user("alice", telegram_username="@alice", telegram_chat_id="111")


class FakePriceOracle:
    """Price oracle returning fixed prices and counting lookups per coin."""

    def __init__(self, prices: Dict[str, Optional[float]]):
        self.prices = prices
        self.calls: List[str] = []

    async def get_price(self, coin_id: str) -> Optional[float]:
        self.calls.append(coin_id)
        price = self.prices.get(coin_id)
        if isinstance(price, Exception):
            raise price
        return price


@pytest.fixture
def make_oracle():
    return FakePriceOracle


@pytest.fixture
def notifier() -> AsyncMock:
    """Notifier mock that reports success."""
    mock = AsyncMock()
    mock.notify.return_value = NotifyResult(NotifyStatus.SENT)
    return mock


@pytest.fixture
def bitcoin_alert(store: AlertStore, user_id: int) -> int:
    """Alert on bitcoin with one Loss limit target at 50000 (tol 1%)."""
    return store.create_alert(
        user_id, "bitcoin", "Bitcoin", "btc",
        targets=[{"target_price": 50000, "alert_type": "Loss limit", "tolerance": 1.0}]
    )
