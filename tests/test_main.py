"""Tests for the process runtime and CLI entry points."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import NetworkError

import src.main as main_module
import src.telegram_bot as telegram_bot
from src.storage.repo import AlertStore


class TickingEngine:
    """Engine stand-in that counts ticks until stopped."""

    def __init__(self, store: AlertStore):
        self.store = store
        self.cycles = 0
        self._stop_event = asyncio.Event()

    async def run(self):
        while not self._stop_event.is_set():
            self.cycles += 1
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=0.02)
            except asyncio.TimeoutError:
                pass

    async def stop(self):
        self._stop_event.set()


class TestRunBot:

    @pytest.mark.asyncio
    async def test_engine_keeps_running_when_telegram_unreachable(self, store, monkeypatch):
        engine = TickingEngine(store)
        polling = AsyncMock(side_effect=NetworkError("api.telegram.org unreachable"))
        runtime_error = AsyncMock(return_value=True)

        monkeypatch.setattr(main_module, "startup_sequence", AsyncMock(return_value=True))
        monkeypatch.setattr(main_module, "shutdown_sequence", AsyncMock())
        monkeypatch.setattr(main_module, "get_alert_engine", lambda dry_run=False: engine)
        monkeypatch.setattr(main_module, "BOT_TOKEN", "123:ABC")
        monkeypatch.setattr(main_module, "is_polling_enabled", lambda: True)
        monkeypatch.setattr(main_module, "send_error_to_admin", runtime_error)
        monkeypatch.setattr(main_module, "shutdown_event", asyncio.Event())
        monkeypatch.setattr(telegram_bot, "run_polling", polling)
        monkeypatch.setattr(telegram_bot, "build_application", MagicMock())
        monkeypatch.setattr(telegram_bot, "send_warning_to_admin", AsyncMock(return_value=True))
        monkeypatch.setattr(telegram_bot, "POLLING_RETRY_DELAYS", [0.01])

        task = asyncio.create_task(main_module.run_bot())
        await asyncio.sleep(0.3)

        assert not task.done()
        assert engine.cycles > 3
        assert polling.await_count > 1
        runtime_error.assert_not_awaited()

        main_module.shutdown_event.set()
        await asyncio.wait_for(task, timeout=2)

        assert engine._stop_event.is_set()
        main_module.shutdown_sequence.assert_awaited_once()


class TestCreateUser:

    def test_provision_user(self, store: AlertStore):
        user_id = main_module.provision_user(store, "carol", "@carol")
        assert user_id is not None
        assert store.register_chat_id("carol", "999") == user_id

    def test_duplicate_username(self, store: AlertStore):
        main_module.provision_user(store, "carol")
        assert main_module.provision_user(store, "carol") is None

    def test_cli_flag(self, store: AlertStore, monkeypatch):
        monkeypatch.setattr("sys.argv", [
            "crypto-alert-bot", "--create-user", "dave", "--telegram-username", "dave_tg"
        ])
        monkeypatch.setattr(main_module, "setup_logging", MagicMock())
        monkeypatch.setattr(main_module, "init_db", MagicMock())
        monkeypatch.setattr(main_module, "AlertStore", lambda: store)

        main_module.main()

        assert store.register_chat_id("@dave_tg", "777") is not None
