"""Tests for the SQLAlchemy alert store."""
from datetime import datetime, timezone

from src.storage.repo import AlertStore


class TestAlertLoading:

    def test_list_active_alerts(self, store: AlertStore, user_id: int):
        first = store.create_alert(user_id, "bitcoin", "Bitcoin", "btc", targets=[])
        second = store.create_alert(user_id, "ethereum", "Ethereum", "eth", targets=[])
        store.deactivate_alert(first)

        alerts = store.list_active_alerts()

        assert [a.id for a in alerts] == [second]
        assert alerts[0].coin_id == "ethereum"

    def test_list_pending_targets_excludes_triggered(self, store: AlertStore, bitcoin_alert: int):
        targets = store.list_pending_targets(bitcoin_alert)
        assert len(targets) == 1

        store.mark_triggered(targets[0].id, datetime.now(timezone.utc))

        assert store.list_pending_targets(bitcoin_alert) == []
        assert store.count_pending_targets(bitcoin_alert) == 0

    def test_tolerance_defaults_to_one_percent(self, store: AlertStore, user_id: int):
        alert_id = store.create_alert(user_id, "bitcoin", "Bitcoin", "btc", targets=[
            {"target_price": 100, "alert_type": "Target", "tolerance": None},
        ])
        target = store.list_pending_targets(alert_id)[0]
        assert target.tolerance == 1.0

    def test_zero_tolerance_kept_as_exact_match(self, store: AlertStore, user_id: int):
        alert_id = store.create_alert(user_id, "bitcoin", "Bitcoin", "btc", targets=[
            {"target_price": 100, "alert_type": "Target", "tolerance": 0},
            {"target_price": 200, "alert_type": "Target"},
        ])
        exact, omitted = store.list_pending_targets(alert_id)
        assert exact.tolerance == 0.0
        assert omitted.tolerance == 1.0


class TestTriggerTransition:
    """pending -> triggered is one-way and claimed exactly once."""

    def test_mark_triggered_once(self, store: AlertStore, bitcoin_alert: int):
        now = datetime.now(timezone.utc)
        assert store.mark_triggered(1, now) is True
        assert store.mark_triggered(1, now) is False

        target = store.get_target(1)
        assert target.triggered is True
        assert target.triggered_at is not None

    def test_mark_triggered_missing_target(self, store: AlertStore):
        assert store.mark_triggered(999, datetime.now(timezone.utc)) is False

    def test_deactivate_alert_once(self, store: AlertStore, bitcoin_alert: int):
        assert store.deactivate_alert(bitcoin_alert) is True
        assert store.deactivate_alert(bitcoin_alert) is False
        assert store.get_alert(bitcoin_alert).is_active is False


class TestChatRegistration:

    def test_get_chat_id(self, store: AlertStore, user_id: int):
        assert store.get_chat_id(user_id) == "111"

    def test_get_chat_id_unregistered(self, store: AlertStore):
        uid = store.create_user("bob", telegram_username="bob")
        assert store.get_chat_id(uid) is None

    def test_register_matches_with_or_without_at(self, store: AlertStore):
        bob = store.create_user("bob", telegram_username="bob")
        carol = store.create_user("carol", telegram_username="@carol")

        assert store.register_chat_id("bob", "222") == bob
        assert store.register_chat_id("@carol", "333") == carol
        assert store.get_chat_id(bob) == "222"
        assert store.get_chat_id(carol) == "333"

    def test_register_unknown_username(self, store: AlertStore):
        assert store.register_chat_id("nobody", "444") is None

    def test_chat_moves_to_new_owner(self, store: AlertStore, user_id: int):
        """A chat id is linked to one user at a time."""
        bob = store.create_user("bob", telegram_username="bob")

        store.register_chat_id("bob", "111")

        assert store.get_chat_id(bob) == "111"
        assert store.get_chat_id(user_id) is None


class TestOwnership:

    def test_deleting_alert_cascades_targets(self, store: AlertStore, bitcoin_alert: int):
        from src.storage.models import Alert, AlertTarget

        with store.session_factory() as session:
            session.delete(session.get(Alert, bitcoin_alert))
            session.commit()
            assert session.query(AlertTarget).count() == 0
