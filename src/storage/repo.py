from datetime import datetime
from typing import Dict, Iterable, List, Optional
from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import sessionmaker
from .db import SessionLocal
from .models import Alert, AlertTarget, User, UserSettings


class AlertStore:
    """
    Read/write access to alerts and targets for the evaluation engine.

    Every call opens its own short-lived session, so the store can be shared
    by overlapping cycles and used from worker threads.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    # ---- engine contract ----

    def list_active_alerts(self) -> List[Alert]:
        with self.session_factory() as session:
            stmt = select(Alert).where(Alert.is_active.is_(True)).order_by(Alert.id)
            return list(session.scalars(stmt).all())

    def list_pending_targets(self, alert_id: int) -> List[AlertTarget]:
        with self.session_factory() as session:
            stmt = (
                select(AlertTarget)
                .where(AlertTarget.alert_id == alert_id, AlertTarget.triggered.is_(False))
                .order_by(AlertTarget.id)
            )
            return list(session.scalars(stmt).all())

    def count_pending_targets(self, alert_id: int) -> int:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(AlertTarget.id)).where(
                    AlertTarget.alert_id == alert_id,
                    AlertTarget.triggered.is_(False)
                )
            ) or 0

    def mark_triggered(self, target_id: int, timestamp: datetime) -> bool:
        """
        Flip a target to triggered. Conditional on it still being pending, so
        two overlapping cycles can never both claim the same target.

        Returns:
            True if this call performed the transition, False if the target
            was already triggered (or does not exist)
        """
        with self.session_factory() as session:
            stmt = (
                update(AlertTarget)
                .where(AlertTarget.id == target_id, AlertTarget.triggered.is_(False))
                .values(triggered=True, triggered_at=timestamp)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def deactivate_alert(self, alert_id: int) -> bool:
        with self.session_factory() as session:
            stmt = (
                update(Alert)
                .where(Alert.id == alert_id, Alert.is_active.is_(True))
                .values(is_active=False)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    # ---- telegram identity ----

    def get_chat_id(self, user_id: int) -> Optional[str]:
        with self.session_factory() as session:
            return session.scalar(
                select(UserSettings.telegram_chat_id).where(UserSettings.user_id == user_id)
            )

    def register_chat_id(self, telegram_username: str, chat_id: str) -> Optional[int]:
        """
        Link a Telegram chat to the user whose settings hold this username
        (stored either as "name" or "@name").

        Returns:
            user id that was linked, or None if no settings row matches
        """
        name = telegram_username.lstrip("@")
        with self.session_factory() as session:
            settings = session.scalars(
                select(UserSettings).where(
                    or_(
                        UserSettings.telegram_username == name,
                        UserSettings.telegram_username == f"@{name}"
                    )
                )
            ).first()
            if settings is None:
                return None

            # chat ids are unique; detach the chat from any previous owner
            session.execute(
                update(UserSettings)
                .where(UserSettings.telegram_chat_id == str(chat_id), UserSettings.id != settings.id)
                .values(telegram_chat_id=None)
            )
            settings.telegram_chat_id = str(chat_id)
            session.commit()
            return settings.user_id

    # ---- provisioning (users via `--create-user`; alerts come from the HTTP API in production) ----

    def create_user(self, username: str, telegram_username: Optional[str] = None,
                    telegram_chat_id: Optional[str] = None) -> int:
        with self.session_factory() as session:
            user = User(username=username)
            user.settings = UserSettings(
                telegram_username=telegram_username,
                telegram_chat_id=telegram_chat_id
            )
            session.add(user)
            session.commit()
            return user.id

    def create_alert(self, user_id: int, coin_id: str, coin_name: str, coin_symbol: str,
                     targets: Iterable[Dict]) -> int:
        """
        Create an alert with its targets.

        A missing or None tolerance is stored as 1.0 (percent). An explicit 0
        is kept as 0 and means an exact-price match; callers that want the
        1% default must omit the value rather than send 0.

        Args:
            targets: [{"target_price": 50000, "alert_type": "Loss limit",
                       "tolerance": 1.0, "description": None}, ...]
        """
        with self.session_factory() as session:
            alert = Alert(user_id=user_id, coin_id=coin_id, coin_name=coin_name, coin_symbol=coin_symbol)
            for target in targets:
                tolerance = target.get("tolerance")
                alert.targets.append(AlertTarget(
                    target_price=float(target["target_price"]),
                    alert_type=target["alert_type"],
                    tolerance=1.0 if tolerance is None else float(tolerance),
                    description=target.get("description"),
                ))
            session.add(alert)
            session.commit()
            return alert.id

    def get_target(self, target_id: int) -> Optional[AlertTarget]:
        with self.session_factory() as session:
            return session.get(AlertTarget, target_id)

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        with self.session_factory() as session:
            return session.get(Alert, alert_id)
