from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, Float, Boolean, DateTime, ForeignKey, Index, Text


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    settings: Mapped[Optional["UserSettings"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False
    )


class UserSettings(Base):
    __tablename__ = "user_settings"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    telegram_username: Mapped[Optional[str]] = mapped_column(String(64))   # stored with or without "@"
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(32), unique=True)  # set by /start
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user: Mapped[User] = relationship(back_populates="settings")


class Alert(Base):
    __tablename__ = "alerts"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    coin_id: Mapped[str] = mapped_column(String(100), nullable=False)        # CoinGecko id, ex: bitcoin
    coin_name: Mapped[str] = mapped_column(String(100), nullable=False)      # ex: Bitcoin
    coin_symbol: Mapped[str] = mapped_column(String(20), nullable=False)     # ex: btc
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    targets: Mapped[List["AlertTarget"]] = relationship(
        back_populates="alert", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_alert_active", "is_active"),
    )


class AlertTarget(Base):
    __tablename__ = "alert_targets"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False)
    target_price: Mapped[float] = mapped_column(Float, nullable=False)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)      # rule kind, see rules.rule_defs.RuleKind
    tolerance: Mapped[Optional[float]] = mapped_column(Float, default=1.0)   # percent
    description: Mapped[Optional[str]] = mapped_column(Text)
    triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    alert: Mapped[Alert] = relationship(back_populates="targets")

    __table_args__ = (
        Index("ix_target_alert_triggered", "alert_id", "triggered"),
    )
