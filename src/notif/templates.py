# -*- coding: utf-8 -*-
"""
Message templates for Telegram alerts.
Messages are sent with parse_mode=HTML, so user-provided text is escaped.
"""
from html import escape
from typing import Optional
from src.notif.formatter import (
    format_price,
    format_datetime,
    format_percentage,
    format_change_percent,
    format_coin_display
)
from src.config import get_bot_name, get_bot_version
from src.rules.rule_defs import RuleKind, effective_tolerance

ALERT_DISCLAIMER = "ℹ️ Price alert only. Not financial advice."

RULE_ICONS = {
    RuleKind.PROFIT_TARGET: "📈",
    RuleKind.LOSS_LIMIT: "📉",
    RuleKind.WATCH_MARKET: "👀",
    RuleKind.TARGET: "🎯",
    RuleKind.STEP_BUY: "🟢",
    RuleKind.STEP_SELL: "🔴",
    RuleKind.CUSTOM: "⚙️",
}


def template_price_alert(
    coin_name: str,
    coin_symbol: str,
    target_price: float,
    current_price: float,
    tolerance: Optional[float],
    rule_kind: RuleKind,
    description: Optional[str] = None
) -> str:
    """
    Template for a fired price target.

    Example output:
        🚨 Crypto Price Alert

        📊 Coin: Bitcoin (BTC)
        💰 Current price: $49,400.00
        🎯 Target price: $50,000.00
        📊 Change: -1.20%
        📉 Alert type: Loss limit (±1.00%)
        ...
    """
    icon = RULE_ICONS.get(rule_kind, "🔔")
    kind_label = rule_kind.value if isinstance(rule_kind, RuleKind) else str(rule_kind)
    tol = format_percentage(float(effective_tolerance(tolerance)))

    msg = f"""🚨 <b>Crypto Price Alert</b>

📊 <b>Coin:</b> {escape(format_coin_display(coin_name, coin_symbol))}
💰 <b>Current price:</b> {format_price(current_price)}
🎯 <b>Target price:</b> {format_price(target_price)}
📊 <b>Change:</b> {format_change_percent(current_price, target_price)}
{icon} <b>Alert type:</b> {escape(kind_label)} (±{tol})"""

    if description:
        msg += f"\n📝 <b>Note:</b> {escape(description)}"

    msg += f"\n\n⏰ {format_datetime()}\n{ALERT_DISCLAIMER}"
    return msg


def template_startup(active_alerts: int, check_interval: int) -> str:
    """Template for bot startup (admin channel)."""
    return f"""✅ {get_bot_name()} v{get_bot_version()} online

Active alerts: {active_alerts}
Check interval: {check_interval // 60}m {check_interval % 60}s

⏰ {format_datetime()}"""


def template_shutdown() -> str:
    """Template for bot shutdown (admin channel)."""
    return f"""🛑 {get_bot_name()} stopped

⏰ {format_datetime()}"""


def template_error_admin(error_type: str, error_msg: str, context: str = "") -> str:
    """
    Template for admin channel error alerts.

    Args:
        error_type: Type of error (e.g., "Database", "Telegram API")
        error_msg: Error message
        context: Additional context (optional)
    """
    msg = f"""❌ ERROR - {escape(error_type)}

Bot: {escape(get_bot_name())}
Error: {escape(error_msg)}"""

    if context:
        msg += f"\nContext: {escape(context)}"

    msg += f"\n\n⏰ {format_datetime()}"

    return msg


def template_warning_admin(warning_type: str, warning_msg: str) -> str:
    """
    Template for admin channel warnings.

    Args:
        warning_type: Type of warning
        warning_msg: Warning message
    """
    return f"""⚠️ WARNING - {escape(warning_type)}

Bot: {escape(get_bot_name())}
Warning: {escape(warning_msg)}

⏰ {format_datetime()}"""


# Replies to /start in the bot chat
REPLY_WELCOME = (
    "Hello! Welcome to the crypto price alert bot.\n"
    "Please enter your Telegram username in the website settings panel."
)
REPLY_LINKED = "Your account has been linked successfully! Price alerts will arrive in this chat."
REPLY_NOT_FOUND = "Please add your Telegram username in the website settings panel first, then send /start again."
REPLY_NO_USERNAME = "Please set a username for your Telegram account and try again."
