# -*- coding: utf-8 -*-
"""
Formatting utilities for alert messages.
Handles timezone conversion, number formatting, and date formatting.
"""
from datetime import datetime, timezone
from typing import Optional
import pytz


def format_price(price: float) -> str:
    """
    Format price in USD: $67,420.50

    Sub-dollar coins keep 6 decimals so the move is still visible
    (e.g., 0.0123456 -> "$0.012346").

    Args:
        price: Price value

    Returns:
        Formatted string
    """
    price = float(price)
    if price != 0 and abs(price) < 1:
        return f"${price:.6f}"
    return f"${price:,.2f}"


def format_percentage(value: float) -> str:
    """
    Format percentage: 1.50%

    Args:
        value: Percentage value (e.g., 1.5 for 1.5%)
    """
    return f"{float(value):.2f}%"


def format_change_percent(current_price: float, target_price: float) -> str:
    """
    Signed distance of current price from target, in percent of target.

    Example:
        format_change_percent(49400, 50000) -> "-1.20%"
    """
    target_price = float(target_price)
    if target_price == 0:
        return "0.00%"
    change = (float(current_price) - target_price) / target_price * 100
    sign = "+" if change > 0 else ""
    return f"{sign}{change:.2f}%"


def format_datetime(dt: Optional[datetime] = None, tz_name: Optional[str] = None) -> str:
    """
    Format datetime for messages: 2025-11-11 11:30 UTC

    Args:
        dt: datetime object (if None, uses current time). Naive values are
            taken as UTC.
        tz_name: display timezone (defaults to bot.timezone from config)

    Returns:
        Formatted string (e.g., "2025-11-11 08:30 -03")
    """
    if tz_name is None:
        from src.config import get_display_timezone
        tz_name = get_display_timezone()

    tz = pytz.timezone(tz_name)
    if dt is None:
        dt = datetime.now(timezone.utc)
    elif dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(tz).strftime("%Y-%m-%d %H:%M %Z")


def format_coin_display(coin_name: str, coin_symbol: str) -> str:
    """Bitcoin + btc -> "Bitcoin (BTC)"."""
    return f"{coin_name} ({coin_symbol.upper()})"
