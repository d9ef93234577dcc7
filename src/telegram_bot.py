import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from loguru import logger
from telegram import Bot, Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes

from src.config import BOT_TOKEN, ADMIN_CHANNEL_ID
from src.rules.rule_defs import RuleKind
from src.storage.repo import AlertStore


class NotifyStatus(str, Enum):
    SENT = "sent"
    DRY_RUN = "dry_run"
    CHAT_NOT_REGISTERED = "chat_not_registered"   # user never sent /start; not retried
    SEND_FAILED = "send_failed"


@dataclass
class NotifyResult:
    status: NotifyStatus
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (NotifyStatus.SENT, NotifyStatus.DRY_RUN)


async def _send_message_async(token: str, text: str, chat_id: str) -> None:
    """Send message to specific chat; the bot's HTTP client is closed afterwards."""
    async with Bot(token) as bot:
        await bot.send_message(chat_id=chat_id, text=text, parse_mode='HTML')


class TelegramNotifier:
    """
    Sends price alerts to the owning user's private chat.

    The chat id comes from user_settings (linked via /start). Without a bot
    token the notifier runs in dry-run mode and only logs messages.
    """

    def __init__(self, store: AlertStore, bot_token: str = BOT_TOKEN, dry_run: bool = False):
        self.store = store
        self.bot_token = bot_token
        self.dry_run = dry_run or not bot_token

    async def notify(
        self,
        user_id: int,
        coin_name: str,
        coin_symbol: str,
        target_price: float,
        current_price: float,
        tolerance: Optional[float],
        rule_kind: RuleKind,
        description: Optional[str] = None
    ) -> NotifyResult:
        from src.notif.templates import template_price_alert

        chat_id = await asyncio.to_thread(self.store.get_chat_id, user_id)
        if not chat_id:
            logger.warning(f"Chat ID not registered for user {user_id}, alert not delivered")
            return NotifyResult(NotifyStatus.CHAT_NOT_REGISTERED, f"user {user_id}")

        text = template_price_alert(
            coin_name, coin_symbol, target_price, current_price, tolerance, rule_kind, description
        )

        if self.dry_run:
            logger.info(f"[dry-run] [user {user_id}] MSG -> {text}")
            return NotifyResult(NotifyStatus.DRY_RUN)

        try:
            await _send_message_async(self.bot_token, text, chat_id)
            logger.info(f"{rule_kind.value} alert message sent to user {user_id}")
            return NotifyResult(NotifyStatus.SENT)
        except TelegramError as e:
            logger.error(f"Error sending Telegram message to user {user_id}: {e}")
            return NotifyResult(NotifyStatus.SEND_FAILED, str(e))


async def send_admin_message(text: str) -> bool:
    """
    Send message to the admin channel.

    Returns:
        True if sent successfully (or logged in dry-run), False otherwise
    """
    if not BOT_TOKEN or not ADMIN_CHANNEL_ID:
        logger.info(f"[dry-run] [admin] MSG -> {text}")
        return True

    try:
        await _send_message_async(BOT_TOKEN, text, ADMIN_CHANNEL_ID)
        return True
    except Exception as e:
        logger.exception(f"Failed to send message to admin: {e}")
        return False


async def send_error_to_admin(error_type: str, error_msg: str, context: str = "") -> bool:
    """
    Send error alert to admin channel.

    Args:
        error_type: Type of error (e.g., "Database", "Price feed")
        error_msg: Error message
        context: Additional context
    """
    from src.notif.templates import template_error_admin

    message = template_error_admin(error_type, error_msg, context)
    return await send_admin_message(message)


async def send_warning_to_admin(warning_type: str, warning_msg: str) -> bool:
    """Send warning to admin channel."""
    from src.notif.templates import template_warning_admin

    message = template_warning_admin(warning_type, warning_msg)
    return await send_admin_message(message)


# ==================== /start: chat registration ====================

async def handle_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Link the sender's chat id to the user_settings row holding their username."""
    from src.notif.templates import REPLY_WELCOME, REPLY_LINKED, REPLY_NOT_FOUND, REPLY_NO_USERNAME

    store: AlertStore = context.bot_data["store"]
    message = update.effective_message
    chat_id = str(update.effective_chat.id)
    username = update.effective_user.username if update.effective_user else None

    logger.info(f"Received /start from {username} ({chat_id})")
    await message.reply_text(REPLY_WELCOME)

    if not username:
        await message.reply_text(REPLY_NO_USERNAME)
        return

    try:
        user_id = await asyncio.to_thread(store.register_chat_id, username, chat_id)
    except Exception as e:
        logger.exception(f"Database error while registering chat {chat_id}: {e}")
        return

    if user_id is None:
        logger.info(f"No user found with telegram username: @{username} or {username}")
        await message.reply_text(REPLY_NOT_FOUND)
    else:
        logger.info(f"Chat ID {chat_id} registered for user @{username} (user_id: {user_id})")
        await message.reply_text(REPLY_LINKED)


def build_application(store: AlertStore, bot_token: str = BOT_TOKEN) -> Application:
    """Telegram application serving /start; the caller drives its lifecycle."""
    application = Application.builder().token(bot_token).build()
    application.bot_data["store"] = store
    application.add_handler(CommandHandler("start", handle_start))
    return application


async def run_polling(application: Application, stop_event: asyncio.Event) -> None:
    """Poll for updates until stop_event is set (alongside the engine loop)."""
    async with application:
        await application.start()
        await application.updater.start_polling()
        logger.info("Telegram polling started")
        try:
            await stop_event.wait()
        finally:
            await application.updater.stop()
            await application.stop()
            logger.info("Telegram polling stopped")


# Backoff between polling restarts (seconds); the last value repeats
POLLING_RETRY_DELAYS = [5, 15, 60]


async def run_polling_with_retry(
    store: AlertStore,
    stop_event: asyncio.Event,
    bot_token: str = BOT_TOKEN,
    retry_delays: Optional[List[float]] = None
) -> None:
    """
    Keep /start polling alive until stop_event is set.

    A Telegram outage (initialize/get_me failing, polling crashing) is logged
    and retried with backoff; it never ends the process. The admin channel
    is warned on the first failure only.
    """
    delays = retry_delays or POLLING_RETRY_DELAYS
    failures = 0

    while not stop_event.is_set():
        try:
            await run_polling(build_application(store, bot_token), stop_event)
            return
        except Exception as e:
            delay = delays[min(failures, len(delays) - 1)]
            failures += 1
            logger.warning(f"Telegram polling failed (attempt {failures}): {e}; retrying in {delay}s")
            if failures == 1:
                await send_warning_to_admin("Telegram polling", f"{e} - retrying, alert checks continue")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
