import argparse
import asyncio
import signal
from typing import Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError

from src.config import (
    BOT_TOKEN,
    LOG_LEVEL,
    get_config,
    get_engine_config,
    get_bot_name,
    get_bot_version,
    is_polling_enabled,
    should_send_startup_message
)
from src.utils.logging import setup_logging
from src.telegram_bot import (
    run_polling_with_retry,
    send_admin_message,
    send_error_to_admin
)
from src.datafeeds.coingecko import get_price_oracle
from src.storage.db import init_db
from src.storage.repo import AlertStore
from src.rules.engine import get_alert_engine


# Global shutdown event
shutdown_event = asyncio.Event()


def signal_handler(sig, frame):
    """Handle SIGTERM and SIGINT for graceful shutdown."""
    logger.info(f"Received signal {sig}, initiating graceful shutdown...")
    # Signal handlers run between loop steps; hop back onto the loop thread-safely
    try:
        loop = asyncio.get_running_loop()
        loop.call_soon_threadsafe(shutdown_event.set)
    except RuntimeError:
        shutdown_event.set()


async def startup_sequence(dry_run: bool = False) -> bool:
    """
    Execute bot startup sequence:
    1. Initialize database
    2. Load configuration
    3. Send startup message
    """
    logger.info("=" * 60)
    logger.info(f"Starting {get_bot_name()} v{get_bot_version()}")
    logger.info("=" * 60)

    try:
        logger.info("Initializing database...")
        init_db()

        logger.info("Loading configuration...")
        get_config()
        engine_cfg = get_engine_config()
        logger.info(f"Config loaded: interval={engine_cfg['check_interval']}s, timeout={engine_cfg['price_timeout']}s")

        if should_send_startup_message() and not dry_run:
            from src.notif.templates import template_startup
            engine = get_alert_engine(dry_run=dry_run)
            active = await asyncio.to_thread(engine.store.list_active_alerts)
            await send_admin_message(template_startup(len(active), engine_cfg['check_interval']))

        logger.info("Startup sequence completed successfully")
        return True

    except Exception as e:
        logger.exception(f"Startup sequence failed: {e}")
        await send_error_to_admin("Startup", str(e), "Bot failed to start")
        return False


async def shutdown_sequence(dry_run: bool = False):
    """Stop the alert engine and say goodbye on the admin channel."""
    logger.info("Starting shutdown sequence...")

    try:
        alert_engine = get_alert_engine(dry_run=dry_run)
        await alert_engine.stop()

        if should_send_startup_message() and not dry_run:
            from src.notif.templates import template_shutdown
            await send_admin_message(template_shutdown())

        logger.info("Shutdown sequence completed")

    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")


async def run_bot(dry_run: bool = False):
    """
    Main bot runtime - alert engine plus Telegram /start polling.
    """
    startup_ok = await startup_sequence(dry_run)
    if not startup_ok:
        logger.error("Startup failed, exiting...")
        return

    alert_engine = get_alert_engine(dry_run=dry_run)

    tasks = [
        asyncio.create_task(alert_engine.run(), name="AlertEngine"),
        asyncio.create_task(shutdown_event.wait(), name="ShutdownWatcher")
    ]

    # Polling is supervised on its own; only the engine or a shutdown signal ends the wait
    polling_stop = asyncio.Event()
    polling_task = None
    if BOT_TOKEN and is_polling_enabled() and not dry_run:
        polling_task = asyncio.create_task(
            run_polling_with_retry(alert_engine.store, polling_stop), name="TelegramPolling"
        )
    else:
        logger.info("Telegram polling disabled (no token, dry-run or telegram.polling=false)")

    names = [t.get_name() for t in tasks] + ([polling_task.get_name()] if polling_task else [])
    logger.info(f"Starting main bot tasks: {', '.join(names)}")

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        for task in done:
            if task.get_name() != "ShutdownWatcher" and not task.cancelled() and task.exception():
                logger.opt(exception=task.exception()).error(f"Task {task.get_name()} crashed")
                await send_error_to_admin("Runtime", str(task.exception()), f"Task {task.get_name()} crashed")

        logger.info("Shutdown signal received, stopping tasks...")

        # Engine and polling stop cooperatively so in-flight alerts are not dropped
        await alert_engine.stop()
        shutdown_event.set()
        await asyncio.gather(*pending, return_exceptions=True)

    except Exception as e:
        logger.exception(f"Error in main bot runtime: {e}")
        await send_error_to_admin("Runtime", str(e), "Critical error in main loop")

    finally:
        polling_stop.set()
        if polling_task is not None:
            await asyncio.gather(polling_task, return_exceptions=True)
        await shutdown_sequence(dry_run)


async def run_once(dry_run: bool = False):
    """Run a single evaluation cycle and exit."""
    init_db()
    report = await get_alert_engine(dry_run=dry_run).run_cycle()
    if report is not None:
        logger.info(f"Single cycle result: {report.summary()}")


def provision_user(store: AlertStore, username: str, telegram_username: Optional[str] = None) -> Optional[int]:
    """Create a user with its settings row; /start later links the chat id."""
    try:
        user_id = store.create_user(username, telegram_username=telegram_username)
    except IntegrityError:
        logger.error(f"User {username} already exists")
        return None
    logger.info(f"User created: id={user_id} username={username} telegram={telegram_username or '-'}")
    return user_id


async def print_price(coin_id: str):
    price = await get_price_oracle().get_price(coin_id)
    if price is None:
        logger.info(f"Price for {coin_id}: unavailable")
    else:
        logger.info(f"Price for {coin_id}: {price}")


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--dry-run", action="store_true", help="Dry-run mode (logs only, no Telegram)")
    parser.add_argument("--ping", action="store_true", help="Send test message to the admin channel")
    parser.add_argument("--init-db", action="store_true", help="Initialize database tables")
    parser.add_argument("--once", action="store_true", help="Run one evaluation cycle and exit")
    parser.add_argument("--price", metavar="COIN_ID", help="Fetch one price from CoinGecko (e.g. bitcoin)")
    parser.add_argument("--create-user", metavar="USERNAME", help="Create a user and exit")
    parser.add_argument("--telegram-username", metavar="NAME", help="Telegram username for --create-user")
    args = parser.parse_args()

    setup_logging(LOG_LEVEL)

    if args.init_db:
        init_db()
        logger.info("Database initialized")
        return

    if args.create_user:
        init_db()
        provision_user(AlertStore(), args.create_user, args.telegram_username)
        return

    if args.ping:
        from src.notif.formatter import format_datetime
        ok = asyncio.run(send_admin_message(f"{get_bot_name()}: online ({format_datetime()})"))
        logger.info(f"Ping sent? {ok}")
        return

    if args.price:
        asyncio.run(print_price(args.price))
        return

    if args.once:
        asyncio.run(run_once(args.dry_run))
        return

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Bot starting in {'dry-run' if args.dry_run else 'live'} mode")

    try:
        asyncio.run(run_bot(args.dry_run))
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt, shutting down...")
    except Exception as e:
        logger.exception(f"Unhandled exception in main: {e}")
    finally:
        logger.info("Bot stopped")


if __name__ == "__main__":
    main()
