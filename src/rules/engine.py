"""
Alert Evaluation Engine - joins active alerts with live prices and fires targets.
This is the core of the bot's alerting system.

Per cycle: load active alerts -> for each alert with pending targets, take ONE
price sample -> evaluate every pending target against that sample -> on fire,
notify (best effort) and then persist the triggered flag (always attempted).
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol
from loguru import logger

from src.rules.rule_defs import RuleKind, should_fire
from src.storage.models import Alert, AlertTarget
from src.storage.repo import AlertStore
from src.telegram_bot import NotifyResult, NotifyStatus


class PriceOracle(Protocol):
    async def get_price(self, coin_id: str) -> Optional[float]: ...


class Notifier(Protocol):
    async def notify(self, user_id: int, coin_name: str, coin_symbol: str, target_price: float,
                     current_price: float, tolerance: Optional[float], rule_kind: RuleKind,
                     description: Optional[str] = None) -> NotifyResult: ...


@dataclass
class CycleReport:
    """Counters for one evaluation cycle."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration: float = 0.0
    load_failed: bool = False
    alerts_seen: int = 0
    alerts_without_pending: int = 0
    alerts_price_unavailable: int = 0
    alert_errors: int = 0
    targets_evaluated: int = 0
    targets_fired: int = 0
    unknown_rule_kinds: int = 0
    notifications_failed: int = 0
    chat_not_registered: int = 0
    persist_failures: int = 0
    alerts_deactivated: int = 0

    def summary(self) -> str:
        return (
            f"alerts={self.alerts_seen} (no_pending={self.alerts_without_pending}, "
            f"no_price={self.alerts_price_unavailable}, errors={self.alert_errors}) "
            f"targets={self.targets_evaluated} fired={self.targets_fired} "
            f"notify_failed={self.notifications_failed} persist_failed={self.persist_failures} "
            f"deactivated={self.alerts_deactivated} in {self.duration:.2f}s"
        )


class AlertEngine:
    """
    Runs the evaluation cycle immediately, then every check_interval seconds.

    A tick that arrives while the previous cycle is still running is skipped
    (not queued). Trigger state lives in the store only; the engine keeps no
    state between cycles apart from counters.
    """

    def __init__(
        self,
        store: AlertStore,
        price_oracle: PriceOracle,
        notifier: Notifier,
        check_interval: int = 300,
        price_timeout: float = 40.0,
        shutdown_grace: float = 30.0,
        deactivate_exhausted_alerts: bool = True,
        admin_warning: Optional[Callable[[str, str], Awaitable[bool]]] = None
    ):
        """
        Args:
            store: alert/target persistence
            price_oracle: object with async get_price(coin_id) -> Optional[float]
            notifier: object with async notify(...) -> NotifyResult
            check_interval: seconds between cycle starts
            price_timeout: bound on a single price lookup (seconds)
            shutdown_grace: how long stop() lets an in-flight cycle finish
            deactivate_exhausted_alerts: deactivate alerts whose last pending target fired
            admin_warning: async (warning_type, message) hook for correctness risks
        """
        self.store = store
        self.price_oracle = price_oracle
        self.notifier = notifier
        self.check_interval = check_interval
        self.price_timeout = price_timeout
        self.shutdown_grace = shutdown_grace
        self.deactivate_exhausted_alerts = deactivate_exhausted_alerts
        self.admin_warning = admin_warning

        self.running = False
        self._cycle_running = False
        self._current_cycle: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        self.cycles_run = 0
        self.ticks_skipped = 0
        self.last_report: Optional[CycleReport] = None

    # ==================== SCHEDULER ====================

    async def run(self):
        """Main loop: start a cycle on every tick until stop() is called."""
        self.running = True
        self._stop_event = asyncio.Event()
        logger.info(f"Alert Engine started (interval {self.check_interval}s)")

        try:
            while self.running:
                self._tick()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.check_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            await self._drain_current_cycle()
            logger.info("Alert Engine stopped")

    def _tick(self):
        """Start a cycle in the background unless one is still running."""
        in_flight = self._current_cycle is not None and not self._current_cycle.done()
        if self._cycle_running or in_flight:
            self.ticks_skipped += 1
            logger.warning("Previous evaluation cycle still running, skipping this tick")
            return

        self._current_cycle = asyncio.create_task(self.run_cycle(), name="AlertCycle")
        self._current_cycle.add_done_callback(self._on_cycle_done)

    @staticmethod
    def _on_cycle_done(task: asyncio.Task):
        if task.cancelled():
            logger.warning("Evaluation cycle was cancelled")
        elif task.exception() is not None:
            logger.opt(exception=task.exception()).error("Evaluation cycle crashed")

    async def _drain_current_cycle(self):
        """Give an in-flight cycle shutdown_grace seconds to finish, then cancel it."""
        task = self._current_cycle
        if task is None or task.done():
            return

        logger.info(f"Waiting up to {self.shutdown_grace:.0f}s for the running cycle to finish...")
        done, _ = await asyncio.wait({task}, timeout=self.shutdown_grace)
        if not done:
            logger.warning("Running cycle did not finish in time, cancelling (pending notifications may be lost)")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def stop(self):
        """Stop the alert engine gracefully."""
        logger.info("Stopping alert engine...")
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

    # ==================== CYCLE ====================

    async def run_cycle(self) -> Optional[CycleReport]:
        """
        Run one full load-evaluate-notify sweep.

        Returns:
            CycleReport, or None if another cycle was already running
        """
        if self._cycle_running:
            self.ticks_skipped += 1
            logger.warning("Evaluation cycle already running, skipping")
            return None

        self._cycle_running = True
        try:
            return await self._evaluate_all()
        finally:
            self._cycle_running = False

    async def _evaluate_all(self) -> CycleReport:
        report = CycleReport()
        start = time.monotonic()
        logger.info("Checking active alerts...")

        try:
            alerts = await asyncio.to_thread(self.store.list_active_alerts)
        except Exception as e:
            logger.exception(f"Failed to load active alerts: {e}")
            report.load_failed = True
            alerts = []

        report.alerts_seen = len(alerts)

        for alert in alerts:
            try:
                await self._process_alert(alert, report)
            except Exception as e:
                # One broken alert never aborts the sweep
                report.alert_errors += 1
                logger.exception(f"Error processing alert {alert.id}: {e}")

        report.duration = time.monotonic() - start
        self.cycles_run += 1
        self.last_report = report
        logger.info(f"Cycle complete: {report.summary()}")
        return report

    async def _process_alert(self, alert: Alert, report: CycleReport):
        targets = await asyncio.to_thread(self.store.list_pending_targets, alert.id)
        if not targets:
            report.alerts_without_pending += 1
            logger.debug(f"Alert {alert.id} has no pending targets, skipping price lookup")
            return

        # One sample for every target of this alert
        current_price = await self._fetch_price(alert.coin_id)
        if current_price is None:
            report.alerts_price_unavailable += 1
            logger.info(f"Could not fetch price for {alert.coin_id}, alert {alert.id} retried next cycle")
            return

        logger.debug(f"Alert {alert.id} {alert.coin_id}: price={current_price}, pending={len(targets)}")

        fired_any = False
        for target in targets:
            report.targets_evaluated += 1
            try:
                if await self._evaluate_target(alert, target, current_price, report):
                    fired_any = True
            except Exception as e:
                report.alert_errors += 1
                logger.exception(f"Error evaluating target {target.id} of alert {alert.id}: {e}")

        if fired_any and self.deactivate_exhausted_alerts:
            await self._deactivate_if_exhausted(alert, report)

    async def _fetch_price(self, coin_id: str) -> Optional[float]:
        """Price lookup bounded by price_timeout; any failure is 'unavailable'."""
        try:
            return await asyncio.wait_for(self.price_oracle.get_price(coin_id), timeout=self.price_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Price lookup for {coin_id} timed out after {self.price_timeout}s")
            return None
        except Exception as e:
            logger.exception(f"Price lookup for {coin_id} failed: {e}")
            return None

    async def _evaluate_target(self, alert: Alert, target: AlertTarget, current_price: float,
                               report: CycleReport) -> bool:
        """
        Evaluate one target; on fire, notify then persist.

        Returns:
            True if the target fired and its triggered state was persisted
        """
        rule_kind = RuleKind.parse(target.alert_type)
        if rule_kind is None:
            report.unknown_rule_kinds += 1
            logger.warning(
                f"Target {target.id} of alert {alert.id} has unknown rule kind "
                f"'{target.alert_type}', it will never fire"
            )
            return False

        if not should_fire(rule_kind, current_price, target.target_price, target.tolerance):
            return False

        report.targets_fired += 1
        logger.info(
            f"{rule_kind.value} triggered for {alert.coin_name} ({alert.coin_symbol}): "
            f"target={target.target_price} price={current_price} tol={target.tolerance}"
        )

        await self._notify(alert, target, rule_kind, current_price, report)
        # Persist regardless of the notification outcome
        return await self._persist_trigger(alert, target, report)

    async def _notify(self, alert: Alert, target: AlertTarget, rule_kind: RuleKind,
                      current_price: float, report: CycleReport):
        try:
            result = await self.notifier.notify(
                alert.user_id,
                alert.coin_name,
                alert.coin_symbol,
                target.target_price,
                current_price,
                target.tolerance,
                rule_kind,
                target.description
            )
        except Exception as e:
            report.notifications_failed += 1
            logger.exception(f"Error sending alert for target {target.id} of alert {alert.id}: {e}")
            return

        if result.ok:
            logger.info(f"Alert sent for target {target.id} of alert {alert.id} ({result.status.value})")
            return

        report.notifications_failed += 1
        if result.status == NotifyStatus.CHAT_NOT_REGISTERED:
            report.chat_not_registered += 1
        logger.error(
            f"Alert for target {target.id} of alert {alert.id} not delivered "
            f"({result.status.value}: {result.detail}), target is still marked triggered"
        )

    async def _persist_trigger(self, alert: Alert, target: AlertTarget, report: CycleReport) -> bool:
        try:
            claimed = await asyncio.to_thread(
                self.store.mark_triggered, target.id, datetime.now(timezone.utc)
            )
        except Exception as e:
            report.persist_failures += 1
            logger.error(
                f"Failed to mark target {target.id} of alert {alert.id} as triggered: {e}. "
                f"Target stays pending and may notify again next cycle"
            )
            await self._warn_admin(
                "Database",
                f"Target {target.id} (alert {alert.id}) fired but could not be marked triggered: {e}"
            )
            return False

        if claimed:
            logger.info(f"Target {target.id} of alert {alert.id} marked as triggered")
        else:
            logger.debug(f"Target {target.id} was already triggered by another cycle")
        return True

    async def _deactivate_if_exhausted(self, alert: Alert, report: CycleReport):
        """Housekeeping: stop loading alerts whose last pending target just fired."""
        try:
            remaining = await asyncio.to_thread(self.store.count_pending_targets, alert.id)
            if remaining == 0 and await asyncio.to_thread(self.store.deactivate_alert, alert.id):
                report.alerts_deactivated += 1
                logger.info(f"Alert {alert.id} deactivated - all targets triggered")
        except Exception as e:
            logger.error(f"Error deactivating alert {alert.id}: {e}")

    async def _warn_admin(self, warning_type: str, message: str):
        if self.admin_warning is None:
            return
        try:
            await self.admin_warning(warning_type, message)
        except Exception as e:
            logger.error(f"Failed to send admin warning: {e}")


# Global engine instance
_engine_instance: Optional[AlertEngine] = None


def get_alert_engine(dry_run: bool = False) -> AlertEngine:
    """Get global alert engine instance wired with the default collaborators."""
    global _engine_instance
    if _engine_instance is None:
        from src.config import get_engine_config
        from src.datafeeds.coingecko import get_price_oracle
        from src.telegram_bot import TelegramNotifier, send_warning_to_admin

        cfg = get_engine_config()
        store = AlertStore()
        _engine_instance = AlertEngine(
            store=store,
            price_oracle=get_price_oracle(),
            notifier=TelegramNotifier(store, dry_run=dry_run),
            check_interval=cfg['check_interval'],
            price_timeout=cfg['price_timeout'],
            shutdown_grace=cfg['shutdown_grace'],
            deactivate_exhausted_alerts=cfg['deactivate_exhausted_alerts'],
            admin_warning=send_warning_to_admin
        )
    return _engine_instance
