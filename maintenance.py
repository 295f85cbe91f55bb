import asyncio
import logging
from datetime import timedelta

from config import (
    DATABASE_URL, SCHEDULE_SETTINGS, CLEANUP_SETTINGS,
    SUBSCRIPTION_REMINDER_DAYS, SUBSCRIPTION_REMINDER_DATA
)
from database import Database, utcnow
from errors import NotFound, PanelError
from panel_client import PanelClient
from payments import PaymentLedger
from plan_catalog import PlanCatalog
from subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs run_once() forever; a failed pass is logged and retried after a back-off"""

    name = 'task'
    interval = 3600

    def __init__(self, interval=None, backoff=SCHEDULE_SETTINGS["error_backoff"]):
        if interval is not None:
            self.interval = interval
        self.backoff = backoff

    async def run_once(self):
        raise NotImplementedError

    async def start(self):
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {self.name}: {e}")
                await asyncio.sleep(self.backoff)


class ExpiryReaper(PeriodicTask):
    name = 'expiry reaper'
    interval = SCHEDULE_SETTINGS["reap_interval"]

    def __init__(self, subscriptions, **kwargs):
        super().__init__(**kwargs)
        self.subscriptions = subscriptions

    async def run_once(self):
        reaped = await self.subscriptions.reap_expired()
        logger.info(f"Expiry sweep finished: {reaped} subscription(s) expired")
        return reaped


class PanelMonitor(PeriodicTask):
    name = 'panel monitor'
    interval = SCHEDULE_SETTINGS["panel_probe_interval"]

    def __init__(self, panel_client, **kwargs):
        super().__init__(**kwargs)
        self.panel_client = panel_client

    async def run_once(self):
        return await self.panel_client.probe_panels()


class UsageSync(PeriodicTask):
    """Pulls used traffic from the panels so exhausted subscriptions get suspended"""

    name = 'usage sync'
    interval = SCHEDULE_SETTINGS["usage_sync_interval"]

    def __init__(self, subscriptions, **kwargs):
        super().__init__(**kwargs)
        self.subscriptions = subscriptions

    async def run_once(self):
        synced = 0
        for subscription in self.subscriptions.list_active():
            try:
                await self.subscriptions.sync_usage(subscription.id)
                synced += 1
            except (PanelError, NotFound) as e:
                logger.warning(f"Usage sync skipped subscription {subscription.id}: {e}")
        logger.info(f"Usage sync finished: {synced} subscription(s) updated")
        return synced


class ReminderNotifier(PeriodicTask):
    """Warns users whose subscription is about to expire or run out of data"""

    name = 'reminders'
    interval = SCHEDULE_SETTINGS["reminder_interval"]

    def __init__(self, subscriptions, send, **kwargs):
        super().__init__(**kwargs)
        self.subscriptions = subscriptions
        self.send = send

    async def run_once(self):
        now = utcnow()
        sent = 0
        for subscription in self.subscriptions.expiring_within(SUBSCRIPTION_REMINDER_DAYS, now):
            days_left = (subscription.expires_at - now).days
            sent += await self._notify(
                subscription.user_id,
                f"⚠️ اخطار انقضای سرویس:\n"
                f"سرویس #{subscription.id} شما تا {days_left} روز دیگر منقضی می‌شود."
            )
        for subscription in self.subscriptions.low_on_data(SUBSCRIPTION_REMINDER_DATA):
            sent += await self._notify(
                subscription.user_id,
                f"⚠️ اخطار اتمام حجم:\n"
                f"حجم باقیمانده سرویس #{subscription.id} شما {subscription.remaining_data_gb:.1f} GB است."
            )
        return sent

    async def _notify(self, user_id, text):
        try:
            await self.send(user_id, text)
            return 1
        except Exception as e:
            logger.error(f"Failed to send reminder to {user_id}: {e}")
            return 0


class LogCleaner(PeriodicTask):
    name = 'log cleanup'
    interval = SCHEDULE_SETTINGS["log_cleanup_interval"]

    def __init__(self, db, **kwargs):
        super().__init__(**kwargs)
        self.db = db

    async def run_once(self):
        removed = self.db.purge_logs(utcnow() - timedelta(days=CLEANUP_SETTINGS["old_logs_days"]))
        if removed:
            logger.info(f"Removed {removed} old system log(s)")
        return removed


async def run_maintenance(db):
    """One reap + usage sync + probe + log cleanup pass"""
    panel_client = PanelClient(db)
    catalog = PlanCatalog(db, panel_client)
    subscriptions = SubscriptionManager(db, panel_client, catalog, PaymentLedger(db))
    try:
        await ExpiryReaper(subscriptions).run_once()
        await UsageSync(subscriptions).run_once()
        await PanelMonitor(panel_client).run_once()
        await LogCleaner(db).run_once()
    finally:
        await panel_client.close()


def main():
    """Run maintenance tasks"""
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.INFO
    )
    try:
        logger.info("Starting maintenance tasks...")
        asyncio.run(run_maintenance(Database(DATABASE_URL)))
        logger.info("Maintenance tasks completed successfully!")
    except Exception as e:
        logger.error(f"Error during maintenance: {e}")
        raise


if __name__ == "__main__":
    main()
