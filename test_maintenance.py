import asyncio
import unittest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from database import Database, Panel, Subscription, SystemLog, SUB_ACTIVE, SUB_SUSPENDED, utcnow
from errors import PanelUnreachable
from maintenance import ExpiryReaper, LogCleaner, PanelMonitor, PeriodicTask, ReminderNotifier, UsageSync
from panel_client import PanelClient
from payments import PaymentLedger
from plan_catalog import PlanCatalog
from subscriptions import BYTES_PER_GB, SubscriptionManager


class FlakyTask(PeriodicTask):
    name = 'flaky'

    def __init__(self):
        super().__init__(interval=0, backoff=0)
        self.calls = 0

    async def run_once(self):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError('first pass fails')
        if self.calls >= 3:
            raise asyncio.CancelledError()


class TestMaintenance(unittest.IsolatedAsyncioTestCase):
    async def test_loop_survives_errors(self):
        task = FlakyTask()
        with self.assertRaises(asyncio.CancelledError):
            await task.start()
        self.assertEqual(task.calls, 3)

    async def test_reaper_and_monitor(self):
        subscriptions = AsyncMock(spec=SubscriptionManager)
        subscriptions.reap_expired.return_value = 2
        self.assertEqual(await ExpiryReaper(subscriptions).run_once(), 2)

        panel_client = AsyncMock(spec=PanelClient)
        panel_client.probe_panels.return_value = {1: 'connected'}
        self.assertEqual(await PanelMonitor(panel_client).run_once(), {1: 'connected'})

    async def test_reminders(self):
        now = utcnow()
        expiring = MagicMock(id=1, user_id=1001, expires_at=now + timedelta(days=2, hours=1))
        low = MagicMock(id=2, user_id=2002, remaining_data_gb=1.5)
        subscriptions = MagicMock(spec=SubscriptionManager)
        subscriptions.expiring_within.return_value = [expiring]
        subscriptions.low_on_data.return_value = [low]

        send = AsyncMock(side_effect=[None, RuntimeError('blocked by user')])
        sent = await ReminderNotifier(subscriptions, send).run_once()

        self.assertEqual(sent, 1)
        self.assertEqual(send.await_args_list[0].args[0], 1001)
        self.assertEqual(send.await_args_list[1].args[0], 2002)

    async def test_log_cleaner(self):
        db = Database("sqlite://")
        with db.session_scope() as session:
            session.add(SystemLog(level='INFO', module='test', message='old',
                                  created_at=utcnow() - timedelta(days=200)))
            session.add(SystemLog(level='INFO', module='test', message='new'))

        self.assertEqual(await LogCleaner(db).run_once(), 1)
        self.assertEqual([log.message for log in db.recent_logs()], ['new'])

    async def test_usage_sync_suspends_exhausted_and_skips_failures(self):
        db = Database("sqlite://")
        with db.session_scope() as session:
            panel = Panel(name='main', base_url='https://panel.example.com',
                          admin_username='admin', admin_credential='secret')
            session.add(panel)
            session.flush()
            panel_id = panel.id
        plan = PlanCatalog(db).create_plan('Monthly', panel_id, 10, 30, 5)

        expires_at = utcnow() + timedelta(days=10)
        with db.session_scope() as session:
            for payment_id, username in ((1, 'vpn_1_1'), (2, 'vpn_2_2')):
                session.add(Subscription(
                    user_id=1000 + payment_id, plan_id=plan.id, panel_id=panel_id, payment_id=payment_id,
                    remote_username=username, data_limit_gb=10, used_data_gb=0,
                    expires_at=expires_at, status=SUB_ACTIVE
                ))

        async def remote_account(panel, username):
            if username == 'vpn_2_2':
                raise PanelUnreachable(panel.name, 'connection refused')
            return {'username': username, 'used_traffic': 10 * BYTES_PER_GB}

        panel_client = AsyncMock(spec=PanelClient)
        panel_client.get_remote_account.side_effect = remote_account
        subscriptions = SubscriptionManager(db, panel_client, PlanCatalog(db), PaymentLedger(db))

        self.assertEqual(await UsageSync(subscriptions).run_once(), 1)

        exhausted, failing = sorted(subscriptions.list_for_user(1001) + subscriptions.list_for_user(1002),
                                    key=lambda s: s.payment_id)
        self.assertEqual(exhausted.status, SUB_SUSPENDED)
        self.assertEqual(exhausted.used_data_gb, 10)
        self.assertEqual(failing.status, SUB_ACTIVE)
        panel_client.set_account_status.assert_awaited_once()
        self.assertEqual([s.id for s in subscriptions.list_active()], [failing.id])


if __name__ == '__main__':
    unittest.main()
