import asyncio
import unittest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from database import (
    Database, Panel, Subscription, SystemLog,
    METHOD_GATEWAY, PAYMENT_COMPLETED,
    SUB_ACTIVE, SUB_SUSPENDED, SUB_EXPIRED
)
from errors import (
    NotFound, PanelRequestFailed, PanelUnreachable, PaymentAlreadyConsumed,
    PaymentNotCompleted, UsageDecreaseRejected
)
from panel_client import PanelClient, ACCOUNT_DISABLED
from payments import PaymentLedger
from plan_catalog import PlanCatalog
from subscriptions import SubscriptionManager, derive_status, remote_username_for, BYTES_PER_GB

NOW = datetime(2024, 6, 1, 12, 0)


class TestDeriveStatus(unittest.TestCase):
    def test_status_rules(self):
        future = NOW + timedelta(days=1)
        past = NOW - timedelta(seconds=1)
        self.assertEqual(derive_status(50, 10, future, NOW), SUB_ACTIVE)
        self.assertEqual(derive_status(50, 50, future, NOW), SUB_SUSPENDED)
        self.assertEqual(derive_status(50, 70, future, NOW), SUB_SUSPENDED)
        self.assertEqual(derive_status(50, 10, past, NOW), SUB_EXPIRED)
        self.assertEqual(derive_status(50, 10, NOW, NOW), SUB_EXPIRED)
        # expiry wins over exhausted data
        self.assertEqual(derive_status(50, 50, past, NOW), SUB_EXPIRED)

    def test_remote_username_is_stable(self):
        self.assertEqual(remote_username_for(1001, 7), remote_username_for(1001, 7))
        self.assertNotEqual(remote_username_for(1001, 7), remote_username_for(1001, 8))


class SubscriptionTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        """Set up test environment"""
        self.db = Database("sqlite://")
        self.panel_client = AsyncMock(spec=PanelClient)
        self.panel_client.create_remote_account.return_value = {
            'username': 'x', 'proxies': {'vless': {'id': 'panel-uuid'}}
        }
        self.catalog = PlanCatalog(self.db, self.panel_client)
        self.ledger = PaymentLedger(self.db)
        self.manager = SubscriptionManager(self.db, self.panel_client, self.catalog, self.ledger)

        with self.db.session_scope() as session:
            panel = Panel(name='main', base_url='https://panel.example.com',
                          admin_username='admin', admin_credential='secret')
            session.add(panel)
            session.flush()
            self.panel_id = panel.id
        self.plan = self.catalog.create_plan('Monthly', self.panel_id, 50, 30, 5)

    def completed_payment(self, user_id=1001):
        payment = self.ledger.create(user_id, self.plan.id, 5, METHOD_GATEWAY)
        payment, _ = self.ledger.complete(payment.id, 'REF')
        return payment

    def insert_subscription(self, used=0.0, limit=50.0, expires_at=None, status=SUB_ACTIVE):
        payment = self.completed_payment()
        with self.db.session_scope() as session:
            subscription = Subscription(
                user_id=1001, plan_id=self.plan.id, panel_id=self.panel_id,
                payment_id=payment.id, remote_username=remote_username_for(1001, payment.id),
                data_limit_gb=limit, used_data_gb=used,
                expires_at=expires_at or NOW + timedelta(days=10), status=status
            )
            session.add(subscription)
            session.flush()
        return subscription


class TestProvision(SubscriptionTestCase):
    async def test_provision_from_completed_payment(self):
        payment = self.completed_payment()

        subscription = await self.manager.provision(1001, self.plan.id, payment.id, NOW)

        self.assertEqual(subscription.data_limit_gb, 50)
        self.assertEqual(subscription.used_data_gb, 0)
        self.assertEqual(subscription.expires_at, NOW + timedelta(days=30))
        self.assertEqual(subscription.status, SUB_ACTIVE)
        self.assertEqual(subscription.remote_credential, 'panel-uuid')

        args = self.panel_client.create_remote_account.await_args.args
        self.assertEqual(args[1], remote_username_for(1001, payment.id))
        self.assertEqual(args[2], 50 * BYTES_PER_GB)
        self.assertIsNotNone(self.ledger.get(payment.id).consumed_at)

    async def test_pending_payment_is_rejected(self):
        payment = self.ledger.create(1001, self.plan.id, 5, METHOD_GATEWAY)
        with self.assertRaises(PaymentNotCompleted):
            await self.manager.provision(1001, self.plan.id, payment.id, NOW)
        self.panel_client.create_remote_account.assert_not_awaited()

    async def test_payment_of_another_user_is_rejected(self):
        payment = self.completed_payment(user_id=2002)
        with self.assertRaises(ValueError):
            await self.manager.provision(1001, self.plan.id, payment.id, NOW)

    async def test_payment_backs_one_subscription(self):
        payment = self.completed_payment()
        first = await self.manager.provision(1001, self.plan.id, payment.id, NOW)

        with self.assertRaises(PaymentAlreadyConsumed) as ctx:
            await self.manager.provision(1001, self.plan.id, payment.id, NOW)

        self.assertEqual(ctx.exception.subscription_id, first.id)
        self.assertEqual(self.panel_client.create_remote_account.await_count, 1)
        self.assertEqual(len(self.manager.list_for_user(1001)), 1)

    async def test_panel_failure_leaves_nothing_locally(self):
        self.panel_client.create_remote_account.side_effect = PanelUnreachable('main', 'down')
        payment = self.completed_payment()

        with self.assertRaises(PanelUnreachable):
            await self.manager.provision(1001, self.plan.id, payment.id, NOW)

        self.assertIsNone(self.manager.get_by_payment(payment.id))
        self.assertIsNone(self.ledger.get(payment.id).consumed_at)

        # retry with the same payment reuses the same remote username
        self.panel_client.create_remote_account.side_effect = None
        subscription = await self.manager.provision(1001, self.plan.id, payment.id, NOW)
        usernames = {call.args[1] for call in self.panel_client.create_remote_account.await_args_list}
        self.assertEqual(usernames, {subscription.remote_username})


class TestUsage(SubscriptionTestCase):
    async def test_exhausted_data_suspends_and_disables_remote(self):
        subscription = self.insert_subscription(used=50, limit=50)

        updated = await self.manager.record_usage(subscription.id, 50, NOW)

        self.assertEqual(updated.used_data_gb, 50)
        self.assertEqual(updated.status, SUB_SUSPENDED)
        self.panel_client.set_account_status.assert_awaited_once()
        self.assertEqual(self.panel_client.set_account_status.await_args.args[2], ACCOUNT_DISABLED)

    async def test_decrease_is_rejected(self):
        subscription = self.insert_subscription(used=20)

        with self.assertRaises(UsageDecreaseRejected):
            await self.manager.record_usage(subscription.id, 10, NOW)

        self.assertEqual(self.manager.get(subscription.id).used_data_gb, 20)

    async def test_remote_disable_failure_keeps_local_status(self):
        self.panel_client.set_account_status.side_effect = PanelUnreachable('main', 'down')
        subscription = self.insert_subscription(used=10)

        updated = await self.manager.record_usage(subscription.id, 60, NOW)

        self.assertEqual(updated.status, SUB_SUSPENDED)
        self.assertEqual(self.manager.get(subscription.id).status, SUB_SUSPENDED)

    async def test_status_independent_of_write_order(self):
        expires_at = NOW + timedelta(days=1)
        later = NOW + timedelta(days=2)

        first = self.insert_subscription(used=0, expires_at=expires_at)
        await self.manager.record_usage(first.id, 50, NOW)
        await self.manager.reap_expired(later)

        second = self.insert_subscription(used=0, expires_at=expires_at)
        await self.manager.reap_expired(later)
        await self.manager.record_usage(second.id, 50, later)

        self.assertEqual(self.manager.get(first.id).status, SUB_EXPIRED)
        self.assertEqual(self.manager.get(second.id).status, SUB_EXPIRED)

    async def test_sync_usage_reads_panel_traffic(self):
        subscription = self.insert_subscription(used=1)
        self.panel_client.get_remote_account.return_value = {'used_traffic': 3 * BYTES_PER_GB}

        updated = await self.manager.sync_usage(subscription.id, NOW)
        self.assertEqual(updated.used_data_gb, 3)

    async def test_unknown_subscription(self):
        with self.assertRaises(NotFound):
            await self.manager.record_usage(999, 1, NOW)


class TestLifecycle(SubscriptionTestCase):
    async def test_concurrent_reap_transitions_once(self):
        subscription = self.insert_subscription(expires_at=NOW - timedelta(hours=1))

        results = await asyncio.gather(
            self.manager.reap_expired(NOW),
            self.manager.reap_expired(NOW)
        )

        self.assertEqual(sorted(results), [0, 1])
        self.assertEqual(self.manager.get(subscription.id).status, SUB_EXPIRED)
        self.panel_client.set_account_status.assert_awaited_once()

    def test_losing_claim_sees_no_row(self):
        subscription = self.insert_subscription(expires_at=NOW - timedelta(hours=1))
        self.assertIsNotNone(self.manager._claim_expired(subscription.id, SUB_ACTIVE, NOW))
        self.assertIsNone(self.manager._claim_expired(subscription.id, SUB_ACTIVE, NOW))

    async def test_reap_suspended_does_not_disable_again(self):
        self.insert_subscription(used=50, expires_at=NOW - timedelta(hours=1), status=SUB_SUSPENDED)

        self.assertEqual(await self.manager.reap_expired(NOW), 1)
        self.panel_client.set_account_status.assert_not_awaited()

    async def test_renew(self):
        subscription = self.insert_subscription(used=10, expires_at=NOW - timedelta(days=1), status=SUB_EXPIRED)
        new_expiry = NOW + timedelta(days=30)

        renewed = await self.manager.renew(subscription.id, new_expiry, NOW)

        self.assertEqual(renewed.status, SUB_ACTIVE)
        self.assertEqual(renewed.expires_at, new_expiry)
        kwargs = self.panel_client.update_remote_account.await_args.kwargs
        self.assertEqual(kwargs['status'], 'active')

    async def test_renew_into_the_past_is_rejected(self):
        subscription = self.insert_subscription()
        with self.assertRaises(ValueError):
            await self.manager.renew(subscription.id, NOW - timedelta(days=1), NOW)

    async def test_renew_panel_failure_keeps_old_expiry(self):
        self.panel_client.update_remote_account.side_effect = PanelRequestFailed('main', 500, 'boom')
        subscription = self.insert_subscription(expires_at=NOW + timedelta(days=2))

        with self.assertRaises(PanelRequestFailed):
            await self.manager.renew(subscription.id, NOW + timedelta(days=40), NOW)

        self.assertEqual(self.manager.get(subscription.id).expires_at, NOW + timedelta(days=2))

    async def test_terminate(self):
        subscription = self.insert_subscription()

        self.assertTrue(await self.manager.terminate(subscription.id))
        with self.assertRaises(NotFound):
            self.manager.get(subscription.id)
        self.assertEqual(self.manager.pending_cleanups(), [])

    async def test_terminate_records_dead_letter_on_remote_failure(self):
        self.panel_client.delete_remote_account.side_effect = PanelUnreachable('main', 'down')
        subscription = self.insert_subscription()

        self.assertFalse(await self.manager.terminate(subscription.id))

        with self.assertRaises(NotFound):
            self.manager.get(subscription.id)
        cleanups = self.manager.pending_cleanups()
        self.assertEqual(len(cleanups), 1)
        self.assertEqual(cleanups[0].username, subscription.remote_username)
        self.assertEqual(cleanups[0].panel_id, self.panel_id)
        with self.db.session_scope() as session:
            self.assertEqual(session.query(SystemLog).filter(SystemLog.level == 'ERROR').count(), 1)

        self.manager.resolve_cleanup(cleanups[0].id)
        self.assertEqual(self.manager.pending_cleanups(), [])

    async def test_stats_and_reminders(self):
        self.insert_subscription(used=48, expires_at=NOW + timedelta(days=2))
        self.insert_subscription(used=50, status=SUB_SUSPENDED)
        self.insert_subscription(expires_at=NOW - timedelta(days=1), status=SUB_EXPIRED)

        stats = self.manager.subscription_stats(NOW)
        self.assertEqual(stats['active'], 1)
        self.assertEqual(stats['suspended'], 1)
        self.assertEqual(stats['expired'], 1)
        self.assertEqual(stats['active_users'], 1)

        self.assertEqual(len(self.manager.expiring_within(3, NOW)), 1)
        self.assertEqual(len(self.manager.low_on_data(5)), 1)
        self.assertEqual(len(self.manager.list_for_user(1001, active_only=True)), 1)


if __name__ == '__main__':
    unittest.main()
