import unittest
from datetime import datetime
from unittest.mock import AsyncMock

from database import Database, Subscription, PANEL_CONNECTED, PANEL_DISCONNECTED, SUB_ACTIVE, SUB_EXPIRED
from errors import NotFound, PlanInUse
from panel_client import PanelClient
from plan_catalog import PlanCatalog


class TestPlanCatalog(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = Database("sqlite://")
        self.panel_client = AsyncMock(spec=PanelClient)
        self.panel_client.probe_panel.return_value = PANEL_CONNECTED
        self.catalog = PlanCatalog(self.db, self.panel_client)
        self.panel = await self.catalog.register_panel(
            'main', 'https://panel.example.com:8000/', 'admin', 'secret'
        )

    def add_subscription(self, plan, status):
        with self.db.session_scope() as session:
            session.add(Subscription(
                user_id=1001, plan_id=plan.id, panel_id=self.panel.id, payment_id=plan.id * 100 + len(status),
                remote_username=f"vpn_{plan.id}_{status}", data_limit_gb=plan.data_limit_gb,
                expires_at=datetime(2030, 1, 1), status=status
            ))

    async def test_register_panel(self):
        self.assertEqual(self.panel.base_url, 'https://panel.example.com:8000')
        self.assertEqual(self.panel.connectivity_status, PANEL_CONNECTED)
        self.assertNotIn('admin_credential', self.panel.to_dict())

        self.panel_client.probe_panel.return_value = PANEL_DISCONNECTED
        offline = await self.catalog.register_panel('backup', 'https://backup.example.com', 'admin', 'x')
        self.assertEqual(offline.connectivity_status, PANEL_DISCONNECTED)
        self.assertIsNotNone(self.panel_client.probe_panel.await_args.args[0].id)
        self.assertEqual(self.catalog.get_panel(offline.id).connectivity_status, PANEL_DISCONNECTED)
        self.assertEqual(len(self.catalog.list_panels()), 2)

    def test_create_plan_validation(self):
        invalid = [
            {'data_limit_gb': 0},
            {'duration_days': 0},
            {'price': -1},
            {'max_connections': 0},
            {'features': [1, 2]},
        ]
        for override in invalid:
            fields = dict(name='Bad', panel_id=self.panel.id, data_limit_gb=50, duration_days=30, price=5)
            fields.update(override)
            with self.subTest(override=override):
                with self.assertRaises(ValueError):
                    self.catalog.create_plan(**fields)

        with self.assertRaises(NotFound):
            self.catalog.create_plan('Orphan', 999, 50, 30, 5)

    def test_visibility(self):
        visible = self.catalog.create_plan('Monthly', self.panel.id, 50, 30, 5)
        hidden = self.catalog.create_plan('Hidden', self.panel.id, 10, 7, 1, visible=False)

        self.assertEqual([p.id for p in self.catalog.list_visible_plans()], [visible.id])
        self.assertEqual(len(self.catalog.list_plans()), 2)
        self.assertIsNone(self.catalog.get_visible_plan(hidden.id))
        self.assertIsNone(self.catalog.get_visible_plan(12345))

        self.catalog.toggle_visibility(hidden.id)
        self.assertIsNotNone(self.catalog.get_visible_plan(hidden.id))

    def test_update_and_duplicate(self):
        plan = self.catalog.create_plan('Monthly', self.panel.id, 50, 30, 5, features=['1 user'])

        updated = self.catalog.update_plan(plan.id, price=7, description='fast servers')
        self.assertEqual(updated.price, 7)
        with self.assertRaises(ValueError):
            self.catalog.update_plan(plan.id, inbound_id=3)

        copy = self.catalog.duplicate_plan(plan.id, 'Monthly (copy)')
        self.assertFalse(copy.visible)
        self.assertEqual(copy.features, ['1 user'])
        self.assertEqual(copy.price, 7)

        self.assertCountEqual([p.id for p in self.catalog.search_plans("fast")], [plan.id, copy.id])

    def test_delete_plan_in_use(self):
        plan = self.catalog.create_plan('Monthly', self.panel.id, 50, 30, 5)
        self.add_subscription(plan, SUB_ACTIVE)

        with self.assertRaises(PlanInUse):
            self.catalog.delete_plan(plan.id)
        with self.assertRaises(PlanInUse):
            self.catalog.delete_panel(self.panel.id)

    def test_delete_plan_without_active_subscriptions(self):
        plan = self.catalog.create_plan('Monthly', self.panel.id, 50, 30, 5)
        self.add_subscription(plan, SUB_EXPIRED)

        self.catalog.delete_plan(plan.id)
        with self.assertRaises(NotFound):
            self.catalog.get_plan(plan.id)

        self.catalog.delete_panel(self.panel.id)
        self.assertEqual(self.catalog.list_panels(), [])

    def test_plan_stats(self):
        monthly = self.catalog.create_plan('Monthly', self.panel.id, 50, 30, 5)
        self.catalog.create_plan('Quarterly', self.panel.id, 200, 90, 15)
        self.catalog.create_plan('Hidden', self.panel.id, 1, 1, 100, visible=False)
        self.add_subscription(monthly, SUB_ACTIVE)

        stats = self.catalog.plan_stats()
        self.assertEqual(stats['total_plans'], 3)
        self.assertEqual(stats['visible_plans'], 2)
        self.assertEqual(stats['total_subscriptions'], 1)
        self.assertEqual(stats['average_price'], 10)
        self.assertEqual(stats['most_popular_plan'], 'Monthly')


if __name__ == '__main__':
    unittest.main()
