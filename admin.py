import logging
from datetime import timedelta

from database import PAYMENT_PENDING, utcnow

logger = logging.getLogger(__name__)


class AdminActions:
    """Operator actions. Errors propagate with their specific type."""

    def __init__(self, db, catalog, ledger, subscriptions, controller, panel_client):
        self.db = db
        self.catalog = catalog
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.controller = controller
        self.panel_client = panel_client

    def _audit(self, message, details):
        logger.info(f"Admin action: {message} {details}")
        self.db.log_system('INFO', 'AdminActions', message, details)

    async def approve_payment(self, payment_id, reference=None):
        """Complete a manual payment and provision it; approving twice is a no-op on the ledger"""
        payment, changed = self.ledger.complete(payment_id, reference)
        if changed:
            self._audit('Payment approved', {'payment_id': payment_id})
        return await self.controller.fulfil_payment(payment.id)

    def reject_payment(self, payment_id, reason='rejected by admin'):
        payment = self.ledger.fail(payment_id, reason)
        self.controller.release_session(payment.user_id, payment_id)
        self._audit('Payment rejected', {'payment_id': payment_id, 'reason': reason})
        return payment

    def refund(self, payment_id, reason):
        return self.ledger.refund(payment_id, reason)

    async def terminate(self, subscription_id):
        remote_deleted = await self.subscriptions.terminate(subscription_id)
        self._audit('Subscription terminated', {
            'subscription_id': subscription_id, 'remote_deleted': remote_deleted
        })
        return remote_deleted

    async def renew(self, subscription_id, days):
        if days <= 0:
            raise ValueError("days must be greater than 0")
        now = utcnow()
        subscription = self.subscriptions.get(subscription_id)
        # extend from the current expiry unless it has already passed
        base = max(subscription.expires_at, now)
        renewed = await self.subscriptions.renew(subscription_id, base + timedelta(days=days), now)
        self._audit('Subscription renewed', {'subscription_id': subscription_id, 'days': days})
        return renewed

    async def reap_expired(self):
        return await self.subscriptions.reap_expired()

    async def record_usage(self, subscription_id, used_data_gb):
        return await self.subscriptions.record_usage(subscription_id, used_data_gb)

    def sales_report(self):
        now = utcnow()
        return {
            'sales': self.ledger.sales_stats(now),
            'methods': self.ledger.method_breakdown(),
            'monthly': self.ledger.monthly_sales(12, now),
            'subscriptions': self.subscriptions.subscription_stats(now),
            'plans': self.catalog.plan_stats(),
            'users': {
                'total': self.db.count_users(),
                'today': self.db.count_users(now.replace(hour=0, minute=0, second=0, microsecond=0)),
            },
        }

    def pending_payments(self):
        return self.ledger.list_by_status(PAYMENT_PENDING)

    def pending_cleanups(self):
        return self.subscriptions.pending_cleanups()

    def resolve_cleanup(self, cleanup_id):
        return self.subscriptions.resolve_cleanup(cleanup_id)

    async def probe_panels(self):
        return await self.panel_client.probe_panels()
