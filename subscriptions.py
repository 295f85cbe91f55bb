import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from database import (
    Panel, Subscription, RemoteCleanup, utcnow,
    PAYMENT_COMPLETED, SUB_ACTIVE, SUB_SUSPENDED, SUB_EXPIRED
)
from errors import (
    NotFound, PanelError, PaymentNotCompleted, PaymentAlreadyConsumed,
    UsageDecreaseRejected, RemoteDeleteInconsistency
)
from panel_client import ACCOUNT_ACTIVE, ACCOUNT_DISABLED

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3


def derive_status(data_limit_gb, used_data_gb, expires_at, now) -> str:
    """Subscription status as a function of usage and expiry only.

    Expiry wins over data exhaustion, so the result does not depend on the
    order in which usage reports and time passing were observed.
    """
    if expires_at <= now:
        return SUB_EXPIRED
    if max(0.0, data_limit_gb - used_data_gb) == 0:
        return SUB_SUSPENDED
    return SUB_ACTIVE


def remote_username_for(user_id, payment_id) -> str:
    # one payment, one remote account: retries reuse the same key
    return f"vpn_{user_id}_{payment_id}"


def gb_to_bytes(gb) -> int:
    return int(gb * BYTES_PER_GB)


def to_unix(moment: datetime) -> int:
    return int(moment.replace(tzinfo=timezone.utc).timestamp())


class SubscriptionManager:
    """Owns every write to the subscriptions table.

    Status is never set from outside: each write that touches used_data_gb or
    expires_at recomputes it with derive_status in the same transaction.
    """

    def __init__(self, db, panel_client, catalog, ledger):
        self.db = db
        self.panel_client = panel_client
        self.catalog = catalog
        self.ledger = ledger

    # Provisioning
    async def provision(self, user_id, plan_id, payment_id, now: Optional[datetime] = None) -> Subscription:
        now = now or utcnow()

        payment = self.ledger.get(payment_id)
        if payment.status != PAYMENT_COMPLETED:
            raise PaymentNotCompleted(f"Payment {payment_id} is {payment.status}, not completed")
        if payment.user_id != user_id or payment.plan_id != plan_id:
            raise ValueError(f"Payment {payment_id} does not belong to user {user_id} / plan {plan_id}")
        if payment.consumed_at is not None:
            existing = self.get_by_payment(payment_id)
            raise PaymentAlreadyConsumed(payment_id, existing.id if existing else None)

        plan = self.catalog.get_plan(plan_id)
        panel = self.catalog.get_panel(plan.panel_id)

        username = remote_username_for(user_id, payment_id)
        expires_at = now + timedelta(days=plan.duration_days)
        credential = str(uuid.uuid4())

        # remote first: a panel failure leaves nothing behind locally
        account = await self.panel_client.create_remote_account(
            panel, username, gb_to_bytes(plan.data_limit_gb), to_unix(expires_at), credential
        )
        vless = ((account or {}).get('proxies') or {}).get('vless') or {}
        credential = vless.get('id') or credential

        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            panel_id=panel.id,
            payment_id=payment_id,
            remote_username=username,
            remote_credential=credential,
            data_limit_gb=plan.data_limit_gb,
            used_data_gb=0.0,
            expires_at=expires_at,
            status=derive_status(plan.data_limit_gb, 0.0, expires_at, now)
        )
        try:
            with self.db.session_scope() as session:
                if not self.ledger.mark_consumed(session, payment_id, now):
                    raise PaymentAlreadyConsumed(payment_id, None)
                session.add(subscription)
                session.flush()
        except (IntegrityError, PaymentAlreadyConsumed):
            existing = self.get_by_payment(payment_id)
            raise PaymentAlreadyConsumed(payment_id, existing.id if existing else None)

        logger.info(
            f"Subscription {subscription.id} provisioned for user {user_id}: "
            f"{username} on {panel.name}, expires {expires_at:%Y-%m-%d}"
        )
        return subscription

    # Lookups
    def get(self, subscription_id) -> Subscription:
        with self.db.session_scope() as session:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFound('Subscription', subscription_id)
            return subscription

    def get_by_payment(self, payment_id) -> Optional[Subscription]:
        with self.db.session_scope() as session:
            return session.query(Subscription).filter(Subscription.payment_id == payment_id).first()

    def list_for_user(self, user_id, active_only=False) -> List[Subscription]:
        with self.db.session_scope() as session:
            query = session.query(Subscription).filter(Subscription.user_id == user_id)
            if active_only:
                query = query.filter(Subscription.status == SUB_ACTIVE)
            return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()

    def list_active(self) -> List[Subscription]:
        with self.db.session_scope() as session:
            return session.query(Subscription).filter(
                Subscription.status == SUB_ACTIVE
            ).order_by(Subscription.id).all()

    def _load_with_panel(self, subscription_id):
        with self.db.session_scope() as session:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFound('Subscription', subscription_id)
            return subscription, session.get(Panel, subscription.panel_id)

    # Usage
    async def record_usage(self, subscription_id, used_data_gb, now: Optional[datetime] = None) -> Subscription:
        now = now or utcnow()
        if used_data_gb < 0:
            raise ValueError("used_data_gb must not be negative")

        with self.db.session_scope() as session:
            subscription = session.query(Subscription).filter(
                Subscription.id == subscription_id
            ).with_for_update().first()
            if subscription is None:
                raise NotFound('Subscription', subscription_id)
            if used_data_gb < subscription.used_data_gb:
                raise UsageDecreaseRejected(subscription_id, subscription.used_data_gb, used_data_gb)

            previous = subscription.status
            subscription.used_data_gb = used_data_gb
            subscription.status = derive_status(
                subscription.data_limit_gb, used_data_gb, subscription.expires_at, now
            )
            panel = session.get(Panel, subscription.panel_id)

        if subscription.status != previous:
            logger.info(f"Subscription {subscription_id} status: {previous} -> {subscription.status}")
            if previous == SUB_ACTIVE:
                await self._disable_remote(panel, subscription.remote_username)
        return subscription

    async def sync_usage(self, subscription_id, now: Optional[datetime] = None) -> Subscription:
        """Pull used traffic from the panel and record it"""
        subscription, panel = self._load_with_panel(subscription_id)
        account = await self.panel_client.get_remote_account(panel, subscription.remote_username)
        if account is None:
            raise NotFound('Remote account', subscription.remote_username)
        used_gb = round((account.get('used_traffic') or 0) / BYTES_PER_GB, 4)
        return await self.record_usage(subscription_id, max(used_gb, subscription.used_data_gb), now)

    async def _disable_remote(self, panel, username):
        try:
            await self.panel_client.set_account_status(panel, username, ACCOUNT_DISABLED)
        except PanelError as e:
            # local status already reflects the change; the next probe or admin retry can fix the panel
            logger.warning(f"Could not disable {username} on {panel.name}: {e}")
            self.db.log_system('WARNING', 'SubscriptionManager', 'Remote disable failed', {
                'panel_id': panel.id, 'username': username, 'error': str(e)
            })

    # Lifecycle
    async def renew(self, subscription_id, new_expires_at: datetime, now: Optional[datetime] = None) -> Subscription:
        now = now or utcnow()
        if new_expires_at <= now:
            raise ValueError("new expiry must be in the future")

        subscription, panel = self._load_with_panel(subscription_id)
        target = derive_status(subscription.data_limit_gb, subscription.used_data_gb, new_expires_at, now)

        # panel first, so a failure leaves both sides on the old expiry
        await self.panel_client.update_remote_account(
            panel, subscription.remote_username,
            status=ACCOUNT_ACTIVE if target == SUB_ACTIVE else ACCOUNT_DISABLED,
            expire=to_unix(new_expires_at)
        )

        with self.db.session_scope() as session:
            subscription = session.query(Subscription).filter(
                Subscription.id == subscription_id
            ).with_for_update().first()
            if subscription is None:
                raise NotFound('Subscription', subscription_id)
            previous = subscription.status
            subscription.expires_at = new_expires_at
            subscription.status = derive_status(
                subscription.data_limit_gb, subscription.used_data_gb, new_expires_at, now
            )

        logger.info(
            f"Subscription {subscription_id} renewed until {new_expires_at:%Y-%m-%d} "
            f"({previous} -> {subscription.status})"
        )
        return subscription

    def _claim_expired(self, subscription_id, observed_status, now):
        """Flip one overdue row to expired; None when another writer got there first"""
        with self.db.session_scope() as session:
            updated = session.query(Subscription).filter(
                Subscription.id == subscription_id,
                Subscription.status == observed_status,
                Subscription.expires_at <= now
            ).update(
                {Subscription.status: SUB_EXPIRED, Subscription.updated_at: utcnow()},
                synchronize_session=False
            )
            if updated == 0:
                return None
            subscription = session.get(Subscription, subscription_id)
            return subscription, session.get(Panel, subscription.panel_id)

    async def reap_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self.db.session_scope() as session:
            overdue = session.query(Subscription.id, Subscription.status).filter(
                Subscription.status.in_([SUB_ACTIVE, SUB_SUSPENDED]),
                Subscription.expires_at <= now
            ).all()

        reaped = 0
        for subscription_id, observed in overdue:
            claimed = self._claim_expired(subscription_id, observed, now)
            if claimed is None:
                logger.debug(f"Subscription {subscription_id} already handled by another writer")
                continue
            reaped += 1
            subscription, panel = claimed
            # suspended accounts were disabled when they ran out of data
            if observed == SUB_ACTIVE:
                await self._disable_remote(panel, subscription.remote_username)

        if reaped:
            logger.info(f"Expired {reaped} subscription(s)")
        return reaped

    async def terminate(self, subscription_id) -> bool:
        """Delete the subscription; returns whether the panel account went with it"""
        subscription, panel = self._load_with_panel(subscription_id)

        remote_deleted = True
        try:
            await self.panel_client.delete_remote_account(panel, subscription.remote_username)
        except PanelError as e:
            remote_deleted = False
            error = RemoteDeleteInconsistency(panel.id, subscription.remote_username, e)
            logger.error(str(error))
            with self.db.session_scope() as session:
                session.add(RemoteCleanup(
                    panel_id=panel.id,
                    username=subscription.remote_username,
                    reason=str(e)
                ))
            self.db.log_system('ERROR', 'SubscriptionManager', 'Remote delete failed', {
                'subscription_id': subscription_id,
                'panel_id': panel.id,
                'username': subscription.remote_username,
                'error': str(e),
            })

        with self.db.session_scope() as session:
            session.query(Subscription).filter(Subscription.id == subscription_id).delete(
                synchronize_session=False
            )

        logger.info(f"Subscription {subscription_id} terminated (remote deleted: {remote_deleted})")
        return remote_deleted

    # Dead letters
    def pending_cleanups(self) -> List[RemoteCleanup]:
        with self.db.session_scope() as session:
            return session.query(RemoteCleanup).filter(
                RemoteCleanup.resolved.is_(False)
            ).order_by(RemoteCleanup.id).all()

    def resolve_cleanup(self, cleanup_id) -> RemoteCleanup:
        with self.db.session_scope() as session:
            cleanup = session.get(RemoteCleanup, cleanup_id)
            if cleanup is None:
                raise NotFound('RemoteCleanup', cleanup_id)
            cleanup.resolved = True
            return cleanup

    # Reminders
    def expiring_within(self, days, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or utcnow()
        with self.db.session_scope() as session:
            return session.query(Subscription).filter(
                Subscription.status == SUB_ACTIVE,
                Subscription.expires_at > now,
                Subscription.expires_at <= now + timedelta(days=days)
            ).order_by(Subscription.expires_at).all()

    def low_on_data(self, threshold_gb) -> List[Subscription]:
        with self.db.session_scope() as session:
            return session.query(Subscription).filter(
                Subscription.status == SUB_ACTIVE,
                Subscription.data_limit_gb - Subscription.used_data_gb <= threshold_gb
            ).order_by(Subscription.id).all()

    def subscription_stats(self, now: Optional[datetime] = None):
        now = now or utcnow()
        with self.db.session_scope() as session:
            counts = dict(session.query(
                Subscription.status, func.count(Subscription.id)
            ).group_by(Subscription.status).all())
            active_users = session.query(
                func.count(func.distinct(Subscription.user_id))
            ).filter(Subscription.status == SUB_ACTIVE).scalar() or 0
            new_today = session.query(Subscription).filter(
                Subscription.created_at >= now.replace(hour=0, minute=0, second=0, microsecond=0)
            ).count()

        return {
            'active': counts.get(SUB_ACTIVE, 0),
            'suspended': counts.get(SUB_SUSPENDED, 0),
            'expired': counts.get(SUB_EXPIRED, 0),
            'active_users': active_users,
            'new_today': new_today,
        }
