import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import aiohttp

from config import GATEWAY_SETTINGS
from database import (
    Payment, utcnow,
    PAYMENT_PENDING, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_REFUNDED,
    PAYMENT_METHOD_CHOICES, METHOD_GATEWAY
)
from errors import NotFound, InvalidStateTransition, AmountMismatch, GatewayError

logger = logging.getLogger(__name__)

# The only edges a payment may take
ALLOWED_TRANSITIONS = {
    PAYMENT_PENDING: {PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED},
    PAYMENT_COMPLETED: {PAYMENT_REFUNDED},
}

GATEWAY_OK = 'OK'
GATEWAY_SUCCESS_CODES = (100, 101)  # 101: already verified by an earlier call
GATEWAY_AMOUNT_MISMATCH_CODE = -50
AMOUNT_TOLERANCE = 0.0001


class HostedGateway:
    """ZarinPal v4 style gateway: request -> redirect -> callback -> verify"""

    def __init__(self, settings=None):
        settings = settings or GATEWAY_SETTINGS
        self.merchant_id = settings['merchant_id']
        self.request_url = settings['request_url']
        self.verify_url = settings['verify_url']
        self.start_pay_template = settings['start_pay_url']
        self.callback_url = settings['callback_url']
        self.timeout = aiohttp.ClientTimeout(total=settings.get('timeout', 10))

    async def _post(self, url, body) -> dict:
        if not self.merchant_id:
            raise GatewayError("Gateway merchant id is not configured")
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=body, headers={'accept': 'application/json'}) as resp:
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise GatewayError(f"Gateway call to {url} failed: {e}")
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected gateway response: {data}")
        return data

    @staticmethod
    def _whole_amount(amount) -> int:
        # the gateway only takes whole currency units
        if float(amount) != int(amount):
            raise GatewayError(f"Gateway amounts must be whole numbers, got {amount}")
        return int(amount)

    @staticmethod
    def _result(data) -> Tuple[dict, dict]:
        result = data.get('data') if isinstance(data.get('data'), dict) else {}
        errors = data.get('errors') if isinstance(data.get('errors'), dict) else {}
        return result, errors

    async def request_payment(self, amount, description, callback_url=None) -> str:
        data = await self._post(self.request_url, {
            'merchant_id': self.merchant_id,
            'amount': self._whole_amount(amount),
            'callback_url': callback_url or self.callback_url,
            'description': description,
        })
        result, errors = self._result(data)
        if result.get('code') == 100 and result.get('authority'):
            return result['authority']
        raise GatewayError(f"Gateway rejected payment request: {errors.get('message', data)}")

    async def verify(self, authority, amount) -> dict:
        data = await self._post(self.verify_url, {
            'merchant_id': self.merchant_id,
            'authority': authority,
            'amount': self._whole_amount(amount),
        })
        result, errors = self._result(data)
        return {
            'code': result.get('code', errors.get('code')),
            'reference': result.get('ref_id'),
            'amount': result.get('amount'),
            'message': errors.get('message'),
        }

    def start_pay_url(self, authority) -> str:
        return self.start_pay_template.format(authority=authority)


class PaymentLedger:
    """Payment intents and their status machine.

    Every status write is a conditional update guarded by the status the
    writer observed, so of two concurrent writers exactly one wins and the
    other sees zero affected rows.
    """

    def __init__(self, db, gateway: Optional[HostedGateway] = None):
        self.db = db
        self.gateway = gateway

    def create(self, user_id, plan_id, amount, method) -> Payment:
        if method not in PAYMENT_METHOD_CHOICES:
            raise ValueError(f"Unknown payment method: {method}")
        if amount < 0:
            raise ValueError("amount must not be negative")

        with self.db.session_scope() as session:
            payment = Payment(
                user_id=user_id,
                plan_id=plan_id,
                amount=amount,
                method=method,
                status=PAYMENT_PENDING,
                gateway_metadata={}
            )
            session.add(payment)
            session.flush()

        logger.info(f"Payment created: {payment.id} for user {user_id} ({method}, {amount})")
        return payment

    def get(self, payment_id) -> Payment:
        with self.db.session_scope() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFound('Payment', payment_id)
            return payment

    def find_by_authority(self, authority) -> Optional[Payment]:
        with self.db.session_scope() as session:
            return session.query(Payment).filter(Payment.gateway_authority == authority).first()

    def list_for_user(self, user_id) -> List[Payment]:
        with self.db.session_scope() as session:
            return session.query(Payment).filter(
                Payment.user_id == user_id
            ).order_by(Payment.created_at.desc(), Payment.id.desc()).all()

    def list_by_status(self, status) -> List[Payment]:
        with self.db.session_scope() as session:
            return session.query(Payment).filter(
                Payment.status == status
            ).order_by(Payment.created_at.desc(), Payment.id.desc()).all()

    def transition(self, payment_id, target_status, reference=None, **fields) -> Payment:
        """Move a payment along one allowed edge or raise InvalidStateTransition"""
        with self.db.session_scope() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFound('Payment', payment_id)

            current = payment.status
            if target_status not in ALLOWED_TRANSITIONS.get(current, ()):
                raise InvalidStateTransition(f"Payment {payment_id}", current, target_status)

            values = {Payment.status: target_status, Payment.updated_at: utcnow()}
            if reference is not None:
                values[Payment.transaction_reference] = str(reference)
            for key, value in fields.items():
                values[getattr(Payment, key)] = value

            updated = session.query(Payment).filter(
                Payment.id == payment_id,
                Payment.status == current
            ).update(values, synchronize_session=False)
            if updated == 0:
                session.refresh(payment)
                raise InvalidStateTransition(f"Payment {payment_id}", payment.status, target_status)

            session.refresh(payment)

        logger.info(f"Payment {payment_id} status updated: {current} -> {target_status}")
        return payment

    def _settle(self, payment_id, target_status, reference=None, **fields) -> Tuple[Payment, bool]:
        """Like transition(), but losing a race to another settlement is not an error"""
        try:
            return self.transition(payment_id, target_status, reference, **fields), True
        except InvalidStateTransition:
            payment = self.get(payment_id)
            if payment.status != PAYMENT_PENDING:
                logger.info(f"Payment {payment_id} already settled as {payment.status}")
                return payment, False
            raise

    def complete(self, payment_id, reference=None) -> Tuple[Payment, bool]:
        """Mark a payment completed; confirming it a second time is a no-op"""
        payment = self.get(payment_id)
        if payment.status == PAYMENT_COMPLETED:
            return payment, False
        payment, changed = self._settle(payment_id, PAYMENT_COMPLETED, reference)
        if not changed and payment.status != PAYMENT_COMPLETED:
            raise InvalidStateTransition(f"Payment {payment_id}", payment.status, PAYMENT_COMPLETED)
        return payment, changed

    def cancel(self, payment_id) -> Payment:
        return self.transition(payment_id, PAYMENT_CANCELLED)

    def fail(self, payment_id, reason=None) -> Payment:
        payment = self.get(payment_id)
        metadata = dict(payment.gateway_metadata or {})
        if reason:
            metadata['failure_reason'] = reason
        return self.transition(payment_id, PAYMENT_FAILED, gateway_metadata=metadata)

    def _merge_pending(self, payment_id, values, metadata_updates) -> Payment:
        with self.db.session_scope() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFound('Payment', payment_id)
            if payment.status != PAYMENT_PENDING:
                raise InvalidStateTransition(f"Payment {payment_id}", payment.status, PAYMENT_PENDING)

            metadata = dict(payment.gateway_metadata or {})
            metadata.update(metadata_updates)
            values = dict(values)
            values[Payment.gateway_metadata] = metadata
            values[Payment.updated_at] = utcnow()

            updated = session.query(Payment).filter(
                Payment.id == payment_id,
                Payment.status == PAYMENT_PENDING
            ).update(values, synchronize_session=False)
            session.refresh(payment)
            if updated == 0:
                raise InvalidStateTransition(f"Payment {payment_id}", payment.status, PAYMENT_PENDING)
            return payment

    def submit_receipt(self, payment_id, reference, details=None) -> Payment:
        """Attach the user's receipt (card-to-card) or tx hash (crypto) to a pending payment"""
        metadata = {'receipt': str(reference), 'receipt_at': utcnow().isoformat()}
        metadata.update(details or {})
        payment = self._merge_pending(
            payment_id, {Payment.transaction_reference: str(reference)}, metadata
        )
        logger.info(f"Receipt recorded for payment {payment_id}")
        return payment

    def verify_crypto(self, payment_id, tx_hash, amount) -> Payment:
        payment = self.get(payment_id)
        if abs(payment.amount - amount) > AMOUNT_TOLERANCE:
            self._flag_amount_mismatch(payment, amount)
            raise AmountMismatch(payment_id, payment.amount, amount)
        return self.submit_receipt(payment_id, tx_hash, {'crypto_amount': amount})

    def _flag_amount_mismatch(self, payment, received):
        logger.warning(
            f"SECURITY: amount mismatch on payment {payment.id} (user {payment.user_id}): "
            f"expected {payment.amount}, got {received}"
        )
        self.db.log_system('SECURITY', 'PaymentLedger', 'Amount mismatch', {
            'payment_id': payment.id,
            'user_id': payment.user_id,
            'expected': payment.amount,
            'received': received,
        })
        metadata = dict(payment.gateway_metadata or {})
        metadata['failure_reason'] = 'amount_mismatch'
        metadata['reported_amount'] = received
        failed, _ = self._settle(payment.id, PAYMENT_FAILED, gateway_metadata=metadata)
        return failed

    async def initiate_hosted_charge(self, payment_id, amount) -> str:
        if self.gateway is None:
            raise GatewayError("Hosted gateway is not configured")

        payment = self.get(payment_id)
        if payment.method != METHOD_GATEWAY:
            raise ValueError(f"Payment {payment_id} is not a hosted gateway payment")
        if payment.status != PAYMENT_PENDING:
            raise InvalidStateTransition(f"Payment {payment_id}", payment.status, PAYMENT_PENDING)
        if abs(payment.amount - amount) > AMOUNT_TOLERANCE:
            raise AmountMismatch(payment_id, payment.amount, amount)

        authority = await self.gateway.request_payment(amount, f"VPN Payment - {payment_id}")
        payment_url = self.gateway.start_pay_url(authority)
        self._merge_pending(
            payment_id,
            {Payment.gateway_authority: authority},
            {'authority': authority, 'payment_url': payment_url}
        )

        logger.info(f"Hosted charge created for payment {payment_id}: {authority}")
        return payment_url

    async def verify_hosted_charge(self, authority, gateway_status, fail_unpaid=True) -> Optional[Payment]:
        """Settle the payment behind a gateway authority.

        Safe under duplicate callback delivery: a payment that is no longer
        pending is returned as-is without calling the gateway again.
        With fail_unpaid=False (a user asking whether the charge went through)
        a non-success verify code leaves the payment pending, so the real
        callback can still settle it.
        """
        payment = self.find_by_authority(authority)
        if payment is None:
            logger.warning(f"No payment found for gateway authority: {authority}")
            return None
        if payment.status != PAYMENT_PENDING:
            logger.info(f"Duplicate verification for payment {payment.id} ({payment.status})")
            return payment

        if gateway_status != GATEWAY_OK:
            logger.warning(f"Gateway reported {gateway_status} for payment {payment.id}")
            failed, _ = self._settle(payment.id, PAYMENT_FAILED)
            return failed

        if self.gateway is None:
            raise GatewayError("Hosted gateway is not configured")
        result = await self.gateway.verify(authority, payment.amount)

        reported = result.get('amount')
        if result.get('code') == GATEWAY_AMOUNT_MISMATCH_CODE or (
                reported is not None and abs(float(reported) - payment.amount) > AMOUNT_TOLERANCE):
            return self._flag_amount_mismatch(payment, reported)

        if result.get('code') not in GATEWAY_SUCCESS_CODES:
            if not fail_unpaid:
                logger.info(
                    f"Payment {payment.id} not paid yet: code={result.get('code')} {result.get('message')}"
                )
                return payment
            logger.error(
                f"Gateway verification failed for payment {payment.id}: "
                f"code={result.get('code')} {result.get('message')}"
            )
            failed, _ = self._settle(payment.id, PAYMENT_FAILED)
            return failed

        completed, changed = self._settle(payment.id, PAYMENT_COMPLETED, result.get('reference'))
        if changed:
            logger.info(f"Hosted charge verified for payment {payment.id}: {result.get('reference')}")
        return completed

    def refund(self, payment_id, reason) -> Payment:
        payment = self.get(payment_id)
        metadata = dict(payment.gateway_metadata or {})
        metadata['refunded_at'] = utcnow().isoformat()
        refunded = self.transition(
            payment_id, PAYMENT_REFUNDED, refund_reason=reason, gateway_metadata=metadata
        )
        self.db.log_system('INFO', 'PaymentLedger', 'Payment refunded', {
            'payment_id': payment_id, 'reason': reason
        })
        return refunded

    # Read models, always computed from the stored rows
    def _completed_since(self, session, since=None, until=None):
        query = session.query(Payment).filter(Payment.status == PAYMENT_COMPLETED)
        if since is not None:
            query = query.filter(Payment.created_at >= since)
        if until is not None:
            query = query.filter(Payment.created_at < until)
        return query.all()

    def sales_between(self, start, end) -> Dict[str, float]:
        with self.db.session_scope() as session:
            payments = self._completed_since(session, start, end)
            return {'count': len(payments), 'total': sum(p.amount for p in payments)}

    def sales_stats(self, now: Optional[datetime] = None) -> Dict[str, float]:
        now = now or utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = today.replace(day=1)

        with self.db.session_scope() as session:
            payments = self._completed_since(session)

        return {
            'total_sales': sum(p.amount for p in payments),
            'total_orders': len(payments),
            'today_sales': sum(p.amount for p in payments if p.created_at >= today),
            'week_sales': sum(p.amount for p in payments if p.created_at >= now - timedelta(days=7)),
            'month_sales': sum(p.amount for p in payments if p.created_at >= month_start),
        }

    def method_breakdown(self) -> Dict[str, Dict[str, float]]:
        breakdown = {}
        with self.db.session_scope() as session:
            for payment in self._completed_since(session):
                entry = breakdown.setdefault(payment.method, {'count': 0, 'amount': 0})
                entry['count'] += 1
                entry['amount'] += payment.amount
        return breakdown

    def monthly_sales(self, months=12, now: Optional[datetime] = None) -> List[Dict[str, float]]:
        now = now or utcnow()
        year, month = now.year, now.month - (months - 1)
        while month <= 0:
            month += 12
            year -= 1
        start = datetime(year, month, 1)

        buckets = {}
        with self.db.session_scope() as session:
            for payment in self._completed_since(session, start):
                key = payment.created_at.strftime('%Y-%m')
                buckets[key] = buckets.get(key, 0) + payment.amount
        return [{'month': key, 'sales': buckets[key]} for key in sorted(buckets)]

    def mark_consumed(self, session, payment_id, now=None) -> bool:
        """Claim a completed payment for one subscription inside the caller's transaction"""
        updated = session.query(Payment).filter(
            Payment.id == payment_id,
            Payment.status == PAYMENT_COMPLETED,
            Payment.consumed_at.is_(None)
        ).update({Payment.consumed_at: now or utcnow()}, synchronize_session=False)
        return updated == 1
