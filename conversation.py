import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytz
from sqlalchemy.exc import IntegrityError

from config import ADMIN_IDS, MESSAGES, PAYMENT_METHODS, TIMEZONE
from config_generator import RenderedConfig
from database import (
    ConversationSession, utcnow,
    METHOD_CARD, METHOD_CRYPTO, METHOD_GATEWAY, PAYMENT_METHOD_CHOICES,
    PAYMENT_PENDING, PAYMENT_COMPLETED
)
from errors import (
    VpnBotError, NotFound, PanelError, ConfigGenerationFailed,
    InvalidStateTransition, GatewayError, PaymentAlreadyConsumed, SessionConflict
)
from security import is_admin, validate_input, parse_panel_credentials

logger = logging.getLogger(__name__)

# Conversation states
STATE_IDLE = 'idle'
STATE_SELECTING_PLAN = 'selecting_plan'
STATE_CHOOSING_METHOD = 'choosing_payment_method'
STATE_AWAITING_CONFIRMATION = 'awaiting_payment_confirmation'
STATE_AWAITING_PANEL_URL = 'awaiting_panel_url'
STATE_AWAITING_PANEL_CREDENTIALS = 'awaiting_panel_credentials'

ADMIN_STATES = (STATE_AWAITING_PANEL_URL, STATE_AWAITING_PANEL_CREDENTIALS)

METHOD_LABELS = {
    METHOD_CARD: "💳 کارت به کارت",
    METHOD_CRYPTO: "🪙 ارز دیجیتال",
    METHOD_GATEWAY: "🌐 درگاه پرداخت",
}


class EventType(Enum):
    VIEW_PLANS = 'view_plans'
    BUY = 'buy'
    SELECT_PLAN = 'select_plan'
    PICK_METHOD = 'pick_method'
    CONFIRM = 'confirm'
    TEXT = 'text'
    CANCEL = 'cancel'
    ADD_PANEL = 'add_panel'
    MY_SUBSCRIPTIONS = 'my_subscriptions'
    GET_CONFIG = 'get_config'


@dataclass
class Event:
    type: EventType
    plan_id: Optional[int] = None
    method: Optional[str] = None
    text: Optional[str] = None
    subscription_id: Optional[int] = None


@dataclass
class Button:
    label: str
    data: Optional[str] = None
    url: Optional[str] = None


@dataclass
class Reply:
    text: str
    buttons: List[List[Button]] = field(default_factory=list)
    config: Optional[RenderedConfig] = None
    ok: bool = True
    # forwarded to every admin by the transport
    admin_notice: Optional[str] = None


@dataclass
class SessionState:
    user_id: int
    state: str = STATE_IDLE
    selected_plan_id: Optional[int] = None
    pending_payment_id: Optional[int] = None
    scratch: Dict = field(default_factory=dict)
    version: int = 0
    persisted: bool = False

    def reset(self):
        return replace(self, state=STATE_IDLE, selected_plan_id=None,
                       pending_payment_id=None, scratch={})


def format_date(moment):
    """Stored naive UTC -> local date for display"""
    return pytz.utc.localize(moment).astimezone(TIMEZONE).strftime('%Y-%m-%d')


class ConversationController:
    """Per-user purchase conversation on top of the ledger and the subscription manager.

    Events of one user are serialized by an asyncio lock; the session itself
    lives in the conversation_sessions table and is written back with an
    optimistic version check, so a restart or a second bot process never
    works from a stale copy.
    """

    def __init__(self, db, catalog, ledger, subscriptions, config_generator,
                 panel_client, admin_ids=None):
        self.db = db
        self.catalog = catalog
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.config_generator = config_generator
        self.panel_client = panel_client
        self.admin_ids = ADMIN_IDS if admin_ids is None else admin_ids
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    # Session persistence
    def load_session(self, user_id) -> SessionState:
        with self.db.session_scope() as session:
            row = session.get(ConversationSession, user_id)
            if row is None:
                return SessionState(user_id=user_id)
            return SessionState(
                user_id=user_id,
                state=row.state,
                selected_plan_id=row.selected_plan_id,
                pending_payment_id=row.pending_payment_id,
                scratch=dict(row.scratch or {}),
                version=row.version,
                persisted=True
            )

    def save_session(self, state: SessionState) -> SessionState:
        values = {
            'state': state.state,
            'selected_plan_id': state.selected_plan_id,
            'pending_payment_id': state.pending_payment_id,
            'scratch': dict(state.scratch),
        }
        try:
            with self.db.session_scope() as session:
                if not state.persisted:
                    session.add(ConversationSession(user_id=state.user_id, version=1, **values))
                    session.flush()
                else:
                    values['version'] = state.version + 1
                    values['updated_at'] = utcnow()
                    updated = session.query(ConversationSession).filter(
                        ConversationSession.user_id == state.user_id,
                        ConversationSession.version == state.version
                    ).update(values, synchronize_session=False)
                    if updated == 0:
                        raise SessionConflict(f"Session of user {state.user_id} changed concurrently")
        except IntegrityError:
            raise SessionConflict(f"Session of user {state.user_id} was created concurrently")

        return replace(state, version=state.version + 1, persisted=True)

    # Entry point
    async def handle(self, user_id: int, event: Event) -> Reply:
        async with self._locks[user_id]:
            session = self.load_session(user_id)
            try:
                reply, new_session = await self._dispatch(session, event)
                if new_session is not None and new_session != session:
                    self.save_session(new_session)
                return reply
            except VpnBotError as e:
                # the specific error stays in the logs; the user only sees a retry hint
                logger.error(f"Error handling {event.type.value} for user {user_id}: {e}")
                self.db.log_system('ERROR', 'ConversationController', str(e), {
                    'user_id': user_id,
                    'event': event.type.value,
                    'state': session.state,
                    'error_type': type(e).__name__,
                })
                return Reply(MESSAGES["try_again"], ok=False)

    async def _dispatch(self, session: SessionState, event: Event) -> Tuple[Reply, Optional[SessionState]]:
        kind = event.type
        state = session.state

        if kind == EventType.CANCEL:
            return self._cancel(session)
        if kind == EventType.MY_SUBSCRIPTIONS:
            return self._my_subscriptions(session.user_id), None
        if kind == EventType.GET_CONFIG:
            return await self._get_config(session.user_id, event.subscription_id), None

        # admin identity is checked before any transition of the admin sub-flow
        if kind == EventType.ADD_PANEL or state in ADMIN_STATES:
            if not is_admin(session.user_id, self.admin_ids):
                return Reply(MESSAGES["forbidden"], ok=False), None
            if kind == EventType.ADD_PANEL and state == STATE_IDLE:
                return Reply(MESSAGES["panel_url_prompt"]), replace(
                    session, state=STATE_AWAITING_PANEL_URL, scratch={}
                )
            if kind == EventType.TEXT and state == STATE_AWAITING_PANEL_URL:
                return self._panel_url(session, event.text)
            if kind == EventType.TEXT and state == STATE_AWAITING_PANEL_CREDENTIALS:
                return await self._panel_credentials(session, event.text)
            return self._invalid(), None

        if kind == EventType.VIEW_PLANS and state in (STATE_IDLE, STATE_SELECTING_PLAN):
            return self._plan_list(), None
        if kind == EventType.BUY and state == STATE_IDLE:
            reply = self._plan_list()
            return reply, (replace(session, state=STATE_SELECTING_PLAN) if reply.ok else None)
        if kind == EventType.SELECT_PLAN and state in (STATE_IDLE, STATE_SELECTING_PLAN):
            return self._select_plan(session, event.plan_id)
        if kind == EventType.PICK_METHOD and state == STATE_CHOOSING_METHOD:
            return await self._pick_method(session, event.method)
        if kind in (EventType.CONFIRM, EventType.TEXT) and state == STATE_AWAITING_CONFIRMATION:
            return await self._confirm(session, event.text)

        return self._invalid(), None

    @staticmethod
    def _invalid() -> Reply:
        return Reply(MESSAGES["invalid_state"], ok=False)

    # Purchase flow
    def _plan_list(self) -> Reply:
        plans = self.catalog.list_visible_plans()
        if not plans:
            return Reply(MESSAGES["no_plans"], ok=False)

        lines = ["📦 پلن‌های موجود:\n"]
        buttons = []
        for plan in plans:
            lines.append(
                f"🔸 {plan.name}\n"
                f"💰 قیمت: {plan.price:,.0f} تومان\n"
                f"⏱ مدت: {plan.duration_days} روز\n"
                f"📊 حجم: {plan.data_limit_gb:g} GB\n"
            )
            buttons.append([Button(f"🛒 {plan.name}", data=f"select_plan:{plan.id}")])
        return Reply("\n".join(lines), buttons=buttons)

    def available_methods(self):
        return [
            method for method in PAYMENT_METHOD_CHOICES
            if method != METHOD_GATEWAY or self.ledger.gateway is not None
        ]

    def _select_plan(self, session, plan_id):
        plan = self.catalog.get_visible_plan(plan_id) if plan_id is not None else None
        if plan is None:
            return Reply(MESSAGES["plan_unavailable"], ok=False), None

        buttons = [
            [Button(METHOD_LABELS[method], data=f"pay:{method}")]
            for method in self.available_methods()
        ]
        buttons.append([Button("❌ انصراف", data="cancel")])
        text = (
            f"🔸 {plan.name} - {plan.price:,.0f} تومان\n\n"
            f"{MESSAGES['choose_method']}"
        )
        return Reply(text, buttons=buttons), replace(
            session, state=STATE_CHOOSING_METHOD, selected_plan_id=plan.id
        )

    async def _pick_method(self, session, method):
        if method not in self.available_methods():
            return self._invalid(), None
        plan = self.catalog.get_visible_plan(session.selected_plan_id)
        if plan is None:
            return Reply(MESSAGES["plan_unavailable"], ok=False), session.reset()

        payment = self.ledger.create(session.user_id, plan.id, plan.price, method)
        buttons = []
        if method == METHOD_GATEWAY:
            try:
                payment_url = await self.ledger.initiate_hosted_charge(payment.id, plan.price)
            except GatewayError:
                self.ledger.fail(payment.id, 'gateway_request_failed')
                raise
            text = f"🌐 برای پرداخت {plan.price:,.0f} تومان روی دکمه زیر بزنید و پس از پرداخت، تایید را بزنید."
            buttons.append([Button("💳 پرداخت", url=payment_url)])
        elif method == METHOD_CARD:
            card = PAYMENT_METHODS["card_to_card"]
            numbers = "\n".join(card["numbers"])
            text = (
                f"💳 مبلغ {plan.price:,.0f} تومان را به کارت زیر واریز کنید:\n\n"
                f"{numbers}\n"
                f"به نام: {card['name']}\n\n"
                f"{MESSAGES['send_receipt']}"
            )
        else:
            crypto = PAYMENT_METHODS["crypto"]
            text = (
                f"🪙 معادل {plan.price:,.0f} تومان {crypto['currency']} به آدرس زیر ارسال کنید:\n\n"
                f"{crypto['wallet']}\n\n"
                f"{MESSAGES['send_receipt']}"
            )

        buttons.append([Button("✅ تایید پرداخت", data="confirm")])
        buttons.append([Button("❌ انصراف", data="cancel")])
        return Reply(text, buttons=buttons), replace(
            session, state=STATE_AWAITING_CONFIRMATION, pending_payment_id=payment.id
        )

    async def _confirm(self, session, text=None):
        payment = self.ledger.get(session.pending_payment_id)

        if payment.status == PAYMENT_PENDING:
            if payment.method == METHOD_GATEWAY:
                if not payment.gateway_authority:
                    return Reply(MESSAGES["payment_pending"], ok=False), None
                payment = await self.ledger.verify_hosted_charge(
                    payment.gateway_authority, 'OK', fail_unpaid=False
                )
            else:
                reference = (text or '').strip()
                if not reference:
                    return Reply(MESSAGES["send_receipt"]), None
                if not validate_input(reference, 'reference'):
                    return Reply(MESSAGES["send_receipt"], ok=False), None
                if payment.method == METHOD_CRYPTO:
                    payment = self.ledger.submit_receipt(payment.id, reference, {'tx_hash': reference})
                else:
                    payment = self.ledger.submit_receipt(payment.id, reference)
                notice = (
                    f"🧾 رسید جدید\n"
                    f"پرداخت: {payment.id}\n"
                    f"کاربر: {payment.user_id}\n"
                    f"مبلغ: {payment.amount:,.0f}\n"
                    f"روش: {payment.method}\n"
                    f"مرجع: {reference}\n\n"
                    f"تایید: /approve {payment.id}\n"
                    f"رد: /reject {payment.id}"
                )
                return Reply(MESSAGES["awaiting_admin"], admin_notice=notice), replace(
                    session, scratch=dict(session.scratch, receipt=reference)
                )

        if payment.status == PAYMENT_COMPLETED:
            reply = await self._deliver(payment)
            return reply, session.reset()

        if payment.status == PAYMENT_PENDING:
            return Reply(MESSAGES["payment_pending"]), None

        # failed, cancelled or refunded: nothing left to wait for
        return Reply(MESSAGES["payment_failed"], ok=False), session.reset()

    def _cancel(self, session):
        if session.pending_payment_id is not None:
            try:
                self.ledger.cancel(session.pending_payment_id)
            except InvalidStateTransition as e:
                # settled in the meantime; leave it alone
                logger.info(f"Pending payment not cancelled: {e}")
        return Reply(MESSAGES["cancelled"]), session.reset()

    # Delivery
    async def _deliver(self, payment) -> Reply:
        subscription = self.subscriptions.get_by_payment(payment.id)
        if subscription is None:
            try:
                subscription = await self.subscriptions.provision(
                    payment.user_id, payment.plan_id, payment.id
                )
            except PaymentAlreadyConsumed:
                subscription = self.subscriptions.get_by_payment(payment.id)
                if subscription is None:
                    raise

        plan = self.catalog.get_plan(subscription.plan_id)
        text = MESSAGES["service_purchase"].format(
            name=plan.name,
            expire_date=format_date(subscription.expires_at),
            data_limit=f"{subscription.data_limit_gb:g}"
        )

        try:
            rendered = await self._render(subscription)
        except (PanelError, ConfigGenerationFailed) as e:
            # the account exists; the user can fetch the config again later
            logger.error(f"Config for subscription {subscription.id} not rendered: {e}")
            return Reply(f"{text}\n{MESSAGES['config_unavailable']}")

        return Reply(f"{text}\n{rendered.combined_text}", config=rendered)

    async def _render(self, subscription) -> RenderedConfig:
        panel = self.catalog.get_panel(subscription.panel_id)
        raw = await self.panel_client.get_account_config(panel, subscription.remote_username)
        return self.config_generator.render(subscription, panel, raw)

    def _my_subscriptions(self, user_id) -> Reply:
        subscriptions = self.subscriptions.list_for_user(user_id)
        if not subscriptions:
            return Reply(MESSAGES["no_subscriptions"], ok=False)

        lines = ["📊 سرویس‌های شما:\n"]
        buttons = []
        for subscription in subscriptions:
            lines.append(
                f"🔸 #{subscription.id} ({subscription.status})\n"
                f"📅 انقضا: {format_date(subscription.expires_at)}\n"
                f"📊 باقیمانده: {subscription.remaining_data_gb:.2f} از {subscription.data_limit_gb:g} GB\n"
            )
            buttons.append([Button(f"🔐 کانفیگ #{subscription.id}", data=f"config:{subscription.id}")])
        return Reply("\n".join(lines), buttons=buttons)

    async def _get_config(self, user_id, subscription_id) -> Reply:
        try:
            subscription = self.subscriptions.get(subscription_id)
        except NotFound:
            return self._invalid()
        if subscription.user_id != user_id:
            return Reply(MESSAGES["forbidden"], ok=False)

        rendered = await self._render(subscription)
        return Reply(rendered.combined_text, config=rendered)

    # Admin sub-flow: panel registration
    def _panel_url(self, session, text):
        if not validate_input(text, 'url'):
            return Reply(MESSAGES["invalid_url"], ok=False), None
        url = text.strip().rstrip('/')
        return Reply(MESSAGES["panel_credentials_prompt"]), replace(
            session,
            state=STATE_AWAITING_PANEL_CREDENTIALS,
            scratch={'panel_url': url, 'panel_name': urlsplit(url).hostname}
        )

    async def _panel_credentials(self, session, text):
        credentials = parse_panel_credentials(text)
        if credentials is None:
            return Reply(MESSAGES["invalid_credentials"], ok=False), None

        username, password = credentials
        panel = await self.catalog.register_panel(
            session.scratch['panel_name'], session.scratch['panel_url'], username, password
        )
        return Reply(
            f"✅ پنل {panel.name} ثبت شد (شناسه {panel.id})\n"
            f"وضعیت اتصال: {panel.connectivity_status}"
        ), session.reset()

    # Settlement from outside the user's own conversation
    async def fulfil_payment(self, payment_id) -> Tuple[int, Reply]:
        """Provision and render for a completed payment on behalf of its owner"""
        payment = self.ledger.get(payment_id)
        if payment.status != PAYMENT_COMPLETED:
            raise InvalidStateTransition(f"Payment {payment_id}", payment.status, PAYMENT_COMPLETED)

        async with self._locks[payment.user_id]:
            reply = await self._deliver(payment)
            self.release_session(payment.user_id, payment_id)
        return payment.user_id, reply

    def release_session(self, user_id, payment_id):
        session = self.load_session(user_id)
        if session.pending_payment_id != payment_id:
            return
        try:
            self.save_session(session.reset())
        except SessionConflict as e:
            logger.warning(f"Session of user {user_id} not reset: {e}")

    async def handle_gateway_callback(self, authority, status) -> Optional[Tuple[int, Reply]]:
        payment = await self.ledger.verify_hosted_charge(authority, status)
        if payment is None:
            return None
        if payment.status == PAYMENT_COMPLETED:
            return await self.fulfil_payment(payment.id)

        if payment.status != PAYMENT_PENDING:
            async with self._locks[payment.user_id]:
                self.release_session(payment.user_id, payment.id)
            return payment.user_id, Reply(MESSAGES["payment_failed"], ok=False)

        return payment.user_id, Reply(MESSAGES["payment_pending"])
