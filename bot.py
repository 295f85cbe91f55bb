import asyncio
import logging
import traceback
from functools import wraps
from typing import Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import (
    Application, CommandHandler, CallbackQueryHandler,
    MessageHandler, filters, CallbackContext
)

from admin import AdminActions
from config import BOT_TOKEN, ADMIN_IDS, DATABASE_URL, GATEWAY_SETTINGS, MESSAGES
from config_generator import ConfigGenerator
from conversation import ConversationController, Event, EventType, Reply
from database import Database
from errors import VpnBotError
from gateway_callback import create_app, start_callback_server
from maintenance import ExpiryReaper, PanelMonitor, ReminderNotifier, LogCleaner, UsageSync
from panel_client import PanelClient
from payments import HostedGateway, PaymentLedger
from plan_catalog import PlanCatalog
from security import admin_only, rate_limit
from subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


class LogManager:
    def __init__(self, db):
        self.db = db

    async def log(self, level: str, module: str, message: str, details: dict = None):
        self.db.log_system(level, module, message, details)


class ErrorHandler:
    def __init__(self, bot):
        self.bot = bot

    async def handle_error(self, update: object, context: CallbackContext):
        error = context.error
        logger.error(f"Unhandled error: {error}", exc_info=error)
        await self.bot.log_manager.log('ERROR', 'Bot', str(error), {
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        })

        if not isinstance(update, Update) or not update.effective_user:
            return
        try:
            user_id = update.effective_user.id
            if user_id in self.bot.admin_ids:
                await context.bot.send_message(user_id, f"❌ خطای سیستم:\n{error}")
            else:
                await context.bot.send_message(user_id, MESSAGES["try_again"])
        except Exception as e:
            logger.error(f"Error in error handler: {e}")


def admin_command(usage):
    """Admin command with argument parsing and specific error reporting"""
    def decorator(func):
        @wraps(func)
        async def wrapper(self, update: Update, context: CallbackContext):
            try:
                await func(self, update, context, *context.args)
            except (TypeError, IndexError):
                await update.effective_message.reply_text(f"ℹ️ استفاده: {usage}")
            except (VpnBotError, ValueError) as e:
                await update.effective_message.reply_text(f"❌ {type(e).__name__}: {e}")
        return admin_only(wrapper)
    return decorator


class VPNBot:
    def __init__(self, db=None, admin_ids=None):
        self.db = db or Database(DATABASE_URL)
        self.admin_ids = ADMIN_IDS if admin_ids is None else admin_ids

        self.panel_client = PanelClient(self.db)
        self.gateway = HostedGateway() if GATEWAY_SETTINGS["merchant_id"] else None
        self.ledger = PaymentLedger(self.db, self.gateway)
        self.catalog = PlanCatalog(self.db, self.panel_client)
        self.subscriptions = SubscriptionManager(self.db, self.panel_client, self.catalog, self.ledger)
        self.config_generator = ConfigGenerator()
        self.controller = ConversationController(
            self.db, self.catalog, self.ledger, self.subscriptions,
            self.config_generator, self.panel_client, self.admin_ids
        )
        self.admin = AdminActions(
            self.db, self.catalog, self.ledger, self.subscriptions,
            self.controller, self.panel_client
        )

        self.log_manager = LogManager(self.db)
        self.error_handler = ErrorHandler(self)
        self.application: Optional[Application] = None
        self._tasks = []
        self._callback_runner = None

    async def initialize(self, application: Application):
        """Start background tasks once the application is up"""
        self.application = application
        jobs = [
            ExpiryReaper(self.subscriptions),
            UsageSync(self.subscriptions),
            PanelMonitor(self.panel_client),
            ReminderNotifier(self.subscriptions, self.send_text),
            LogCleaner(self.db),
        ]
        self._tasks = [asyncio.create_task(job.start()) for job in jobs]

        if self.gateway is not None:
            self._callback_runner = await start_callback_server(
                create_app(self.controller, self.send_reply)
            )
        logger.info("Bot initialized")

    async def shutdown(self, application: Application):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._callback_runner is not None:
            await self._callback_runner.cleanup()
        await self.panel_client.close()

    def register(self, application: Application):
        application.add_handler(CommandHandler("start", self.start))
        application.add_handler(CommandHandler("plans", self.show_plans))
        application.add_handler(CommandHandler("buy", self.buy))
        application.add_handler(CommandHandler("my_vpn", self.my_vpn))
        application.add_handler(CommandHandler("cancel", self.cancel))
        application.add_handler(CommandHandler("add_panel", self.add_panel))

        application.add_handler(CommandHandler("approve", self.approve_payment))
        application.add_handler(CommandHandler("reject", self.reject_payment))
        application.add_handler(CommandHandler("refund", self.refund_payment))
        application.add_handler(CommandHandler("pending", self.pending_payments))
        application.add_handler(CommandHandler("terminate", self.terminate_subscription))
        application.add_handler(CommandHandler("renew", self.renew_subscription))
        application.add_handler(CommandHandler("usage", self.record_usage))
        application.add_handler(CommandHandler("reap", self.reap_expired))
        application.add_handler(CommandHandler("stats", self.show_sales_report))
        application.add_handler(CommandHandler("cleanups", self.show_cleanups))
        application.add_handler(CommandHandler("panels", self.probe_panels))

        application.add_handler(CallbackQueryHandler(self.handle_callback))
        application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.handle_message))
        application.add_error_handler(self.error_handler.handle_error)

    # Outbound
    @staticmethod
    def _markup(reply: Reply):
        if not reply.buttons:
            return None
        return InlineKeyboardMarkup([
            [InlineKeyboardButton(button.label, callback_data=button.data, url=button.url) for button in row]
            for row in reply.buttons
        ])

    async def send_text(self, user_id, text):
        await self.application.bot.send_message(chat_id=user_id, text=text)

    async def send_reply(self, user_id, reply: Reply):
        bot = self.application.bot
        await bot.send_message(chat_id=user_id, text=reply.text, reply_markup=self._markup(reply))
        if reply.config is not None and reply.config.primary:
            await bot.send_photo(
                chat_id=user_id,
                photo=self.config_generator.qr_png(reply.config.primary),
                caption="📱 QR Code"
            )
        await self._notify_admins(reply)

    async def _respond(self, update: Update, reply: Reply):
        message = update.effective_message
        await message.reply_text(reply.text, reply_markup=self._markup(reply))
        if reply.config is not None and reply.config.primary:
            await message.reply_photo(
                photo=self.config_generator.qr_png(reply.config.primary),
                caption="📱 QR Code"
            )
        await self._notify_admins(reply)

    async def _notify_admins(self, reply: Reply):
        if not reply.admin_notice:
            return
        for admin_id in self.admin_ids:
            try:
                await self.application.bot.send_message(chat_id=admin_id, text=reply.admin_notice)
            except Exception as e:
                logger.error(f"Failed to notify admin {admin_id}: {e}")

    async def _dispatch(self, update: Update, event: Event):
        reply = await self.controller.handle(update.effective_user.id, event)
        await self._respond(update, reply)

    # User commands
    async def start(self, update: Update, context: CallbackContext):
        """Start command handler"""
        user = update.effective_user
        self.db.get_or_create_user(user.id, user.username)

        keyboard = [
            [InlineKeyboardButton("🛒 خرید سرویس", callback_data='buy')],
            [InlineKeyboardButton("📦 پلن‌ها", callback_data='plans')],
            [InlineKeyboardButton("📊 سرویس‌های من", callback_data='my_vpn')]
        ]
        await update.message.reply_text(
            text=MESSAGES["welcome"],
            reply_markup=InlineKeyboardMarkup(keyboard)
        )

    async def show_plans(self, update: Update, context: CallbackContext):
        await self._dispatch(update, Event(EventType.VIEW_PLANS))

    @rate_limit()
    async def buy(self, update: Update, context: CallbackContext):
        await self._dispatch(update, Event(EventType.BUY))

    async def my_vpn(self, update: Update, context: CallbackContext):
        await self._dispatch(update, Event(EventType.MY_SUBSCRIPTIONS))

    async def cancel(self, update: Update, context: CallbackContext):
        await self._dispatch(update, Event(EventType.CANCEL))

    async def add_panel(self, update: Update, context: CallbackContext):
        await self._dispatch(update, Event(EventType.ADD_PANEL))

    async def handle_message(self, update: Update, context: CallbackContext):
        """Handle text messages"""
        await self._dispatch(update, Event(EventType.TEXT, text=update.message.text))

    @staticmethod
    def parse_callback(data: str) -> Optional[Event]:
        simple = {
            'plans': EventType.VIEW_PLANS,
            'buy': EventType.BUY,
            'my_vpn': EventType.MY_SUBSCRIPTIONS,
            'confirm': EventType.CONFIRM,
            'cancel': EventType.CANCEL,
        }
        if data in simple:
            return Event(simple[data])

        prefix, _, value = data.partition(':')
        try:
            if prefix == 'select_plan':
                return Event(EventType.SELECT_PLAN, plan_id=int(value))
            if prefix == 'config':
                return Event(EventType.GET_CONFIG, subscription_id=int(value))
        except ValueError:
            return None
        if prefix == 'pay' and value:
            return Event(EventType.PICK_METHOD, method=value)
        return None

    @rate_limit(calls=10)
    async def handle_callback(self, update: Update, context: CallbackContext):
        """Handle callback queries"""
        query = update.callback_query
        await query.answer()

        event = self.parse_callback(query.data or '')
        if event is None:
            await query.message.reply_text(MESSAGES["invalid_state"])
            return
        await self._dispatch(update, event)

    # Admin commands
    @admin_command("/approve <payment_id>")
    async def approve_payment(self, update: Update, context: CallbackContext, payment_id):
        user_id, reply = await self.admin.approve_payment(int(payment_id))
        await self.send_reply(user_id, reply)
        await update.message.reply_text(f"✅ پرداخت {payment_id} تایید شد.")

    @admin_command("/reject <payment_id> [reason]")
    async def reject_payment(self, update: Update, context: CallbackContext, payment_id, *reason):
        payment = self.admin.reject_payment(int(payment_id), ' '.join(reason) or 'rejected by admin')
        await self.send_text(payment.user_id, MESSAGES["payment_failed"])
        await update.message.reply_text(f"✅ پرداخت {payment_id} رد شد.")

    @admin_command("/refund <payment_id> <reason>")
    async def refund_payment(self, update: Update, context: CallbackContext, payment_id, *reason):
        if not reason:
            raise IndexError("reason is required")
        payment = self.admin.refund(int(payment_id), ' '.join(reason))
        await update.message.reply_text(f"✅ پرداخت {payment.id} بازگشت داده شد.")

    @admin_command("/pending")
    async def pending_payments(self, update: Update, context: CallbackContext):
        payments = self.admin.pending_payments()
        if not payments:
            await update.message.reply_text("✅ پرداخت در انتظاری وجود ندارد.")
            return
        lines = ["⏳ پرداخت‌های در انتظار:\n"]
        for payment in payments[:30]:
            lines.append(
                f"#{payment.id} | کاربر {payment.user_id} | {payment.amount:,.0f} | "
                f"{payment.method} | {payment.transaction_reference or '-'}"
            )
        await update.message.reply_text("\n".join(lines))

    @admin_command("/terminate <subscription_id>")
    async def terminate_subscription(self, update: Update, context: CallbackContext, subscription_id):
        remote_deleted = await self.admin.terminate(int(subscription_id))
        if remote_deleted:
            await update.message.reply_text(f"✅ سرویس {subscription_id} حذف شد.")
        else:
            await update.message.reply_text(
                f"⚠️ سرویس {subscription_id} حذف شد اما حذف از پنل ناموفق بود. /cleanups را ببینید."
            )

    @admin_command("/renew <subscription_id> <days>")
    async def renew_subscription(self, update: Update, context: CallbackContext, subscription_id, days):
        subscription = await self.admin.renew(int(subscription_id), int(days))
        await update.message.reply_text(
            f"✅ سرویس {subscription.id} تا {subscription.expires_at:%Y-%m-%d} تمدید شد ({subscription.status})."
        )

    @admin_command("/usage <subscription_id> <used_gb>")
    async def record_usage(self, update: Update, context: CallbackContext, subscription_id, used_gb):
        subscription = await self.admin.record_usage(int(subscription_id), float(used_gb))
        await update.message.reply_text(
            f"✅ مصرف سرویس {subscription.id}: {subscription.used_data_gb:g} GB ({subscription.status})"
        )

    @admin_command("/reap")
    async def reap_expired(self, update: Update, context: CallbackContext):
        reaped = await self.admin.reap_expired()
        await update.message.reply_text(f"✅ {reaped} سرویس منقضی شد.")

    @admin_command("/panels")
    async def probe_panels(self, update: Update, context: CallbackContext):
        results = await self.admin.probe_panels()
        panels = {panel.id: panel.name for panel in self.catalog.list_panels()}
        lines = [f"🖥 {panels.get(panel_id, panel_id)}: {status}" for panel_id, status in results.items()]
        await update.message.reply_text("\n".join(lines) or "❌ هیچ پنلی ثبت نشده است.")

    @admin_command("/cleanups [done <id>]")
    async def show_cleanups(self, update: Update, context: CallbackContext, *args):
        if args:
            if args[0] != 'done' or len(args) != 2:
                raise IndexError("unknown arguments")
            cleanup = self.admin.resolve_cleanup(int(args[1]))
            await update.message.reply_text(f"✅ مورد {cleanup.id} بسته شد.")
            return

        cleanups = self.admin.pending_cleanups()
        if not cleanups:
            await update.message.reply_text("✅ موردی برای پاکسازی وجود ندارد.")
            return
        lines = ["🧹 حساب‌هایی که باید دستی از پنل حذف شوند:\n"]
        for cleanup in cleanups:
            lines.append(f"#{cleanup.id} | پنل {cleanup.panel_id} | {cleanup.username} | {cleanup.reason}")
        await update.message.reply_text("\n".join(lines))

    @admin_command("/stats")
    async def show_sales_report(self, update: Update, context: CallbackContext):
        """Show sales report"""
        report = self.admin.sales_report()
        sales = report['sales']
        subs = report['subscriptions']
        methods = "\n".join(
            f"{method}: {entry['count']} ({entry['amount']:,.0f} تومان)"
            for method, entry in report['methods'].items()
        ) or "-"

        text = f"""
📊 گزارش فروش:

امروز: {sales['today_sales']:,.0f} تومان
هفته اخیر: {sales['week_sales']:,.0f} تومان
ماه جاری: {sales['month_sales']:,.0f} تومان
کل: {sales['total_sales']:,.0f} تومان ({sales['total_orders']} سفارش)

روش‌های پرداخت:
{methods}

سرویس‌ها:
فعال: {subs['active']} | معلق: {subs['suspended']} | منقضی: {subs['expired']}
کاربران فعال: {subs['active_users']}
کاربران: {report['users']['total']} (امروز {report['users']['today']})
"""
        await update.message.reply_text(text)


def main():
    """Start the bot"""
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.INFO
    )

    vpn_bot = VPNBot()
    application = (
        Application.builder()
        .token(BOT_TOKEN)
        # per-user ordering is enforced by the conversation controller
        .concurrent_updates(True)
        .post_init(vpn_bot.initialize)
        .post_shutdown(vpn_bot.shutdown)
        .build()
    )
    vpn_bot.register(application)

    logger.info("Bot started successfully!")
    application.run_polling()


if __name__ == '__main__':
    main()
