import os
import pytz

# Bot Configuration
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
ADMIN_IDS = [
    int(admin_id) for admin_id in os.getenv("ADMIN_IDS", "").split(",")
    if admin_id.strip()
]

# Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///vpn_bot.db")

# Marzban Panel Configuration
PANEL_REQUEST_TIMEOUT = float(os.getenv("PANEL_REQUEST_TIMEOUT", "10"))

# Panels seeded by init_db.py
PANEL_TEMPLATES = {
    "main": {
        "name": os.getenv("MARZBAN_NAME", "Main"),
        "base_url": os.getenv("MARZBAN_URL", ""),
        "admin_username": os.getenv("MARZBAN_USERNAME", ""),
        "admin_credential": os.getenv("MARZBAN_PASSWORD", ""),
    }
}

# Plan Templates (data_limit_gb in GB, duration_days in days, price in Toman)
PLAN_TEMPLATES = {
    "basic": {
        "name": "سرویس پایه",
        "duration_days": 30,
        "data_limit_gb": 50,
        "price": 100000,
        "max_connections": 1,
        "features": ["1 کاربر", "پشتیبانی"],
    },
    "premium": {
        "name": "سرویس ویژه",
        "duration_days": 90,
        "data_limit_gb": 200,
        "price": 250000,
        "max_connections": 2,
        "features": ["2 کاربر", "پشتیبانی ویژه"],
    }
}

# Payment Settings
PAYMENT_METHODS = {
    "card_to_card": {
        "numbers": [
            card.strip() for card in os.getenv("CARD_NUMBERS", "").split(",")
            if card.strip()
        ],
        "name": os.getenv("CARD_HOLDER", ""),
    },
    "crypto": {
        "wallet": os.getenv("CRYPTO_WALLET", ""),
        "currency": os.getenv("CRYPTO_CURRENCY", "USDT"),
    }
}

# Hosted gateway (ZarinPal v4 compatible)
GATEWAY_SETTINGS = {
    "merchant_id": os.getenv("ZARINPAL_MERCHANT_ID", ""),
    "request_url": "https://api.zarinpal.com/pg/v4/payment/request.json",
    "verify_url": "https://api.zarinpal.com/pg/v4/payment/verify.json",
    "start_pay_url": "https://www.zarinpal.com/pg/StartPay/{authority}",
    "callback_url": os.getenv("ZARINPAL_CALLBACK_URL", "http://localhost:8080/gateway/callback"),
    "timeout": 10,
}

# Gateway callback server
CALLBACK_SERVER = {
    "host": os.getenv("CALLBACK_HOST", "0.0.0.0"),
    "port": int(os.getenv("CALLBACK_PORT", "8080")),
    "path": "/gateway/callback",
}

# Background jobs (seconds)
SCHEDULE_SETTINGS = {
    "reap_interval": 3600,
    "usage_sync_interval": 1800,
    "panel_probe_interval": 4 * 3600,
    "reminder_interval": 24 * 3600,
    "log_cleanup_interval": 24 * 3600,
    "error_backoff": 300,
}


# Security Settings
SECURITY_SETTINGS = {
    "rate_limit_calls": 5,
    "rate_limit_period": 10,  # seconds
    "allowed_protocols": ["vmess", "vless", "trojan", "shadowsocks"],
}

# Cleanup Settings
CLEANUP_SETTINGS = {
    "old_logs_days": 90,  # Delete system logs older than 90 days
}

# Bot Settings
SUBSCRIPTION_REMINDER_DAYS = 3
SUBSCRIPTION_REMINDER_DATA = 5  # GB

# Messages
MESSAGES = {
    "welcome": """
🌟 به ربات VPN خوش آمدید!
برای مشاهده پلن‌ها /plans و برای خرید /buy را بزنید.
    """,
    "try_again": "❌ متأسفانه خطایی رخ داده است. لطفاً مجدداً تلاش کنید.",
    "invalid_state": "⚠️ این درخواست در مرحله فعلی قابل انجام نیست. برای شروع دوباره /cancel را بزنید.",
    "forbidden": "⛔️ دسترسی محدود شده است.",
    "no_plans": "❌ در حال حاضر هیچ پلنی موجود نیست.",
    "cancelled": "🔙 عملیات لغو شد.",
    "choose_method": "💳 روش پرداخت را انتخاب کنید:",
    "awaiting_admin": "⏳ رسید شما ثبت شد و پس از تایید مدیر، سرویس شما فعال می‌شود.",
    "payment_failed": "❌ پرداخت ناموفق بود. در صورت کسر وجه با پشتیبانی تماس بگیرید.",
    "payment_pending": "⏳ پرداخت شما هنوز تایید نشده است.",
    "send_receipt": "🧾 لطفاً شماره پیگیری یا هش تراکنش را ارسال کنید.",
    "plan_unavailable": "❌ این پلن در دسترس نیست.",
    "no_subscriptions": "❌ شما هیچ سرویس فعالی ندارید.",
    "config_unavailable": "⚠️ سرویس شما فعال است اما دریافت کانفیگ با خطا مواجه شد. از /my_vpn دوباره تلاش کنید.",
    "panel_url_prompt": "🌐 آدرس پنل را ارسال کنید (مثال: https://panel.example.com:8000)",
    "panel_credentials_prompt": "🔑 نام کاربری و رمز عبور ادمین پنل را با فاصله ارسال کنید.",
    "invalid_url": "❌ آدرس وارد شده معتبر نیست.",
    "invalid_credentials": "❌ فرمت نام کاربری و رمز عبور معتبر نیست.",
    "rate_limited": "⚠️ لطفا کمی صبر کنید و سپس مجددا تلاش کنید.",
    "service_purchase": """
💫 سرویس {name} با موفقیت فعال شد!
📅 تاریخ انقضا: {expire_date}
📊 حجم: {data_limit} GB
    """,
}

# Timezone
TIMEZONE = pytz.timezone(os.getenv("TIMEZONE", "Asia/Tehran"))
