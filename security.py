from datetime import timedelta
from functools import wraps
from telegram import Update
from urllib.parse import urlsplit
from config import ADMIN_IDS, MESSAGES, SECURITY_SETTINGS
from database import utcnow
import re


def is_admin(user_id: int, admin_ids=None) -> bool:
    """Check the user against the configured admin identities"""
    return user_id in (ADMIN_IDS if admin_ids is None else admin_ids)


PATTERNS = {
    'username': r'^[a-zA-Z0-9_.\-]{3,32}$',
    'amount': r'^[0-9]+(\.[0-9]+)?$',
    'date': r'^\d{4}-\d{2}-\d{2}$',
    'reference': r'^[A-Za-z0-9_\-]{4,128}$',
}


def validate_input(text: str, input_type: str):
    """Validate user input"""
    if not text:
        return False
    text = text.strip()

    if input_type == 'url':
        parts = urlsplit(text)
        try:
            parts.port
        except ValueError:
            return False
        return parts.scheme in ('http', 'https') and bool(parts.hostname)

    if input_type not in PATTERNS:
        return False

    return bool(re.match(PATTERNS[input_type], text))


def parse_panel_credentials(text: str):
    """Split "<username> <password>"; None when the message does not look like that"""
    parts = (text or '').strip().split(None, 1)
    if len(parts) != 2 or not validate_input(parts[0], 'username'):
        return None
    username, password = parts[0], parts[1].strip()
    if not password or any(ch.isspace() for ch in password):
        return None
    return username, password


def admin_only(func):
    """Decorator for admin-only functions"""
    @wraps(func)
    async def wrapper(self, update: Update, context, *args, **kwargs):
        if not is_admin(update.effective_user.id, self.admin_ids):
            await update.effective_message.reply_text(MESSAGES["forbidden"])
            return
        return await func(self, update, context, *args, **kwargs)
    return wrapper


def rate_limit(calls: int = SECURITY_SETTINGS["rate_limit_calls"],
               period: int = SECURITY_SETTINGS["rate_limit_period"]):
    """Rate limiting decorator"""
    def decorator(func):
        calls_made = {}

        @wraps(func)
        async def wrapper(self, update: Update, context, *args, **kwargs):
            user_id = update.effective_user.id
            now = utcnow()
            window = timedelta(seconds=period)

            # Forget users with no call inside the window
            for stale in [uid for uid, made in calls_made.items() if now - made[-1] >= window]:
                del calls_made[stale]

            user_calls = [call for call in calls_made.get(user_id, []) if now - call < window]
            if len(user_calls) >= calls:
                calls_made[user_id] = user_calls
                await update.effective_message.reply_text(MESSAGES["rate_limited"])
                return

            user_calls.append(now)
            calls_made[user_id] = user_calls
            return await func(self, update, context, *args, **kwargs)

        wrapper.calls_made = calls_made
        return wrapper
    return decorator
