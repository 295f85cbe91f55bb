import unittest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from config import MESSAGES
from security import is_admin, parse_panel_credentials, rate_limit, validate_input


def make_update(user_id):
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_message.reply_text = AsyncMock()
    return update


class Handlers:
    def __init__(self):
        self.handled = []

    @rate_limit(calls=2, period=10)
    async def buy(self, update, context):
        self.handled.append(update.effective_user.id)


class TestSecurity(unittest.TestCase):
    def test_is_admin(self):
        self.assertTrue(is_admin(999, [999]))
        self.assertFalse(is_admin(1001, [999]))
        self.assertFalse(is_admin(1001, []))

    def test_validate_url(self):
        self.assertTrue(validate_input('https://panel.example.com:8000', 'url'))
        self.assertTrue(validate_input('http://10.0.0.1', 'url'))
        self.assertFalse(validate_input('ftp://panel.example.com', 'url'))
        self.assertFalse(validate_input('panel.example.com', 'url'))
        self.assertFalse(validate_input('https://panel.example.com:99999', 'url'))
        self.assertFalse(validate_input('', 'url'))

    def test_validate_patterns(self):
        self.assertTrue(validate_input('TRX-12345', 'reference'))
        self.assertFalse(validate_input('abc', 'reference'))
        self.assertTrue(validate_input('2024-01-31', 'date'))
        self.assertFalse(validate_input('anything', 'unknown'))

    def test_parse_panel_credentials(self):
        self.assertEqual(parse_panel_credentials('admin p@ss'), ('admin', 'p@ss'))
        self.assertEqual(parse_panel_credentials('  admin   p@ss  '), ('admin', 'p@ss'))
        self.assertIsNone(parse_panel_credentials('admin'))
        self.assertIsNone(parse_panel_credentials('admin two words'))
        self.assertIsNone(parse_panel_credentials('a! pass'))


class TestRateLimit(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        Handlers.buy.calls_made.clear()

    async def test_limits_calls_per_user(self):
        handlers = Handlers()
        start = datetime(2025, 1, 1, 12, 0, 0)
        with patch('security.utcnow') as clock:
            clock.return_value = start
            for _ in range(3):
                await handlers.buy(make_update(1001), None)
            blocked = make_update(1001)
            await handlers.buy(blocked, None)
            await handlers.buy(make_update(2002), None)

            self.assertEqual(handlers.handled, [1001, 1001, 2002])
            blocked.effective_message.reply_text.assert_awaited_once_with(MESSAGES["rate_limited"])

            clock.return_value = start + timedelta(seconds=11)
            await handlers.buy(make_update(1001), None)
        self.assertEqual(handlers.handled[-1], 1001)

    async def test_idle_users_are_forgotten(self):
        handlers = Handlers()
        start = datetime(2025, 1, 1, 12, 0, 0)
        with patch('security.utcnow') as clock:
            clock.return_value = start
            for user_id in range(100, 150):
                await handlers.buy(make_update(user_id), None)
            self.assertEqual(len(Handlers.buy.calls_made), 50)

            clock.return_value = start + timedelta(seconds=10)
            await handlers.buy(make_update(7), None)

        self.assertEqual(list(Handlers.buy.calls_made), [7])


if __name__ == '__main__':
    unittest.main()
