import logging

from aiohttp import web

from config import CALLBACK_SERVER
from errors import VpnBotError

logger = logging.getLogger(__name__)

SUCCESS_PAGE = "<html><body><h3>✅ پرداخت با موفقیت انجام شد. به ربات برگردید.</h3></body></html>"
FAILURE_PAGE = "<html><body><h3>❌ پرداخت ناموفق بود. به ربات برگردید.</h3></body></html>"


def create_app(controller, deliver, path=CALLBACK_SERVER["path"]) -> web.Application:
    """Gateway return URL: ?Authority=...&Status=OK|NOK

    deliver(user_id, reply) pushes the outcome to the user through the bot.
    """

    async def handle_callback(request):
        authority = request.query.get('Authority')
        status = request.query.get('Status', '')
        if not authority:
            return web.Response(status=400, text='missing Authority')

        try:
            result = await controller.handle_gateway_callback(authority, status)
        except VpnBotError as e:
            logger.error(f"Gateway callback for {authority} failed: {e}")
            return web.Response(status=502, text=FAILURE_PAGE, content_type='text/html')

        if result is None:
            return web.Response(status=404, text='unknown Authority')

        user_id, reply = result
        try:
            await deliver(user_id, reply)
        except Exception as e:
            # settlement is already stored; the user can still fetch the config with /my_vpn
            logger.error(f"Failed to notify user {user_id} after gateway callback: {e}")

        page = SUCCESS_PAGE if reply.ok else FAILURE_PAGE
        return web.Response(text=page, content_type='text/html')

    app = web.Application()
    app.router.add_get(path, handle_callback)
    return app


async def start_callback_server(app, host=CALLBACK_SERVER["host"], port=CALLBACK_SERVER["port"]):
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Gateway callback server listening on {host}:{port}")
    return runner
