import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from config import PANEL_REQUEST_TIMEOUT
from database import Panel, PANEL_CONNECTED, PANEL_DISCONNECTED, PANEL_ERROR
from errors import (
    PanelError, PanelUnreachable, PanelTimeout, PanelAuthFailed, PanelRequestFailed
)

logger = logging.getLogger(__name__)

ACCOUNT_ACTIVE = 'active'
ACCOUNT_DISABLED = 'disabled'


class PanelClient:
    """Authenticated HTTP client for Marzban panels.

    Every panel is its own authentication domain: admin tokens are cached per
    panel id and refreshed once, transparently, when the panel answers 401.
    All requests share one bounded timeout; a timeout is reported as
    PanelTimeout (retryable), a refused login as PanelAuthFailed (not retryable).
    """

    def __init__(self, db=None, timeout: float = PANEL_REQUEST_TIMEOUT):
        self.db = db
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._tokens: Dict[int, str] = {}
        self._token_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _send(self, panel: Panel, method: str, path: str, **kwargs):
        url = f"{panel.base_url.rstrip('/')}{path}"
        try:
            async with self._http().request(method, url, **kwargs) as resp:
                text = await resp.text()
                try:
                    data = json.loads(text) if text else None
                except ValueError:
                    data = text
                return resp.status, data
        except asyncio.TimeoutError:
            raise PanelTimeout(panel.name, f"{method} {path} timed out")
        except aiohttp.ClientError as e:
            raise PanelUnreachable(panel.name, f"{method} {path} failed: {e}")

    async def acquire_token(self, panel: Panel, force: bool = False) -> str:
        """Return a cached admin token, logging in again when forced or missing"""
        async with self._token_locks[panel.id]:
            if not force and panel.id in self._tokens:
                return self._tokens[panel.id]

            status, data = await self._send(
                panel, 'POST', '/api/admin/token',
                data={'username': panel.admin_username, 'password': panel.admin_credential},
                headers={'accept': 'application/json'}
            )
            if status in (401, 403):
                self._tokens.pop(panel.id, None)
                raise PanelAuthFailed(panel.name, "admin credentials rejected")
            if status != 200 or not isinstance(data, dict) or not data.get('access_token'):
                raise PanelRequestFailed(panel.name, status, data)

            self._tokens[panel.id] = data['access_token']
            logger.debug(f"Token refreshed for panel {panel.name}")
            return self._tokens[panel.id]

    async def _request(self, panel: Panel, method: str, path: str, payload: Optional[dict] = None):
        token = await self.acquire_token(panel)
        for attempt in range(2):
            headers = {'Authorization': f'Bearer {token}', 'accept': 'application/json'}
            status, data = await self._send(panel, method, path, json=payload, headers=headers)
            if status != 401:
                return status, data
            if attempt == 0:
                logger.info(f"Token for panel {panel.name} rejected, logging in again")
                token = await self.acquire_token(panel, force=True)
        raise PanelAuthFailed(panel.name, "token rejected after refresh")

    @staticmethod
    def _user_path(username: str) -> str:
        return f"/api/user/{quote(username, safe='')}"

    async def create_remote_account(self, panel: Panel, username: str, data_limit_bytes: int,
                                    expires_at_unix: int, credential: Optional[str] = None) -> Dict[str, Any]:
        """Create the account, or return it unchanged if a previous attempt already did"""
        proxy = {'id': credential} if credential else {}
        payload = {
            'username': username,
            'status': ACCOUNT_ACTIVE,
            'expire': int(expires_at_unix),
            'data_limit': int(data_limit_bytes),
            'data_limit_reset_strategy': 'no_reset',
            'proxies': {'vless': proxy},
        }
        status, data = await self._request(panel, 'POST', '/api/user', payload)
        if status in (200, 201):
            logger.info(f"User created in panel {panel.name}: {username}")
            return data

        if status == 409:
            existing = await self.get_remote_account(panel, username)
            if existing is None:
                raise PanelRequestFailed(panel.name, status, data)
            logger.info(f"User {username} already exists in panel {panel.name}, reusing it")
            return existing

        raise PanelRequestFailed(panel.name, status, data)

    async def get_remote_account(self, panel: Panel, username: str) -> Optional[Dict[str, Any]]:
        status, data = await self._request(panel, 'GET', self._user_path(username))
        if status == 404:
            return None
        if status != 200:
            raise PanelRequestFailed(panel.name, status, data)
        return data

    async def delete_remote_account(self, panel: Panel, username: str) -> bool:
        status, data = await self._request(panel, 'DELETE', self._user_path(username))
        if status == 404:
            return False
        if status not in (200, 204):
            raise PanelRequestFailed(panel.name, status, data)
        logger.info(f"User deleted from panel {panel.name}: {username}")
        return True

    async def update_remote_account(self, panel: Panel, username: str, **fields) -> Dict[str, Any]:
        status, data = await self._request(panel, 'PUT', self._user_path(username), fields)
        if status != 200:
            raise PanelRequestFailed(panel.name, status, data)
        return data

    async def set_account_status(self, panel: Panel, username: str, status: str) -> Dict[str, Any]:
        if status not in (ACCOUNT_ACTIVE, ACCOUNT_DISABLED):
            raise ValueError(f"Unsupported account status: {status}")
        return await self.update_remote_account(panel, username, status=status)

    async def get_account_config(self, panel: Panel, username: str) -> Dict[str, Any]:
        account = await self.get_remote_account(panel, username)
        if account is None:
            raise PanelRequestFailed(panel.name, 404, f"user {username} not found")
        return {
            'username': account.get('username', username),
            'subscription_url': account.get('subscription_url'),
            'links': list(account.get('links') or []),
            'proxies': dict(account.get('proxies') or {}),
        }

    async def get_panel_stats(self, panel: Panel) -> Dict[str, Any]:
        status, data = await self._request(panel, 'GET', '/api/system')
        if status != 200:
            raise PanelRequestFailed(panel.name, status, data)
        return data

    async def test_connectivity(self, panel: Panel) -> bool:
        """Advisory check; never raises"""
        try:
            await self.acquire_token(panel, force=True)
            return True
        except PanelError as e:
            logger.warning(f"Panel connection test failed: {e}")
            return False

    async def probe_panel(self, panel: Panel) -> str:
        """Connectivity status of one panel; never raises"""
        try:
            await self.acquire_token(panel, force=True)
            return PANEL_CONNECTED
        except PanelAuthFailed as e:
            logger.error(f"Panel {panel.name} rejected admin credentials: {e}")
            return PANEL_ERROR
        except PanelError as e:
            logger.warning(f"Panel {panel.name} unreachable: {e}")
            return PANEL_DISCONNECTED

    async def probe_panels(self) -> Dict[int, str]:
        """Refresh the advisory connectivity_status of every registered panel"""
        with self.db.session_scope() as session:
            panels = session.query(Panel).all()

        results = {}
        for panel in panels:
            status = await self.probe_panel(panel)
            results[panel.id] = status

            if panel.connectivity_status != status:
                with self.db.session_scope() as session:
                    session.query(Panel).filter(Panel.id == panel.id).update(
                        {Panel.connectivity_status: status}
                    )
                logger.info(f"Panel {panel.name} status updated to: {status}")
        return results
