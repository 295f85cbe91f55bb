import base64
import binascii
import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from io import BytesIO
from typing import Dict, Optional
from urllib.parse import quote, urlsplit

import qrcode

from database import utcnow
from errors import ConfigGenerationFailed

logger = logging.getLogger(__name__)

PROTOCOLS = ('vless', 'vmess', 'trojan', 'shadowsocks')
SCHEMES = {'vless': 'vless', 'vmess': 'vmess', 'trojan': 'trojan', 'ss': 'shadowsocks'}
DEFAULT_PORT = 443
DEFAULT_SS_METHOD = 'chacha20-ietf-poly1305'
MAX_CONFIG_LENGTH = 10000


@dataclass
class RenderedConfig:
    per_protocol: Dict[str, str] = field(default_factory=dict)
    combined_text: str = ''
    subscription_url: Optional[str] = None

    @property
    def primary(self) -> str:
        """What a client should import first"""
        if self.subscription_url:
            return self.subscription_url
        for protocol in PROTOCOLS:
            if protocol in self.per_protocol:
                return self.per_protocol[protocol]
        return ''


def _b64decode(value: str) -> bytes:
    value = value.strip()
    padded = value + '=' * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.replace('+', '-').replace('/', '_'))
    except (binascii.Error, ValueError) as e:
        raise ConfigGenerationFailed(f"invalid base64 payload: {e}")


def _require_endpoint(parts, protocol):
    try:
        port = parts.port
    except ValueError:
        port = None
    if not parts.hostname or not port:
        raise ConfigGenerationFailed(f"{protocol} link has no host:port")


def validate(protocol: str, uri: str):
    """Structural well-formedness check of one connection string"""
    if not uri or not uri.strip():
        raise ConfigGenerationFailed(f"{protocol} configuration is empty")
    if len(uri) > MAX_CONFIG_LENGTH:
        raise ConfigGenerationFailed(f"{protocol} configuration is too long")

    if protocol == 'vmess':
        if not uri.startswith('vmess://'):
            raise ConfigGenerationFailed("vmess link has the wrong scheme")
        try:
            decoded = json.loads(_b64decode(uri[len('vmess://'):]).decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise ConfigGenerationFailed(f"vmess envelope is not valid JSON: {e}")
        if not isinstance(decoded, dict) or not all(decoded.get(k) for k in ('add', 'port', 'id')):
            raise ConfigGenerationFailed("vmess envelope is missing add/port/id")

    elif protocol == 'shadowsocks':
        if not uri.startswith('ss://'):
            raise ConfigGenerationFailed("shadowsocks link has the wrong scheme")
        parts = urlsplit(uri)
        if '@' in parts.netloc:
            userinfo = _b64decode(parts.netloc.rsplit('@', 1)[0]).decode('utf-8', 'replace')
            if ':' not in userinfo:
                raise ConfigGenerationFailed("shadowsocks user info must be method:password")
            _require_endpoint(parts, protocol)
        else:
            # legacy form: base64("method:password@host:port")
            decoded = _b64decode(parts.netloc).decode('utf-8', 'replace')
            if '@' not in decoded or ':' not in decoded:
                raise ConfigGenerationFailed("shadowsocks link is malformed")

    elif protocol in ('vless', 'trojan'):
        parts = urlsplit(uri)
        if parts.scheme != protocol:
            raise ConfigGenerationFailed(f"{protocol} link has the wrong scheme")
        if not parts.username:
            raise ConfigGenerationFailed(f"{protocol} link has no credential")
        _require_endpoint(parts, protocol)

    else:
        raise ConfigGenerationFailed(f"unknown protocol {protocol}")


class ConfigGenerator:
    """Turns a panel account into client-importable connection strings.

    Links the panel already supplies are used as-is; for protocols the panel
    did not render, credentials come from the account's proxies or are
    generated fresh on every call. The panel account stays the source of truth.
    """

    def __init__(self, port: int = DEFAULT_PORT):
        self.port = port

    def render(self, subscription, panel, raw) -> RenderedConfig:
        host = urlsplit(panel.base_url).hostname
        if not host:
            raise ConfigGenerationFailed(f"panel {panel.name} has no usable host in {panel.base_url}")

        raw = raw or {}
        proxies = raw.get('proxies') or {}
        tag = f"{panel.name}-{subscription.remote_username}"

        supplied = {}
        for link in raw.get('links') or []:
            protocol = SCHEMES.get(link.split('://', 1)[0].lower())
            if protocol and protocol not in supplied:
                supplied[protocol] = link

        per_protocol = {}
        for protocol in PROTOCOLS:
            uri = supplied.get(protocol)
            if uri is None:
                builder = getattr(self, f"_build_{protocol}")
                uri = builder(host, tag, proxies.get(protocol) or {}, subscription)
            validate(protocol, uri)
            per_protocol[protocol] = uri

        subscription_url = self._absolute_url(panel, raw.get('subscription_url'))
        rendered = RenderedConfig(
            per_protocol=per_protocol,
            combined_text=self._combine(per_protocol, subscription_url),
            subscription_url=subscription_url
        )
        logger.debug(f"Config rendered for {subscription.remote_username} on {panel.name}")
        return rendered

    @staticmethod
    def _absolute_url(panel, url):
        if not url:
            return None
        if url.startswith('http://') or url.startswith('https://'):
            return url
        return f"{panel.base_url.rstrip('/')}/{url.lstrip('/')}"

    def _build_vless(self, host, tag, proxy, subscription):
        user_id = proxy.get('id') or subscription.remote_credential or str(uuid.uuid4())
        return (
            f"vless://{user_id}@{host}:{self.port}"
            f"?encryption=none&security=tls&type=ws&host={host}&path=%2Fvless#{quote(tag)}"
        )

    def _build_vmess(self, host, tag, proxy, subscription):
        envelope = {
            'v': '2',
            'ps': tag,
            'add': host,
            'port': self.port,
            'id': proxy.get('id') or str(uuid.uuid4()),
            'aid': '0',
            'net': 'ws',
            'type': 'none',
            'host': host,
            'path': '/vmess',
            'tls': 'tls',
        }
        payload = base64.b64encode(json.dumps(envelope, separators=(',', ':')).encode()).decode()
        return f"vmess://{payload}"

    def _build_trojan(self, host, tag, proxy, subscription):
        password = proxy.get('password') or secrets.token_urlsafe(12)
        return (
            f"trojan://{quote(password, safe='')}@{host}:{self.port}"
            f"?security=tls&type=ws&path=%2Ftrojan#{quote(tag)}"
        )

    def _build_shadowsocks(self, host, tag, proxy, subscription):
        method = proxy.get('method') or DEFAULT_SS_METHOD
        password = proxy.get('password') or secrets.token_urlsafe(12)
        userinfo = base64.urlsafe_b64encode(f"{method}:{password}".encode()).decode().rstrip('=')
        return f"ss://{userinfo}@{host}:{self.port}#{quote(tag)}"

    @staticmethod
    def _combine(per_protocol, subscription_url):
        blocks = []
        if subscription_url:
            blocks.append(
                "📱 لینک اشتراک (پیشنهادی):\n"
                f"{subscription_url}\n\n"
                "لینک را در برنامه VPN خود به عنوان Subscription اضافه کنید."
            )
            blocks.append("🌐 کانفیگ‌های جایگزین:")
        for protocol in PROTOCOLS:
            if protocol in per_protocol:
                blocks.append(f"🔐 {protocol.upper()}\n{per_protocol[protocol]}")
        return "\n\n".join(blocks)

    @staticmethod
    def qr_png(text: str) -> bytes:
        if not text:
            raise ConfigGenerationFailed("nothing to encode")
        image = qrcode.make(text)
        buffer = BytesIO()
        image.save(buffer, "PNG")
        return buffer.getvalue()

    @staticmethod
    def export(rendered: RenderedConfig, fmt: str = 'txt', subscription=None) -> str:
        if fmt == 'txt':
            return rendered.combined_text
        if fmt == 'json':
            return json.dumps({
                'subscription_id': getattr(subscription, 'id', None),
                'generated_at': utcnow().isoformat(),
                'subscription_url': rendered.subscription_url,
                'configs': rendered.per_protocol,
            }, indent=2, ensure_ascii=False)
        raise ValueError(f"Unsupported export format: {fmt}")
