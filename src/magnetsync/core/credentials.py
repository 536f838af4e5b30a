"""123云盘 access_token 获取与缓存."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from magnetsync.config import Settings
from magnetsync.utils.dates import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

# access_token 有效期 90 天，响应中缺少过期时间时按此估算
DEFAULT_TOKEN_TTL = timedelta(days=90)


class CredentialError(Exception):
    """无法获取有效的 access_token."""


class CredentialProvider(Protocol):
    """提供 Bearer 凭证."""

    async def get_valid_credential(self) -> str: ...

    def invalidate(self) -> None: ...


class _TokenData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", min_length=1)
    expired_at: datetime | None = Field(default=None, alias="expiredAt")


@dataclass
class TokenCache:
    """进程内的 token 缓存，显式失效."""

    access_token: str | None = None
    expires_at: datetime | None = None

    def get(self, valid_until: datetime) -> str | None:
        """token 在 valid_until 之前仍有效时返回它."""
        if not self.access_token or self.expires_at is None:
            return None
        if self.expires_at <= valid_until:
            return None
        return self.access_token

    def store(self, access_token: str, expires_at: datetime) -> None:
        self.access_token = access_token
        self.expires_at = expires_at

    def invalidate(self) -> None:
        self.access_token = None
        self.expires_at = None


class Pan123Credentials:
    """通过 client_id/client_secret 换取 access_token，按需刷新."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        cache: TokenCache | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self.cache = cache or TokenCache()
        self._lock = asyncio.Lock()

    @property
    def _margin(self) -> timedelta:
        return timedelta(hours=self._settings.token_refresh_margin_hours)

    async def get_valid_credential(self) -> str:
        """获取有效 token，临近过期时自动刷新."""
        token = self.cache.get(utcnow() + self._margin)
        if token:
            return token

        async with self._lock:
            # 等锁期间可能已被其他协程刷新
            token = self.cache.get(utcnow() + self._margin)
            if token:
                return token
            return await self._refresh()

    def invalidate(self) -> None:
        """丢弃缓存的 token，下次调用时重新获取."""
        self.cache.invalidate()

    async def _refresh(self) -> str:
        if not self._settings.pan123_client_id or not self._settings.pan123_client_secret:
            msg = "未配置123云盘客户端信息，请设置 PAN123_CLIENT_ID 和 PAN123_CLIENT_SECRET"
            raise CredentialError(msg)

        url = f"{self._settings.pan123_open_api_url}/api/v1/access_token"
        try:
            response = await self._client.post(
                url,
                headers={"Platform": "open_platform"},
                json={
                    "clientID": self._settings.pan123_client_id,
                    "clientSecret": self._settings.pan123_client_secret,
                },
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            msg = f"获取access_token失败: {e}"
            raise CredentialError(msg) from e

        if not isinstance(payload, dict) or payload.get("code") != 0:
            message = payload.get("message") if isinstance(payload, dict) else payload
            msg = f"获取access_token失败: {message}"
            raise CredentialError(msg)

        try:
            data = _TokenData.model_validate(payload.get("data"))
        except ValidationError as e:
            msg = f"获取access_token失败: 响应格式错误 {e.error_count()} 处"
            raise CredentialError(msg) from e

        now = utcnow()
        expires_at = (
            as_naive_utc(data.expired_at) if data.expired_at else now + DEFAULT_TOKEN_TTL
        )
        self.cache.store(data.access_token, expires_at)
        logger.info(f"新token获取成功，过期时间: {expires_at.isoformat()}")
        return data.access_token
