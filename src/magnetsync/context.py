"""进程级服务上下文."""

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from magnetsync.config import Settings
from magnetsync.core.credentials import CredentialProvider, Pan123Credentials
from magnetsync.core.download import DownloadManager
from magnetsync.core.pan123 import Pan123Client
from magnetsync.core.reconciler import Reconciler
from magnetsync.core.retry import BulkRetryCoordinator
from magnetsync.fetcher.feed import FeedParser


@dataclass
class AppContext:
    """应用运行期间共享的客户端与服务."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    http: httpx.AsyncClient
    pan123: Pan123Client
    downloads: DownloadManager
    reconciler: Reconciler
    retries: BulkRetryCoordinator

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        http: httpx.AsyncClient | None = None,
        credentials: CredentialProvider | None = None,
    ) -> "AppContext":
        """根据配置组装各组件."""
        http = http or httpx.AsyncClient(timeout=float(settings.http_timeout_seconds))
        credentials = credentials or Pan123Credentials(http, settings)

        pan123 = Pan123Client(http, credentials, settings)
        downloads = DownloadManager(pan123, session_factory)
        reconciler = Reconciler(
            session_factory,
            FeedParser(http),
            pan123,
            downloads,
            settings,
        )
        return cls(
            settings=settings,
            session_factory=session_factory,
            http=http,
            pan123=pan123,
            downloads=downloads,
            reconciler=reconciler,
            retries=BulkRetryCoordinator(downloads, session_factory),
        )

    async def close(self) -> None:
        """关闭 HTTP 客户端."""
        await self.http.aclose()
