"""测试配置和 fixtures."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from magnetsync.config import Settings
from magnetsync.context import AppContext
from magnetsync.core.download import DownloadManager
from magnetsync.core.pan123 import Pan123Client, TaskProgress, TaskState
from magnetsync.core.reconciler import Reconciler
from magnetsync.core.retry import BulkRetryCoordinator
from magnetsync.fetcher.feed import FeedParser
from magnetsync.models.link import DownloadStatus, Link
from magnetsync.models.subscription import Subscription

MakeSubscription = Callable[..., Awaitable[Subscription]]
MakeLink = Callable[..., Awaitable[Link]]


class StaticCredentials:
    """返回固定 token 的凭证提供者."""

    def __init__(self, token: str = "test-token") -> None:
        self.token = token
        self.invalidated = 0

    async def get_valid_credential(self) -> str:
        return self.token

    def invalidate(self) -> None:
        self.invalidated += 1


@pytest.fixture
def settings() -> Settings:
    """测试配置，不读取 .env."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        pan123_client_id="client-id",
        pan123_client_secret="client-secret",
        pan123_open_api_url="https://open-api.test",
        pan123_task_api_url="https://task-api.test",
        sweep_enabled=False,
        batch_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """每个测试使用独立的临时 SQLite 文件（多个会话共享同一数据库）."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def make_subscription(session_factory: async_sessionmaker[AsyncSession]) -> MakeSubscription:
    """创建订阅的工厂."""

    async def _make(**overrides: Any) -> Subscription:
        values: dict[str, Any] = {
            "user_id": 1,
            "rss_url": "https://example.com/rss.xml",
            "father_folder_id": "0",
            "father_folder_name": "动漫",
            "cloud_folder_id": "100",
            "cloud_folder_name": "Test Show",
            "refresh_interval": 30,
            "refresh_unit": "minutes",
            "is_active": True,
        }
        values.update(overrides)
        subscription = Subscription(**values)
        async with session_factory() as session:
            session.add(subscription)
            await session.commit()
            await session.refresh(subscription)
        return subscription

    return _make


@pytest.fixture
def make_link(session_factory: async_sessionmaker[AsyncSession]) -> MakeLink:
    """创建磁力链接的工厂."""
    counter = {"n": 0}

    async def _make(subscription_id: int, **overrides: Any) -> Link:
        counter["n"] += 1
        values: dict[str, Any] = {
            "subscription_id": subscription_id,
            "title": f"Episode {counter['n']:02d}",
            "magnet_link": f"magnet:?xt=urn:btih:{counter['n']:040d}",
        }
        values.update(overrides)
        link = Link(**values)
        async with session_factory() as session:
            session.add(link)
            await session.commit()
            await session.refresh(link)
        return link

    return _make


@pytest.fixture
def make_failed_link(make_link: MakeLink) -> MakeLink:
    """创建 failed 状态磁力链接的工厂."""

    async def _make(subscription_id: int, **overrides: Any) -> Link:
        now = datetime(2024, 5, 1, 12, 0, 0)
        values: dict[str, Any] = {
            "download_status": DownloadStatus.FAILED,
            "download_fail_reason": "磁链解析失败",
            "download_created_at": now,
            "download_completed_at": now,
        }
        values.update(overrides)
        return await make_link(subscription_id, **values)

    return _make


@pytest.fixture
def credentials() -> StaticCredentials:
    return StaticCredentials()


@pytest.fixture
def remote() -> AsyncMock:
    """模拟的 123云盘客户端."""
    client = AsyncMock(spec=Pan123Client)
    client.resolve_and_submit.return_value = "task-1"
    client.create_folder.return_value = "200"
    client.poll_status.return_value = TaskProgress(state=TaskState.IN_PROGRESS)
    return client


@pytest.fixture
def feed_parser() -> AsyncMock:
    """模拟的 RSS 解析器."""
    parser = AsyncMock(spec=FeedParser)
    parser.fetch_entries.return_value = []
    parser.parse.return_value = []
    return parser


@pytest.fixture
def downloads(
    remote: AsyncMock, session_factory: async_sessionmaker[AsyncSession]
) -> DownloadManager:
    return DownloadManager(remote, session_factory)


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    feed_parser: AsyncMock,
    remote: AsyncMock,
    downloads: DownloadManager,
    settings: Settings,
) -> Reconciler:
    return Reconciler(session_factory, feed_parser, remote, downloads, settings)


@pytest.fixture
def context(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    remote: AsyncMock,
    downloads: DownloadManager,
    reconciler: Reconciler,
) -> AppContext:
    """由模拟组件组装的应用上下文."""
    return AppContext(
        settings=settings,
        session_factory=session_factory,
        http=MagicMock(spec=httpx.AsyncClient),
        pan123=remote,
        downloads=downloads,
        reconciler=reconciler,
        retries=BulkRetryCoordinator(downloads, session_factory),
    )
