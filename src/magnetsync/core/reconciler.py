"""RSS 到离线下载的巡检调度."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from magnetsync.config import Settings
from magnetsync.core.clock import should_refresh
from magnetsync.core.dedup import filter_new_entries
from magnetsync.core.download import DownloadManager, PollOutcome, SubmitOutcome
from magnetsync.core.pan123 import Pan123Client
from magnetsync.fetcher.feed import FeedParser
from magnetsync.models.link import DownloadStatus, Link
from magnetsync.models.subscription import Subscription
from magnetsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


class SweepInProgress(Exception):
    """已有巡检在运行."""


@dataclass
class RefreshResult:
    """单个订阅的刷新结果."""

    subscription_id: int
    success: bool
    new_items: int = 0
    skipped: bool = False
    error: str | None = None


@dataclass
class RefreshSummary:
    """订阅刷新统计."""

    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    total_new_items: int = 0
    results: list[RefreshResult] = field(default_factory=list)

    def add(self, result: RefreshResult) -> None:
        self.results.append(result)
        if not result.success:
            self.failed += 1
        elif result.skipped:
            self.skipped += 1
        else:
            self.success += 1
            self.total_new_items += result.new_items


@dataclass
class SubmitSummary:
    """提交下载任务统计."""

    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[SubmitOutcome] = field(default_factory=list)


@dataclass
class PollSummary:
    """下载进度查询统计."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0
    errors: int = 0


@dataclass
class SweepResult:
    """一次完整巡检的结果."""

    refresh: RefreshSummary
    submissions: SubmitSummary
    polls: PollSummary
    started_at: datetime
    completed_at: datetime | None = None


async def run_in_batches(
    items: Sequence[ItemT],
    batch_size: int,
    worker: Callable[[ItemT], Awaitable[ResultT]],
    delay: float = 0,
) -> list[tuple[ItemT, ResultT | BaseException]]:
    """按固定批次并发执行，上一批全部结束后才开始下一批."""
    size = max(1, batch_size)
    outcomes: list[tuple[ItemT, ResultT | BaseException]] = []

    for start in range(0, len(items), size):
        batch = items[start : start + size]
        logger.debug(f"处理第 {start // size + 1} 批 ({len(batch)} 个)")
        results = await asyncio.gather(
            *(worker(item) for item in batch), return_exceptions=True
        )
        outcomes.extend(zip(batch, results, strict=True))

        if delay > 0 and start + size < len(items):
            await asyncio.sleep(delay)

    return outcomes


class Reconciler:
    """巡检：刷新订阅、提交 pending 链接、收敛 downloading 链接."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed_parser: FeedParser,
        client: Pan123Client,
        downloads: DownloadManager,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.feed_parser = feed_parser
        self.client = client
        self.downloads = downloads
        self.settings = settings
        self._lock = asyncio.Lock()
        self.last_result: SweepResult | None = None

    @property
    def is_running(self) -> bool:
        """是否有巡检正在运行."""
        return self._lock.locked()

    async def run_sweep(self, forced: bool = False) -> SweepResult:
        """执行一次完整巡检."""
        if self._lock.locked():
            msg = "已有巡检任务在运行"
            raise SweepInProgress(msg)

        async with self._lock:
            started_at = utcnow()
            logger.info("开始巡检...")

            refresh = await self.refresh_all(forced=forced)
            submissions = await self.submit_pending()
            polls = await self.poll_downloading()

            result = SweepResult(
                refresh=refresh,
                submissions=submissions,
                polls=polls,
                started_at=started_at,
                completed_at=utcnow(),
            )
            self.last_result = result

            logger.info(
                f"巡检完成: 订阅 {refresh.total} 个 (成功 {refresh.success}, "
                f"跳过 {refresh.skipped}, 失败 {refresh.failed}), "
                f"新增 {refresh.total_new_items} 个磁力链接, "
                f"提交 {submissions.success}/{submissions.total}, "
                f"完成 {polls.completed}, 下载失败 {polls.failed}"
            )
            return result

    # ==================== 订阅刷新 ====================

    async def refresh_all(
        self,
        forced: bool = False,
        subscription_id: int | None = None,
    ) -> RefreshSummary:
        """刷新所有激活的订阅（或指定的一个）."""
        async with self.session_factory() as session:
            stmt = select(Subscription.id).where(Subscription.is_active == True)  # noqa: E712
            if subscription_id is not None:
                stmt = stmt.where(Subscription.id == subscription_id)
            result = await session.execute(stmt)
            subscription_ids = [row for row in result.scalars().all() if row is not None]

        logger.info(f"找到 {len(subscription_ids)} 个激活的RSS订阅")
        summary = RefreshSummary(total=len(subscription_ids))

        outcomes = await run_in_batches(
            subscription_ids,
            self.settings.feed_concurrency,
            lambda sub_id: self.refresh_subscription(sub_id, forced=forced),
        )
        for sub_id, outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.error(f"RSS订阅 {sub_id} 处理异常: {outcome!r}")
                outcome = RefreshResult(sub_id, success=False, error=str(outcome) or "未知错误")
            summary.add(outcome)

        return summary

    async def refresh_subscription(
        self,
        subscription_id: int,
        forced: bool = False,
    ) -> RefreshResult:
        """刷新单个订阅：解析、去重、入库，再更新最后刷新时间."""
        try:
            async with self.session_factory() as session:
                subscription = await session.get(Subscription, subscription_id)
                if subscription is None:
                    return RefreshResult(subscription_id, success=False, error="RSS订阅不存在")

                if not should_refresh(
                    subscription.last_refresh,
                    subscription.refresh_interval,
                    subscription.refresh_unit,
                    forced=forced,
                ):
                    logger.info(f"RSS订阅 {subscription_id} 还未到更新时间")
                    return RefreshResult(subscription_id, success=True, skipped=True)

                await self._ensure_folder(session, subscription)

                logger.info(f"开始更新RSS订阅: {subscription.rss_url}")
                entries = await self.feed_parser.fetch_entries(subscription.rss_url)

                existing = await session.execute(
                    select(Link.magnet_link).where(Link.subscription_id == subscription_id)
                )
                new_entries = filter_new_entries(entries, existing.scalars().all())

                if new_entries:
                    now = utcnow()
                    session.add_all(
                        [
                            Link(
                                subscription_id=subscription_id,
                                title=entry.title,
                                magnet_link=entry.magnet_link,
                                web_link=entry.web_link,
                                author=entry.author,
                                category=entry.category,
                                description=entry.description,
                                size=entry.size,
                                pub_date=entry.published_at,
                                created_at=now,
                            )
                            for entry in new_entries
                        ]
                    )
                    await session.commit()
                    logger.info(f"RSS订阅 {subscription_id} 新增 {len(new_entries)} 个磁力链接")
                else:
                    logger.info(f"RSS订阅 {subscription_id} 没有新的磁力链接")

                now = utcnow()
                subscription.last_refresh = now
                subscription.updated_at = now
                await session.commit()

                return RefreshResult(subscription_id, success=True, new_items=len(new_entries))

        except Exception as e:
            logger.exception(f"更新RSS订阅 {subscription_id} 失败")
            return RefreshResult(subscription_id, success=False, error=str(e) or type(e).__name__)

    async def _ensure_folder(self, session: AsyncSession, subscription: Subscription) -> None:
        """订阅还没有云盘文件夹时补建."""
        if subscription.cloud_folder_id:
            return

        folder_id = await self.client.create_folder(
            subscription.cloud_folder_name, subscription.father_folder_id
        )
        subscription.cloud_folder_id = folder_id
        subscription.updated_at = utcnow()
        await session.commit()
        logger.info(f"RSS订阅 {subscription.id} 已创建云盘文件夹: {folder_id}")

    # ==================== 下载推进 ====================

    async def submit_pending(self) -> SubmitSummary:
        """为一批 pending 链接创建离线下载任务."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Link.id)
                .where(Link.download_status == DownloadStatus.PENDING)
                .where(Link.claimed_at.is_(None))  # type: ignore[union-attr]
                .order_by(Link.created_at, Link.id)  # type: ignore[arg-type]
                .limit(self.settings.pending_batch_size)
            )
            link_ids = [row for row in result.scalars().all() if row is not None]

        logger.info(f"找到 {len(link_ids)} 个待下载的磁力链接")
        summary = SubmitSummary(total=len(link_ids))

        outcomes = await run_in_batches(
            link_ids,
            self.settings.download_concurrency,
            self.downloads.submit,
            delay=self.settings.batch_delay_seconds,
        )
        for link_id, outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.error(f"磁力链接 {link_id} 下载任务创建异常: {outcome!r}")
                outcome = SubmitOutcome(link_id, success=False, error=str(outcome) or "未知错误")

            summary.results.append(outcome)
            if outcome.skipped:
                summary.skipped += 1
            elif outcome.success:
                summary.success += 1
            else:
                summary.failed += 1

        return summary

    async def poll_downloading(self) -> PollSummary:
        """检查所有 downloading 链接的远程进度."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Link.id).where(Link.download_status == DownloadStatus.DOWNLOADING)
            )
            link_ids = [row for row in result.scalars().all() if row is not None]

        logger.info(f"检查 {len(link_ids)} 个正在下载的任务状态")
        return await self.poll_links(link_ids)

    async def poll_links(self, link_ids: Sequence[int]) -> PollSummary:
        """批量查询指定链接的下载进度."""
        summary = PollSummary(total=len(link_ids))

        outcomes = await run_in_batches(
            link_ids, self.settings.download_concurrency, self.downloads.poll
        )
        for link_id, outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.error(f"检查下载状态异常 {link_id}: {outcome!r}")
                outcome = PollOutcome(link_id, error=str(outcome))

            if outcome.error:
                summary.errors += 1
            elif outcome.status == DownloadStatus.COMPLETED:
                summary.completed += 1
            elif outcome.status == DownloadStatus.FAILED:
                summary.failed += 1
            else:
                summary.in_progress += 1

        return summary
