"""批量重试失败的离线下载."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from magnetsync.core.download import DownloadManager
from magnetsync.models.link import DownloadStatus, Link
from magnetsync.models.subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass
class RetryDetail:
    """单个链接的重试结果."""

    id: int
    title: str
    success: bool
    error: str | None = None


@dataclass
class BulkRetryReport:
    """批量重试结果."""

    total: int = 0
    success: int = 0
    failed: int = 0
    details: list[RetryDetail] = field(default_factory=list)


class BulkRetryCoordinator:
    """挑选 failed 链接并逐个重试."""

    def __init__(
        self,
        downloads: DownloadManager,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.downloads = downloads
        self.session_factory = session_factory

    async def select_failed(
        self,
        magnet_ids: Sequence[int] | None = None,
        subscription_ids: Sequence[int] | None = None,
        owner_id: int | None = None,
    ) -> list[Link]:
        """
        查询需要重试的链接.

        magnet_ids 优先于 subscription_ids；都不提供时选择全部失败链接。
        """
        stmt = (
            select(Link)
            .where(Link.download_status == DownloadStatus.FAILED)
            .order_by(Link.id)  # type: ignore[arg-type]
        )
        if magnet_ids:
            stmt = stmt.where(Link.id.in_(magnet_ids))  # type: ignore[union-attr]
        elif subscription_ids:
            stmt = stmt.where(Link.subscription_id.in_(subscription_ids))  # type: ignore[attr-defined]

        if owner_id is not None:
            stmt = stmt.join(Subscription, Subscription.id == Link.subscription_id).where(
                Subscription.user_id == owner_id
            )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def retry_failed(
        self,
        magnet_ids: Sequence[int] | None = None,
        subscription_ids: Sequence[int] | None = None,
        owner_id: int | None = None,
    ) -> BulkRetryReport:
        """批量重试，单个链接的异常不影响其余链接."""
        links = await self.select_failed(magnet_ids, subscription_ids, owner_id)
        report = BulkRetryReport(total=len(links))

        if not links:
            logger.info("没有找到需要重试的失败任务")
            return report

        for link in links:
            if link.id is None:
                continue
            try:
                outcome = await self.downloads.retry(link.id)
            except Exception:
                logger.exception(f"重试任务 {link.id} 失败")
                report.failed += 1
                report.details.append(
                    RetryDetail(id=link.id, title=link.title, success=False, error="重试失败")
                )
                continue

            if outcome.success:
                report.success += 1
                report.details.append(RetryDetail(id=link.id, title=link.title, success=True))
            else:
                report.failed += 1
                report.details.append(
                    RetryDetail(
                        id=link.id,
                        title=link.title,
                        success=False,
                        error=outcome.error or "重试失败",
                    )
                )

        logger.info(f"批量重试完成，成功: {report.success}，失败: {report.failed}")
        return report
