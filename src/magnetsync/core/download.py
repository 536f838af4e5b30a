"""磁力链接离线下载状态机."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from magnetsync.core.pan123 import Pan123Client, TaskProgress, TaskState
from magnetsync.models.link import DownloadStatus, Link
from magnetsync.models.subscription import Subscription
from magnetsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

DEFAULT_FAIL_REASON = "离线下载失败"


class InvalidTransition(Exception):
    """当前状态不允许该状态转换."""


# ==================== 状态转换 ====================


def _require(link: Link, expected: DownloadStatus, action: str) -> None:
    if link.download_status != expected:
        msg = f"磁力链接 {link.id} 当前状态为 {link.download_status}，不能{action}"
        raise InvalidTransition(msg)


def _verify(link: Link) -> None:
    problems = link.invariant_violations()
    if problems:
        msg = f"磁力链接 {link.id} 状态不一致: {'; '.join(problems)}"
        raise InvalidTransition(msg)


def mark_submitted(link: Link, task_id: str, now: datetime) -> None:
    """pending -> downloading."""
    _require(link, DownloadStatus.PENDING, "标记为下载中")
    link.download_status = DownloadStatus.DOWNLOADING
    link.download_task_id = task_id
    link.download_created_at = now
    link.download_completed_at = None
    link.download_fail_reason = None
    link.claimed_at = None
    _verify(link)


def mark_submit_failed(link: Link, reason: str, now: datetime) -> None:
    """pending -> failed，提交失败本身就是终态."""
    _require(link, DownloadStatus.PENDING, "标记为提交失败")
    link.download_status = DownloadStatus.FAILED
    link.download_task_id = None
    link.download_fail_reason = reason or DEFAULT_FAIL_REASON
    link.download_created_at = now
    link.download_completed_at = now
    link.claimed_at = None
    _verify(link)


def apply_progress(link: Link, progress: TaskProgress, now: datetime) -> bool:
    """
    downloading -> downloading | completed | failed.

    Returns:
        bool: 状态是否发生变化
    """
    _require(link, DownloadStatus.DOWNLOADING, "更新下载进度")

    match progress.state:
        case TaskState.IN_PROGRESS:
            return False
        case TaskState.SUCCEEDED:
            link.download_status = DownloadStatus.COMPLETED
            link.download_file_id = progress.file_id
            link.download_completed_at = now
        case TaskState.FAILED:
            link.download_status = DownloadStatus.FAILED
            link.download_fail_reason = progress.fail_reason or DEFAULT_FAIL_REASON
            link.download_completed_at = now

    _verify(link)
    return True


# 重试时清空的下载字段
RETRY_RESET_VALUES = {
    "download_status": DownloadStatus.PENDING,
    "download_task_id": None,
    "download_file_id": None,
    "download_fail_reason": None,
    "download_created_at": None,
    "download_completed_at": None,
    "claimed_at": None,
}


# ==================== 结果 ====================


@dataclass
class SubmitOutcome:
    """一次提交的结果."""

    link_id: int
    success: bool
    task_id: str | None = None
    error: str | None = None
    skipped: bool = False


@dataclass
class PollOutcome:
    """一次进度查询的结果."""

    link_id: int
    status: DownloadStatus | None = None
    changed: bool = False
    error: str | None = None


@dataclass
class RetryOutcome:
    """一次重试的结果."""

    link_id: int
    success: bool
    title: str | None = None
    error: str | None = None
    previous_status: DownloadStatus | None = None
    new_status: DownloadStatus | None = None
    task_id: str | None = None
    handed_off: bool = False


# ==================== 持久化 ====================


class DownloadManager:
    """驱动单个磁力链接在状态机中流转，并持久化每一步."""

    def __init__(
        self,
        client: Pan123Client,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.client = client
        self.session_factory = session_factory

    async def submit(self, link_id: int) -> SubmitOutcome:
        """认领 pending 链接并提交离线下载任务."""
        now = utcnow()

        async with self.session_factory() as session:
            claimed = await self._claim(session, link_id, now)
            if not claimed:
                link = await session.get(Link, link_id)
                if link is None:
                    return SubmitOutcome(link_id, success=False, error="磁力链接不存在")
                logger.info(f"磁力链接 {link_id} 已被认领或不再是 pending，跳过")
                return SubmitOutcome(
                    link_id,
                    success=False,
                    task_id=link.download_task_id,
                    error=f"当前状态为 {link.download_status}，无需提交",
                    skipped=True,
                )

        try:
            return await self._submit_claimed(link_id)
        except BaseException:
            # 未能落库（包括被取消）时释放认领，下次巡检可重新提交
            await self._release_claim(link_id)
            raise

    async def _submit_claimed(self, link_id: int) -> SubmitOutcome:
        async with self.session_factory() as session:
            link = await session.get(Link, link_id)
            if link is None:
                return SubmitOutcome(link_id, success=False, error="磁力链接不存在")
            subscription = await session.get(Subscription, link.subscription_id)

            try:
                if subscription is None or not subscription.cloud_folder_id:
                    msg = "RSS订阅未配置云盘文件夹ID"
                    raise ValueError(msg)
                task_id = await self.client.resolve_and_submit(
                    link.magnet_link, subscription.cloud_folder_id
                )
            except Exception as e:
                reason = str(e) or type(e).__name__
                mark_submit_failed(link, reason, utcnow())
                await session.commit()
                logger.warning(f"磁力链接 {link_id} 创建下载任务失败: {reason}")
                return SubmitOutcome(link_id, success=False, error=reason)

            mark_submitted(link, task_id, utcnow())
            await session.commit()
            logger.info(f"磁力链接 {link_id} 下载任务创建成功，taskId: {task_id}")
            return SubmitOutcome(link_id, success=True, task_id=task_id)

    async def poll(self, link_id: int) -> PollOutcome:
        """查询 downloading 链接的远程进度并收敛本地状态."""
        async with self.session_factory() as session:
            link = await session.get(Link, link_id)
            if link is None:
                return PollOutcome(link_id, error="磁力链接不存在")
            if link.download_status != DownloadStatus.DOWNLOADING or not link.download_task_id:
                return PollOutcome(link_id, status=DownloadStatus(link.download_status))

            try:
                progress = await self.client.poll_status(link.download_task_id)
            except Exception as e:
                logger.warning(f"检查下载状态失败 {link_id}: {e}")
                return PollOutcome(
                    link_id, status=DownloadStatus.DOWNLOADING, error=str(e)
                )

            changed = apply_progress(link, progress, utcnow())
            if changed:
                await session.commit()
                if link.download_status == DownloadStatus.COMPLETED:
                    logger.info(f"下载完成: {link.title} -> {link.download_file_id}")
                else:
                    logger.info(f"下载失败: {link.title} -> {link.download_fail_reason}")

            return PollOutcome(
                link_id, status=DownloadStatus(link.download_status), changed=changed
            )

    async def retry(self, link_id: int) -> RetryOutcome:
        """重置 failed 链接为 pending 并立即重新提交."""
        async with self.session_factory() as session:
            link = await session.get(Link, link_id)
            if link is None:
                return RetryOutcome(link_id, success=False, error="磁力链接不存在")

            title = link.title
            previous = DownloadStatus(link.download_status)
            match previous:
                case DownloadStatus.DOWNLOADING:
                    return RetryOutcome(
                        link_id,
                        success=False,
                        title=title,
                        error="下载任务正在进行中，无需重试",
                        previous_status=previous,
                    )
                case DownloadStatus.COMPLETED:
                    return RetryOutcome(
                        link_id,
                        success=False,
                        title=title,
                        error="下载任务已完成，无需重试",
                        previous_status=previous,
                    )
                case DownloadStatus.FAILED:
                    result = await session.execute(
                        update(Link)
                        .where(Link.id == link_id)  # type: ignore[arg-type]
                        .where(Link.download_status == DownloadStatus.FAILED)  # type: ignore[arg-type]
                        .values(**RETRY_RESET_VALUES)
                    )
                    await session.commit()
                    if not result.rowcount:
                        return RetryOutcome(
                            link_id,
                            success=False,
                            title=title,
                            error="状态已被其他任务修改，无需重试",
                            previous_status=previous,
                        )
                    logger.info(f"磁力链接 {link_id} 状态已重置，准备重新创建下载任务")
                case DownloadStatus.PENDING:
                    pass

        submitted = await self.submit(link_id)
        if submitted.skipped:
            # 重置后被并发的巡检认领，由对方完成提交
            logger.info(f"磁力链接 {link_id} 已由其他任务提交")
            return RetryOutcome(
                link_id,
                success=True,
                title=title,
                previous_status=previous,
                task_id=submitted.task_id,
                handed_off=True,
            )

        return RetryOutcome(
            link_id,
            success=submitted.success,
            title=title,
            error=submitted.error,
            previous_status=previous,
            new_status=(
                DownloadStatus.DOWNLOADING if submitted.success else DownloadStatus.FAILED
            ),
            task_id=submitted.task_id,
        )

    async def create_download(self, link_id: int) -> RetryOutcome:
        """
        手动为单个链接创建下载任务.

        pending 直接提交，failed 走重试流程，downloading/completed 拒绝。
        """
        return await self.retry(link_id)

    async def _claim(self, session: AsyncSession, link_id: int, now: datetime) -> bool:
        """原子认领: 仅当仍为 pending 且未被认领时成功."""
        result = await session.execute(
            update(Link)
            .where(Link.id == link_id)  # type: ignore[arg-type]
            .where(Link.download_status == DownloadStatus.PENDING)  # type: ignore[arg-type]
            .where(Link.claimed_at.is_(None))  # type: ignore[union-attr]
            .values(claimed_at=now)
        )
        await session.commit()
        return bool(result.rowcount)

    async def _release_claim(self, link_id: int) -> None:
        """清除仍为 pending 的链接上的认领标记."""
        async with self.session_factory() as session:
            await session.execute(
                update(Link)
                .where(Link.id == link_id)  # type: ignore[arg-type]
                .where(Link.download_status == DownloadStatus.PENDING)  # type: ignore[arg-type]
                .where(Link.claimed_at.isnot(None))  # type: ignore[union-attr]
                .values(claimed_at=None)
            )
            await session.commit()
        logger.info(f"磁力链接 {link_id} 提交中断，已释放认领")
