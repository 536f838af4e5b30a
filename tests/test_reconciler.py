"""测试巡检调度."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from magnetsync.core.pan123 import Pan123Error, TaskProgress, TaskState
from magnetsync.core.reconciler import Reconciler, SweepInProgress, run_in_batches
from magnetsync.fetcher.feed import FeedEntry, FeedFetchError
from magnetsync.models.link import DownloadStatus, Link
from magnetsync.models.subscription import Subscription
from magnetsync.utils.dates import utcnow

EP01 = FeedEntry(title="Ep01", magnet_link="magnet:?xt=urn:btih:AAA")


async def _links(session_factory: async_sessionmaker[AsyncSession]) -> list[Link]:
    async with session_factory() as session:
        result = await session.execute(select(Link).order_by(Link.id))  # type: ignore[arg-type]
        return list(result.scalars().all())


async def _subscription(
    session_factory: async_sessionmaker[AsyncSession], subscription_id: int
) -> Subscription:
    async with session_factory() as session:
        subscription = await session.get(Subscription, subscription_id)
        assert subscription is not None
        return subscription


class TestRunInBatches:
    """测试分批并发执行."""

    async def test_results_in_input_order(self) -> None:
        async def double(n: int) -> int:
            await asyncio.sleep(0.001 * (5 - n))
            return n * 2

        outcomes = await run_in_batches([1, 2, 3, 4, 5], 2, double)
        assert outcomes == [(1, 2), (2, 4), (3, 6), (4, 8), (5, 10)]

    async def test_exceptions_are_captured(self) -> None:
        async def work(n: int) -> int:
            if n == 2:
                raise ValueError("boom")
            return n

        outcomes = await run_in_batches([1, 2, 3], 3, work)
        assert outcomes[0] == (1, 1)
        assert isinstance(outcomes[1][1], ValueError)
        assert outcomes[2] == (3, 3)

    async def test_batches_do_not_overlap(self) -> None:
        """上一批全部结束后才开始下一批."""
        active = 0
        peak = 0

        async def work(n: int) -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return n

        await run_in_batches(list(range(7)), 3, work)
        assert peak == 3


class TestRefresh:
    """测试订阅刷新."""

    async def test_new_entry_end_to_end(
        self, reconciler: Reconciler, feed_parser: AsyncMock, make_subscription, session_factory
    ) -> None:
        """从未刷新的订阅发现新条目后生成一个 pending 链接."""
        subscription = await make_subscription(last_refresh=None)
        feed_parser.fetch_entries.return_value = [EP01]

        summary = await reconciler.refresh_all()

        assert summary.total == 1
        assert summary.success == 1
        assert summary.total_new_items == 1

        [link] = await _links(session_factory)
        assert link.subscription_id == subscription.id
        assert link.title == "Ep01"
        assert link.magnet_link == "magnet:?xt=urn:btih:AAA"
        assert link.download_status == DownloadStatus.PENDING

        stored = await _subscription(session_factory, subscription.id)
        assert stored.last_refresh is not None

    async def test_refresh_is_idempotent(
        self, reconciler: Reconciler, feed_parser: AsyncMock, make_subscription, session_factory
    ) -> None:
        subscription = await make_subscription()
        feed_parser.fetch_entries.return_value = [EP01]

        await reconciler.refresh_subscription(subscription.id, forced=True)
        result = await reconciler.refresh_subscription(subscription.id, forced=True)

        assert result.success is True
        assert result.new_items == 0
        assert len(await _links(session_factory)) == 1

    async def test_not_due_is_skipped(
        self, reconciler: Reconciler, feed_parser: AsyncMock, make_subscription
    ) -> None:
        await make_subscription(last_refresh=utcnow() - timedelta(minutes=5))

        summary = await reconciler.refresh_all()

        assert summary.skipped == 1
        assert summary.results[0].skipped is True
        feed_parser.fetch_entries.assert_not_awaited()

    async def test_forced_ignores_clock(
        self, reconciler: Reconciler, feed_parser: AsyncMock, make_subscription
    ) -> None:
        await make_subscription(last_refresh=utcnow())

        summary = await reconciler.refresh_all(forced=True)

        assert summary.skipped == 0
        feed_parser.fetch_entries.assert_awaited_once()

    async def test_inactive_subscriptions_ignored(
        self, reconciler: Reconciler, feed_parser: AsyncMock, make_subscription
    ) -> None:
        await make_subscription(is_active=False)

        summary = await reconciler.refresh_all()

        assert summary.total == 0
        feed_parser.fetch_entries.assert_not_awaited()

    async def test_fetch_failure_keeps_last_refresh(
        self, reconciler: Reconciler, feed_parser: AsyncMock, make_subscription, session_factory
    ) -> None:
        """抓取失败不更新最后刷新时间."""
        subscription = await make_subscription()
        feed_parser.fetch_entries.side_effect = FeedFetchError("抓取RSS失败: 503")

        result = await reconciler.refresh_subscription(subscription.id)

        assert result.success is False
        assert "503" in (result.error or "")
        stored = await _subscription(session_factory, subscription.id)
        assert stored.last_refresh is None

    async def test_partial_failure_isolation(
        self, reconciler: Reconciler, feed_parser: AsyncMock, make_subscription, session_factory
    ) -> None:
        """单个订阅失败不影响其他订阅."""
        broken = await make_subscription(rss_url="https://broken.example.com/rss")
        healthy = await make_subscription(rss_url="https://example.com/rss.xml")

        async def fetch(url: str) -> list[FeedEntry]:
            if "broken" in url:
                raise FeedFetchError("RSS解析错误")
            return [EP01]

        feed_parser.fetch_entries.side_effect = fetch

        summary = await reconciler.refresh_all()

        assert summary.total == 2
        assert summary.success == 1
        assert summary.failed == 1
        [link] = await _links(session_factory)
        assert link.subscription_id == healthy.id
        assert (await _subscription(session_factory, broken.id)).last_refresh is None

    async def test_creates_missing_folder(
        self,
        reconciler: Reconciler,
        remote: AsyncMock,
        feed_parser: AsyncMock,
        make_subscription,
        session_factory,
    ) -> None:
        subscription = await make_subscription(cloud_folder_id=None)

        result = await reconciler.refresh_subscription(subscription.id)

        assert result.success is True
        remote.create_folder.assert_awaited_once_with("Test Show", "0")
        stored = await _subscription(session_factory, subscription.id)
        assert stored.cloud_folder_id == "200"

    async def test_folder_failure_fails_subscription(
        self,
        reconciler: Reconciler,
        remote: AsyncMock,
        feed_parser: AsyncMock,
        make_subscription,
        session_factory,
    ) -> None:
        remote.create_folder.side_effect = Pan123Error("创建文件夹失败: 无法获取access_token")
        subscription = await make_subscription(cloud_folder_id=None)

        result = await reconciler.refresh_subscription(subscription.id)

        assert result.success is False
        feed_parser.fetch_entries.assert_not_awaited()
        stored = await _subscription(session_factory, subscription.id)
        assert stored.cloud_folder_id is None
        assert stored.last_refresh is None

    async def test_unknown_subscription(self, reconciler: Reconciler) -> None:
        result = await reconciler.refresh_subscription(999)
        assert result.success is False


class TestDownloadProgress:
    """测试提交与进度查询."""

    async def test_submit_pending_respects_batch_size(
        self, reconciler: Reconciler, remote: AsyncMock, make_subscription, make_link, session_factory
    ) -> None:
        subscription = await make_subscription()
        for _ in range(12):
            await make_link(subscription.id)

        summary = await reconciler.submit_pending()

        assert summary.total == 10
        assert summary.success == 10
        assert remote.resolve_and_submit.await_count == 10
        statuses = [link.download_status for link in await _links(session_factory)]
        assert statuses.count(DownloadStatus.DOWNLOADING) == 10
        assert statuses.count(DownloadStatus.PENDING) == 2

    async def test_submit_skips_claimed(
        self, reconciler: Reconciler, remote: AsyncMock, make_subscription, make_link
    ) -> None:
        subscription = await make_subscription()
        await make_link(subscription.id, claimed_at=utcnow())
        free = await make_link(subscription.id)

        summary = await reconciler.submit_pending()

        assert summary.total == 1
        remote.resolve_and_submit.assert_awaited_once_with(free.magnet_link, "100")

    async def test_submit_failure_recorded(
        self, reconciler: Reconciler, remote: AsyncMock, make_subscription, make_link
    ) -> None:
        subscription = await make_subscription()
        await make_link(subscription.id)
        await make_link(subscription.id)
        remote.resolve_and_submit.side_effect = [Pan123Error("磁链解析失败"), "task-2"]

        summary = await reconciler.submit_pending()

        assert summary.success == 1
        assert summary.failed == 1

    async def test_poll_downloading(
        self, reconciler: Reconciler, remote: AsyncMock, make_subscription, make_link, session_factory
    ) -> None:
        subscription = await make_subscription()
        now = utcnow()
        for task_id in ("t-done", "t-fail", "t-run"):
            await make_link(
                subscription.id,
                download_status=DownloadStatus.DOWNLOADING,
                download_task_id=task_id,
                download_created_at=now,
            )

        async def poll(task_id: str) -> TaskProgress:
            return {
                "t-done": TaskProgress(state=TaskState.SUCCEEDED, file_id="1"),
                "t-fail": TaskProgress(state=TaskState.FAILED, fail_reason="种子无效"),
                "t-run": TaskProgress(state=TaskState.IN_PROGRESS, progress=50),
            }[task_id]

        remote.poll_status.side_effect = poll

        summary = await reconciler.poll_downloading()

        assert summary.total == 3
        assert summary.completed == 1
        assert summary.failed == 1
        assert summary.in_progress == 1
        statuses = {link.download_task_id: link.download_status for link in await _links(session_factory)}
        assert statuses == {
            "t-done": DownloadStatus.COMPLETED,
            "t-fail": DownloadStatus.FAILED,
            "t-run": DownloadStatus.DOWNLOADING,
        }


class TestSweep:
    """测试完整巡检."""

    async def test_full_sweep(
        self,
        reconciler: Reconciler,
        remote: AsyncMock,
        feed_parser: AsyncMock,
        make_subscription,
        session_factory,
    ) -> None:
        await make_subscription()
        feed_parser.fetch_entries.return_value = [EP01]
        remote.poll_status.return_value = TaskProgress(state=TaskState.IN_PROGRESS)

        result = await reconciler.run_sweep()

        assert result.refresh.total_new_items == 1
        assert result.submissions.success == 1
        assert result.polls.in_progress == 1
        assert result.completed_at is not None
        assert reconciler.last_result is result

        [link] = await _links(session_factory)
        assert link.download_status == DownloadStatus.DOWNLOADING
        assert link.download_task_id == "task-1"

    async def test_overlapping_sweep_rejected(
        self, reconciler: Reconciler, feed_parser: AsyncMock, make_subscription
    ) -> None:
        """已有巡检运行时拒绝新的巡检."""
        await make_subscription()
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_fetch(url: str) -> list[FeedEntry]:
            started.set()
            await release.wait()
            return []

        feed_parser.fetch_entries.side_effect = slow_fetch

        first = asyncio.create_task(reconciler.run_sweep())
        await started.wait()
        assert reconciler.is_running is True

        with pytest.raises(SweepInProgress):
            await reconciler.run_sweep()

        release.set()
        await first
        assert reconciler.is_running is False
