"""定时任务定义."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from magnetsync.context import AppContext
from magnetsync.core.reconciler import SweepInProgress

logger = logging.getLogger(__name__)


async def sweep_task(context: AppContext) -> None:
    """巡检任务：刷新订阅并推进离线下载."""
    if not context.settings.sweep_enabled:
        logger.info("巡检已禁用，跳过")
        return

    # 检查是否已有任务在运行
    if context.reconciler.is_running:
        logger.info("已有巡检任务在运行，跳过本次调度")
        return

    try:
        await context.reconciler.run_sweep()
    except SweepInProgress:
        logger.info("已有巡检任务在运行，跳过本次调度")
    except Exception as e:
        logger.exception(f"巡检任务失败: {e}")


def create_scheduler(context: AppContext) -> AsyncIOScheduler:
    """创建并启动定时任务调度器."""
    interval = context.settings.sweep_interval_minutes
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        sweep_task,
        "interval",
        minutes=interval,
        args=[context],
        id="sweep_task",
        name="RSS 巡检 + 离线下载",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # 启动时立即执行一次
    scheduler.add_job(
        sweep_task,
        "date",  # 一次性任务
        args=[context],
        id="sweep_task_initial",
        name="初始巡检",
    )

    scheduler.start()
    logger.info(f"定时任务调度器已启动，巡检间隔: {interval} 分钟")

    return scheduler


async def shutdown_scheduler(scheduler: AsyncIOScheduler | None) -> None:
    """关闭定时任务调度器."""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("定时任务调度器已关闭")
