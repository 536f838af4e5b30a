"""磁力链接 API."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from magnetsync.api.deps import get_context, get_owner_id
from magnetsync.context import AppContext
from magnetsync.models.database import get_session
from magnetsync.models.link import DownloadStatus, Link
from magnetsync.models.subscription import Subscription

router = APIRouter(prefix="/api/magnet", tags=["magnet"])


class RetryRequest(BaseModel):
    """批量重试请求，magnet_ids 优先."""

    magnet_ids: list[int] | None = None
    rss_subscription_ids: list[int] | None = None


def _iso(value: Any) -> str | None:
    return value.isoformat() if value else None


def _to_dict(link: Link) -> dict[str, Any]:
    return {
        "id": link.id,
        "rss_subscription_id": link.subscription_id,
        "title": link.title,
        "magnet_link": link.magnet_link,
        "web_link": link.web_link,
        "author": link.author,
        "category": link.category,
        "description": link.description,
        "size": link.size,
        "pub_date": _iso(link.pub_date),
        "created_at": _iso(link.created_at),
        "download_status": link.download_status,
        "download_task_id": link.download_task_id,
        "download_file_id": link.download_file_id,
        "download_fail_reason": link.download_fail_reason,
        "download_created_at": _iso(link.download_created_at),
        "download_completed_at": _iso(link.download_completed_at),
    }


@router.get("/list")
async def list_links(
    rss_id: int | None = Query(None, ge=1, description="按订阅筛选"),
    page_num: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(50, ge=1, le=100, description="每页数量"),
    owner_id: int = Depends(get_owner_id),
    context: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取磁力链接列表，顺带刷新本页下载中任务的进度."""
    base = (
        select(Link)
        .join(Subscription, Subscription.id == Link.subscription_id)
        .where(Subscription.user_id == owner_id)
    )
    if rss_id is not None:
        base = base.where(Link.subscription_id == rss_id)

    count_result = await session.execute(
        select(func.count()).select_from(base.subquery())
    )
    total = count_result.scalar() or 0

    result = await session.execute(
        base.order_by(Link.created_at, Link.id)  # type: ignore[arg-type]
        .offset((page_num - 1) * page_size)
        .limit(page_size)
    )
    links = list(result.scalars().all())

    downloading = [
        link
        for link in links
        if link.id is not None and link.download_status == DownloadStatus.DOWNLOADING
    ]
    if downloading:
        await context.reconciler.poll_links([link.id for link in downloading])  # type: ignore[misc]
        for link in downloading:
            await session.refresh(link)

    return {
        "total": total,
        "page_num": page_num,
        "page_size": page_size,
        "items": [_to_dict(link) for link in links],
    }


@router.post("/retry")
async def retry_links(
    body: RetryRequest,
    owner_id: int = Depends(get_owner_id),
    context: AppContext = Depends(get_context),
) -> dict:
    """批量重试失败的下载任务."""
    report = await context.retries.retry_failed(
        magnet_ids=body.magnet_ids,
        subscription_ids=body.rss_subscription_ids,
        owner_id=owner_id,
    )
    return {
        "total": report.total,
        "success": report.success,
        "failed": report.failed,
        "details": [
            {
                "id": detail.id,
                "title": detail.title,
                "success": detail.success,
                "error": detail.error,
            }
            for detail in report.details
        ],
    }


@router.post("/download")
async def create_download(
    id: int = Query(..., ge=1, description="磁力链接ID"),
    owner_id: int = Depends(get_owner_id),
    context: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """手动为单个磁力链接创建离线下载任务."""
    result = await session.execute(
        select(Link)
        .join(Subscription, Subscription.id == Link.subscription_id)
        .where(Link.id == id, Subscription.user_id == owner_id)
    )
    link = result.scalar_one_or_none()
    if not link:
        raise HTTPException(status_code=404, detail="磁力链接不存在")

    if link.download_status in (DownloadStatus.DOWNLOADING, DownloadStatus.COMPLETED):
        message = (
            "下载任务正在进行中"
            if link.download_status == DownloadStatus.DOWNLOADING
            else "下载任务已完成"
        )
        raise HTTPException(status_code=409, detail=message)

    outcome = await context.downloads.create_download(id)
    if not outcome.success:
        if outcome.previous_status in (DownloadStatus.DOWNLOADING, DownloadStatus.COMPLETED):
            raise HTTPException(status_code=409, detail=outcome.error)
        return {
            "success": False,
            "id": id,
            "task_id": None,
            "error": outcome.error,
        }

    return {
        "success": True,
        "id": id,
        "task_id": outcome.task_id,
        "handed_off": outcome.handed_off,
        "error": None,
    }
