"""RSS 订阅 API."""

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, HttpUrl
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from magnetsync.api.deps import get_context, get_owner_id
from magnetsync.context import AppContext
from magnetsync.core.pan123 import Pan123Error
from magnetsync.models.database import get_session
from magnetsync.models.link import Link
from magnetsync.models.subscription import Subscription
from magnetsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rss", tags=["rss"])


class SubscriptionCreate(BaseModel):
    """创建订阅请求."""

    rss_url: HttpUrl
    father_folder_id: str = Field(min_length=1)
    father_folder_name: str = Field(min_length=1)
    cloud_folder_name: str = Field(min_length=1)
    refresh_interval: int = Field(ge=1)
    refresh_unit: Literal["minutes", "hours"] = "minutes"
    is_active: bool = True


class SubscriptionUpdate(BaseModel):
    """更新订阅请求，未提供的字段保持不变."""

    rss_url: HttpUrl | None = None
    father_folder_id: str | None = Field(None, min_length=1)
    father_folder_name: str | None = Field(None, min_length=1)
    cloud_folder_name: str | None = Field(None, min_length=1)
    refresh_interval: int | None = Field(None, ge=1)
    refresh_unit: Literal["minutes", "hours"] | None = None
    is_active: bool | None = None


def _to_dict(subscription: Subscription) -> dict[str, Any]:
    return {
        "id": subscription.id,
        "rss_url": subscription.rss_url,
        "father_folder_id": subscription.father_folder_id,
        "father_folder_name": subscription.father_folder_name,
        "cloud_folder_id": subscription.cloud_folder_id,
        "cloud_folder_name": subscription.cloud_folder_name,
        "refresh_interval": subscription.refresh_interval,
        "refresh_unit": subscription.refresh_unit,
        "is_active": subscription.is_active,
        "last_refresh": (
            subscription.last_refresh.isoformat() if subscription.last_refresh else None
        ),
        "created_at": subscription.created_at.isoformat(),
        "updated_at": subscription.updated_at.isoformat(),
    }


async def _get_owned(
    session: AsyncSession, subscription_id: int, owner_id: int
) -> Subscription:
    subscription = await session.get(Subscription, subscription_id)
    if not subscription or subscription.user_id != owner_id:
        raise HTTPException(status_code=404, detail="RSS订阅不存在")
    return subscription


@router.post("")
async def create_subscription(
    body: SubscriptionCreate,
    owner_id: int = Depends(get_owner_id),
    context: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """创建订阅，先在云盘中创建文件夹，失败则不写入."""
    try:
        folder_id = await context.pan123.create_folder(
            body.cloud_folder_name, body.father_folder_id
        )
    except Pan123Error as e:
        logger.warning(f"创建云盘文件夹失败: {e}")
        raise HTTPException(status_code=502, detail=f"创建云盘文件夹失败: {e}") from e

    subscription = Subscription(
        user_id=owner_id,
        rss_url=str(body.rss_url),
        father_folder_id=body.father_folder_id,
        father_folder_name=body.father_folder_name,
        cloud_folder_id=folder_id,
        cloud_folder_name=body.cloud_folder_name,
        refresh_interval=body.refresh_interval,
        refresh_unit=body.refresh_unit,
        is_active=body.is_active,
    )
    session.add(subscription)
    await session.commit()
    await session.refresh(subscription)

    logger.info(f"RSS订阅已创建: {subscription.id} -> {subscription.rss_url}")
    return _to_dict(subscription)


@router.get("")
async def list_subscriptions(
    search: str | None = Query(None, description="按文件夹名称搜索"),
    owner_id: int = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取订阅列表."""
    stmt = (
        select(Subscription)
        .where(Subscription.user_id == owner_id)
        .order_by(Subscription.id)  # type: ignore[arg-type]
    )
    if search:
        stmt = stmt.where(
            Subscription.father_folder_name.contains(search)  # type: ignore[attr-defined]
        )
    result = await session.execute(stmt)
    subscriptions = result.scalars().all()

    return {
        "total": len(subscriptions),
        "items": [_to_dict(s) for s in subscriptions],
    }


@router.get("/detail")
async def get_subscription(
    id: int = Query(..., ge=1, description="订阅ID"),
    owner_id: int = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取订阅详情."""
    subscription = await _get_owned(session, id, owner_id)
    return _to_dict(subscription)


@router.put("/update")
async def update_subscription(
    body: SubscriptionUpdate,
    id: int = Query(..., ge=1, description="订阅ID"),
    owner_id: int = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """更新订阅."""
    subscription = await _get_owned(session, id, owner_id)

    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if "rss_url" in changes:
        changes["rss_url"] = str(body.rss_url)
    for key, value in changes.items():
        setattr(subscription, key, value)
    subscription.updated_at = utcnow()

    await session.commit()
    await session.refresh(subscription)
    return _to_dict(subscription)


@router.delete("/remove")
async def remove_subscription(
    id: int = Query(..., ge=1, description="订阅ID"),
    owner_id: int = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """删除订阅及其磁力链接."""
    subscription = await _get_owned(session, id, owner_id)

    result = await session.execute(delete(Link).where(Link.subscription_id == id))  # type: ignore[arg-type]
    await session.delete(subscription)
    await session.commit()

    logger.info(f"RSS订阅 {id} 已删除，同时删除 {result.rowcount} 个磁力链接")
    return {"success": True, "id": id, "deleted_links": result.rowcount}


@router.patch("/toggle")
async def toggle_subscription(
    id: int = Query(..., ge=1, description="订阅ID"),
    owner_id: int = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """切换订阅激活状态."""
    subscription = await _get_owned(session, id, owner_id)
    subscription.is_active = not subscription.is_active
    subscription.updated_at = utcnow()
    await session.commit()
    await session.refresh(subscription)
    return _to_dict(subscription)


@router.post("/update-feed")
async def update_feed(
    id: int = Query(..., ge=1, description="订阅ID"),
    force: bool = Query(False, description="忽略刷新间隔"),
    owner_id: int = Depends(get_owner_id),
    context: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """立即刷新单个订阅."""
    await _get_owned(session, id, owner_id)

    result = await context.reconciler.refresh_subscription(id, forced=force)
    if not result.success:
        raise HTTPException(status_code=502, detail=result.error or "更新RSS订阅失败")

    return {
        "new_items": result.new_items,
        "skipped": result.skipped,
    }


@router.get("/preview")
async def preview_feed(
    url: HttpUrl = Query(..., description="RSS地址"),
    context: AppContext = Depends(get_context),
) -> dict:
    """预览订阅中的磁力条目，不写入数据库."""
    entries = await context.reconciler.feed_parser.parse(str(url))
    return {
        "total": len(entries),
        "items": [
            {
                "title": entry.title,
                "magnet_link": entry.magnet_link,
                "web_link": entry.web_link,
                "size": entry.size,
                "pub_date": (
                    entry.published_at.isoformat() if entry.published_at else None
                ),
            }
            for entry in entries
        ],
    }
