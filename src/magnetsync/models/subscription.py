"""Subscription RSS 订阅模型."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from magnetsync.utils.dates import utcnow


class RefreshUnit(StrEnum):
    """刷新间隔单位."""

    MINUTES = "minutes"
    HOURS = "hours"


class Subscription(SQLModel, table=True):
    """RSS 订阅."""

    __tablename__ = "rss_subscriptions"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, description="所属用户")
    rss_url: str = Field(description="RSS 链接")
    father_folder_id: str = Field(description="父文件夹ID（123云盘）")
    father_folder_name: str = Field(description="父文件夹名称")
    cloud_folder_id: str | None = Field(
        default=None, description="在123云盘中创建的文件夹ID"
    )
    cloud_folder_name: str = Field(description="云盘文件夹名称")
    refresh_interval: int = Field(ge=1, description="刷新间隔")
    refresh_unit: str = Field(
        default=RefreshUnit.MINUTES, description="刷新单位: minutes|hours"
    )
    is_active: bool = Field(default=True, description="是否激活")
    # 时间统一以 naive UTC 保存
    last_refresh: datetime | None = Field(
        default=None, sa_type=DateTime, description="最后刷新时间"
    )
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
