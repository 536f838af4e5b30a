"""Link 磁力链接模型."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Column, DateTime, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel

from magnetsync.utils.dates import utcnow


class DownloadStatus(StrEnum):
    """离线下载状态."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({DownloadStatus.COMPLETED, DownloadStatus.FAILED})


class Link(SQLModel, table=True):
    """RSS 中发现的磁力链接，以及它的离线下载进度."""

    __tablename__ = "magnet_links"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("subscription_id", "magnet_link", name="uq_subscription_magnet"),
    )

    id: int | None = Field(default=None, primary_key=True)
    subscription_id: int = Field(
        foreign_key="rss_subscriptions.id", index=True, description="所属订阅"
    )
    title: str = Field(description="种子标题")
    magnet_link: str = Field(description="磁力链接，订阅内唯一")
    web_link: str | None = Field(default=None, description="网页链接")
    author: str | None = Field(default=None, description="作者")
    category: str | None = Field(default=None, description="分类")
    description: str | None = Field(default=None, description="描述")
    size: str | None = Field(default=None, description="文件大小（原样保存）")
    # 时间统一以 naive UTC 保存
    pub_date: datetime | None = Field(default=None, sa_type=DateTime, description="发布时间")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    # 离线下载相关字段
    download_status: DownloadStatus = Field(
        default=DownloadStatus.PENDING,
        sa_column=Column(
            SAEnum(
                DownloadStatus,
                native_enum=False,
                length=16,
                values_callable=lambda enum: [member.value for member in enum],
            ),
            nullable=False,
            index=True,
        ),
    )
    download_task_id: str | None = Field(default=None, description="离线下载任务ID")
    download_file_id: str | None = Field(default=None, description="下载完成后的文件ID")
    download_fail_reason: str | None = Field(default=None, description="下载失败原因")
    download_created_at: datetime | None = Field(
        default=None, sa_type=DateTime, description="提交任务时间"
    )
    download_completed_at: datetime | None = Field(
        default=None, sa_type=DateTime, description="进入终态的时间"
    )
    claimed_at: datetime | None = Field(
        default=None, sa_type=DateTime, description="提交任务前的占用标记，防止重复提交"
    )

    def invariant_violations(self) -> list[str]:
        """返回违反的下载状态约束（为空表示一致）."""
        problems: list[str] = []
        status = DownloadStatus(self.download_status)
        if status == DownloadStatus.PENDING and self.download_task_id is not None:
            problems.append("pending 状态不应有任务ID")
        if status == DownloadStatus.DOWNLOADING:
            if self.download_task_id is None:
                problems.append("downloading 状态必须有任务ID")
            if self.download_completed_at is not None:
                problems.append("downloading 状态不应有完成时间")
        if status in TERMINAL_STATUSES and self.download_completed_at is None:
            problems.append(f"{status} 状态必须有完成时间")
        if status == DownloadStatus.COMPLETED and self.download_file_id is None:
            problems.append("completed 状态必须有文件ID")
        return problems
