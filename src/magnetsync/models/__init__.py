"""数据模型."""

from magnetsync.models.database import get_session, init_db
from magnetsync.models.link import DownloadStatus, Link
from magnetsync.models.subscription import RefreshUnit, Subscription

__all__ = [
    "DownloadStatus",
    "Link",
    "RefreshUnit",
    "Subscription",
    "get_session",
    "init_db",
]
