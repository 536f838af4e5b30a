"""RSS/Atom 订阅解析器."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import feedparser
import httpx

from magnetsync.utils.dates import struct_time_to_datetime

logger = logging.getLogger(__name__)

MAGNET_SCHEME = "magnet:"


class FeedFetchError(Exception):
    """订阅抓取或解析失败."""


@dataclass
class FeedEntry:
    """订阅中的一个候选条目."""

    title: str
    magnet_link: str
    web_link: str | None = None
    author: str | None = None
    category: str | None = None
    description: str | None = None
    size: str | None = None
    published_at: datetime | None = None


class FeedParser:
    """抓取 RSS 并提取带磁力链接 enclosure 的条目."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def parse(self, url: str) -> list[FeedEntry]:
        """
        抓取并解析订阅，失败时返回空列表.

        用于订阅预览接口，订阅源不可用时只记录日志。
        """
        try:
            return await self.fetch_entries(url)
        except FeedFetchError as e:
            logger.warning(f"解析RSS失败: {url} - {e}")
            return []

    async def fetch_entries(self, url: str) -> list[FeedEntry]:
        """抓取并解析订阅，失败时抛出 FeedFetchError."""
        try:
            response = await self._client.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            msg = f"抓取RSS失败: {e}"
            raise FeedFetchError(msg) from e

        loop = asyncio.get_running_loop()
        feed = await loop.run_in_executor(None, feedparser.parse, response.content)

        if feed.bozo and not feed.entries:
            reason = getattr(feed, "bozo_exception", None) or "未知错误"
            msg = f"RSS解析错误: {str(reason)[:80]}"
            raise FeedFetchError(msg)

        return extract_entries(feed.entries)


def extract_entries(raw_entries: list[Any]) -> list[FeedEntry]:
    """从 feedparser 条目中提取候选条目，保持订阅原有顺序."""
    entries: list[FeedEntry] = []

    for raw in raw_entries:
        title = (raw.get("title") or "").strip()
        enclosure = _magnet_enclosure(raw)
        if not title or enclosure is None:
            continue

        entries.append(
            FeedEntry(
                title=title,
                magnet_link=enclosure["href"].strip(),
                web_link=raw.get("link"),
                author=raw.get("author"),
                category=_first_category(raw),
                description=raw.get("summary"),
                size=enclosure.get("length") or None,
                published_at=struct_time_to_datetime(
                    raw.get("published_parsed") or raw.get("updated_parsed")
                ),
            )
        )

    return entries


def _magnet_enclosure(raw: Any) -> dict[str, Any] | None:
    """返回第一个磁力链接 enclosure."""
    for enclosure in raw.get("enclosures") or []:
        href = (enclosure.get("href") or "").strip()
        if href.startswith(MAGNET_SCHEME):
            return enclosure
    return None


def _first_category(raw: Any) -> str | None:
    tags = raw.get("tags") or []
    if tags:
        return tags[0].get("term")
    return raw.get("category")
