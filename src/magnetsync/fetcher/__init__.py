"""订阅抓取模块."""

from magnetsync.fetcher.feed import FeedEntry, FeedFetchError, FeedParser

__all__ = [
    "FeedEntry",
    "FeedFetchError",
    "FeedParser",
]
