"""订阅条目去重."""

from collections.abc import Iterable
from dataclasses import replace

from magnetsync.fetcher.feed import FeedEntry


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def filter_new_entries(
    entries: Iterable[FeedEntry],
    existing_magnets: Iterable[str],
) -> list[FeedEntry]:
    """过滤出订阅中尚未保存的条目，并清理字段（保持原顺序）."""
    seen = {magnet.strip() for magnet in existing_magnets}
    fresh: list[FeedEntry] = []

    for entry in entries:
        title = _clean(entry.title)
        magnet = _clean(entry.magnet_link)
        if not title or not magnet or magnet in seen:
            continue

        seen.add(magnet)
        fresh.append(
            replace(
                entry,
                title=title,
                magnet_link=magnet,
                web_link=_clean(entry.web_link),
                author=_clean(entry.author),
                category=_clean(entry.category),
                description=_clean(entry.description),
                size=_clean(entry.size),
            )
        )

    return fresh
