"""
RSS News Fetcher Module.

This module downloads a single feed, parses it with feedparser and
normalizes its entries into Record objects.
"""

import calendar
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

import feedparser
import httpx

from .errors import MalformedRecordError
from .types import FeedPayload, Record, Source
from .utils import strip_html, utc_now

logger = logging.getLogger(__name__)

USER_AGENT = "feed-digest/1.0"
DEFAULT_ARTICLE_TITLE = "Untitled"


class FeedParseError(Exception):
    """The downloaded document is not a feed feedparser can read."""


async def fetch_feed(client: httpx.AsyncClient, source: Source) -> FeedPayload:
    """Download and parse one feed.

    Args:
        client: Shared HTTP client.
        source: Source to fetch.

    Returns:
        The parsed feed with its raw entries.

    Raises:
        httpx.HTTPError: On transport errors and non-2xx responses.
        FeedParseError: When the body cannot be parsed as a feed.
    """
    logger.info("Fetching feed: %s", source.url)
    response = await client.get(source.url, headers={"User-Agent": USER_AGENT})
    response.raise_for_status()

    parsed = feedparser.parse(response.content)
    if parsed.get("bozo") and not parsed.entries:
        raise FeedParseError(f"Unable to parse feed {source.url}: {parsed.get('bozo_exception')}")

    feed = parsed.get("feed", {})
    payload = FeedPayload(
        title=feed.get("title", "") or source.name,
        link=feed.get("link", "") or source.url,
        description=strip_html(feed.get("subtitle", "") or feed.get("description", "")),
        entries=list(parsed.entries),
    )
    logger.info(
        "Successfully fetched feed: %s (%d items)", payload.title, len(payload.entries)
    )
    return payload


def parse_published(entry: Mapping[str, Any]) -> Optional[datetime]:
    """Publication time of an entry in UTC, or None when it cannot be read."""
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        value = entry.get(key)
        if value:
            try:
                return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                continue

    for key in ("published", "updated"):
        value = entry.get(key)
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if isinstance(value, str) and value:
            parsed = _parse_date_string(value)
            if parsed is not None:
                return parsed
    return None


def _parse_date_string(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _categories(entry: Mapping[str, Any]) -> frozenset[str]:
    terms = set()
    for tag in entry.get("tags") or []:
        term = tag.get("term") if isinstance(tag, Mapping) else tag
        if term:
            terms.add(str(term).strip())
    for category in entry.get("categories") or []:
        if isinstance(category, str) and category.strip():
            terms.add(category.strip())
    return frozenset(terms)


def _raw_content(entry: Mapping[str, Any]) -> str:
    content = entry.get("content")
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, Mapping):
            return first.get("value", "") or ""
    if isinstance(content, str):
        return content
    return ""


def normalize_entry(
    entry: Any,
    payload: FeedPayload,
    source: Source,
    clock: Callable[[], datetime] = utc_now,
) -> Record:
    """Turn a raw feed entry into a Record.

    Args:
        entry: One element of 'FeedPayload.entries'.
        payload: The feed the entry belongs to.
        source: The configured source the feed was fetched from.
        clock: Provides the publication time of entries with no usable date.

    Returns:
        The normalized record.

    Raises:
        MalformedRecordError: If the entry is not a mapping or has neither a
            link nor an id.
    """
    if not isinstance(entry, Mapping):
        raise MalformedRecordError(f"Feed entry is not a mapping: {type(entry).__name__}")

    entry_id = str(entry.get("id") or entry.get("guid") or "").strip()
    link = str(entry.get("link") or entry_id).strip()
    if not link:
        raise MalformedRecordError(
            f"Feed entry without link or id in {source.url}: {entry.get('title', '')!r}"
        )

    description = entry.get("summary") or entry.get("description") or ""
    return Record(
        title=str(entry.get("title") or DEFAULT_ARTICLE_TITLE).strip(),
        link=link,
        description=strip_html(str(description)),
        raw_content=_raw_content(entry),
        published_at=parse_published(entry) or clock(),
        author=str(entry.get("author") or entry.get("creator") or ""),
        categories=_categories(entry),
        identity=entry_id or link,
        source_label=source.label,
        source_title=payload.title or source.name,
        source_link=payload.link or source.url,
    )
