"""
Source aggregation.

Fetches every enabled source concurrently, isolates per-source failures,
normalizes entries into records, applies the recency window and removes
duplicates.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import httpx

from .errors import MalformedRecordError, RetryExhausted
from .fetch_rss_news import USER_AGENT, fetch_feed, normalize_entry
from .log_handler import log_operation
from .retry import OperationContext, execute
from .types import AggregateResult, FeedPayload, Record, RetryPolicy, Source
from .utils import utc_now

logger = logging.getLogger(__name__)

FeedFetcher = Callable[[httpx.AsyncClient, Source], Awaitable[FeedPayload]]

FEED_FETCH = "feed_fetch"
FEED_PARSE = "feed_parse"


def filter_recent(
    records: list[Record], window: timedelta, now: datetime
) -> list[Record]:
    """Keep records published in ``[now - window, now)``.

    Args:
        records: Records to filter.
        window: Length of the trailing interval.
        now: Reference instant closing the interval.

    Returns:
        The records inside the window, in their original order.
    """
    cutoff = now - window
    recent = [record for record in records if cutoff <= record.published_at < now]
    logger.info(
        "Filtered %d articles from the past %s out of %d total",
        len(recent),
        window,
        len(records),
    )
    return recent


def remove_duplicates(records: list[Record]) -> list[Record]:
    """Drop records whose ``title_link`` key was already seen, keeping the first."""
    seen: set[str] = set()
    unique = []
    for record in records:
        key = record.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


class SourceAggregator:
    """Fetch all configured sources as one concurrent batch.

    Args:
        policy: Retry policy applied to each feed download.
        client: HTTP client to reuse; a new one is opened per call otherwise.
        fetcher: Coroutine downloading and parsing one source.
        clock: Source of the current time.
        sleep: Backoff sleep forwarded to the retry executor.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        client: Optional[httpx.AsyncClient] = None,
        fetcher: FeedFetcher = fetch_feed,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self._client = client
        self._fetcher = fetcher
        self._clock = clock
        self._sleep = sleep

    async def aggregate(
        self, sources: list[Source], window: Optional[timedelta]
    ) -> AggregateResult:
        """Fetch, normalize, window and deduplicate records from ``sources``.

        Args:
            sources: Configured sources; disabled ones are ignored.
            window: Recency window, or None to keep every record.

        Returns:
            The surviving records and per-run counters. An empty record list
            is a valid outcome, including when every source failed.
        """
        enabled = [source for source in sources if source.enabled]
        if not enabled:
            logger.warning("No enabled feed sources configured")
            return AggregateResult()

        logger.info("Fetching %d RSS feeds", len(enabled))
        if self._client is not None:
            payloads = await self._fetch_all(self._client, enabled)
        else:
            async with httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=self.policy.timeout,
            ) as client:
                payloads = await self._fetch_all(client, enabled)

        result = AggregateResult(total_sources=len(enabled))
        records: list[Record] = []
        for source, payload in zip(enabled, payloads):
            if payload is None:
                result.failed_sources.append(source.url)
                continue
            records.extend(self._normalize(source, payload, result))

        if result.failed_sources:
            logger.warning("%d feeds failed to fetch", result.failed_count)
        logger.info(
            "Successfully fetched %d feeds",
            len(enabled) - result.failed_count,
        )

        result.fetched_records = len(records)
        logger.info("Total articles collected: %d", len(records))

        if window is not None:
            records = filter_recent(records, window, self._clock())
        records = remove_duplicates(records)
        logger.info("Final article count after deduplication: %d", len(records))

        result.records = records
        return result

    async def _fetch_all(
        self, client: httpx.AsyncClient, sources: list[Source]
    ) -> list[Optional[FeedPayload]]:
        outcomes = await asyncio.gather(
            *(self._fetch_source(client, source) for source in sources),
            return_exceptions=True,
        )
        payloads: list[Optional[FeedPayload]] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                log_operation(
                    logger,
                    logging.ERROR,
                    FEED_FETCH,
                    "Unexpected error fetching feed: %s",
                    outcome,
                    exc_info=outcome,
                    url=source.url,
                )
                payloads.append(None)
            else:
                payloads.append(outcome)
        return payloads

    async def _fetch_source(
        self, client: httpx.AsyncClient, source: Source
    ) -> Optional[FeedPayload]:
        context = OperationContext(FEED_FETCH, {"url": source.url, "source": source.name})
        try:
            return await execute(
                lambda: self._fetcher(client, source),
                self.policy,
                context,
                sleep=self._sleep,
            )
        except RetryExhausted as exc:
            log_operation(
                logger,
                logging.ERROR,
                FEED_FETCH,
                "Skipping feed due to persistent errors: %s",
                exc.last_error,
                url=source.url,
                attempts=exc.attempts,
            )
            return None

    def _normalize(
        self, source: Source, payload: FeedPayload, result: AggregateResult
    ) -> list[Record]:
        records = []
        for index, entry in enumerate(payload.entries):
            try:
                records.append(normalize_entry(entry, payload, source, self._clock))
            except (MalformedRecordError, ValueError) as exc:
                result.malformed_records += 1
                log_operation(
                    logger,
                    logging.WARNING,
                    FEED_PARSE,
                    "Skipping malformed entry: %s",
                    exc,
                    url=source.url,
                    index=index,
                )
        return records
