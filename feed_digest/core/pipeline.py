"""
One end-to-end pipeline run.

Components:
- PipelineRunner.run: aggregate, group, summarize and write every bucket, then the index
- PipelineRunner.test_run: the same flow on the first source with a record cap
- PipelineRunner.health_check: ping the summarizer and the writer
- build_runner: wire the runner and its collaborators from an AppConfig
- merge_colliding: fold buckets that would share one document path
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .aggregator import SourceAggregator
from .config import AppConfig
from .errors import RetryExhausted
from .grouping import group_by_label, group_by_watch_terms, sort_newest_first
from .log_handler import log_operation
from .retry import OperationContext, execute
from .summarizer import Channel, OpenAISummarizer, Summarizer, fallback_summary
from .taxonomy import DEFAULT_TAXONOMY
from .types import Bucket, RunSummary, Source
from .utils import utc_now
from .writers import DocumentWriter, FileSystemWriter, VaultApiWriter, document_path

logger = logging.getLogger(__name__)

MODEL_CALL = "model_call"
DOCUMENT_WRITE = "document_write"
HEALTH_CHECK = "health_check"


class PipelineRunner:
    """Run the feed digest pipeline against its collaborators.

    Args:
        config: Application configuration.
        aggregator: Fetches records from the configured sources.
        summarizer: Produces the summary text of each bucket.
        writer: Persists one document per bucket.
        clock: Source of the current time.
        sleep: Backoff sleep forwarded to the retry executor.
    """

    def __init__(
        self,
        config: AppConfig,
        aggregator: SourceAggregator,
        summarizer: Summarizer,
        writer: DocumentWriter,
        *,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.aggregator = aggregator
        self.summarizer = summarizer
        self.writer = writer
        self._clock = clock
        self._sleep = sleep
        self._in_progress = 0

    @property
    def is_running(self) -> bool:
        return self._in_progress > 0

    async def run(self) -> RunSummary:
        """Execute one pipeline run over every enabled source.

        Returns:
            The run summary. Its status is ``skipped`` when another run was
            still in progress and overlapping runs are not allowed, ``empty``
            when no record survived aggregation, ``completed`` otherwise.
        """
        return await self._guarded(self._run, self.config.sources, self.config.recency_window, None)

    async def test_run(self, record_cap: Optional[int] = None) -> RunSummary:
        """Run the pipeline on the first enabled source only.

        The recency window is not applied and at most ``record_cap`` records
        (default ``config.test_record_cap``) are processed.
        """
        sources = self.config.enabled_sources[:1]
        if not sources:
            logger.warning("No enabled feed sources configured for test run")
            return RunSummary(status="empty", started_at=self._clock(), finished_at=self._clock())
        cap = self.config.test_record_cap if record_cap is None else record_cap
        logger.info("Test run against %s (max %d articles)", sources[0].url, cap)
        return await self._guarded(self._run, sources, None, cap)

    async def _guarded(self, run, *args) -> RunSummary:
        if self.is_running and not self.config.schedule.allow_overlapping_runs:
            logger.warning("Previous pipeline run still in progress, skipping this run")
            now = self._clock()
            return RunSummary(status="skipped", started_at=now, finished_at=now)

        self._in_progress += 1
        try:
            return await run(*args)
        finally:
            self._in_progress -= 1

    async def _run(
        self,
        sources: list[Source],
        window: Optional[timedelta],
        record_cap: Optional[int],
    ) -> RunSummary:
        summary = RunSummary(started_at=self._clock())
        logger.info("Starting feed digest pipeline")

        result = await self.aggregator.aggregate(sources, window)
        summary.failed_sources = result.failed_count
        summary.malformed_records = result.malformed_records

        records = result.records
        if record_cap is not None:
            records = records[:record_cap]
        summary.total_records = len(records)

        if not records:
            logger.info("No new articles found")
            summary.status = "empty"
            return self._finish(summary)

        run_date = summary.started_at.astimezone(self.config.schedule.zone)
        hourly = self.config.output.hourly_files
        taxonomy = DEFAULT_TAXONOMY if self.config.infer_missing_labels else None
        label_buckets = merge_colliding(
            group_by_label(records, self.config.fallback_label, taxonomy), "label", run_date, hourly
        )
        watch_buckets = merge_colliding(
            group_by_watch_terms(records, self.config.watch_terms), "watch", run_date, hourly
        )

        semaphore = asyncio.Semaphore(self.config.max_concurrent_buckets)
        jobs = [(bucket, "label") for bucket in label_buckets]
        jobs += [(bucket, "watch") for bucket in watch_buckets]
        outcomes = await asyncio.gather(
            *(self._process_bucket(bucket, channel, run_date, semaphore) for bucket, channel in jobs)
        )

        written_labels = []
        for (_, channel), (path, summarized, document) in zip(jobs, outcomes):
            if not summarized:
                summary.failed_summaries += 1
            if path is None:
                summary.failed_writes += 1
                continue
            summary.documents.append(path)
            if channel == "watch":
                summary.watch_buckets_written += 1
            else:
                summary.buckets_written += 1
                written_labels.append(document)

        if written_labels:
            await self._write_index(written_labels, run_date, summary)
        return self._finish(summary)

    async def _process_bucket(
        self,
        bucket: Bucket,
        channel: Channel,
        run_date: datetime,
        semaphore: asyncio.Semaphore,
    ) -> tuple[Optional[str], bool, Bucket]:
        """Summarize and write one bucket.

        Returns:
            The written document path (None when the write failed), whether
            the summary came from the model and the summarized bucket.
        """
        async with semaphore:
            summarized = True
            try:
                text = await execute(
                    lambda: self.summarizer.summarize(bucket, channel),
                    self.config.retry.model,
                    OperationContext(MODEL_CALL, {"bucket": bucket.name, "channel": channel}),
                    sleep=self._sleep,
                )
            except RetryExhausted:
                summarized = False
                text = fallback_summary(bucket, channel)
                logger.warning("Using fallback summary for %s", bucket.name)

            document = bucket.with_summary(text)
            try:
                path = await execute(
                    lambda: self.writer.write(document, channel, run_date),
                    self.config.retry.write,
                    OperationContext(DOCUMENT_WRITE, {"bucket": bucket.name, "channel": channel}),
                    sleep=self._sleep,
                )
            except RetryExhausted:
                return None, summarized, document
            return path, summarized, document

    async def _write_index(self, buckets: list[Bucket], run_date: datetime, summary: RunSummary) -> None:
        try:
            path = await execute(
                lambda: self.writer.write_index(buckets, run_date),
                self.config.retry.write,
                OperationContext(DOCUMENT_WRITE, {"bucket": "index"}),
                sleep=self._sleep,
            )
        except RetryExhausted:
            summary.failed_writes += 1
            return
        summary.index_document = path
        summary.documents.append(path)

    def _finish(self, summary: RunSummary) -> RunSummary:
        summary.finished_at = self._clock()
        logger.info(
            "Pipeline %s in %.1fs: %d articles, %d label documents, %d watch documents, "
            "%d failed sources, %d failed summaries, %d failed writes",
            summary.status,
            summary.duration_seconds,
            summary.total_records,
            summary.buckets_written,
            summary.watch_buckets_written,
            summary.failed_sources,
            summary.failed_summaries,
            summary.failed_writes,
        )
        return summary

    async def health_check(self) -> bool:
        """Ping the writer and the summarizer once each.

        Returns:
            True when both answered, False otherwise.
        """
        healthy = True
        for name, ping in (("writer", self.writer.ping), ("summarizer", self.summarizer.ping)):
            try:
                await execute(
                    ping,
                    self.config.retry.health,
                    OperationContext(HEALTH_CHECK, {"target": name}),
                    sleep=self._sleep,
                )
            except RetryExhausted:
                healthy = False
                continue
            log_operation(logger, logging.INFO, HEALTH_CHECK, "%s is reachable", name, target=name)
        return healthy

    async def aclose(self) -> None:
        """Close the HTTP clients held by the summarizer and the writer."""
        try:
            await self.writer.aclose()
        finally:
            await self.summarizer.aclose()


def build_writer(config: AppConfig) -> DocumentWriter:
    output = config.output
    if output.backend == "vault":
        return VaultApiWriter(
            api_url=output.vault_api_url,
            api_key=output.vault_api_key or "",
            base_path=output.vault_base_path,
            verify_ssl=output.verify_ssl,
            hourly=output.hourly_files,
        )
    return FileSystemWriter(output.directory, hourly=output.hourly_files)


def build_runner(config: AppConfig) -> PipelineRunner:
    """Create a PipelineRunner with the collaborators selected by ``config``."""
    summarizer = OpenAISummarizer(
        api_key=config.llm.api_key or "",
        model_name=config.llm.model,
        base_url=config.llm.base_url,
        article_limit=config.llm.summary_article_limit,
    )
    return PipelineRunner(
        config,
        SourceAggregator(config.retry.network),
        summarizer,
        build_writer(config),
    )


def merge_colliding(
    buckets: list[Bucket], channel: Channel, run_date: datetime, hourly: bool = False
) -> list[Bucket]:
    """Fold buckets whose documents would land on the same path into one.

    Labels differing only in case or in characters dropped from file names
    (``Tech`` and ``tech``) share a path; their records are merged under the
    first bucket's name.
    """
    merged: dict[str, Bucket] = {}
    for bucket in buckets:
        path = document_path(bucket, channel, run_date, hourly)
        existing = merged.get(path)
        if existing is None:
            merged[path] = bucket
            continue
        logger.warning(
            "Buckets %s and %s share document %s, merging them", existing.name, bucket.name, path
        )
        merged[path] = Bucket(
            name=existing.name,
            records=sort_newest_first(existing.records + bucket.records),
        )
    return list(merged.values())
