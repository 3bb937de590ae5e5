"""
Document rendering and persistence.

Each bucket becomes one markdown document with YAML front matter, and every
run adds an ``index.md`` listing the label documents of its date directory.
Documents are written either to a local directory or to a vault exposed
through a REST API (Obsidian Local REST API style: ``PUT /vault/<path>``).
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Optional, Protocol

import httpx
import yaml

from .summarizer import Channel
from .types import Bucket
from .utils import sanitize_filename, truncate, utc_now

logger = logging.getLogger(__name__)

WATCH_DIRECTORY = "word"
INDEX_FILE = "index.md"
INDEX_SUMMARY_LENGTH = 150


class DocumentWriter(Protocol):
    async def write(self, bucket: Bucket, channel: Channel, run_date: datetime) -> str: ...

    async def write_index(self, buckets: list[Bucket], run_date: datetime) -> str: ...

    async def ping(self) -> None: ...

    async def aclose(self) -> None: ...


def date_directory(run_date: datetime, hourly: bool = False) -> str:
    """Directory of one run: ``YYYY-MM-DD``, or ``YYYY-MM-DD-HH`` with ``hourly``."""
    return run_date.strftime("%Y-%m-%d-%H" if hourly else "%Y-%m-%d")


def label_file(name: str) -> str:
    """File of a label bucket relative to its date directory; ``tech/ai`` -> ``tech/ai.md``."""
    parts = [sanitize_filename(part) for part in name.split("/") if part.strip()]
    return "/".join(parts or ["untitled"]) + ".md"


def document_path(
    bucket: Bucket, channel: Channel, run_date: datetime, hourly: bool = False
) -> str:
    """Relative path of a bucket's document.

    Label ``tech/ai`` maps to ``<date>/tech/ai.md``; watch buckets go under
    ``<date>/word/``.
    """
    date_dir = date_directory(run_date, hourly)
    if channel == "watch":
        return f"{date_dir}/{WATCH_DIRECTORY}/{sanitize_filename(bucket.name) or 'untitled'}.md"
    return f"{date_dir}/{label_file(bucket.name)}"


def index_path(run_date: datetime, hourly: bool = False) -> str:
    return f"{date_directory(run_date, hourly)}/{INDEX_FILE}"


def _frontmatter(data: dict) -> str:
    return "---\n" + yaml.safe_dump(data, allow_unicode=True, sort_keys=False) + "---"


def render_document(bucket: Bucket, channel: Channel, run_date: datetime) -> str:
    """Markdown document for a summarized bucket."""
    key = "keyword" if channel == "watch" else "tag"
    frontmatter = _frontmatter(
        {
            "date": run_date.strftime("%Y-%m-%d"),
            key: bucket.name,
            "count": bucket.count,
            "tags": [bucket.name],
            "generated": utc_now().isoformat(),
        }
    )

    lines = [frontmatter, "", f"# {bucket.name}", "", "## Summary", "", bucket.summary_text, "", "## Articles", ""]
    for index, record in enumerate(bucket.records, start=1):
        lines.append(f"### {index}. {record.title}")
        lines.append("")
        lines.append(f"**Link**: [{record.link}]({record.link})")
        if record.source_title:
            lines.append(f"**Source**: {record.source_title}")
        if record.author:
            lines.append(f"**Author**: {record.author}")
        lines.append(f"**Published**: {record.published_at.strftime('%Y-%m-%d %H:%M')} UTC")
        if record.description:
            lines.append("")
            lines.append(record.description)
        lines.append("")
    return "\n".join(lines)


def render_index(buckets: list[Bucket], run_date: datetime) -> str:
    """Index of the label documents of one run, largest category first."""
    total = sum(bucket.count for bucket in buckets)
    frontmatter = _frontmatter(
        {
            "date": run_date.strftime("%Y-%m-%d"),
            "type": "index",
            "total_articles": total,
            "categories": len(buckets),
            "generated": utc_now().isoformat(),
        }
    )

    lines = [
        frontmatter,
        "",
        f"# Feed digest - {run_date.strftime('%Y-%m-%d')}",
        "",
        f"{total} articles in {len(buckets)} categories.",
        "",
    ]
    for bucket in sorted(buckets, key=lambda b: b.count, reverse=True):
        lines.append(f"### [{bucket.name.upper()}]({label_file(bucket.name)}) ({bucket.count} articles)")
        lines.append("")
        if bucket.summary_text:
            lines.append(truncate(bucket.summary_text, INDEX_SUMMARY_LENGTH))
            lines.append("")
    return "\n".join(lines)


class FileSystemWriter:
    """Write documents below a local output directory."""

    def __init__(self, output_dir: str, hourly: bool = False):
        self.output_dir = output_dir
        self.hourly = hourly

    async def write(self, bucket: Bucket, channel: Channel, run_date: datetime) -> str:
        path = await self._store(
            document_path(bucket, channel, run_date, self.hourly),
            render_document(bucket, channel, run_date),
        )
        logger.info("Written file: %s (%d articles)", path, bucket.count)
        return path

    async def write_index(self, buckets: list[Bucket], run_date: datetime) -> str:
        path = await self._store(index_path(run_date, self.hourly), render_index(buckets, run_date))
        logger.info("Written index file: %s", path)
        return path

    async def ping(self) -> None:
        await asyncio.to_thread(os.makedirs, self.output_dir, exist_ok=True)
        if not os.access(self.output_dir, os.W_OK):
            raise PermissionError(f"Output directory is not writable: {self.output_dir}")

    async def aclose(self) -> None:
        return None

    async def _store(self, relative_path: str, content: str) -> str:
        path = os.path.join(self.output_dir, *relative_path.split("/"))
        await asyncio.to_thread(self._write_file, path, content)
        return path

    @staticmethod
    def _write_file(path: str, content: str) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)


class VaultApiWriter:
    """Write documents to a vault through its REST API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        base_path: str = "RSS",
        verify_ssl: bool = True,
        client: Optional[httpx.AsyncClient] = None,
        hourly: bool = False,
    ):
        self.api_url = api_url.rstrip("/")
        self.base_path = base_path.strip("/")
        self.hourly = hourly
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.AsyncClient(verify=verify_ssl)

    async def write(self, bucket: Bucket, channel: Channel, run_date: datetime) -> str:
        vault_path = await self._put(
            document_path(bucket, channel, run_date, self.hourly),
            render_document(bucket, channel, run_date),
        )
        logger.info("Created vault file: %s (%d articles)", vault_path, bucket.count)
        return vault_path

    async def write_index(self, buckets: list[Bucket], run_date: datetime) -> str:
        vault_path = await self._put(index_path(run_date, self.hourly), render_index(buckets, run_date))
        logger.info("Created index file: %s", vault_path)
        return vault_path

    async def ping(self) -> None:
        response = await self._client.get(f"{self.api_url}/vault/", headers=self._headers)
        response.raise_for_status()
        logger.info("Successfully connected to vault API at %s", self.api_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _put(self, relative_path: str, content: str) -> str:
        vault_path = f"{self.base_path}/{relative_path}" if self.base_path else relative_path
        response = await self._client.put(
            f"{self.api_url}/vault/{vault_path}",
            content=content.encode("utf-8"),
            headers={**self._headers, "Content-Type": "text/markdown"},
        )
        response.raise_for_status()
        return vault_path
