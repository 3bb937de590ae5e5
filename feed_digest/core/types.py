"""
Type definitions and Pydantic models for the feed digest pipeline.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    model_validator,
)


class Source(BaseModel):
    """Configuration for a single feed source."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str = Field(..., description="URL of the RSS/Atom feed")
    label: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("label", "parentTag", "parent_tag"),
        description="Hierarchical output label, e.g. 'tech/ai'",
    )
    name: str = Field(default="", description="Display name of the source")
    enabled: bool = True


class Record(BaseModel):
    """A normalized article fetched from a source."""

    model_config = ConfigDict(frozen=True)

    title: str
    link: str
    description: str = ""
    raw_content: str = ""
    published_at: datetime
    author: str = ""
    categories: frozenset[str] = Field(default_factory=frozenset)
    identity: str = ""
    source_label: Optional[str] = None
    source_title: str = ""
    source_link: str = ""

    @model_validator(mode="before")
    @classmethod
    def _default_identity(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("identity"):
            data = {**data, "identity": data.get("link", "")}
        return data

    @property
    def dedup_key(self) -> str:
        return f"{self.title}_{self.link}"


class Bucket(BaseModel):
    """A named group of records destined for one output document."""

    name: str
    records: list[Record] = Field(default_factory=list)
    summary_text: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def count(self) -> int:
        return len(self.records)

    def with_summary(self, summary_text: str) -> "Bucket":
        """Return a copy of the bucket carrying the given summary."""
        return self.model_copy(update={"summary_text": summary_text})


class RetryPolicy(BaseModel):
    """Attempts, backoff and timeout for one class of operation.

    Delays and timeouts are expressed in seconds.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=0, description="Retries after the first try")
    base_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)

    def delay_for(self, attempt_index: int) -> float:
        """Delay to wait after the failed attempt number ``attempt_index`` (1-based)."""
        return self.base_delay * self.backoff_multiplier ** (attempt_index - 1)


class RunState(BaseModel):
    """Process-wide scheduling state, owned by the daemon."""

    is_scheduler_active: bool = False
    is_shutting_down: bool = False
    cron_expression: str = ""
    timezone: str = ""
    last_run_started_at: Optional[datetime] = None


class FeedPayload(BaseModel):
    """A parsed feed as returned by a single fetch."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    title: str = ""
    link: str = ""
    description: str = ""
    entries: list[Any] = Field(default_factory=list)


class AggregateResult(BaseModel):
    """Outcome of fetching every configured source once."""

    records: list[Record] = Field(default_factory=list)
    total_sources: int = 0
    failed_sources: list[str] = Field(default_factory=list)
    fetched_records: int = 0
    malformed_records: int = 0

    @property
    def failed_count(self) -> int:
        return len(self.failed_sources)


class RunSummary(BaseModel):
    """Counters reported at the end of one pipeline run."""

    status: str = "completed"
    started_at: datetime
    finished_at: Optional[datetime] = None
    total_records: int = 0
    failed_sources: int = 0
    malformed_records: int = 0
    buckets_written: int = 0
    watch_buckets_written: int = 0
    failed_summaries: int = 0
    failed_writes: int = 0
    documents: list[str] = Field(default_factory=list)
    index_document: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()
