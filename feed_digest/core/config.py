"""
Configuration loading.

Feed sources and watch words live in JSON files; every other setting comes
from environment variables (optionally read from a ``.env`` file). The result
is a single validated AppConfig built once at process start and passed to the
components that need it.
"""

import json
import logging
import os
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .types import RetryPolicy, Source

logger = logging.getLogger(__name__)

DEFAULT_FEEDS_FILE = os.path.join("config", "feeds.json")
DEFAULT_WATCH_WORDS_FILE = os.path.join("config", "watch_words.json")
DEFAULT_LLM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


class RetrySettings(BaseModel):
    """Named retry policies, one per kind of external call."""

    network: RetryPolicy = RetryPolicy(max_attempts=3, base_delay=1.0, timeout=30.0)
    model: RetryPolicy = RetryPolicy(max_attempts=3, base_delay=2.0, timeout=60.0)
    write: RetryPolicy = RetryPolicy(max_attempts=3, base_delay=1.0, timeout=10.0)
    health: RetryPolicy = RetryPolicy(max_attempts=0, base_delay=1.0, timeout=5.0)


class ScheduleSettings(BaseModel):
    enabled: bool = False
    cron: str = "0 */12 * * *"
    timezone: str = "Asia/Tokyo"
    run_on_start: bool = False
    allow_overlapping_runs: bool = False

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class OutputSettings(BaseModel):
    backend: Literal["filesystem", "vault"] = "filesystem"
    directory: str = "./output"
    vault_api_url: str = "http://127.0.0.1:27123"
    vault_api_key: Optional[str] = None
    vault_base_path: str = "RSS"
    verify_ssl: bool = True
    hourly_files: bool = False


class LLMSettings(BaseModel):
    api_key: Optional[str] = None
    model: str = "gemini-2.5-flash"
    base_url: str = DEFAULT_LLM_BASE_URL
    summary_article_limit: int = Field(default=10, ge=1)


class AppConfig(BaseModel):
    """Everything the pipeline needs, loaded once per process."""

    sources: list[Source] = Field(default_factory=list)
    watch_terms: list[str] = Field(default_factory=list)
    recency_window_hours: float = Field(default=24.0, gt=0)
    fallback_label: str = "tech"
    infer_missing_labels: bool = False
    retry: RetrySettings = Field(default_factory=RetrySettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    test_record_cap: int = Field(default=2, ge=1)
    max_concurrent_buckets: int = Field(default=4, ge=1)
    log_level: str = "INFO"
    log_file: Optional[str] = None
    debug: bool = False

    @property
    def recency_window(self) -> timedelta:
        return timedelta(hours=self.recency_window_hours)

    @property
    def enabled_sources(self) -> list[Source]:
        return [source for source in self.sources if source.enabled]

    def require_credentials(self) -> None:
        """Fail fast on settings without which no run can succeed.

        Raises:
            ConfigurationError: If a credential is missing or no source is enabled.
        """
        missing = []
        if not self.llm.api_key:
            missing.append("LLM_API_KEY")
        if self.output.backend == "vault" and not self.output.vault_api_key:
            missing.append("VAULT_API_KEY")
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
        if not self.enabled_sources:
            raise ConfigurationError(
                "No RSS feeds configured. Edit config/feeds.json or set RSS_FEEDS."
            )


class ConfigLoader:
    """Read the JSON configuration files."""

    def load_news_sources(self, config_file: str) -> list[dict[str, Any]]:
        """Load feed source definitions.

        Accepts either ``{"feeds": [...]}`` or a bare list; list items may be
        objects or plain URLs.

        Args:
            config_file: Path to the JSON file.

        Returns:
            Raw source dictionaries.

        Raises:
            ConfigurationError: If the file is missing, unreadable or has an
                unknown structure.
        """
        data = self._read_json(config_file)
        if isinstance(data, Mapping):
            data = data.get("feeds")
        if not isinstance(data, list):
            raise ConfigurationError(f"Invalid feeds file structure: {config_file}")

        sources = [{"url": item} if isinstance(item, str) else item for item in data]
        logger.info("Loaded %d news sources from %s", len(sources), config_file)
        return sources

    def load_keywords(self, config_file: str) -> list[str]:
        """Load the watch-word list; a missing file means no watch words."""
        if not os.path.exists(config_file):
            logger.info("No watch words file at %s", config_file)
            return []
        data = self._read_json(config_file)
        if isinstance(data, Mapping):
            data = data.get("watchWords", data.get("watch_words", []))
        if not isinstance(data, list) or not all(isinstance(k, str) for k in data):
            raise ConfigurationError(f"Watch words file must hold a list of strings: {config_file}")
        logger.info("Loaded %d watch words from %s", len(data), config_file)
        return data

    @staticmethod
    def _read_json(config_file: str) -> Any:
        if not os.path.exists(config_file):
            raise ConfigurationError(f"Config file not found: {config_file}")
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read {config_file}: {e}") from e


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(env: Mapping[str, str], name: str, default: float, cast=float):
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError as e:
        raise ConfigurationError(f"Environment variable {name} must be a number, got: {value}") from e


def _policy(
    env: Mapping[str, str], prefix: str, base: RetryPolicy, timeout_var: Optional[str] = None
) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=_env_number(env, f"{prefix}MAX_RETRIES", base.max_attempts, int),
        base_delay=_env_number(env, f"{prefix}RETRY_DELAY", base.base_delay),
        backoff_multiplier=base.backoff_multiplier,
        timeout=_env_number(env, timeout_var or f"{prefix}TIMEOUT", base.timeout),
    )


def _sources_from_env(value: str) -> list[dict[str, Any]]:
    try:
        urls = json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"RSS_FEEDS must be a JSON array: {e}") from e
    if not isinstance(urls, list):
        raise ConfigurationError("RSS_FEEDS must be a JSON array")
    return [{"url": url} if isinstance(url, str) else url for url in urls]


def load_config(
    feeds_file: Optional[str] = None,
    watch_words_file: Optional[str] = None,
    env_file: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Build the application configuration.

    Args:
        feeds_file: Feed sources JSON; defaults to ``FEEDS_FILE`` or config/feeds.json.
        watch_words_file: Watch words JSON; defaults to ``WATCH_WORDS_FILE``.
        env_file: ``.env`` file to load before reading the environment.
        env: Mapping used instead of ``os.environ`` (the .env file is then ignored).

    Returns:
        The validated configuration.

    Raises:
        ConfigurationError: On unreadable files or invalid values.
    """
    if env is None:
        load_dotenv(env_file)
        env = os.environ

    loader = ConfigLoader()
    if env.get("RSS_FEEDS"):
        raw_sources = _sources_from_env(env["RSS_FEEDS"])
    else:
        raw_sources = loader.load_news_sources(
            feeds_file or env.get("FEEDS_FILE") or DEFAULT_FEEDS_FILE
        )
    watch_terms = loader.load_keywords(
        watch_words_file or env.get("WATCH_WORDS_FILE") or DEFAULT_WATCH_WORDS_FILE
    )

    defaults = RetrySettings()
    try:
        return AppConfig(
            sources=raw_sources,
            watch_terms=watch_terms,
            recency_window_hours=_env_number(env, "RECENCY_WINDOW_HOURS", 24.0),
            fallback_label=env.get("FALLBACK_LABEL") or "tech",
            infer_missing_labels=_env_bool(env, "INFER_MISSING_LABELS", False),
            retry=RetrySettings(
                network=_policy(env, "", defaults.network, "HTTP_TIMEOUT"),
                model=_policy(env, "LLM_", defaults.model),
                write=_policy(env, "WRITE_", defaults.write),
            ),
            schedule=ScheduleSettings(
                enabled=_env_bool(env, "SCHEDULE_ENABLED", False),
                cron=env.get("SCHEDULE_CRON") or ScheduleSettings().cron,
                timezone=env.get("SCHEDULE_TIMEZONE") or env.get("TIMEZONE") or ScheduleSettings().timezone,
                run_on_start=_env_bool(env, "RUN_ON_START", False),
                allow_overlapping_runs=_env_bool(env, "ALLOW_OVERLAPPING_RUNS", False),
            ),
            output=OutputSettings(
                backend=(env.get("OUTPUT_BACKEND") or "filesystem").lower(),
                directory=env.get("OUTPUT_DIRECTORY") or "./output",
                vault_api_url=(env.get("VAULT_API_URL") or OutputSettings().vault_api_url).rstrip("/"),
                vault_api_key=env.get("VAULT_API_KEY") or None,
                vault_base_path=env.get("VAULT_BASE_PATH") or "RSS",
                verify_ssl=not _env_bool(env, "IGNORE_SSL_ERRORS", False),
                hourly_files=_env_bool(env, "ENABLE_HOURLY_FILES", False),
            ),
            llm=LLMSettings(
                api_key=env.get("LLM_API_KEY") or None,
                model=env.get("LLM_MODEL") or LLMSettings().model,
                base_url=env.get("LLM_BASE_URL") or DEFAULT_LLM_BASE_URL,
            ),
            test_record_cap=_env_number(env, "TEST_RECORD_CAP", 2, int),
            max_concurrent_buckets=_env_number(env, "MAX_CONCURRENT_BUCKETS", 4, int),
            log_level=env.get("LOG_LEVEL") or "INFO",
            log_file=env.get("LOG_FILE") or None,
            debug=_env_bool(env, "DEBUG", False),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
