"""Small helpers shared across the pipeline."""

import re
from datetime import datetime, timezone

from bs4 import BeautifulSoup

INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
WHITESPACE = re.compile(r"\s+")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def strip_html(html: str) -> str:
    """Extract plain text from an HTML fragment."""
    if not html:
        return ""
    if "<" not in html and "&" not in html:
        return WHITESPACE.sub(" ", html).strip()
    soup = BeautifulSoup(html, "html.parser")
    return WHITESPACE.sub(" ", soup.get_text(" ", strip=True)).strip()


def sanitize_filename(name: str) -> str:
    """Lowercase file name without path separators or reserved characters."""
    cleaned = INVALID_FILENAME_CHARS.sub("", name).strip()
    return WHITESPACE.sub("-", cleaned).lower()


def truncate(text: str, max_length: int = 50) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
