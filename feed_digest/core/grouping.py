"""
Record grouping.

This module partitions a run's records into output buckets.

Components:
- group_by_label: one bucket per source label (primary channel)
- group_by_watch_terms: one bucket per watch term, first match wins (watch channel)
- sort_newest_first / drop_empty: bucket post-processing
"""

import logging
from typing import Optional

from .taxonomy import Matched, Taxonomy, classify
from .types import Bucket, Record

logger = logging.getLogger(__name__)


def sort_newest_first(records: list[Record]) -> list[Record]:
    """Stable sort on publication time, newest first."""
    return sorted(records, key=lambda record: record.published_at, reverse=True)


def drop_empty(buckets: list[Bucket]) -> list[Bucket]:
    return [bucket for bucket in buckets if bucket.count > 0]


def _build_buckets(grouped: dict[str, list[Record]]) -> list[Bucket]:
    buckets = [
        Bucket(name=name, records=sort_newest_first(records))
        for name, records in grouped.items()
    ]
    return drop_empty(buckets)


def infer_label(record: Record, taxonomy: Taxonomy) -> Optional[str]:
    """Label inferred from the record's categories, if any category is recognised."""
    for category in sorted(record.categories):
        result = classify(category, taxonomy)
        if isinstance(result, Matched):
            return result.label
    return None


def group_by_label(
    records: list[Record],
    fallback_label: str,
    taxonomy: Optional[Taxonomy] = None,
) -> list[Bucket]:
    """Partition records by the label of the source they came from.

    Args:
        records: Records of the current run.
        fallback_label: Bucket for records whose source has no label.
        taxonomy: When given, unlabeled records are first matched against
            it through their categories.

    Returns:
        Non-empty buckets in order of first appearance, each sorted newest first.
    """
    grouped: dict[str, list[Record]] = {}
    for record in records:
        label = record.source_label
        if not label and taxonomy is not None:
            label = infer_label(record, taxonomy)
        grouped.setdefault(label or fallback_label, []).append(record)

    buckets = _build_buckets(grouped)
    logger.info("Grouped articles into %d parent tag categories", len(buckets))
    return buckets


def _normalize_terms(terms: list[str]) -> list[str]:
    unique = []
    seen = set()
    for term in terms:
        cleaned = (term or "").strip()
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        unique.append(cleaned)
    return unique


def group_by_watch_terms(records: list[Record], terms: list[str]) -> list[Bucket]:
    """Assign records to the first watch term found in their title or description.

    Matching is a case-insensitive substring test; terms are tried in the
    configured order and records matching no term are left out.

    Args:
        records: Records of the current run.
        terms: Watch terms, in priority order.

    Returns:
        Non-empty buckets named after their term, each sorted newest first.
    """
    watch_terms = _normalize_terms(terms)
    if not watch_terms:
        return []

    logger.info(
        "Filtering %d articles with %d watch words", len(records), len(watch_terms)
    )
    lowered = [(term, term.lower()) for term in watch_terms]
    grouped: dict[str, list[Record]] = {}

    for record in records:
        content = f"{record.title} {record.description}".lower()
        for term, needle in lowered:
            if needle in content:
                grouped.setdefault(term, []).append(record)
                break
        else:
            logger.debug("Article '%s' did not match any watch word", record.title)

    buckets = _build_buckets(grouped)
    logger.info(
        "Found articles for %d watch words: %s",
        len(buckets),
        ", ".join(bucket.name for bucket in buckets),
    )
    return buckets
