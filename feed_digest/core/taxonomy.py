"""
Keyword-based label inference.

'classify' maps a free-form label (a feed category, a model-suggested tag)
onto one of the configured output labels. The result says whether the label
was recognised ('Matched') or the fallback was used ('Fallback').
"""

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class Matched:
    label: str


@dataclass(frozen=True)
class Fallback:
    label: str


Classification = Union[Matched, Fallback]


@dataclass(frozen=True)
class LabelRule:
    """Subtags and inference keywords of one output label."""

    subtags: frozenset[str] = field(default_factory=frozenset)
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class Taxonomy:
    """Static table of output labels, tested in insertion order."""

    rules: dict[str, LabelRule]
    fallback: str


DEFAULT_TAXONOMY = Taxonomy(
    rules={
        "ai": LabelRule(
            subtags=frozenset({"llm", "ml", "agents", "robotics"}),
            keywords=(
                "ai", "artificial", "intelligence", "machine", "learning",
                "ml", "llm", "gpt", "neural", "deep",
            ),
        ),
        "tech": LabelRule(
            subtags=frozenset({"web", "mobile", "security", "devops"}),
            keywords=(
                "tech", "technology", "software", "programming", "code",
                "development", "web", "mobile", "app",
            ),
        ),
        "business": LabelRule(
            subtags=frozenset({"startup", "finance", "markets"}),
            keywords=("business", "startup", "company", "market", "finance", "investment"),
        ),
    },
    fallback="tech",
)


def classify(raw_label: str, taxonomy: Taxonomy = DEFAULT_TAXONOMY) -> Classification:
    """Map ``raw_label`` onto a label of ``taxonomy``.

    Exact labels match first, then known subtags (mapped to their parent),
    then keyword substrings in table order.
    """
    candidate = (raw_label or "").strip().lower()
    if not candidate:
        return Fallback(taxonomy.fallback)

    if candidate in taxonomy.rules:
        return Matched(candidate)

    for label, rule in taxonomy.rules.items():
        if candidate in rule.subtags:
            return Matched(label)

    for label, rule in taxonomy.rules.items():
        if any(keyword in candidate for keyword in rule.keywords):
            return Matched(label)

    return Fallback(taxonomy.fallback)
