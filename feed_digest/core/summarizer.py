"""
Bucket summarization through an OpenAI-compatible chat completion API.

The pipeline wraps every call in the retry executor; this module only makes
single requests.
"""

import logging
from typing import Literal, Protocol

from openai import AsyncOpenAI

from .types import Bucket

logger = logging.getLogger(__name__)

Channel = Literal["label", "watch"]


class Summarizer(Protocol):
    async def summarize(self, bucket: Bucket, channel: Channel) -> str: ...

    async def ping(self) -> None: ...

    async def aclose(self) -> None: ...


class EmptyCompletionError(Exception):
    """The model answered without any text."""


def fallback_summary(bucket: Bucket, channel: Channel) -> str:
    """Summary text used when the model call fails."""
    if channel == "watch":
        return (
            f"Collected {bucket.count} articles mentioning '{bucket.name}'. "
            "See each article for details."
        )
    return (
        f"Collected {bucket.count} articles in the {bucket.name} category. "
        "See each article for details."
    )


class OpenAISummarizer:
    """
    Summarizer backed by an OpenAI-compatible endpoint.

    Gemini, OpenRouter and OpenAI all accept the same chat completion request
    when ``base_url`` points at them.
    """

    def __init__(
        self,
        api_key: str,
        model_name: str,
        base_url: str,
        article_limit: int = 10,
        client: AsyncOpenAI | None = None,
    ):
        self.client = client or AsyncOpenAI(base_url=base_url, api_key=api_key, max_retries=0)
        self.model_name = model_name
        self.article_limit = article_limit

    async def summarize(self, bucket: Bucket, channel: Channel) -> str:
        """Summarize the newest records of ``bucket``.

        Raises:
            EmptyCompletionError: If the model returned no text.
            openai.OpenAIError: On API failures.
        """
        prompt = self._build_prompt(bucket, channel)
        response = await self.client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "system", "content": self._build_instructions(channel)},
                {"role": "user", "content": prompt},
            ],
            temperature=0.3,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise EmptyCompletionError(f"Empty completion for bucket {bucket.name}")

        logger.info("Generated summary for %s (%d articles)", bucket.name, bucket.count)
        return content.strip()

    async def ping(self) -> None:
        response = await self.client.chat.completions.create(
            model=self.model_name,
            messages=[{"role": "user", "content": 'Hello, please respond with "OK"'}],
            max_tokens=5,
        )
        if not response.choices:
            raise EmptyCompletionError("Health check returned no choices")

    async def aclose(self) -> None:
        await self.client.close()

    def _build_prompt(self, bucket: Bucket, channel: Channel) -> str:
        records = bucket.records if channel == "watch" else bucket.records[: self.article_limit]
        article_list = "\n\n".join(
            f"- {record.title}\n  {record.description or 'No description'}"
            for record in records
        )
        subject = f"the keyword '{bucket.name}'" if channel == "watch" else f"the '{bucket.name}' category"
        return f"Articles about {subject}:\n\n{article_list}"

    @staticmethod
    def _build_instructions(channel: Channel) -> str:
        if channel == "watch":
            return """
    You write a short briefing about one keyword a reader is tracking.

    You receive a list of today's articles that mention the keyword, each with
    a title and a short description.

    Write 3-5 sentences describing what happened around the keyword, then a
    bullet list of the most notable developments. Do not invent articles or
    facts that are not in the list.
    """.strip()
        return """
    You write the daily digest of one news category.

    You receive a list of today's articles in the category, each with a title
    and a short description.

    Write a 2-3 sentence overview of the main themes, followed by 3-7 bullet
    points, each a concise theme title and a one sentence explanation.
    Do not invent articles or facts that are not in the list.
    """.strip()
