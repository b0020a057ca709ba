"""
AI message summaries.

Summaries are generated with OpenAI chat completions from the cached copy
of a message and stored on its row (summary + summary_generated_at). A
stored summary is returned as-is until regeneration is requested; nothing
invalidates it automatically.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from openai import APIError, AuthenticationError, OpenAI, RateLimitError

from mailbridge.core.config import Settings, get_settings
from mailbridge.core.email.mime import html_to_text
from mailbridge.core.email.models import NormalizedMessage
from mailbridge.core.errors import ConfigurationError, NotFound, RemoteBackendError
from mailbridge.core.sync.cache import SyncCache

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 6000
MAX_TOKENS = 300

SYSTEM_PROMPT = (
    "You are an expert email summarization assistant. "
    "Create clear, concise, and actionable summaries."
)


class SummaryLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class SummaryTone(str, Enum):
    FORMAL = "formal"
    CASUAL = "casual"
    TECHNICAL = "technical"


LENGTH_INSTRUCTIONS = {
    SummaryLength.SHORT: "Summarize in one or two sentences.",
    SummaryLength.MEDIUM: "Summarize in a short paragraph of three to five sentences.",
    SummaryLength.LONG: "Write a detailed summary covering every request, decision and deadline.",
}

TONE_INSTRUCTIONS = {
    SummaryTone.FORMAL: "Use a formal, professional tone.",
    SummaryTone.CASUAL: "Use a friendly, casual tone.",
    SummaryTone.TECHNICAL: "Use precise technical language and keep identifiers verbatim.",
}


@dataclass
class SummaryResult:
    message_id: str
    summary: str
    generated_at: datetime
    cached: bool
    model: Optional[str] = None


def sanitize_body(message: NormalizedMessage) -> str:
    body = message.body_text or html_to_text(message.body_html) or message.preview or ""
    body = re.sub(r'\s+', ' ', body).strip()
    if len(body) > MAX_BODY_CHARS:
        body = body[:MAX_BODY_CHARS] + "..."
    return body


def build_prompt(message: NormalizedMessage, length: SummaryLength, tone: SummaryTone,
                 instructions: Optional[str] = None) -> str:
    lines = [
        LENGTH_INSTRUCTIONS[length],
        TONE_INSTRUCTIONS[tone],
    ]
    if instructions:
        lines.append(f"Additional instructions: {instructions.strip()}")
    lines += [
        "",
        f"From: {message.sender.formatted()}",
        f"Subject: {message.subject}",
        f"Date: {message.date.isoformat()}",
        "",
        sanitize_body(message),
    ]
    return "\n".join(lines)


class SummaryService:
    """Generate and cache per-message AI summaries."""

    def __init__(self, cache: SyncCache, settings: Optional[Settings] = None, client: Optional[OpenAI] = None):
        self.cache = cache
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.settings.openai_api_key:
                raise ConfigurationError("OPENAI_API_KEY is not set", missing=['openai_api_key'])
            self._client = OpenAI(api_key=self.settings.openai_api_key)
        return self._client

    async def summarize(
        self,
        account_id,
        message_id: str,
        length: SummaryLength = SummaryLength.MEDIUM,
        tone: SummaryTone = SummaryTone.FORMAL,
        instructions: Optional[str] = None,
        regenerate: bool = False
    ) -> SummaryResult:
        """
        Summary of a cached message.

        Raises:
            NotFound: Message is not in the cache
            ConfigurationError: No OpenAI key configured
            RemoteBackendError: Completion request failed
        """
        message = await self.cache.get_by_id(account_id, message_id)
        if message is None:
            raise NotFound(f"Message {message_id} not found")

        if not regenerate:
            stored = await self.cache.get_summary(account_id, message_id)
            if stored:
                summary, generated_at = stored
                return SummaryResult(message_id=message.id, summary=summary, generated_at=generated_at, cached=True)

        prompt = build_prompt(message, SummaryLength(length), SummaryTone(tone), instructions)
        summary = await asyncio.to_thread(self._complete, prompt)
        generated_at = await self.cache.set_summary(account_id, message_id, summary) or datetime.utcnow()
        logger.info(f"Generated summary for message {message_id} ({len(summary)} chars)")
        return SummaryResult(
            message_id=message.id,
            summary=summary,
            generated_at=generated_at,
            cached=False,
            model=self.settings.summary_model,
        )

    def _complete(self, prompt: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.settings.summary_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.settings.summary_temperature,
                max_tokens=MAX_TOKENS,
            )
        except AuthenticationError as e:
            raise ConfigurationError(f"OpenAI rejected the API key: {e}", missing=['openai_api_key']) from e
        except RateLimitError as e:
            raise RemoteBackendError(f"OpenAI rate limit exceeded: {e}", backend="openai") from e
        except APIError as e:
            logger.error(f"Summary generation failed: {e}")
            raise RemoteBackendError(f"Failed to generate summary: {e}", backend="openai") from e

        if not response.choices or not response.choices[0].message.content:
            raise RemoteBackendError("No summary returned by OpenAI", backend="openai")
        return response.choices[0].message.content.strip()
