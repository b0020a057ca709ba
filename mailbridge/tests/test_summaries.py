"""
Unit tests for AI message summaries.
"""
import httpx
import pytest
from unittest.mock import Mock
from uuid import uuid4

from openai import AuthenticationError

from mailbridge.core.errors import ConfigurationError, NotFound, RemoteBackendError
from mailbridge.core.summaries import (
    MAX_BODY_CHARS,
    SummaryLength,
    SummaryService,
    SummaryTone,
    build_prompt,
    sanitize_body,
)


def completion(content):
    return Mock(choices=[Mock(message=Mock(content=content))])


@pytest.fixture
def client():
    client = Mock()
    client.chat.completions.create.return_value = completion("  Acme wants the invoice paid by Friday.  ")
    return client


@pytest.fixture
def service(cache, settings, client):
    return SummaryService(cache, settings, client=client)


class TestPrompt:

    def test_includes_envelope_and_instructions(self, message_factory):
        prompt = build_prompt(
            message_factory("Invoice", sender_name="Acme"), SummaryLength.SHORT, SummaryTone.CASUAL,
            "Mention the amount",
        )

        assert "one or two sentences" in prompt
        assert "casual" in prompt
        assert "Additional instructions: Mention the amount" in prompt
        assert "From: Acme <alice@example.com>" in prompt
        assert "Subject: Invoice" in prompt

    def test_body_is_collapsed_and_truncated(self, message_factory):
        body = sanitize_body(message_factory(body="word\n\n   " * 5000))

        assert "\n" not in body
        assert len(body) == MAX_BODY_CHARS + 3

    def test_html_only_body(self, message_factory):
        message = message_factory(body=None, body_html="<p>Hello <b>there</b></p>")

        assert sanitize_body(message) == "Hello there"


@pytest.mark.asyncio
class TestSummaryService:

    async def test_generates_and_stores(self, service, client, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])

        result = await service.summarize(gmail_account.id, saved[0].id)

        assert result.summary == "Acme wants the invoice paid by Friday."
        assert result.cached is False
        assert result.model == "gpt-4o-mini"
        stored, _ = await cache.get_summary(gmail_account.id, saved[0].id)
        assert stored == result.summary

    async def test_stored_summary_is_reused(self, service, client, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])
        await service.summarize(gmail_account.id, saved[0].id)

        again = await service.summarize(gmail_account.id, saved[0].id)

        assert again.cached is True
        assert client.chat.completions.create.call_count == 1

    async def test_regenerate(self, service, client, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])
        await service.summarize(gmail_account.id, saved[0].id)
        client.chat.completions.create.return_value = completion("Shorter.")

        result = await service.summarize(gmail_account.id, saved[0].id, SummaryLength.SHORT, regenerate=True)

        assert result.summary == "Shorter."
        assert result.cached is False

    async def test_uncached_message(self, service, gmail_account):
        with pytest.raises(NotFound):
            await service.summarize(gmail_account.id, str(uuid4()))

    async def test_empty_completion(self, service, client, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])
        client.chat.completions.create.return_value = completion("")

        with pytest.raises(RemoteBackendError):
            await service.summarize(gmail_account.id, saved[0].id)

    async def test_rejected_key(self, service, client, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client.chat.completions.create.side_effect = AuthenticationError(
            "bad key", response=httpx.Response(401, request=request), body=None
        )

        with pytest.raises(ConfigurationError) as exc_info:
            await service.summarize(gmail_account.id, saved[0].id)

        assert exc_info.value.missing == ["openai_api_key"]

    async def test_no_api_key(self, cache, settings, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])

        with pytest.raises(ConfigurationError):
            await SummaryService(cache, settings).summarize(gmail_account.id, saved[0].id)
