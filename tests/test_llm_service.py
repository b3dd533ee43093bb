import asyncio
import json

import httpx
import pytest

from app.core.errors import StreamParseError, UpstreamFatalError, UpstreamTransientError
from app.schemas.chat import ArticleSource
from app.services.backoff_service import BackoffScheduler
from app.services.llm_service import (
    DEFAULT_CATEGORY_SUGGESTIONS,
    ConversationTurn,
    GeminiGenerationClient,
    create_system_prompt,
    extract_stream_text,
)
from app.services.retrieval_service import RetrievedArticle

from conftest import make_article


def _event(text: str) -> str:
    payload = {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
    return f"data: {json.dumps(payload)}\r\n\r\n"


def _client(handler, sleeps=None, max_retries=5):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return GeminiGenerationClient(
        api_key="test-key",
        model="gemini-2.5-flash",
        backoff=BackoffScheduler(max_retries=max_retries, sleep=fake_sleep, rng=lambda: 0.0),
        transport=httpx.MockTransport(handler),
    )


def _collect(client, history=()):
    async def run():
        return [text async for text in client.stream("system", list(history), "question")]

    return asyncio.run(run())


def test_stream_yields_text_parts_in_order():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = _event("Hel") + _event("lo") + "\r\n"
        return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})

    history = [ConversationTurn("user", "hi"), ConversationTurn("assistant", "hello")]
    assert _collect(_client(handler), history) == ["Hel", "lo"]

    request = seen[0]
    assert request.url.path.endswith("/gemini-2.5-flash:streamGenerateContent")
    assert request.url.params["alt"] == "sse"
    assert request.url.params["key"] == "test-key"
    payload = json.loads(request.content)
    assert payload["systemInstruction"]["parts"][0]["text"] == "system"
    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
    assert payload["contents"][-1]["parts"][0]["text"] == "question"


def test_transient_status_is_retried_before_streaming():
    attempts = []
    sleeps = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, text=_event("ok"))

    assert _collect(_client(handler, sleeps)) == ["ok"]
    assert len(attempts) == 3
    assert sleeps == [1.0, 2.0]


def test_rate_limit_exhaustion_surfaces_transient_error():
    def handler(request):
        return httpx.Response(429, text="quota")

    with pytest.raises(UpstreamTransientError) as exc_info:
        _collect(_client(handler, max_retries=2))
    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 429


def test_auth_failure_is_fatal_and_not_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(401, text="bad key")

    with pytest.raises(UpstreamFatalError, match="Authentication failed"):
        _collect(_client(handler))
    assert len(attempts) == 1


def test_missing_api_key_is_fatal():
    client = GeminiGenerationClient(api_key="", transport=httpx.MockTransport(lambda r: httpx.Response(200)))

    with pytest.raises(UpstreamFatalError):
        _collect(client)


def test_extract_stream_text():
    assert extract_stream_text("") is None
    assert extract_stream_text(": ping") is None
    assert extract_stream_text('data: {"candidates": []}') is None
    assert extract_stream_text(_event("x").strip()) == "x"
    with pytest.raises(StreamParseError):
        extract_stream_text("data: {oops")
    with pytest.raises(UpstreamFatalError):
        extract_stream_text('data: {"promptFeedback": {"blockReason": "SAFETY"}}')


def _retrieved(slug, category):
    article = make_article(slug, category)
    return RetrievedArticle(
        article=article,
        relevant_content=article.content,
        relevance_score=100,
        source=ArticleSource(title=article.title, slug=slug, category=category),
    )


def test_system_prompt_without_results_suggests_default_categories():
    prompt = create_system_prompt([])

    assert "No relevant articles found." in prompt
    assert DEFAULT_CATEGORY_SUGGESTIONS in prompt
    assert "WIKI ARTICLES" not in prompt


def test_system_prompt_flags_and_multi_category_note():
    articles = [_retrieved("dorm-guide", "Housing"), _retrieved("gym", "Campus Life")]

    prompt = create_system_prompt(articles, is_recommendation=True, is_ambiguous=True)

    assert "ARTICLE 1: Dorm Guide" in prompt
    assert "Link: /wiki/articles/gym" in prompt
    assert "article recommendations" in prompt
    assert "multiple interpretations" in prompt
    assert "- Campus Life (e.g. \"Gym\")" in prompt
    assert "span 2 different categories: Housing, Campus Life" in prompt
    assert "outside the scope" not in prompt
