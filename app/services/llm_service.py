from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

import httpx

from app.core.config import settings
from app.core.errors import StreamParseError, UpstreamFatalError, UpstreamTransientError
from app.services.backoff_service import BackoffScheduler
from app.services.query_classifier_service import get_ambiguity_options
from app.services.retrieval_service import RetrievedArticle, get_unique_categories

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_CATEGORY_SUGGESTIONS = "Academics, Campus Life, Student Services, Events, Resources"


@dataclass(slots=True)
class ConversationTurn:
    role: str
    content: str


def get_category_suggestions(available_categories: Sequence[str] | None = None) -> str:
    if not available_categories:
        return DEFAULT_CATEGORY_SUGGESTIONS
    return ", ".join(list(available_categories)[:5])


def _render_article(index: int, item: RetrievedArticle) -> str:
    article = item.article
    return (
        "========================================\n"
        f"ARTICLE {index}: {article.title}\n"
        "========================================\n"
        f"Category: {article.category}\n"
        f"Slug: {article.slug}\n"
        f"Link: /wiki/articles/{article.slug}\n\n"
        "ARTICLE CONTENT (Use this to answer questions):\n"
        f"{item.relevant_content}\n"
        "========================================"
    )


def create_system_prompt(
    articles: Sequence[RetrievedArticle],
    is_recommendation: bool = False,
    is_ambiguous: bool = False,
    is_out_of_scope: bool = False,
    available_categories: Sequence[str] | None = None,
) -> str:
    has_results = bool(articles)
    suggestions = get_category_suggestions(available_categories)
    sections = ["You are a helpful assistant for the TUM Community Platform wiki."]

    if has_results:
        sections.append(
            "Use the wiki articles below to answer. "
            "Always cite sources using: [Article Title](/wiki/articles/slug)"
        )
        rendered = "\n\n".join(_render_article(index, item) for index, item in enumerate(articles, start=1))
        sections.append(f"WIKI ARTICLES:\n{rendered}")
    else:
        sections.append("No relevant articles found.")
        sections.append(
            "No articles found. Suggest 2-3 alternative search terms or browse categories: "
            f"{suggestions}"
        )

    if is_recommendation:
        sections.append(
            "IMPORTANT: The user is asking for article recommendations. Please:\n"
            "1. List 2-5 relevant articles from the provided wiki articles\n"
            "2. Format each as: **[Article Title](/wiki/articles/slug)** - Brief description "
            "(1-2 sentences) [Category: category-name]\n"
            "3. Order recommendations by relevance to the user's query\n"
            "4. If articles span multiple categories, highlight this diversity"
        )

    if is_ambiguous:
        options = "\n".join(
            f"- {option.category} (e.g. \"{option.example_title}\")" for option in get_ambiguity_options(articles)
        )
        sections.append(
            "IMPORTANT: This query could refer to several distinct topics. Before answering in detail:\n"
            "1. Acknowledge that the query has multiple interpretations\n"
            "2. List the categories where relevant information was found\n"
            "3. Ask which topic the user means, with a one-line preview of each\n"
            "4. Keep the clarification friendly and concise\n"
            f"Categories found:\n{options}"
        )

    if is_out_of_scope:
        sections.append(
            "IMPORTANT: This query appears to be about non-TUM topics or outside the scope of this wiki. Please:\n"
            "1. Politely say the question is outside the scope of the TUM wiki\n"
            "2. Explain that you are designed to help with TUM-related questions\n"
            "3. Offer 2-3 specific TUM topics you can help with instead\n"
            f"4. Available categories to suggest: {suggestions}\n"
            "5. Keep the tone friendly and helpful, not dismissive"
        )

    categories = get_unique_categories(articles)
    if len(categories) > 1:
        sections.append(
            f"NOTE: The articles provided span {len(categories)} different categories: "
            f"{', '.join(categories)}. Synthesize information from all relevant categories "
            "and cite sources from each category that contributes to the answer."
        )

    return "\n\n".join(sections)


def _status_error(status_code: int, body: str) -> UpstreamFatalError | UpstreamTransientError:
    logger.error("Gemini request failed with status %s: %s", status_code, body[:500])
    if status_code in (401, 403):
        return UpstreamFatalError(
            "Authentication failed. Please check your API key configuration.",
            status_code=status_code,
        )
    if status_code == 429:
        return UpstreamTransientError(
            "Rate limit exceeded. Please try again in a moment.",
            status_code=status_code,
        )
    if status_code >= 500:
        return UpstreamTransientError(
            "The AI service is temporarily unavailable. Please try again later.",
            status_code=status_code,
        )
    return UpstreamFatalError("Failed to generate response. Please try again.", status_code=status_code)


def extract_stream_text(line: str) -> str | None:
    """Text carried by one SSE line of a Gemini stream, or ``None`` for keep-alives."""
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    payload = stripped[len("data:") :].strip()
    if not payload or payload == "[DONE]":
        return None

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamParseError("Malformed event from the AI service") from exc

    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise UpstreamFatalError(f"The request was blocked by the AI service ({feedback['blockReason']}).")

    candidates = data.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts if part.get("text"))
    return text or None


class GenerationClient(ABC):
    @abstractmethod
    def stream(
        self,
        system_prompt: str,
        history: Sequence[ConversationTurn],
        message: str,
    ) -> AsyncIterator[str]:
        """Yield response text fragments in arrival order."""


class GeminiGenerationClient(GenerationClient):
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        backoff: BackoffScheduler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.model = model or settings.gemini_model
        self.backoff = backoff or BackoffScheduler()
        self._transport = transport

    def _build_payload(self, system_prompt: str, history: Sequence[ConversationTurn], message: str) -> dict:
        contents = [
            {"role": "model" if turn.role == "assistant" else "user", "parts": [{"text": turn.content}]}
            for turn in history
        ]
        contents.append({"role": "user", "parts": [{"text": message}]})
        return {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": contents,
            "generationConfig": {
                "temperature": settings.gemini_temperature,
                "maxOutputTokens": settings.gemini_max_output_tokens,
            },
        }

    async def stream(
        self,
        system_prompt: str,
        history: Sequence[ConversationTurn],
        message: str,
    ) -> AsyncIterator[str]:
        if not self.api_key:
            raise UpstreamFatalError("GEMINI_API_KEY is not set")

        url = f"{GEMINI_BASE_URL}/{self.model}:streamGenerateContent"
        payload = self._build_payload(system_prompt, history, message)
        logger.info(
            "Opening Gemini stream (model=%s, history=%d, prompt=%d chars)",
            self.model,
            len(history),
            len(system_prompt),
        )

        async with httpx.AsyncClient(timeout=settings.gemini_timeout_seconds, transport=self._transport) as client:

            async def open_stream() -> httpx.Response:
                request = client.build_request(
                    "POST",
                    url,
                    params={"alt": "sse", "key": self.api_key},
                    json=payload,
                )
                try:
                    response = await client.send(request, stream=True)
                except httpx.TimeoutException as exc:
                    raise UpstreamTransientError("Request timed out. Please try again.") from exc
                except httpx.TransportError as exc:
                    raise UpstreamTransientError(f"Could not reach the AI service: {exc}") from exc

                if response.status_code >= 400:
                    body = await response.aread()
                    await response.aclose()
                    raise _status_error(response.status_code, body.decode("utf-8", errors="replace"))
                return response

            response = await self.backoff.execute_with_retry(open_stream)
            try:
                async for line in response.aiter_lines():
                    text = extract_stream_text(line)
                    if text:
                        yield text
            except httpx.HTTPError as exc:
                logger.error("Gemini stream interrupted: %s", exc)
                raise UpstreamTransientError(
                    "Connection interrupted while receiving response. Please try again."
                ) from exc
            finally:
                await response.aclose()
