from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from functools import lru_cache

from fastapi.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.errors import AdmissionDeniedError, ChatError
from app.schemas.chat import ContentChunk, DoneChunk, ErrorChunk, SourcesChunk, StreamChunk
from app.services.knowledge_base_service import KnowledgeBase, KnowledgeBaseClient, KnowledgeBaseError
from app.services.llm_service import (
    ConversationTurn,
    GeminiGenerationClient,
    GenerationClient,
    create_system_prompt,
)
from app.services.query_classifier_service import (
    Disposition,
    classify_query,
    get_ambiguity_options,
    is_likely_out_of_scope,
    is_out_of_scope_query,
    is_recommendation_query,
)
from app.services.rate_limit_service import AdmissionDecision, RequestThrottler
from app.services.retrieval_service import RetrievedArticle, retrieve_relevant_articles
from app.services.session_store import SessionStore

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
GENERIC_FAILURE_MESSAGE = "Failed to generate response. Please try again."


def encode_frame(chunk: StreamChunk) -> str:
    return f"data: {chunk.model_dump_json()}\n\n"


async def encode_event_stream(chunks: AsyncIterator[StreamChunk]) -> AsyncIterator[str]:
    async for chunk in chunks:
        yield encode_frame(chunk)
    yield f"data: {DONE_SENTINEL}\n\n"


class ChatPipeline:
    """
    Server side of a chat turn: admission, retrieval, prompting and streaming.

    Store calls are synchronous SQLAlchemy work and run in the threadpool so
    the event loop keeps serving other streams.
    """

    def __init__(
        self,
        store: SessionStore,
        knowledge_base: KnowledgeBase,
        generator: GenerationClient,
        throttler: RequestThrottler | None = None,
    ) -> None:
        self.store = store
        self.knowledge_base = knowledge_base
        self.generator = generator
        self.throttler = throttler or RequestThrottler()

    def admit(self, identity: str) -> AdmissionDecision:
        decision = self.throttler.check_limit(identity)
        if not decision.allowed:
            raise AdmissionDeniedError(decision.wait_time_ms)
        return decision

    async def verify_session(self, identity: str, session_id: str) -> None:
        await run_in_threadpool(self.store.get_session, session_id, identity)

    async def _available_categories(self) -> list[str]:
        try:
            return await self.knowledge_base.list_categories()
        except KnowledgeBaseError as exc:
            logger.warning("Could not load categories for suggestions: %s", exc)
            return []

    async def _retrieve(self, query: str, out_of_scope: bool) -> list[RetrievedArticle]:
        if out_of_scope:
            logger.info("Skipping retrieval for out-of-scope query %r", query)
            return []
        return await retrieve_relevant_articles(query, self.knowledge_base)

    async def stream_reply(self, identity: str, session_id: str, message: str) -> AsyncIterator[StreamChunk]:
        text = message.strip()
        try:
            await self.verify_session(identity, session_id)
            previous = await run_in_threadpool(self.store.get_messages, session_id, settings.chat_history_limit)
            await run_in_threadpool(self.store.save_message, session_id, "user", text)

            out_of_scope = is_out_of_scope_query(text)
            retrieved = await self._retrieve(text, out_of_scope)
            disposition = classify_query(text, retrieved)
            # Recommendation phrasing still shapes the answer when another disposition wins.
            recommendation = is_recommendation_query(text)
            ambiguous = disposition is Disposition.AMBIGUOUS
            likely_out_of_scope = is_likely_out_of_scope(text, retrieved)

            if ambiguous:
                logger.info(
                    "Ambiguous query %r: %d interpretations",
                    text,
                    len(get_ambiguity_options(retrieved)),
                )
            if likely_out_of_scope:
                logger.info("Out-of-scope query detected: %r", text)

            categories: list[str] = []
            if not retrieved or likely_out_of_scope:
                categories = await self._available_categories()

            system_prompt = create_system_prompt(
                retrieved,
                is_recommendation=recommendation,
                is_ambiguous=ambiguous,
                is_out_of_scope=likely_out_of_scope,
                available_categories=categories,
            )
            history = [ConversationTurn(role=item.role, content=item.content) for item in previous]

            parts: list[str] = []
            async for token in self.generator.stream(system_prompt, history, text):
                parts.append(token)
                yield ContentChunk(data=token)

            sources = [item.source for item in retrieved]
            await run_in_threadpool(
                self.store.save_message,
                session_id,
                "assistant",
                "".join(parts),
                sources or None,
            )
            if sources:
                yield SourcesChunk(data=sources)
            yield DoneChunk()
        except ChatError as exc:
            logger.error("Chat turn failed for session %s: %s", session_id, exc.message)
            yield ErrorChunk(data=exc.message, retryable=exc.retryable)
        except KnowledgeBaseError as exc:
            logger.error("Knowledge base failure for session %s: %s", session_id, exc)
            yield ErrorChunk(data="The wiki is temporarily unavailable. Please try again.", retryable=True)
        except Exception:
            logger.exception("Unexpected error in chat stream for session %s", session_id)
            yield ErrorChunk(data=GENERIC_FAILURE_MESSAGE, retryable=True)


@lru_cache
def get_chat_pipeline() -> ChatPipeline:
    return ChatPipeline(
        store=SessionStore(),
        knowledge_base=KnowledgeBaseClient(),
        generator=GeminiGenerationClient(),
        throttler=RequestThrottler(),
    )
