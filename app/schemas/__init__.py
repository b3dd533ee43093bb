from app.schemas.chat import (
    ArticleSource,
    ChatMessageRead,
    ChatRequest,
    ChatSessionDetail,
    ChatSessionRead,
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    RateLimitDetail,
    SessionCreate,
    SourcesChunk,
    StreamChunk,
)
from app.schemas.knowledge_base import Article, SearchHit

__all__ = [
    "Article",
    "ArticleSource",
    "ChatMessageRead",
    "ChatRequest",
    "ChatSessionDetail",
    "ChatSessionRead",
    "ContentChunk",
    "DoneChunk",
    "ErrorChunk",
    "RateLimitDetail",
    "SearchHit",
    "SessionCreate",
    "SourcesChunk",
    "StreamChunk",
]
