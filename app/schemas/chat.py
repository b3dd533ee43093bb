from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ArticleSource(BaseModel):
    title: str
    slug: str
    category: str


class ContentChunk(BaseModel):
    type: Literal["content"] = "content"
    data: str


class SourcesChunk(BaseModel):
    type: Literal["sources"] = "sources"
    data: list[ArticleSource] = Field(default_factory=list)


class ErrorChunk(BaseModel):
    type: Literal["error"] = "error"
    data: str
    retryable: bool = False


class DoneChunk(BaseModel):
    type: Literal["done"] = "done"
    data: None = None


StreamChunk = Annotated[
    Union[ContentChunk, SourcesChunk, ErrorChunk, DoneChunk],
    Field(discriminator="type"),
]

stream_chunk_adapter: TypeAdapter[StreamChunk] = TypeAdapter(StreamChunk)


class ChatRequest(BaseModel):
    session_id: str = Field(min_length=1)
    message: str = Field(max_length=4000)


class SessionCreate(BaseModel):
    title: str | None = Field(default=None, max_length=255)


class ChatMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    role: Literal["user", "assistant"]
    content: str
    sources: list[ArticleSource] | None = None
    created_at: datetime


class ChatSessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0


class ChatSessionDetail(ChatSessionRead):
    messages: list[ChatMessageRead] = Field(default_factory=list)


class RateLimitDetail(BaseModel):
    error: str = "Rate limit exceeded"
    message: str
    wait_time_ms: int
    retry_after: int
