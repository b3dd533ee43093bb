import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.db.base import Base
from app.schemas.knowledge_base import Article, SearchHit
from app.services.knowledge_base_service import KnowledgeBase
from app.services.llm_service import GenerationClient
from app.services.session_store import SessionStore


def make_article(slug: str, category: str, content: str | None = None, title: str | None = None) -> Article:
    return Article(
        id=f"id-{slug}",
        title=title or slug.replace("-", " ").title(),
        slug=slug,
        category=category,
        content=content or f"# {slug}\n\nGeneral information about {slug}.",
    )


class FakeKnowledgeBase(KnowledgeBase):
    def __init__(
        self,
        articles: list[Article] | None = None,
        missing: set[str] | None = None,
        categories: list[str] | None = None,
    ) -> None:
        self.articles = articles or []
        self.missing = missing or set()
        self.categories = categories or []
        self.searches: list[str] = []
        self.lookups: list[str] = []

    async def search(self, query: str) -> list[SearchHit]:
        self.searches.append(query)
        return [
            SearchHit(id=a.id, title=a.title, slug=a.slug, category=a.category, excerpt=a.content[:50])
            for a in self.articles
        ]

    async def get_by_slug(self, slug: str) -> Article | None:
        self.lookups.append(slug)
        if slug in self.missing:
            return None
        return next((a for a in self.articles if a.slug == slug), None)

    async def list_categories(self) -> list[str]:
        return list(self.categories)


class FakeGenerator(GenerationClient):
    def __init__(self, tokens=("Hi", " there", "!"), error: Exception | None = None, fail_at: int | None = None):
        self.tokens = list(tokens)
        self.error = error
        self.fail_at = fail_at
        self.calls: list[dict] = []

    async def stream(self, system_prompt, history, message):
        self.calls.append({"system_prompt": system_prompt, "history": list(history), "message": message})
        for index, token in enumerate(self.tokens):
            if self.error is not None and self.fail_at == index:
                raise self.error
            yield token
        if self.error is not None and self.fail_at is None:
            raise self.error


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def store(session_factory) -> SessionStore:
    return SessionStore(session_factory=session_factory)
