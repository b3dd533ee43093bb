import asyncio

import httpx
import pytest

from app.services.knowledge_base_service import KnowledgeBaseClient, KnowledgeBaseError

BASE_URL = "http://wiki.test/api/wiki"


def _client(handler) -> KnowledgeBaseClient:
    return KnowledgeBaseClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))


def test_search_returns_hits_in_rank_order():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {"id": 7, "title": "Dorm Guide", "slug": "dorm-guide", "category": "Housing", "views": 3},
                {"id": "8", "title": "Mensa", "slug": "mensa", "category": "Campus Life", "excerpt": "Food"},
            ],
        )

    hits = asyncio.run(_client(handler).search("cheap housing"))

    assert [hit.slug for hit in hits] == ["dorm-guide", "mensa"]
    assert hits[0].id == "7"
    assert hits[1].excerpt == "Food"
    assert seen[0].url.path == "/api/wiki/search"
    assert seen[0].url.params["q"] == "cheap housing"


def test_blank_search_skips_the_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert asyncio.run(_client(handler).search("   ")) == []


def test_get_by_slug_missing_article_is_none():
    def handler(request):
        if request.url.path.endswith("/articles/dorm-guide"):
            return httpx.Response(
                200,
                json={
                    "id": "1",
                    "title": "Dorm Guide",
                    "slug": "dorm-guide",
                    "category": "Housing",
                    "content": "# Dorms",
                    "created_at": "2024-01-01T00:00:00Z",
                },
            )
        return httpx.Response(404, json={"error": "not found"})

    client = _client(handler)
    article = asyncio.run(client.get_by_slug("dorm-guide"))

    assert article.content == "# Dorms"
    assert article.created_at.year == 2024
    assert asyncio.run(client.get_by_slug("gone")) is None


def test_list_categories_accepts_objects_and_strings():
    def handler(request):
        return httpx.Response(200, json=[{"category": "Academics", "articleCount": 4}, "Housing"])

    assert asyncio.run(_client(handler).list_categories()) == ["Academics", "Housing"]


def test_upstream_failures_raise_knowledge_base_error():
    def server_error(request):
        return httpx.Response(500, text="boom")

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    def malformed(request):
        return httpx.Response(200, json={"unexpected": True})

    with pytest.raises(KnowledgeBaseError):
        asyncio.run(_client(server_error).search("exams"))
    with pytest.raises(KnowledgeBaseError):
        asyncio.run(_client(unreachable).get_by_slug("exams"))
    with pytest.raises(KnowledgeBaseError):
        asyncio.run(_client(malformed).search("exams"))
    with pytest.raises(KnowledgeBaseError):
        asyncio.run(_client(malformed).list_categories())
