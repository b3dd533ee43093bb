from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from app.core.config import settings
from app.schemas.chat import ArticleSource
from app.schemas.knowledge_base import Article, SearchHit
from app.services.knowledge_base_service import KnowledgeBase
from app.services.query_classifier_service import analyze_query, is_recommendation_query

logger = logging.getLogger(__name__)

NO_RESULTS_CONTEXT = "No relevant articles found."
ELLIPSIS = "..."

_HEADING_PATTERN = re.compile(r"^#{1,6}\s", re.MULTILINE)
_HEADING_SPLIT = re.compile(r"(?=^#{1,6}\s)", re.MULTILINE)
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


@dataclass(slots=True)
class RetrievedArticle:
    article: Article
    relevant_content: str
    relevance_score: float
    source: ArticleSource


@dataclass(slots=True)
class ScoredCandidate:
    hit: SearchHit
    score: float


def _rank_score(rank: int) -> float:
    return max(0.0, 100.0 - rank * settings.retrieval_rank_decay)


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + ELLIPSIS
    return text


def _split_sections(content: str) -> list[str]:
    if _HEADING_PATTERN.search(content):
        return _HEADING_SPLIT.split(content)
    return _PARAGRAPH_SPLIT.split(content)


def extract_relevant_content(content: str, query: str, is_overview: bool = False) -> str:
    """
    Pull the parts of an article that matter for ``query``.

    Parameters
    ----------
    content : str
        Markdown body of the article.
    query : str
        The user's question; its keywords select the sections to keep.
    is_overview : bool
        Return the leading paragraphs instead of keyword-matched sections.
        Used for recommendation queries, where the reader wants a summary.

    Returns
    -------
    str
        At most ``content_max_chars`` characters (``overview_max_chars`` in
        overview mode) plus an ellipsis when cut. When no section mentions a
        keyword, the first ``content_fallback_chars`` characters of the raw
        content are returned without a marker.
    """
    if is_overview:
        overview = "\n\n".join(content.split("\n\n")[:3])
        return _truncate(overview, settings.overview_max_chars)

    keywords = analyze_query(query).keywords
    matching: list[str] = []
    for section in _split_sections(content):
        stripped = section.strip()
        if not stripped:
            continue
        section_lower = stripped.lower()
        if any(keyword in section_lower for keyword in keywords):
            matching.append(stripped)

    if not matching:
        return content[: settings.content_fallback_chars]

    return _truncate("\n\n".join(matching), settings.content_max_chars)


def get_unique_categories(articles: Sequence[RetrievedArticle]) -> list[str]:
    return list(dict.fromkeys(item.source.category for item in articles))


def create_context_string(articles: Sequence[RetrievedArticle]) -> str:
    if not articles:
        return NO_RESULTS_CONTEXT

    categories = get_unique_categories(articles)
    parts = [
        (
            f"\nArticle {index}: {item.article.title}\n"
            f"Category: {item.article.category}\n"
            f"Slug: {item.article.slug}\n\n"
            f"Content:\n{item.relevant_content}\n---\n"
        )
        for index, item in enumerate(articles, start=1)
    ]

    if len(categories) > 1:
        logger.info("Multi-category context: %d categories (%s)", len(categories), ", ".join(categories))

    return "\n".join(parts)


def diversify_candidates(candidates: list[ScoredCandidate], margin: float | None = None) -> list[ScoredCandidate]:
    """
    Reorder rank-ordered candidates so unseen categories surface early.

    For every slot the default pick is the best remaining candidate. When that
    candidate's category is already represented, the best remaining candidate
    from an unrepresented category is taken instead, provided its score is
    within ``margin`` of the default.

    This runs whether or not the candidates span more categories than the
    result window. With few categories a same-category run at the top can
    still hide a close runner-up from another category. Without such a
    runner-up the rank order is kept.
    """
    closeness = settings.retrieval_diversity_margin if margin is None else margin
    remaining = list(candidates)
    ordered: list[ScoredCandidate] = []
    seen: set[str] = set()

    while remaining:
        pick_index = 0
        default = remaining[0]
        if default.hit.category in seen:
            for index, candidate in enumerate(remaining[1:], start=1):
                if candidate.hit.category in seen:
                    continue
                if candidate.score >= default.score - closeness:
                    pick_index = index
                break
        pick = remaining.pop(pick_index)
        ordered.append(pick)
        seen.add(pick.hit.category)

    return ordered


async def retrieve_relevant_articles(query: str, knowledge_base: KnowledgeBase) -> list[RetrievedArticle]:
    hits = await knowledge_base.search(query)
    if not hits:
        logger.info("No knowledge base hits for %r", query)
        return []

    recommendation = is_recommendation_query(query)
    max_results = settings.retrieval_max_results
    min_results = settings.retrieval_min_recommendation_results

    candidates = [ScoredCandidate(hit=hit, score=_rank_score(rank)) for rank, hit in enumerate(hits)]
    ordered = diversify_candidates(candidates)

    results: list[RetrievedArticle] = []
    for candidate in ordered:
        if len(results) >= max_results:
            break
        article = await knowledge_base.get_by_slug(candidate.hit.slug)
        if article is None:
            logger.warning("Search hit %r has no backing article; skipping", candidate.hit.slug)
            continue
        results.append(
            RetrievedArticle(
                article=article,
                relevant_content=extract_relevant_content(article.content, query, is_overview=recommendation),
                relevance_score=candidate.score,
                source=ArticleSource(title=article.title, slug=article.slug, category=article.category),
            )
        )

    if recommendation and len(results) < min(min_results, len(hits)):
        logger.warning(
            "Only %d article(s) resolved for recommendation query %r (wanted at least %d)",
            len(results),
            query,
            min_results,
        )

    categories = get_unique_categories(results)
    logger.info(
        "Retrieved %d article(s) across %d categor%s for %r",
        len(results),
        len(categories),
        "y" if len(categories) == 1 else "ies",
        query,
    )
    return results
