from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from app.core.config import settings

if TYPE_CHECKING:
    from app.services.retrieval_service import RetrievedArticle

logger = logging.getLogger(__name__)

_STOP_WORDS = {
    "a",
    "about",
    "an",
    "and",
    "any",
    "are",
    "as",
    "at",
    "be",
    "can",
    "do",
    "does",
    "for",
    "from",
    "how",
    "i",
    "in",
    "is",
    "it",
    "me",
    "my",
    "of",
    "on",
    "or",
    "please",
    "should",
    "that",
    "the",
    "there",
    "to",
    "what",
    "where",
    "which",
    "with",
    "you",
}

_RECOMMENDATION_PHRASES = (
    "recommend",
    "suggestion",
    "suggest",
    "what should i read",
    "what can i read",
    "articles about",
    "show me articles",
    "list articles",
    "what articles",
    "find articles",
)

_LISTING_PATTERN = re.compile(
    r"\b(show me|list|find|give me)\b.*\b(articles?|guides?|pages?|resources?|readings?)\b"
)

_COMPARISON_PATTERN = re.compile(r"\b(vs\.?|versus|compare|compared to|comparison)\b")

_COMPETING_INSTITUTIONS = (
    "harvard",
    "stanford",
    "mit",
    "oxford",
    "cambridge",
    "yale",
    "princeton",
    "berkeley",
    "caltech",
    "eth zurich",
    "eth zürich",
    "lmu",
    "ludwig maximilian",
    "rwth aachen",
    "kit karlsruhe",
    "heidelberg university",
    "humboldt",
    "free university berlin",
    "university of",
)

_OUT_OF_SCOPE_TOPICS = (
    "recipe",
    "cooking",
    "weather",
    "stock market",
    "cryptocurrency",
    "bitcoin",
    "movie",
    "tv show",
    "celebrity",
    "sports score",
    "football match",
    "game result",
    "how to fix",
    "repair",
    "medical advice",
    "legal advice",
    "tax",
    "investment",
)

_GENERAL_KNOWLEDGE_PATTERNS = (
    re.compile(r"^what is the capital of"),
    re.compile(r"^who is the president of"),
    re.compile(r"^when did .* happen"),
    re.compile(r"^how do i (cook|make|build|fix)"),
    re.compile(r"^what'?s the weather"),
    re.compile(r"^tell me a joke"),
    re.compile(r"^write me a (story|poem|song)"),
)

_CONTEXT_TOKENS = ("campus", "student", "students", "university")


class Disposition(str, Enum):
    DIRECT = "direct"
    RECOMMENDATION = "recommendation"
    OUT_OF_SCOPE = "out_of_scope"
    AMBIGUOUS = "ambiguous"


@dataclass(slots=True)
class QueryFeatures:
    cleaned: str
    word_count: int
    keywords: list[str]
    significant_words: list[str]


@dataclass(slots=True)
class AmbiguityOption:
    category: str
    example_title: str


def _tokenize(text: str) -> list[str]:
    return re.findall(r"[a-zA-Z0-9_äöüß]{2,}", text.lower())


def _contains_term(text: str, term: str) -> bool:
    # Whole-word match that tolerates simple plurals ("taxes", "movies").
    return re.search(rf"\b{re.escape(term)}(?:s|es)?\b", text) is not None


def _mentions_any(text: str, terms: Iterable[str]) -> bool:
    return any(_contains_term(text, term) for term in terms)


def analyze_query(query: str) -> QueryFeatures:
    cleaned = " ".join(query.split()).strip()
    tokens = _tokenize(cleaned)
    significant = [token for token in tokens if token not in _STOP_WORDS]
    keywords = list(dict.fromkeys(token for token in significant if len(token) > 2))
    return QueryFeatures(
        cleaned=cleaned,
        word_count=len(cleaned.split()) if cleaned else 0,
        keywords=keywords,
        significant_words=significant,
    )


def mentions_home_institution(query: str) -> bool:
    return _mentions_any(query.lower(), settings.home_institution_tokens)


def is_recommendation_query(query: str) -> bool:
    query_lower = query.lower()
    if any(phrase in query_lower for phrase in _RECOMMENDATION_PHRASES):
        return True
    return _LISTING_PATTERN.search(query_lower) is not None


def is_out_of_scope_query(query: str) -> bool:
    """
    Decide whether a query falls outside the campus wiki's remit.

    Rules are applied in order: a comparison that names the home institution
    stays in scope; naming a competing institution without the home token is
    out of scope; a general-knowledge trigger without any campus context is out
    of scope; everything else is in scope.
    """
    query_lower = " ".join(query.lower().split())
    has_home = mentions_home_institution(query_lower)

    if has_home and _COMPARISON_PATTERN.search(query_lower):
        return False

    if not has_home and _mentions_any(query_lower, _COMPETING_INSTITUTIONS):
        return True

    has_context = has_home or _mentions_any(query_lower, _CONTEXT_TOKENS)
    if has_context:
        return False

    if _mentions_any(query_lower, _OUT_OF_SCOPE_TOPICS):
        return True
    return any(pattern.search(query_lower) for pattern in _GENERAL_KNOWLEDGE_PATTERNS)


def _best_score_per_category(retrieved: Sequence[RetrievedArticle]) -> dict[str, float]:
    best: dict[str, float] = {}
    for item in retrieved:
        category = item.source.category
        if category not in best or item.relevance_score > best[category]:
            best[category] = item.relevance_score
    return best


def is_ambiguous_query(query: str, retrieved: Sequence[RetrievedArticle]) -> bool:
    if len(retrieved) < 3:
        return False

    if len(analyze_query(query).significant_words) > 2:
        return False

    best = _best_score_per_category(retrieved)
    if len(best) < 2:
        return False

    top = max(best.values())
    close_categories = [
        category for category, score in best.items() if score >= top - settings.ambiguity_score_margin
    ]
    return len(close_categories) >= 2


def get_ambiguity_options(retrieved: Sequence[RetrievedArticle]) -> list[AmbiguityOption]:
    options: dict[str, str] = {}
    for item in retrieved:
        options.setdefault(item.source.category, item.source.title)
    return [AmbiguityOption(category=category, example_title=title) for category, title in options.items()]


def is_likely_out_of_scope(query: str, retrieved: Sequence[RetrievedArticle]) -> bool:
    if is_out_of_scope_query(query):
        return True
    return not retrieved and not mentions_home_institution(query)


def classify_query(query: str, retrieved: Sequence[RetrievedArticle] | None = None) -> Disposition:
    if is_out_of_scope_query(query):
        disposition = Disposition.OUT_OF_SCOPE
    elif retrieved is not None and is_ambiguous_query(query, retrieved):
        disposition = Disposition.AMBIGUOUS
    elif is_recommendation_query(query):
        disposition = Disposition.RECOMMENDATION
    else:
        disposition = Disposition.DIRECT

    logger.debug("Classified query %r as %s", query, disposition.value)
    return disposition
