from app.schemas.chat import ArticleSource
from app.services.query_classifier_service import (
    Disposition,
    analyze_query,
    classify_query,
    get_ambiguity_options,
    is_ambiguous_query,
    is_likely_out_of_scope,
    is_out_of_scope_query,
    is_recommendation_query,
)
from app.services.retrieval_service import RetrievedArticle

from conftest import make_article


def _retrieved(*items: tuple[str, str, float]) -> list[RetrievedArticle]:
    result = []
    for slug, category, score in items:
        article = make_article(slug, category)
        result.append(
            RetrievedArticle(
                article=article,
                relevant_content=article.content,
                relevance_score=score,
                source=ArticleSource(title=article.title, slug=slug, category=category),
            )
        )
    return result


def test_analyze_query_drops_stop_words_and_normalizes_whitespace():
    features = analyze_query("  Where is   the library  ")

    assert features.cleaned == "Where is the library"
    assert features.word_count == 4
    assert features.significant_words == ["library"]
    assert features.keywords == ["library"]


def test_recommendation_phrases_are_detected():
    assert is_recommendation_query("Can you recommend something about housing?")
    assert is_recommendation_query("show me articles on exams")
    assert is_recommendation_query("Please list guides for new students")
    assert not is_recommendation_query("When does the semester start?")


def test_competing_institution_without_home_token_is_out_of_scope():
    assert is_out_of_scope_query("What is the tuition at Harvard?")
    assert is_out_of_scope_query("Tell me about Stanford dorms")


def test_comparison_with_home_institution_stays_in_scope():
    assert not is_out_of_scope_query("How does TUM compare to MIT for computer science?")
    assert not is_out_of_scope_query("TUM vs LMU housing")


def test_competitor_names_match_whole_words_only():
    assert not is_out_of_scope_query("How do I submit my thesis?")


def test_general_knowledge_needs_campus_context_to_stay_in_scope():
    assert is_out_of_scope_query("What is the capital of France?")
    assert is_out_of_scope_query("Give me a pasta recipe")
    assert is_out_of_scope_query("tell me a joke")
    assert not is_out_of_scope_query("Is there a cooking club on campus?")
    assert not is_out_of_scope_query("Do students get tax discounts?")


def test_plain_campus_question_is_in_scope():
    assert not is_out_of_scope_query("When is the library open during exams?")


def test_ambiguity_requires_three_results():
    retrieved = _retrieved(("a", "Academics", 100), ("b", "Campus Life", 95))
    assert not is_ambiguous_query("registration", retrieved)


def test_short_query_across_close_categories_is_ambiguous():
    retrieved = _retrieved(("a", "Academics", 100), ("b", "Campus Life", 95), ("c", "Events", 90))
    assert is_ambiguous_query("registration", retrieved)


def test_long_specific_query_is_never_ambiguous():
    retrieved = _retrieved(("a", "Academics", 100), ("b", "Campus Life", 95), ("c", "Events", 90))
    assert not is_ambiguous_query("course registration deadline for informatics master", retrieved)


def test_single_category_or_distant_scores_are_not_ambiguous():
    same_category = _retrieved(("a", "Academics", 100), ("b", "Academics", 95), ("c", "Academics", 90))
    distant = _retrieved(("a", "Academics", 100), ("b", "Academics", 95), ("c", "Events", 50))

    assert not is_ambiguous_query("registration", same_category)
    assert not is_ambiguous_query("registration", distant)


def test_ambiguity_options_keep_first_title_per_category():
    retrieved = _retrieved(
        ("exam-rules", "Academics", 100),
        ("gym", "Campus Life", 95),
        ("exam-dates", "Academics", 90),
    )

    options = get_ambiguity_options(retrieved)

    assert [(o.category, o.example_title) for o in options] == [
        ("Academics", "Exam Rules"),
        ("Campus Life", "Gym"),
    ]


def test_likely_out_of_scope_when_nothing_found_and_home_not_named():
    assert is_likely_out_of_scope("quantum chromodynamics", [])
    assert not is_likely_out_of_scope("TUM quantum chromodynamics", [])
    assert not is_likely_out_of_scope("library hours", _retrieved(("a", "Academics", 100)))


def test_classify_query_precedence():
    close = _retrieved(("a", "Academics", 100), ("b", "Campus Life", 95), ("c", "Events", 90))

    assert classify_query("Recommend Harvard housing") is Disposition.OUT_OF_SCOPE
    assert classify_query("registration", close) is Disposition.AMBIGUOUS
    assert classify_query("recommend articles about housing") is Disposition.RECOMMENDATION
    assert classify_query("library opening hours") is Disposition.DIRECT
