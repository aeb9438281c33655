"""
Unit tests for core/search_index.py - SearchIndex

Tests relevance scoring, filters, ordering, early termination, snippets
and result context.
"""
import pytest

from core.search_index import SearchFilters, SearchIndex, SearchQuery, tokenize


@pytest.fixture
def searchable(graph, at):
    """One conversation with messages spread over time."""
    conv = graph.create_conversation("Search")
    ids = {}
    ids["dash"] = graph.add_message(conv.id, {
        "role": "user",
        "content": "How does the dashboard component load data? It feels slow.",
        "timestamp": at(0),
    })
    ids["answer"] = graph.add_message(conv.id, {
        "role": "assistant",
        "content": "The dashboard component fetches data on mount. Caching would help.",
        "timestamp": at(1),
    })
    ids["other"] = graph.add_message(conv.id, {
        "role": "user",
        "content": "Unrelated question about billing.",
        "timestamp": at(2),
    })
    return conv, ids


# =============================================================================
# SCORING TESTS
# =============================================================================

def test_tokenize_is_case_insensitive():
    assert tokenize("Dashboard, DATA!") == ["dashboard", "data"]


def test_full_phrase_match_scores_one(graph, searchable):
    _, ids = searchable

    results = graph.search("dashboard component")

    assert [r.message.id for r in results] == [ids["answer"], ids["dash"]]
    assert all(r.relevance_score == 1.0 for r in results)


def test_partial_token_match_scores_proportionally(graph, searchable):
    """One of two query tokens, no phrase match: 0.7 * 1/2."""
    _, ids = searchable

    results = graph.search("billing invoices")

    assert [r.message.id for r in results] == [ids["other"]]
    assert results[0].relevance_score == pytest.approx(0.35)


def test_tokens_without_phrase_match(graph, searchable):
    """All tokens present but not as a contiguous phrase: 0.7."""
    _, ids = searchable

    results = graph.search("component dashboard")

    assert results[0].relevance_score == pytest.approx(0.7)


def test_zero_scores_are_dropped(graph, searchable):
    assert graph.search("kubernetes") == []


def test_empty_text_matches_everything_newest_first(graph, searchable):
    _, ids = searchable

    results = graph.search("")

    assert [r.message.id for r in results] == [ids["other"], ids["answer"], ids["dash"]]
    assert all(r.relevance_score == 1.0 for r in results)
    assert all(r.matched_content == () for r in results)


def test_order_is_score_then_timestamp(graph, searchable):
    """Higher scores first; equal scores newest first."""
    _, ids = searchable

    results = graph.search("dashboard billing")

    # dash/answer: 1 of 2 tokens -> 0.35; other: 1 of 2 -> 0.35
    assert [r.message.id for r in results] == [ids["other"], ids["answer"], ids["dash"]]


def test_limit_stops_after_perfect_scores(graph, searchable):
    _, ids = searchable

    results = graph.search(SearchQuery(text="", limit=1))

    assert [r.message.id for r in results] == [ids["other"]]


def test_zero_limit_returns_nothing(graph, searchable):
    assert graph.search(SearchQuery(text="dashboard", limit=0)) == []


# =============================================================================
# FILTER TESTS
# =============================================================================

def test_role_filter(graph, searchable):
    _, ids = searchable

    results = graph.search("", filters=SearchFilters(role="assistant"))

    assert [r.message.id for r in results] == [ids["answer"]]


def test_date_range_filter_is_inclusive(graph, searchable, at):
    _, ids = searchable

    results = graph.search("", filters=SearchFilters(date_range=(at(1), at(2))))

    assert {r.message.id for r in results} == {ids["answer"], ids["other"]}


def test_branch_filter_includes_shared_prefix(graph, searchable, at):
    """A fork's branch filter also returns the messages it shares with its parent."""
    conv, ids = searchable
    fork_first = graph.create_branch(ids["dash"], {"content": "What about charts?", "timestamp": at(3)})
    fork_id = graph.get_message(fork_first).branch_id

    results = graph.search("", filters=SearchFilters(branch_ids=(fork_id,)))

    assert [r.message.id for r in results] == [fork_first, ids["dash"]]


def test_has_code_links_filter(graph, searchable):
    _, ids = searchable
    graph.link_to_code(ids["dash"], "src/components/Dashboard.tsx")

    with_code = graph.search("", filters=SearchFilters(has_code_links=True))
    without_code = graph.search("", filters=SearchFilters(has_code_links=False))

    assert [r.message.id for r in with_code] == [ids["dash"]]
    assert ids["dash"] not in [r.message.id for r in without_code]
    assert len(without_code) == 2


def test_filters_accept_plain_dicts(graph, searchable, at):
    _, ids = searchable
    graph.link_to_code(ids["dash"], "src/components/Dashboard.tsx")

    with_code = graph.search("", filters={"has_code_links": True})
    in_range = graph.search("", filters={"date_range": [at(1), at(2)], "role": "assistant"}, limit=5)

    assert [r.message.id for r in with_code] == [ids["dash"]]
    assert [r.message.id for r in in_range] == [ids["answer"]]


@pytest.mark.parametrize("kwargs", [
    {"filters": {"has_code_links": "often"}},
    {"filters": {"branch_ids": 7}},
    {"limit": "ten"},
])
def test_malformed_search_arguments(graph, searchable, kwargs):
    with pytest.raises(ValueError, match="Invalid search query"):
        graph.search("dashboard", **kwargs)


def test_conversation_filter(graph, searchable):
    other = graph.create_conversation("Elsewhere")
    mine = graph.add_message(other.id, {"content": "dashboard again"})

    results = graph.search("dashboard", filters=SearchFilters(conversation_id=other.id))

    assert [r.message.id for r in results] == [mine]


# =============================================================================
# SNIPPETS / CONTEXT TESTS
# =============================================================================

def test_matched_content_is_matching_sentences(graph, searchable):
    _, ids = searchable

    results = graph.search("caching")

    assert results[0].message.id == ids["answer"]
    assert results[0].matched_content == ("Caching would help",)


def test_context_includes_linked_code_and_related(graph, searchable):
    _, ids = searchable
    code = graph.link_to_code(ids["answer"], "src/components/Dashboard.tsx", language="tsx")
    graph.link_bidirectional(ids["answer"], ids["other"])

    result = [r for r in graph.search("caching") if r.message.id == ids["answer"]][0]

    assert [c.id for c in result.context.linked_code] == [code.id]
    related = [m.id for m in result.context.related_messages]
    assert ids["dash"] in related
    assert ids["other"] in related


def test_token_sets_are_cached(graph, searchable):
    _, ids = searchable
    index = SearchIndex(graph._state)
    message = graph.get_message(ids["dash"])

    first = index.tokens_for(message)

    assert index.tokens_for(message) is first
    assert "dashboard" in first

    index.clear_cache()
    assert index.tokens_for(message) is not first
