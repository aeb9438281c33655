"""
Unit tests for core/merge_engine.py - MergeEngine

Tests the three merge strategies, preconditions and side effects:
- keep-both interleaving by timestamp
- prefer-source / prefer-target
- Into-new-branch vs in-place application
- Retirement, activation, reply edges, invalidation
- Conflicts, preview, history
"""
import pytest

from core.conversation_graph import ConversationGraph
from core.merge_engine import InvalidMergeError
from core.graph_db import NotFoundError
from core.ontology import EdgeType, MergeStrategy
from infrastructure.config import MergeConfig, ThreadloomConfig
from infrastructure.event_bus import ChangeEventType


# =============================================================================
# STRATEGY TESTS
# =============================================================================

def test_keep_both_interleaves_by_timestamp(graph, forked):
    """
    Validate keep-both ordering.

    fork: s1 (+2), s2 (+4)   main: t1 (+3), t2 (+5)
    Expected post-divergence order: s1, t1, s2, t2
    """
    result = graph.merge(forked["fork"], forked["main"], "keep-both")

    expected = (forked["s1"], forked["t1"], forked["s2"], forked["t2"])
    assert result.merged_ids == expected
    assert graph.get_branch(forked["main"]).messages == (forked["m1"], forked["m2"]) + expected
    assert result.discarded_ids == ()


def test_keep_both_ties_keep_source_first(graph, conversation, at):
    """Equal timestamps order source messages before target messages."""
    conv, m1, m2 = conversation
    main = conv.root_branch_id
    t1 = graph.add_message(conv.id, {"content": "target", "timestamp": at(10)})
    s1 = graph.create_branch(m2, {"content": "source", "timestamp": at(10)})
    fork = graph.get_message(s1).branch_id

    result = graph.merge(fork, main, MergeStrategy.KEEP_BOTH)

    assert result.merged_ids == (s1, t1)


def test_prefer_source_replaces_target_suffix(graph, forked):
    result = graph.merge(forked["fork"], forked["main"], "prefer-source")

    assert graph.get_branch(forked["main"]).messages == (
        forked["m1"], forked["m2"], forked["s1"], forked["s2"]
    )
    assert result.discarded_ids == (forked["t1"], forked["t2"])


def test_prefer_target_leaves_target_unchanged(graph, forked):
    """Scenario: the active branch after a prefer-target merge is the untouched target."""
    before = graph.get_branch(forked["main"]).messages

    result = graph.merge(forked["fork"], forked["main"], "prefer-target")

    active = graph.get_active_branch()
    assert active.id == forked["main"]
    assert active.messages == before
    assert result.discarded_ids == (forked["s1"], forked["s2"])


def test_unknown_strategy_is_rejected(graph, forked):
    with pytest.raises(ValueError) as exc_info:
        graph.merge(forked["fork"], forked["main"], "newest-wins")

    assert "keep-both" in str(exc_info.value)


# =============================================================================
# APPLICATION TESTS
# =============================================================================

def test_merge_into_new_branch(graph, forked):
    """
    Validate into_new_branch.

    Verifies:
    - A new branch is created (parent = target, branch point = divergence)
    - The target keeps its messages
    - The new branch is active and passes validation
    """
    before = graph.get_branch(forked["main"]).messages

    result = graph.merge(forked["fork"], forked["main"], "keep-both", into_new_branch=True)
    merged = graph.get_branch(result.result_branch_id)

    assert result.created_branch
    assert merged.parent_branch_id == forked["main"]
    assert merged.branch_point == forked["m2"]
    assert graph.get_branch(forked["main"]).messages == before
    assert graph.get_active_branch().id == merged.id
    assert graph.validate().valid


def test_prefer_target_never_creates_branch(graph, forked):
    result = graph.merge(forked["fork"], forked["main"], "prefer-target", into_new_branch=True)

    assert not result.created_branch
    assert result.result_branch_id == forked["main"]


def test_source_is_retired(graph, forked):
    """
    The source gets merged_into set, is hidden from default listings and
    can no longer be switched to or merged.
    """
    result = graph.merge(forked["fork"], forked["main"], "keep-both")
    source = graph.get_branch(forked["fork"])

    assert source.merged_into == forked["main"]
    assert not source.active
    assert result.retired_branch_ids == (forked["fork"],)
    assert forked["fork"] not in [b.id for b in graph.get_branches()]
    assert forked["fork"] in [b.id for b in graph.get_branches(include_merged=True)]

    with pytest.raises(InvalidMergeError):
        graph.merge(forked["fork"], forked["main"], "keep-both")


def test_merge_adds_reply_edges_for_new_order(graph, forked):
    graph.merge(forked["fork"], forked["main"], "keep-both")

    store = graph.store
    assert store.get_edges_between(forked["s1"], forked["t1"], EdgeType.REPLY.value)
    assert store.get_edges_between(forked["t1"], forked["s2"], EdgeType.REPLY.value)
    assert store.get_edges_between(forked["s2"], forked["t2"], EdgeType.REPLY.value)


def test_prefer_source_invalidates_reply_edges_into_discarded(graph, forked):
    graph.merge(forked["fork"], forked["main"], "prefer-source")

    store = graph.store
    assert store.get_incoming_edges(forked["t1"], EdgeType.REPLY.value) == []
    stale = store.get_incoming_edges(forked["t1"], EdgeType.REPLY.value, include_invalidated=True)
    assert stale and all(e.invalidated for e in stale)


def test_merge_event(graph, forked, recorder):
    result = graph.merge(forked["fork"], forked["main"], "keep-both")

    event = recorder[-1]
    assert event.type == ChangeEventType.MERGE_COMPLETED
    assert event.payload["result_branch_id"] == result.result_branch_id
    assert event.payload["strategy"] == "keep-both"
    assert event.payload["retired_branch_ids"] == [forked["fork"]]


# =============================================================================
# PRECONDITION TESTS
# =============================================================================

def test_merge_with_itself_fails(graph, forked):
    with pytest.raises(InvalidMergeError):
        graph.merge(forked["main"], forked["main"], "keep-both")


def test_merge_across_conversations_fails(graph, forked):
    other = graph.create_conversation("Other")
    graph.add_message(other.id, {"content": "elsewhere"})

    with pytest.raises(InvalidMergeError):
        graph.merge(other.root_branch_id, forked["main"], "keep-both")


def test_merge_unknown_branch(graph, forked):
    with pytest.raises(NotFoundError):
        graph.merge("ghost", forked["main"], "keep-both")


def test_in_place_merge_cannot_rewrite_child_prefix(graph, forked):
    """
    A live child forked from main after the divergence point would have its
    prefix rewritten by an in-place merge; merging into a new branch works.
    """
    graph.switch_branch(forked["main"])
    graph.create_branch(forked["t1"], {"content": "child of main"})

    with pytest.raises(InvalidMergeError):
        graph.merge(forked["fork"], forked["main"], "prefer-source")

    assert graph.get_branch(forked["fork"]).merged_into is None

    result = graph.merge(forked["fork"], forked["main"], "prefer-source", into_new_branch=True)
    assert graph.validate().valid
    assert result.created_branch


def test_in_place_merge_cannot_drop_target_branch_point(graph, conversation):
    """
    A source that forked from main before the target fork's branch point
    would cut that branch point out of the target if merged in place.

    main:   m1, m2
    target: m1, m2, b1   (forked at m2)
    source: m1, c1       (forked at m1)
    """
    conv, m1, m2 = conversation
    b1 = graph.create_branch(m2, {"content": "fork at the reply"})
    target = graph.get_message(b1).branch_id
    c1 = graph.create_branch(m1, {"content": "fork at the question"})
    source = graph.get_message(c1).branch_id

    with pytest.raises(InvalidMergeError, match="before its branch point"):
        graph.merge(source, target, "prefer-source")
    with pytest.raises(InvalidMergeError):
        graph.merge(source, target, "keep-both")

    assert graph.get_branch(target).messages == (m1, m2, b1)
    assert graph.get_branch(source).merged_into is None

    result = graph.merge(source, target, "prefer-source", into_new_branch=True)
    merged = graph.get_branch(result.result_branch_id)
    assert merged.messages == (m1, c1)
    assert merged.branch_point == m1
    assert graph.validate().valid


# =============================================================================
# CONFLICTS / PREVIEW / HISTORY
# =============================================================================

def test_conflicts_are_reported_position_wise(graph, forked):
    result = graph.merge(forked["fork"], forked["main"], "keep-both")

    assert [c.position for c in result.conflicts] == [0, 1]
    assert result.conflicts[0].source_message_id == forked["s1"]
    assert result.conflicts[0].target_message_id == forked["t1"]
    assert result.has_conflicts


def test_identical_content_is_not_a_conflict(graph, conversation, at):
    conv, _, m2 = conversation
    graph.add_message(conv.id, {"content": "same", "timestamp": at(5)})
    s1 = graph.create_branch(m2, {"content": "same", "timestamp": at(6)})

    result = graph.preview_merge(graph.get_message(s1).branch_id, conv.root_branch_id, "keep-both")

    assert result.conflicts == ()


def test_preview_does_not_commit(graph, forked, recorder):
    before = graph.snapshot()

    preview = graph.preview_merge(forked["fork"], forked["main"], "prefer-source")

    assert not preview.committed
    assert preview.messages == (forked["m1"], forked["m2"], forked["s1"], forked["s2"])
    assert graph.snapshot() == before
    assert recorder == []
    assert graph.get_merge_history() == []


def test_merge_history(graph, forked):
    result = graph.merge(forked["fork"], forked["main"], "keep-both")

    history = graph.get_merge_history(forked["conv"].id)
    assert history == [result]
    assert history[0].committed


# =============================================================================
# CANDIDATE TESTS
# =============================================================================

def _three_branches(graph, at):
    """
    main: m1, m2, t1           (t1 at +2)
    dup:  m1, m2, d1           (d1 at +3, same content as t1)
    far:  m1, f1               (f1 at +4, unrelated)
    """
    conv = graph.create_conversation("Candidates")
    m1 = graph.add_message(conv.id, {"content": "Can you help me understand the Dashboard component?", "timestamp": at(0)})
    m2 = graph.add_message(conv.id, {"content": "Sure. The Dashboard renders widgets from a layout config.", "timestamp": at(1)})
    graph.add_message(conv.id, {"content": "Cache the dashboard widgets layout", "timestamp": at(2)})
    d1 = graph.create_branch(m2, {"content": "Cache the dashboard widgets layout", "timestamp": at(3)})
    f1 = graph.create_branch(m1, {"content": "Billing export runs nightly", "timestamp": at(4)})
    return {
        "conv": conv,
        "main": conv.root_branch_id,
        "dup": graph.get_message(d1).branch_id,
        "far": graph.get_message(f1).branch_id,
    }


def test_candidates_are_ranked_by_similarity(graph, at):
    """
    Validate candidate ranking.

    Verifies:
    - Every live pair above the threshold is listed, later branch as source
    - A near-duplicate fork ranks first and is recommended for merging
    - Equal scores keep branch creation order
    """
    b = _three_branches(graph, at)

    candidates = graph.find_merge_candidates(b["conv"].id)

    assert [(c.source_branch_id, c.target_branch_id) for c in candidates] == [
        (b["dup"], b["main"]),
        (b["far"], b["main"]),
        (b["far"], b["dup"]),
    ]
    best = candidates[0]
    assert best.recommendation == "merge"
    assert best.shared_count == 2
    assert best.conflicts == ()
    assert best.topic_overlap == ("cache", "dashboard", "layout", "widgets")
    assert best.time_gap_minutes == pytest.approx(1.0)
    assert candidates[1].similarity == candidates[2].similarity
    assert candidates[1].recommendation == "review"


def test_candidates_report_conflicts(graph, forked):
    candidates = graph.find_merge_candidates()

    assert len(candidates) == 1
    assert candidates[0].source_branch_id == forked["fork"]
    assert candidates[0].target_branch_id == forked["main"]
    assert [c.position for c in candidates[0].conflicts] == [0, 1]
    assert candidates[0].recommendation == "review"


def test_candidate_threshold_comes_from_config(at):
    graph = ConversationGraph(config=ThreadloomConfig(merge=MergeConfig(candidate_threshold=0.5)))
    b = _three_branches(graph, at)

    candidates = graph.find_merge_candidates(b["conv"].id)

    assert [(c.source_branch_id, c.target_branch_id) for c in candidates] == [(b["dup"], b["main"])]


def test_candidates_skip_retired_branches_and_never_merge(graph, forked, recorder):
    before = graph.snapshot()
    graph.find_merge_candidates(forked["conv"].id)
    assert graph.snapshot() == before
    assert recorder == []

    graph.merge(forked["fork"], forked["main"], "keep-both")

    assert graph.find_merge_candidates(forked["conv"].id) == []


def test_candidates_for_unknown_conversation(graph):
    with pytest.raises(NotFoundError):
        graph.merge_engine.find_candidates("ghost")
