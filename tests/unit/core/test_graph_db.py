"""
Unit tests for core/graph_db.py - NodeStore

Tests the keyed node/edge storage including:
- Node creation and retrieval
- Edge creation, parallel edges and invalidation
- Lazy snapshot sequences
- Batch operations
- Error handling
"""
import pytest
from core.graph_db import (
    NodeStore,
    GraphError,
    NotFoundError,
    DuplicateIdError,
)
from core.schemas import MessageNode, CodeNode, DocumentNode, EdgeData
from core.ontology import NodeType, EdgeType


def _message(node_id: str, content: str = "hello") -> MessageNode:
    return MessageNode(id=node_id, content=content, conversation_id="c1", branch_id="b1")


# =============================================================================
# NODE OPERATIONS TESTS
# =============================================================================

def test_add_node_creates_node(fresh_store):
    """
    Validate that add_node stores a node retrievable by id.

    Verifies:
    - Node count increases by 1
    - Node can be retrieved by id with its payload intact
    """
    fresh_store.add_node(_message("m1", "Can you help?"))

    assert fresh_store.node_count == 1
    assert fresh_store.has_node("m1")
    assert "m1" in fresh_store
    assert fresh_store.get_node("m1").content == "Can you help?"


def test_add_node_duplicate_id_fails(fresh_store):
    """
    Validate that adding a node with a duplicate id raises DuplicateIdError.

    Verifies:
    - Second add raises
    - Error carries the id
    - Store still holds one node
    """
    fresh_store.add_node(_message("m1"))

    with pytest.raises(DuplicateIdError) as exc_info:
        fresh_store.add_node(CodeNode(id="m1", file_path="a.py"))

    assert exc_info.value.item_id == "m1"
    assert "m1" in str(exc_info.value)
    assert fresh_store.node_count == 1


def test_get_node_returns_none_for_unknown(fresh_store):
    """Pure lookups return None instead of raising."""
    assert fresh_store.get_node("missing") is None


def test_require_node_raises_not_found(fresh_store):
    """Identity lookups raise NotFoundError, which is a GraphError."""
    with pytest.raises(NotFoundError) as exc_info:
        fresh_store.require_node("missing")

    assert isinstance(exc_info.value, GraphError)
    assert exc_info.value.kind == "node"
    assert "missing" in str(exc_info.value)


def test_find_nodes_by_type(fresh_store):
    """find_nodes filters by the node's type tag."""
    fresh_store.add_node(_message("m1"))
    fresh_store.add_node(CodeNode(id="c1", file_path="src/app.py"))
    fresh_store.add_node(DocumentNode(id="d1", uri="https://docs"))

    assert [n.id for n in fresh_store.find_nodes(NodeType.CODE.value)] == ["c1"]
    assert len(fresh_store.find_nodes()) == 3


def test_add_nodes_batch_is_all_or_nothing(fresh_store):
    """
    Validate batch insertion validation.

    Verifies:
    - A duplicate anywhere in the batch raises before anything is inserted
    """
    fresh_store.add_node(_message("m1"))

    with pytest.raises(DuplicateIdError):
        fresh_store.add_nodes_batch([_message("m2"), _message("m1")])

    assert fresh_store.node_count == 1
    assert not fresh_store.has_node("m2")

    indices = fresh_store.add_nodes_batch([_message("m2"), _message("m3")])
    assert len(indices) == 2
    assert fresh_store.node_count == 3


# =============================================================================
# EDGE OPERATIONS TESTS
# =============================================================================

def test_add_edge_requires_both_endpoints(fresh_store):
    """Edges to unknown nodes raise NotFoundError and add nothing."""
    fresh_store.add_node(_message("m1"))

    with pytest.raises(NotFoundError):
        fresh_store.add_edge(EdgeData.reply("m1", "ghost"))
    with pytest.raises(NotFoundError):
        fresh_store.add_edge(EdgeData.reply("ghost", "m1"))

    assert fresh_store.edge_count == 0


def test_parallel_edges_are_allowed(fresh_store):
    """
    Validate the store is a multigraph.

    Verifies:
    - Two references edges between the same pair both exist
    - get_edges_between returns them in insertion order
    """
    fresh_store.add_node(_message("m1"))
    fresh_store.add_node(CodeNode(id="c1", file_path="a.py"))

    first = EdgeData.references("m1", "c1")
    second = EdgeData.references("m1", "c1")
    fresh_store.add_edge(first)
    fresh_store.add_edge(second)

    between = fresh_store.get_edges_between("m1", "c1")
    assert [e.id for e in between] == [first.id, second.id]


def test_duplicate_edge_id_fails(fresh_store):
    fresh_store.add_nodes_batch([_message("m1"), _message("m2")])
    edge = EdgeData.reply("m1", "m2")
    fresh_store.add_edge(edge)

    with pytest.raises(DuplicateIdError):
        fresh_store.add_edge(edge)


def test_edge_queries_filter_by_relation(fresh_store):
    """Outgoing/incoming edge queries filter by relation and keep insertion order."""
    fresh_store.add_nodes_batch([_message("m1"), _message("m2"), CodeNode(id="c1", file_path="a.py")])
    reply = EdgeData.reply("m1", "m2")
    ref = EdgeData.references("m1", "c1")
    fresh_store.add_edges_batch([reply, ref])

    assert [e.id for e in fresh_store.get_outgoing_edges("m1")] == [reply.id, ref.id]
    assert [e.id for e in fresh_store.get_outgoing_edges("m1", EdgeType.REFERENCES.value)] == [ref.id]
    assert [e.id for e in fresh_store.get_incoming_edges("m2")] == [reply.id]
    assert fresh_store.get_outgoing_edges("unknown") == []


def test_invalidate_edge_hides_it_by_default(fresh_store):
    """
    Validate invalidate_edge.

    Verifies:
    - Invalidated edges drop out of default queries
    - include_invalidated=True still returns them, flagged
    - The reason is recorded in metadata
    - Invalidating twice is a no-op
    """
    fresh_store.add_nodes_batch([_message("m1"), _message("m2")])
    edge = EdgeData.reply("m1", "m2")
    fresh_store.add_edge(edge)

    invalid = fresh_store.invalidate_edge(edge.id, reason="merge")

    assert invalid.invalidated
    assert invalid.metadata["invalidated_reason"] == "merge"
    assert fresh_store.get_outgoing_edges("m1") == []
    assert fresh_store.get_outgoing_edges("m1", include_invalidated=True)[0].invalidated
    assert fresh_store.get_edge(edge.id).invalidated
    assert fresh_store.has_edge(edge.id)
    assert fresh_store.invalidate_edge(edge.id) == invalid


def test_invalidate_unknown_edge_raises(fresh_store):
    with pytest.raises(NotFoundError):
        fresh_store.invalidate_edge("nope")


# =============================================================================
# SNAPSHOT SEQUENCE TESTS
# =============================================================================

def test_get_all_nodes_is_frozen_and_restartable(fresh_store):
    """
    Validate the lazy snapshot sequence contract.

    Verifies:
    - Finite: later additions don't appear
    - Restartable: iterating twice yields the same items
    """
    fresh_store.add_nodes_batch([_message("m1"), _message("m2")])
    nodes = fresh_store.get_all_nodes()

    fresh_store.add_node(_message("m3"))

    assert len(nodes) == 2
    assert [n.id for n in nodes] == ["m1", "m2"]
    assert [n.id for n in nodes] == ["m1", "m2"]


def test_get_all_edges_sees_invalidation_state(fresh_store):
    """Edge snapshots include invalidated edges."""
    fresh_store.add_nodes_batch([_message("m1"), _message("m2")])
    edge = EdgeData.reply("m1", "m2")
    fresh_store.add_edge(edge)
    fresh_store.invalidate_edge(edge.id)

    edges = list(fresh_store.get_all_edges())
    assert len(edges) == 1
    assert edges[0].invalidated


# =============================================================================
# TRAVERSAL TESTS
# =============================================================================

def test_get_descendants_follows_flow_edges_only(fresh_store):
    """
    Validate get_descendants.

    Verifies:
    - Reply and branch edges are followed
    - References edges and invalidated edges are not
    """
    fresh_store.add_nodes_batch([
        _message("m1"), _message("m2"), _message("m3"), _message("m4"),
        CodeNode(id="c1", file_path="a.py"),
    ])
    fresh_store.add_edge(EdgeData.reply("m1", "m2"))
    fresh_store.add_edge(EdgeData.branch("m2", "m3"))
    fresh_store.add_edge(EdgeData.references("m1", "c1"))
    stale = EdgeData.reply("m3", "m4")
    fresh_store.add_edge(stale)
    fresh_store.invalidate_edge(stale.id)

    assert [n.id for n in fresh_store.get_descendants("m1")] == ["m2", "m3"]


def test_get_descendants_unknown_node(fresh_store):
    with pytest.raises(NotFoundError):
        fresh_store.get_descendants("ghost")


def test_successors_and_predecessors(fresh_store):
    fresh_store.add_nodes_batch([_message("m1"), _message("m2")])
    fresh_store.add_edge(EdgeData.reply("m1", "m2"))

    assert [n.id for n in fresh_store.get_successors("m1")] == ["m2"]
    assert [n.id for n in fresh_store.get_predecessors("m2")] == ["m1"]
    assert repr(fresh_store) == "NodeStore(nodes=2, edges=1)"
