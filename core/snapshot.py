"""
THREADLOOM SNAPSHOT - Persistence Collaborator Contract

A snapshot is four flat sequences: nodes, edges, branches, conversations.
ConversationGraph.snapshot() produces one and ConversationGraph.load()
rebuilds an equivalent graph from it. Where the bytes go is the host's
business; this module only provides codecs and tabular views.

Architecture:
- GraphSnapshot: msgspec Struct, the unit of exchange
- take_snapshot / restore_state: GraphState <-> GraphSnapshot
- encode_snapshot / decode_snapshot: JSON bytes
- encode_snapshot_msgpack / decode_snapshot_msgpack: MessagePack bytes
- to_polars_nodes / to_polars_edges / to_polars_branches: DataFrame views
"""
import logging
from typing import Dict, List, Optional

import msgspec
import polars as pl

from core.graph_db import DuplicateIdError, NodeStore, NotFoundError
from core.schemas import Branch, Conversation, EdgeData, MessageNode, Node, node_type_of
from core.state import GraphState
from infrastructure.config import ThreadloomConfig
from infrastructure.event_bus import ChangeNotifier


logger = logging.getLogger(__name__)


class GraphSnapshot(msgspec.Struct, kw_only=True, frozen=True):
    """Flat, order-preserving dump of a graph."""
    nodes: List[Node] = msgspec.field(default_factory=list)
    edges: List[EdgeData] = msgspec.field(default_factory=list)
    branches: List[Branch] = msgspec.field(default_factory=list)
    conversations: List[Conversation] = msgspec.field(default_factory=list)


# =============================================================================
# STATE <-> SNAPSHOT
# =============================================================================

def take_snapshot(state: GraphState) -> GraphSnapshot:
    """Copy the committed state into a snapshot (insertion order kept)."""
    return GraphSnapshot(
        nodes=list(state.store.get_all_nodes()),
        edges=list(state.store.get_all_edges()),
        branches=list(state.branches.values()),
        conversations=list(state.conversations.values()),
    )


def restore_state(
    snapshot: GraphSnapshot,
    config: Optional[ThreadloomConfig] = None,
    notifier: Optional[ChangeNotifier] = None,
) -> GraphState:
    """
    Build a fresh GraphState from a snapshot.

    Nodes and edges go in with one batch call each. Edge payloads keep their
    invalidated flags.

    Raises:
        DuplicateIdError: If any node/edge/branch/conversation id repeats
        NotFoundError: If an edge endpoint or a branch's conversation is missing
    """
    store = NodeStore()
    store.add_nodes_batch(snapshot.nodes)
    store.add_edges_batch(snapshot.edges)

    conversations: Dict[str, Conversation] = {}
    for conversation in snapshot.conversations:
        if conversation.id in conversations:
            raise DuplicateIdError("conversation", conversation.id)
        conversations[conversation.id] = conversation

    branches: Dict[str, Branch] = {}
    conversation_branches: Dict[str, List[str]] = {cid: [] for cid in conversations}
    for branch in snapshot.branches:
        if branch.id in branches:
            raise DuplicateIdError("branch", branch.id)
        if branch.conversation_id not in conversations:
            raise NotFoundError("conversation", branch.conversation_id)
        branches[branch.id] = branch
        conversation_branches[branch.conversation_id].append(branch.id)

    logger.info(
        f"Restored snapshot: {store.node_count} nodes, {store.edge_count} edges, "
        f"{len(branches)} branches, {len(conversations)} conversations"
    )
    return GraphState(
        store=store,
        notifier=notifier or ChangeNotifier(),
        config=config or ThreadloomConfig(),
        conversations=conversations,
        branches=branches,
        conversation_branches=conversation_branches,
    )


# =============================================================================
# BYTE CODECS
# =============================================================================

# Pre-compiled encoders/decoders; reuse these instances to avoid recompilation
_json_encoder = msgspec.json.Encoder()
_json_decoder = msgspec.json.Decoder(type=GraphSnapshot)
_msgpack_encoder = msgspec.msgpack.Encoder()
_msgpack_decoder = msgspec.msgpack.Decoder(type=GraphSnapshot)


def encode_snapshot(snapshot: GraphSnapshot) -> bytes:
    """Serialize a snapshot to JSON bytes."""
    return _json_encoder.encode(snapshot)


def decode_snapshot(data: bytes) -> GraphSnapshot:
    """
    Deserialize JSON bytes into a snapshot.

    Raises:
        msgspec.DecodeError: If the bytes are not a valid snapshot
    """
    return _json_decoder.decode(data)


def encode_snapshot_msgpack(snapshot: GraphSnapshot) -> bytes:
    """Serialize a snapshot to MessagePack bytes (compact, for IPC)."""
    return _msgpack_encoder.encode(snapshot)


def decode_snapshot_msgpack(data: bytes) -> GraphSnapshot:
    """Deserialize MessagePack bytes into a snapshot."""
    return _msgpack_decoder.decode(data)


# =============================================================================
# POLARS VIEWS
# =============================================================================

NODE_SCHEMA = {
    "id": pl.Utf8,
    "type": pl.Utf8,
    "label": pl.Utf8,
    "description": pl.Utf8,
    "created_at": pl.Utf8,
    "conversation_id": pl.Utf8,
    "branch_id": pl.Utf8,
    "role": pl.Utf8,
    "content": pl.Utf8,
    "timestamp": pl.Datetime("us", "UTC"),
    "parent_message_id": pl.Utf8,
}

EDGE_SCHEMA = {
    "id": pl.Utf8,
    "source_id": pl.Utf8,
    "target_id": pl.Utf8,
    "relation": pl.Utf8,
    "weight": pl.Float64,
    "correlation_id": pl.Utf8,
    "invalidated": pl.Boolean,
    "created_at": pl.Utf8,
}

BRANCH_SCHEMA = {
    "id": pl.Utf8,
    "conversation_id": pl.Utf8,
    "name": pl.Utf8,
    "parent_branch_id": pl.Utf8,
    "branch_point": pl.Utf8,
    "messages": pl.List(pl.Utf8),
    "message_count": pl.Int64,
    "active": pl.Boolean,
    "archived": pl.Boolean,
    "merged_into": pl.Utf8,
    "created_at": pl.Utf8,
}


def to_polars_nodes(snapshot: GraphSnapshot) -> pl.DataFrame:
    """
    One row per node. Message-only columns are null for other node types.
    """
    records = []
    for node in snapshot.nodes:
        is_message = isinstance(node, MessageNode)
        records.append({
            "id": node.id,
            "type": node_type_of(node),
            "label": node.label,
            "description": node.description,
            "created_at": node.created_at,
            "conversation_id": node.conversation_id if is_message else None,
            "branch_id": node.branch_id if is_message else None,
            "role": node.role if is_message else None,
            "content": node.content if is_message else None,
            "timestamp": node.timestamp if is_message else None,
            "parent_message_id": node.parent_message_id if is_message else None,
        })
    return pl.DataFrame(records, schema=NODE_SCHEMA)


def to_polars_edges(snapshot: GraphSnapshot) -> pl.DataFrame:
    """One row per edge, invalidated edges included."""
    records = [
        {
            "id": edge.id,
            "source_id": edge.source_id,
            "target_id": edge.target_id,
            "relation": edge.relation,
            "weight": edge.weight,
            "correlation_id": edge.correlation_id,
            "invalidated": edge.invalidated,
            "created_at": edge.created_at,
        }
        for edge in snapshot.edges
    ]
    return pl.DataFrame(records, schema=EDGE_SCHEMA)


def to_polars_branches(snapshot: GraphSnapshot) -> pl.DataFrame:
    """One row per branch; `messages` is a list column."""
    records = [
        {
            "id": branch.id,
            "conversation_id": branch.conversation_id,
            "name": branch.name,
            "parent_branch_id": branch.parent_branch_id,
            "branch_point": branch.branch_point,
            "messages": list(branch.messages),
            "message_count": branch.message_count,
            "active": branch.active,
            "archived": branch.archived,
            "merged_into": branch.merged_into,
            "created_at": branch.created_at,
        }
        for branch in snapshot.branches
    ]
    return pl.DataFrame(records, schema=BRANCH_SCHEMA)
