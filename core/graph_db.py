"""
THREADLOOM NODE STORE - The Rust-Backed Graph Storage

Keyed storage for nodes and directed edges with no conversation semantics.
It bridges Python's string ids with rustworkx's integer indices:
- O(1) node/edge lookup by business id
- Rust-native adjacency for neighborhood queries
- Batch insertion that crosses the Python/Rust boundary once

Architecture (The Bridge Pattern):
  Python Layer (Conversation Logic)
  - Uses string ids: "abc123", "def456"
  - Calls: store.add_node(node), store.get_outgoing_edges("abc123")

  Bridge Layer (This File)
  - _node_map: Dict[str, int]  (id -> node index)
  - _inv_map: Dict[int, str]   (node index -> id)
  - _edge_map: Dict[str, int]  (edge id -> edge index)

  Rust Layer (rustworkx.PyDiGraph, multigraph)
  - Parallel edges are allowed: a bidirectional link is two edges, and a
    message can reference the same file more than once

Storage is append-only. Nodes are never removed and edges are never
removed; the only edge mutation is the invalidation marker. Because nothing
is removed, rustworkx indices stay dense (0..n-1), which is what lets
get_all_nodes()/get_all_edges() hand out lazy snapshot sequences.
"""
import logging
import rustworkx as rx
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, Set, TypeVar

import msgspec

from core.schemas import Node, EdgeData, node_type_of, now_utc
from core.ontology import FLOW_RELATIONS


logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class GraphError(Exception):
    """Base exception for graph operations."""
    pass


class NotFoundError(GraphError):
    """Raised when a node, edge, branch, message or conversation id is unknown."""
    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind.capitalize()} not found: {item_id}")


class DuplicateIdError(GraphError):
    """Raised when creating something with an id that already exists."""
    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind.capitalize()} already exists: {item_id}")


# =============================================================================
# SNAPSHOT SEQUENCES
# =============================================================================

class SnapshotSequence(Generic[T]):
    """
    Lazy, finite, restartable view over the first `count` stored items.

    The count is frozen when the sequence is created, so later additions to
    the store never show up in it. Every iteration starts from the first
    item again. Payloads are fetched on demand.
    """

    def __init__(self, fetch: Callable[[int], T], count: int):
        self._fetch = fetch
        self._count = count

    def __iter__(self) -> Iterator[T]:
        for i in range(self._count):
            yield self._fetch(i)

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"SnapshotSequence(count={self._count})"


# =============================================================================
# NODE STORE (The Graph Engine)
# =============================================================================

class NodeStore:
    """
    In-memory node/edge storage backed by rustworkx.

    All public methods accept/return string ids; the translation to/from
    integer indices is handled internally.

    Usage:
        store = NodeStore()
        store.add_node(MessageNode(id="m1", content="hello"))
        store.add_node(CodeNode(id="c1", file_path="src/app.py"))
        store.add_edge(EdgeData.references("m1", "c1"))

        store.get_outgoing_edges("m1")   # [EdgeData(... relation="references")]

    Thread Safety:
        NOT thread-safe for writers. Concurrent readers only observe
        committed payloads.
    """

    def __init__(self):
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=True)

        # The Bridge: bidirectional id <-> index mapping
        self._node_map: Dict[str, int] = {}
        self._inv_map: Dict[int, str] = {}

        # Edge id -> rustworkx edge index
        self._edge_map: Dict[str, int] = {}

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def node_count(self) -> int:
        """Number of nodes in the store."""
        return self._graph.num_nodes()

    @property
    def edge_count(self) -> int:
        """Number of edges in the store (invalidated ones included)."""
        return self._graph.num_edges()

    @property
    def is_empty(self) -> bool:
        return self.node_count == 0

    # =========================================================================
    # NODE OPERATIONS
    # =========================================================================

    def add_node(self, node: Node) -> int:
        """
        Add a node to the graph.

        Returns:
            The rustworkx index of the new node

        Raises:
            DuplicateIdError: If a node with the same id exists
        """
        node_id = node.id
        if node_id in self._node_map:
            raise DuplicateIdError("node", node_id)

        idx = self._graph.add_node(node)
        self._node_map[node_id] = idx
        self._inv_map[idx] = node_id

        logger.debug(f"Added {node_type_of(node)} node {node_id}")
        return idx

    def add_nodes_batch(self, nodes: Iterable[Node]) -> List[int]:
        """
        Add multiple nodes in a single Rust call.

        Validation happens before anything is inserted, so a duplicate
        anywhere in the batch leaves the store unchanged.

        Raises:
            DuplicateIdError: If any id already exists or repeats in the batch
        """
        nodes = list(nodes)
        if not nodes:
            return []

        seen: Set[str] = set()
        for node in nodes:
            if node.id in self._node_map or node.id in seen:
                raise DuplicateIdError("node", node.id)
            seen.add(node.id)

        indices = self._graph.add_nodes_from(nodes)
        for node, idx in zip(nodes, indices):
            self._node_map[node.id] = idx
            self._inv_map[idx] = node.id

        return list(indices)

    def get_node(self, node_id: str) -> Optional[Node]:
        """Retrieve a node by id, or None if absent."""
        idx = self._node_map.get(node_id)
        if idx is None:
            return None
        return self._graph[idx]

    def require_node(self, node_id: str) -> Node:
        """
        Retrieve a node that is expected to exist.

        Raises:
            NotFoundError: If the node doesn't exist
        """
        idx = self._node_map.get(node_id)
        if idx is None:
            raise NotFoundError("node", node_id)
        return self._graph[idx]

    def has_node(self, node_id: str) -> bool:
        """Check if a node exists."""
        return node_id in self._node_map

    def get_all_nodes(self) -> SnapshotSequence[Node]:
        """Lazy snapshot of every node stored at call time, in insertion order."""
        return SnapshotSequence(self._graph.__getitem__, self.node_count)

    def find_nodes(self, type: Optional[str] = None) -> List[Node]:
        """Find nodes by type tag (all nodes when type is None)."""
        if type is None:
            return list(self._graph.nodes())
        return [n for n in self._graph.nodes() if node_type_of(n) == type]

    # =========================================================================
    # EDGE OPERATIONS
    # =========================================================================

    def add_edge(self, edge: EdgeData) -> int:
        """
        Add an edge between two existing nodes.

        Edges are append-only: parallel edges and cycles are allowed.

        Returns:
            The rustworkx edge index

        Raises:
            NotFoundError: If source or target node doesn't exist
            DuplicateIdError: If the edge id already exists
        """
        if edge.source_id not in self._node_map:
            raise NotFoundError("node", edge.source_id)
        if edge.target_id not in self._node_map:
            raise NotFoundError("node", edge.target_id)
        if edge.id in self._edge_map:
            raise DuplicateIdError("edge", edge.id)

        src_idx = self._node_map[edge.source_id]
        tgt_idx = self._node_map[edge.target_id]
        edge_idx = self._graph.add_edge(src_idx, tgt_idx, edge)
        self._edge_map[edge.id] = edge_idx

        logger.debug(
            "Added %s edge %s -> %s", edge.relation, edge.source_id, edge.target_id
        )
        return edge_idx

    def add_edges_batch(self, edges: Iterable[EdgeData]) -> List[int]:
        """
        Add multiple edges in a single Rust call.

        Raises:
            NotFoundError: If any source or target doesn't exist
            DuplicateIdError: If any edge id already exists or repeats
        """
        edges = list(edges)
        if not edges:
            return []

        edge_tuples = []
        seen: Set[str] = set()
        for edge in edges:
            if edge.source_id not in self._node_map:
                raise NotFoundError("node", edge.source_id)
            if edge.target_id not in self._node_map:
                raise NotFoundError("node", edge.target_id)
            if edge.id in self._edge_map or edge.id in seen:
                raise DuplicateIdError("edge", edge.id)
            seen.add(edge.id)
            edge_tuples.append(
                (self._node_map[edge.source_id], self._node_map[edge.target_id], edge)
            )

        indices = self._graph.add_edges_from(edge_tuples)
        for edge, idx in zip(edges, indices):
            self._edge_map[edge.id] = idx

        return list(indices)

    def get_edge(self, edge_id: str) -> Optional[EdgeData]:
        """Get an edge by id, or None if absent."""
        idx = self._edge_map.get(edge_id)
        if idx is None:
            return None
        return self._graph.get_edge_data_by_index(idx)

    def has_edge(self, edge_id: str) -> bool:
        """Check if an edge id exists."""
        return edge_id in self._edge_map

    def invalidate_edge(self, edge_id: str, reason: Optional[str] = None) -> EdgeData:
        """
        Mark an edge invalid. This is the only mutation edges support.

        The payload is replaced in place with a copy whose `invalidated`
        flag is set; the edge keeps its index and stays in snapshots.
        Invalidating an already-invalid edge is a no-op.

        Returns:
            The invalidated EdgeData

        Raises:
            NotFoundError: If the edge doesn't exist
        """
        idx = self._edge_map.get(edge_id)
        if idx is None:
            raise NotFoundError("edge", edge_id)

        edge = self._graph.get_edge_data_by_index(idx)
        if edge.invalidated:
            return edge

        metadata = dict(edge.metadata)
        metadata["invalidated_at"] = now_utc()
        if reason:
            metadata["invalidated_reason"] = reason

        replacement = msgspec.structs.replace(edge, invalidated=True, metadata=metadata)
        self._graph.update_edge_by_index(idx, replacement)
        logger.debug(f"Invalidated edge {edge_id} ({reason or 'no reason'})")
        return replacement

    def get_all_edges(self) -> SnapshotSequence[EdgeData]:
        """Lazy snapshot of every edge stored at call time, in insertion order."""
        return SnapshotSequence(self._graph.get_edge_data_by_index, self.edge_count)

    def get_outgoing_edges(
        self,
        node_id: str,
        relation: Optional[str] = None,
        include_invalidated: bool = False,
    ) -> List[EdgeData]:
        """
        Get edges pointing FROM a node, in insertion order.

        Unknown nodes yield an empty list.
        """
        idx = self._node_map.get(node_id)
        if idx is None:
            return []
        edges = [data for _, _, data in self._graph.out_edges(idx)]
        return self._filter_edges(edges, relation, include_invalidated)

    def get_incoming_edges(
        self,
        node_id: str,
        relation: Optional[str] = None,
        include_invalidated: bool = False,
    ) -> List[EdgeData]:
        """
        Get edges pointing TO a node, in insertion order.

        Unknown nodes yield an empty list.
        """
        idx = self._node_map.get(node_id)
        if idx is None:
            return []
        edges = [data for _, _, data in self._graph.in_edges(idx)]
        return self._filter_edges(edges, relation, include_invalidated)

    def get_edges_between(
        self,
        source_id: str,
        target_id: str,
        relation: Optional[str] = None,
        include_invalidated: bool = False,
    ) -> List[EdgeData]:
        """All edges source -> target (parallel edges included)."""
        return [
            e for e in self.get_outgoing_edges(source_id, relation, include_invalidated)
            if e.target_id == target_id
        ]

    def _filter_edges(
        self,
        edges: List[EdgeData],
        relation: Optional[str],
        include_invalidated: bool,
    ) -> List[EdgeData]:
        result = [
            e for e in edges
            if (relation is None or e.relation == relation)
            and (include_invalidated or not e.invalidated)
        ]
        # rustworkx returns adjacency newest-first; keep insertion order
        result.sort(key=lambda e: self._edge_map[e.id])
        return result

    # =========================================================================
    # GRAPH TRAVERSAL
    # =========================================================================

    def get_successors(self, node_id: str, relation: Optional[str] = None) -> List[Node]:
        """Immediate successors over valid edges (optionally one relation)."""
        return [
            self._graph[self._node_map[e.target_id]]
            for e in self.get_outgoing_edges(node_id, relation)
        ]

    def get_predecessors(self, node_id: str, relation: Optional[str] = None) -> List[Node]:
        """Immediate predecessors over valid edges (optionally one relation)."""
        return [
            self._graph[self._node_map[e.source_id]]
            for e in self.get_incoming_edges(node_id, relation)
        ]

    def get_descendants(self, node_id: str) -> List[Node]:
        """
        Every node reachable from node_id over valid conversation-flow edges
        (reply and branch), not including node_id itself.

        Raises:
            NotFoundError: If the node doesn't exist
        """
        if node_id not in self._node_map:
            raise NotFoundError("node", node_id)

        flow = rx.PyDiGraph(multigraph=False)
        flow.add_nodes_from(range(self.node_count))
        for edge in self.get_all_edges():
            if edge.relation in FLOW_RELATIONS and not edge.invalidated:
                flow.add_edge(
                    self._node_map[edge.source_id], self._node_map[edge.target_id], None
                )

        desc_indices = rx.descendants(flow, self._node_map[node_id])
        return [self._graph[i] for i in sorted(desc_indices)]

    # =========================================================================
    # INTERNAL UTILITIES
    # =========================================================================

    def __len__(self) -> int:
        return self.node_count

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._node_map

    def __repr__(self) -> str:
        return f"NodeStore(nodes={self.node_count}, edges={self.edge_count})"
