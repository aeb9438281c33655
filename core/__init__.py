"""
THREADLOOM CORE - Central exports for core functionality.

This module provides access to:
- The conversation graph (ConversationGraph, AsyncConversationGraph)
- Records and vocabulary (schemas, ontology)
- The error taxonomy (all subclasses of GraphError)
"""

# Errors
from core.graph_db import GraphError, NotFoundError, DuplicateIdError, NodeStore
from core.branch_manager import IllegalStateError, BranchManager
from core.merge_engine import InvalidMergeError, MergeEngine, MergeResult, MergeConflict, MergeCandidate

# Records and vocabulary
from core.ontology import NodeType, EdgeType, MessageRole, MergeStrategy
from core.schemas import (
    MessageNode,
    CodeNode,
    DocumentNode,
    BusinessNode,
    Node,
    EdgeData,
    Branch,
    Conversation,
    NewMessage,
)

# Components
from core.branch_comparator import BranchComparator, BranchDiff
from core.search_index import SearchIndex, SearchQuery, SearchFilters, SearchResult, SearchContext
from core.graph_invariants import InvariantReport, InvariantViolation
from core.snapshot import GraphSnapshot, encode_snapshot, decode_snapshot
from core.conversation_graph import ConversationGraph, MessageContext
from core.async_graph import AsyncConversationGraph

__all__ = [
    # Errors
    "GraphError",
    "NotFoundError",
    "DuplicateIdError",
    "IllegalStateError",
    "InvalidMergeError",
    # Vocabulary
    "NodeType",
    "EdgeType",
    "MessageRole",
    "MergeStrategy",
    # Records
    "MessageNode",
    "CodeNode",
    "DocumentNode",
    "BusinessNode",
    "Node",
    "EdgeData",
    "Branch",
    "Conversation",
    "NewMessage",
    # Components
    "NodeStore",
    "BranchManager",
    "BranchComparator",
    "BranchDiff",
    "MergeEngine",
    "MergeResult",
    "MergeConflict",
    "MergeCandidate",
    "SearchIndex",
    "SearchQuery",
    "SearchFilters",
    "SearchResult",
    "SearchContext",
    "InvariantReport",
    "InvariantViolation",
    "GraphSnapshot",
    "encode_snapshot",
    "decode_snapshot",
    "ConversationGraph",
    "MessageContext",
    "AsyncConversationGraph",
]
