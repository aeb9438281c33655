"""
THREADLOOM ONTOLOGY - The Dictionary of the System

If schemas.py is the Grammar (how we structure records),
ontology.py is the Dictionary (the words we can use).

This module defines:
- Enums: The vocabulary (NodeType, EdgeType, MessageRole, MergeStrategy)
- Relation groups: Which edge types form the conversation flow

Key Principle: Branch structure IS the conversation state.
A conversation is not a list of messages - it is a set of branches that
share prefixes. Every word defined here is used by that structure.
"""
from typing import FrozenSet
from enum import Enum


# =============================================================================
# ENUMS (The Vocabulary)
# =============================================================================

class NodeType(str, Enum):
    """Types of nodes in the conversation graph."""
    MESSAGE = "message"      # A single conversation turn
    CODE = "code"            # A source file referenced by a message (keyed by path)
    DOCUMENT = "document"    # A document referenced by a message (keyed by uri)
    BUSINESS = "business"    # A business concept/entity the conversation touches


class EdgeType(str, Enum):
    """Types of directed edges between nodes."""
    REPLY = "reply"              # Flow: previous message -> next message in a branch
    BRANCH = "branch"            # Fork: branch point -> first message of new branch
    REFERENCES = "references"    # Citation: message -> code/document node
    LINK = "link"                # Association: message <-> message (bidirectional pairs)


class MessageRole(str, Enum):
    """Who authored a message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MergeStrategy(str, Enum):
    """
    How two branches' unique suffixes are reconciled.

    KEEP_BOTH: Interleave both suffixes by timestamp
    PREFER_SOURCE: Replace the target suffix with the source suffix
    PREFER_TARGET: Discard the source suffix, keep the target unchanged
    """
    KEEP_BOTH = "keep-both"
    PREFER_SOURCE = "prefer-source"
    PREFER_TARGET = "prefer-target"


# =============================================================================
# RELATION GROUPS
# =============================================================================

# Edges that carry conversation flow (used for path and descendant queries)
FLOW_RELATIONS: FrozenSet[str] = frozenset({
    EdgeType.REPLY.value,
    EdgeType.BRANCH.value,
})


def parse_merge_strategy(value) -> MergeStrategy:
    """
    Coerce a caller-supplied strategy to MergeStrategy.

    Raises:
        ValueError: If the value names no known strategy
    """
    if isinstance(value, MergeStrategy):
        return value
    try:
        return MergeStrategy(value)
    except ValueError:
        valid = ", ".join(s.value for s in MergeStrategy)
        raise ValueError(f"Unknown merge strategy: {value!r} (expected one of: {valid})")


def validate_role(role: str) -> bool:
    """Check if a string is a valid MessageRole value."""
    return role in {r.value for r in MessageRole}
