"""
THREADLOOM SCHEMAS - The Grammar of the System

If ontology.py is the Dictionary (defining the words we can use),
schemas.py is the Grammar (defining how we structure records).

This module defines the core data structures that flow through the graph:
- Node variants: MessageNode | CodeNode | DocumentNode | BusinessNode
- EdgeData: The payload attached to every graph edge
- Branch / Conversation: The branch bookkeeping records
- NewMessage: Caller-supplied message input
- Serialization helpers for persistence and IPC

Design Principles:
1. STRICT TYPING: msgspec.Struct with no silent type coercion
2. TAGGED VARIANTS: Node kind is the msgspec tag ("type"), matched exhaustively
3. KW_ONLY: Enforce keyword arguments to prevent positional mix-ups
4. IMMUTABLE RECORDS: Nodes, branches and conversations are frozen;
   mutations build a replacement with msgspec.structs.replace and commit it
"""
import msgspec
from typing import Optional, Dict, Any, Tuple, Union, ClassVar
from datetime import datetime, timezone
import uuid

from core.ontology import NodeType, EdgeType, MessageRole, validate_role


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def now_utc() -> str:
    """Fast UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def utc_now() -> datetime:
    """Timezone-aware UTC datetime for message timestamps."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Generate a new UUID hex string for node/edge/branch IDs."""
    return uuid.uuid4().hex


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so ordering never mixes naive and aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# NODE VARIANTS (The Core Graph Payload)
# =============================================================================

class NodeBase(msgspec.Struct, kw_only=True, frozen=True, tag_field="type"):
    """
    Fields shared by every node variant.

    Stored directly in rx.PyDiGraph.add_node(). The node kind is carried
    as the msgspec tag, so encoded nodes look like {"type": "message", ...}
    and decode back into the right variant.

    `metadata` is the open map for optional fields (filePath, language,
    anything a collaborator wants to attach).
    """
    node_type: ClassVar[NodeType]

    id: str
    label: str = ""
    description: Optional[str] = None
    metadata: Dict[str, Any] = msgspec.field(default_factory=dict)
    created_at: str = msgspec.field(default_factory=now_utc)


class MessageNode(NodeBase, tag=NodeType.MESSAGE.value):
    """
    A single conversation turn.

    `branch_id` is the branch the message was written on (exactly one).
    `parent_message_id` is a weak back-reference to the previous turn;
    it describes a relationship, it does not own anything.
    """
    node_type: ClassVar[NodeType] = NodeType.MESSAGE

    role: str = MessageRole.USER.value
    content: str = ""
    timestamp: datetime = msgspec.field(default_factory=utc_now)
    conversation_id: str = ""
    branch_id: str = ""
    parent_message_id: Optional[str] = None

    @classmethod
    def from_input(
        cls,
        message: "NewMessage",
        conversation_id: str,
        branch_id: str,
        parent_message_id: Optional[str] = None,
        description_chars: int = 200,
    ) -> "MessageNode":
        """Build the stored node for a caller-supplied message."""
        return cls(
            id=message.id or generate_id(),
            label=f"Message from {message.role}",
            description=message.content[:description_chars],
            metadata=dict(message.metadata),
            role=message.role,
            content=message.content,
            timestamp=ensure_aware(message.timestamp) if message.timestamp else utc_now(),
            conversation_id=conversation_id,
            branch_id=branch_id,
            parent_message_id=parent_message_id,
        )


class CodeNode(NodeBase, tag=NodeType.CODE.value):
    """A source file referenced from a conversation, keyed by file path."""
    node_type: ClassVar[NodeType] = NodeType.CODE

    file_path: str = ""
    language: Optional[str] = None


class DocumentNode(NodeBase, tag=NodeType.DOCUMENT.value):
    """A document referenced from a conversation, keyed by uri."""
    node_type: ClassVar[NodeType] = NodeType.DOCUMENT

    uri: str = ""


class BusinessNode(NodeBase, tag=NodeType.BUSINESS.value):
    """A business concept the conversation is about."""
    node_type: ClassVar[NodeType] = NodeType.BUSINESS

    domain: Optional[str] = None


Node = Union[MessageNode, CodeNode, DocumentNode, BusinessNode]


def node_type_of(node: Node) -> str:
    """Return the tag value for a node variant."""
    match node:
        case MessageNode():
            return NodeType.MESSAGE.value
        case CodeNode():
            return NodeType.CODE.value
        case DocumentNode():
            return NodeType.DOCUMENT.value
        case BusinessNode():
            return NodeType.BUSINESS.value
        case _:
            raise TypeError(f"Not a graph node: {type(node).__name__}")


def node_text(node: Node) -> str:
    """Best human-readable text for a node (used by search and export)."""
    match node:
        case MessageNode(content=content):
            return content
        case CodeNode(file_path=file_path):
            return file_path
        case DocumentNode(uri=uri):
            return uri
        case BusinessNode(label=label, description=description):
            return description or label
        case _:
            raise TypeError(f"Not a graph node: {type(node).__name__}")


# =============================================================================
# EDGE DATA (The Graph Relationship Payload)
# =============================================================================

class EdgeData(msgspec.Struct, kw_only=True, frozen=True):
    """
    The payload attached to every edge in the rustworkx graph.

    Edges are append-only. The single permitted mutation is the
    `invalidated` marker, applied by replacing the payload in place.

    `correlation_id` ties the two halves of a bidirectional link together
    so they are always treated as a pair.
    """
    # === Identity ===
    id: str
    source_id: str
    target_id: str
    relation: str                              # EdgeType.value

    # === Properties ===
    weight: float = 1.0
    metadata: Dict[str, Any] = msgspec.field(default_factory=dict)
    correlation_id: Optional[str] = None
    invalidated: bool = False

    # === Provenance ===
    created_at: str = msgspec.field(default_factory=now_utc)

    @property
    def is_bidirectional(self) -> bool:
        return self.correlation_id is not None

    @classmethod
    def create(
        cls,
        source_id: str,
        target_id: str,
        relation: str,
        **kwargs
    ) -> "EdgeData":
        """Factory method to create an EdgeData with a fresh id."""
        edge_id = kwargs.pop("id", None) or generate_id()
        return cls(
            id=edge_id,
            source_id=source_id,
            target_id=target_id,
            relation=relation,
            **kwargs
        )

    @classmethod
    def reply(cls, previous_id: str, message_id: str, **kwargs) -> "EdgeData":
        """Create a REPLY edge (previous turn -> next turn)."""
        return cls.create(previous_id, message_id, EdgeType.REPLY.value, **kwargs)

    @classmethod
    def branch(cls, branch_point_id: str, message_id: str, **kwargs) -> "EdgeData":
        """Create a BRANCH edge (fork point -> first message of the fork)."""
        return cls.create(branch_point_id, message_id, EdgeType.BRANCH.value, weight=0.8, **kwargs)

    @classmethod
    def references(cls, message_id: str, target_id: str, **kwargs) -> "EdgeData":
        """Create a REFERENCES edge (message -> code/document)."""
        return cls.create(message_id, target_id, EdgeType.REFERENCES.value, **kwargs)


# =============================================================================
# BRANCHES AND CONVERSATIONS
# =============================================================================

class Branch(msgspec.Struct, kw_only=True, frozen=True):
    """
    A named, ordered sequence of message ids.

    `messages` is an immutable tuple. Forking slices the parent's tuple and
    appending builds a new tuple, so a committed list is never modified in
    place (copy-on-write). The prefix up to and including `branch_point`
    is identical to the parent's prefix.
    """
    id: str
    conversation_id: str
    name: str
    parent_branch_id: Optional[str] = None     # None for the root branch
    branch_point: Optional[str] = None         # Message id of the fork
    messages: Tuple[str, ...] = ()
    active: bool = False

    # === Lifecycle ===
    archived: bool = False
    merged_into: Optional[str] = None          # Result branch of the merge that retired this one
    rename_history: Tuple[str, ...] = ()
    created_at: str = msgspec.field(default_factory=now_utc)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def is_root(self) -> bool:
        return self.parent_branch_id is None

    @property
    def is_live(self) -> bool:
        """Live branches can receive messages, be switched to and be merged."""
        return self.merged_into is None and not self.archived

    @property
    def head(self) -> Optional[str]:
        """Id of the last message, or None for an empty branch."""
        return self.messages[-1] if self.messages else None


class Conversation(msgspec.Struct, kw_only=True, frozen=True):
    """A conversation: title, participants and its branch anchors."""
    id: str
    title: str
    participants: Tuple[str, ...] = ("user", "assistant")
    root_branch_id: str = ""
    active_branch_id: str = ""
    metadata: Dict[str, Any] = msgspec.field(default_factory=dict)
    created_at: str = msgspec.field(default_factory=now_utc)


class NewMessage(msgspec.Struct, kw_only=True):
    """
    Caller-supplied message input for add_message / create_branch.

    Plain dicts are accepted too and converted with msgspec.convert.
    """
    role: str = MessageRole.USER.value
    content: str = ""
    id: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = msgspec.field(default_factory=dict)


def coerce_message(message: Union[NewMessage, Dict[str, Any]]) -> NewMessage:
    """
    Convert a dict (or pass through a NewMessage) into NewMessage.

    Raises:
        ValueError: If the role is unknown or the input has the wrong shape
    """
    if isinstance(message, NewMessage):
        result = message
    else:
        try:
            result = msgspec.convert(message, type=NewMessage)
        except msgspec.ValidationError as e:
            raise ValueError(f"Invalid message: {e}") from e

    if not validate_role(result.role):
        raise ValueError(f"Invalid message role: {result.role!r}")
    return result


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

# Pre-compiled encoders/decoders; reuse these instances to avoid recompilation

_json_encoder = msgspec.json.Encoder()
_node_decoder = msgspec.json.Decoder(type=Node)
_edge_decoder = msgspec.json.Decoder(type=EdgeData)
_branch_decoder = msgspec.json.Decoder(type=Branch)


def serialize_node(node: Node) -> bytes:
    """Serialize a node variant to JSON bytes (tag included)."""
    return _json_encoder.encode(node)


def deserialize_node(data: bytes) -> Node:
    """Deserialize JSON bytes into the right node variant."""
    return _node_decoder.decode(data)


def serialize_edge(edge: EdgeData) -> bytes:
    """Serialize an EdgeData to JSON bytes."""
    return _json_encoder.encode(edge)


def deserialize_edge(data: bytes) -> EdgeData:
    """Deserialize JSON bytes to an EdgeData."""
    return _edge_decoder.decode(data)


def serialize_branch(branch: Branch) -> bytes:
    """Serialize a Branch to JSON bytes."""
    return _json_encoder.encode(branch)


def deserialize_branch(data: bytes) -> Branch:
    """Deserialize JSON bytes to a Branch."""
    return _branch_decoder.decode(data)

