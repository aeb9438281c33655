"""
THREADLOOM CONVERSATION GRAPH - The Command/Query Surface

ConversationGraph is what callers hold. It owns one GraphState and wires
the components around it:

    ConversationGraph
      ├── BranchManager      (fork, switch, rename, archive)
      ├── BranchComparator   (diff)
      ├── MergeEngine        (merge, preview, history)
      ├── SearchIndex        (search, context)
      └── ChangeNotifier     (subscriptions)

Every mutation validates first and commits last; subscribers hear about it
only after the commit. Queries never mutate.

Usage:
    graph = ConversationGraph()
    conversation = graph.create_conversation("Dashboard help")
    first = graph.add_message(conversation.id, {"role": "user", "content": "Can you help?"})
    graph.add_message(conversation.id, {"role": "assistant", "content": "Sure."})

    alt = graph.create_branch(first, {"role": "user", "content": "Alternate path"})
    graph.link_to_code(alt, "src/components/Dashboard.tsx")

    with graph.subscribe_to_updates(print):
        graph.switch_branch(conversation.root_branch_id)
"""
import logging
import posixpath
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import msgspec

from core.branch_comparator import BranchComparator, BranchDiff
from core.branch_manager import BranchManager, IllegalStateError
from core.graph_db import NodeStore
from core.graph_invariants import GraphInvariants, InvariantReport
from core.merge_engine import MergeCandidate, MergeEngine, MergeResult
from core.ontology import FLOW_RELATIONS, EdgeType, MergeStrategy
from core.schemas import (
    Branch,
    CodeNode,
    Conversation,
    DocumentNode,
    EdgeData,
    MessageNode,
    NewMessage,
    generate_id,
)
from core.search_index import SearchIndex, SearchQuery, SearchResult, coerce_query
from core.snapshot import GraphSnapshot, restore_state, take_snapshot
from core.state import GraphState
from infrastructure.config import ThreadloomConfig
from infrastructure.event_bus import ChangeEventType, ChangeNotifier, Handler, Subscription


logger = logging.getLogger(__name__)


class MessageContext(msgspec.Struct, kw_only=True, frozen=True):
    """Everything a consumer needs to render or reason about one message."""
    message: MessageNode
    branch: Branch
    path: Tuple[MessageNode, ...] = ()
    linked_code: Tuple[CodeNode, ...] = ()
    linked_documents: Tuple[DocumentNode, ...] = ()
    related_messages: Tuple[MessageNode, ...] = ()


class ConversationGraph:
    """
    Branchable conversation graph.

    Thread Safety:
        NOT thread-safe. Hosts serialize mutating calls per conversation.
        Reads only observe committed state.
    """

    def __init__(
        self,
        config: Optional[ThreadloomConfig] = None,
        notifier: Optional[ChangeNotifier] = None,
        state: Optional[GraphState] = None,
    ):
        if state is None:
            state = GraphState(
                config=config or ThreadloomConfig(),
                notifier=notifier or ChangeNotifier(),
            )
        self._state = state

        self._branches = BranchManager(state)
        self._comparator = BranchComparator(state)
        self._search = SearchIndex(state)
        self._merger = MergeEngine(state, self._branches, self._comparator, tokens=self._search.tokens_for)

        # file path -> code node id, uri -> document node id
        self._code_index: Dict[str, str] = {}
        self._document_index: Dict[str, str] = {}
        for node in state.store.get_all_nodes():
            if isinstance(node, CodeNode):
                self._code_index.setdefault(node.file_path, node.id)
            elif isinstance(node, DocumentNode):
                self._document_index.setdefault(node.uri, node.id)

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def config(self) -> ThreadloomConfig:
        return self._state.config

    @property
    def notifier(self) -> ChangeNotifier:
        return self._state.notifier

    @property
    def store(self) -> NodeStore:
        return self._state.store

    @property
    def branch_manager(self) -> BranchManager:
        return self._branches

    @property
    def merge_engine(self) -> MergeEngine:
        return self._merger

    # =========================================================================
    # CONVERSATIONS AND MESSAGES
    # =========================================================================

    def create_conversation(
        self,
        title: str,
        participants: Sequence[str] = ("user", "assistant"),
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        """
        Create a conversation together with its empty, active "main" branch.

        Raises:
            DuplicateIdError: If conversation_id is already taken
        """
        conversation_id = conversation_id or generate_id()
        conversation = Conversation(
            id=conversation_id,
            title=title,
            participants=tuple(participants),
            root_branch_id=f"{conversation_id}-main",
            metadata=dict(metadata or {}),
        )
        self._branches.create_root_branch(conversation)
        conversation = self._state.conversations[conversation_id]

        self.notifier.publish(ChangeEventType.CONVERSATION_CREATED, {
            "conversation_id": conversation.id,
            "root_branch_id": conversation.root_branch_id,
        })
        self._after_mutation()
        return conversation

    def get_conversation(self, conversation_id: Optional[str] = None) -> Conversation:
        """
        Raises:
            NotFoundError: If the conversation doesn't exist
            IllegalStateError: If conversation_id is omitted and ambiguous
        """
        return self._state.get_conversation(self._resolve_conversation(conversation_id))

    def get_conversations(self) -> List[Conversation]:
        return list(self._state.conversations.values())

    def add_message(
        self,
        conversation_id: str,
        message: Union[NewMessage, Dict[str, Any]],
        branch_id: Optional[str] = None,
    ) -> str:
        """
        Append a message to a branch (default: the active branch).

        Returns:
            The new message id

        Raises:
            NotFoundError: Unknown conversation or branch
            IllegalStateError: Branch of another conversation, archived or merged
            DuplicateIdError: The message id is taken
            ValueError: Malformed message input
        """
        conversation = self._state.get_conversation(conversation_id)
        if branch_id is None:
            branch_id = conversation.active_branch_id

        branch = self._state.get_branch(branch_id)
        if branch.conversation_id != conversation.id:
            raise IllegalStateError(
                f"Branch {branch_id} belongs to conversation {branch.conversation_id}, not {conversation.id}"
            )

        node = self._branches.append_message(branch_id, message)
        self._after_mutation()
        return node.id

    def get_message(self, message_id: str) -> Optional[MessageNode]:
        return self._state.get_message(message_id)

    def get_branch_messages(self, branch_id: str) -> List[MessageNode]:
        """
        Raises:
            NotFoundError: If the branch doesn't exist
        """
        branch = self._state.get_branch(branch_id)
        return [self._state.require_message(m) for m in branch.messages]

    def get_conversation_path(self, message_id: str) -> List[MessageNode]:
        """
        The reply chain from the conversation's first message to message_id.

        Raises:
            NotFoundError: If the message doesn't exist
        """
        path = []
        seen = set()
        current = self._state.require_message(message_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            path.append(current)
            if current.parent_message_id is None:
                break
            current = self._state.get_message(current.parent_message_id)
        path.reverse()
        return path

    # =========================================================================
    # BRANCHES
    # =========================================================================

    def create_branch(
        self,
        from_message_id: str,
        message: Union[NewMessage, Dict[str, Any]],
        name: Optional[str] = None,
    ) -> str:
        """
        Fork a new, active branch at from_message_id.

        Returns:
            The id of the new branch's first message

        Raises:
            NotFoundError: If the message is in no branch
            IllegalStateError: If only archived/merged branches contain it
        """
        node = self._branches.create_branch(from_message_id, message, name=name)
        self._after_mutation()
        return node.id

    def switch_branch(self, branch_id: str) -> Branch:
        """
        Raises:
            IllegalStateError: Unknown, archived or merged branch
        """
        branch = self._branches.switch_branch(branch_id)
        self._after_mutation()
        return branch

    def rename_branch(self, branch_id: str, name: str) -> Branch:
        branch = self._branches.rename_branch(branch_id, name)
        self._after_mutation()
        return branch

    def archive_branch(self, branch_id: str) -> Branch:
        branch = self._branches.archive_branch(branch_id)
        self._after_mutation()
        return branch

    def restore_branch(self, branch_id: str) -> Branch:
        branch = self._branches.restore_branch(branch_id)
        self._after_mutation()
        return branch

    def get_branches(
        self,
        conversation_id: Optional[str] = None,
        include_archived: bool = True,
        include_merged: bool = False,
    ) -> List[Branch]:
        """Branches in creation order. Retired merge sources are hidden by default."""
        return self._branches.branches_for(
            self._resolve_conversation(conversation_id),
            include_archived=include_archived,
            include_merged=include_merged,
        )

    def get_active_branch(self, conversation_id: Optional[str] = None) -> Branch:
        return self._branches.active_branch(self._resolve_conversation(conversation_id))

    def get_branch(self, branch_id: str) -> Branch:
        """
        Raises:
            NotFoundError: If the branch doesn't exist
        """
        return self._state.get_branch(branch_id)

    # =========================================================================
    # LINKS
    # =========================================================================

    def link_to_code(self, message_id: str, file_path: str, language: Optional[str] = None) -> CodeNode:
        """
        Reference a source file from a message.

        The code node is keyed by file path: linking the same path again
        reuses it. The file is never opened.

        Raises:
            NotFoundError: If the message doesn't exist
        """
        message = self._state.require_message(message_id)
        code, created = self._code_node(file_path, language)

        self.store.add_edge(EdgeData.references(message.id, code.id, metadata={"file_path": file_path}))

        self.notifier.publish(ChangeEventType.CODE_LINKED, {
            "conversation_id": message.conversation_id,
            "message_id": message.id,
            "code_node_id": code.id,
            "file_path": file_path,
            "created": created,
        })
        self._after_mutation()
        return code

    def link_to_document(self, message_id: str, uri: str, title: Optional[str] = None) -> DocumentNode:
        """
        Reference a document from a message (node reused per uri).

        Raises:
            NotFoundError: If the message doesn't exist
        """
        message = self._state.require_message(message_id)
        existing = self._document_index.get(uri)
        if existing is not None:
            document = self.store.require_node(existing)
        else:
            document = DocumentNode(id=generate_id(), label=title or uri, uri=uri)

        edge = EdgeData.references(message.id, document.id, metadata={"uri": uri})

        # Commit
        if existing is None:
            self.store.add_node(document)
            self._document_index[uri] = document.id
        self.store.add_edge(edge)

        self.notifier.publish(ChangeEventType.DOCUMENT_LINKED, {
            "conversation_id": message.conversation_id,
            "message_id": message.id,
            "document_node_id": document.id,
            "uri": uri,
        })
        self._after_mutation()
        return document

    def link_bidirectional(
        self,
        source_id: str,
        target_id: str,
        relation: Union[EdgeType, str] = EdgeType.LINK,
        metadata: Optional[Dict[str, Any]] = None,
        weight: Optional[float] = None,
    ) -> Tuple[EdgeData, EdgeData]:
        """
        Create source->target and target->source edges sharing one
        correlation id, so they are always treated as a pair.

        Raises:
            NotFoundError: If either node doesn't exist
            ValueError: If the relation is unknown or carries conversation flow
        """
        self.store.require_node(source_id)
        self.store.require_node(target_id)

        try:
            relation = EdgeType(relation).value
        except ValueError:
            valid = ", ".join(t.value for t in EdgeType)
            raise ValueError(f"Unknown relation: {relation!r} (expected one of: {valid})")
        if relation in FLOW_RELATIONS:
            raise ValueError(f"Relation {relation!r} carries conversation flow and cannot be bidirectional")
        correlation_id = generate_id()
        weight = self.config.graph.link_weight if weight is None else weight
        forward = EdgeData.create(
            source_id, target_id, relation,
            weight=weight, metadata=dict(metadata or {}), correlation_id=correlation_id,
        )
        backward = EdgeData.create(
            target_id, source_id, relation,
            weight=weight, metadata=dict(metadata or {}), correlation_id=correlation_id,
        )
        self.store.add_edges_batch([forward, backward])

        self.notifier.publish(ChangeEventType.BIDIRECTIONAL_LINK_CREATED, {
            "source_id": source_id,
            "target_id": target_id,
            "relation": relation,
            "correlation_id": correlation_id,
            "edge_ids": [forward.id, backward.id],
        })
        self._after_mutation()
        return forward, backward

    def get_linked_code(self, message_id: str) -> List[CodeNode]:
        return self._search.linked_code(message_id)

    def get_linked_documents(self, message_id: str) -> List[DocumentNode]:
        return [
            n for n in self.store.get_successors(message_id, EdgeType.REFERENCES.value)
            if isinstance(n, DocumentNode)
        ]

    def get_messages_for_code(self, file_path: str) -> List[MessageNode]:
        """Messages that reference a file, in link order."""
        code_id = self._code_index.get(file_path)
        if code_id is None:
            return []
        seen: Dict[str, MessageNode] = {}
        for node in self.store.get_predecessors(code_id, EdgeType.REFERENCES.value):
            if isinstance(node, MessageNode):
                seen.setdefault(node.id, node)
        return list(seen.values())

    def find_related_messages(self, message_id: str, max_depth: int = 2) -> List[MessageNode]:
        """
        Messages reachable over bidirectional links within max_depth hops.

        Raises:
            NotFoundError: If the message doesn't exist
        """
        self._state.require_message(message_id)
        return [
            n for n in self._search.linked_neighbourhood(message_id, max_depth)
            if isinstance(n, MessageNode)
        ]

    def build_context(self, message_id: str) -> MessageContext:
        """
        Raises:
            NotFoundError: If the message doesn't exist
        """
        message = self._state.require_message(message_id)
        return MessageContext(
            message=message,
            branch=self._state.get_branch(message.branch_id),
            path=tuple(self.get_conversation_path(message_id)),
            linked_code=tuple(self.get_linked_code(message_id)),
            linked_documents=tuple(self.get_linked_documents(message_id)),
            related_messages=tuple(self.find_related_messages(message_id)),
        )

    # =========================================================================
    # DIFF / MERGE / SEARCH
    # =========================================================================

    def diff(self, branch_a_id: str, branch_b_id: str) -> BranchDiff:
        return self._comparator.diff(branch_a_id, branch_b_id)

    def merge(
        self,
        source_branch_id: str,
        target_branch_id: str,
        strategy: Union[MergeStrategy, str],
        into_new_branch: bool = False,
    ) -> MergeResult:
        """
        Fold source into target. See MergeEngine.merge.

        Raises:
            NotFoundError: If either branch doesn't exist
            InvalidMergeError: If the branches cannot be merged
        """
        result = self._merger.merge(source_branch_id, target_branch_id, strategy, into_new_branch)
        self._after_mutation()
        return result

    def preview_merge(
        self,
        source_branch_id: str,
        target_branch_id: str,
        strategy: Union[MergeStrategy, str],
        into_new_branch: bool = False,
    ) -> MergeResult:
        return self._merger.preview(source_branch_id, target_branch_id, strategy, into_new_branch)

    def get_merge_history(self, conversation_id: Optional[str] = None) -> List[MergeResult]:
        return self._merger.get_history(self._resolve_conversation(conversation_id))

    def find_merge_candidates(self, conversation_id: Optional[str] = None) -> List[MergeCandidate]:
        """Branch pairs worth merging, most similar first. Never merges anything."""
        return self._merger.find_candidates(self._resolve_conversation(conversation_id))

    def search(self, query: Union[SearchQuery, str, None] = None, **kwargs) -> List[SearchResult]:
        """
        Ranked message search.

        Accepts a SearchQuery, or query text plus SearchQuery keyword fields.
        filters may be a SearchFilters or a plain dict:
            graph.search("dashboard", limit=5)
            graph.search("", filters={"has_code_links": True})

        Raises:
            ValueError: If the keyword fields have the wrong shape
        """
        if not isinstance(query, SearchQuery):
            query = coerce_query(query or "", **kwargs)
        return self._search.search(query)

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe_to_updates(self, handler: Handler) -> Subscription:
        """Register a handler for every event type."""
        return self.notifier.subscribe_all(handler)

    def subscribe(self, event_type: Union[ChangeEventType, str], handler: Handler) -> Subscription:
        return self.notifier.subscribe(event_type, handler)

    # =========================================================================
    # SNAPSHOT / VALIDATION
    # =========================================================================

    def snapshot(self) -> GraphSnapshot:
        return take_snapshot(self._state)

    @classmethod
    def load(
        cls,
        snapshot: GraphSnapshot,
        config: Optional[ThreadloomConfig] = None,
        notifier: Optional[ChangeNotifier] = None,
    ) -> "ConversationGraph":
        """
        Rebuild a graph from a snapshot. Merge history is not restored.

        Raises:
            DuplicateIdError: Repeated ids in the snapshot
            NotFoundError: Dangling edge endpoints or branch conversations
        """
        return cls(state=restore_state(snapshot, config=config, notifier=notifier))

    def validate(self) -> InvariantReport:
        return GraphInvariants.validate_all(self._state)

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _resolve_conversation(self, conversation_id: Optional[str]) -> str:
        if conversation_id is not None:
            self._state.get_conversation(conversation_id)
            return conversation_id

        if len(self._state.conversations) == 1:
            return next(iter(self._state.conversations))
        if not self._state.conversations:
            raise IllegalStateError("The graph has no conversations")
        raise IllegalStateError(
            f"conversation_id is required: the graph has {len(self._state.conversations)} conversations"
        )

    def _code_node(self, file_path: str, language: Optional[str]) -> Tuple[CodeNode, bool]:
        existing = self._code_index.get(file_path)
        if existing is not None:
            return self.store.require_node(existing), False

        code = CodeNode(
            id=generate_id(),
            label=posixpath.basename(file_path) or file_path,
            file_path=file_path,
            language=language,
        )
        self.store.add_node(code)
        self._code_index[file_path] = code.id
        return code, True

    def _after_mutation(self) -> None:
        if not self.config.graph.validate_on_mutation:
            return
        report = self.validate()
        for violation in report.errors:
            logger.error(f"Invariant violated ({violation.invariant}): {violation.message}")

    def __repr__(self) -> str:
        return (
            f"ConversationGraph(conversations={len(self._state.conversations)}, "
            f"branches={len(self._state.branches)}, nodes={self.store.node_count})"
        )
