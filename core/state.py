"""
Shared in-memory state for one conversation graph.

ConversationGraph owns a GraphState and hands it to BranchManager,
BranchComparator, MergeEngine and SearchIndex so they all see the same
committed records. Branch and conversation records are frozen structs;
components commit changes by assigning replacements into these dicts.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.graph_db import NodeStore, NotFoundError
from core.schemas import Branch, Conversation, MessageNode
from infrastructure.config import ThreadloomConfig
from infrastructure.event_bus import ChangeNotifier


@dataclass
class GraphState:
    store: NodeStore = field(default_factory=NodeStore)
    notifier: ChangeNotifier = field(default_factory=ChangeNotifier)
    config: ThreadloomConfig = field(default_factory=ThreadloomConfig)
    conversations: Dict[str, Conversation] = field(default_factory=dict)
    # Insertion-ordered: creation order of branches
    branches: Dict[str, Branch] = field(default_factory=dict)
    # conversation id -> branch ids in creation order
    conversation_branches: Dict[str, List[str]] = field(default_factory=dict)

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    def get_branch(self, branch_id: str) -> Branch:
        branch = self.branches.get(branch_id)
        if branch is None:
            raise NotFoundError("branch", branch_id)
        return branch

    def get_message(self, message_id: str) -> Optional[MessageNode]:
        """Message node by id, or None if absent or not a message."""
        node = self.store.get_node(message_id)
        return node if isinstance(node, MessageNode) else None

    def require_message(self, message_id: str) -> MessageNode:
        message = self.get_message(message_id)
        if message is None:
            raise NotFoundError("message", message_id)
        return message

    def branches_of(self, conversation_id: str) -> List[Branch]:
        return [self.branches[b] for b in self.conversation_branches.get(conversation_id, [])]
