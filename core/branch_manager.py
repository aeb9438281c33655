"""
THREADLOOM BRANCH MANAGER - Forks, Switches and the Active Branch

The BranchManager is the only component that writes branch records.
It owns three rules:

1. SINGLE ACTIVE BRANCH: Exactly one branch per conversation is active,
   and Conversation.active_branch_id names it. Only _activate() changes it.
2. PREFIX SHARING: A fork copies the source branch's messages up to and
   including the fork point, then appends its own first message.
3. COMMIT LAST: Every mutation validates first, writes nodes/edges, then
   replaces the branch/conversation records. Events fire after the commit.

Branch message lists are immutable tuples; appending or forking builds a
new tuple and swaps the record, so readers never see a half-updated list.
"""
import logging
import re
from typing import Dict, List, Optional, Union, Any

import msgspec

from core.graph_db import GraphError, NotFoundError, DuplicateIdError
from core.schemas import (
    Branch,
    Conversation,
    EdgeData,
    MessageNode,
    NewMessage,
    coerce_message,
    generate_id,
)
from core.state import GraphState
from infrastructure.event_bus import ChangeEventType


logger = logging.getLogger(__name__)


class IllegalStateError(GraphError):
    """Raised when an operation targets a branch/conversation in the wrong state."""
    pass


class BranchManager:
    """
    Creates, switches and tracks branches.

    Usage:
        manager = BranchManager(state)
        root = manager.create_root_branch(conversation)
        node = manager.append_message(root.id, {"role": "user", "content": "Hello"})
        first = manager.create_branch(node.id, {"role": "user", "content": "Alternate path"})
        manager.switch_branch(root.id)
    """

    def __init__(self, state: GraphState):
        self._state = state

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_branch(self, branch_id: str) -> Branch:
        """
        Raises:
            NotFoundError: If the branch doesn't exist
        """
        return self._state.get_branch(branch_id)

    def branches_for(
        self,
        conversation_id: str,
        include_archived: bool = True,
        include_merged: bool = False,
    ) -> List[Branch]:
        """Branches of a conversation in creation order."""
        return [
            b for b in self._state.branches_of(conversation_id)
            if (include_archived or not b.archived)
            and (include_merged or b.merged_into is None)
        ]

    def active_branch(self, conversation_id: str) -> Branch:
        """
        Raises:
            NotFoundError: If the conversation doesn't exist
        """
        conversation = self._state.get_conversation(conversation_id)
        return self._state.branches[conversation.active_branch_id]

    def locate_branch(self, message_id: str) -> Optional[Branch]:
        """
        The live branch a fork from message_id should use as its parent.

        Preference: the conversation's active branch, then the message's
        home branch, then the first live branch (creation order) listing it.
        Returns None if no live branch lists the message.
        """
        message = self._state.get_message(message_id)
        if message is None:
            return None

        candidates = [
            b for b in self._state.branches_of(message.conversation_id)
            if b.is_live and message_id in b.messages
        ]
        if not candidates:
            return None

        conversation = self._state.conversations[message.conversation_id]
        for preferred in (conversation.active_branch_id, message.branch_id):
            for branch in candidates:
                if branch.id == preferred:
                    return branch
        return candidates[0]

    def branches_containing(self, message_id: str) -> List[Branch]:
        """Every branch (any state) whose message list contains message_id."""
        message = self._state.get_message(message_id)
        if message is None:
            return []
        return [
            b for b in self._state.branches_of(message.conversation_id)
            if message_id in b.messages
        ]

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_root_branch(self, conversation: Conversation) -> Branch:
        """
        Register a conversation together with its empty, active root branch.

        Raises:
            DuplicateIdError: If the conversation or root branch id exists
        """
        if conversation.id in self._state.conversations:
            raise DuplicateIdError("conversation", conversation.id)

        branch_id = conversation.root_branch_id or f"{conversation.id}-main"
        if branch_id in self._state.branches:
            raise DuplicateIdError("branch", branch_id)

        root = Branch(
            id=branch_id,
            conversation_id=conversation.id,
            name=self._state.config.branches.root_branch_name,
            active=True,
        )
        conversation = msgspec.structs.replace(
            conversation, root_branch_id=branch_id, active_branch_id=branch_id
        )

        # Commit
        self._state.branches[branch_id] = root
        self._state.conversation_branches[conversation.id] = [branch_id]
        self._state.conversations[conversation.id] = conversation

        logger.info(f"Created conversation {conversation.id} with root branch {branch_id}")
        return root

    def append_message(
        self,
        branch_id: str,
        message: Union[NewMessage, Dict[str, Any]],
    ) -> MessageNode:
        """
        Append a new message node to a live branch, commit, publish
        message_added.

        Adds a REPLY edge from the branch's previous head.

        Returns:
            The stored MessageNode

        Raises:
            NotFoundError: If the branch doesn't exist
            IllegalStateError: If the branch is archived or merged
            DuplicateIdError: If the message id is taken
            ValueError: If the message input is malformed
        """
        branch = self._state.get_branch(branch_id)
        self._require_live(branch, "append to")
        message = coerce_message(message)
        if message.id is not None and self._state.store.has_node(message.id):
            raise DuplicateIdError("node", message.id)

        node = MessageNode.from_input(
            message,
            conversation_id=branch.conversation_id,
            branch_id=branch.id,
            parent_message_id=branch.head,
            description_chars=self._state.config.graph.description_chars,
        )

        store = self._state.store
        store.add_node(node)
        if branch.head is not None:
            store.add_edge(EdgeData.reply(branch.head, node.id, metadata={"branch_id": branch.id}))

        # Commit
        self._state.branches[branch.id] = msgspec.structs.replace(
            branch, messages=branch.messages + (node.id,)
        )

        self._state.notifier.publish(ChangeEventType.MESSAGE_ADDED, {
            "conversation_id": branch.conversation_id,
            "message_id": node.id,
            "branch_id": branch.id,
        })
        return node

    def create_branch(
        self,
        from_message_id: str,
        first_message: Union[NewMessage, Dict[str, Any]],
        name: Optional[str] = None,
    ) -> MessageNode:
        """
        Fork a new branch at from_message_id and make it active.

        The new branch's messages are the source branch's messages up to and
        including from_message_id, followed by the new first message.

        Returns:
            The new first MessageNode (its branch_id is the new branch)

        Raises:
            NotFoundError: If the message doesn't exist in any branch
            IllegalStateError: If only archived/merged branches contain it
            DuplicateIdError: If the first message's id is taken
        """
        if not self.branches_containing(from_message_id):
            raise NotFoundError("message", from_message_id)

        source = self.locate_branch(from_message_id)
        if source is None:
            raise IllegalStateError(
                f"Cannot fork from {from_message_id}: no live branch contains it"
            )

        first_message = coerce_message(first_message)
        if first_message.id is not None and self._state.store.has_node(first_message.id):
            raise DuplicateIdError("node", first_message.id)

        branch_id = generate_id()
        prefix = source.messages[: source.messages.index(from_message_id) + 1]
        node = MessageNode.from_input(
            first_message,
            conversation_id=source.conversation_id,
            branch_id=branch_id,
            parent_message_id=from_message_id,
            description_chars=self._state.config.graph.description_chars,
        )

        store = self._state.store
        store.add_node(node)
        store.add_edge(EdgeData.branch(
            from_message_id,
            node.id,
            metadata={"branch_id": branch_id, "parent_branch_id": source.id},
        ))

        new_branch = Branch(
            id=branch_id,
            conversation_id=source.conversation_id,
            name=name or self.generate_branch_name(first_message.content),
            parent_branch_id=source.id,
            branch_point=from_message_id,
            messages=prefix + (node.id,),
        )

        # Commit
        self._state.branches[branch_id] = new_branch
        self._state.conversation_branches[source.conversation_id].append(branch_id)
        previous = self._activate(branch_id)

        logger.info(
            f"Forked branch {branch_id} from {source.id} at message {from_message_id}"
        )
        self._state.notifier.publish(ChangeEventType.MESSAGE_ADDED, {
            "conversation_id": source.conversation_id,
            "message_id": node.id,
            "branch_id": branch_id,
        })
        self._state.notifier.publish(ChangeEventType.BRANCH_CREATED, {
            "conversation_id": source.conversation_id,
            "branch_id": branch_id,
            "parent_branch_id": source.id,
            "previous_active_branch_id": previous,
            "from_message_id": from_message_id,
            "new_message_id": node.id,
        })
        return node

    def add_merged_branch(self, branch: Branch) -> None:
        """
        Register a branch produced by a merge (no activation, no event).

        Raises:
            DuplicateIdError: If the branch id exists
        """
        if branch.id in self._state.branches:
            raise DuplicateIdError("branch", branch.id)
        self._state.branches[branch.id] = msgspec.structs.replace(branch, active=False)
        self._state.conversation_branches[branch.conversation_id].append(branch.id)

    # =========================================================================
    # SWITCHING
    # =========================================================================

    def switch_branch(self, branch_id: str) -> Branch:
        """
        Make branch_id the active branch of its conversation.

        Idempotent: switching to the already-active branch changes nothing
        and publishes nothing.

        Raises:
            IllegalStateError: If the branch doesn't exist, is archived or merged
        """
        branch = self._state.branches.get(branch_id)
        if branch is None:
            raise IllegalStateError(f"Cannot switch to unknown branch: {branch_id}")
        self._require_live(branch, "switch to")

        if branch.active:
            return branch

        previous = self._activate(branch_id)
        logger.debug(f"Switched conversation {branch.conversation_id} to branch {branch_id}")
        self._state.notifier.publish(ChangeEventType.BRANCH_SWITCHED, {
            "conversation_id": branch.conversation_id,
            "branch_id": branch_id,
            "previous_branch_id": previous,
        })
        return self._state.branches[branch_id]

    def _activate(self, branch_id: str) -> Optional[str]:
        """
        Deactivate every other branch of the conversation, activate branch_id.

        Returns:
            The previously active branch id
        """
        branch = self._state.branches[branch_id]
        conversation = self._state.conversations[branch.conversation_id]
        previous = conversation.active_branch_id

        for other in self._state.branches_of(branch.conversation_id):
            if other.active and other.id != branch_id:
                self._state.branches[other.id] = msgspec.structs.replace(other, active=False)
        self._state.branches[branch_id] = msgspec.structs.replace(
            self._state.branches[branch_id], active=True
        )
        self._state.conversations[conversation.id] = msgspec.structs.replace(
            conversation, active_branch_id=branch_id
        )
        return previous

    # =========================================================================
    # MERGE SUPPORT (called by MergeEngine only)
    # =========================================================================

    def replace_messages(self, branch_id: str, messages: tuple) -> Branch:
        """Replace a branch's message list wholesale."""
        branch = self._state.get_branch(branch_id)
        updated = msgspec.structs.replace(branch, messages=tuple(messages))
        self._state.branches[branch_id] = updated
        return updated

    def retire_branch(self, branch_id: str, merged_into: str) -> Branch:
        """Mark a merge source as folded into merged_into (also deactivates it)."""
        branch = self._state.get_branch(branch_id)
        updated = msgspec.structs.replace(branch, merged_into=merged_into, active=False)
        self._state.branches[branch_id] = updated
        return updated

    def activate(self, branch_id: str) -> Optional[str]:
        """Activate a branch as part of a larger commit (no event)."""
        return self._activate(branch_id)

    # =========================================================================
    # LIFECYCLE (rename / archive / restore)
    # =========================================================================

    def rename_branch(self, branch_id: str, new_name: str) -> Branch:
        """
        Rename a branch, remembering the old name.

        Raises:
            NotFoundError: If the branch doesn't exist
            ValueError: If the new name is blank
        """
        branch = self._state.get_branch(branch_id)
        new_name = new_name.strip()
        if not new_name:
            raise ValueError("Branch name cannot be empty")
        if new_name == branch.name:
            return branch

        updated = msgspec.structs.replace(
            branch,
            name=new_name,
            rename_history=branch.rename_history + (branch.name,),
        )
        self._state.branches[branch_id] = updated
        self._state.notifier.publish(ChangeEventType.BRANCH_RENAMED, {
            "conversation_id": branch.conversation_id,
            "branch_id": branch_id,
            "old_name": branch.name,
            "new_name": new_name,
        })
        return updated

    def archive_branch(self, branch_id: str) -> Branch:
        """
        Soft-hide a branch. It keeps its messages and can be restored.

        Raises:
            NotFoundError: If the branch doesn't exist
            IllegalStateError: If the branch is active, root or merged
        """
        branch = self._state.get_branch(branch_id)
        if branch.active:
            raise IllegalStateError("Cannot archive the active branch")
        if branch.is_root:
            raise IllegalStateError("Cannot archive the root branch")
        if branch.merged_into is not None:
            raise IllegalStateError(f"Branch {branch_id} was merged into {branch.merged_into}")
        if branch.archived:
            return branch

        updated = msgspec.structs.replace(branch, archived=True)
        self._state.branches[branch_id] = updated
        self._state.notifier.publish(ChangeEventType.BRANCH_ARCHIVED, {
            "conversation_id": branch.conversation_id,
            "branch_id": branch_id,
        })
        return updated

    def restore_branch(self, branch_id: str) -> Branch:
        """
        Undo archive_branch.

        Raises:
            NotFoundError: If the branch doesn't exist
        """
        branch = self._state.get_branch(branch_id)
        if not branch.archived:
            return branch

        updated = msgspec.structs.replace(branch, archived=False)
        self._state.branches[branch_id] = updated
        self._state.notifier.publish(ChangeEventType.BRANCH_RESTORED, {
            "conversation_id": branch.conversation_id,
            "branch_id": branch_id,
        })
        return updated

    # =========================================================================
    # HELPERS
    # =========================================================================

    def generate_branch_name(self, content: str) -> str:
        """
        Name a branch after the first few meaningful words of its first message.

        "can you refactor the dashboard?" -> "Can You Refactor"
        """
        settings = self._state.config.branches
        words = [
            w for w in re.sub(r"[^\w\s]", "", content).split()
            if len(w) > 2
        ][: settings.name_word_count]

        if not words:
            return f"Branch {len(self._state.branches) + 1}"

        name = " ".join(w[:1].upper() + w[1:].lower() for w in words)
        if len(name) > settings.name_max_chars:
            return name[: settings.name_max_chars] + "..."
        return name

    @staticmethod
    def _require_live(branch: Branch, action: str) -> None:
        if branch.merged_into is not None:
            raise IllegalStateError(
                f"Cannot {action} branch {branch.id}: merged into {branch.merged_into}"
            )
        if branch.archived:
            raise IllegalStateError(f"Cannot {action} archived branch {branch.id}")
