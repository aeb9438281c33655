"""
Branch diffing: divergence point plus shared and unique message sets.

Branches share only a prefix by construction, so the shared set is the
ordered list of branch A's messages that also occur in branch B, and the
divergence point is the last of them.
"""
import logging
from typing import List, Optional, Tuple

import msgspec

from core.schemas import Branch, MessageNode
from core.state import GraphState


logger = logging.getLogger(__name__)


class BranchDiff(msgspec.Struct, kw_only=True, frozen=True):
    """Result of comparing two branches."""
    branch_a_id: str
    branch_b_id: str
    divergence_point: Optional[str]
    shared_ids: Tuple[str, ...] = ()
    branch_a_unique: Tuple[str, ...] = ()
    branch_b_unique: Tuple[str, ...] = ()
    shared_messages: Tuple[MessageNode, ...] = ()

    @property
    def has_divergence(self) -> bool:
        return self.divergence_point is not None

    @property
    def is_identical(self) -> bool:
        return not self.branch_a_unique and not self.branch_b_unique


class BranchComparator:
    """Read-only comparison of two branches' message lists."""

    def __init__(self, state: GraphState):
        self._state = state

    def diff(self, branch_a_id: str, branch_b_id: str) -> BranchDiff:
        """
        Compare two branches.

        Raises:
            NotFoundError: If either branch doesn't exist
        """
        a = self._state.get_branch(branch_a_id)
        b = self._state.get_branch(branch_b_id)
        return self.diff_branches(a, b)

    def diff_branches(self, a: Branch, b: Branch) -> BranchDiff:
        """Compare two branch records (they need not be committed)."""
        in_b = set(b.messages)
        shared_ids = tuple(m for m in a.messages if m in in_b)

        if shared_ids:
            divergence = shared_ids[-1]
        else:
            # Root vs root with nothing shared leaves this None
            divergence = a.branch_point

        idx_a = _index_or_minus_one(a.messages, divergence)
        idx_b = _index_or_minus_one(b.messages, divergence)

        shared_messages = tuple(
            m for m in (self._state.get_message(i) for i in shared_ids) if m is not None
        )

        logger.debug(
            f"Diff {a.id} vs {b.id}: divergence={divergence}, "
            f"shared={len(shared_ids)}, unique={len(a.messages) - idx_a - 1}/{len(b.messages) - idx_b - 1}"
        )
        return BranchDiff(
            branch_a_id=a.id,
            branch_b_id=b.id,
            divergence_point=divergence,
            shared_ids=shared_ids,
            branch_a_unique=a.messages[idx_a + 1:],
            branch_b_unique=b.messages[idx_b + 1:],
            shared_messages=shared_messages,
        )

    def unique_messages(self, diff: BranchDiff) -> Tuple[List[MessageNode], List[MessageNode]]:
        """Resolve both unique id lists into message records."""
        return (
            [self._state.require_message(i) for i in diff.branch_a_unique],
            [self._state.require_message(i) for i in diff.branch_b_unique],
        )


def _index_or_minus_one(messages: Tuple[str, ...], message_id: Optional[str]) -> int:
    if message_id is None:
        return -1
    try:
        return messages.index(message_id)
    except ValueError:
        return -1
