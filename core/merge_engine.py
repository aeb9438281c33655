"""
THREADLOOM MERGE ENGINE - Deterministic Branch Reconciliation

Folds a source branch into a target branch using one of three strategies
chosen by the caller:

- keep-both:     source and target suffixes interleaved by timestamp
- prefer-source: target suffix replaced by the source suffix
- prefer-target: source suffix dropped, target unchanged

A merge is planned in full before anything is written (preview() returns
the plan without committing). The commit then writes the result branch,
appends reply edges for the new ordering, invalidates reply edges into
discarded target messages, retires the source and activates the result.
merge_completed fires last.

find_candidates() ranks pairs of live branches by similarity without
merging anything; the strategy is always the caller's choice.
"""
import logging
import time
from collections import defaultdict
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple, Union

import msgspec

from core.branch_comparator import BranchComparator, BranchDiff
from core.branch_manager import BranchManager
from core.graph_db import GraphError
from core.ontology import EdgeType, MergeStrategy, parse_merge_strategy
from core.schemas import Branch, EdgeData, MessageNode, generate_id
from core.search_index import tokenize
from core.state import GraphState
from infrastructure.event_bus import ChangeEventType


logger = logging.getLogger(__name__)


class InvalidMergeError(GraphError):
    """Raised when two branches cannot be merged."""
    def __init__(self, message: str, source_id: Optional[str] = None, target_id: Optional[str] = None):
        self.source_id = source_id
        self.target_id = target_id
        super().__init__(message)


# =============================================================================
# RESULT TYPES
# =============================================================================

class MergeConflict(msgspec.Struct, kw_only=True, frozen=True):
    """
    Two messages at the same position after the divergence point whose
    content differs. Reported only, never blocks a merge.
    """
    position: int
    source_message_id: str
    target_message_id: str
    source_content: str
    target_content: str


class MergeResult(msgspec.Struct, kw_only=True, frozen=True):
    """
    Outcome (or preview) of a merge.

    messages is the full result branch list; merged_ids is the part after
    the divergence point. discarded_ids are unique messages left out of the
    result. committed is False for previews.
    """
    conversation_id: str
    source_branch_id: str
    target_branch_id: str
    result_branch_id: str
    strategy: MergeStrategy
    divergence_point: str
    messages: Tuple[str, ...]
    merged_ids: Tuple[str, ...]
    discarded_ids: Tuple[str, ...] = ()
    retired_branch_ids: Tuple[str, ...] = ()
    conflicts: Tuple[MergeConflict, ...] = ()
    created_branch: bool = False
    committed: bool = False
    merged_at: float = 0.0

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


class MergeCandidate(msgspec.Struct, kw_only=True, frozen=True):
    """
    A pair of live branches ranked by how well they would merge.

    similarity blends the shared-prefix ratio, token overlap of the unique
    suffixes and their time gap. recommendation is one of "merge",
    "review" or "keep-separate"; nothing is merged automatically.
    """
    source_branch_id: str
    target_branch_id: str
    similarity: float
    shared_count: int
    topic_overlap: Tuple[str, ...] = ()
    time_gap_minutes: float = 0.0
    conflicts: Tuple[MergeConflict, ...] = ()
    recommendation: str = "review"


# =============================================================================
# MERGE ENGINE
# =============================================================================

class MergeEngine:
    """
    Plans and commits branch merges.

    Usage:
        engine = MergeEngine(state, branch_manager, comparator)
        plan = engine.preview(source_id, target_id, "keep-both")
        result = engine.merge(source_id, target_id, "keep-both", into_new_branch=True)
        engine.get_history(result.conversation_id)
        engine.find_candidates(conversation_id)
    """

    def __init__(
        self,
        state: GraphState,
        branches: BranchManager,
        comparator: BranchComparator,
        tokens: Optional[Callable[[MessageNode], FrozenSet[str]]] = None,
    ):
        self._state = state
        self._branches = branches
        self._comparator = comparator
        self._tokens = tokens or (lambda message: frozenset(tokenize(message.content)))
        self._history: Dict[str, List[MergeResult]] = defaultdict(list)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def preview(
        self,
        source_id: str,
        target_id: str,
        strategy: Union[MergeStrategy, str],
        into_new_branch: bool = False,
    ) -> MergeResult:
        """
        Compute a merge without changing anything.

        Raises:
            NotFoundError: If either branch doesn't exist
            InvalidMergeError: If the branches cannot be merged
            ValueError: If the strategy is unknown
        """
        result, _ = self._plan(source_id, target_id, parse_merge_strategy(strategy), into_new_branch)
        return result

    def merge(
        self,
        source_id: str,
        target_id: str,
        strategy: Union[MergeStrategy, str],
        into_new_branch: bool = False,
    ) -> MergeResult:
        """
        Merge source into target and commit.

        into_new_branch applies the result as a new branch (parent = target,
        branch point = divergence point) instead of rewriting the target.
        prefer-target never creates a branch: the target is the result.

        Raises:
            NotFoundError: If either branch doesn't exist
            InvalidMergeError: If the branches cannot be merged
            ValueError: If the strategy is unknown
        """
        strategy = parse_merge_strategy(strategy)
        planned, new_branch = self._plan(source_id, target_id, strategy, into_new_branch)
        target = self._state.branches[target_id]

        edges = self._reply_edges(planned)
        stale = self._stale_reply_edges(planned, target) if not planned.created_branch else []

        # Commit
        if new_branch is not None:
            self._branches.add_merged_branch(new_branch)
        elif planned.messages != target.messages:
            self._branches.replace_messages(target.id, planned.messages)

        self._state.store.add_edges_batch(edges)
        for edge_id in stale:
            self._state.store.invalidate_edge(edge_id, reason=f"merge:{planned.source_branch_id}")

        self._branches.retire_branch(planned.source_branch_id, planned.result_branch_id)
        self._branches.activate(planned.result_branch_id)

        result = msgspec.structs.replace(planned, committed=True, merged_at=time.time())
        self._history[result.conversation_id].append(result)

        logger.info(
            f"Merged {result.source_branch_id} into {result.target_branch_id} "
            f"({result.strategy.value}) -> {result.result_branch_id}, "
            f"{len(result.conflicts)} conflict(s)"
        )
        self._state.notifier.publish(ChangeEventType.MERGE_COMPLETED, {
            "conversation_id": result.conversation_id,
            "result_branch_id": result.result_branch_id,
            "source_branch_id": result.source_branch_id,
            "target_branch_id": result.target_branch_id,
            "strategy": result.strategy.value,
            "retired_branch_ids": list(result.retired_branch_ids),
        })
        return result

    def find_candidates(self, conversation_id: str) -> List[MergeCandidate]:
        """
        Rank pairs of live branches of a conversation as merge candidates.

        Each pair is scored with the later-created branch as source and the
        earlier one as target. Pairs sharing no forkable ancestor are
        skipped, as are pairs below merge.candidate_threshold. Results are
        sorted by similarity, highest first; ties keep creation order.

        Raises:
            NotFoundError: If the conversation doesn't exist
        """
        self._state.get_conversation(conversation_id)
        settings = self._state.config.merge
        live = [b for b in self._state.branches_of(conversation_id) if b.is_live]

        candidates = []
        for i, target in enumerate(live):
            for source in live[i + 1:]:
                candidate = self._evaluate(source, target)
                if candidate is not None and candidate.similarity >= settings.candidate_threshold:
                    candidates.append(candidate)

        candidates.sort(key=lambda c: c.similarity, reverse=True)
        logger.debug(f"Merge candidates for {conversation_id}: {len(candidates)} of {len(live)} live branches")
        return candidates

    def get_history(self, conversation_id: str) -> List[MergeResult]:
        """Committed merges of a conversation, oldest first."""
        return list(self._history.get(conversation_id, []))

    # =========================================================================
    # PLANNING
    # =========================================================================

    def _plan(
        self,
        source_id: str,
        target_id: str,
        strategy: MergeStrategy,
        into_new_branch: bool,
    ) -> Tuple[MergeResult, Optional[Branch]]:
        source = self._state.get_branch(source_id)
        target = self._state.get_branch(target_id)
        self._check_pair(source, target)

        diff = self._comparator.diff_branches(source, target)
        if diff.divergence_point is None or diff.divergence_point not in target.messages:
            raise InvalidMergeError(
                f"Branches {source.id} and {target.id} share no forkable ancestor",
                source.id, target.id,
            )

        source_msgs, target_msgs = self._comparator.unique_messages(diff)
        conflicts = self._find_conflicts(source_msgs, target_msgs)

        if strategy is MergeStrategy.KEEP_BOTH:
            # Stable sort: ties keep source before target, then branch order
            merged = tuple(m.id for m in sorted(source_msgs + target_msgs, key=lambda m: m.timestamp))
            discarded: Tuple[str, ...] = ()
        elif strategy is MergeStrategy.PREFER_SOURCE:
            merged = diff.branch_a_unique
            discarded = diff.branch_b_unique
        else:
            merged = diff.branch_b_unique
            discarded = diff.branch_a_unique

        prefix = target.messages[: target.messages.index(diff.divergence_point) + 1]
        messages = prefix + merged

        new_branch = None
        if into_new_branch and strategy is not MergeStrategy.PREFER_TARGET:
            new_branch = Branch(
                id=generate_id(),
                conversation_id=target.conversation_id,
                name=f"{source.name} + {target.name}",
                parent_branch_id=target.id,
                branch_point=diff.divergence_point,
                messages=messages,
            )
            result_id = new_branch.id
        else:
            result_id = target.id
            if messages != target.messages:
                self._check_fork_point(target, source, diff)
                self._check_children(target, source, diff)

        result = MergeResult(
            conversation_id=target.conversation_id,
            source_branch_id=source.id,
            target_branch_id=target.id,
            result_branch_id=result_id,
            strategy=strategy,
            divergence_point=diff.divergence_point,
            messages=messages,
            merged_ids=merged,
            discarded_ids=discarded,
            retired_branch_ids=(source.id,),
            conflicts=conflicts,
            created_branch=new_branch is not None,
        )
        return result, new_branch

    def _check_pair(self, source: Branch, target: Branch) -> None:
        if source.id == target.id:
            raise InvalidMergeError(f"Cannot merge branch {source.id} into itself", source.id, target.id)
        if source.conversation_id != target.conversation_id:
            raise InvalidMergeError(
                f"Branches {source.id} and {target.id} belong to different conversations",
                source.id, target.id,
            )
        for branch in (source, target):
            if branch.merged_into is not None:
                raise InvalidMergeError(
                    f"Branch {branch.id} was already merged into {branch.merged_into}",
                    source.id, target.id,
                )
            if branch.archived:
                raise InvalidMergeError(f"Branch {branch.id} is archived", source.id, target.id)

    @staticmethod
    def _check_fork_point(target: Branch, source: Branch, diff: BranchDiff) -> None:
        """An in-place rewrite must keep the target's own branch point and prefix."""
        if target.is_root or target.branch_point not in target.messages:
            return
        if target.messages.index(diff.divergence_point) < target.messages.index(target.branch_point):
            raise InvalidMergeError(
                f"Branch {source.id} diverges from {target.id} before its branch point "
                f"{target.branch_point}; merge into a new branch instead",
                source.id, target.id,
            )

    def _check_children(self, target: Branch, source: Branch, diff: BranchDiff) -> None:
        """An in-place rewrite must leave every live child's fork prefix intact."""
        keep_up_to = target.messages.index(diff.divergence_point)
        for child in self._state.branches_of(target.conversation_id):
            if child.id == source.id or child.parent_branch_id != target.id or not child.is_live:
                continue
            if child.branch_point in target.messages and target.messages.index(child.branch_point) > keep_up_to:
                raise InvalidMergeError(
                    f"Merging in place would rewrite the prefix branch {child.id} forked from; "
                    f"merge into a new branch instead",
                    source.id, target.id,
                )

    @staticmethod
    def _find_conflicts(source_msgs, target_msgs) -> Tuple[MergeConflict, ...]:
        return tuple(
            MergeConflict(
                position=i,
                source_message_id=s.id,
                target_message_id=t.id,
                source_content=s.content,
                target_content=t.content,
            )
            for i, (s, t) in enumerate(zip(source_msgs, target_msgs))
            if s.content != t.content
        )

    # =========================================================================
    # CANDIDATE SCORING
    # =========================================================================

    def _evaluate(self, source: Branch, target: Branch) -> Optional[MergeCandidate]:
        settings = self._state.config.merge
        diff = self._comparator.diff_branches(source, target)
        if diff.divergence_point is None or diff.divergence_point not in target.messages:
            return None

        source_msgs, target_msgs = self._comparator.unique_messages(diff)
        source_tokens = frozenset().union(*(self._tokens(m) for m in source_msgs))
        target_tokens = frozenset().union(*(self._tokens(m) for m in target_msgs))
        all_tokens = source_tokens | target_tokens
        token_overlap = len(source_tokens & target_tokens) / len(all_tokens) if all_tokens else 0.0

        shared_ratio = len(diff.shared_ids) / max(len(source.messages), len(target.messages), 1)

        if source_msgs and target_msgs:
            gap = abs(
                max(m.timestamp for m in source_msgs) - min(m.timestamp for m in target_msgs)
            ).total_seconds() / 60
        else:
            gap = 0.0
        time_similarity = max(0.0, 1.0 - gap / settings.max_time_gap_minutes)

        similarity = round(0.4 * shared_ratio + 0.4 * token_overlap + 0.2 * time_similarity, 6)
        conflicts = self._find_conflicts(source_msgs, target_msgs)

        if similarity >= settings.recommend_threshold and len(conflicts) < 2:
            recommendation = "merge"
        elif gap > settings.max_time_gap_minutes:
            recommendation = "keep-separate"
        else:
            recommendation = "review"

        return MergeCandidate(
            source_branch_id=source.id,
            target_branch_id=target.id,
            similarity=similarity,
            shared_count=len(diff.shared_ids),
            topic_overlap=tuple(sorted(t for t in source_tokens & target_tokens if len(t) >= 4)),
            time_gap_minutes=gap,
            conflicts=conflicts,
            recommendation=recommendation,
        )

    # =========================================================================
    # EDGE BOOKKEEPING
    # =========================================================================

    def _reply_edges(self, result: MergeResult) -> List[EdgeData]:
        """Reply edges for consecutive pairs of the new ordering that lack one."""
        store = self._state.store
        chain = (result.divergence_point,) + result.merged_ids
        return [
            EdgeData.reply(prev, cur, metadata={
                "branch_id": result.result_branch_id,
                "merged_from": result.source_branch_id,
            })
            for prev, cur in zip(chain, chain[1:])
            if not store.get_edges_between(prev, cur, EdgeType.REPLY.value)
        ]

    def _stale_reply_edges(self, result: MergeResult, target: Branch) -> List[str]:
        """Valid reply edges into target messages the in-place merge drops."""
        dropped = set(target.messages) - set(result.messages)
        return [
            edge.id
            for message_id in target.messages if message_id in dropped
            for edge in self._state.store.get_incoming_edges(message_id, EdgeType.REPLY.value)
        ]
