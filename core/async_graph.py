"""
Awaitable facade over ConversationGraph.

Mutations run synchronously against the in-memory graph, so they never
suspend half-way. When a `persist` coroutine is supplied it receives a
snapshot strictly after the commit; the in-memory graph stays
authoritative even if persisting fails (the error is logged and
re-raised to the caller).

An asyncio.Lock serializes mutations so snapshots reach `persist` in
commit order.

Usage:
    async def save(snapshot):
        await store.put("graph", encode_snapshot(snapshot))

    graph = AsyncConversationGraph(persist=save)
    conversation = await graph.create_conversation("Planning")
    await graph.add_message(conversation.id, {"role": "user", "content": "Hi"})
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from core.branch_comparator import BranchDiff
from core.conversation_graph import ConversationGraph, MessageContext
from core.merge_engine import MergeCandidate, MergeResult
from core.ontology import EdgeType, MergeStrategy
from core.schemas import Branch, CodeNode, Conversation, DocumentNode, EdgeData, MessageNode, NewMessage
from core.search_index import SearchQuery, SearchResult
from core.snapshot import GraphSnapshot


logger = logging.getLogger(__name__)

PersistHook = Callable[[GraphSnapshot], Awaitable[None]]


class AsyncConversationGraph:
    """Async wrapper: commit in memory, then (optionally) persist."""

    def __init__(self, graph: Optional[ConversationGraph] = None, persist: Optional[PersistHook] = None):
        self._graph = graph or ConversationGraph()
        self._persist = persist
        self._lock = asyncio.Lock()

    @property
    def graph(self) -> ConversationGraph:
        """The wrapped synchronous graph."""
        return self._graph

    async def _mutate(self, operation: Callable[..., Any], *args, **kwargs) -> Any:
        async with self._lock:
            result = operation(*args, **kwargs)
            if self._persist is not None:
                snapshot = self._graph.snapshot()
                try:
                    await self._persist(snapshot)
                except Exception as e:
                    logger.error(f"Persisting snapshot failed after {operation.__name__}: {e}", exc_info=True)
                    raise
            return result

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def create_conversation(self, title: str, **kwargs) -> Conversation:
        return await self._mutate(self._graph.create_conversation, title, **kwargs)

    async def add_message(
        self,
        conversation_id: str,
        message: Union[NewMessage, Dict[str, Any]],
        branch_id: Optional[str] = None,
    ) -> str:
        return await self._mutate(self._graph.add_message, conversation_id, message, branch_id)

    async def create_branch(
        self,
        from_message_id: str,
        message: Union[NewMessage, Dict[str, Any]],
        name: Optional[str] = None,
    ) -> str:
        return await self._mutate(self._graph.create_branch, from_message_id, message, name)

    async def switch_branch(self, branch_id: str) -> Branch:
        return await self._mutate(self._graph.switch_branch, branch_id)

    async def rename_branch(self, branch_id: str, name: str) -> Branch:
        return await self._mutate(self._graph.rename_branch, branch_id, name)

    async def archive_branch(self, branch_id: str) -> Branch:
        return await self._mutate(self._graph.archive_branch, branch_id)

    async def restore_branch(self, branch_id: str) -> Branch:
        return await self._mutate(self._graph.restore_branch, branch_id)

    async def link_to_code(self, message_id: str, file_path: str, language: Optional[str] = None) -> CodeNode:
        return await self._mutate(self._graph.link_to_code, message_id, file_path, language)

    async def link_to_document(self, message_id: str, uri: str, title: Optional[str] = None) -> DocumentNode:
        return await self._mutate(self._graph.link_to_document, message_id, uri, title)

    async def link_bidirectional(
        self,
        source_id: str,
        target_id: str,
        relation: Union[EdgeType, str] = EdgeType.LINK,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[EdgeData, EdgeData]:
        return await self._mutate(self._graph.link_bidirectional, source_id, target_id, relation, metadata)

    async def merge(
        self,
        source_branch_id: str,
        target_branch_id: str,
        strategy: Union[MergeStrategy, str],
        into_new_branch: bool = False,
    ) -> MergeResult:
        return await self._mutate(
            self._graph.merge, source_branch_id, target_branch_id, strategy, into_new_branch
        )

    # =========================================================================
    # QUERIES (committed state only, no locking)
    # =========================================================================

    async def get_branches(self, conversation_id: Optional[str] = None, **kwargs) -> List[Branch]:
        return self._graph.get_branches(conversation_id, **kwargs)

    async def get_active_branch(self, conversation_id: Optional[str] = None) -> Branch:
        return self._graph.get_active_branch(conversation_id)

    async def get_message(self, message_id: str) -> Optional[MessageNode]:
        return self._graph.get_message(message_id)

    async def get_branch_messages(self, branch_id: str) -> List[MessageNode]:
        return self._graph.get_branch_messages(branch_id)

    async def diff(self, branch_a_id: str, branch_b_id: str) -> BranchDiff:
        return self._graph.diff(branch_a_id, branch_b_id)

    async def preview_merge(self, source_branch_id: str, target_branch_id: str, strategy, into_new_branch: bool = False) -> MergeResult:
        return self._graph.preview_merge(source_branch_id, target_branch_id, strategy, into_new_branch)

    async def find_merge_candidates(self, conversation_id: Optional[str] = None) -> List[MergeCandidate]:
        return self._graph.find_merge_candidates(conversation_id)

    async def search(self, query: Union[SearchQuery, str, None] = None, **kwargs) -> List[SearchResult]:
        return self._graph.search(query, **kwargs)

    async def build_context(self, message_id: str) -> MessageContext:
        return self._graph.build_context(message_id)

    async def snapshot(self) -> GraphSnapshot:
        return self._graph.snapshot()
