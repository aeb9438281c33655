"""
THREADLOOM SEARCH INDEX - Ranked Message Lookup

Token/substring relevance over message content:

    score = token_weight * (matched query tokens / query tokens)
          + substring_weight * (whole query occurs in the content)

Both checks are case-insensitive. An empty query scores every message 1.0,
which turns search into a pure filter (newest first).

Filters run before scoring. Candidates are scanned newest first, so once
`limit` perfect scores are held nothing older can outrank them and the
scan stops.

Messages are immutable once stored, so their token sets are cached by id.
"""
import logging
import re
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

import msgspec

from core.ontology import EdgeType, NodeType
from core.schemas import CodeNode, MessageNode, ensure_aware
from core.state import GraphState


logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+")
_SENTENCE_RE = re.compile(r"[.!?]+")


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens, in order."""
    return _TOKEN_RE.findall(text.lower())


# =============================================================================
# QUERY / RESULT TYPES
# =============================================================================

class SearchFilters(msgspec.Struct, kw_only=True, frozen=True):
    """
    Pre-scoring filters. Unset fields don't filter.

    branch_ids keeps messages listed in any of the given branches (shared
    prefixes included). has_code_links=False keeps only messages without
    code references.
    """
    role: Optional[str] = None
    date_range: Optional[Tuple[datetime, datetime]] = None
    branch_ids: Optional[Tuple[str, ...]] = None
    has_code_links: Optional[bool] = None
    conversation_id: Optional[str] = None


class SearchQuery(msgspec.Struct, kw_only=True, frozen=True):
    text: str = ""
    filters: SearchFilters = msgspec.field(default_factory=SearchFilters)
    limit: Optional[int] = None


def coerce_query(text: str, filters=None, limit: Optional[int] = None) -> SearchQuery:
    """
    Build a SearchQuery from loose arguments. filters may be a dict.

    Raises:
        ValueError: If the filters or limit have the wrong shape
    """
    try:
        if filters is None:
            filters = SearchFilters()
        elif not isinstance(filters, SearchFilters):
            filters = msgspec.convert(filters, type=SearchFilters)
        limit = msgspec.convert(limit, type=Optional[int])
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid search query: {e}") from e
    return SearchQuery(text=text, filters=filters, limit=limit)


class SearchContext(msgspec.Struct, kw_only=True, frozen=True):
    linked_code: Tuple[CodeNode, ...] = ()
    related_messages: Tuple[MessageNode, ...] = ()


class SearchResult(msgspec.Struct, kw_only=True, frozen=True):
    message: MessageNode
    relevance_score: float
    matched_content: Tuple[str, ...] = ()
    context: SearchContext = msgspec.field(default_factory=SearchContext)


# =============================================================================
# SEARCH INDEX
# =============================================================================

class SearchIndex:
    """
    Filtered, ranked lookup over every message in the graph.

    Usage:
        index = SearchIndex(state)
        results = index.search(SearchQuery(text="dashboard", limit=5))
        results[0].relevance_score
    """

    def __init__(self, state: GraphState):
        self._state = state
        self._tokens: Dict[str, FrozenSet[str]] = {}

    def search(self, query: SearchQuery) -> List[SearchResult]:
        settings = self._state.config.search
        limit = query.limit if query.limit is not None else settings.default_limit
        if limit <= 0:
            return []

        text = query.text.strip().lower()
        query_tokens = list(dict.fromkeys(tokenize(text)))

        candidates = [
            m for m in self._state.store.find_nodes(NodeType.MESSAGE.value)
            if self._matches(m, query.filters)
        ]
        candidates.sort(key=lambda m: m.timestamp, reverse=True)

        scored: List[Tuple[float, MessageNode, List[str]]] = []
        perfect = 0
        for message in candidates:
            score, matched = self._score(message, text, query_tokens)
            if score <= 0.0:
                continue
            scored.append((score, message, matched))
            if score >= 1.0:
                perfect += 1
                if perfect >= limit:
                    break

        # Stable: equal (score, timestamp) keeps scan order
        scored.sort(key=lambda r: (r[0], r[1].timestamp), reverse=True)

        results = [
            SearchResult(
                message=message,
                relevance_score=score,
                matched_content=self._snippets(message.content, matched),
                context=self.build_context(message.id),
            )
            for score, message, matched in scored[:limit]
        ]
        logger.debug(
            f"Search {query.text!r}: {len(candidates)} candidates, "
            f"{len(scored)} scored, {len(results)} returned"
        )
        return results

    # =========================================================================
    # SCORING
    # =========================================================================

    def _score(self, message: MessageNode, text: str, query_tokens: List[str]) -> Tuple[float, List[str]]:
        if not text:
            return 1.0, []

        settings = self._state.config.search
        tokens = self.tokens_for(message)
        matched = [t for t in query_tokens if t in tokens]

        token_part = len(matched) / len(query_tokens) if query_tokens else 0.0
        substring_part = 1.0 if text in message.content.lower() else 0.0

        score = settings.token_weight * token_part + settings.substring_weight * substring_part
        return min(1.0, round(score, 6)), matched

    def tokens_for(self, message: MessageNode) -> FrozenSet[str]:
        """Cached token set of a message."""
        tokens = self._tokens.get(message.id)
        if tokens is None:
            tokens = frozenset(tokenize(message.content))
            self._tokens[message.id] = tokens
        return tokens

    def _snippets(self, content: str, matched: List[str]) -> Tuple[str, ...]:
        if not matched:
            return ()

        settings = self._state.config.search
        snippets = []
        for sentence in _SENTENCE_RE.split(content):
            sentence = sentence.strip()
            if not sentence:
                continue
            if set(tokenize(sentence)) & set(matched):
                snippets.append(sentence[: settings.snippet_chars])
                if len(snippets) >= settings.snippet_limit:
                    break
        return tuple(snippets)

    # =========================================================================
    # FILTERS
    # =========================================================================

    def _matches(self, message: MessageNode, filters: SearchFilters) -> bool:
        if filters.conversation_id is not None and message.conversation_id != filters.conversation_id:
            return False

        if filters.role is not None and message.role != filters.role:
            return False

        if filters.date_range is not None:
            start, end = filters.date_range
            if not ensure_aware(start) <= message.timestamp <= ensure_aware(end):
                return False

        if filters.branch_ids:
            branches = self._state.branches
            if not any(
                b in branches and message.id in branches[b].messages
                for b in filters.branch_ids
            ):
                return False

        if filters.has_code_links is not None:
            if bool(self.linked_code(message.id)) != filters.has_code_links:
                return False

        return True

    # =========================================================================
    # CONTEXT
    # =========================================================================

    def linked_code(self, message_id: str) -> List[CodeNode]:
        """Code nodes the message references (valid edges only)."""
        return [
            n for n in self._state.store.get_successors(message_id, EdgeType.REFERENCES.value)
            if isinstance(n, CodeNode)
        ]

    def related_messages(self, message_id: str, max_depth: Optional[int] = None) -> List[MessageNode]:
        """
        The parent message plus messages reachable over bidirectional links
        within max_depth hops (config related_depth by default).
        """
        related: Dict[str, MessageNode] = {}

        message = self._state.get_message(message_id)
        if message is not None and message.parent_message_id:
            parent = self._state.get_message(message.parent_message_id)
            if parent is not None:
                related[parent.id] = parent

        if max_depth is None:
            max_depth = self._state.config.search.related_depth
        for node in self.linked_neighbourhood(message_id, max_depth):
            if isinstance(node, MessageNode):
                related.setdefault(node.id, node)

        related.pop(message_id, None)
        return list(related.values())

    def linked_neighbourhood(self, node_id: str, max_depth: int) -> List:
        """
        Breadth-first walk over valid bidirectional edges.

        Returns:
            Nodes within max_depth hops, nearest first, node_id excluded
        """
        store = self._state.store
        seen = {node_id}
        frontier = [node_id]
        found = []
        for _ in range(max_depth):
            next_frontier = []
            for current in frontier:
                for edge in store.get_outgoing_edges(current):
                    if not edge.is_bidirectional or edge.target_id in seen:
                        continue
                    seen.add(edge.target_id)
                    next_frontier.append(edge.target_id)
                    found.append(store.require_node(edge.target_id))
            frontier = next_frontier
        return found

    def build_context(self, message_id: str) -> SearchContext:
        return SearchContext(
            linked_code=tuple(self.linked_code(message_id)),
            related_messages=tuple(self.related_messages(message_id)),
        )

    def clear_cache(self) -> None:
        self._tokens.clear()
