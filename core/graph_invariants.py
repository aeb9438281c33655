"""
THREADLOOM GRAPH INVARIANTS - Structural Checks

Validators for the rules every committed graph must satisfy. They read the
shared GraphState and never mutate it.

Invariants Implemented:
1. Single Active Branch: exactly one active branch per conversation, and it
   is the one Conversation.active_branch_id names
2. Prefix Sharing: a child branch's messages up to and including its branch
   point equal its parent's over the same range
3. Message Membership: every listed message exists, every message's home
   branch exists in its conversation and lists it
4. Link Pairs: each correlation id ties exactly two mirrored edges
5. Flow Acyclicity: valid reply/branch edges form a DAG (warning only;
   merges may interleave messages in an order the edges did not foresee)

Design Philosophy:
- Violations are collected, not raised; callers decide what to do
- Checks are O(V+E) plus O(total branch length)
"""
import rustworkx as rx
from typing import List, Tuple, Dict, Any, Optional
from dataclasses import dataclass, field
from enum import Enum

from core.ontology import FLOW_RELATIONS
from core.state import GraphState


# =============================================================================
# INVARIANT RESULTS
# =============================================================================

class InvariantSeverity(Enum):
    """Severity levels for invariant violations."""
    ERROR = "error"      # The graph is corrupt
    WARNING = "warning"  # Should be investigated
    INFO = "info"        # For diagnostics


@dataclass
class InvariantViolation:
    """A specific invariant violation."""
    invariant: str           # Name of the invariant
    severity: InvariantSeverity
    message: str
    nodes_involved: List[str] = field(default_factory=list)      # Node ids involved
    branches_involved: List[str] = field(default_factory=list)   # Branch ids involved


@dataclass
class InvariantReport:
    """Complete invariant validation report."""
    valid: bool
    violations: List[InvariantViolation]
    metrics: Dict[str, Any]

    @property
    def errors(self) -> List[InvariantViolation]:
        return [v for v in self.violations if v.severity == InvariantSeverity.ERROR]

    @property
    def warnings(self) -> List[InvariantViolation]:
        return [v for v in self.violations if v.severity == InvariantSeverity.WARNING]


# =============================================================================
# GRAPH INVARIANTS
# =============================================================================

class GraphInvariants:
    """
    Invariant validators over a GraphState.

    All methods are static. ConversationGraph.validate() wraps validate_all().
    """

    @staticmethod
    def validate_single_active_branch(state: GraphState) -> List[InvariantViolation]:
        """
        Exactly one branch per conversation is active, and it matches the
        conversation's active_branch_id.
        """
        violations = []
        for conversation in state.conversations.values():
            active = [b.id for b in state.branches_of(conversation.id) if b.active]

            if len(active) != 1:
                violations.append(InvariantViolation(
                    invariant="single_active_branch",
                    severity=InvariantSeverity.ERROR,
                    message=f"Conversation {conversation.id} has {len(active)} active branches",
                    branches_involved=active,
                ))
            elif active[0] != conversation.active_branch_id:
                violations.append(InvariantViolation(
                    invariant="single_active_branch",
                    severity=InvariantSeverity.ERROR,
                    message=(
                        f"Conversation {conversation.id} points at {conversation.active_branch_id} "
                        f"but {active[0]} is active"
                    ),
                    branches_involved=[active[0], conversation.active_branch_id],
                ))
        return violations

    @staticmethod
    def validate_prefix_sharing(state: GraphState) -> List[InvariantViolation]:
        """
        For every branch B with parent P:
            B.messages[0..idx(bp)] == P.messages[0..idx(bp)]
        """
        violations = []
        for branch in state.branches.values():
            if branch.parent_branch_id is None:
                continue

            parent = state.branches.get(branch.parent_branch_id)
            if parent is None:
                violations.append(InvariantViolation(
                    invariant="prefix_sharing",
                    severity=InvariantSeverity.ERROR,
                    message=f"Branch {branch.id} has unknown parent {branch.parent_branch_id}",
                    branches_involved=[branch.id],
                ))
                continue

            if branch.branch_point not in branch.messages or branch.branch_point not in parent.messages:
                violations.append(InvariantViolation(
                    invariant="prefix_sharing",
                    severity=InvariantSeverity.ERROR,
                    message=f"Branch point {branch.branch_point} of {branch.id} is missing from the branch or its parent",
                    nodes_involved=[branch.branch_point] if branch.branch_point else [],
                    branches_involved=[branch.id, parent.id],
                ))
                continue

            end = branch.messages.index(branch.branch_point) + 1
            if branch.messages[:end] != parent.messages[:end]:
                violations.append(InvariantViolation(
                    invariant="prefix_sharing",
                    severity=InvariantSeverity.ERROR,
                    message=f"Branch {branch.id} prefix differs from parent {parent.id}",
                    nodes_involved=list(branch.messages[:end]),
                    branches_involved=[branch.id, parent.id],
                ))
        return violations

    @staticmethod
    def validate_message_membership(state: GraphState) -> List[InvariantViolation]:
        """Listed messages exist; every message's home branch lists it."""
        violations = []

        for branch in state.branches.values():
            missing = [m for m in branch.messages if state.get_message(m) is None]
            if missing:
                violations.append(InvariantViolation(
                    invariant="message_membership",
                    severity=InvariantSeverity.ERROR,
                    message=f"Branch {branch.id} lists {len(missing)} unknown message(s)",
                    nodes_involved=missing,
                    branches_involved=[branch.id],
                ))
            if len(set(branch.messages)) != len(branch.messages):
                violations.append(InvariantViolation(
                    invariant="message_membership",
                    severity=InvariantSeverity.ERROR,
                    message=f"Branch {branch.id} lists a message twice",
                    branches_involved=[branch.id],
                ))

        for conversation_id in state.conversations:
            for branch in state.branches_of(conversation_id):
                for message_id in branch.messages:
                    message = state.get_message(message_id)
                    if message is not None and message.conversation_id != conversation_id:
                        violations.append(InvariantViolation(
                            invariant="message_membership",
                            severity=InvariantSeverity.ERROR,
                            message=f"Message {message_id} of {message.conversation_id} listed in {branch.id}",
                            nodes_involved=[message_id],
                            branches_involved=[branch.id],
                        ))

        for node in state.store.find_nodes("message"):
            home = state.branches.get(node.branch_id)
            if home is None or home.conversation_id != node.conversation_id:
                violations.append(InvariantViolation(
                    invariant="message_membership",
                    severity=InvariantSeverity.ERROR,
                    message=f"Message {node.id} has no home branch {node.branch_id}",
                    nodes_involved=[node.id],
                ))
            elif not any(node.id in b.messages for b in state.branches_of(node.conversation_id)):
                violations.append(InvariantViolation(
                    invariant="message_membership",
                    severity=InvariantSeverity.WARNING,
                    message=f"Message {node.id} is not listed by any branch",
                    nodes_involved=[node.id],
                ))
        return violations

    @staticmethod
    def validate_link_pairs(state: GraphState) -> List[InvariantViolation]:
        """
        Every correlation id names exactly two edges with the same relation
        pointing in opposite directions between the same two nodes.
        """
        pairs: Dict[str, List[Any]] = {}
        for edge in state.store.get_all_edges():
            if edge.correlation_id is not None:
                pairs.setdefault(edge.correlation_id, []).append(edge)

        violations = []
        for correlation_id, edges in pairs.items():
            ends = sorted({e.source_id for e in edges} | {e.target_id for e in edges})
            mirrored = (
                len(edges) == 2
                and edges[0].relation == edges[1].relation
                and (edges[0].source_id, edges[0].target_id) == (edges[1].target_id, edges[1].source_id)
            )
            if not mirrored:
                violations.append(InvariantViolation(
                    invariant="link_pairs",
                    severity=InvariantSeverity.ERROR,
                    message=f"Correlation id {correlation_id} spans {len(edges)} edge(s) that do not mirror each other",
                    nodes_involved=ends,
                ))
        return violations

    @staticmethod
    def flow_graph(state: GraphState) -> Tuple[rx.PyDiGraph, Dict[int, str]]:
        """
        Subgraph of valid reply/branch edges over message nodes.

        Returns:
            (graph, index -> node id)
        """
        flow = rx.PyDiGraph(multigraph=False)
        index: Dict[str, int] = {}
        for node in state.store.find_nodes("message"):
            index[node.id] = flow.add_node(node.id)

        for edge in state.store.get_all_edges():
            if edge.relation in FLOW_RELATIONS and not edge.invalidated:
                if edge.source_id in index and edge.target_id in index:
                    flow.add_edge(index[edge.source_id], index[edge.target_id], edge.id)

        return flow, {i: node_id for node_id, i in index.items()}

    @staticmethod
    def validate_flow_acyclicity(state: GraphState) -> Optional[InvariantViolation]:
        flow, inv_map = GraphInvariants.flow_graph(state)
        if rx.is_directed_acyclic_graph(flow):
            return None

        cycle = rx.digraph_find_cycle(flow)
        nodes = sorted({inv_map[s] for s, _ in cycle} | {inv_map[t] for _, t in cycle})
        return InvariantViolation(
            invariant="flow_acyclicity",
            severity=InvariantSeverity.WARNING,
            message=f"Reply/branch edges contain a cycle through {len(nodes)} message(s)",
            nodes_involved=nodes,
        )

    @staticmethod
    def validate_all(state: GraphState) -> InvariantReport:
        """
        Run all invariant validations and return a report.

        Returns:
            InvariantReport; valid is False if any ERROR was found
        """
        violations: List[InvariantViolation] = []
        violations.extend(GraphInvariants.validate_single_active_branch(state))
        violations.extend(GraphInvariants.validate_prefix_sharing(state))
        violations.extend(GraphInvariants.validate_message_membership(state))
        violations.extend(GraphInvariants.validate_link_pairs(state))

        cycle = GraphInvariants.validate_flow_acyclicity(state)
        if cycle:
            violations.append(cycle)

        edges = list(state.store.get_all_edges())
        metrics = {
            "conversation_count": len(state.conversations),
            "branch_count": len(state.branches),
            "live_branch_count": sum(1 for b in state.branches.values() if b.is_live),
            "node_count": state.store.node_count,
            "edge_count": len(edges),
            "invalidated_edge_count": sum(1 for e in edges if e.invalidated),
            "weakly_connected_components": (
                rx.number_weakly_connected_components(state.store._graph)
                if state.store.node_count else 0
            ),
        }

        is_valid = all(v.severity != InvariantSeverity.ERROR for v in violations)
        return InvariantReport(valid=is_valid, violations=violations, metrics=metrics)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def validate_graph(state: GraphState) -> InvariantReport:
    """Convenience function to validate a graph state."""
    return GraphInvariants.validate_all(state)
