"""
Pytest configuration and shared fixtures for the Threadloom test suite.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """Deterministic message timestamp: BASE_TIME + minutes."""
    return BASE_TIME + timedelta(minutes=minutes)


@pytest.fixture(name="at")
def at_fixture():
    """Provide the deterministic timestamp helper."""
    return at


@pytest.fixture
def fresh_store():
    """Provide an empty NodeStore."""
    from core.graph_db import NodeStore
    return NodeStore()


@pytest.fixture
def graph():
    """Provide an empty ConversationGraph with default config."""
    from core.conversation_graph import ConversationGraph
    return ConversationGraph()


@pytest.fixture
def conversation(graph):
    """A conversation with two messages on main: user question, assistant reply."""
    conv = graph.create_conversation("Dashboard help")
    first = graph.add_message(conv.id, {
        "role": "user",
        "content": "Can you help me understand the Dashboard component?",
        "timestamp": at(0),
    })
    second = graph.add_message(conv.id, {
        "role": "assistant",
        "content": "Sure. The Dashboard renders widgets from a layout config.",
        "timestamp": at(1),
    })
    return conv, first, second


@pytest.fixture
def forked(graph, conversation):
    """
    Main and a fork sharing their first two messages, then diverging.

    main: m1, m2, t1, t2   (t1 at +3, t2 at +5)
    fork: m1, m2, s1, s2   (s1 at +2, s2 at +4)

    The fork is created last, so it is active.
    """
    conv, m1, m2 = conversation
    main_id = conv.root_branch_id
    t1 = graph.add_message(conv.id, {"role": "user", "content": "Show me the layout file", "timestamp": at(3)})
    t2 = graph.add_message(conv.id, {"role": "assistant", "content": "Here is layout.json", "timestamp": at(5)})
    s1 = graph.create_branch(m2, {"role": "user", "content": "Explain the widgets instead", "timestamp": at(2)})
    fork_id = graph.get_message(s1).branch_id
    s2 = graph.add_message(conv.id, {"role": "assistant", "content": "Widgets are React components", "timestamp": at(4)})
    return {
        "conv": conv,
        "main": main_id,
        "fork": fork_id,
        "m1": m1, "m2": m2,
        "t1": t1, "t2": t2,
        "s1": s1, "s2": s2,
    }


@pytest.fixture
def recorder(graph):
    """Collect every event the graph publishes."""
    events = []
    graph.subscribe_to_updates(events.append)
    return events
