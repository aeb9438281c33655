"""
Markdown and JSON export of a conversation's branches.

Exports are read-only views built from committed state; nothing here
writes files. Hosts decide where the text or bytes go.
"""
from typing import List, Optional, Tuple

import msgspec

from core.conversation_graph import ConversationGraph
from core.schemas import Branch, CodeNode, Conversation, MessageNode


class BranchExport(msgspec.Struct, kw_only=True, frozen=True):
    branch: Branch
    messages: Tuple[MessageNode, ...] = ()
    linked_code: Tuple[CodeNode, ...] = ()


class ConversationExport(msgspec.Struct, kw_only=True, frozen=True):
    conversation: Conversation
    branches: Tuple[BranchExport, ...] = ()


_json_encoder = msgspec.json.Encoder()


def build_export(
    graph: ConversationGraph,
    conversation_id: Optional[str] = None,
    include_archived: bool = False,
    include_merged: bool = False,
) -> ConversationExport:
    """Collect a conversation and its branches (creation order) for export."""
    conversation = graph.get_conversation(conversation_id)
    branches = graph.get_branches(
        conversation.id, include_archived=include_archived, include_merged=include_merged
    )

    exports = []
    for branch in branches:
        messages = graph.get_branch_messages(branch.id)
        code: dict = {}
        for message in messages:
            for node in graph.get_linked_code(message.id):
                code.setdefault(node.id, node)
        exports.append(BranchExport(
            branch=branch,
            messages=tuple(messages),
            linked_code=tuple(code.values()),
        ))
    return ConversationExport(conversation=conversation, branches=tuple(exports))


def export_json(
    graph: ConversationGraph,
    conversation_id: Optional[str] = None,
    include_archived: bool = False,
    include_merged: bool = False,
) -> bytes:
    """JSON bytes of build_export()."""
    return _json_encoder.encode(
        build_export(graph, conversation_id, include_archived, include_merged)
    )


def export_markdown(
    graph: ConversationGraph,
    conversation_id: Optional[str] = None,
    branch_id: Optional[str] = None,
    include_archived: bool = False,
) -> str:
    """
    Render a conversation as Markdown.

    One section per branch (or only branch_id when given). Forked branches
    show only the messages after their branch point; the shared prefix is
    already rendered under the parent.
    """
    export = build_export(graph, conversation_id, include_archived=include_archived)
    sections = [f"# {export.conversation.title}", ""]

    for item in export.branches:
        branch = item.branch
        if branch_id is not None and branch.id != branch_id:
            continue

        title = f"## Branch: {branch.name}"
        if branch.active:
            title += " (active)"
        if branch.archived:
            title += " (archived)"
        sections.append(title)
        sections.append("")

        messages: List[MessageNode] = list(item.messages)
        if branch.branch_point is not None and branch_id is None:
            parent = graph.get_branch(branch.parent_branch_id)
            sections.append(f"_Forked from {parent.name} at message `{branch.branch_point}`_")
            sections.append("")
            messages = messages[branch.messages.index(branch.branch_point) + 1:]

        for message in messages:
            stamp = message.timestamp.strftime("%Y-%m-%d %H:%M:%S")
            sections.append(f"**{message.role.capitalize()}** ({stamp}):")
            sections.append("")
            sections.append(message.content)
            code = graph.get_linked_code(message.id)
            if code:
                sections.append("")
                sections.append("Linked code: " + ", ".join(f"`{c.file_path}`" for c in code))
            sections.append("")

    return "\n".join(sections).rstrip() + "\n"
