"""Folder tree resolution.

The server hierarchy is a nested dict ``{name: node}`` where every node has
``attribs``, ``delimiter`` and ``children`` (a nested dict or ``None``).
Nodes persisted in the account registry additionally carry the sync
watermark ``highest`` and the last observed mailbox counters.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from typing import Any

from .models import FolderSegment, MailboxStatus

# Structural keys follow the server; every other key on a node is local
# sync state that survives a merge.
STRUCTURAL_KEYS = ("attribs", "delimiter", "children")

_DEFAULT_NAMES = ("inbox", "incoming")


def linear_folders(tree: dict[str, Any] | None) -> list[list[FolderSegment]]:
    """Flatten *tree* into a list of paths, deepest folders first.

    The result is the reverse of a pre-order walk, so every folder comes
    before its ancestors.
    """
    ordered: list[list[FolderSegment]] = []
    stack: list[list[FolderSegment]] = [
        [_segment(name, node)] for name, node in reversed(list((tree or {}).items()))
    ]
    while stack:
        path = stack.pop()
        ordered.append(path)
        children = get_folder_node(tree, path).get("children") or {}
        for name, node in reversed(list(children.items())):
            stack.append([*path, _segment(name, node)])
    ordered.reverse()
    return [path for path in ordered if path]


def _segment(name: str, node: dict[str, Any] | None) -> FolderSegment:
    return FolderSegment(name=name, delimiter=(node or {}).get("delimiter"))


def compile_path(path: Sequence[FolderSegment]) -> str:
    """Join segments as ``name + delimiter`` for all but the last segment."""
    if not path:
        return ""
    parts = [f"{seg.name}{seg.delimiter or ''}" for seg in path[:-1]]
    parts.append(path[-1].name)
    return "".join(parts)


def get_folder_node(tree: dict[str, Any] | None, path: Sequence[FolderSegment]) -> dict[str, Any]:
    """Return the node at *path*; raises ``KeyError`` if any segment is missing."""
    level = tree or {}
    node: dict[str, Any] = {}
    for index, segment in enumerate(path):
        if segment.name not in level:
            raise KeyError(compile_path(path[: index + 1]))
        node = level[segment.name]
        level = node.get("children") or {}
    return node


def is_selectable(node: dict[str, Any]) -> bool:
    attribs = {a.lower() for a in node.get("attribs") or []}
    return "\\noselect" not in attribs and "\\nonexistent" not in attribs


def merge_folder_tree(
    previous: dict[str, Any] | None,
    observed: dict[str, Any] | None,
) -> dict[str, Any]:
    """Deep-merge the stored tree with the hierarchy just listed by the server.

    Folders missing from *observed* are dropped and new ones are added.
    Surviving folders keep their stored sync state (``highest``, counters)
    while the structural keys come from the server.
    """
    merged: dict[str, Any] = {}
    previous = previous or {}
    for name, server_node in (observed or {}).items():
        server_node = server_node or {}
        stored = previous.get(name) or {}
        node = {k: copy.deepcopy(v) for k, v in stored.items() if k not in STRUCTURAL_KEYS}
        node["attribs"] = list(server_node.get("attribs") or [])
        node["delimiter"] = server_node.get("delimiter")
        server_children = server_node.get("children")
        node["children"] = (
            merge_folder_tree(stored.get("children"), server_children) if server_children else None
        )
        merged[name] = node
    return merged


def pick_default_folder(tree: dict[str, Any] | None) -> list[FolderSegment] | None:
    """Choose the folder to show first.

    Literal ``INBOX`` wins; otherwise the first top-level folder named
    ``inbox`` or ``incoming`` in any case; otherwise the first top-level
    folder.  Returns ``None`` for an empty tree.
    """
    if not tree:
        return None
    if "INBOX" in tree:
        return [_segment("INBOX", tree["INBOX"])]
    for name, node in tree.items():
        if name.lower() in _DEFAULT_NAMES:
            return [_segment(name, node)]
    name, node = next(iter(tree.items()))
    return [_segment(name, node)]


def record_status(node: dict[str, Any], status: MailboxStatus) -> None:
    """Store the server-reported counters on a folder node."""
    node["uidvalidity"] = status.uidvalidity
    node["uidnext"] = status.uidnext
    node["messages"] = {"total": status.total, "recent": status.recent}
    node["flags"] = list(status.flags)
    node["permanent_flags"] = list(status.permanent_flags)
    node["read_only"] = status.read_only
