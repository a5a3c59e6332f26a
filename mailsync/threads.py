"""Conversation threading over the records of one account.

A record's parent is the record whose Message-ID equals its In-Reply-To.
Records without a resolvable parent are roots; every root with at least
one descendant maps to the flattened list of all its descendants.

The walk is iterative with a visited set, so malformed or hostile headers
that form a reply cycle cannot loop forever.  Records caught in a cycle
have no root above them and are left out of the map.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from .store import LocalMailStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class ThreadNode:
    key: str
    message_id: str | None = None
    in_reply_to: str | None = None

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> ThreadNode:
        envelope = document.get("envelope") or {}
        return cls(
            key=document["key"],
            message_id=envelope.get("message_id") or None,
            in_reply_to=envelope.get("in_reply_to") or None,
        )


def build_thread_map(nodes: Iterable[ThreadNode]) -> dict[str, list[str]]:
    """Map each root key to all of its descendant keys (childless roots omitted)."""
    nodes = list(nodes)

    by_message_id: dict[str, str] = {}
    for node in nodes:
        # First record wins when a Message-ID is duplicated
        if node.message_id and node.message_id not in by_message_id:
            by_message_id[node.message_id] = node.key

    children_of: dict[str, list[str]] = {}
    roots: list[str] = []
    for node in nodes:
        parent = by_message_id.get(node.in_reply_to) if node.in_reply_to else None
        if parent is None or parent == node.key:
            roots.append(node.key)
        else:
            children_of.setdefault(parent, []).append(node.key)

    thread_map: dict[str, list[str]] = {}
    visited: set[str] = set()
    for root in roots:
        visited.add(root)
        descendants: list[str] = []
        queue = deque(children_of.get(root, ()))
        while queue:
            key = queue.popleft()
            if key in visited:
                continue
            visited.add(key)
            descendants.append(key)
            queue.extend(children_of.get(key, ()))
        if descendants:
            thread_map[root] = descendants

    orphans = len(nodes) - len(visited)
    if orphans:
        logger.warning("thread_cycle_detected", records=orphans)
    return thread_map


def thread_annotations(
    thread_map: dict[str, list[str]],
    documents: Sequence[dict[str, Any]],
) -> dict[str, dict[str, Any]]:
    """Field changes that bring *documents* in line with *thread_map*.

    Roots get ``thread_msg``, descendants get ``is_thread_child``; stale
    values from an earlier pass are cleared.  Unchanged records are omitted.
    """
    parent_of = {child: root for root, children in thread_map.items() for child in children}
    changes: dict[str, dict[str, Any]] = {}
    for doc in documents:
        key = doc["key"]
        wanted = {
            "thread_msg": thread_map.get(key),
            "is_thread_child": parent_of.get(key),
        }
        current = {name: doc.get(name) for name in wanted}
        if current != wanted:
            changes[key] = wanted
    return changes


async def apply_thread_map(
    store: LocalMailStore,
    thread_map: dict[str, list[str]],
    documents: Sequence[dict[str, Any]] | None = None,
) -> int:
    """Write thread annotations for *thread_map* into *store*; returns records changed.

    *documents* is the snapshot the map was built from; it is read from
    the store when omitted.
    """
    if documents is None:
        documents = await store.find_all(projection=("thread_msg", "is_thread_child"))
    return await store.update_many(thread_annotations(thread_map, documents))


async def rebuild_threads(store: LocalMailStore) -> dict[str, list[str]]:
    """Recompute the thread map from a snapshot of *store* and apply it."""
    documents = await store.find_all(projection=("envelope", "thread_msg", "is_thread_child"))
    thread_map = build_thread_map(ThreadNode.from_document(doc) for doc in documents)
    changed = await apply_thread_map(store, thread_map, documents)
    logger.info("threads_rebuilt", account=store.account, threads=len(thread_map), changed=changed)
    return thread_map
