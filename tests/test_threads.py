"""Tests for mailsync.threads."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from mailsync.models import Envelope, MessageRecord
from mailsync.store import LocalMailStore
from mailsync.threads import ThreadNode, apply_thread_map, build_thread_map, rebuild_threads, thread_annotations
from tests.conftest import USER


def _nodes(*specs: tuple[str, str | None, str | None]) -> list[ThreadNode]:
    return [ThreadNode(key=key, message_id=mid, in_reply_to=parent) for key, mid, parent in specs]


class TestBuildThreadMap:
    def test_chain_is_flattened_under_root(self):
        nodes = _nodes(
            ("A", "<a>", None),
            ("B", "<b>", "<a>"),
            ("C", "<c>", "<b>"),
            ("D", "<d>", None),
        )
        assert build_thread_map(nodes) == {"A": ["B", "C"]}

    def test_breadth_first_order(self):
        nodes = _nodes(
            ("A", "<a>", None),
            ("B", "<b>", "<a>"),
            ("B1", "<b1>", "<b>"),
            ("C", "<c>", "<a>"),
        )
        assert build_thread_map(nodes) == {"A": ["B", "C", "B1"]}

    def test_unknown_parent_makes_root(self):
        nodes = _nodes(("A", "<a>", "<gone>"), ("B", "<b>", "<a>"))
        assert build_thread_map(nodes) == {"A": ["B"]}

    def test_records_without_message_id(self):
        nodes = _nodes(("A", None, None), ("B", None, "<a>"))
        assert build_thread_map(nodes) == {}

    def test_self_reply_is_root(self):
        nodes = _nodes(("A", "<a>", "<a>"), ("B", "<b>", "<a>"))
        assert build_thread_map(nodes) == {"A": ["B"]}

    def test_duplicate_message_id_first_wins(self):
        nodes = _nodes(
            ("INBOX1", "<dup>", None),
            ("Sent1", "<dup>", None),
            ("INBOX2", "<r>", "<dup>"),
        )
        assert build_thread_map(nodes) == {"INBOX1": ["INBOX2"]}

    def test_cycle_terminates(self):
        nodes = _nodes(
            ("A", "<a>", "<c>"),
            ("B", "<b>", "<a>"),
            ("C", "<c>", "<b>"),
            ("R", "<r>", None),
            ("S", "<s>", "<r>"),
        )
        assert build_thread_map(nodes) == {"R": ["S"]}

    def test_every_record_in_at_most_one_thread(self):
        nodes = _nodes(
            ("A", "<a>", None),
            ("B", "<b>", "<a>"),
            ("C", "<c>", "<b>"),
            ("X", "<x>", None),
            ("Y", "<y>", "<x>"),
            ("Z", "<z>", "<y>"),
            ("W", "<w>", "<a>"),
        )
        thread_map = build_thread_map(nodes)
        members = [k for children in thread_map.values() for k in children] + list(thread_map)
        assert len(members) == len(set(members))
        assert set(thread_map) == {"A", "X"}

    def test_empty(self):
        assert build_thread_map([]) == {}

    def test_node_from_document(self):
        doc = {"key": "INBOX3", "envelope": {"message_id": "<m>", "in_reply_to": ""}}
        assert ThreadNode.from_document(doc) == ThreadNode(key="INBOX3", message_id="<m>", in_reply_to=None)


class TestThreadAnnotations:
    def test_roots_and_children(self):
        docs = [{"key": k} for k in ("A", "B", "C", "D")]
        changes = thread_annotations({"A": ["B", "C"]}, docs)
        assert changes["A"] == {"thread_msg": ["B", "C"], "is_thread_child": None}
        assert changes["B"] == {"thread_msg": None, "is_thread_child": "A"}
        assert changes["C"]["is_thread_child"] == "A"
        assert "D" not in changes

    def test_stale_values_are_cleared(self):
        docs = [
            {"key": "A", "thread_msg": ["B"], "is_thread_child": None},
            {"key": "B", "thread_msg": None, "is_thread_child": "A"},
        ]
        changes = thread_annotations({}, docs)
        assert changes == {
            "A": {"thread_msg": None, "is_thread_child": None},
            "B": {"thread_msg": None, "is_thread_child": None},
        }

    def test_unchanged_records_are_omitted(self):
        docs = [
            {"key": "A", "thread_msg": ["B"], "is_thread_child": None},
            {"key": "B", "thread_msg": None, "is_thread_child": "A"},
        ]
        assert thread_annotations({"A": ["B"]}, docs) == {}


def _record(key: str, seqno: int, message_id: str, in_reply_to: str | None = None) -> MessageRecord:
    return MessageRecord(
        key=key,
        user=USER,
        folder=key.rstrip("0123456789"),
        seqno=seqno,
        uid=seqno,
        date=datetime(2025, 6, seqno, tzinfo=UTC),
        envelope=Envelope(subject=key, message_id=message_id, in_reply_to=in_reply_to),
    )


class TestRebuildThreads:
    @pytest.mark.asyncio
    async def test_annotates_store(self, store: LocalMailStore):
        await store.upsert_message(_record("INBOX1", 1, "<a>"))
        await store.upsert_message(_record("Sent1", 2, "<b>", "<a>"))
        await store.upsert_message(_record("INBOX2", 3, "<c>", "<b>"))
        await store.upsert_message(_record("INBOX3", 4, "<d>"))

        thread_map = await rebuild_threads(store)

        assert thread_map == {"INBOX1": ["Sent1", "INBOX2"]}
        root = await store.find_by_key("INBOX1")
        assert root.thread_msg == ["Sent1", "INBOX2"]
        assert root.is_thread_child is None
        assert (await store.find_by_key("INBOX2")).is_thread_child == "INBOX1"
        lone = await store.find_by_key("INBOX3")
        assert lone.thread_msg is None
        assert lone.is_thread_child is None

    @pytest.mark.asyncio
    async def test_rebuild_after_records_change(self, store: LocalMailStore):
        await store.upsert_message(_record("INBOX1", 1, "<a>"))
        await store.upsert_message(_record("INBOX2", 2, "<b>", "<a>"))
        await rebuild_threads(store)

        # The reply is replaced by an unrelated message at the same key
        await store.upsert_message(_record("INBOX2", 2, "<z>"))
        assert await rebuild_threads(store) == {}
        assert (await store.find_by_key("INBOX1")).thread_msg is None
        assert (await store.find_by_key("INBOX2")).is_thread_child is None

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, store: LocalMailStore):
        await store.upsert_message(_record("INBOX1", 1, "<a>"))
        await store.upsert_message(_record("INBOX2", 2, "<b>", "<a>"))
        first = await rebuild_threads(store)
        before = await store.find_all()
        assert await rebuild_threads(store) == first
        assert await store.find_all() == before


class TestApplyThreadMap:
    @pytest.mark.asyncio
    async def test_reads_store_when_no_snapshot_given(self, store: LocalMailStore):
        await store.upsert_message(_record("INBOX1", 1, "<a>"))
        await store.upsert_message(_record("INBOX2", 2, "<b>"))

        assert await apply_thread_map(store, {"INBOX1": ["INBOX2"]}) == 2
        assert (await store.find_by_key("INBOX2")).is_thread_child == "INBOX1"
        assert await apply_thread_map(store, {"INBOX1": ["INBOX2"]}) == 0

    @pytest.mark.asyncio
    async def test_empty_map_clears_annotations(self, store: LocalMailStore):
        await store.upsert_message(_record("INBOX1", 1, "<a>"))
        await store.update_fields("INBOX1", {"thread_msg": ["INBOX9"]})
        assert await apply_thread_map(store, {}) == 1
        assert (await store.find_by_key("INBOX1")).thread_msg is None
