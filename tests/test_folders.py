"""Tests for mailsync.folders."""

from __future__ import annotations

import pytest

from mailsync.folders import (
    compile_path,
    get_folder_node,
    is_selectable,
    linear_folders,
    merge_folder_tree,
    pick_default_folder,
    record_status,
)
from mailsync.models import FolderSegment, MailboxStatus


def _node(children=None, attribs=None, delimiter="/", **extra):
    return {"attribs": attribs or [], "delimiter": delimiter, "children": children, **extra}


@pytest.fixture
def tree():
    return {
        "INBOX": _node(highest=5),
        "Work": _node(
            attribs=["\\HasChildren"],
            children={
                "Projects": _node(children={"Alpha": _node()}),
                "Admin": _node(),
            },
        ),
    }


class TestLinearFolders:
    def test_descendants_before_ancestors(self, tree):
        paths = [compile_path(p) for p in linear_folders(tree)]
        assert paths == ["Work/Admin", "Work/Projects/Alpha", "Work/Projects", "Work", "INBOX"]

    def test_every_folder_once(self, tree):
        paths = [compile_path(p) for p in linear_folders(tree)]
        assert len(paths) == len(set(paths)) == 5

    def test_each_folder_precedes_its_parent(self, tree):
        paths = [compile_path(p) for p in linear_folders(tree)]
        for index, path in enumerate(paths):
            if "/" in path:
                parent = path.rsplit("/", 1)[0]
                assert paths.index(parent) > index

    def test_empty_tree(self):
        assert linear_folders({}) == []
        assert linear_folders(None) == []

    def test_segments_carry_delimiters(self, tree):
        alpha = linear_folders(tree)[1]
        assert alpha == [
            FolderSegment(name="Work", delimiter="/"),
            FolderSegment(name="Projects", delimiter="/"),
            FolderSegment(name="Alpha", delimiter="/"),
        ]


class TestCompilePath:
    def test_joins_with_each_segment_delimiter(self):
        path = [FolderSegment(name="INBOX", delimiter="."), FolderSegment(name="Sub", delimiter=".")]
        assert compile_path(path) == "INBOX.Sub"

    def test_single_segment(self):
        assert compile_path([FolderSegment(name="INBOX", delimiter="/")]) == "INBOX"

    def test_missing_delimiter(self):
        path = [FolderSegment(name="A"), FolderSegment(name="B")]
        assert compile_path(path) == "AB"

    def test_empty(self):
        assert compile_path([]) == ""


class TestGetFolderNode:
    def test_nested_lookup(self, tree):
        path = [FolderSegment(name="Work", delimiter="/"), FolderSegment(name="Projects", delimiter="/")]
        assert "Alpha" in get_folder_node(tree, path)["children"]

    def test_missing_segment_raises(self, tree):
        path = [FolderSegment(name="Work", delimiter="/"), FolderSegment(name="Gone", delimiter="/")]
        with pytest.raises(KeyError, match="Work/Gone"):
            get_folder_node(tree, path)

    def test_lookup_through_leaf_raises(self, tree):
        path = [FolderSegment(name="INBOX", delimiter="/"), FolderSegment(name="Child", delimiter="/")]
        with pytest.raises(KeyError):
            get_folder_node(tree, path)


class TestIsSelectable:
    @pytest.mark.parametrize(
        ("attribs", "expected"),
        [
            ([], True),
            (["\\HasChildren"], True),
            (["\\Noselect"], False),
            (["\\NoSelect", "\\HasChildren"], False),
            (["\\NonExistent"], False),
        ],
    )
    def test_attributes(self, attribs, expected):
        assert is_selectable(_node(attribs=attribs)) is expected


class TestMergeFolderTree:
    def test_keeps_local_state(self, tree):
        observed = {"INBOX": _node(attribs=["\\Marked"]), "Work": _node(children={"Admin": _node()})}
        merged = merge_folder_tree(tree, observed)
        assert merged["INBOX"]["highest"] == 5
        assert merged["INBOX"]["attribs"] == ["\\Marked"]

    def test_drops_missing_and_adds_new(self, tree):
        observed = {"INBOX": _node(), "Spam": _node()}
        merged = merge_folder_tree(tree, observed)
        assert set(merged) == {"INBOX", "Spam"}
        assert "highest" not in merged["Spam"]

    def test_nested_children_merge(self, tree):
        tree["Work"]["children"]["Admin"]["highest"] = 9
        observed = {"Work": _node(children={"Admin": _node(), "Hiring": _node()})}
        merged = merge_folder_tree(tree, observed)
        children = merged["Work"]["children"]
        assert set(children) == {"Admin", "Hiring"}
        assert children["Admin"]["highest"] == 9

    def test_children_removed_on_server(self, tree):
        merged = merge_folder_tree(tree, {"Work": _node()})
        assert merged["Work"]["children"] is None

    def test_does_not_alias_previous(self, tree):
        tree["INBOX"]["messages"] = {"total": 5, "recent": 0}
        merged = merge_folder_tree(tree, {"INBOX": _node()})
        merged["INBOX"]["messages"]["total"] = 99
        assert tree["INBOX"]["messages"]["total"] == 5

    def test_first_sync(self):
        merged = merge_folder_tree(None, {"INBOX": _node()})
        assert merged == {"INBOX": _node()}


class TestPickDefaultFolder:
    def test_inbox_wins(self, tree):
        assert pick_default_folder(tree)[0].name == "INBOX"

    def test_case_insensitive_fallback(self):
        tree = {"Archive": _node(), "Incoming": _node()}
        assert pick_default_folder(tree)[0].name == "Incoming"

    def test_first_folder_fallback(self):
        tree = {"Archive": _node(), "Sent": _node()}
        assert pick_default_folder(tree)[0].name == "Archive"

    def test_empty_tree(self):
        assert pick_default_folder({}) is None


class TestRecordStatus:
    def test_stores_counters(self):
        node = _node(highest=3)
        status = MailboxStatus(
            path="INBOX", total=7, recent=1, uidvalidity=42, uidnext=108, flags=["\\Seen"], read_only=True
        )
        record_status(node, status)
        assert node["highest"] == 3
        assert node["uidvalidity"] == 42
        assert node["uidnext"] == 108
        assert node["messages"] == {"total": 7, "recent": 1}
        assert node["flags"] == ["\\Seen"]
        assert node["read_only"] is True
