"""
Tests for the folder derivations: tree building, the cycle guard, and
ancestor-preserving search.
"""

import random

from convostack.tree import (
    MAX_ANCESTOR_HOPS, RejectReason, ReparentVerdict, ancestor_ids, build_tree, can_reparent,
    descendant_ids, filter_folders, scope_to_folder,
)

from conftest import make_folder


def chain(length: int):
    """f0 <- f1 <- ... <- f{length-1}"""
    return [
        make_folder(f"f{n}", f"Level {n}", parent_id=f"f{n - 1}" if n else None)
        for n in range(length)
    ]


def is_own_ancestor(folders, folder_id) -> bool:
    by_id = {f.id: f for f in folders}
    seen = set()
    current = by_id[folder_id].parent_id
    while current is not None and current in by_id:
        if current == folder_id:
            return True
        if current in seen:
            return False
        seen.add(current)
        current = by_id[current].parent_id
    return False


# ---------------------------------------------------------------------------
# Tree builder
# ---------------------------------------------------------------------------

class TestBuildTree:
    def test_roots_children_depth_and_path(self):
        folders = [
            make_folder("a", "A"),
            make_folder("b", "B", parent_id="a"),
            make_folder("c", "C", parent_id="b"),
            make_folder("d", "D"),
        ]
        forest = build_tree(folders)

        assert [n.folder.id for n in forest.roots] == ["a", "d"]
        assert [n.folder.id for n in forest.roots[0].children] == ["b"]
        assert forest.depth("a") == 0
        assert forest.depth("c") == 2
        assert forest.path("c") == ["A", "B", "C"]
        assert forest.path_string("c") == "A / B / C"
        assert forest.roots[0].children[0].children[0].path == ["A", "B", "C"]

    def test_children_sorted_case_insensitively_then_by_creation(self):
        folders = [
            make_folder("r", "Root"),
            make_folder("z", "zeta", parent_id="r", minutes=1),
            make_folder("a2", "Alpha", parent_id="r", minutes=5),
            make_folder("a1", "alpha", parent_id="r", minutes=2),
        ]
        forest = build_tree(folders)

        assert [n.folder.id for n in forest.roots[0].children] == ["a1", "a2", "z"]

    def test_dangling_parent_becomes_root(self):
        forest = build_tree([make_folder("x", "Orphan", parent_id="gone")])

        assert [n.folder.id for n in forest.roots] == ["x"]
        assert forest.depth("x") == 0
        assert forest.path("x") == ["Orphan"]

    def test_corrupted_cycle_terminates_and_keeps_every_folder(self):
        folders = [
            make_folder("a", "A", parent_id="b"),
            make_folder("b", "B", parent_id="a"),
            make_folder("c", "C"),
        ]
        forest = build_tree(folders)

        shown = [node.folder.id for node in forest.flatten()]
        assert sorted(shown) == ["a", "b", "c"]
        assert len(shown) == 3

    def test_depth_walk_is_capped(self):
        folders = chain(MAX_ANCESTOR_HOPS + 5)
        forest = build_tree(folders)

        deepest = folders[-1].id
        assert forest.depth(deepest) == MAX_ANCESTOR_HOPS
        assert len(forest.path(deepest)) == MAX_ANCESTOR_HOPS + 1

    def test_flatten_is_depth_first(self):
        folders = [
            make_folder("a", "A"),
            make_folder("a1", "A1", parent_id="a"),
            make_folder("b", "B"),
            make_folder("a2", "A2", parent_id="a"),
        ]
        forest = build_tree(folders)

        assert [n.folder.id for n in forest.flatten()] == ["a", "a1", "a2", "b"]

    def test_find_by_path(self):
        folders = [make_folder("w", "Work"), make_folder("n", "Notes", parent_id="w")]
        forest = build_tree(folders)

        assert forest.find_by_path("work/notes").id == "n"
        assert forest.find_by_path("Work").id == "w"
        assert forest.find_by_path("Notes") is None
        assert forest.find_by_path("") is None


class TestAncestry:
    def test_ancestor_and_descendant_ids(self):
        folders = [
            make_folder("a", "A"),
            make_folder("b", "B", parent_id="a"),
            make_folder("c", "C", parent_id="b"),
            make_folder("d", "D", parent_id="a"),
        ]

        assert ancestor_ids(folders, "c") == ["b", "a"]
        assert sorted(descendant_ids(folders, "a")) == ["b", "c", "d"]
        assert descendant_ids(folders, "c") == []

    def test_scope_to_folder(self):
        folders = [
            make_folder("a", "A"),
            make_folder("b", "B", parent_id="a"),
            make_folder("c", "C", parent_id="b"),
            make_folder("x", "X"),
            make_folder("y", "Y", parent_id="a"),
        ]

        assert [f.id for f in scope_to_folder(folders, "b")] == ["a", "b", "c"]
        assert scope_to_folder(folders, None) == folders


# ---------------------------------------------------------------------------
# Cycle guard
# ---------------------------------------------------------------------------

class TestCanReparent:
    folders = [
        make_folder("a", "A"),
        make_folder("b", "B", parent_id="a"),
        make_folder("c", "C", parent_id="b"),
        make_folder("x", "X"),
    ]

    def test_self_parent_rejected(self):
        verdict = can_reparent(self.folders, "b", "b")
        assert not verdict.ok
        assert verdict.reason == RejectReason.SELF_PARENT

    def test_move_under_descendant_rejected(self):
        verdict = can_reparent(self.folders, "a", "c")
        assert verdict.reason == RejectReason.WOULD_CREATE_CYCLE
        assert can_reparent(self.folders, "a", "b").reason == RejectReason.WOULD_CREATE_CYCLE

    def test_legal_moves(self):
        assert can_reparent(self.folders, "c", "x").ok
        assert can_reparent(self.folders, "x", "c").ok
        assert can_reparent(self.folders, "b", None) == ReparentVerdict()

    def test_noop_moves(self):
        assert can_reparent(self.folders, "a", None).reason == RejectReason.NO_OP
        assert can_reparent(self.folders, "c", "b").reason == RejectReason.NO_OP

    def test_corrupted_chain_is_refused(self):
        folders = [
            make_folder("p", "P", parent_id="q"),
            make_folder("q", "Q", parent_id="p"),
            make_folder("m", "M"),
        ]
        assert can_reparent(folders, "m", "p").reason == RejectReason.WOULD_CREATE_CYCLE

    def test_random_approved_moves_never_create_cycles(self):
        rng = random.Random(1234)
        folders = {f.id: f for f in [make_folder(f"n{i}", f"N{i}") for i in range(12)]}
        ids = list(folders)

        for _ in range(500):
            folder_id = rng.choice(ids)
            new_parent = rng.choice(ids + [None])
            if can_reparent(folders.values(), folder_id, new_parent).ok:
                folders[folder_id] = folders[folder_id].model_copy(update={"parent_id": new_parent})
            for check in ids:
                assert not is_own_ancestor(list(folders.values()), check)


# ---------------------------------------------------------------------------
# Ancestor-preserving search
# ---------------------------------------------------------------------------

class TestFilterFolders:
    folders = [
        make_folder("w", "Work"),
        make_folder("n", "Notes", parent_id="w"),
        make_folder("p", "Personal"),
        make_folder("r", "Recipes", parent_id="p"),
        make_folder("t", "Taxes", parent_id="r"),
    ]

    def test_empty_query_returns_everything(self):
        assert filter_folders(self.folders, "") == self.folders
        assert filter_folders(self.folders, "   ") == self.folders
        assert filter_folders(self.folders, None) == self.folders

    def test_match_without_ancestors(self):
        result = filter_folders(
            [make_folder("w", "Work"), make_folder("wn", "Work Notes", parent_id="w"),
             make_folder("p", "Personal")],
            "wo",
        )
        assert [f.name for f in result] == ["Work", "Work Notes"]

    def test_deep_match_keeps_whole_ancestor_chain(self):
        result = filter_folders(self.folders, "TAX")
        assert [f.id for f in result] == ["p", "r", "t"]

    def test_filtered_result_is_closed_under_parents(self):
        ids = {f.id for f in self.folders}
        for query in ["o", "e", "n", "s", "x", "Rec"]:
            result = filter_folders(self.folders, query)
            kept = {f.id for f in result}
            for folder in result:
                if folder.parent_id in ids:
                    assert folder.parent_id in kept
