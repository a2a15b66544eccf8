"""
Test file-overlap safety analysis
"""

import itertools
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from taskweave.parallel.overlap_analyzer import (
    UnionFind,
    detect_file_overlaps,
    normalize_path,
    partition_ready,
)
from taskweave.tasks.models import Task


def group_ids(result):
    """Group memberships as a set of frozensets (order-free)."""
    return {frozenset(t.id for t in group) for group in result.sequential_groups}


class TestNormalizePath:
    """Tests for path normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("src/app.ts", "src/app.ts"),
        ("./src/app.ts", "src/app.ts"),
        ("src\\app.ts", "src/app.ts"),
        ("src//lib/../app.ts", "src/app.ts"),
        ("./././x.ts", "x.ts"),
        ("Src/App.ts", "Src/App.ts"),
        ("", ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_path(raw) == expected


class TestDetectFileOverlaps:
    """Tests for overlap grouping."""

    def test_scenario_shared_file(self):
        """A and B share x.ts, C touches y.ts alone."""
        tasks = [
            Task(id="A", files_affected=["x.ts"]),
            Task(id="B", files_affected=["x.ts"]),
            Task(id="C", files_affected=["y.ts"]),
        ]
        result = detect_file_overlaps(tasks)
        print(f"Result: {result.to_dict()}")

        assert [t.id for t in result.safe] == ["C"]
        assert [[t.id for t in g] for g in result.sequential_groups] == [["A", "B"]]
        assert [c.to_dict() for c in result.collisions] == [{"file": "x.ts", "task_ids": ["A", "B"]}]
        assert result.has_overlaps

    def test_transitive_groups(self):
        """A-B share one file, B-C another; all three form one group."""
        tasks = [
            Task(id="A", files_affected=["a.py", "shared1.py"]),
            Task(id="B", files_affected=["shared1.py", "shared2.py"]),
            Task(id="C", files_affected=["shared2.py", "c.py"]),
        ]
        result = detect_file_overlaps(tasks)

        assert result.safe == []
        assert group_ids(result) == {frozenset({"A", "B", "C"})}
        assert len(result.collisions_for(result.sequential_groups[0])) == 2

    def test_order_independent(self):
        """Permuting input keeps the same group memberships."""
        tasks = [
            Task(id="A", files_affected=["1.ts"]),
            Task(id="B", files_affected=["1.ts", "2.ts"]),
            Task(id="C", files_affected=["2.ts"]),
            Task(id="D", files_affected=["3.ts"]),
            Task(id="E", files_affected=["4.ts"]),
            Task(id="F", files_affected=["4.ts"]),
        ]
        expected = group_ids(detect_file_overlaps(tasks))
        expected_safe = {t.id for t in detect_file_overlaps(tasks).safe}

        for perm in itertools.permutations(tasks):
            result = detect_file_overlaps(list(perm))
            assert group_ids(result) == expected
            assert {t.id for t in result.safe} == expected_safe

    def test_groups_follow_input_order(self):
        tasks = [
            Task(id="Z", files_affected=["late.ts"]),
            Task(id="A", files_affected=["early.ts"]),
            Task(id="B", files_affected=["early.ts"]),
            Task(id="Y", files_affected=["late.ts"]),
        ]
        result = detect_file_overlaps(tasks)

        assert [[t.id for t in g] for g in result.sequential_groups] == [["Z", "Y"], ["A", "B"]]

    def test_normalized_paths_collide(self):
        tasks = [
            Task(id="A", files_affected=["./src/app.ts"]),
            Task(id="B", files_affected=["src\\app.ts"]),
        ]
        assert group_ids(detect_file_overlaps(tasks)) == {frozenset({"A", "B"})}

    def test_case_sensitive(self):
        tasks = [
            Task(id="A", files_affected=["README.md"]),
            Task(id="B", files_affected=["readme.md"]),
        ]
        result = detect_file_overlaps(tasks)
        assert not result.has_overlaps
        assert len(result.safe) == 2

    def test_no_files_is_safe(self):
        result = detect_file_overlaps([Task(id="A"), Task(id="B")])
        assert [t.id for t in result.safe] == ["A", "B"]
        assert result.collisions == []

    def test_duplicate_entry_in_one_task(self):
        """A task listing the same file twice does not collide with itself."""
        result = detect_file_overlaps([Task(id="A", files_affected=["x.ts", "./x.ts"])])
        assert [t.id for t in result.safe] == ["A"]

    def test_patterns_off_by_default(self):
        tasks = [
            Task(id="A", files_affected=["src/*.ts"]),
            Task(id="B", files_affected=["src/app.ts"]),
        ]
        assert not detect_file_overlaps(tasks).has_overlaps

    def test_patterns_enabled(self):
        tasks = [
            Task(id="A", files_affected=["src/*.ts"]),
            Task(id="B", files_affected=["src/app.ts"]),
            Task(id="C", files_affected=["docs/app.md"]),
        ]
        result = detect_file_overlaps(tasks, patterns=True)

        assert group_ids(result) == {frozenset({"A", "B"})}
        assert [t.id for t in result.safe] == ["C"]


class TestPartitionReady:
    """Tests for picking tasks that may start together."""

    def test_first_of_each_group(self):
        tasks = [
            Task(id="A", files_affected=["x.ts"]),
            Task(id="B", files_affected=["x.ts"]),
            Task(id="C", files_affected=["y.ts"]),
        ]
        assert [t.id for t in partition_ready(tasks)] == ["A", "C"]


class TestUnionFind:
    """Tests for the disjoint set."""

    def test_union_and_groups(self):
        uf = UnionFind(["a", "b", "c", "d"])
        uf.union("a", "b")
        uf.union("c", "d")
        uf.union("b", "d")

        assert uf.find("a") == uf.find("c")
        assert uf.groups() == [["a", "b", "c", "d"]]

    def test_singletons(self):
        uf = UnionFind(["a", "b"])
        assert uf.groups() == [["a"], ["b"]]
