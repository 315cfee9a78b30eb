"""Unit tests for the tree walk and pending transfer discovery."""

import os

import pytest

import hfmirror
from conftest import make_pointer


def build_tree(root):
    (root / ".git" / "objects").mkdir(parents=True, exist_ok=True)
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (root / "config.json").write_text('{"a": 1}')
    (root / "b_dir" / "nested").mkdir(parents=True)
    (root / "b_dir" / "nested" / "deep.bin").write_bytes(make_pointer("c" * 64, 2048))
    (root / "b_dir" / ".git").mkdir()
    (root / "b_dir" / ".git" / "inner").write_text("ignored")
    (root / "a.txt").write_bytes(b"x" * 80)
    (root / "empty.bin").write_bytes(b"")


class TestWalkTree:
    """Test walk_tree."""

    def test_excludes_git_at_any_depth(self, work_tree):
        build_tree(work_tree)

        rel_paths = [e.rel_path for e in hfmirror.walk_tree(work_tree)]

        assert all(".git" not in p.split("/") for p in rel_paths)

    def test_sorted_depth_first_order(self, work_tree):
        build_tree(work_tree)

        entries = list(hfmirror.walk_tree(work_tree))

        assert [(e.rel_path, e.kind) for e in entries] == [
            ("a.txt", hfmirror.EntryKind.FILE),
            ("b_dir", hfmirror.EntryKind.DIRECTORY),
            ("b_dir/nested", hfmirror.EntryKind.DIRECTORY),
            ("b_dir/nested/deep.bin", hfmirror.EntryKind.FILE),
            ("config.json", hfmirror.EntryKind.FILE),
            ("empty.bin", hfmirror.EntryKind.FILE),
        ]

    def test_absolute_paths(self, work_tree):
        build_tree(work_tree)

        for entry in hfmirror.walk_tree(work_tree):
            assert entry.path == work_tree / entry.rel_path

    def test_is_lazy(self, work_tree):
        build_tree(work_tree)

        walker = hfmirror.walk_tree(work_tree)
        first = next(walker)

        assert first.rel_path == "a.txt"

    def test_repeatable(self, work_tree):
        build_tree(work_tree)

        assert list(hfmirror.walk_tree(work_tree)) == list(hfmirror.walk_tree(work_tree))

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    def test_skips_symlinked_directories(self, work_tree, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "file.bin").write_bytes(b"data")
        (work_tree / "link").symlink_to(outside, target_is_directory=True)

        rel_paths = [e.rel_path for e in hfmirror.walk_tree(work_tree)]

        assert rel_paths == []


class TestFindPendingTransfers:
    """Test find_pending_transfers over real and synthetic entries."""

    def test_yields_stubs_and_empty_files(self, ctx):
        build_tree(ctx.destination)

        tasks = list(hfmirror.find_pending_transfers(ctx, hfmirror.walk_tree(ctx.destination)))

        assert [t.entry.rel_path for t in tasks] == ["b_dir/nested/deep.bin", "empty.bin"]

    def test_synthetic_entries(self, ctx, tmp_path):
        """Works on any sequence of entries, not only a walked tree."""
        stub = tmp_path / "stub.bin"
        stub.write_bytes(make_pointer("d" * 64, 10))
        real = tmp_path / "real.bin"
        real.write_bytes(b"\x00" * 100)
        entries = [
            hfmirror.TreeEntry("dir", tmp_path, hfmirror.EntryKind.DIRECTORY),
            hfmirror.TreeEntry("real.bin", real, hfmirror.EntryKind.FILE),
            hfmirror.TreeEntry("sub/stub.bin", stub, hfmirror.EntryKind.FILE),
        ]

        tasks = list(hfmirror.find_pending_transfers(ctx, entries))

        assert len(tasks) == 1
        assert tasks[0].url == "https://huggingface.co/owner/model/resolve/main/sub/stub.bin"
        assert tasks[0].offset == 0

    def test_materialized_tree_has_no_tasks(self, ctx):
        (ctx.destination / "model.bin").write_bytes(b"\x01" * 5000)
        (ctx.destination / "README.md").write_text("hello")

        tasks = list(hfmirror.find_pending_transfers(ctx, hfmirror.walk_tree(ctx.destination)))

        assert tasks == []

    def test_tasks_produced_one_at_a_time(self, ctx):
        """Later files are classified only after the caller asks for them."""
        build_tree(ctx.destination)
        tasks = hfmirror.find_pending_transfers(ctx, hfmirror.walk_tree(ctx.destination))

        first = next(tasks)
        (ctx.destination / "empty.bin").write_bytes(b"\x02" * 100)

        assert first.entry.rel_path == "b_dir/nested/deep.bin"
        assert list(tasks) == []
