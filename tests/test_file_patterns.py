"""
Unit tests for file pattern utilities.

This module tests exclude matching and local tree manifests used by
file synchronization.
"""

import hashlib
from pathlib import Path

import pytest

from pushdeploy.utils.file_patterns import (
    file_digest,
    is_excluded,
    local_manifest,
    parent_dirs,
)


class TestIsExcluded:
    """Tests for is_excluded."""

    @pytest.mark.parametrize(
        "path",
        [
            "__pycache__/mod.pyc",
            "pkg/__pycache__/mod.cpython-312.pyc",
            "a/b/c/__pycache__",
            "pkg/mod.pyc",
            ".venv/lib/python3.12/site.py",
        ],
    )
    def test_component_patterns_match_at_any_depth(self, path: str):
        assert is_excluded(path, ["__pycache__", "*.pyc", ".venv"])

    @pytest.mark.parametrize("path", ["app.py", "pkg/core.py", "venv.py", "src/build.py"])
    def test_unrelated_paths_are_kept(self, path: str):
        assert not is_excluded(path, ["__pycache__", "*.pyc", ".venv", "build"])

    def test_slash_pattern_is_anchored_at_root(self):
        """Patterns containing a slash match from the tree root only."""
        assert is_excluded("build/out/a.txt", ["build/out"])
        assert is_excluded("build/out", ["/build/out/"])
        assert not is_excluded("src/build/out/a.txt", ["build/out"])

    def test_empty_patterns_are_ignored(self):
        assert not is_excluded("app.py", ["", "/"])


class TestLocalManifest:
    """Tests for local_manifest."""

    def test_excluded_trees_are_pruned(self, source_tree: Path):
        manifest = local_manifest(source_tree, (".git", ".venv", "__pycache__", "*.pyc"))
        assert sorted(manifest) == [
            "app.py",
            "pkg/__init__.py",
            "pkg/core.py",
            "requirements.txt",
            "run.sh",
        ]

    def test_entries_carry_hash_mode_and_size(self, source_tree: Path):
        manifest = local_manifest(source_tree, (".git", ".venv", "__pycache__"))
        content = (source_tree / "app.py").read_bytes()
        entry = manifest["app.py"]
        assert entry.sha256 == hashlib.sha256(content).hexdigest()
        assert entry.size == len(content)
        assert manifest["run.sh"].mode == 0o755

    def test_symlinks_are_skipped(self, tmp_path: Path):
        (tmp_path / "real.txt").write_text("x")
        (tmp_path / "link.txt").symlink_to(tmp_path / "real.txt")
        assert sorted(local_manifest(tmp_path)) == ["real.txt"]

    def test_file_digest_reads_large_files(self, tmp_path: Path):
        path = tmp_path / "big.bin"
        data = b"0123456789" * 300_000
        path.write_bytes(data)
        assert file_digest(path) == hashlib.sha256(data).hexdigest()


def test_parent_dirs_shallowest_first():
    paths = ["a/b/c.txt", "a/d.txt", "top.txt", "x/y/z/w.txt"]
    assert parent_dirs(paths) == ["a", "a/b", "x/y/z"]
