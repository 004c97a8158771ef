"""
Utility functions for file pattern processing.

This module provides exclude-pattern matching for tree synchronization
and builds content manifests of local directory trees.
"""

import hashlib
import os
import stat
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath

HASH_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class FileEntry:
    """Content hash and permission bits of one file in a tree.

    Args:
        sha256: Hex digest of the file content
        mode: Permission bits (``stat.S_IMODE``)
        size: Size in bytes
    """

    sha256: str
    mode: int
    size: int = 0


def is_excluded(relative_path: str, patterns: tuple[str, ...] | list[str]) -> bool:
    """Check if a path relative to the tree root matches any exclude pattern.

    Patterns without a slash match any path component, so ``__pycache__``
    excludes every nested ``__pycache__`` directory and everything below it.
    Patterns with a slash match the path from the root, and also exclude
    everything below a matching directory.

    Args:
        relative_path: POSIX path relative to the tree root
        patterns: fnmatch-style exclude patterns

    Returns:
        True if the path or one of its parents is excluded

    Examples:
        >>> is_excluded("app/__pycache__/x.pyc", ["__pycache__"])
        True
        >>> is_excluded("build/out/a.txt", ["build/out"])
        True
        >>> is_excluded("src/build.py", ["build"])
        False
    """
    path = PurePosixPath(relative_path)
    parts = path.parts
    for raw in patterns:
        pattern = raw.strip("/")
        if not pattern:
            continue
        if "/" in pattern:
            for depth in range(1, len(parts) + 1):
                if fnmatchcase("/".join(parts[:depth]), pattern):
                    return True
        elif any(fnmatchcase(part, pattern) for part in parts):
            return True
    return False


def file_digest(path: Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while chunk := handle.read(HASH_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def local_manifest(root: Path, exclude: tuple[str, ...] | list[str] = ()) -> dict[str, FileEntry]:
    """Hash every regular file below ``root``, skipping excluded paths.

    Excluded directories are pruned from the walk, so nothing below them is
    read. Symbolic links are not followed.

    Args:
        root: Tree root
        exclude: fnmatch-style exclude patterns

    Returns:
        Mapping of POSIX relative path to FileEntry
    """
    manifest: dict[str, FileEntry] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        relative_dir = current.relative_to(root).as_posix()
        prefix = "" if relative_dir == "." else f"{relative_dir}/"

        dirnames[:] = sorted(d for d in dirnames if not is_excluded(prefix + d, exclude))

        for name in sorted(filenames):
            relative = prefix + name
            if is_excluded(relative, exclude):
                continue
            path = current / name
            info = path.lstat()
            if not stat.S_ISREG(info.st_mode):
                continue
            manifest[relative] = FileEntry(
                sha256=file_digest(path),
                mode=stat.S_IMODE(info.st_mode),
                size=info.st_size,
            )
    return manifest


def parent_dirs(relative_paths: list[str]) -> list[str]:
    """Distinct parent directories of relative paths, shallowest first."""
    parents = {
        str(PurePosixPath(p).parent) for p in relative_paths if str(PurePosixPath(p).parent) != "."
    }
    return sorted(parents, key=lambda p: (p.count("/"), p))
