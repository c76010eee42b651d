"""
Source-tree hashing helpers.

The tree hash covers only the files that determine the build (Rust sources,
manifests, lock file, toolchain pin), so a clean checkout and a snapshot
archive of the same project hash identically.
"""
from __future__ import annotations

import hashlib
import os
import time
from pathlib import Path
from typing import Iterable, List, Optional

import pathspec

# Directory names never descended into
SKIP_DIRS = frozenset({"target", "out"})

SOURCE_SUFFIXES = frozenset({".rs"})
SOURCE_FILENAMES = frozenset({
    "Cargo.toml",
    "Cargo.lock",
    "rust-toolchain",
    "rust-toolchain.toml",
})


def is_skipped_component(name: str) -> bool:
    """Build outputs and hidden/VCS directories."""
    return name in SKIP_DIRS or name.startswith(".")


def is_source_file(rel_path: str) -> bool:
    """True if *rel_path* (POSIX, relative) belongs to the hashed source set."""
    parts = rel_path.split("/")
    if any(is_skipped_component(p) for p in parts):
        return False
    name = parts[-1]
    return name in SOURCE_FILENAMES or Path(name).suffix in SOURCE_SUFFIXES


def iter_source_files(root: Path) -> List[str]:
    """
    Relative POSIX paths of all source files under *root*, sorted.

    Symlinks are not followed.
    """
    found: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not is_skipped_component(d))
        for fname in filenames:
            full = Path(dirpath) / fname
            if full.is_symlink() or not full.is_file():
                continue
            rel = full.relative_to(root).as_posix()
            if is_source_file(rel):
                found.append(rel)
    return sorted(found)


def load_ignore_spec(root: Path) -> Optional[pathspec.PathSpec]:
    """Parse ``<root>/.gitignore`` if present."""
    ignore_file = root / ".gitignore"
    if not ignore_file.is_file():
        return None
    lines = ignore_file.read_text(encoding="utf-8", errors="replace").splitlines()
    return pathspec.PathSpec.from_lines("gitwildmatch", lines)


def snapshot_files(root: Path) -> List[str]:
    """
    Source files that make up a snapshot of *root*: the hashed source set
    minus anything matched by the project's ``.gitignore``. Manifests are
    always kept.
    """
    files = iter_source_files(root)
    spec = load_ignore_spec(root)
    if spec is None:
        return files
    return [
        f for f in files
        if f in ("Cargo.toml", "Cargo.lock") or not spec.match_file(f)
    ]


def compute_tree_hash(root: Path, files: Iterable[str] | None = None) -> str:
    """
    Deterministic hash over (relative path, content) pairs.

    Sorted by relative path; each entry contributes the path and then the
    file content, each preceded by its length as an 8-byte big-endian
    integer so no entry can be mistaken for the start of the next.
    """
    rel_paths = sorted(files) if files is not None else snapshot_files(root)
    h = hashlib.sha256()
    for rel in rel_paths:
        path_bytes = rel.encode("utf-8")
        content = (root / rel).read_bytes()
        h.update(len(path_bytes).to_bytes(8, "big"))
        h.update(path_bytes)
        h.update(len(content).to_bytes(8, "big"))
        h.update(content)
    return h.hexdigest()


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def build_timestamp() -> int:
    """Unix seconds; honours SOURCE_DATE_EPOCH for reproducible metadata."""
    epoch = os.environ.get("SOURCE_DATE_EPOCH")
    if epoch and epoch.isdigit():
        return int(epoch)
    return int(time.time())
