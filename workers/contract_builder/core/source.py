"""
SourceResolver — materialize contract source into an isolated, hashed tree.

A ``ContractSource`` is exactly one of:

  SnapshotSource           archive bytes, a .tar.gz path, or a project dir
  VersionControlledSource  repository ref + commit (clean tree enforced)

Each resolution gets its own ``mkdtemp`` directory; nothing is shared
between concurrent invocations.
"""
from __future__ import annotations

import io
import logging
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Tuple, Union

from contract_builder.core.git_info import (
    checkout_commit,
    dirty_files,
    is_git_repository,
    repo_toplevel,
)
from contract_builder.core.tree_hash import compute_tree_hash, snapshot_files
from contract_builder.errors import (
    ArchiveCorrupt,
    ConfigInvalid,
    DirtyWorkingTree,
    InnerPathNotFound,
    SourceUnavailable,
)

logger = logging.getLogger(__name__)

_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{7,40}$")


def _normalize_inner_path(inner: str) -> str:
    """Validate a relative project path; ``""`` means the root."""
    inner = inner.strip().replace("\\", "/")
    if inner in ("", "."):
        return ""
    p = PurePosixPath(inner)
    if p.is_absolute() or ".." in p.parts:
        raise ConfigInvalid(f"Inner project path must be relative: {inner!r}")
    return p.as_posix()


# =============================================================================
# ContractSource (sum type)
# =============================================================================

@dataclass(frozen=True)
class SnapshotSource:
    """Content snapshot; no working-tree cleanliness requirement."""
    archive: Union[bytes, Path]
    inner_project_path: str = ""

    def __post_init__(self):
        if isinstance(self.archive, str):
            object.__setattr__(self, "archive", Path(self.archive))
        if not isinstance(self.archive, (bytes, Path)):
            raise ConfigInvalid("Snapshot archive must be bytes or a path")
        object.__setattr__(
            self, "inner_project_path", _normalize_inner_path(self.inner_project_path)
        )


@dataclass(frozen=True)
class VersionControlledSource:
    """Repository reference pinned to a commit."""
    repository_ref: str
    commit_id: str
    inner_project_path: str = ""
    allow_dirty: bool = False

    def __post_init__(self):
        if not self.repository_ref.strip():
            raise ConfigInvalid("Repository reference must not be empty")
        if not _COMMIT_RE.match(self.commit_id):
            raise ConfigInvalid(f"Invalid commit id: {self.commit_id!r}")
        object.__setattr__(
            self, "inner_project_path", _normalize_inner_path(self.inner_project_path)
        )


ContractSource = Union[SnapshotSource, VersionControlledSource]


# =============================================================================
# Resolved tree
# =============================================================================

@dataclass
class ResolvedSource:
    """A materialized project inside an isolated working directory."""
    source: ContractSource
    workspace_dir: Path
    project_dir: Path
    tree_hash: str
    reproducible_by_reference: bool

    def cleanup(self) -> None:
        if self.workspace_dir.exists():
            shutil.rmtree(self.workspace_dir, ignore_errors=True)
            logger.debug("Removed workspace %s", self.workspace_dir)

    def __enter__(self) -> "ResolvedSource":
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()


# =============================================================================
# Extraction helpers
# =============================================================================

def _safe_extract(data: bytes, dest: Path) -> None:
    """Unpack a .tar.gz, refusing links and paths escaping *dest*."""
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            for member in tar.getmembers():
                rel = PurePosixPath(member.name)
                if rel.is_absolute() or ".." in rel.parts:
                    raise ArchiveCorrupt(f"Unsafe path in archive: {member.name}")
                if member.issym() or member.islnk() or member.isdev():
                    raise ArchiveCorrupt(f"Links are not allowed in archive: {member.name}")
                target = dest / rel
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    continue
                fobj = tar.extractfile(member)
                if fobj is None:
                    raise ArchiveCorrupt(f"Unreadable archive member: {member.name}")
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(fobj.read())
    except (tarfile.TarError, EOFError, OSError) as e:
        raise ArchiveCorrupt(f"Archive unreadable: {e}")


def _copy_source_tree(src: Path, dest: Path) -> None:
    """Copy the snapshot file set of *src* (ignore rules applied) into *dest*."""
    for rel in snapshot_files(src):
        target = dest / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src / rel, target)


# =============================================================================
# SourceResolver
# =============================================================================

class SourceResolver:
    """Turns a ``ContractSource`` into a ``ResolvedSource``."""

    def __init__(self, workspace_root: Path | None = None, git_bin: str = "git"):
        self.workspace_root = Path(workspace_root or tempfile.gettempdir())
        self.git_bin = git_bin

    def _new_workspace(self) -> Path:
        self.workspace_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix="wasmforge-", dir=self.workspace_root))

    def resolve(self, source: ContractSource) -> ResolvedSource:
        """
        Materialize *source* into a fresh working directory.

        Raises
        ------
        DirtyWorkingTree
            Version-controlled local tree with uncommitted changes.
        SourceUnavailable
            Archive/repository missing or unreadable, or no ``Cargo.toml``
            at the inner project path.
        """
        workspace = self._new_workspace()
        try:
            if isinstance(source, SnapshotSource):
                root, by_ref = self._materialize_snapshot(source, workspace), False
            elif isinstance(source, VersionControlledSource):
                root, by_ref = self._materialize_repository(source, workspace)
            else:
                raise ConfigInvalid(f"Unknown source type: {type(source).__name__}")

            project_dir = root / source.inner_project_path if source.inner_project_path else root
            if not (project_dir / "Cargo.toml").is_file():
                raise InnerPathNotFound(
                    f"No Cargo.toml at inner project path '{source.inner_project_path or '.'}'"
                )

            tree_hash = compute_tree_hash(project_dir)
        except BaseException:
            shutil.rmtree(workspace, ignore_errors=True)
            raise

        logger.info(
            "Resolved %s source into %s (tree %s)",
            type(source).__name__, workspace, tree_hash[:16],
        )
        return ResolvedSource(
            source=source,
            workspace_dir=workspace,
            project_dir=project_dir,
            tree_hash=tree_hash,
            reproducible_by_reference=by_ref,
        )

    # -----------------------------------------------------------------
    # Variants
    # -----------------------------------------------------------------

    def _materialize_snapshot(self, source: SnapshotSource, workspace: Path) -> Path:
        root = workspace / "src"
        root.mkdir()
        archive = source.archive
        if isinstance(archive, bytes):
            _safe_extract(archive, root)
            return root

        if not archive.exists():
            raise SourceUnavailable(f"Snapshot not found: {archive}")
        if archive.is_dir():
            _copy_source_tree(archive, root)
            return root
        try:
            data = archive.read_bytes()
        except OSError as e:
            raise SourceUnavailable(f"Cannot read snapshot {archive}: {e}")
        _safe_extract(data, root)
        return root

    def _materialize_repository(
        self, source: VersionControlledSource, workspace: Path
    ) -> Tuple[Path, bool]:
        local = Path(source.repository_ref)
        if local.is_dir() and is_git_repository(local, self.git_bin):
            changes = dirty_files(local, self.git_bin)
            if changes:
                if not source.allow_dirty:
                    raise DirtyWorkingTree(changes)
                # Working copy differs from the commit: content hashing only
                logger.warning(
                    "Building dirty working tree (%d change(s)); "
                    "result is not reproducible by commit reference",
                    len(changes),
                )
                root = workspace / "src"
                root.mkdir()
                _copy_source_tree(repo_toplevel(local, self.git_bin), root)
                return root, False

        root = workspace / "checkout"
        checkout_commit(source.repository_ref, source.commit_id, root, self.git_bin)
        return root, True
