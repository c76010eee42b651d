"""
Git repository detection and checkout helpers.

Thin wrappers around the ``git`` CLI; no libgit bindings.
"""
from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from contract_builder.core.tree_hash import is_source_file
from contract_builder.errors import SourceUnavailable

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 300

_SCP_LIKE_RE = re.compile(r"^(?:[\w.-]+@)?([\w.-]+):(?!//)(.+)$")


@dataclass(frozen=True)
class GitInfo:
    """State of the repository containing a project."""
    remote_url: str            # normalized; "" when no origin remote
    commit_hash: str           # full 40-char SHA
    commit_hash_short: str
    branch: str
    dirty_files: Tuple[str, ...]
    project_path: str          # project dir relative to repo root ("" at root)

    @property
    def is_dirty(self) -> bool:
        return bool(self.dirty_files)


def run_git(
    args: List[str],
    cwd: Path,
    git_bin: str = "git",
    timeout: int = GIT_TIMEOUT,
) -> Tuple[str, str, int]:
    """Execute a git command and return (stdout, stderr, exit_code)."""
    env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
    try:
        result = subprocess.run(
            [git_bin] + args,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
        return result.stdout, result.stderr, result.returncode
    except subprocess.TimeoutExpired:
        return "", f"git {args[0]} timed out after {timeout}s", -1
    except FileNotFoundError:
        return "", f"git executable not found: {git_bin}", -1


def normalize_git_url(url: str) -> str:
    """
    Strip embedded credentials and rewrite SSH shorthand to HTTPS.

    ``git@github.com:user/repo.git`` -> ``https://github.com/user/repo.git``
    """
    url = url.strip()
    if not url:
        return url

    for scheme in ("https://", "http://"):
        if url.startswith(scheme):
            rest = url[len(scheme):]
            host_part, sep, path = rest.partition("/")
            if "@" in host_part:
                host_part = host_part.rsplit("@", 1)[1]
            return f"https://{host_part}{sep}{path}"

    if url.startswith("ssh://"):
        rest = url[len("ssh://"):]
        host_part, sep, path = rest.partition("/")
        host = host_part.rsplit("@", 1)[-1].split(":", 1)[0]
        return f"https://{host}{sep}{path}"

    m = _SCP_LIKE_RE.match(url)
    if m and not os.path.exists(url):
        return f"https://{m.group(1)}/{m.group(2)}"
    return url


def is_git_repository(path: Path, git_bin: str = "git") -> bool:
    out, _, code = run_git(["rev-parse", "--is-inside-work-tree"], path, git_bin)
    return code == 0 and out.strip() == "true"


def dirty_files(path: Path, git_bin: str = "git") -> List[str]:
    """
    Uncommitted changes reported by ``git status --porcelain -z``.

    Staged and unstaged changes to tracked files always count; untracked
    files count only when they would be part of the hashed source set.
    """
    out, err, code = run_git(
        ["status", "--porcelain", "-z", "--untracked-files=all"], path, git_bin
    )
    if code != 0:
        raise SourceUnavailable(f"git status failed: {err.strip()}")
    changed: List[str] = []
    # NUL-separated, paths unquoted; a rename or copy is followed by its source path
    entries = iter(out.split("\0"))
    for entry in entries:
        if not entry:
            continue
        status, rel = entry[:2], entry[3:]
        if status[0] in "RC":
            next(entries, None)
        if status == "??" and not is_source_file(rel):
            continue
        changed.append(rel)
    return changed


def repo_toplevel(path: Path, git_bin: str = "git") -> Path:
    out, err, code = run_git(["rev-parse", "--show-toplevel"], path, git_bin)
    if code != 0:
        raise SourceUnavailable(f"Failed to get git root directory: {err.strip()}")
    return Path(out.strip()).resolve()


def project_path_in_repo(project_root: Path, git_bin: str = "git") -> str:
    """Project directory relative to the repository root, POSIX form."""
    top = repo_toplevel(project_root, git_bin)
    try:
        rel = project_root.resolve().relative_to(top)
    except ValueError:
        raise SourceUnavailable(f"{project_root} is not inside git repository {top}")
    rel_str = rel.as_posix()
    return "" if rel_str == "." else rel_str


def detect_git_info(project_root: Path, git_bin: str = "git") -> Optional[GitInfo]:
    """Return :class:`GitInfo` if *project_root* is inside a git work tree."""
    if not is_git_repository(project_root, git_bin):
        return None

    out, err, code = run_git(["rev-parse", "HEAD"], project_root, git_bin)
    if code != 0:
        # Fresh repository without commits
        logger.debug("git rev-parse HEAD failed: %s", err.strip())
        return None
    commit = out.strip()

    remote, _, code = run_git(["config", "--get", "remote.origin.url"], project_root, git_bin)
    remote_url = normalize_git_url(remote) if code == 0 else ""

    branch, _, code = run_git(["rev-parse", "--abbrev-ref", "HEAD"], project_root, git_bin)
    branch = branch.strip() if code == 0 else "HEAD"

    return GitInfo(
        remote_url=remote_url,
        commit_hash=commit,
        commit_hash_short=commit[:7],
        branch=branch,
        dirty_files=tuple(dirty_files(project_root, git_bin)),
        project_path=project_path_in_repo(project_root, git_bin),
    )


def checkout_commit(
    repository_ref: str,
    commit_id: str,
    dest: Path,
    git_bin: str = "git",
) -> Path:
    """
    Clone *repository_ref* into *dest* and check out *commit_id* detached.

    Raises ``SourceUnavailable`` if the repository or commit is unreachable.
    """
    out, err, code = run_git(
        ["clone", "--quiet", "--no-checkout", repository_ref, str(dest)],
        dest.parent,
        git_bin,
    )
    if code != 0:
        raise SourceUnavailable(
            f"Repository unreachable: {repository_ref}: {err.strip()}"
        )

    out, err, code = run_git(
        ["-c", "advice.detachedHead=false", "checkout", "--quiet", commit_id],
        dest,
        git_bin,
    )
    if code != 0:
        raise SourceUnavailable(
            f"Commit {commit_id} not found in {repository_ref}: {err.strip()}"
        )
    logger.info("Checked out %s at %s", repository_ref, commit_id[:12])
    return dest
