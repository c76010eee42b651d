"""
Verifiable source archive — deterministic ``sources.tar.gz``.

Same tree in, same bytes out: entries are sorted, paths are relative
POSIX, and every timestamp/owner field is zeroed (including the gzip
header). Project-level ``.gitignore`` rules are honoured.
"""
from __future__ import annotations

import gzip
import io
import logging
import tarfile
from pathlib import Path

from contract_builder.core.tree_hash import snapshot_files

logger = logging.getLogger(__name__)


def build_source_archive(project_root: Path) -> bytes:
    """
    Create the deterministic ``.tar.gz`` of *project_root*.

    Raises ``FileNotFoundError`` if the project has no ``Cargo.toml``.
    """
    if not (project_root / "Cargo.toml").is_file():
        raise FileNotFoundError(f"Cargo.toml not found in {project_root}")

    members = snapshot_files(project_root)

    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for rel in members:
            data = (project_root / rel).read_bytes()
            info = tarfile.TarInfo(name=rel)
            info.size = len(data)
            info.mtime = 0
            info.mode = 0o644
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            tar.addfile(info, io.BytesIO(data))

    out = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=out, mtime=0, compresslevel=9) as gz:
        gz.write(raw.getvalue())

    logger.info("Source archive: %d files, %d bytes", len(members), out.tell())
    return out.getvalue()
