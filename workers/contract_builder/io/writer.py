"""
Writer — persist an artifact set.

Filesystem layout:
    <output_dir>/<contract>.wasm/lib.wasm
    <output_dir>/<contract>.wasm/lib.rwasm
    <output_dir>/<contract>.wasm/abi.json          (router present)
    <output_dir>/<contract>.wasm/interface.sol     (router present)
    <output_dir>/<contract>.wasm/metadata.json
    <output_dir>/<contract>.wasm/sources.tar.gz    (archive requested)
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List

from contract_builder.errors import ArtifactWriteError
from contract_builder.io.abi import abi_json_text
from contract_builder.io.schema import AbiFunction

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


def write_artifacts(artifacts, output_dir: Path) -> Path:
    """
    Write every file of *artifacts* (an ``ArtifactSet``) into
    ``<output_dir>/<contract>.wasm/`` and return that directory.

    Stale optional files from a previous build (e.g. an ABI for a contract
    that no longer has a router) are removed.
    """
    target = output_dir / artifacts.dir_name
    files = artifacts.files()
    try:
        target.mkdir(parents=True, exist_ok=True)
        for name, data in files.items():
            _write_atomic(target / name, data)
        for stale in ("abi.json", "interface.sol", "sources.tar.gz"):
            if stale not in files and (target / stale).exists():
                (target / stale).unlink()
    except OSError as e:
        raise ArtifactWriteError(f"Failed to write artifacts to {target}: {e}") from e

    logger.info("Wrote %d artifact file(s) to %s", len(files), target)
    return target


def write_abi(abi: List[AbiFunction], path: Path) -> Path:
    """Export an ABI document to an arbitrary path."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(abi_json_text(abi))
    except OSError as e:
        raise ArtifactWriteError(f"Failed to write ABI to {path}: {e}") from e
    return path
