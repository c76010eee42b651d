"""
Cargo manifest / lock / toolchain-pin readers.

Everything the metadata record needs to know about the crate that is not
produced by the compiler itself: contract name and version, the SDK
identity recorded in Cargo.lock, the pinned toolchain channel, and the
crate's main source file.
"""
from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from contract_builder.core.tree_hash import hash_bytes
from contract_builder.errors import ConfigInvalid

logger = logging.getLogger(__name__)

SDK_PACKAGE = "fluentbase-sdk"
UNPINNED_CHANNELS = frozenset({"stable", "beta", "nightly"})
MAIN_FILE_CANDIDATES = ("src/lib.rs", "src/main.rs", "lib.rs", "main.rs")


@dataclass(frozen=True)
class ContractInfo:
    name: str
    version: str

    @property
    def artifact_stem(self) -> str:
        """Crate name as cargo writes it into output file names."""
        return self.name.replace("-", "_")


@dataclass(frozen=True)
class SdkInfo:
    tag: str
    commit: str = "unknown"

    def identity_string(self) -> str:
        return f"{SDK_PACKAGE} {self.tag} ({self.commit})"


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigInvalid(f"{path.name} not found in {path.parent}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigInvalid(f"Failed to parse {path}: {e}")


def read_manifest(project_dir: Path) -> Dict[str, Any]:
    return _load_toml(project_dir / "Cargo.toml")


def read_contract_info(project_dir: Path) -> ContractInfo:
    """Name and version from ``[package]``; requires a fluentbase-sdk dependency."""
    manifest = read_manifest(project_dir)
    package = manifest.get("package")
    if not isinstance(package, dict) or "name" not in package:
        raise ConfigInvalid("Cargo.toml has no [package] name")

    deps = manifest.get("dependencies", {})
    if SDK_PACKAGE not in deps:
        raise ConfigInvalid(
            f"Not a Fluent contract: Cargo.toml has no '{SDK_PACKAGE}' dependency"
        )

    version = package.get("version", "0.0.0")
    if isinstance(version, dict):
        # version.workspace = true; cannot resolve without the workspace root
        version = "0.0.0"
    return ContractInfo(name=package["name"], version=str(version))


def find_main_source(project_dir: Path) -> Optional[Path]:
    """``[lib].path`` first, then the conventional locations."""
    manifest = read_manifest(project_dir)
    lib_path = manifest.get("lib", {}).get("path")
    if lib_path:
        candidate = project_dir / lib_path
        if candidate.is_file():
            return candidate
    for rel in MAIN_FILE_CANDIDATES:
        candidate = project_dir / rel
        if candidate.is_file():
            return candidate
    return None


# =============================================================================
# Cargo.lock
# =============================================================================

def lockfile_hash(project_dir: Path) -> str:
    """SHA-256 of Cargo.lock, or ``"none"`` when the project has no lock file."""
    lock = project_dir / "Cargo.lock"
    if not lock.is_file():
        return "none"
    return hash_bytes(lock.read_bytes())


def read_sdk_info(project_dir: Path) -> SdkInfo:
    """
    SDK identity from the ``fluentbase-sdk`` entry in Cargo.lock.

    Git sources look like ``git+https://github.com/fluentlabs-xyz/fluentbase?tag=v0.4.5#0123abcd...``;
    the fragment is the resolved commit.
    """
    lock_path = project_dir / "Cargo.lock"
    if not lock_path.is_file():
        logger.warning("No Cargo.lock; SDK version unknown")
        return SdkInfo(tag="unknown")

    lock = _load_toml(lock_path)
    for pkg in lock.get("package", []):
        if pkg.get("name") != SDK_PACKAGE:
            continue
        tag = str(pkg.get("version", "unknown"))
        source = str(pkg.get("source", ""))
        commit = "unknown"
        if source.startswith("git+") and "#" in source:
            commit = source.rsplit("#", 1)[1]
        return SdkInfo(tag=tag, commit=commit)

    logger.warning("%s not found in Cargo.lock", SDK_PACKAGE)
    return SdkInfo(tag="unknown")


# =============================================================================
# rust-toolchain
# =============================================================================

def read_toolchain_pin(project_dir: Path) -> str:
    """
    The exact channel pinned by ``rust-toolchain.toml`` (or legacy
    ``rust-toolchain``). Floating channels are rejected.
    """
    toml_path = project_dir / "rust-toolchain.toml"
    legacy_path = project_dir / "rust-toolchain"

    channel: Optional[str] = None
    if toml_path.is_file():
        channel = _load_toml(toml_path).get("toolchain", {}).get("channel")
    elif legacy_path.is_file():
        text = legacy_path.read_text(encoding="utf-8").strip()
        if text.startswith("["):
            channel = _load_toml(legacy_path).get("toolchain", {}).get("channel")
        else:
            channel = text.splitlines()[0].strip() if text else None
    else:
        raise ConfigInvalid(
            "rust-toolchain.toml is required: reproducible builds need a pinned toolchain"
        )

    if not channel:
        raise ConfigInvalid("rust-toolchain.toml has no [toolchain].channel")
    if channel in UNPINNED_CHANNELS:
        raise ConfigInvalid(
            f"Toolchain channel '{channel}' is not pinned; use an exact version "
            "such as '1.83.0' or 'nightly-2024-11-01'"
        )
    return channel
