"""
VerificationEngine — rebuild from source and compare against a reference.

State machine:

    PENDING → SOURCE_RESOLVED → RECOMPILED → HASH_COMPARED → MATCHED
                                                           → MISMATCHED
    any non-terminal state → FAILED(stage, reason)

A mismatch is a result, not an exception: ``verify`` always returns a
``VerificationResult``. The stored ABI of a deployment is never trusted;
an exported ABI is the one derived from the rebuilt source.
"""
from __future__ import annotations

import hmac
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Union

from pydantic import ValidationError

from contract_builder.chain import ChainClient
from contract_builder.config import NetworkPreset
from contract_builder.core.converter import FormatConverter
from contract_builder.core.source import (
    ContractSource,
    SnapshotSource,
    SourceResolver,
    VersionControlledSource,
)
from contract_builder.core.toolchain import ToolchainAdapter
from contract_builder.errors import (
    ConfigInvalid,
    ContractBuilderError,
    DirtyWorkingTree,
    LockfileDrift,
    NetworkError,
    SourceUnavailable,
)
from contract_builder.io.schema import (
    ArchiveSourceInfo,
    BuildMetadata,
    GitSourceInfo,
    VerificationResult,
    VerificationStatus,
)
from contract_builder.io.writer import write_abi
from contract_builder.pipeline import BuildResult, ContractBuildJob, stage
from contract_builder.policy.build_settings import BuildSettings, make_settings

logger = logging.getLogger(__name__)


# =============================================================================
# State machine
# =============================================================================

class VerifyState(str, Enum):
    PENDING = "PENDING"
    SOURCE_RESOLVED = "SOURCE_RESOLVED"
    RECOMPILED = "RECOMPILED"
    HASH_COMPARED = "HASH_COMPARED"
    MATCHED = "MATCHED"
    MISMATCHED = "MISMATCHED"
    FAILED = "FAILED"


TERMINAL_STATES: FrozenSet[VerifyState] = frozenset({
    VerifyState.MATCHED,
    VerifyState.MISMATCHED,
    VerifyState.FAILED,
})

_TRANSITIONS: Dict[VerifyState, FrozenSet[VerifyState]] = {
    VerifyState.PENDING: frozenset({VerifyState.SOURCE_RESOLVED}),
    VerifyState.SOURCE_RESOLVED: frozenset({VerifyState.RECOMPILED}),
    VerifyState.RECOMPILED: frozenset({VerifyState.HASH_COMPARED}),
    VerifyState.HASH_COMPARED: frozenset({VerifyState.MATCHED, VerifyState.MISMATCHED}),
}


class LockDriftPolicy(str, Enum):
    """How a lock file out of date with its manifest is reported."""
    BUILD_FAILED = "build_failed"
    MISMATCH = "mismatch"


# =============================================================================
# Request
# =============================================================================

_HASH_RE = re.compile(r"^(0[xX])?[0-9a-fA-F]{64}$")


def is_code_hash(value: str) -> bool:
    """A 32-byte hex digest, optionally ``0x``-prefixed."""
    return bool(_HASH_RE.match(value.strip()))


@dataclass(frozen=True)
class LiteralHash:
    value: str

    def __post_init__(self):
        if not is_code_hash(self.value):
            raise ConfigInvalid(
                f"Reference hash must be 64 hex digits: {self.value!r}",
                stage="fetch_reference",
            )


@dataclass(frozen=True)
class DeployedContract:
    address: str
    network: NetworkPreset


Reference = Union[LiteralHash, DeployedContract]


@dataclass(frozen=True)
class VerifyRequest:
    source: ContractSource
    settings: BuildSettings
    reference: Reference
    export_abi_path: Optional[Path] = None


def normalize_hash(value: str) -> str:
    """Strip whitespace and an ``0x`` prefix, lowercase."""
    v = value.strip().lower()
    if v.startswith("0x"):
        v = v[2:]
    return v


def hashes_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(normalize_hash(a).encode("ascii"), normalize_hash(b).encode("ascii"))


# =============================================================================
# Engine
# =============================================================================

class VerificationEngine:
    """
    Runs one verification at a time; create a new engine per request.

    ``history`` records every state entered, starting with ``PENDING``.
    """

    def __init__(
        self,
        chain_client: Optional[ChainClient],
        toolchain: ToolchainAdapter,
        converter: FormatConverter,
        resolver: Optional[SourceResolver] = None,
        lock_drift_policy: LockDriftPolicy = LockDriftPolicy.BUILD_FAILED,
    ):
        self.chain_client = chain_client
        self.job = ContractBuildJob(toolchain, converter, resolver)
        self.lock_drift_policy = LockDriftPolicy(lock_drift_policy)
        self.state = VerifyState.PENDING
        self.history: List[VerifyState] = [VerifyState.PENDING]

    def _advance(self, new_state: VerifyState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Verification already finished in state {self.state.value}")
        if new_state != VerifyState.FAILED and new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal verification transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("Verification state %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def _fail(
        self,
        status: VerificationStatus,
        error: ContractBuilderError,
        contract_name: Optional[str] = None,
        reference_hash: Optional[str] = None,
    ) -> VerificationResult:
        self._advance(VerifyState.FAILED)
        logger.warning(
            "Verification failed at %s: %s: %s",
            error.stage, error.error_type, error.message,
        )
        return VerificationResult(
            status=status,
            state=self.state.value,
            contract_name=contract_name,
            reference_hash=reference_hash,
            detail=error.message,
            failed_stage=error.stage,
            error_type=error.error_type,
        )

    def _fetch_reference(self, reference: Reference) -> str:
        if isinstance(reference, LiteralHash):
            return reference.value
        if self.chain_client is None:
            raise ConfigInvalid("A deployed-contract reference needs a chain client")
        code_hash = self.chain_client.fetch_code_hash(reference.address, reference.network)
        if not is_code_hash(code_hash):
            raise NetworkError(
                f"{reference.network.name} returned a malformed code hash: {code_hash!r}"
            )
        return code_hash

    def verify(self, request: VerifyRequest) -> VerificationResult:
        if self.state != VerifyState.PENDING:
            raise RuntimeError("VerificationEngine instances are single-use")

        try:
            with stage("fetch_reference"):
                reference_hash = self._fetch_reference(request.reference)
        except NetworkError as e:
            return self._fail(VerificationStatus.NETWORK_ERROR, e)
        except ContractBuilderError as e:
            return self._fail(VerificationStatus.BUILD_FAILED, e)

        try:
            resolved = self.job.resolve(request.source)
        except SourceUnavailable as e:
            return self._fail(VerificationStatus.SOURCE_UNAVAILABLE, e, reference_hash=reference_hash)
        except (DirtyWorkingTree, ConfigInvalid) as e:
            return self._fail(VerificationStatus.BUILD_FAILED, e, reference_hash=reference_hash)

        try:
            self._advance(VerifyState.SOURCE_RESOLVED)
            try:
                result = self.job.build(resolved, request.settings)
            except LockfileDrift as e:
                if self.lock_drift_policy == LockDriftPolicy.MISMATCH:
                    return self._lock_drift_mismatch(e, reference_hash)
                return self._fail(VerificationStatus.BUILD_FAILED, e, reference_hash=reference_hash)
            except ContractBuilderError as e:
                return self._fail(VerificationStatus.BUILD_FAILED, e, reference_hash=reference_hash)
            self._advance(VerifyState.RECOMPILED)
            return self._compare(result, reference_hash, request.export_abi_path)
        finally:
            resolved.cleanup()

    def _lock_drift_mismatch(self, error: LockfileDrift, reference_hash: str) -> VerificationResult:
        # Lock drift counts as "does not reproduce" rather than a broken build
        self._advance(VerifyState.RECOMPILED)
        self._advance(VerifyState.HASH_COMPARED)
        self._advance(VerifyState.MISMATCHED)
        logger.warning("Lock file drift reported as mismatch: %s", error.message)
        return VerificationResult(
            status=VerificationStatus.MISMATCH,
            state=self.state.value,
            reference_hash=reference_hash,
            detail=f"Cargo.lock does not match Cargo.toml: {error.message}",
            failed_stage=error.stage,
            error_type=error.error_type,
        )

    def _compare(
        self,
        result: BuildResult,
        reference_hash: str,
        export_abi_path: Optional[Path],
    ) -> VerificationResult:
        computed = "0x" + result.rwasm_hash
        contract_name = result.artifacts.contract.name
        self._advance(VerifyState.HASH_COMPARED)

        if not hashes_equal(computed, reference_hash):
            self._advance(VerifyState.MISMATCHED)
            logger.info("%s: MISMATCH (computed %s, reference %s)", contract_name, computed, reference_hash)
            return VerificationResult(
                status=VerificationStatus.MISMATCH,
                state=self.state.value,
                contract_name=contract_name,
                computed_hash=computed,
                reference_hash=reference_hash,
                detail=f"computed {computed} != reference {reference_hash}",
                error_type="Mismatch",
            )

        detail = "rWASM hash matches the reference"
        export_error = None
        abi = result.artifacts.abi
        if export_abi_path is not None and abi is not None:
            try:
                with stage("export_abi"):
                    write_abi(abi, export_abi_path)
                logger.info("Exported ABI to %s", export_abi_path)
            except ContractBuilderError as e:
                # the match stands; only the export is lost
                logger.warning("ABI export failed: %s", e.message)
                detail = f"{detail}; ABI export failed: {e.message}"
                export_error = e

        self._advance(VerifyState.MATCHED)
        logger.info("%s: MATCH (%s)", contract_name, computed)
        return VerificationResult(
            status=VerificationStatus.MATCH,
            state=self.state.value,
            contract_name=contract_name,
            computed_hash=computed,
            reference_hash=reference_hash,
            detail=detail,
            failed_stage=export_error.stage if export_error else None,
            error_type=export_error.error_type if export_error else None,
            abi=abi if export_abi_path is not None else None,
        )


# =============================================================================
# Reading a previous build's metadata
# =============================================================================

def load_metadata(path: Path) -> BuildMetadata:
    try:
        return BuildMetadata.model_validate(json.loads(path.read_text()))
    except FileNotFoundError:
        raise SourceUnavailable(f"Metadata not found: {path}")
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigInvalid(f"Invalid metadata document {path}: {e}")


def settings_from_metadata(metadata: BuildMetadata) -> BuildSettings:
    """Rebuild the recorded build settings."""
    cfg = metadata.compilation_settings.build_cfg
    return make_settings(
        target=metadata.compilation_settings.rust.target,
        profile=cfg.profile,
        features=tuple(cfg.features or ()),
        no_default_features=cfg.no_default_features,
        locked=cfg.locked,
    )


def source_from_metadata(
    metadata: BuildMetadata,
    metadata_path: Path,
    project_root: Path,
) -> ContractSource:
    """
    The source a previous build was made from.

    Archive paths are relative to the metadata file; a snapshot is the
    project directory itself.
    """
    info = metadata.source
    if isinstance(info, ArchiveSourceInfo):
        archive = (metadata_path.parent / info.archive_path).resolve()
        return SnapshotSource(archive=archive, inner_project_path=info.project_path)
    if isinstance(info, GitSourceInfo):
        return VersionControlledSource(
            repository_ref=info.repository,
            commit_id=info.commit,
            inner_project_path=info.project_path,
        )
    return SnapshotSource(archive=Path(project_root))
