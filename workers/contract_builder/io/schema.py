"""
Schema — Pydantic models for everything the pipeline writes or returns.

  metadata.json   BuildMetadata (field order is the on-disk order)
  abi.json        List[AbiFunction]
  verification    VerificationResult
  CLI --json      CompileOutput / VerifyOutput
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from contract_builder import SCHEMA_VERSION


# =============================================================================
# ABI
# =============================================================================

class AbiParam(BaseModel):
    name: str
    type: str
    internalType: str
    components: Optional[List["AbiParam"]] = None


class AbiFunction(BaseModel):
    """One ``"type": "function"`` ABI entry."""
    type: Literal["function"] = "function"
    name: str
    inputs: List[AbiParam] = Field(default_factory=list)
    outputs: List[AbiParam] = Field(default_factory=list)
    stateMutability: str


# =============================================================================
# Source descriptor (tagged on "type")
# =============================================================================

class ArchiveSourceInfo(BaseModel):
    type: Literal["archive"] = "archive"
    archive_path: str = "./sources.tar.gz"
    project_path: str = "."


class GitSourceInfo(BaseModel):
    type: Literal["git"] = "git"
    repository: str
    commit: str
    project_path: str = "."


class SnapshotSourceInfo(BaseModel):
    """Built from an unarchived working copy; content hashes only."""
    type: Literal["snapshot"] = "snapshot"
    project_path: str = "."


SourceInfo = Union[ArchiveSourceInfo, GitSourceInfo, SnapshotSourceInfo]


# =============================================================================
# Metadata
# =============================================================================

class ContractInfoModel(BaseModel):
    name: str
    version: str


class RustInfo(BaseModel):
    version: str
    commit: str
    target: str


class SdkInfoModel(BaseModel):
    tag: str
    commit: str


class BuildCfg(BaseModel):
    profile: str
    features: Optional[List[str]] = None   # omitted when empty
    no_default_features: bool
    locked: bool


class CompilationSettings(BaseModel):
    rust: RustInfo
    sdk: SdkInfoModel
    build_cfg: BuildCfg


class ArtifactInfo(BaseModel):
    hash: str
    size: int
    path: str


class BytecodeInfo(BaseModel):
    wasm: ArtifactInfo
    rwasm: ArtifactInfo


class SolidityCompatibility(BaseModel):
    abi_path: str
    interface_path: str
    function_selectors: Dict[str, str]


class Dependencies(BaseModel):
    cargo_lock_hash: str


class BuildMetadata(BaseModel):
    """
    The metadata document persisted next to the bytecode.

    Serialized in declaration order with ``None`` fields dropped, so the
    same build facts always produce the same bytes.
    """
    model_config = ConfigDict(frozen=True)

    schema_version: int = SCHEMA_VERSION
    contract: ContractInfoModel
    source: SourceInfo = Field(discriminator="type")
    compilation_settings: CompilationSettings
    built_at: int
    bytecode: BytecodeInfo
    solidity_compatibility: Optional[SolidityCompatibility] = None
    dependencies: Dependencies
    workspace_root: Optional[str] = None
    toolchain_hash: str
    source_tree_hash: str

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, exclude_none=True) + "\n"


# =============================================================================
# Verification
# =============================================================================

class VerificationStatus(str, Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    BUILD_FAILED = "build_failed"
    SOURCE_UNAVAILABLE = "source_unavailable"
    NETWORK_ERROR = "network_error"


class VerificationResult(BaseModel):
    """Terminal outcome of one verification run."""
    model_config = ConfigDict(frozen=True)

    status: VerificationStatus
    state: str
    contract_name: Optional[str] = None
    computed_hash: Optional[str] = None
    reference_hash: Optional[str] = None
    detail: str = ""
    failed_stage: Optional[str] = None
    error_type: Optional[str] = None
    abi: Optional[List[AbiFunction]] = None

    @property
    def matched(self) -> bool:
        return self.status == VerificationStatus.MATCH


# =============================================================================
# CLI / API output documents
# =============================================================================

class CompileOutput(BaseModel):
    status: str = "success"
    command: str = "compile"
    contract: ContractInfoModel
    output_dir: Optional[str] = None
    wasm_hash: str
    rwasm_hash: str
    function_selectors: Dict[str, str] = Field(default_factory=dict)
    metadata: BuildMetadata


class VerifyOutput(BaseModel):
    status: str = "success"
    command: str = "verify"
    result: VerificationResult
