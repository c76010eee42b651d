"""
Contracts Router
Compile a contract project and verify a build against a reference.

Pipeline work is blocking (subprocesses, filesystem), so every request
runs it in the threadpool; concurrent requests get independent
workspaces.
"""
import logging
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from contract_builder import runner  # type: ignore
from contract_builder.config import NETWORKS, get_settings, resolve_network  # type: ignore
from contract_builder.core.source import SnapshotSource  # type: ignore
from contract_builder.errors import (  # type: ignore
    ArtifactWriteError,
    BuildError,
    ConfigInvalid,
    ContractBuilderError,
    DirtyWorkingTree,
    SourceUnavailable,
)
from contract_builder.io.schema import CompileOutput, VerificationResult  # type: ignore
from contract_builder.pipeline import CompileRequest  # type: ignore
from contract_builder.policy.build_settings import make_settings  # type: ignore
from contract_builder.verifier import (  # type: ignore
    DeployedContract,
    LiteralHash,
    LockDriftPolicy,
    VerifyRequest,
    load_metadata,
    settings_from_metadata,
    source_from_metadata,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Request Models
# =============================================================================

class CompileContractRequest(BaseModel):
    """Request to build a contract project on the server's filesystem."""
    project_root: str = Field(..., description="Path to the contract project")
    output_dir: Optional[str] = Field(
        None,
        description="Artifact output directory (default: <project_root>/out)",
    )
    profile: str = "release"
    features: List[str] = Field(default_factory=list)
    no_default_features: bool = False
    locked: bool = True
    archive: bool = Field(False, description="Also write sources.tar.gz")
    git_source: bool = Field(False, description="Record the git repository and commit")
    allow_dirty: bool = False


class VerifyContractRequest(BaseModel):
    """Request to rebuild a project and compare it with a reference hash."""
    project_root: str
    metadata_path: Optional[str] = Field(
        None,
        description="metadata.json of the build to reproduce",
    )
    address: Optional[str] = None
    hash: Optional[str] = None
    network: Optional[str] = None
    rpc_url: Optional[str] = None
    chain_id: Optional[int] = None
    lock_drift_policy: LockDriftPolicy = LockDriftPolicy.BUILD_FAILED


# =============================================================================
# Error mapping
# =============================================================================

def http_status_for(error: ContractBuilderError) -> int:
    if isinstance(error, ConfigInvalid):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, SourceUnavailable):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, DirtyWorkingTree):
        return status.HTTP_409_CONFLICT
    if isinstance(error, BuildError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, ArtifactWriteError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_502_BAD_GATEWAY


def _raise_http(error: ContractBuilderError) -> None:
    code = http_status_for(error)
    logger.warning("%d %s at %s: %s", code, error.error_type, error.stage, error.message)
    raise HTTPException(status_code=code, detail=error.to_dict())


# =============================================================================
# Blocking work
# =============================================================================

def _compile(request: CompileContractRequest) -> CompileOutput:
    settings = get_settings()
    project_root = Path(request.project_root).resolve()
    build_settings = make_settings(
        profile=request.profile,
        features=tuple(request.features),
        no_default_features=request.no_default_features,
        locked=request.locked,
    )
    source, source_info, workspace_root = runner.compile_source(
        project_root, request.git_source, request.allow_dirty, settings
    )
    output_dir = (
        Path(request.output_dir) if request.output_dir
        else project_root / runner.DEFAULT_OUTPUT_DIR
    )
    result = runner.make_job(settings).run(
        CompileRequest(
            source=source,
            settings=build_settings,
            output_dir=output_dir,
            archive=request.archive,
            source_info=source_info,
            workspace_root=workspace_root,
        )
    )
    return runner.compile_output(result)


def _verify(request: VerifyContractRequest) -> VerificationResult:
    settings = get_settings()
    project_root = Path(request.project_root).resolve()

    if bool(request.address) == bool(request.hash):
        raise ConfigInvalid("Exactly one of 'address' or 'hash' is required")
    if request.hash:
        reference = LiteralHash(request.hash)
    else:
        network = resolve_network(request.network, request.rpc_url, request.chain_id)
        reference = DeployedContract(address=request.address, network=network)

    metadata_path = (
        Path(request.metadata_path) if request.metadata_path
        else runner.default_metadata_path(project_root)
    )
    if metadata_path is not None:
        metadata = load_metadata(metadata_path)
        source = source_from_metadata(metadata, metadata_path, project_root)
        build_settings = settings_from_metadata(metadata)
    else:
        source = SnapshotSource(archive=project_root)
        build_settings = make_settings()

    engine = runner.make_engine(settings, request.lock_drift_policy)
    return engine.verify(VerifyRequest(source=source, settings=build_settings, reference=reference))


# =============================================================================
# Router
# =============================================================================

router = APIRouter()


@router.post(
    "/compile",
    response_model=CompileOutput,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
    summary="Build a contract and write its artifact directory",
)
async def compile_contract_endpoint(request: CompileContractRequest):
    try:
        return await run_in_threadpool(_compile, request)
    except ContractBuilderError as e:
        _raise_http(e)


@router.post(
    "/verify",
    response_model=VerificationResult,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
    summary="Rebuild a contract and compare its rWASM hash with a reference",
)
async def verify_contract_endpoint(request: VerifyContractRequest):
    """
    Every verification outcome (match, mismatch, build failure, source or
    network problems) is returned as a 200 with the result body. Only a
    malformed request is rejected.
    """
    try:
        return await run_in_threadpool(_verify, request)
    except ContractBuilderError as e:
        _raise_http(e)


@router.get("/networks", summary="Known network presets")
async def list_networks() -> Dict[str, Dict[str, object]]:
    return {
        name: {"rpc_url": preset.rpc_url, "chain_id": preset.chain_id}
        for name, preset in sorted(NETWORKS.items())
    }
