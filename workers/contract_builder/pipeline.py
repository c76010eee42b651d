"""
Contract build job — source → interface → WASM → rWASM → artifact set.

Stages run strictly in order; any error leaving a stage is tagged with
that stage's name:

    resolve_source → configure → extract_interface → compile → convert
                   → assemble → write_artifacts

A fresh build and a verification recompile go through the same
``build`` method, so both produce byte-identical results for the same
resolved tree and settings.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from contract_builder.assembler import (
    ArtifactSet,
    BuildFacts,
    CompilationOutputs,
    assemble,
)
from contract_builder.core.converter import FormatConverter
from contract_builder.core.manifest import lockfile_hash, read_contract_info, read_sdk_info
from contract_builder.core.router_index import InterfaceDescription, extract_interface
from contract_builder.core.source import (
    ContractSource,
    ResolvedSource,
    SourceResolver,
    VersionControlledSource,
)
from contract_builder.core.toolchain import ToolchainAdapter
from contract_builder.core.tree_hash import build_timestamp
from contract_builder.errors import ContractBuilderError
from contract_builder.io.archive import build_source_archive
from contract_builder.io.schema import (
    ArchiveSourceInfo,
    GitSourceInfo,
    SnapshotSourceInfo,
    SourceInfo,
)
from contract_builder.io.writer import write_artifacts
from contract_builder.policy.build_settings import BuildSettings

logger = logging.getLogger(__name__)


@contextmanager
def stage(name: str) -> Iterator[None]:
    """Tag any pipeline error raised inside the block with *name*."""
    logger.debug("Stage %s", name)
    try:
        yield
    except ContractBuilderError as e:
        e.at_stage(name)
        raise


def default_source_info(resolved: ResolvedSource, archived: bool) -> SourceInfo:
    """
    Source descriptor recorded in metadata.

    A version-controlled build is described by reference only when the
    tree came from a clean checkout; otherwise it falls back to the
    archive (or, without one, to a plain snapshot).
    """
    source = resolved.source
    project_path = source.inner_project_path or "."
    if isinstance(source, VersionControlledSource) and resolved.reproducible_by_reference:
        return GitSourceInfo(
            repository=source.repository_ref,
            commit=source.commit_id,
            project_path=project_path,
        )
    if archived:
        return ArchiveSourceInfo()
    return SnapshotSourceInfo(project_path=project_path)


@dataclass
class CompileRequest:
    source: ContractSource
    settings: BuildSettings
    output_dir: Optional[Path] = None
    archive: bool = False
    # Overrides the descriptor derived from the source (e.g. normalized remote URL)
    source_info: Optional[SourceInfo] = None
    workspace_root: Optional[str] = None


@dataclass
class BuildResult:
    artifacts: ArtifactSet
    interface: InterfaceDescription
    source_tree_hash: str
    output_path: Optional[Path] = None

    @property
    def rwasm_hash(self) -> str:
        return self.artifacts.rwasm_hash


class ContractBuildJob:
    """
    Runs the build stages against a toolchain and converter.

    Both collaborators are narrow interfaces; tests pass in doubles that
    derive bytes from the source tree.
    """

    def __init__(
        self,
        toolchain: ToolchainAdapter,
        converter: FormatConverter,
        resolver: Optional[SourceResolver] = None,
        keep_workspace: bool = False,
    ):
        self.toolchain = toolchain
        self.converter = converter
        self.resolver = resolver or SourceResolver()
        self.keep_workspace = keep_workspace

    # -----------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------

    def resolve(self, source: ContractSource) -> ResolvedSource:
        with stage("resolve_source"):
            return self.resolver.resolve(source)

    def build(
        self,
        resolved: ResolvedSource,
        settings: BuildSettings,
        archive: bool = False,
        source_info: Optional[SourceInfo] = None,
        workspace_root: Optional[str] = None,
    ) -> BuildResult:
        """Compile an already resolved tree into an in-memory artifact set."""
        project_dir = resolved.project_dir

        # A dirty VCS build can only be reproduced from its archive
        if isinstance(resolved.source, VersionControlledSource) and not resolved.reproducible_by_reference:
            archive = True

        with stage("configure"):
            contract = read_contract_info(project_dir)

        with stage("extract_interface"):
            interface = extract_interface(project_dir, contract.name)

        with stage("compile"):
            toolchain_out = self.toolchain.compile(
                settings, project_dir, source_root=resolved.workspace_dir
            )

        with stage("convert"):
            rwasm = self.converter.convert(toolchain_out.wasm, settings.rwasm)

        with stage("assemble"):
            source_archive = build_source_archive(project_dir) if archive else None
            if source_info is None or (
                isinstance(source_info, GitSourceInfo) and not resolved.reproducible_by_reference
            ):
                source_info = default_source_info(resolved, archive)
            if workspace_root is None and resolved.source.inner_project_path:
                workspace_root = resolved.source.inner_project_path
            facts = BuildFacts(
                contract=contract,
                toolchain=toolchain_out.identity,
                sdk=read_sdk_info(project_dir),
                source_tree_hash=resolved.tree_hash,
                cargo_lock_hash=lockfile_hash(project_dir),
                built_at=build_timestamp(),
                workspace_root=workspace_root,
            )
            artifacts = assemble(
                CompilationOutputs(wasm=toolchain_out.wasm, rwasm=rwasm),
                interface,
                facts,
                settings,
                source_info,
                source_archive=source_archive,
            )

        return BuildResult(
            artifacts=artifacts,
            interface=interface,
            source_tree_hash=resolved.tree_hash,
        )

    # -----------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------

    def run(self, request: CompileRequest) -> BuildResult:
        """Resolve, build, and (if ``output_dir`` is set) write the artifact set."""
        resolved = self.resolve(request.source)
        try:
            result = self.build(
                resolved,
                request.settings,
                archive=request.archive,
                source_info=request.source_info,
                workspace_root=request.workspace_root,
            )
            if request.output_dir is not None:
                with stage("write_artifacts"):
                    result.output_path = write_artifacts(result.artifacts, request.output_dir)
        finally:
            if self.keep_workspace:
                logger.info("Keeping workspace %s", resolved.workspace_dir)
            else:
                resolved.cleanup()

        logger.info(
            "Built %s %s: rwasm %s",
            result.artifacts.contract.name,
            result.artifacts.contract.version,
            result.rwasm_hash[:16],
        )
        return result


def compile_contract(
    job: ContractBuildJob,
    source: ContractSource,
    settings: BuildSettings,
    output_dir: Optional[Path] = None,
    archive: bool = False,
) -> BuildResult:
    """Convenience wrapper around :meth:`ContractBuildJob.run`."""
    return job.run(CompileRequest(source, settings, output_dir=output_dir, archive=archive))
