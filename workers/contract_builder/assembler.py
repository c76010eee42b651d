"""
ArtifactAssembler — bytecode + interface + build facts → artifact set.

Computes every hash that makes a build independently checkable and
produces the in-memory contents of the artifact directory. Writing the
files is left to ``io.writer``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from contract_builder.core.manifest import ContractInfo, SdkInfo
from contract_builder.core.router_index import InterfaceDescription
from contract_builder.core.toolchain import ToolchainIdentity
from contract_builder.core.tree_hash import hash_bytes
from contract_builder.io.abi import abi_json_text, generate_abi
from contract_builder.io.interface import generate_interface
from contract_builder.io.schema import (
    AbiFunction,
    ArtifactInfo,
    BuildCfg,
    BuildMetadata,
    BytecodeInfo,
    CompilationSettings,
    ContractInfoModel,
    Dependencies,
    RustInfo,
    SdkInfoModel,
    SolidityCompatibility,
    SourceInfo,
)
from contract_builder.policy.build_settings import BuildSettings

logger = logging.getLogger(__name__)

# Artifact directory layout
WASM_FILE = "lib.wasm"
RWASM_FILE = "lib.rwasm"
ABI_FILE = "abi.json"
INTERFACE_FILE = "interface.sol"
METADATA_FILE = "metadata.json"
ARCHIVE_FILE = "sources.tar.gz"


@dataclass(frozen=True)
class CompilationOutputs:
    wasm: bytes
    rwasm: bytes


@dataclass(frozen=True)
class BuildFacts:
    """Everything about the build that is not bytecode or interface."""
    contract: ContractInfo
    toolchain: ToolchainIdentity
    sdk: SdkInfo
    source_tree_hash: str
    cargo_lock_hash: str
    built_at: int
    workspace_root: Optional[str] = None


@dataclass(frozen=True)
class ArtifactSet:
    contract: ContractInfo
    outputs: CompilationOutputs
    metadata: BuildMetadata
    abi: Optional[List[AbiFunction]] = None
    interface_text: Optional[str] = None
    source_archive: Optional[bytes] = None

    @property
    def dir_name(self) -> str:
        return f"{self.contract.name}.wasm"

    @property
    def rwasm_hash(self) -> str:
        return self.metadata.bytecode.rwasm.hash

    def files(self) -> Dict[str, bytes]:
        """Artifact file name -> contents, in a fixed order."""
        out: Dict[str, bytes] = {
            WASM_FILE: self.outputs.wasm,
            RWASM_FILE: self.outputs.rwasm,
        }
        if self.abi is not None:
            out[ABI_FILE] = abi_json_text(self.abi).encode("utf-8")
        if self.interface_text is not None:
            out[INTERFACE_FILE] = self.interface_text.encode("utf-8")
        out[METADATA_FILE] = self.metadata.to_json().encode("utf-8")
        if self.source_archive is not None:
            out[ARCHIVE_FILE] = self.source_archive
        return out


def compute_toolchain_hash(toolchain: ToolchainIdentity, sdk: SdkInfo) -> str:
    """hash(toolchain identity ‖ SDK identity)."""
    combined = f"{toolchain.identity_string()}\n{sdk.identity_string()}"
    return hash_bytes(combined.encode("utf-8"))


def assemble(
    outputs: CompilationOutputs,
    interface: InterfaceDescription,
    facts: BuildFacts,
    settings: BuildSettings,
    source_info: SourceInfo,
    source_archive: Optional[bytes] = None,
) -> ArtifactSet:
    """
    Build the artifact set for one compilation.

    An empty interface (no ``#[router]``) skips ABI and interface files;
    the bytecode artifacts are produced regardless.
    """
    abi: Optional[List[AbiFunction]] = None
    interface_text: Optional[str] = None
    compat: Optional[SolidityCompatibility] = None
    if not interface.is_empty:
        abi = generate_abi(interface)
        interface_text = generate_interface(facts.contract.name, abi)
        compat = SolidityCompatibility(
            abi_path=ABI_FILE,
            interface_path=INTERFACE_FILE,
            function_selectors=interface.function_selectors,
        )

    metadata = BuildMetadata(
        contract=ContractInfoModel(name=facts.contract.name, version=facts.contract.version),
        source=source_info,
        compilation_settings=CompilationSettings(
            rust=RustInfo(
                version=facts.toolchain.version,
                commit=facts.toolchain.commit,
                target=settings.target,
            ),
            sdk=SdkInfoModel(tag=facts.sdk.tag, commit=facts.sdk.commit),
            build_cfg=BuildCfg(
                profile=settings.profile,
                features=list(settings.features) or None,
                no_default_features=settings.no_default_features,
                locked=settings.locked,
            ),
        ),
        built_at=facts.built_at,
        bytecode=BytecodeInfo(
            wasm=ArtifactInfo(
                hash=hash_bytes(outputs.wasm), size=len(outputs.wasm), path=WASM_FILE
            ),
            rwasm=ArtifactInfo(
                hash=hash_bytes(outputs.rwasm), size=len(outputs.rwasm), path=RWASM_FILE
            ),
        ),
        solidity_compatibility=compat,
        dependencies=Dependencies(cargo_lock_hash=facts.cargo_lock_hash),
        workspace_root=facts.workspace_root,
        toolchain_hash=compute_toolchain_hash(facts.toolchain, facts.sdk),
        source_tree_hash=facts.source_tree_hash,
    )

    logger.info(
        "Assembled %s: rwasm %s (%d bytes), %d selector(s)",
        facts.contract.name,
        metadata.bytecode.rwasm.hash[:16],
        metadata.bytecode.rwasm.size,
        len(interface.methods),
    )
    return ArtifactSet(
        contract=facts.contract,
        outputs=outputs,
        metadata=metadata,
        abi=abi,
        interface_text=interface_text,
        source_archive=source_archive,
    )
