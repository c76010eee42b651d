"""
wasmforge command line.

    wasmforge compile [PROJECT_ROOT] [-o out] [--profile P] [--features F ...]
                      [--no-default-features] [--no-locked]
                      [--archive] [--git-source] [--allow-dirty] [--json] [-v]

    wasmforge verify  [PROJECT_ROOT] (--address A | --hash H)
                      [--network N | --rpc URL --chain-id ID]
                      [--metadata PATH] [--export-abi PATH]
                      [--lock-drift {build_failed,mismatch}] [--json] [-v]

Exit code 0 on a successful build or a matching verification, 1 otherwise.
With ``--json`` exactly one document is printed: success on stdout,
errors on stderr.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from contract_builder import __version__
from contract_builder.chain import ChainClient, Web3ChainClient
from contract_builder.config import NETWORKS, Settings, get_settings, resolve_network
from contract_builder.core.converter import FormatConverter, SubprocessConverter
from contract_builder.core.git_info import detect_git_info, repo_toplevel
from contract_builder.core.manifest import read_contract_info
from contract_builder.core.source import (
    ContractSource,
    SnapshotSource,
    SourceResolver,
    VersionControlledSource,
)
from contract_builder.core.toolchain import CargoToolchain, ToolchainAdapter
from contract_builder.errors import ConfigInvalid, ContractBuilderError, SourceUnavailable
from contract_builder.io.schema import (
    CompileOutput,
    ContractInfoModel,
    GitSourceInfo,
    SourceInfo,
    VerificationResult,
    VerifyOutput,
)
from contract_builder.pipeline import BuildResult, CompileRequest, ContractBuildJob
from contract_builder.policy.build_settings import BuildSettings, make_settings
from contract_builder.verifier import (
    DeployedContract,
    LiteralHash,
    LockDriftPolicy,
    VerificationEngine,
    VerifyRequest,
    load_metadata,
    settings_from_metadata,
    source_from_metadata,
)

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = "out"


# ── Collaborators ───────────────────────────────────────────────────────────

def make_toolchain(settings: Settings) -> ToolchainAdapter:
    return CargoToolchain(
        timeout=settings.compile_timeout,
        cargo_bin=settings.cargo_bin,
        rustc_bin=settings.rustc_bin,
    )


def make_converter(settings: Settings) -> FormatConverter:
    return SubprocessConverter(settings.converter_command, timeout=settings.convert_timeout)


def make_chain_client(settings: Settings) -> ChainClient:
    return Web3ChainClient(timeout=settings.rpc_timeout)


def make_job(settings: Settings) -> ContractBuildJob:
    return ContractBuildJob(
        make_toolchain(settings),
        make_converter(settings),
        SourceResolver(Path(settings.workspace_root), git_bin=settings.git_bin),
        keep_workspace=settings.keep_workspace,
    )


def make_engine(settings: Settings, lock_drift_policy: LockDriftPolicy) -> VerificationEngine:
    return VerificationEngine(
        make_chain_client(settings),
        make_toolchain(settings),
        make_converter(settings),
        SourceResolver(Path(settings.workspace_root), git_bin=settings.git_bin),
        lock_drift_policy=lock_drift_policy,
    )


# ── Compile ─────────────────────────────────────────────────────────────────

def build_settings_from_args(args: argparse.Namespace) -> BuildSettings:
    return make_settings(
        profile=args.profile,
        features=tuple(args.features or ()),
        no_default_features=args.no_default_features,
        locked=not args.no_locked,
    )


def compile_source(
    project_root: Path,
    git_source: bool,
    allow_dirty: bool,
    settings: Settings,
) -> Tuple[ContractSource, Optional[SourceInfo], Optional[str]]:
    """
    Choose the source variant for a local project.

    Returns (source, recorded source descriptor or None, workspace_root).
    """
    if not (project_root / "Cargo.toml").is_file():
        raise SourceUnavailable(f"Cargo.toml not found in {project_root}", stage="resolve_source")

    if not git_source:
        return SnapshotSource(archive=project_root), None, None

    info = detect_git_info(project_root, settings.git_bin)
    if info is None:
        raise ConfigInvalid(
            "--git-source requires a git repository with at least one commit",
            stage="resolve_source",
        )
    if not info.remote_url:
        raise ConfigInvalid(
            "--git-source requires a remote (git remote add origin <url>)",
            stage="resolve_source",
        )
    logger.info(
        "Git source %s @ %s (%s)%s",
        info.remote_url, info.commit_hash_short, info.branch,
        " [dirty]" if info.is_dirty else "",
    )
    source = VersionControlledSource(
        repository_ref=str(repo_toplevel(project_root, settings.git_bin)),
        commit_id=info.commit_hash,
        inner_project_path=info.project_path,
        allow_dirty=allow_dirty,
    )
    recorded = GitSourceInfo(
        repository=info.remote_url,
        commit=info.commit_hash,
        project_path=info.project_path or ".",
    )
    return source, recorded, info.project_path or None


def run_compile(args: argparse.Namespace, settings: Settings) -> BuildResult:
    project_root = Path(args.project_root).resolve()
    build_settings = build_settings_from_args(args)
    source, source_info, workspace_root = compile_source(
        project_root, args.git_source, args.allow_dirty, settings
    )
    output_dir = Path(args.output_dir)
    if not output_dir.is_absolute():
        output_dir = project_root / output_dir

    request = CompileRequest(
        source=source,
        settings=build_settings,
        output_dir=output_dir,
        archive=args.archive,
        source_info=source_info,
        workspace_root=workspace_root,
    )
    return make_job(settings).run(request)


def compile_output(result: BuildResult) -> CompileOutput:
    metadata = result.artifacts.metadata
    return CompileOutput(
        contract=ContractInfoModel(
            name=result.artifacts.contract.name,
            version=result.artifacts.contract.version,
        ),
        output_dir=str(result.output_path) if result.output_path else None,
        wasm_hash=metadata.bytecode.wasm.hash,
        rwasm_hash=metadata.bytecode.rwasm.hash,
        function_selectors=result.interface.function_selectors,
        metadata=metadata,
    )


# ── Verify ──────────────────────────────────────────────────────────────────

def default_metadata_path(project_root: Path) -> Optional[Path]:
    """``out/<contract>.wasm/metadata.json`` of a previous build, if present."""
    try:
        contract = read_contract_info(project_root)
    except ConfigInvalid as e:
        logger.debug("No default metadata: %s", e.message)
        return None
    candidate = project_root / DEFAULT_OUTPUT_DIR / f"{contract.name}.wasm" / "metadata.json"
    return candidate if candidate.is_file() else None


def verify_request_from_args(args: argparse.Namespace) -> VerifyRequest:
    project_root = Path(args.project_root).resolve()

    if args.hash:
        reference = LiteralHash(args.hash)
    else:
        network = resolve_network(args.network, args.rpc, args.chain_id)
        reference = DeployedContract(address=args.address, network=network)

    metadata_path = Path(args.metadata) if args.metadata else default_metadata_path(project_root)
    if metadata_path is not None:
        logger.info("Reusing build settings from %s", metadata_path)
        metadata = load_metadata(metadata_path)
        source = source_from_metadata(metadata, metadata_path, project_root)
        build_settings = settings_from_metadata(metadata)
    else:
        source = SnapshotSource(archive=project_root)
        build_settings = build_settings_from_args(args)

    return VerifyRequest(
        source=source,
        settings=build_settings,
        reference=reference,
        export_abi_path=Path(args.export_abi) if args.export_abi else None,
    )


def run_verify(args: argparse.Namespace, settings: Settings) -> VerificationResult:
    request = verify_request_from_args(args)
    engine = make_engine(settings, LockDriftPolicy(args.lock_drift))
    return engine.verify(request)


# ── Output ──────────────────────────────────────────────────────────────────

def _print_json(payload: dict, stream) -> None:
    stream.write(json.dumps(payload, indent=2) + "\n")


def _print_compile_summary(result: BuildResult) -> None:
    metadata = result.artifacts.metadata
    print(f"Contract: {metadata.contract.name} {metadata.contract.version}")
    print(f"WASM:  {metadata.bytecode.wasm.size} bytes  sha256 {metadata.bytecode.wasm.hash}")
    print(f"rWASM: {metadata.bytecode.rwasm.size} bytes  sha256 {metadata.bytecode.rwasm.hash}")
    for sig, selector in result.interface.function_selectors.items():
        print(f"  {selector}  {sig}")
    if result.output_path:
        print(f"Artifacts written to: {result.output_path}")


def _print_verify_summary(result: VerificationResult) -> None:
    print(f"Verification: {result.status.value.upper()}")
    if result.contract_name:
        print(f"Contract: {result.contract_name}")
    if result.computed_hash:
        print(f"Computed:  {result.computed_hash}")
    if result.reference_hash:
        print(f"Reference: {result.reference_hash}")
    if not result.matched:
        stage = f" [{result.failed_stage}]" if result.failed_stage else ""
        print(f"{result.error_type or 'Error'}{stage}: {result.detail}")
    elif result.error_type:
        print(f"Warning [{result.failed_stage}]: {result.detail}")


def verify_error_payload(result: VerificationResult) -> dict:
    payload = {
        "status": "error",
        "command": "verify",
        "error_type": result.error_type or result.status.value,
        "message": result.detail,
    }
    if result.failed_stage:
        payload["stage"] = result.failed_stage
    payload["result"] = result.model_dump(mode="json", exclude_none=True)
    return payload


# ── CLI ──────────────────────────────────────────────────────────────────────

def _add_common_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("project_root", nargs="?", default=".", help="Contract project directory")
    p.add_argument("--profile", default="release", help="Cargo build profile")
    p.add_argument("--features", nargs="+", default=None, help="Cargo features to enable")
    p.add_argument("--no-default-features", action="store_true", help="Disable default features")
    p.add_argument("--no-locked", action="store_true", help="Do not pass --locked to cargo")
    p.add_argument("--json", action="store_true", help="Machine-readable output")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wasmforge",
        description="wasmforge — reproducible Rust→WASM→rWASM contract builds and verification",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p_compile = sub.add_parser("compile", help="Build a contract and write its artifacts")
    _add_common_options(p_compile)
    p_compile.add_argument(
        "-o", "--output-dir",
        default=DEFAULT_OUTPUT_DIR,
        help="Artifact output directory (relative to the project)",
    )
    p_compile.add_argument("--archive", action="store_true", help="Write sources.tar.gz")
    p_compile.add_argument(
        "--git-source", action="store_true",
        help="Record the git repository and commit as the source",
    )
    p_compile.add_argument(
        "--allow-dirty", action="store_true",
        help="Build a git tree with uncommitted changes (recorded as an archive)",
    )

    p_verify = sub.add_parser("verify", help="Rebuild and compare with a deployed contract")
    _add_common_options(p_verify)
    ref = p_verify.add_mutually_exclusive_group(required=True)
    ref.add_argument("--address", help="Deployed contract address")
    ref.add_argument("--hash", help="Expected rWASM hash")
    p_verify.add_argument("--network", choices=sorted(NETWORKS), default=None)
    p_verify.add_argument("--rpc", default=None, help="Custom RPC endpoint")
    p_verify.add_argument("--chain-id", type=int, default=None, help="Chain id of --rpc")
    p_verify.add_argument("--metadata", default=None, help="metadata.json of the build to reproduce")
    p_verify.add_argument("--export-abi", default=None, help="Write the verified ABI here")
    p_verify.add_argument(
        "--lock-drift",
        choices=[p.value for p in LockDriftPolicy],
        default=LockDriftPolicy.BUILD_FAILED.value,
        help="Report Cargo.lock drift as a failed build or as a mismatch",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.json:
        # stderr carries the error document; keep warnings out of it
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.ERROR,
            format="%(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )
    else:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.INFO,
            format="%(levelname)s %(name)s: %(message)s",
        )

    settings = get_settings()
    try:
        if args.command == "compile":
            result = run_compile(args, settings)
            if args.json:
                _print_json(compile_output(result).model_dump(mode="json", exclude_none=True), sys.stdout)
            else:
                _print_compile_summary(result)
            return 0

        outcome = run_verify(args, settings)
    except ContractBuilderError as e:
        if args.json:
            _print_json(e.to_dict(), sys.stderr)
        else:
            logger.error("%s%s: %s", e.error_type, f" [{e.stage}]" if e.stage else "", e.message)
        return 1

    if args.json:
        if outcome.matched:
            _print_json(VerifyOutput(result=outcome).model_dump(mode="json", exclude_none=True), sys.stdout)
        else:
            _print_json(verify_error_payload(outcome), sys.stderr)
    else:
        _print_verify_summary(outcome)
    return 0 if outcome.matched else 1


if __name__ == "__main__":
    sys.exit(main())
