"""
ToolchainAdapter — compile a resolved crate to base-format (WASM) bytecode.

The adapter interface is deliberately narrow so the build tool can be
swapped or faked in tests:

    adapter.compile(settings, project_dir, source_root) -> ToolchainOutput

``CargoToolchain`` drives ``cargo build`` for the configured target and
records the rustc version/commit that actually ran (after rustup has
applied the project's ``rust-toolchain.toml``).
"""
from __future__ import annotations

import abc
import json
import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from contract_builder.core.manifest import ContractInfo, read_contract_info, read_toolchain_pin
from contract_builder.errors import CompilationFailed, LockfileDrift, ToolchainMissing
from contract_builder.policy.build_settings import BuildSettings

logger = logging.getLogger(__name__)

# stderr fragments cargo/rustc emit when the wasm target is not installed
_MISSING_TARGET_MARKERS = (
    "may not be installed",
    "can't find crate for `core`",
    "can't find crate for `std`",
    "toolchain '",
)

_LOCK_DRIFT_MARKERS = (
    "needs to be updated but --locked was passed",
    "lock file needs to be updated",
    "--locked was passed to prevent this",
)


@dataclass(frozen=True)
class ToolchainIdentity:
    """The compiler that actually produced the bytecode."""
    name: str                 # "rustc"
    version: str              # "1.83.0" / "1.84.0-nightly"
    commit: str               # full commit hash, or "unknown"
    host: str = "unknown"
    channel_pin: str = ""     # channel requested by rust-toolchain.toml

    def identity_string(self) -> str:
        return f"{self.name} {self.version} ({self.commit})"


@dataclass(frozen=True)
class ToolchainOutput:
    wasm: bytes
    identity: ToolchainIdentity
    command: str
    duration_ms: int = 0


class ToolchainAdapter(abc.ABC):
    """Compile a project directory with the given build settings."""

    @abc.abstractmethod
    def compile(
        self,
        settings: BuildSettings,
        project_dir: Path,
        source_root: Optional[Path] = None,
    ) -> ToolchainOutput:
        """*source_root* is the directory the project was materialized into."""
        ...


# =============================================================================
# Process helpers
# =============================================================================

def run_process_group(
    cmd: List[str],
    cwd: Path,
    timeout: int,
    env: Optional[Dict[str, str]] = None,
) -> Tuple[str, str, int]:
    """
    Run *cmd* in its own session and return (stdout, stderr, exit_code).

    On timeout the whole process group is killed so no orphaned compiler
    processes survive, then ``subprocess.TimeoutExpired`` is re-raised.
    """
    proc = subprocess.Popen(
        cmd,
        cwd=str(cwd),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
        start_new_session=True,
    )
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.communicate()
        raise
    return stdout, stderr, proc.returncode


def _parse_rustc_verbose(text: str) -> Dict[str, str]:
    """``rustc -vV`` output -> {"release": ..., "commit-hash": ..., "host": ...}."""
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        if ":" in line:
            key, value = line.split(":", 1)
            fields[key.strip()] = value.strip()
    return fields


# =============================================================================
# Cargo
# =============================================================================

class CargoToolchain(ToolchainAdapter):
    """``cargo build --target <triple>`` with lock enforcement and timeouts."""

    def __init__(
        self,
        timeout: int = 600,
        cargo_bin: str = "cargo",
        rustc_bin: str = "rustc",
    ):
        self.timeout = timeout
        self.cargo_bin = cargo_bin
        self.rustc_bin = rustc_bin

    # -----------------------------------------------------------------
    # Toolchain identity
    # -----------------------------------------------------------------

    def capture_identity(self, project_dir: Path) -> ToolchainIdentity:
        """Identity of the rustc rustup selects inside *project_dir*."""
        pin = read_toolchain_pin(project_dir)
        try:
            r = subprocess.run(
                [self.rustc_bin, "-vV"],
                cwd=str(project_dir),
                capture_output=True,
                text=True,
                timeout=120,
            )
        except FileNotFoundError:
            raise ToolchainMissing(f"rustc not found: {self.rustc_bin}")
        except subprocess.TimeoutExpired:
            raise ToolchainMissing("rustc -vV timed out (toolchain installation?)")

        if r.returncode != 0:
            raise ToolchainMissing(
                f"Toolchain '{pin}' is not usable: {r.stderr.strip()}"
            )
        fields = _parse_rustc_verbose(r.stdout)
        return ToolchainIdentity(
            name="rustc",
            version=fields.get("release", "unknown"),
            commit=fields.get("commit-hash", "unknown"),
            host=fields.get("host", "unknown"),
            channel_pin=pin,
        )

    # -----------------------------------------------------------------
    # Build
    # -----------------------------------------------------------------

    def _build_env(self, project_dir: Path) -> Dict[str, str]:
        env = dict(os.environ)
        env["CARGO_TARGET_DIR"] = str(project_dir / "target")
        env.setdefault("SOURCE_DATE_EPOCH", "0")
        # Host-specific flags would leak into the artifact, and either one
        # would replace the project's own target rustflags
        env.pop("RUSTFLAGS", None)
        env.pop("CARGO_ENCODED_RUSTFLAGS", None)
        return env

    def remap_args(self, settings: BuildSettings, source_root: Path, env: Dict[str, str]) -> List[str]:
        """
        ``--config`` arguments rewriting the per-build workspace and the cargo
        home to fixed prefixes, so embedded source paths (panic locations,
        ``file!()``) are the same on every machine and every run.

        Config arrays from the command line are appended to the project's
        ``.cargo/config.toml`` rustflags for the target, not substituted.
        """
        cargo_home = Path(env.get("CARGO_HOME") or Path.home() / ".cargo")
        flags = [
            f"--remap-path-prefix={cargo_home}=/cargo",
            f"--remap-path-prefix={source_root}=/workspace",
        ]
        return ["--config", f"target.{settings.target}.rustflags={json.dumps(flags)}"]

    def wasm_path(self, settings: BuildSettings, project_dir: Path, contract: ContractInfo) -> Path:
        return (
            project_dir / "target" / settings.target / settings.profile_dir
            / f"{contract.artifact_stem}.wasm"
        )

    def compile(
        self,
        settings: BuildSettings,
        project_dir: Path,
        source_root: Optional[Path] = None,
    ) -> ToolchainOutput:
        contract = read_contract_info(project_dir)
        if settings.locked and not (project_dir / "Cargo.lock").is_file():
            raise LockfileDrift(
                "Lock enforcement requested but Cargo.lock is missing",
                diagnostics="",
            )

        identity = self.capture_identity(project_dir)
        env = self._build_env(project_dir)
        cmd = [self.cargo_bin] + settings.cargo_args() + self.remap_args(
            settings, source_root or project_dir, env
        )
        cmd_str = " ".join(cmd)
        logger.info("Compiling %s with %s: %s", contract.name, identity.identity_string(), cmd_str)

        t0 = time.monotonic()
        try:
            stdout, stderr, exit_code = run_process_group(
                cmd, project_dir, self.timeout, env=env
            )
        except FileNotFoundError:
            raise ToolchainMissing(f"cargo not found: {self.cargo_bin}")
        except subprocess.TimeoutExpired:
            raise CompilationFailed(
                f"TIMEOUT after {self.timeout}s", diagnostics=f"TIMEOUT after {self.timeout}s"
            )
        duration = int((time.monotonic() - t0) * 1000)

        if stderr:
            logger.debug("cargo stderr:\n%s", stderr)

        if exit_code != 0:
            if any(m in stderr for m in _LOCK_DRIFT_MARKERS):
                raise LockfileDrift(
                    "Cargo.lock is out of date with Cargo.toml (--locked)",
                    diagnostics=stderr,
                )
            if any(m in stderr for m in _MISSING_TARGET_MARKERS):
                raise ToolchainMissing(
                    f"Target {settings.target} is not installed for toolchain "
                    f"'{identity.channel_pin}' (rustup target add {settings.target})"
                )
            raise CompilationFailed(
                f"cargo build exited with code {exit_code}", diagnostics=stderr
            )

        wasm_path = self.wasm_path(settings, project_dir, contract)
        if not wasm_path.is_file():
            raise CompilationFailed(
                f"Build succeeded but {wasm_path.name} was not produced "
                "(is the crate a cdylib?)",
                diagnostics=stderr,
            )
        wasm = wasm_path.read_bytes()
        logger.info("Built %s (%d bytes) in %d ms", wasm_path.name, len(wasm), duration)
        return ToolchainOutput(wasm=wasm, identity=identity, command=cmd_str, duration_ms=duration)
