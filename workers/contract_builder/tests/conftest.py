"""
Test fixtures for contract_builder.

Provides sample contract projects (Rust sources + manifests written to
tmp_path) and toolchain/converter doubles whose output bytes are derived
from the source tree, so the whole pipeline runs without cargo.
"""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import textwrap
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from contract_builder.core.converter import FormatConverter
from contract_builder.core.source import SourceResolver
from contract_builder.core.toolchain import ToolchainAdapter, ToolchainIdentity, ToolchainOutput
from contract_builder.core.tree_hash import compute_tree_hash
from contract_builder.errors import LockfileDrift
from contract_builder.pipeline import ContractBuildJob
from contract_builder.policy.build_settings import BuildSettings, RwasmConfig


# ── Sample contract project ─────────────────────────────────────────────────

CARGO_TOML = textwrap.dedent("""\
    [package]
    name = "power"
    version = "0.1.0"
    edition = "2021"

    [lib]
    crate-type = ["cdylib", "staticlib"]

    [dependencies]
    fluentbase-sdk = { git = "https://github.com/fluentlabs-xyz/fluentbase", tag = "v0.1.0-dev", default-features = false }

    [features]
    default = ["std"]
    std = ["fluentbase-sdk/std"]
""")

CARGO_LOCK = textwrap.dedent("""\
    # This file is automatically @generated by Cargo.
    # It is not intended for manual editing.
    version = 3

    [[package]]
    name = "fluentbase-sdk"
    version = "0.1.0-dev"
    source = "git+https://github.com/fluentlabs-xyz/fluentbase?tag=v0.1.0-dev#8bb6eb1c4d4f2fa10cbd5c7e10ea3bdb4a0b9ed2"

    [[package]]
    name = "power"
    version = "0.1.0"
    dependencies = [
     "fluentbase-sdk",
    ]
""")

RUST_TOOLCHAIN_TOML = textwrap.dedent("""\
    [toolchain]
    channel = "1.83.0"
    targets = ["wasm32-unknown-unknown"]
""")

POWER_LIB_RS = textwrap.dedent("""\
    #![cfg_attr(target_arch = "wasm32", no_std)]
    extern crate alloc;

    use fluentbase_sdk::{
        basic_entrypoint,
        derive::{router, Contract},
        SharedAPI,
        U256,
    };

    #[derive(Contract)]
    struct POWER<SDK> {
        sdk: SDK,
    }

    pub trait PowerAPI {
        fn power(&self, base: U256, exponent: U256) -> U256;
    }

    #[router(mode = "solidity")]
    impl<SDK: SharedAPI> PowerAPI for POWER<SDK> {
        fn power(&self, base: U256, exponent: U256) -> U256 {
            base.pow(exponent)
        }
    }

    impl<SDK: SharedAPI> POWER<SDK> {
        fn deploy(&self) {}
    }

    basic_entrypoint!(POWER);
""")

GREETER_LIB_RS = textwrap.dedent("""\
    use fluentbase_sdk::{derive::router, Address, SharedAPI, U256};

    struct Greeter<SDK> {
        sdk: SDK,
    }

    #[router(mode = "solidity")]
    impl<SDK: SharedAPI> Greeter<SDK> {
        pub fn greeting(&self) -> String {
            String::from("hello")
        }

        pub fn set_greeting(&mut self, message: String) {}

        pub fn balance_of(&self, owner: Address) -> U256 {
            U256::ZERO
        }

        pub fn sum(values: Vec<U256>) -> (U256, bool) {
            (U256::ZERO, true)
        }

        pub fn deploy(&mut self) {}

        fn internal_helper(&self) -> u32 {
            0
        }
    }
""")

NO_ROUTER_LIB_RS = textwrap.dedent("""\
    use fluentbase_sdk::SharedAPI;

    pub fn main_entry<SDK: SharedAPI>(sdk: SDK) {
        let _ = sdk;
    }
""")

COLLISION_LIB_RS = textwrap.dedent("""\
    use fluentbase_sdk::{derive::router, SharedAPI, U256};

    struct Clash<SDK> {
        sdk: SDK,
    }

    #[router(mode = "solidity")]
    impl<SDK: SharedAPI> Clash<SDK> {
        pub fn transfer(&mut self, amount: U256) {}

        #[function_id("transfer(uint256)")]
        pub fn transfer_again(&mut self, amount: U256) {}
    }
""")

UNSUPPORTED_LIB_RS = textwrap.dedent("""\
    use fluentbase_sdk::{derive::router, SharedAPI};
    use std::collections::HashMap;

    struct Store<SDK> {
        sdk: SDK,
    }

    #[router(mode = "solidity")]
    impl<SDK: SharedAPI> Store<SDK> {
        pub fn load(&self, entries: HashMap<u32, u32>) -> u32 {
            0
        }
    }
""")

EMPTY_ROUTER_LIB_RS = textwrap.dedent("""\
    use fluentbase_sdk::{derive::router, SharedAPI};

    struct Quiet<SDK> {
        sdk: SDK,
    }

    #[router(mode = "solidity")]
    impl<SDK: SharedAPI> Quiet<SDK> {
        fn private_only(&self) {}
    }
""")

GITIGNORE = "notes/\n*.bak.rs\n"


def write_project(root: Path, lib_rs: str = POWER_LIB_RS, lock: bool = True) -> Path:
    """Write a complete contract project into *root* and return it."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(CARGO_TOML)
    if lock:
        (root / "Cargo.lock").write_text(CARGO_LOCK)
    (root / "rust-toolchain.toml").write_text(RUST_TOOLCHAIN_TOML)
    (root / "src").mkdir(exist_ok=True)
    (root / "src" / "lib.rs").write_text(lib_rs)
    return root


# ── WASM module builder ─────────────────────────────────────────────────────

def _uleb128(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _name(s: str) -> bytes:
    raw = s.encode("utf-8")
    return _uleb128(len(raw)) + raw


def _section(section_id: int, payload: bytes) -> bytes:
    return bytes([section_id]) + _uleb128(len(payload)) + payload


def build_module(exports: Dict[str, int], custom: bytes = b"") -> bytes:
    """
    Minimal WASM binary with an export section (name -> kind byte) and an
    optional custom section carrying *custom*.
    """
    body = b"\x00asm\x01\x00\x00\x00"
    if custom:
        body += _section(0, _name("wasmforge.test") + custom)
    entries = b"".join(_name(n) + bytes([kind]) + _uleb128(i) for i, (n, kind) in enumerate(exports.items()))
    body += _section(7, _uleb128(len(exports)) + entries)
    return body


# ── Doubles ─────────────────────────────────────────────────────────────────

TEST_IDENTITY = ToolchainIdentity(
    name="rustc",
    version="1.83.0",
    commit="90b35a6239c3d8bdabc530a6a0816f7ff89a0aaf",
    host="x86_64-unknown-linux-gnu",
    channel_pin="1.83.0",
)


class FakeToolchain(ToolchainAdapter):
    """
    Emits a module exporting ``main`` whose bytes depend only on the
    source tree and the cargo arguments.
    """

    def __init__(self, lock_drift: bool = False):
        self.lock_drift = lock_drift
        self.calls: List[Path] = []

    def compile(
        self, settings: BuildSettings, project_dir: Path, source_root: Optional[Path] = None
    ) -> ToolchainOutput:
        self.calls.append(project_dir)
        if self.lock_drift:
            raise LockfileDrift("Cargo.lock is out of date with Cargo.toml (--locked)")
        digest = hashlib.sha256(
            (compute_tree_hash(project_dir) + " ".join(settings.cargo_args())).encode()
        ).digest()
        wasm = build_module({"main": 0, "memory": 2}, custom=digest)
        return ToolchainOutput(wasm=wasm, identity=TEST_IDENTITY, command="cargo " + " ".join(settings.cargo_args()))


class FakeConverter(FormatConverter):
    """rWASM = marker + sha256(wasm ‖ entrypoint ‖ stack layout)."""

    def __init__(self):
        self.calls = 0

    def _convert(self, wasm: bytes, config: RwasmConfig) -> bytes:
        self.calls += 1
        h = hashlib.sha256(wasm + config.entrypoint.encode() + config.stack_layout.value.encode())
        return b"\xefRWASM" + h.digest()


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def power_project(tmp_path: Path) -> Path:
    """The power contract with lock file and pinned toolchain."""
    return write_project(tmp_path / "power")


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    d = tmp_path / "workspaces"
    d.mkdir()
    return d


@pytest.fixture
def resolver(workspace_root: Path) -> SourceResolver:
    return SourceResolver(workspace_root)


@pytest.fixture
def fake_toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture
def fake_converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def build_job(fake_toolchain, fake_converter, resolver) -> ContractBuildJob:
    return ContractBuildJob(fake_toolchain, fake_converter, resolver)


# ── Git helpers ─────────────────────────────────────────────────────────────

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")


def git(cwd: Path, *args: str) -> str:
    r = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
        env={
            "GIT_AUTHOR_NAME": "Test",
            "GIT_AUTHOR_EMAIL": "test@example.com",
            "GIT_COMMITTER_NAME": "Test",
            "GIT_COMMITTER_EMAIL": "test@example.com",
            "GIT_CONFIG_NOSYSTEM": "1",
            "HOME": str(cwd),
            "PATH": os.environ.get("PATH", ""),
        },
    )
    return r.stdout.strip()


def init_repo(root: Path, remote: Optional[str] = "git@github.com:example/power.git") -> str:
    """Commit everything under *root* and return the commit hash."""
    git(root, "init", "--quiet")
    git(root, "add", "-A")
    git(root, "commit", "--quiet", "-m", "initial")
    if remote:
        git(root, "remote", "add", "origin", remote)
    return git(root, "rev-parse", "HEAD")


@pytest.fixture
def git_project(power_project: Path) -> Path:
    """power_project committed into a fresh git repository."""
    if shutil.which("git") is None:
        pytest.skip("git binary not available")
    init_repo(power_project)
    return power_project
