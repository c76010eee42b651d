"""Tests for the verification state machine and outcomes."""
import json
from pathlib import Path

import pytest

from contract_builder.chain import ChainClient
from contract_builder.config import NETWORKS, NetworkPreset
from contract_builder.core.source import SnapshotSource
from contract_builder.errors import ConfigInvalid, NetworkError, SourceUnavailable
from contract_builder.io.schema import VerificationStatus
from contract_builder.pipeline import compile_contract
from contract_builder.policy.build_settings import make_settings
from contract_builder.verifier import (
    DeployedContract,
    LiteralHash,
    LockDriftPolicy,
    VerificationEngine,
    VerifyRequest,
    VerifyState,
    hashes_equal,
    load_metadata,
    settings_from_metadata,
    source_from_metadata,
)

from .conftest import FakeConverter, FakeToolchain, write_project

ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ZERO_HASH = "0x" + "0" * 64


class StaticChainClient(ChainClient):
    """Returns a fixed code hash, or raises a fixed error."""

    def __init__(self, code_hash: str = "", error: Exception = None):
        self.code_hash = code_hash
        self.error = error
        self.requests = []

    def fetch_code_hash(self, address: str, network: NetworkPreset) -> str:
        self.requests.append((address, network.name))
        if self.error is not None:
            raise self.error
        return self.code_hash


@pytest.fixture(autouse=True)
def fixed_epoch(monkeypatch):
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1700000000")


@pytest.fixture
def reference_hash(build_job, power_project: Path) -> str:
    """The rWASM hash the fakes produce for an untouched power_project."""
    result = compile_contract(build_job, SnapshotSource(archive=power_project), make_settings())
    return "0x" + result.rwasm_hash


def _engine(resolver, chain_client=None, lock_drift=False, policy=LockDriftPolicy.BUILD_FAILED):
    return VerificationEngine(
        chain_client,
        FakeToolchain(lock_drift=lock_drift),
        FakeConverter(),
        resolver,
        lock_drift_policy=policy,
    )


def _request(project: Path, reference, **kwargs) -> VerifyRequest:
    return VerifyRequest(source=SnapshotSource(archive=project), settings=make_settings(), reference=reference, **kwargs)


class TestHashes:
    def test_prefix_and_case_insensitive(self):
        assert hashes_equal("0xABCD", "abcd")
        assert hashes_equal("  0xabcd\n", "0XABCD")
        assert not hashes_equal("0xabcd", "0xabce")


class TestVerifyLiteralHash:
    """Verification against a literal reference hash."""

    def test_match(self, resolver, power_project: Path, reference_hash: str):
        engine = _engine(resolver)
        result = engine.verify(_request(power_project, LiteralHash(reference_hash)))
        assert result.status == VerificationStatus.MATCH
        assert result.matched
        assert result.contract_name == "power"
        assert result.computed_hash == reference_hash
        assert result.state == "MATCHED"
        assert engine.history == [
            VerifyState.PENDING,
            VerifyState.SOURCE_RESOLVED,
            VerifyState.RECOMPILED,
            VerifyState.HASH_COMPARED,
            VerifyState.MATCHED,
        ]

    def test_match_without_prefix(self, resolver, power_project: Path, reference_hash: str):
        result = _engine(resolver).verify(_request(power_project, LiteralHash(reference_hash[2:].upper())))
        assert result.status == VerificationStatus.MATCH

    def test_zero_hash_mismatch(self, resolver, power_project: Path, reference_hash: str):
        result = _engine(resolver).verify(_request(power_project, LiteralHash(ZERO_HASH)))
        assert result.status == VerificationStatus.MISMATCH
        assert result.state == "MISMATCHED"
        assert reference_hash in result.detail
        assert ZERO_HASH in result.detail
        assert result.error_type == "Mismatch"

    def test_single_byte_source_change(self, resolver, power_project: Path, reference_hash: str):
        lib = power_project / "src" / "lib.rs"
        lib.write_text(lib.read_text().replace("base.pow(exponent)", "base.pow(exponenu)"))
        result = _engine(resolver).verify(_request(power_project, LiteralHash(reference_hash)))
        assert result.status == VerificationStatus.MISMATCH
        assert result.computed_hash != reference_hash

    def test_different_settings_mismatch(self, resolver, power_project: Path, reference_hash: str):
        request = VerifyRequest(
            source=SnapshotSource(archive=power_project),
            settings=make_settings(features=("std",)),
            reference=LiteralHash(reference_hash),
        )
        assert _engine(resolver).verify(request).status == VerificationStatus.MISMATCH

    def test_export_abi(self, resolver, power_project: Path, reference_hash: str, tmp_path: Path):
        path = tmp_path / "exported" / "abi.json"
        result = _engine(resolver).verify(_request(power_project, LiteralHash(reference_hash), export_abi_path=path))
        assert result.status == VerificationStatus.MATCH
        assert [f.name for f in result.abi] == ["power"]
        assert json.loads(path.read_text())[0]["name"] == "power"

    def test_failed_abi_export_keeps_the_match(
        self, resolver, power_project: Path, reference_hash: str, tmp_path: Path
    ):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        engine = _engine(resolver)
        result = engine.verify(
            _request(power_project, LiteralHash(reference_hash), export_abi_path=blocker / "abi.json")
        )
        assert result.status == VerificationStatus.MATCH
        assert result.state == "MATCHED"
        assert result.error_type == "ArtifactWriteError"
        assert result.failed_stage == "export_abi"
        assert "ABI export failed" in result.detail
        assert engine.history[-1] == VerifyState.MATCHED

    def test_no_abi_export_on_mismatch(self, resolver, power_project: Path, tmp_path: Path):
        path = tmp_path / "abi.json"
        result = _engine(resolver).verify(_request(power_project, LiteralHash(ZERO_HASH), export_abi_path=path))
        assert result.status == VerificationStatus.MISMATCH
        assert not path.exists()


class TestReferenceHash:
    """Reference hashes are validated before any build work."""

    @pytest.mark.parametrize("value", ["not-a-hash", "0x00", "0x\u00e9", "0x" + "g" * 64, "0x" + "0" * 65])
    def test_malformed_literal_rejected(self, value):
        with pytest.raises(ConfigInvalid) as exc:
            LiteralHash(value)
        assert exc.value.stage == "fetch_reference"

    def test_prefix_optional(self):
        assert LiteralHash("ab" * 32).value == "ab" * 32
        assert LiteralHash("0X" + "AB" * 32)

    def test_malformed_chain_hash_is_network_error(self, resolver, power_project: Path, workspace_root: Path):
        client = StaticChainClient(code_hash="0x1234")
        engine = _engine(resolver, chain_client=client)
        result = engine.verify(_request(power_project, DeployedContract(ADDRESS, NETWORKS["local"])))
        assert result.status == VerificationStatus.NETWORK_ERROR
        assert result.failed_stage == "fetch_reference"
        assert engine.history == [VerifyState.PENDING, VerifyState.FAILED]
        assert list(workspace_root.iterdir()) == []


class TestVerifyFailures:
    """Outcomes other than match/mismatch."""

    def test_source_unavailable(self, resolver, tmp_path: Path):
        engine = _engine(resolver)
        result = engine.verify(_request(tmp_path / "gone", LiteralHash(ZERO_HASH)))
        assert result.status == VerificationStatus.SOURCE_UNAVAILABLE
        assert result.failed_stage == "resolve_source"
        assert engine.history == [VerifyState.PENDING, VerifyState.FAILED]

    def test_lock_drift_is_build_failure_by_default(self, resolver, power_project: Path):
        engine = _engine(resolver, lock_drift=True)
        result = engine.verify(_request(power_project, LiteralHash(ZERO_HASH)))
        assert result.status == VerificationStatus.BUILD_FAILED
        assert result.state == "FAILED"
        assert result.failed_stage == "compile"
        assert result.error_type == "LockfileDrift"

    def test_lock_drift_as_mismatch(self, resolver, power_project: Path):
        engine = _engine(resolver, lock_drift=True, policy=LockDriftPolicy.MISMATCH)
        result = engine.verify(_request(power_project, LiteralHash(ZERO_HASH)))
        assert result.status == VerificationStatus.MISMATCH
        assert result.state == "MISMATCHED"
        assert "Cargo.lock" in result.detail
        assert engine.history[-1] == VerifyState.MISMATCHED

    def test_network_error(self, resolver, power_project: Path):
        client = StaticChainClient(error=NetworkError("connection refused"))
        engine = _engine(resolver, chain_client=client)
        result = engine.verify(_request(power_project, DeployedContract(ADDRESS, NETWORKS["local"])))
        assert result.status == VerificationStatus.NETWORK_ERROR
        assert result.failed_stage == "fetch_reference"
        assert client.requests == [(ADDRESS, "local")]

    def test_deployed_contract_match(self, resolver, power_project: Path, reference_hash: str):
        client = StaticChainClient(code_hash=reference_hash)
        result = _engine(resolver, chain_client=client).verify(
            _request(power_project, DeployedContract(ADDRESS, NETWORKS["fluent-dev"]))
        )
        assert result.status == VerificationStatus.MATCH
        assert result.reference_hash == reference_hash

    def test_deployed_contract_needs_client(self, resolver, power_project: Path):
        result = _engine(resolver).verify(_request(power_project, DeployedContract(ADDRESS, NETWORKS["local"])))
        assert result.status == VerificationStatus.BUILD_FAILED
        assert result.error_type == "ConfigInvalid"

    def test_build_failure(self, resolver, power_project: Path):
        (power_project / "Cargo.toml").write_text('[package]\nname = "power"\nversion = "0.1.0"\n')
        result = _engine(resolver).verify(_request(power_project, LiteralHash(ZERO_HASH)))
        assert result.status == VerificationStatus.BUILD_FAILED
        assert result.failed_stage == "configure"

    def test_workspace_removed_after_verify(self, resolver, power_project: Path, workspace_root: Path):
        _engine(resolver).verify(_request(power_project, LiteralHash(ZERO_HASH)))
        assert list(workspace_root.iterdir()) == []


class TestStateMachine:
    def test_engine_is_single_use(self, resolver, power_project: Path):
        engine = _engine(resolver)
        engine.verify(_request(power_project, LiteralHash(ZERO_HASH)))
        with pytest.raises(RuntimeError):
            engine.verify(_request(power_project, LiteralHash(ZERO_HASH)))

    def test_illegal_transition(self, resolver):
        engine = _engine(resolver)
        with pytest.raises(RuntimeError, match="Illegal"):
            engine._advance(VerifyState.MATCHED)

    def test_no_transition_after_terminal(self, resolver):
        engine = _engine(resolver)
        engine._advance(VerifyState.FAILED)
        with pytest.raises(RuntimeError, match="already finished"):
            engine._advance(VerifyState.SOURCE_RESOLVED)


class TestMetadataRoundTrip:
    """Re-verifying a build from its own metadata.json."""

    def test_verify_from_archive_metadata(self, build_job, resolver, power_project: Path, tmp_path: Path):
        settings = make_settings(profile="production", features=("std",))
        built = compile_contract(
            build_job, SnapshotSource(archive=power_project), settings,
            output_dir=tmp_path / "out", archive=True,
        )
        metadata_path = built.output_path / "metadata.json"
        metadata = load_metadata(metadata_path)

        # the original project can go away; the archive is enough
        (power_project / "src" / "lib.rs").write_text("// gone\n")

        assert settings_from_metadata(metadata) == settings
        source = source_from_metadata(metadata, metadata_path, power_project)
        assert isinstance(source, SnapshotSource)
        assert Path(source.archive) == (built.output_path / "sources.tar.gz").resolve()

        result = _engine(resolver).verify(VerifyRequest(
            source=source,
            settings=settings_from_metadata(metadata),
            reference=LiteralHash(metadata.bytecode.rwasm.hash),
        ))
        assert result.status == VerificationStatus.MATCH

    def test_snapshot_metadata_uses_project_root(self, build_job, power_project: Path, tmp_path: Path):
        built = compile_contract(
            build_job, SnapshotSource(archive=power_project), make_settings(), output_dir=tmp_path / "out"
        )
        metadata_path = built.output_path / "metadata.json"
        source = source_from_metadata(load_metadata(metadata_path), metadata_path, power_project)
        assert source == SnapshotSource(archive=power_project)

    def test_missing_metadata(self, tmp_path: Path):
        with pytest.raises(SourceUnavailable):
            load_metadata(tmp_path / "metadata.json")

    def test_invalid_metadata(self, tmp_path: Path):
        path = tmp_path / "metadata.json"
        path.write_text('{"schema_version": 1}')
        with pytest.raises(ConfigInvalid):
            load_metadata(path)
        path.write_text("not json")
        with pytest.raises(ConfigInvalid):
            load_metadata(path)

    def test_other_contract_project(self, resolver, tmp_path: Path, reference_hash: str):
        other = write_project(tmp_path / "other", lib_rs="pub fn main() {}\n")
        result = _engine(resolver).verify(_request(other, LiteralHash(reference_hash)))
        assert result.status == VerificationStatus.MISMATCH
