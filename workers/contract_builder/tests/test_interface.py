"""Tests for router scanning, type mapping, and selectors."""
import textwrap
from pathlib import Path

import pytest

from contract_builder.core.router_index import DeclarationKind, extract_interface
from contract_builder.core.rust_parser import parse_source
from contract_builder.core.selectors import (
    canonical_signature,
    check_unique,
    compute_selector,
    to_camel_case,
)
from contract_builder.core.sol_types import SolType
from contract_builder.errors import (
    EmptyRouter,
    InterfaceExtractionError,
    SelectorCollision,
    UnsupportedType,
)

from .conftest import (
    COLLISION_LIB_RS,
    EMPTY_ROUTER_LIB_RS,
    GREETER_LIB_RS,
    NO_ROUTER_LIB_RS,
    POWER_LIB_RS,
    UNSUPPORTED_LIB_RS,
    write_project,
)


def _extract(tmp_path: Path, lib_rs: str, name: str = "power"):
    project = write_project(tmp_path / "proj", lib_rs=lib_rs)
    return extract_interface(project, name)


class TestSelectors:
    """Canonical signatures and keccak selectors."""

    def test_power_selector(self):
        assert compute_selector("power(uint256,uint256)") == "0xc04f01fc"

    def test_transfer_selector(self):
        assert compute_selector("transfer(address,uint256)") == "0xa9059cbb"

    def test_canonical_signature_has_no_spaces(self):
        u256 = SolType.elementary("uint256")
        arr = SolType(kind="array", element=SolType.elementary("address"))
        assert canonical_signature("f", [u256, arr]) == "f(uint256,address[])"

    def test_camel_case(self):
        assert to_camel_case("balance_of") == "balanceOf"
        assert to_camel_case("power") == "power"
        assert to_camel_case("_private_call") == "_privateCall"

    def test_check_unique_rejects_shared_selector(self):
        with pytest.raises(SelectorCollision) as exc:
            check_unique([("a()", "0x11111111"), ("b()", "0x11111111")])
        assert exc.value.selector == "0x11111111"


class TestExtractInterface:
    """extract_interface() over sample projects."""

    def test_power_contract(self, power_project: Path):
        iface = extract_interface(power_project, "power")
        assert [m.signature for m in iface.methods] == ["power(uint256,uint256)"]
        method = iface.methods[0]
        assert method.selector == "0xc04f01fc"
        assert method.state_mutability == "view"
        assert method.declaration == DeclarationKind.TRAIT_IMPL_METHOD
        assert [p.name for p in method.params] == ["base", "exponent"]
        assert [t.canonical for t in method.outputs] == ["uint256"]
        assert method.source_path == "src/lib.rs"
        assert iface.function_selectors == {"power(uint256,uint256)": "0xc04f01fc"}

    def test_deploy_is_not_routed(self, power_project: Path):
        iface = extract_interface(power_project, "power")
        assert "deploy" not in [m.rust_name for m in iface.methods]

    def test_inherent_impl_only_pub_methods(self, tmp_path: Path):
        iface = _extract(tmp_path, GREETER_LIB_RS, "greeter")
        names = [m.name for m in iface.methods]
        assert names == ["greeting", "setGreeting", "balanceOf", "sum"]
        assert all(m.declaration == DeclarationKind.INHERENT_IMPL_METHOD for m in iface.methods)

    def test_mutability_from_receiver(self, tmp_path: Path):
        iface = _extract(tmp_path, GREETER_LIB_RS, "greeter")
        by_name = {m.name: m for m in iface.methods}
        assert by_name["greeting"].state_mutability == "view"
        assert by_name["setGreeting"].state_mutability == "nonpayable"
        assert by_name["sum"].state_mutability == "pure"

    def test_type_mapping(self, tmp_path: Path):
        iface = _extract(tmp_path, GREETER_LIB_RS, "greeter")
        by_name = {m.name: m for m in iface.methods}
        assert by_name["greeting"].signature == "greeting()"
        assert [t.canonical for t in by_name["greeting"].outputs] == ["string"]
        assert by_name["setGreeting"].signature == "setGreeting(string)"
        assert by_name["balanceOf"].signature == "balanceOf(address)"
        assert by_name["sum"].signature == "sum(uint256[])"
        assert [t.canonical for t in by_name["sum"].outputs] == ["uint256", "bool"]

    def test_no_router_gives_empty_interface(self, tmp_path: Path):
        iface = _extract(tmp_path, NO_ROUTER_LIB_RS)
        assert iface.is_empty
        assert iface.methods == ()
        assert iface.function_selectors == {}

    def test_duplicate_signature_is_collision(self, tmp_path: Path):
        with pytest.raises(SelectorCollision):
            _extract(tmp_path, COLLISION_LIB_RS)

    def test_crafted_raw_selector_collision(self, tmp_path: Path):
        src = textwrap.dedent("""\
            use fluentbase_sdk::{derive::router, SharedAPI, U256};

            struct C<SDK> { sdk: SDK }

            #[router(mode = "solidity")]
            impl<SDK: SharedAPI> C<SDK> {
                #[function_id("0xdeadbeef")]
                pub fn first(&self) -> U256 { U256::ZERO }

                #[function_id("0xDEADBEEF")]
                pub fn second(&self) -> U256 { U256::ZERO }
            }
        """)
        with pytest.raises(SelectorCollision) as exc:
            _extract(tmp_path, src)
        assert exc.value.selector == "0xdeadbeef"

    def test_unsupported_type_is_reported(self, tmp_path: Path):
        with pytest.raises(UnsupportedType) as exc:
            _extract(tmp_path, UNSUPPORTED_LIB_RS)
        assert "HashMap" in exc.value.type_name
        assert "load" in str(exc.value)

    def test_router_without_methods(self, tmp_path: Path):
        with pytest.raises(EmptyRouter):
            _extract(tmp_path, EMPTY_ROUTER_LIB_RS)

    def test_function_id_signature_override(self, tmp_path: Path):
        src = textwrap.dedent("""\
            use fluentbase_sdk::{derive::router, Address, SharedAPI, U256};

            struct Token<SDK> { sdk: SDK }

            #[router(mode = "solidity")]
            impl<SDK: SharedAPI> Token<SDK> {
                #[function_id("transfer(address,uint256)")]
                pub fn send_tokens(&mut self, to: Address, amount: U256) -> bool { true }
            }
        """)
        iface = _extract(tmp_path, src)
        method = iface.methods[0]
        assert method.name == "transfer"
        assert method.selector == "0xa9059cbb"

    def test_free_function_router_in_module(self, tmp_path: Path):
        src = textwrap.dedent("""\
            mod api {
                use fluentbase_sdk::{derive::router, U256};

                #[router(mode = "solidity")]
                pub fn double_it(value: U256) -> U256 {
                    value
                }
            }
        """)
        iface = _extract(tmp_path, src)
        method = iface.methods[0]
        assert method.signature == "doubleIt(uint256)"
        assert method.declaration == DeclarationKind.FREE_FUNCTION
        assert method.state_mutability == "pure"

    def test_fixed_bytes_and_arrays(self, tmp_path: Path):
        src = textwrap.dedent("""\
            use fluentbase_sdk::{derive::router, SharedAPI};

            struct H<SDK> { sdk: SDK }

            #[router(mode = "solidity")]
            impl<SDK: SharedAPI> H<SDK> {
                pub fn digest(&self, data: Vec<u8>, salt: [u8; 32], ids: [u64; 4]) -> [u8; 32] {
                    salt
                }
            }
        """)
        iface = _extract(tmp_path, src)
        assert iface.methods[0].signature == "digest(bytes,bytes32,uint64[4])"
        assert [t.canonical for t in iface.methods[0].outputs] == ["bytes32"]

    def test_syntax_error_in_router_file(self, tmp_path: Path):
        src = textwrap.dedent("""\
            use fluentbase_sdk::derive::router;

            #[router(mode = "solidity")]
            impl<SDK> Broken<SDK> {
                pub fn oops(&self, x: u32 -> u32 { x }
            }
        """)
        with pytest.raises(InterfaceExtractionError):
            _extract(tmp_path, src)

    def test_router_mode(self, tmp_path: Path):
        src = POWER_LIB_RS.replace('#[router(mode = "solidity")]', '#[router(mode = "fluent")]')
        iface = _extract(tmp_path, src)
        assert [r.mode for r in iface.routers] == ["fluent"]
        assert iface.methods[0].selector == "0xc04f01fc"

    def test_unknown_router_mode(self, tmp_path: Path):
        src = POWER_LIB_RS.replace('#[router(mode = "solidity")]', '#[router(mode = "borsh")]')
        with pytest.raises(InterfaceExtractionError) as exc:
            _extract(tmp_path, src)
        assert "Unknown router mode 'borsh'" in exc.value.message

    def test_invalid_utf8_source_file(self, tmp_path: Path):
        project = write_project(tmp_path / "proj")
        lib = project / "src" / "lib.rs"
        lib.write_bytes(lib.read_bytes() + b"// caf\xe9\n")
        with pytest.raises(InterfaceExtractionError):
            extract_interface(project, "power")

    def test_multiple_source_files(self, tmp_path: Path):
        project = write_project(tmp_path / "proj")
        (project / "src" / "extra.rs").write_text(textwrap.dedent("""\
            use fluentbase_sdk::{derive::router, U256};

            #[router(mode = "solidity")]
            pub fn version() -> U256 {
                U256::from(1)
            }
        """))
        iface = extract_interface(project, "power")
        assert sorted(iface.function_selectors) == ["power(uint256,uint256)", "version()"]


class TestRustParser:
    """parse_source() status reporting."""

    def test_clean_parse(self):
        pr = parse_source(b"fn main() {}\n", "main.rs")
        assert pr.parse_status == "OK"
        assert pr.parse_errors == []

    def test_error_positions(self):
        pr = parse_source(b"fn main( {}\n", "bad.rs")
        assert pr.parse_status != "OK"
        assert pr.parse_errors

    def test_invalid_utf8_is_an_extraction_error(self):
        with pytest.raises(InterfaceExtractionError) as exc:
            parse_source(b'#[function_id("f\xff(uint256)")]\nfn f() {}\n', "lib.rs")
        assert "lib.rs is not valid UTF-8" in exc.value.message
