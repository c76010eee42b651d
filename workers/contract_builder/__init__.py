"""
contract_builder — reproducible build-and-verify pipeline for Fluent contracts

Compile a Rust contract crate (fluentbase-sdk) to WASM with cargo, convert it
to rWASM, derive the Solidity-compatible interface from ``#[router]``
annotations, and emit a metadata record that lets a third party rebuild and
verify the deployed bytecode.

Target: wasm32-unknown-unknown
"""

__version__ = "0.3.0"
SCHEMA_VERSION = 1
DEFAULT_TARGET = "wasm32-unknown-unknown"
