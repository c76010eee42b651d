"""
FormatConverter — WASM → rWASM.

The converter is a pure function of (wasm bytes, RwasmConfig). The
concrete implementation shells out to the rWASM compiler; before that the
module is checked locally so malformed input and a missing entrypoint are
reported as ``ConversionFailed`` rather than as an opaque tool error.
"""
from __future__ import annotations

import abc
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from contract_builder.core.wasm_module import WasmFormatError, read_exports
from contract_builder.errors import ConversionFailed, ToolchainMissing
from contract_builder.policy.build_settings import RwasmConfig

logger = logging.getLogger(__name__)


def check_module(wasm: bytes, config: RwasmConfig) -> None:
    """Raise ``ConversionFailed`` unless *wasm* is well-formed and exports the entrypoint."""
    if not wasm:
        raise ConversionFailed("Base bytecode is empty")
    try:
        exports = read_exports(wasm)
    except WasmFormatError as e:
        raise ConversionFailed(f"Base bytecode is malformed: {e}")
    exp = exports.get(config.entrypoint)
    if exp is None or exp.kind != "func":
        available = ", ".join(sorted(n for n, e in exports.items() if e.kind == "func")) or "none"
        raise ConversionFailed(
            f"Entrypoint '{config.entrypoint}' is not an exported function "
            f"(exported functions: {available})"
        )


class FormatConverter(abc.ABC):
    """Base-format → execution-optimized bytecode."""

    def convert(self, wasm: bytes, config: RwasmConfig) -> bytes:
        check_module(wasm, config)
        rwasm = self._convert(wasm, config)
        if not rwasm:
            raise ConversionFailed("Converter produced empty output")
        return rwasm

    @abc.abstractmethod
    def _convert(self, wasm: bytes, config: RwasmConfig) -> bytes:
        ...


class SubprocessConverter(FormatConverter):
    """
    Out-of-process rWASM compiler:

        <command> --entrypoint NAME --stack-layout MODE in.wasm -o out.rwasm
    """

    def __init__(self, command: Optional[List[str]] = None, timeout: int = 120):
        self.command = list(command or ["rwasm-compile"])
        self.timeout = timeout

    def _convert(self, wasm: bytes, config: RwasmConfig) -> bytes:
        with tempfile.TemporaryDirectory(prefix="wasmforge-rwasm-") as tmp:
            in_path = Path(tmp) / "lib.wasm"
            out_path = Path(tmp) / "lib.rwasm"
            in_path.write_bytes(wasm)

            cmd = self.command + [
                "--entrypoint", config.entrypoint,
                "--stack-layout", config.stack_layout.value,
                str(in_path),
                "-o", str(out_path),
            ]
            logger.debug("Converting: %s", " ".join(cmd))
            try:
                result = subprocess.run(
                    cmd,
                    cwd=tmp,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError:
                raise ToolchainMissing(f"rWASM converter not found: {self.command[0]}")
            except subprocess.TimeoutExpired:
                raise ConversionFailed(f"rWASM conversion timed out after {self.timeout}s")

            if result.returncode != 0:
                raise ConversionFailed(
                    f"rWASM conversion failed (exit {result.returncode}): "
                    f"{result.stderr.strip()}"
                )
            if not out_path.is_file():
                raise ConversionFailed("rWASM converter did not write an output file")
            rwasm = out_path.read_bytes()

        logger.info("Converted %d bytes WASM -> %d bytes rWASM", len(wasm), len(rwasm))
        return rwasm
