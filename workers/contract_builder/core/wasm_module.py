"""
Minimal WebAssembly binary reader.

Only what the converter pre-check needs: header validation, section
framing, and the export section. Anything structurally wrong raises
``WasmFormatError``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Tuple

WASM_MAGIC = b"\x00asm"
WASM_VERSION = b"\x01\x00\x00\x00"

SECTION_EXPORT = 7
MAX_SECTION_ID = 12

EXPORT_KINDS = {0: "func", 1: "table", 2: "memory", 3: "global"}


class WasmFormatError(ValueError):
    """The bytes are not a well-formed WASM module."""


@dataclass(frozen=True)
class WasmExport:
    name: str
    kind: str
    index: int


def _read_uleb128(data: bytes, pos: int) -> Tuple[int, int]:
    """Decode an unsigned LEB128 (max 5 bytes for u32). Returns (value, new_pos)."""
    result = 0
    shift = 0
    for _ in range(5):
        if pos >= len(data):
            raise WasmFormatError("truncated LEB128 integer")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
    raise WasmFormatError("LEB128 integer too long")


def read_sections(data: bytes) -> List[Tuple[int, bytes]]:
    """Split a module into (section id, payload) pairs."""
    if len(data) < 8 or data[:4] != WASM_MAGIC:
        raise WasmFormatError("missing \\0asm magic")
    if data[4:8] != WASM_VERSION:
        raise WasmFormatError(f"unsupported version {data[4:8].hex()}")

    sections: List[Tuple[int, bytes]] = []
    pos = 8
    while pos < len(data):
        section_id = data[pos]
        pos += 1
        if section_id > MAX_SECTION_ID:
            raise WasmFormatError(f"unknown section id {section_id}")
        size, pos = _read_uleb128(data, pos)
        end = pos + size
        if end > len(data):
            raise WasmFormatError(f"section {section_id} overruns module")
        sections.append((section_id, data[pos:end]))
        pos = end
    return sections


def _parse_exports(payload: bytes) -> List[WasmExport]:
    count, pos = _read_uleb128(payload, 0)
    exports: List[WasmExport] = []
    for _ in range(count):
        name_len, pos = _read_uleb128(payload, pos)
        if pos + name_len > len(payload):
            raise WasmFormatError("export name overruns section")
        try:
            name = payload[pos:pos + name_len].decode("utf-8")
        except UnicodeDecodeError:
            raise WasmFormatError("export name is not UTF-8")
        pos += name_len
        if pos >= len(payload):
            raise WasmFormatError("truncated export descriptor")
        kind = EXPORT_KINDS.get(payload[pos])
        if kind is None:
            raise WasmFormatError(f"unknown export kind {payload[pos]}")
        index, pos = _read_uleb128(payload, pos + 1)
        exports.append(WasmExport(name=name, kind=kind, index=index))
    if pos != len(payload):
        raise WasmFormatError("trailing bytes in export section")
    return exports


def read_exports(data: bytes) -> Dict[str, WasmExport]:
    """Exports of a module keyed by name."""
    exports: Dict[str, WasmExport] = {}
    for section_id, payload in read_sections(data):
        if section_id == SECTION_EXPORT:
            for exp in _parse_exports(payload):
                exports[exp.name] = exp
    return exports
