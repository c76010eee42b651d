"""
Solidity interface text generated from the ABI.

Output is a pure function of the ABI entries: same ABI, same bytes.
"""
from __future__ import annotations

import re
from typing import Dict, List

from contract_builder.io.schema import AbiFunction, AbiParam

HEADER = (
    "// SPDX-License-Identifier: MIT\n"
    "// Auto-generated from Rust source\n"
    "pragma solidity ^0.8.0;\n\n"
)

_MUTABILITY_SUFFIX = {
    "pure": " pure",
    "view": " view",
    "payable": " payable",
}


def to_pascal_case(name: str) -> str:
    """``power-calculator`` / ``power_calculator`` -> ``PowerCalculator``."""
    words: List[str] = []
    for chunk in re.split(r"[^A-Za-z0-9]+", name):
        # split camelCase humps as well
        words.extend(re.findall(r"[A-Z]+(?![a-z])|[A-Z]?[a-z0-9]+|[A-Z]", chunk))
    return "".join(w[0].upper() + w[1:].lower() if not w.isupper() else w for w in words if w)


class StructTable:
    """
    Named structs for the anonymous tuples in an ABI.

    Each distinct tuple shape becomes ``Tuple0``, ``Tuple1``, ... in order of
    first use; nested tuples are declared before the struct that holds them.
    """

    def __init__(self):
        self.names: Dict[str, str] = {}
        self.definitions: List[str] = []

    def type_of(self, p: AbiParam) -> str:
        """Solidity type of *p*, with tuples replaced by struct names."""
        if not p.type.startswith("tuple"):
            return p.type
        dims = p.type[len("tuple"):]
        shape = p.internalType[:len(p.internalType) - len(dims)]
        name = self.names.get(shape)
        if name is None:
            fields = [
                f"        {self.type_of(c)} field{i};"
                for i, c in enumerate(p.components or [])
            ]
            name = f"Tuple{len(self.names)}"
            self.names[shape] = name
            self.definitions.append(f"    struct {name} {{\n" + "\n".join(fields) + "\n    }")
        return name + dims


def _location(p: AbiParam, is_output: bool) -> str:
    is_bytes_like = p.type in ("string", "bytes")
    is_composite = p.type.endswith("]") or p.type.startswith("tuple")
    if is_output:
        return " memory" if (is_bytes_like or is_composite) else ""
    if is_bytes_like:
        return " calldata"
    if is_composite:
        return " memory"
    return ""


def format_param(p: AbiParam, structs: StructTable, is_output: bool = False) -> str:
    decl = f"{structs.type_of(p)}{_location(p, is_output)}"
    return f"{decl} {p.name}" if p.name else decl


def format_function(fn: AbiFunction, structs: StructTable) -> str:
    params = ", ".join(format_param(p, structs) for p in fn.inputs)
    returns = ""
    if fn.outputs:
        returns = " returns (" + ", ".join(format_param(p, structs, is_output=True) for p in fn.outputs) + ")"
    mut = _MUTABILITY_SUFFIX.get(fn.stateMutability, "")
    return f"function {fn.name}({params}) external{mut}{returns};"


def generate_interface(contract_name: str, abi: List[AbiFunction]) -> str:
    """The ``interface.sol`` text for *abi*."""
    structs = StructTable()
    functions = ["    " + format_function(fn, structs) for fn in abi]
    lines = [HEADER + f"interface I{to_pascal_case(contract_name)} {{"]
    if structs.definitions:
        lines.extend(structs.definitions)
        lines.append("")
    lines.extend(functions)
    lines.append("}")
    return "\n".join(lines) + "\n"
