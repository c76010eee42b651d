"""
ABI generation from an InterfaceDescription.
"""
from __future__ import annotations

import json
from typing import List

from contract_builder.core.router_index import InterfaceDescription, InterfaceMethod
from contract_builder.core.sol_types import SolType
from contract_builder.io.schema import AbiFunction, AbiParam


def _tuple_components(t: SolType) -> List[AbiParam] | None:
    base = t
    while base.kind == "array":
        base = base.element  # type: ignore[assignment]
    if base.kind != "tuple":
        return None
    return [abi_param("", c) for c in base.components]


def abi_param(name: str, t: SolType) -> AbiParam:
    return AbiParam(
        name=name,
        type=t.abi_type,
        internalType=t.canonical,
        components=_tuple_components(t),
    )


def method_abi(method: InterfaceMethod) -> AbiFunction:
    return AbiFunction(
        name=method.name,
        inputs=[abi_param(p.name, p.type) for p in method.params],
        outputs=[abi_param("", t) for t in method.outputs],
        stateMutability=method.state_mutability,
    )


def generate_abi(interface: InterfaceDescription) -> List[AbiFunction]:
    """One function entry per method, in declaration order."""
    return [method_abi(m) for m in interface.methods]


def abi_json_payload(abi: List[AbiFunction]) -> list:
    """JSON-ready list (``components`` dropped where not applicable)."""
    return [f.model_dump(mode="json", exclude_none=True) for f in abi]


def abi_json_text(abi: List[AbiFunction]) -> str:
    """Serialized ``abi.json`` contents."""
    return json.dumps(abi_json_payload(abi), indent=2, sort_keys=True) + "\n"
