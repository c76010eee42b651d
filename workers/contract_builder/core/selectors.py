"""
Function selectors: keccak-256 of the canonical signature, first 4 bytes.
"""
from __future__ import annotations

from typing import Dict, Iterable, Sequence, Tuple

from web3 import Web3

from contract_builder.core.sol_types import SolType
from contract_builder.errors import SelectorCollision


def to_camel_case(name: str) -> str:
    """``balance_of`` -> ``balanceOf``; leading underscores are kept."""
    stripped = name.lstrip("_")
    prefix = name[: len(name) - len(stripped)]
    parts = [p for p in stripped.split("_") if p]
    if not parts:
        return name
    head, rest = parts[0], parts[1:]
    return prefix + head[0].lower() + head[1:] + "".join(p[0].upper() + p[1:] for p in rest)


def canonical_signature(name: str, params: Sequence[SolType]) -> str:
    """``name(type1,type2,...)`` with no spaces and no parameter names."""
    return f"{name}(" + ",".join(p.canonical for p in params) + ")"


def compute_selector(signature: str) -> str:
    """0x-prefixed hex of the first 4 bytes of keccak256(signature)."""
    digest = bytes(Web3.keccak(text=signature))
    return "0x" + digest[:4].hex()


def check_unique(entries: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """
    Map selector -> signature over ``(signature, selector)`` pairs.

    Raises ``SelectorCollision`` when two different signatures, or the
    same signature declared twice, land on one selector.
    """
    seen: Dict[str, str] = {}
    for signature, selector in entries:
        if selector in seen:
            raise SelectorCollision(selector, seen[selector], signature)
        seen[selector] = signature
    return seen
