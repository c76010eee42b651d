"""
Rust → Solidity ABI type mapping.

Works on tree-sitter type nodes from router method signatures. Only the
types the fluentbase router can encode are accepted; everything else is
an ``UnsupportedType`` error, never a silent skip.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from tree_sitter import Node

from contract_builder.errors import UnsupportedType

# ── Scalar tables ────────────────────────────────────────────────────────────

PRIMITIVE_TYPES: Dict[str, str] = {
    "bool": "bool",
    "u8": "uint8",
    "u16": "uint16",
    "u32": "uint32",
    "u64": "uint64",
    "u128": "uint128",
    "i8": "int8",
    "i16": "int16",
    "i32": "int32",
    "i64": "int64",
    "i128": "int128",
}

NAMED_TYPES: Dict[str, str] = {
    "U8": "uint8",
    "U16": "uint16",
    "U32": "uint32",
    "U64": "uint64",
    "U128": "uint128",
    "U256": "uint256",
    "I8": "int8",
    "I16": "int16",
    "I32": "int32",
    "I64": "int64",
    "I128": "int128",
    "I256": "int256",
    "Address": "address",
    "String": "string",
    "Bytes": "bytes",
    "B256": "bytes32",
    "B128": "bytes16",
    "B64": "bytes8",
    "bool": "bool",
}


# ── Type value ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SolType:
    """A Solidity ABI type: elementary, array, or tuple."""
    kind: str                                   # "elementary" | "array" | "tuple"
    name: str = ""                              # elementary name, e.g. "uint256"
    element: Optional["SolType"] = None         # array element
    length: Optional[int] = None                # fixed array length; None = dynamic
    components: Tuple["SolType", ...] = ()      # tuple members

    @classmethod
    def elementary(cls, name: str) -> "SolType":
        return cls(kind="elementary", name=name)

    @property
    def canonical(self) -> str:
        """Type as written in a canonical signature."""
        if self.kind == "tuple":
            return "(" + ",".join(c.canonical for c in self.components) + ")"
        if self.kind == "array":
            suffix = f"[{self.length}]" if self.length is not None else "[]"
            return self.element.canonical + suffix  # type: ignore[union-attr]
        return self.name

    @property
    def abi_type(self) -> str:
        """The ``type`` field of an ABI parameter (tuples spelled ``tuple``)."""
        if self.kind == "tuple":
            return "tuple"
        if self.kind == "array":
            suffix = f"[{self.length}]" if self.length is not None else "[]"
            return self.element.abi_type + suffix  # type: ignore[union-attr]
        return self.name


# ── Mapping ──────────────────────────────────────────────────────────────────

TextFn = Callable[[Node], str]


def _fixed_bytes(n: int, type_text: str) -> SolType:
    if not 1 <= n <= 32:
        raise UnsupportedType(type_text)
    return SolType.elementary(f"bytes{n}")


def _int_literal(node: Optional[Node], text: TextFn) -> Optional[int]:
    if node is None or node.type != "integer_literal":
        return None
    raw = text(node).replace("_", "")
    for suffix in ("usize", "u64", "u32"):
        if raw.endswith(suffix):
            raw = raw[: -len(suffix)]
    try:
        return int(raw, 0)
    except ValueError:
        return None


def _last_segment(node: Node, text: TextFn) -> str:
    if node.type == "scoped_type_identifier":
        name = node.child_by_field_name("name")
        return text(name) if name is not None else text(node)
    return text(node)


def map_type(node: Node, text: TextFn) -> SolType:
    """
    Map a tree-sitter Rust type node to a :class:`SolType`.

    Raises ``UnsupportedType`` with the Rust spelling of the type.
    """
    kind = node.type

    if kind == "reference_type":
        inner = node.child_by_field_name("type")
        if inner is None:
            raise UnsupportedType(text(node))
        if inner.type == "primitive_type" and text(inner) == "str":
            return SolType.elementary("string")
        if inner.type == "array_type" and inner.child_by_field_name("length") is None:
            elem = inner.child_by_field_name("element")
            if elem is not None and text(elem) == "u8":
                return SolType.elementary("bytes")
        return map_type(inner, text)

    if kind == "primitive_type":
        name = PRIMITIVE_TYPES.get(text(node))
        if name is None:
            raise UnsupportedType(text(node))
        return SolType.elementary(name)

    if kind in ("type_identifier", "scoped_type_identifier"):
        name = NAMED_TYPES.get(_last_segment(node, text))
        if name is None:
            raise UnsupportedType(text(node))
        return SolType.elementary(name)

    if kind == "generic_type":
        base = node.child_by_field_name("type")
        args_node = node.child_by_field_name("type_arguments")
        if base is None or args_node is None:
            raise UnsupportedType(text(node))
        base_name = _last_segment(base, text)
        args = [a for a in args_node.named_children if a.type not in ("lifetime", "line_comment", "block_comment")]
        if base_name == "Vec" and len(args) == 1:
            if text(args[0]) == "u8":
                return SolType.elementary("bytes")
            return SolType(kind="array", element=map_type(args[0], text))
        if base_name == "FixedBytes" and len(args) == 1:
            n = _int_literal(args[0], text)
            if n is None:
                raise UnsupportedType(text(node))
            return _fixed_bytes(n, text(node))
        raise UnsupportedType(text(node))

    if kind == "array_type":
        elem = node.child_by_field_name("element")
        length_node = node.child_by_field_name("length")
        if elem is None:
            raise UnsupportedType(text(node))
        if length_node is None:
            # bare slice [T]
            raise UnsupportedType(text(node))
        n = _int_literal(length_node, text)
        if n is None:
            raise UnsupportedType(text(node))
        if text(elem) == "u8":
            return _fixed_bytes(n, text(node))
        return SolType(kind="array", element=map_type(elem, text), length=n)

    if kind == "tuple_type":
        members = [c for c in node.named_children if c.type not in ("line_comment", "block_comment")]
        return SolType(kind="tuple", components=tuple(map_type(c, text) for c in members))

    raise UnsupportedType(text(node))


def map_return_type(node: Optional[Node], text: TextFn) -> List[SolType]:
    """
    Outputs of a method: ``()``/absent → none, a tuple → one per member,
    anything else → exactly one.
    """
    if node is None or node.type == "unit_type":
        return []
    if node.type == "tuple_type":
        members = [c for c in node.named_children if c.type not in ("line_comment", "block_comment")]
        return [map_type(c, text) for c in members]
    return [map_type(node, text)]
