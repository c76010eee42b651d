"""
Tree-sitter Rust parser wrapper.

Parses contract source files with the tree-sitter Rust grammar. Pure
syntax: no macro expansion, no name resolution.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import tree_sitter_rust as tsr
from tree_sitter import Language, Node, Parser

from contract_builder.errors import InterfaceExtractionError

logger = logging.getLogger(__name__)

# ── Language / parser singletons ─────────────────────────────────────────────

_RUST_LANGUAGE = Language(tsr.language())
_PARSER: Parser | None = None


def _get_parser() -> Parser:
    """Return a cached tree-sitter Rust parser."""
    global _PARSER
    if _PARSER is None:
        _PARSER = Parser(_RUST_LANGUAGE)
    return _PARSER


# ── Data classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParseError:
    """A single error node found in the parse tree."""
    line: int        # 0-based
    column: int      # 0-based
    message: str


@dataclass
class ParseResult:
    """Result of parsing a single Rust source file."""
    tree: object                         # tree_sitter.Tree
    source_bytes: bytes
    path: str
    parse_status: str                    # "OK" | "ERROR"
    parse_errors: List[ParseError] = field(default_factory=list)

    @property
    def root(self) -> Node:
        return self.tree.root_node  # type: ignore[attr-defined]

    def text(self, node: Node) -> str:
        """Source text covered by *node*."""
        return self.source_bytes[node.start_byte:node.end_byte].decode("utf-8")


# ── Error collection ─────────────────────────────────────────────────────────

def _collect_errors(node: Node, errors: List[ParseError]) -> None:
    """Walk the tree and collect ERROR / MISSING nodes."""
    if node.type == "ERROR" or node.is_missing:
        row, col = node.start_point
        msg = f"MISSING({node.type})" if node.is_missing else "ERROR"
        errors.append(ParseError(line=row, column=col, message=msg))
    for child in node.children:
        _collect_errors(child, errors)


# ── Public API ───────────────────────────────────────────────────────────────

def parse_source(source_bytes: bytes, path: str = "<memory>") -> ParseResult:
    """
    Parse Rust source held in memory.

    The source must be valid UTF-8 so node text can be sliced and decoded.
    """
    try:
        source_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InterfaceExtractionError(
            f"{path} is not valid UTF-8 (byte {e.start})"
        ) from e

    tree = _get_parser().parse(source_bytes)

    errors: List[ParseError] = []
    if tree.root_node.has_error:
        _collect_errors(tree.root_node, errors)

    return ParseResult(
        tree=tree,
        source_bytes=source_bytes,
        path=path,
        parse_status="ERROR" if errors else "OK",
        parse_errors=errors,
    )


def parse_file(rs_path: Path) -> ParseResult:
    """Parse a ``.rs`` file from disk."""
    return parse_source(rs_path.read_bytes(), str(rs_path))
