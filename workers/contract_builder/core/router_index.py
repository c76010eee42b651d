"""
InterfaceExtractor — find ``#[router]`` declarations and derive the
contract's externally callable interface.

Declaration kinds are a closed set:

  TRAIT_IMPL_METHOD     #[router] impl Trait for Contract { fn ... }   all methods
  INHERENT_IMPL_METHOD  #[router] impl Contract { pub fn ... }         pub methods only
  FREE_FUNCTION         #[router] fn ...                               itself

Scanning is a walk over the unexpanded syntax tree; types are mapped
syntactically (see ``sol_types``).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tree_sitter import Node

from contract_builder.core.manifest import find_main_source
from contract_builder.core.rust_parser import ParseResult, parse_file
from contract_builder.core.selectors import (
    canonical_signature,
    check_unique,
    compute_selector,
    to_camel_case,
)
from contract_builder.core.sol_types import SolType, map_return_type, map_type
from contract_builder.errors import EmptyRouter, InterfaceExtractionError, UnsupportedType

logger = logging.getLogger(__name__)

ROUTER_ATTRIBUTE = "router"
FUNCTION_ID_ATTRIBUTE = "function_id"
RESERVED_METHODS = frozenset({"deploy", "fallback"})
# "fluent" routers use the compact codec; selectors are computed the same way
ROUTER_MODES = frozenset({"solidity", "fluent"})

_COMMENT_TYPES = ("line_comment", "block_comment")
_STRING_LITERAL_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')
_MODE_RE = re.compile(r'mode\s*=\s*"([^"]*)"')
_RAW_SELECTOR_RE = re.compile(r"^0x[0-9a-fA-F]{8}$")
_SIGNATURE_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*\(.*\)$")


# ── Enums / data classes ─────────────────────────────────────────────────────

class DeclarationKind(str, Enum):
    FREE_FUNCTION = "free_function"
    TRAIT_IMPL_METHOD = "trait_impl_method"
    INHERENT_IMPL_METHOD = "inherent_impl_method"


@dataclass(frozen=True)
class Param:
    name: str
    type: SolType


@dataclass(frozen=True)
class InterfaceMethod:
    """One externally callable method."""
    rust_name: str
    name: str
    params: Tuple[Param, ...]
    outputs: Tuple[SolType, ...]
    state_mutability: str          # pure | view | nonpayable
    signature: str
    selector: str
    declaration: DeclarationKind
    source_path: str
    line: int                      # 1-based


@dataclass(frozen=True)
class RouterDecl:
    """One annotated item."""
    kind: DeclarationKind
    target: str                    # impl self type, or function name
    trait_name: Optional[str]
    mode: str
    source_path: str
    line: int
    methods: Tuple[InterfaceMethod, ...]


@dataclass(frozen=True)
class InterfaceDescription:
    contract_name: str
    methods: Tuple[InterfaceMethod, ...] = ()
    routers: Tuple[RouterDecl, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.methods

    @property
    def function_selectors(self) -> Dict[str, str]:
        """Canonical signature -> selector, sorted by signature."""
        return dict(sorted((m.signature, m.selector) for m in self.methods))


# ── Attribute helpers ────────────────────────────────────────────────────────

def _attribute_name(attr_item: Node, pr: ParseResult) -> str:
    """Last path segment of ``#[path::to::name(...)]``."""
    attr = next((c for c in attr_item.named_children if c.type == "attribute"), None)
    if attr is None or not attr.named_children:
        return ""
    path_text = pr.text(attr.named_children[0])
    return path_text.rsplit("::", 1)[-1].strip()


def _attribute_args(attr_item: Node, pr: ParseResult) -> str:
    attr = next((c for c in attr_item.named_children if c.type == "attribute"), None)
    if attr is None:
        return ""
    args = attr.child_by_field_name("arguments")
    return pr.text(args) if args is not None else ""


def _router_mode(attr: Node, pr: ParseResult, line: int) -> str:
    """``mode = "..."`` of a router attribute; ``solidity`` when omitted."""
    m = _MODE_RE.search(_attribute_args(attr, pr))
    mode = m.group(1) if m else "solidity"
    if mode not in ROUTER_MODES:
        known = ", ".join(sorted(ROUTER_MODES))
        raise InterfaceExtractionError(
            f"Unknown router mode {mode!r} at {pr.path}:{line} (known: {known})"
        )
    if mode != "solidity":
        logger.warning(
            "Router at %s:%d uses %s mode; the generated ABI lists its selectors "
            "but callers must use that codec", pr.path, line, mode,
        )
    return mode


def _find_attribute(attrs: List[Node], name: str, pr: ParseResult) -> Optional[Node]:
    for a in attrs:
        if _attribute_name(a, pr) == name:
            return a
    return None


def _iter_items(container: Node):
    """
    Yield (item, preceding outer attributes) for each item in a
    source_file / declaration_list, in source order.
    """
    pending: List[Node] = []
    for child in container.named_children:
        if child.type == "attribute_item":
            pending.append(child)
            continue
        if child.type in _COMMENT_TYPES:
            continue
        yield child, pending
        pending = []


# ── Method extraction ────────────────────────────────────────────────────────

def _is_pub(fn_node: Node, pr: ParseResult) -> bool:
    return any(
        c.type == "visibility_modifier" and pr.text(c).startswith("pub")
        for c in fn_node.children
    )


def _receiver_mutability(params_node: Node, pr: ParseResult) -> str:
    for c in params_node.named_children:
        if c.type == "self_parameter":
            text = pr.text(c).replace(" ", "")
            if text.startswith("&mut"):
                return "nonpayable"
            if text.startswith("&"):
                return "view"
            return "nonpayable"
    return "pure"


def _function_id_override(attrs: List[Node], pr: ParseResult, where: str) -> Optional[str]:
    attr = _find_attribute(attrs, FUNCTION_ID_ATTRIBUTE, pr)
    if attr is None:
        return None
    m = _STRING_LITERAL_RE.search(_attribute_args(attr, pr))
    if m is None:
        raise InterfaceExtractionError(f"#[function_id] needs a string literal ({where})")
    value = m.group(1).replace(" ", "")
    if not (_RAW_SELECTOR_RE.match(value) or _SIGNATURE_RE.match(value)):
        raise InterfaceExtractionError(f"Invalid #[function_id] value {value!r} ({where})")
    return value


def _extract_method(
    fn_node: Node,
    attrs: List[Node],
    kind: DeclarationKind,
    pr: ParseResult,
) -> InterfaceMethod:
    name_node = fn_node.child_by_field_name("name")
    params_node = fn_node.child_by_field_name("parameters")
    rust_name = pr.text(name_node) if name_node is not None else ""
    line = fn_node.start_point[0] + 1
    where = f"{rust_name} at {pr.path}:{line}"

    params: List[Param] = []
    try:
        if params_node is not None:
            for c in params_node.named_children:
                if c.type != "parameter":
                    if c.type == "variadic_parameter":
                        raise UnsupportedType("...")
                    continue
                pattern = c.child_by_field_name("pattern")
                type_node = c.child_by_field_name("type")
                if type_node is None:
                    raise UnsupportedType(pr.text(c))
                pname = pr.text(pattern).replace("mut ", "").strip() if pattern is not None else ""
                params.append(Param(name=pname, type=map_type(type_node, pr.text)))
        outputs = map_return_type(fn_node.child_by_field_name("return_type"), pr.text)
    except UnsupportedType as e:
        raise UnsupportedType(e.type_name, context=where) from e

    sol_name = to_camel_case(rust_name)
    signature = canonical_signature(sol_name, [p.type for p in params])
    override = _function_id_override(attrs, pr, where)
    if override is None:
        selector = compute_selector(signature)
    elif _RAW_SELECTOR_RE.match(override):
        selector = override.lower()
    else:
        signature = override
        sol_name = override.split("(", 1)[0]
        selector = compute_selector(signature)

    return InterfaceMethod(
        rust_name=rust_name,
        name=sol_name,
        params=tuple(params),
        outputs=tuple(outputs),
        state_mutability=_receiver_mutability(params_node, pr) if params_node is not None else "pure",
        signature=signature,
        selector=selector,
        declaration=kind,
        source_path=pr.path,
        line=line,
    )


# ── Router declarations ──────────────────────────────────────────────────────

def _router_from_impl(impl_node: Node, attr: Node, pr: ParseResult) -> RouterDecl:
    trait_node = impl_node.child_by_field_name("trait")
    type_node = impl_node.child_by_field_name("type")
    body = impl_node.child_by_field_name("body")
    kind = (
        DeclarationKind.TRAIT_IMPL_METHOD
        if trait_node is not None
        else DeclarationKind.INHERENT_IMPL_METHOD
    )
    target = pr.text(type_node) if type_node is not None else "?"
    line = impl_node.start_point[0] + 1

    methods: List[InterfaceMethod] = []
    if body is not None:
        for item, attrs in _iter_items(body):
            if item.type != "function_item":
                continue
            name_node = item.child_by_field_name("name")
            if name_node is None or pr.text(name_node) in RESERVED_METHODS:
                continue
            if kind == DeclarationKind.INHERENT_IMPL_METHOD and not _is_pub(item, pr):
                continue
            methods.append(_extract_method(item, attrs, kind, pr))

    if not methods:
        raise EmptyRouter(
            f"#[router] impl for {target} at {pr.path}:{line} has no routable methods"
        )

    return RouterDecl(
        kind=kind,
        target=target,
        trait_name=pr.text(trait_node) if trait_node is not None else None,
        mode=_router_mode(attr, pr, line),
        source_path=pr.path,
        line=line,
        methods=tuple(methods),
    )


def _router_from_function(fn_node: Node, attrs: List[Node], attr: Node, pr: ParseResult) -> RouterDecl:
    method = _extract_method(fn_node, attrs, DeclarationKind.FREE_FUNCTION, pr)
    return RouterDecl(
        kind=DeclarationKind.FREE_FUNCTION,
        target=method.rust_name,
        trait_name=None,
        mode=_router_mode(attr, pr, method.line),
        source_path=pr.path,
        line=method.line,
        methods=(method,),
    )


def _scan_container(container: Node, pr: ParseResult, out: List[RouterDecl]) -> None:
    for item, attrs in _iter_items(container):
        if item.type == "mod_item":
            body = item.child_by_field_name("body")
            if body is not None:
                _scan_container(body, pr, out)
            continue

        attr = _find_attribute(attrs, ROUTER_ATTRIBUTE, pr)
        if attr is None:
            continue

        if item.type == "impl_item":
            out.append(_router_from_impl(item, attr, pr))
        elif item.type == "function_item":
            out.append(_router_from_function(item, attrs, attr, pr))
        else:
            raise InterfaceExtractionError(
                f"#[router] on unsupported item '{item.type}' at "
                f"{pr.path}:{item.start_point[0] + 1}"
            )


def scan_routers(pr: ParseResult) -> List[RouterDecl]:
    """All router declarations in one parsed file, in source order."""
    if pr.parse_status != "OK":
        first = pr.parse_errors[0]
        if b"router" in pr.source_bytes:
            raise InterfaceExtractionError(
                f"Syntax error in {pr.path}:{first.line + 1}:{first.column + 1}"
            )
        logger.warning("Parse errors in %s (no router annotations); skipping", pr.path)
        return []
    routers: List[RouterDecl] = []
    _scan_container(pr.root, pr, routers)
    return routers


# ── Public API ───────────────────────────────────────────────────────────────

def interface_sources(project_dir: Path) -> List[Path]:
    """Rust files scanned for routers: ``src/**/*.rs``, else the main file."""
    src = project_dir / "src"
    if src.is_dir():
        return sorted(p for p in src.rglob("*.rs") if p.is_file())
    main = find_main_source(project_dir)
    return [main] if main is not None else []


def extract_interface(project_dir: Path, contract_name: str) -> InterfaceDescription:
    """
    Derive the :class:`InterfaceDescription` of a contract crate.

    No router anywhere is not an error: the description is empty.
    """
    routers: List[RouterDecl] = []
    for rs_path in interface_sources(project_dir):
        pr = parse_file(rs_path)
        # Report paths relative to the project so descriptions are location-free
        pr.path = rs_path.relative_to(project_dir).as_posix()
        routers.extend(scan_routers(pr))

    methods = [m for r in routers for m in r.methods]
    check_unique((m.signature, m.selector) for m in methods)

    if not routers:
        logger.info("No #[router] annotations found; interface is empty")
    else:
        logger.info(
            "Extracted %d method(s) from %d router(s)", len(methods), len(routers)
        )
    return InterfaceDescription(
        contract_name=contract_name,
        methods=tuple(methods),
        routers=tuple(routers),
    )
