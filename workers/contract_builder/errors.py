"""
Error taxonomy for the build-and-verify pipeline.

Every error carries a stable ``error_type`` string (used in JSON output and
HTTP responses) and the ``stage`` that raised it, so callers can tell
"your source does not compile" apart from "your bytecode does not match".
"""
from __future__ import annotations

from typing import List, Optional


class ContractBuilderError(Exception):
    """Base class for all pipeline errors."""

    error_type = "ContractBuilderError"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def at_stage(self, stage: str) -> "ContractBuilderError":
        """Attach *stage* unless an inner stage already claimed the error."""
        if self.stage is None:
            self.stage = stage
        return self

    def to_dict(self) -> dict:
        payload = {
            "status": "error",
            "error_type": self.error_type,
            "message": self.message,
        }
        if self.stage:
            payload["stage"] = self.stage
        return payload


# =============================================================================
# Configuration / source acquisition
# =============================================================================

class ConfigInvalid(ContractBuilderError):
    error_type = "ConfigInvalid"


class SourceUnavailable(ContractBuilderError):
    error_type = "SourceUnavailable"


class ArchiveCorrupt(SourceUnavailable):
    error_type = "ArchiveCorrupt"


class InnerPathNotFound(SourceUnavailable):
    error_type = "InnerPathNotFound"


class DirtyWorkingTree(ContractBuilderError):
    error_type = "DirtyWorkingTree"

    def __init__(self, files: List[str], stage: Optional[str] = None):
        self.files = list(files)
        super().__init__(
            f"Working tree has {len(self.files)} uncommitted change(s); "
            "commit them or pass --allow-dirty",
            stage,
        )


# =============================================================================
# Build
# =============================================================================

class BuildError(ContractBuilderError):
    """Any failure while turning resolved source into artifacts."""
    error_type = "BuildError"


class InterfaceExtractionError(BuildError):
    error_type = "InterfaceExtractionError"


class UnsupportedType(InterfaceExtractionError):
    error_type = "UnsupportedType"

    def __init__(self, type_name: str, context: str = ""):
        self.type_name = type_name
        msg = f"Unsupported type: {type_name}"
        if context:
            msg = f"{msg} (in {context})"
        super().__init__(msg)


class SelectorCollision(InterfaceExtractionError):
    error_type = "SelectorCollision"

    def __init__(self, selector: str, first: str, second: str):
        self.selector = selector
        self.signatures = (first, second)
        super().__init__(
            f"Selector collision {selector}: '{first}' and '{second}'"
        )


class EmptyRouter(InterfaceExtractionError):
    error_type = "EmptyRouter"


class ToolchainMissing(BuildError):
    error_type = "ToolchainMissing"


class CompilationFailed(BuildError):
    error_type = "CompilationFailed"

    def __init__(self, message: str, diagnostics: str = "", stage: Optional[str] = None):
        super().__init__(message, stage)
        self.diagnostics = diagnostics


class LockfileDrift(CompilationFailed):
    error_type = "LockfileDrift"


class ConversionFailed(BuildError):
    error_type = "ConversionFailed"


# =============================================================================
# Output / network
# =============================================================================

class ArtifactWriteError(ContractBuilderError):
    error_type = "ArtifactWriteError"


class NetworkError(ContractBuilderError):
    error_type = "NetworkError"
