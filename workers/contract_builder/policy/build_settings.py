"""
Build settings — the validated, immutable configuration of one build.

Constructed once per invocation and rejected as a whole if any field is
invalid; validation happens before any filesystem or process side effect.
"""
from __future__ import annotations

import hashlib
import json
import re
from enum import Enum
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from contract_builder import DEFAULT_TARGET
from contract_builder.errors import ConfigInvalid


# =============================================================================
# Enums
# =============================================================================

class StackLayout(str, Enum):
    """rWASM stack layout modes accepted by the converter."""
    DEFAULT = "default"
    COMPACT = "compact"


_PROFILE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
_FEATURE_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-/+.]*$")
_TARGET_RE = re.compile(r"^[a-z0-9_]+(-[a-z0-9_]+){1,3}$")

# Flags owned by the pipeline; passing them through extra_flags would make
# the recorded settings lie about the build.
RESERVED_CARGO_FLAGS = frozenset({
    "--target",
    "--release",
    "-r",
    "--profile",
    "--features",
    "-F",
    "--all-features",
    "--no-default-features",
    "--locked",
    "--frozen",
    "--offline",
    "--manifest-path",
    "--target-dir",
})


# =============================================================================
# Models
# =============================================================================

class RwasmConfig(BaseModel):
    """Options for the WASM → rWASM conversion."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    entrypoint: str = "main"
    stack_layout: StackLayout = StackLayout.DEFAULT

    @field_validator("entrypoint")
    @classmethod
    def _entrypoint_identifier(cls, v: str) -> str:
        if not v or not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", v):
            raise ValueError(f"invalid entrypoint name: {v!r}")
        return v


class BuildSettings(BaseModel):
    """Everything besides source content that determines the build output."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str = DEFAULT_TARGET
    profile: str = "release"
    features: Tuple[str, ...] = ()
    no_default_features: bool = False
    locked: bool = True
    extra_flags: Tuple[str, ...] = ()
    rwasm: RwasmConfig = RwasmConfig()

    @field_validator("target")
    @classmethod
    def _target_triple(cls, v: str) -> str:
        if not _TARGET_RE.match(v):
            raise ValueError(f"invalid target triple: {v!r}")
        return v

    @field_validator("profile")
    @classmethod
    def _profile_name(cls, v: str) -> str:
        if not _PROFILE_RE.match(v):
            raise ValueError(f"invalid build profile: {v!r}")
        return v

    @field_validator("features")
    @classmethod
    def _normalize_features(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        for feat in v:
            if not _FEATURE_RE.match(feat):
                raise ValueError(f"invalid feature name: {feat!r}")
        return tuple(sorted(set(v)))

    @field_validator("extra_flags")
    @classmethod
    def _no_reserved_flags(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        for flag in v:
            if flag.startswith("-") and not flag.startswith("--"):
                # short options take their value attached: -Ffoo
                name = flag[:2]
            else:
                name = flag.split("=", 1)[0]
            if name in RESERVED_CARGO_FLAGS:
                raise ValueError(f"flag {name} is controlled by build settings")
        return v

    @model_validator(mode="after")
    def _check_combination(self) -> "BuildSettings":
        if self.profile in ("dev", "test", "bench"):
            raise ValueError(f"profile '{self.profile}' cannot produce a contract artifact")
        return self

    # -----------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------

    @property
    def profile_dir(self) -> str:
        """Directory name cargo uses for this profile under target/<triple>/."""
        return self.profile

    def cargo_args(self) -> List[str]:
        """cargo build arguments (without the leading ``cargo``)."""
        args = ["build", "--target", self.target]
        if self.profile == "release":
            args.append("--release")
        elif self.profile != "debug":
            args += ["--profile", self.profile]
        if self.no_default_features:
            args.append("--no-default-features")
        if self.features:
            args += ["--features", ",".join(self.features)]
        if self.locked:
            args.append("--locked")
        args += list(self.extra_flags)
        return args

    def cache_key(self, source_tree_hash: str) -> str:
        """Key of an (optional) build cache: source tree hash + settings."""
        payload = json.dumps(
            {"source": source_tree_hash, "settings": self.model_dump(mode="json")},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def make_settings(**fields: Any) -> BuildSettings:
    """
    Construct :class:`BuildSettings`, turning validation failures into
    ``ConfigInvalid``. ``None`` values fall back to the defaults.
    """
    clean: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    try:
        return BuildSettings(**clean)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigInvalid(f"Invalid build settings: {problems}", stage="configure") from e
