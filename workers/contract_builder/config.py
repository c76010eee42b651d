"""
Runtime configuration and network presets.
"""
from __future__ import annotations

import shlex
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from contract_builder.errors import ConfigInvalid


class Settings(BaseSettings):
    """Pipeline settings, overridable via ``WASMFORGE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="WASMFORGE_",
        env_file=".env",
        extra="ignore",
    )

    # Workspace
    workspace_root: str = tempfile.gettempdir()
    keep_workspace: bool = False

    # External tools
    cargo_bin: str = "cargo"
    rustc_bin: str = "rustc"
    git_bin: str = "git"
    rwasm_converter: str = "rwasm-compile"

    # Timeouts (seconds)
    compile_timeout: int = 600
    convert_timeout: int = 120
    rpc_timeout: int = 8

    # Verification
    default_network: str = "fluent-dev"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_title: str = "Wasmforge API"
    api_version: str = "0.3.0"
    cors_origins: List[str] = ["*"]

    @property
    def converter_command(self) -> List[str]:
        """rWASM converter command split into argv."""
        return shlex.split(self.rwasm_converter)


# =============================================================================
# Network presets
# =============================================================================

@dataclass(frozen=True)
class NetworkPreset:
    """An RPC endpoint and the chain id it must report."""
    name: str
    rpc_url: str
    chain_id: int


NETWORKS: Dict[str, NetworkPreset] = {
    "local": NetworkPreset("local", "http://localhost:8545", 1337),
    "fluent-dev": NetworkPreset("fluent-dev", "https://rpc.dev.gblend.xyz", 20993),
}


def resolve_network(
    name: Optional[str] = None,
    rpc_url: Optional[str] = None,
    chain_id: Optional[int] = None,
) -> NetworkPreset:
    """
    Pick a network from a preset name or an explicit endpoint.

    An explicit ``rpc_url`` wins over ``name`` and requires ``chain_id``.
    """
    if rpc_url:
        if chain_id is None:
            raise ConfigInvalid("--chain-id is required with a custom --rpc endpoint")
        return NetworkPreset("custom", rpc_url, chain_id)

    key = name or get_settings().default_network
    preset = NETWORKS.get(key)
    if preset is None:
        known = ", ".join(sorted(NETWORKS))
        raise ConfigInvalid(f"Unknown network '{key}' (known: {known})")
    if chain_id is not None and chain_id != preset.chain_id:
        raise ConfigInvalid(
            f"Chain id {chain_id} does not match network '{key}' ({preset.chain_id})"
        )
    return preset


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process settings, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
