"""
ChainClient — fetch the code hash of a deployed contract.

The hash returned is ``"0x" + sha256(code)`` so it compares directly with
``bytecode.rwasm.hash`` from the metadata document.
"""
from __future__ import annotations

import abc
import hashlib
import logging

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from contract_builder.config import NetworkPreset
from contract_builder.errors import NetworkError

logger = logging.getLogger(__name__)


class ChainClient(abc.ABC):
    """Read-only access to deployed bytecode."""

    @abc.abstractmethod
    def fetch_code_hash(self, address: str, network: NetworkPreset) -> str:
        ...


class Web3ChainClient(ChainClient):
    """JSON-RPC client over ``Web3.HTTPProvider``; no retries."""

    def __init__(self, timeout: int = 8):
        self.timeout = timeout

    def _connect(self, network: NetworkPreset) -> Web3:
        return Web3(Web3.HTTPProvider(network.rpc_url, request_kwargs={"timeout": self.timeout}))

    def fetch_code_hash(self, address: str, network: NetworkPreset) -> str:
        if not Web3.is_address(address):
            raise NetworkError(f"Invalid contract address: {address}")
        checksum = Web3.to_checksum_address(address)

        w3 = self._connect(network)
        try:
            chain_id = w3.eth.chain_id
            if chain_id != network.chain_id:
                raise NetworkError(
                    f"RPC {network.rpc_url} reports chain id {chain_id}, "
                    f"expected {network.chain_id} for '{network.name}'"
                )
            code = bytes(w3.eth.get_code(checksum))
        except (requests.exceptions.RequestException, Web3Exception, ValueError) as e:
            raise NetworkError(f"RPC request to {network.rpc_url} failed: {e}") from e

        if not code:
            raise NetworkError(f"no code at address {checksum} on '{network.name}'")

        code_hash = "0x" + hashlib.sha256(code).hexdigest()
        logger.info(
            "Fetched %d bytes of code at %s on %s (%s)",
            len(code), checksum, network.name, code_hash[:18],
        )
        return code_hash
