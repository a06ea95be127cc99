"""Network descriptor and genesis export.

The descriptor is built incrementally, one validator per registered node,
then exported exactly once. Export seals it: later additions raise
GenesisSealedError, and every node receives the same exported bytes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from fleetboot.core.exceptions import ConfigurationError, GenesisSealedError

from .keys import KeyPair, encode_pub_key

P2P_PORT = 26656
MAX_BLOCK_BYTES = 104_857_600
POWER_REDUCTION = 1_000_000
DEFAULT_GENESIS_TIME = "2024-01-01T00:00:00Z"


@dataclass(frozen=True, slots=True)
class ConsensusParams:
    block_max_bytes: int = 128_000_000
    block_max_gas: int = -1
    evidence_max_age_num_blocks: int = 120_960
    evidence_max_age_duration: str = "1814400000000000"
    evidence_max_bytes: int = 1_048_576

    def clamped(self) -> ConsensusParams:
        """Copy with every parameter held within the loader's accepted limits."""
        if self.block_max_bytes <= MAX_BLOCK_BYTES:
            return self
        return replace(self, block_max_bytes=MAX_BLOCK_BYTES)

    def to_json(self) -> dict[str, Any]:
        return {
            "block": {
                "max_bytes": str(self.block_max_bytes),
                "max_gas": str(self.block_max_gas),
            },
            "evidence": {
                "max_age_num_blocks": str(self.evidence_max_age_num_blocks),
                "max_age_duration": self.evidence_max_age_duration,
                "max_bytes": str(self.evidence_max_bytes),
            },
            "validator": {"pub_key_types": ["ed25519"]},
        }


@dataclass(frozen=True, slots=True)
class ValidatorDescriptor:
    """One genesis validator.

    Args:
        name: Logical node name, used as moniker and account name.
        signer: Consensus signing key.
        network: P2P identity key.
        address: Reachable address of the node.
        initial_tokens: Initial account balance.
        stake: Self-delegated stake.
    """

    name: str
    signer: KeyPair
    network: KeyPair
    address: str
    initial_tokens: int
    stake: int

    @property
    def node_id(self) -> str:
        return self.network.node_id

    @property
    def power(self) -> int:
        return self.stake // POWER_REDUCTION

    def peer(self, port: int = P2P_PORT) -> str:
        return f"{self.node_id}@{self.address}:{port}"


@dataclass(slots=True)
class NetworkDescriptor:
    """Mutable genesis under construction, sealed by ``export()``."""

    chain_id: str
    genesis_time: str = DEFAULT_GENESIS_TIME
    denom: str = "utia"
    p2p_port: int = P2P_PORT
    params: ConsensusParams = field(default_factory=ConsensusParams)
    _validators: list[ValidatorDescriptor] = field(default_factory=list)
    _sealed: bool = False

    def __post_init__(self) -> None:
        if not self.chain_id:
            raise ConfigurationError("chain id must not be empty")

    @property
    def validators(self) -> tuple[ValidatorDescriptor, ...]:
        return tuple(self._validators)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def add_validator(self, validator: ValidatorDescriptor) -> None:
        if self._sealed:
            raise GenesisSealedError(
                f"Genesis for {self.chain_id} is sealed; cannot add {validator.name}"
            )
        if any(v.name == validator.name for v in self._validators):
            raise ConfigurationError(f"Validator {validator.name} already registered")
        self._validators.append(validator)

    def seal(self) -> None:
        self._sealed = True

    def document(self) -> dict[str, Any]:
        """The genesis document as plain JSON-compatible data."""
        params = self.params.clamped()
        if params is not self.params:
            logger.bind(component="genesis").info(
                "Clamped block max_bytes {old} -> {new}",
                old=self.params.block_max_bytes, new=params.block_max_bytes,
            )

        return {
            "genesis_time": self.genesis_time,
            "chain_id": self.chain_id,
            "initial_height": "1",
            "consensus_params": params.to_json(),
            "validators": [
                {
                    "name": v.name,
                    "address": v.signer.address.hex().upper(),
                    "pub_key": encode_pub_key(v.signer),
                    "power": str(v.power),
                    "network_pub_key": encode_pub_key(v.network),
                    "net_address": v.peer(self.p2p_port),
                }
                for v in self._validators
            ],
            "app_hash": "",
            "app_state": {
                "denom": self.denom,
                "accounts": [
                    {
                        "name": v.name,
                        "address": v.signer.address.hex(),
                        "coins": [{"denom": self.denom, "amount": str(v.initial_tokens)}],
                        "stake": {"denom": self.denom, "amount": str(v.stake)},
                    }
                    for v in self._validators
                ],
            },
        }

    def export(self) -> bytes:
        """Seal the descriptor and return the genesis document bytes."""
        if not self._validators:
            raise ConfigurationError(f"Genesis for {self.chain_id} has no validators")
        self.seal()
        return (json.dumps(self.document(), indent=2) + "\n").encode()
