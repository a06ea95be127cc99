"""Per-node consensus (config.toml) and application (app.toml) rendering."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Literal

from fleetboot.core.exceptions import ConfigValidationError

MIB = 1024 * 1024
GRPC_MSG_SIZE = 128 * MIB

type Pruning = Literal["default", "nothing", "everything", "custom"]
type TomlValue = str | bool | int | float | Sequence[str]

_DEC_COIN = re.compile(r"^\s*(\d+(?:\.\d+)?)([a-zA-Z][a-zA-Z0-9/:._-]{2,127})\s*$")
_PRUNING = ("default", "nothing", "everything", "custom")


def _toml_value(value: TomlValue) -> str:
    match value:
        case bool():
            return "true" if value else "false"
        case int() | float():
            return str(value)
        case str():
            return json.dumps(value)
        case _:
            return "[" + ", ".join(json.dumps(v) for v in value) + "]"


def dump_toml(root: Mapping[str, TomlValue], tables: Mapping[str, Mapping[str, TomlValue]]) -> str:
    """Render top-level keys followed by one level of ``[table]`` sections."""
    lines = [f"{key} = {_toml_value(value)}" for key, value in root.items()]
    for table, values in tables.items():
        lines.extend(["", f"[{table}]"])
        lines.extend(f"{key} = {_toml_value(value)}" for key, value in values.items())
    return "\n".join(lines) + "\n"


# =============================================================================
# Consensus config
# =============================================================================


@dataclass(frozen=True, slots=True)
class ConsensusConfig:
    """Fields of config.toml set per node."""

    moniker: str
    p2p_laddr: str
    persistent_peers: tuple[str, ...]
    rpc_laddr: str = "tcp://0.0.0.0:26657"
    tx_indexer: str = "kv"
    timeout_propose: str = "3s"
    timeout_commit: str = "1s"
    prometheus: bool = True
    prometheus_listen_addr: str = ":26660"

    @classmethod
    def for_node(
        cls, name: str, address: str, peers: Sequence[str], *, p2p_port: int = 26656, rpc_port: int = 26657,
    ) -> ConsensusConfig:
        return cls(
            moniker=name,
            p2p_laddr=f"tcp://{address}:{p2p_port}",
            persistent_peers=tuple(peers),
            rpc_laddr=f"tcp://0.0.0.0:{rpc_port}",
        )

    def render(self) -> str:
        return dump_toml(
            {"moniker": self.moniker},
            {
                "rpc": {"laddr": self.rpc_laddr},
                "p2p": {
                    "laddr": self.p2p_laddr,
                    "persistent_peers": ",".join(self.persistent_peers),
                },
                "consensus": {
                    "timeout_propose": self.timeout_propose,
                    "timeout_commit": self.timeout_commit,
                },
                "tx_index": {"indexer": self.tx_indexer},
                "instrumentation": {
                    "prometheus": self.prometheus,
                    "prometheus_listen_addr": self.prometheus_listen_addr,
                },
            },
        )


# =============================================================================
# App config
# =============================================================================


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Fields of app.toml set per node."""

    minimum_gas_prices: str
    pruning: Pruning = "default"
    pruning_keep_recent: int = 0
    pruning_interval: int = 0
    grpc_enable: bool = True
    grpc_address: str = "0.0.0.0:9090"
    grpc_max_recv_msg_size: int = GRPC_MSG_SIZE
    grpc_max_send_msg_size: int = GRPC_MSG_SIZE

    @classmethod
    def for_denom(cls, denom: str, gas_price: str = "0.001") -> AppConfig:
        return cls(minimum_gas_prices=f"{gas_price}{denom}")

    def validate(self, node: str) -> None:
        """Check internal consistency.

        Raises:
            ConfigValidationError: Naming ``node`` and the first problem found.
        """
        if not self.minimum_gas_prices.strip():
            raise ConfigValidationError(node, "minimum-gas-prices must be set")
        for coin in self.minimum_gas_prices.split(","):
            if not _DEC_COIN.match(coin):
                raise ConfigValidationError(node, f"invalid minimum gas price {coin!r}")
        if self.pruning not in _PRUNING:
            raise ConfigValidationError(node, f"unknown pruning strategy {self.pruning!r}")
        if self.pruning == "custom" and self.pruning_interval <= 0:
            raise ConfigValidationError(node, "custom pruning requires pruning-interval > 0")
        if self.pruning_keep_recent < 0 or self.pruning_interval < 0:
            raise ConfigValidationError(node, "pruning values must not be negative")
        if self.grpc_max_recv_msg_size <= 0 or self.grpc_max_send_msg_size <= 0:
            raise ConfigValidationError(node, "gRPC message size limits must be positive")

    def render(self) -> str:
        return dump_toml(
            {
                "minimum-gas-prices": self.minimum_gas_prices,
                "pruning": self.pruning,
                "pruning-keep-recent": str(self.pruning_keep_recent),
                "pruning-interval": str(self.pruning_interval),
            },
            {
                "grpc": {
                    "enable": self.grpc_enable,
                    "address": self.grpc_address,
                    "max-recv-msg-size": str(self.grpc_max_recv_msg_size),
                    "max-send-msg-size": str(self.grpc_max_send_msg_size),
                },
            },
        )
