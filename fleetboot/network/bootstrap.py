"""Bootstrap sequencer: identities, configs and genesis for a fresh network.

Stages run strictly in order; the per-node I/O of a stage fans out through
``run_bounded`` and joins before the next stage starts:

    register -> setup -> peers -> configure -> genesis

Key generation happens only in ``register`` and is sequential, in
participant order, so a fixed seed reproduces every key and the exported
genesis byte for byte. No stage is retried; the first failing node (in
participant order) aborts the run with a BootstrapError.

A sequencer is single-use: its genesis is sealed after a run, and its key
generator has been consumed.
"""

from __future__ import annotations

import shlex
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath

from loguru import logger

from fleetboot.core.exceptions import BootstrapError, ConfigurationError
from fleetboot.infra.conc import DEFAULT_CONCURRENCY, run_bounded
from fleetboot.infra.ssh import RemoteExecutor

from .config import AppConfig, ConsensusConfig
from .genesis import DEFAULT_GENESIS_TIME, P2P_PORT, ConsensusParams, NetworkDescriptor, ValidatorDescriptor
from .keys import KeyGenerator, node_key_json, priv_validator_key_json, priv_validator_state_json

PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644


@dataclass(frozen=True, slots=True)
class Participant:
    """A node taking part in the bootstrap: logical name and reachable address."""

    name: str
    address: str


@dataclass(frozen=True, slots=True)
class NetworkSettings:
    """Network-wide bootstrap settings.

    Args:
        home_dir: Node home directory holding ``config/`` and ``data/``.
        denom: Token denomination.
        initial_tokens: Initial balance of each validator account.
        stake: Self-delegation of each validator.
        genesis_time: Fixed genesis timestamp (RFC 3339).
        gas_price: Minimum gas price amount, combined with ``denom``.
        p2p_port: P2P listen port.
        rpc_port: RPC listen port.
        concurrency: Maximum simultaneous remote sessions per stage.
    """

    home_dir: str = "/root/.celestia-app"
    denom: str = "utia"
    initial_tokens: int = 10**16
    stake: int = 10**12
    genesis_time: str = DEFAULT_GENESIS_TIME
    gas_price: str = "0.001"
    p2p_port: int = P2P_PORT
    rpc_port: int = 26657
    concurrency: int = DEFAULT_CONCURRENCY


@dataclass(frozen=True, slots=True)
class NodePaths:
    home: PurePosixPath

    @property
    def config_dir(self) -> PurePosixPath:
        return self.home / "config"

    @property
    def data_dir(self) -> PurePosixPath:
        return self.home / "data"

    @property
    def validator_key(self) -> PurePosixPath:
        return self.config_dir / "priv_validator_key.json"

    @property
    def validator_state(self) -> PurePosixPath:
        return self.data_dir / "priv_validator_state.json"

    @property
    def node_key(self) -> PurePosixPath:
        return self.config_dir / "node_key.json"

    @property
    def consensus_config(self) -> PurePosixPath:
        return self.config_dir / "config.toml"

    @property
    def app_config(self) -> PurePosixPath:
        return self.config_dir / "app.toml"

    @property
    def genesis(self) -> PurePosixPath:
        return self.config_dir / "genesis.json"


@dataclass(frozen=True, slots=True)
class BootstrapResult:
    chain_id: str
    validators: tuple[ValidatorDescriptor, ...]
    peers: tuple[str, ...]
    genesis: bytes


def _rm(*paths: PurePosixPath) -> str:
    return "rm -f " + " ".join(shlex.quote(str(p)) for p in paths)


class BootstrapSequencer:
    """Bootstraps a set of ready nodes into one network.

    Args:
        executor: Opens remote sessions to nodes.
        chain_id: Network identifier.
        keygen: Key source, owned exclusively by this sequencer.
        settings: Network-wide settings.
        params: Consensus parameters of the genesis.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        chain_id: str,
        keygen: KeyGenerator,
        settings: NetworkSettings | None = None,
        params: ConsensusParams | None = None,
    ) -> None:
        self._executor = executor
        self._keygen = keygen
        self._settings = settings or NetworkSettings()
        self._paths = NodePaths(PurePosixPath(self._settings.home_dir))
        self._network = NetworkDescriptor(
            chain_id,
            genesis_time=self._settings.genesis_time,
            denom=self._settings.denom,
            p2p_port=self._settings.p2p_port,
            params=params or ConsensusParams(),
        )
        self._log = logger.bind(component="bootstrap", chain=chain_id)

    @property
    def network(self) -> NetworkDescriptor:
        return self._network

    async def _fan_out(
        self,
        stage: str,
        fn: Callable[[ValidatorDescriptor], Awaitable[None]],
        validators: Sequence[ValidatorDescriptor],
    ) -> None:
        outcomes = await run_bounded(fn, validators, self._settings.concurrency)
        failed = [(o.item, o.error) for o in outcomes if o.error is not None]
        for v, error in failed:
            self._log.error("Stage {stage} failed on {name}: {err}", stage=stage, name=v.name, err=error)
        if failed:
            v, error = failed[0]
            raise BootstrapError(stage, v.name, error) from error

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def register(self, participants: Sequence[Participant]) -> tuple[ValidatorDescriptor, ...]:
        """Generate signing and network keys per node, in order."""
        s = self._settings
        for p in participants:
            try:
                signer = self._keygen.generate()
                network = self._keygen.generate()
                self._network.add_validator(ValidatorDescriptor(
                    name=p.name,
                    signer=signer,
                    network=network,
                    address=p.address,
                    initial_tokens=s.initial_tokens,
                    stake=s.stake,
                ))
            except Exception as e:
                raise BootstrapError("register", p.name, e) from e
            self._log.info("Registered {name} (node id {id})", name=p.name, id=network.node_id)
        return self._network.validators

    async def _setup_node(self, v: ValidatorDescriptor) -> None:
        paths = self._paths
        async with self._executor.connect(v.address) as session:
            self._log.info("Setting up node {name}...", name=v.name)
            await session.run(
                f"mkdir -p {shlex.quote(str(paths.config_dir))} {shlex.quote(str(paths.data_dir))}"
            )
            await session.run(_rm(paths.validator_key, paths.validator_state, paths.node_key))
            await session.write_file(
                str(paths.validator_key), priv_validator_key_json(v.signer), mode=PRIVATE_MODE,
            )
            await session.write_file(
                str(paths.validator_state), priv_validator_state_json(), mode=PRIVATE_MODE,
            )
            await session.write_file(str(paths.node_key), node_key_json(v.network), mode=PRIVATE_MODE)

    def peers(self) -> tuple[str, ...]:
        return tuple(v.peer(self._settings.p2p_port) for v in self._network.validators)

    async def _configure_node(self, v: ValidatorDescriptor, peers: Sequence[str]) -> None:
        s = self._settings
        consensus = ConsensusConfig.for_node(
            v.name, v.address, peers, p2p_port=s.p2p_port, rpc_port=s.rpc_port,
        )
        app = AppConfig.for_denom(s.denom, s.gas_price)
        app.validate(v.name)

        paths = self._paths
        async with self._executor.connect(v.address) as session:
            self._log.info("Configuring node {name}...", name=v.name)
            await session.run(_rm(paths.consensus_config, paths.app_config))
            await session.write_file(str(paths.consensus_config), consensus.render(), mode=PUBLIC_MODE)
            await session.write_file(str(paths.app_config), app.render(), mode=PUBLIC_MODE)

    async def _write_genesis(self, v: ValidatorDescriptor, genesis: bytes) -> None:
        async with self._executor.connect(v.address) as session:
            await session.run(_rm(self._paths.genesis))
            await session.write_file(str(self._paths.genesis), genesis, mode=PUBLIC_MODE)
            self._log.info("Genesis file written to node {name}", name=v.name)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self, participants: Sequence[Participant]) -> BootstrapResult:
        """Run every stage against ``participants`` (registration order = list order)."""
        if not participants:
            raise ConfigurationError("No nodes to bootstrap")
        for p in participants:
            if not p.address:
                raise ConfigurationError(f"Node {p.name} has no address; run prepare-infra first")

        self._log.info("Starting network setup with {n} nodes...", n=len(participants))
        validators = self.register(participants)

        await self._fan_out("setup", self._setup_node, validators)

        peers = self.peers()
        self._log.info("Configuring peer connections: {n} peers", n=len(peers))

        async def configure(v: ValidatorDescriptor) -> None:
            await self._configure_node(v, peers)

        await self._fan_out("configure", configure, validators)

        try:
            genesis = self._network.export()
        except Exception as e:
            raise BootstrapError("genesis", None, e) from e

        async def distribute(v: ValidatorDescriptor) -> None:
            await self._write_genesis(v, genesis)

        await self._fan_out("genesis", distribute, validators)

        self._log.info("Network {chain} setup completed", chain=self._network.chain_id)
        return BootstrapResult(self._network.chain_id, validators, peers, genesis)
