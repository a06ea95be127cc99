"""Network bootstrap: keys, genesis, per-node configuration."""

from .bootstrap import BootstrapResult, BootstrapSequencer, NetworkSettings, Participant
from .config import AppConfig, ConsensusConfig
from .genesis import ConsensusParams, NetworkDescriptor, ValidatorDescriptor
from .keys import KeyGenerator, KeyPair

__all__ = [
    "AppConfig",
    "BootstrapResult",
    "BootstrapSequencer",
    "ConsensusConfig",
    "ConsensusParams",
    "KeyGenerator",
    "KeyPair",
    "NetworkDescriptor",
    "NetworkSettings",
    "Participant",
    "ValidatorDescriptor",
]
