"""Custodial bridge relayer: escrow deposits to wrapped mints, burns to releases."""

from .attestation import AttestationTracker
from .chain_event_source import ChainEventSource
from .config import RelayerConfig
from .ledger import Ledger
from .relayer import BridgeRelayer
from .scheduler import Scheduler
from .settlement_executor import SettlementExecutor

__version__ = "0.1.0"

__all__ = [
    "AttestationTracker",
    "BridgeRelayer",
    "ChainEventSource",
    "Ledger",
    "RelayerConfig",
    "Scheduler",
    "SettlementExecutor",
]
