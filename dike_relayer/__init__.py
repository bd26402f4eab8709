"""
DIKE Credit Relayer

Watches lending protocol events (borrows, repayments, defaults) on source
chains, normalizes them into credit proofs and submits them to the DIKE
bridge on Creditcoin, which records them in the DIKERegistry.

Every event is relayed at most once: the bridge's processedProofs map is the
source of truth, backed by a local ledger and a per-chain block cursor that
only advances once a whole batch is settled.

Usage:
    # Run the relayer against every chain in SOURCE_CHAINS
    dike-relayer run

    # One cycle on a single chain, against an in-memory bridge
    dike-relayer run --once --chain 11155111 --dry-run

    # Inspect progress
    dike-relayer status
    dike-relayer failed
"""

__version__ = "0.1.0"

from .config import RelayerConfig, Settings, SourceChainConfig
from .db import RelayDatabase
from .guard import ReplayGuard
from .models import CreditProof, EventKind, RawEvent, SubmitOutcome, SubmitResult
from .proof import compute_reference_hash, normalize_amount, normalize_event
from .registry import DestinationRegistry, MockDestinationRegistry
from .relayer import CreditRelayer
from .scheduler import PollScheduler
from .source import MockSourceEventLog, SourceEventLog
from .submitter import ChainSubmitter

__all__ = [
    "__version__",
    "RelayerConfig",
    "Settings",
    "SourceChainConfig",
    "RelayDatabase",
    "ReplayGuard",
    "CreditProof",
    "EventKind",
    "RawEvent",
    "SubmitOutcome",
    "SubmitResult",
    "compute_reference_hash",
    "normalize_amount",
    "normalize_event",
    "DestinationRegistry",
    "MockDestinationRegistry",
    "CreditRelayer",
    "PollScheduler",
    "MockSourceEventLog",
    "SourceEventLog",
    "ChainSubmitter",
]
