"""
Shared fixtures: a throwaway SQLite ledger, mock chains and event factories.
"""

import pytest
from web3 import Web3

from dike_relayer.config import SourceChainConfig
from dike_relayer.db import RelayDatabase
from dike_relayer.models import EventKind, RawEvent
from dike_relayer.registry import MockDestinationRegistry
from dike_relayer.source import MockSourceEventLog

SEPOLIA_CHAIN_ID = 11155111
PROTOCOL = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
BRIDGE = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
BORROWER = "0x1234567890123456789012345678901234567890"


def tx_hash_for(block: int, log_index: int = 0) -> bytes:
    """Deterministic fake 32-byte transaction hash."""
    return bytes(Web3.keccak(text=f"source-tx-{block}-{log_index}"))


def make_event(
    block: int,
    kind: EventKind = EventKind.BORROW,
    amount: int = 100_000000,
    subject: str = BORROWER,
    log_index: int = 0,
    tx_hash: bytes = b"",
    protocol: str = PROTOCOL,
) -> RawEvent:
    return RawEvent(
        kind=kind,
        subject=subject,
        raw_amount=amount,
        tx_hash=tx_hash or tx_hash_for(block, log_index),
        block_number=block,
        block_timestamp=1_700_000_000 + block * 12,
        emitting_contract=protocol,
        log_index=log_index,
    )


@pytest.fixture
def db(tmp_path) -> RelayDatabase:
    database = RelayDatabase(f"sqlite:///{tmp_path / 'relay.db'}")
    yield database
    database.close()


@pytest.fixture
def registry() -> MockDestinationRegistry:
    return MockDestinationRegistry()


@pytest.fixture
def source() -> MockSourceEventLog:
    return MockSourceEventLog(chain_id=SEPOLIA_CHAIN_ID)


@pytest.fixture
def sepolia() -> SourceChainConfig:
    """USDC-style 6-decimal lending protocol on Sepolia."""
    return SourceChainConfig(
        name="sepolia",
        chain_id=SEPOLIA_CHAIN_ID,
        rpc_url="http://localhost:8545",
        protocol_address=PROTOCOL,
        start_block=100,
        token_decimals=6,
        confirmation_depth=0,
    )

