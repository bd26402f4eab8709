"""
Source event log: lending protocol events on a source chain.
"""

from typing import Any, Mapping, Optional, Protocol

import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .models import EventKind, RawEvent, SourceAction

logger = structlog.get_logger()


# Lending protocol ABI (events only)
LENDING_PROTOCOL_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "borrower", "type": "address"},
            {"indexed": True, "name": "loanId", "type": "uint256"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "Borrowed",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "borrower", "type": "address"},
            {"indexed": True, "name": "loanId", "type": "uint256"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "onTime", "type": "bool"},
        ],
        "name": "LoanRepaid",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "borrower", "type": "address"},
            {"indexed": True, "name": "loanId", "type": "uint256"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "LoanDefaulted",
        "type": "event",
    },
]


def event_kind_for(action: SourceAction, args: Mapping[str, Any]) -> EventKind:
    """
    Map a source event to a credit event kind.

    On-time vs late comes from the protocol's onTime flag; the relay does
    not judge lateness itself.
    """
    if action is SourceAction.BORROWED:
        return EventKind.BORROW
    if action is SourceAction.DEFAULTED:
        return EventKind.DEFAULT
    return EventKind.REPAY_ON_TIME if args.get("onTime", True) else EventKind.REPAY_LATE


def raw_event_from_log(action: SourceAction, log: Mapping[str, Any], block_timestamp: int) -> RawEvent:
    """Build a RawEvent from a decoded web3 event log."""
    args = log["args"]
    return RawEvent(
        kind=event_kind_for(action, args),
        subject=args.get("borrower", ""),
        raw_amount=int(args.get("amount", 0)),
        tx_hash=bytes(log["transactionHash"]),
        block_number=int(log["blockNumber"]),
        block_timestamp=int(block_timestamp),
        emitting_contract=log["address"],
        log_index=int(log.get("logIndex", 0)),
    )


class SourceLogClient(Protocol):
    """Protocol for a source event log (real or mock)."""

    async def get_chain_id(self) -> int: ...
    async def get_chain_head(self) -> int: ...
    async def query_range(self, from_block: int, to_block: int) -> list[RawEvent]: ...


class SourceEventLog:
    """
    Async reader for lending protocol events on one source chain.
    """

    def __init__(self, rpc_url: str, protocol_address: str, w3: Optional[AsyncWeb3] = None):
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.protocol_address = Web3.to_checksum_address(protocol_address)
        self.contract = self.w3.eth.contract(address=self.protocol_address, abi=LENDING_PROTOCOL_ABI)

    async def get_chain_id(self) -> int:
        return await self.w3.eth.chain_id

    async def get_chain_head(self) -> int:
        """Get current block height."""
        return await self.w3.eth.block_number

    async def is_final(self, block_number: int, confirmation_depth: int) -> bool:
        """A block is treated as final once it is confirmation_depth deep."""
        head = await self.get_chain_head()
        return block_number <= head - confirmation_depth

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self.w3.eth.get_block(block_number)
        return int(block["timestamp"])

    async def query_events(
        self, action: SourceAction, from_block: int, to_block: int
    ) -> list[Any]:
        """Decoded logs of one event type in [from_block, to_block]."""
        event = getattr(self.contract.events, action.value)
        return await event.get_logs(from_block=from_block, to_block=to_block)

    async def query_range(self, from_block: int, to_block: int) -> list[RawEvent]:
        """All lending events in [from_block, to_block], in chain order."""
        timestamps: dict[int, int] = {}
        events: list[RawEvent] = []

        for action in SourceAction:
            logs = await self.query_events(action, from_block, to_block)
            for log in logs:
                block_number = int(log["blockNumber"])
                if block_number not in timestamps:
                    timestamps[block_number] = await self.get_block_timestamp(block_number)
                events.append(raw_event_from_log(action, log, timestamps[block_number]))

        events.sort(key=lambda e: e.sort_key)
        logger.debug(
            "source_range_queried",
            protocol=self.protocol_address,
            from_block=from_block,
            to_block=to_block,
            events=len(events),
        )
        return events


class MockSourceEventLog:
    """
    Mock source chain for testing without a node.
    """

    def __init__(self, chain_id: int = 11155111, head: int = 0) -> None:
        self.chain_id = chain_id
        self.head = head
        self.events: list[RawEvent] = []
        self.queries: list[tuple[int, int]] = []
        # Exceptions raised by upcoming query_range calls, in order
        self.query_failures: list[Exception] = []

    def add_event(self, event: RawEvent) -> None:
        """Add a mock event; the head moves up to cover it."""
        self.events.append(event)
        self.head = max(self.head, event.block_number)

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_chain_head(self) -> int:
        return self.head

    async def query_range(self, from_block: int, to_block: int) -> list[RawEvent]:
        self.queries.append((from_block, to_block))
        if self.query_failures:
            raise self.query_failures.pop(0)
        found = [e for e in self.events if from_block <= e.block_number <= to_block]
        return sorted(found, key=lambda e: e.sort_key)
