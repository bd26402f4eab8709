"""
Tests for reading lending protocol events from a source chain.
"""

from types import SimpleNamespace
from typing import Any

import pytest
from hexbytes import HexBytes

from conftest import BORROWER, PROTOCOL, SEPOLIA_CHAIN_ID, make_event, tx_hash_for
from dike_relayer.models import EventKind, SourceAction
from dike_relayer.source import (
    MockSourceEventLog,
    SourceEventLog,
    event_kind_for,
    raw_event_from_log,
)


def decoded_log(block: int, log_index: int, **args: Any) -> dict[str, Any]:
    """Shape of a web3 decoded event log."""
    return {
        "args": {"borrower": BORROWER, "loanId": 1, **args},
        "transactionHash": HexBytes(tx_hash_for(block, log_index)),
        "blockNumber": block,
        "logIndex": log_index,
        "address": PROTOCOL,
    }


class FakeEvent:
    def __init__(self, logs: list[dict[str, Any]]) -> None:
        self.logs = logs
        self.calls: list[tuple[int, int]] = []

    async def get_logs(self, from_block: int, to_block: int) -> list[dict[str, Any]]:
        self.calls.append((from_block, to_block))
        return [log for log in self.logs if from_block <= log["blockNumber"] <= to_block]


class FakeEth:
    def __init__(self, events: dict[str, FakeEvent]) -> None:
        self.events = events
        self.block_requests: list[int] = []
        self.head = 0

    async def _head(self) -> int:
        return self.head

    @property
    def block_number(self) -> Any:
        return self._head()

    def contract(self, address: str, abi: list) -> Any:
        return SimpleNamespace(events=SimpleNamespace(**self.events))

    async def get_block(self, number: int) -> dict[str, int]:
        self.block_requests.append(number)
        return {"timestamp": 1_700_000_000 + number}


class TestEventMapping:
    """Tests for mapping decoded logs to raw events."""

    def test_event_kinds(self) -> None:
        assert event_kind_for(SourceAction.BORROWED, {}) is EventKind.BORROW
        assert event_kind_for(SourceAction.DEFAULTED, {}) is EventKind.DEFAULT
        assert event_kind_for(SourceAction.REPAID, {"onTime": True}) is EventKind.REPAY_ON_TIME
        assert event_kind_for(SourceAction.REPAID, {"onTime": False}) is EventKind.REPAY_LATE

    def test_raw_event_from_log(self) -> None:
        log = decoded_log(200, 4, amount=250_000000, onTime=False)

        raw = raw_event_from_log(SourceAction.REPAID, log, block_timestamp=1_700_000_123)

        assert raw.kind is EventKind.REPAY_LATE
        assert raw.subject == BORROWER
        assert raw.raw_amount == 250_000000
        assert raw.tx_hash == tx_hash_for(200, 4)
        assert isinstance(raw.tx_hash, bytes)
        assert raw.block_number == 200
        assert raw.log_index == 4
        assert raw.block_timestamp == 1_700_000_123
        assert raw.emitting_contract == PROTOCOL


class TestSourceEventLog:
    """Tests for SourceEventLog against a fake web3 object."""

    @pytest.mark.asyncio
    async def test_query_range_merges_and_orders(self) -> None:
        events = {
            "Borrowed": FakeEvent([decoded_log(110, 2, amount=5), decoded_log(130, 0, amount=6)]),
            "LoanRepaid": FakeEvent([decoded_log(110, 1, amount=7, onTime=True)]),
            "LoanDefaulted": FakeEvent([decoded_log(120, 0, amount=8)]),
        }
        eth = FakeEth(events)
        log = SourceEventLog("http://localhost:8545", PROTOCOL, w3=SimpleNamespace(eth=eth))

        found = await log.query_range(100, 125)

        assert [(e.block_number, e.log_index) for e in found] == [(110, 1), (110, 2), (120, 0)]
        assert [e.kind for e in found] == [EventKind.REPAY_ON_TIME, EventKind.BORROW, EventKind.DEFAULT]
        assert found[0].block_timestamp == 1_700_000_110
        # One block header per distinct block
        assert sorted(eth.block_requests) == [110, 120]
        assert events["Borrowed"].calls == [(100, 125)]

    @pytest.mark.asyncio
    async def test_is_final(self) -> None:
        eth = FakeEth({})
        eth.head = 112
        log = SourceEventLog("http://localhost:8545", PROTOCOL, w3=SimpleNamespace(eth=eth))

        assert await log.get_chain_head() == 112
        assert await log.is_final(100, 12)
        assert not await log.is_final(101, 12)


class TestMockSourceEventLog:
    """Tests for the mock source chain."""

    @pytest.mark.asyncio
    async def test_head_follows_events(self) -> None:
        source = MockSourceEventLog(chain_id=SEPOLIA_CHAIN_ID)
        source.add_event(make_event(150))
        source.add_event(make_event(120))

        assert await source.get_chain_id() == SEPOLIA_CHAIN_ID
        assert await source.get_chain_head() == 150
        assert [e.block_number for e in await source.query_range(100, 149)] == [120]

    @pytest.mark.asyncio
    async def test_query_failures(self) -> None:
        source = MockSourceEventLog()
        source.query_failures.append(TimeoutError("rpc timeout"))

        with pytest.raises(TimeoutError):
            await source.query_range(0, 10)
        assert await source.query_range(0, 10) == []
