"""
Tests for multi-chain orchestration.
"""

import asyncio

import pytest

from conftest import BRIDGE, PROTOCOL, SEPOLIA_CHAIN_ID, make_event, tx_hash_for
from dike_relayer.config import RelayerConfig, Settings, SourceChainConfig
from dike_relayer.db import RelayDatabase
from dike_relayer.errors import ConfigurationError
from dike_relayer.models import EventKind
from dike_relayer.registry import MockDestinationRegistry
from dike_relayer.relayer import CreditRelayer
from dike_relayer.source import MockSourceEventLog

BASE_SEPOLIA_CHAIN_ID = 84532


def chain(chain_id: int, name: str) -> SourceChainConfig:
    return SourceChainConfig(
        name=name,
        chain_id=chain_id,
        rpc_url=f"http://{name}.localhost:8545",
        protocol_address=PROTOCOL,
        start_block=100,
        token_decimals=6,
        confirmation_depth=0,
    )


def make_config(database_url: str = "sqlite://") -> RelayerConfig:
    settings = Settings(
        _env_file=None,
        bridge_address=BRIDGE,
        private_key="0x" + "11" * 32,
        database_url=database_url,
    )
    return RelayerConfig(
        settings=settings,
        chains=[chain(SEPOLIA_CHAIN_ID, "sepolia"), chain(BASE_SEPOLIA_CHAIN_ID, "base-sepolia")],
    )


async def yield_once(delay: float) -> None:
    await asyncio.sleep(0)


class UnreachableRegistry(MockDestinationRegistry):
    """Destination node that refuses the first `outages` chain id queries."""

    def __init__(self, outages: int) -> None:
        super().__init__()
        self.outages = outages
        self.chain_id_queries = 0

    async def get_chain_id(self) -> int:
        self.chain_id_queries += 1
        if self.chain_id_queries <= self.outages:
            raise ConnectionError("destination node temporarily unavailable")
        return await super().get_chain_id()


@pytest.fixture
def sources() -> dict[int, MockSourceEventLog]:
    return {
        SEPOLIA_CHAIN_ID: MockSourceEventLog(chain_id=SEPOLIA_CHAIN_ID),
        BASE_SEPOLIA_CHAIN_ID: MockSourceEventLog(chain_id=BASE_SEPOLIA_CHAIN_ID),
    }


class TestCreditRelayer:
    """Tests for CreditRelayer."""

    @pytest.mark.asyncio
    async def test_run_once_relays_every_chain(
        self, sources: dict[int, MockSourceEventLog], registry: MockDestinationRegistry, db: RelayDatabase
    ) -> None:
        sources[SEPOLIA_CHAIN_ID].add_event(make_event(101))
        sources[SEPOLIA_CHAIN_ID].add_event(make_event(102, kind=EventKind.REPAY_ON_TIME))
        sources[BASE_SEPOLIA_CHAIN_ID].add_event(make_event(110, kind=EventKind.REPAY_LATE))

        relayer = CreditRelayer(
            make_config(),
            database=db,
            sources=sources,
            registries={SEPOLIA_CHAIN_ID: registry, BASE_SEPOLIA_CHAIN_ID: registry},
        )
        reports = await relayer.run_once()

        assert {r.chain_id: r.submitted for r in reports} == {
            SEPOLIA_CHAIN_ID: 2,
            BASE_SEPOLIA_CHAIN_ID: 1,
        }
        assert len(registry.recorded) == 3
        assert db.list_cursors() == {SEPOLIA_CHAIN_ID: 102, BASE_SEPOLIA_CHAIN_ID: 110}
        assert relayer.state.cycles == 1

        summary = {row["chain_id"]: row for row in relayer.summary()}
        assert summary[SEPOLIA_CHAIN_ID]["cursor"] == 102
        assert summary[BASE_SEPOLIA_CHAIN_ID]["state"] == "idle"

    @pytest.mark.asyncio
    async def test_same_borrow_tx_on_two_chains(
        self, sources: dict[int, MockSourceEventLog], registry: MockDestinationRegistry, db: RelayDatabase
    ) -> None:
        """The reference hash binds the chain id, so both borrows are recorded."""
        shared_tx = tx_hash_for(105)
        for source in sources.values():
            source.add_event(make_event(105, tx_hash=shared_tx))

        relayer = CreditRelayer(
            make_config(),
            database=db,
            sources=sources,
            registries={SEPOLIA_CHAIN_ID: registry, BASE_SEPOLIA_CHAIN_ID: registry},
        )
        await relayer.run_once()

        assert sorted(p.source_chain_id for p in registry.recorded) == [
            BASE_SEPOLIA_CHAIN_ID,
            SEPOLIA_CHAIN_ID,
        ]

    @pytest.mark.asyncio
    async def test_destination_chain_mismatch(
        self, sources: dict[int, MockSourceEventLog], db: RelayDatabase
    ) -> None:
        wrong = MockDestinationRegistry(chain_id=1)
        relayer = CreditRelayer(
            make_config(),
            database=db,
            sources=sources,
            registries={SEPOLIA_CHAIN_ID: wrong, BASE_SEPOLIA_CHAIN_ID: wrong},
        )

        with pytest.raises(ConfigurationError, match="Destination"):
            await relayer.run_once()

    @pytest.mark.asyncio
    async def test_destination_outage_is_retried(
        self, sources: dict[int, MockSourceEventLog], db: RelayDatabase
    ) -> None:
        sources[SEPOLIA_CHAIN_ID].add_event(make_event(101))
        registry = UnreachableRegistry(outages=2)
        relayer = CreditRelayer(
            make_config(),
            database=db,
            sources=sources,
            registries={SEPOLIA_CHAIN_ID: registry, BASE_SEPOLIA_CHAIN_ID: registry},
        )

        for _ in range(2):
            reports = await relayer.run_once()
            assert {r.chain_id for r in reports} == {SEPOLIA_CHAIN_ID, BASE_SEPOLIA_CHAIN_ID}
            assert all(r.backoff and r.empty for r in reports)
        assert not relayer.state.destination_verified
        assert db.list_cursors() == {}

        reports = await relayer.run_once()
        assert not any(r.backoff for r in reports)
        assert relayer.state.destination_verified
        assert len(registry.recorded) == 1

    @pytest.mark.asyncio
    async def test_run_waits_out_destination_outage(
        self, sources: dict[int, MockSourceEventLog], db: RelayDatabase
    ) -> None:
        sources[SEPOLIA_CHAIN_ID].add_event(make_event(101))
        registry = UnreachableRegistry(outages=2)
        delays: list[float] = []
        relayer = None

        async def sleep(delay: float) -> None:
            delays.append(delay)
            if len(delays) > 2:
                relayer.stop()
            await asyncio.sleep(0)

        relayer = CreditRelayer(
            make_config(),
            database=db,
            sources=sources,
            registries={SEPOLIA_CHAIN_ID: registry, BASE_SEPOLIA_CHAIN_ID: registry},
            sleep=sleep,
        )
        await asyncio.wait_for(relayer.run(), timeout=5)

        assert delays[:2] == [2, 4]
        assert registry.chain_id_queries == 3
        assert db.get_cursor(SEPOLIA_CHAIN_ID) == 101

    @pytest.mark.asyncio
    async def test_stop_during_destination_outage(
        self, sources: dict[int, MockSourceEventLog], db: RelayDatabase
    ) -> None:
        registry = UnreachableRegistry(outages=1_000)
        relayer = None

        async def sleep(delay: float) -> None:
            relayer.stop()
            await asyncio.sleep(0)

        relayer = CreditRelayer(
            make_config(),
            database=db,
            sources=sources,
            registries={SEPOLIA_CHAIN_ID: registry, BASE_SEPOLIA_CHAIN_ID: registry},
            sleep=sleep,
        )
        await asyncio.wait_for(relayer.run(), timeout=5)

        assert not relayer.state.is_running
        assert db.list_cursors() == {}

    @pytest.mark.asyncio
    async def test_run_until_stopped(
        self, sources: dict[int, MockSourceEventLog], registry: MockDestinationRegistry, db: RelayDatabase
    ) -> None:
        sources[SEPOLIA_CHAIN_ID].add_event(make_event(101))
        relayer = None

        async def sleep(delay: float) -> None:
            relayer.stop()
            await asyncio.sleep(0)

        relayer = CreditRelayer(
            make_config(),
            database=db,
            sources=sources,
            registries={SEPOLIA_CHAIN_ID: registry, BASE_SEPOLIA_CHAIN_ID: registry},
            sleep=sleep,
        )
        await asyncio.wait_for(relayer.run(), timeout=5)

        assert not relayer.state.is_running
        assert db.get_cursor(SEPOLIA_CHAIN_ID) == 101

    @pytest.mark.asyncio
    async def test_irrecoverable_error_stops_all_chains(
        self, registry: MockDestinationRegistry, db: RelayDatabase
    ) -> None:
        sources = {
            SEPOLIA_CHAIN_ID: MockSourceEventLog(chain_id=SEPOLIA_CHAIN_ID),
            # RPC endpoint pointed at the wrong network
            BASE_SEPOLIA_CHAIN_ID: MockSourceEventLog(chain_id=1),
        }
        relayer = CreditRelayer(
            make_config(),
            database=db,
            sources=sources,
            registries={SEPOLIA_CHAIN_ID: registry, BASE_SEPOLIA_CHAIN_ID: registry},
            sleep=yield_once,
        )

        with pytest.raises(ConfigurationError):
            await asyncio.wait_for(relayer.run(), timeout=5)
        assert not relayer.state.is_running

    @pytest.mark.asyncio
    async def test_dry_run_leaves_persisted_state_alone(
        self, tmp_path, sources: dict[int, MockSourceEventLog]
    ) -> None:
        url = f"sqlite:///{tmp_path / 'relay.db'}"
        persistent = RelayDatabase(url)
        persistent.save_cursor(SEPOLIA_CHAIN_ID, 100)
        persistent.close()
        sources[SEPOLIA_CHAIN_ID].add_event(make_event(101))

        config = make_config(url)
        config.settings.private_key = ""
        relayer = CreditRelayer(config, sources=sources, dry_run=True)
        reports = await relayer.run_once()
        relayer.close()

        sepolia = next(r for r in reports if r.chain_id == SEPOLIA_CHAIN_ID)
        assert (sepolia.from_block, sepolia.submitted) == (101, 1)
        [proof] = [p.to_dict() for p in relayer.dry_run_proofs()]
        assert proof["blockNumber"] == 101
        assert proof["eventKind"] == "BORROW"
        assert proof["amount"] == str(100 * 10**18)

        check = RelayDatabase(url)
        assert check.get_cursor(SEPOLIA_CHAIN_ID) == 100
        assert check.list_proofs() == []
        check.close()
