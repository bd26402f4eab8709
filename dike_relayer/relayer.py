"""
Multi-chain relayer: one poll scheduler per source chain, run concurrently.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog
from web3 import Web3

from .config import RelayerConfig
from .db import RelayDatabase
from .errors import ConfigurationError, IrrecoverableError
from .guard import ReplayGuard
from .models import BatchReport, CreditProof
from .registry import DestinationRegistry, MockDestinationRegistry, RegistryClient
from .scheduler import PollScheduler, backoff_delay, wait_or_stop
from .source import SourceEventLog, SourceLogClient
from .submitter import ChainSubmitter

logger = structlog.get_logger()


@dataclass
class RelayerState:
    """Current relayer state."""

    is_running: bool = False
    destination_verified: bool = False
    last_cycle_time: Optional[datetime] = None
    cycles: int = 0


class CreditRelayer:
    """
    Relays credit events from every configured source chain to the DIKE
    bridge.

    Chain loops share nothing but the database handle and, per bridge
    address, the destination binding.
    """

    def __init__(
        self,
        config: RelayerConfig,
        database: Optional[RelayDatabase] = None,
        sources: Optional[dict[int, SourceLogClient]] = None,
        registries: Optional[dict[int, RegistryClient]] = None,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.dry_run = dry_run
        self.sleep = sleep
        self.state = RelayerState()
        self._stop = asyncio.Event()
        self._verify_failures = 0

        settings = config.settings
        self.db = database or self._open_database()

        sources = sources or {}
        registries = registries or {}
        self._bridges: dict[str, RegistryClient] = {}
        self.schedulers: dict[int, PollScheduler] = {}

        for chain in config.chains:
            source = sources.get(chain.chain_id) or SourceEventLog(
                chain.rpc_url, chain.protocol_address
            )
            registry = registries.get(chain.chain_id) or self._bridge_for(
                config.bridge_address(chain)
            )
            guard = ReplayGuard(
                registry,
                self.db,
                chain.chain_id,
                in_flight_timeout=settings.in_flight_timeout_seconds,
                clock=clock,
            )
            submitter = ChainSubmitter(
                registry,
                confirmation_timeout=settings.confirmation_timeout_seconds,
                max_attempts=settings.max_submit_attempts,
                retry_delay=settings.backoff_base_seconds,
                sleep=sleep,
            )
            self.schedulers[chain.chain_id] = PollScheduler(
                chain=chain,
                source=source,
                registry=registry,
                guard=guard,
                submitter=submitter,
                database=self.db,
                confirmation_depth=config.confirmation_depth(chain),
                poll_interval=settings.poll_interval_seconds,
                max_batch_blocks=settings.max_batch_blocks,
                backoff_base=settings.backoff_base_seconds,
                backoff_max=settings.backoff_max_seconds,
                rescan_overlap=settings.rescan_overlap_blocks,
                sleep=sleep,
            )

        logger.info(
            "relayer_initialized",
            chains=[c.label for c in config.chains],
            destination_chain_id=settings.destination_chain_id,
            poll_interval=settings.poll_interval_seconds,
            dry_run=dry_run,
        )

    def _open_database(self) -> RelayDatabase:
        settings = self.config.settings
        if not self.dry_run:
            return RelayDatabase(settings.database_url)

        # Dry runs start from the real cursors but never write back to them
        database = RelayDatabase("sqlite://")
        persistent = RelayDatabase(settings.database_url)
        try:
            for chain_id, block in persistent.list_cursors().items():
                database.save_cursor(chain_id, block)
        finally:
            persistent.close()
        return database

    def _bridge_for(self, bridge_address: str) -> RegistryClient:
        settings = self.config.settings
        key = Web3.to_checksum_address(bridge_address)
        if key not in self._bridges:
            if self.dry_run:
                self._bridges[key] = MockDestinationRegistry(chain_id=settings.destination_chain_id)
            else:
                self._bridges[key] = DestinationRegistry(
                    rpc_url=settings.destination_rpc_url,
                    bridge_address=key,
                    private_key=settings.private_key,
                    chain_id=settings.destination_chain_id,
                    gas_limit=settings.gas_limit,
                )
        return self._bridges[key]

    async def verify_destination(self) -> None:
        """
        Check that every bridge binding talks to the configured destination.

        Raises:
            ConfigurationError: a destination RPC serves another chain.
        """
        if self.state.destination_verified:
            return

        expected = self.config.settings.destination_chain_id
        seen: set[int] = set()
        for scheduler in self.schedulers.values():
            registry = scheduler.registry
            if id(registry) in seen:
                continue
            seen.add(id(registry))

            remote = await registry.get_chain_id()
            if remote != expected:
                raise ConfigurationError(
                    f"Destination RPC reports chain id {remote}, expected {expected}"
                )
        self.state.destination_verified = True

    async def _try_verify_destination(self) -> bool:
        """verify_destination(), with node errors logged instead of raised."""
        try:
            await self.verify_destination()
        except IrrecoverableError:
            raise
        except Exception as e:
            self._verify_failures += 1
            logger.warning(
                "destination_check_failed",
                error=str(e),
                error_type=type(e).__name__,
                failures=self._verify_failures,
                retry_in=self._verify_delay(),
            )
            return False
        self._verify_failures = 0
        return True

    def _verify_delay(self) -> float:
        settings = self.config.settings
        return backoff_delay(
            self._verify_failures, settings.backoff_base_seconds, settings.backoff_max_seconds
        )

    async def run_once(self) -> list[BatchReport]:
        """
        Run one cycle on every chain.

        Returns one report per chain. When the destination cannot be reached
        every report is a backoff report and nothing is scanned.
        """
        if not await self._try_verify_destination():
            return [
                BatchReport(chain_id=chain_id, from_block=0, to_block=-1, backoff=True)
                for chain_id in self.schedulers
            ]
        reports = await asyncio.gather(*(s.run_once() for s in self.schedulers.values()))

        self.state.cycles += 1
        self.state.last_cycle_time = datetime.now()
        for report in reports:
            logger.info(
                "chain_cycle_complete",
                chain_id=report.chain_id,
                from_block=report.from_block,
                to_block=report.to_block,
                submitted=report.submitted,
                duplicates=report.duplicates,
                rejected=report.rejected,
                failed=report.failed,
                advanced=report.advanced,
            )
        return list(reports)

    async def run(self) -> None:
        """
        Run every chain loop until stop() is called.

        An irrecoverable error on any chain stops all of them and is
        re-raised.
        """
        self.state.is_running = True
        logger.info("relayer_starting", chains=len(self.schedulers), dry_run=self.dry_run)

        try:
            while not await self._try_verify_destination():
                await wait_or_stop(self.sleep, self._verify_delay(), self._stop)
                if self._stop.is_set():
                    return

            tasks = [
                asyncio.create_task(s.run(self._stop), name=f"relay-chain-{chain_id}")
                for chain_id, s in self.schedulers.items()
            ]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                self._stop.set()
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        finally:
            self.state.is_running = False
            logger.info("relayer_stopped")

    def stop(self) -> None:
        """Ask every chain loop to stop after its current batch."""
        logger.info("relayer_stop_requested")
        self._stop.set()

    def close(self) -> None:
        self.db.close()

    def dry_run_proofs(self) -> list[CreditProof]:
        """Proofs the in-memory bridges accepted during a dry run."""
        proofs: list[CreditProof] = []
        for bridge in self._bridges.values():
            if isinstance(bridge, MockDestinationRegistry):
                proofs.extend(bridge.recorded)
        return proofs

    def summary(self) -> list[dict[str, Any]]:
        """Per-chain scheduler state, for operators."""
        rows = []
        for chain_id, scheduler in self.schedulers.items():
            report = scheduler.last_report
            rows.append(
                {
                    "chain_id": chain_id,
                    "chain": scheduler.chain.label,
                    "state": scheduler.state.value,
                    "cursor": scheduler.cursor,
                    "failures": scheduler.failures,
                    "in_flight": scheduler.guard.in_flight_count,
                    "last_range": (report.from_block, report.to_block) if report else None,
                }
            )
        return rows
