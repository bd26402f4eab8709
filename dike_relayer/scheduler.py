"""
Per-chain poll scheduler.

One cooperative loop per source chain:

    IDLE -> SCANNING -> NORMALIZING -> SUBMITTING -> ADVANCING -> IDLE

with ERROR_BACKOFF on transient failures and WITHHELD while the bridge is
paused or refuses our submitter. The cursor only moves once every proof in
a batch has a definitive outcome, so a crash at any point at worst causes
an overlapping rescan, which the replay guard absorbs.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from .config import SourceChainConfig
from .db import STATUS_FAILED, STATUS_PENDING, STATUS_WITHHELD, RelayDatabase
from .errors import (
    AuthorizationError,
    ConfigurationError,
    IrrecoverableError,
    ProofValidationError,
    RegistryPausedError,
)
from .guard import GuardDecision, ReplayGuard
from .models import WITHHELD_OUTCOMES, BatchReport, CreditProof, RawEvent, SubmitOutcome
from .proof import normalize_event
from .registry import RegistryClient
from .source import SourceLogClient
from .submitter import ChainSubmitter

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


async def wait_or_stop(sleep: Sleep, delay: float, stop_event: asyncio.Event) -> None:
    """Sleep for delay seconds or until stop is requested."""
    if delay <= 0 or stop_event.is_set():
        return
    sleeper = asyncio.ensure_future(sleep(delay))
    stopper = asyncio.ensure_future(stop_event.wait())
    done, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()


def backoff_delay(failures: int, base: float, maximum: float) -> float:
    """Exponential delay for a failure streak, capped."""
    if failures <= 0:
        return 0.0
    return min(base * 2 ** (failures - 1), maximum)


class RelayState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    NORMALIZING = "normalizing"
    SUBMITTING = "submitting"
    ADVANCING = "advancing"
    ERROR_BACKOFF = "error_backoff"
    WITHHELD = "withheld"


@dataclass
class PendingBatch:
    """Scanned block range whose proofs are not all resolved yet."""

    from_block: int
    to_block: int
    proofs: list[CreditProof] = field(default_factory=list)
    events_seen: int = 0
    rejected: int = 0
    resolved: set[bytes] = field(default_factory=set)
    withheld_reason: Optional[SubmitOutcome] = None

    @property
    def complete(self) -> bool:
        return all(p.dedup_key in self.resolved for p in self.proofs)

    def add(self, proof: CreditProof) -> bool:
        """Append a proof unless its dedup key is already in the batch."""
        if any(p.dedup_key == proof.dedup_key for p in self.proofs):
            return False
        self.proofs.append(proof)
        return True


class PollScheduler:
    """
    Relays one source chain to the destination bridge.
    """

    def __init__(
        self,
        chain: SourceChainConfig,
        source: SourceLogClient,
        registry: RegistryClient,
        guard: ReplayGuard,
        submitter: ChainSubmitter,
        database: RelayDatabase,
        confirmation_depth: int = 12,
        poll_interval: float = 10,
        max_batch_blocks: int = 2000,
        backoff_base: float = 2,
        backoff_max: float = 300,
        rescan_overlap: int = 0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.chain = chain
        self.chain_id = chain.chain_id
        self.source = source
        self.registry = registry
        self.guard = guard
        self.submitter = submitter
        self.db = database
        self.confirmation_depth = confirmation_depth
        self.poll_interval = poll_interval
        self.max_batch_blocks = max_batch_blocks
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.rescan_overlap = rescan_overlap
        self.sleep = sleep

        self.state = RelayState.IDLE
        self.cursor: Optional[int] = None
        self.failures = 0
        self._scan_after: int = chain.start_block - 1
        self._batch: Optional[PendingBatch] = None
        self._behind = False
        self.last_report: Optional[BatchReport] = None

    @property
    def started(self) -> bool:
        return self.cursor is not None

    @property
    def pending_batch(self) -> Optional[PendingBatch]:
        return self._batch

    async def start(self) -> None:
        """
        Load the cursor and check we are talking to the right chain.

        Raises:
            ConfigurationError: the RPC endpoint serves a different chain.
            CursorCorruptedError: the persisted cursor is unusable.
        """
        remote_chain_id = await self.source.get_chain_id()
        if remote_chain_id != self.chain_id:
            raise ConfigurationError(
                f"Source RPC for {self.chain.label} reports chain id {remote_chain_id}, "
                f"expected {self.chain_id}"
            )

        stored = self.db.get_cursor(self.chain_id)
        self.cursor = stored if stored is not None else self.chain.start_block - 1
        # Re-scan a small window behind the cursor; the guard absorbs repeats
        self._scan_after = max(self.cursor - self.rescan_overlap, self.chain.start_block - 1)

        logger.info(
            "chain_relay_started",
            chain=self.chain.label,
            chain_id=self.chain_id,
            cursor=self.cursor,
            resumed=stored is not None,
            scan_from=self._scan_after + 1,
            confirmation_depth=self.confirmation_depth,
        )

    def backoff_delay(self) -> float:
        return backoff_delay(self.failures, self.backoff_base, self.backoff_max)

    def next_delay(self, report: BatchReport) -> float:
        if report.backoff:
            return self.backoff_delay()
        if report.advanced and self._behind:
            return 0.0
        return self.poll_interval

    async def run_once(self) -> BatchReport:
        """
        Run one scan/normalize/submit/advance cycle.

        Transient failures put the scheduler in ERROR_BACKOFF and keep the
        pending batch; only irrecoverable errors propagate.
        """
        try:
            if not self.started:
                await self.start()
            self.last_report = await self._cycle()
            return self.last_report
        except IrrecoverableError:
            raise
        except Exception as e:
            self.failures += 1
            self.state = RelayState.ERROR_BACKOFF
            logger.warning(
                "relay_cycle_error",
                chain_id=self.chain_id,
                error=str(e),
                error_type=type(e).__name__,
                failures=self.failures,
                retry_in=self.backoff_delay(),
            )
            batch = self._batch
            self.last_report = BatchReport(
                chain_id=self.chain_id,
                from_block=batch.from_block if batch else self._scan_after + 1,
                to_block=batch.to_block if batch else self._scan_after,
                backoff=True,
            )
            return self.last_report

    async def _cycle(self) -> BatchReport:
        self.state = RelayState.SCANNING
        batch = self._batch

        if batch is not None and batch.withheld_reason is not None:
            await self._extend(batch)
            try:
                await self._ensure_unpaused(batch)
            except AuthorizationError as e:
                self.state = RelayState.WITHHELD
                logger.warning(
                    "registry_paused_withholding",
                    chain_id=self.chain_id,
                    from_block=batch.from_block,
                    to_block=batch.to_block,
                    proofs_waiting=len(batch.proofs) - len(batch.resolved),
                    error=str(e),
                )
                return self._report(batch, withheld=True)
            logger.info(
                "withheld_batch_retry",
                chain_id=self.chain_id,
                reason=batch.withheld_reason.value,
                from_block=batch.from_block,
                to_block=batch.to_block,
            )
            batch.withheld_reason = None

        if batch is None:
            batch = await self._scan()
            if batch is None:
                self.state = RelayState.IDLE
                return BatchReport(
                    chain_id=self.chain_id,
                    from_block=self._scan_after + 1,
                    to_block=self._scan_after,
                )
            self._batch = batch

        self.state = RelayState.SUBMITTING
        report = self._report(batch)
        stop = await self._submit_batch(batch, report)

        if stop is None and batch.complete:
            self._advance(batch)
            report.advanced = True
            return report

        if stop in WITHHELD_OUTCOMES:
            batch.withheld_reason = stop
            self.failures = 0
            self.state = RelayState.WITHHELD
            report.withheld = True
            logger.error(
                "batch_withheld",
                chain_id=self.chain_id,
                reason=stop.value,
                from_block=batch.from_block,
                to_block=batch.to_block,
            )
            return report

        self.failures += 1
        self.state = RelayState.ERROR_BACKOFF
        report.backoff = True
        logger.warning(
            "batch_retry_scheduled",
            chain_id=self.chain_id,
            from_block=batch.from_block,
            to_block=batch.to_block,
            unresolved=len(batch.proofs) - len(batch.resolved),
            failures=self.failures,
            retry_in=self.backoff_delay(),
        )
        return report

    async def _ensure_unpaused(self, batch: PendingBatch) -> None:
        if batch.withheld_reason is SubmitOutcome.PAUSED and await self.registry.is_paused():
            raise RegistryPausedError("destination bridge is paused")

    def _report(self, batch: PendingBatch, **kwargs) -> BatchReport:
        return BatchReport(
            chain_id=self.chain_id,
            from_block=batch.from_block,
            to_block=batch.to_block,
            events_seen=batch.events_seen,
            rejected=batch.rejected,
            **kwargs,
        )

    async def _safe_head(self) -> int:
        head = await self.source.get_chain_head()
        return head - self.confirmation_depth

    async def _scan(self) -> Optional[PendingBatch]:
        """Scan (cursor, head - confirmation_depth], capped at max_batch_blocks."""
        safe_head = await self._safe_head()
        from_block = self._scan_after + 1
        if safe_head < from_block:
            self._behind = False
            return None

        to_block = min(safe_head, from_block + self.max_batch_blocks - 1)
        self._behind = to_block < safe_head

        raw_events = await self.source.query_range(from_block, to_block)
        batch = PendingBatch(from_block=from_block, to_block=to_block)
        self._add_events(batch, raw_events)

        logger.info(
            "range_scanned",
            chain_id=self.chain_id,
            from_block=from_block,
            to_block=to_block,
            events=len(raw_events),
            proofs=len(batch.proofs),
            rejected=batch.rejected,
        )
        return batch

    async def _extend(self, batch: PendingBatch) -> None:
        """Keep scanning past a withheld batch so nothing is lost meanwhile."""
        safe_head = await self._safe_head()
        from_block = batch.to_block + 1
        to_block = min(safe_head, batch.from_block + self.max_batch_blocks - 1)
        if to_block < from_block:
            return

        raw_events = await self.source.query_range(from_block, to_block)
        self._add_events(batch, raw_events)
        batch.to_block = to_block
        logger.info(
            "withheld_batch_extended",
            chain_id=self.chain_id,
            from_block=from_block,
            to_block=to_block,
            events=len(raw_events),
        )

    def _add_events(self, batch: PendingBatch, raw_events: list[RawEvent]) -> None:
        self.state = RelayState.NORMALIZING
        batch.events_seen += len(raw_events)

        for raw in sorted(raw_events, key=lambda e: e.sort_key):
            try:
                proof = normalize_event(raw, self.chain_id, self.chain.token_decimals)
            except ProofValidationError as e:
                batch.rejected += 1
                logger.warning(
                    "proof_rejected",
                    chain_id=self.chain_id,
                    block_number=raw.block_number,
                    tx_hash="0x" + bytes(raw.tx_hash).hex(),
                    kind=raw.kind.name,
                    reason=e.reason,
                )
                continue

            if not batch.add(proof):
                logger.info(
                    "duplicate_event_in_batch",
                    chain_id=self.chain_id,
                    source_tx_hash="0x" + proof.source_tx_hash.hex(),
                    block_number=proof.block_number,
                )

    async def _submit_batch(self, batch: PendingBatch, report: BatchReport) -> Optional[SubmitOutcome]:
        """
        Submit unresolved proofs in chain order.

        Stops at the first proof without a definitive outcome and returns
        why, or None when the whole batch went through.
        """
        for proof in batch.proofs:
            key = proof.dedup_key
            if key in batch.resolved:
                continue

            decision = await self.guard.check(proof)
            if decision.skip:
                batch.resolved.add(key)
                report.duplicates += 1
                logger.info(
                    "proof_skipped",
                    chain_id=self.chain_id,
                    decision=decision.value,
                    source_tx_hash="0x" + proof.source_tx_hash.hex(),
                )
                continue
            if decision is GuardDecision.WAIT_IN_FLIGHT:
                report.pending += 1
                logger.info(
                    "proof_still_in_flight",
                    chain_id=self.chain_id,
                    source_tx_hash="0x" + proof.source_tx_hash.hex(),
                )
                return SubmitOutcome.TRANSIENT

            self.guard.begin(proof)
            result = await self.submitter.submit(proof)
            report.outcomes.append(result)

            if result.success:
                self.guard.confirm(proof, result.tx_hash, result.outcome)
                batch.resolved.add(key)
                if result.outcome is SubmitOutcome.SUCCESS:
                    report.submitted += 1
                else:
                    report.duplicates += 1
            elif result.outcome is SubmitOutcome.FATAL:
                # Recorded for the operator; does not block the cursor
                self.guard.release(proof, STATUS_FAILED, result.error)
                batch.resolved.add(key)
                report.failed += 1
            elif result.withheld:
                self.guard.release(proof, STATUS_WITHHELD, result.error)
                return result.outcome
            else:
                if result.sent:
                    # May still land; the guard re-checks the bridge later
                    self.guard.sent(proof, result.tx_hash)
                else:
                    self.guard.release(proof, STATUS_PENDING, result.error)
                report.pending += 1
                return SubmitOutcome.TRANSIENT

        return None

    def _advance(self, batch: PendingBatch) -> None:
        self.state = RelayState.ADVANCING
        previous = self.cursor
        # A re-scan window can settle batches that end behind the stored cursor
        if previous is None or batch.to_block > previous:
            self.db.save_cursor(self.chain_id, batch.to_block)
            self.cursor = batch.to_block
        self._scan_after = batch.to_block
        self.guard.forget(p.dedup_key for p in batch.proofs)
        self._batch = None
        self.failures = 0
        self.state = RelayState.IDLE
        logger.info(
            "cursor_advanced" if self.cursor != previous else "rescan_batch_settled",
            chain_id=self.chain_id,
            previous=previous,
            cursor=self.cursor,
            scanned_to=batch.to_block,
            proofs=len(batch.proofs),
        )

    async def _wait(self, delay: float, stop_event: asyncio.Event) -> None:
        await wait_or_stop(self.sleep, delay, stop_event)

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Relay until stop_event is set.

        The stop event is only honoured between batches.
        """
        while not self.started:
            try:
                await self.start()
            except IrrecoverableError:
                raise
            except Exception as e:
                self.failures += 1
                self.state = RelayState.ERROR_BACKOFF
                logger.warning(
                    "chain_relay_start_failed",
                    chain_id=self.chain_id,
                    error=str(e),
                    retry_in=self.backoff_delay(),
                )
                await self._wait(self.backoff_delay(), stop_event)
                if stop_event.is_set():
                    return
        self.failures = 0

        while not stop_event.is_set():
            report = await self.run_once()
            await self._wait(self.next_delay(report), stop_event)

        self.state = RelayState.IDLE
        logger.info("chain_relay_stopped", chain_id=self.chain_id, cursor=self.cursor)
