"""
Dedup / replay guard.

Two tiers: a local in-flight/confirmed cache (plus the relay ledger) in
front of the bridge's authoritative processedProofs map. The local tier is
only an optimization; when it is unsure the bridge is asked.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

import structlog

from .db import STATUS_CONFIRMED, STATUS_FAILED, STATUS_PENDING, RelayDatabase
from .errors import TransientError
from .models import CreditProof, SubmitOutcome
from .registry import RegistryClient

logger = structlog.get_logger()


class GuardDecision(str, Enum):
    PROCEED = "proceed"
    SKIP_CONFIRMED = "skip_confirmed"  # Local tier already saw it land
    SKIP_DUPLICATE = "skip_duplicate"  # Bridge reports it as processed
    WAIT_IN_FLIGHT = "wait_in_flight"  # Our own submission is still pending

    @property
    def skip(self) -> bool:
        return self in (GuardDecision.SKIP_CONFIRMED, GuardDecision.SKIP_DUPLICATE)


@dataclass
class _Entry:
    confirmed: bool
    started_at: float
    tx_hash: Optional[str] = None


class ReplayGuard:
    """
    Decides whether a proof should be submitted.

    Entry lifecycle: begin() adds a key speculatively, confirm() promotes it
    and is never undone, release() drops it after a definitive failure so
    the proof can be retried later. forget() evicts confirmed keys from
    memory once their batch is settled; the ledger still answers for them.
    """

    def __init__(
        self,
        registry: RegistryClient,
        database: RelayDatabase,
        chain_id: int,
        in_flight_timeout: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.db = database
        self.chain_id = chain_id
        self.in_flight_timeout = in_flight_timeout
        self.clock = clock
        self._entries: dict[bytes, _Entry] = {}

    def __contains__(self, key: bytes) -> bool:
        return key in self._entries

    def is_in_flight(self, key: bytes) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.confirmed

    async def _remote_processed(self, key: bytes) -> bool:
        try:
            return await self.registry.is_processed(key)
        except Exception as e:
            raise TransientError(f"processedProofs query failed: {e}") from e

    async def check(self, proof: CreditProof) -> GuardDecision:
        """
        Decide whether to submit a proof.

        Raises:
            TransientError: the bridge could not be queried.
        """
        key = proof.dedup_key
        entry = self._entries.get(key)

        if entry is not None:
            if entry.confirmed:
                return GuardDecision.SKIP_CONFIRMED

            age = self.clock() - entry.started_at
            if age < self.in_flight_timeout:
                return GuardDecision.WAIT_IN_FLIGHT

            # Our transaction may have failed silently; ask the bridge
            if await self._remote_processed(key):
                logger.info(
                    "in_flight_proof_landed",
                    chain_id=self.chain_id,
                    dedup_key="0x" + key.hex(),
                    age=round(age, 1),
                )
                self.confirm(proof, entry.tx_hash, SubmitOutcome.ALREADY_PROCESSED)
                return GuardDecision.SKIP_DUPLICATE

            logger.warning(
                "in_flight_proof_expired",
                chain_id=self.chain_id,
                dedup_key="0x" + key.hex(),
                tx_hash=entry.tx_hash,
                age=round(age, 1),
            )
            del self._entries[key]
            return GuardDecision.PROCEED

        if self.db.is_confirmed(self.chain_id, key):
            self._entries[key] = _Entry(confirmed=True, started_at=self.clock())
            return GuardDecision.SKIP_CONFIRMED

        if await self._remote_processed(key):
            logger.info(
                "proof_already_on_destination",
                chain_id=self.chain_id,
                dedup_key="0x" + key.hex(),
                source_tx_hash="0x" + proof.source_tx_hash.hex(),
            )
            self.confirm(proof, None, SubmitOutcome.ALREADY_PROCESSED)
            return GuardDecision.SKIP_DUPLICATE

        return GuardDecision.PROCEED

    def begin(self, proof: CreditProof) -> None:
        """Mark a proof in flight before its transaction is sent."""
        self._entries[proof.dedup_key] = _Entry(confirmed=False, started_at=self.clock())
        self.db.record_proof(proof, STATUS_PENDING)

    def sent(self, proof: CreditProof, tx_hash: Optional[str]) -> None:
        """Remember the transaction of an unconfirmed in-flight proof."""
        entry = self._entries.get(proof.dedup_key)
        if entry is not None and not entry.confirmed:
            entry.tx_hash = tx_hash
        self.db.update_status(self.chain_id, proof.dedup_key, STATUS_PENDING, dest_tx_hash=tx_hash)

    def confirm(
        self,
        proof: CreditProof,
        tx_hash: Optional[str],
        outcome: SubmitOutcome = SubmitOutcome.SUCCESS,
    ) -> None:
        """Promote a proof to confirmed; it is never demoted."""
        self._entries[proof.dedup_key] = _Entry(
            confirmed=True, started_at=self.clock(), tx_hash=tx_hash
        )
        error = "already processed on destination" if outcome is SubmitOutcome.ALREADY_PROCESSED else None
        self.db.record_proof(proof, STATUS_CONFIRMED, dest_tx_hash=tx_hash, error=error)

    def release(self, proof: CreditProof, status: str = STATUS_FAILED, error: Optional[str] = None) -> None:
        """Drop a key after a definitive failure so it can be retried."""
        entry = self._entries.get(proof.dedup_key)
        if entry is not None and entry.confirmed:
            return
        if entry is None and self.db.is_confirmed(self.chain_id, proof.dedup_key):
            return
        self._entries.pop(proof.dedup_key, None)
        self.db.record_proof(proof, status, error=error)

    def forget(self, keys: Iterable[bytes]) -> None:
        """Evict confirmed keys once the cursor is past them; the ledger keeps them."""
        for key in keys:
            entry = self._entries.get(key)
            if entry is not None and entry.confirmed:
                del self._entries[key]

    @property
    def cached_count(self) -> int:
        return len(self._entries)

    @property
    def in_flight_count(self) -> int:
        return sum(1 for e in self._entries.values() if not e.confirmed)
