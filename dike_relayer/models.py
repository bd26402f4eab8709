"""
Data types shared by the relay pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional


class EventKind(IntEnum):
    """Credit event kinds, numbered like the registry's eventType (uint8)."""

    BORROW = 0
    REPAY_ON_TIME = 1
    REPAY_LATE = 2
    DEFAULT = 3

    @property
    def is_borrow(self) -> bool:
        return self is EventKind.BORROW


class SourceAction(str, Enum):
    """Lending protocol events watched on the source chain."""

    BORROWED = "Borrowed"
    REPAID = "LoanRepaid"
    DEFAULTED = "LoanDefaulted"


@dataclass
class RawEvent:
    """A lending event as read from the source chain log."""

    kind: EventKind
    subject: str  # Borrower address
    raw_amount: int  # Amount in the source token's native decimals
    tx_hash: bytes  # 32-byte source transaction hash
    block_number: int
    block_timestamp: int
    emitting_contract: str  # Lending protocol address
    log_index: int = 0

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class CreditProof:
    """
    Canonical, chain-agnostic record of one credit event.

    amount is always expressed with 18 decimals. reference_hash binds the
    proof to (source_chain_id, source_tx_hash, source_protocol_address).
    """

    subject: str
    amount: int
    event_kind: EventKind
    source_chain_id: int
    source_tx_hash: bytes
    source_protocol_address: str
    observed_at: int
    reference_hash: bytes
    block_number: int = 0
    log_index: int = 0

    @property
    def dedup_key(self) -> bytes:
        """
        Key the destination uses for replay protection.

        Borrow proofs are keyed by reference hash, repayment-path proofs
        (on-time, late, default) by the raw source transaction hash.
        """
        if self.event_kind.is_borrow:
            return self.reference_hash
        return self.source_tx_hash

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def to_repayment_struct(self) -> tuple[str, int, int, bytes, str, int]:
        """Tuple matching the bridge's RepaymentProof struct."""
        return (
            self.subject,
            self.amount,
            self.source_chain_id,
            self.source_tx_hash,
            self.source_protocol_address,
            self.observed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "amount": str(self.amount),
            "eventKind": self.event_kind.name,
            "sourceChainId": self.source_chain_id,
            "sourceTxHash": "0x" + self.source_tx_hash.hex(),
            "sourceProtocol": self.source_protocol_address,
            "observedAt": self.observed_at,
            "referenceHash": "0x" + self.reference_hash.hex(),
            "blockNumber": self.block_number,
        }


class SubmitOutcome(str, Enum):
    """Classification of a single submission attempt."""

    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"
    TRANSIENT = "transient"
    FATAL = "fatal"
    PAUSED = "paused"
    UNAUTHORIZED = "unauthorized"
    UNFUNDED = "unfunded"  # Submitter account cannot pay for gas


WITHHELD_OUTCOMES = frozenset(
    {SubmitOutcome.PAUSED, SubmitOutcome.UNAUTHORIZED, SubmitOutcome.UNFUNDED}
)


@dataclass
class SubmitResult:
    """Result of submitting a credit proof."""

    outcome: SubmitOutcome
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    gas_used: Optional[int] = None
    attempts: int = 1
    sent: bool = False  # A transaction reached the mempool

    @property
    def success(self) -> bool:
        return self.outcome in (SubmitOutcome.SUCCESS, SubmitOutcome.ALREADY_PROCESSED)

    @property
    def resolved(self) -> bool:
        """Definitive outcome; the cursor may move past this proof."""
        return self.success or self.outcome is SubmitOutcome.FATAL

    @property
    def withheld(self) -> bool:
        """The submitter cannot record anything until an operator acts."""
        return self.outcome in WITHHELD_OUTCOMES


@dataclass
class BatchReport:
    """Summary of one scheduler cycle for one source chain."""

    chain_id: int
    from_block: int
    to_block: int
    events_seen: int = 0
    rejected: int = 0
    submitted: int = 0
    duplicates: int = 0
    failed: int = 0
    pending: int = 0
    advanced: bool = False
    backoff: bool = False
    withheld: bool = False
    outcomes: list[SubmitResult] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.to_block < self.from_block
