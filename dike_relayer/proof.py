"""
Credit proof normalization.

Turns raw source-chain lending events into canonical CreditProof records:
amounts rescaled to 18 decimals, reference hash computed, required fields
validated. Everything here is pure, no RPC access.
"""

from typing import Union

from web3 import Web3

from .errors import ProofValidationError
from .models import CreditProof, RawEvent

# Registry amounts are always 18-decimal fixed point
TARGET_DECIMALS = 18

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_HASH = b"\x00" * 32


def to_bytes32(value: Union[bytes, str]) -> bytes:
    """
    Coerce a transaction hash to 32 raw bytes.

    Accepts raw bytes (including HexBytes) or a hex string with or without
    the 0x prefix.
    """
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            value = bytes.fromhex(hex_str)
        except ValueError:
            raise ProofValidationError("transaction hash is not hex", value)
    raw = bytes(value)
    if len(raw) != 32:
        raise ProofValidationError(f"transaction hash must be 32 bytes, got {len(raw)}")
    return raw


def normalize_amount(raw_amount: int, decimals: int) -> int:
    """
    Rescale a token amount to 18-decimal fixed point.

    Tokens with more than 18 decimals are rejected rather than truncated.

    Examples:
        >>> normalize_amount(100_000000, 6)
        100000000000000000000
        >>> normalize_amount(5, 18)
        5
    """
    if decimals < 0:
        raise ProofValidationError(f"negative token decimals: {decimals}")
    if decimals > TARGET_DECIMALS:
        raise ProofValidationError(
            f"token decimals {decimals} exceed {TARGET_DECIMALS}; truncation is not supported"
        )
    if raw_amount < 0:
        raise ProofValidationError(f"negative amount: {raw_amount}")
    return raw_amount * 10 ** (TARGET_DECIMALS - decimals)


def compute_reference_hash(
    source_chain_id: int,
    source_tx_hash: Union[bytes, str],
    source_protocol_address: str,
) -> bytes:
    """
    keccak256(abi.encodePacked(uint256 chainId, bytes32 txHash, address protocol)).

    The destination recomputes this value for duplicate detection, so the
    field order and widths must never change.
    """
    if not Web3.is_address(source_protocol_address):
        raise ProofValidationError(f"invalid protocol address: {source_protocol_address}")

    return bytes(
        Web3.solidity_keccak(
            ["uint256", "bytes32", "address"],
            [
                source_chain_id,
                to_bytes32(source_tx_hash),
                Web3.to_checksum_address(source_protocol_address),
            ],
        )
    )


def normalize_event(raw: RawEvent, source_chain_id: int, decimals: int) -> CreditProof:
    """
    Build a CreditProof from a raw source event.

    Raises:
        ProofValidationError: subject is zero or malformed, tx hash is
            empty or zero, amount resolves to 0, or decimals > 18.
    """
    tx_label = raw.tx_hash.hex() if isinstance(raw.tx_hash, bytes) else str(raw.tx_hash)

    if not raw.tx_hash:
        raise ProofValidationError("missing source transaction hash")
    tx_hash = to_bytes32(raw.tx_hash)
    if tx_hash == ZERO_HASH:
        raise ProofValidationError("zero source transaction hash")

    if not raw.subject or not Web3.is_address(raw.subject):
        raise ProofValidationError(f"invalid subject address: {raw.subject!r}", tx_label)
    subject = Web3.to_checksum_address(raw.subject)
    if subject == ZERO_ADDRESS:
        raise ProofValidationError("subject is the zero address", tx_label)

    amount = normalize_amount(raw.raw_amount, decimals)
    if amount == 0:
        raise ProofValidationError("amount resolves to zero", tx_label)

    if not raw.emitting_contract or not Web3.is_address(raw.emitting_contract):
        raise ProofValidationError(
            f"invalid protocol address: {raw.emitting_contract!r}", tx_label
        )
    protocol = Web3.to_checksum_address(raw.emitting_contract)

    return CreditProof(
        subject=subject,
        amount=amount,
        event_kind=raw.kind,
        source_chain_id=source_chain_id,
        source_tx_hash=tx_hash,
        source_protocol_address=protocol,
        observed_at=raw.block_timestamp,
        reference_hash=compute_reference_hash(source_chain_id, tx_hash, protocol),
        block_number=raw.block_number,
        log_index=raw.log_index,
    )
