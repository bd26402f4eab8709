"""
Chain submitter: sends one proof to the bridge and classifies the outcome.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog
from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3ValidationError

from .errors import DuplicateError
from .models import CreditProof, SubmitOutcome, SubmitResult
from .registry import (
    RegistryClient,
    custom_error_name,
    has_revert_reason,
    is_already_processed,
    revert_data,
    revert_message,
)

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]

CUSTOM_ERROR_OUTCOMES = {
    "ProofAlreadyProcessed": SubmitOutcome.ALREADY_PROCESSED,
    "EnforcedPause": SubmitOutcome.PAUSED,
    "OwnableUnauthorizedAccount": SubmitOutcome.UNAUTHORIZED,
    "ZeroAmount": SubmitOutcome.FATAL,
    "ZeroBorrowerAddress": SubmitOutcome.FATAL,
}

# Node error messages that clear up on their own
TRANSIENT_MARKERS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
    "transaction underpriced",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "too many requests",
    "connection",
)

UNFUNDED_MARKERS = ("insufficient funds",)

FATAL_MARKERS = (
    "intrinsic gas too low",
    "exceeds block gas limit",
)


def classify_error(exc: BaseException) -> SubmitOutcome:
    """
    Map an exception raised while submitting to a SubmitOutcome.

    Contract reverts are decoded by custom-error selector first, then by
    the registry's require() messages. Anything unrecognized, including a
    bare revert with no reason, is treated as transient so the batch is
    retried rather than skipped.
    """
    if isinstance(exc, TimeExhausted):
        return SubmitOutcome.TRANSIENT
    if isinstance(exc, DuplicateError):
        return SubmitOutcome.ALREADY_PROCESSED

    if isinstance(exc, ContractLogicError):
        name = custom_error_name(exc)
        if name is not None:
            return CUSTOM_ERROR_OUTCOMES[name]
        if is_already_processed(exc):
            return SubmitOutcome.ALREADY_PROCESSED
        if not has_revert_reason(exc):
            # Bare revert, e.g. no matching function selector
            return SubmitOutcome.TRANSIENT

        lowered = revert_message(exc).lower()
        if "paused" in lowered:
            return SubmitOutcome.PAUSED
        if "unauthorized" in lowered or "not the owner" in lowered or "not authorized" in lowered:
            return SubmitOutcome.UNAUTHORIZED
        # ZeroAmount, zero subject and any other explained revert are not retryable
        return SubmitOutcome.FATAL

    message = str(exc).lower()
    if any(marker in message for marker in UNFUNDED_MARKERS):
        return SubmitOutcome.UNFUNDED
    if any(marker in message for marker in FATAL_MARKERS):
        return SubmitOutcome.FATAL
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return SubmitOutcome.TRANSIENT
    if isinstance(exc, (Web3ValidationError, TypeError)):
        return SubmitOutcome.FATAL
    return SubmitOutcome.TRANSIENT


def describe_error(exc: BaseException) -> str:
    """Human-readable reason, with custom error arguments decoded."""
    name = custom_error_name(exc)
    if name is None:
        if isinstance(exc, ContractLogicError):
            return revert_message(exc)
        return str(exc) or type(exc).__name__

    if name == "OwnableUnauthorizedAccount":
        args = revert_data(exc)[10:]
        try:
            (account,) = decode(["address"], bytes.fromhex(args))
        except (DecodingError, ValueError):
            return name
        return f"{name}({Web3.to_checksum_address(account)})"
    return name


class ChainSubmitter:
    """
    Submits normalized, non-duplicate proofs to the destination bridge.

    A proof only counts as relayed once its receipt is in; a confirmation
    timeout is reported as TRANSIENT and never re-sent from here, since the
    transaction may still land.
    """

    def __init__(
        self,
        registry: RegistryClient,
        confirmation_timeout: float = 120,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.registry = registry
        self.confirmation_timeout = confirmation_timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep

    async def submit(self, proof: CreditProof) -> SubmitResult:
        """Submit a proof and return a definitive classification."""
        attempt = 0
        while True:
            attempt += 1
            try:
                tx_hash = await self.registry.send_proof(proof)
            except Exception as e:
                outcome = classify_error(e)
                if outcome is SubmitOutcome.TRANSIENT and attempt < self.max_attempts:
                    delay = self.retry_delay * 2 ** (attempt - 1)
                    logger.warning(
                        "proof_send_retry",
                        source_tx_hash="0x" + proof.source_tx_hash.hex(),
                        attempt=attempt,
                        delay=delay,
                        error=describe_error(e),
                    )
                    await self.sleep(delay)
                    continue
                return self._result(
                    proof, SubmitResult(outcome=outcome, error=describe_error(e), attempts=attempt)
                )

            return self._result(proof, await self._confirm(proof, tx_hash, attempt))

    async def _confirm(self, proof: CreditProof, tx_hash: str, attempt: int) -> SubmitResult:
        """Wait for the receipt and classify reverts."""
        try:
            receipt = await self.registry.wait_for_receipt(tx_hash, self.confirmation_timeout)
        except TimeExhausted:
            return SubmitResult(
                outcome=SubmitOutcome.TRANSIENT,
                tx_hash=tx_hash,
                error=f"not confirmed within {self.confirmation_timeout}s",
                attempts=attempt,
                sent=True,
            )
        except Exception as e:
            return SubmitResult(
                outcome=classify_error(e),
                tx_hash=tx_hash,
                error=describe_error(e),
                attempts=attempt,
                sent=True,
            )

        if receipt["status"] == 1:
            return SubmitResult(
                outcome=SubmitOutcome.SUCCESS,
                tx_hash=tx_hash,
                gas_used=receipt.get("gasUsed"),
                attempts=attempt,
                sent=True,
            )

        # Mined but reverted: replay the call to learn why
        try:
            await self.registry.replay_revert(proof, receipt["blockNumber"])
        except Exception as e:
            return SubmitResult(
                outcome=classify_error(e),
                tx_hash=tx_hash,
                error=describe_error(e),
                gas_used=receipt.get("gasUsed"),
                attempts=attempt,
                sent=True,
            )
        # Replay passes, e.g. out of gas; the guard re-checks processedProofs before a resend
        return SubmitResult(
            outcome=SubmitOutcome.TRANSIENT,
            tx_hash=tx_hash,
            error="Transaction reverted without a reason",
            gas_used=receipt.get("gasUsed"),
            attempts=attempt,
            sent=True,
        )

    def _result(self, proof: CreditProof, result: SubmitResult) -> SubmitResult:
        log = logger.info if result.success else logger.error
        if result.outcome is SubmitOutcome.TRANSIENT:
            log = logger.warning
        log(
            "proof_submission_result",
            outcome=result.outcome.value,
            subject=proof.subject,
            event_kind=proof.event_kind.name,
            amount=str(proof.amount),
            source_chain_id=proof.source_chain_id,
            source_tx_hash="0x" + proof.source_tx_hash.hex(),
            dest_tx_hash=result.tx_hash,
            gas_used=result.gas_used,
            attempts=result.attempts,
            error=result.error,
        )
        return result
