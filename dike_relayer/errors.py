"""
Error taxonomy for the DIKE relayer.

Normalization errors stay local to the scheduler (logged, event dropped).
Submission errors are turned into SubmitResult outcomes. Only
IrrecoverableError subclasses are allowed to terminate the process.
"""


class RelayError(Exception):
    """Base class for all relayer errors."""


class ProofValidationError(RelayError):
    """A raw source event cannot be turned into a CreditProof."""

    def __init__(self, reason: str, tx_hash: str = ""):
        self.reason = reason
        self.tx_hash = tx_hash
        message = f"{reason} (tx {tx_hash})" if tx_hash else reason
        super().__init__(message)


class DuplicateError(RelayError):
    """The destination already holds this proof."""


class TransientError(RelayError):
    """RPC timeout, nonce race or a node that is temporarily unavailable."""


class AuthorizationError(RelayError):
    """The submitter may not record proofs right now."""


class RegistryPausedError(AuthorizationError):
    """The destination bridge is paused."""


class IrrecoverableError(RelayError):
    """Operator intervention required; the process must stop."""


class ConfigurationError(IrrecoverableError):
    """Malformed or missing configuration."""


class CursorCorruptedError(IrrecoverableError):
    """Persisted cursor is unusable or would move backwards."""

    def __init__(self, chain_id: int, message: str):
        self.chain_id = chain_id
        super().__init__(f"Cursor for chain {chain_id}: {message}")
