"""
Destination registry binding.

Typed web3 binding for the DIKE USC bridge on the destination chain, which
verifies relayed proofs and records them in the DIKERegistry. The relay only
reads the bridge's replay-protection map and calls its verify entry points.
"""

import asyncio
from typing import Any, Optional, Protocol

import structlog
from eth_abi import encode
from eth_account import Account
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractCustomError, ContractLogicError, TimeExhausted

from .errors import DuplicateError
from .models import CreditProof

logger = structlog.get_logger()


REPAYMENT_PROOF_COMPONENTS = [
    {"name": "borrower", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "sourceChainId", "type": "uint256"},
    {"name": "sourceTxHash", "type": "bytes32"},
    {"name": "sourceProtocol", "type": "address"},
    {"name": "timestamp", "type": "uint256"},
]

# DIKEUSCBridge ABI (minimal for relaying)
BRIDGE_ABI = [
    {
        "inputs": [
            {"name": "borrower", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "sourceChainId", "type": "uint256"},
            {"name": "sourceTxHash", "type": "bytes32"},
            {"name": "sourceProtocol", "type": "address"},
        ],
        "name": "verifyAndRecordBorrow",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {
                "components": REPAYMENT_PROOF_COMPONENTS,
                "name": "proof",
                "type": "tuple",
            }
        ],
        "name": "verifyAndRecordRepayment",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "bytes32"}],
        "name": "processedProofs",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "paused",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {"inputs": [], "name": "ZeroAmount", "type": "error"},
    {"inputs": [], "name": "ZeroBorrowerAddress", "type": "error"},
    {"inputs": [], "name": "ProofAlreadyProcessed", "type": "error"},
    {"inputs": [], "name": "EnforcedPause", "type": "error"},
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "OwnableUnauthorizedAccount",
        "type": "error",
    },
]


def error_selector(signature: str) -> str:
    """4-byte selector of a Solidity function or error signature, as 0x-prefixed hex."""
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


SELECTOR_ZERO_AMOUNT = error_selector("ZeroAmount()")
SELECTOR_ZERO_BORROWER = error_selector("ZeroBorrowerAddress()")
SELECTOR_ALREADY_PROCESSED = error_selector("ProofAlreadyProcessed()")
SELECTOR_ENFORCED_PAUSE = error_selector("EnforcedPause()")
SELECTOR_UNAUTHORIZED = error_selector("OwnableUnauthorizedAccount(address)")

CUSTOM_ERRORS = {
    SELECTOR_ZERO_AMOUNT: "ZeroAmount",
    SELECTOR_ZERO_BORROWER: "ZeroBorrowerAddress",
    SELECTOR_ALREADY_PROCESSED: "ProofAlreadyProcessed",
    SELECTOR_ENFORCED_PAUSE: "EnforcedPause",
    SELECTOR_UNAUTHORIZED: "OwnableUnauthorizedAccount",
}

# DIKERegistry require() messages surfaced through the bridge
REVERT_DUPLICATE_REFERENCE = "Duplicate reference"
REVERT_ZERO_AMOUNT = "Amount must be strictly positive"
REVERT_ZERO_SUBJECT = "Invalid subject: zero address"


def _abi_type(param: dict[str, Any]) -> str:
    if param["type"] == "tuple":
        return "(" + ",".join(_abi_type(c) for c in param["components"]) + ")"
    return param["type"]


def function_input_types(name: str) -> list[str]:
    """Canonical input types of a bridge function."""
    for entry in BRIDGE_ABI:
        if entry["type"] == "function" and entry["name"] == name:
            return [_abi_type(p) for p in entry["inputs"]]
    raise KeyError(name)


def function_signature(name: str) -> str:
    return f"{name}({','.join(function_input_types(name))})"


def function_selector(name: str) -> str:
    return error_selector(function_signature(name))


def revert_data(exc: ContractLogicError) -> str:
    """Hex revert payload of a contract error, lowercased ("" if none)."""
    data = exc.data if isinstance(exc.data, str) else ""
    if not data and exc.args and isinstance(exc.args[0], str) and exc.args[0].startswith("0x"):
        data = exc.args[0]
    return data.lower()


def revert_message(exc: ContractLogicError) -> str:
    message = getattr(exc, "message", None)
    return message if isinstance(message, str) and message else str(exc)


def has_revert_reason(exc: ContractLogicError) -> bool:
    """False for a bare revert: no error data and no reason string."""
    if revert_data(exc) not in ("", "0x"):
        return True
    reason = revert_message(exc).lower().replace("execution reverted", "")
    return bool(reason.strip(" :"))


def custom_error_name(exc: BaseException) -> Optional[str]:
    """Name of the bridge custom error behind a revert, if known."""
    if not isinstance(exc, ContractLogicError):
        return None
    data = revert_data(exc)
    if len(data) < 10:
        return None
    return CUSTOM_ERRORS.get(data[:10])


def is_already_processed(exc: BaseException) -> bool:
    if custom_error_name(exc) == "ProofAlreadyProcessed":
        return True
    return isinstance(exc, ContractLogicError) and REVERT_DUPLICATE_REFERENCE in revert_message(exc)


def proof_call_args(proof: CreditProof) -> tuple[str, list[Any]]:
    """Bridge function name and arguments for a proof."""
    if proof.event_kind.is_borrow:
        return "verifyAndRecordBorrow", [
            proof.subject,
            proof.amount,
            proof.source_chain_id,
            proof.source_tx_hash,
            proof.source_protocol_address,
        ]
    return "verifyAndRecordRepayment", [proof.to_repayment_struct()]


class RegistryClient(Protocol):
    """Protocol for the destination bridge binding (real or mock)."""

    async def get_chain_id(self) -> int: ...
    async def is_processed(self, key: bytes) -> bool: ...
    async def is_paused(self) -> bool: ...
    async def send_proof(self, proof: CreditProof) -> str: ...
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> dict[str, Any]: ...
    async def replay_revert(self, proof: CreditProof, block_number: int) -> None: ...


class DestinationRegistry:
    """
    Async client for the DIKE bridge contract.
    """

    def __init__(
        self,
        rpc_url: str,
        bridge_address: str,
        private_key: str,
        chain_id: int,
        gas_limit: int = 500_000,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.account = Account.from_key(private_key) if private_key else None
        self.bridge_address = Web3.to_checksum_address(bridge_address)
        self.bridge = self.w3.eth.contract(address=self.bridge_address, abi=BRIDGE_ABI)
        # Chain loops share one signer; nonce fetch to broadcast must not interleave
        self._send_lock = asyncio.Lock()

        logger.info(
            "destination_registry_initialized",
            rpc_url=rpc_url,
            bridge=self.bridge_address,
            chain_id=chain_id,
            sender=self.account.address if self.account else None,
        )

    @property
    def address(self) -> str:
        """Get submitter address."""
        if not self.account:
            raise ValueError("No private key configured")
        return self.account.address

    def _proof_function(self, proof: CreditProof) -> Any:
        name, args = proof_call_args(proof)
        return getattr(self.bridge.functions, name)(*args)

    async def get_chain_id(self) -> int:
        return await self.w3.eth.chain_id

    async def is_processed(self, key: bytes) -> bool:
        """Check the bridge's replay-protection map."""
        return await self.bridge.functions.processedProofs(key).call()

    async def is_paused(self) -> bool:
        return await self.bridge.functions.paused().call()

    async def send_proof(self, proof: CreditProof) -> str:
        """
        Simulate, sign and broadcast the verify call for a proof.

        The eth_call pre-flight surfaces duplicate, pause and authorization
        reverts before any gas is spent.

        Returns:
            Destination transaction hash (0x-prefixed)

        Raises:
            DuplicateError: the bridge has already processed this proof.
        """
        fn = self._proof_function(proof)
        try:
            await fn.call({"from": self.address})
        except ContractLogicError as e:
            if is_already_processed(e):
                raise DuplicateError(f"proof 0x{proof.dedup_key.hex()} already processed") from e
            raise

        async with self._send_lock:
            nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
            gas_price = await self.w3.eth.gas_price

            tx = await fn.build_transaction(
                {
                    "from": self.address,
                    "chainId": self.chain_id,
                    "nonce": nonce,
                    "gasPrice": gas_price,
                    "gas": self.gas_limit,
                }
            )

            signed_tx = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)

        logger.info(
            "proof_tx_sent",
            tx_hash=Web3.to_hex(tx_hash),
            subject=proof.subject,
            event_kind=proof.event_kind.name,
            source_chain_id=proof.source_chain_id,
            source_tx_hash=Web3.to_hex(proof.source_tx_hash),
        )
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> dict[str, Any]:
        """Wait for inclusion; raises TimeExhausted after timeout seconds."""
        return await self.w3.eth.wait_for_transaction_receipt(HexBytes(tx_hash), timeout=timeout)

    async def replay_revert(self, proof: CreditProof, block_number: int) -> None:
        """Re-run a reverted call at its block to recover the revert reason."""
        fn = self._proof_function(proof)
        await fn.call({"from": self.address}, block_identifier=block_number)


class MockDestinationRegistry:
    """
    In-memory bridge for testing without a node.

    Mirrors the bridge's checks in the same order (owner, pause, zero
    borrower, zero amount, replay map) and raises the same web3 exceptions
    a real node would. Every send is ABI-encoded against BRIDGE_ABI, so a
    proof that does not fit the bridge's signatures fails here too.
    """

    def __init__(self, chain_id: int = 102031) -> None:
        self.chain_id = chain_id
        self.sender = "0x00000000000000000000000000000000000dead1"
        self.processed: dict[bytes, CreditProof] = {}
        self.recorded: list[CreditProof] = []
        self.calldata: list[str] = []
        self.paused = False
        self.authorized = True
        # Exceptions raised by upcoming send_proof calls, in order
        self.send_failures: list[Exception] = []
        # When set, the next send lands on chain but the receipt never arrives
        self.stall_next_receipt = False
        # When set, the next send is mined but reverts on a duplicate
        self.lose_next_race = False
        # When set, the next send is mined with status 0 for no decodable reason (out of gas)
        self.revert_next_receipt = False
        self.send_count = 0
        self.processed_queries = 0
        self._receipts: dict[str, dict[str, Any]] = {}
        self._stalled: set[str] = set()
        self._block = 1_000

    def _revert(self, selector: str, args: bytes = b"") -> ContractCustomError:
        data = selector + args.hex()
        return ContractCustomError(data, data=data)

    def _check(self, proof: CreditProof) -> None:
        if not self.authorized:
            raise self._revert(SELECTOR_UNAUTHORIZED, encode(["address"], [self.sender]))
        if self.paused:
            raise self._revert(SELECTOR_ENFORCED_PAUSE)
        if int(proof.subject, 16) == 0:
            raise self._revert(SELECTOR_ZERO_BORROWER)
        if proof.amount == 0:
            raise self._revert(SELECTOR_ZERO_AMOUNT)
        if proof.dedup_key in self.processed:
            raise self._revert(SELECTOR_ALREADY_PROCESSED)

    def encode_call(self, proof: CreditProof) -> str:
        """Calldata the real binding would send for a proof."""
        name, args = proof_call_args(proof)
        return function_selector(name) + encode(function_input_types(name), args).hex()

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def is_processed(self, key: bytes) -> bool:
        self.processed_queries += 1
        return key in self.processed

    async def is_paused(self) -> bool:
        return self.paused

    async def send_proof(self, proof: CreditProof) -> str:
        self.send_count += 1
        if self.send_failures:
            raise self.send_failures.pop(0)

        calldata = self.encode_call(proof)
        try:
            self._check(proof)
        except ContractLogicError as e:
            if is_already_processed(e):
                raise DuplicateError(f"proof 0x{proof.dedup_key.hex()} already processed") from e
            raise
        self.calldata.append(calldata)
        self._block += 1
        tx_hash = Web3.to_hex(Web3.keccak(text=f"dike-mock-{self.send_count}"))

        status = 1
        if self.lose_next_race:
            # A competing submission lands first in the same block
            self.lose_next_race = False
            self.processed[proof.dedup_key] = proof
            status = 0
        elif self.revert_next_receipt:
            self.revert_next_receipt = False
            status = 0
        else:
            self.processed[proof.dedup_key] = proof
            self.recorded.append(proof)

        self._receipts[tx_hash] = {
            "status": status,
            "transactionHash": HexBytes(tx_hash),
            "blockNumber": self._block,
            "gasUsed": 90_000,
        }
        if self.stall_next_receipt:
            self.stall_next_receipt = False
            self._stalled.add(tx_hash)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> dict[str, Any]:
        if tx_hash in self._stalled:
            raise TimeExhausted(f"Transaction {tx_hash} not in chain after {timeout} seconds")
        return self._receipts[tx_hash]

    async def replay_revert(self, proof: CreditProof, block_number: int) -> None:
        self._check(proof)