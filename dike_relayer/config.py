"""
Configuration management for the DIKE relayer.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from .errors import ConfigurationError
from .proof import TARGET_DECIMALS


class SourceChainConfig(BaseModel):
    """One source chain whose lending protocol is relayed."""

    name: str = ""
    chain_id: int
    rpc_url: str
    protocol_address: str
    start_block: int = 0
    token_decimals: int = 18
    # Falls back to the global CONFIRMATION_DEPTH / BRIDGE_ADDRESS
    confirmation_depth: Optional[int] = None
    bridge_address: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or str(self.chain_id)


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Destination (Creditcoin USC)
    destination_rpc_url: str = "https://rpc.cc3-testnet.creditcoin.network"
    destination_chain_id: int = 102031
    bridge_address: str = ""
    private_key: str = ""

    # Source chains (JSON list of SourceChainConfig)
    source_chains: list[SourceChainConfig] = Field(default_factory=list)

    # Relayer settings
    poll_interval_seconds: float = 10
    confirmation_depth: int = 12
    max_batch_blocks: int = 2000
    rescan_overlap_blocks: int = 0

    # Submission
    confirmation_timeout_seconds: float = 120
    in_flight_timeout_seconds: float = 300
    max_submit_attempts: int = 3
    gas_limit: int = 500_000

    # Backoff
    backoff_base_seconds: float = 2
    backoff_max_seconds: float = 300

    # Database
    database_url: str = "sqlite:///./dike_relayer.db"

    # Logging: "console" or "json"
    log_format: str = "console"


@dataclass
class RelayerConfig:
    """Full relayer configuration."""

    settings: Settings
    chains: list[SourceChainConfig] = field(default_factory=list)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "RelayerConfig":
        """Load configuration from environment."""
        try:
            settings = Settings(_env_file=env_path) if env_path else Settings()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e
        return cls(settings=settings, chains=list(settings.source_chains))

    def add_chain(self, chain: SourceChainConfig) -> None:
        """Add a source chain to relay."""
        self.chains.append(chain)

    def only_chain(self, chain_id: int) -> None:
        """Restrict relaying to a single configured source chain."""
        selected = [c for c in self.chains if c.chain_id == chain_id]
        if not selected:
            raise ConfigurationError(f"Source chain {chain_id} is not configured")
        self.chains = selected

    def confirmation_depth(self, chain: SourceChainConfig) -> int:
        if chain.confirmation_depth is not None:
            return chain.confirmation_depth
        return self.settings.confirmation_depth

    def bridge_address(self, chain: SourceChainConfig) -> str:
        return chain.bridge_address or self.settings.bridge_address

    def validate(self, require_signer: bool = True) -> None:
        """
        Check the configuration before any network access.

        Raises ConfigurationError rather than falling back to a default, so
        a misconfigured relayer never starts.
        """
        settings = self.settings

        if not self.chains:
            raise ConfigurationError("No source chains configured (SOURCE_CHAINS)")
        if require_signer and not settings.private_key:
            raise ConfigurationError("PRIVATE_KEY is required to submit proofs")
        if settings.poll_interval_seconds <= 0:
            raise ConfigurationError("POLL_INTERVAL_SECONDS must be positive")
        if settings.max_batch_blocks < 1:
            raise ConfigurationError("MAX_BATCH_BLOCKS must be at least 1")
        if settings.max_submit_attempts < 1:
            raise ConfigurationError("MAX_SUBMIT_ATTEMPTS must be at least 1")
        if settings.backoff_base_seconds <= 0 or settings.backoff_max_seconds < settings.backoff_base_seconds:
            raise ConfigurationError("Backoff bounds must satisfy 0 < base <= max")
        if settings.rescan_overlap_blocks < 0:
            raise ConfigurationError("RESCAN_OVERLAP_BLOCKS cannot be negative")
        if settings.log_format not in ("console", "json"):
            raise ConfigurationError(f"Unknown LOG_FORMAT: {settings.log_format}")

        seen: set[int] = set()
        for chain in self.chains:
            if chain.chain_id in seen:
                raise ConfigurationError(f"Duplicate source chain id {chain.chain_id}")
            seen.add(chain.chain_id)

            if not Web3.is_address(chain.protocol_address):
                raise ConfigurationError(
                    f"Chain {chain.label}: invalid protocol address {chain.protocol_address!r}"
                )
            bridge = self.bridge_address(chain)
            if not bridge or not Web3.is_address(bridge):
                raise ConfigurationError(f"Chain {chain.label}: invalid bridge address {bridge!r}")
            if chain.start_block < 0:
                raise ConfigurationError(f"Chain {chain.label}: negative start block")
            if not 0 <= chain.token_decimals <= TARGET_DECIMALS:
                raise ConfigurationError(
                    f"Chain {chain.label}: token decimals must be within 0..{TARGET_DECIMALS}"
                )
            if self.confirmation_depth(chain) < 0:
                raise ConfigurationError(f"Chain {chain.label}: negative confirmation depth")
