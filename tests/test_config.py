"""
Tests for configuration loading and validation.
"""

import json
from pathlib import Path

import pytest

from conftest import BRIDGE, PROTOCOL, SEPOLIA_CHAIN_ID
from dike_relayer.config import RelayerConfig, Settings, SourceChainConfig
from dike_relayer.errors import ConfigurationError

PRIVATE_KEY = "0x" + "11" * 32


def chain(**overrides) -> SourceChainConfig:
    values = {
        "name": "sepolia",
        "chain_id": SEPOLIA_CHAIN_ID,
        "rpc_url": "http://localhost:8545",
        "protocol_address": PROTOCOL,
        "start_block": 100,
        "token_decimals": 6,
    }
    values.update(overrides)
    return SourceChainConfig(**values)


def config(*chains: SourceChainConfig, **settings) -> RelayerConfig:
    values = {"bridge_address": BRIDGE, "private_key": PRIVATE_KEY}
    values.update(settings)
    return RelayerConfig(settings=Settings(_env_file=None, **values), chains=list(chains))


class TestFromEnv:
    """Tests for loading settings from a .env file."""

    def test_loads_env_file(self, tmp_path: Path) -> None:
        chains = [
            {
                "name": "sepolia",
                "chain_id": SEPOLIA_CHAIN_ID,
                "rpc_url": "https://sepolia.example",
                "protocol_address": PROTOCOL,
                "start_block": 5_000_000,
                "token_decimals": 6,
                "confirmation_depth": 3,
            }
        ]
        env = tmp_path / ".env"
        env.write_text(
            "\n".join(
                [
                    f"BRIDGE_ADDRESS={BRIDGE}",
                    f"PRIVATE_KEY={PRIVATE_KEY}",
                    "POLL_INTERVAL_SECONDS=5",
                    "MAX_BATCH_BLOCKS=500",
                    "LOG_FORMAT=json",
                    f"SOURCE_CHAINS='{json.dumps(chains)}'",
                ]
            )
        )

        loaded = RelayerConfig.from_env(env)

        assert loaded.settings.poll_interval_seconds == 5
        assert loaded.settings.max_batch_blocks == 500
        assert loaded.settings.log_format == "json"
        assert loaded.settings.confirmation_depth == 12
        assert len(loaded.chains) == 1
        assert loaded.chains[0].start_block == 5_000_000
        assert loaded.confirmation_depth(loaded.chains[0]) == 3
        loaded.validate()

    def test_malformed_settings(self, tmp_path: Path) -> None:
        env = tmp_path / ".env"
        env.write_text("MAX_BATCH_BLOCKS=lots\n")

        with pytest.raises(ConfigurationError, match="Invalid settings"):
            RelayerConfig.from_env(env)


class TestValidate:
    """Tests for RelayerConfig.validate."""

    def test_valid(self) -> None:
        config(chain()).validate()

    def test_no_chains(self) -> None:
        with pytest.raises(ConfigurationError, match="No source chains"):
            config().validate()

    def test_missing_private_key(self) -> None:
        with pytest.raises(ConfigurationError, match="PRIVATE_KEY"):
            config(chain(), private_key="").validate()

        # Dry runs never sign
        config(chain(), private_key="").validate(require_signer=False)

    def test_duplicate_chain_ids(self) -> None:
        with pytest.raises(ConfigurationError, match="Duplicate"):
            config(chain(), chain(name="again")).validate()

    def test_bad_addresses(self) -> None:
        with pytest.raises(ConfigurationError, match="protocol address"):
            config(chain(protocol_address="0x123")).validate()
        with pytest.raises(ConfigurationError, match="bridge address"):
            config(chain(), bridge_address="").validate()

    def test_per_chain_bridge_override(self) -> None:
        other = "0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0"
        cfg = config(chain(bridge_address=other), bridge_address="")
        cfg.validate()
        assert cfg.bridge_address(cfg.chains[0]) == other

    def test_decimals_and_start_block(self) -> None:
        with pytest.raises(ConfigurationError, match="decimals"):
            config(chain(token_decimals=24)).validate()
        with pytest.raises(ConfigurationError, match="negative start block"):
            config(chain(start_block=-1)).validate()

    def test_bad_loop_settings(self) -> None:
        with pytest.raises(ConfigurationError, match="MAX_BATCH_BLOCKS"):
            config(chain(), max_batch_blocks=0).validate()
        with pytest.raises(ConfigurationError, match="Backoff"):
            config(chain(), backoff_base_seconds=10, backoff_max_seconds=5).validate()
        with pytest.raises(ConfigurationError, match="LOG_FORMAT"):
            config(chain(), log_format="xml").validate()

    def test_only_chain(self) -> None:
        cfg = config(chain(), chain(name="mainnet", chain_id=1))
        cfg.only_chain(1)
        assert [c.chain_id for c in cfg.chains] == [1]

        with pytest.raises(ConfigurationError):
            cfg.only_chain(42)
