"""
Tests for the network registry
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from facilitator_hub.config import HubConfig
from facilitator_hub.errors import UnknownNetwork
from facilitator_hub.networks import NetworkRegistry, build_default_registry


class TestDefaultRegistry:

    def test_supports_four_testnets(self, registry):
        assert registry.network_ids() == [
            "avalanche-fuji",
            "ethereum-sepolia",
            "base-sepolia",
            "polygon-amoy",
        ]
        assert len(registry) == 4

    def test_domain_matches_descriptor_for_every_network(self, registry):
        """Signing domain is derived from the chain id and token contract"""
        for network in registry:
            assert network.domain.chain_id == network.chain_id
            assert network.domain.verifying_contract == network.token_address
            assert network.domain.as_dict()["chainId"] == network.chain_id
            assert network.domain.as_dict()["verifyingContract"] == network.token_address

    def test_domain_names_are_preserved_per_network(self, registry):
        assert registry.resolve("avalanche-fuji").domain.name == "USD Coin"
        assert registry.resolve("ethereum-sepolia").domain.name == "USDC"
        assert registry.resolve("base-sepolia").domain.name == "USDC"
        assert registry.resolve("polygon-amoy").domain.name == "USDC"
        assert all(network.domain.version == "2" for network in registry)

    def test_chain_ids(self, registry):
        assert registry.resolve("avalanche-fuji").chain_id == 43113
        assert registry.resolve_by_chain_id(11155111).network_id == "ethereum-sepolia"
        assert registry.resolve_by_chain_id(84532).network_id == "base-sepolia"
        assert registry.resolve_by_chain_id(80002).network_id == "polygon-amoy"
        assert registry.resolve_by_chain_id(1) is None

    def test_unknown_network(self, registry):
        with pytest.raises(UnknownNetwork) as exc_info:
            registry.resolve("solana-devnet")

        assert exc_info.value.network_id == "solana-devnet"
        assert not registry.is_supported("solana-devnet")
        assert registry.is_supported("base-sepolia")

    def test_recommended_balances_are_informational_data(self, registry):
        assert registry.resolve("avalanche-fuji").recommended_balance == Decimal("0.1")
        assert registry.resolve("ethereum-sepolia").recommended_balance == Decimal("0.05")

    def test_config_overrides_flow_into_descriptors(self):
        config = HubConfig(
            _env_file=None,
            rpc_url_base_sepolia="https://base.example",
            usdc_address_base_sepolia="0x0000000000000000000000000000000000000001",
            confirmation_timeout_override=5,
        )
        network = build_default_registry(config).resolve("base-sepolia")

        assert network.rpc_url == "https://base.example"
        assert network.domain.verifying_contract == "0x0000000000000000000000000000000000000001"
        assert network.confirmation_timeout == 5

    def test_explorer_url(self, registry):
        assert registry.resolve("base-sepolia").explorer_tx_url("0xabc") == "https://sepolia.basescan.org/tx/0xabc"


class TestRegistryValidation:

    def test_rejects_duplicate_chain_id(self, registry):
        fuji = registry.resolve("avalanche-fuji")
        clone = replace(fuji, network_id="fuji-clone")

        with pytest.raises(ValueError, match="Duplicate chain id"):
            NetworkRegistry([fuji, clone])

    def test_rejects_duplicate_network_id(self, registry):
        fuji = registry.resolve("avalanche-fuji")

        with pytest.raises(ValueError, match="Duplicate network id"):
            NetworkRegistry([fuji, replace(fuji, chain_id=999)])

    def test_rejects_malformed_token_address(self, registry):
        broken = replace(registry.resolve("polygon-amoy"), token_address="0x1234")

        with pytest.raises(ValueError, match="not a 20-byte hex address"):
            NetworkRegistry([broken])
