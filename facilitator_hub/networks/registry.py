"""
Network registry for multichain settlement
Static per-network descriptors: chain identity, RPC endpoint, token contract and EIP-712 domain
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional

import structlog

from facilitator_hub.config import HubConfig
from facilitator_hub.errors import UnknownNetwork
from facilitator_hub.models import is_hex_address

logger = structlog.get_logger()


@dataclass(frozen=True)
class EIP712Domain:
    """Signing domain of an ERC-3009 token deployment"""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


@dataclass(frozen=True)
class NetworkDescriptor:
    """Everything needed to settle on one EVM network"""
    network_id: str
    display_name: str
    chain_id: int
    rpc_url: str
    token_address: str
    token_decimals: int
    # Some deployments of the same token sign under "USDC" rather than "USD Coin".
    # Keep the string exactly as deployed.
    domain_name: str
    domain_version: str
    native_symbol: str
    block_explorer: str
    recommended_balance: Decimal
    confirmation_timeout: float

    @property
    def domain(self) -> EIP712Domain:
        return EIP712Domain(
            name=self.domain_name,
            version=self.domain_version,
            chain_id=self.chain_id,
            verifying_contract=self.token_address,
        )

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{self.block_explorer}/tx/{tx_hash}"


class NetworkRegistry:
    """Read-only lookup table of network descriptors"""

    def __init__(self, descriptors: Iterable[NetworkDescriptor]):
        self._by_id: Dict[str, NetworkDescriptor] = {}
        self._by_chain_id: Dict[int, NetworkDescriptor] = {}

        for descriptor in descriptors:
            if descriptor.network_id in self._by_id:
                raise ValueError(f"Duplicate network id: {descriptor.network_id}")
            if descriptor.chain_id in self._by_chain_id:
                raise ValueError(f"Duplicate chain id: {descriptor.chain_id}")
            if not is_hex_address(descriptor.token_address):
                raise ValueError(
                    f"Token address for {descriptor.network_id} is not a 20-byte hex address: "
                    f"{descriptor.token_address!r}"
                )
            self._by_id[descriptor.network_id] = descriptor
            self._by_chain_id[descriptor.chain_id] = descriptor

    def resolve(self, network_id: str) -> NetworkDescriptor:
        """Get a descriptor by network id, raising UnknownNetwork if absent"""
        descriptor = self._by_id.get(network_id)
        if descriptor is None:
            raise UnknownNetwork(network_id)
        return descriptor

    def resolve_by_chain_id(self, chain_id: int) -> Optional[NetworkDescriptor]:
        return self._by_chain_id.get(chain_id)

    def is_supported(self, network_id: Optional[str]) -> bool:
        return network_id in self._by_id

    def network_ids(self) -> List[str]:
        return list(self._by_id)

    def __iter__(self) -> Iterator[NetworkDescriptor]:
        return iter(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)


def build_default_registry(config: HubConfig) -> NetworkRegistry:
    """
    Build the registry of supported testnets.
    RPC endpoints and token addresses come from config so deployments can point
    at private nodes or alternate token deployments without code changes.
    """
    timeout_override = config.confirmation_timeout_override

    def timeout(default: float) -> float:
        return timeout_override if timeout_override is not None else default

    descriptors = [
        NetworkDescriptor(
            network_id="avalanche-fuji",
            display_name="Avalanche Fuji",
            chain_id=43113,
            rpc_url=config.rpc_url_avalanche_fuji,
            token_address=config.usdc_address_avalanche_fuji,
            token_decimals=6,
            domain_name="USD Coin",
            domain_version="2",
            native_symbol="AVAX",
            block_explorer="https://testnet.snowtrace.io",
            recommended_balance=Decimal("0.1"),
            confirmation_timeout=timeout(60.0),
        ),
        NetworkDescriptor(
            network_id="ethereum-sepolia",
            display_name="Ethereum Sepolia",
            chain_id=11155111,
            rpc_url=config.rpc_url_ethereum_sepolia,
            token_address=config.usdc_address_ethereum_sepolia,
            token_decimals=6,
            domain_name="USDC",
            domain_version="2",
            native_symbol="ETH",
            block_explorer="https://sepolia.etherscan.io",
            recommended_balance=Decimal("0.05"),
            confirmation_timeout=timeout(180.0),
        ),
        NetworkDescriptor(
            network_id="base-sepolia",
            display_name="Base Sepolia",
            chain_id=84532,
            rpc_url=config.rpc_url_base_sepolia,
            token_address=config.usdc_address_base_sepolia,
            token_decimals=6,
            domain_name="USDC",
            domain_version="2",
            native_symbol="ETH",
            block_explorer="https://sepolia.basescan.org",
            recommended_balance=Decimal("0.05"),
            confirmation_timeout=timeout(60.0),
        ),
        NetworkDescriptor(
            network_id="polygon-amoy",
            display_name="Polygon Amoy",
            chain_id=80002,
            rpc_url=config.rpc_url_polygon_amoy,
            token_address=config.usdc_address_polygon_amoy,
            token_decimals=6,
            domain_name="USDC",
            domain_version="2",
            native_symbol="POL",
            block_explorer="https://amoy.polygonscan.com",
            recommended_balance=Decimal("0.1"),
            confirmation_timeout=timeout(90.0),
        ),
    ]

    registry = NetworkRegistry(descriptors)
    logger.debug("network_registry_built", networks=registry.network_ids())
    return registry
