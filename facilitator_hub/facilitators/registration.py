"""
On-chain proof of the registration payment
A facilitator is only created once its owner has paid the registration fee
in the network's token, on the network the facilitator will serve.
"""

import re

import structlog

from facilitator_hub.chain import ChainClient, ChainClientPool
from facilitator_hub.networks import NetworkRegistry
from facilitator_hub.payments.authorization import to_atomic_units

logger = structlog.get_logger()

_TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


class RegistrationPaymentVerifier:
    """
    Accepts a registration tx hash when its receipt succeeded and moved at
    least the fee from the owner to the payment recipient.

    The payer is read from the Transfer event, not the transaction sender:
    a gasless payment is submitted by a facilitator on the owner's behalf.
    """

    def __init__(
        self,
        registry: NetworkRegistry,
        chains: ChainClientPool,
        recipient: str,
        fee: str,
    ):
        self.registry = registry
        self.chains = chains
        self.recipient = recipient
        self.fee = fee

    async def __call__(self, tx_hash: str, owner: str, network_id: str) -> bool:
        network = self.registry.resolve(network_id)
        if not _TX_HASH_PATTERN.match(tx_hash):
            logger.warning("registration_payment_malformed_hash", tx_hash=tx_hash)
            return False

        receipt = await self.chains.for_network(network.network_id).get_receipt(tx_hash)
        if receipt is None:
            logger.warning("registration_payment_not_found", tx_hash=tx_hash, network=network.network_id)
            return False
        if receipt.get("status") != 1:
            logger.warning("registration_payment_reverted", tx_hash=tx_hash, network=network.network_id)
            return False

        required = to_atomic_units(self.fee, network.token_decimals)
        paid = ChainClient.transferred_amount(receipt, network.token_address, owner, self.recipient)
        if paid < required:
            logger.warning(
                "registration_payment_insufficient",
                tx_hash=tx_hash,
                network=network.network_id,
                owner=owner,
                paid=paid,
                required=required,
            )
            return False

        logger.info(
            "registration_payment_verified",
            tx_hash=tx_hash,
            network=network.network_id,
            owner=owner,
            amount=paid,
        )
        return True
