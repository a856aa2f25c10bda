"""
Async chain access for one network
Wraps AsyncWeb3 and maps node and transport failures onto the hub error taxonomy
"""

import asyncio
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)
import structlog

from facilitator_hub.chain.contracts import ERC3009_ABI, TRANSFER_EVENT_TOPIC
from facilitator_hub.errors import ChainUnavailable, ConfirmationTimeout, SettlementFailed, SubmissionUnknown
from facilitator_hub.networks import NetworkDescriptor, NetworkRegistry
from facilitator_hub.payments.models import TransferAuthorization

logger = structlog.get_logger()

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, ProviderConnectionError)

# Headroom over eth_estimateGas
GAS_LIMIT_MULTIPLIER = 1.2


def revert_reason(error: Exception) -> str:
    """Best-effort human reason from a ContractLogicError"""
    message = getattr(error, "message", None) or str(error)
    prefix = "execution reverted: "
    if message.startswith(prefix):
        message = message[len(prefix):]
    return message or "execution reverted"


def receipt_gas_spent(receipt) -> int:
    """Gas actually paid, in wei, as reported by the receipt"""
    gas_used = int(receipt.get("gasUsed") or 0)
    price = int(receipt.get("effectiveGasPrice") or receipt.get("gasPrice") or 0)
    return gas_used * price


def _topic_address(topic) -> str:
    return "0x" + HexBytes(topic)[-20:].hex()


class ChainClient:
    """RPC operations the settlement path and funding monitor need on one network"""

    def __init__(self, network: NetworkDescriptor, w3: Optional[AsyncWeb3] = None):
        self.network = network
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(network.rpc_url))

    def token(self, token_address: str):
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=ERC3009_ABI,
        )

    @contextmanager
    def _rpc(self, operation: str) -> Iterator[None]:
        details = {"network": self.network.network_id, "operation": operation}
        try:
            yield
        except ContractLogicError as e:
            reason = revert_reason(e)
            logger.warning(
                "chain_call_reverted",
                network=self.network.network_id,
                operation=operation,
                reason=reason,
            )
            raise SettlementFailed(reason)
        except BadFunctionCallOutput as e:
            # No contract code at the address, or not an ERC-3009 token
            logger.warning(
                "chain_call_bad_output",
                network=self.network.network_id,
                operation=operation,
                error=str(e),
            )
            raise SettlementFailed(f"Token contract returned no usable data for {operation}")
        except TRANSPORT_ERRORS as e:
            logger.warning(
                "chain_rpc_unavailable",
                network=self.network.network_id,
                operation=operation,
                error=str(e),
            )
            raise ChainUnavailable(
                f"RPC for {self.network.network_id} unavailable during {operation}: {e}",
                details=details,
            )
        except Web3RPCError as e:
            raise ChainUnavailable(
                f"RPC for {self.network.network_id} rejected {operation}: {e}",
                details=details,
            )
        except Web3Exception as e:
            logger.warning(
                "chain_rpc_failed",
                network=self.network.network_id,
                operation=operation,
                error=str(e),
            )
            raise ChainUnavailable(
                f"RPC for {self.network.network_id} failed during {operation}: {e}",
                details=details,
            )

    # ===== READS =====

    async def get_balance(self, address: str) -> int:
        """Native balance in wei"""
        with self._rpc("get_balance"):
            return int(await self.w3.eth.get_balance(Web3.to_checksum_address(address)))

    async def get_gas_price(self) -> int:
        with self._rpc("gas_price"):
            return int(await self.w3.eth.gas_price)

    async def get_transaction_count(self, address: str) -> int:
        with self._rpc("get_transaction_count"):
            return int(await self.w3.eth.get_transaction_count(address, "pending"))

    async def authorization_used(self, token_address: str, authorizer: str, nonce: str) -> bool:
        """authorizationState(authorizer, nonce) on the token contract"""
        with self._rpc("authorization_state"):
            return bool(
                await self.token(token_address).functions.authorizationState(
                    Web3.to_checksum_address(authorizer),
                    HexBytes(nonce),
                ).call()
            )

    # ===== WRITES =====

    async def submit_transfer_with_authorization(
        self,
        account: LocalAccount,
        token_address: str,
        authorization: TransferAuthorization,
        v: int,
        r: bytes,
        s: bytes,
    ) -> str:
        """
        Sign and broadcast transferWithAuthorization from the facilitator account.
        Gas estimation runs first so a revert surfaces before any gas is spent.

        Returns:
            Transaction hash as 0x-hex
        """
        call = self.token(token_address).functions.transferWithAuthorization(
            Web3.to_checksum_address(authorization.from_address),
            Web3.to_checksum_address(authorization.to),
            authorization.value,
            authorization.valid_after,
            authorization.valid_before,
            HexBytes(authorization.nonce),
            v,
            r,
            s,
        )

        # A revert here surfaces as SettlementFailed before any gas is spent
        with self._rpc("estimate_gas"):
            gas_estimate = await call.estimate_gas({"from": account.address})

        gas_limit = int(gas_estimate * GAS_LIMIT_MULTIPLIER)
        gas_price = await self.get_gas_price()

        # Facilitator pays gas, not the payer
        balance = await self.get_balance(account.address)
        required_gas = gas_limit * gas_price
        if balance < required_gas:
            raise SettlementFailed(
                f"Insufficient {self.network.native_symbol} for gas: {balance} < {required_gas}"
            )

        nonce = await self.get_transaction_count(account.address)
        with self._rpc("build_transaction"):
            tx = await call.build_transaction({
                "from": account.address,
                "nonce": nonce,
                "gas": gas_limit,
                "gasPrice": gas_price,
                "chainId": self.network.chain_id,
            })

        signed_tx = account.sign_transaction(tx)
        # Known before broadcast, so an interrupted send can still be looked up
        local_hash = Web3.to_hex(Web3.keccak(signed_tx.raw_transaction))
        try:
            tx_hash = await self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except Web3RPCError as e:
            # Rejected by the node (nonce too low, underpriced); never entered the mempool
            raise SettlementFailed(f"Transaction rejected by node: {e}")
        except TRANSPORT_ERRORS as e:
            logger.warning(
                "transfer_with_authorization_send_interrupted",
                tx_hash=local_hash,
                network=self.network.network_id,
                error=str(e),
            )
            raise SubmissionUnknown(local_hash, str(e) or type(e).__name__)

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(
            "transfer_with_authorization_sent",
            tx_hash=tx_hash_hex,
            network=self.network.network_id,
            from_address=authorization.from_address,
            to_address=authorization.to,
            amount=authorization.value,
            gas_limit=gas_limit,
        )
        return tx_hash_hex

    async def get_receipt(self, tx_hash: str):
        """Receipt of a mined transaction, or None if the node does not know it"""
        with self._rpc("get_transaction_receipt"):
            try:
                return await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None):
        """
        Block (cooperatively) until the transaction is mined.
        A missing receipt is ConfirmationTimeout, a status-0 receipt is SettlementFailed.
        """
        timeout = timeout if timeout is not None else self.network.confirmation_timeout
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted:
            raise ConfirmationTimeout(tx_hash, timeout)
        except TRANSPORT_ERRORS as e:
            # Already broadcast: losing the node now leaves the outcome unknown
            logger.warning("receipt_wait_interrupted", tx_hash=tx_hash, error=str(e))
            raise ConfirmationTimeout(tx_hash, timeout)

        if receipt.get("status") != 1:
            raise SettlementFailed("Transaction reverted on-chain", tx_hash=tx_hash)

        logger.info(
            "transfer_with_authorization_confirmed",
            tx_hash=tx_hash,
            network=self.network.network_id,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )
        return receipt

    @staticmethod
    def transferred_amount(receipt, token_address: str, from_address: str, to_address: str) -> int:
        """Sum of Transfer(from, to, value) events emitted by the token in this receipt"""
        total = 0
        for log in receipt.get("logs") or []:
            if str(log.get("address", "")).lower() != token_address.lower():
                continue
            topics = log.get("topics") or []
            if len(topics) < 3 or HexBytes(topics[0]) != TRANSFER_EVENT_TOPIC:
                continue
            if _topic_address(topics[1]) != from_address.lower():
                continue
            if _topic_address(topics[2]) != to_address.lower():
                continue
            total += int.from_bytes(HexBytes(log.get("data")), "big")
        return total


class ChainClientPool:
    """One lazily-built ChainClient per network"""

    def __init__(
        self,
        registry: NetworkRegistry,
        factory: Callable[[NetworkDescriptor], ChainClient] = ChainClient,
    ):
        self.registry = registry
        self._factory = factory
        self._clients: Dict[str, ChainClient] = {}

    def for_network(self, network_id: str) -> ChainClient:
        client = self._clients.get(network_id)
        if client is None:
            client = self._factory(self.registry.resolve(network_id))
            self._clients[network_id] = client
        return client
