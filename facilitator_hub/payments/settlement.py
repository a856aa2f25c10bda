"""
Settlement Engine for Facilitator Hub
Submits signed ERC-3009 authorizations on-chain from a facilitator wallet.

Per attempt: PENDING -> FACILITATOR_RESOLVED -> KEY_DECRYPTED -> SUBMITTED -> CONFIRMED,
or FAILED from any of them.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from eth_account import Account
from eth_account.signers.local import LocalAccount
import structlog

from facilitator_hub.audit import AuditEvent, AuditEventType, AuditLog
from facilitator_hub.chain import ChainClientPool
from facilitator_hub.chain.client import receipt_gas_spent
from facilitator_hub.config import HubConfig
from facilitator_hub.errors import (
    ConfigurationError,
    ConfirmationTimeout,
    DecryptionFailed,
    HubError,
    NetworkMismatch,
    SettlementFailed,
    SubmissionUnknown,
    ValidationError,
)
from facilitator_hub.facilitators import FacilitatorDirectory
from facilitator_hub.models import FacilitatorRecord, is_hex_address
from facilitator_hub.networks import NetworkDescriptor, NetworkRegistry
from facilitator_hub.payments.authorization import split_signature
from facilitator_hub.payments.models import (
    BatchSettlementResult,
    LegFailure,
    LegReceipt,
    SettlementResult,
    SettlementStage,
    SignedAuthorization,
)
from facilitator_hub.storage import decrypt_private_key

logger = structlog.get_logger()

Signature = Tuple[int, bytes, bytes]

# Audit and result identity of the operator-held facilitator
DEFAULT_FACILITATOR_ID = "default"
DEFAULT_FACILITATOR_NAME = "Default facilitator"


@dataclass
class SettlementContext:
    """Tracks how far one authorization got"""
    attempt_id: str
    facilitator_id: str
    stage: SettlementStage = SettlementStage.PENDING
    network_id: Optional[str] = None
    leg_index: Optional[int] = None
    tx_hash: Optional[str] = None


class SettlementEngine:
    """
    Orchestrates single and batch settlement for a facilitator.
    Failures are raised (single) or reported (batch) with the stage reached and
    any transaction hashes already confirmed; nothing is retried automatically.
    """

    def __init__(
        self,
        directory: FacilitatorDirectory,
        registry: NetworkRegistry,
        chains: ChainClientPool,
        config: HubConfig,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = directory
        self.registry = registry
        self.chains = chains
        self.config = config
        self.audit = audit or AuditLog()
        self._clock = clock

    # ===== SINGLE =====

    async def settle(
        self,
        facilitator_id: str,
        signed: SignedAuthorization,
        network: Optional[str] = None,
        chain_id: Optional[int] = None,
        token_address: Optional[str] = None,
        contract_address: Optional[str] = None,
        verifying_contract: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle one signed authorization.

        Args:
            facilitator_id: Facilitator whose wallet pays gas
            signed: Payer-signed authorization
            network: Network name hint; used only if supported
            chain_id: Chain id hint; used when no supported name is given
            token_address: Explicit token contract
            contract_address: Alternate token contract field
            verifying_contract: Alternate token contract field

        Returns:
            SettlementResult with the confirmed receipt

        Raises:
            FacilitatorNotFound, NetworkMismatch, DecryptionFailed, InvalidSignature,
            SettlementFailed, ConfirmationTimeout, ChainUnavailable
        """
        ctx = SettlementContext(attempt_id=uuid.uuid4().hex[:12], facilitator_id=facilitator_id)
        try:
            record = await self.directory.require(facilitator_id)
            descriptor = self._resolve_network(record, network, chain_id)
            ctx.network_id = descriptor.network_id
            self._transition_stage(ctx, SettlementStage.FACILITATOR_RESOLVED)

            account = self._decrypt_account(record)
            self._transition_stage(ctx, SettlementStage.KEY_DECRYPTED)

            signature = split_signature(signed.signature)
            token = self._resolve_token_address(
                descriptor, signed, token_address, contract_address, verifying_contract
            )
            leg = await self._execute_leg(ctx, record, descriptor, account, token, signed, signature)

        except HubError as e:
            self._fail(ctx, e)
            raise

        return SettlementResult(
            tx_hash=leg.tx_hash,
            facilitator_id=record.id,
            facilitator_name=record.name,
            facilitator_wallet=record.wallet_address,
            network_id=descriptor.network_id,
            chain_id=descriptor.chain_id,
            token_address=token,
            receipt=leg,
            explorer_url=descriptor.explorer_tx_url(leg.tx_hash),
        )

    async def settle_with_default(
        self,
        signed: SignedAuthorization,
        network_id: str,
        token_address: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle through the operator's own key for the network instead of a
        registered facilitator. The key comes from
        DEFAULT_FACILITATOR_PRIVATE_KEY_<NETWORK>, then DEFAULT_FACILITATOR_PRIVATE_KEY.

        Raises:
            UnknownNetwork, ConfigurationError, InvalidSignature,
            SettlementFailed, ConfirmationTimeout, SubmissionUnknown, ChainUnavailable
        """
        ctx = SettlementContext(attempt_id=uuid.uuid4().hex[:12], facilitator_id=DEFAULT_FACILITATOR_ID)
        try:
            descriptor = self.registry.resolve(network_id)
            ctx.network_id = descriptor.network_id
            self._transition_stage(ctx, SettlementStage.FACILITATOR_RESOLVED)

            account = self.default_account(descriptor.network_id)
            self._transition_stage(ctx, SettlementStage.KEY_DECRYPTED)

            signature = split_signature(signed.signature)
            token = self._resolve_token_address(descriptor, signed, token_address)
            leg = await self._execute_leg(ctx, None, descriptor, account, token, signed, signature)

        except HubError as e:
            self._fail(ctx, e)
            raise

        return SettlementResult(
            tx_hash=leg.tx_hash,
            facilitator_id=DEFAULT_FACILITATOR_ID,
            facilitator_name=DEFAULT_FACILITATOR_NAME,
            facilitator_wallet=account.address,
            network_id=descriptor.network_id,
            chain_id=descriptor.chain_id,
            token_address=token,
            receipt=leg,
            explorer_url=descriptor.explorer_tx_url(leg.tx_hash),
        )

    def default_account(self, network_id: str) -> LocalAccount:
        """Operator key for a network, the network-specific setting first"""
        setting = f"default_facilitator_private_key_{network_id.replace('-', '_')}"
        private_key = getattr(self.config, setting, "") or self.config.default_facilitator_private_key
        if not private_key:
            raise ConfigurationError(
                f"Default facilitator not configured for {network_id}",
                details={"network": network_id},
            )
        try:
            return Account.from_key(private_key)
        except Exception as e:
            logger.error("default_facilitator_key_invalid", network=network_id, error=type(e).__name__)
            raise ConfigurationError(
                f"Default facilitator key for {network_id} is not a valid private key",
                details={"network": network_id},
            )

    # ===== BATCH =====

    async def settle_batch(
        self,
        facilitator_id: str,
        network_id: str,
        authorizations: List[SignedAuthorization],
        token_address: Optional[str] = None,
    ) -> BatchSettlementResult:
        """
        Settle authorizations strictly in order, one confirmed transaction at a time.

        Legs share the facilitator's account nonce, so leg i+1 is never
        broadcast before leg i has a receipt. The first failing leg stops the
        batch: earlier legs stay confirmed (no rollback), later legs are never
        submitted, and the result carries the failure detail.
        """
        if not authorizations:
            raise ValidationError("Batch must contain at least one authorization")

        descriptor = self.registry.resolve(network_id)
        record = await self.directory.require(facilitator_id)
        if record.network_id != descriptor.network_id:
            raise NetworkMismatch(
                f"Facilitator {facilitator_id} is bound to {record.network_id}, not {network_id}",
                details={"facilitator_network": record.network_id, "requested_network": network_id},
            )

        account = self._decrypt_account(record)
        # Reject malformed signatures before anything is broadcast
        signatures = [split_signature(signed.signature) for signed in authorizations]

        logger.info(
            "batch_settlement_started",
            facilitator_id=facilitator_id,
            network=network_id,
            legs=len(authorizations),
        )

        legs: List[LegReceipt] = []
        failure: Optional[LegFailure] = None
        for index, (signed, signature) in enumerate(zip(authorizations, signatures)):
            ctx = SettlementContext(
                attempt_id=uuid.uuid4().hex[:12],
                facilitator_id=facilitator_id,
                stage=SettlementStage.KEY_DECRYPTED,
                network_id=network_id,
                leg_index=index,
            )
            try:
                token = self._resolve_token_address(descriptor, signed, token_address)
                leg = await self._execute_leg(ctx, record, descriptor, account, token, signed, signature)
            except HubError as e:
                failure = self._leg_failure(ctx, e)
                self._fail(ctx, e)
                break
            except Exception as e:
                # Never raise past confirmed legs: their hashes must reach the caller
                logger.exception(
                    "batch_leg_unexpected_error",
                    facilitator_id=facilitator_id,
                    leg_index=index,
                    stage=ctx.stage.value,
                    tx_hash=ctx.tx_hash,
                )
                failure = LegFailure(
                    index=index,
                    stage=ctx.stage,
                    code="UNEXPECTED_ERROR",
                    reason=str(e) or type(e).__name__,
                    tx_hash=ctx.tx_hash,
                    ambiguous=ctx.stage == SettlementStage.SUBMITTED,
                )
                self._transition_stage(ctx, SettlementStage.FAILED)
                break
            legs.append(leg)

        tx_hashes = [leg.tx_hash for leg in legs]
        total_gas = sum(leg.gas_spent for leg in legs)
        submitted = len(legs) + (1 if failure is not None and failure.tx_hash else 0)

        if failure is not None:
            logger.warning(
                "batch_settlement_halted",
                facilitator_id=facilitator_id,
                network=network_id,
                confirmed=len(legs),
                failed_index=failure.index,
                reason=failure.reason,
                never_submitted=len(authorizations) - failure.index - 1,
            )
        else:
            logger.info(
                "batch_settlement_completed",
                facilitator_id=facilitator_id,
                network=network_id,
                tx_hashes=tx_hashes,
                total_gas_spent=total_gas,
            )

        return BatchSettlementResult(
            success=failure is None,
            facilitator_id=record.id,
            facilitator_name=record.name,
            facilitator_wallet=record.wallet_address,
            network_id=descriptor.network_id,
            chain_id=descriptor.chain_id,
            tx_hashes=tx_hashes,
            legs=legs,
            total_gas_spent=total_gas,
            submitted_count=submitted,
            requested_count=len(authorizations),
            failure=failure,
        )

    # ===== INTERNALS =====

    @staticmethod
    def _leg_failure(ctx: SettlementContext, error: HubError) -> LegFailure:
        ambiguous = isinstance(error, (ConfirmationTimeout, SubmissionUnknown))
        return LegFailure(
            index=ctx.leg_index or 0,
            stage=ctx.stage,
            code=error.code,
            reason=getattr(error, "reason", None) or error.message,
            tx_hash=ctx.tx_hash or getattr(error, "tx_hash", None),
            ambiguous=ambiguous,
        )

    async def _execute_leg(
        self,
        ctx: SettlementContext,
        record: Optional[FacilitatorRecord],
        network: NetworkDescriptor,
        account: LocalAccount,
        token: str,
        signed: SignedAuthorization,
        signature: Signature,
    ) -> LegReceipt:
        auth = signed.authorization
        client = self.chains.for_network(network.network_id)

        now = int(self._clock())
        if auth.valid_before <= now:
            raise SettlementFailed("Authorization expired")
        if auth.valid_after >= now:
            raise SettlementFailed("Authorization is not yet valid")

        # A consumed nonce reverts; catch it before paying for the attempt
        if await client.authorization_used(token, auth.from_address, auth.nonce):
            raise SettlementFailed("Authorization nonce already used")

        v, r, s = signature
        tx_hash = await client.submit_transfer_with_authorization(account, token, auth, v, r, s)
        ctx.tx_hash = tx_hash
        self._transition_stage(ctx, SettlementStage.SUBMITTED)

        receipt = await client.wait_for_receipt(tx_hash, timeout=network.confirmation_timeout)
        self._transition_stage(ctx, SettlementStage.CONFIRMED)

        leg = LegReceipt(
            index=ctx.leg_index or 0,
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            from_address=auth.from_address,
            to_address=auth.to,
            value=auth.value,
            amount_transferred=client.transferred_amount(receipt, token, auth.from_address, auth.to),
            gas_used=int(receipt.get("gasUsed") or 0),
            gas_spent=receipt_gas_spent(receipt),
        )
        await self._record_success(record, network, token, leg)
        return leg

    async def _record_success(
        self,
        record: Optional[FacilitatorRecord],
        network: NetworkDescriptor,
        token: str,
        leg: LegReceipt,
    ) -> None:
        # The transfer is final at this point; bookkeeping errors must not mask it
        if record is not None:
            try:
                await self.directory.increment_settlement_count(record.id)
            except Exception as e:
                logger.error(
                    "settlement_counter_update_failed",
                    facilitator_id=record.id,
                    tx_hash=leg.tx_hash,
                    error=str(e),
                )

        await self.audit.append(AuditEvent(
            event_type=AuditEventType.TRANSACTION,
            facilitator_id=record.id if record else DEFAULT_FACILITATOR_ID,
            facilitator_name=record.name if record else DEFAULT_FACILITATOR_NAME,
            chain_id=network.chain_id,
            chain_name=network.display_name,
            tx_hash=leg.tx_hash,
            from_address=leg.from_address,
            to_address=leg.to_address,
            amount=str(leg.value),
            gas_spent=str(leg.gas_spent),
            details={
                "token_address": token,
                "block_number": leg.block_number,
                "leg_index": leg.index,
                "amount_transferred": None if leg.amount_transferred is None else str(leg.amount_transferred),
            },
        ))

    def _resolve_network(
        self,
        record: FacilitatorRecord,
        network_hint: Optional[str],
        chain_id: Optional[int],
    ) -> NetworkDescriptor:
        """Supported name, then chain id, then the record's own network"""
        bound = self.registry.resolve(record.network_id)

        resolved: Optional[NetworkDescriptor] = None
        if network_hint and self.registry.is_supported(network_hint):
            resolved = self.registry.resolve(network_hint)
        else:
            if network_hint:
                logger.warning("settlement_network_hint_unsupported", network=network_hint)
            if chain_id is not None:
                resolved = self.registry.resolve_by_chain_id(chain_id)
                if resolved is None:
                    logger.warning(
                        "settlement_chain_id_unknown",
                        chain_id=chain_id,
                        fallback=bound.network_id,
                    )

        if resolved is None:
            return bound
        if resolved.network_id != bound.network_id:
            raise NetworkMismatch(
                f"Facilitator {record.id} is bound to {bound.network_id}, not {resolved.network_id}",
                details={"facilitator_network": bound.network_id, "requested_network": resolved.network_id},
            )
        return resolved

    def _resolve_token_address(
        self,
        network: NetworkDescriptor,
        signed: SignedAuthorization,
        token_address: Optional[str] = None,
        contract_address: Optional[str] = None,
        verifying_contract: Optional[str] = None,
    ) -> str:
        """First valid candidate wins; the registry default when overrides are disabled"""
        if not self.config.allow_token_address_override:
            return network.token_address

        candidates = [
            ("token_address", token_address),
            ("contract_address", contract_address),
            ("verifying_contract", verifying_contract),
            ("signed_domain", (signed.domain or {}).get("verifyingContract")),
        ]
        for source, candidate in candidates:
            if not candidate:
                continue
            if not is_hex_address(candidate):
                logger.warning("token_address_candidate_invalid", source=source, value=candidate)
                continue
            if candidate.lower() != network.token_address.lower():
                logger.warning(
                    "token_address_override",
                    source=source,
                    token_address=candidate,
                    registry_default=network.token_address,
                    network=network.network_id,
                )
            return candidate
        return network.token_address

    def _decrypt_account(self, record: FacilitatorRecord) -> LocalAccount:
        try:
            private_key = decrypt_private_key(record.system_encrypted_key, self.config.system_master_key)
        except DecryptionFailed as e:
            # Misconfiguration, not transient
            logger.error("facilitator_key_decryption_failed", facilitator_id=record.id, error=e.message)
            raise

        account = Account.from_key(private_key)
        if account.address.lower() != record.wallet_address.lower():
            logger.error(
                "facilitator_key_wallet_mismatch",
                facilitator_id=record.id,
                wallet=record.wallet_address,
            )
            raise DecryptionFailed(
                "Decrypted key does not control the facilitator wallet",
                details={"facilitator_id": record.id},
            )
        return account

    def _transition_stage(self, ctx: SettlementContext, new_stage: SettlementStage) -> None:
        old_stage = ctx.stage
        ctx.stage = new_stage
        logger.info(
            "settlement_stage_transition",
            attempt_id=ctx.attempt_id,
            facilitator_id=ctx.facilitator_id,
            network=ctx.network_id,
            leg_index=ctx.leg_index,
            from_stage=old_stage.value,
            to_stage=new_stage.value,
            tx_hash=ctx.tx_hash,
        )

    def _fail(self, ctx: SettlementContext, error: HubError) -> None:
        """Record the stage reached on the error, then move to FAILED"""
        if isinstance(error, SettlementFailed):
            if error.stage is None:
                error.stage = ctx.stage.value
                error.details["stage"] = error.stage
            if error.tx_hash is None and ctx.tx_hash:
                error.tx_hash = ctx.tx_hash
                error.details["tx_hash"] = ctx.tx_hash

        logger.warning(
            "settlement_failed",
            attempt_id=ctx.attempt_id,
            facilitator_id=ctx.facilitator_id,
            stage=ctx.stage.value,
            code=error.code,
            error=error.message,
            tx_hash=ctx.tx_hash,
        )
        self._transition_stage(ctx, SettlementStage.FAILED)
