"""
Facilitator Directory
CRUD and query layer over facilitator records in the key-value store
"""

import json
import random
import uuid
from typing import Any, Awaitable, Callable, List, Optional

from eth_account import Account
from web3 import Web3
import structlog

from facilitator_hub.audit import AuditEvent, AuditEventType, AuditLog
from facilitator_hub.config import HubConfig
from facilitator_hub.errors import (
    ConfigurationError,
    DecryptionFailed,
    FacilitatorNotFound,
    InvalidAddress,
    PaymentProofRejected,
    Unauthorized,
    ValidationError,
)
from facilitator_hub.models import (
    FacilitatorRecord,
    FacilitatorStatus,
    PublicFacilitatorInfo,
    is_hex_address,
    utcnow,
)
from facilitator_hub.networks import NetworkRegistry
from facilitator_hub.storage import KeyValueStore, decrypt_private_key, encrypt_private_key

logger = structlog.get_logger()

RECORD_KEY_PREFIX = "facilitator:"
ACTIVE_INDEX_KEY = "facilitators:active"

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 50

# (registration_tx_hash, owner, network_id) -> accepted?
PaymentProofVerifier = Callable[[str, str, str], Awaitable[bool]]


def generate_facilitator_id() -> str:
    return f"fac_{uuid.uuid4().hex[:16]}"


def _parse_record(value: Any) -> FacilitatorRecord:
    # Upstash returns already-parsed JSON for some values
    data = json.loads(value) if isinstance(value, (str, bytes)) else value
    return FacilitatorRecord.model_validate(data)


class FacilitatorDirectory:
    """
    Persists facilitator records under facilitator:<id> and keeps the
    facilitators:active index of every known id.

    Records written before facilitators were network-aware have no
    network_id/chain_id; they are read as belonging to the configured
    default network.
    """

    def __init__(
        self,
        store: KeyValueStore,
        registry: NetworkRegistry,
        config: HubConfig,
        audit: Optional[AuditLog] = None,
        payment_verifier: Optional[PaymentProofVerifier] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config
        self.audit = audit or AuditLog()
        self.payment_verifier = payment_verifier

    # ===== CREATION =====

    async def create(
        self,
        name: str,
        payout_address: str,
        owner: str,
        network_id: str,
        password: str,
        registration_tx_hash: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> str:
        """
        Create a facilitator bound to one network.

        Args:
            name: Display name, 3-50 characters
            payout_address: Where the facilitator's share of funds goes
            owner: Creator address; the only principal allowed to delete
            network_id: Network the record is bound to for its lifetime
            password: Owner password protecting the backup copy of the key
            registration_tx_hash: Payment proof, checked when a verifier is configured
            private_key: Existing signing key; a fresh one is generated if omitted

        Returns:
            The new facilitator id
        """
        self._validate_new_record(name, payout_address, owner, network_id)
        if not password:
            raise ValidationError("Password is required to protect the facilitator key")
        if not self.config.system_master_key:
            raise ConfigurationError("SYSTEM_MASTER_KEY is not configured")

        await self._verify_payment_proof(registration_tx_hash, owner, network_id)

        if private_key:
            try:
                account = Account.from_key(private_key)
            except ValueError:
                raise ValidationError("Supplied private key is not a valid secp256k1 key")
        else:
            account = Account.create()
        key_hex = Web3.to_hex(account.key)

        record = FacilitatorRecord(
            id=generate_facilitator_id(),
            name=name,
            encrypted_private_key=encrypt_private_key(key_hex, password),
            system_encrypted_key=encrypt_private_key(key_hex, self.config.system_master_key),
            wallet_address=account.address,
            payout_address=payout_address,
            owner=owner,
            network_id=network_id,
            chain_id=self.registry.resolve(network_id).chain_id,
            status=FacilitatorStatus.NEEDS_FUNDING,
            registration_tx_hash=registration_tx_hash,
        )
        await self._insert(record)
        return record.id

    async def create_from_existing(
        self,
        owner: str,
        password: str,
        name: str,
        payout_address: str,
        network_id: str,
        registration_tx_hash: Optional[str] = None,
    ) -> str:
        """
        Add a facilitator on another network reusing the owner's existing key.
        The owner's most recently used facilitator is the source account; the
        password must decrypt its backup key copy.
        """
        self._validate_new_record(name, payout_address, owner, network_id)

        existing = await self.list_by_owner(owner)
        if not existing:
            raise FacilitatorNotFound(
                owner,
                message="No existing facilitator account found; create a first facilitator before adding networks",
            )

        base = await self.get(existing[0].id)
        if base is None:
            raise FacilitatorNotFound(existing[0].id)

        try:
            decrypt_private_key(base.encrypted_private_key, password)
        except DecryptionFailed:
            logger.warning("facilitator_password_rejected", facilitator_id=base.id, owner=owner)
            raise Unauthorized("Invalid password for existing facilitator account")

        await self._verify_payment_proof(registration_tx_hash, owner, network_id)

        record = FacilitatorRecord(
            id=generate_facilitator_id(),
            name=name,
            encrypted_private_key=base.encrypted_private_key,
            system_encrypted_key=base.system_encrypted_key,
            wallet_address=base.wallet_address,
            payout_address=payout_address,
            owner=owner,
            network_id=network_id,
            chain_id=self.registry.resolve(network_id).chain_id,
            status=FacilitatorStatus.NEEDS_FUNDING,
            registration_tx_hash=registration_tx_hash,
        )
        await self._insert(record)
        logger.info(
            "facilitator_created_from_existing",
            facilitator_id=record.id,
            source_facilitator_id=base.id,
            wallet=record.wallet_address,
            network=network_id,
        )
        return record.id

    def _validate_new_record(self, name: str, payout_address: str, owner: str, network_id: str) -> None:
        if not name or not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
            raise ValidationError(
                f"Facilitator name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"
            )
        if not is_hex_address(payout_address):
            raise InvalidAddress(f"Invalid payout address: {payout_address!r}")
        if not is_hex_address(owner):
            raise InvalidAddress(f"Invalid owner address: {owner!r}")
        self.registry.resolve(network_id)

    async def _verify_payment_proof(
        self,
        registration_tx_hash: Optional[str],
        owner: str,
        network_id: str,
    ) -> None:
        if self.payment_verifier is None:
            return
        if not registration_tx_hash:
            raise PaymentProofRejected("Registration payment transaction hash is required")
        if not await self.payment_verifier(registration_tx_hash, owner, network_id):
            raise PaymentProofRejected(
                "Registration payment could not be verified",
                details={"registration_tx_hash": registration_tx_hash, "network": network_id},
            )

    async def _insert(self, record: FacilitatorRecord) -> None:
        await self._save(record)
        await self.store.sadd(ACTIVE_INDEX_KEY, record.id)

        network = self.registry.resolve(record.network_id)
        logger.info(
            "facilitator_created",
            facilitator_id=record.id,
            wallet=record.wallet_address,
            network=record.network_id,
            owner=record.owner,
        )
        await self.audit.append(AuditEvent(
            event_type=AuditEventType.FACILITATOR_ADDED,
            facilitator_id=record.id,
            facilitator_name=record.name,
            chain_id=network.chain_id,
            chain_name=network.display_name,
            details={"registration_tx_hash": record.registration_tx_hash},
        ))

    async def _save(self, record: FacilitatorRecord) -> None:
        await self.store.set(f"{RECORD_KEY_PREFIX}{record.id}", record.model_dump_json())

    # ===== READS =====

    def _apply_default_network(self, record: FacilitatorRecord) -> bool:
        """Fill in network fields on a legacy record; True if anything changed"""
        if record.network_id and record.chain_id:
            return False
        if not record.network_id:
            record.network_id = self.config.default_network
        record.chain_id = self.registry.resolve(record.network_id).chain_id
        return True

    async def get(self, facilitator_id: str) -> Optional[FacilitatorRecord]:
        """Load a record; a legacy record gets the default network written back once"""
        value = await self.store.get(f"{RECORD_KEY_PREFIX}{facilitator_id}")
        if value is None:
            return None

        record = _parse_record(value)
        if self._apply_default_network(record):
            await self._save(record)
            logger.info(
                "facilitator_auto_migrated",
                facilitator_id=facilitator_id,
                network=record.network_id,
                chain_id=record.chain_id,
            )
        return record

    async def require(self, facilitator_id: str) -> FacilitatorRecord:
        record = await self.get(facilitator_id)
        if record is None:
            raise FacilitatorNotFound(facilitator_id)
        return record

    async def list_active(
        self,
        network_filter: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> List[PublicFacilitatorInfo]:
        """
        Public view of every indexed facilitator, most recently used first.
        A chain id is resolved to its network before filtering; matching is exact.
        """
        if network_filter is None and chain_id is not None:
            descriptor = self.registry.resolve_by_chain_id(chain_id)
            if descriptor is None:
                raise ValidationError(
                    f"Unsupported chain id: {chain_id}",
                    details={"chain_id": chain_id},
                )
            network_filter = descriptor.network_id
        if network_filter is not None:
            self.registry.resolve(network_filter)

        ids = await self.store.smembers(ACTIVE_INDEX_KEY)
        if not ids:
            return []

        # One round trip for every record
        values = await self.store.mget([f"{RECORD_KEY_PREFIX}{i}" for i in ids])

        facilitators = []
        for facilitator_id, value in zip(ids, values):
            if value is None:
                continue
            try:
                record = _parse_record(value)
            except (ValueError, TypeError) as e:
                logger.warning("facilitator_record_unreadable", facilitator_id=facilitator_id, error=str(e))
                continue

            if record.network_id and not self.registry.is_supported(record.network_id):
                logger.warning(
                    "facilitator_network_unsupported",
                    facilitator_id=facilitator_id,
                    network=record.network_id,
                )
                continue

            # Listing never writes; the fix-up is persisted by get()
            self._apply_default_network(record)
            if network_filter is not None and record.network_id != network_filter:
                continue
            facilitators.append(record.public_view())

        return sorted(facilitators, key=lambda f: f.last_used_at, reverse=True)

    async def list_by_owner(self, owner: str) -> List[PublicFacilitatorInfo]:
        return [
            info for info in await self.list_active()
            if info.owner.lower() == owner.lower()
        ]

    async def select_random(self, network_id: str) -> PublicFacilitatorInfo:
        """Pick one active facilitator on a network"""
        candidates = [
            info for info in await self.list_active(network_filter=network_id)
            if info.status == FacilitatorStatus.ACTIVE
        ]
        if not candidates:
            raise FacilitatorNotFound(
                "",
                message=f"No active facilitators available on {network_id}",
            )
        return random.choice(candidates)

    # ===== MUTATIONS =====

    async def set_status(
        self,
        facilitator_id: str,
        status: FacilitatorStatus,
        observed_balance: Optional[int] = None,
    ) -> FacilitatorRecord:
        """
        Persist a status. ACTIVE requires the balance observed by the caller
        in the same operation.
        """
        if status == FacilitatorStatus.ACTIVE and observed_balance is None:
            raise ValidationError(
                "Activating a facilitator requires a live balance check",
                details={"facilitator_id": facilitator_id},
            )

        record = await self.require(facilitator_id)
        previous = record.status
        record.status = status
        await self._save(record)

        logger.info(
            "facilitator_status_updated",
            facilitator_id=facilitator_id,
            from_status=previous.value,
            to_status=status.value,
            observed_balance=observed_balance,
        )
        return record

    async def increment_settlement_count(self, facilitator_id: str) -> FacilitatorRecord:
        record = await self.require(facilitator_id)
        record.total_settlements += 1
        record.last_used_at = utcnow()
        await self._save(record)

        logger.debug(
            "facilitator_settlement_recorded",
            facilitator_id=facilitator_id,
            total_settlements=record.total_settlements,
        )
        return record

    async def delete(self, facilitator_id: str, caller: str) -> None:
        """Remove a record and its index membership; only the owner may delete"""
        record = await self.require(facilitator_id)
        if not caller or record.owner.lower() != caller.lower():
            raise Unauthorized(
                "Only the creator can delete this facilitator",
                details={"facilitator_id": facilitator_id},
            )

        await self.store.delete(f"{RECORD_KEY_PREFIX}{facilitator_id}")
        await self.store.srem(ACTIVE_INDEX_KEY, facilitator_id)

        logger.info("facilitator_deleted", facilitator_id=facilitator_id, caller=caller)
        network = self.registry.resolve(record.network_id)
        await self.audit.append(AuditEvent(
            event_type=AuditEventType.FACILITATOR_DELETED,
            facilitator_id=facilitator_id,
            facilitator_name=record.name,
            chain_id=network.chain_id,
            chain_name=network.display_name,
        ))
