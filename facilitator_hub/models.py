"""
Facilitator Hub Core Data Models
Shared models for storage operations and API
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_hex_address(value: Optional[str]) -> bool:
    """True for a 0x-prefixed 20-byte hex string (checksum not enforced)"""
    return isinstance(value, str) and bool(ADDRESS_PATTERN.match(value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FacilitatorStatus(str, Enum):
    """Operational state of a facilitator"""
    NEEDS_FUNDING = "needs_funding"
    ACTIVE = "active"
    INACTIVE = "inactive"


class FacilitatorRecord(BaseModel):
    """
    Persisted facilitator.
    network_id/chain_id are Optional only because records written before
    networks existed lack them; the directory fills them in on read.
    """
    id: str
    name: str
    encrypted_private_key: str = Field(description="Signing key encrypted with the owner's password")
    system_encrypted_key: str = Field(description="Signing key encrypted with the system master secret")
    wallet_address: str = Field(description="Address derived from the signing key; pays gas")
    payout_address: str = Field(description="Where the facilitator's share of funds goes")
    owner: str = Field(description="Creator address, the only principal allowed to delete")
    network_id: Optional[str] = None
    chain_id: Optional[int] = None
    status: FacilitatorStatus = FacilitatorStatus.NEEDS_FUNDING
    total_settlements: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime = Field(default_factory=utcnow)
    registration_tx_hash: Optional[str] = None

    def public_view(self) -> "PublicFacilitatorInfo":
        return PublicFacilitatorInfo(
            id=self.id,
            name=self.name,
            wallet_address=self.wallet_address,
            payout_address=self.payout_address,
            owner=self.owner,
            status=self.status,
            total_settlements=self.total_settlements,
            last_used_at=self.last_used_at,
            network_id=self.network_id,
            chain_id=self.chain_id,
        )


class PublicFacilitatorInfo(BaseModel):
    """Non-sensitive projection of a facilitator record"""
    id: str
    name: str
    wallet_address: str
    payout_address: str
    owner: str
    status: FacilitatorStatus
    total_settlements: int
    last_used_at: datetime
    network_id: Optional[str] = None
    chain_id: Optional[int] = None
    gas_balance: Optional[str] = Field(default=None, description="Native balance for gas, in whole units")
