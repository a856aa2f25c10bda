"""
x402 / ERC-3009 payment models for Facilitator Hub
Authorization messages, their wire form and settlement results
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from facilitator_hub.models import is_hex_address

UINT256_MAX = 2 ** 256 - 1


def _normalize_hex(value: str, byte_length: int, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a hex string")
    raw = value[2:] if value.startswith("0x") else value
    if len(raw) != byte_length * 2:
        raise ValueError(f"{field_name} must be {byte_length} bytes, got {len(raw) // 2}")
    try:
        bytes.fromhex(raw)
    except ValueError:
        raise ValueError(f"{field_name} is not valid hex")
    return "0x" + raw.lower()


class TransferAuthorization(BaseModel):
    """ERC-3009 TransferWithAuthorization message (integers held natively)"""
    from_address: str = Field(alias="from")
    to: str
    value: int = Field(ge=0, le=UINT256_MAX, description="Amount in atomic token units")
    valid_after: int = Field(ge=0, le=UINT256_MAX, alias="validAfter")
    valid_before: int = Field(ge=0, le=UINT256_MAX, alias="validBefore")
    nonce: str = Field(description="32-byte hex nonce, single use per signer and token")

    class Config:
        populate_by_name = True

    @field_validator("from_address", "to")
    @classmethod
    def validate_address(cls, v):
        if not is_hex_address(v):
            raise ValueError(f"not a 20-byte hex address: {v!r}")
        return v

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, v):
        return _normalize_hex(v, 32, "nonce")

    @model_validator(mode="after")
    def validate_window(self):
        if self.valid_after >= self.valid_before:
            raise ValueError("validAfter must be earlier than validBefore")
        return self


class SignedAuthorization(BaseModel):
    """Authorization plus the payer's 65-byte (r, s, v) signature"""
    authorization: TransferAuthorization
    signature: str
    # EIP-712 domain the wallet signed under, when the caller forwards it
    domain: Optional[dict] = None

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, v):
        return _normalize_hex(v, 65, "signature")


class PaymentPayload(BaseModel):
    """x402 payment payload carrying a signed ERC-3009 authorization"""
    x402Version: int = 1
    scheme: str = "exact"
    network: Optional[str] = None
    payload: dict = Field(description="Contains signature and authorization")


class PaymentRequirements(BaseModel):
    """What a protected resource asks for in its 402 response"""
    scheme: str = "exact"
    network: str
    resource: str
    max_amount_required: str = Field(alias="maxAmountRequired", description="Atomic units, decimal string")
    pay_to: str = Field(alias="payTo")
    asset: str = Field(description="Token contract address")
    max_timeout_seconds: int = Field(alias="maxTimeoutSeconds")
    mime_type: Optional[str] = Field(default="application/json", alias="mimeType")
    description: Optional[str] = None

    class Config:
        populate_by_name = True


class SupportedKind(BaseModel):
    x402Version: int = 1
    scheme: str = "exact"
    network: str


class SettlementStage(str, Enum):
    """Lifecycle of one settlement attempt"""
    PENDING = "pending"
    FACILITATOR_RESOLVED = "facilitator_resolved"
    KEY_DECRYPTED = "key_decrypted"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class LegReceipt(BaseModel):
    """One confirmed transferWithAuthorization transaction"""
    index: int = 0
    tx_hash: str
    block_number: Optional[int] = None
    from_address: str
    to_address: str
    value: int
    amount_transferred: Optional[int] = Field(
        default=None,
        description="Sum of matching Transfer events in the receipt"
    )
    gas_used: int = 0
    gas_spent: int = Field(default=0, description="gasUsed * effectiveGasPrice, in wei")

    @field_serializer("value", "amount_transferred", "gas_spent")
    def serialize_big_int(self, v: Optional[int]):
        return None if v is None else str(v)


class LegFailure(BaseModel):
    """Why a batch leg stopped the batch"""
    index: int
    stage: SettlementStage
    code: str
    reason: str
    tx_hash: Optional[str] = None
    ambiguous: bool = Field(
        default=False,
        description="True when the transaction may still land (interrupted broadcast or confirmation timeout)"
    )


class SettlementResult(BaseModel):
    """Outcome of a single-authorization settlement"""
    success: bool = True
    tx_hash: str
    facilitator_id: str
    facilitator_name: str
    facilitator_wallet: str
    network_id: str
    chain_id: int
    token_address: str
    receipt: LegReceipt
    explorer_url: Optional[str] = None


class BatchSettlementResult(BaseModel):
    """Outcome of a sequential batch; partial success is reported, never rolled back"""
    success: bool
    facilitator_id: str
    facilitator_name: str
    facilitator_wallet: str
    network_id: str
    chain_id: int
    tx_hashes: List[str] = Field(default_factory=list)
    legs: List[LegReceipt] = Field(default_factory=list)
    total_gas_spent: int = 0
    submitted_count: int = 0
    requested_count: int = 0
    failure: Optional[LegFailure] = None

    @field_serializer("total_gas_spent")
    def serialize_gas(self, v: int):
        return str(v)
