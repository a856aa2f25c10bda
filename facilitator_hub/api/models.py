"""
Request and response bodies for the HTTP API
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from facilitator_hub.models import PublicFacilitatorInfo
from facilitator_hub.payments.models import PaymentPayload


class BuildAuthorizationRequest(BaseModel):
    from_address: str = Field(alias="from")
    to: str
    amount: str = Field(description="Decimal amount in whole tokens, e.g. '2.50'")
    network: str

    class Config:
        populate_by_name = True


class BuildAuthorizationResponse(BaseModel):
    network_id: str
    chain_id: int
    authorization: Dict[str, Any] = Field(description="Wire form, integers as decimal strings")
    typed_data: Dict[str, Any] = Field(description="EIP-712 structure for the wallet to sign")


class SettleRequest(BaseModel):
    facilitator_id: str = Field(alias="facilitatorId")
    payment_payload: PaymentPayload = Field(alias="paymentPayload")
    network: Optional[str] = None
    chain_id: Optional[int] = Field(default=None, alias="chainId")
    token_address: Optional[str] = Field(default=None, alias="usdcAddress")
    contract_address: Optional[str] = Field(default=None, alias="contractAddress")
    verifying_contract: Optional[str] = Field(default=None, alias="verifyingContract")

    class Config:
        populate_by_name = True


class SettleBatchRequest(BaseModel):
    facilitator_id: str = Field(alias="facilitatorId")
    network: str
    authorizations: List[Dict[str, Any]] = Field(description="Signed authorizations in wire form, settled in order")
    token_address: Optional[str] = Field(default=None, alias="usdcAddress")

    class Config:
        populate_by_name = True


class CreateFacilitatorRequest(BaseModel):
    name: str
    payout_address: str = Field(alias="paymentRecipient")
    owner: str = Field(alias="createdBy")
    network: str
    password: str
    registration_tx_hash: Optional[str] = Field(default=None, alias="registrationTxHash")

    class Config:
        populate_by_name = True


class CreateFacilitatorResponse(BaseModel):
    success: bool = True
    facilitator: PublicFacilitatorInfo


class FacilitatorListResponse(BaseModel):
    success: bool = True
    facilitators: List[PublicFacilitatorInfo]
    count: int


class SettleDefaultRequest(BaseModel):
    """Settlement through the operator's default facilitator; the payload may come in X-PAYMENT instead"""
    payment_payload: Optional[PaymentPayload] = Field(default=None, alias="paymentPayload")
    network: Optional[str] = None
    token_address: Optional[str] = Field(default=None, alias="usdcAddress")

    class Config:
        populate_by_name = True


class PaymentRequirementsRequest(BaseModel):
    amount: str = Field(description="Decimal amount in whole tokens, e.g. '1'")
    network: str
    resource: str
    pay_to: Optional[str] = Field(default=None, alias="payTo", description="Defaults to PAYMENT_RECIPIENT")
    description: Optional[str] = None

    class Config:
        populate_by_name = True
