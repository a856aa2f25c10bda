from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request

from facilitator_hub.api.dependencies import get_hub, limiter
from facilitator_hub.api.models import (
    PaymentRequirementsRequest,
    SettleBatchRequest,
    SettleDefaultRequest,
    SettleRequest,
)
from facilitator_hub.errors import ValidationError
from facilitator_hub.hub import Hub
from facilitator_hub.payments.models import (
    BatchSettlementResult,
    PaymentRequirements,
    SettlementResult,
    SupportedKind,
)

router = APIRouter(prefix="/api/v1/x402", tags=["Settlement"])


@router.get("/supported", response_model=List[SupportedKind])
async def supported(hub: Hub = Depends(get_hub)):
    """Payment kinds this hub can settle"""
    return hub.codec.supported_kinds()


@router.post("/requirements", response_model=PaymentRequirements)
@limiter.limit("60/minute")
async def payment_requirements(request: Request, body: PaymentRequirementsRequest, hub: Hub = Depends(get_hub)):
    """Body of a 402 response for a protected resource"""
    pay_to = body.pay_to or hub.config.payment_recipient
    if not pay_to:
        raise ValidationError("payTo is required when PAYMENT_RECIPIENT is not configured")
    return hub.codec.create_payment_requirements(
        amount=body.amount,
        pay_to=pay_to,
        network_id=body.network,
        resource=body.resource,
        description=body.description,
    )


@router.post("/settle", response_model=SettlementResult)
@limiter.limit("30/minute")
async def settle(request: Request, body: SettleRequest, hub: Hub = Depends(get_hub)):
    """
    Settle one signed authorization through a facilitator.
    The network is taken from the request name, then its chain id, then the facilitator.
    """
    signed = hub.codec.from_wire_form(body.payment_payload.payload)
    return await hub.engine.settle(
        body.facilitator_id,
        signed,
        network=body.network or body.payment_payload.network,
        chain_id=body.chain_id,
        token_address=body.token_address,
        contract_address=body.contract_address,
        verifying_contract=body.verifying_contract,
    )


@router.post("/settle-default", response_model=SettlementResult)
@limiter.limit("30/minute")
async def settle_default(
    request: Request,
    body: SettleDefaultRequest,
    x_payment: Optional[str] = Header(default=None, alias="X-PAYMENT"),
    hub: Hub = Depends(get_hub),
):
    """
    Settle with the operator's default facilitator key for the network.
    The payment payload comes from the body or, failing that, the X-PAYMENT header.
    """
    payload = body.payment_payload
    if payload is None and x_payment:
        payload = hub.codec.decode_payment_header(x_payment)
    if payload is None:
        raise ValidationError("Missing paymentPayload")

    signed = hub.codec.from_wire_form(payload.payload)
    network = body.network or payload.network or hub.config.default_network
    return await hub.engine.settle_with_default(signed, network, token_address=body.token_address)


@router.post("/settle-batch", response_model=BatchSettlementResult)
@limiter.limit("10/minute")
async def settle_batch(request: Request, body: SettleBatchRequest, hub: Hub = Depends(get_hub)):
    """
    Settle several authorizations in order with one facilitator.
    A failing leg stops the batch; confirmed legs are reported, never rolled back.
    """
    authorizations = [hub.codec.from_wire_form(item) for item in body.authorizations]
    return await hub.engine.settle_batch(
        body.facilitator_id,
        body.network,
        authorizations,
        token_address=body.token_address,
    )
