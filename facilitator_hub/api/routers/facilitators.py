from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from facilitator_hub.api.dependencies import get_hub, limiter, logger
from facilitator_hub.api.models import (
    CreateFacilitatorRequest,
    CreateFacilitatorResponse,
    FacilitatorListResponse,
)
from facilitator_hub.errors import FacilitatorNotFound, ValidationError
from facilitator_hub.facilitators import BalanceReport, FundingReport
from facilitator_hub.hub import Hub
from facilitator_hub.models import PublicFacilitatorInfo

router = APIRouter(prefix="/api/v1/facilitators", tags=["Facilitators"])


@router.get("", response_model=FacilitatorListResponse)
async def list_facilitators(
    network: Optional[str] = None,
    chain_id: Optional[int] = Query(default=None, alias="chainId"),
    reconcile: bool = True,
    hub: Hub = Depends(get_hub),
):
    """
    List facilitators, most recently used first.
    With reconcile (default) each status is refreshed from its live balance.
    """
    if chain_id is not None and network is None:
        descriptor = hub.registry.resolve_by_chain_id(chain_id)
        if descriptor is None:
            raise ValidationError(f"Unsupported chain id: {chain_id}", details={"chain_id": chain_id})
        network = descriptor.network_id

    if reconcile:
        facilitators = await hub.monitor.reconcile_all(network_filter=network)
    else:
        facilitators = await hub.directory.list_active(network_filter=network, chain_id=chain_id)

    return FacilitatorListResponse(facilitators=facilitators, count=len(facilitators))


@router.get("/random", response_model=PublicFacilitatorInfo)
async def random_facilitator(network: str, hub: Hub = Depends(get_hub)):
    """Pick an active facilitator on a network"""
    return await hub.directory.select_random(network)


@router.get("/balance", response_model=BalanceReport)
async def facilitator_balance(address: str, network: str, hub: Hub = Depends(get_hub)):
    """Native gas balance of any address on a network"""
    return await hub.monitor.check_balance(address, network)


@router.post("", response_model=CreateFacilitatorResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_facilitator(
    request: Request,
    body: CreateFacilitatorRequest,
    hub: Hub = Depends(get_hub),
):
    """Create a facilitator with a freshly generated wallet"""
    facilitator_id = await hub.directory.create(
        name=body.name,
        payout_address=body.payout_address,
        owner=body.owner,
        network_id=body.network,
        password=body.password,
        registration_tx_hash=body.registration_tx_hash,
    )
    return CreateFacilitatorResponse(facilitator=await _public_view(hub, facilitator_id))


@router.post("/from-existing", response_model=CreateFacilitatorResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_facilitator_from_existing(
    request: Request,
    body: CreateFacilitatorRequest,
    hub: Hub = Depends(get_hub),
):
    """Add a facilitator on another network reusing the owner's existing wallet"""
    facilitator_id = await hub.directory.create_from_existing(
        owner=body.owner,
        password=body.password,
        name=body.name,
        payout_address=body.payout_address,
        network_id=body.network,
        registration_tx_hash=body.registration_tx_hash,
    )
    return CreateFacilitatorResponse(facilitator=await _public_view(hub, facilitator_id))


@router.post("/{facilitator_id}/check", response_model=FundingReport)
@limiter.limit("30/minute")
async def check_facilitator(request: Request, facilitator_id: str, hub: Hub = Depends(get_hub)):
    """Check the live balance and reconcile the stored status"""
    return await hub.monitor.check_and_reconcile(facilitator_id)


@router.delete("/{facilitator_id}")
async def delete_facilitator(facilitator_id: str, caller: str, hub: Hub = Depends(get_hub)):
    """Delete a facilitator; only its creator may do so"""
    await hub.directory.delete(facilitator_id, caller)
    logger.info("facilitator_delete_requested", facilitator_id=facilitator_id, caller=caller)
    return {"success": True, "message": "Facilitator deleted successfully"}


async def _public_view(hub: Hub, facilitator_id: str) -> PublicFacilitatorInfo:
    record = await hub.directory.get(facilitator_id)
    if record is None:
        raise FacilitatorNotFound(facilitator_id)
    return record.public_view()
