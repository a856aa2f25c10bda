from fastapi import APIRouter, Depends, Request

from facilitator_hub.api.dependencies import get_hub, limiter
from facilitator_hub.api.models import BuildAuthorizationRequest, BuildAuthorizationResponse
from facilitator_hub.hub import Hub
from facilitator_hub.models import utcnow

router = APIRouter(tags=["General"])


@router.get("/health", tags=["Health"])
async def health_check(hub: Hub = Depends(get_hub)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "networks": hub.registry.network_ids(),
    }


@router.get("/api/v1/networks", tags=["Networks"])
async def list_networks(hub: Hub = Depends(get_hub)):
    """Supported networks and their signing domains"""
    return {
        "networks": [
            {
                "network_id": network.network_id,
                "display_name": network.display_name,
                "chain_id": network.chain_id,
                "token_address": network.token_address,
                "token_decimals": network.token_decimals,
                "native_symbol": network.native_symbol,
                "block_explorer": network.block_explorer,
                "recommended_balance": str(network.recommended_balance),
                "domain": network.domain.as_dict(),
            }
            for network in hub.registry
        ]
    }


@router.post("/api/v1/authorizations", response_model=BuildAuthorizationResponse, tags=["Payments"])
@limiter.limit("60/minute")
async def build_authorization(
    request: Request,
    body: BuildAuthorizationRequest,
    hub: Hub = Depends(get_hub),
):
    """
    Build an unsigned ERC-3009 authorization and the typed data a wallet must sign
    """
    authorization = hub.codec.build_authorization(
        from_address=body.from_address,
        to=body.to,
        amount=body.amount,
        network_id=body.network,
    )
    typed_data = hub.codec.typed_data_for(authorization, body.network)

    # Decimal strings for uint256 fields in JSON
    wire = hub.codec.authorization_wire_form(authorization)
    typed_data["message"] = wire

    network = hub.registry.resolve(body.network)
    return BuildAuthorizationResponse(
        network_id=network.network_id,
        chain_id=network.chain_id,
        authorization=wire,
        typed_data=typed_data,
    )
