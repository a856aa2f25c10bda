"""
Funding Monitor
Reconciles facilitator status against live native balances
"""

import asyncio
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer
from web3 import Web3
import structlog

from facilitator_hub.audit import AuditEvent, AuditEventType, AuditLog
from facilitator_hub.chain import ChainClientPool
from facilitator_hub.config import HubConfig
from facilitator_hub.errors import InvalidAddress
from facilitator_hub.facilitators.directory import FacilitatorDirectory
from facilitator_hub.models import FacilitatorStatus, PublicFacilitatorInfo, is_hex_address
from facilitator_hub.networks import NetworkDescriptor, NetworkRegistry

logger = structlog.get_logger()


def format_native(balance_wei: int) -> str:
    """Wei as a plain decimal string of whole native units"""
    return format(Decimal(Web3.from_wei(balance_wei, "ether")).normalize(), "f")


class BalanceReport(BaseModel):
    """Native balance of one address on one network"""
    address: str
    network_id: str
    chain_id: int
    native_symbol: str
    balance_wei: int
    balance: str = Field(description="Balance in whole native units")
    is_funded: bool = Field(description="Above the deactivation threshold")
    recommended_balance: str
    meets_recommended: bool = Field(description="Informational only, never gates status")

    @field_serializer("balance_wei")
    def serialize_wei(self, v: int):
        return str(v)


class FundingReport(BalanceReport):
    """Balance report plus the status reconciliation applied to a facilitator"""
    facilitator_id: str
    status: FacilitatorStatus
    previous_status: FacilitatorStatus
    status_changed: bool = False


class FundingMonitor:
    """
    Two-threshold funding policy:
    - balance <= deactivation threshold: needs_funding
    - otherwise: active
    The network's recommended balance is reported for guidance only, so a
    facilitator with enough for a few more transactions stays routable.
    """

    def __init__(
        self,
        directory: FacilitatorDirectory,
        registry: NetworkRegistry,
        chains: ChainClientPool,
        config: HubConfig,
        audit: Optional[AuditLog] = None,
    ):
        self.directory = directory
        self.registry = registry
        self.chains = chains
        self.deactivation_threshold = config.deactivation_threshold_wei
        self.audit = audit or AuditLog()

    def _report_fields(self, address: str, network: NetworkDescriptor, balance_wei: int) -> dict:
        recommended_wei = Web3.to_wei(network.recommended_balance, "ether")
        return dict(
            address=address,
            network_id=network.network_id,
            chain_id=network.chain_id,
            native_symbol=network.native_symbol,
            balance_wei=balance_wei,
            balance=format_native(balance_wei),
            is_funded=balance_wei > self.deactivation_threshold,
            recommended_balance=format(Decimal(network.recommended_balance), "f"),
            meets_recommended=balance_wei >= recommended_wei,
        )

    async def check_balance(self, address: str, network_id: str) -> BalanceReport:
        """Read-only balance check for any address"""
        if not is_hex_address(address):
            raise InvalidAddress(f"Invalid address: {address!r}")
        network = self.registry.resolve(network_id)

        balance_wei = await self.chains.for_network(network_id).get_balance(address)
        return BalanceReport(**self._report_fields(address, network, balance_wei))

    async def check_and_reconcile(self, facilitator_id: str) -> FundingReport:
        """
        Read the facilitator's live balance and persist the derived status
        when it differs from the stored one. An owner-set inactive status is
        reported but left alone.
        """
        record = await self.directory.require(facilitator_id)
        network = self.registry.resolve(record.network_id)

        balance_wei = await self.chains.for_network(network.network_id).get_balance(record.wallet_address)
        fields = self._report_fields(record.wallet_address, network, balance_wei)

        previous = record.status
        if previous == FacilitatorStatus.INACTIVE:
            status = previous
        elif fields["is_funded"]:
            status = FacilitatorStatus.ACTIVE
        else:
            status = FacilitatorStatus.NEEDS_FUNDING

        changed = status != previous
        if changed:
            await self.directory.set_status(facilitator_id, status, observed_balance=balance_wei)
            if status == FacilitatorStatus.ACTIVE:
                await self.audit.append(AuditEvent(
                    event_type=AuditEventType.FACILITATOR_ACTIVATED,
                    facilitator_id=record.id,
                    facilitator_name=record.name,
                    chain_id=network.chain_id,
                    chain_name=network.display_name,
                    details={"balance": fields["balance"], "native_symbol": network.native_symbol},
                ))

        logger.info(
            "facilitator_funding_checked",
            facilitator_id=facilitator_id,
            network=network.network_id,
            balance=fields["balance"],
            status=status.value,
            status_changed=changed,
        )
        return FundingReport(
            **fields,
            facilitator_id=facilitator_id,
            status=status,
            previous_status=previous,
            status_changed=changed,
        )

    async def reconcile_all(self, network_filter: Optional[str] = None) -> List[PublicFacilitatorInfo]:
        """
        Reconcile every listed facilitator concurrently.
        A record whose check fails keeps its previous view; the others are unaffected.
        """
        facilitators = await self.directory.list_active(network_filter=network_filter)
        return list(await asyncio.gather(*(self._reconcile_view(info) for info in facilitators)))

    async def _reconcile_view(self, info: PublicFacilitatorInfo) -> PublicFacilitatorInfo:
        try:
            report = await self.check_and_reconcile(info.id)
        except Exception as e:
            logger.warning(
                "facilitator_funding_check_failed",
                facilitator_id=info.id,
                network=info.network_id,
                error=str(e),
            )
            return info
        return info.model_copy(update={"status": report.status, "gas_balance": report.balance})
