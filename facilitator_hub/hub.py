"""
Composition root: builds every component from one HubConfig
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from facilitator_hub.audit import AuditLog, StoreAuditSink
from facilitator_hub.chain import ChainClientPool
from facilitator_hub.config import HubConfig
from facilitator_hub.facilitators import (
    FacilitatorDirectory,
    FundingMonitor,
    PaymentProofVerifier,
    RegistrationPaymentVerifier,
)
from facilitator_hub.networks import NetworkRegistry, build_default_registry
from facilitator_hub.payments.authorization import AuthorizationCodec
from facilitator_hub.payments.settlement import SettlementEngine
from facilitator_hub.storage import KeyValueStore, create_store

logger = structlog.get_logger()


@dataclass
class Hub:
    config: HubConfig
    registry: NetworkRegistry
    store: KeyValueStore
    audit: AuditLog
    codec: AuthorizationCodec
    chains: ChainClientPool
    directory: FacilitatorDirectory
    monitor: FundingMonitor
    engine: SettlementEngine

    async def close(self) -> None:
        await self.store.close()


def build_hub(
    config: HubConfig,
    store: Optional[KeyValueStore] = None,
    chains: Optional[ChainClientPool] = None,
    payment_verifier: Optional[PaymentProofVerifier] = None,
) -> Hub:
    """Wire components together; store and chain access can be swapped for tests"""
    registry = build_default_registry(config)
    store = store or create_store(config.upstash_redis_rest_url, config.upstash_redis_rest_token)
    chains = chains or ChainClientPool(registry)
    audit = AuditLog(sinks=[StoreAuditSink(store)])

    if payment_verifier is None and config.payment_recipient:
        payment_verifier = RegistrationPaymentVerifier(
            registry, chains, config.payment_recipient, config.registration_fee
        )
    if payment_verifier is None:
        logger.warning("registration_payment_unchecked", reason="PAYMENT_RECIPIENT not set")

    directory = FacilitatorDirectory(store, registry, config, audit=audit, payment_verifier=payment_verifier)
    hub = Hub(
        config=config,
        registry=registry,
        store=store,
        audit=audit,
        codec=AuthorizationCodec(
            registry,
            timeout_seconds=config.authorization_timeout_seconds,
            clock_skew_seconds=config.clock_skew_seconds,
        ),
        chains=chains,
        directory=directory,
        monitor=FundingMonitor(directory, registry, chains, config, audit=audit),
        engine=SettlementEngine(directory, registry, chains, config, audit=audit),
    )
    logger.info("hub_built", networks=registry.network_ids())
    return hub
