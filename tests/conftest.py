"""
Pytest configuration and shared fixtures
"""

import itertools
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from facilitator_hub.audit import AuditEvent, AuditLog
from facilitator_hub.chain import ChainClient, ChainClientPool
from facilitator_hub.config import HubConfig
from facilitator_hub.facilitators import FacilitatorDirectory, FundingMonitor
from facilitator_hub.networks import build_default_registry
from facilitator_hub.payments.authorization import AuthorizationCodec, LocalAccountSigner
from facilitator_hub.payments.settlement import SettlementEngine
from facilitator_hub.storage import MemoryStore

from tests.factories import MASTER_SECRET, PAYER_KEY, make_receipt

NOW = 1_700_000_000


class RecordingSink:
    """Audit sink that keeps events in memory"""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def __call__(self, event: AuditEvent) -> None:
        self.events.append(event)


def make_chain_client(network) -> MagicMock:
    """
    ChainClient double: funded wallet, unused nonces, and a confirmed receipt
    (with a matching Transfer log) for every submitted authorization.
    """
    client = MagicMock(spec=ChainClient)
    client.network = network
    client.get_balance = AsyncMock(return_value=10 ** 18)
    client.authorization_used = AsyncMock(return_value=False)
    client.get_receipt = AsyncMock(return_value=None)

    counter = itertools.count(1)
    submitted = {}

    async def submit(account, token_address, authorization, v, r, s):
        tx_hash = "0x" + f"{next(counter):064x}"
        submitted[tx_hash] = (token_address, authorization)
        return tx_hash

    async def wait(tx_hash, timeout=None):
        token_address, authorization = submitted[tx_hash]
        return make_receipt(
            tx_hash,
            token_address,
            authorization.from_address,
            authorization.to,
            authorization.value,
        )

    client.submit_transfer_with_authorization = AsyncMock(side_effect=submit)
    client.wait_for_receipt = AsyncMock(side_effect=wait)
    client.transferred_amount = ChainClient.transferred_amount
    return client


@pytest.fixture
def hub_config() -> HubConfig:
    """Config isolated from the developer's environment and .env"""
    return HubConfig(
        _env_file=None,
        system_master_key=MASTER_SECRET,
        upstash_redis_rest_url="",
        upstash_redis_rest_token="",
        payment_recipient="",
        default_facilitator_private_key="",
    )


@pytest.fixture
def registry(hub_config):
    return build_default_registry(hub_config)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def audit_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def audit_log(audit_sink) -> AuditLog:
    return AuditLog(sinks=[audit_sink])


@pytest.fixture
def chain_pool(registry) -> ChainClientPool:
    return ChainClientPool(registry, factory=make_chain_client)


@pytest.fixture
def directory(store, registry, hub_config, audit_log) -> FacilitatorDirectory:
    return FacilitatorDirectory(store, registry, hub_config, audit=audit_log)


@pytest.fixture
def monitor(directory, registry, chain_pool, hub_config, audit_log) -> FundingMonitor:
    return FundingMonitor(directory, registry, chain_pool, hub_config, audit=audit_log)


@pytest.fixture
def engine(directory, registry, chain_pool, hub_config, audit_log) -> SettlementEngine:
    return SettlementEngine(directory, registry, chain_pool, hub_config, audit=audit_log, clock=lambda: NOW)


@pytest.fixture
def codec(registry) -> AuthorizationCodec:
    return AuthorizationCodec(registry, timeout_seconds=300, clock_skew_seconds=60, clock=lambda: NOW)


@pytest.fixture
def payer() -> LocalAccountSigner:
    return LocalAccountSigner(PAYER_KEY)
