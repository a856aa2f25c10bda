"""
Integration tests for the HTTP API
The hub runs on an in-memory store with the ChainClient double from conftest
"""

import asyncio

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

from facilitator_hub.api.dependencies import limiter
from facilitator_hub.api.server import create_app, status_code_for
from facilitator_hub.errors import (
    ChainUnavailable,
    ConfirmationTimeout,
    FacilitatorNotFound,
    InvalidAmount,
    SettlementFailed,
    SubmissionUnknown,
    Unauthorized,
)
from facilitator_hub.hub import build_hub
from facilitator_hub.models import FacilitatorStatus
from facilitator_hub.payments.models import PaymentPayload
from facilitator_hub.storage import MemoryStore

from tests.factories import (
    FACILITATOR_KEY,
    MERCHANT_ADDRESS,
    OWNER_ADDRESS,
    OWNER_PASSWORD,
    FacilitatorRecordFactory,
    make_receipt,
    persist,
)


@pytest.fixture
def hub(hub_config, chain_pool):
    return build_hub(hub_config, store=MemoryStore(), chains=chain_pool)


@pytest.fixture
def client(hub):
    limiter.reset()
    with TestClient(create_app(hub=hub)) as test_client:
        yield test_client


def seed(hub, **overrides):
    return asyncio.run(persist(hub.store, FacilitatorRecordFactory(**overrides)))


def signed_payload(hub, payer, network="base-sepolia", amount="2.50"):
    auth = hub.codec.build_authorization(payer.address, MERCHANT_ADDRESS, amount, network)
    signed = asyncio.run(hub.codec.sign(auth, network, payer))
    return hub.codec.to_x402_payload(signed, network).model_dump()


class TestGeneralEndpoints:

    def test_health_check(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "base-sepolia" in data["networks"]

    def test_list_networks(self, client: TestClient):
        response = client.get("/api/v1/networks")
        assert response.status_code == 200
        networks = {n["network_id"]: n for n in response.json()["networks"]}
        assert set(networks) == {"avalanche-fuji", "ethereum-sepolia", "base-sepolia", "polygon-amoy"}
        assert networks["avalanche-fuji"]["domain"]["name"] == "USD Coin"
        assert networks["polygon-amoy"]["domain"]["chainId"] == 80002

    def test_build_authorization(self, client: TestClient, hub, payer):
        response = client.post("/api/v1/authorizations", json={
            "from": payer.address,
            "to": MERCHANT_ADDRESS,
            "amount": "2.50",
            "network": "base-sepolia",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["chain_id"] == 84532
        assert data["authorization"]["value"] == "2500000"
        assert data["typed_data"]["message"] == data["authorization"]
        assert data["typed_data"]["domain"]["verifyingContract"] == hub.registry.resolve("base-sepolia").token_address
        assert data["typed_data"]["primaryType"] == "TransferWithAuthorization"

    def test_build_authorization_rejects_bad_input(self, client: TestClient, payer):
        response = client.post("/api/v1/authorizations", json={
            "from": payer.address,
            "to": MERCHANT_ADDRESS,
            "amount": "1.0000001",
            "network": "base-sepolia",
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_AMOUNT"

        response = client.post("/api/v1/authorizations", json={
            "from": payer.address,
            "to": MERCHANT_ADDRESS,
            "amount": "1",
            "network": "base-mainnet",
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UNKNOWN_NETWORK"


class TestFacilitatorEndpoints:

    def test_create_facilitator(self, client: TestClient):
        response = client.post("/api/v1/facilitators", json={
            "name": "Base Relay",
            "paymentRecipient": MERCHANT_ADDRESS,
            "createdBy": OWNER_ADDRESS,
            "network": "base-sepolia",
            "password": OWNER_PASSWORD,
        })
        assert response.status_code == 201
        facilitator = response.json()["facilitator"]
        assert facilitator["id"].startswith("fac_")
        assert facilitator["status"] == "needs_funding"
        assert facilitator["chain_id"] == 84532
        assert "encrypted_private_key" not in facilitator
        assert "system_encrypted_key" not in facilitator

    def test_create_requires_registration_payment(self, hub_config, chain_pool):
        recipient = "0x" + "44" * 20
        config = hub_config.model_copy(update={"payment_recipient": recipient, "registration_fee": "1"})
        paying_hub = build_hub(config, store=MemoryStore(), chains=chain_pool)
        body = {
            "name": "Base Relay",
            "paymentRecipient": MERCHANT_ADDRESS,
            "createdBy": OWNER_ADDRESS,
            "network": "base-sepolia",
            "password": OWNER_PASSWORD,
        }
        token = paying_hub.registry.resolve("base-sepolia").token_address
        chain = chain_pool.for_network("base-sepolia")

        limiter.reset()
        with TestClient(create_app(hub=paying_hub)) as test_client:
            response = test_client.post("/api/v1/facilitators", json=body)
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "PAYMENT_PROOF_REJECTED"

            # Unknown to the node
            response = test_client.post("/api/v1/facilitators", json={**body, "registrationTxHash": "0x" + "aa" * 32})
            assert response.status_code == 400

            chain.get_receipt.return_value = make_receipt("0x" + "aa" * 32, token, OWNER_ADDRESS, recipient, 1_000_000)
            response = test_client.post("/api/v1/facilitators", json={**body, "registrationTxHash": "0x" + "aa" * 32})
            assert response.status_code == 201
            assert response.json()["facilitator"]["network_id"] == "base-sepolia"

    def test_create_facilitator_validation(self, client: TestClient):
        response = client.post("/api/v1/facilitators", json={
            "name": "ab",
            "paymentRecipient": MERCHANT_ADDRESS,
            "createdBy": OWNER_ADDRESS,
            "network": "base-sepolia",
            "password": OWNER_PASSWORD,
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

        response = client.post("/api/v1/facilitators", json={"name": "Base Relay"})
        assert response.status_code == 422

    def test_create_is_rate_limited(self, client: TestClient):
        body = {
            "name": "ab",
            "paymentRecipient": MERCHANT_ADDRESS,
            "createdBy": OWNER_ADDRESS,
            "network": "base-sepolia",
            "password": OWNER_PASSWORD,
        }
        statuses = [client.post("/api/v1/facilitators", json=body).status_code for _ in range(11)]
        assert statuses[:10] == [400] * 10
        assert statuses[10] == 429

    def test_create_from_existing(self, client: TestClient, hub):
        existing = seed(hub)

        response = client.post("/api/v1/facilitators/from-existing", json={
            "name": "Amoy Relay",
            "paymentRecipient": MERCHANT_ADDRESS,
            "createdBy": OWNER_ADDRESS,
            "network": "polygon-amoy",
            "password": OWNER_PASSWORD,
        })
        assert response.status_code == 201
        facilitator = response.json()["facilitator"]
        assert facilitator["wallet_address"] == existing.wallet_address
        assert facilitator["network_id"] == "polygon-amoy"

        response = client.post("/api/v1/facilitators/from-existing", json={
            "name": "Fuji Relay",
            "paymentRecipient": MERCHANT_ADDRESS,
            "createdBy": OWNER_ADDRESS,
            "network": "avalanche-fuji",
            "password": "wrong",
        })
        assert response.status_code == 403

    def test_list_reconciles_by_default(self, client: TestClient, hub):
        record = seed(hub, status=FacilitatorStatus.NEEDS_FUNDING)
        seed(hub, network_id="polygon-amoy", chain_id=80002)

        response = client.get("/api/v1/facilitators", params={"network": "base-sepolia"})
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        [facilitator] = data["facilitators"]
        assert facilitator["id"] == record.id
        assert facilitator["status"] == "active"
        assert facilitator["gas_balance"] == "1"

    def test_list_without_reconcile(self, client: TestClient, hub, chain_pool):
        seed(hub, status=FacilitatorStatus.NEEDS_FUNDING)

        response = client.get("/api/v1/facilitators", params={"reconcile": "false"})
        assert response.status_code == 200
        [facilitator] = response.json()["facilitators"]
        assert facilitator["status"] == "needs_funding"
        assert facilitator["gas_balance"] is None
        chain_pool.for_network("base-sepolia").get_balance.assert_not_awaited()

    def test_list_by_chain_id(self, client: TestClient, hub):
        amoy = seed(hub, network_id="polygon-amoy", chain_id=80002)
        seed(hub)

        response = client.get("/api/v1/facilitators", params={"chainId": 80002})
        assert [f["id"] for f in response.json()["facilitators"]] == [amoy.id]

        response = client.get("/api/v1/facilitators", params={"chainId": 1})
        assert response.status_code == 400

    def test_random_facilitator(self, client: TestClient, hub):
        response = client.get("/api/v1/facilitators/random", params={"network": "base-sepolia"})
        assert response.status_code == 404

        record = seed(hub)
        response = client.get("/api/v1/facilitators/random", params={"network": "base-sepolia"})
        assert response.status_code == 200
        assert response.json()["id"] == record.id

    def test_balance(self, client: TestClient):
        response = client.get("/api/v1/facilitators/balance", params={
            "address": MERCHANT_ADDRESS,
            "network": "avalanche-fuji",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["balance_wei"] == str(10 ** 18)
        assert data["native_symbol"] == "AVAX"
        assert data["is_funded"] is True

    def test_check_facilitator(self, client: TestClient, hub, chain_pool):
        record = seed(hub, status=FacilitatorStatus.ACTIVE)
        chain_pool.for_network("base-sepolia").get_balance.return_value = 0

        response = client.post(f"/api/v1/facilitators/{record.id}/check")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "needs_funding"
        assert data["previous_status"] == "active"
        assert data["status_changed"] is True

    def test_delete_requires_owner(self, client: TestClient, hub):
        record = seed(hub)

        response = client.delete(f"/api/v1/facilitators/{record.id}", params={"caller": MERCHANT_ADDRESS})
        assert response.status_code == 403

        response = client.delete(f"/api/v1/facilitators/{record.id}", params={"caller": OWNER_ADDRESS})
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Facilitator deleted successfully"}

        response = client.delete(f"/api/v1/facilitators/{record.id}", params={"caller": OWNER_ADDRESS})
        assert response.status_code == 404


class TestSettlementEndpoints:

    def test_settle(self, client: TestClient, hub, payer):
        record = seed(hub)

        response = client.post("/api/v1/x402/settle", json={
            "facilitatorId": record.id,
            "paymentPayload": signed_payload(hub, payer),
        })
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["network_id"] == "base-sepolia"
        assert data["receipt"]["value"] == "2500000"
        assert data["receipt"]["amount_transferred"] == "2500000"
        assert data["explorer_url"].endswith(data["tx_hash"])

    def test_settle_network_mismatch(self, client: TestClient, hub, payer):
        record = seed(hub)

        response = client.post("/api/v1/x402/settle", json={
            "facilitatorId": record.id,
            "paymentPayload": signed_payload(hub, payer, network="polygon-amoy"),
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NETWORK_MISMATCH"

    def test_settle_unknown_facilitator(self, client: TestClient, hub, payer):
        response = client.post("/api/v1/x402/settle", json={
            "facilitatorId": "fac_missing",
            "paymentPayload": signed_payload(hub, payer),
        })
        assert response.status_code == 404

    def test_settle_malformed_payload(self, client: TestClient, hub):
        record = seed(hub)

        response = client.post("/api/v1/x402/settle", json={
            "facilitatorId": record.id,
            "paymentPayload": {"payload": {"signature": "0x00"}},
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_settle_chain_errors(self, client: TestClient, hub, payer, chain_pool):
        record = seed(hub)
        chain = chain_pool.for_network("base-sepolia")

        chain.authorization_used.side_effect = ChainUnavailable("node down")
        response = client.post("/api/v1/x402/settle", json={
            "facilitatorId": record.id,
            "paymentPayload": signed_payload(hub, payer),
        })
        assert response.status_code == 502
        assert response.json()["error"]["retryable"] is True

        chain.authorization_used.side_effect = None

        async def never_mined(tx_hash, timeout=None):
            raise ConfirmationTimeout(tx_hash, timeout)

        chain.wait_for_receipt.side_effect = never_mined
        response = client.post("/api/v1/x402/settle", json={
            "facilitatorId": record.id,
            "paymentPayload": signed_payload(hub, payer),
        })
        assert response.status_code == 504
        assert response.json()["error"]["details"]["tx_hash"].startswith("0x")

    def test_settle_batch_partial(self, client: TestClient, hub, payer, chain_pool):
        record = seed(hub)
        payloads = [signed_payload(hub, payer, amount=a)["payload"] for a in ("1", "2")]
        used_nonce = payloads[1]["authorization"]["nonce"]
        chain_pool.for_network("base-sepolia").authorization_used.side_effect = (
            lambda token, authorizer, nonce: nonce == used_nonce
        )

        response = client.post("/api/v1/x402/settle-batch", json={
            "facilitatorId": record.id,
            "network": "base-sepolia",
            "authorizations": payloads,
        })
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert len(data["tx_hashes"]) == 1
        assert data["failure"]["index"] == 1
        assert data["failure"]["code"] == "SETTLEMENT_FAILED"

    def test_supported_kinds(self, client: TestClient):
        response = client.get("/api/v1/x402/supported")
        assert response.status_code == 200
        kinds = response.json()
        assert {kind["network"] for kind in kinds} == {
            "avalanche-fuji", "ethereum-sepolia", "base-sepolia", "polygon-amoy",
        }
        assert all(kind["scheme"] == "exact" and kind["x402Version"] == 1 for kind in kinds)

    def test_payment_requirements(self, client: TestClient, hub):
        response = client.post("/api/v1/x402/requirements", json={
            "amount": "1",
            "network": "ethereum-sepolia",
            "resource": "https://api.example/report",
            "payTo": MERCHANT_ADDRESS,
        })
        assert response.status_code == 200
        data = response.json()
        assert data["maxAmountRequired"] == "1000000"
        assert data["payTo"] == MERCHANT_ADDRESS
        assert data["asset"] == hub.registry.resolve("ethereum-sepolia").token_address

        # No payTo and no PAYMENT_RECIPIENT
        response = client.post("/api/v1/x402/requirements", json={
            "amount": "1", "network": "ethereum-sepolia", "resource": "/report",
        })
        assert response.status_code == 400

    def test_settle_default_from_payment_header(self, hub_config, chain_pool, payer):
        config = hub_config.model_copy(update={"default_facilitator_private_key_base_sepolia": FACILITATOR_KEY})
        default_hub = build_hub(config, store=MemoryStore(), chains=chain_pool)
        payload = signed_payload(default_hub, payer)
        header = default_hub.codec.encode_payment_header(PaymentPayload.model_validate(payload))

        limiter.reset()
        with TestClient(create_app(hub=default_hub)) as test_client:
            response = test_client.post("/api/v1/x402/settle-default", json={}, headers={"X-PAYMENT": header})

        assert response.status_code == 200
        data = response.json()
        assert data["facilitator_id"] == "default"
        assert data["network_id"] == "base-sepolia"
        assert data["facilitator_wallet"] == Account.from_key(FACILITATOR_KEY).address

    def test_settle_default_requires_configuration(self, client: TestClient, hub, payer):
        response = client.post("/api/v1/x402/settle-default", json={
            "paymentPayload": signed_payload(hub, payer),
        })
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"

        response = client.post("/api/v1/x402/settle-default", json={"network": "base-sepolia"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing paymentPayload"


@pytest.mark.parametrize("error,expected", [
    (FacilitatorNotFound("fac_x"), 404),
    (Unauthorized("no"), 403),
    (InvalidAmount("bad"), 400),
    (SettlementFailed("reverted"), 400),
    (ChainUnavailable("down"), 502),
    (ConfirmationTimeout("0xabc", 5), 504),
    (SubmissionUnknown("0xabc", "read timeout"), 504),
])
def test_status_code_mapping(error, expected):
    assert status_code_for(error) == expected
