"""
Tests for the funding monitor
"""

from unittest.mock import AsyncMock

import pytest

from facilitator_hub.audit import AuditEventType
from facilitator_hub.errors import ChainUnavailable, InvalidAddress, UnknownNetwork
from facilitator_hub.facilitators.monitor import format_native
from facilitator_hub.models import FacilitatorStatus

from tests.factories import MERCHANT_ADDRESS, FacilitatorRecordFactory, persist

THRESHOLD = 10 ** 14


def test_format_native():
    assert format_native(0) == "0"
    assert format_native(10 ** 18) == "1"
    assert format_native(THRESHOLD) == "0.0001"
    assert format_native(1_500_000_000_000_000_000) == "1.5"


class TestCheckAndReconcile:

    @pytest.mark.asyncio
    async def test_balance_at_threshold_needs_funding(self, monitor, directory, store, chain_pool):
        record = await persist(store, FacilitatorRecordFactory(status=FacilitatorStatus.ACTIVE))
        chain_pool.for_network("base-sepolia").get_balance.return_value = THRESHOLD

        report = await monitor.check_and_reconcile(record.id)

        assert report.is_funded is False
        assert report.status == FacilitatorStatus.NEEDS_FUNDING
        assert report.previous_status == FacilitatorStatus.ACTIVE
        assert report.status_changed is True
        assert (await directory.get(record.id)).status == FacilitatorStatus.NEEDS_FUNDING

    @pytest.mark.asyncio
    async def test_balance_above_threshold_activates(self, monitor, directory, store, chain_pool, audit_sink):
        record = await persist(store, FacilitatorRecordFactory(status=FacilitatorStatus.NEEDS_FUNDING))
        chain_pool.for_network("base-sepolia").get_balance.return_value = THRESHOLD + 1

        report = await monitor.check_and_reconcile(record.id)

        assert report.status == FacilitatorStatus.ACTIVE
        assert report.meets_recommended is False
        assert (await directory.get(record.id)).status == FacilitatorStatus.ACTIVE

        [event] = audit_sink.events
        assert event.event_type == AuditEventType.FACILITATOR_ACTIVATED
        assert event.facilitator_id == record.id
        assert event.chain_id == 84532

    @pytest.mark.asyncio
    async def test_recommended_balance_is_informational(self, monitor, store, chain_pool):
        record = await persist(store, FacilitatorRecordFactory(status=FacilitatorStatus.NEEDS_FUNDING))
        chain_pool.for_network("base-sepolia").get_balance.return_value = 5 * 10 ** 16

        report = await monitor.check_and_reconcile(record.id)

        assert report.status == FacilitatorStatus.ACTIVE
        assert report.meets_recommended is True
        assert report.recommended_balance == "0.05"
        assert report.balance == "0.05"
        assert report.native_symbol == "ETH"

    @pytest.mark.asyncio
    async def test_unchanged_status_is_not_written(self, monitor, directory, store, audit_sink):
        record = await persist(store, FacilitatorRecordFactory(status=FacilitatorStatus.ACTIVE))
        directory.set_status = AsyncMock(wraps=directory.set_status)

        report = await monitor.check_and_reconcile(record.id)

        assert report.status == FacilitatorStatus.ACTIVE
        assert report.status_changed is False
        directory.set_status.assert_not_awaited()
        assert audit_sink.events == []

    @pytest.mark.asyncio
    async def test_owner_set_inactive_is_kept(self, monitor, directory, store):
        record = await persist(store, FacilitatorRecordFactory(status=FacilitatorStatus.INACTIVE))

        report = await monitor.check_and_reconcile(record.id)

        assert report.is_funded is True
        assert report.status == FacilitatorStatus.INACTIVE
        assert (await directory.get(record.id)).status == FacilitatorStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_reads_balance_on_the_record_network(self, monitor, store, chain_pool):
        record = await persist(store, FacilitatorRecordFactory(network_id="polygon-amoy", chain_id=80002))

        report = await monitor.check_and_reconcile(record.id)

        amoy = chain_pool.for_network("polygon-amoy")
        amoy.get_balance.assert_awaited_once_with(record.wallet_address)
        assert report.network_id == "polygon-amoy"
        assert report.native_symbol == "POL"

    @pytest.mark.asyncio
    async def test_rpc_failure_propagates(self, monitor, directory, store, chain_pool):
        record = await persist(store, FacilitatorRecordFactory(status=FacilitatorStatus.NEEDS_FUNDING))
        chain_pool.for_network("base-sepolia").get_balance.side_effect = ChainUnavailable("node down")

        with pytest.raises(ChainUnavailable):
            await monitor.check_and_reconcile(record.id)
        assert (await directory.get(record.id)).status == FacilitatorStatus.NEEDS_FUNDING


class TestReconcileAll:

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, monitor, store, chain_pool):
        healthy = await persist(store, FacilitatorRecordFactory(status=FacilitatorStatus.NEEDS_FUNDING))
        broken = await persist(store, FacilitatorRecordFactory(
            network_id="polygon-amoy",
            chain_id=80002,
            status=FacilitatorStatus.NEEDS_FUNDING,
        ))
        chain_pool.for_network("polygon-amoy").get_balance.side_effect = ChainUnavailable("node down")

        views = {view.id: view for view in await monitor.reconcile_all()}

        assert views[healthy.id].status == FacilitatorStatus.ACTIVE
        assert views[healthy.id].gas_balance == "1"
        assert views[broken.id].status == FacilitatorStatus.NEEDS_FUNDING
        assert views[broken.id].gas_balance is None

    @pytest.mark.asyncio
    async def test_network_filter(self, monitor, store, chain_pool):
        await persist(store, FacilitatorRecordFactory())
        amoy = await persist(store, FacilitatorRecordFactory(network_id="polygon-amoy", chain_id=80002))

        views = await monitor.reconcile_all(network_filter="polygon-amoy")

        assert [view.id for view in views] == [amoy.id]
        chain_pool.for_network("base-sepolia").get_balance.assert_not_awaited()


class TestCheckBalance:

    @pytest.mark.asyncio
    async def test_any_address(self, monitor, chain_pool):
        chain_pool.for_network("avalanche-fuji").get_balance.return_value = 2 * 10 ** 17

        report = await monitor.check_balance(MERCHANT_ADDRESS, "avalanche-fuji")

        assert report.balance == "0.2"
        assert report.is_funded is True
        assert report.meets_recommended is True
        assert report.model_dump()["balance_wei"] == str(2 * 10 ** 17)

    @pytest.mark.asyncio
    async def test_rejects_bad_input(self, monitor):
        with pytest.raises(InvalidAddress):
            await monitor.check_balance("0x1234", "avalanche-fuji")
        with pytest.raises(UnknownNetwork):
            await monitor.check_balance(MERCHANT_ADDRESS, "goerli")
