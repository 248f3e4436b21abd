from datetime import datetime, timedelta

import pytest

from modules.bom.enums.bom_enums import ComponentType, LedgerStatus
from modules.bom.exceptions.bom_exceptions import CommerceAPIError, DeductionExecutionError
from modules.bom.models.ledger_models import BOMDeductionLedger
from modules.bom.schemas.bom_consumption_schemas import ComponentDeduction
from modules.bom.services.recovery_service import BOMRecoveryService
from modules.bom.tests.helpers import ACCOUNT_ID, make_order


@pytest.fixture
def recovery(service):
    return BOMRecoveryService(service)


def crashed_consumption(service, catalog, store, order_id, created_at=None, pending=True):
    """State left behind by a worker that died right after deducting chocolate"""
    deduction = ComponentDeduction(
        component_type=ComponentType.COMMERCE_PRODUCT,
        component_id=catalog.chocolate.id,
        component_name="Chocolate",
        woo_id=201,
        quantity_deducted=6,
        previous_stock=10,
        new_stock=4,
    )
    store.products[201]["stock_quantity"] = 4
    catalog.chocolate.stock_quantity = 4
    entry = service.ledger.record_execution(ACCOUNT_ID, order_id, deduction)
    if created_at is not None:
        entry.created_at = created_at
        service.db.commit()
    if pending:
        service.markers.track_pending(ACCOUNT_ID, order_id, [deduction])
    return entry


def status_of(db_session, entry_id):
    db_session.expire_all()
    return db_session.get(BOMDeductionLedger, entry_id).status


class TestPendingMarkerPhase:

    @pytest.mark.asyncio
    async def test_rolls_back_crashed_order(self, recovery, service, catalog, store, fake_redis, db_session):
        entry = crashed_consumption(service, catalog, store, 40)

        report = await recovery.recover_stalled_deductions()

        assert report.pending_markers_scanned == 1
        assert report.orders_rolled_back == 1
        assert store.stock(201) == 10
        assert status_of(db_session, entry.id) == LedgerStatus.ROLLED_BACK
        assert "bom:pending:acct-1:40" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_consumed_marker_means_stale_pending(self, recovery, service, catalog, store, fake_redis, db_session):
        entry = crashed_consumption(service, catalog, store, 41)
        service.markers.mark_consumed(ACCOUNT_ID, 41)

        report = await recovery.recover_stalled_deductions()

        assert report.stale_markers_cleared == 1
        assert report.orders_rolled_back == 0
        assert store.stock(201) == 4
        assert status_of(db_session, entry.id) == LedgerStatus.EXECUTED
        assert "bom:pending:acct-1:41" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_locked_order_is_left_alone(self, recovery, service, catalog, store, fake_redis, db_session):
        entry = crashed_consumption(service, catalog, store, 42)
        fake_redis.set("bom:lock:order:acct-1:42", "live-worker")

        report = await recovery.recover_stalled_deductions()

        assert report.orders_skipped_locked == 1
        assert store.stock(201) == 4
        assert status_of(db_session, entry.id) == LedgerStatus.EXECUTED
        assert "bom:pending:acct-1:42" in fake_redis.data

    @pytest.mark.asyncio
    async def test_failed_restore_keeps_marker_for_next_sweep(
        self, recovery, service, catalog, store, fake_redis, db_session
    ):
        entry = crashed_consumption(service, catalog, store, 43)
        store.read_errors[201] = CommerceAPIError("Service unavailable", status_code=503)

        first = await recovery.recover_stalled_deductions()

        assert len(first.errors) == 1
        assert status_of(db_session, entry.id) == LedgerStatus.EXECUTED
        assert "bom:pending:acct-1:43" in fake_redis.data

        del store.read_errors[201]
        await recovery.recover_stalled_deductions()

        assert store.stock(201) == 10
        assert status_of(db_session, entry.id) == LedgerStatus.ROLLED_BACK
        assert "bom:pending:acct-1:43" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_converges_after_failed_inline_rollback(
        self, recovery, service, catalog, store, fake_redis, db_session
    ):
        store.update_errors[202] = CommerceAPIError("Invalid stock", status_code=400)
        store.read_errors[201] = CommerceAPIError("Service unavailable", status_code=503)
        with pytest.raises(DeductionExecutionError):
            await service.consume_order_components(ACCOUNT_ID, make_order(44, items=[(110, 0, 3)]))
        del store.read_errors[201]

        report = await recovery.recover_stalled_deductions()

        assert report.orders_rolled_back == 1
        assert store.stock(201) == 10
        assert store.stock(202) == 5
        assert not service.ledger.has_in_flight(ACCOUNT_ID, 44)

    @pytest.mark.asyncio
    async def test_resynced_failed_order_is_rolled_back_not_finalized(
        self, recovery, service, catalog, store, fake_redis, db_session
    ):
        store.update_errors[202] = CommerceAPIError("Invalid stock", status_code=400)
        store.read_errors[201] = CommerceAPIError("Service unavailable", status_code=503)
        with pytest.raises(DeductionExecutionError):
            await service.consume_order_components(ACCOUNT_ID, make_order(77, items=[(110, 0, 1)]))
        assert store.stock(201) == 8

        # The order-sync job sees the order again before the sweep runs
        retry = await service.consume_order_components(ACCOUNT_ID, make_order(77, items=[(110, 0, 1)]))
        assert retry.skipped
        del store.read_errors[201]

        report = await recovery.recover_stalled_deductions(now=datetime.utcnow() + timedelta(hours=1))

        assert report.stale_markers_cleared == 0
        assert report.orders_finalized == 0
        assert report.orders_rolled_back == 1
        assert store.stock(201) == 10
        assert [e.status for e in service.ledger.get_entries(ACCOUNT_ID, 77)] == [LedgerStatus.ROLLED_BACK]
        assert "bom:consumed:acct-1:77" not in fake_redis.data
        assert "bom:pending:acct-1:77" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_consumed_marker_next_to_rolled_back_entries_is_ignored(
        self, recovery, service, catalog, store, fake_redis, db_session
    ):
        # Ribbon restores locally, both chocolate restores fail
        store.update_errors[202] = CommerceAPIError("Invalid stock", status_code=400)
        store.read_errors[201] = CommerceAPIError("Service unavailable", status_code=503)
        with pytest.raises(DeductionExecutionError):
            await service.consume_order_components(
                ACCOUNT_ID, make_order(78, items=[(100, 0, 1), (110, 0, 1)])
            )
        service.markers.mark_consumed(ACCOUNT_ID, 78)
        del store.read_errors[201]

        report = await recovery.recover_stalled_deductions()

        assert report.stale_markers_cleared == 0
        assert report.orders_rolled_back == 1
        assert store.stock(201) == 10
        statuses = [e.status for e in service.ledger.get_entries(ACCOUNT_ID, 78)]
        assert statuses == [LedgerStatus.ROLLED_BACK] * 3
        assert "bom:consumed:acct-1:78" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_sweep_scoped_to_one_account(self, recovery, service, catalog, store, fake_redis, db_session):
        entry = crashed_consumption(service, catalog, store, 45)
        other = ComponentDeduction(
            component_type=ComponentType.INTERNAL_PRODUCT,
            component_id="foreign-ribbon",
            component_name="Ribbon",
            quantity_deducted=1,
            previous_stock=5,
            new_stock=4,
        )
        foreign = service.ledger.record_execution("acct-2", 46, other)
        service.markers.track_pending("acct-2", 46, [other])

        report = await recovery.recover_stalled_deductions(
            now=datetime.utcnow() + timedelta(hours=1), account_id=ACCOUNT_ID
        )

        assert report.pending_markers_scanned == 1
        assert report.orders_rolled_back == 1
        assert status_of(db_session, entry.id) == LedgerStatus.ROLLED_BACK
        assert status_of(db_session, foreign.id) == LedgerStatus.EXECUTED
        assert "bom:pending:acct-2:46" in fake_redis.data

    @pytest.mark.asyncio
    async def test_malformed_marker_is_ignored(self, recovery, fake_redis):
        fake_redis.set("bom:pending:garbage", "[]")

        report = await recovery.recover_stalled_deductions()

        assert report.pending_markers_scanned == 0
        assert report.errors == []


class TestStaleLedgerPhase:

    @pytest.mark.asyncio
    async def test_rolls_back_stale_entries_without_marker(self, recovery, service, catalog, store, db_session):
        entry = crashed_consumption(
            service, catalog, store, 50,
            created_at=datetime.utcnow() - timedelta(hours=1), pending=False
        )

        report = await recovery.recover_stalled_deductions()

        assert report.pending_markers_scanned == 0
        assert report.orders_rolled_back == 1
        assert store.stock(201) == 10
        assert status_of(db_session, entry.id) == LedgerStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_finalizes_stale_entries_of_consumed_order(self, recovery, service, catalog, store, db_session):
        entry = crashed_consumption(
            service, catalog, store, 51,
            created_at=datetime.utcnow() - timedelta(hours=1), pending=False
        )
        service.markers.mark_consumed(ACCOUNT_ID, 51)

        report = await recovery.recover_stalled_deductions()

        assert report.orders_finalized == 1
        assert store.stock(201) == 4
        assert status_of(db_session, entry.id) == LedgerStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_recent_entries_are_not_touched(self, recovery, service, catalog, store, db_session):
        entry = crashed_consumption(service, catalog, store, 52, pending=False)

        report = await recovery.recover_stalled_deductions()

        assert report.orders_rolled_back == 0
        assert status_of(db_session, entry.id) == LedgerStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_one_failing_order_does_not_block_others(self, recovery, service, catalog, store, db_session):
        old = datetime.utcnow() - timedelta(hours=1)
        broken = crashed_consumption(service, catalog, store, 53, created_at=old, pending=False)
        # Second crash against an internal component which never touches the platform
        ribbon = ComponentDeduction(
            component_type=ComponentType.INTERNAL_PRODUCT,
            component_id=catalog.ribbon.id,
            component_name="Ribbon",
            quantity_deducted=5,
            previous_stock=50,
            new_stock=45,
        )
        catalog.ribbon.stock_quantity = 45
        healthy = service.ledger.record_execution(ACCOUNT_ID, 54, ribbon)
        healthy.created_at = old
        db_session.commit()
        store.read_errors[201] = CommerceAPIError("Service unavailable", status_code=503)

        report = await recovery.recover_stalled_deductions()

        assert status_of(db_session, broken.id) == LedgerStatus.EXECUTED
        assert status_of(db_session, healthy.id) == LedgerStatus.ROLLED_BACK
        db_session.expire_all()
        assert catalog.ribbon.stock_quantity == 50
        assert len(report.errors) == 1
