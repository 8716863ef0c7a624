from decimal import Decimal

import pytest
import pytest_asyncio

from dispatch_hub.models.models import Manifest
from dispatch_hub.schemas.manifest_schema import ManifestCreate, OutcomeCreate
from dispatch_hub.schemas.status_schema import (
    CourierProviderCode,
    FulfillmentType,
    LedgerEntryType,
    ManifestOutcome,
    ManifestStatus,
    SettlementStatus,
)
from dispatch_hub.services import manifest_service, order_service, rider_ledger_service
from dispatch_hub.utils.exceptions import (
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)


@pytest_asyncio.fixture
async def collected(session, make_order, rider):
    """Rider holding Rs.500 of COD for one delivered order."""
    order = await make_order(unit_price=Decimal("500.00"))
    await rider_ledger_service.record_collection(session, rider.id, order.id, order.cod_due)
    return order


class TestLedgerEntries:
    @pytest.mark.asyncio
    async def test_collection_credits_rider(self, session, collected, rider):
        entries = await rider_ledger_service.ledger_history(session, rider.id)

        assert await rider_ledger_service.current_balance(session, rider.id) == Decimal("500.00")
        assert len(entries) == 1
        assert entries[0].entry_type == LedgerEntryType.COD_COLLECTION
        assert entries[0].balance_after == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_collection_recorded_once_per_order(self, session, collected, rider):
        again = await rider_ledger_service.record_collection(
            session, rider.id, collected.id, Decimal("500.00")
        )

        assert again.amount == Decimal("500.00")
        assert await rider_ledger_service.current_balance(session, rider.id) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_handover_cannot_exceed_balance(self, session, collected, rider, admin):
        rider_id = rider.id
        with pytest.raises(ValidationFailed):
            await rider_ledger_service.record_handover(session, rider_id, Decimal("600"), admin)

        assert await rider_ledger_service.current_balance(session, rider_id) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_balance_is_sum_of_entries(self, session, make_order, rider, admin):
        for price in ("300.00", "450.00"):
            order = await make_order(unit_price=Decimal(price))
            await rider_ledger_service.record_collection(session, rider.id, order.id, order.cod_due)
        await rider_ledger_service.record_handover(session, rider.id, Decimal("500.00"), admin)

        entries = await rider_ledger_service.ledger_history(session, rider.id)
        balance = await rider_ledger_service.current_balance(session, rider.id)
        assert sum(e.amount for e in entries) == balance == Decimal("250.00")
        assert max(entries, key=lambda e: e.balance_after).balance_after == Decimal("750.00")

    @pytest.mark.asyncio
    async def test_ledger_belongs_to_riders_only(self, session, operator):
        with pytest.raises(NotFound):
            await rider_ledger_service.ledger_history(session, operator.id)


class TestSettlement:
    @pytest.mark.asyncio
    async def test_clean_settlement_round(self, session, collected, rider, admin):
        await rider_ledger_service.record_handover(session, rider.id, Decimal("500.00"), admin)
        settlement = await rider_ledger_service.request_settlement(
            session, rider.id, Decimal("0"), rider
        )
        assert settlement.expected_amount == Decimal("0.00")
        assert not settlement.variance_flagged

        settlement = await rider_ledger_service.verify_settlement(
            session, settlement.id, Decimal("0"), admin
        )

        assert settlement.status == SettlementStatus.VERIFIED
        assert settlement.variance == Decimal("0.00")
        assert await rider_ledger_service.current_balance(session, rider.id) == Decimal("0.00")
        entries = await rider_ledger_service.ledger_history(session, rider.id)
        assert LedgerEntryType.SETTLEMENT_ADJUSTMENT not in {e.entry_type for e in entries}

    @pytest.mark.asyncio
    async def test_one_pending_settlement_per_rider(self, session, collected, rider):
        await rider_ledger_service.request_settlement(session, rider.id, Decimal("500"), rider)

        with pytest.raises(InvalidTransition):
            await rider_ledger_service.request_settlement(session, rider.id, Decimal("500"), rider)

    @pytest.mark.asyncio
    async def test_shortage_is_disputed_and_adjusted(self, session, collected, rider, admin):
        settlement = await rider_ledger_service.request_settlement(
            session, rider.id, Decimal("450"), rider
        )
        assert settlement.variance_flagged

        settlement = await rider_ledger_service.verify_settlement(
            session, settlement.id, Decimal("450"), admin, notes="Rs.50 short"
        )

        assert settlement.status == SettlementStatus.DISPUTED
        assert settlement.variance == Decimal("-50.00")
        assert settlement.verified_by == admin.id
        assert await rider_ledger_service.current_balance(session, rider.id) == Decimal("450.00")
        entries = await rider_ledger_service.ledger_history(session, rider.id)
        adjustments = [e for e in entries if e.entry_type == LedgerEntryType.SETTLEMENT_ADJUSTMENT]
        assert len(adjustments) == 1
        assert adjustments[0].settlement_id == settlement.id

    @pytest.mark.asyncio
    async def test_rounding_within_tolerance_verifies(self, session, collected, rider, admin):
        settlement = await rider_ledger_service.request_settlement(
            session, rider.id, Decimal("500"), rider
        )

        settlement = await rider_ledger_service.verify_settlement(
            session, settlement.id, Decimal("499.50"), admin
        )

        assert settlement.status == SettlementStatus.VERIFIED
        assert settlement.variance == Decimal("-0.50")

    @pytest.mark.asyncio
    async def test_verify_once(self, session, collected, rider, admin):
        settlement = await rider_ledger_service.request_settlement(
            session, rider.id, Decimal("500"), rider
        )
        await rider_ledger_service.verify_settlement(session, settlement.id, Decimal("500"), admin)

        with pytest.raises(InvalidTransition):
            await rider_ledger_service.verify_settlement(session, settlement.id, Decimal("500"), admin)

    @pytest.mark.asyncio
    async def test_only_admin_verifies(self, session, collected, rider, manager):
        settlement = await rider_ledger_service.request_settlement(
            session, rider.id, Decimal("500"), rider
        )

        with pytest.raises(PermissionDenied):
            await rider_ledger_service.verify_settlement(session, settlement.id, Decimal("500"), manager)


class TestCourierSettlement:
    @pytest.mark.asyncio
    async def test_verified_courier_settlement_closes_manifest(self, session, make_order, operator, admin):
        order = await make_order(fulfillment_type=FulfillmentType.OUTSIDE_VALLEY)
        await order_service.pack_order(session, order.id, operator)
        manifest = await manifest_service.create_manifest(
            session,
            ManifestCreate(courier_code=CourierProviderCode.GAAUBESI, order_ids=[order.id]),
            operator,
        )
        await manifest_service.dispatch(session, manifest.id, operator)
        manifest_id, order_id = manifest.id, order.id

        with pytest.raises(InvalidTransition):
            await rider_ledger_service.request_courier_settlement(
                session, manifest_id, Decimal("500"), admin
            )

        await session.refresh(admin)
        await manifest_service.record_outcome(
            session, manifest_id,
            OutcomeCreate(order_id=order_id, outcome=ManifestOutcome.DELIVERED, signature="courier-pod"),
            admin,
        )
        settlement = await rider_ledger_service.request_courier_settlement(
            session, manifest_id, Decimal("500"), admin
        )
        assert settlement.expected_amount == Decimal("500.00")
        assert settlement.courier_code == CourierProviderCode.GAAUBESI

        settlement = await rider_ledger_service.verify_settlement(
            session, settlement.id, Decimal("500"), admin
        )

        closed = await session.get(Manifest, manifest_id, populate_existing=True)
        assert settlement.status == SettlementStatus.VERIFIED
        assert closed.status == ManifestStatus.SETTLED
