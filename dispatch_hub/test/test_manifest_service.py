from decimal import Decimal

import pytest
import pytest_asyncio

from dispatch_hub.models.models import Manifest, Order
from dispatch_hub.schemas.manifest_schema import ManifestCreate, OutcomeCreate, RescheduleCreate
from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    CourierProviderCode,
    FulfillmentType,
    ManifestKind,
    ManifestOutcome,
    ManifestStatus,
    OrderStatus,
)
from dispatch_hub.services import manifest_service, order_service, rider_ledger_service
from dispatch_hub.utils.exceptions import (
    InvalidTransition,
    OrderAlreadyManifested,
    PermissionDenied,
    ValidationFailed,
)


@pytest_asyncio.fixture
async def packed_order(session, make_order, operator):
    order = await make_order(quantity=1)
    return await order_service.pack_order(session, order.id, operator)


@pytest_asyncio.fixture
async def dispatched(session, packed_order, rider, operator):
    manifest = await manifest_service.create_manifest(
        session, ManifestCreate(rider_id=rider.id, order_ids=[packed_order.id]), operator
    )
    manifest = await manifest_service.dispatch(session, manifest.id, operator)
    return manifest, packed_order


class TestAssignment:
    @pytest.mark.asyncio
    async def test_assign_to_rider(self, session, packed_order, rider, operator, activities_of):
        manifest = await manifest_service.create_manifest(
            session, ManifestCreate(rider_id=rider.id, order_ids=[packed_order.id]), operator
        )

        await session.refresh(packed_order)
        assert manifest.kind == ManifestKind.RIDER
        assert manifest.status == ManifestStatus.DRAFT
        assert [line.order_id for line in manifest.active_items] == [packed_order.id]
        assert packed_order.status == OrderStatus.ASSIGNED
        assert packed_order.rider_id == rider.id
        assignments = await activities_of(packed_order.id, ActivityKind.ASSIGNMENT)
        assert len(assignments) == 1
        assert assignments[0].extra["rider_id"] == str(rider.id)

    @pytest.mark.asyncio
    async def test_order_on_one_open_manifest_only(
        self, session, packed_order, rider, other_rider, operator
    ):
        await manifest_service.create_manifest(
            session, ManifestCreate(rider_id=rider.id, order_ids=[packed_order.id]), operator
        )

        with pytest.raises(OrderAlreadyManifested):
            await manifest_service.create_manifest(
                session,
                ManifestCreate(rider_id=other_rider.id, order_ids=[packed_order.id]),
                operator,
            )

    @pytest.mark.asyncio
    async def test_unpacked_order_refused(self, session, make_order, rider, operator):
        order = await make_order(status=OrderStatus.CONFIRMED)

        with pytest.raises(InvalidTransition):
            await manifest_service.create_manifest(
                session, ManifestCreate(rider_id=rider.id, order_ids=[order.id]), operator
            )
        await session.refresh(order)
        assert order.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_courier_manifest_takes_outside_valley_only(self, session, packed_order, operator):
        with pytest.raises(ValidationFailed):
            await manifest_service.create_manifest(
                session,
                ManifestCreate(courier_code=CourierProviderCode.NCM, order_ids=[packed_order.id]),
                operator,
            )

    @pytest.mark.asyncio
    async def test_remove_from_draft_returns_to_packed(
        self, session, packed_order, rider, other_rider, operator
    ):
        manifest = await manifest_service.create_manifest(
            session, ManifestCreate(rider_id=rider.id, order_ids=[packed_order.id]), operator
        )

        manifest = await manifest_service.remove_order(
            session, manifest.id, packed_order.id, operator, reason="Wrong route"
        )

        await session.refresh(packed_order)
        assert manifest.active_items == []
        assert packed_order.status == OrderStatus.PACKED
        assert packed_order.rider_id is None
        # Free to go out with someone else
        other = await manifest_service.create_manifest(
            session, ManifestCreate(rider_id=other_rider.id, order_ids=[packed_order.id]), operator
        )
        assert len(other.active_items) == 1

    @pytest.mark.asyncio
    async def test_cancelling_assigned_order_leaves_draft(
        self, session, packed_order, variant, rider, operator
    ):
        manifest = await manifest_service.create_manifest(
            session, ManifestCreate(rider_id=rider.id, order_ids=[packed_order.id]), operator
        )

        await order_service.cancel_order(session, packed_order.id, "Customer cancelled", operator)

        await session.refresh(manifest)
        await session.refresh(variant)
        assert manifest.active_items == []
        assert variant.stock == 10


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_sends_orders_out(self, session, dispatched):
        manifest, order = dispatched

        await session.refresh(order)
        assert manifest.status == ManifestStatus.DISPATCHED
        assert manifest.dispatched_at is not None
        assert order.status == OrderStatus.OUT_FOR_DELIVERY
        assert order.dispatched_at is not None

    @pytest.mark.asyncio
    async def test_dispatch_only_once(self, session, dispatched, operator):
        manifest, _ = dispatched

        with pytest.raises(InvalidTransition):
            await manifest_service.dispatch(session, manifest.id, operator)

    @pytest.mark.asyncio
    async def test_empty_manifest_cannot_dispatch(self, session, rider, operator):
        manifest = await manifest_service.create_manifest(
            session, ManifestCreate(rider_id=rider.id), operator
        )

        with pytest.raises(ValidationFailed):
            await manifest_service.dispatch(session, manifest.id, operator)

    @pytest.mark.asyncio
    async def test_membership_frozen_after_dispatch(self, session, dispatched, make_order, operator):
        manifest, order = dispatched
        extra = await make_order()
        await order_service.pack_order(session, extra.id, operator)
        manifest_id, order_id = manifest.id, order.id

        with pytest.raises(InvalidTransition):
            await manifest_service.add_orders(session, manifest_id, [extra.id], operator)
        await session.refresh(operator)
        with pytest.raises(InvalidTransition):
            await manifest_service.remove_order(session, manifest_id, order_id, operator)

    @pytest.mark.asyncio
    async def test_courier_dispatch_hands_over(self, session, make_order, operator):
        order = await make_order(fulfillment_type=FulfillmentType.OUTSIDE_VALLEY)
        await order_service.pack_order(session, order.id, operator)
        manifest = await manifest_service.create_manifest(
            session,
            ManifestCreate(courier_code=CourierProviderCode.NCM, order_ids=[order.id]),
            operator,
        )

        await manifest_service.dispatch(session, manifest.id, operator)

        await session.refresh(order)
        assert order.status == OrderStatus.HANDED_TO_COURIER
        assert order.courier_provider == CourierProviderCode.NCM


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_delivery_needs_proof(self, session, dispatched, rider):
        manifest, order = dispatched

        with pytest.raises(ValidationFailed):
            await manifest_service.record_outcome(
                session, manifest.id,
                OutcomeCreate(order_id=order.id, outcome=ManifestOutcome.DELIVERED),
                rider,
            )
        await session.refresh(order)
        assert order.status == OrderStatus.OUT_FOR_DELIVERY

    @pytest.mark.asyncio
    async def test_delivered_collects_cod(self, session, dispatched, rider):
        manifest, order = dispatched

        manifest = await manifest_service.record_outcome(
            session, manifest.id,
            OutcomeCreate(
                order_id=order.id,
                outcome=ManifestOutcome.DELIVERED,
                proof_url="https://cdn.dispatchhub.test/pod/1.jpg",
            ),
            rider,
        )

        await session.refresh(order)
        assert order.status == OrderStatus.DELIVERED
        assert order.delivered_at is not None
        assert manifest.eligible_for_settlement
        assert manifest.active_items[0].outcome == ManifestOutcome.DELIVERED
        assert await rider_ledger_service.current_balance(session, rider.id) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_outcome_recorded_once(self, session, dispatched, rider):
        manifest, order = dispatched
        outcome = OutcomeCreate(
            order_id=order.id, outcome=ManifestOutcome.DELIVERED, signature="sig-data"
        )
        rider_id = rider.id
        await manifest_service.record_outcome(session, manifest.id, outcome, rider)

        with pytest.raises(InvalidTransition):
            await manifest_service.record_outcome(session, manifest.id, outcome, rider)
        assert await rider_ledger_service.current_balance(session, rider_id) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_other_rider_cannot_record(self, session, dispatched, other_rider):
        manifest, order = dispatched

        with pytest.raises(PermissionDenied):
            await manifest_service.record_outcome(
                session, manifest.id,
                OutcomeCreate(order_id=order.id, outcome=ManifestOutcome.DELIVERED, signature="x"),
                other_rider,
            )

    @pytest.mark.asyncio
    async def test_rejected_stays_on_manifest(self, session, dispatched, rider):
        manifest, order = dispatched

        manifest = await manifest_service.record_outcome(
            session, manifest.id,
            OutcomeCreate(order_id=order.id, outcome=ManifestOutcome.REJECTED, reason="Refused at door"),
            rider,
        )

        await session.refresh(order)
        assert order.status == OrderStatus.REJECTED
        assert order.rejection_reason == "Refused at door"
        assert manifest.active_items[0].outcome == ManifestOutcome.REJECTED
        assert manifest.eligible_for_settlement
        assert await rider_ledger_service.current_balance(session, rider.id) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_reschedule_after_dispatch(self, session, dispatched, rider):
        manifest, order = dispatched

        manifest = await manifest_service.reschedule_order(
            session, manifest.id, RescheduleCreate(order_id=order.id, reason="Customer away"), rider
        )

        await session.refresh(order)
        assert order.status == OrderStatus.PACKED
        assert order.reschedule_count == 1
        assert order.rider_id is None
        assert manifest.active_items == []
        assert manifest.items[0].note == "Rescheduled: Customer away"


class TestManifestOwnedStatuses:
    @pytest.mark.asyncio
    async def test_delivery_only_through_an_outcome(self, session, dispatched, rider, operator):
        manifest, order = dispatched
        manifest_id, order_id, rider_id = manifest.id, order.id, rider.id

        with pytest.raises(InvalidTransition) as exc:
            await order_service.transition(
                session, order_id, OrderStatus.DELIVERED, operator, proof_url="https://pod"
            )

        assert "manifest outcome" in exc.value.message
        order = await session.get(Order, order_id, populate_existing=True)
        manifest = await session.get(Manifest, manifest_id, populate_existing=True)
        assert order.status == OrderStatus.OUT_FOR_DELIVERY
        assert manifest.active_items[0].outcome == ManifestOutcome.PENDING
        assert await rider_ledger_service.current_balance(session, rider_id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_rejection_only_through_an_outcome(self, session, dispatched, operator):
        _, order = dispatched
        order_id = order.id

        with pytest.raises(InvalidTransition):
            await order_service.transition(
                session, order_id, OrderStatus.REJECTED, operator, reason="Refused at door"
            )

        order = await session.get(Order, order_id, populate_existing=True)
        assert order.status == OrderStatus.OUT_FOR_DELIVERY

    @pytest.mark.asyncio
    async def test_courier_progress_only_through_sync(self, session, make_order, operator):
        order = await make_order(fulfillment_type=FulfillmentType.OUTSIDE_VALLEY)
        await order_service.pack_order(session, order.id, operator)
        manifest = await manifest_service.create_manifest(
            session,
            ManifestCreate(courier_code=CourierProviderCode.NCM, order_ids=[order.id]),
            operator,
        )
        await manifest_service.dispatch(session, manifest.id, operator)
        order_id = order.id

        for target in (OrderStatus.IN_TRANSIT, OrderStatus.RTO):
            await session.refresh(operator)
            with pytest.raises(InvalidTransition) as exc:
                await order_service.transition(session, order_id, target, operator)
            assert "courier status sync" in exc.value.message

        order = await session.get(Order, order_id, populate_existing=True)
        assert order.status == OrderStatus.HANDED_TO_COURIER

    @pytest.mark.asyncio
    async def test_store_order_delivers_without_a_manifest(self, session, make_order, operator):
        order = await make_order(fulfillment_type=FulfillmentType.STORE)
        await order_service.pack_order(session, order.id, operator)

        order = await order_service.transition(session, order.id, OrderStatus.DELIVERED, operator)

        assert order.status == OrderStatus.DELIVERED


class TestClose:
    @pytest.mark.asyncio
    async def test_close_needs_every_outcome(self, session, dispatched, operator):
        manifest, _ = dispatched

        with pytest.raises(InvalidTransition):
            await manifest_service.close_manifest(session, manifest.id, operator)

    @pytest.mark.asyncio
    async def test_close_after_outcomes(self, session, dispatched, rider, operator):
        manifest, order = dispatched
        await manifest_service.record_outcome(
            session, manifest.id,
            OutcomeCreate(order_id=order.id, outcome=ManifestOutcome.DELIVERED, signature="sig"),
            rider,
        )

        manifest = await manifest_service.close_manifest(session, manifest.id, operator)

        assert manifest.status == ManifestStatus.SETTLED
        assert manifest.settled_at is not None
