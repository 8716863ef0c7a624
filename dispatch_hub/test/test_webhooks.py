import json

import pytest
import pytest_asyncio

from dispatch_hub.config.config import settings
from dispatch_hub.schemas.manifest_schema import ManifestCreate
from dispatch_hub.schemas.status_schema import (
    ActivityKind,
    CourierProviderCode,
    FulfillmentType,
    ManifestOutcome,
    OrderStatus,
)
from dispatch_hub.services import manifest_service, order_service
from dispatch_hub.services.generic_provider import sign_payload

NCM_SECRET = "ncm-hook-secret"
GBL_SECRET = "gbl-hook-secret"
GENERIC_SECRET = "generic-hook-secret"


@pytest.fixture(autouse=True)
def webhook_secrets(monkeypatch):
    monkeypatch.setattr(settings, "NCM_WEBHOOK_SECRET", NCM_SECRET)
    monkeypatch.setattr(settings, "GAAUBESI_WEBHOOK_SECRET", GBL_SECRET)
    monkeypatch.setattr(settings, "GENERIC_LOGISTICS_WEBHOOK_SECRET", GENERIC_SECRET)


@pytest_asyncio.fixture
async def shipped(make_order):
    return await make_order(
        status=OrderStatus.HANDED_TO_COURIER,
        fulfillment_type=FulfillmentType.OUTSIDE_VALLEY,
        tracking_id="12345",
        courier_provider=CourierProviderCode.NCM,
    )


async def ncm_push(client, payload, secret=NCM_SECRET):
    return await client.post(
        "/api/logistics/webhooks/ncm", json=payload, headers={"x-ncm-secret": secret}
    )


class TestNCMWebhook:
    @pytest.mark.asyncio
    async def test_status_applied(self, client, session, shipped):
        response = await ncm_push(client, {"order_id": "12345", "status": "Pickup Completed"})

        await session.refresh(shipped)
        assert response.status_code == 200
        assert response.json()["applied"] is True
        assert shipped.status == OrderStatus.IN_TRANSIT

    @pytest.mark.asyncio
    async def test_bad_secret_rejected(self, client, session, shipped):
        response = await ncm_push(client, {"order_id": "12345", "status": "Delivered"}, secret="nope")

        await session.refresh(shipped)
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_webhook_signature"
        assert shipped.status == OrderStatus.HANDED_TO_COURIER

    @pytest.mark.asyncio
    async def test_ping_acknowledged(self, client):
        response = await ncm_push(client, {"test": True})

        assert response.status_code == 200
        assert response.json()["message"] == "Webhook test received"

    @pytest.mark.asyncio
    async def test_unmapped_status_logged_not_applied(self, client, session, shipped, activities_of):
        response = await ncm_push(client, {"order_id": "12345", "status": "Teleported"})

        await session.refresh(shipped)
        assert response.status_code == 200
        assert response.json()["applied"] is False
        assert shipped.status == OrderStatus.HANDED_TO_COURIER
        notes = await activities_of(shipped.id, ActivityKind.LOGISTICS)
        assert "Unmapped" in notes[-1].reason

    @pytest.mark.asyncio
    async def test_courier_return_is_rto(self, client, session, shipped):
        await ncm_push(client, {"order_id": "12345", "status": "Pickup Completed"})
        await ncm_push(client, {"order_id": "12345", "status": "Returned"})

        await session.refresh(shipped)
        assert shipped.status == OrderStatus.RTO

    @pytest.mark.asyncio
    async def test_out_of_order_status_ignored(self, client, session, shipped, activities_of):
        await ncm_push(client, {"order_id": "12345", "status": "Pickup Completed"})
        response = await ncm_push(client, {"order_id": "12345", "status": "Pickup Order Created"})

        await session.refresh(shipped)
        assert response.json()["applied"] is False
        assert shipped.status == OrderStatus.IN_TRANSIT
        notes = await activities_of(shipped.id, ActivityKind.LOGISTICS)
        assert "ignored" in notes[-1].reason

    @pytest.mark.asyncio
    async def test_unknown_tracking_id_acknowledged(self, client):
        response = await ncm_push(client, {"order_id": "99999", "status": "Delivered"})

        assert response.status_code == 200
        assert "Unknown tracking id" in response.json()["message"]


class TestGaauBesiWebhook:
    @pytest.mark.asyncio
    async def test_status_applied(self, client, session, make_order):
        order = await make_order(
            status=OrderStatus.HANDED_TO_COURIER,
            fulfillment_type=FulfillmentType.OUTSIDE_VALLEY,
            tracking_id="5511",
            courier_provider=CourierProviderCode.GAAUBESI,
        )

        response = await client.post(
            "/api/logistics/webhooks/gaaubesi",
            json={"order_id": 5511, "status": "Package In Transit", "branch": "POKHARA"},
            headers={"x-gbl-secret": GBL_SECRET},
        )

        await session.refresh(order)
        assert response.status_code == 200
        assert order.status == OrderStatus.IN_TRANSIT


class TestGenericWebhook:
    @pytest_asyncio.fixture
    async def manifested(self, session, make_order, operator):
        order = await make_order(fulfillment_type=FulfillmentType.OUTSIDE_VALLEY)
        await order_service.pack_order(session, order.id, operator)
        manifest = await manifest_service.create_manifest(
            session,
            ManifestCreate(courier_code=CourierProviderCode.GENERIC, order_ids=[order.id]),
            operator,
        )
        await manifest_service.dispatch(session, manifest.id, operator)
        order.tracking_id = "GEN-9"
        await session.commit()
        return order, manifest

    @pytest.mark.asyncio
    async def test_signed_delivery_closes_line(self, client, session, manifested):
        order, manifest = manifested
        body = json.dumps(
            {"tracking_id": "GEN-9", "status": "delivered", "receiver_name": "Hari"}
        ).encode()

        response = await client.post(
            "/api/logistics/webhooks/generic",
            content=body,
            headers={
                "content-type": "application/json",
                "x-webhook-signature": sign_payload(GENERIC_SECRET, body),
            },
        )

        await session.refresh(order)
        await session.refresh(manifest)
        assert response.status_code == 200
        assert order.status == OrderStatus.DELIVERED
        assert order.proof_signature == "generic: delivered to Hari"
        assert manifest.active_items[0].outcome == ManifestOutcome.DELIVERED
        assert manifest.eligible_for_settlement

    @pytest.mark.asyncio
    async def test_signed_return_rejects_line(self, client, session, manifested):
        order, manifest = manifested
        body = json.dumps({"tracking_id": "GEN-9", "status": "returned"}).encode()

        response = await client.post(
            "/api/logistics/webhooks/generic",
            content=body,
            headers={
                "content-type": "application/json",
                "x-webhook-signature": sign_payload(GENERIC_SECRET, body),
            },
        )

        await session.refresh(order)
        await session.refresh(manifest)
        assert response.status_code == 200
        assert order.status == OrderStatus.RTO
        assert manifest.active_items[0].outcome == ManifestOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, client, manifested):
        body = json.dumps({"tracking_id": "GEN-9", "status": "delivered"}).encode()
        signature = sign_payload(GENERIC_SECRET, body)

        response = await client.post(
            "/api/logistics/webhooks/generic",
            content=body.replace(b"delivered", b"rto"),
            headers={"content-type": "application/json", "x-webhook-signature": signature},
        )

        assert response.status_code == 401
