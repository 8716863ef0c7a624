import hashlib
import hmac
from typing import Any, Optional

from dispatch_hub.config.config import settings
from dispatch_hub.models.models import Order
from dispatch_hub.schemas.logistics_schema import BookingResult, NormalizedStatus, TrackingStatus
from dispatch_hub.schemas.status_schema import CourierProviderCode, OrderStatus
from dispatch_hub.services.courier_provider import (
    CourierProvider,
    cod_amount,
    package_description,
    sanitize_receiver_phone,
)
from dispatch_hub.utils.exceptions import ProviderBookingFailed
from dispatch_hub.utils.utils import normalize_branch, to_money

# Third parties speak our vocabulary; only courier-reachable states are accepted.
GENERIC_STATUS_MAP: dict[str, Optional[OrderStatus]] = {
    status.value: status
    for status in (
        OrderStatus.HANDED_TO_COURIER,
        OrderStatus.IN_TRANSIT,
        OrderStatus.DELIVERED,
        OrderStatus.RTO,
    )
}
GENERIC_STATUS_MAP.update({"returned": OrderStatus.RTO, "on_hold": None, "attempted": None})


def sign_payload(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


class GenericProvider(CourierProvider):
    """Any 3PL that implements the documented REST shape."""

    code = CourierProviderCode.GENERIC
    booking_path = "/shipments"
    status_map = GENERIC_STATUS_MAP
    signature_header = "x-webhook-signature"

    def __init__(self, transport=None):
        super().__init__(transport)
        self.base_url = settings.GENERIC_LOGISTICS_API_URL

    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {settings.GENERIC_LOGISTICS_API_KEY}",
        }

    def webhook_secret(self) -> Optional[str]:
        return settings.GENERIC_LOGISTICS_WEBHOOK_SECRET

    def verify_webhook(self, headers: dict[str, str], raw_body: bytes) -> bool:
        """HMAC-SHA256 of the raw body, hex encoded."""
        secret = self.webhook_secret()
        if not secret:
            return False
        supplied = headers.get(self.signature_header) or ""
        return hmac.compare_digest(supplied, sign_payload(secret, raw_body))

    def build_booking_payload(self, order: Order, destination_branch: str) -> dict[str, Any]:
        return {
            "reference": order.order_number,
            "receiver": {
                "name": order.customer_name,
                "phone": sanitize_receiver_phone(order.customer_phone),
                "address": order.shipping_address,
                "city": order.city,
            },
            "destination_branch": normalize_branch(destination_branch),
            "cod_amount": cod_amount(order),
            "description": package_description(order),
        }

    def parse_booking_response(self, data: dict[str, Any]) -> BookingResult:
        tracking_id = data.get("tracking_id")
        if not tracking_id:
            raise ProviderBookingFailed("Provider did not return a tracking id", retryable=False, body=data)
        return BookingResult(
            tracking_id=str(tracking_id),
            external_order_id=str(data.get("id") or tracking_id),
            raw=data,
        )

    async def get_tracking(self, tracking_id: str) -> TrackingStatus:
        data = await self._request("GET", f"/shipments/{tracking_id}")
        provider_status = data.get("status") or "unknown"
        known, status = self.map_status(provider_status)
        return TrackingStatus(
            tracking_id=tracking_id,
            provider_status=provider_status,
            status=status,
            known=known,
            location=data.get("location"),
            remarks=data.get("remarks"),
        )

    def handle_webhook(self, payload: dict[str, Any]) -> NormalizedStatus:
        cod = payload.get("cod_amount")
        return self._normalize(
            payload,
            payload.get("tracking_id"),
            payload.get("status"),
            remarks=payload.get("remarks"),
            location=payload.get("location"),
            receiver_name=payload.get("receiver_name"),
            cod_amount=to_money(cod) if cod not in (None, "") else None,
        )
