from fastapi import status


class DispatchError(Exception):
    """Base for errors raised by the fulfillment engine."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "dispatch_error"

    def __init__(self, message: str, **detail):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationFailed(DispatchError):
    code = "validation_failed"


class NotFound(DispatchError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PermissionDenied(DispatchError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "permission_denied"


class InvalidTransition(DispatchError):
    """A status guard failed. Callers may retry against fresh state."""

    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"


class InsufficientStock(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "insufficient_stock"


class OrderAlreadyManifested(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "order_already_manifested"


class HandoverAlreadyProcessed(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "handover_already_processed"


class ProviderBookingFailed(DispatchError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "provider_booking_failed"

    def __init__(self, message: str, retryable: bool = True, **detail):
        super().__init__(message, **detail)
        self.retryable = retryable


class InvalidWebhookSignature(DispatchError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "invalid_webhook_signature"
