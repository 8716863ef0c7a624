from enum import Enum


class UserRole(str, Enum):
    ADMIN: str = "admin"
    MANAGER: str = "manager"
    OPERATOR: str = "operator"
    RIDER: str = "rider"
    VIEWER: str = "viewer"


class OrderStatus(str, Enum):
    INTAKE: str = "intake"
    FOLLOW_UP: str = "follow_up"
    CONFIRMED: str = "confirmed"
    PACKED: str = "packed"
    ASSIGNED: str = "assigned"  # Inside valley, on a rider manifest
    OUT_FOR_DELIVERY: str = "out_for_delivery"
    HANDED_TO_COURIER: str = "handed_to_courier"  # Outside valley
    IN_TRANSIT: str = "in_transit"
    DELIVERED: str = "delivered"
    REJECTED: str = "rejected"
    RETURN_INITIATED: str = "return_initiated"
    RTO: str = "rto"
    RETURNED: str = "returned"
    LOST_IN_TRANSIT: str = "lost_in_transit"
    CANCELLED: str = "cancelled"


class FulfillmentType(str, Enum):
    INSIDE_VALLEY: str = "inside_valley"
    OUTSIDE_VALLEY: str = "outside_valley"
    STORE: str = "store"


class PaymentMethod(str, Enum):
    COD: str = "cod"
    PREPAID: str = "prepaid"


class ActivityKind(str, Enum):
    STATUS_CHANGE: str = "status_change"
    TRANSITION_REJECTED: str = "transition_rejected"
    ASSIGNMENT: str = "assignment"
    LOGISTICS: str = "logistics"
    RETURN: str = "return"
    SETTLEMENT: str = "settlement"
    NOTE: str = "note"


class ManifestKind(str, Enum):
    RIDER: str = "rider"
    COURIER: str = "courier"


class ManifestStatus(str, Enum):
    DRAFT: str = "draft"
    DISPATCHED: str = "dispatched"
    SETTLED: str = "settled"


class ManifestOutcome(str, Enum):
    PENDING: str = "pending"
    DELIVERED: str = "delivered"
    REJECTED: str = "rejected"
    RETURNED: str = "returned"


class HandoverSource(str, Enum):
    RIDER: str = "rider"
    COURIER: str = "courier"


class HandoverStatus(str, Enum):
    PENDING_VERIFICATION: str = "pending_verification"
    PROCESSED: str = "processed"
    VOIDED: str = "voided"


class ItemCondition(str, Enum):
    GOOD: str = "good"
    DAMAGED: str = "damaged"


class HandoverLineStatus(str, Enum):
    PENDING: str = "pending"
    VERIFIED: str = "verified"
    DISPUTED: str = "disputed"


class LedgerEntryType(str, Enum):
    COD_COLLECTION: str = "cod_collection"
    CASH_HANDOVER: str = "cash_handover"
    SETTLEMENT_ADJUSTMENT: str = "settlement_adjustment"


class SettlementStatus(str, Enum):
    PENDING: str = "pending"
    VERIFIED: str = "verified"
    DISPUTED: str = "disputed"


class CourierProviderCode(str, Enum):
    NCM: str = "ncm"
    GAAUBESI: str = "gaaubesi"
    GENERIC: str = "generic"


class SyncState(str, Enum):
    PENDING: str = "pending"
    IN_PROGRESS: str = "in_progress"
    BOOKED: str = "booked"
    FAILED: str = "failed"
