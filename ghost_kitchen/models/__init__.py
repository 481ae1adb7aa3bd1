"""Models package - import all models so they register with Base.metadata."""

from ghost_kitchen.models.restaurant import Restaurant
from ghost_kitchen.models.ghost_kitchen import (
    COMPLETED_ORDER_STATUSES,
    OPEN_SESSION_STATUSES,
    ORDER_STATUS_TRANSITIONS,
    DeliveryPlatform,
    DemandForecast,
    GhostKitchenOrder,
    GhostKitchenSession,
    GhostOrderStatus,
    OpportunityStatus,
    OpportunityWindow,
    SessionEndReason,
    SessionStatus,
)
from ghost_kitchen.models.staff import (
    Position,
    Shift,
    ShiftStatus,
    ShiftStatusHistory,
    ShiftType,
    TimeOffRequest,
    TimeOffStatus,
    WorkerAvailability,
    WorkerCertification,
    WorkerProfile,
    WorkerRole,
    WorkerStatus,
)

__all__ = [
    "COMPLETED_ORDER_STATUSES",
    "OPEN_SESSION_STATUSES",
    "ORDER_STATUS_TRANSITIONS",
    "DeliveryPlatform",
    "DemandForecast",
    "GhostKitchenOrder",
    "GhostKitchenSession",
    "GhostOrderStatus",
    "OpportunityStatus",
    "OpportunityWindow",
    "Position",
    "Restaurant",
    "SessionEndReason",
    "SessionStatus",
    "Shift",
    "ShiftStatus",
    "ShiftStatusHistory",
    "ShiftType",
    "TimeOffRequest",
    "TimeOffStatus",
    "WorkerAvailability",
    "WorkerCertification",
    "WorkerProfile",
    "WorkerRole",
    "WorkerStatus",
]
