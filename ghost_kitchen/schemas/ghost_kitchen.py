"""Ghost kitchen session schemas - config snapshots, status, stats and P&L."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ghost_kitchen.models.ghost_kitchen import (
    DeliveryPlatform, SessionEndReason, SessionStatus,
)


class PlatformFee(BaseModel):
    """Commission charged by a delivery platform."""
    platform: DeliveryPlatform
    commission_percent: float = Field(ge=0, le=100)
    flat_fee: float = Field(default=0, ge=0)


DEFAULT_PLATFORM_FEES: Dict[DeliveryPlatform, PlatformFee] = {
    DeliveryPlatform.DOORDASH: PlatformFee(platform=DeliveryPlatform.DOORDASH, commission_percent=15),
    DeliveryPlatform.UBEREATS: PlatformFee(platform=DeliveryPlatform.UBEREATS, commission_percent=30),
    DeliveryPlatform.GRUBHUB: PlatformFee(platform=DeliveryPlatform.GRUBHUB, commission_percent=20),
}

# Commission applied to a platform missing from the fee table
FALLBACK_COMMISSION_PERCENT = 20.0


class GhostModeConfigOverrides(BaseModel):
    """Caller-supplied overrides merged onto restaurant defaults at enable time."""
    max_orders: Optional[int] = Field(default=None, gt=0)
    auto_accept: Optional[bool] = None
    min_prep_time: Optional[int] = Field(default=None, ge=0)
    platforms: Optional[List[DeliveryPlatform]] = None
    supply_packaging_cost: Optional[float] = Field(default=None, ge=0)
    platform_fees: Optional[List[PlatformFee]] = None
    end_time: Optional[datetime] = None


class GhostModeConfig(BaseModel):
    """Immutable config snapshot stored on the session."""
    model_config = ConfigDict(frozen=True)

    max_orders: int = Field(gt=0)
    auto_accept: bool
    min_prep_time: int
    platforms: List[DeliveryPlatform]
    supply_packaging_cost: float
    platform_fees: Optional[List[PlatformFee]] = None
    end_time: Optional[datetime] = None

    def fee_for(self, platform: DeliveryPlatform) -> PlatformFee:
        """Session override first, then the default table, then the fallback rate."""
        for fee in self.platform_fees or []:
            if fee.platform == platform:
                return fee
        return DEFAULT_PLATFORM_FEES.get(
            platform,
            PlatformFee(platform=platform, commission_percent=FALLBACK_COMMISSION_PERCENT),
        )


class GhostModeStatus(BaseModel):
    """Consolidated live view of a restaurant's ghost kitchen state."""
    enabled: bool
    status: Optional[SessionStatus] = None
    session_id: Optional[int] = None
    started_at: Optional[datetime] = None
    scheduled_end_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    pause_end_time: Optional[datetime] = None
    pause_reason: Optional[str] = None
    current_orders: int = 0
    max_orders: int = 0
    utilization_percent: int = 0
    platforms: List[DeliveryPlatform] = Field(default_factory=list)
    config: Optional[GhostModeConfig] = None
    # Best-effort side effects (platform gateway) that failed during the call
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def disabled(cls) -> "GhostModeStatus":
        return cls(enabled=False)


class SessionStats(BaseModel):
    total_orders: int
    total_revenue: float
    avg_prep_time: Optional[int] = None  # seconds


class SessionEndResult(BaseModel):
    session_id: int
    end_reason: SessionEndReason
    ended_at: datetime
    stats: SessionStats
    warnings: List[str] = Field(default_factory=list)


class CapacityUpdate(BaseModel):
    restaurant_id: int
    session_id: int
    current_orders: int
    max_orders: int
    utilization_percent: int
    auto_disabled: bool = False


class PlatformStats(BaseModel):
    platform: DeliveryPlatform
    orders: int = 0
    revenue: float = 0
    avg_prep_time: Optional[float] = None
    cancellations: int = 0


class SessionSummary(BaseModel):
    """Row in the session history list."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: SessionStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: Optional[SessionEndReason] = None
    duration_minutes: Optional[int] = None
    total_orders: int
    total_revenue: float
    avg_prep_time: Optional[int] = None
    peak_utilization: float = 0


class SessionHistoryPage(BaseModel):
    sessions: List[SessionSummary]
    total: int
    limit: int
    offset: int


class SessionMetrics(BaseModel):
    session_id: int
    status: SessionStatus
    duration_minutes: int
    total_orders: int
    completed_orders: int
    cancelled_orders: int
    total_revenue: float
    avg_order_value: float
    avg_prep_time: Optional[float] = None
    peak_concurrent_orders: int
    peak_utilization: float
    orders_per_hour: float
    platform_breakdown: List[PlatformStats]


class SessionPnL(BaseModel):
    session_id: int
    revenue: float
    platform_fees: float
    labor_cost: float
    supply_cost: float
    gross_profit: float
    net_profit: float
    profit_margin: float


class CapacityLevel(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class CapacitySnapshot(BaseModel):
    restaurant_id: int
    session_id: Optional[int] = None
    current_orders: int
    max_orders: int
    utilization_percent: int
    level: CapacityLevel
    can_accept_orders: bool
    available_slots: int


class CapacityHistoryPoint(BaseModel):
    timestamp: datetime
    concurrent_orders: int
    utilization_percent: int
