"""Staffing and opportunity schemas."""

from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ghost_kitchen.models.ghost_kitchen import OpportunityStatus
from ghost_kitchen.models.staff import Position, ShiftType


class ShiftPriority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class AdjustmentType(str, Enum):
    ADD = "ADD"
    REMOVE = "REMOVE"
    EXTEND = "EXTEND"
    REDUCE = "REDUCE"


class HourlyStaffing(BaseModel):
    hour: int
    delivery_forecast: int
    dine_in_forecast: int
    recommended_delivery_staff: int
    recommended_dine_in_staff: int
    total_recommended: int
    current_scheduled: int
    scheduled_delivery_staff: int = 0
    scheduled_dine_in_staff: int = 0
    staffing_gap: int

    @property
    def delivery_gap(self) -> int:
        return self.recommended_delivery_staff - self.scheduled_delivery_staff

    @property
    def dine_in_gap(self) -> int:
        return self.recommended_dine_in_staff - self.scheduled_dine_in_staff


class GapWindow(BaseModel):
    """A run of consecutive understaffed hours."""
    start_hour: int
    end_hour: int
    hours: List[HourlyStaffing]
    avg_gap: float


class SuggestedShift(BaseModel):
    position: Position
    start_hour: int
    end_hour: int
    type: ShiftType
    priority: ShiftPriority
    reason: str


class ShiftAdjustment(BaseModel):
    type: AdjustmentType
    existing_shift_id: Optional[int] = None
    position: Position
    original_start_hour: Optional[int] = None
    original_end_hour: Optional[int] = None
    suggested_start_hour: Optional[int] = None
    suggested_end_hour: Optional[int] = None
    reason: str


class StaffingRecommendation(BaseModel):
    date: date
    total_recommended_staff: int
    by_hour: List[HourlyStaffing]
    suggested_shifts: List[SuggestedShift]
    adjustments: List[ShiftAdjustment]


class AvailableWorker(BaseModel):
    worker_profile_id: int
    user_id: int
    first_name: str
    last_name: str
    positions: List[str]
    reliability_score: float
    shifts_completed: int
    is_available: bool
    availability_note: Optional[str] = None


class OpportunityCriteria(BaseModel):
    max_dine_in_capacity_percent: float = 50
    min_delivery_orders_per_hour: int = 5
    min_window_hours: int = 2
    min_confidence: float = 0.5
    avg_delivery_order_revenue: float = 35


class OpportunityCandidate(BaseModel):
    """Detected window; persisted as an OpportunityWindow when alerted."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    restaurant_id: int
    date: date
    start_hour: int
    end_hour: int
    score: int = Field(ge=0, le=100)
    status: OpportunityStatus = OpportunityStatus.SUGGESTED
    forecasted_dine_in: int
    forecasted_delivery: int
    recommended_staff: int
    potential_revenue: float
    confidence: float


class OpportunityMetrics(BaseModel):
    total_opportunities: int
    accepted_count: int
    acceptance_rate: float
    avg_score: float
    avg_forecasted_orders: float
    avg_actual_orders: float
    forecast_accuracy: float
    total_revenue: float
