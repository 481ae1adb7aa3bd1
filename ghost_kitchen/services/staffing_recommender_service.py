"""
Staffing Recommender Service
============================
Turns hourly demand forecasts into staff counts, compares them with the
shifts already on the schedule and proposes new shifts or reductions.
Also ranks delivery workers for a time slot and creates ghost kitchen
shifts for an accepted opportunity.
"""

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ghost_kitchen.core.clock import Clock, system_clock
from ghost_kitchen.core.exceptions import NotFoundError
from ghost_kitchen.core.rounding import round_half_up
from ghost_kitchen.models.ghost_kitchen import OpportunityStatus, OpportunityWindow
from ghost_kitchen.models.staff import (
    Position, Shift, ShiftStatus, ShiftStatusHistory, ShiftType, TimeOffRequest,
    TimeOffStatus, WorkerAvailability, WorkerProfile, WorkerStatus,
)
from ghost_kitchen.schemas.forecast import HourlyForecast
from ghost_kitchen.schemas.staffing import (
    AdjustmentType, AvailableWorker, GapWindow, HourlyStaffing, ShiftAdjustment,
    ShiftPriority, StaffingRecommendation, SuggestedShift,
)
from ghost_kitchen.services.demand_forecaster_service import DemandForecasterService

logger = logging.getLogger(__name__)

SYSTEM_USER = "SYSTEM"


class StaffingRecommenderService:
    """Staffing needs, gap detection, worker ranking and ghost shift creation."""

    # Throughput
    ORDERS_PER_DELIVERY_STAFF_HOUR = 8
    COVERS_PER_SERVER_HOUR = 15
    PACK_STATIONS = 2
    ORDERS_PER_STATION_HOUR = 12

    MIN_GAP_HOURS = 2
    HIGH_PRIORITY_GAP = 2
    OVERSTAFFED_GAP = -1
    LONG_SHIFT_HOURS = 6
    LONG_SHIFT_BREAK_MINUTES = 30

    def __init__(
        self,
        db: Session,
        forecaster: Optional[DemandForecasterService] = None,
        clock: Optional[Clock] = None,
        inclusive_gap_end: bool = False,
    ):
        self.db = db
        self.clock = clock or system_clock
        self.forecaster = forecaster or DemandForecasterService(db, clock=self.clock)
        self.inclusive_gap_end = inclusive_gap_end

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def get_staffing_recommendation(self, restaurant_id: int, target_date: date) -> StaffingRecommendation:
        forecasts = self.forecaster.forecast_demand(restaurant_id, target_date)
        shifts = self._scheduled_shifts(restaurant_id, target_date)
        return self.build_recommendation(target_date, forecasts, shifts)

    def build_recommendation(
        self,
        target_date: date,
        forecasts: Sequence[HourlyForecast],
        shifts: Sequence[Shift],
    ) -> StaffingRecommendation:
        """Recommendation from forecasts and the shifts already scheduled that day."""
        by_hour: List[HourlyStaffing] = []
        for forecast in forecasts:
            delivery_staff = self.get_delivery_staff_needed(forecast.delivery_forecast)
            dine_in_staff = self.get_dine_in_staff_needed(forecast.dine_in_forecast)
            covering = [s for s in shifts if s.covers_hour(forecast.hour)]
            scheduled_delivery = sum(1 for s in covering if s.position == Position.DELIVERY_PACK)
            total = delivery_staff + dine_in_staff

            by_hour.append(HourlyStaffing(
                hour=forecast.hour,
                delivery_forecast=forecast.delivery_forecast,
                dine_in_forecast=forecast.dine_in_forecast,
                recommended_delivery_staff=delivery_staff,
                recommended_dine_in_staff=dine_in_staff,
                total_recommended=total,
                current_scheduled=len(covering),
                scheduled_delivery_staff=scheduled_delivery,
                scheduled_dine_in_staff=len(covering) - scheduled_delivery,
                staffing_gap=total - len(covering),
            ))

        suggested = []
        for gap in self.find_consecutive_gaps(by_hour, self.inclusive_gap_end):
            shift = self._suggest_for_gap(gap)
            if shift:
                suggested.append(shift)

        return StaffingRecommendation(
            date=target_date,
            total_recommended_staff=max((h.total_recommended for h in by_hour), default=0),
            by_hour=by_hour,
            suggested_shifts=suggested,
            adjustments=self._overstaffing_adjustments(by_hour, shifts),
        )

    def suggest_shift_adjustments(self, restaurant_id: int, target_date: date) -> List[ShiftAdjustment]:
        return self.get_staffing_recommendation(restaurant_id, target_date).adjustments

    def get_delivery_staff_needed(self, forecasted_orders: int) -> int:
        if forecasted_orders <= 0:
            return 0
        base_staff = forecasted_orders / self.ORDERS_PER_DELIVERY_STAFF_HOUR
        station_limit = self.PACK_STATIONS * self.ORDERS_PER_STATION_HOUR
        station_staff = forecasted_orders / station_limit * self.PACK_STATIONS
        return math.ceil(max(base_staff, station_staff))

    def get_dine_in_staff_needed(self, forecasted_covers: int) -> int:
        if forecasted_covers <= 0:
            return 0
        return math.ceil(forecasted_covers / self.COVERS_PER_SERVER_HOUR)

    @classmethod
    def find_consecutive_gaps(
        cls, by_hour: Sequence[HourlyStaffing], inclusive_end: bool = False
    ) -> List[GapWindow]:
        """
        Runs of at least two consecutive understaffed hours.

        ``end_hour`` is one past the last understaffed hour, or the last
        understaffed hour itself when ``inclusive_end`` is set. A skipped
        hour breaks a run.
        """
        windows: List[GapWindow] = []
        run: List[HourlyStaffing] = []

        def close_run():
            if len(run) >= cls.MIN_GAP_HOURS:
                last = run[-1].hour
                windows.append(GapWindow(
                    start_hour=run[0].hour,
                    end_hour=last if inclusive_end else last + 1,
                    hours=list(run),
                    avg_gap=sum(h.staffing_gap for h in run) / len(run),
                ))
            run.clear()

        for staffing in by_hour:
            if staffing.staffing_gap > 0:
                if run and staffing.hour != run[-1].hour + 1:
                    close_run()
                run.append(staffing)
            elif run:
                close_run()
        close_run()
        return windows

    def _suggest_for_gap(self, gap: GapWindow) -> Optional[SuggestedShift]:
        avg_delivery_gap = sum(h.delivery_gap for h in gap.hours) / len(gap.hours)
        avg_dine_in_gap = sum(h.dine_in_gap for h in gap.hours) / len(gap.hours)
        priority = ShiftPriority.HIGH if gap.avg_gap >= self.HIGH_PRIORITY_GAP else ShiftPriority.MEDIUM
        needed = round_half_up(gap.avg_gap)

        if avg_delivery_gap > avg_dine_in_gap:
            return SuggestedShift(
                position=Position.DELIVERY_PACK,
                start_hour=gap.start_hour,
                end_hour=gap.end_hour,
                type=ShiftType.GHOST_KITCHEN,
                priority=priority,
                reason=f"Delivery forecast indicates {needed} additional staff needed",
            )
        if avg_dine_in_gap > 0:
            return SuggestedShift(
                position=Position.SERVER,
                start_hour=gap.start_hour,
                end_hour=gap.end_hour,
                type=ShiftType.DINE_IN,
                priority=priority,
                reason=f"Dine-in forecast indicates {needed} additional staff needed",
            )
        return None

    def _overstaffing_adjustments(
        self, by_hour: Sequence[HourlyStaffing], shifts: Sequence[Shift]
    ) -> List[ShiftAdjustment]:
        adjustments = []
        for staffing in by_hour:
            if staffing.staffing_gap >= self.OVERSTAFFED_GAP:
                continue
            covering = [s for s in shifts if s.covers_hour(staffing.hour)]
            if not covering:
                continue

            shift = covering[0]
            original_start, original_end = shift.start_time.hour, shift.end_hour
            adjustment_type = AdjustmentType.REDUCE
            if staffing.hour + 1 < original_end:
                suggested_start, suggested_end = staffing.hour + 1, original_end
            elif staffing.hour > original_start:
                # Overstaffed in the shift's last hour: cut the shift short instead
                suggested_start, suggested_end = original_start, staffing.hour
            else:
                # Nothing left of a single hour shift
                adjustment_type = AdjustmentType.REMOVE
                suggested_start, suggested_end = None, None

            adjustments.append(ShiftAdjustment(
                type=adjustment_type,
                existing_shift_id=shift.id,
                position=shift.position,
                original_start_hour=original_start,
                original_end_hour=original_end,
                suggested_start_hour=suggested_start,
                suggested_end_hour=suggested_end,
                reason=f"Overstaffed by {abs(staffing.staffing_gap)} at {staffing.hour}:00",
            ))
        return adjustments

    def _scheduled_shifts(self, restaurant_id: int, target_date: date) -> List[Shift]:
        day_start = datetime.combine(target_date, time.min)
        return (
            self.db.query(Shift)
            .filter(
                Shift.restaurant_id == restaurant_id,
                Shift.start_time >= day_start,
                Shift.start_time < day_start + timedelta(days=1),
                Shift.status != ShiftStatus.CANCELLED,
            )
            .order_by(Shift.start_time, Shift.id)
            .all()
        )

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def find_available_delivery_workers(
        self, restaurant_id: int, target_date: date, start_hour: int, end_hour: int
    ) -> List[AvailableWorker]:
        """Delivery-pack workers, available first, then by reliability."""
        workers = [
            w for w in (
                self.db.query(WorkerProfile)
                .filter(
                    WorkerProfile.restaurant_id == restaurant_id,
                    WorkerProfile.status == WorkerStatus.ACTIVE,
                )
                .order_by(WorkerProfile.reliability_score.desc(), WorkerProfile.id)
                .all()
            )
            if w.has_position(Position.DELIVERY_PACK)
        ]
        worker_ids = [w.id for w in workers]
        if not worker_ids:
            return []

        on_time_off = {
            row.worker_profile_id
            for row in self.db.query(TimeOffRequest.worker_profile_id).filter(
                TimeOffRequest.worker_profile_id.in_(worker_ids),
                TimeOffRequest.status == TimeOffStatus.APPROVED,
                TimeOffRequest.start_date <= target_date,
                TimeOffRequest.end_date >= target_date,
            )
        }

        assigned_shifts = [
            s for s in self._scheduled_shifts(restaurant_id, target_date)
            if s.assigned_to_id in worker_ids
        ]

        preferences = (
            self.db.query(WorkerAvailability)
            .filter(
                WorkerAvailability.worker_profile_id.in_(worker_ids),
                WorkerAvailability.day_of_week == target_date.weekday(),
                WorkerAvailability.effective_from <= target_date,
                or_(
                    WorkerAvailability.effective_until.is_(None),
                    WorkerAvailability.effective_until >= target_date,
                ),
            )
            .all()
        )

        ranked = []
        for worker in workers:
            if worker.id in on_time_off:
                is_available, note = False, "On approved time off"
            elif any(
                s.assigned_to_id == worker.id and start_hour < s.end_hour and end_hour > s.start_time.hour
                for s in assigned_shifts
            ):
                is_available, note = False, "Has conflicting shift"
            else:
                within = any(
                    p.worker_profile_id == worker.id and start_hour >= p.start_hour and end_hour <= p.end_hour
                    for p in preferences
                )
                is_available = True
                note = "Within preferred availability" if within else "Outside preferred hours"

            ranked.append(AvailableWorker(
                worker_profile_id=worker.id,
                user_id=worker.user_id,
                first_name=worker.first_name,
                last_name=worker.last_name,
                positions=list(worker.positions or []),
                reliability_score=worker.reliability_score,
                shifts_completed=worker.shifts_completed,
                is_available=is_available,
                availability_note=note,
            ))

        ranked.sort(key=lambda w: (not w.is_available, -w.reliability_score))
        return ranked

    def auto_create_ghost_shifts(
        self,
        restaurant_id: int,
        opportunity_id: int,
        created_by_user_id: Optional[int] = None,
        auto_assign: bool = False,
    ) -> List[int]:
        """Create one delivery-pack shift per recommended staff member for an opportunity."""
        opportunity = self.db.get(OpportunityWindow, opportunity_id)
        if not opportunity or opportunity.restaurant_id != restaurant_id:
            raise NotFoundError("Opportunity", opportunity_id)

        day_start = datetime.combine(opportunity.date, time.min)
        start_time = day_start + timedelta(hours=opportunity.start_hour)
        end_time = day_start + timedelta(hours=opportunity.end_hour)
        length_hours = opportunity.end_hour - opportunity.start_hour
        changed_by = str(created_by_user_id) if created_by_user_id is not None else SYSTEM_USER
        now = self.clock.now()

        created_ids = []
        for _ in range(opportunity.recommended_staff):
            shift = Shift(
                restaurant_id=restaurant_id,
                position=Position.DELIVERY_PACK,
                type=ShiftType.GHOST_KITCHEN,
                status=ShiftStatus.PUBLISHED_OFFERED if auto_assign else ShiftStatus.PUBLISHED_UNASSIGNED,
                start_time=start_time,
                end_time=end_time,
                break_minutes=self.LONG_SHIFT_BREAK_MINUTES if length_hours >= self.LONG_SHIFT_HOURS else 0,
                auto_approve=True,
                created_by_id=created_by_user_id,
                notes=f"Ghost kitchen opportunity shift - Forecasted {opportunity.forecasted_orders} orders",
            )
            shift.status_history.append(ShiftStatusHistory(
                from_status="NONE",
                to_status=shift.status.value,
                changed_by=changed_by,
                reason="Auto-created from ghost kitchen opportunity",
                changed_at=now,
            ))
            self.db.add(shift)
            self.db.flush()
            created_ids.append(shift.id)

            if auto_assign:
                self._assign_top_worker(shift, opportunity, now)

        opportunity.status = OpportunityStatus.IN_PROGRESS
        self.db.commit()

        logger.info(
            f"Created {len(created_ids)} ghost kitchen shifts for opportunity {opportunity.id} "
            f"on {opportunity.date} ({opportunity.start_hour}:00-{opportunity.end_hour}:00)"
        )
        return created_ids

    def _assign_top_worker(self, shift: Shift, opportunity: OpportunityWindow, now: datetime) -> None:
        candidates = self.find_available_delivery_workers(
            shift.restaurant_id, opportunity.date, opportunity.start_hour, opportunity.end_hour
        )
        top = next((w for w in candidates if w.is_available), None)
        if not top:
            logger.info(f"No available delivery worker for shift {shift.id}")
            return

        shift.assigned_to_id = top.worker_profile_id
        shift.status = ShiftStatus.CONFIRMED
        shift.status_history.append(ShiftStatusHistory(
            from_status=ShiftStatus.PUBLISHED_OFFERED.value,
            to_status=ShiftStatus.CONFIRMED.value,
            changed_by=SYSTEM_USER,
            reason="Auto-assigned to highest rated available worker",
            changed_at=now,
        ))
        # Later shifts in the same batch must see this assignment as a conflict
        self.db.flush()
