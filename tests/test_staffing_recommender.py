"""
Tests for the staffing recommender.

Covers:
- Staff-per-hour formulas
- Consecutive gap detection and suggested shifts
- Overstaffing reductions
- Delivery worker ranking
- Ghost kitchen shift creation for opportunities
"""

import pytest
from datetime import date, datetime, timedelta

from ghost_kitchen.core.exceptions import NotFoundError
from ghost_kitchen.models import (
    OpportunityStatus, OpportunityWindow, Position, Shift, ShiftStatus, ShiftStatusHistory,
    ShiftType, TimeOffRequest, TimeOffStatus, WorkerAvailability, WorkerStatus,
)
from ghost_kitchen.schemas.forecast import HourlyForecast
from ghost_kitchen.schemas.staffing import AdjustmentType, ShiftPriority
from ghost_kitchen.services.demand_forecaster_service import DemandForecasterService
from ghost_kitchen.services.local_events import LocalEventService
from ghost_kitchen.services.staffing_recommender_service import StaffingRecommenderService

from tests.conftest import NOW, StubWeather, seed_patterns, tuesday_pattern

TUESDAY = NOW.date()


def forecasts(delivery=None, dine_in=None, hours=range(10, 23)):
    delivery = delivery or {}
    dine_in = dine_in or {}
    return [
        HourlyForecast(
            hour=h,
            delivery_forecast=delivery.get(h, 0),
            dine_in_forecast=dine_in.get(h, 0),
            confidence=0.8,
        )
        for h in hours
    ]


def shift(start_hour, end_hour, position=Position.SERVER, shift_id=None, day=TUESDAY):
    start = datetime.combine(day, datetime.min.time())
    return Shift(
        id=shift_id,
        restaurant_id=1,
        position=position,
        type=ShiftType.DINE_IN,
        status=ShiftStatus.CONFIRMED,
        start_time=start + timedelta(hours=start_hour),
        end_time=start + timedelta(hours=end_hour),
    )


@pytest.fixture
def recommender(db_session, clock) -> StaffingRecommenderService:
    return StaffingRecommenderService(db_session, clock=clock)


class TestStaffNeeded:
    """Test per-hour staffing formulas."""

    @pytest.mark.parametrize("orders,staff", [(0, 0), (-3, 0), (1, 1), (8, 1), (9, 2), (24, 3), (30, 4)])
    def test_delivery_staff(self, recommender, orders, staff):
        assert recommender.get_delivery_staff_needed(orders) == staff

    @pytest.mark.parametrize("covers,staff", [(0, 0), (15, 1), (16, 2), (45, 3)])
    def test_dine_in_staff(self, recommender, covers, staff):
        assert recommender.get_dine_in_staff_needed(covers) == staff


class TestSuggestedShifts:
    """Test gap detection and suggested shifts."""

    def test_delivery_gap(self, recommender):
        """Test four understaffed evening hours become one HIGH priority pack shift."""
        recommendation = recommender.build_recommendation(
            TUESDAY, forecasts(delivery={17: 24, 18: 24, 19: 24, 20: 24}), []
        )

        assert recommendation.total_recommended_staff == 3
        [suggested] = recommendation.suggested_shifts
        assert suggested.position == Position.DELIVERY_PACK
        assert suggested.type == ShiftType.GHOST_KITCHEN
        assert suggested.start_hour == 17
        assert suggested.end_hour == 21
        assert suggested.priority == ShiftPriority.HIGH
        assert suggested.reason == "Delivery forecast indicates 3 additional staff needed"
        assert recommendation.adjustments == []

    def test_inclusive_gap_end(self, db_session, clock):
        """Test the inclusive convention reports the last understaffed hour."""
        recommender = StaffingRecommenderService(db_session, clock=clock, inclusive_gap_end=True)
        recommendation = recommender.build_recommendation(
            TUESDAY, forecasts(delivery={17: 24, 18: 24, 19: 24, 20: 24}), []
        )
        assert recommendation.suggested_shifts[0].end_hour == 20

    def test_single_hour_gap_ignored(self, recommender):
        recommendation = recommender.build_recommendation(TUESDAY, forecasts(delivery={12: 8}), [])
        assert recommendation.suggested_shifts == []
        assert recommendation.by_hour[2].staffing_gap == 1

    def test_skipped_hour_breaks_run(self, recommender):
        """Test runs only join on adjacent hours."""
        recommendation = recommender.build_recommendation(
            TUESDAY, forecasts(delivery={12: 8, 13: 8, 15: 8, 16: 8}, hours=[12, 13, 15, 16]), []
        )
        assert [(s.start_hour, s.end_hour) for s in recommendation.suggested_shifts] == [(12, 14), (15, 17)]

    def test_dine_in_gap(self, recommender):
        """Test a dine-in shortfall suggests a MEDIUM priority server shift."""
        recommendation = recommender.build_recommendation(TUESDAY, forecasts(dine_in={11: 15, 12: 15}), [])

        [suggested] = recommendation.suggested_shifts
        assert suggested.position == Position.SERVER
        assert suggested.type == ShiftType.DINE_IN
        assert suggested.priority == ShiftPriority.MEDIUM
        assert suggested.reason == "Dine-in forecast indicates 1 additional staff needed"

    def test_scheduled_pack_staff_cover_delivery(self, recommender):
        """Test the dominant need is judged after scheduled staff by position."""
        scheduled = [
            shift(17, 21, Position.DELIVERY_PACK, shift_id=1),
            shift(17, 21, Position.DELIVERY_PACK, shift_id=2),
        ]
        recommendation = recommender.build_recommendation(
            TUESDAY,
            forecasts(delivery={17: 16, 18: 16}, dine_in={17: 30, 18: 30}),
            scheduled,
        )

        hour_17 = recommendation.by_hour[7]
        assert hour_17.current_scheduled == 2
        assert hour_17.scheduled_delivery_staff == 2
        assert hour_17.staffing_gap == 2
        [suggested] = recommendation.suggested_shifts
        assert suggested.position == Position.SERVER


class TestAdjustments:
    """Test overstaffing reductions."""

    def test_reduce_overstaffed_hours(self, recommender):
        """Test each hour overstaffed by more than one proposes a REDUCE."""
        scheduled = [shift(12, 20, shift_id=i) for i in (1, 2, 3)]
        recommendation = recommender.build_recommendation(TUESDAY, forecasts(hours=range(12, 20)), scheduled)

        adjustments = recommendation.adjustments
        assert len(adjustments) == 8
        first = adjustments[0]
        assert first.type == AdjustmentType.REDUCE
        assert first.existing_shift_id == 1
        assert (first.original_start_hour, first.original_end_hour) == (12, 20)
        assert (first.suggested_start_hour, first.suggested_end_hour) == (13, 20)
        assert first.reason == "Overstaffed by 3 at 12:00"

        last = adjustments[-1]
        assert (last.suggested_start_hour, last.suggested_end_hour) == (12, 19)
        assert last.reason == "Overstaffed by 3 at 19:00"

    def test_one_extra_is_tolerated(self, recommender):
        recommendation = recommender.build_recommendation(
            TUESDAY, forecasts(hours=range(12, 16)), [shift(12, 16, shift_id=1)]
        )
        assert recommendation.adjustments == []

    def test_single_hour_shift_is_removed(self, recommender):
        """Test an overstaffed one hour shift is removed rather than cut to nothing."""
        scheduled = [shift(12, 13, shift_id=i) for i in (1, 2, 3)]
        recommendation = recommender.build_recommendation(TUESDAY, forecasts(hours=[12]), scheduled)

        [adjustment] = recommendation.adjustments
        assert adjustment.type == AdjustmentType.REMOVE
        assert adjustment.existing_shift_id == 1
        assert (adjustment.original_start_hour, adjustment.original_end_hour) == (12, 13)
        assert adjustment.suggested_start_hour is None
        assert adjustment.suggested_end_hour is None

    def test_last_hour_truncates_end(self, recommender):
        scheduled = [shift(12, 14, shift_id=i) for i in (1, 2, 3)]
        recommendation = recommender.build_recommendation(TUESDAY, forecasts(hours=[13]), scheduled)

        [adjustment] = recommendation.adjustments
        assert adjustment.type == AdjustmentType.REDUCE
        assert (adjustment.suggested_start_hour, adjustment.suggested_end_hour) == (12, 13)


class TestRecommendationFromStore:
    """Test recommendations built from stored forecasts and shifts."""

    def test_uses_forecaster_and_schedule(self, db_session, cache, clock, restaurant, make_shift):
        seed_patterns(cache, restaurant.id, tuesday_pattern(hour=18, avg_dine_in=0, avg_delivery=24))
        forecaster = DemandForecasterService(db_session, cache=cache, weather=StubWeather(),
                                             events=LocalEventService(holiday_attendance=0), clock=clock)
        recommender = StaffingRecommenderService(db_session, forecaster=forecaster, clock=clock)
        evening = datetime.combine(TUESDAY, datetime.min.time()) + timedelta(hours=17)
        make_shift(evening, evening + timedelta(hours=3), status=ShiftStatus.CONFIRMED)
        make_shift(evening, evening + timedelta(hours=3), status=ShiftStatus.CANCELLED)

        recommendation = recommender.get_staffing_recommendation(restaurant.id, TUESDAY)

        assert len(recommendation.by_hour) == 24
        hour_18 = recommendation.by_hour[18]
        assert hour_18.recommended_delivery_staff == 3
        assert hour_18.current_scheduled == 1
        assert hour_18.staffing_gap == 2
        assert recommender.suggest_shift_adjustments(restaurant.id, TUESDAY) == []


class TestAvailableWorkers:
    """Test delivery worker ranking."""

    def test_ranking(self, recommender, db_session, make_worker, make_shift):
        """Test available workers first, each group by reliability."""
        ava = make_worker("Ava", reliability_score=4.5)
        ben = make_worker("Ben", reliability_score=4.8)
        cal = make_worker("Cal", reliability_score=3.0)
        dee = make_worker("Dee", reliability_score=4.0)
        make_worker("Eve", positions=[Position.SERVER.value], reliability_score=5.0)
        make_worker("Fin", reliability_score=5.0, status=WorkerStatus.INACTIVE)

        db_session.add(TimeOffRequest(worker_profile_id=ava.id, start_date=TUESDAY - timedelta(days=1),
                                      end_date=TUESDAY + timedelta(days=1), status=TimeOffStatus.APPROVED))
        db_session.add(TimeOffRequest(worker_profile_id=dee.id, start_date=TUESDAY, end_date=TUESDAY,
                                      status=TimeOffStatus.PENDING))
        db_session.add(WorkerAvailability(worker_profile_id=cal.id, day_of_week=TUESDAY.weekday(),
                                          start_time="16:00", end_time="22:00", effective_from=date(2026, 1, 1)))
        db_session.commit()
        afternoon = datetime.combine(TUESDAY, datetime.min.time()) + timedelta(hours=16)
        make_shift(afternoon, afternoon + timedelta(hours=3), status=ShiftStatus.CONFIRMED, assigned_to=ben)

        ranked = recommender.find_available_delivery_workers(ava.restaurant_id, TUESDAY, 17, 21)

        assert [w.first_name for w in ranked] == ["Dee", "Cal", "Ben", "Ava"]
        assert [w.is_available for w in ranked] == [True, True, False, False]
        assert [w.availability_note for w in ranked] == [
            "Outside preferred hours",
            "Within preferred availability",
            "Has conflicting shift",
            "On approved time off",
        ]

    def test_adjacent_shift_is_not_a_conflict(self, recommender, make_worker, make_shift):
        worker = make_worker("Ava")
        morning = datetime.combine(TUESDAY, datetime.min.time()) + timedelta(hours=11)
        make_shift(morning, morning + timedelta(hours=6), status=ShiftStatus.CONFIRMED, assigned_to=worker)

        [ranked] = recommender.find_available_delivery_workers(worker.restaurant_id, TUESDAY, 17, 21)
        assert ranked.is_available is True

    def test_no_workers(self, recommender, restaurant):
        assert recommender.find_available_delivery_workers(restaurant.id, TUESDAY, 17, 21) == []


class TestAutoCreateShifts:
    """Test shift creation for an accepted opportunity."""

    @pytest.fixture
    def opportunity(self, db_session, restaurant) -> OpportunityWindow:
        row = OpportunityWindow(
            restaurant_id=restaurant.id,
            date=TUESDAY,
            start_hour=17,
            end_hour=23,
            score=80,
            status=OpportunityStatus.ACCEPTED,
            forecasted_orders=60,
            recommended_staff=2,
            potential_revenue=2100,
            confidence=0.8,
        )
        db_session.add(row)
        db_session.commit()
        return row

    def test_creates_unassigned_shifts(self, recommender, db_session, restaurant, opportunity):
        ids = recommender.auto_create_ghost_shifts(restaurant.id, opportunity.id, created_by_user_id=5)

        assert len(ids) == 2
        shifts = db_session.query(Shift).filter(Shift.id.in_(ids)).all()
        for created in shifts:
            assert created.position == Position.DELIVERY_PACK
            assert created.type == ShiftType.GHOST_KITCHEN
            assert created.status == ShiftStatus.PUBLISHED_UNASSIGNED
            assert created.start_time == datetime(2026, 3, 10, 17, 0)
            assert created.end_time == datetime(2026, 3, 10, 23, 0)
            assert created.break_minutes == 30
            assert created.auto_approve is True
            assert created.created_by_id == 5
            assert "Forecasted 60 orders" in created.notes
            [history] = created.status_history
            assert history.from_status == "NONE"
            assert history.to_status == "PUBLISHED_UNASSIGNED"
            assert history.changed_by == "5"
            assert history.reason == "Auto-created from ghost kitchen opportunity"

        db_session.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.IN_PROGRESS

    def test_auto_assign_best_workers(self, recommender, db_session, restaurant, opportunity, make_worker):
        """Test each shift goes to the best worker still free."""
        top = make_worker("Top", reliability_score=4.9)
        second = make_worker("Second", reliability_score=4.0)

        ids = recommender.auto_create_ghost_shifts(restaurant.id, opportunity.id, auto_assign=True)

        shifts = [db_session.get(Shift, i) for i in ids]
        assert [s.assigned_to_id for s in shifts] == [top.id, second.id]
        assert all(s.status == ShiftStatus.CONFIRMED for s in shifts)
        history = (
            db_session.query(ShiftStatusHistory)
            .filter(ShiftStatusHistory.shift_id == ids[0])
            .order_by(ShiftStatusHistory.id)
            .all()
        )
        assert [(h.from_status, h.to_status) for h in history] == [
            ("NONE", "PUBLISHED_OFFERED"),
            ("PUBLISHED_OFFERED", "CONFIRMED"),
        ]
        assert history[1].reason == "Auto-assigned to highest rated available worker"

    def test_auto_assign_without_workers(self, recommender, db_session, restaurant, opportunity):
        ids = recommender.auto_create_ghost_shifts(restaurant.id, opportunity.id, auto_assign=True)
        assert all(db_session.get(Shift, i).status == ShiftStatus.PUBLISHED_OFFERED for i in ids)

    def test_short_window_has_no_break(self, recommender, db_session, restaurant, opportunity):
        opportunity.end_hour = 20
        db_session.commit()
        [first, _] = recommender.auto_create_ghost_shifts(restaurant.id, opportunity.id)
        assert db_session.get(Shift, first).break_minutes == 0

    def test_unknown_opportunity(self, recommender, restaurant):
        with pytest.raises(NotFoundError, match="Opportunity not found"):
            recommender.auto_create_ghost_shifts(restaurant.id, 999)

    def test_other_restaurants_opportunity(self, recommender, restaurant, opportunity):
        with pytest.raises(NotFoundError):
            recommender.auto_create_ghost_shifts(restaurant.id + 1, opportunity.id)
