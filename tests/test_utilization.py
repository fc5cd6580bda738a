from datetime import date, timedelta

import pytest

from slotpilot.config import UtilizationSettings
from slotpilot.domain import AppointmentStatus, DateRange, InsightType, TimeBlock
from slotpilot.errors import ValidationError
from slotpilot.utilization import UtilizationCalculator, utilization_rate

from conftest import at


@pytest.fixture
def calculator(history):
    return UtilizationCalculator(history, UtilizationSettings())


def test_daily_metric(calculator, monday):
    metric = calculator.calculate_daily('prov-a', monday)

    assert metric.available_minutes == 480
    assert metric.booked_minutes == 120
    assert metric.gap_minutes == 360
    assert metric.utilization_rate == pytest.approx(0.25)
    assert metric.scheduled_count == 2
    assert metric.potential_revenue == pytest.approx(600.0)
    assert metric.actual_revenue == 0.0
    assert metric.lost_revenue == pytest.approx(600.0)


def test_non_working_day_is_not_applicable(calculator, monday):
    metric = calculator.calculate_daily('prov-a', monday + timedelta(days=5))
    assert metric.available_minutes == 0
    assert metric.utilization_rate is None
    assert metric.gap_minutes == 0


def test_cancelled_excluded_and_blocks_reduce_availability(calculator, history, make_appointment, monday):
    history.add_appointment(
        make_appointment('cx', 'pat-z', 'prov-a', at(monday, 14), status=AppointmentStatus.CANCELLED)
    )
    history.add_block('prov-a', TimeBlock(at(monday, 12), at(monday, 13), 'lunch'))
    history.add_block('prov-a', TimeBlock(at(monday, 12, 30), at(monday, 13, 30), 'admin'))

    metric = calculator.calculate_daily('prov-a', monday)
    assert metric.available_minutes == 390
    assert metric.booked_minutes == 120
    assert metric.cancelled_count == 1


def test_rate_is_clamped(calculator, history, make_appointment, monday):
    history.add_appointment(make_appointment('extra', 'pat-z', 'prov-b', at(monday, 9), minutes=120))
    metric = calculator.calculate_daily('prov-b', monday)
    assert metric.booked_minutes == 240
    assert metric.utilization_rate == 1.0
    assert metric.gap_minutes == 0


def test_recalculation_overwrites(calculator, history, make_appointment, monday):
    calculator.calculate_daily('prov-b', monday)
    history.add_appointment(make_appointment('late', 'pat-z', 'prov-b', at(monday, 10)))
    calculator.calculate_daily('prov-b', monday)

    stored = calculator.store.list('prov-b')
    assert len(stored) == 1
    assert stored[0].booked_minutes == 180


def test_utilization_rate_helper():
    assert utilization_rate(30, 0) is None
    assert utilization_rate(30, 60) == 0.5
    assert utilization_rate(90, 60) == 1.0


def test_weekly_trend_aligns_to_iso_weeks(calculator, monday):
    metrics = calculator.trend('prov-a', 'week', 3, end=monday + timedelta(days=2))

    assert [metric.date for metric in metrics] == [date(2026, 10, 5), date(2026, 10, 12), date(2026, 10, 19)]
    assert all(metric.date.weekday() == 0 for metric in metrics)
    assert metrics[0].available_minutes == 5 * 480
    # the current week stops at the requested end day
    assert metrics[-1].available_minutes == 3 * 480
    assert metrics[-1].booked_minutes == 120


def test_monthly_trend_aligns_to_calendar_months(calculator, monday):
    metrics = calculator.trend('prov-a', 'month', 2, end=monday)
    assert [metric.date for metric in metrics] == [date(2026, 9, 1), date(2026, 10, 1)]
    assert {metric.period for metric in metrics} == {'month'}


def test_trend_rejects_bad_arguments(calculator, monday):
    with pytest.raises(ValidationError):
        calculator.trend('prov-a', 'fortnight', 3, end=monday)
    with pytest.raises(ValidationError):
        calculator.trend('prov-a', 'day', 0, end=monday)


def test_trend_summary_direction(calculator, history, make_appointment, monday):
    first = monday - timedelta(days=14)
    for offset in range(3):
        day = monday + timedelta(days=offset)
        for hour in (12, 13, 14, 15):
            history.add_appointment(make_appointment(f'fill-{offset}-{hour}', 'pat-z', 'prov-a', at(day, hour)))

    summary = calculator.trend_summary('prov-a', 'day', 17, end=monday + timedelta(days=2))
    assert summary.metrics[0].date == first
    assert summary.trend == 'improving'
    assert summary.average_rate is not None


def test_organization_summary_and_insights(calculator, monday):
    period = DateRange(monday, monday)
    summary = calculator.organization_summary(period)
    assert summary.overall.booked_minutes == 240
    assert summary.overall.available_minutes == 660
    assert summary.no_show_rate == 0.0

    insights = calculator.generate_utilization_insights(period)
    titles = [insight.title for insight in insights]
    assert 'Critical: Low Booking Rate' in titles
    assert 'Low Utilization: prov-a' in titles
    assert 'Low Utilization: prov-b' not in titles
    assert all(insight.type is InsightType.WARNING for insight in insights)
    assert 'Revenue Opportunity' not in titles


def test_trend_and_summaries_do_not_touch_the_store(calculator, monday):
    calculator.trend('prov-a', 'week', 2, end=monday)
    calculator.organization_summary(DateRange(monday, monday + timedelta(days=4)))
    calculator.generate_utilization_insights(DateRange(monday, monday))
    assert calculator.store.list() == []

    calculator.calculate_daily('prov-a', monday)
    assert [metric.date for metric in calculator.store.list()] == [monday]
