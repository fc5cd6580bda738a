"""Provider utilization metrics and calendar-aligned trends."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional

import structlog

from slotpilot.config import UtilizationSettings
from slotpilot.domain import (
    AppointmentStatus,
    DateRange,
    Insight,
    InsightType,
    UtilizationMetric,
)
from slotpilot.errors import ValidationError
from slotpilot.gaps import merge_intervals
from slotpilot.history import HistoryAccessor
from slotpilot.stores import UtilizationStore
from slotpilot.time_utils import bucket_end, bucket_start, day_bounds, minutes_between, previous_bucket


logger = structlog.get_logger(__name__)

PERIODS = ("day", "week", "month")

_SCHEDULED_STATUSES = frozenset(
    {
        AppointmentStatus.SCHEDULED,
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
    }
)


def utilization_rate(booked_minutes: float, available_minutes: float) -> Optional[float]:
    """Return ``booked / available`` clamped to ``[0, 1]``, or ``None`` for non-working time."""

    if available_minutes <= 0:
        return None
    return round(min(max(booked_minutes / available_minutes, 0.0), 1.0), 4)


@dataclass(slots=True)
class TrendSummary:
    provider_id: str
    period: str
    metrics: List[UtilizationMetric]
    average_rate: Optional[float]
    trend: str


@dataclass(slots=True)
class OrganizationSummary:
    date_range: DateRange
    overall: UtilizationMetric
    by_provider: List[UtilizationMetric] = field(default_factory=list)

    @property
    def no_show_rate(self) -> float:
        attended_or_missed = self.overall.scheduled_count + self.overall.no_show_count
        if attended_or_missed == 0:
            return 0.0
        return self.overall.no_show_count / attended_or_missed


class UtilizationCalculator:
    def __init__(
        self,
        history: HistoryAccessor,
        settings: Optional[UtilizationSettings] = None,
        store: Optional[UtilizationStore] = None,
    ) -> None:
        self.history = history
        self.settings = settings or UtilizationSettings()
        self.store = store if store is not None else UtilizationStore()

    def _available_minutes(self, provider_id: str, day: date) -> int:
        window = self.history.working_window(provider_id, day)
        if window is None:
            return 0
        window_start, window_end = window
        blocked = 0.0
        clipped = [
            (max(block.start, window_start), min(block.end, window_end))
            for block in self.history.schedule_blocks(provider_id, day)
        ]
        for start, end in merge_intervals(clipped):
            blocked += minutes_between(start, end)
        return max(int(round(minutes_between(window_start, window_end) - blocked)), 0)

    def compute_daily(self, provider_id: str, day: date) -> UtilizationMetric:
        """Compute the metric for one provider-day without storing it."""

        available = self._available_minutes(provider_id, day)
        day_start, day_end = day_bounds(day)
        booked = completed_minutes = 0.0
        counts: Dict[str, int] = {"scheduled": 0, "completed": 0, "no_show": 0, "cancelled": 0}
        for appointment in self.history.provider_appointments(provider_id, day_start, day_end):
            if appointment.start_time is None or appointment.start_time.date() != day:
                continue
            if appointment.is_cancelled:
                counts["cancelled"] += 1
                continue
            duration = appointment.duration_minutes
            booked += duration
            if appointment.status is AppointmentStatus.NO_SHOW:
                counts["no_show"] += 1
            elif appointment.status in _SCHEDULED_STATUSES:
                counts["scheduled"] += 1
                if appointment.status is AppointmentStatus.COMPLETED:
                    counts["completed"] += 1
                    completed_minutes += duration

        booked_minutes = int(round(booked))
        rate_per_minute = self.settings.revenue_per_minute
        return UtilizationMetric(
            provider_id=provider_id,
            date=day,
            booked_minutes=booked_minutes,
            available_minutes=available,
            gap_minutes=max(available - booked_minutes, 0),
            utilization_rate=utilization_rate(booked_minutes, available),
            scheduled_count=counts["scheduled"],
            completed_count=counts["completed"],
            no_show_count=counts["no_show"],
            cancelled_count=counts["cancelled"],
            potential_revenue=round(available * rate_per_minute, 2),
            actual_revenue=round(completed_minutes * rate_per_minute, 2),
            lost_revenue=round(max(available - completed_minutes, 0.0) * rate_per_minute, 2),
        )

    def calculate_daily(self, provider_id: str, day: date) -> UtilizationMetric:
        """Compute and upsert the daily metric for ``(provider_id, day)``."""

        metric = self.store.upsert(self.compute_daily(provider_id, day))
        logger.debug(
            "utilization_calculated",
            provider_id=provider_id,
            date=day.isoformat(),
            utilization_rate=metric.utilization_rate,
        )
        return metric

    def aggregate(
        self,
        provider_id: str,
        date_range: DateRange,
        *,
        period: str = "day",
        label: Optional[date] = None,
    ) -> UtilizationMetric:
        """Sum daily metrics across ``date_range`` into one metric; nothing is stored."""

        daily = [self.compute_daily(provider_id, day) for day in date_range.days()]
        return _combine(provider_id, label or date_range.start, period, daily)

    def trend(
        self,
        provider_id: str,
        period: str,
        count: int,
        *,
        end: date,
    ) -> List[UtilizationMetric]:
        """Return ``count`` calendar-aligned buckets ending with the one containing ``end``.

        Weeks are ISO weeks starting on Monday and months are calendar months.
        Each bucket is dated by its first day; days after ``end`` are excluded.
        """

        if period not in PERIODS:
            raise ValidationError(f"Unsupported trend period {period!r}", details={"period": period})
        if count < 1:
            raise ValidationError("Trend count must be positive", details={"count": count})

        starts = [bucket_start(end, period)]
        while len(starts) < count:
            starts.append(previous_bucket(starts[-1], period))
        metrics = []
        for start in reversed(starts):
            stop = min(bucket_end(start, period), end)
            metrics.append(self.aggregate(provider_id, DateRange(start, stop), period=period, label=start))
        return metrics

    def trend_summary(self, provider_id: str, period: str, count: int, *, end: date) -> TrendSummary:
        metrics = self.trend(provider_id, period, count, end=end)
        rates = [metric.utilization_rate for metric in metrics if metric.utilization_rate is not None]
        average = round(sum(rates) / len(rates), 4) if rates else None

        direction = "stable"
        if len(rates) >= 3:
            older = sum(rates[:3]) / 3
            recent = sum(rates[-3:]) / 3
            if recent > older + self.settings.trend_margin:
                direction = "improving"
            elif recent < older - self.settings.trend_margin:
                direction = "declining"
        return TrendSummary(
            provider_id=provider_id,
            period=period,
            metrics=metrics,
            average_rate=average,
            trend=direction,
        )

    def organization_summary(
        self,
        date_range: DateRange,
        provider_ids: Optional[Iterable[str]] = None,
    ) -> OrganizationSummary:
        by_provider = [
            self.aggregate(provider_id, date_range)
            for provider_id in (provider_ids or self.history.provider_ids())
        ]
        overall = _combine("*", date_range.start, "range", by_provider)
        return OrganizationSummary(date_range=date_range, overall=overall, by_provider=by_provider)

    def generate_utilization_insights(
        self,
        date_range: DateRange,
        provider_ids: Optional[Iterable[str]] = None,
    ) -> List[Insight]:
        summary = self.organization_summary(date_range, provider_ids)
        overall = summary.overall
        suffix = f"{date_range.start.isoformat()}-{date_range.end.isoformat()}"
        cfg = self.settings
        insights: List[Insight] = []

        rate = overall.utilization_rate
        if rate is not None and rate < cfg.critical_threshold:
            insights.append(
                Insight(
                    id=f"util-booking-critical-{suffix}",
                    type=InsightType.WARNING,
                    category="utilization",
                    title="Critical: Low Booking Rate",
                    description=(
                        f"Overall booking rate is {round(rate * 100)}%, below the critical "
                        f"threshold of {round(cfg.critical_threshold * 100)}%."
                    ),
                    priority=10,
                    action="Review marketing efforts and consider promotional campaigns to increase bookings.",
                    data={"rate": rate},
                )
            )
        elif rate is not None and rate < cfg.warning_threshold:
            insights.append(
                Insight(
                    id=f"util-booking-warning-{suffix}",
                    type=InsightType.WARNING,
                    category="utilization",
                    title="Low Booking Rate",
                    description=(
                        f"Overall booking rate is {round(rate * 100)}%, below the target "
                        f"of {round(cfg.warning_threshold * 100)}%."
                    ),
                    priority=7,
                    action="Consider running recall campaigns or contacting waitlist patients.",
                    data={"rate": rate},
                )
            )

        no_show_rate = summary.no_show_rate
        if no_show_rate > 0.15:
            insights.append(
                Insight(
                    id=f"util-noshow-high-{suffix}",
                    type=InsightType.WARNING,
                    category="no_show",
                    title="High No-Show Rate",
                    description=(
                        f"No-show rate is {round(no_show_rate * 100)}%, which is above the "
                        "acceptable threshold of 15%."
                    ),
                    priority=8,
                    action="Implement or enhance appointment reminders and consider deposit requirements.",
                    data={"no_show_count": overall.no_show_count, "rate": round(no_show_rate, 4)},
                )
            )

        for metric in summary.by_provider:
            if metric.utilization_rate is not None and metric.utilization_rate < cfg.critical_threshold:
                insights.append(
                    Insight(
                        id=f"util-provider-{metric.provider_id}-{suffix}",
                        type=InsightType.WARNING,
                        category="utilization",
                        title=f"Low Utilization: {metric.provider_id}",
                        description=(
                            f"{metric.provider_id} has an overall utilization of "
                            f"{round(metric.utilization_rate * 100)}%."
                        ),
                        priority=6,
                        action=f"Review {metric.provider_id}'s schedule and consider adjusting availability.",
                        data={"provider_id": metric.provider_id, "rate": metric.utilization_rate},
                    )
                )

        if overall.lost_revenue > 1000:
            insights.append(
                Insight(
                    id=f"util-revenue-{suffix}",
                    type=InsightType.OPPORTUNITY,
                    category="revenue",
                    title="Revenue Opportunity",
                    description=(
                        f"${overall.lost_revenue:,.0f} in potential revenue lost due to unfilled time slots."
                    ),
                    priority=9,
                    action="Focus on filling gaps and reducing no-shows to capture this revenue.",
                    data={"lost_revenue": overall.lost_revenue},
                )
            )
        return insights


def _combine(
    provider_id: str,
    label: date,
    period: str,
    metrics: List[UtilizationMetric],
) -> UtilizationMetric:
    booked = sum(metric.booked_minutes for metric in metrics)
    available = sum(metric.available_minutes for metric in metrics)
    return UtilizationMetric(
        provider_id=provider_id,
        date=label,
        booked_minutes=booked,
        available_minutes=available,
        gap_minutes=sum(metric.gap_minutes for metric in metrics),
        utilization_rate=utilization_rate(booked, available),
        scheduled_count=sum(metric.scheduled_count for metric in metrics),
        completed_count=sum(metric.completed_count for metric in metrics),
        no_show_count=sum(metric.no_show_count for metric in metrics),
        cancelled_count=sum(metric.cancelled_count for metric in metrics),
        potential_revenue=round(sum(metric.potential_revenue for metric in metrics), 2),
        actual_revenue=round(sum(metric.actual_revenue for metric in metrics), 2),
        lost_revenue=round(sum(metric.lost_revenue for metric in metrics), 2),
        period=period,
    )


__all__ = [
    "PERIODS",
    "TrendSummary",
    "OrganizationSummary",
    "UtilizationCalculator",
    "utilization_rate",
]
