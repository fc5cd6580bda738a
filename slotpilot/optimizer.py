"""Ranked search for open appointment slots, plus read-only schedule suggestions."""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterator, List, Optional, Set, Tuple

import structlog

from slotpilot.config import OptimizerSettings, UrgencyWeights
from slotpilot.domain import (
    UPCOMING_STATUSES,
    AppointmentSnapshot,
    AppointmentStatus,
    CandidateSlot,
    DateRange,
    Insight,
    InsightType,
    ScheduleGap,
    SchedulingPreferences,
    Urgency,
)
from slotpilot.errors import ValidationError
from slotpilot.gaps import GapDetector, free_intervals
from slotpilot.history import HistoryAccessor
from slotpilot.time_utils import day_bounds, minutes_between


logger = structlog.get_logger(__name__)

_NO_SHOW_PERIODS = ((12, "morning"), (17, "afternoon"), (24, "evening"))


def _align(moment: datetime, step_minutes: int) -> datetime:
    """Round ``moment`` up to the next multiple of ``step_minutes`` past midnight."""

    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = (moment - midnight).total_seconds()
    step = step_minutes * 60
    steps = -(-elapsed // step)
    return midnight + timedelta(seconds=steps * step)


def _slot_starts(
    free_start: datetime, free_end: datetime, duration: timedelta, step_minutes: int
) -> Iterator[datetime]:
    """Yield start times that fit ``duration`` inside ``[free_start, free_end)``.

    The interval's own start comes first even when it is off the step grid;
    later starts follow the grid.
    """

    if free_start + duration > free_end:
        return
    yield free_start
    cursor = _align(free_start, step_minutes)
    if cursor == free_start:
        cursor += timedelta(minutes=step_minutes)
    while cursor + duration <= free_end:
        yield cursor
        cursor += timedelta(minutes=step_minutes)


def _minutes_of_day(value: time) -> int:
    return value.hour * 60 + value.minute


class SlotOptimizer:
    def __init__(
        self,
        history: HistoryAccessor,
        gap_detector: GapDetector,
        settings: Optional[OptimizerSettings] = None,
    ) -> None:
        self.history = history
        self.gap_detector = gap_detector
        self.settings = settings or OptimizerSettings()

    # -- scoring --------------------------------------------------------------

    def _day_score(self, weekday: int, preferences: SchedulingPreferences) -> float:
        if not preferences.preferred_days:
            return 1.0
        if weekday in preferences.preferred_days:
            return 1.0
        if (weekday - 1) % 7 in preferences.preferred_days or (weekday + 1) % 7 in preferences.preferred_days:
            return 0.5
        return 0.0

    def _time_score(self, start: datetime, end: datetime, preferences: SchedulingPreferences) -> float:
        window_start, window_end = preferences.preferred_time_start, preferences.preferred_time_end
        if window_start is None and window_end is None:
            return 1.0
        lower = _minutes_of_day(window_start) if window_start else 0
        upper = _minutes_of_day(window_end) if window_end else 24 * 60
        slot_start = _minutes_of_day(start.time())
        slot_end = slot_start + int(minutes_between(start, end))
        distance = max(lower - slot_start, slot_end - upper, 0)
        if distance == 0:
            return 1.0
        if distance <= self.settings.time_tolerance_minutes:
            return 0.5
        return 0.0

    def _provider_score(self, provider_id: str, preferences: SchedulingPreferences, seen: Set[str]) -> float:
        if not preferences.preferred_provider_ids:
            return 1.0 if not seen or provider_id in seen else 0.6
        if provider_id in preferences.preferred_provider_ids:
            return 1.0
        if provider_id in seen:
            return 0.6
        return 0.3

    def _weights(self, urgency: Urgency) -> UrgencyWeights:
        return self.settings.weights[urgency.value]

    # -- search ---------------------------------------------------------------

    def _open_intervals(
        self, provider_id: str, day: date, now: datetime
    ) -> Tuple[List[Tuple[datetime, datetime]], List[ScheduleGap]]:
        window = self.history.working_window(provider_id, day)
        if window is None:
            return [], []
        blocks = self.history.schedule_blocks(provider_id, day)
        booked = self.history.provider_appointments(provider_id, window[0], window[1])
        occupied = [(block.start, block.end) for block in blocks if block.end > block.start]
        occupied.extend(
            (appt.start_time, appt.end_time)  # type: ignore[misc]
            for appt in booked
            if not appt.is_cancelled and appt.has_valid_times
        )
        gaps = self.gap_detector.find_gaps(provider_id, day, blocks, booked, now=now)
        return free_intervals(window, occupied), gaps

    def find_optimal_slots(
        self,
        patient_id: str,
        appointment_type_id: Optional[str],
        duration_minutes: int,
        date_range: DateRange,
        preferences: Optional[SchedulingPreferences] = None,
        urgency: Urgency = Urgency.NORMAL,
        *,
        now: datetime,
        limit: Optional[int] = None,
    ) -> List[CandidateSlot]:
        """Return the best open slots, highest score first.

        Urgent requests are ordered strictly by start time so the earliest
        valid slot always comes first.  Ordering is deterministic: ties break
        on start time and then provider id.
        """

        if duration_minutes <= 0:
            raise ValidationError(
                "Slot duration must be positive", details={"duration_minutes": duration_minutes}
            )
        preferences = preferences or SchedulingPreferences()
        weights = self._weights(urgency)
        duration = timedelta(minutes=duration_minutes)
        seen = {
            appt.provider_id
            for appt in self.history.patient_appointments(patient_id)
            if not appt.is_cancelled
        }

        horizon_start = max(day_bounds(date_range.start)[0], now)
        horizon_end = day_bounds(date_range.end)[1]
        span = max((horizon_end - horizon_start).total_seconds(), 1.0)
        earliest = _align(now, 1)

        candidates: List[CandidateSlot] = []
        for provider_id in self.history.providers_for_type(appointment_type_id):
            provider_score = self._provider_score(provider_id, preferences, seen)
            for day in date_range.days():
                if day < now.date() or day.weekday() in preferences.avoid_days:
                    continue
                intervals, gaps = self._open_intervals(provider_id, day, now)
                day_score = self._day_score(day.weekday(), preferences)
                for free_start, free_end in intervals:
                    for cursor in _slot_starts(max(free_start, earliest), free_end, duration, self.settings.step_minutes):
                        end = cursor + duration
                        preference = round((day_score + self._time_score(cursor, end, preferences) + provider_score) / 3, 4)
                        containing = [gap for gap in gaps if gap.contains(cursor, end)]
                        best_gap = max(containing, key=lambda gap: gap.priority, default=None)
                        gap_fill = best_gap.priority / 10 if best_gap is not None else 0.0
                        earliness = min(max(1.0 - (cursor - horizon_start).total_seconds() / span, 0.0), 1.0)
                        score = (
                            weights.preference * preference
                            + weights.gap_fill * gap_fill
                            + weights.earliness * earliness
                        )
                        reasons = []
                        if preferences.preferred_days and day.weekday() in preferences.preferred_days:
                            reasons.append("preferred day")
                        if provider_id in preferences.preferred_provider_ids:
                            reasons.append("preferred provider")
                        elif provider_id in seen:
                            reasons.append("continuity of care")
                        if best_gap is not None:
                            reasons.append(f"fills gap (priority {best_gap.priority})")
                        candidates.append(
                            CandidateSlot(
                                provider_id=provider_id,
                                start_time=cursor,
                                end_time=end,
                                score=round(score, 4),
                                preference_score=preference,
                                gap_fill_score=round(gap_fill, 4),
                                earliness_score=round(earliness, 4),
                                reasons=tuple(reasons),
                                fills_gap_id=best_gap.id if best_gap is not None else None,
                            )
                        )

        if urgency is Urgency.URGENT:
            candidates.sort(key=lambda slot: (slot.start_time, -slot.score, slot.provider_id))
        else:
            candidates.sort(key=lambda slot: (-slot.score, slot.start_time, slot.provider_id))
        ranked = candidates[: limit or self.settings.max_results]
        logger.info(
            "optimal_slots_found",
            patient_id=patient_id,
            urgency=urgency.value,
            considered=len(candidates),
            returned=len(ranked),
        )
        return ranked

    # -- read-only suggestions --------------------------------------------------

    def _appointments_between(self, start: datetime, end: datetime) -> List[AppointmentSnapshot]:
        found: Dict[str, AppointmentSnapshot] = {}
        for provider_id in self.history.provider_ids():
            for appointment in self.history.provider_appointments(provider_id, start, end):
                if appointment.start_time is not None and start <= appointment.start_time < end:
                    found[appointment.id] = appointment
        return sorted(found.values(), key=lambda appt: (appt.start_time, appt.id))

    def get_today_suggestions(self, *, now: datetime) -> List[Insight]:
        """Unconfirmed bookings today and a low-booking warning for the coming week."""

        today = now.date()
        insights: List[Insight] = []
        day_start, day_end = day_bounds(today)
        unconfirmed = [
            appt
            for appt in self._appointments_between(day_start, day_end)
            if appt.status is AppointmentStatus.SCHEDULED
        ]
        if unconfirmed:
            insights.append(
                Insight(
                    id=f"suggest-unconfirmed-{today.isoformat()}",
                    type=InsightType.WARNING,
                    category="no_show",
                    title="Unconfirmed Appointments",
                    description=f"{len(unconfirmed)} appointment(s) for today haven't been confirmed yet.",
                    priority=8,
                    action="Send confirmation reminders to these patients.",
                    data={"count": len(unconfirmed), "appointment_ids": [appt.id for appt in unconfirmed]},
                )
            )

        week_end = day_start + timedelta(days=7)
        booked = [
            appt
            for appt in self._appointments_between(day_start, week_end)
            if appt.status in UPCOMING_STATUSES
        ]
        providers = self.history.provider_ids()
        working_days = sum(
            1
            for offset in range(7)
            if any(
                self.history.working_window(provider_id, today + timedelta(days=offset)) is not None
                for provider_id in providers
            )
        )
        average = len(booked) / working_days if working_days else 0.0
        if working_days and average < self.settings.low_booking_daily_average:
            insights.append(
                Insight(
                    id=f"suggest-low-bookings-{today.isoformat()}",
                    type=InsightType.OPPORTUNITY,
                    category="utilization",
                    title="Low Booking Week",
                    description=(
                        f"Average of {average:.1f} bookings per day this week. Consider promotional outreach."
                    ),
                    priority=6,
                    action="Run a recall campaign or contact waitlist patients.",
                    data={"average": round(average, 2), "working_days": working_days},
                )
            )
        return insights

    def suggest_schedule_improvements(self, date_range: DateRange, *, now: datetime) -> List[Insight]:
        """Pattern-level suggestions for ``date_range``; nothing is recorded."""

        insights: List[Insight] = []
        suffix = f"{date_range.start.isoformat()}-{date_range.end.isoformat()}"
        start, end = day_bounds(date_range.start)[0], day_bounds(date_range.end)[1]
        appointments = self._appointments_between(start, end)

        type_counts = Counter(
            appt.appointment_type_id for appt in appointments if appt.appointment_type_id is not None
        )
        if len(type_counts) > 1:
            total = sum(type_counts.values())
            type_id, top = min(type_counts.items(), key=lambda item: (-item[1], item[0]))
            share = top / total
            name = self.history.appointment_type_name(type_id)
            if share > self.settings.type_concentration_threshold and name:
                insights.append(
                    Insight(
                        id=f"suggest-type-balance-{suffix}",
                        type=InsightType.INFO,
                        category="utilization",
                        title="Appointment Type Concentration",
                        description=f"{round(share * 100)}% of appointments are {name}. Consider diversifying services.",
                        priority=4,
                        data={"appointment_type_id": type_id, "share": round(share, 4)},
                    )
                )

        no_show_hours = Counter(
            appt.start_time.hour  # type: ignore[union-attr]
            for appt in appointments
            if appt.status is AppointmentStatus.NO_SHOW
        )
        if sum(no_show_hours.values()) >= self.settings.no_show_pattern_min_total:
            hour, count = min(no_show_hours.items(), key=lambda item: (-item[1], item[0]))
            if count >= self.settings.no_show_pattern_min_peak:
                period = next(label for bound, label in _NO_SHOW_PERIODS if hour < bound)
                insights.append(
                    Insight(
                        id=f"suggest-noshow-pattern-{suffix}",
                        type=InsightType.WARNING,
                        category="no_show",
                        title="No-Show Time Pattern",
                        description=(
                            f"Higher no-show rate for {period} appointments around {hour}:00. "
                            "Consider additional reminders for this time slot."
                        ),
                        priority=7,
                        action=f"Add an extra reminder for appointments scheduled around {hour}:00.",
                        data={"hour": hour, "count": count},
                    )
                )

        fragments: List[ScheduleGap] = []
        for provider_id in self.history.provider_ids():
            for day in date_range.days():
                if day < now.date():
                    continue
                fragments.extend(
                    gap
                    for gap in self.gap_detector.find_gaps(provider_id, day, now=now)
                    if gap.duration_minutes < self.settings.fragment_max_minutes
                )
        if len(fragments) >= self.settings.fragment_insight_threshold:
            minutes = sum(gap.duration_minutes for gap in fragments)
            insights.append(
                Insight(
                    id=f"suggest-fragmentation-{suffix}",
                    type=InsightType.INFO,
                    category="gap",
                    title="Fragmented Schedule",
                    description=(
                        f"{len(fragments)} short gaps totaling {minutes} minutes are too small for most visits. "
                        "Consider consolidating bookings."
                    ),
                    priority=5,
                    action="Shift adjacent bookings to merge short gaps into bookable slots.",
                    data={"count": len(fragments), "minutes": minutes},
                )
            )
        return insights


__all__ = ["SlotOptimizer"]
