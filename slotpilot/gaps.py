"""Detection and scoring of idle intervals in a provider's working day."""

from __future__ import annotations

import hashlib
import math
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from slotpilot.config import GapSettings
from slotpilot.domain import (
    AppointmentSnapshot,
    DateRange,
    GapStatus,
    GapType,
    Insight,
    InsightType,
    ScheduleGap,
    TimeBlock,
)
from slotpilot.history import HistoryAccessor
from slotpilot.metrics import GAPS_DETECTED
from slotpilot.stores import GapRegistry
from slotpilot.time_utils import minutes_between


logger = structlog.get_logger(__name__)

Interval = Tuple[datetime, datetime]


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """Sort and merge overlapping or touching intervals.

    Intervals with ``end <= start`` are dropped.
    """

    ordered = sorted((start, end) for start, end in intervals if end > start)
    merged: List[Interval] = []
    for start, end in ordered:
        if merged and start <= merged[-1][1]:
            previous_start, previous_end = merged[-1]
            merged[-1] = (previous_start, max(previous_end, end))
        else:
            merged.append((start, end))
    return merged


def free_intervals(window: Interval, occupied: Iterable[Interval]) -> List[Interval]:
    """Return the parts of ``window`` not covered by ``occupied``."""

    window_start, window_end = window
    clipped = [
        (max(start, window_start), min(end, window_end))
        for start, end in occupied
        if start < window_end and end > window_start
    ]
    free: List[Interval] = []
    cursor = window_start
    for start, end in merge_intervals(clipped):
        if start > cursor:
            free.append((cursor, start))
        cursor = max(cursor, end)
    if cursor < window_end:
        free.append((cursor, window_end))
    return free


def gap_identifier(provider_id: str, start: datetime, end: datetime) -> str:
    digest = hashlib.sha256(f"{provider_id}|{start.isoformat()}|{end.isoformat()}".encode("utf-8"))
    return f"gap_{digest.hexdigest()[:16]}"


def calculate_priority(
    duration_minutes: float,
    hours_until: float,
    fill_rate: float,
    gap_type: GapType,
    settings: GapSettings,
) -> int:
    """Score a gap from 1 to 10; higher means more worth filling.

    Longer gaps score higher up to ``duration_cap_minutes``, near-term gaps
    score higher, and slots that are historically easy to fill score higher.
    """

    capped = min(max(duration_minutes, 0.0), settings.duration_cap_minutes)
    score = 1.0 + capped / settings.duration_cap_minutes * 4.0
    if hours_until <= 24:
        score += 3
    elif hours_until <= 72:
        score += 2
    elif hours_until <= 24 * 7:
        score += 1
    score += round(min(max(fill_rate, 0.0), 1.0) * 3)
    if gap_type is GapType.CANCELLATION:
        score += 1
    return int(min(max(math.floor(score + 0.5), 1), 10))


class GapDetector:
    """Finds fillable gaps and tracks them in a :class:`GapRegistry`."""

    def __init__(
        self,
        history: HistoryAccessor,
        settings: Optional[GapSettings] = None,
        registry: Optional[GapRegistry] = None,
    ) -> None:
        self.history = history
        self.settings = settings or GapSettings()
        self.registry = registry if registry is not None else GapRegistry()

    def _fill_rate(self, provider_id: str, start: datetime, now: datetime) -> float:
        rate = self.history.slot_fill_rate(provider_id, start.weekday(), start.hour, now)
        return self.settings.default_fill_rate if rate is None else rate

    def find_gaps(
        self,
        provider_id: str,
        day: date,
        schedule_blocks: Optional[Sequence[TimeBlock]] = None,
        booked_appointments: Optional[Sequence[AppointmentSnapshot]] = None,
        *,
        now: datetime,
    ) -> List[ScheduleGap]:
        """Compute gaps without recording them."""

        window = self.history.working_window(provider_id, day)
        if window is None:
            return []
        if schedule_blocks is None:
            schedule_blocks = self.history.schedule_blocks(provider_id, day)
        if booked_appointments is None:
            booked_appointments = self.history.provider_appointments(provider_id, window[0], window[1])

        occupied: List[Interval] = []
        cancelled: List[Interval] = []
        for appointment in booked_appointments:
            if not appointment.has_valid_times:
                logger.warning(
                    "gap_detection_invalid_interval",
                    provider_id=provider_id,
                    appointment_id=appointment.id,
                )
                continue
            interval = (appointment.start_time, appointment.end_time)
            (cancelled if appointment.is_cancelled else occupied).append(interval)  # type: ignore[arg-type]
        for block in schedule_blocks:
            if block.end <= block.start:
                logger.warning("gap_detection_invalid_block", provider_id=provider_id, start=block.start.isoformat())
                continue
            occupied.append((block.start, block.end))

        gaps: List[ScheduleGap] = []
        for free_start, free_end in free_intervals(window, occupied):
            start = max(free_start, now)
            if free_end <= start:
                continue
            duration = int(minutes_between(start, free_end))
            if duration < self.settings.min_gap_minutes:
                continue
            gap_type = (
                GapType.CANCELLATION
                if any(c_start < free_end and c_end > start for c_start, c_end in cancelled)
                else GapType.NATURAL
            )
            hours_until = (start - now).total_seconds() / 3600.0
            priority = calculate_priority(
                duration, hours_until, self._fill_rate(provider_id, start, now), gap_type, self.settings
            )
            gaps.append(
                ScheduleGap(
                    id=gap_identifier(provider_id, start, free_end),
                    provider_id=provider_id,
                    date=day,
                    start_time=start,
                    end_time=free_end,
                    duration_minutes=duration,
                    priority=priority,
                    gap_type=gap_type,
                    detected_at=now,
                )
            )
        return gaps

    def detect_gaps(
        self,
        provider_id: str,
        day: date,
        schedule_blocks: Optional[Sequence[TimeBlock]] = None,
        booked_appointments: Optional[Sequence[AppointmentSnapshot]] = None,
        *,
        now: datetime,
    ) -> List[ScheduleGap]:
        """Detect gaps for ``provider_id`` on ``day`` and record them as OPEN."""

        gaps = self.find_gaps(provider_id, day, schedule_blocks, booked_appointments, now=now)
        recorded = self.registry.record(provider_id, day, gaps)
        if gaps:
            GAPS_DETECTED.inc(len(gaps))
        logger.info(
            "schedule_gaps_detected",
            provider_id=provider_id,
            date=day.isoformat(),
            count=len(gaps),
            recorded=len(recorded),
        )
        return gaps

    def scan(
        self,
        date_range: DateRange,
        *,
        now: datetime,
        provider_ids: Optional[Iterable[str]] = None,
    ) -> List[ScheduleGap]:
        """Detect and record gaps for every provider and day in ``date_range``."""

        found: List[ScheduleGap] = []
        for provider_id in provider_ids or self.history.provider_ids():
            for day in date_range.days():
                if day < now.date():
                    continue
                found.extend(self.detect_gaps(provider_id, day, now=now))
        return sorted(found, key=lambda gap: (-gap.priority, gap.start_time, gap.provider_id))

    def mark_filled(self, gap_id: str, appointment_id: str) -> ScheduleGap:
        gap = self.registry.mark_filled(gap_id, appointment_id)
        logger.info("schedule_gap_filled", gap_id=gap_id, appointment_id=appointment_id)
        return gap

    def expire_elapsed(self, *, now: datetime) -> List[ScheduleGap]:
        expired = self.registry.expire_elapsed(now.date())
        if expired:
            logger.info("schedule_gaps_expired", count=len(expired))
        return expired

    def open_gaps(self, provider_id: Optional[str] = None, day: Optional[date] = None) -> List[ScheduleGap]:
        return self.registry.open_gaps(provider_id, day)

    def generate_gap_insights(
        self,
        date_range: DateRange,
        *,
        now: datetime,
        provider_id: Optional[str] = None,
    ) -> List[Insight]:
        """Summarise cancellation gaps and unfilled high-priority gaps in ``date_range``."""

        insights: List[Insight] = []
        in_range = self.registry.list(provider_id=provider_id, start=date_range.start, end=date_range.end)

        cancellation_gaps = [gap for gap in in_range if gap.gap_type is GapType.CANCELLATION]
        if len(cancellation_gaps) > self.settings.cancellation_insight_threshold:
            lost = sum(gap.duration_minutes for gap in cancellation_gaps)
            insights.append(
                Insight(
                    id=f"gap-cancellation-{date_range.start.isoformat()}-{date_range.end.isoformat()}",
                    type=InsightType.WARNING,
                    category="gap",
                    title="High Cancellation Gaps",
                    description=(
                        f"{len(cancellation_gaps)} gaps created by cancellations, "
                        f"totaling {lost} minutes of lost time."
                    ),
                    priority=8,
                    action="Review cancellation policies and consider appointment reminders",
                    data={"count": len(cancellation_gaps), "minutes": lost},
                )
            )

        high_priority = [
            gap
            for gap in in_range
            if gap.status is GapStatus.OPEN
            and gap.start_time >= now
            and gap.priority >= self.settings.insight_priority_threshold
        ]
        if high_priority:
            insights.append(
                Insight(
                    id=f"gap-unfilled-{date_range.start.isoformat()}-{date_range.end.isoformat()}",
                    type=InsightType.OPPORTUNITY,
                    category="gap",
                    title="High-Priority Gaps Available",
                    description=(
                        f"{len(high_priority)} high-priority gaps could be filled from waitlist or recalls."
                    ),
                    priority=9,
                    action="Review gap suggestions and contact potential patients",
                    data={"count": len(high_priority), "gap_ids": [gap.id for gap in high_priority]},
                )
            )
        return insights


__all__ = [
    "GapDetector",
    "merge_intervals",
    "free_intervals",
    "gap_identifier",
    "calculate_priority",
]
