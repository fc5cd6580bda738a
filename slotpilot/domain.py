"""Domain types shared by the scheduling engine components.

Input snapshots are frozen dataclasses; engine-owned records (predictions,
gaps, recommendations, enrollments) are mutable and only changed through
the guarded transitions in :mod:`slotpilot.stores` and the components.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple

from slotpilot.errors import ConflictError, ValidationError
from slotpilot.time_utils import coerce_datetime, ensure_utc, iter_days, minutes_between


# ---------------------------------------------------------------------------
# Appointment snapshots
# ---------------------------------------------------------------------------


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"


UPCOMING_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})
OUTCOME_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELLED}
)


@dataclass(frozen=True, slots=True)
class TimeBlock:
    """A non-working interval on a provider's calendar (lunch, admin, leave)."""

    start: datetime
    end: datetime
    reason: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))


@dataclass(frozen=True, slots=True)
class AppointmentSnapshot:
    """Read-only view of a booked appointment."""

    id: str
    patient_id: str
    provider_id: str
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    appointment_type_id: Optional[str] = None
    is_telehealth: bool = False
    booked_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        # Naive datetimes are taken as UTC so every comparison is aware.
        for name in ("start_time", "end_time", "booked_at", "cancelled_at"):
            object.__setattr__(self, name, coerce_datetime(getattr(self, name)))

    @property
    def is_cancelled(self) -> bool:
        return self.status is AppointmentStatus.CANCELLED

    @property
    def has_valid_times(self) -> bool:
        return (
            self.start_time is not None
            and self.end_time is not None
            and self.end_time > self.start_time
        )

    def require_times(self) -> Tuple[datetime, datetime]:
        """Return ``(start, end)`` or raise :class:`ValidationError`."""

        if self.start_time is None or self.end_time is None:
            raise ValidationError(
                "Appointment is missing start or end time",
                details={"appointment_id": self.id},
            )
        if self.end_time <= self.start_time:
            raise ValidationError(
                "Appointment ends before it starts",
                details={"appointment_id": self.id},
            )
        return self.start_time, self.end_time

    @property
    def duration_minutes(self) -> float:
        if not self.has_valid_times:
            return 0.0
        return minutes_between(self.start_time, self.end_time)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# No-show predictions
# ---------------------------------------------------------------------------


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


@dataclass(frozen=True, slots=True)
class RiskFactor:
    factor: str
    weight: float
    detail: str = ""


@dataclass(slots=True)
class NoShowPrediction:
    appointment_id: str
    provider_id: str
    start_time: datetime
    probability: float
    risk_level: RiskLevel
    contributing_factors: List[RiskFactor]
    computed_at: datetime
    confidence: float
    low_confidence: bool = False
    recommendations: List[str] = field(default_factory=list)
    actual_outcome: Optional[AppointmentStatus] = None
    was_accurate: Optional[bool] = None


# ---------------------------------------------------------------------------
# Gaps
# ---------------------------------------------------------------------------


class GapStatus(str, enum.Enum):
    OPEN = "open"
    FILLED = "filled"
    EXPIRED = "expired"


class GapType(str, enum.Enum):
    NATURAL = "natural"
    CANCELLATION = "cancellation"


@dataclass(slots=True)
class ScheduleGap:
    id: str
    provider_id: str
    date: date
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    priority: int
    gap_type: GapType = GapType.NATURAL
    status: GapStatus = GapStatus.OPEN
    filled_by_appointment_id: Optional[str] = None
    detected_at: Optional[datetime] = None

    def contains(self, start: datetime, end: datetime) -> bool:
        return self.start_time <= start and end <= self.end_time


# ---------------------------------------------------------------------------
# Overbooking
# ---------------------------------------------------------------------------


class RecommendationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not RecommendationStatus.PENDING


_RECOMMENDATION_TRANSITIONS: Mapping[RecommendationStatus, FrozenSet[RecommendationStatus]] = {
    RecommendationStatus.PENDING: frozenset(
        {RecommendationStatus.ACCEPTED, RecommendationStatus.DECLINED, RecommendationStatus.EXPIRED}
    ),
    RecommendationStatus.ACCEPTED: frozenset(),
    RecommendationStatus.DECLINED: frozenset(),
    RecommendationStatus.EXPIRED: frozenset(),
}


def check_recommendation_transition(
    recommendation_id: str,
    current: RecommendationStatus,
    target: RecommendationStatus,
) -> None:
    """Raise :class:`ConflictError` unless ``current -> target`` is allowed."""

    if target not in _RECOMMENDATION_TRANSITIONS[current]:
        raise ConflictError(
            f"Recommendation {recommendation_id} cannot move from {current.value} to {target.value}",
            details={
                "recommendation_id": recommendation_id,
                "current": current.value,
                "target": target.value,
            },
        )


@dataclass(slots=True)
class OverbookingRecommendation:
    id: str
    provider_id: str
    slot_start: datetime
    slot_end: datetime
    target_appointment_id: str
    probability: float
    risk_level: RiskLevel
    rationale: str
    recommended_at: datetime
    expires_at: datetime
    expected_value: float = 0.0
    status: RecommendationStatus = RecommendationStatus.PENDING
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decline_reason: Optional[str] = None
    booked_appointment_id: Optional[str] = None

    @property
    def slot_key(self) -> Tuple[str, datetime, datetime]:
        return (self.provider_id, self.slot_start, self.slot_end)


@dataclass(frozen=True, slots=True)
class BookingIntent:
    """Instruction for the booking system to create an overbooked appointment."""

    recommendation_id: str
    provider_id: str
    slot_start: datetime
    slot_end: datetime
    target_appointment_id: str
    requested_by: str


# ---------------------------------------------------------------------------
# Utilization
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class UtilizationMetric:
    provider_id: str
    date: date
    booked_minutes: int
    available_minutes: int
    gap_minutes: int
    utilization_rate: Optional[float]
    scheduled_count: int = 0
    completed_count: int = 0
    no_show_count: int = 0
    cancelled_count: int = 0
    potential_revenue: float = 0.0
    actual_revenue: float = 0.0
    lost_revenue: float = 0.0
    period: str = "day"


# ---------------------------------------------------------------------------
# Recall campaigns
# ---------------------------------------------------------------------------


class RecallStepType(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    CALL = "call"
    LETTER = "letter"


@dataclass(frozen=True, slots=True)
class RecallStep:
    step_number: int
    step_type: RecallStepType
    days_from_start: int
    content_ref: str = ""


class RecallSteps:
    """Ordered, validated list of recall steps.

    Step numbers must be unique and contiguous from 1, and
    ``days_from_start`` must never decrease from one step to the next.
    """

    __slots__ = ("_steps",)

    def __init__(self, steps: Iterable[RecallStep]) -> None:
        ordered = sorted(steps, key=lambda step: step.step_number)
        if not ordered:
            raise ValidationError("A recall sequence needs at least one step")
        numbers = [step.step_number for step in ordered]
        if numbers != list(range(1, len(ordered) + 1)):
            raise ValidationError(
                "Recall step numbers must be unique and contiguous from 1",
                details={"step_numbers": numbers},
            )
        previous = 0
        for step in ordered:
            if step.days_from_start < 0:
                raise ValidationError(
                    "Recall step offsets must not be negative",
                    details={"step_number": step.step_number},
                )
            if step.days_from_start < previous:
                raise ValidationError(
                    "Recall step offsets must not decrease",
                    details={"step_number": step.step_number},
                )
            previous = step.days_from_start
        self._steps: Tuple[RecallStep, ...] = tuple(ordered)

    def __iter__(self) -> Iterator[RecallStep]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RecallSteps):
            return NotImplemented
        return self._steps == other._steps

    def __repr__(self) -> str:
        return f"RecallSteps({list(self._steps)!r})"

    def get(self, step_number: int) -> Optional[RecallStep]:
        if 1 <= step_number <= len(self._steps):
            return self._steps[step_number - 1]
        return None

    @property
    def last_step_number(self) -> int:
        return len(self._steps)


@dataclass(slots=True)
class RecallSequence:
    id: str
    name: str
    appointment_types: FrozenSet[str]
    days_since_last_visit: int
    steps: RecallSteps
    max_attempts: int
    stop_on_schedule: bool = True
    active: bool = True
    description: str = ""


class EnrollmentStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    SCHEDULED = "scheduled"
    OPTED_OUT = "opted_out"


_ENROLLMENT_TRANSITIONS: Mapping[EnrollmentStatus, FrozenSet[EnrollmentStatus]] = {
    EnrollmentStatus.ACTIVE: frozenset(
        {EnrollmentStatus.COMPLETED, EnrollmentStatus.SCHEDULED, EnrollmentStatus.OPTED_OUT}
    ),
    EnrollmentStatus.COMPLETED: frozenset(),
    EnrollmentStatus.SCHEDULED: frozenset(),
    EnrollmentStatus.OPTED_OUT: frozenset(),
}


def check_enrollment_transition(
    enrollment_id: str,
    current: EnrollmentStatus,
    target: EnrollmentStatus,
) -> None:
    if target not in _ENROLLMENT_TRANSITIONS[current]:
        raise ConflictError(
            f"Enrollment {enrollment_id} cannot move from {current.value} to {target.value}",
            details={
                "enrollment_id": enrollment_id,
                "current": current.value,
                "target": target.value,
            },
        )


class CompletionReason(str, enum.Enum):
    NO_RESPONSE = "no_response"
    MAX_ATTEMPTS = "max_attempts"
    BOOKING_OBSERVED = "booking_observed"


class PatientResponse(str, enum.Enum):
    SCHEDULED = "scheduled"
    OPTED_OUT = "opted_out"
    NO_RESPONSE = "no_response"


@dataclass(slots=True)
class RecallEnrollment:
    id: str
    patient_id: str
    sequence_id: str
    enrolled_at: datetime
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step_number: int = 1
    last_step_executed_at: Optional[datetime] = None
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    failed: bool = False
    completion_reason: Optional[CompletionReason] = None
    completed_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    response: Optional[PatientResponse] = None
    responded_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is EnrollmentStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class StepExecution:
    enrollment_id: str
    step_number: int
    success: bool
    executed_at: datetime
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class MessageIntent:
    """Instruction for the delivery collaborator to send one recall step."""

    enrollment_id: str
    patient_id: str
    sequence_id: str
    step_number: int
    step_type: RecallStepType
    content_ref: str
    due_at: datetime
    attempt: int


# ---------------------------------------------------------------------------
# Slot search
# ---------------------------------------------------------------------------


class Urgency(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True, slots=True)
class SchedulingPreferences:
    """Patient preferences; weekdays use ``date.weekday()`` numbering (Monday == 0)."""

    preferred_days: FrozenSet[int] = frozenset()
    avoid_days: FrozenSet[int] = frozenset()
    preferred_time_start: Optional[time] = None
    preferred_time_end: Optional[time] = None
    preferred_provider_ids: FrozenSet[str] = frozenset()


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive range of calendar days."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValidationError(
                "Date range ends before it starts",
                details={"start": self.start.isoformat(), "end": self.end.isoformat()},
            )

    def days(self) -> Iterator[date]:
        return iter_days(self.start, self.end)

    @property
    def length_days(self) -> int:
        return (self.end - self.start).days + 1

    @classmethod
    def starting(cls, start: date, days: int) -> "DateRange":
        return cls(start, start + timedelta(days=max(days, 1) - 1))


@dataclass(frozen=True, slots=True)
class CandidateSlot:
    provider_id: str
    start_time: datetime
    end_time: datetime
    score: float
    preference_score: float
    gap_fill_score: float
    earliness_score: float
    reasons: Tuple[str, ...] = ()
    fills_gap_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Insights and batch results
# ---------------------------------------------------------------------------


class InsightType(str, enum.Enum):
    WARNING = "warning"
    OPPORTUNITY = "opportunity"
    INFO = "info"


@dataclass(frozen=True, slots=True)
class Insight:
    id: str
    type: InsightType
    category: str
    title: str
    description: str
    priority: int
    action: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class InsightReport:
    insights: List[Insight]
    counts: Dict[str, int]
    generated_at: datetime

    @property
    def total(self) -> int:
        return len(self.insights)


class BatchOutcome(str, enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class BatchItem:
    key: str
    outcome: BatchOutcome
    value: Any = None
    error: Optional[str] = None


@dataclass(slots=True)
class BatchResult:
    """Per-item outcomes of a batch operation, in input order."""

    items: List[BatchItem] = field(default_factory=list)

    def add(self, key: str, outcome: BatchOutcome, value: Any = None, error: Optional[str] = None) -> None:
        self.items.append(BatchItem(key=key, outcome=outcome, value=value, error=error))

    def _select(self, outcome: BatchOutcome) -> List[BatchItem]:
        return [item for item in self.items if item.outcome is outcome]

    @property
    def succeeded(self) -> List[BatchItem]:
        return self._select(BatchOutcome.SUCCESS)

    @property
    def skipped(self) -> List[BatchItem]:
        return self._select(BatchOutcome.SKIPPED)

    @property
    def errors(self) -> List[BatchItem]:
        return self._select(BatchOutcome.ERROR)

    def values(self) -> List[Any]:
        return [item.value for item in self.succeeded]

    def counts(self) -> Dict[str, int]:
        summary = {outcome.value: 0 for outcome in BatchOutcome}
        for item in self.items:
            summary[item.outcome.value] += 1
        return summary
