"""Multi-step recall campaigns for patients overdue for a visit.

Enrollments follow ``ACTIVE -> {COMPLETED, SCHEDULED, OPTED_OUT}``.  Step
advancement is keyed by ``(enrollment_id, step_number)``: recording the
same successful step twice is a no-op, so concurrent delivery runs cannot
double-advance an enrollment.  The engine emits :class:`MessageIntent`
work items and never sends anything itself.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from slotpilot.config import RecallSettings
from slotpilot.domain import (
    UPCOMING_STATUSES,
    AppointmentSnapshot,
    AppointmentStatus,
    BatchOutcome,
    BatchResult,
    CompletionReason,
    EnrollmentStatus,
    Insight,
    InsightType,
    MessageIntent,
    PatientResponse,
    RecallEnrollment,
    RecallSequence,
    RecallStep,
    RecallSteps,
    StepExecution,
)
from slotpilot.errors import ConflictError, SchedulingError, ValidationError
from slotpilot.history import HistoryAccessor
from slotpilot.logging_config import batch_context
from slotpilot.metrics import BATCH_ITEMS, RECALL_STEP_EXECUTIONS
from slotpilot.stores import RecallStore


logger = structlog.get_logger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "appointment_types",
        "days_since_last_visit",
        "steps",
        "max_attempts",
        "stop_on_schedule",
        "active",
    }
)


@dataclass(frozen=True, slots=True)
class RecallCandidate:
    patient_id: str
    last_visit_at: datetime
    days_since_last_visit: int
    last_appointment_type_id: Optional[str]
    eligible_sequences: Tuple[str, ...]


@dataclass(slots=True)
class SequenceStatistics:
    sequence_id: str
    sequence_name: str
    enrollments: int
    scheduled: int
    success_rate: float


@dataclass(slots=True)
class RecallStatistics:
    total: int = 0
    active: int = 0
    completed: int = 0
    scheduled: int = 0
    opted_out: int = 0
    failed: int = 0
    success_rate: float = 0.0
    by_sequence: List[SequenceStatistics] = field(default_factory=list)


class RecallEngine:
    def __init__(
        self,
        history: HistoryAccessor,
        settings: Optional[RecallSettings] = None,
        store: Optional[RecallStore] = None,
    ) -> None:
        self.history = history
        self.settings = settings or RecallSettings()
        self.store = store if store is not None else RecallStore()

    # -- sequences ------------------------------------------------------------

    def create_sequence(
        self,
        name: str,
        steps: Iterable[RecallStep],
        *,
        days_since_last_visit: int,
        appointment_types: Iterable[str] = (),
        max_attempts: Optional[int] = None,
        stop_on_schedule: bool = True,
        description: str = "",
        sequence_id: Optional[str] = None,
    ) -> RecallSequence:
        if not name or not name.strip():
            raise ValidationError("Recall sequence needs a name")
        if days_since_last_visit < 0:
            raise ValidationError(
                "days_since_last_visit must not be negative",
                details={"days_since_last_visit": days_since_last_visit},
            )
        attempts = self.settings.default_max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValidationError("max_attempts must be at least 1", details={"max_attempts": attempts})

        sequence = RecallSequence(
            id=sequence_id or uuid.uuid4().hex,
            name=name.strip(),
            appointment_types=frozenset(appointment_types),
            days_since_last_visit=days_since_last_visit,
            steps=steps if isinstance(steps, RecallSteps) else RecallSteps(steps),
            max_attempts=attempts,
            stop_on_schedule=stop_on_schedule,
            description=description,
        )
        self.store.save_sequence(sequence)
        logger.info("recall_sequence_created", sequence_id=sequence.id, steps=len(sequence.steps))
        return sequence

    def update_sequence(self, sequence_id: str, **changes: object) -> RecallSequence:
        """Apply ``changes`` to a sequence.

        Steps cannot be shortened below the current step of an active enrollment.
        """

        unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError("Unknown recall sequence fields", details={"fields": unknown})

        with self.store.transaction():
            sequence = self.store.require_sequence(sequence_id)
            if "steps" in changes:
                raw_steps = changes["steps"]
                steps = raw_steps if isinstance(raw_steps, RecallSteps) else RecallSteps(raw_steps)  # type: ignore[arg-type]
                beyond = [
                    enrollment.id
                    for enrollment in self.store.enrollments(
                        sequence_id=sequence_id, status=EnrollmentStatus.ACTIVE
                    )
                    if enrollment.current_step_number > steps.last_step_number
                ]
                if beyond:
                    raise ConflictError(
                        "Active enrollments are past the new last step",
                        details={"sequence_id": sequence_id, "enrollment_ids": beyond},
                    )
                changes["steps"] = steps
            if "max_attempts" in changes and int(changes["max_attempts"]) < 1:  # type: ignore[call-overload]
                raise ValidationError("max_attempts must be at least 1")
            if "days_since_last_visit" in changes and int(changes["days_since_last_visit"]) < 0:  # type: ignore[call-overload]
                raise ValidationError("days_since_last_visit must not be negative")
            if "appointment_types" in changes:
                changes["appointment_types"] = frozenset(changes["appointment_types"])  # type: ignore[arg-type]
            for key, value in changes.items():
                setattr(sequence, key, value)
        logger.info("recall_sequence_updated", sequence_id=sequence_id, fields=sorted(changes))
        return sequence

    def get_sequences(self, *, active_only: bool = False) -> List[RecallSequence]:
        return self.store.sequences(active_only=active_only)

    def deactivate_sequence(self, sequence_id: str) -> RecallSequence:
        with self.store.transaction():
            sequence = self.store.require_sequence(sequence_id)
            sequence.active = False
        logger.info("recall_sequence_deactivated", sequence_id=sequence_id)
        return sequence

    # -- candidates and enrollment --------------------------------------------

    def find_candidates(
        self,
        sequence_id: Optional[str] = None,
        *,
        now: datetime,
        limit: Optional[int] = None,
    ) -> List[RecallCandidate]:
        """Patients whose last qualifying visit is older than the sequence threshold.

        Patients with an upcoming booking or an ACTIVE enrollment in the same
        sequence are excluded.  Candidates eligible for several sequences are
        merged; the longest-overdue come first.
        """

        if sequence_id is not None:
            sequences = [self.store.require_sequence(sequence_id)]
        else:
            sequences = self.get_sequences(active_only=True)
        sequences = [sequence for sequence in sequences if sequence.active]
        if not sequences:
            return []

        merged: Dict[str, RecallCandidate] = {}
        for patient_id in self.history.patient_ids():
            appointments = self.history.patient_appointments(patient_id)
            if any(
                appt.status in UPCOMING_STATUSES and appt.start_time is not None and appt.start_time > now
                for appt in appointments
            ):
                continue
            for sequence in sequences:
                qualifying = [
                    appt
                    for appt in appointments
                    if appt.status is AppointmentStatus.COMPLETED
                    and appt.start_time is not None
                    and appt.start_time <= now
                    and (not sequence.appointment_types or appt.appointment_type_id in sequence.appointment_types)
                ]
                if not qualifying:
                    continue
                last = max(qualifying, key=lambda appt: appt.start_time)  # type: ignore[arg-type, return-value]
                cutoff = now - timedelta(days=sequence.days_since_last_visit)
                if last.start_time > cutoff:  # type: ignore[operator]
                    continue
                if self.store.active_enrollment(patient_id, sequence.id) is not None:
                    continue
                existing = merged.get(patient_id)
                if existing is not None:
                    merged[patient_id] = RecallCandidate(
                        patient_id=patient_id,
                        last_visit_at=existing.last_visit_at,
                        days_since_last_visit=existing.days_since_last_visit,
                        last_appointment_type_id=existing.last_appointment_type_id,
                        eligible_sequences=existing.eligible_sequences + (sequence.id,),
                    )
                    continue
                merged[patient_id] = RecallCandidate(
                    patient_id=patient_id,
                    last_visit_at=last.start_time,  # type: ignore[arg-type]
                    days_since_last_visit=(now - last.start_time).days,  # type: ignore[operator]
                    last_appointment_type_id=last.appointment_type_id,
                    eligible_sequences=(sequence.id,),
                )

        ordered = sorted(merged.values(), key=lambda item: (-item.days_since_last_visit, item.patient_id))
        return ordered[: limit or self.settings.batch_size]

    def enroll(self, patient_id: str, sequence_id: str, *, now: datetime) -> RecallEnrollment:
        """Enroll ``patient_id``; returns the existing ACTIVE enrollment if there is one."""

        sequence = self.store.require_sequence(sequence_id)
        existing = self.store.active_enrollment(patient_id, sequence_id)
        if existing is not None:
            return existing
        if not sequence.active:
            raise ConflictError(
                f"Recall sequence {sequence_id} is inactive", details={"sequence_id": sequence_id}
            )
        enrollment, created = self.store.add_enrollment(
            RecallEnrollment(
                id=uuid.uuid4().hex,
                patient_id=patient_id,
                sequence_id=sequence_id,
                enrolled_at=now,
            )
        )
        if created:
            logger.info(
                "recall_patient_enrolled",
                enrollment_id=enrollment.id,
                patient_id=patient_id,
                sequence_id=sequence_id,
            )
        return enrollment

    def batch_enroll(self, patient_ids: Iterable[str], sequence_id: str, *, now: datetime) -> BatchResult:
        """Enroll many patients; already-active patients are reported as skipped."""

        result = BatchResult()
        with batch_context("batch_enroll"):
            for patient_id in patient_ids:
                existing = self.store.active_enrollment(patient_id, sequence_id)
                try:
                    enrollment = self.enroll(patient_id, sequence_id, now=now)
                except SchedulingError as exc:
                    result.add(patient_id, BatchOutcome.ERROR, error=exc.message)
                else:
                    outcome = BatchOutcome.SKIPPED if existing is not None else BatchOutcome.SUCCESS
                    result.add(patient_id, outcome, value=enrollment)
                BATCH_ITEMS.labels(operation="batch_enroll", outcome=result.items[-1].outcome.value).inc()
            logger.info("recall_batch_enrolled", sequence_id=sequence_id, **result.counts())
        return result

    # -- step execution -------------------------------------------------------

    def _due_at(self, enrollment: RecallEnrollment, step: RecallStep) -> datetime:
        due = enrollment.enrolled_at + timedelta(days=step.days_from_start)
        if enrollment.attempts and enrollment.last_attempt_at is not None:
            retry = enrollment.last_attempt_at + timedelta(hours=self.settings.retry_cooldown_hours)
            due = max(due, retry)
        return due

    def _observed_booking(
        self, enrollment: RecallEnrollment, now: datetime
    ) -> Optional[AppointmentSnapshot]:
        """Upcoming booking the patient made after enrolling, if any."""

        for appointment in self.history.patient_appointments(enrollment.patient_id):
            if appointment.status not in UPCOMING_STATUSES or appointment.start_time is None:
                continue
            if appointment.start_time <= now:
                continue
            if appointment.booked_at is not None and appointment.booked_at < enrollment.enrolled_at:
                continue
            return appointment
        return None

    def get_pending_steps(self, *, now: datetime, limit: Optional[int] = None) -> List[MessageIntent]:
        """Work queue of steps whose offset and retry cooldown have elapsed."""

        intents: List[MessageIntent] = []
        for enrollment in self.store.enrollments(status=EnrollmentStatus.ACTIVE):
            sequence = self.store.get_sequence(enrollment.sequence_id)
            if sequence is None or not sequence.active:
                continue
            if sequence.stop_on_schedule and self._observed_booking(enrollment, now) is not None:
                continue
            step = sequence.steps.get(enrollment.current_step_number)
            if step is None:
                continue
            due_at = self._due_at(enrollment, step)
            if due_at > now:
                continue
            intents.append(
                MessageIntent(
                    enrollment_id=enrollment.id,
                    patient_id=enrollment.patient_id,
                    sequence_id=sequence.id,
                    step_number=step.step_number,
                    step_type=step.step_type,
                    content_ref=step.content_ref,
                    due_at=due_at,
                    attempt=enrollment.attempts + 1,
                )
            )
        intents.sort(key=lambda intent: (intent.due_at, intent.enrollment_id))
        return intents[: limit or self.settings.batch_size]

    def record_step_execution(
        self,
        enrollment_id: str,
        step_number: int,
        success: bool,
        *,
        now: datetime,
        error: Optional[str] = None,
    ) -> RecallEnrollment:
        """Record a delivery attempt for ``step_number``.

        Success advances to the next step, or completes the enrollment after
        the last one.  Failure keeps the step pending; reaching the sequence's
        ``max_attempts`` completes the enrollment with ``failed`` set.
        Replaying an already-recorded success, or reporting a step the
        enrollment has moved past, changes nothing.
        """

        with self.store.transaction():
            enrollment = self.store.require_enrollment(enrollment_id)
            if self.store.successful_execution(enrollment_id, step_number) is not None:
                return enrollment
            if enrollment.is_active and step_number < enrollment.current_step_number:
                return enrollment
            if not enrollment.is_active:
                raise ConflictError(
                    f"Enrollment {enrollment_id} is {enrollment.status.value}",
                    details={"enrollment_id": enrollment_id, "current": enrollment.status.value},
                )
            if step_number != enrollment.current_step_number:
                raise ConflictError(
                    f"Enrollment {enrollment_id} is on step {enrollment.current_step_number}",
                    details={
                        "enrollment_id": enrollment_id,
                        "current_step_number": enrollment.current_step_number,
                        "step_number": step_number,
                    },
                )
            sequence = self.store.require_sequence(enrollment.sequence_id)
            self.store.log_execution(
                StepExecution(
                    enrollment_id=enrollment_id,
                    step_number=step_number,
                    success=success,
                    executed_at=now,
                    error=error,
                )
            )

            if success:
                enrollment.last_step_executed_at = now
                enrollment.attempts = 0
                enrollment.last_attempt_at = None
                if step_number >= sequence.steps.last_step_number:
                    self.store.terminate(enrollment, EnrollmentStatus.COMPLETED)
                    enrollment.completion_reason = CompletionReason.NO_RESPONSE
                    enrollment.completed_at = now
                else:
                    enrollment.current_step_number = step_number + 1
            else:
                enrollment.attempts += 1
                enrollment.last_attempt_at = now
                if enrollment.attempts >= sequence.max_attempts:
                    self.store.terminate(enrollment, EnrollmentStatus.COMPLETED)
                    enrollment.failed = True
                    enrollment.completion_reason = CompletionReason.MAX_ATTEMPTS
                    enrollment.completed_at = now

        outcome = "success" if success else "failure"
        RECALL_STEP_EXECUTIONS.labels(outcome=outcome).inc()
        logger.info(
            "recall_step_recorded",
            enrollment_id=enrollment_id,
            step_number=step_number,
            outcome=outcome,
            status=enrollment.status.value,
            attempts=enrollment.attempts,
        )
        return enrollment

    def handle_patient_response(
        self,
        enrollment_id: str,
        response: PatientResponse,
        *,
        now: datetime,
    ) -> RecallEnrollment:
        """Apply a patient's response.

        OPTED_OUT and SCHEDULED both terminate.  NO_RESPONSE is recorded
        without a transition.
        """

        with self.store.transaction():
            enrollment = self.store.require_enrollment(enrollment_id)
            if not enrollment.is_active:
                raise ConflictError(
                    f"Enrollment {enrollment_id} is {enrollment.status.value}",
                    details={"enrollment_id": enrollment_id, "current": enrollment.status.value},
                )
            enrollment.response = response
            enrollment.responded_at = now
            if response is PatientResponse.OPTED_OUT:
                self.store.terminate(enrollment, EnrollmentStatus.OPTED_OUT)
                enrollment.completed_at = now
            elif response is PatientResponse.SCHEDULED:
                self.store.terminate(enrollment, EnrollmentStatus.SCHEDULED)
                enrollment.scheduled_at = now
                enrollment.completed_at = now
        logger.info(
            "recall_response_handled",
            enrollment_id=enrollment_id,
            response=response.value,
            status=enrollment.status.value,
        )
        return enrollment

    def close_scheduled(self, *, now: datetime) -> List[RecallEnrollment]:
        """Close enrollments whose patient booked a visit outside the campaign.

        Only sequences with ``stop_on_schedule`` are closed; the rest keep
        sending until the patient responds or the steps run out.
        """

        closed: List[RecallEnrollment] = []
        for enrollment in self.store.enrollments(status=EnrollmentStatus.ACTIVE):
            sequence = self.store.get_sequence(enrollment.sequence_id)
            if sequence is None or not sequence.stop_on_schedule:
                continue
            booking = self._observed_booking(enrollment, now)
            if booking is None:
                continue
            with self.store.transaction():
                if not enrollment.is_active:
                    continue
                self.store.terminate(enrollment, EnrollmentStatus.SCHEDULED)
                enrollment.scheduled_at = booking.booked_at or now
                enrollment.completed_at = now
                enrollment.completion_reason = CompletionReason.BOOKING_OBSERVED
            closed.append(enrollment)
            logger.info(
                "recall_booking_observed",
                enrollment_id=enrollment.id,
                patient_id=enrollment.patient_id,
                appointment_id=booking.id,
            )
        return closed

    # -- reporting ------------------------------------------------------------

    def statistics(self) -> RecallStatistics:
        enrollments = self.store.enrollments()
        stats = RecallStatistics(total=len(enrollments))
        per_sequence: Dict[str, List[RecallEnrollment]] = {}
        for enrollment in enrollments:
            per_sequence.setdefault(enrollment.sequence_id, []).append(enrollment)
            if enrollment.status is EnrollmentStatus.ACTIVE:
                stats.active += 1
            elif enrollment.status is EnrollmentStatus.OPTED_OUT:
                stats.opted_out += 1
            elif enrollment.status is EnrollmentStatus.COMPLETED:
                if enrollment.failed:
                    stats.failed += 1
                else:
                    stats.completed += 1
            if enrollment.scheduled_at is not None:
                stats.scheduled += 1
        stats.success_rate = round(stats.scheduled / stats.total, 2) if stats.total else 0.0

        for sequence_id in sorted(per_sequence):
            items = per_sequence[sequence_id]
            sequence = self.store.get_sequence(sequence_id)
            scheduled = sum(1 for item in items if item.scheduled_at is not None)
            stats.by_sequence.append(
                SequenceStatistics(
                    sequence_id=sequence_id,
                    sequence_name=sequence.name if sequence is not None else "Unknown",
                    enrollments=len(items),
                    scheduled=scheduled,
                    success_rate=round(scheduled / len(items), 2),
                )
            )
        return stats

    def generate_recall_insights(self, *, now: datetime) -> List[Insight]:
        cfg = self.settings
        insights: List[Insight] = []
        stats = self.statistics()
        for sequence in stats.by_sequence:
            if sequence.enrollments >= cfg.low_success_min_enrollments and sequence.success_rate < cfg.low_success_rate:
                insights.append(
                    Insight(
                        id=f"recall-low-success-{sequence.sequence_id}",
                        type=InsightType.WARNING,
                        category="recall",
                        title=f"Low Success: {sequence.sequence_name}",
                        description=(
                            f"Only {round(sequence.success_rate * 100)}% of patients contacted have scheduled. "
                            "Consider revising the messaging or timing."
                        ),
                        priority=7,
                        action="Review and update recall sequence messaging and timing.",
                        data={"sequence_id": sequence.sequence_id, "success_rate": sequence.success_rate},
                    )
                )

        candidates = self.find_candidates(now=now, limit=100)
        if len(candidates) >= cfg.candidate_insight_threshold:
            insights.append(
                Insight(
                    id=f"recall-candidates-{now.date().isoformat()}",
                    type=InsightType.OPPORTUNITY,
                    category="recall",
                    title="Patients Due for Recall",
                    description=(
                        f"{len(candidates)} patients are due for recall but not yet enrolled in any sequence."
                    ),
                    priority=8,
                    action="Enroll these patients in an appropriate recall sequence.",
                    data={"candidate_count": len(candidates)},
                )
            )

        stalled_before = now - timedelta(days=cfg.stalled_after_days)
        stalled = []
        for enrollment in self.store.enrollments(status=EnrollmentStatus.ACTIVE):
            sequence = self.store.get_sequence(enrollment.sequence_id)
            step = sequence.steps.get(enrollment.current_step_number) if sequence else None
            if step is not None and self._due_at(enrollment, step) < stalled_before:
                stalled.append(enrollment.id)
        if stalled:
            insights.append(
                Insight(
                    id=f"recall-stalled-{now.date().isoformat()}",
                    type=InsightType.WARNING,
                    category="recall",
                    title="Stalled Recall Enrollments",
                    description=(
                        f"{len(stalled)} recall enrollments have been stalled for more than "
                        f"{cfg.stalled_after_days} days."
                    ),
                    priority=6,
                    action="Review and process pending recall steps.",
                    data={"enrollment_ids": stalled},
                )
            )
        return insights


__all__ = [
    "RecallCandidate",
    "SequenceStatistics",
    "RecallStatistics",
    "RecallEngine",
]
