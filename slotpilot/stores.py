"""In-memory state owned by the engine.

Every store guards its records with a re-entrant lock.  Recomputed values
(predictions, utilization metrics) are upserted by natural identity, and
status changes go through compare-and-set helpers so that two concurrent
batch runs cannot both apply the same transition.  Components that need a
multi-step check-then-write hold ``store.transaction()`` for its duration.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from threading import RLock
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from slotpilot.domain import (
    EnrollmentStatus,
    GapStatus,
    NoShowPrediction,
    OverbookingRecommendation,
    RecallEnrollment,
    RecallSequence,
    RecommendationStatus,
    ScheduleGap,
    StepExecution,
    UtilizationMetric,
    check_enrollment_transition,
    check_recommendation_transition,
)
from slotpilot.errors import ConflictError, NotFoundError


class _LockedStore:
    def __init__(self) -> None:
        self._lock = RLock()

    @contextmanager
    def transaction(self) -> Iterator["_LockedStore"]:
        with self._lock:
            yield self


class PredictionStore(_LockedStore):
    """Current prediction per appointment; recomputation replaces the record."""

    def __init__(self) -> None:
        super().__init__()
        self._predictions: Dict[str, NoShowPrediction] = {}

    def upsert(self, prediction: NoShowPrediction) -> NoShowPrediction:
        with self._lock:
            previous = self._predictions.get(prediction.appointment_id)
            if previous is not None and prediction.actual_outcome is None:
                prediction.actual_outcome = previous.actual_outcome
                prediction.was_accurate = previous.was_accurate
            self._predictions[prediction.appointment_id] = prediction
            return prediction

    def get(self, appointment_id: str) -> Optional[NoShowPrediction]:
        with self._lock:
            return self._predictions.get(appointment_id)

    def list(
        self,
        *,
        provider_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[NoShowPrediction]:
        with self._lock:
            found = list(self._predictions.values())
        if provider_id is not None:
            found = [item for item in found if item.provider_id == provider_id]
        if start is not None:
            found = [item for item in found if item.start_time >= start]
        if end is not None:
            found = [item for item in found if item.start_time < end]
        return sorted(found, key=lambda item: (item.start_time, item.appointment_id))

    def __len__(self) -> int:
        with self._lock:
            return len(self._predictions)


class UtilizationStore(_LockedStore):
    """One daily metric per ``(provider_id, date)``."""

    def __init__(self) -> None:
        super().__init__()
        self._metrics: Dict[Tuple[str, date], UtilizationMetric] = {}

    def upsert(self, metric: UtilizationMetric) -> UtilizationMetric:
        with self._lock:
            self._metrics[(metric.provider_id, metric.date)] = metric
            return metric

    def get(self, provider_id: str, day: date) -> Optional[UtilizationMetric]:
        with self._lock:
            return self._metrics.get((provider_id, day))

    def list(self, provider_id: Optional[str] = None) -> List[UtilizationMetric]:
        with self._lock:
            found = list(self._metrics.values())
        if provider_id is not None:
            found = [item for item in found if item.provider_id == provider_id]
        return sorted(found, key=lambda item: (item.provider_id, item.date))


class GapRegistry(_LockedStore):
    """Tracks detected gaps through OPEN -> FILLED / EXPIRED."""

    def __init__(self) -> None:
        super().__init__()
        self._gaps: Dict[str, ScheduleGap] = {}

    def record(self, provider_id: str, day: date, gaps: List[ScheduleGap]) -> List[ScheduleGap]:
        """Replace the open gaps of ``provider_id`` on ``day`` with ``gaps``.

        Filled and expired gaps are kept as history and never reopened.
        """

        with self._lock:
            fresh_ids = {gap.id for gap in gaps}
            stale = [
                gap_id
                for gap_id, gap in self._gaps.items()
                if gap.provider_id == provider_id
                and gap.date == day
                and gap.status is GapStatus.OPEN
                and gap_id not in fresh_ids
            ]
            for gap_id in stale:
                del self._gaps[gap_id]

            recorded: List[ScheduleGap] = []
            for gap in gaps:
                existing = self._gaps.get(gap.id)
                if existing is not None and existing.status is not GapStatus.OPEN:
                    continue
                self._gaps[gap.id] = gap
                recorded.append(gap)
            return recorded

    def get(self, gap_id: str) -> Optional[ScheduleGap]:
        with self._lock:
            return self._gaps.get(gap_id)

    def mark_filled(self, gap_id: str, appointment_id: str) -> ScheduleGap:
        with self._lock:
            gap = self._gaps.get(gap_id)
            if gap is None:
                raise NotFoundError(f"Gap {gap_id} not found", details={"gap_id": gap_id})
            if gap.status is not GapStatus.OPEN:
                raise ConflictError(
                    f"Gap {gap_id} is {gap.status.value}",
                    details={"gap_id": gap_id, "current": gap.status.value},
                )
            gap.status = GapStatus.FILLED
            gap.filled_by_appointment_id = appointment_id
            return gap

    def expire_elapsed(self, today: date) -> List[ScheduleGap]:
        """Move OPEN gaps dated before ``today`` to EXPIRED and return them."""

        with self._lock:
            expired = [
                gap
                for gap in self._gaps.values()
                if gap.status is GapStatus.OPEN and gap.date < today
            ]
            for gap in expired:
                gap.status = GapStatus.EXPIRED
            return expired

    def list(
        self,
        *,
        provider_id: Optional[str] = None,
        status: Optional[GapStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[ScheduleGap]:
        with self._lock:
            found = list(self._gaps.values())
        if provider_id is not None:
            found = [gap for gap in found if gap.provider_id == provider_id]
        if status is not None:
            found = [gap for gap in found if gap.status is status]
        if start is not None:
            found = [gap for gap in found if gap.date >= start]
        if end is not None:
            found = [gap for gap in found if gap.date <= end]
        return sorted(found, key=lambda gap: (-gap.priority, gap.start_time, gap.provider_id))

    def open_gaps(
        self, provider_id: Optional[str] = None, day: Optional[date] = None
    ) -> List[ScheduleGap]:
        return self.list(provider_id=provider_id, status=GapStatus.OPEN, start=day, end=day)


class RecommendationStore(_LockedStore):
    """Overbooking recommendations indexed by id and by ``(provider, slot)``."""

    def __init__(self) -> None:
        super().__init__()
        self._records: Dict[str, OverbookingRecommendation] = {}
        self._by_slot: Dict[Tuple[str, datetime, datetime], List[str]] = {}

    def add(self, recommendation: OverbookingRecommendation) -> OverbookingRecommendation:
        with self._lock:
            if recommendation.id in self._records:
                raise ConflictError(
                    f"Recommendation {recommendation.id} already exists",
                    details={"recommendation_id": recommendation.id},
                )
            self._records[recommendation.id] = recommendation
            self._by_slot.setdefault(recommendation.slot_key, []).append(recommendation.id)
            return recommendation

    def get(self, recommendation_id: str) -> Optional[OverbookingRecommendation]:
        with self._lock:
            return self._records.get(recommendation_id)

    def require(self, recommendation_id: str) -> OverbookingRecommendation:
        recommendation = self.get(recommendation_id)
        if recommendation is None:
            raise NotFoundError(
                f"Recommendation {recommendation_id} not found",
                details={"recommendation_id": recommendation_id},
            )
        return recommendation

    def for_slot(self, provider_id: str, start: datetime, end: datetime) -> List[OverbookingRecommendation]:
        with self._lock:
            ids = self._by_slot.get((provider_id, start, end), [])
            return [self._records[rec_id] for rec_id in ids]

    def transition(
        self,
        recommendation_id: str,
        expected: RecommendationStatus,
        target: RecommendationStatus,
        apply: Optional[Callable[[OverbookingRecommendation], None]] = None,
    ) -> OverbookingRecommendation:
        """Compare-and-set the status from ``expected`` to ``target``."""

        with self._lock:
            recommendation = self.require(recommendation_id)
            if recommendation.status is not expected:
                raise ConflictError(
                    f"Recommendation {recommendation_id} is {recommendation.status.value}",
                    details={
                        "recommendation_id": recommendation_id,
                        "current": recommendation.status.value,
                        "expected": expected.value,
                    },
                )
            check_recommendation_transition(recommendation_id, recommendation.status, target)
            if apply is not None:
                apply(recommendation)
            recommendation.status = target
            return recommendation

    def list(
        self,
        *,
        provider_id: Optional[str] = None,
        status: Optional[RecommendationStatus] = None,
    ) -> List[OverbookingRecommendation]:
        with self._lock:
            found = list(self._records.values())
        if provider_id is not None:
            found = [rec for rec in found if rec.provider_id == provider_id]
        if status is not None:
            found = [rec for rec in found if rec.status is status]
        return sorted(found, key=lambda rec: (rec.slot_start, rec.provider_id, rec.id))


class RecallStore(_LockedStore):
    """Recall sequences, enrollments and the step-execution ledger."""

    def __init__(self) -> None:
        super().__init__()
        self._sequences: Dict[str, RecallSequence] = {}
        self._enrollments: Dict[str, RecallEnrollment] = {}
        self._active_index: Dict[Tuple[str, str], str] = {}
        self._executions: Dict[Tuple[str, int], StepExecution] = {}
        self._attempt_log: List[StepExecution] = []

    # -- sequences ------------------------------------------------------------

    def save_sequence(self, sequence: RecallSequence) -> RecallSequence:
        with self._lock:
            self._sequences[sequence.id] = sequence
            return sequence

    def get_sequence(self, sequence_id: str) -> Optional[RecallSequence]:
        with self._lock:
            return self._sequences.get(sequence_id)

    def require_sequence(self, sequence_id: str) -> RecallSequence:
        sequence = self.get_sequence(sequence_id)
        if sequence is None:
            raise NotFoundError(
                f"Recall sequence {sequence_id} not found", details={"sequence_id": sequence_id}
            )
        return sequence

    def sequences(self, *, active_only: bool = False) -> List[RecallSequence]:
        with self._lock:
            found = list(self._sequences.values())
        if active_only:
            found = [sequence for sequence in found if sequence.active]
        return sorted(found, key=lambda sequence: sequence.id)

    # -- enrollments ----------------------------------------------------------

    def active_enrollment(self, patient_id: str, sequence_id: str) -> Optional[RecallEnrollment]:
        with self._lock:
            enrollment_id = self._active_index.get((patient_id, sequence_id))
            return self._enrollments.get(enrollment_id) if enrollment_id else None

    def add_enrollment(self, enrollment: RecallEnrollment) -> Tuple[RecallEnrollment, bool]:
        """Insert ``enrollment`` unless the patient is already active in the sequence.

        Returns ``(enrollment, created)``; when not created the existing
        active enrollment is returned instead.
        """

        with self._lock:
            key = (enrollment.patient_id, enrollment.sequence_id)
            existing_id = self._active_index.get(key)
            if existing_id is not None:
                return self._enrollments[existing_id], False
            self._enrollments[enrollment.id] = enrollment
            self._active_index[key] = enrollment.id
            return enrollment, True

    def get_enrollment(self, enrollment_id: str) -> Optional[RecallEnrollment]:
        with self._lock:
            return self._enrollments.get(enrollment_id)

    def require_enrollment(self, enrollment_id: str) -> RecallEnrollment:
        enrollment = self.get_enrollment(enrollment_id)
        if enrollment is None:
            raise NotFoundError(
                f"Recall enrollment {enrollment_id} not found",
                details={"enrollment_id": enrollment_id},
            )
        return enrollment

    def enrollments(
        self,
        *,
        sequence_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> List[RecallEnrollment]:
        with self._lock:
            found = list(self._enrollments.values())
        if sequence_id is not None:
            found = [item for item in found if item.sequence_id == sequence_id]
        if status is not None:
            found = [item for item in found if item.status is status]
        return sorted(found, key=lambda item: (item.enrolled_at, item.id))

    def terminate(
        self,
        enrollment: RecallEnrollment,
        target: EnrollmentStatus,
    ) -> RecallEnrollment:
        """Move an ACTIVE enrollment to a terminal status and release its slot."""

        with self._lock:
            check_enrollment_transition(enrollment.id, enrollment.status, target)
            enrollment.status = target
            key = (enrollment.patient_id, enrollment.sequence_id)
            if self._active_index.get(key) == enrollment.id:
                del self._active_index[key]
            return enrollment

    # -- executions -----------------------------------------------------------

    def successful_execution(self, enrollment_id: str, step_number: int) -> Optional[StepExecution]:
        with self._lock:
            return self._executions.get((enrollment_id, step_number))

    def log_execution(self, execution: StepExecution) -> None:
        with self._lock:
            self._attempt_log.append(execution)
            if execution.success:
                self._executions[(execution.enrollment_id, execution.step_number)] = execution

    def executions(self, enrollment_id: Optional[str] = None) -> List[StepExecution]:
        with self._lock:
            found = list(self._attempt_log)
        if enrollment_id is not None:
            found = [item for item in found if item.enrollment_id == enrollment_id]
        return found


__all__ = [
    "PredictionStore",
    "UtilizationStore",
    "GapRegistry",
    "RecommendationStore",
    "RecallStore",
]
