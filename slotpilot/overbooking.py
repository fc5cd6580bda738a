"""Overbooking recommendations for slots held by likely no-shows.

Each recommendation follows ``PENDING -> {ACCEPTED, DECLINED, EXPIRED}``.
Only one PENDING recommendation exists per ``(provider, slot)``; a new
computation for the same slot refreshes it in place.  Accepted decisions
produce a :class:`BookingIntent` for the booking system to act on; the
advisor itself never creates appointments.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from slotpilot.config import OverbookingSettings
from slotpilot.domain import (
    UPCOMING_STATUSES,
    AppointmentSnapshot,
    BookingIntent,
    NoShowPrediction,
    OverbookingRecommendation,
    RecommendationStatus,
    RiskLevel,
)
from slotpilot.errors import ConflictError, ValidationError
from slotpilot.gaps import GapDetector
from slotpilot.history import HistoryAccessor
from slotpilot.metrics import OVERBOOKING_TRANSITIONS
from slotpilot.no_show import NoShowRiskModel
from slotpilot.stores import RecommendationStore


logger = structlog.get_logger(__name__)

_ELIGIBLE_LEVELS = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})


@dataclass(frozen=True, slots=True)
class DecisionOutcome:
    recommendation: OverbookingRecommendation
    booking_intent: Optional[BookingIntent] = None


def build_rationale(prediction: NoShowPrediction, limit: int = 3) -> str:
    """Describe the prediction using its strongest risk-raising factors."""

    drivers = [factor for factor in prediction.contributing_factors if factor.weight > 0][:limit]
    summary = f"{prediction.risk_level.value.upper()} no-show risk ({prediction.probability:.0%})"
    if not drivers:
        return summary
    listed = ", ".join(f"{factor.factor} (+{factor.weight:.2f})" for factor in drivers)
    return f"{summary}; top factors: {listed}"


class OverbookingAdvisor:
    def __init__(
        self,
        history: HistoryAccessor,
        risk_model: NoShowRiskModel,
        gap_detector: GapDetector,
        settings: Optional[OverbookingSettings] = None,
        store: Optional[RecommendationStore] = None,
    ) -> None:
        self.history = history
        self.risk_model = risk_model
        self.gap_detector = gap_detector
        self.settings = settings or OverbookingSettings()
        self.store = store if store is not None else RecommendationStore()

    # -- selection ------------------------------------------------------------

    def _is_actionable(self, prediction: NoShowPrediction) -> bool:
        return (
            prediction.risk_level in _ELIGIBLE_LEVELS
            and prediction.probability >= self.risk_model.settings.actionable_threshold
        )

    def _concurrent_overbooks(
        self,
        appointment: AppointmentSnapshot,
        neighbours: List[AppointmentSnapshot],
    ) -> int:
        start, end = appointment.require_times()
        accepted = [
            rec
            for rec in self.store.for_slot(appointment.provider_id, start, end)
            if rec.status is RecommendationStatus.ACCEPTED
        ]
        overlapping = [
            other
            for other in neighbours
            if other.id != appointment.id
            and not other.is_cancelled
            and other.has_valid_times
            and other.start_time < end  # type: ignore[operator]
            and other.end_time > start  # type: ignore[operator]
        ]
        return len(accepted) + len(overlapping)

    def _has_absorbing_capacity(self, appointment: AppointmentSnapshot, now: datetime) -> bool:
        start, end = appointment.require_times()
        if appointment.duration_minutes <= self.settings.low_priority_max_minutes:
            return True
        reach = timedelta(minutes=self.settings.adjacency_minutes)
        gaps = self.gap_detector.find_gaps(appointment.provider_id, start.date(), now=now)
        return any(gap.end_time >= start - reach and gap.start_time <= end + reach for gap in gaps)

    def _expire_pending_for(self, appointment: AppointmentSnapshot, now: datetime) -> None:
        start, end = appointment.require_times()
        for rec in self.store.for_slot(appointment.provider_id, start, end):
            if rec.status is RecommendationStatus.PENDING and rec.target_appointment_id == appointment.id:
                self.store.transition(rec.id, RecommendationStatus.PENDING, RecommendationStatus.EXPIRED)
                OVERBOOKING_TRANSITIONS.labels(status=RecommendationStatus.EXPIRED.value).inc()
                logger.info(
                    "overbooking_recommendation_withdrawn",
                    recommendation_id=rec.id,
                    appointment_id=appointment.id,
                )

    def _upsert(
        self,
        appointment: AppointmentSnapshot,
        prediction: NoShowPrediction,
        now: datetime,
    ) -> Optional[OverbookingRecommendation]:
        start, end = appointment.require_times()
        existing = self.store.for_slot(appointment.provider_id, start, end)
        if any(rec.status is RecommendationStatus.ACCEPTED for rec in existing):
            return None
        if any(
            rec.status is RecommendationStatus.DECLINED and rec.target_appointment_id == appointment.id
            for rec in existing
        ):
            return None

        rationale = build_rationale(prediction)
        expected_value = round(prediction.probability * self.settings.revenue_per_slot, 2)
        expires_at = now + timedelta(hours=self.settings.ttl_hours)

        pending = next((rec for rec in existing if rec.status is RecommendationStatus.PENDING), None)
        if pending is not None:
            pending.target_appointment_id = appointment.id
            pending.probability = prediction.probability
            pending.risk_level = prediction.risk_level
            pending.rationale = rationale
            pending.expected_value = expected_value
            pending.recommended_at = now
            pending.expires_at = expires_at
            logger.info("overbooking_recommendation_refreshed", recommendation_id=pending.id)
            return pending

        recommendation = OverbookingRecommendation(
            id=uuid.uuid4().hex,
            provider_id=appointment.provider_id,
            slot_start=start,
            slot_end=end,
            target_appointment_id=appointment.id,
            probability=prediction.probability,
            risk_level=prediction.risk_level,
            rationale=rationale,
            recommended_at=now,
            expires_at=expires_at,
            expected_value=expected_value,
        )
        self.store.add(recommendation)
        OVERBOOKING_TRANSITIONS.labels(status=RecommendationStatus.PENDING.value).inc()
        logger.info(
            "overbooking_recommendation_created",
            recommendation_id=recommendation.id,
            provider_id=recommendation.provider_id,
            appointment_id=appointment.id,
            probability=prediction.probability,
        )
        return recommendation

    def generate_recommendations(self, provider_id: str, *, now: datetime) -> List[OverbookingRecommendation]:
        """Recommend overbooking for upcoming high-risk appointments of ``provider_id``."""

        horizon = now + timedelta(days=self.settings.look_ahead_days)
        upcoming = self.history.provider_appointments(provider_id, now, horizon)
        results: List[OverbookingRecommendation] = []
        with self.store.transaction():
            for appointment in upcoming:
                if appointment.status not in UPCOMING_STATUSES or not appointment.has_valid_times:
                    continue
                if appointment.start_time <= now:  # type: ignore[operator]
                    continue
                prediction = self.risk_model.predict(appointment, now=now)
                if not self._is_actionable(prediction):
                    self._expire_pending_for(appointment, now)
                    continue
                if self._concurrent_overbooks(appointment, upcoming) >= self.settings.max_per_slot:
                    logger.debug("overbooking_slot_at_capacity", appointment_id=appointment.id)
                    continue
                if not self._has_absorbing_capacity(appointment, now):
                    logger.debug("overbooking_no_capacity", appointment_id=appointment.id)
                    continue
                recommendation = self._upsert(appointment, prediction, now)
                if recommendation is not None:
                    results.append(recommendation)
        return sorted(results, key=lambda rec: (rec.slot_start, rec.id))

    # -- lifecycle ------------------------------------------------------------

    def apply_decision(
        self,
        recommendation_id: str,
        accepted: bool,
        decided_by: str,
        decline_reason: Optional[str] = None,
        *,
        now: datetime,
    ) -> DecisionOutcome:
        """Accept or decline a PENDING recommendation.

        Raises :class:`ConflictError` when the recommendation is no longer
        PENDING or its time-to-live has passed; the record is left unchanged.
        """

        if not decided_by or not decided_by.strip():
            raise ValidationError(
                "A decision requires decided_by", details={"recommendation_id": recommendation_id}
            )

        target = RecommendationStatus.ACCEPTED if accepted else RecommendationStatus.DECLINED

        def _apply(rec: OverbookingRecommendation) -> None:
            if rec.expires_at <= now:
                raise ConflictError(
                    f"Recommendation {rec.id} expired at {rec.expires_at.isoformat()}",
                    details={"recommendation_id": rec.id, "current": rec.status.value},
                )
            rec.decided_at = now
            rec.decided_by = decided_by
            rec.decline_reason = None if accepted else decline_reason

        recommendation = self.store.transition(
            recommendation_id, RecommendationStatus.PENDING, target, apply=_apply
        )
        OVERBOOKING_TRANSITIONS.labels(status=target.value).inc()
        logger.info(
            "overbooking_decision_applied",
            recommendation_id=recommendation_id,
            status=target.value,
            decided_by=decided_by,
        )

        intent = None
        if accepted:
            intent = BookingIntent(
                recommendation_id=recommendation.id,
                provider_id=recommendation.provider_id,
                slot_start=recommendation.slot_start,
                slot_end=recommendation.slot_end,
                target_appointment_id=recommendation.target_appointment_id,
                requested_by=decided_by,
            )
        return DecisionOutcome(recommendation=recommendation, booking_intent=intent)

    def expire_stale(self, *, now: datetime) -> List[OverbookingRecommendation]:
        """Expire PENDING recommendations whose TTL has passed; safe to repeat."""

        expired: List[OverbookingRecommendation] = []
        for rec in self.store.list(status=RecommendationStatus.PENDING):
            if rec.expires_at > now:
                continue
            try:
                self.store.transition(rec.id, RecommendationStatus.PENDING, RecommendationStatus.EXPIRED)
            except ConflictError:
                logger.debug("overbooking_expiry_raced", recommendation_id=rec.id)
                continue
            OVERBOOKING_TRANSITIONS.labels(status=RecommendationStatus.EXPIRED.value).inc()
            expired.append(rec)
        if expired:
            logger.info("overbooking_recommendations_expired", count=len(expired))
        return expired

    def record_overbooking(self, recommendation_id: str, appointment_id: str) -> OverbookingRecommendation:
        """Link an accepted recommendation to the appointment the booking system created."""

        with self.store.transaction():
            recommendation = self.store.require(recommendation_id)
            if recommendation.status is not RecommendationStatus.ACCEPTED:
                raise ConflictError(
                    f"Recommendation {recommendation_id} is {recommendation.status.value}",
                    details={"recommendation_id": recommendation_id, "current": recommendation.status.value},
                )
            if recommendation.booked_appointment_id not in (None, appointment_id):
                raise ConflictError(
                    f"Recommendation {recommendation_id} already booked",
                    details={
                        "recommendation_id": recommendation_id,
                        "booked_appointment_id": recommendation.booked_appointment_id,
                    },
                )
            recommendation.booked_appointment_id = appointment_id
        logger.info(
            "overbooking_recorded",
            recommendation_id=recommendation_id,
            appointment_id=appointment_id,
        )
        return recommendation

    def pending_recommendations(self, provider_id: Optional[str] = None) -> List[OverbookingRecommendation]:
        return self.store.list(provider_id=provider_id, status=RecommendationStatus.PENDING)

    def get_recommendation(self, recommendation_id: str) -> OverbookingRecommendation:
        return self.store.require(recommendation_id)


__all__ = [
    "DecisionOutcome",
    "OverbookingAdvisor",
    "build_rationale",
]
