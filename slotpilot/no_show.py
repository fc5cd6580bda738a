"""Rules-based no-show risk scoring.

The model is a centred additive scorer: every feature contributes a signed
weight relative to the population base rate and the contributions are
summed and clamped into ``[0, 1]``.  Coefficients come from
:class:`slotpilot.config.RiskModelSettings` and stay fixed for the lifetime
of a :class:`NoShowRiskModel`, so predictions are reproducible for a given
input and ``now``.

Feature extraction is split into explicit per-category structures
(:class:`HistoricalFeatures`, :class:`ContextualFeatures`,
:class:`StructuralFeatures`) rather than free-form dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

import structlog

from slotpilot.config import RiskModelSettings, RiskThresholds
from slotpilot.domain import (
    OUTCOME_STATUSES,
    UPCOMING_STATUSES,
    AppointmentSnapshot,
    AppointmentStatus,
    BatchOutcome,
    BatchResult,
    NoShowPrediction,
    RiskFactor,
    RiskLevel,
)
from slotpilot.errors import DataInsufficientError, SchedulingError
from slotpilot.history import HistoryAccessor
from slotpilot.logging_config import batch_context
from slotpilot.metrics import BATCH_ITEMS, PREDICTIONS
from slotpilot.stores import PredictionStore
from slotpilot.time_utils import days_between, ensure_utc


logger = structlog.get_logger(__name__)


def risk_level_for(probability: float, thresholds: RiskThresholds) -> RiskLevel:
    """Map ``probability`` onto a :class:`RiskLevel` using fixed thresholds."""

    if probability < thresholds.low:
        return RiskLevel.LOW
    if probability < thresholds.medium:
        return RiskLevel.MEDIUM
    if probability < thresholds.high:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def combined_no_show_probability(probabilities: Iterable[float]) -> float:
    """Probability that at least one of the appointments is a no-show."""

    values = list(probabilities)
    if not values:
        return 0.0
    all_attend = 1.0
    for probability in values:
        all_attend *= 1.0 - probability
    return round(1.0 - all_attend, 4)


@dataclass(frozen=True, slots=True)
class ContextualSignals:
    """Optional external signals supplied by the caller."""

    bad_weather: bool = False
    holiday_period: bool = False


@dataclass(frozen=True, slots=True)
class HistoricalFeatures:
    completed: int
    no_shows: int
    cancellations: int
    weighted_no_shows: float
    weighted_attendance: float

    @property
    def total(self) -> int:
        return self.completed + self.no_shows + self.cancellations

    @property
    def cancellation_rate(self) -> float:
        return self.cancellations / self.total if self.total else 0.0


@dataclass(frozen=True, slots=True)
class ContextualFeatures:
    lead_time_days: float
    weekday: int
    hour: int
    is_telehealth: bool
    signals: ContextualSignals


@dataclass(frozen=True, slots=True)
class StructuralFeatures:
    appointment_type_name: Optional[str]


@dataclass(frozen=True, slots=True)
class FeatureSet:
    historical: Optional[HistoricalFeatures]
    contextual: ContextualFeatures
    structural: StructuralFeatures
    history_size: int


_WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

_RECOMMENDATIONS = {
    RiskLevel.LOW: [],
    RiskLevel.MEDIUM: ["Send reminder 48 hours before appointment"],
    RiskLevel.HIGH: [
        "Send additional reminder 24 hours before appointment",
        "Consider confirmation call",
    ],
    RiskLevel.CRITICAL: [
        "Send additional reminder 24 hours before appointment",
        "Consider confirmation call",
        "Consider overbooking this time slot",
    ],
}


class NoShowRiskModel:
    """Explainable no-show probability scorer with a per-appointment cache."""

    def __init__(
        self,
        history: HistoryAccessor,
        settings: Optional[RiskModelSettings] = None,
        store: Optional[PredictionStore] = None,
    ) -> None:
        self.history = history
        self.settings = settings or RiskModelSettings()
        self.store = store if store is not None else PredictionStore()

    # -- feature extraction -------------------------------------------------

    def extract_historical(
        self, appointment: AppointmentSnapshot, past: Sequence[AppointmentSnapshot]
    ) -> HistoricalFeatures:
        """Summarise prior outcomes; raises :class:`DataInsufficientError` when thin."""

        start, _ = appointment.require_times()
        completed = no_shows = cancellations = 0
        weighted_no_shows = weighted_attendance = 0.0
        recency = timedelta(days=self.settings.recency_days)
        for prior in past:
            if prior.id == appointment.id or prior.start_time is None:
                continue
            if prior.start_time >= start or prior.status not in OUTCOME_STATUSES:
                continue
            weight = 1.0 if start - prior.start_time <= recency else self.settings.stale_weight
            if prior.status is AppointmentStatus.CANCELLED:
                cancellations += 1
                continue
            weighted_attendance += weight
            if prior.status is AppointmentStatus.NO_SHOW:
                no_shows += 1
                weighted_no_shows += weight
            else:
                completed += 1

        features = HistoricalFeatures(
            completed=completed,
            no_shows=no_shows,
            cancellations=cancellations,
            weighted_no_shows=weighted_no_shows,
            weighted_attendance=weighted_attendance,
        )
        if features.total < self.settings.min_history:
            raise DataInsufficientError(
                "Not enough appointment history to score patient",
                details={"patient_id": appointment.patient_id, "history_size": features.total},
            )
        return features

    def extract_features(
        self,
        appointment: AppointmentSnapshot,
        past: Sequence[AppointmentSnapshot],
        signals: ContextualSignals,
        now: datetime,
    ) -> FeatureSet:
        start, _ = appointment.require_times()
        booked_at = appointment.booked_at or now
        lead_time = max(days_between(ensure_utc(booked_at), ensure_utc(start)), 0.0)

        history_size = sum(
            1
            for prior in past
            if prior.id != appointment.id
            and prior.start_time is not None
            and prior.start_time < start
            and prior.status in OUTCOME_STATUSES
        )
        try:
            historical: Optional[HistoricalFeatures] = self.extract_historical(appointment, past)
        except DataInsufficientError as exc:
            logger.debug("no_show_history_insufficient", **exc.details)
            historical = None

        return FeatureSet(
            historical=historical,
            contextual=ContextualFeatures(
                lead_time_days=lead_time,
                weekday=start.weekday(),
                hour=start.hour,
                is_telehealth=appointment.is_telehealth,
                signals=signals,
            ),
            structural=StructuralFeatures(
                appointment_type_name=self.history.appointment_type_name(appointment.appointment_type_id)
            ),
            history_size=history_size,
        )

    # -- scoring --------------------------------------------------------------

    def _historical_factors(self, features: HistoricalFeatures) -> List[RiskFactor]:
        cfg = self.settings
        smoothed = (features.weighted_no_shows + cfg.prior_strength * cfg.base_rate) / (
            features.weighted_attendance + cfg.prior_strength
        )
        factors = [
            RiskFactor(
                "patient_history",
                cfg.history_weight * (smoothed - cfg.base_rate),
                f"{features.no_shows} no-shows in {features.no_shows + features.completed} attended-or-missed visits",
            ),
            RiskFactor(
                "cancellations",
                cfg.cancellation_weight * (features.cancellation_rate - cfg.cancellation_baseline),
                f"{features.cancellations} cancellations",
            ),
        ]
        return factors

    def _contextual_factors(self, features: ContextualFeatures) -> List[RiskFactor]:
        cfg = self.settings
        factors: List[RiskFactor] = []

        lead_weight = cfg.lead_time[-1][1]
        for bound, weight in cfg.lead_time:
            if features.lead_time_days <= bound:
                lead_weight = weight
                break
        factors.append(
            RiskFactor("lead_time", lead_weight, f"booked {features.lead_time_days:.1f} days ahead")
        )

        factors.append(
            RiskFactor(
                "day_of_week",
                cfg.day_of_week.get(features.weekday, 0.0),
                _WEEKDAY_NAMES[features.weekday],
            )
        )

        hour_weight = cfg.time_of_day[0][1]
        for lower, weight in cfg.time_of_day:
            if features.hour >= lower:
                hour_weight = weight
        factors.append(RiskFactor("time_of_day", hour_weight, f"{features.hour:02d}:00"))

        if features.is_telehealth:
            factors.append(RiskFactor("telehealth", cfg.telehealth, "telehealth visit"))
        if features.signals.bad_weather:
            factors.append(RiskFactor("weather", cfg.bad_weather, "adverse weather expected"))
        if features.signals.holiday_period:
            factors.append(RiskFactor("holiday_period", cfg.holiday_period, "holiday period"))
        return factors

    def _structural_factors(self, features: StructuralFeatures) -> List[RiskFactor]:
        name = (features.appointment_type_name or "").lower()
        if not name:
            return []
        for keyword, weight in self.settings.appointment_type.items():
            if keyword in name:
                return [RiskFactor("appointment_type", weight, features.appointment_type_name or "")]
        return []

    def _confidence(self, history_size: int) -> float:
        confidence = 0.6
        if history_size > 0:
            confidence += 0.2
        if history_size >= 10:
            confidence += 0.1
        if history_size >= 20:
            confidence += 0.1
        return round(min(confidence, 1.0), 2)

    def score(self, appointment: AppointmentSnapshot, features: FeatureSet, now: datetime) -> NoShowPrediction:
        start, _ = appointment.require_times()
        factors: List[RiskFactor] = []
        if features.historical is not None:
            factors.extend(self._historical_factors(features.historical))
        factors.extend(self._contextual_factors(features.contextual))
        factors.extend(self._structural_factors(features.structural))

        raw = self.settings.base_rate + sum(factor.weight for factor in factors)
        probability = round(min(max(raw, 0.0), 1.0), 4)
        risk_level = risk_level_for(probability, self.settings.thresholds)

        contributing = sorted(
            (
                RiskFactor(factor.factor, round(factor.weight, 4), factor.detail)
                for factor in factors
                if round(factor.weight, 4) != 0.0
            ),
            key=lambda factor: (-abs(factor.weight), factor.factor),
        )
        return NoShowPrediction(
            appointment_id=appointment.id,
            provider_id=appointment.provider_id,
            start_time=start,
            probability=probability,
            risk_level=risk_level,
            contributing_factors=contributing,
            computed_at=now,
            confidence=self._confidence(features.history_size),
            low_confidence=features.historical is None,
            recommendations=list(_RECOMMENDATIONS[risk_level]),
        )

    # -- public operations --------------------------------------------------

    def predict(
        self,
        appointment: AppointmentSnapshot,
        patient_history: Optional[Sequence[AppointmentSnapshot]] = None,
        signals: Optional[ContextualSignals] = None,
        *,
        now: datetime,
        persist: bool = True,
    ) -> NoShowPrediction:
        """Score ``appointment`` and store the result as its current prediction.

        ``patient_history`` defaults to the accessor's record of the patient.
        Raises :class:`slotpilot.errors.ValidationError` when the appointment
        has no usable start and end times.
        """

        appointment.require_times()
        if patient_history is None:
            patient_history = self.history.patient_appointments(appointment.patient_id)
        features = self.extract_features(appointment, patient_history, signals or ContextualSignals(), now)
        prediction = self.score(appointment, features, now)
        PREDICTIONS.labels(risk_level=prediction.risk_level.value).inc()
        logger.debug(
            "no_show_predicted",
            appointment_id=appointment.id,
            probability=prediction.probability,
            risk_level=prediction.risk_level.value,
            low_confidence=prediction.low_confidence,
        )
        if persist:
            self.store.upsert(prediction)
        return prediction

    def batch_predict(
        self,
        appointment_ids: Iterable[str],
        *,
        now: datetime,
        signals: Optional[ContextualSignals] = None,
    ) -> BatchResult:
        """Predict each appointment independently; cancelled ones are skipped."""

        result = BatchResult()
        seen: set[str] = set()
        with batch_context("batch_predict"):
            for appointment_id in appointment_ids:
                if appointment_id in seen:
                    continue
                seen.add(appointment_id)
                appointment = self.history.get_appointment(appointment_id)
                if appointment is None:
                    result.add(appointment_id, BatchOutcome.ERROR, error="appointment not found")
                elif appointment.is_cancelled:
                    result.add(appointment_id, BatchOutcome.SKIPPED, error="appointment cancelled")
                else:
                    try:
                        prediction = self.predict(appointment, signals=signals, now=now)
                    except SchedulingError as exc:
                        result.add(appointment_id, BatchOutcome.ERROR, error=exc.message)
                    else:
                        result.add(appointment_id, BatchOutcome.SUCCESS, value=prediction)
                BATCH_ITEMS.labels(operation="batch_predict", outcome=result.items[-1].outcome.value).inc()
            logger.info("no_show_batch_completed", **result.counts())
        return result

    def refresh_upcoming(
        self,
        *,
        now: datetime,
        provider_ids: Optional[Iterable[str]] = None,
        days_ahead: int = 14,
    ) -> BatchResult:
        """Re-score every upcoming appointment for the given providers."""

        horizon = now + timedelta(days=days_ahead)
        ids: List[str] = []
        for provider_id in provider_ids or self.history.provider_ids():
            for appointment in self.history.provider_appointments(provider_id, now, horizon):
                if appointment.status in UPCOMING_STATUSES and appointment.start_time and appointment.start_time > now:
                    ids.append(appointment.id)
        return self.batch_predict(ids, now=now)

    def get_prediction(self, appointment_id: str) -> Optional[NoShowPrediction]:
        return self.store.get(appointment_id)

    def high_risk_appointments(
        self,
        start: datetime,
        end: datetime,
        *,
        min_level: RiskLevel = RiskLevel.HIGH,
        provider_id: Optional[str] = None,
    ) -> List[NoShowPrediction]:
        """Stored predictions in ``[start, end)`` at or above ``min_level``, riskiest first."""

        found = [
            prediction
            for prediction in self.store.list(provider_id=provider_id, start=start, end=end)
            if prediction.risk_level.rank >= min_level.rank
        ]
        return sorted(found, key=lambda item: (-item.probability, item.start_time, item.appointment_id))

    def record_outcome(self, appointment_id: str, outcome: AppointmentStatus) -> Optional[NoShowPrediction]:
        """Mark whether the stored prediction matched what actually happened.

        A prediction counts as accurate when a HIGH/CRITICAL score ended in a
        no-show, or a LOW/MEDIUM score ended in attendance.  Cancellations are
        recorded without an accuracy verdict.
        """

        with self.store.transaction():
            prediction = self.store.get(appointment_id)
            if prediction is None:
                return None
            prediction.actual_outcome = outcome
            if outcome is AppointmentStatus.CANCELLED:
                prediction.was_accurate = None
            else:
                predicted_no_show = prediction.risk_level.rank >= RiskLevel.HIGH.rank
                prediction.was_accurate = predicted_no_show == (outcome is AppointmentStatus.NO_SHOW)
        logger.info(
            "no_show_outcome_recorded",
            appointment_id=appointment_id,
            outcome=outcome.value,
            was_accurate=prediction.was_accurate,
        )
        return prediction


__all__ = [
    "ContextualSignals",
    "HistoricalFeatures",
    "ContextualFeatures",
    "StructuralFeatures",
    "FeatureSet",
    "NoShowRiskModel",
    "risk_level_for",
    "combined_no_show_probability",
]
