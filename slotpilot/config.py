"""Tunable constants for the scheduling engine.

Settings are grouped per component and validated with pydantic.  The
resolved :class:`EngineSettings` is cached by :func:`get_engine_settings`;
callers that need a fresh view (tests, config reloads) should call
``get_engine_settings.cache_clear()``.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel, Field, field_validator, model_validator


logger = structlog.get_logger(__name__)


class RiskThresholds(BaseModel):
    """Upper bounds (exclusive) for LOW, MEDIUM and HIGH risk levels."""

    low: float = 0.15
    medium: float = 0.35
    high: float = 0.60

    @model_validator(mode="after")
    def _check_monotonic(self) -> "RiskThresholds":
        if not 0.0 < self.low < self.medium < self.high < 1.0:
            raise ValueError("risk thresholds must satisfy 0 < low < medium < high < 1")
        return self


class RiskModelSettings(BaseModel):
    base_rate: float = Field(default=0.12, ge=0.0, le=1.0)
    prior_strength: float = Field(default=1.0, gt=0.0)
    min_history: int = Field(default=3, ge=0)
    recency_days: int = Field(default=180, gt=0)
    stale_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    history_weight: float = 0.8
    cancellation_weight: float = 0.1
    cancellation_baseline: float = Field(default=0.1, ge=0.0, le=1.0)
    # (upper bound in days, contribution); the last entry applies beyond every bound
    lead_time: list[tuple[float, float]] = Field(
        default_factory=lambda: [
            (1.0, -0.02),
            (3.0, 0.0),
            (7.0, 0.01),
            (14.0, 0.03),
            (30.0, 0.05),
            (float("inf"), 0.08),
        ]
    )
    # Monday == 0
    day_of_week: Dict[int, float] = Field(
        default_factory=lambda: {0: 0.02, 1: -0.01, 2: -0.01, 3: 0.0, 4: 0.03, 5: 0.05, 6: 0.05}
    )
    # (hour lower bound inclusive, contribution); sorted ascending
    time_of_day: list[tuple[int, float]] = Field(
        default_factory=lambda: [(0, 0.03), (9, -0.01), (12, 0.04), (14, 0.0), (17, 0.02), (19, 0.03)]
    )
    telehealth: float = -0.03
    # Matched case-insensitively against the appointment type name
    appointment_type: Dict[str, float] = Field(
        default_factory=lambda: {
            "new patient": 0.05,
            "consult": 0.03,
            "follow-up": 0.0,
            "follow up": 0.0,
            "therapy": -0.01,
            "adjustment": -0.02,
        }
    )
    bad_weather: float = 0.04
    holiday_period: float = 0.03
    thresholds: RiskThresholds = Field(default_factory=RiskThresholds)
    actionable_threshold: float = Field(default=0.35, ge=0.0, le=1.0)

    @field_validator("day_of_week")
    @classmethod
    def _check_weekdays(cls, value: Dict[int, float]) -> Dict[int, float]:
        invalid = [day for day in value if day < 0 or day > 6]
        if invalid:
            raise ValueError(f"day_of_week keys must be 0-6; got {sorted(invalid)}")
        return value

    @field_validator("lead_time", "time_of_day")
    @classmethod
    def _check_sorted(cls, value: list) -> list:
        bounds = [bound for bound, _ in value]
        if not bounds or bounds != sorted(bounds):
            raise ValueError("bucket bounds must be non-empty and ascending")
        return value


class GapSettings(BaseModel):
    min_gap_minutes: int = Field(default=10, gt=0)
    duration_cap_minutes: int = Field(default=120, gt=0)
    default_fill_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    fill_rate_lookback_weeks: int = Field(default=8, gt=0)
    insight_priority_threshold: int = Field(default=7, ge=1, le=10)
    cancellation_insight_threshold: int = Field(default=3, ge=0)


class OverbookingSettings(BaseModel):
    ttl_hours: int = Field(default=48, gt=0)
    look_ahead_days: int = Field(default=14, gt=0)
    max_per_slot: int = Field(default=1, ge=1)
    adjacency_minutes: int = Field(default=30, ge=0)
    low_priority_max_minutes: int = Field(default=30, gt=0)
    revenue_per_slot: float = Field(default=75.0, ge=0.0)


class UrgencyWeights(BaseModel):
    preference: float = Field(ge=0.0)
    gap_fill: float = Field(ge=0.0)
    earliness: float = Field(ge=0.0)


def _default_urgency_weights() -> Dict[str, UrgencyWeights]:
    return {
        "low": UrgencyWeights(preference=0.6, gap_fill=0.3, earliness=0.1),
        "normal": UrgencyWeights(preference=0.5, gap_fill=0.3, earliness=0.2),
        "high": UrgencyWeights(preference=0.3, gap_fill=0.2, earliness=0.5),
        "urgent": UrgencyWeights(preference=0.1, gap_fill=0.1, earliness=0.8),
    }


class OptimizerSettings(BaseModel):
    step_minutes: int = Field(default=15, gt=0)
    max_results: int = Field(default=10, gt=0)
    time_tolerance_minutes: int = Field(default=60, ge=0)
    weights: Dict[str, UrgencyWeights] = Field(default_factory=_default_urgency_weights)
    type_concentration_threshold: float = Field(default=0.6, gt=0.0, le=1.0)
    no_show_pattern_min_total: int = Field(default=5, ge=1)
    no_show_pattern_min_peak: int = Field(default=3, ge=1)
    low_booking_daily_average: float = Field(default=5.0, ge=0.0)
    fragment_max_minutes: int = Field(default=30, gt=0)
    fragment_insight_threshold: int = Field(default=3, ge=1)

    @field_validator("weights")
    @classmethod
    def _check_urgencies(cls, value: Dict[str, UrgencyWeights]) -> Dict[str, UrgencyWeights]:
        missing = {"low", "normal", "high", "urgent"} - set(value)
        if missing:
            raise ValueError(f"weights missing urgencies: {sorted(missing)}")
        return value


class RecallSettings(BaseModel):
    default_max_attempts: int = Field(default=5, ge=1)
    retry_cooldown_hours: int = Field(default=24, ge=0)
    batch_size: int = Field(default=50, gt=0)
    stalled_after_days: int = Field(default=7, gt=0)
    low_success_min_enrollments: int = Field(default=10, ge=1)
    low_success_rate: float = Field(default=0.2, ge=0.0, le=1.0)
    candidate_insight_threshold: int = Field(default=20, ge=1)


class UtilizationSettings(BaseModel):
    warning_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    critical_threshold: float = Field(default=0.50, ge=0.0, le=1.0)
    revenue_per_minute: float = Field(default=1.25, ge=0.0)
    trend_margin: float = Field(default=0.05, ge=0.0)

    @model_validator(mode="after")
    def _check_order(self) -> "UtilizationSettings":
        if self.critical_threshold > self.warning_threshold:
            raise ValueError("critical_threshold must not exceed warning_threshold")
        return self


class EngineSettings(BaseModel):
    """Aggregate settings for every engine component."""

    risk: RiskModelSettings = Field(default_factory=RiskModelSettings)
    gaps: GapSettings = Field(default_factory=GapSettings)
    overbooking: OverbookingSettings = Field(default_factory=OverbookingSettings)
    optimizer: OptimizerSettings = Field(default_factory=OptimizerSettings)
    recall: RecallSettings = Field(default_factory=RecallSettings)
    utilization: UtilizationSettings = Field(default_factory=UtilizationSettings)


_ENV_OVERRIDES = {
    "SLOTPILOT_GAP_MIN_MINUTES": ("gaps", "min_gap_minutes"),
    "SLOTPILOT_OVERBOOK_TTL_HOURS": ("overbooking", "ttl_hours"),
    "SLOTPILOT_OVERBOOK_MAX_PER_SLOT": ("overbooking", "max_per_slot"),
    "SLOTPILOT_RECALL_MAX_ATTEMPTS": ("recall", "default_max_attempts"),
}


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _load_config_file(path: str) -> Dict[str, Any]:
    resolved = Path(path).expanduser()
    with resolved.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"Config file {resolved} must contain a JSON object")
    return payload


@lru_cache(maxsize=1)
def get_engine_settings() -> EngineSettings:
    """Return engine settings resolved from ``SLOTPILOT_*`` environment variables."""

    payload: Dict[str, Any] = {}
    config_file = os.getenv("SLOTPILOT_CONFIG_FILE")
    if config_file:
        payload = _load_config_file(config_file)

    for env_name, (section, field) in _ENV_OVERRIDES.items():
        value = _get_int_env(env_name)
        if value is None:
            continue
        payload.setdefault(section, {})[field] = value

    settings = EngineSettings.model_validate(payload)
    logger.debug("engine_settings_resolved", config_file=config_file, overrides=sorted(payload))
    return settings


__all__ = [
    "RiskThresholds",
    "RiskModelSettings",
    "GapSettings",
    "OverbookingSettings",
    "UrgencyWeights",
    "OptimizerSettings",
    "RecallSettings",
    "UtilizationSettings",
    "EngineSettings",
    "get_engine_settings",
]
