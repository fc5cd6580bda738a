"""Wire every engine component around a single history accessor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Optional

import structlog

from slotpilot.config import EngineSettings, get_engine_settings
from slotpilot.gaps import GapDetector
from slotpilot.history import HistoryAccessor
from slotpilot.insights import InsightAggregator
from slotpilot.no_show import NoShowRiskModel
from slotpilot.optimizer import SlotOptimizer
from slotpilot.overbooking import OverbookingAdvisor
from slotpilot.recall import RecallEngine
from slotpilot.stores import GapRegistry, PredictionStore, RecallStore, RecommendationStore, UtilizationStore
from slotpilot.utilization import UtilizationCalculator


logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class EngineStores:
    """Mutable state shared by the components.

    Pass one instance to :func:`build_engine` repeatedly to keep state
    across engine rebuilds.
    """

    predictions: PredictionStore = field(default_factory=PredictionStore)
    gaps: GapRegistry = field(default_factory=GapRegistry)
    utilization: UtilizationStore = field(default_factory=UtilizationStore)
    recommendations: RecommendationStore = field(default_factory=RecommendationStore)
    recall: RecallStore = field(default_factory=RecallStore)


@dataclass(slots=True)
class SchedulingEngine:
    history: HistoryAccessor
    settings: EngineSettings
    risk_model: NoShowRiskModel
    gap_detector: GapDetector
    utilization: UtilizationCalculator
    overbooking: OverbookingAdvisor
    optimizer: SlotOptimizer
    recall: RecallEngine
    insights: InsightAggregator

    def run_maintenance(
        self,
        *,
        now: datetime,
        provider_ids: Optional[Iterable[str]] = None,
        days_ahead: Optional[int] = None,
    ) -> Dict[str, int]:
        """Refresh predictions, expire stale recommendations and elapsed gaps
        and close recall enrollments whose patient has booked.

        Every step is idempotent, so overlapping runs are harmless.
        """

        providers = list(provider_ids) if provider_ids is not None else None
        horizon = days_ahead if days_ahead is not None else self.settings.overbooking.look_ahead_days
        refreshed = self.risk_model.refresh_upcoming(now=now, provider_ids=providers, days_ahead=horizon)
        expired_recommendations = self.overbooking.expire_stale(now=now)
        expired_gaps = self.gap_detector.expire_elapsed(now=now)
        closed_enrollments = self.recall.close_scheduled(now=now)
        summary = {
            "predictions": len(refreshed.succeeded),
            "prediction_errors": len(refreshed.errors),
            "expired_recommendations": len(expired_recommendations),
            "expired_gaps": len(expired_gaps),
            "closed_enrollments": len(closed_enrollments),
        }
        logger.info("maintenance_completed", **summary)
        return summary


def build_engine(
    history: HistoryAccessor,
    settings: Optional[EngineSettings] = None,
    *,
    stores: Optional[EngineStores] = None,
) -> SchedulingEngine:
    """Build a :class:`SchedulingEngine` whose components share ``stores``.

    Without ``stores`` every component starts empty.
    """

    settings = settings or get_engine_settings()
    stores = stores or EngineStores()
    risk_model = NoShowRiskModel(history, settings.risk, stores.predictions)
    gap_detector = GapDetector(history, settings.gaps, stores.gaps)
    utilization = UtilizationCalculator(history, settings.utilization, stores.utilization)
    overbooking = OverbookingAdvisor(history, risk_model, gap_detector, settings.overbooking, stores.recommendations)
    optimizer = SlotOptimizer(history, gap_detector, settings.optimizer)
    recall = RecallEngine(history, settings.recall, stores.recall)
    insights = InsightAggregator(gap_detector, recall, optimizer, utilization)
    return SchedulingEngine(
        history=history,
        settings=settings,
        risk_model=risk_model,
        gap_detector=gap_detector,
        utilization=utilization,
        overbooking=overbooking,
        optimizer=optimizer,
        recall=recall,
        insights=insights,
    )


__all__ = ["EngineStores", "SchedulingEngine", "build_engine"]
