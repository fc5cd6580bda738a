"""Ranked, deduplicated view over every component's insights."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

import structlog

from slotpilot.domain import DateRange, Insight, InsightReport, InsightType
from slotpilot.gaps import GapDetector
from slotpilot.optimizer import SlotOptimizer
from slotpilot.recall import RecallEngine
from slotpilot.utilization import UtilizationCalculator


logger = structlog.get_logger(__name__)


def rank_insights(insights: List[Insight]) -> List[Insight]:
    """Drop repeated ids and order by priority, keeping source order for ties."""

    seen = set()
    unique: List[Insight] = []
    for insight in insights:
        if insight.id in seen:
            continue
        seen.add(insight.id)
        unique.append(insight)
    return sorted(unique, key=lambda insight: -insight.priority)


def count_by_type(insights: List[Insight]) -> Dict[str, int]:
    counts = {kind.value: 0 for kind in InsightType}
    for insight in insights:
        counts[insight.type.value] += 1
    return counts


class InsightAggregator:
    def __init__(
        self,
        gap_detector: GapDetector,
        recall_engine: RecallEngine,
        optimizer: SlotOptimizer,
        utilization: UtilizationCalculator,
    ) -> None:
        self.gap_detector = gap_detector
        self.recall_engine = recall_engine
        self.optimizer = optimizer
        self.utilization = utilization

    def collect(
        self,
        date_range: DateRange,
        *,
        now: datetime,
        provider_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> InsightReport:
        """Merge gap, recall, today, improvement and utilization insights.

        Gap insights cover gaps already recorded by the detector; nothing here
        changes recommendation, gap or enrollment state.
        """

        provider_ids = [provider_id] if provider_id else None
        collected: List[Insight] = []
        collected.extend(self.gap_detector.generate_gap_insights(date_range, now=now, provider_id=provider_id))
        collected.extend(self.recall_engine.generate_recall_insights(now=now))
        collected.extend(self.optimizer.get_today_suggestions(now=now))
        collected.extend(self.optimizer.suggest_schedule_improvements(date_range, now=now))
        collected.extend(self.utilization.generate_utilization_insights(date_range, provider_ids))

        ranked = rank_insights(collected)
        if limit is not None:
            ranked = ranked[:limit]
        report = InsightReport(insights=ranked, counts=count_by_type(ranked), generated_at=now)
        logger.info("insights_collected", total=report.total, **report.counts)
        return report


__all__ = ["InsightAggregator", "count_by_type", "rank_insights"]
