"""Prometheus counters for engine activity."""

from __future__ import annotations

from prometheus_client import Counter


PREDICTIONS = Counter(
    "slotpilot_predictions_total",
    "No-show predictions computed, by resulting risk level",
    ("risk_level",),
)

GAPS_DETECTED = Counter(
    "slotpilot_gaps_detected_total",
    "Schedule gaps emitted by gap detection",
)

OVERBOOKING_TRANSITIONS = Counter(
    "slotpilot_overbooking_transitions_total",
    "Overbooking recommendation state changes, by target status",
    ("status",),
)

RECALL_STEP_EXECUTIONS = Counter(
    "slotpilot_recall_step_executions_total",
    "Recorded recall step executions, by outcome",
    ("outcome",),
)

BATCH_ITEMS = Counter(
    "slotpilot_batch_items_total",
    "Items processed by batch operations",
    ("operation", "outcome"),
)


__all__ = [
    "PREDICTIONS",
    "GAPS_DETECTED",
    "OVERBOOKING_TRANSITIONS",
    "RECALL_STEP_EXECUTIONS",
    "BATCH_ITEMS",
]
