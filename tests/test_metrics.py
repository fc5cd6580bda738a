from typing import Dict, Optional

from prometheus_client import REGISTRY


def _metric_value(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    value = REGISTRY.get_sample_value(name, labels or {})
    return 0.0 if value is None else float(value)


def test_prediction_counter_labels_risk_level(engine, history, now):
    before = _metric_value('slotpilot_predictions_total', {'risk_level': 'high'})
    engine.risk_model.predict(history.get_appointment('appt-risky'), now=now)
    assert _metric_value('slotpilot_predictions_total', {'risk_level': 'high'}) == before + 1


def test_gap_and_overbooking_counters(engine, monday, now):
    gaps_before = _metric_value('slotpilot_gaps_detected_total')
    engine.gap_detector.detect_gaps('prov-b', monday, now=now)
    assert _metric_value('slotpilot_gaps_detected_total') == gaps_before + 1

    pending_before = _metric_value('slotpilot_overbooking_transitions_total', {'status': 'pending'})
    created = engine.overbooking.generate_recommendations('prov-a', now=now)
    assert _metric_value('slotpilot_overbooking_transitions_total', {'status': 'pending'}) == pending_before + len(created)


def test_batch_items_counted_per_outcome(engine, now):
    label = {'operation': 'batch_predict', 'outcome': 'error'}
    before = _metric_value('slotpilot_batch_items_total', label)
    engine.risk_model.batch_predict(['appt-missing'], now=now)
    assert _metric_value('slotpilot_batch_items_total', label) == before + 1
