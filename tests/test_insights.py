from datetime import timedelta

from slotpilot.domain import DateRange, Insight, InsightType, RecallStep, RecallStepType
from slotpilot.engine import EngineStores, build_engine
from slotpilot.insights import count_by_type, rank_insights

from conftest import at


def _insight(insight_id, priority, kind=InsightType.INFO):
    return Insight(id=insight_id, type=kind, category='test', title=insight_id, description='', priority=priority)


def test_rank_is_stable_and_deduplicated():
    ranked = rank_insights(
        [
            _insight('a', 5),
            _insight('b', 9, InsightType.WARNING),
            _insight('c', 5),
            _insight('b', 1),
            _insight('d', 9, InsightType.OPPORTUNITY),
        ]
    )
    assert [insight.id for insight in ranked] == ['b', 'd', 'a', 'c']
    assert count_by_type(ranked) == {'warning': 1, 'opportunity': 1, 'info': 2}


def test_collect_merges_every_source(engine, monday, now):
    engine.gap_detector.scan(DateRange(monday, monday), now=now)
    engine.recall.create_sequence(
        'Lapsed', [RecallStep(1, RecallStepType.EMAIL, 0)], days_since_last_visit=180
    )
    morning = at(monday, 8)

    report = engine.insights.collect(DateRange(monday, monday), now=morning)

    titles = [insight.title for insight in report.insights]
    assert 'High-Priority Gaps Available' in titles
    assert 'Unconfirmed Appointments' in titles
    assert 'Critical: Low Booking Rate' in titles
    priorities = [insight.priority for insight in report.insights]
    assert priorities == sorted(priorities, reverse=True)
    assert report.total == sum(report.counts.values())
    assert report.generated_at == morning


def test_collect_is_repeatable_and_limited(engine, monday, now):
    engine.gap_detector.scan(DateRange(monday, monday), now=now)
    period = DateRange(monday, monday + timedelta(days=1))

    first = engine.insights.collect(period, now=now)
    second = engine.insights.collect(period, now=now)
    assert [i.id for i in first.insights] == [i.id for i in second.insights]

    limited = engine.insights.collect(period, now=now, limit=2)
    assert [i.id for i in limited.insights] == [i.id for i in first.insights[:2]]
    assert limited.total == 2


def test_maintenance_run_is_idempotent(engine, now):
    engine.overbooking.generate_recommendations('prov-a', now=now)
    later = now + timedelta(days=3)

    summary = engine.run_maintenance(now=later)
    assert summary['expired_recommendations'] == 1
    assert summary['prediction_errors'] == 0

    again = engine.run_maintenance(now=later)
    assert again['expired_recommendations'] == 0
    assert again['expired_gaps'] == 0


def test_injected_stores_survive_engine_rebuilds(history, settings, now):
    stores = EngineStores()
    first = build_engine(history, settings, stores=stores)
    first.overbooking.generate_recommendations('prov-a', now=now)
    assert len(stores.recommendations.list()) == 1

    rebuilt = build_engine(history, settings, stores=stores)
    summary = rebuilt.run_maintenance(now=now + timedelta(days=3))
    assert summary['expired_recommendations'] == 1
    assert rebuilt.risk_model.store is stores.predictions
