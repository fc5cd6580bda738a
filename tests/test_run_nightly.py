import importlib.util
import json
import sys
from pathlib import Path

import pytest
import sqlalchemy as sa

from conftest import MONDAY, NOW, at, populate_sql_history


def _load_script():
    script_path = Path(__file__).resolve().parents[1] / 'scripts' / 'run_nightly.py'
    spec = importlib.util.spec_from_file_location('run_nightly', script_path)
    if not spec or not spec.loader:
        raise RuntimeError('Unable to load scripts/run_nightly.py')
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    sys.modules['run_nightly'] = module
    return module


@pytest.fixture
def run_nightly():
    return _load_script()


@pytest.fixture
def database_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'clinic.db'}"
    engine = sa.create_engine(url, future=True)
    populate_sql_history(engine)
    engine.dispose()
    return url


def _summary(capsys):
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    return json.loads(lines[-1])


def test_nightly_run_reports_high_risk_appointments(run_nightly, database_url, capsys):
    assert run_nightly.main(['--database-url', database_url, '--days-ahead', '7'], now=NOW) == 0

    summary = _summary(capsys)
    assert summary['predictions'] == 1
    assert summary['prediction_errors'] == 0
    assert [item['appointment_id'] for item in summary['high_risk']] == ['sql-risky']
    risky = summary['high_risk'][0]
    assert risky['risk_level'] == 'high'
    assert risky['probability'] == pytest.approx(0.39)
    assert 'gaps' not in summary
    assert 'expired_recommendations' not in summary


def test_nightly_run_can_scan_gaps(run_nightly, database_url, capsys):
    argv = ['--database-url', database_url, '--days-ahead', '1', '--provider', 'prov-a', '--scan-gaps']
    assert run_nightly.main(argv, now=NOW) == 0

    summary = _summary(capsys)
    spans = sorted((gap['start_time'], gap['end_time']) for gap in summary['gaps'])
    assert spans == [
        (at(MONDAY, 10).isoformat(), at(MONDAY, 12).isoformat()),
        (at(MONDAY, 13).isoformat(), at(MONDAY, 14).isoformat()),
        (at(MONDAY, 15).isoformat(), at(MONDAY, 17).isoformat()),
    ]


def test_nightly_run_fails_cleanly_without_schema(run_nightly, tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'empty.db'}"
    assert run_nightly.main(['--database-url', url], now=NOW) == 1
