import os
import sys
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

import pytest
import sqlalchemy as sa

# Ensure the repository root is on sys.path so tests can import the slotpilot package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from slotpilot.config import EngineSettings, get_engine_settings
from slotpilot.db import metadata
from slotpilot.db import models as tables
from slotpilot.db.config import get_database_settings
from slotpilot.domain import AppointmentSnapshot, AppointmentStatus
from slotpilot.engine import build_engine
from slotpilot.history import InMemoryHistory


# Sunday; the following Monday holds the fixture bookings.
NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
MONDAY = date(2026, 10, 19)
WEEKDAYS = (0, 1, 2, 3, 4)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def populate_sql_history(engine) -> None:
    """Create the history tables on ``engine`` and load the SQL fixture rows."""

    metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(
            sa.insert(tables.appointment_types),
            [
                {'id': 'type-follow', 'name': 'Follow-up Visit', 'duration_minutes': 30},
                {'id': 'type-new', 'name': 'New Patient Consult', 'duration_minutes': 60},
            ],
        )
        conn.execute(
            sa.insert(tables.provider_schedules),
            [
                {'provider_id': 'prov-a', 'weekday': weekday, 'start_time': '09:00', 'end_time': '17:00'}
                for weekday in range(5)
            ],
        )
        conn.execute(
            sa.insert(tables.provider_appointment_types),
            [{'provider_id': 'prov-a', 'appointment_type_id': 'type-new'}],
        )
        conn.execute(
            sa.insert(tables.schedule_blocks),
            [{'provider_id': 'prov-a', 'start_time': at(MONDAY, 12), 'end_time': at(MONDAY, 13), 'reason': 'lunch'}],
        )
        rows = [
            {
                'id': 'sql-risky',
                'patient_id': 'pat-1',
                'provider_id': 'prov-a',
                'start_time': at(MONDAY, 9),
                'end_time': at(MONDAY, 10),
                'status': 'scheduled',
                'appointment_type_id': 'type-follow',
                'is_telehealth': True,
                'booked_at': NOW,
            },
            {
                'id': 'sql-later',
                'patient_id': 'pat-2',
                'provider_id': 'prov-a',
                'start_time': at(MONDAY, 14),
                'end_time': at(MONDAY, 15),
                'status': 'No-Show',
                'appointment_type_id': None,
                'is_telehealth': False,
                'booked_at': None,
            },
        ]
        for index in range(5):
            rows.append(
                {
                    'id': f'sql-past-{index}',
                    'patient_id': 'pat-1',
                    'provider_id': 'prov-z',
                    'start_time': NOW - timedelta(days=7 * (index + 1)),
                    'end_time': NOW - timedelta(days=7 * (index + 1)) + timedelta(minutes=30),
                    'status': 'no_show' if index % 2 == 0 else 'completed',
                    'appointment_type_id': None,
                    'is_telehealth': False,
                    'booked_at': None,
                }
            )
        conn.execute(sa.insert(tables.appointments), rows)


def _build_appointment(
    appointment_id: str,
    patient_id: str,
    provider_id: str,
    start: Optional[datetime],
    minutes: int = 60,
    status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    **extra,
) -> AppointmentSnapshot:
    end = start + timedelta(minutes=minutes) if start is not None else None
    return AppointmentSnapshot(
        id=appointment_id,
        patient_id=patient_id,
        provider_id=provider_id,
        start_time=start,
        end_time=end,
        status=status,
        **extra,
    )


@pytest.fixture(autouse=True)
def _reset_cached_settings(monkeypatch):
    for name in (
        'SLOTPILOT_CONFIG_FILE',
        'SLOTPILOT_GAP_MIN_MINUTES',
        'SLOTPILOT_OVERBOOK_TTL_HOURS',
        'SLOTPILOT_OVERBOOK_MAX_PER_SLOT',
        'SLOTPILOT_RECALL_MAX_ATTEMPTS',
    ):
        monkeypatch.delenv(name, raising=False)
    get_engine_settings.cache_clear()
    get_database_settings.cache_clear()
    yield
    get_engine_settings.cache_clear()
    get_database_settings.cache_clear()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def monday() -> date:
    return MONDAY


@pytest.fixture
def make_appointment() -> Callable[..., AppointmentSnapshot]:
    return _build_appointment


@pytest.fixture
def history() -> InMemoryHistory:
    """Two working providers plus a history-only provider.

    ``prov-a`` works 09:00-17:00 and ``prov-b`` 09:00-12:00 on weekdays.  On
    the fixture Monday both have bookings at 09:00-10:00 and 11:00-12:00.
    ``pat-risky`` missed 3 of 5 recent visits and holds the 09:00 telehealth
    slot with ``prov-a``, booked exactly one day ahead.
    """

    store = InMemoryHistory()
    store.set_working_hours('prov-a', WEEKDAYS, '09:00', '17:00')
    store.set_working_hours('prov-b', WEEKDAYS, '09:00', '12:00')
    store.add_appointment_type('type-follow', 'Follow-up Visit', ['prov-a', 'prov-b'])
    store.add_appointment_type('type-new', 'New Patient Consult', ['prov-a'])

    outcomes = [
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
    ]
    for index, outcome in enumerate(outcomes, start=1):
        visit_day = (NOW - timedelta(days=7 * index)).date()
        store.add_appointment(
            _build_appointment(f'past-{index}', 'pat-risky', 'prov-c', at(visit_day, 10), 30, outcome)
        )

    store.add_appointments(
        [
            _build_appointment(
                'appt-risky',
                'pat-risky',
                'prov-a',
                at(MONDAY, 9),
                is_telehealth=True,
                booked_at=NOW,
            ),
            _build_appointment(
                'appt-steady',
                'pat-steady',
                'prov-a',
                at(MONDAY, 11),
                status=AppointmentStatus.CONFIRMED,
                booked_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
            ),
            _build_appointment('appt-b1', 'pat-b1', 'prov-b', at(MONDAY, 9), status=AppointmentStatus.CONFIRMED),
            _build_appointment('appt-b2', 'pat-b2', 'prov-b', at(MONDAY, 11), status=AppointmentStatus.CONFIRMED),
        ]
    )
    return store


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def engine(history, settings):
    return build_engine(history, settings)
