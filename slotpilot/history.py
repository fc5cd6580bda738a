"""Read-only access to appointment, schedule and provider history.

The engine never fetches data itself; every component receives a
:class:`HistoryAccessor`.  Two implementations are provided: an in-memory
one for tests and embedding, and a SQLAlchemy Core one reading the tables
described in :mod:`slotpilot.db.models`.
"""

from __future__ import annotations

import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from threading import Lock
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

import sqlalchemy as sa
import structlog
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from slotpilot.db import models as tables
from slotpilot.db.config import get_database_settings
from slotpilot.domain import AppointmentSnapshot, AppointmentStatus, TimeBlock
from slotpilot.time_utils import at_time, coerce_datetime, day_bounds, ensure_utc, parse_hhmm


logger = structlog.get_logger(__name__)


class HistoryAccessor(Protocol):
    """Collaborator boundary for everything the engine reads."""

    def get_appointment(self, appointment_id: str) -> Optional[AppointmentSnapshot]:
        ...

    def patient_appointments(self, patient_id: str) -> List[AppointmentSnapshot]:
        ...

    def provider_appointments(
        self, provider_id: str, start: datetime, end: datetime
    ) -> List[AppointmentSnapshot]:
        """Appointments (cancelled included) overlapping ``[start, end)``."""
        ...

    def working_window(self, provider_id: str, day: date) -> Optional[Tuple[datetime, datetime]]:
        ...

    def schedule_blocks(self, provider_id: str, day: date) -> List[TimeBlock]:
        ...

    def providers_for_type(self, appointment_type_id: Optional[str]) -> List[str]:
        ...

    def appointment_type_name(self, appointment_type_id: Optional[str]) -> Optional[str]:
        ...

    def patient_ids(self) -> List[str]:
        ...

    def provider_ids(self) -> List[str]:
        ...

    def slot_fill_rate(
        self, provider_id: str, weekday: int, hour: int, now: datetime
    ) -> Optional[float]:
        ...


def _overlaps(appointment: AppointmentSnapshot, start: datetime, end: datetime) -> bool:
    if appointment.start_time is None:
        return False
    appt_end = appointment.end_time or appointment.start_time
    return appointment.start_time < end and appt_end > start


def compute_slot_fill_rate(
    appointments: Iterable[AppointmentSnapshot],
    weekday: int,
    hour: int,
    now: datetime,
    lookback_weeks: int,
) -> Optional[float]:
    """Fraction of the last ``lookback_weeks`` matching weekdays booked at ``hour``.

    Returns ``None`` when the provider has no appointments at all in the
    lookback period, which callers treat as "no signal".
    """

    today = ensure_utc(now).date()
    offset = (today.weekday() - weekday) % 7 or 7
    days = [today - timedelta(days=offset + 7 * week) for week in range(lookback_weeks)]
    window_start = at_time(days[-1], time(0, 0))
    window_end = at_time(today, time(0, 0))
    relevant = [
        appt
        for appt in appointments
        if appt.start_time is not None and window_start <= appt.start_time < window_end
    ]
    if not relevant:
        return None

    filled = 0
    for day in days:
        slot_start = at_time(day, time(hour, 0))
        slot_end = slot_start + timedelta(hours=1)
        if any(
            not appt.is_cancelled and _overlaps(appt, slot_start, slot_end) for appt in relevant
        ):
            filled += 1
    return filled / len(days)


class InMemoryHistory:
    """Dict-backed :class:`HistoryAccessor` used by tests and embedding code."""

    def __init__(self, *, fill_rate_lookback_weeks: int = 8) -> None:
        self._lock = Lock()
        self._appointments: Dict[str, AppointmentSnapshot] = {}
        self._hours: Dict[Tuple[str, int], Tuple[time, time]] = {}
        self._blocks: Dict[str, List[TimeBlock]] = defaultdict(list)
        self._type_names: Dict[str, str] = {}
        self._provider_types: Dict[str, set[str]] = defaultdict(set)
        self._providers: set[str] = set()
        self._patients: set[str] = set()
        self._lookback_weeks = fill_rate_lookback_weeks

    # -- population ---------------------------------------------------------

    def add_appointment(self, appointment: AppointmentSnapshot) -> AppointmentSnapshot:
        with self._lock:
            self._appointments[appointment.id] = appointment
            self._providers.add(appointment.provider_id)
            self._patients.add(appointment.patient_id)
        return appointment

    def add_appointments(self, appointments: Iterable[AppointmentSnapshot]) -> None:
        for appointment in appointments:
            self.add_appointment(appointment)

    def set_working_hours(self, provider_id: str, weekdays: Iterable[int], start: str, end: str) -> None:
        """Register ``start``-``end`` (``"HH:MM"``) working hours on each weekday."""

        opening, closing = parse_hhmm(start), parse_hhmm(end)
        with self._lock:
            for weekday in weekdays:
                self._hours[(provider_id, weekday)] = (opening, closing)
            self._providers.add(provider_id)

    def add_block(self, provider_id: str, block: TimeBlock) -> None:
        with self._lock:
            self._blocks[provider_id].append(block)

    def add_appointment_type(
        self, type_id: str, name: str, provider_ids: Iterable[str] = ()
    ) -> None:
        with self._lock:
            self._type_names[type_id] = name
            for provider_id in provider_ids:
                self._provider_types[provider_id].add(type_id)
                self._providers.add(provider_id)

    def add_patient(self, patient_id: str) -> None:
        with self._lock:
            self._patients.add(patient_id)

    # -- HistoryAccessor ----------------------------------------------------

    def get_appointment(self, appointment_id: str) -> Optional[AppointmentSnapshot]:
        with self._lock:
            return self._appointments.get(appointment_id)

    def patient_appointments(self, patient_id: str) -> List[AppointmentSnapshot]:
        with self._lock:
            found = [appt for appt in self._appointments.values() if appt.patient_id == patient_id]
        return sorted(found, key=_appointment_sort_key)

    def provider_appointments(
        self, provider_id: str, start: datetime, end: datetime
    ) -> List[AppointmentSnapshot]:
        with self._lock:
            found = [
                appt
                for appt in self._appointments.values()
                if appt.provider_id == provider_id and _overlaps(appt, start, end)
            ]
        return sorted(found, key=_appointment_sort_key)

    def working_window(self, provider_id: str, day: date) -> Optional[Tuple[datetime, datetime]]:
        with self._lock:
            hours = self._hours.get((provider_id, day.weekday()))
        if hours is None:
            return None
        return at_time(day, hours[0]), at_time(day, hours[1])

    def schedule_blocks(self, provider_id: str, day: date) -> List[TimeBlock]:
        day_start, day_end = day_bounds(day)
        with self._lock:
            blocks = list(self._blocks.get(provider_id, ()))
        return sorted(
            (block for block in blocks if block.start < day_end and block.end > day_start),
            key=lambda block: block.start,
        )

    def providers_for_type(self, appointment_type_id: Optional[str]) -> List[str]:
        """Providers registered for the type; every provider when none is."""

        with self._lock:
            if appointment_type_id is not None:
                restricted = sorted(
                    provider_id
                    for provider_id, types in self._provider_types.items()
                    if appointment_type_id in types
                )
                if restricted:
                    return restricted
            return sorted(self._providers)

    def appointment_type_name(self, appointment_type_id: Optional[str]) -> Optional[str]:
        if appointment_type_id is None:
            return None
        with self._lock:
            return self._type_names.get(appointment_type_id)

    def patient_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._patients)

    def provider_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._providers)

    def slot_fill_rate(
        self, provider_id: str, weekday: int, hour: int, now: datetime
    ) -> Optional[float]:
        with self._lock:
            appointments = [
                appt for appt in self._appointments.values() if appt.provider_id == provider_id
            ]
        return compute_slot_fill_rate(appointments, weekday, hour, now, self._lookback_weeks)


def _appointment_sort_key(appointment: AppointmentSnapshot) -> Tuple[float, str]:
    start = appointment.start_time
    return (start.timestamp() if start is not None else float("-inf"), appointment.id)


# ---------------------------------------------------------------------------
# SQL-backed accessor
# ---------------------------------------------------------------------------


def _parse_status(value: Optional[str]) -> AppointmentStatus:
    normalized = (value or "").strip().lower().replace("-", "_")
    try:
        return AppointmentStatus(normalized)
    except ValueError:
        logger.warning("appointment_status_unrecognised", status=value)
        return AppointmentStatus.SCHEDULED


def _row_to_snapshot(row: sa.RowMapping) -> AppointmentSnapshot:
    return AppointmentSnapshot(
        id=str(row["id"]),
        patient_id=str(row["patient_id"]),
        provider_id=str(row["provider_id"]),
        start_time=coerce_datetime(row["start_time"]),
        end_time=coerce_datetime(row["end_time"]),
        status=_parse_status(row["status"]),
        appointment_type_id=row["appointment_type_id"],
        is_telehealth=bool(row["is_telehealth"]),
        booked_at=coerce_datetime(row["booked_at"]),
        cancelled_at=coerce_datetime(row["cancelled_at"]),
    )


def _naive(dt: datetime) -> datetime:
    """SQLite stores ``DateTime`` columns without an offset; compare in naive UTC."""

    return ensure_utc(dt).replace(tzinfo=None)


class SqlHistoryAccessor:
    """:class:`HistoryAccessor` reading from a SQL database via SQLAlchemy Core."""

    def __init__(
        self,
        conn: sqlite3.Connection | sessionmaker[Session] | Engine | None = None,
        *,
        fill_rate_lookback_weeks: int = 8,
    ) -> None:
        self._engine: Optional[Engine] = None
        self._session_factory = self._configure(conn)
        self._lookback_weeks = fill_rate_lookback_weeks

    def _configure(
        self, conn: sqlite3.Connection | sessionmaker[Session] | Engine | None
    ) -> sessionmaker[Session]:
        if isinstance(conn, sessionmaker):
            return conn

        engine: Engine
        if conn is None:
            engine = get_database_settings().create_engine()
        elif isinstance(conn, Engine):
            engine = conn
        else:
            def _creator(connection: sqlite3.Connection = conn) -> sqlite3.Connection:
                return connection

            engine = sa.create_engine(
                "sqlite://",
                creator=_creator,
                poolclass=StaticPool,
                future=True,
            )

        self._engine = engine
        return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)

    @property
    def engine(self) -> Optional[Engine]:
        return self._engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def _select_appointments(self, *criteria: sa.ColumnElement[bool]) -> List[AppointmentSnapshot]:
        table = tables.appointments
        stmt = select(table).where(*criteria).order_by(table.c.start_time, table.c.id)
        with self._session() as session:
            rows = session.execute(stmt).mappings().all()
        return [_row_to_snapshot(row) for row in rows]

    def get_appointment(self, appointment_id: str) -> Optional[AppointmentSnapshot]:
        found = self._select_appointments(tables.appointments.c.id == appointment_id)
        return found[0] if found else None

    def patient_appointments(self, patient_id: str) -> List[AppointmentSnapshot]:
        return self._select_appointments(tables.appointments.c.patient_id == patient_id)

    def provider_appointments(
        self, provider_id: str, start: datetime, end: datetime
    ) -> List[AppointmentSnapshot]:
        table = tables.appointments
        candidates = self._select_appointments(
            table.c.provider_id == provider_id,
            table.c.start_time < _naive(end),
        )
        return [appt for appt in candidates if _overlaps(appt, start, end)]

    def working_window(self, provider_id: str, day: date) -> Optional[Tuple[datetime, datetime]]:
        table = tables.provider_schedules
        stmt = select(table.c.start_time, table.c.end_time).where(
            table.c.provider_id == provider_id,
            table.c.weekday == day.weekday(),
        )
        with self._session() as session:
            row = session.execute(stmt).mappings().first()
        if row is None:
            return None
        return at_time(day, parse_hhmm(row["start_time"])), at_time(day, parse_hhmm(row["end_time"]))

    def schedule_blocks(self, provider_id: str, day: date) -> List[TimeBlock]:
        table = tables.schedule_blocks
        day_start, day_end = day_bounds(day)
        stmt = (
            select(table)
            .where(
                table.c.provider_id == provider_id,
                table.c.start_time < _naive(day_end),
                table.c.end_time > _naive(day_start),
            )
            .order_by(table.c.start_time)
        )
        with self._session() as session:
            rows = session.execute(stmt).mappings().all()
        return [
            TimeBlock(
                start=ensure_utc(row["start_time"]),
                end=ensure_utc(row["end_time"]),
                reason=row["reason"] or "",
            )
            for row in rows
        ]

    def providers_for_type(self, appointment_type_id: Optional[str]) -> List[str]:
        if appointment_type_id is not None:
            table = tables.provider_appointment_types
            stmt = (
                select(table.c.provider_id)
                .where(table.c.appointment_type_id == appointment_type_id)
                .distinct()
            )
            with self._session() as session:
                restricted = sorted(str(value) for value in session.execute(stmt).scalars())
            if restricted:
                return restricted
        return self.provider_ids()

    def appointment_type_name(self, appointment_type_id: Optional[str]) -> Optional[str]:
        if appointment_type_id is None:
            return None
        table = tables.appointment_types
        stmt = select(table.c.name).where(table.c.id == appointment_type_id)
        with self._session() as session:
            return session.execute(stmt).scalar_one_or_none()

    def patient_ids(self) -> List[str]:
        stmt = select(tables.appointments.c.patient_id).distinct()
        with self._session() as session:
            return sorted(str(value) for value in session.execute(stmt).scalars())

    def provider_ids(self) -> List[str]:
        stmt = sa.union(
            select(tables.provider_schedules.c.provider_id),
            select(tables.appointments.c.provider_id),
        )
        with self._session() as session:
            return sorted({str(value) for value in session.execute(stmt).scalars()})

    def slot_fill_rate(
        self, provider_id: str, weekday: int, hour: int, now: datetime
    ) -> Optional[float]:
        window_start = ensure_utc(now) - timedelta(weeks=self._lookback_weeks + 1)
        appointments = self.provider_appointments(provider_id, window_start, ensure_utc(now))
        return compute_slot_fill_rate(appointments, weekday, hour, now, self._lookback_weeks)


__all__ = [
    "HistoryAccessor",
    "InMemoryHistory",
    "SqlHistoryAccessor",
    "compute_slot_fill_rate",
]
