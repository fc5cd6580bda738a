"""SQLAlchemy table metadata for the scheduling history read model.

The engine never writes to these tables; they describe the shape the
surrounding practice-management database is expected to expose so that
:class:`slotpilot.history.SqlHistoryAccessor` can read from it.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import text

metadata = MetaData()

appointment_types = Table(
    "appointment_types",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("duration_minutes", Integer, nullable=False, server_default=text("30")),
)

appointments = Table(
    "appointments",
    metadata,
    Column("id", String, primary_key=True),
    Column("patient_id", String, nullable=False),
    Column("provider_id", String, nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=True),
    Column("end_time", DateTime(timezone=True), nullable=True),
    Column("status", String, nullable=False, server_default=text("'scheduled'")),
    Column("appointment_type_id", String, ForeignKey("appointment_types.id"), nullable=True),
    Column("is_telehealth", Boolean, nullable=False, server_default=text("0")),
    Column("booked_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
)
Index("idx_appointments_provider_start", appointments.c.provider_id, appointments.c.start_time)
Index("idx_appointments_patient", appointments.c.patient_id)

provider_schedules = Table(
    "provider_schedules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider_id", String, nullable=False),
    Column("weekday", Integer, nullable=False),
    Column("start_time", String, nullable=False),
    Column("end_time", String, nullable=False),
    UniqueConstraint("provider_id", "weekday", name="uq_provider_schedules_day"),
)

schedule_blocks = Table(
    "schedule_blocks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider_id", String, nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True), nullable=False),
    Column("reason", Text, nullable=True),
)
Index("idx_schedule_blocks_provider_start", schedule_blocks.c.provider_id, schedule_blocks.c.start_time)

provider_appointment_types = Table(
    "provider_appointment_types",
    metadata,
    Column("provider_id", String, primary_key=True),
    Column("appointment_type_id", String, ForeignKey("appointment_types.id"), primary_key=True),
)


__all__ = [
    "metadata",
    "appointment_types",
    "appointments",
    "provider_schedules",
    "schedule_blocks",
    "provider_appointment_types",
]
