"""Database helpers for the SQL-backed history accessor."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import metadata

__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "metadata",
]
