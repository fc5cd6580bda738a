"""Connection settings for the SQL-backed history accessor.

The engine only ever reads, so the options here favour short-lived pooled
connections pinned to UTC and a per-statement timeout on Postgres.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine

_POOL_ENV = {
    "pool_size": "SLOTPILOT_DB_POOL_SIZE",
    "max_overflow": "SLOTPILOT_DB_MAX_OVERFLOW",
    "pool_timeout": "SLOTPILOT_DB_POOL_TIMEOUT",
    "pool_recycle": "SLOTPILOT_DB_POOL_RECYCLE",
}

_IN_MEMORY_URL = "sqlite://"


def _read_int(name: str, environ: Mapping[str, str]) -> Optional[int]:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@dataclass(frozen=True)
class DatabaseSettings:
    """Where history is read from and how connections are pooled."""

    url: str = _IN_MEMORY_URL
    echo: bool = False
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ, repr=False, compare=False)

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith(("postgresql", "postgres"))

    def _connect_args(self) -> Dict[str, object]:
        if self.is_sqlite:
            return {"check_same_thread": False}
        if not self.is_postgres:
            return {}
        args: Dict[str, object] = {}
        timeout = _read_int("PGCONNECT_TIMEOUT", self.environ)
        if timeout is not None:
            args["connect_timeout"] = timeout
        session_options = ["-c timezone=UTC", "-c default_transaction_read_only=on"]
        statement_ms = _read_int("SLOTPILOT_DB_STATEMENT_TIMEOUT_MS", self.environ)
        if statement_ms is not None:
            session_options.append(f"-c statement_timeout={statement_ms}")
        args["options"] = " ".join(session_options)
        return args

    def engine_options(self) -> Dict[str, object]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo}
        for option, env_name in _POOL_ENV.items():
            value = _read_int(env_name, self.environ)
            if value is not None:
                options[option] = value
        connect_args = self._connect_args()
        if connect_args:
            options["connect_args"] = connect_args
        return options

    def create_engine(self) -> Engine:
        return sa.create_engine(self.url, future=True, **self.engine_options())


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Settings from ``SLOTPILOT_DATABASE_URL``, then ``DATABASE_URL``, else in-memory SQLite."""

    url = os.getenv("SLOTPILOT_DATABASE_URL") or os.getenv("DATABASE_URL") or _IN_MEMORY_URL
    echo = (os.getenv("SLOTPILOT_DB_ECHO") or "").strip().lower() in {"1", "true", "yes", "on"}
    return DatabaseSettings(url=url, echo=echo)
