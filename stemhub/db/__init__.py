"""
Database module for StemHub.

Provides async SQLAlchemy support with PostgreSQL and SQLite.
"""
from __future__ import annotations

from stemhub.db.database import (
    get_db,
    init_db,
    close_db,
    AsyncSessionLocal,
    unit_of_work,
)
from stemhub.db import models as models  # noqa: F401 — register with Base

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "AsyncSessionLocal",
    "unit_of_work",
]
