"""Database helper utilities for ensuring schema consistency."""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import inspect

from .extensions import db


def ensure_database_schema() -> None:
    """Create missing tables on application start.

    A fresh database gets the full schema. An existing one only gains the
    tables it lacks, so user rows are left untouched.
    """

    inspector = inspect(db.engine)
    table_names: Iterable[str] = inspector.get_table_names()

    if "users" not in table_names:
        db.create_all()
        return

    # Import locally to avoid circular import issues during application setup.
    from .models import JobCounter, JobRun

    for table in (JobCounter.__table__, JobRun.__table__):
        if table.name not in table_names:
            table.create(bind=db.engine)
