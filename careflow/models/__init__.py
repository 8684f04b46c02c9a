"""
SQLAlchemy model base class for the careflow backend.

This package defines ORM models for workflow events, rules, the action log,
and the records that workflow actions write (tasks, notifications,
escalations, tracked entity status). All models inherit from the declarative
`Base` defined here.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return compiler.process(JSON(), **kw)


from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_utc(ts: datetime.datetime | None) -> datetime.datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc)


from .workflow_event import WorkflowEvent  # noqa: E402,F401
from .workflow_rule import WorkflowRule  # noqa: E402,F401
from .action_log import WorkflowActionLog  # noqa: E402,F401
from .workflow_task import WorkflowTask  # noqa: E402,F401
from .notification import Notification  # noqa: E402,F401
from .escalation import Escalation  # noqa: E402,F401
from .tracked_entity import TrackedEntity  # noqa: E402,F401

__all__ = [
    "Base",
    "utcnow",
    "ensure_utc",

    # Events / Rules
    "WorkflowEvent",
    "WorkflowRule",
    "WorkflowActionLog",

    # Action side effects
    "WorkflowTask",
    "Notification",
    "Escalation",
    "TrackedEntity",
]
