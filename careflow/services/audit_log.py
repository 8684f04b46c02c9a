"""
Audit log for workflow events.

The event row is the durable record of every trigger. It is written before
any rule runs; after that the writer only records per-action outcomes and
finally stamps ``processed_at``, which happens at most once per event.
"""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from ..core.db import SessionLocal
from ..core.errors import DispatchFailure
from ..models import WorkflowActionLog, WorkflowEvent, utcnow
from ..schemas.workflow import WorkflowEventIn


logger = logging.getLogger("audit_log")


class AuditLogWriter:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self.session_factory = session_factory or SessionLocal

    def append_event(self, event_in: WorkflowEventIn) -> WorkflowEvent:
        """Persist a new event. Any store error becomes :class:`DispatchFailure`."""
        ref = event_in.entity_ref
        event = WorkflowEvent(
            tenant_id=event_in.tenant_id,
            event_type=event_in.event_type,
            source_actor=event_in.source_actor,
            source_role=event_in.source_role,
            entity_type=ref.entity_type if ref else None,
            entity_id=ref.entity_id if ref else None,
            payload=dict(event_in.payload or {}),
            priority=event_in.priority.value,
        )
        try:
            with self.session_factory() as db:
                db.add(event)
                db.commit()
                db.refresh(event)
        except Exception as exc:
            raise DispatchFailure(
                f"Could not record event {event_in.event_type}: {exc}",
                tenant_id=event_in.tenant_id,
                event_type=event_in.event_type,
            ) from exc
        logger.info(
            "Event recorded id=%s tenant=%s type=%s", event.id, event.tenant_id, event.event_type
        )
        return event

    def get_event(self, event_id: str) -> Optional[WorkflowEvent]:
        with self.session_factory() as db:
            return db.get(WorkflowEvent, event_id)

    def record_action(
        self,
        event: WorkflowEvent,
        *,
        rule_id: Optional[str],
        action_index: int,
        action_type: str,
        ok: bool,
        attempts: int = 1,
        error: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> None:
        with self.session_factory() as db:
            db.add(
                WorkflowActionLog(
                    tenant_id=event.tenant_id,
                    event_id=event.id,
                    rule_id=rule_id,
                    action_index=action_index,
                    action_type=action_type,
                    status="OK" if ok else "FAILED",
                    attempts=attempts,
                    error=error,
                    record_id=record_id,
                )
            )
            db.commit()

    def mark_processed(self, event_id: str, outcome: Optional[dict] = None) -> bool:
        """Stamp ``processed_at``. Returns False when the event was already processed."""
        with self.session_factory() as db:
            result = db.execute(
                update(WorkflowEvent)
                .where(WorkflowEvent.id == event_id, WorkflowEvent.processed_at.is_(None))
                .values(processed_at=utcnow(), outcome=outcome)
            )
            db.commit()
            stamped = (result.rowcount or 0) > 0
        if not stamped:
            logger.warning("Event already processed id=%s", event_id)
        return stamped

    def record_error(self, event_id: str, error: str) -> None:
        """Store a processing error on a still-unprocessed event."""
        with self.session_factory() as db:
            db.execute(
                update(WorkflowEvent)
                .where(WorkflowEvent.id == event_id, WorkflowEvent.processed_at.is_(None))
                .values(outcome={"error": error})
            )
            db.commit()

    def list_unprocessed(
        self,
        *,
        older_than: datetime.datetime,
        limit: int = 100,
    ) -> list[str]:
        with self.session_factory() as db:
            rows = (
                db.query(WorkflowEvent.id)
                .filter(
                    WorkflowEvent.processed_at.is_(None),
                    WorkflowEvent.created_at <= older_than,
                )
                .order_by(WorkflowEvent.created_at.asc())
                .limit(limit)
                .all()
            )
        return [row[0] for row in rows]


def list_action_logs(db: Session, event_id: str) -> list[WorkflowActionLog]:
    return (
        db.query(WorkflowActionLog)
        .filter(WorkflowActionLog.event_id == event_id)
        .order_by(WorkflowActionLog.created_at.asc(), WorkflowActionLog.action_index.asc())
        .all()
    )
