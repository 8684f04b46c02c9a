"""
Session hooks that turn committed ORM writes into change notifications.

Workflow side effects (tasks, notifications, escalations, entity status) are
ordinary ORM writes. The hooks collect inserted, updated and deleted rows at
flush time and hand them to the publisher only after the transaction commits;
a rollback discards them.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from ..models import Escalation, Notification, TrackedEntity, WorkflowEvent, WorkflowRule, WorkflowTask
from ..schemas.changes import ChangeNotification, Operation


logger = logging.getLogger("change_capture")

PENDING_KEY = "careflow_pending_changes"

PUBLISHED_MODELS = (WorkflowEvent, WorkflowRule, WorkflowTask, Notification, Escalation, TrackedEntity)


class ChangeSink(Protocol):
    def publish(self, notification: ChangeNotification) -> Any:
        ...


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    return value


def _column_values(obj: Any) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for attr in inspect(obj).mapper.column_attrs:
        record[attr.columns[0].name] = _jsonable(getattr(obj, attr.key))
    return record


def describe(obj: Any, operation: Operation) -> Optional[ChangeNotification]:
    if not isinstance(obj, PUBLISHED_MODELS):
        return None
    tenant_id = getattr(obj, "tenant_id", None)
    if not tenant_id:
        return None
    columns = _column_values(obj)

    if isinstance(obj, TrackedEntity):
        entity_type = obj.entity_type
        record = dict(obj.attributes or {})
        record.update(
            {
                "id": obj.entity_id,
                "status": obj.status,
                "updated_at": columns.get("updated_at"),
            }
        )
    else:
        entity_type = obj.__tablename__
        record = columns

    if operation == Operation.DELETE:
        return ChangeNotification(
            entity_type=entity_type,
            operation=operation,
            tenant_id=tenant_id,
            record_id=str(record.get("id")),
        )
    return ChangeNotification(entity_type=entity_type, operation=operation, tenant_id=tenant_id, record=record)


def _collect(session: Session, objs: Iterable[Any], operation: Operation) -> None:
    pending: list = session.info.setdefault(PENDING_KEY, [])
    for obj in objs:
        if operation == Operation.UPDATE and not session.is_modified(obj, include_collections=False):
            continue
        try:
            notification = describe(obj, operation)
        except Exception as exc:
            logger.warning("Could not describe %s change for %s: %s", operation.value, type(obj).__name__, exc)
            continue
        if notification is not None:
            pending.append(notification)


def install_change_capture(target: Any, sink: ChangeSink) -> None:
    """Attach capture hooks to a ``Session`` class or ``sessionmaker``."""

    # Updates and deletes are read before the flush, while every attribute can
    # still be loaded; inserts after it, once defaults and ids are assigned.
    @event.listens_for(target, "before_flush")
    def _before_flush(session: Session, flush_context, instances) -> None:
        with session.no_autoflush:
            _collect(session, list(session.dirty), Operation.UPDATE)
            _collect(session, list(session.deleted), Operation.DELETE)

    @event.listens_for(target, "after_flush")
    def _after_flush(session: Session, flush_context) -> None:
        _collect(session, list(session.new), Operation.INSERT)

    @event.listens_for(target, "after_commit")
    def _after_commit(session: Session) -> None:
        pending = session.info.pop(PENDING_KEY, [])
        for notification in pending:
            try:
                sink.publish(notification)
            except Exception as exc:
                logger.warning(
                    "Change publish failed entity=%s op=%s: %s",
                    notification.entity_type,
                    notification.operation.value,
                    exc,
                )

    @event.listens_for(target, "after_rollback")
    def _after_rollback(session: Session) -> None:
        session.info.pop(PENDING_KEY, None)
