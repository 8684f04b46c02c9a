"""
Execution of workflow rule actions.

Each action variant performs exactly one store write: an insert into
``workflow_tasks``, ``notifications`` or ``escalations``, a status update on
``tracked_entities``, or one HTTP function invocation. Failures are returned
as a failed :class:`ActionOutcome`; callers decide what to record.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import settings
from ..core.db import SessionLocal
from ..core.errors import ActionFailure, log_exception
from ..models import Escalation, Notification, TrackedEntity, WorkflowEvent, WorkflowTask
from ..schemas.workflow import (
    CreateTask,
    Escalate,
    InvokeExternalFunction,
    Priority,
    SendNotification,
    UpdateEntityStatus,
    parse_action,
)
from .functions import FunctionInvoker


logger = logging.getLogger("action_executor")

MAX_RETRY_DELAY_SEC = 60.0
OPEN_TASK_STATUSES = ("pending", "in_progress")


@dataclass
class ActionOutcome:
    action_type: str
    ok: bool
    reason: Optional[str] = None
    record_id: Optional[str] = None
    attempts: int = 1


def action_type_of(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("type") or "unknown")
    return str(getattr(raw, "type", None) or type(raw).__name__)


def _retry_delay(attempt: int, base: float) -> float:
    return min(MAX_RETRY_DELAY_SEC, base * (2 ** max(0, attempt - 1)))


def least_loaded(db: Session, tenant_id: str, candidates: list[str]) -> Optional[str]:
    """Candidate with the fewest open tasks in the tenant; ties go to the earlier candidate."""
    if not candidates:
        return None
    rows = (
        db.query(WorkflowTask.assigned_to, func.count(WorkflowTask.id))
        .filter(
            WorkflowTask.tenant_id == tenant_id,
            WorkflowTask.assigned_to.in_(candidates),
            WorkflowTask.status.in_(OPEN_TASK_STATUSES),
        )
        .group_by(WorkflowTask.assigned_to)
        .all()
    )
    load = {actor: count for actor, count in rows}
    return min(candidates, key=lambda actor: (load.get(actor, 0), candidates.index(actor)))


class ActionExecutor:
    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        *,
        invoker: FunctionInvoker | None = None,
        max_attempts: int | None = None,
        retry_base_delay_sec: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.invoker = invoker or FunctionInvoker()
        attempts = max_attempts if max_attempts is not None else settings.action_max_attempts
        self.max_attempts = max(1, int(attempts))
        self.retry_base_delay_sec = (
            retry_base_delay_sec if retry_base_delay_sec is not None else settings.action_retry_base_delay_sec
        )
        self._sleep = sleep

    def execute(self, action: Any, event: WorkflowEvent, rule_id: Optional[str] = None) -> ActionOutcome:
        action_type = action_type_of(action)
        try:
            parsed = parse_action(action)
        except ValidationError as exc:
            logger.warning("Invalid action definition rule=%s type=%s err=%s", rule_id, action_type, exc)
            return ActionOutcome(action_type=action_type, ok=False, reason=f"invalid action: {exc}", attempts=0)

        handler = self._handler_for(parsed)
        attempts = 0
        while True:
            attempts += 1
            try:
                record_id = handler(parsed, event, rule_id)
            except Exception as exc:
                reason = exc.reason if isinstance(exc, ActionFailure) else str(exc)
                if attempts >= self.max_attempts:
                    log_exception(
                        logger,
                        "Workflow action failed",
                        extra={"event_id": event.id, "rule_id": rule_id, "action": parsed.type, "attempts": attempts},
                        exc=exc,
                    )
                    return ActionOutcome(action_type=parsed.type, ok=False, reason=reason, attempts=attempts)
                delay = _retry_delay(attempts, self.retry_base_delay_sec)
                logger.warning(
                    "Retrying action event=%s action=%s attempt=%s delay=%.1fs err=%s",
                    event.id,
                    parsed.type,
                    attempts,
                    delay,
                    reason,
                )
                self._sleep(delay)
                continue
            return ActionOutcome(action_type=parsed.type, ok=True, record_id=record_id, attempts=attempts)

    def _handler_for(self, action: Any) -> Callable[..., Optional[str]]:
        if isinstance(action, CreateTask):
            return self._create_task
        if isinstance(action, SendNotification):
            return self._send_notification
        if isinstance(action, UpdateEntityStatus):
            return self._update_status
        if isinstance(action, InvokeExternalFunction):
            return self._invoke_function
        if isinstance(action, Escalate):
            return self._escalate
        raise TypeError(f"Unsupported workflow action {type(action).__name__}")

    def _create_task(self, action: CreateTask, event: WorkflowEvent, rule_id: Optional[str]) -> str:
        meta = {"auto_generated": True, "trigger_event": event.event_type}
        meta.update(action.metadata or {})
        with self.session_factory() as db:
            assignee = action.target_actor
            if assignee is None and action.auto_assign:
                assignee = least_loaded(db, event.tenant_id, action.candidates)
                if assignee is None:
                    raise ActionFailure(action.type, "auto_assign has no candidates")
                meta["auto_assigned"] = True
            task = WorkflowTask(
                tenant_id=event.tenant_id,
                title=action.message or f"Automated task: {event.event_type}",
                description=(event.payload or {}).get("description"),
                assigned_role=action.target_role,
                assigned_to=assignee,
                priority=event.priority,
                status="pending",
                workflow_type=str(meta.get("workflow_type") or event.event_type),
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                meta=meta,
                source_event_id=event.id,
                rule_id=rule_id,
            )
            db.add(task)
            db.commit()
            return task.id

    def _send_notification(self, action: SendNotification, event: WorkflowEvent, rule_id: Optional[str]) -> str:
        severity = action.severity or ("critical" if event.priority == Priority.URGENT.value else "high")
        notification = Notification(
            tenant_id=event.tenant_id,
            recipient_id=action.target_actor,
            title=action.title or f"Workflow: {event.event_type}",
            message=action.message,
            severity=severity,
            kind="workflow",
            source_event_id=event.id,
        )
        with self.session_factory() as db:
            db.add(notification)
            db.commit()
            return notification.id

    def _update_status(self, action: UpdateEntityStatus, event: WorkflowEvent, rule_id: Optional[str]) -> str:
        if action.entity_ref is not None:
            entity_type, entity_id = action.entity_ref.entity_type, action.entity_ref.entity_id
        elif event.entity_type and event.entity_id:
            entity_type, entity_id = event.entity_type, event.entity_id
        else:
            raise ActionFailure(action.type, "no entity reference on action or event")

        with self.session_factory() as db:
            entity = (
                db.query(TrackedEntity)
                .filter(
                    TrackedEntity.tenant_id == event.tenant_id,
                    TrackedEntity.entity_type == entity_type,
                    TrackedEntity.entity_id == entity_id,
                )
                .first()
            )
            if entity is None:
                raise ActionFailure(action.type, f"unknown entity {entity_type}/{entity_id}")
            entity.status = action.new_status
            db.add(entity)
            db.commit()
            return entity.entity_id

    def _invoke_function(self, action: InvokeExternalFunction, event: WorkflowEvent, rule_id: Optional[str]) -> None:
        body = {
            "args": dict(action.args or {}),
            "event": {
                "id": event.id,
                "tenant_id": event.tenant_id,
                "event_type": event.event_type,
                "entity_type": event.entity_type,
                "entity_id": event.entity_id,
                "priority": event.priority,
            },
            "rule_id": rule_id,
        }
        self.invoker.invoke(action.name, body)
        return None

    def _escalate(self, action: Escalate, event: WorkflowEvent, rule_id: Optional[str]) -> str:
        escalation = Escalation(
            tenant_id=event.tenant_id,
            source_event_id=event.id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            reason=action.reason,
            severity=action.severity,
            status="OPEN",
        )
        with self.session_factory() as db:
            db.add(escalation)
            db.commit()
            return escalation.id
