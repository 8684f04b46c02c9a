"""
Rule storage: active-rule lookup for the engine and admin CRUD for the API.

The repository keeps no state between calls; every trigger re-queries, so
rule edits take effect on the next event.
"""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from ..core.db import SessionLocal
from ..models import WorkflowRule, utcnow
from ..schemas.workflow import RuleCreate, RuleUpdate


logger = logging.getLogger("rule_repository")


class RuleRepository:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self.session_factory = session_factory or SessionLocal

    def load_active(self, tenant_id: str, event_type: str) -> list[WorkflowRule]:
        """Active rules for the trigger, highest priority first, ties by id."""
        with self.session_factory() as db:
            return (
                db.query(WorkflowRule)
                .filter(
                    WorkflowRule.tenant_id == tenant_id,
                    WorkflowRule.trigger_event_type == event_type,
                    WorkflowRule.active.is_(True),
                )
                .order_by(WorkflowRule.priority.desc(), WorkflowRule.id.asc())
                .all()
            )

    def touch_last_triggered(self, rule_id: str, at: Optional[datetime.datetime] = None) -> None:
        with self.session_factory() as db:
            db.execute(
                update(WorkflowRule)
                .where(WorkflowRule.id == rule_id)
                .values(last_triggered_at=at or utcnow())
            )
            db.commit()


def _dump_actions(actions) -> list[dict]:
    return [action.model_dump(mode="json") for action in actions or []]


def list_rules(
    db: Session,
    tenant_id: str,
    *,
    event_type: Optional[str] = None,
    include_inactive: bool = False,
) -> list[WorkflowRule]:
    query = db.query(WorkflowRule).filter(WorkflowRule.tenant_id == tenant_id)
    if event_type:
        query = query.filter(WorkflowRule.trigger_event_type == event_type)
    if not include_inactive:
        query = query.filter(WorkflowRule.active.is_(True))
    return query.order_by(WorkflowRule.priority.desc(), WorkflowRule.id.asc()).all()


def get_rule(db: Session, rule_id: str) -> Optional[WorkflowRule]:
    return db.get(WorkflowRule, rule_id)


def create_rule(db: Session, payload: RuleCreate) -> WorkflowRule:
    rule = WorkflowRule(
        tenant_id=payload.tenant_id,
        name=payload.name,
        description=payload.description,
        trigger_event_type=payload.trigger_event_type,
        conditions=dict(payload.conditions or {}),
        actions=_dump_actions(payload.actions),
        active=payload.active,
        priority=payload.priority,
        cooldown_minutes=payload.cooldown_minutes,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info("Rule created id=%s tenant=%s trigger=%s", rule.id, rule.tenant_id, rule.trigger_event_type)
    return rule


def update_rule(db: Session, rule: WorkflowRule, payload: RuleUpdate) -> WorkflowRule:
    data = payload.model_dump(exclude_unset=True)
    if "actions" in data:
        data["actions"] = _dump_actions(payload.actions)
    for key, value in data.items():
        if value is None and key not in {"description"}:
            continue
        setattr(rule, key, value)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def deactivate_rule(db: Session, rule: WorkflowRule) -> WorkflowRule:
    rule.active = False
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info("Rule deactivated id=%s", rule.id)
    return rule
