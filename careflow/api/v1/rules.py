"""
API endpoints for managing workflow automation rules.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...core.db import get_db
from ...models import WorkflowRule
from ...schemas.workflow import RuleCreate, RuleOut, RuleUpdate
from ...services import rule_repository


router = APIRouter(prefix="/api/v1/workflow/rules", tags=["workflow-rules"])


def _get_rule(db: Session, rule_id: str) -> WorkflowRule:
    rule = rule_repository.get_rule(db, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


@router.get("", response_model=List[RuleOut])
def list_rules(
    tenant_id: str = Query(...),
    event_type: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
) -> List[RuleOut]:
    rules = rule_repository.list_rules(db, tenant_id, event_type=event_type, include_inactive=include_inactive)
    return [RuleOut.model_validate(rule) for rule in rules]


@router.post("", response_model=RuleOut, status_code=201)
def create_rule(payload: RuleCreate, db: Session = Depends(get_db)) -> RuleOut:
    rule = rule_repository.create_rule(db, payload)
    return RuleOut.model_validate(rule)


@router.get("/{rule_id}", response_model=RuleOut)
def get_rule(rule_id: str, db: Session = Depends(get_db)) -> RuleOut:
    return RuleOut.model_validate(_get_rule(db, rule_id))


@router.patch("/{rule_id}", response_model=RuleOut)
def update_rule(rule_id: str, payload: RuleUpdate, db: Session = Depends(get_db)) -> RuleOut:
    rule = _get_rule(db, rule_id)
    rule = rule_repository.update_rule(db, rule, payload)
    return RuleOut.model_validate(rule)


@router.delete("/{rule_id}", response_model=RuleOut)
def delete_rule(rule_id: str, db: Session = Depends(get_db)) -> RuleOut:
    rule = _get_rule(db, rule_id)
    rule = rule_repository.deactivate_rule(db, rule)
    return RuleOut.model_validate(rule)
