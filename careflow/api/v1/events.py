"""
Workflow event ingestion and status endpoints.
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...core.db import get_db
from ...core.errors import DispatchFailure
from ...models import WorkflowEvent
from ...schemas.workflow import TriggerResponse, WorkflowEventIn, WorkflowEventOut
from ...services.audit_log import list_action_logs
from ...services.rule_engine import WorkflowRuleEngine


router = APIRouter(prefix="/api/v1/workflow/events", tags=["workflow-events"])


def get_rule_engine(request: Request) -> WorkflowRuleEngine:
    engine = getattr(request.app.state, "rule_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Workflow engine not running")
    return engine


@router.post("", response_model=TriggerResponse, status_code=202)
def trigger_event(
    payload: WorkflowEventIn,
    engine: WorkflowRuleEngine = Depends(get_rule_engine),
) -> TriggerResponse:
    try:
        receipt = engine.trigger(payload)
    except DispatchFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return TriggerResponse(event_id=receipt.event_id)


@router.get("/{event_id}", response_model=WorkflowEventOut)
def get_event(event_id: str, db: Session = Depends(get_db)) -> WorkflowEventOut:
    event = db.get(WorkflowEvent, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return WorkflowEventOut.model_validate(event)


@router.get("/{event_id}/actions")
def get_event_actions(event_id: str, db: Session = Depends(get_db)) -> List[dict]:
    if not db.get(WorkflowEvent, event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    return [
        {
            "rule_id": row.rule_id,
            "action_index": row.action_index,
            "action_type": row.action_type,
            "status": row.status,
            "attempts": row.attempts,
            "error": row.error,
            "record_id": row.record_id,
            "created_at": row.created_at,
        }
        for row in list_action_logs(db, event_id)
    ]
