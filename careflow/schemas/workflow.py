"""
Pydantic schemas for workflow events, rules and rule actions.

``WorkflowEventIn`` is what producers hand to the rule engine (directly or via
``POST /api/v1/workflow/events``). Rule actions are a closed set of variants
discriminated by ``type``; rules store them as plain dicts and the action
executor parses them with :func:`parse_action`.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class EntityRef(BaseModel):
    entity_type: str
    entity_id: str


class WorkflowEventIn(BaseModel):
    tenant_id: str
    event_type: str
    source_actor: str
    source_role: Optional[str] = None
    entity_ref: Optional[EntityRef] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL


class WorkflowEventOut(BaseModel):
    id: str
    tenant_id: str
    event_type: str
    source_actor: str
    source_role: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: str
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    outcome: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class TriggerResponse(BaseModel):
    event_id: str


# --- Actions -----------------------------------------------------------------


class CreateTask(BaseModel):
    type: Literal["create_task"] = "create_task"
    target_role: Optional[str] = None
    target_actor: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # With no target_actor, assign to the candidate holding the fewest open tasks.
    auto_assign: bool = False
    candidates: List[str] = Field(default_factory=list)


class SendNotification(BaseModel):
    type: Literal["send_notification"] = "send_notification"
    target_actor: Optional[str] = None
    message: str
    title: Optional[str] = None
    severity: Optional[str] = None


class UpdateEntityStatus(BaseModel):
    type: Literal["update_status"] = "update_status"
    entity_ref: Optional[EntityRef] = None
    new_status: str


class InvokeExternalFunction(BaseModel):
    type: Literal["trigger_function"] = "trigger_function"
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class Escalate(BaseModel):
    type: Literal["escalate"] = "escalate"
    reason: str
    severity: str = "high"


WorkflowAction = Annotated[
    Union[CreateTask, SendNotification, UpdateEntityStatus, InvokeExternalFunction, Escalate],
    Field(discriminator="type"),
]

_ACTION_ADAPTER: TypeAdapter = TypeAdapter(WorkflowAction)


def parse_action(raw: Any):
    """Parse a stored action dict into its variant. Raises ``pydantic.ValidationError``."""
    if isinstance(raw, BaseModel):
        return raw
    return _ACTION_ADAPTER.validate_python(raw)


# --- Rules -------------------------------------------------------------------


class RuleBase(BaseModel):
    name: str
    description: Optional[str] = None
    trigger_event_type: str
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: List[WorkflowAction] = Field(default_factory=list)
    active: bool = True
    priority: int = 0
    cooldown_minutes: int = Field(default=0, ge=0)


class RuleCreate(RuleBase):
    tenant_id: str


class RuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger_event_type: Optional[str] = None
    conditions: Optional[Dict[str, Any]] = None
    actions: Optional[List[WorkflowAction]] = None
    active: Optional[bool] = None
    priority: Optional[int] = None
    cooldown_minutes: Optional[int] = Field(default=None, ge=0)


class RuleOut(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    trigger_event_type: str
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    active: bool
    priority: int
    cooldown_minutes: int
    last_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
