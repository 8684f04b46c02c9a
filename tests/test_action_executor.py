import pytest
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from careflow.models import Base, Escalation, Notification, TrackedEntity, WorkflowTask
from careflow.schemas.workflow import EntityRef, Priority, WorkflowEventIn
from careflow.services import functions
from careflow.services.action_executor import ActionExecutor
from careflow.services.audit_log import AuditLogWriter
from careflow.services.functions import FunctionInvocationError, FunctionInvoker


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _event(factory, **kwargs):
    values = {
        "tenant_id": "H1",
        "event_type": "patient_check_in",
        "source_actor": "reception-1",
        "entity_ref": EntityRef(entity_type="patients", entity_id="p1"),
        "payload": {"description": "Walk-in, chest pain"},
    }
    values.update(kwargs)
    return AuditLogWriter(factory).append_event(WorkflowEventIn(**values))


def _task_count(factory):
    with factory() as db:
        return db.query(WorkflowTask).count()


class _Response:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


def test_create_task_defaults():
    factory = _make_session_factory()
    event = _event(factory, priority=Priority.HIGH)
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))

    outcome = executor.execute(
        {"type": "create_task", "target_role": "nurse", "metadata": {"ward": "A"}}, event, rule_id="r1"
    )

    assert outcome.ok is True
    assert outcome.attempts == 1
    with factory() as db:
        task = db.get(WorkflowTask, outcome.record_id)
        assert task.title == "Automated task: patient_check_in"
        assert task.assigned_role == "nurse"
        assert task.status == "pending"
        assert task.priority == "high"
        assert task.description == "Walk-in, chest pain"
        assert task.entity_id == "p1"
        assert task.source_event_id == event.id
        assert task.rule_id == "r1"
        assert task.meta == {"auto_generated": True, "trigger_event": "patient_check_in", "ward": "A"}


def test_auto_assign_picks_least_loaded_candidate():
    factory = _make_session_factory()
    event = _event(factory)
    with factory() as db:
        existing = [
            ("nurse-1", "pending"),
            ("nurse-1", "in_progress"),
            ("nurse-2", "pending"),
            ("nurse-3", "completed"),
        ]
        for actor, status in existing:
            db.add(WorkflowTask(tenant_id="H1", title="t", assigned_to=actor, status=status, workflow_type="x"))
        db.add(WorkflowTask(tenant_id="H2", title="t", assigned_to="nurse-3", status="pending", workflow_type="x"))
        db.commit()
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))
    action = {
        "type": "create_task",
        "target_role": "nurse",
        "auto_assign": True,
        "candidates": ["nurse-1", "nurse-2", "nurse-3"],
    }

    first = executor.execute(action, event)
    second = executor.execute(action, event)

    with factory() as db:
        task = db.get(WorkflowTask, first.record_id)
        assert task.assigned_to == "nurse-3"
        assert task.meta["auto_assigned"] is True
        # nurse-2 and nurse-3 now hold one open task each
        assert db.get(WorkflowTask, second.record_id).assigned_to == "nurse-2"


def test_auto_assign_keeps_explicit_actor_and_needs_candidates():
    factory = _make_session_factory()
    event = _event(factory)
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))

    explicit = executor.execute(
        {"type": "create_task", "target_actor": "dr-9", "auto_assign": True, "candidates": ["dr-1"]}, event
    )
    empty = executor.execute({"type": "create_task", "auto_assign": True}, event)

    with factory() as db:
        task = db.get(WorkflowTask, explicit.record_id)
        assert task.assigned_to == "dr-9"
        assert "auto_assigned" not in task.meta
    assert empty.ok is False
    assert "no candidates" in empty.reason
    assert _task_count(factory) == 1


def test_send_notification_severity_follows_priority():
    factory = _make_session_factory()
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))
    urgent = _event(factory, priority=Priority.URGENT)
    normal = _event(factory)

    first = executor.execute({"type": "send_notification", "message": "Code blue", "target_actor": "dr-1"}, urgent)
    second = executor.execute({"type": "send_notification", "message": "FYI"}, normal)

    with factory() as db:
        assert db.get(Notification, first.record_id).severity == "critical"
        assert db.get(Notification, first.record_id).recipient_id == "dr-1"
        assert db.get(Notification, second.record_id).severity == "high"
        assert db.get(Notification, second.record_id).recipient_id is None


def test_update_status_uses_event_entity_and_never_creates():
    factory = _make_session_factory()
    with factory() as db:
        db.add(TrackedEntity(tenant_id="H1", entity_type="patients", entity_id="p1", status="registered"))
        db.commit()
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))
    event = _event(factory)

    ok = executor.execute({"type": "update_status", "new_status": "waiting_triage"}, event)
    missing = executor.execute(
        {
            "type": "update_status",
            "new_status": "admitted",
            "entity_ref": {"entity_type": "patients", "entity_id": "p404"},
        },
        event,
    )

    assert ok.ok is True
    assert missing.ok is False
    assert "unknown entity" in missing.reason
    with factory() as db:
        rows = db.query(TrackedEntity).all()
        assert len(rows) == 1
        assert rows[0].status == "waiting_triage"


def test_update_status_without_any_reference_fails():
    factory = _make_session_factory()
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))
    event = _event(factory, entity_ref=None)

    outcome = executor.execute({"type": "update_status", "new_status": "x"}, event)
    assert outcome.ok is False


def test_trigger_function_posts_to_named_function(monkeypatch):
    factory = _make_session_factory()
    calls = []

    def _post(url, headers=None, json=None, timeout=None):
        calls.append((url, headers, json))
        return _Response(200, {"ok": True})

    monkeypatch.setattr(functions.requests, "post", _post)
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local/", token="secret"))
    event = _event(factory)

    outcome = executor.execute({"type": "trigger_function", "name": "bed-allocator", "args": {"ward": "A"}}, event)

    assert outcome.ok is True
    url, headers, body = calls[0]
    assert url == "http://fn.local/bed-allocator"
    assert headers["Authorization"] == "Bearer secret"
    assert body["args"] == {"ward": "A"}
    assert body["event"]["id"] == event.id


def test_trigger_function_http_error_is_failure(monkeypatch):
    factory = _make_session_factory()
    monkeypatch.setattr(functions.requests, "post", lambda *a, **k: _Response(500, text="boom"))
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))

    outcome = executor.execute({"type": "trigger_function", "name": "x"}, _event(factory))
    assert outcome.ok is False
    assert "HTTP 500" in outcome.reason


def test_function_invoker_requires_base_url():
    with pytest.raises(FunctionInvocationError):
        FunctionInvoker("").invoke("x", {})


def test_escalate_inserts_escalation():
    factory = _make_session_factory()
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))
    event = _event(factory)

    outcome = executor.execute({"type": "escalate", "reason": "No triage in 15 min", "severity": "critical"}, event)

    with factory() as db:
        row = db.get(Escalation, outcome.record_id)
        assert row.reason == "No triage in 15 min"
        assert row.severity == "critical"
        assert row.status == "OPEN"
        assert row.entity_id == "p1"


def test_invalid_action_definition_is_failure():
    factory = _make_session_factory()
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))

    outcome = executor.execute({"type": "launch_rocket"}, _event(factory))
    assert outcome.ok is False
    assert outcome.attempts == 0
    assert outcome.action_type == "launch_rocket"


def test_unknown_variant_raises_type_error():
    class NotAnAction(BaseModel):
        type: str = "create_task"

    factory = _make_session_factory()
    executor = ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local"))
    with pytest.raises(TypeError):
        executor.execute(NotAnAction(), _event(factory))


def test_retry_uses_exponential_delay():
    factory = _make_session_factory()

    class FlakyInvoker:
        def __init__(self):
            self.calls = 0

        def invoke(self, name, body):
            self.calls += 1
            if self.calls < 3:
                raise FunctionInvocationError(name, "temporarily unavailable")
            return {"ok": True}

    delays = []
    invoker = FlakyInvoker()
    executor = ActionExecutor(
        factory, invoker=invoker, max_attempts=3, retry_base_delay_sec=2.0, sleep=delays.append
    )

    outcome = executor.execute({"type": "trigger_function", "name": "x"}, _event(factory))
    assert outcome.ok is True
    assert outcome.attempts == 3
    assert delays == [2.0, 4.0]


def test_single_attempt_by_default():
    factory = _make_session_factory()

    class DownInvoker:
        def invoke(self, name, body):
            raise FunctionInvocationError(name, "down")

    delays = []
    executor = ActionExecutor(factory, invoker=DownInvoker(), max_attempts=1, sleep=delays.append)
    outcome = executor.execute({"type": "trigger_function", "name": "x"}, _event(factory))
    assert outcome.ok is False
    assert outcome.attempts == 1
    assert delays == []
