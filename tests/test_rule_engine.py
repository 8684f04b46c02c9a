import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from careflow.core.errors import DispatchFailure
from careflow.models import Base, WorkflowActionLog, WorkflowEvent, WorkflowRule, WorkflowTask, utcnow
from careflow.schemas.workflow import EntityRef, WorkflowEventIn
from careflow.services.action_executor import ActionExecutor, ActionOutcome
from careflow.services.audit_log import AuditLogWriter
from careflow.services.functions import FunctionInvoker
from careflow.services.rule_engine import WorkflowRuleEngine, in_cooldown
from careflow.services.rule_repository import RuleRepository


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _add_rule(factory, **kwargs) -> str:
    values = {
        "tenant_id": "H1",
        "name": "rule",
        "trigger_event_type": "patient_check_in",
        "conditions": {},
        "actions": [],
    }
    values.update(kwargs)
    with factory() as db:
        rule = WorkflowRule(**values)
        db.add(rule)
        db.commit()
        return rule.id


def _check_in(**kwargs) -> WorkflowEventIn:
    values = {
        "tenant_id": "H1",
        "event_type": "patient_check_in",
        "source_actor": "reception-1",
        "source_role": "receptionist",
        "entity_ref": EntityRef(entity_type="patients", entity_id="p1"),
        "payload": {"department": "er"},
    }
    values.update(kwargs)
    return WorkflowEventIn(**values)


def _engine(factory, **kwargs) -> WorkflowRuleEngine:
    audit = AuditLogWriter(factory)
    kwargs.setdefault("executor", ActionExecutor(factory, invoker=FunctionInvoker("http://fn.local")))
    return WorkflowRuleEngine(audit=audit, max_workers=1, **kwargs)


class RecordingExecutor:
    def __init__(self, factory=None):
        self.factory = factory
        self.calls = []
        self.processed_during_execution = []

    def execute(self, action, event, rule_id=None):
        self.calls.append((rule_id, action.get("type")))
        if self.factory is not None:
            with self.factory() as db:
                self.processed_during_execution.append(db.get(WorkflowEvent, event.id).processed_at)
        return ActionOutcome(action_type=action.get("type"), ok=True)


def test_patient_check_in_creates_nurse_task():
    factory = _make_session_factory()
    _add_rule(
        factory,
        name="Triage on arrival",
        actions=[{"type": "create_task", "target_role": "nurse", "message": "Triage patient"}],
    )
    engine = _engine(factory)

    receipt = engine.trigger(_check_in())
    outcome = receipt.future.result(timeout=5)
    engine.shutdown()

    assert outcome["rules_matched"] == 1
    assert outcome["actions_ok"] == 1
    with factory() as db:
        events = db.query(WorkflowEvent).all()
        assert len(events) == 1
        assert events[0].id == receipt.event_id
        assert events[0].processed_at is not None
        tasks = db.query(WorkflowTask).all()
        assert len(tasks) == 1
        assert tasks[0].assigned_role == "nurse"
        assert tasks[0].title == "Triage patient"


def test_audit_failure_aborts_before_rules():
    class NoRules:
        def __init__(self):
            self.calls = 0

        def load_active(self, tenant_id, event_type):
            self.calls += 1
            return []

    def _broken_factory():
        raise RuntimeError("database unavailable")

    rules = NoRules()
    executor = RecordingExecutor()
    engine = WorkflowRuleEngine(
        audit=AuditLogWriter(_broken_factory), rules=rules, executor=executor, max_workers=1
    )

    with pytest.raises(DispatchFailure):
        engine.trigger(_check_in())
    engine.shutdown()

    assert rules.calls == 0
    assert executor.calls == []


def test_failed_action_does_not_stop_following_actions():
    factory = _make_session_factory()
    rule_id = _add_rule(
        factory,
        actions=[
            {"type": "update_status", "new_status": "waiting", "entity_ref": {"entity_type": "patients", "entity_id": "nope"}},
            {"type": "create_task", "target_role": "nurse"},
            {"type": "escalate", "reason": "check-in without triage"},
        ],
    )
    engine = _engine(factory)
    event = engine.audit.append_event(_check_in())

    outcome = engine.process(event.id)

    assert outcome["actions_failed"] == 1
    assert outcome["actions_ok"] == 2
    with factory() as db:
        logs = db.query(WorkflowActionLog).order_by(WorkflowActionLog.action_index).all()
        assert [(log.action_type, log.status) for log in logs] == [
            ("update_status", "FAILED"),
            ("create_task", "OK"),
            ("escalate", "OK"),
        ]
        assert all(log.rule_id == rule_id for log in logs)
        assert db.query(WorkflowTask).count() == 1
        assert db.get(WorkflowEvent, event.id).processed_at is not None
        assert db.get(WorkflowRule, rule_id).last_triggered_at is not None


def test_rules_run_by_priority_and_before_processed_at():
    factory = _make_session_factory()
    _add_rule(factory, id="low", priority=1, actions=[{"type": "escalate", "reason": "low"}])
    _add_rule(factory, id="high", priority=9, actions=[{"type": "create_task"}, {"type": "escalate", "reason": "x"}])
    executor = RecordingExecutor(factory)
    engine = _engine(factory, executor=executor)
    event = engine.audit.append_event(_check_in())

    engine.process(event.id)

    assert executor.calls == [("high", "create_task"), ("high", "escalate"), ("low", "escalate")]
    assert executor.processed_during_execution == [None, None, None]


def test_processed_at_is_set_once():
    factory = _make_session_factory()
    _add_rule(factory, actions=[{"type": "create_task", "target_role": "nurse"}])
    engine = _engine(factory)
    event = engine.audit.append_event(_check_in())

    first = engine.process(event.id)
    with factory() as db:
        stamped = db.get(WorkflowEvent, event.id).processed_at
    second = engine.process(event.id)

    assert second == first
    with factory() as db:
        assert db.get(WorkflowEvent, event.id).processed_at == stamped
        assert db.query(WorkflowTask).count() == 1


def test_conditions_filter_rules():
    factory = _make_session_factory()
    _add_rule(factory, conditions={"department": "cardiology"}, actions=[{"type": "create_task"}])
    engine = _engine(factory)
    event = engine.audit.append_event(_check_in(payload={"department": "er"}))

    outcome = engine.process(event.id)

    assert outcome == {"rules_loaded": 1, "rules_matched": 0, "actions_ok": 0, "actions_failed": 0}
    with factory() as db:
        assert db.query(WorkflowTask).count() == 0
        assert db.get(WorkflowEvent, event.id).processed_at is not None


def test_rule_in_cooldown_is_skipped():
    factory = _make_session_factory()
    _add_rule(
        factory,
        cooldown_minutes=10,
        last_triggered_at=utcnow() - datetime.timedelta(minutes=2),
        actions=[{"type": "create_task"}],
    )
    engine = _engine(factory)
    event = engine.audit.append_event(_check_in())

    outcome = engine.process(event.id)
    assert outcome["rules_matched"] == 0


def test_in_cooldown_helper():
    now = utcnow()
    rule = WorkflowRule(cooldown_minutes=5, last_triggered_at=now - datetime.timedelta(minutes=6))
    assert in_cooldown(rule, now) is False
    rule.last_triggered_at = (now - datetime.timedelta(minutes=1)).replace(tzinfo=None)
    assert in_cooldown(rule, now) is True
    assert in_cooldown(WorkflowRule(cooldown_minutes=0, last_triggered_at=now), now) is False


def test_rule_loading_failure_leaves_event_for_recovery():
    factory = _make_session_factory()
    _add_rule(factory, actions=[{"type": "create_task", "target_role": "nurse"}])

    class FlakyRules(RuleRepository):
        fail = True

        def load_active(self, tenant_id, event_type):
            if self.fail:
                raise RuntimeError("statement timeout")
            return super().load_active(tenant_id, event_type)

    rules = FlakyRules(factory)
    engine = _engine(factory, rules=rules)
    event = engine.audit.append_event(_check_in())

    assert engine.process(event.id) is None
    with factory() as db:
        stored = db.get(WorkflowEvent, event.id)
        assert stored.processed_at is None
        assert "statement timeout" in stored.outcome["error"]

    rules.fail = False
    assert engine.reprocess_stale(grace_sec=0) == 1
    with factory() as db:
        assert db.get(WorkflowEvent, event.id).processed_at is not None
        assert db.query(WorkflowTask).count() == 1
