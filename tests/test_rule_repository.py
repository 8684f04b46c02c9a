import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from careflow.models import Base, WorkflowRule, ensure_utc
from careflow.schemas.workflow import CreateTask, RuleCreate, RuleUpdate, SendNotification
from careflow.services import rule_repository
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


def _add_rule(factory, **kwargs) -> WorkflowRule:
    values = {
        "tenant_id": "H1",
        "name": "rule",
        "trigger_event_type": "patient_check_in",
        "conditions": {},
        "actions": [],
        "active": True,
        "priority": 0,
    }
    values.update(kwargs)
    with factory() as db:
        rule = WorkflowRule(**values)
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule


def test_load_active_orders_by_priority_then_id():
    factory = _make_session_factory()
    _add_rule(factory, id="b", priority=5)
    _add_rule(factory, id="a", priority=5)
    _add_rule(factory, id="c", priority=10)

    rules = RuleRepository(factory).load_active("H1", "patient_check_in")
    assert [r.id for r in rules] == ["c", "a", "b"]


def test_load_active_filters_tenant_type_and_inactive():
    factory = _make_session_factory()
    _add_rule(factory, id="keep")
    _add_rule(factory, id="inactive", active=False)
    _add_rule(factory, id="other-tenant", tenant_id="H2")
    _add_rule(factory, id="other-type", trigger_event_type="lab_result_posted")

    rules = RuleRepository(factory).load_active("H1", "patient_check_in")
    assert [r.id for r in rules] == ["keep"]


def test_touch_last_triggered():
    factory = _make_session_factory()
    rule = _add_rule(factory)
    at = datetime.datetime(2026, 3, 1, 8, 30, tzinfo=datetime.timezone.utc)

    RuleRepository(factory).touch_last_triggered(rule.id, at)

    with factory() as db:
        stored = db.get(WorkflowRule, rule.id)
        assert ensure_utc(stored.last_triggered_at) == at


def test_create_update_and_deactivate_rule():
    factory = _make_session_factory()
    with factory() as db:
        rule = rule_repository.create_rule(
            db,
            RuleCreate(
                tenant_id="H1",
                name="Triage on check-in",
                trigger_event_type="patient_check_in",
                actions=[CreateTask(target_role="nurse", message="Triage patient")],
                priority=3,
            ),
        )
        assert rule.actions == [
            {
                "type": "create_task",
                "target_role": "nurse",
                "target_actor": None,
                "message": "Triage patient",
                "metadata": {},
            }
        ]
        assert rule.active is True

        rule = rule_repository.update_rule(
            db,
            rule,
            RuleUpdate(priority=7, actions=[SendNotification(message="Patient arrived", target_actor="dr-1")]),
        )
        assert rule.priority == 7
        assert rule.name == "Triage on check-in"
        assert rule.actions[0]["type"] == "send_notification"

        rule = rule_repository.deactivate_rule(db, rule)
        assert rule.active is False
        assert rule_repository.list_rules(db, "H1") == []
        assert len(rule_repository.list_rules(db, "H1", include_inactive=True)) == 1
