import json
from types import SimpleNamespace

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from careflow.models import Base, TrackedEntity, WorkflowActionLog, WorkflowTask
from careflow.schemas.changes import Operation
from careflow.services.change_capture import install_change_capture
from careflow.services.change_publisher import MqttChangePublisher, change_topic


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


class Sink:
    def __init__(self):
        self.published = []

    def publish(self, notification):
        self.published.append(notification)


def _task(**kwargs) -> WorkflowTask:
    values = {"tenant_id": "H1", "title": "Triage", "workflow_type": "patient_check_in", "assigned_role": "nurse"}
    values.update(kwargs)
    return WorkflowTask(**values)


def test_committed_writes_are_published_in_order():
    factory = _make_session_factory()
    sink = Sink()
    install_change_capture(factory, sink)

    with factory() as db:
        task = _task()
        db.add(task)
        db.commit()
        task_id = task.id

        task.status = "in_progress"
        db.commit()

        db.delete(task)
        db.commit()

    ops = [(n.entity_type, n.operation, n.key_id) for n in sink.published]
    assert ops == [
        ("workflow_tasks", Operation.INSERT, task_id),
        ("workflow_tasks", Operation.UPDATE, task_id),
        ("workflow_tasks", Operation.DELETE, task_id),
    ]
    inserted = sink.published[0]
    assert inserted.tenant_id == "H1"
    assert inserted.record["assigned_role"] == "nurse"
    assert inserted.record["metadata"] == {}
    assert sink.published[1].record["status"] == "in_progress"


def test_rollback_publishes_nothing():
    factory = _make_session_factory()
    sink = Sink()
    install_change_capture(factory, sink)

    with factory() as db:
        db.add(_task())
        db.flush()
        db.rollback()

    assert sink.published == []


def test_unpublished_models_are_skipped():
    factory = _make_session_factory()
    sink = Sink()
    install_change_capture(factory, sink)

    with factory() as db:
        task = _task()
        db.add(task)
        db.commit()
        db.add(
            WorkflowActionLog(
                tenant_id="H1", event_id="e1", action_index=0, action_type="create_task", status="OK"
            )
        )
        db.commit()

    assert [n.entity_type for n in sink.published] == ["workflow_tasks"]


def test_tracked_entity_is_published_as_its_domain_type():
    factory = _make_session_factory()
    with factory() as db:
        db.add(TrackedEntity(tenant_id="H1", entity_type="patients", entity_id="p1", status="registered", attributes={"name": "Asha"}))
        db.commit()
    sink = Sink()
    install_change_capture(factory, sink)

    with factory() as db:
        entity = db.query(TrackedEntity).one()
        entity.status = "waiting_triage"
        db.commit()

    [notification] = sink.published
    assert notification.entity_type == "patients"
    assert notification.operation == Operation.UPDATE
    assert notification.record["id"] == "p1"
    assert notification.record["status"] == "waiting_triage"
    assert notification.record["name"] == "Asha"


def test_publish_failure_does_not_break_commit():
    factory = _make_session_factory()

    class BrokenSink:
        def publish(self, notification):
            raise RuntimeError("broker down")

    install_change_capture(factory, BrokenSink())
    with factory() as db:
        db.add(_task())
        db.commit()
        assert db.query(WorkflowTask).count() == 1


class FakePublishClient:
    def __init__(self):
        self.messages = []

    def publish(self, topic, payload, qos=0):
        self.messages.append((topic, payload, qos))
        return SimpleNamespace(rc=0)


def test_mqtt_publisher_sends_wire_body():
    factory = _make_session_factory()
    fake = FakePublishClient()
    publisher = MqttChangePublisher(client=fake, topic_prefix="careflow")
    install_change_capture(factory, publisher)

    with factory() as db:
        task = _task()
        db.add(task)
        db.commit()
        task_id = task.id

    [(topic, payload, qos)] = fake.messages
    assert topic == change_topic("H1", "careflow") == "careflow/H1/changes"
    assert qos == 1
    body = json.loads(payload)
    assert body["operation"] == "insert"
    assert body["entity_type"] == "workflow_tasks"
    assert body["record"]["id"] == task_id
    assert "record_id" not in body
