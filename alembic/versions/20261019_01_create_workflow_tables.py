"""create workflow tables

Revision ID: 20261019_01
Revises: 
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "workflow_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("source_actor", sa.String(length=128), nullable=False),
        sa.Column("source_role", sa.String(length=64), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="normal"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.JSON(), nullable=True),
    )
    op.create_index("ix_workflow_events_tenant_id", "workflow_events", ["tenant_id"])
    op.create_index("ix_workflow_events_event_type", "workflow_events", ["event_type"])
    op.create_index("ix_workflow_events_tenant_processed", "workflow_events", ["tenant_id", "processed_at"])

    op.create_table(
        "workflow_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_event_type", sa.String(length=128), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("actions", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_workflow_rules_tenant_id", "workflow_rules", ["tenant_id"])
    op.create_index("ix_workflow_rules_trigger_event_type", "workflow_rules", ["trigger_event_type"])
    op.create_index("ix_workflow_rules_lookup", "workflow_rules", ["tenant_id", "trigger_event_type", "active"])

    op.create_table(
        "workflow_action_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "event_id",
            sa.String(length=36),
            sa.ForeignKey("workflow_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rule_id", sa.String(length=36), nullable=True),
        sa.Column("action_index", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("record_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_workflow_action_logs_tenant_id", "workflow_action_logs", ["tenant_id"])
    op.create_index("ix_workflow_action_logs_event_id", "workflow_action_logs", ["event_id"])

    op.create_table(
        "workflow_tasks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("assigned_role", sa.String(length=64), nullable=True),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="normal"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("workflow_type", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("source_event_id", sa.String(length=36), nullable=True),
        sa.Column("rule_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_workflow_tasks_tenant_id", "workflow_tasks", ["tenant_id"])
    op.create_index("ix_workflow_tasks_assigned_role", "workflow_tasks", ["assigned_role"])
    op.create_index("ix_workflow_tasks_assigned_to", "workflow_tasks", ["assigned_to"])
    op.create_index("ix_workflow_tasks_entity_id", "workflow_tasks", ["entity_id"])
    op.create_index("ix_workflow_tasks_source_event_id", "workflow_tasks", ["source_event_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("recipient_id", sa.String(length=128), nullable=True),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="high"),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default="workflow"),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("source_event_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_tenant_id", "notifications", ["tenant_id"])
    op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
    op.create_index("ix_notifications_source_event_id", "notifications", ["source_event_id"])

    op.create_table(
        "escalations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("source_event_id", sa.String(length=36), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="high"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_escalations_tenant_id", "escalations", ["tenant_id"])
    op.create_index("ix_escalations_source_event_id", "escalations", ["source_event_id"])

    op.create_table(
        "tracked_entities",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=64), nullable=True),
        sa.Column("attributes", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "entity_type", "entity_id", name="uq_tracked_entities_ref"),
    )
    op.create_index("ix_tracked_entities_tenant_id", "tracked_entities", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_tracked_entities_tenant_id", table_name="tracked_entities")
    op.drop_table("tracked_entities")
    op.drop_index("ix_escalations_source_event_id", table_name="escalations")
    op.drop_index("ix_escalations_tenant_id", table_name="escalations")
    op.drop_table("escalations")
    op.drop_index("ix_notifications_source_event_id", table_name="notifications")
    op.drop_index("ix_notifications_recipient_id", table_name="notifications")
    op.drop_index("ix_notifications_tenant_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_workflow_tasks_source_event_id", table_name="workflow_tasks")
    op.drop_index("ix_workflow_tasks_entity_id", table_name="workflow_tasks")
    op.drop_index("ix_workflow_tasks_assigned_to", table_name="workflow_tasks")
    op.drop_index("ix_workflow_tasks_assigned_role", table_name="workflow_tasks")
    op.drop_index("ix_workflow_tasks_tenant_id", table_name="workflow_tasks")
    op.drop_table("workflow_tasks")
    op.drop_index("ix_workflow_action_logs_event_id", table_name="workflow_action_logs")
    op.drop_index("ix_workflow_action_logs_tenant_id", table_name="workflow_action_logs")
    op.drop_table("workflow_action_logs")
    op.drop_index("ix_workflow_rules_lookup", table_name="workflow_rules")
    op.drop_index("ix_workflow_rules_trigger_event_type", table_name="workflow_rules")
    op.drop_index("ix_workflow_rules_tenant_id", table_name="workflow_rules")
    op.drop_table("workflow_rules")
    op.drop_index("ix_workflow_events_tenant_processed", table_name="workflow_events")
    op.drop_index("ix_workflow_events_event_type", table_name="workflow_events")
    op.drop_index("ix_workflow_events_tenant_id", table_name="workflow_events")
    op.drop_table("workflow_events")
