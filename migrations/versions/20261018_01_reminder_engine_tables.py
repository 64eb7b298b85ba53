"""reminder engine tables

Revision ID: 20261018_01
Revises: None
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "court_events",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("recipient_address", sa.String(), nullable=False),
        sa.Column("recipient_name", sa.String(), nullable=True),
        sa.Column("event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("case_number", sa.String(), nullable=True),
        sa.Column("court_id", sa.String(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "reminder_templates",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("message_pattern", sa.Text(), nullable=False),
        sa.Column("offset_days", sa.Integer(), nullable=False),
        sa.Column("court_id", sa.String(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "reminder_instances",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("event_id", sa.String(length=64), sa.ForeignKey("court_events.id"), nullable=False),
        sa.Column("template_id", sa.String(length=64), sa.ForeignKey("reminder_templates.id"), nullable=False),
        sa.Column("recipient_address", sa.String(), nullable=False),
        sa.Column("rendered_body", sa.Text(), nullable=False),
        sa.Column("event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("provider_message_id", sa.String(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("event_id", "template_id", name="uq_reminder_instances_event_template"),
    )
    op.create_index(
        "ix_reminder_instances_status_scheduled", "reminder_instances", ["status", "scheduled_for"]
    )
    op.create_index(
        "ix_reminder_instances_provider_message_id", "reminder_instances", ["provider_message_id"]
    )

    op.create_table(
        "delivery_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("instance_id", sa.String(length=36), sa.ForeignKey("reminder_instances.id"), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("provider_raw", sa.JSON(), nullable=True),
    )
    op.create_index("ix_delivery_logs_instance_id", "delivery_logs", ["instance_id"])


def downgrade() -> None:
    op.drop_index("ix_delivery_logs_instance_id", table_name="delivery_logs")
    op.drop_table("delivery_logs")
    op.drop_index("ix_reminder_instances_provider_message_id", table_name="reminder_instances")
    op.drop_index("ix_reminder_instances_status_scheduled", table_name="reminder_instances")
    op.drop_table("reminder_instances")
    op.drop_table("reminder_templates")
    op.drop_table("court_events")
