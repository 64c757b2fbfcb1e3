"""Create campaign, automation, deferred notification, push device and AI usage tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _autoincrement_id() -> sa.Column:
    return sa.Column(
        "id",
        sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )


def upgrade() -> None:
    op.create_table(
        "outbound_campaigns",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("subject", sa.String(length=512), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("segment_id", sa.String(length=64), nullable=True),
        sa.Column("html_content", sa.Text(), nullable=True),
        sa.Column("text_content", sa.Text(), nullable=True),
        sa.Column("template_data", sa.JSON(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_recipients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbound_campaigns_status", "outbound_campaigns", ["status"], unique=False)
    op.create_index("ix_outbound_campaigns_scheduled_at", "outbound_campaigns", ["scheduled_at"], unique=False)

    op.create_table(
        "outbound_segments",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "outbound_segment_members",
        _autoincrement_id(),
        sa.Column("segment_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=True),
    )
    op.create_index(
        "ix_outbound_segment_members_segment_id", "outbound_segment_members", ["segment_id"], unique=False
    )

    op.create_table(
        "outbound_automations",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "outbound_email_templates",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("subject", sa.String(length=512), nullable=False),
        sa.Column("html_content", sa.Text(), nullable=False),
        sa.Column("text_content", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "outbound_automation_queue",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("automation_id", sa.String(length=64), nullable=False),
        sa.Column("profile_id", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("template_data", sa.JSON(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("automation_id", "profile_id", "step_index", name="uq_outbound_automation_queue_step"),
    )
    for column in ("automation_id", "profile_id", "scheduled_at", "status"):
        op.create_index(f"ix_outbound_automation_queue_{column}", "outbound_automation_queue", [column], unique=False)

    op.create_table(
        "outbound_automation_runs",
        _autoincrement_id(),
        sa.Column("automation_id", sa.String(length=64), nullable=False),
        sa.Column("profile_id", sa.String(length=128), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_outbound_automation_runs_automation_id", "outbound_automation_runs", ["automation_id"], unique=False
    )
    op.create_index("ix_outbound_automation_runs_profile_id", "outbound_automation_runs", ["profile_id"], unique=False)

    op.create_table(
        "outbound_deferred_notifications",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("user_id", "resume_at", "status"):
        op.create_index(
            f"ix_outbound_deferred_notifications_{column}", "outbound_deferred_notifications", [column], unique=False
        )

    op.create_table(
        "outbound_push_devices",
        sa.Column("token", sa.String(length=512), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("platform", sa.String(length=16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("token"),
    )
    op.create_index("ix_outbound_push_devices_user_id", "outbound_push_devices", ["user_id"], unique=False)

    op.create_table(
        "outbound_ai_usage",
        _autoincrement_id(),
        sa.Column("model", sa.String(length=128), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("outbound_ai_usage")
    op.drop_index("ix_outbound_push_devices_user_id", table_name="outbound_push_devices")
    op.drop_table("outbound_push_devices")
    for column in ("user_id", "resume_at", "status"):
        op.drop_index(f"ix_outbound_deferred_notifications_{column}", table_name="outbound_deferred_notifications")
    op.drop_table("outbound_deferred_notifications")
    op.drop_index("ix_outbound_automation_runs_profile_id", table_name="outbound_automation_runs")
    op.drop_index("ix_outbound_automation_runs_automation_id", table_name="outbound_automation_runs")
    op.drop_table("outbound_automation_runs")
    for column in ("automation_id", "profile_id", "scheduled_at", "status"):
        op.drop_index(f"ix_outbound_automation_queue_{column}", table_name="outbound_automation_queue")
    op.drop_table("outbound_automation_queue")
    op.drop_table("outbound_email_templates")
    op.drop_table("outbound_automations")
    op.drop_index("ix_outbound_segment_members_segment_id", table_name="outbound_segment_members")
    op.drop_table("outbound_segment_members")
    op.drop_table("outbound_segments")
    op.drop_index("ix_outbound_campaigns_scheduled_at", table_name="outbound_campaigns")
    op.drop_index("ix_outbound_campaigns_status", table_name="outbound_campaigns")
    op.drop_table("outbound_campaigns")
