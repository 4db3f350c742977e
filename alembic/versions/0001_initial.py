"""Initial schema: tenants, entity mirror, automations, drip campaigns, schedule store

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

Tables:
- organizations, users, pipeline_stages: tenants and their pipelines
- tracked_entities, stage_transitions: scheduling mirror of upstream records
- message_templates, automation_rules, automation_steps: stage-triggered automations
- drip_campaigns, drip_campaign_steps, drip_enrollments: dated nurture sequences
- scheduled_executions: durable outbound work
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _org_fk() -> sa.Column:
    return sa.Column(
        "organization_id",
        UUID(as_uuid=True),
        sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
    )


def upgrade() -> None:
    # =========================================================================
    # Tenants
    # =========================================================================
    op.create_table(
        "organizations",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column(
            "timezone", sa.String(50), nullable=False, server_default="America/New_York"
        ),
        sa.Column("email_from_name", sa.String(255), nullable=True),
        sa.Column("email_reply_to", sa.String(255), nullable=True),
        _created_at(),
    )

    op.create_table(
        "users",
        _id(),
        _org_fk(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        _created_at(),
    )
    op.create_index("idx_users_org", "users", ["organization_id"])

    op.create_table(
        "pipeline_stages",
        _id(),
        _org_fk(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("order_index", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
        sa.UniqueConstraint("organization_id", "name", name="uq_stage_name"),
    )
    op.create_index("idx_stages_org_order", "pipeline_stages", ["organization_id", "order_index"])

    # =========================================================================
    # Entity mirror
    # =========================================================================
    op.create_table(
        "tracked_entities",
        _id(),
        _org_fk(),
        sa.Column("entity_kind", sa.String(20), nullable=False, server_default="project"),
        sa.Column("project_type", sa.String(50), nullable=True),
        sa.Column(
            "stage_id",
            UUID(as_uuid=True),
            sa.ForeignKey("pipeline_stages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stage_transition_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email_opt_in", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("sms_opt_in", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("event_date", sa.Date, nullable=True),
        sa.Column(
            "owner_user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
    )
    op.create_index("idx_entities_org_stage", "tracked_entities", ["organization_id", "stage_id"])
    op.create_index(
        "idx_entities_org_type", "tracked_entities", ["organization_id", "project_type"]
    )

    op.create_table(
        "stage_transitions",
        _id(),
        _org_fk(),
        sa.Column(
            "entity_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tracked_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_stage_id", UUID(as_uuid=True), nullable=True),
        sa.Column("to_stage_id", UUID(as_uuid=True), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("occurrence_key", sa.String(128), nullable=False),
        _created_at(),
        sa.UniqueConstraint("entity_id", "occurrence_key", name="uq_transition_occurrence"),
    )
    op.create_index("idx_transitions_entity", "stage_transitions", ["entity_id", "sequence"])

    # =========================================================================
    # Automations
    # =========================================================================
    op.create_table(
        "message_templates",
        _id(),
        _org_fk(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("subject", sa.String(255), nullable=True),
        sa.Column("body", sa.Text, nullable=False),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("organization_id", "name", name="uq_template_name"),
    )

    op.create_table(
        "automation_rules",
        _id(),
        _org_fk(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("trigger_kind", sa.String(30), nullable=False),
        sa.Column(
            "target_stage_id",
            UUID(as_uuid=True),
            sa.ForeignKey("pipeline_stages.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("project_type", sa.String(50), nullable=True),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("cancel_on_stage_exit", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("organization_id", "name", name="uq_automation_rule_name"),
        sa.CheckConstraint(
            "(trigger_kind = 'stage_change') OR "
            "(trigger_kind = 'specific_stage' AND target_stage_id IS NOT NULL)",
            name="chk_rule_target_stage",
        ),
    )
    op.create_index(
        "idx_rules_matching", "automation_rules", ["organization_id", "trigger_kind", "is_enabled"]
    )

    op.create_table(
        "automation_steps",
        _id(),
        sa.Column(
            "rule_id",
            UUID(as_uuid=True),
            sa.ForeignKey("automation_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("order_index", sa.Integer, nullable=False),
        sa.Column("action_kind", sa.String(20), nullable=False, server_default="email"),
        sa.Column(
            "recipient_kind", sa.String(20), nullable=False, server_default="entity_contact"
        ),
        sa.Column("delay_kind", sa.String(30), nullable=False, server_default="immediate"),
        sa.Column("delay_days", sa.Integer, nullable=False, server_default="0"),
        sa.Column("delay_hours", sa.Integer, nullable=False, server_default="0"),
        sa.Column("delay_minutes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("send_at_hour", sa.Integer, nullable=True),
        sa.Column("send_at_minute", sa.Integer, nullable=True),
        sa.Column("quiet_hours_start", sa.Integer, nullable=True),
        sa.Column("quiet_hours_end", sa.Integer, nullable=True),
        sa.Column(
            "template_id",
            UUID(as_uuid=True),
            sa.ForeignKey("message_templates.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("subject", sa.String(255), nullable=True),
        sa.Column("body", sa.Text, nullable=True),
        sa.Column("document_ref", sa.String(500), nullable=True),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("rule_id", "order_index", name="uq_step_order"),
        sa.CheckConstraint(
            "(delay_kind = 'immediate' AND delay_days = 0 AND delay_hours = 0 "
            "AND delay_minutes = 0) OR "
            "(delay_kind = 'relative_duration' AND delay_days = 0 "
            "AND delay_hours BETWEEN 0 AND 23 AND delay_minutes BETWEEN 0 AND 59) OR "
            "(delay_kind = 'next_calendar_day_at' AND delay_days >= 1 "
            "AND delay_hours = 0 AND delay_minutes = 0 "
            "AND send_at_hour BETWEEN 0 AND 23 AND send_at_minute BETWEEN 0 AND 59)",
            name="chk_step_delay_shape",
        ),
    )

    # =========================================================================
    # Drip campaigns
    # =========================================================================
    op.create_table(
        "drip_campaigns",
        _id(),
        _org_fk(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("project_type", sa.String(50), nullable=True),
        sa.Column(
            "target_stage_id",
            UUID(as_uuid=True),
            sa.ForeignKey("pipeline_stages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("send_at_hour", sa.Integer, nullable=False, server_default="9"),
        sa.Column("send_at_minute", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_duration_days", sa.Integer, nullable=True),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("organization_id", "name", name="uq_drip_campaign_name"),
        sa.CheckConstraint(
            "send_at_hour BETWEEN 0 AND 23 AND send_at_minute BETWEEN 0 AND 59",
            name="chk_drip_send_time",
        ),
    )
    op.create_index("idx_drip_org_enabled", "drip_campaigns", ["organization_id", "is_enabled"])

    op.create_table(
        "drip_campaign_steps",
        _id(),
        sa.Column(
            "campaign_id",
            UUID(as_uuid=True),
            sa.ForeignKey("drip_campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("order_index", sa.Integer, nullable=False),
        sa.Column("days_after_start", sa.Integer, nullable=False),
        sa.Column("action_kind", sa.String(20), nullable=False, server_default="email"),
        sa.Column(
            "template_id",
            UUID(as_uuid=True),
            sa.ForeignKey("message_templates.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("subject", sa.String(255), nullable=True),
        sa.Column("body", sa.Text, nullable=True),
        _created_at(),
        sa.UniqueConstraint("campaign_id", "order_index", name="uq_drip_step_order"),
        sa.CheckConstraint("days_after_start >= 0", name="chk_drip_step_days"),
    )

    op.create_table(
        "drip_enrollments",
        _id(),
        _org_fk(),
        sa.Column(
            "campaign_id",
            UUID(as_uuid=True),
            sa.ForeignKey("drip_campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "entity_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tracked_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unenrolled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "idx_enrollments_campaign_entity",
        "drip_enrollments",
        ["campaign_id", "entity_id", "status"],
    )
    op.create_index(
        "idx_enrollments_org_entity", "drip_enrollments", ["organization_id", "entity_id"]
    )
    op.create_index(
        "uq_enrollments_active",
        "drip_enrollments",
        ["campaign_id", "entity_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # =========================================================================
    # Schedule store
    # =========================================================================
    op.create_table(
        "scheduled_executions",
        _id(),
        _org_fk(),
        sa.Column(
            "entity_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tracked_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_type", sa.String(20), nullable=False),
        sa.Column(
            "rule_id",
            UUID(as_uuid=True),
            sa.ForeignKey("automation_rules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "step_id",
            UUID(as_uuid=True),
            sa.ForeignKey("automation_steps.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("trigger_stage_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "campaign_id",
            UUID(as_uuid=True),
            sa.ForeignKey("drip_campaigns.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "drip_step_id",
            UUID(as_uuid=True),
            sa.ForeignKey("drip_campaign_steps.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "enrollment_id",
            UUID(as_uuid=True),
            sa.ForeignKey("drip_enrollments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("occurrence_key", sa.String(128), nullable=False),
        sa.Column("dedupe_key", sa.String(255), nullable=False),
        sa.Column("action_kind", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(40), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        _created_at(),
        _updated_at(),
    )
    # Dispatcher sweep: pending rows ordered by due_at
    op.create_index(
        "idx_exec_due",
        "scheduled_executions",
        ["status", "due_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "idx_exec_org_entity", "scheduled_executions", ["organization_id", "entity_id", "status"]
    )
    op.create_index("idx_exec_rule", "scheduled_executions", ["rule_id", "status"])
    op.create_index("idx_exec_step", "scheduled_executions", ["step_id", "status"])
    op.create_index("idx_exec_campaign", "scheduled_executions", ["campaign_id", "status"])
    op.create_index("idx_exec_enrollment", "scheduled_executions", ["enrollment_id", "status"])
    op.create_index("uq_exec_dedupe_key", "scheduled_executions", ["dedupe_key"], unique=True)


def downgrade() -> None:
    op.drop_table("scheduled_executions")
    op.drop_table("drip_enrollments")
    op.drop_table("drip_campaign_steps")
    op.drop_table("drip_campaigns")
    op.drop_table("automation_steps")
    op.drop_table("automation_rules")
    op.drop_table("message_templates")
    op.drop_table("stage_transitions")
    op.drop_table("tracked_entities")
    op.drop_table("pipeline_stages")
    op.drop_table("users")
    op.drop_table("organizations")
