"""create crm pipelines, deals, pipeline rules and custom roles

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_pipeline",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_pipeline_tenant_name", "crm_pipeline", ["tenant_id", "name"], unique=False)

    op.create_table(
        "crm_pipeline_stage",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("pipeline_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("is_closing", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_pipeline_stage_pipeline_position",
        "crm_pipeline_stage",
        ["pipeline_id", "position"],
        unique=False,
    )

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("pipeline_id", sa.String(length=64), nullable=False),
        sa.Column("stage_id", sa.String(length=64), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="EUR"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("loss_reason", sa.String(length=64), nullable=True),
        sa.Column("loss_notes", sa.Text(), nullable=True),
        sa.Column("organisation_id", sa.String(length=64), nullable=True),
        sa.Column("contact_id", sa.String(length=64), nullable=True),
        sa.Column("responsible_user_id", sa.String(length=128), nullable=True),
        sa.Column("probability", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("original_deal_id", sa.String(length=64), nullable=True),
        sa.Column("won_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"]),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_deal_tenant_pipeline_stage",
        "crm_deal",
        ["tenant_id", "pipeline_id", "stage_id"],
        unique=False,
    )
    op.create_index("ix_crm_deal_responsible_user", "crm_deal", ["tenant_id", "responsible_user_id"], unique=False)

    op.create_table(
        "crm_task",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("deal_id", sa.String(length=64), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="MEDIUM"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("assignee_user_id", sa.String(length=128), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_rule_id", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_task_deal", "crm_task", ["tenant_id", "deal_id"], unique=False)

    op.create_table(
        "crm_notification_intent",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("intent_type", sa.String(length=64), nullable=False),
        sa.Column("recipient_user_id", sa.String(length=128), nullable=True),
        sa.Column("recipient_team_id", sa.String(length=128), nullable=True),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("deal_id", sa.String(length=64), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("source_rule_id", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_notification_intent_deal",
        "crm_notification_intent",
        ["tenant_id", "deal_id"],
        unique=False,
    )

    op.create_table(
        "crm_pipeline_rule",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("pipeline_id", sa.String(length=64), nullable=True),
        sa.Column("is_global", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("trigger", sa.String(length=64), nullable=False),
        sa.Column("trigger_config", sa.JSON(), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("actions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("execute_once", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_migrated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("updated_by", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", "tenant_id"),
    )
    op.create_index(
        "ix_crm_pipeline_rule_trigger_active",
        "crm_pipeline_rule",
        ["tenant_id", "trigger", "is_active"],
        unique=False,
    )
    op.create_index("ix_crm_pipeline_rule_pipeline", "crm_pipeline_rule", ["tenant_id", "pipeline_id"], unique=False)

    op.create_table(
        "crm_rule_execution",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("rule_id", sa.String(length=64), nullable=False),
        sa.Column("rule_name", sa.Text(), nullable=False),
        sa.Column("deal_id", sa.String(length=64), nullable=False),
        sa.Column("deal_title", sa.Text(), nullable=True),
        sa.Column("pipeline_id", sa.String(length=64), nullable=True),
        sa.Column("stage_id", sa.String(length=64), nullable=True),
        sa.Column("trigger", sa.String(length=64), nullable=False),
        sa.Column("trigger_data", sa.JSON(), nullable=False),
        sa.Column("conditions_matched", sa.Boolean(), nullable=False),
        sa.Column("evaluation_result", sa.JSON(), nullable=False),
        sa.Column("executed", sa.Boolean(), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actions_performed", sa.JSON(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.Float(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_rule_execution_rule_deal",
        "crm_rule_execution",
        ["tenant_id", "rule_id", "deal_id"],
        unique=False,
    )
    op.create_index("ix_crm_rule_execution_rule_created", "crm_rule_execution", ["rule_id", "created_at"], unique=False)
    op.create_index("ix_crm_rule_execution_deal_created", "crm_rule_execution", ["deal_id", "created_at"], unique=False)

    op.create_table(
        "crm_rule_cooldown",
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("rule_id", sa.String(length=64), nullable=False),
        sa.Column("deal_id", sa.String(length=64), nullable=False),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "rule_id", "deal_id"),
    )

    op.create_table(
        "crm_custom_role",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("updated_by", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", "tenant_id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_crm_custom_role_tenant_name"),
    )
    op.create_index("ix_crm_custom_role_tenant_active", "crm_custom_role", ["tenant_id", "is_active"], unique=False)

    op.create_table(
        "crm_user_profile",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("custom_role_id", sa.String(length=64), nullable=True),
        sa.Column("permission_overrides", sa.JSON(), nullable=True),
        sa.Column("assigned_entity_ids", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_crm_user_profile_tenant_user"),
    )
    op.create_index("ix_crm_user_profile_role", "crm_user_profile", ["tenant_id", "custom_role_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_user_profile_role", table_name="crm_user_profile")
    op.drop_table("crm_user_profile")

    op.drop_index("ix_crm_custom_role_tenant_active", table_name="crm_custom_role")
    op.drop_table("crm_custom_role")

    op.drop_table("crm_rule_cooldown")

    op.drop_index("ix_crm_rule_execution_deal_created", table_name="crm_rule_execution")
    op.drop_index("ix_crm_rule_execution_rule_created", table_name="crm_rule_execution")
    op.drop_index("ix_crm_rule_execution_rule_deal", table_name="crm_rule_execution")
    op.drop_table("crm_rule_execution")

    op.drop_index("ix_crm_pipeline_rule_pipeline", table_name="crm_pipeline_rule")
    op.drop_index("ix_crm_pipeline_rule_trigger_active", table_name="crm_pipeline_rule")
    op.drop_table("crm_pipeline_rule")

    op.drop_index("ix_crm_notification_intent_deal", table_name="crm_notification_intent")
    op.drop_table("crm_notification_intent")

    op.drop_index("ix_crm_task_deal", table_name="crm_task")
    op.drop_table("crm_task")

    op.drop_index("ix_crm_deal_responsible_user", table_name="crm_deal")
    op.drop_index("ix_crm_deal_tenant_pipeline_stage", table_name="crm_deal")
    op.drop_table("crm_deal")

    op.drop_index("ix_crm_pipeline_stage_pipeline_position", table_name="crm_pipeline_stage")
    op.drop_table("crm_pipeline_stage")

    op.drop_index("ix_crm_pipeline_tenant_name", table_name="crm_pipeline")
    op.drop_table("crm_pipeline")
