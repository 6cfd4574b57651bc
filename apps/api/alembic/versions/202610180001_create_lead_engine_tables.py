"""create lead engine tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", sa.Uuid(), primary_key=True)


def _tenant() -> sa.Column:
    return sa.Column("tenant_id", sa.String(length=64), nullable=False)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _flag(name: str, default: bool) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default="true" if default else "false")


def _person_columns() -> list[sa.Column]:
    return [
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("mobile", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("address_line1", sa.Text(), nullable=True),
        sa.Column("address_line2", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("state", sa.Text(), nullable=True),
        sa.Column("postal_code", sa.Text(), nullable=True),
        sa.Column("country", sa.Text(), nullable=True),
        sa.Column("emails", sa.JSON(), nullable=False),
        sa.Column("phones", sa.JSON(), nullable=False),
        sa.Column("addresses", sa.JSON(), nullable=False),
        sa.Column("social_profiles", sa.JSON(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        _flag("do_not_contact", False),
        _flag("do_not_email", False),
        _flag("do_not_call", False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "platform_tenant",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        _flag("is_active", True),
        _timestamp("created_at"),
    )

    op.create_table(
        "crm_lead_setting",
        _id(),
        _tenant(),
        sa.Column("setting_key", sa.String(length=64), nullable=False),
        sa.Column("setting_value", sa.JSON(), nullable=False),
        _timestamp("updated_at"),
        sa.UniqueConstraint("tenant_id", "setting_key", name="uq_crm_lead_setting_key"),
    )

    op.create_table(
        "crm_lead_stage",
        _id(),
        _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        _flag("is_won", False),
        _flag("is_lost", False),
        _flag("is_active", True),
        sa.Column("required_fields", sa.JSON(), nullable=False),
        _flag("lock_previous_fields", False),
        _timestamp("created_at"),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_crm_lead_stage_slug"),
    )
    op.create_index("ix_crm_lead_stage_tenant_order", "crm_lead_stage", ["tenant_id", "sort_order"], unique=False)

    op.create_table(
        "crm_lead_stage_field",
        _id(),
        _tenant(),
        sa.Column("stage_id", sa.Uuid(), sa.ForeignKey("crm_lead_stage.id", ondelete="CASCADE"), nullable=False),
        sa.Column("field_key", sa.String(length=128), nullable=False),
        sa.Column("field_label", sa.String(length=255), nullable=False),
        sa.Column("field_type", sa.String(length=32), nullable=False),
        sa.Column("field_options", sa.JSON(), nullable=False),
        _flag("is_required", False),
        _flag("is_visible", True),
        sa.Column("sort_order", sa.Integer(), nullable=False),
    )
    op.create_index("ix_crm_lead_stage_field_stage", "crm_lead_stage_field", ["stage_id"], unique=False)

    op.create_table(
        "crm_lead_priority",
        _id(),
        _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("icon", sa.String(length=64), nullable=True),
        sa.Column("score_min", sa.Integer(), nullable=True),
        sa.Column("score_max", sa.Integer(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        _flag("is_default", False),
        _flag("is_active", True),
    )
    op.create_index("ix_crm_lead_priority_tenant_order", "crm_lead_priority", ["tenant_id", "sort_order"], unique=False)

    op.create_table(
        "crm_qualification_framework",
        _id(),
        _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _flag("is_active", True),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_crm_qualification_framework_slug"),
    )

    op.create_table(
        "crm_qualification_field",
        _id(),
        _tenant(),
        sa.Column(
            "framework_id",
            sa.Uuid(),
            sa.ForeignKey("crm_qualification_framework.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("field_key", sa.String(length=128), nullable=False),
        sa.Column("field_label", sa.String(length=255), nullable=False),
        sa.Column("field_type", sa.String(length=32), nullable=False),
        sa.Column("field_options", sa.JSON(), nullable=False),
        sa.Column("score_weight", sa.Integer(), nullable=False),
        _flag("is_required", False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
    )

    op.create_table(
        "crm_lead_routing_rule",
        _id(),
        _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        _flag("is_active", True),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("assignment_type", sa.String(length=32), nullable=False),
        sa.Column("assignment_config", sa.JSON(), nullable=False),
        sa.Column("round_robin_index", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_crm_lead_routing_rule_tenant_priority",
        "crm_lead_routing_rule",
        ["tenant_id", "priority"],
        unique=False,
    )

    op.create_table(
        "crm_team_member",
        _id(),
        _tenant(),
        sa.Column("team_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        _timestamp("joined_at"),
        sa.UniqueConstraint("tenant_id", "team_id", "user_id", name="uq_crm_team_member"),
    )
    op.create_index("ix_crm_team_member_team", "crm_team_member", ["tenant_id", "team_id"], unique=False)

    op.create_table(
        "crm_disqualification_reason",
        _id(),
        _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        _flag("is_active", True),
    )

    op.create_table(
        "crm_scoring_template",
        _id(),
        _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("max_score", sa.Integer(), nullable=False),
        _flag("is_default", False),
        _flag("is_active", True),
    )

    op.create_table(
        "crm_scoring_rule",
        _id(),
        _tenant(),
        sa.Column(
            "template_id",
            sa.Uuid(),
            sa.ForeignKey("crm_scoring_template.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("field_key", sa.String(length=128), nullable=False),
        sa.Column("operator", sa.String(length=32), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("score_delta", sa.Integer(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        _flag("is_active", True),
    )
    op.create_index("ix_crm_scoring_rule_template", "crm_scoring_rule", ["template_id", "sort_order"], unique=False)

    op.create_table(
        "crm_lead",
        _id(),
        _tenant(),
        *_person_columns(),
        sa.Column("source_details", sa.JSON(), nullable=False),
        sa.Column("updated_by", sa.String(length=128), nullable=True),
        sa.Column("stage_id", sa.Uuid(), sa.ForeignKey("crm_lead_stage.id", ondelete="SET NULL"), nullable=True),
        _timestamp("stage_entered_at", nullable=True),
        sa.Column("priority_id", sa.Uuid(), sa.ForeignKey("crm_lead_priority.id", ondelete="SET NULL"), nullable=True),
        sa.Column("stage_history", sa.JSON(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("score_breakdown", sa.JSON(), nullable=False),
        sa.Column(
            "qualification_framework_id",
            sa.Uuid(),
            sa.ForeignKey("crm_qualification_framework.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("qualification", sa.JSON(), nullable=False),
        _timestamp("converted_at", nullable=True),
        sa.Column("converted_by", sa.String(length=128), nullable=True),
        sa.Column("converted_contact_id", sa.Uuid(), nullable=True),
        sa.Column("converted_account_id", sa.Uuid(), nullable=True),
        sa.Column("converted_opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("conversion_notes", sa.Text(), nullable=True),
        _timestamp("disqualified_at", nullable=True),
        sa.Column("disqualified_by", sa.String(length=128), nullable=True),
        sa.Column(
            "disqualification_reason_id",
            sa.Uuid(),
            sa.ForeignKey("crm_disqualification_reason.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("disqualification_notes", sa.Text(), nullable=True),
        _timestamp("last_activity_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_crm_lead_tenant_stage", "crm_lead", ["tenant_id", "stage_id", "deleted_at"], unique=False)
    op.create_index("ix_crm_lead_tenant_owner", "crm_lead", ["tenant_id", "owner_id"], unique=False)
    op.create_index("ix_crm_lead_tenant_email", "crm_lead", ["tenant_id", "email"], unique=False)
    op.create_index("ix_crm_lead_tenant_phone", "crm_lead", ["tenant_id", "phone"], unique=False)

    op.create_table(
        "crm_contact",
        _id(),
        _tenant(),
        *_person_columns(),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
    )
    op.create_index("ix_crm_contact_tenant_email", "crm_contact", ["tenant_id", "email"], unique=False)
    op.create_index("ix_crm_contact_tenant_phone", "crm_contact", ["tenant_id", "phone"], unique=False)

    op.create_table(
        "crm_account",
        _id(),
        _tenant(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
    )

    op.create_table(
        "crm_contact_account",
        _id(),
        _tenant(),
        sa.Column("contact_id", sa.Uuid(), sa.ForeignKey("crm_contact.id", ondelete="CASCADE"), nullable=False),
        sa.Column("account_id", sa.Uuid(), sa.ForeignKey("crm_account.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=128), nullable=True),
        _flag("is_primary", False),
        _timestamp("created_at"),
        sa.UniqueConstraint("contact_id", "account_id", name="uq_crm_contact_account_pair"),
    )

    op.create_table(
        "crm_opportunity",
        _id(),
        _tenant(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=True),
        sa.Column("primary_contact_id", sa.Uuid(), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("pipeline_id", sa.String(length=64), nullable=True),
        sa.Column("stage_id", sa.String(length=64), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("close_date", sa.Date(), nullable=True),
        sa.Column("lead_source", sa.String(length=64), nullable=True),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
    )

    op.create_table(
        "crm_activity",
        _id(),
        _tenant(),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("performed_by", sa.String(length=128), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_crm_activity_entity", "crm_activity", ["tenant_id", "entity_type", "entity_id"], unique=False)

    op.create_table(
        "crm_note",
        _id(),
        _tenant(),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _flag("is_pinned", False),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        _timestamp("created_at"),
        _timestamp("deleted_at", nullable=True),
    )
    op.create_index("ix_crm_note_entity", "crm_note", ["tenant_id", "entity_type", "entity_id"], unique=False)

    op.create_table(
        "crm_document",
        _id(),
        _tenant(),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("uploaded_by", sa.String(length=128), nullable=False),
        _timestamp("created_at"),
        _timestamp("deleted_at", nullable=True),
    )
    op.create_index("ix_crm_document_entity", "crm_document", ["tenant_id", "entity_type", "entity_id"], unique=False)

    op.create_table(
        "crm_record_team_role",
        _id(),
        _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        _flag("is_active", True),
    )

    op.create_table(
        "crm_record_team_member",
        _id(),
        _tenant(),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "role_id",
            sa.Uuid(),
            sa.ForeignKey("crm_record_team_role.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("role_name", sa.String(length=128), nullable=True),
        sa.Column("access_level", sa.String(length=16), nullable=False),
        sa.Column("added_by", sa.String(length=128), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("tenant_id", "entity_type", "entity_id", "user_id", name="uq_crm_record_team_member"),
    )
    op.create_index(
        "ix_crm_record_team_member_entity",
        "crm_record_team_member",
        ["tenant_id", "entity_type", "entity_id"],
        unique=False,
    )

    op.create_table(
        "crm_idempotency_key",
        _id(),
        _tenant(),
        sa.Column("endpoint", sa.String(length=255), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint("tenant_id", "endpoint", "key", name="uq_crm_idempotency_tenant_endpoint_key"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant(),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=128), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("changes", sa.JSON(), nullable=False),
        sa.Column("previous_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        _timestamp("created_at", nullable=True),
    )
    op.create_index("ix_audit_logs_id", "audit_logs", ["id"], unique=False)
    op.create_index("ix_audit_logs_tenant_entity", "audit_logs", ["tenant_id", "entity_type", "entity_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_tenant_entity", table_name="audit_logs")
    op.drop_index("ix_audit_logs_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("crm_idempotency_key")
    op.drop_index("ix_crm_record_team_member_entity", table_name="crm_record_team_member")
    op.drop_table("crm_record_team_member")
    op.drop_table("crm_record_team_role")
    op.drop_index("ix_crm_document_entity", table_name="crm_document")
    op.drop_table("crm_document")
    op.drop_index("ix_crm_note_entity", table_name="crm_note")
    op.drop_table("crm_note")
    op.drop_index("ix_crm_activity_entity", table_name="crm_activity")
    op.drop_table("crm_activity")
    op.drop_table("crm_opportunity")
    op.drop_table("crm_contact_account")
    op.drop_table("crm_account")
    op.drop_index("ix_crm_contact_tenant_phone", table_name="crm_contact")
    op.drop_index("ix_crm_contact_tenant_email", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_index("ix_crm_lead_tenant_phone", table_name="crm_lead")
    op.drop_index("ix_crm_lead_tenant_email", table_name="crm_lead")
    op.drop_index("ix_crm_lead_tenant_owner", table_name="crm_lead")
    op.drop_index("ix_crm_lead_tenant_stage", table_name="crm_lead")
    op.drop_table("crm_lead")
    op.drop_index("ix_crm_scoring_rule_template", table_name="crm_scoring_rule")
    op.drop_table("crm_scoring_rule")
    op.drop_table("crm_scoring_template")
    op.drop_table("crm_disqualification_reason")
    op.drop_index("ix_crm_team_member_team", table_name="crm_team_member")
    op.drop_table("crm_team_member")
    op.drop_index("ix_crm_lead_routing_rule_tenant_priority", table_name="crm_lead_routing_rule")
    op.drop_table("crm_lead_routing_rule")
    op.drop_table("crm_qualification_field")
    op.drop_table("crm_qualification_framework")
    op.drop_index("ix_crm_lead_priority_tenant_order", table_name="crm_lead_priority")
    op.drop_table("crm_lead_priority")
    op.drop_index("ix_crm_lead_stage_field_stage", table_name="crm_lead_stage_field")
    op.drop_table("crm_lead_stage_field")
    op.drop_index("ix_crm_lead_stage_tenant_order", table_name="crm_lead_stage")
    op.drop_table("crm_lead_stage")
    op.drop_table("crm_lead_setting")
    op.drop_table("platform_tenant")
