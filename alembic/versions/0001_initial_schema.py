"""initial schema: tenants, users, households, tax returns, e-file queue, sms, notifications

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _money(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=True, server_default="0")


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now())


def upgrade() -> None:
    # =========================================================
    # 1. Tenants, users, households
    # =========================================================
    op.create_table(
        "tenants",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default="true"),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column("role", sa.String(20), nullable=True, server_default="taxpayer"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default="true"),
        _created_at(),
    )

    op.create_table(
        "households",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("county", sa.String(50), nullable=True),
        sa.Column("household_size", sa.Integer(), nullable=True, server_default="1"),
        _money("monthly_income"),
        sa.Column("members", JSONB(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )

    # =========================================================
    # 2. Federal returns (Form 1040) with MeF queue state
    # =========================================================
    op.create_table(
        "federal_tax_returns",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("household_id", sa.Integer(), sa.ForeignKey("households.id", ondelete="SET NULL"), nullable=True),
        sa.Column("tax_year", sa.Integer(), nullable=False),
        sa.Column("filing_status", sa.String(40), nullable=True),
        sa.Column("form_1040_data", JSONB(), nullable=True),
        _money("adjusted_gross_income"),
        _money("taxable_income"),
        _money("total_tax"),
        _money("refund_amount"),
        _money("amount_owed"),
        _money("federal_withholding"),
        sa.Column("validation_status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("validation_errors", JSONB(), nullable=True),
        _ts("validated_at"),
        sa.Column("document_generated", sa.Boolean(), nullable=True, server_default="false"),
        sa.Column("document_content", sa.Text(), nullable=True),
        sa.Column("document_hash", sa.String(64), nullable=True),
        _ts("document_generated_at"),
        sa.Column("queue_status", sa.String(20), nullable=True, index=True),
        sa.Column("submission_priority", sa.Integer(), nullable=True, server_default="2"),
        _ts("queued_at"),
        _ts("next_retry_at"),
        sa.Column("submission_attempts", sa.Integer(), nullable=True, server_default="0"),
        _ts("last_submission_at"),
        sa.Column("is_amended_return", sa.Boolean(), nullable=True, server_default="false"),
        sa.Column("dead_lettered", sa.Boolean(), nullable=True, server_default="false"),
        sa.Column("dead_letter_reason", sa.Text(), nullable=True),
        sa.Column("last_error_type", sa.String(50), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        _ts("last_error_at"),
        sa.Column("batch_id", sa.String(64), nullable=True),
        sa.Column("efile_status", sa.String(20), nullable=True, server_default="draft"),
        _ts("transmitted_at"),
        sa.Column("mef_transmission_id", sa.String(100), nullable=True),
        sa.Column("mef_submission_id", sa.String(100), nullable=True),
        sa.Column("acknowledgment_data", JSONB(), nullable=True),
        _ts("acknowledgment_received_at"),
        _ts("accepted_at"),
        sa.Column("dcn", sa.String(40), nullable=True),
        _ts("rejected_at"),
        sa.Column("rejection_code", sa.String(40), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejection_details", JSONB(), nullable=True),
        sa.Column("notify_on_status_change", sa.Boolean(), nullable=True, server_default="true"),
        _created_at(),
        _updated_at(),
    )
    op.create_index(
        "ix_federal_queue_pick", "federal_tax_returns", ["queue_status", "submission_priority", "queued_at"]
    )

    # =========================================================
    # 3. Maryland returns (Form 502) with iFile queue state
    # =========================================================
    op.create_table(
        "maryland_tax_returns",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column(
            "federal_return_id",
            sa.Integer(),
            sa.ForeignKey("federal_tax_returns.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("tax_year", sa.Integer(), nullable=False),
        sa.Column("filing_status", sa.String(40), nullable=True),
        sa.Column("county", sa.String(50), nullable=True),
        sa.Column("maryland_resident", sa.Boolean(), nullable=True, server_default="true"),
        sa.Column("state_of_residence", sa.String(2), nullable=True, server_default="MD"),
        _money("maryland_taxable_income"),
        _money("county_tax"),
        _money("pension_income"),
        _money("maryland_eitc"),
        _money("poverty_level_credit"),
        _money("property_tax_credit"),
        sa.Column("preparer_name", sa.String(255), nullable=True),
        sa.Column("preparer_ptin", sa.String(20), nullable=True),
        sa.Column("preparer_ein", sa.String(20), nullable=True),
        sa.Column("validation_status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("validation_errors", JSONB(), nullable=True),
        sa.Column("validation_warnings", JSONB(), nullable=True),
        _ts("validated_at"),
        sa.Column("queue_status", sa.String(20), nullable=True, index=True),
        sa.Column("priority", sa.Integer(), nullable=True, server_default="3"),
        _ts("queued_at"),
        sa.Column("attempts", sa.Integer(), nullable=True, server_default="0"),
        _ts("next_retry_at"),
        _ts("last_processed_at"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("efile_status", sa.String(20), nullable=True, server_default="draft"),
        sa.Column("submission_status", sa.String(20), nullable=True),
        sa.Column("confirmation_number", sa.String(40), nullable=True),
        sa.Column("ifile_submission_id", sa.String(100), nullable=True),
        _ts("submitted_at"),
        _ts("accepted_at"),
        _ts("rejected_at"),
        _ts("failed_at"),
        sa.Column("rejection_reasons", JSONB(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("acknowledgment_data", JSONB(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_maryland_queue_pick", "maryland_tax_returns", ["queue_status", "priority", "queued_at"])

    # =========================================================
    # 4. E-file audit log and queue health
    # =========================================================
    op.create_table(
        "efile_submission_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("return_type", sa.String(20), nullable=False),
        sa.Column("federal_return_id", sa.Integer(), nullable=True, index=True),
        sa.Column("maryland_return_id", sa.Integer(), nullable=True, index=True),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("details", JSONB(), nullable=True),
        sa.Column("transmission_id", sa.String(100), nullable=True),
        sa.Column("submission_id", sa.String(100), nullable=True),
        sa.Column("response_code", sa.String(40), nullable=True),
        sa.Column("error_type", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("is_mock", sa.Boolean(), nullable=True, server_default="true"),
        sa.Column("circuit_breaker_status", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now(), index=True),
    )

    op.create_table(
        "efile_queue_metadata",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("queue_name", sa.String(50), nullable=False, unique=True),
        sa.Column("active_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("pending_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("dead_lettered_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("success_rate", sa.Float(), nullable=True, server_default="0"),
        sa.Column("avg_processing_seconds", sa.Float(), nullable=True, server_default="0"),
        _ts("last_health_check"),
        _updated_at(),
    )

    # =========================================================
    # 5. Notifications and SMS
    # =========================================================
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(30), nullable=True, server_default="info"),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=True, server_default="false"),
        _created_at(),
    )

    op.create_table(
        "sms_tenant_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("phone_number", sa.String(20), nullable=False, unique=True),
        sa.Column("twilio_account_sid", sa.String(64), nullable=True),
        sa.Column("twilio_auth_token_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default="true"),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "sms_conversations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("phone_hash", sa.String(64), nullable=False, index=True),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("state", sa.String(20), nullable=True, server_default="active"),
        sa.Column("context", JSONB(), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=True, server_default="0"),
        _ts("last_message_at"),
        _created_at(),
    )

    op.create_table(
        "sms_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("sms_conversations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("twilio_sid", sa.String(64), nullable=True, index=True),
        sa.Column("status", sa.String(20), nullable=True, server_default="received"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table("sms_messages")
    op.drop_table("sms_conversations")
    op.drop_table("sms_tenant_configs")
    op.drop_table("notifications")
    op.drop_table("efile_queue_metadata")
    op.drop_table("efile_submission_logs")
    op.drop_index("ix_maryland_queue_pick", table_name="maryland_tax_returns")
    op.drop_table("maryland_tax_returns")
    op.drop_index("ix_federal_queue_pick", table_name="federal_tax_returns")
    op.drop_table("federal_tax_returns")
    op.drop_table("households")
    op.drop_table("users")
    op.drop_table("tenants")
