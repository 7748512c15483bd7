"""initial reviewflow schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if _table_exists(inspector, "users"):
        return

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("username", sa.String(length=50), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ux_users_email_lower", "users", [sa.text("lower(email)")], unique=True)

    op.create_table(
        "businesses",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_user_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("website", sa.String(length=255), nullable=True),
        sa.Column("public_rating_threshold", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("google_review_short_url", sa.String(length=500), nullable=True),
        sa.Column("google_place_id", sa.String(length=255), nullable=True),
        sa.Column("facebook_page_url", sa.String(length=500), nullable=True),
        sa.Column("yelp_page_url", sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "public_rating_threshold BETWEEN 1 AND 5",
            name="ck_businesses_public_rating_threshold",
        ),
        sa.ForeignKeyConstraint(["owner_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_businesses_owner_user_id", "businesses", ["owner_user_id"], unique=True)

    op.create_table(
        "business_memberships",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="staff"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.CheckConstraint("role IN ('owner', 'admin', 'staff')", name="ck_business_memberships_role"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_business_memberships_business_id", "business_memberships", ["business_id"])
    op.create_index("ix_business_memberships_user_id", "business_memberships", ["user_id"])
    op.create_index(
        "ux_business_memberships_business_user",
        "business_memberships",
        ["business_id", "user_id"],
        unique=True,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("actor_user_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("target_type", sa.String(length=40), nullable=False),
        sa.Column("target_id", sa.String(length=36), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_business_id", "audit_logs", ["business_id"])
    op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])
    op.create_index("ix_audit_logs_request_id", "audit_logs", ["request_id"])
    op.create_index("ix_audit_logs_target", "audit_logs", ["target_type", "target_id"])
    op.create_index("ix_audit_logs_business_timeline", "audit_logs", ["business_id", "created_at"])
    op.create_index("ix_audit_logs_business_action", "audit_logs", ["business_id", "action", "created_at"])

    op.create_table(
        "customers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("service_type", sa.String(length=120), nullable=True),
        sa.Column("service_date", sa.Date(), nullable=True),
        sa.Column("note", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customers_business_id", "customers", ["business_id"])
    op.create_index("ix_customers_phone", "customers", ["phone"])
    op.create_index("ix_customers_email", "customers", ["email"])
    op.create_index(
        "ix_customers_business_name_created_at",
        "customers",
        ["business_id", "name", "created_at"],
    )
    op.create_index("ix_customers_business_email", "customers", ["business_id", "email"])
    op.create_index("ix_customers_business_phone", "customers", ["business_id", "phone"])

    op.create_table(
        "customer_consents",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("channel", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="subscribed"),
        sa.Column("source", sa.String(length=60), nullable=True),
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("opted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        *_timestamps(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "business_id",
            "customer_id",
            "channel",
            name="uq_customer_consents_business_customer_channel",
        ),
        sa.CheckConstraint("channel IN ('email', 'sms')", name="ck_customer_consents_channel"),
        sa.CheckConstraint("status IN ('subscribed', 'unsubscribed')", name="ck_customer_consents_status"),
    )
    op.create_index("ix_customer_consents_business_id", "customer_consents", ["business_id"])
    op.create_index("ix_customer_consents_customer_id", "customer_consents", ["customer_id"])

    op.create_table(
        "review_requests",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("body", sa.String(length=4000), nullable=False),
        sa.Column("provider", sa.String(length=60), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_code", sa.String(length=60), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("last_provider_event", sa.String(length=40), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_review_requests_business_id", "review_requests", ["business_id"])
    op.create_index("ix_review_requests_customer_id", "review_requests", ["customer_id"])
    op.create_index("ix_review_requests_provider_message_id", "review_requests", ["provider_message_id"])
    op.create_index(
        "ix_review_requests_business_status_created_at",
        "review_requests",
        ["business_id", "status", "created_at"],
    )
    op.create_index("ix_review_requests_business_customer", "review_requests", ["business_id", "customer_id"])

    op.create_table(
        "campaign_sequences",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("default_key", sa.String(length=36), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by_user_id", sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("default_key"),
        sa.UniqueConstraint("business_id", "name", name="uq_campaign_sequences_business_name"),
    )
    op.create_index("ix_campaign_sequences_business_id", "campaign_sequences", ["business_id"])
    op.create_index("ix_campaign_sequences_created_by_user_id", "campaign_sequences", ["created_by_user_id"])
    op.create_index(
        "ix_campaign_sequences_business_active_created_at",
        "campaign_sequences",
        ["business_id", "is_active", "created_at"],
    )

    op.create_table(
        "campaign_steps",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("sequence_id", sa.String(length=36), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("delay_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message_type", sa.String(length=20), nullable=False),
        sa.Column("subject_template", sa.String(length=255), nullable=True),
        sa.Column("body_template", sa.String(length=4000), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("step_number >= 1", name="ck_campaign_steps_step_number_positive"),
        sa.CheckConstraint("delay_hours >= 0", name="ck_campaign_steps_delay_hours_non_negative"),
        sa.ForeignKeyConstraint(["sequence_id"], ["campaign_sequences.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sequence_id", "step_number", name="uq_campaign_steps_sequence_step_number"),
    )
    op.create_index("ix_campaign_steps_sequence_id", "campaign_steps", ["sequence_id"])

    op.create_table(
        "campaign_executions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("review_request_id", sa.String(length=36), nullable=False),
        sa.Column("sequence_id", sa.String(length=36), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_step_fired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stop_reason", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_key", sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["review_request_id"], ["review_requests.id"]),
        sa.ForeignKeyConstraint(["sequence_id"], ["campaign_sequences.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("active_key"),
    )
    op.create_index("ix_campaign_executions_business_id", "campaign_executions", ["business_id"])
    op.create_index("ix_campaign_executions_review_request_id", "campaign_executions", ["review_request_id"])
    op.create_index("ix_campaign_executions_sequence_id", "campaign_executions", ["sequence_id"])
    op.create_index("ix_campaign_executions_status_started_at", "campaign_executions", ["status", "started_at"])
    op.create_index(
        "ix_campaign_executions_business_status_created_at",
        "campaign_executions",
        ["business_id", "status", "created_at"],
    )

    op.create_table(
        "campaign_step_executions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("execution_id", sa.String(length=36), nullable=False),
        sa.Column("step_id", sa.String(length=36), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["execution_id"], ["campaign_executions.id"]),
        sa.ForeignKeyConstraint(["step_id"], ["campaign_steps.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("execution_id", "step_id", name="uq_campaign_step_executions_execution_step"),
    )
    op.create_index("ix_campaign_step_executions_execution_id", "campaign_step_executions", ["execution_id"])
    op.create_index("ix_campaign_step_executions_step_id", "campaign_step_executions", ["step_id"])
    op.create_index(
        "ix_campaign_step_executions_provider_message_id",
        "campaign_step_executions",
        ["provider_message_id"],
    )

    op.create_table(
        "feedback_gate_submissions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("review_request_id", sa.String(length=36), nullable=True),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.String(length=2000), nullable=True),
        sa.Column("decision", sa.String(length=20), nullable=False),
        sa.Column("platform", sa.String(length=30), nullable=True),
        sa.Column("platform_url", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["review_request_id"], ["review_requests.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("customer_id"),
    )
    op.create_index("ix_feedback_gate_submissions_business_id", "feedback_gate_submissions", ["business_id"])
    op.create_index(
        "ix_feedback_gate_submissions_review_request_id",
        "feedback_gate_submissions",
        ["review_request_id"],
    )
    op.create_index(
        "ix_feedback_gate_submissions_business_created_at",
        "feedback_gate_submissions",
        ["business_id", "created_at"],
    )

    op.create_table(
        "private_feedback",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("submission_id", sa.String(length=36), nullable=True),
        sa.Column("comment", sa.String(length=4000), nullable=False),
        sa.Column("contact_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["submission_id"], ["feedback_gate_submissions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_private_feedback_business_id", "private_feedback", ["business_id"])
    op.create_index("ix_private_feedback_customer_id", "private_feedback", ["customer_id"])
    op.create_index("ix_private_feedback_submission_id", "private_feedback", ["submission_id"])


def downgrade() -> None:
    for table_name in (
        "private_feedback",
        "feedback_gate_submissions",
        "campaign_step_executions",
        "campaign_executions",
        "campaign_steps",
        "campaign_sequences",
        "review_requests",
        "customer_consents",
        "customers",
        "audit_logs",
        "business_memberships",
        "businesses",
        "users",
    ):
        op.drop_table(table_name)
