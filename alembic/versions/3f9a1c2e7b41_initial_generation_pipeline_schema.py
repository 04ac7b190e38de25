"""initial_generation_pipeline_schema

Revision ID: 3f9a1c2e7b41
Revises:
Create Date: 2026-10-16 09:12:44.118305

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2e7b41"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy Enum columns store member names
job_type = sa.Enum("GENERATION", "VARIATION", "UPSCALE", name="jobtype")
job_status = sa.Enum("QUEUED", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED", name="jobstatus")
mockup_status = sa.Enum(
    "PENDING", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED", name="mockupstatus"
)
mockup_quality = sa.Enum("DRAFT", "STANDARD", "PREMIUM", "ULTRA", name="mockupquality")
billing_event_type = sa.Enum(
    "CREDIT_PURCHASE",
    "PAYMENT_FAILED",
    "PAYMENT_REFUNDED",
    "GENERATION_RESERVE",
    "GENERATION_REFUND",
    name="billingeventtype",
)
webhook_event_kind = sa.Enum("PAYMENT", "PAYMENT_FAILED", "REFUND", name="webhookeventkind")


def upgrade() -> None:
    """Create users, mockups, generation_jobs, billing_events and processed_webhook_events."""
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("external_user_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("subscription_tier", sa.String(length=50), nullable=False),
        sa.Column("credits_remaining", sa.Integer(), nullable=False),
        sa.Column("lifetime_credits_purchased", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_users_external_user_id"), "users", ["external_user_id"], unique=True
    )

    op.create_table(
        "mockups",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("prompt", sa.String(), nullable=False),
        sa.Column("mockup_type", sa.String(length=100), nullable=False),
        sa.Column("quality", mockup_quality, nullable=False),
        sa.Column("source_image_url", sa.String(), nullable=True),
        sa.Column("status", mockup_status, nullable=False),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("error", sa.String(length=1000), nullable=True),
        sa.Column("generation_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_mockups_user_id"), "mockups", ["user_id"], unique=False)
    op.create_index(op.f("ix_mockups_status"), "mockups", ["status"], unique=False)

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("mockup_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("job_type", job_type, nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("queued_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("estimated_credits", sa.Integer(), nullable=False),
        sa.Column("actual_credits", sa.Integer(), nullable=True),
        sa.Column("error", sa.String(length=1000), nullable=True),
        sa.Column("replicate_id", sa.String(length=255), nullable=True),
        sa.Column("params", sa.JSON(), nullable=True),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_generation_jobs_attempts"),
        sa.ForeignKeyConstraint(["mockup_id"], ["mockups.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_generation_jobs_mockup_id"), "generation_jobs", ["mockup_id"], unique=False
    )
    op.create_index(
        op.f("ix_generation_jobs_user_id"), "generation_jobs", ["user_id"], unique=False
    )
    op.create_index(op.f("ix_generation_jobs_status"), "generation_jobs", ["status"], unique=False)
    op.create_index(
        op.f("ix_generation_jobs_priority"), "generation_jobs", ["priority"], unique=False
    )
    op.create_index(
        op.f("ix_generation_jobs_queued_at"), "generation_jobs", ["queued_at"], unique=False
    )
    op.create_index(
        op.f("ix_generation_jobs_next_retry_at"),
        "generation_jobs",
        ["next_retry_at"],
        unique=False,
    )
    # Dispatch query: queued jobs ordered by priority, then age
    op.create_index(
        "ix_generation_jobs_dispatch",
        "generation_jobs",
        ["status", "priority", "queued_at"],
        unique=False,
    )

    op.create_table(
        "billing_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", billing_event_type, nullable=False),
        sa.Column("credits_delta", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(length=10), nullable=True),
        sa.Column("payment_id", sa.String(length=255), nullable=True),
        sa.Column("refund_id", sa.String(length=255), nullable=True),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_billing_events_user_id"), "billing_events", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_billing_events_event_type"), "billing_events", ["event_type"], unique=False
    )
    op.create_index(
        op.f("ix_billing_events_payment_id"), "billing_events", ["payment_id"], unique=False
    )
    op.create_index(op.f("ix_billing_events_job_id"), "billing_events", ["job_id"], unique=False)

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("event_kind", webhook_event_kind, nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_kind", "external_id", name="uq_processed_webhook_events_key"),
    )


def downgrade() -> None:
    """Drop all generation pipeline tables and enum types."""
    op.drop_table("processed_webhook_events")
    op.drop_index(op.f("ix_billing_events_job_id"), table_name="billing_events")
    op.drop_index(op.f("ix_billing_events_payment_id"), table_name="billing_events")
    op.drop_index(op.f("ix_billing_events_event_type"), table_name="billing_events")
    op.drop_index(op.f("ix_billing_events_user_id"), table_name="billing_events")
    op.drop_table("billing_events")
    op.drop_index("ix_generation_jobs_dispatch", table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_next_retry_at"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_queued_at"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_priority"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_status"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_user_id"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_mockup_id"), table_name="generation_jobs")
    op.drop_table("generation_jobs")
    op.drop_index(op.f("ix_mockups_status"), table_name="mockups")
    op.drop_index(op.f("ix_mockups_user_id"), table_name="mockups")
    op.drop_table("mockups")
    op.drop_index(op.f("ix_users_external_user_id"), table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in (
        webhook_event_kind,
        billing_event_type,
        job_status,
        job_type,
        mockup_quality,
        mockup_status,
    ):
        enum_type.drop(bind, checkfirst=True)
