"""create_generation_and_credit_tables

Revision ID: 3f9a1c2d7b84
Revises:
Create Date: 2026-10-18 09:12:41.318207

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7b84"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

GENERATION_STATUSES = (
    "draft",
    "uploading_photos",
    "removing_background",
    "submitted",
    "polling",
    "completed",
    "failed",
)


def upgrade() -> None:
    """Create generation_requests, credit_accounts and credit_transactions."""
    op.create_table(
        "generation_requests",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*GENERATION_STATUSES, name="generationstatus", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column("photo_urls", sa.JSON(), nullable=False),
        sa.Column("processed_photo_urls", sa.JSON(), nullable=False),
        sa.Column("options", sa.JSON(), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=True),
        sa.Column("external_job_id", sa.String(length=255), nullable=True),
        sa.Column("provider_stage", sa.String(length=100), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("model_url", sa.String(), nullable=True),
        sa.Column("error_reason", sa.String(length=1000), nullable=True),
        sa.Column("credit_reserved", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_requests_owner_id", "generation_requests", ["owner_id"], unique=False
    )
    op.create_index(
        "ix_generation_requests_status", "generation_requests", ["status"], unique=False
    )
    op.create_index(
        "ix_generation_requests_external_job_id",
        "generation_requests",
        ["external_job_id"],
        unique=True,
    )

    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("total_generated", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("generation_request_id", sa.Uuid(), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_credit_transactions_user_id", "credit_transactions", ["user_id"], unique=False
    )
    op.create_index(
        "ix_credit_transactions_generation_request_id",
        "credit_transactions",
        ["generation_request_id"],
        unique=False,
    )


def downgrade() -> None:
    """Drop all forge3d tables."""
    op.drop_index("ix_credit_transactions_generation_request_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_accounts")
    op.drop_index("ix_generation_requests_external_job_id", table_name="generation_requests")
    op.drop_index("ix_generation_requests_status", table_name="generation_requests")
    op.drop_index("ix_generation_requests_owner_id", table_name="generation_requests")
    op.drop_table("generation_requests")
