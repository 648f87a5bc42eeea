"""create_gateway_tables

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-19 10:12:31.405118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b9d2"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("project_id", sa.String(length=255), nullable=True),
        sa.Column("tier", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), server_default="active", nullable=False),
        sa.Column("token_valid", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("error_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("quota_remaining", sa.Float(), nullable=True),
        sa.Column("quota_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quota_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_refresh_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credentials", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(op.f("ix_accounts_email"), "accounts", ["email"], unique=True)

    op.create_table(
        "account_model_quotas",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("model_name", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("remaining_fraction", sa.Float(), server_default="1", nullable=False),
        sa.Column("reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "account_id",
            "model_name",
            name="uq_account_model_quotas_account_model",
        ),
    )
    op.create_index(
        op.f("ix_account_model_quotas_account_id"),
        "account_model_quotas",
        ["account_id"],
        unique=False,
    )

    op.create_table(
        "request_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("model", sa.String(length=255), nullable=True),
        sa.Column("dialect", sa.String(length=16), nullable=True),
        sa.Column("stream", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("account_email", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), server_default="0", nullable=False),
        sa.Column("prompt_tokens", sa.Integer(), server_default="0", nullable=False),
        sa.Column("completion_tokens", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_tokens", sa.Integer(), server_default="0", nullable=False),
        sa.Column("thinking_tokens", sa.Integer(), server_default="0", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(op.f("ix_request_logs_id"), "request_logs", ["id"], unique=False)
    op.create_index(op.f("ix_request_logs_model"), "request_logs", ["model"], unique=False)
    op.create_index(op.f("ix_request_logs_account_email"), "request_logs", ["account_email"], unique=False)
    op.create_index(op.f("ix_request_logs_status"), "request_logs", ["status"], unique=False)
    op.create_index(op.f("ix_request_logs_created_at"), "request_logs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_request_logs_created_at"), table_name="request_logs")
    op.drop_index(op.f("ix_request_logs_status"), table_name="request_logs")
    op.drop_index(op.f("ix_request_logs_account_email"), table_name="request_logs")
    op.drop_index(op.f("ix_request_logs_model"), table_name="request_logs")
    op.drop_index(op.f("ix_request_logs_id"), table_name="request_logs")
    op.drop_table("request_logs")

    op.drop_index(op.f("ix_account_model_quotas_account_id"), table_name="account_model_quotas")
    op.drop_table("account_model_quotas")

    op.drop_index(op.f("ix_accounts_email"), table_name="accounts")
    op.drop_table("accounts")
