"""Create jobs, quotes, payments and transactions tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=True),
        sa.Column("invited_provider_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("category", sa.String(64), nullable=False, server_default="general"),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("budget", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending_validation", "open", "assigned", "in_progress", "completed",
                "disputed", "rejected", "refunded", "expired",
                name="jobstatus",
            ),
            nullable=False,
            server_default="pending_validation",
        ),
        sa.Column(
            "escrow_status",
            sa.Enum("not_funded", "funded", "released", "refunded", name="escrowstatus"),
            nullable=False,
            server_default="not_funded",
        ),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("schedule_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_jobs_client_id", "jobs", ["client_id"])
    op.create_index("ix_jobs_provider_id", "jobs", ["provider_id"])
    op.create_index("ix_jobs_status_escrow", "jobs", ["status", "escrow_status"])

    op.create_table(
        "quotes",
        sa.Column("quote_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=False),
        sa.Column("proposed_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("timeline", sa.String(128), nullable=False, server_default=""),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "status",
            sa.Enum("pending", "accepted", "rejected", name="quotestatus"),
            nullable=False,
            server_default="pending",
        ),
        *_timestamps(),
    )
    op.create_index("ix_quotes_job_id", "quotes", ["job_id"])
    op.create_index("ix_quotes_provider_id", "quotes", ["provider_id"])

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=True),
        sa.Column("session_id", sa.String(128), nullable=False, unique=True),
        sa.Column("checkout_url", sa.String(2048), nullable=True),
        sa.Column("external_payment_id", sa.String(128), nullable=True),
        sa.Column("refund_id", sa.String(128), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="PHP"),
        sa.Column(
            "status",
            sa.Enum("awaiting_payment", "paid", "refunded", name="paymentstatus"),
            nullable=False,
            server_default="awaiting_payment",
        ),
        sa.Column("payment_method", sa.String(32), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payments_job_id", "payments", ["job_id"])

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"),
            nullable=False, unique=True,
        ),
        sa.Column("payer_id", sa.Uuid(), nullable=False),
        sa.Column("payee_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission", sa.Numeric(12, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "refunded", name="transactionstatus"),
            nullable=False,
            server_default="pending",
        ),
        *_timestamps(),
    )
    op.create_index("ix_transactions_payee_id", "transactions", ["payee_id"])


def downgrade() -> None:
    op.drop_table("transactions")
    op.drop_table("payments")
    op.drop_table("quotes")
    op.drop_table("jobs")
    op.execute("DROP TYPE IF EXISTS transactionstatus")
    op.execute("DROP TYPE IF EXISTS paymentstatus")
    op.execute("DROP TYPE IF EXISTS quotestatus")
    op.execute("DROP TYPE IF EXISTS escrowstatus")
    op.execute("DROP TYPE IF EXISTS jobstatus")
