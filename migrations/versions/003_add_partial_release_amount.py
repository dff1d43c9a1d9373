"""Add jobs.partial_release_amount.

Revision ID: 003
Revises: 002
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("jobs", sa.Column("partial_release_amount", sa.Numeric(12, 2), nullable=True))


def downgrade() -> None:
    op.drop_column("jobs", "partial_release_amount")
