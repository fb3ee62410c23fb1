"""Add rescheduling_info to appointments.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def upgrade() -> None:
    op.add_column(
        "appointments",
        sa.Column(
            "rescheduling_info",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=True,
            comment="Original, previous and new dates of the latest reschedule",
        ),
    )


def downgrade() -> None:
    op.drop_column("appointments", "rescheduling_info")
