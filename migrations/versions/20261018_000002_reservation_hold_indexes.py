"""Indexes for reserved-quantity lookups

Revision ID: 20261018_000002
Revises: 20261001_000001
Create Date: 2026-10-18 00:00:02
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

from invoice_sync.db import RESERVATION_HOLD_INDEXES


# revision identifiers, used by Alembic.
revision: str = "20261018_000002"
down_revision: Union[str, Sequence[str], None] = "20261001_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    for statement in RESERVATION_HOLD_INDEXES:
        op.execute(statement)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_stock_movements_reason")
    op.execute("DROP INDEX IF EXISTS ix_reservation_lines_item")
