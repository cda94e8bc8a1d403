"""webhook retry queue

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "webhook_retry_queue",
        sa.Column(
            "event_id",
            sa.String(length=255),
            sa.ForeignKey("webhook_events.id"),
            primary_key=True,
        ),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index(
        "ix_webhook_retry_queue_retry_at",
        "webhook_retry_queue",
        ["retry_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_webhook_retry_queue_retry_at", table_name="webhook_retry_queue")
    op.drop_table("webhook_retry_queue")
