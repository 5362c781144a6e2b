"""add claimed_at to webhook_events

Revision ID: 2026_10_19_0001
Revises: 2026_10_19_0000
Create Date: 2026-10-19 12:00:00.000000

Records when a delivery last claimed an event so a claim abandoned in
'processing' can be taken over once its lease has passed.
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = "2026_10_19_0000"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Existing rows count as claimed when received
    op.add_column(
        "webhook_events",
        sa.Column(
            "claimed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )
    op.execute("UPDATE webhook_events SET claimed_at = received_at")
    op.create_index(
        "idx_webhook_events_status_claimed", "webhook_events", ["status", "claimed_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_webhook_events_status_claimed", table_name="webhook_events")
    op.drop_column("webhook_events", "claimed_at")
