"""mass_send_throttle

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-20

Weekly mass-send budget and minimum spacing per event and channel.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "mass_send_throttles",
        sa.Column("throttle_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(36), sa.ForeignKey("events.event_id"), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("weekly_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("week_start", sa.Date, nullable=False),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("event_id", "channel", name="uq_mass_send_event_channel"),
    )


def downgrade() -> None:
    op.drop_table("mass_send_throttles")
