"""Track attendee reminders sent per event."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_event_reminders"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("DROP TABLE IF EXISTS _alembic_tmp_events")
    with op.batch_alter_table("events") as batch_op:
        batch_op.add_column(sa.Column("reminder_24h_sent_at", sa.DateTime(), nullable=True))
        batch_op.add_column(sa.Column("reminder_1h_sent_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("events") as batch_op:
        batch_op.drop_column("reminder_1h_sent_at")
        batch_op.drop_column("reminder_24h_sent_at")
