"""Create reminder run history and delivery log tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reminder_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("as_of", sa.Date(), nullable=False),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column("users_evaluated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("users_notified", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errored_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_reminder_runs_kind", "reminder_runs", ["kind"], unique=False)
    op.create_index("ix_reminder_runs_started_at", "reminder_runs", ["started_at"], unique=False)

    op.create_table(
        "reminder_deliveries",
        sa.Column("delivery_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("horizon", sa.Integer(), nullable=False),
        sa.Column("delivery_day", sa.Date(), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("delivery_id"),
        sa.UniqueConstraint(
            "user_id",
            "kind",
            "horizon",
            "delivery_day",
            "channel",
            "subject",
            name="uq_reminder_deliveries_key",
        ),
    )
    op.create_index("ix_reminder_deliveries_user_id", "reminder_deliveries", ["user_id"], unique=False)
    op.create_index("ix_reminder_deliveries_delivery_day", "reminder_deliveries", ["delivery_day"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_reminder_deliveries_delivery_day", table_name="reminder_deliveries")
    op.drop_index("ix_reminder_deliveries_user_id", table_name="reminder_deliveries")
    op.drop_table("reminder_deliveries")

    op.drop_index("ix_reminder_runs_started_at", table_name="reminder_runs")
    op.drop_index("ix_reminder_runs_kind", table_name="reminder_runs")
    op.drop_table("reminder_runs")
