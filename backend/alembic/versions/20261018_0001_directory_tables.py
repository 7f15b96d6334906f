"""Create users, groups, group member and contribution tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("birthday", sa.Date(), nullable=True),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_7_days_before", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_1_day_before", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_same_day", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_reminders_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_overdue_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_birthday_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "groups",
        sa.Column("group_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("group_type", sa.String(length=32), nullable=False),
        sa.Column("contribution_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("subscription_platform", sa.String(length=128), nullable=True),
        sa.Column("subscription_frequency", sa.String(length=16), nullable=True),
        sa.Column("subscription_deadline_day", sa.Integer(), nullable=True),
        sa.Column("subscription_deadline_month", sa.Integer(), nullable=True),
        sa.Column("deadline", sa.Date(), nullable=True),
        sa.PrimaryKeyConstraint("group_id"),
    )

    op.create_table(
        "group_members",
        sa.Column("group_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("joined_at", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.PrimaryKeyConstraint("group_id", "user_id"),
    )
    op.create_index("ix_group_members_user_id", "group_members", ["user_id"], unique=False)

    op.create_table(
        "contributions",
        sa.Column("contribution_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("group_id", sa.String(length=64), nullable=False),
        sa.Column("contributor_id", sa.String(length=64), nullable=False),
        sa.Column("obligee_id", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("period_key", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("contribution_date", sa.Date(), nullable=True),
        sa.PrimaryKeyConstraint("contribution_id"),
        sa.UniqueConstraint("group_id", "contributor_id", "obligee_id", "period_key", name="uq_contributions_obligation"),
    )
    op.create_index("ix_contributions_group_id", "contributions", ["group_id"], unique=False)
    op.create_index("ix_contributions_contributor_id", "contributions", ["contributor_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_contributions_contributor_id", table_name="contributions")
    op.drop_index("ix_contributions_group_id", table_name="contributions")
    op.drop_table("contributions")

    op.drop_index("ix_group_members_user_id", table_name="group_members")
    op.drop_table("group_members")

    op.drop_table("groups")
    op.drop_table("users")
