"""ledger schema: sources, entries, accounts, goals

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "recurring_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "kind", sa.Enum("income", "expense", name="sourcekind"), nullable=False
        ),
        sa.Column("category", sa.String(length=100)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("MONTHLY", "WEEKLY", "YEARLY", "ONE_TIME", name="frequency"),
            nullable=False,
            server_default="MONTHLY",
        ),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_source_amount_positive"),
    )
    op.create_index(
        "ix_sources_user_kind_active",
        "recurring_sources",
        ["user_id", "kind", "is_active"],
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "source_id",
            sa.Integer(),
            sa.ForeignKey("recurring_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("source_id", "month", name="uq_ledger_source_month"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_ledger_amount_positive"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("starting_balance_cents", sa.Integer()),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("balance_updated_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=100)),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("target_date", sa.Date()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "is_completed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
        sa.CheckConstraint(
            "current_amount_cents >= 0", name="ck_goal_current_positive"
        ),
    )
    op.create_index("ix_goals_user_priority", "goals", ["user_id", "priority"])

    op.create_table(
        "goal_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "goal_id",
            sa.Integer(),
            sa.ForeignKey("goals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("previous_balance_cents", sa.Integer(), nullable=False),
        sa.Column("balance_after_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_contribution_amount_positive"
        ),
    )
    op.create_index(
        "ix_contributions_goal_month", "goal_contributions", ["goal_id", "month"]
    )

    op.create_table(
        "balance_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("previous_amount_cents", sa.Integer(), nullable=False),
        sa.Column("change_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "entry_type",
            sa.Enum("MANUAL_UPDATE", "GOAL_CONTRIBUTION", name="balanceentrytype"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_balance_entries_user_at", "balance_entries", ["user_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_balance_entries_user_at", table_name="balance_entries")
    op.drop_table("balance_entries")
    op.drop_index("ix_contributions_goal_month", table_name="goal_contributions")
    op.drop_table("goal_contributions")
    op.drop_index("ix_goals_user_priority", table_name="goals")
    op.drop_table("goals")
    op.drop_table("accounts")
    op.drop_table("ledger_entries")
    op.drop_index("ix_sources_user_kind_active", table_name="recurring_sources")
    op.drop_table("recurring_sources")
