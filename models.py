from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class SourceKind(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    monthly = "MONTHLY"
    weekly = "WEEKLY"
    yearly = "YEARLY"
    one_time = "ONE_TIME"


FREQUENCY_ENUM = SAEnum(
    Frequency,
    name="frequency",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class BalanceEntryType(str, Enum):
    manual_update = "MANUAL_UPDATE"
    goal_contribution = "GOAL_CONTRIBUTION"


BALANCE_ENTRY_TYPE_ENUM = SAEnum(
    BalanceEntryType,
    name="balanceentrytype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class RecurringSource(Base, TimestampMixin):
    __tablename__ = "recurring_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    kind: Mapped[SourceKind] = mapped_column(SAEnum(SourceKind), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[Frequency] = mapped_column(
        FREQUENCY_ENUM, nullable=False, default=Frequency.monthly
    )
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    entries: Mapped[list["LedgerEntry"]] = relationship(
        "LedgerEntry",
        back_populates="source",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LedgerEntry.month",
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_source_amount_positive"),
        Index("ix_sources_user_kind_active", "user_id", "kind", "is_active"),
    )


class LedgerEntry(Base, TimestampMixin):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_sources.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    source: Mapped["RecurringSource"] = relationship(
        "RecurringSource", back_populates="entries"
    )

    __table_args__ = (
        UniqueConstraint("source_id", "month", name="uq_ledger_source_month"),
        CheckConstraint("amount_cents >= 0", name="ck_ledger_amount_positive"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    starting_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    # Display cache only; reconciled_balance() is authoritative.
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    balance_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    target_date: Mapped[Optional[date]] = mapped_column(Date)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    contributions: Mapped[list["GoalContribution"]] = relationship(
        "GoalContribution",
        back_populates="goal",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="GoalContribution.month.desc()",
    )

    __table_args__ = (
        CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
        CheckConstraint("current_amount_cents >= 0", name="ck_goal_current_positive"),
        Index("ix_goals_user_priority", "user_id", "priority"),
    )


class GoalContribution(Base):
    __tablename__ = "goal_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    goal_id: Mapped[int] = mapped_column(
        ForeignKey("goals.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    # Cached balance before and after; reversal undoes exactly this shift.
    previous_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    goal: Mapped["Goal"] = relationship("Goal", back_populates="contributions")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_contribution_amount_positive"),
        Index("ix_contributions_goal_month", "goal_id", "month"),
    )


class BalanceEntry(Base):
    """Append-only audit row; never updated or deleted."""

    __tablename__ = "balance_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    change_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[BalanceEntryType] = mapped_column(
        BALANCE_ENTRY_TYPE_ENUM, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_balance_entries_user_at", "user_id", "created_at"),)
