from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.orm import Session, selectinload

from config import Settings, get_settings
from errors import (
    InsufficientBalanceError,
    LedgerError,
    NotFoundError,
    SynchronizationError,
    SynchronizationWarning,
    TransactionFailure,
    ValidationError,
)
from models import (
    Account,
    BalanceEntry,
    BalanceEntryType,
    Goal,
    GoalContribution,
    LedgerEntry,
    RecurringSource,
    SourceKind,
)
from recurrence import LedgerEngine, local_today, month_start, monthly_amount_cents
from schemas import (
    BalanceUpdateIn,
    GoalContributionIn,
    GoalIn,
    RecurringSourceIn,
)
from sync import EntrySynchronizer, SourceSnapshot

logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


class RecurringSourceService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.settings = settings or get_settings()

    def get(self, source_id: int) -> RecurringSource:
        source = self.session.get(RecurringSource, source_id)
        if not source or source.user_id != self.user_id:
            raise NotFoundError("Recurring source not found")
        return source

    def list(self, kind: Optional[SourceKind] = None) -> list[RecurringSource]:
        stmt = select(RecurringSource).where(RecurringSource.user_id == self.user_id)
        if kind is not None:
            stmt = stmt.where(RecurringSource.kind == kind)
        stmt = stmt.order_by(RecurringSource.created_at.desc(), RecurringSource.id.desc())
        return self.session.scalars(stmt).all()

    def list_entries(self, source_id: int) -> list[LedgerEntry]:
        source = self.get(source_id)
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.source_id == source.id)
            .order_by(LedgerEntry.month)
        )
        return self.session.scalars(stmt).all()

    def create(
        self, data: RecurringSourceIn, today: Optional[date] = None
    ) -> RecurringSource:
        today = today or local_today()
        anchor = data.anchor_date or today
        _check_window(anchor, data.end_date)
        source = RecurringSource(
            user_id=self.user_id,
            name=data.name,
            kind=data.kind,
            category=data.category,
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            anchor_date=anchor,
            end_date=data.end_date,
            is_active=data.is_active,
        )
        self.session.add(source)
        self.session.flush()
        logger.info(
            f"source_created: source_id={source.id} kind={source.kind.value} "
            f"frequency={source.frequency.value} anchor={anchor.isoformat()}"
        )
        self._run_entry_sync(
            source,
            lambda: LedgerEngine(self.session).generate_for_source(source, today),
        )
        self.session.refresh(source)
        return source

    def update(
        self, source_id: int, data: RecurringSourceIn, today: Optional[date] = None
    ) -> RecurringSource:
        today = today or local_today()
        source = self.get(source_id)
        before = SourceSnapshot.of(source)
        reactivated = data.is_active and not source.is_active
        anchor = data.anchor_date or source.anchor_date
        _check_window(anchor, data.end_date)

        source.name = data.name
        source.kind = data.kind
        source.category = data.category
        source.amount_cents = data.amount_cents
        source.frequency = data.frequency
        source.anchor_date = anchor
        source.end_date = data.end_date
        source.is_active = data.is_active
        self.session.flush()

        def sync() -> None:
            EntrySynchronizer(self.session).synchronize(source, before, today)
            if reactivated:
                LedgerEngine(self.session).generate_for_source(source, today)

        self._run_entry_sync(source, sync)
        self.session.refresh(source)
        return source

    def set_active(
        self, source_id: int, is_active: bool, today: Optional[date] = None
    ) -> RecurringSource:
        source = self.get(source_id)
        reactivated = is_active and not source.is_active
        source.is_active = is_active
        self.session.flush()
        if reactivated:
            self._run_entry_sync(
                source,
                lambda: LedgerEngine(self.session).generate_for_source(source, today),
            )
        else:
            self.session.commit()
        self.session.refresh(source)
        return source

    def delete(self, source_id: int) -> None:
        source = self.get(source_id)
        removed = self.session.execute(
            delete(LedgerEntry)
            .where(LedgerEntry.source_id == source.id)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        self.session.delete(source)
        self.session.commit()
        logger.info(f"source_deleted: source_id={source_id} entries_removed={removed}")

    def generate_missing(
        self, kind: Optional[SourceKind] = None, today: Optional[date] = None
    ) -> dict[str, int]:
        engine = LedgerEngine(self.session)
        counts = {SourceKind.income.value: 0, SourceKind.expense.value: 0}
        for source in self.list(kind):
            if not source.is_active:
                continue
            result = engine.generate_for_source(source, today)
            counts[source.kind.value] += result.created
        self.session.commit()
        counts["total"] = counts[SourceKind.income.value] + counts[SourceKind.expense.value]
        return counts

    def catch_up_all(self, today: Optional[date] = None) -> int:
        created = LedgerEngine(self.session).catch_up_all(today)
        self.session.commit()
        return created

    def monthly_summary(self) -> dict[str, object]:
        income_total = 0
        expense_total = 0
        by_category: dict[str, dict[str, int]] = {
            SourceKind.income.value: {},
            SourceKind.expense.value: {},
        }
        for source in self.list():
            if not source.is_active:
                continue
            monthly = monthly_amount_cents(source.amount_cents, source.frequency)
            bucket = by_category[source.kind.value]
            name = source.category or "Uncategorized"
            bucket[name] = bucket.get(name, 0) + monthly
            if source.kind == SourceKind.income:
                income_total += monthly
            else:
                expense_total += monthly

        def breakdown(items: dict[str, int], total: int) -> list[dict]:
            if total == 0:
                return []
            ordered = sorted(items.items(), key=lambda x: x[1], reverse=True)
            return [
                {"name": name, "amount_cents": amount, "percent": amount / total * 100}
                for name, amount in ordered
            ]

        return {
            "monthly_income_cents": income_total,
            "monthly_expenses_cents": expense_total,
            "net_monthly_cents": income_total - expense_total,
            "income_breakdown": breakdown(
                by_category[SourceKind.income.value], income_total
            ),
            "expense_breakdown": breakdown(
                by_category[SourceKind.expense.value], expense_total
            ),
        }

    def _run_entry_sync(self, source: RecurringSource, action: Callable[[], object]) -> None:
        source_id = source.id
        if self.settings.strict_sync:
            try:
                action()
                self.session.commit()
            except LedgerError:
                self.session.rollback()
                raise
            except Exception as exc:
                self.session.rollback()
                logger.error(f"entry_sync_failed: source_id={source_id} strict=true")
                raise SynchronizationError(
                    "Ledger entries could not be synchronized; edit rolled back"
                ) from exc
            return

        # The source edit is kept even if its entries cannot be synchronized.
        self.session.commit()
        try:
            action()
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.warning(
                f"entry_sync_failed: source_id={source_id} strict=false "
                f"error={type(exc).__name__}",
                exc_info=True,
            )
            warnings.warn(
                f"Ledger entries for source {source_id} are out of sync: {exc}",
                SynchronizationWarning,
                stacklevel=3,
            )


def _check_window(anchor: date, end: Optional[date]) -> None:
    if end is not None and month_start(end) < month_start(anchor):
        raise ValidationError(
            "End date must not be before the anchor month", reason="invalid_end_date"
        )


class BalanceService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def account(self) -> Account:
        account = self.session.scalar(
            select(Account).where(Account.user_id == self.user_id)
        )
        if account is None:
            account = Account(user_id=self.user_id, current_balance_cents=0)
            self.session.add(account)
            self.session.flush()
        return account

    def reconciled_balance(self) -> int:
        """Starting balance plus income minus expenses over active sources.

        Goal contributions are not part of this figure. It is recomputed on
        every call and is the only balance used for authorization.
        """
        starting = self.session.scalar(
            select(Account.starting_balance_cents).where(
                Account.user_id == self.user_id
            )
        )
        stmt = (
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (
                                RecurringSource.kind == SourceKind.income,
                                LedgerEntry.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("income"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                RecurringSource.kind == SourceKind.expense,
                                LedgerEntry.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("expenses"),
            )
            .select_from(LedgerEntry)
            .join(RecurringSource, LedgerEntry.source_id == RecurringSource.id)
            .where(
                RecurringSource.user_id == self.user_id,
                RecurringSource.is_active.is_(True),
            )
        )
        row = self.session.execute(stmt).one()
        return int(starting or 0) + int(row.income) - int(row.expenses)

    def recent_entries(self, limit: int = 10) -> list[BalanceEntry]:
        stmt = (
            select(BalanceEntry)
            .where(BalanceEntry.user_id == self.user_id)
            .order_by(BalanceEntry.created_at.desc(), BalanceEntry.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def overview(self, limit: int = 10) -> dict[str, object]:
        account = self.session.scalar(
            select(Account).where(Account.user_id == self.user_id)
        )
        return {
            "reconciled_balance_cents": self.reconciled_balance(),
            "starting_balance_cents": (
                (account.starting_balance_cents or 0) if account else 0
            ),
            "current_balance_cents": account.current_balance_cents if account else 0,
            "balance_updated_at": account.balance_updated_at if account else None,
            "recent_entries": self.recent_entries(limit),
        }

    def update_starting_balance(self, data: BalanceUpdateIn) -> BalanceEntry:
        if data.starting_balance_cents < 0:
            raise ValidationError(
                "Starting balance cannot be negative", reason="invalid_amount"
            )
        account = self.account()
        previous = account.current_balance_cents
        account.starting_balance_cents = data.starting_balance_cents
        self.session.flush()
        refreshed = self.reconciled_balance()
        account.current_balance_cents = refreshed
        account.balance_updated_at = datetime.utcnow()
        entry = BalanceEntry(
            user_id=self.user_id,
            amount_cents=refreshed,
            previous_amount_cents=previous,
            change_amount_cents=refreshed - previous,
            entry_type=BalanceEntryType.manual_update,
            notes=data.notes,
        )
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        logger.info(
            f"balance_updated: user_id={self.user_id} "
            f"starting={data.starting_balance_cents} cached={refreshed}"
        )
        return entry


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError("Goal not found")
        return goal

    def list(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.priority, Goal.target_date, Goal.id)
        )
        return self.session.scalars(stmt).all()

    def get_detail(self, goal_id: int) -> Goal:
        goal = self.session.scalar(
            select(Goal)
            .options(selectinload(Goal.contributions))
            .where(Goal.id == goal_id, Goal.user_id == self.user_id)
        )
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(
            user_id=self.user_id,
            name=data.name,
            category=data.category,
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=0,
            target_date=data.target_date,
            priority=data.priority,
            is_completed=0 >= data.target_amount_cents,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalIn) -> Goal:
        goal = self.get(goal_id)
        goal.name = data.name
        goal.category = data.category
        goal.target_amount_cents = data.target_amount_cents
        goal.target_date = data.target_date
        goal.priority = data.priority
        goal.is_completed = goal.current_amount_cents >= goal.target_amount_cents
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.execute(
            delete(GoalContribution)
            .where(GoalContribution.goal_id == goal.id)
            .execution_options(synchronize_session="fetch")
        )
        self.session.delete(goal)
        self.session.commit()

    def list_contributions(self, goal_id: int) -> list[GoalContribution]:
        goal = self.get(goal_id)
        stmt = (
            select(GoalContribution)
            .where(GoalContribution.goal_id == goal.id)
            .order_by(GoalContribution.month.desc(), GoalContribution.id.desc())
        )
        return self.session.scalars(stmt).all()


@dataclass
class ContributionWrites:
    contribution: GoalContribution
    goal: Goal
    account: Account
    balance_entry: BalanceEntry


class GoalContributionService:
    """Moves money between the available balance and a goal's committed amount.

    A contribution and its reversal each write the contribution row, the goal
    totals, the cached account balance and one audit entry, and commit them
    together or not at all.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def contribute(
        self, goal_id: int, data: GoalContributionIn, today: Optional[date] = None
    ) -> ContributionWrites:
        today = today or local_today()
        if data.amount_cents <= 0:
            raise ValidationError(
                "Contribution amount must be positive", reason="invalid_amount"
            )
        month = month_start(data.month or today)
        if month > month_start(today):
            raise ValidationError(
                "Contribution month cannot be in the future", reason="future_month"
            )
        goal = self._locked_goal(goal_id)
        available = BalanceService(self.session, self.user_id).reconciled_balance()
        if available < data.amount_cents:
            raise InsufficientBalanceError(data.amount_cents, available)

        try:
            writes = self._apply_contribution(
                goal, data.amount_cents, month, data.notes, available
            )
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.error(
                f"contribution_failed: goal_id={goal_id} amount={data.amount_cents}",
                exc_info=True,
            )
            raise TransactionFailure("Contribution could not be recorded") from exc

        logger.info(
            f"contribution_recorded: goal_id={goal_id} "
            f"contribution_id={writes.contribution.id} amount={data.amount_cents} "
            f"goal_total={writes.goal.current_amount_cents} "
            f"completed={writes.goal.is_completed}"
        )
        return writes

    def reverse(self, goal_id: int, contribution_id: int) -> ContributionWrites:
        contribution = self.session.get(GoalContribution, contribution_id)
        if not contribution or contribution.goal_id != goal_id:
            raise NotFoundError("Contribution not found")
        goal = self._locked_goal(goal_id)
        amount_cents = contribution.amount_cents

        try:
            writes = self._apply_reversal(goal, contribution)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.error(
                f"contribution_reversal_failed: goal_id={goal_id} "
                f"contribution_id={contribution_id}",
                exc_info=True,
            )
            raise TransactionFailure("Contribution could not be reversed") from exc

        logger.info(
            f"contribution_reversed: goal_id={goal_id} "
            f"contribution_id={contribution_id} amount={amount_cents} "
            f"goal_total={writes.goal.current_amount_cents}"
        )
        return writes

    def _locked_goal(self, goal_id: int) -> Goal:
        goal = self.session.scalar(
            select(Goal)
            .where(Goal.id == goal_id, Goal.user_id == self.user_id)
            .with_for_update()
        )
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    def _apply_contribution(
        self,
        goal: Goal,
        amount_cents: int,
        month: date,
        notes: Optional[str],
        available_cents: int,
    ) -> ContributionWrites:
        account = BalanceService(self.session, self.user_id).account()
        cached = available_cents - amount_cents

        contribution = GoalContribution(
            goal_id=goal.id,
            amount_cents=amount_cents,
            month=month,
            notes=notes,
            previous_balance_cents=account.current_balance_cents,
            balance_after_cents=cached,
        )
        self.session.add(contribution)

        goal.current_amount_cents += amount_cents
        goal.is_completed = goal.current_amount_cents >= goal.target_amount_cents

        account.current_balance_cents = cached
        account.balance_updated_at = datetime.utcnow()

        entry = BalanceEntry(
            user_id=self.user_id,
            amount_cents=cached,
            previous_amount_cents=available_cents,
            change_amount_cents=-amount_cents,
            entry_type=BalanceEntryType.goal_contribution,
            notes=notes or f"Contribution to {goal.name}",
        )
        self.session.add(entry)
        self.session.flush()
        return ContributionWrites(contribution, goal, account, entry)

    def _apply_reversal(
        self, goal: Goal, contribution: GoalContribution
    ) -> ContributionWrites:
        amount_cents = contribution.amount_cents
        self.session.delete(contribution)

        goal.current_amount_cents -= amount_cents
        goal.is_completed = goal.current_amount_cents >= goal.target_amount_cents

        account = BalanceService(self.session, self.user_id).account()
        previous = account.current_balance_cents
        shift = contribution.previous_balance_cents - contribution.balance_after_cents
        account.current_balance_cents = previous + shift
        account.balance_updated_at = datetime.utcnow()

        entry = BalanceEntry(
            user_id=self.user_id,
            amount_cents=account.current_balance_cents,
            previous_amount_cents=previous,
            change_amount_cents=shift,
            entry_type=BalanceEntryType.goal_contribution,
            notes=f"Reversed contribution #{contribution.id} to {goal.name}",
        )
        self.session.add(entry)
        self.session.flush()
        return ContributionWrites(contribution, goal, account, entry)
