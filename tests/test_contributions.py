from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    InsufficientBalanceError,
    NotFoundError,
    TransactionFailure,
    ValidationError,
)
from models import BalanceEntry, BalanceEntryType, Goal, GoalContribution, SourceKind
from schemas import BalanceUpdateIn, GoalContributionIn, GoalIn, RecurringSourceIn
from services import (
    BalanceService,
    GoalContributionService,
    GoalService,
    RecurringSourceService,
)

TODAY = date(2025, 6, 15)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _fund(session, amount_cents: int, user_id: int = 1) -> None:
    BalanceService(session, user_id).update_starting_balance(
        BalanceUpdateIn(starting_balance_cents=amount_cents)
    )


def _contributed_total(session, goal_id: int) -> int:
    return session.scalar(
        select(func.coalesce(func.sum(GoalContribution.amount_cents), 0)).where(
            GoalContribution.goal_id == goal_id
        )
    )


def test_contributions_progress_until_target():
    session = make_session()
    _fund(session, 5_000_000)
    goal = GoalService(session).create(
        GoalIn(name="Emergency fund", target_amount_cents=2_500_000)
    )
    contributions = GoalContributionService(session)

    for _ in range(3):
        contributions.contribute(
            goal.id, GoalContributionIn(amount_cents=100_000), today=TODAY
        )
    goal = GoalService(session).get(goal.id)
    assert goal.current_amount_cents == 300_000
    assert goal.is_completed is False

    contributions.contribute(
        goal.id, GoalContributionIn(amount_cents=2_200_000), today=TODAY
    )
    goal = GoalService(session).get(goal.id)
    assert goal.current_amount_cents == 2_500_000
    assert goal.is_completed is True
    assert _contributed_total(session, goal.id) == goal.current_amount_cents


def test_contribution_exceeding_balance_is_rejected():
    session = make_session()
    _fund(session, 500_000)
    goal = GoalService(session).create(GoalIn(name="Laptop", target_amount_cents=900_000))

    with pytest.raises(InsufficientBalanceError) as excinfo:
        GoalContributionService(session).contribute(
            goal.id, GoalContributionIn(amount_cents=550_000), today=TODAY
        )

    assert excinfo.value.shortfall_cents == 50_000
    assert excinfo.value.to_dict()["reason"] == "insufficient_balance"
    assert GoalService(session).get(goal.id).current_amount_cents == 0
    assert session.scalar(select(func.count(GoalContribution.id))) == 0
    entries = session.scalars(select(BalanceEntry)).all()
    assert [e.entry_type for e in entries] == [BalanceEntryType.manual_update]


def test_contribution_writes_cache_and_audit_entry():
    session = make_session()
    _fund(session, 800_000)
    goal = GoalService(session).create(GoalIn(name="Trip", target_amount_cents=300_000))

    writes = GoalContributionService(session).contribute(
        goal.id,
        GoalContributionIn(amount_cents=120_000, month=date(2025, 5, 23)),
        today=TODAY,
    )

    assert writes.contribution.month == date(2025, 5, 1)
    assert writes.account.current_balance_cents == 680_000
    assert writes.balance_entry.entry_type == BalanceEntryType.goal_contribution
    assert writes.balance_entry.previous_amount_cents == 800_000
    assert writes.balance_entry.change_amount_cents == -120_000
    assert writes.balance_entry.amount_cents == 680_000


def test_future_month_is_rejected():
    session = make_session()
    _fund(session, 800_000)
    goal = GoalService(session).create(GoalIn(name="Trip", target_amount_cents=300_000))

    with pytest.raises(ValidationError):
        GoalContributionService(session).contribute(
            goal.id,
            GoalContributionIn(amount_cents=1_000, month=date(2025, 7, 1)),
            today=TODAY,
        )


def test_unknown_or_foreign_goal_is_not_found():
    session = make_session()
    _fund(session, 800_000)
    foreign = GoalService(session, user_id=2).create(
        GoalIn(name="Not mine", target_amount_cents=300_000)
    )
    contributions = GoalContributionService(session, user_id=1)

    with pytest.raises(NotFoundError):
        contributions.contribute(
            999, GoalContributionIn(amount_cents=1_000), today=TODAY
        )
    with pytest.raises(NotFoundError):
        contributions.contribute(
            foreign.id, GoalContributionIn(amount_cents=1_000), today=TODAY
        )


def test_reversal_restores_prior_state():
    session = make_session()
    _fund(session, 500_000)
    goal = GoalService(session).create(GoalIn(name="Bike", target_amount_cents=100_000))
    contributions = GoalContributionService(session)

    writes = contributions.contribute(
        goal.id, GoalContributionIn(amount_cents=100_000), today=TODAY
    )
    assert writes.goal.is_completed is True
    assert writes.account.current_balance_cents == 400_000

    reversed_ = contributions.reverse(goal.id, writes.contribution.id)

    assert reversed_.goal.current_amount_cents == 0
    assert reversed_.goal.is_completed is False
    assert reversed_.account.current_balance_cents == 500_000
    assert reversed_.balance_entry.change_amount_cents == 100_000
    assert reversed_.balance_entry.previous_amount_cents == 400_000
    assert session.get(GoalContribution, writes.contribution.id) is None
    # Audit trail only grows.
    assert session.scalar(select(func.count(BalanceEntry.id))) == 3


def test_reversal_restores_stale_cached_balance():
    session = make_session()
    _fund(session, 500_000)
    # Entries generated after the manual update leave the cache behind the
    # reconciled balance.
    RecurringSourceService(session).create(
        RecurringSourceIn(
            name="Salary",
            kind=SourceKind.income,
            amount_cents=100_000,
            anchor_date=date(2025, 4, 1),
        ),
        today=TODAY,
    )
    balances = BalanceService(session)
    assert balances.reconciled_balance() == 800_000
    assert balances.account().current_balance_cents == 500_000

    goal = GoalService(session).create(GoalIn(name="Bike", target_amount_cents=100_000))
    contributions = GoalContributionService(session)
    writes = contributions.contribute(
        goal.id, GoalContributionIn(amount_cents=10_000), today=TODAY
    )
    assert writes.account.current_balance_cents == 790_000

    reversed_ = contributions.reverse(goal.id, writes.contribution.id)

    assert reversed_.account.current_balance_cents == 500_000
    assert reversed_.balance_entry.previous_amount_cents == 790_000
    assert reversed_.balance_entry.change_amount_cents == -290_000
    assert reversed_.goal.current_amount_cents == 0


def test_reversal_of_unknown_contribution_is_not_found():
    session = make_session()
    goal = GoalService(session).create(GoalIn(name="Bike", target_amount_cents=100_000))

    with pytest.raises(NotFoundError):
        GoalContributionService(session).reverse(goal.id, 42)


def test_failure_inside_transaction_leaves_no_partial_state(monkeypatch):
    session = make_session()
    _fund(session, 500_000)
    goal = GoalService(session).create(GoalIn(name="Bike", target_amount_cents=100_000))

    def broken_account(self):
        raise RuntimeError("connection lost")

    monkeypatch.setattr("services.BalanceService.account", broken_account)

    with pytest.raises(TransactionFailure):
        GoalContributionService(session).contribute(
            goal.id, GoalContributionIn(amount_cents=50_000), today=TODAY
        )

    assert session.get(Goal, goal.id).current_amount_cents == 0
    assert session.scalar(select(func.count(GoalContribution.id))) == 0
    assert session.scalar(select(func.count(BalanceEntry.id))) == 1


def test_goal_target_update_recomputes_completion():
    session = make_session()
    _fund(session, 500_000)
    goals = GoalService(session)
    goal = goals.create(GoalIn(name="Phone", target_amount_cents=200_000))
    GoalContributionService(session).contribute(
        goal.id, GoalContributionIn(amount_cents=150_000), today=TODAY
    )

    lowered = goals.update(goal.id, GoalIn(name="Phone", target_amount_cents=150_000))
    assert lowered.is_completed is True

    raised = goals.update(goal.id, GoalIn(name="Phone", target_amount_cents=180_000))
    assert raised.is_completed is False


def test_delete_goal_removes_contributions():
    session = make_session()
    _fund(session, 500_000)
    goals = GoalService(session)
    goal = goals.create(GoalIn(name="Phone", target_amount_cents=200_000))
    GoalContributionService(session).contribute(
        goal.id, GoalContributionIn(amount_cents=10_000), today=TODAY
    )

    goals.delete(goal.id)

    assert session.scalar(select(func.count(GoalContribution.id))) == 0
    with pytest.raises(NotFoundError):
        goals.get(goal.id)
