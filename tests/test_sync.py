from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config import Settings
from database import Base
from errors import SynchronizationError, SynchronizationWarning
from models import Frequency, LedgerEntry, RecurringSource, SourceKind
from schemas import RecurringSourceIn
from services import RecurringSourceService
from sync import (
    AmountChanged,
    AnchorChanged,
    EndDateChanged,
    SourceSnapshot,
    detect_change,
)

TODAY = date(2025, 6, 10)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _settings(strict: bool = False) -> Settings:
    return Settings(
        database_url="sqlite://",
        timezone="Europe/Berlin",
        strict_sync=strict,
        scheduler_enabled=False,
        log_level="INFO",
    )


def _declaration(**overrides) -> RecurringSourceIn:
    data = dict(
        name="Salary",
        kind=SourceKind.income,
        amount_cents=100_000,
        frequency=Frequency.monthly,
        anchor_date=date(2025, 1, 1),
        end_date=None,
    )
    data.update(overrides)
    return RecurringSourceIn(**data)


def _entries(session, source_id: int) -> list[tuple[date, int]]:
    rows = session.scalars(
        select(LedgerEntry)
        .where(LedgerEntry.source_id == source_id)
        .order_by(LedgerEntry.month)
    ).all()
    return [(row.month, row.amount_cents) for row in rows]


def _snapshot(**overrides) -> SourceSnapshot:
    data = dict(
        anchor_date=date(2025, 1, 1),
        end_date=None,
        amount_cents=100_000,
        frequency=Frequency.monthly,
    )
    data.update(overrides)
    return SourceSnapshot(**data)


def test_detect_change_priority():
    before = _snapshot()

    assert detect_change(before, _snapshot()) is None
    assert detect_change(
        before, _snapshot(anchor_date=date(2025, 2, 1), amount_cents=5)
    ) == AnchorChanged(date(2025, 1, 1), date(2025, 2, 1))
    assert detect_change(
        before, _snapshot(end_date=date(2025, 5, 1), amount_cents=5)
    ) == EndDateChanged(None, date(2025, 5, 1))
    assert detect_change(before, _snapshot(amount_cents=150_000)) == AmountChanged(
        100_000, 150_000
    )


def test_detect_change_frequency_cases():
    before = _snapshot(amount_cents=1_200_000)

    yearly = _snapshot(amount_cents=1_200_000, frequency=Frequency.yearly)
    one_time = _snapshot(amount_cents=1_200_000, frequency=Frequency.one_time)

    assert detect_change(before, yearly) == AmountChanged(1_200_000, 100_000)
    assert isinstance(detect_change(before, one_time), AnchorChanged)


def test_anchor_change_rebuilds_timeline():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(), today=TODAY)
    assert len(_entries(session, source.id)) == 6

    service.update(source.id, _declaration(anchor_date=date(2025, 3, 15)), today=TODAY)

    assert _entries(session, source.id) == [
        (date(2025, 3, 1), 100_000),
        (date(2025, 4, 1), 100_000),
        (date(2025, 5, 1), 100_000),
        (date(2025, 6, 1), 100_000),
    ]


def test_anchor_change_discards_adjusted_history():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(), today=TODAY)
    service.update(source.id, _declaration(amount_cents=120_000), today=TODAY)

    service.update(
        source.id,
        _declaration(amount_cents=120_000, anchor_date=date(2024, 12, 1)),
        today=TODAY,
    )

    entries = _entries(session, source.id)
    assert entries[0] == (date(2024, 12, 1), 120_000)
    assert {amount for _, amount in entries} == {120_000}
    assert len(entries) == 7


def test_end_date_change_prunes_and_never_fabricates():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(), today=TODAY)

    service.update(source.id, _declaration(end_date=date(2025, 4, 30)), today=TODAY)
    assert [m for m, _ in _entries(session, source.id)] == [
        date(2025, 1, 1),
        date(2025, 2, 1),
        date(2025, 3, 1),
        date(2025, 4, 1),
    ]

    service.update(source.id, _declaration(end_date=date(2025, 12, 31)), today=TODAY)
    assert [m for m, _ in _entries(session, source.id)] == [
        date(2025, 1, 1),
        date(2025, 2, 1),
        date(2025, 3, 1),
        date(2025, 4, 1),
    ]


def test_clearing_future_end_date_prunes_months_after_now():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(
        _declaration(anchor_date=date(2025, 5, 1), end_date=date(2025, 9, 1)),
        today=TODAY,
    )
    assert len(_entries(session, source.id)) == 5

    service.update(source.id, _declaration(anchor_date=date(2025, 5, 1)), today=TODAY)

    assert [m for m, _ in _entries(session, source.id)] == [
        date(2025, 5, 1),
        date(2025, 6, 1),
    ]


def test_amount_change_only_touches_current_and_future_months():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(end_date=date(2025, 8, 31)), today=TODAY)

    service.update(
        source.id,
        _declaration(end_date=date(2025, 8, 31), amount_cents=150_000),
        today=TODAY,
    )

    entries = dict(_entries(session, source.id))
    for month in (1, 2, 3, 4, 5):
        assert entries[date(2025, month, 1)] == 100_000
    for month in (6, 7, 8):
        assert entries[date(2025, month, 1)] == 150_000


def test_unrelated_edit_leaves_entries_untouched():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(), today=TODAY)
    before = _entries(session, source.id)

    updated = service.update(
        source.id, _declaration(name="Salary (net)", category="Work"), today=TODAY
    )

    assert updated.name == "Salary (net)"
    assert _entries(session, source.id) == before


def test_sync_failure_keeps_edit_and_warns(monkeypatch, caplog):
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(), today=TODAY)
    before = _entries(session, source.id)

    def boom(self, source, change, today=None):
        raise RuntimeError("disk full")

    monkeypatch.setattr("sync.EntrySynchronizer.apply", boom)

    with pytest.warns(SynchronizationWarning):
        service.update(source.id, _declaration(amount_cents=175_000), today=TODAY)

    assert session.get(RecurringSource, source.id).amount_cents == 175_000
    assert _entries(session, source.id) == before
    assert "entry_sync_failed" in caplog.text


def test_strict_sync_failure_rolls_back_edit(monkeypatch):
    session = make_session()
    service = RecurringSourceService(session, settings=_settings(strict=True))
    source = service.create(_declaration(), today=TODAY)

    def boom(self, source, change, today=None):
        raise RuntimeError("disk full")

    monkeypatch.setattr("sync.EntrySynchronizer.apply", boom)

    with pytest.raises(SynchronizationError):
        service.update(source.id, _declaration(amount_cents=175_000), today=TODAY)

    assert session.get(RecurringSource, source.id).amount_cents == 100_000


def test_reactivation_fills_missing_months():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(), today=date(2025, 2, 1))
    service.set_active(source.id, False, today=date(2025, 2, 1))
    assert len(_entries(session, source.id)) == 2

    service.set_active(source.id, True, today=date(2025, 4, 1))

    assert len(_entries(session, source.id)) == 4


def test_reactivation_through_update_fills_missing_months():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(), today=date(2025, 2, 1))
    service.update(source.id, _declaration(is_active=False), today=date(2025, 2, 1))
    assert len(_entries(session, source.id)) == 2

    service.update(source.id, _declaration(is_active=True), today=date(2025, 4, 1))

    assert [m for m, _ in _entries(session, source.id)] == [
        date(2025, 1, 1),
        date(2025, 2, 1),
        date(2025, 3, 1),
        date(2025, 4, 1),
    ]


def test_delete_source_removes_entries():
    session = make_session()
    service = RecurringSourceService(session, settings=_settings())
    source = service.create(_declaration(), today=TODAY)

    service.delete(source.id)

    assert session.get(RecurringSource, source.id) is None
    assert _entries(session, source.id) == []
