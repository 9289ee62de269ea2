"""Keeps a source's ledger entries in step with edits to its declaration.

An edit is reduced to at most one change event, picked by priority:
anchor moves first, then end date, then amount. Each event touches a
disjoint slice of the ledger:

* ``AnchorChanged``  -> drop every entry and regenerate from scratch.
* ``EndDateChanged`` -> drop entries after the new effective end month;
  never generates, even when the end moved later.
* ``AmountChanged``  -> rewrite amounts from the current month onwards;
  earlier months are left as recorded.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Union

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from models import Frequency, LedgerEntry, RecurringSource
from recurrence import (
    GenerationResult,
    LedgerEngine,
    effective_end_month,
    local_today,
    lock_source,
    month_start,
    monthly_amount_cents,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSnapshot:
    anchor_date: date
    end_date: Optional[date]
    amount_cents: int
    frequency: Frequency

    @classmethod
    def of(cls, source: RecurringSource) -> "SourceSnapshot":
        return cls(
            anchor_date=source.anchor_date,
            end_date=source.end_date,
            amount_cents=source.amount_cents,
            frequency=source.frequency,
        )

    @property
    def monthly_cents(self) -> int:
        return monthly_amount_cents(self.amount_cents, self.frequency)


@dataclass(frozen=True)
class AnchorChanged:
    old_anchor: date
    new_anchor: date


@dataclass(frozen=True)
class EndDateChanged:
    old_end: Optional[date]
    new_end: Optional[date]


@dataclass(frozen=True)
class AmountChanged:
    old_monthly_cents: int
    new_monthly_cents: int


SourceChange = Union[AnchorChanged, EndDateChanged, AmountChanged]


def detect_change(
    before: SourceSnapshot, after: SourceSnapshot
) -> Optional[SourceChange]:
    one_time_switch = (before.frequency == Frequency.one_time) != (
        after.frequency == Frequency.one_time
    )
    if before.anchor_date != after.anchor_date or one_time_switch:
        # Switching to or from ONE_TIME reshapes the timeline like an anchor move.
        return AnchorChanged(before.anchor_date, after.anchor_date)
    if before.end_date != after.end_date:
        return EndDateChanged(before.end_date, after.end_date)
    if before.monthly_cents != after.monthly_cents:
        return AmountChanged(before.monthly_cents, after.monthly_cents)
    return None


@dataclass
class SyncResult:
    change: Optional[SourceChange]
    deleted: int = 0
    updated: int = 0
    generation: Optional[GenerationResult] = None


class EntrySynchronizer:
    def __init__(self, session: Session) -> None:
        self.session = session

    def synchronize(
        self,
        source: RecurringSource,
        before: SourceSnapshot,
        today: Optional[date] = None,
    ) -> SyncResult:
        change = detect_change(before, SourceSnapshot.of(source))
        return self.apply(source, change, today)

    def apply(
        self,
        source: RecurringSource,
        change: Optional[SourceChange],
        today: Optional[date] = None,
    ) -> SyncResult:
        today = today or local_today()
        if change is None:
            logger.info(f"entry_sync: source_id={source.id} change=none")
            return SyncResult(change=None)

        lock_source(self.session, source.id)
        if isinstance(change, AnchorChanged):
            result = self._rebuild(source, change, today)
        elif isinstance(change, EndDateChanged):
            result = self._truncate(source, change, today)
        else:
            result = self._reprice(source, change, today)
        self.session.expire(source, ["entries"])
        logger.info(
            f"entry_sync: source_id={source.id} change={type(change).__name__} "
            f"deleted={result.deleted} updated={result.updated} "
            f"created={result.generation.created if result.generation else 0}"
        )
        return result

    def _rebuild(
        self, source: RecurringSource, change: AnchorChanged, today: date
    ) -> SyncResult:
        deleted = self._delete_entries(source.id)
        generation = LedgerEngine(self.session).generate_for_source(source, today)
        return SyncResult(change=change, deleted=deleted, generation=generation)

    def _truncate(
        self, source: RecurringSource, change: EndDateChanged, today: date
    ) -> SyncResult:
        cutoff = effective_end_month(source, today)
        deleted = self._delete_entries(source.id, after=cutoff)
        return SyncResult(change=change, deleted=deleted)

    def _reprice(
        self, source: RecurringSource, change: AmountChanged, today: date
    ) -> SyncResult:
        stmt = (
            update(LedgerEntry)
            .where(
                LedgerEntry.source_id == source.id,
                LedgerEntry.month >= month_start(today),
            )
            .values(amount_cents=change.new_monthly_cents)
            .execution_options(synchronize_session="fetch")
        )
        updated = self.session.execute(stmt).rowcount or 0
        return SyncResult(change=change, updated=updated)

    def _delete_entries(self, source_id: int, after: Optional[date] = None) -> int:
        stmt = delete(LedgerEntry).where(LedgerEntry.source_id == source_id)
        if after is not None:
            stmt = stmt.where(LedgerEntry.month > after)
        stmt = stmt.execution_options(synchronize_session="fetch")
        return self.session.execute(stmt).rowcount or 0
