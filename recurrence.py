import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import Frequency, LedgerEntry, RecurringSource

logger = logging.getLogger(__name__)

WEEKS_PER_MONTH = Decimal("4.33")
MONTHS_PER_YEAR = Decimal("12")


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_start(value: date) -> date:
    return value.replace(day=1)


def add_months(value: date, months: int) -> date:
    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, 1)


def iter_months(start: date, end: date) -> Iterator[date]:
    """Yield the first day of every month from start to end, both inclusive."""
    current = month_start(start)
    last = month_start(end)
    while current <= last:
        yield current
        current = add_months(current, 1)


def monthly_amount_cents(amount_cents: int, frequency: Frequency) -> int:
    """Normalize a declared amount to its monthly equivalent in whole cents.

    ONE_TIME amounts are returned unchanged; restricting them to the anchor
    month is the generator's job.
    """
    amount = Decimal(amount_cents)
    if frequency == Frequency.weekly:
        amount = amount * WEEKS_PER_MONTH
    elif frequency == Frequency.yearly:
        amount = amount / MONTHS_PER_YEAR
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def effective_end_month(source: RecurringSource, today: date) -> date:
    if source.end_date is not None:
        return month_start(source.end_date)
    return month_start(today)


def lock_source(session: Session, source_id: int) -> None:
    # Row lock serializing generation per source; a no-op on SQLite, where the
    # database-level write lock and uq_ledger_source_month cover it.
    session.execute(
        select(RecurringSource.id)
        .where(RecurringSource.id == source_id)
        .with_for_update()
    ).first()


@dataclass
class GenerationResult:
    source_id: int
    created: int = 0
    existing: int = 0
    skipped: int = 0


class LedgerEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def generate_for_source(
        self, source: RecurringSource, today: Optional[date] = None
    ) -> GenerationResult:
        today = today or local_today()
        result = GenerationResult(source_id=source.id)
        if not source.is_active:
            return result

        lock_source(self.session, source.id)
        anchor_month = month_start(source.anchor_date)
        end_month = effective_end_month(source, today)
        existing_months = set(
            self.session.scalars(
                select(LedgerEntry.month).where(LedgerEntry.source_id == source.id)
            ).all()
        )
        amount_cents = monthly_amount_cents(source.amount_cents, source.frequency)

        for month in iter_months(anchor_month, end_month):
            if source.frequency == Frequency.one_time and month != anchor_month:
                result.skipped += 1
                continue
            if month in existing_months:
                result.existing += 1
                continue
            self.session.add(
                LedgerEntry(
                    source_id=source.id,
                    amount_cents=amount_cents,
                    month=month,
                    notes=f"Auto-generated from {source.name}",
                )
            )
            existing_months.add(month)
            result.created += 1

        self.session.flush()
        logger.info(
            f"entries_generated: source_id={source.id} created={result.created} "
            f"existing={result.existing} skipped={result.skipped} "
            f"range={anchor_month.isoformat()}..{end_month.isoformat()}"
        )
        return result

    def generate_for_owner(
        self, user_id: int, today: Optional[date] = None
    ) -> list[GenerationResult]:
        today = today or local_today()
        stmt = (
            select(RecurringSource)
            .where(
                RecurringSource.user_id == user_id,
                RecurringSource.is_active.is_(True),
            )
            .order_by(RecurringSource.id)
        )
        return [
            self.generate_for_source(source, today)
            for source in self.session.scalars(stmt).all()
        ]

    def catch_up_all(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        stmt = (
            select(RecurringSource)
            .where(RecurringSource.is_active.is_(True))
            .order_by(RecurringSource.user_id, RecurringSource.id)
        )
        created = 0
        for source in self.session.scalars(stmt).all():
            created += self.generate_for_source(source, today).created
        return created
