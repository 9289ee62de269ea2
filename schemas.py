from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import BalanceEntryType, Frequency, SourceKind


class RecurringSourceIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    kind: SourceKind
    category: Optional[str] = Field(default=None, max_length=100)
    amount_cents: int = Field(..., ge=0)
    frequency: Frequency = Frequency.monthly
    anchor_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: bool = True

    @model_validator(mode="after")
    def _end_not_before_anchor(self) -> "RecurringSourceIn":
        if self.anchor_date and self.end_date:
            if self.end_date.replace(day=1) < self.anchor_date.replace(day=1):
                raise ValueError("End date must not be before the anchor month")
        return self


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_id: int
    amount_cents: int
    month: date
    notes: Optional[str]


class RecurringSourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    kind: SourceKind
    category: Optional[str]
    amount_cents: int
    frequency: Frequency
    anchor_date: date
    end_date: Optional[date]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class RecurringSourceDetail(RecurringSourceOut):
    entries: list[LedgerEntryOut] = Field(default_factory=list)


class ToggleIn(BaseModel):
    is_active: bool


class GenerateIn(BaseModel):
    kind: Optional[SourceKind] = None


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category: Optional[str] = Field(default=None, max_length=100)
    target_amount_cents: int = Field(..., gt=0)
    target_date: Optional[date] = None
    priority: int = Field(default=1, ge=1, le=10)


class GoalContributionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    month: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class GoalContributionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    goal_id: int
    amount_cents: int
    month: date
    notes: Optional[str]
    created_at: datetime


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category: Optional[str]
    target_amount_cents: int
    current_amount_cents: int
    target_date: Optional[date]
    priority: int
    is_completed: bool


class GoalDetail(GoalOut):
    contributions: list[GoalContributionOut] = Field(default_factory=list)


class BalanceUpdateIn(BaseModel):
    starting_balance_cents: int = Field(..., ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)


class BalanceEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    previous_amount_cents: int
    change_amount_cents: int
    entry_type: BalanceEntryType
    notes: Optional[str]
    created_at: datetime


class BalanceOut(BaseModel):
    reconciled_balance_cents: int
    starting_balance_cents: int
    current_balance_cents: int
    balance_updated_at: Optional[datetime]
    recent_entries: list[BalanceEntryOut] = Field(default_factory=list)


class ContributionReceipt(BaseModel):
    contribution: GoalContributionOut
    goal: GoalOut
    balance_entry: BalanceEntryOut
