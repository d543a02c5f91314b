from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from errors import RuleFailure
from models import ContractKind, Frequency, TransactionType


class EditScope(str, Enum):
    this = "this"
    this_and_future = "this_and_future"
    all = "all"


class BankAccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    current_balance_cents: int = 0


class ContractIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    kind: ContractKind
    amount_cents: int = Field(..., gt=0)
    frequency: Frequency
    start_date: date
    end_date: Optional[date] = None
    bank_account_id: int
    auto_generate: bool = True
    total_installments: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _end_after_start(self) -> "ContractIn":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class RecurrenceRuleIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    description: Optional[str] = None
    kind: TransactionType
    amount_cents: int = Field(..., gt=0)
    frequency: Frequency
    anchor_date: date
    end_date: Optional[date] = None
    account_from_id: Optional[int] = None
    account_to_id: Optional[int] = None
    total_installments: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _end_after_anchor(self) -> "RecurrenceRuleIn":
        if self.end_date and self.end_date < self.anchor_date:
            raise ValueError("end_date must not be before anchor_date")
        return self


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    due_date: date
    account_from_id: Optional[int] = None
    account_to_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)


class OccurrenceChanges(BaseModel):
    """Fields a user may change on an occurrence; unset fields stay as they are."""

    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    due_date: Optional[date] = None
    account_from_id: Optional[int] = None
    account_to_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)
    frequency: Optional[Frequency] = None


class GenerationReport(BaseModel):
    rules_processed: int = 0
    occurrences_created: int = 0
    errors: list[RuleFailure] = Field(default_factory=list)


class EditResult(BaseModel):
    updated_ids: list[int]


class AccountProjection(BaseModel):
    account_id: int
    current_balance_cents: int
    pending_revenue_cents: int = 0
    pending_expense_cents: int = 0
    projected_balance_cents: int
