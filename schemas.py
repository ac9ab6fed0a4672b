from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import RecurrenceType


# Raw amounts are validated by the ledger, which owns the InvalidAmount rule.
AmountInput = Union[Decimal, float, int, str]


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    currency: str = Field("INR", min_length=3, max_length=3)
    opening_balance: AmountInput = 0


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)


class RecurrenceIn(BaseModel):
    recurring: bool = False
    recurrence_type: Optional[RecurrenceType] = None
    recurrence_end_date: Optional[datetime] = None


class TransactionIn(BaseModel):
    account_id: str
    note: str = Field(..., min_length=1, max_length=255)
    amount: AmountInput
    is_income: bool
    category_id: Optional[str] = None
    transfer: Optional[str] = Field(default=None, max_length=64)
    occurred_at: Optional[datetime] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    recurrence: RecurrenceIn = Field(default_factory=RecurrenceIn)


class TransactionUpdate(BaseModel):
    """Partial update; only fields passed explicitly are applied.

    Presence is tracked by pydantic's ``model_fields_set``, so an explicit
    ``None`` (e.g. clearing ``category_id``) is distinct from "not supplied".
    """

    model_config = ConfigDict(extra="forbid")

    note: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount: Optional[AmountInput] = None
    is_income: Optional[bool] = None
    category_id: Optional[str] = None
    transfer: Optional[str] = Field(default=None, max_length=64)
    occurred_at: Optional[datetime] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    recurring: Optional[bool] = None
    recurrence_type: Optional[RecurrenceType] = None
    recurrence_end_date: Optional[datetime] = None

    def supplied(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}
