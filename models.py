import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RecurrenceType(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    # Derived from the transaction stream; never set from user input.
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    aggregate: Mapped[Optional["AnalyticsAggregate"]] = relationship(
        "AnalyticsAggregate",
        back_populates="account",
        uselist=False,
        cascade="all, delete-orphan",
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="account",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_account_owner_name"),
        Index("ix_accounts_owner", "owner_id"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    # NULL owner marks a shared system category.
    owner_id: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(64), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_category_owner_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64))
    note: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_income: Mapped[bool] = mapped_column(Boolean, nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    transfer: Mapped[Optional[str]] = mapped_column(String(64))
    # Economic date, distinct from the row's created_at.
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurrence_type: Mapped[Optional[RecurrenceType]] = mapped_column(
        SAEnum(RecurrenceType)
    )
    recurrence_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_account_occurred", "account_id", "occurred_at"),
        Index("ix_transactions_owner_occurred", "owner_id", "occurred_at"),
        Index("ix_transactions_owner_recurring", "owner_id", "recurring"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class AnalyticsAggregate(Base, TimestampMixin):
    __tablename__ = "analytics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expense_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    previous_income_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    previous_expense_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    previous_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    income_percentage_change: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0
    )
    expenses_percentage_change: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0
    )

    account: Mapped["Account"] = relationship("Account", back_populates="aggregate")
