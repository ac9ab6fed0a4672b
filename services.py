from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic, retry_on_lock
from models import Account, AnalyticsAggregate, Category, Transaction
from periods import DateRange, previous_interval, resolve_date_range
from recurrence import GenerationResult, RecurringGenerator, local_now
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdate


logger = logging.getLogger(__name__)

OPENING_BALANCE = "Opening Balance"


class LedgerError(ValueError):
    pass


class InvalidAmount(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass


class NotFound(LedgerError):
    pass


class AccessDenied(LedgerError):
    pass


class InvalidCategory(LedgerError):
    pass


class MissingRecurrenceType(LedgerError):
    pass


class AccountExists(LedgerError):
    pass


class AggregateMissing(RuntimeError):
    """An account has transactions but no aggregate row; only a resync may fix it."""

    def __init__(self, account_id: str) -> None:
        super().__init__(
            f"Analytics aggregate missing for account {account_id}; run a resync"
        )
        self.account_id = account_id


def to_cents(value: Any, *, allow_negative: bool = False) -> int:
    if value is None or isinstance(value, bool):
        raise InvalidAmount("Invalid transaction amount.")
    try:
        if isinstance(value, float):
            amount = Decimal(repr(value))
        elif isinstance(value, str):
            amount = Decimal(value.strip().replace(" ", ""))
        else:
            amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmount("Invalid transaction amount.") from exc
    if not amount.is_finite():
        raise InvalidAmount("Invalid transaction amount.")
    if amount < 0 and not allow_negative:
        raise InvalidAmount("Transaction amount must not be negative.")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def pct(old: Union[int, float], new: Union[int, float]) -> float:
    if old == 0:
        return 100.0 if new > 0 else 0.0
    change = (new - old) / abs(old) * 100
    return 0.0 if math.isnan(change) else float(change)


def effect(amount_cents: int, is_income: bool) -> int:
    return amount_cents if is_income else -amount_cents


def to_storage_time(value: Optional[datetime]) -> Optional[datetime]:
    """Rows keep naive datetimes in the configured timezone."""
    if value is None or value.tzinfo is None:
        return value
    zone = ZoneInfo(get_settings().timezone)
    return value.astimezone(zone).replace(tzinfo=None)


@dataclass(frozen=True)
class UserActor:
    user_id: str


@dataclass(frozen=True)
class SystemActor:
    """A system-initiated mutation; skips the owner and funds checks.

    ``on_behalf_of`` is recorded as creator; ownership always comes from the
    target account.
    """

    on_behalf_of: Optional[str] = None


Actor = Union[UserActor, SystemActor]


def _for_update(stmt):
    return stmt.with_for_update().execution_options(populate_existing=True)


def bucket_sums():
    def total(is_income: bool):
        return func.coalesce(
            func.sum(
                case(
                    (Transaction.is_income.is_(is_income), Transaction.amount_cents),
                    else_=0,
                )
            ),
            0,
        )

    return total(True).label("income"), total(False).label("expenses")


class AggregateStore:
    """Maintains the per-account analytics row and the derived account balance.

    Every method runs inside the caller's unit of work and never commits.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _account(self, account_id: str) -> Account:
        account = self.session.scalar(
            _for_update(select(Account).where(Account.id == account_id))
        )
        if not account:
            raise NotFound(f"Account {account_id} not found.")
        return account

    def _aggregate(self, account_id: str) -> Optional[AnalyticsAggregate]:
        return self.session.scalar(
            _for_update(
                select(AnalyticsAggregate).where(
                    AnalyticsAggregate.account_id == account_id
                )
            )
        )

    def _seed(
        self, account_id: str, owner_id: str, income_cents: int, expense_cents: int
    ) -> AnalyticsAggregate:
        aggregate = AnalyticsAggregate(
            account_id=account_id,
            owner_id=owner_id,
            income_cents=income_cents,
            expense_cents=expense_cents,
            balance_cents=income_cents - expense_cents,
            previous_income_cents=0,
            previous_expense_cents=0,
            previous_balance_cents=0,
            income_percentage_change=100.0 if income_cents > 0 else 0.0,
            expenses_percentage_change=100.0 if expense_cents > 0 else 0.0,
        )
        self.session.add(aggregate)
        self.session.flush()
        return aggregate

    def apply(
        self, account_id: str, owner_id: str, is_income: bool, amount_cents: int
    ) -> AnalyticsAggregate:
        account = self._account(account_id)
        aggregate = self._aggregate(account_id)
        if aggregate is None:
            logger.warning(f"aggregate_seed: account={account_id} first transaction")
            aggregate = self._seed(
                account_id,
                owner_id,
                amount_cents if is_income else 0,
                0 if is_income else amount_cents,
            )
        else:
            if is_income:
                old_income = aggregate.income_cents
                aggregate.previous_income_cents = old_income
                aggregate.income_cents = old_income + amount_cents
                aggregate.income_percentage_change = pct(
                    old_income, aggregate.income_cents
                )
            else:
                old_expense = aggregate.expense_cents
                aggregate.previous_expense_cents = old_expense
                aggregate.expense_cents = old_expense + amount_cents
                aggregate.expenses_percentage_change = pct(
                    old_expense, aggregate.expense_cents
                )
            aggregate.previous_balance_cents = aggregate.balance_cents
            aggregate.balance_cents = aggregate.balance_cents + effect(
                amount_cents, is_income
            )
        account.balance_cents = aggregate.balance_cents
        self.session.flush()
        return aggregate

    def apply_delta(
        self,
        account_id: str,
        income_change: int,
        expense_change: int,
        balance_change: int,
    ) -> Optional[AnalyticsAggregate]:
        """Shift the buckets by pre-computed signed deltas.

        The caller adjusts ``Account.balance_cents`` itself.
        """
        if income_change == 0 and expense_change == 0 and balance_change == 0:
            return None
        aggregate = self._aggregate(account_id)
        if aggregate is None:
            logger.error(f"aggregate_missing: account={account_id}")
            raise AggregateMissing(account_id)
        self._shift(aggregate, income_change, expense_change, balance_change)
        self.session.flush()
        return aggregate

    def apply_bulk(
        self, account_id: str, owner_id: str, entries: Iterable[tuple[int, bool]]
    ) -> Optional[AnalyticsAggregate]:
        income_change = 0
        expense_change = 0
        for amount_cents, is_income in entries:
            if is_income:
                income_change += amount_cents
            else:
                expense_change += amount_cents
        if income_change == 0 and expense_change == 0:
            logger.info(f"aggregate_bulk: account={account_id} no net change")
            return None

        account = self._account(account_id)
        aggregate = self._aggregate(account_id)
        if aggregate is None:
            logger.warning(f"aggregate_seed: account={account_id} bulk import")
            aggregate = self._seed(account_id, owner_id, income_change, expense_change)
        else:
            self._shift(
                aggregate, income_change, expense_change, income_change - expense_change
            )
        account.balance_cents = aggregate.balance_cents
        self.session.flush()
        return aggregate

    def resync(self, account_id: str) -> AnalyticsAggregate:
        """Recompute the aggregate from the account's full transaction history."""
        account = self._account(account_id)
        row = self.session.execute(
            select(*bucket_sums()).where(Transaction.account_id == account_id)
        ).one()
        income = int(row.income)
        expenses = int(row.expenses)

        aggregate = self._aggregate(account_id)
        if aggregate is None:
            logger.warning(f"aggregate_resync: account={account_id} recreating row")
            aggregate = self._seed(account_id, account.owner_id, income, expenses)
        else:
            self._shift(
                aggregate,
                income - aggregate.income_cents,
                expenses - aggregate.expense_cents,
                (income - expenses) - aggregate.balance_cents,
            )
        account.balance_cents = aggregate.balance_cents
        self.session.flush()
        return aggregate

    @staticmethod
    def _shift(
        aggregate: AnalyticsAggregate,
        income_change: int,
        expense_change: int,
        balance_change: int,
    ) -> None:
        old_income = aggregate.income_cents
        old_expense = aggregate.expense_cents
        old_balance = aggregate.balance_cents
        aggregate.income_cents = old_income + income_change
        aggregate.expense_cents = old_expense + expense_change
        aggregate.balance_cents = old_balance + balance_change
        aggregate.previous_income_cents = old_income
        aggregate.previous_expense_cents = old_expense
        aggregate.previous_balance_cents = old_balance
        aggregate.income_percentage_change = pct(old_income, aggregate.income_cents)
        aggregate.expenses_percentage_change = pct(
            old_expense, aggregate.expense_cents
        )


def rebuild_aggregates(session: Session, owner_id: Optional[str] = None) -> int:
    stmt = select(Account.id).order_by(Account.created_at, Account.id)
    if owner_id:
        stmt = stmt.where(Account.owner_id == owner_id)
    account_ids = list(session.scalars(stmt).all())
    with atomic(session):
        store = AggregateStore(session)
        for account_id in account_ids:
            store.resync(account_id)
    logger.info(f"aggregate_rebuild: owner={owner_id} accounts={len(account_ids)}")
    return len(account_ids)


class CategoryService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = owner_id

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.name, Category.id)
        if self.owner_id:
            stmt = stmt.where(
                or_(Category.owner_id == self.owner_id, Category.owner_id.is_(None))
            )
        else:
            stmt = stmt.where(Category.owner_id.is_(None))
        return list(self.session.scalars(stmt).all())

    def get_or_create(self, name: str) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.owner_id == self.owner_id, Category.name == name
            )
        )
        if category:
            return category
        category = Category(owner_id=self.owner_id, name=name)
        self.session.add(category)
        self.session.flush()
        return category

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        with atomic(self.session):
            existing = self.session.scalar(
                select(Category.id).where(
                    Category.owner_id == self.owner_id, Category.name == name
                )
            )
            if existing:
                raise InvalidCategory("Category already exists.")
            category = Category(owner_id=self.owner_id, name=name)
            self.session.add(category)
        return category


class AccountService:
    def __init__(self, session: Session, owner_id: str) -> None:
        self.session = session
        self.owner_id = owner_id

    def get(self, account_id: str) -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.owner_id == self.owner_id
            )
        )
        if not account:
            raise NotFound("Account not found or access denied.")
        return account

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.owner_id == self.owner_id)
            .order_by(Account.created_at, Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def open(self, data: AccountIn) -> Account:
        opening_cents = to_cents(data.opening_balance, allow_negative=True)
        name = data.name.strip()
        with atomic(self.session):
            existing = self.session.scalar(
                select(Account.id).where(
                    Account.owner_id == self.owner_id, Account.name == name
                )
            )
            if existing:
                raise AccountExists("An account with this name already exists.")

            account = Account(
                owner_id=self.owner_id,
                name=name,
                currency=data.currency.upper(),
                balance_cents=0,
            )
            self.session.add(account)
            self.session.flush()
            self.session.add(
                AnalyticsAggregate(
                    account_id=account.id,
                    owner_id=self.owner_id,
                    income_cents=0,
                    expense_cents=0,
                    balance_cents=0,
                )
            )
            self.session.flush()

            if opening_cents:
                category = CategoryService(self.session, self.owner_id).get_or_create(
                    OPENING_BALANCE
                )
                is_income = opening_cents > 0
                amount_cents = abs(opening_cents)
                self.session.add(
                    Transaction(
                        account_id=account.id,
                        owner_id=self.owner_id,
                        created_by=self.owner_id,
                        updated_by=self.owner_id,
                        note=OPENING_BALANCE,
                        amount_cents=amount_cents,
                        is_income=is_income,
                        category_id=category.id,
                        occurred_at=local_now(),
                        currency=account.currency,
                    )
                )
                self.session.flush()
                AggregateStore(self.session).apply(
                    account.id, self.owner_id, is_income, amount_cents
                )
        logger.info(f"account_open: account={account.id} opening={opening_cents}")
        return account

    def delete(self, account_id: str) -> None:
        with atomic(self.session):
            self.session.delete(self.get(account_id))

    def resync(self, account_id: str) -> AnalyticsAggregate:
        with atomic(self.session):
            self.get(account_id)
            aggregate = AggregateStore(self.session).resync(account_id)
        return aggregate


class TransactionLedger:
    """Creates, updates and deletes transactions.

    Each mutation runs as one unit of work together with the account balance
    and aggregate maintenance; validation happens before anything is written.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, transaction_id: str, owner_id: str) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id, Transaction.owner_id == owner_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found or access denied.")
        return txn

    def _resolve_account(self, actor: Actor, account_id: str) -> Account:
        account = self.session.scalar(
            _for_update(select(Account).where(Account.id == account_id))
        )
        if isinstance(actor, SystemActor):
            if not account:
                raise NotFound(f"Account {account_id} not found.")
            return account
        if not account or account.owner_id != actor.user_id:
            raise AccessDenied("Account not found or access denied.")
        return account

    def _check_category(self, category_id: str, owner_id: str) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.owner_id not in (None, owner_id):
            raise InvalidCategory("Invalid category selected.")

    def _build(
        self, actor: Actor, account: Account, data: TransactionIn
    ) -> Transaction:
        recurrence = data.recurrence
        if recurrence.recurring and recurrence.recurrence_type is None:
            raise MissingRecurrenceType(
                "Recurrence type is required for recurring transactions."
            )
        if data.category_id:
            self._check_category(data.category_id, account.owner_id)
        if isinstance(actor, UserActor):
            creator = actor.user_id
        else:
            creator = actor.on_behalf_of or account.owner_id
        return Transaction(
            account_id=account.id,
            owner_id=account.owner_id,
            created_by=creator,
            updated_by=creator,
            note=data.note,
            amount_cents=to_cents(data.amount),
            is_income=data.is_income,
            category_id=data.category_id,
            transfer=data.transfer,
            occurred_at=to_storage_time(data.occurred_at) or local_now(),
            currency=(
                data.currency or account.currency or get_settings().default_currency
            ).upper(),
            recurring=recurrence.recurring,
            recurrence_type=(
                recurrence.recurrence_type if recurrence.recurring else None
            ),
            recurrence_end_date=(
                to_storage_time(recurrence.recurrence_end_date)
                if recurrence.recurring
                else None
            ),
        )

    @retry_on_lock
    def create(self, actor: Actor, data: TransactionIn) -> Transaction:
        amount_cents = to_cents(data.amount)
        with atomic(self.session):
            account = self._resolve_account(actor, data.account_id)
            if (
                isinstance(actor, UserActor)
                and not data.is_income
                and account.balance_cents < amount_cents
            ):
                raise InsufficientFunds("Insufficient balance for this expense.")
            txn = self._build(actor, account, data)

            self.session.add(txn)
            self.session.flush()
            AggregateStore(self.session).apply(
                account.id, account.owner_id, txn.is_income, txn.amount_cents
            )
        logger.info(
            f"transaction_create: id={txn.id} account={txn.account_id} "
            f"amount_cents={txn.amount_cents} income={txn.is_income}"
        )
        return txn

    def post_occurrence(self, template: Transaction, due: datetime) -> Transaction:
        """Materialize one occurrence of a recurring template on ``due``."""
        return self.create(
            SystemActor(on_behalf_of=template.owner_id),
            TransactionIn(
                account_id=template.account_id,
                note=template.note,
                amount=Decimal(template.amount_cents) / 100,
                is_income=template.is_income,
                category_id=template.category_id,
                transfer=template.transfer,
                occurred_at=due,
                currency=template.currency,
            ),
        )

    @retry_on_lock
    def import_batch(
        self, actor: Actor, account_id: str, rows: Sequence[TransactionIn]
    ) -> list[Transaction]:
        for row in rows:
            to_cents(row.amount)
            if row.account_id != account_id:
                raise LedgerError("All imported rows must target the same account.")
        if not rows:
            return []

        with atomic(self.session):
            account = self._resolve_account(actor, account_id)
            txns = [self._build(actor, account, row) for row in rows]
            net = sum(effect(txn.amount_cents, txn.is_income) for txn in txns)
            if isinstance(actor, UserActor) and account.balance_cents + net < 0:
                raise InsufficientFunds("Insufficient balance for this import.")

            self.session.add_all(txns)
            self.session.flush()
            AggregateStore(self.session).apply_bulk(
                account.id,
                account.owner_id,
                [(txn.amount_cents, txn.is_income) for txn in txns],
            )
        logger.info(f"transaction_import: account={account_id} rows={len(txns)}")
        return txns

    @retry_on_lock
    def update(
        self, transaction_id: str, owner_id: str, changes: TransactionUpdate
    ) -> Transaction:
        supplied = changes.supplied()
        updates: dict[str, Any] = {}
        if "amount" in supplied:
            updates["amount_cents"] = to_cents(supplied["amount"])

        with atomic(self.session):
            txn = self.get(transaction_id, owner_id)

            for field in ("note", "is_income", "currency", "occurred_at"):
                if supplied.get(field) is not None:
                    updates[field] = supplied[field]
            if "currency" in updates:
                updates["currency"] = updates["currency"].upper()
            if "occurred_at" in updates:
                updates["occurred_at"] = to_storage_time(updates["occurred_at"])
            if "transfer" in supplied:
                updates["transfer"] = supplied["transfer"]
            if "category_id" in supplied:
                category_id = supplied["category_id"]
                if category_id and category_id != txn.category_id:
                    self._check_category(category_id, txn.owner_id)
                updates["category_id"] = category_id

            if supplied.get("recurring") is False:
                updates["recurring"] = False
                updates["recurrence_type"] = None
                updates["recurrence_end_date"] = None
            elif supplied.get("recurring") or txn.recurring:
                updates["recurring"] = True
                recurrence_type = supplied.get("recurrence_type", txn.recurrence_type)
                if recurrence_type is None:
                    raise MissingRecurrenceType(
                        "Recurrence type is required when transaction is recurring."
                    )
                updates["recurrence_type"] = recurrence_type
                if "recurrence_end_date" in supplied:
                    updates["recurrence_end_date"] = to_storage_time(
                        supplied["recurrence_end_date"]
                    )

            changed = {
                field: value
                for field, value in updates.items()
                if getattr(txn, field) != value
            }
            if not changed:
                logger.info(f"transaction_update: id={txn.id} no changes")
                return txn

            old_amount, old_is_income = txn.amount_cents, txn.is_income
            new_amount = changed.get("amount_cents", old_amount)
            new_is_income = changed.get("is_income", old_is_income)
            balance_affected = "amount_cents" in changed or "is_income" in changed
            account = None
            if balance_affected:
                balance_change = effect(new_amount, new_is_income) - effect(
                    old_amount, old_is_income
                )
                income_change = (new_amount if new_is_income else 0) - (
                    old_amount if old_is_income else 0
                )
                expense_change = (0 if new_is_income else new_amount) - (
                    0 if old_is_income else old_amount
                )
                account = self.session.scalar(
                    _for_update(select(Account).where(Account.id == txn.account_id))
                )
                if not account:
                    raise NotFound("Account associated with transaction not found.")
                if not new_is_income and account.balance_cents + balance_change < 0:
                    raise InsufficientFunds("Insufficient balance after update.")

            for field, value in changed.items():
                setattr(txn, field, value)
            txn.updated_by = owner_id
            self.session.flush()

            if account is not None:
                account.balance_cents = account.balance_cents + balance_change
                AggregateStore(self.session).apply_delta(
                    txn.account_id, income_change, expense_change, balance_change
                )
        logger.info(f"transaction_update: id={txn.id} fields={sorted(changed)}")
        return txn

    @retry_on_lock
    def delete(self, transaction_id: str, owner_id: str) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id, owner_id)
            account = self.session.scalar(
                _for_update(select(Account).where(Account.id == txn.account_id))
            )
            if not account:
                raise NotFound("Account associated with transaction not found.")
            amount, is_income = txn.amount_cents, txn.is_income
            balance_change = -effect(amount, is_income)
            income_change = -amount if is_income else 0
            expense_change = 0 if is_income else -amount

            self.session.delete(txn)
            self.session.flush()
            account.balance_cents = account.balance_cents + balance_change
            AggregateStore(self.session).apply_delta(
                account.id, income_change, expense_change, balance_change
            )
        logger.info(f"transaction_delete: id={transaction_id} account={account.id}")


class RecurringTemplateService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = owner_id

    def list(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.recurring.is_(True))
            .order_by(Transaction.occurred_at.desc(), Transaction.id)
        )
        if self.owner_id:
            stmt = stmt.where(Transaction.owner_id == self.owner_id)
        return list(self.session.scalars(stmt).all())

    def run_generation_pass(self, now: Optional[datetime] = None) -> GenerationResult:
        generator = RecurringGenerator(self.session, TransactionLedger(self.session))
        return generator.run_pass(now)


class ReportService:
    def __init__(self, session: Session, owner_id: str) -> None:
        self.session = session
        self.owner_id = owner_id

    def _bounds(self, date_range: DateRange) -> tuple[datetime, datetime]:
        return date_range.naive(get_settings().timezone)

    def _scoped(self, stmt, date_range: DateRange, account_id: Optional[str]):
        start, end = self._bounds(date_range)
        stmt = stmt.where(
            Transaction.owner_id == self.owner_id,
            Transaction.occurred_at.between(start, end),
        )
        if account_id:
            stmt = stmt.where(Transaction.account_id == account_id)
        return stmt

    def totals(
        self, date_range: DateRange, account_id: Optional[str] = None
    ) -> tuple[int, int]:
        stmt = select(*bucket_sums())
        row = self.session.execute(self._scoped(stmt, date_range, account_id)).one()
        return int(row.income), int(row.expenses)

    def summary(
        self,
        expression: str,
        account_id: Optional[str] = None,
        *,
        timezone: Optional[str] = None,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        current = resolve_date_range(expression, timezone, today=today)
        previous = previous_interval(current)
        income, expenses = self.totals(current, account_id)
        prev_income, prev_expenses = self.totals(previous, account_id)
        return {
            "start": current.start,
            "end": current.end,
            "income": income,
            "expenses": expenses,
            "balance": income - expenses,
            "previous_start": previous.start,
            "previous_end": previous.end,
            "previous_income": prev_income,
            "previous_expenses": prev_expenses,
            "previous_balance": prev_income - prev_expenses,
            "income_percentage_change": pct(prev_income, income),
            "expenses_percentage_change": pct(prev_expenses, expenses),
        }

    def transactions(
        self,
        expression: str,
        account_id: Optional[str] = None,
        *,
        timezone: Optional[str] = None,
        today: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        current = resolve_date_range(expression, timezone, today=today)
        stmt = self._scoped(select(Transaction), current, account_id)
        stmt = (
            stmt.order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())
