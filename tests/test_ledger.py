from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker

from database import Base, _enable_sqlite_pragmas
from models import Account, AnalyticsAggregate, Category, RecurrenceType, Transaction
from schemas import AccountIn, RecurrenceIn, TransactionIn, TransactionUpdate
from services import (
    AccessDenied,
    AccountExists,
    AccountService,
    AggregateMissing,
    InsufficientFunds,
    InvalidAmount,
    InvalidCategory,
    LedgerError,
    MissingRecurrenceType,
    NotFound,
    SystemActor,
    TransactionLedger,
    UserActor,
    to_cents,
)


ALICE = UserActor("alice")


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def open_account(session, opening_balance=1000, owner="alice", name="Wallet"):
    return AccountService(session, owner).open(
        AccountIn(name=name, opening_balance=opening_balance)
    )


def aggregate_for(session, account_id) -> AnalyticsAggregate:
    return session.scalar(
        select(AnalyticsAggregate).where(AnalyticsAggregate.account_id == account_id)
    )


def expense(account_id, amount, note="Groceries", **extra) -> TransactionIn:
    return TransactionIn(
        account_id=account_id, note=note, amount=amount, is_income=False, **extra
    )


def assert_consistent(session, account_id):
    account = session.get(Account, account_id)
    aggregate = aggregate_for(session, account_id)
    assert aggregate.balance_cents == (
        aggregate.income_cents - aggregate.expense_cents
    )
    assert account.balance_cents == aggregate.balance_cents


def transaction_count(session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_opening_balance_is_posted_as_income():
    session = make_session()
    account = open_account(session, 1000)

    aggregate = aggregate_for(session, account.id)
    assert account.balance_cents == 100_000
    assert aggregate.income_cents == 100_000
    assert aggregate.income_percentage_change == 100.0
    opening = session.scalar(
        select(Transaction).where(Transaction.account_id == account.id)
    )
    assert opening.note == "Opening Balance"
    assert opening.is_income is True
    assert session.get(Category, opening.category_id).owner_id == "alice"
    assert_consistent(session, account.id)


def test_duplicate_account_name_is_rejected():
    session = make_session()
    open_account(session)
    with pytest.raises(AccountExists):
        open_account(session)
    # Names are scoped per owner.
    open_account(session, owner="bob")


def test_expense_create_update_delete_lifecycle():
    session = make_session()
    account = open_account(session, 1000)
    ledger = TransactionLedger(session)

    txn = ledger.create(ALICE, expense(account.id, 300))
    aggregate = aggregate_for(session, account.id)
    assert account.balance_cents == 70_000
    assert aggregate.expense_cents == 30_000
    assert aggregate.expenses_percentage_change == 100.0
    assert aggregate.income_percentage_change == 100.0
    assert txn.owner_id == "alice"
    assert txn.created_by == "alice"
    assert_consistent(session, account.id)

    ledger.update(txn.id, "alice", TransactionUpdate(amount=500))
    assert account.balance_cents == 50_000
    assert aggregate.previous_expense_cents == 30_000
    assert aggregate.expense_cents == 50_000
    assert round(aggregate.expenses_percentage_change, 2) == 66.67
    assert_consistent(session, account.id)

    ledger.delete(txn.id, "alice")
    assert account.balance_cents == 100_000
    assert aggregate.expense_cents == 0
    assert session.get(Transaction, txn.id) is None
    assert_consistent(session, account.id)


@pytest.mark.parametrize("amount", ["abc", "-5", -1, float("nan"), "Infinity"])
def test_invalid_amounts_are_rejected_before_writes(amount):
    session = make_session()
    account = open_account(session)
    before = transaction_count(session)

    with pytest.raises(InvalidAmount):
        TransactionLedger(session).create(ALICE, expense(account.id, amount))
    assert transaction_count(session) == before


def test_to_cents_rounds_half_up():
    assert to_cents("12.345") == 1235
    assert to_cents(Decimal("0.10")) == 10
    assert to_cents(19.99) == 1999
    assert to_cents("-4.50", allow_negative=True) == -450
    with pytest.raises(InvalidAmount):
        to_cents(None)
    with pytest.raises(InvalidAmount):
        to_cents(True)


def test_insufficient_funds_leaves_state_untouched():
    session = make_session()
    account = open_account(session, 100)
    before = transaction_count(session)

    with pytest.raises(InsufficientFunds):
        TransactionLedger(session).create(ALICE, expense(account.id, 200))

    assert transaction_count(session) == before
    assert session.get(Account, account.id).balance_cents == 10_000
    assert aggregate_for(session, account.id).expense_cents == 0


def test_system_actor_skips_funds_check_and_adopts_account_owner():
    session = make_session()
    account = open_account(session, 100)

    txn = TransactionLedger(session).create(
        SystemActor(), expense(account.id, 250, note="Rent")
    )
    assert txn.owner_id == "alice"
    assert txn.created_by == "alice"
    assert session.get(Account, account.id).balance_cents == -15_000
    assert_consistent(session, account.id)


def test_system_actor_requires_existing_account():
    session = make_session()
    with pytest.raises(NotFound):
        TransactionLedger(session).create(SystemActor("alice"), expense("missing", 5))


def test_other_users_account_is_denied():
    session = make_session()
    account = open_account(session)
    with pytest.raises(AccessDenied):
        TransactionLedger(session).create(UserActor("bob"), expense(account.id, 5))
    with pytest.raises(AccessDenied):
        TransactionLedger(session).create(ALICE, expense("missing", 5))


def test_category_must_be_owned_or_shared():
    session = make_session()
    account = open_account(session)
    foreign = Category(owner_id="bob", name="Bob only")
    shared = Category(owner_id=None, name="Utilities")
    session.add_all([foreign, shared])
    session.commit()
    ledger = TransactionLedger(session)

    with pytest.raises(InvalidCategory):
        ledger.create(ALICE, expense(account.id, 5, category_id=foreign.id))

    txn = ledger.create(ALICE, expense(account.id, 5, category_id=shared.id))
    assert txn.category_id == shared.id
    with pytest.raises(InvalidCategory):
        ledger.update(txn.id, "alice", TransactionUpdate(category_id=foreign.id))


def test_recurring_requires_type():
    session = make_session()
    account = open_account(session)
    ledger = TransactionLedger(session)

    with pytest.raises(MissingRecurrenceType):
        ledger.create(
            ALICE, expense(account.id, 5, recurrence=RecurrenceIn(recurring=True))
        )

    txn = ledger.create(ALICE, expense(account.id, 5))
    with pytest.raises(MissingRecurrenceType):
        ledger.update(txn.id, "alice", TransactionUpdate(recurring=True))


def test_turning_recurrence_off_clears_descriptor():
    session = make_session()
    account = open_account(session)
    ledger = TransactionLedger(session)
    txn = ledger.create(
        ALICE,
        expense(
            account.id,
            5,
            note="Gym",
            recurrence=RecurrenceIn(
                recurring=True,
                recurrence_type=RecurrenceType.monthly,
                recurrence_end_date=datetime(2030, 1, 1),
            ),
        ),
    )
    assert txn.recurrence_type == RecurrenceType.monthly

    ledger.update(txn.id, "alice", TransactionUpdate(recurring=False))
    assert txn.recurring is False
    assert txn.recurrence_type is None
    assert txn.recurrence_end_date is None


def test_metadata_only_update_skips_balance_path():
    session = make_session()
    account = open_account(session)
    ledger = TransactionLedger(session)
    txn = ledger.create(ALICE, expense(account.id, 300))
    aggregate = aggregate_for(session, account.id)
    snapshot = (aggregate.previous_expense_cents, aggregate.expenses_percentage_change)

    ledger.update(txn.id, "alice", TransactionUpdate(note="Weekly groceries"))
    ledger.update(txn.id, "alice", TransactionUpdate(amount="300.00"))

    assert txn.note == "Weekly groceries"
    assert (
        aggregate.previous_expense_cents,
        aggregate.expenses_percentage_change,
    ) == snapshot
    assert account.balance_cents == 70_000


def test_flipping_direction_moves_amount_between_buckets():
    session = make_session()
    account = open_account(session, 1000)
    ledger = TransactionLedger(session)
    txn = ledger.create(ALICE, expense(account.id, 300))

    ledger.update(txn.id, "alice", TransactionUpdate(is_income=True))

    aggregate = aggregate_for(session, account.id)
    assert aggregate.expense_cents == 0
    assert aggregate.income_cents == 130_000
    assert account.balance_cents == 130_000
    assert_consistent(session, account.id)


def test_update_that_overdraws_is_rejected():
    session = make_session()
    account = open_account(session, 1000)
    ledger = TransactionLedger(session)
    txn = ledger.create(ALICE, expense(account.id, 300))

    with pytest.raises(InsufficientFunds):
        ledger.update(txn.id, "alice", TransactionUpdate(amount=2000))

    assert session.get(Transaction, txn.id).amount_cents == 30_000
    assert session.get(Account, account.id).balance_cents == 70_000


def test_update_rejects_explicit_null_amount():
    session = make_session()
    account = open_account(session)
    txn = TransactionLedger(session).create(ALICE, expense(account.id, 5))
    with pytest.raises(InvalidAmount):
        TransactionLedger(session).update(
            txn.id, "alice", TransactionUpdate(amount=None)
        )


def test_foreign_transactions_are_not_found():
    session = make_session()
    account = open_account(session)
    ledger = TransactionLedger(session)
    txn = ledger.create(ALICE, expense(account.id, 5))

    with pytest.raises(NotFound):
        ledger.update(txn.id, "bob", TransactionUpdate(note="mine now"))
    with pytest.raises(NotFound):
        ledger.delete(txn.id, "bob")
    assert isinstance(NotFound("x"), LedgerError)


def test_missing_aggregate_is_fatal_on_delta():
    session = make_session()
    account = open_account(session)
    ledger = TransactionLedger(session)
    txn = ledger.create(ALICE, expense(account.id, 5))
    session.delete(aggregate_for(session, account.id))
    session.commit()

    with pytest.raises(AggregateMissing):
        ledger.delete(txn.id, "alice")
    assert session.get(Transaction, txn.id) is not None


def test_import_batch_posts_once():
    session = make_session()
    account = open_account(session, 100)
    rows = [
        TransactionIn(
            account_id=account.id, note="Salary", amount=500, is_income=True
        ),
        expense(account.id, "120.50", note="Groceries"),
        expense(account.id, 79.5, note="Fuel"),
    ]

    txns = TransactionLedger(session).import_batch(ALICE, account.id, rows)

    assert len(txns) == 3
    aggregate = aggregate_for(session, account.id)
    assert aggregate.income_cents == 60_000
    assert aggregate.expense_cents == 20_000
    assert aggregate.previous_income_cents == 10_000
    assert session.get(Account, account.id).balance_cents == 40_000
    assert_consistent(session, account.id)


def test_import_batch_validates_every_row_first():
    session = make_session()
    account = open_account(session, 100)
    other = open_account(session, 100, name="Savings")
    ledger = TransactionLedger(session)
    before = transaction_count(session)

    with pytest.raises(LedgerError):
        ledger.import_batch(
            ALICE, account.id, [expense(account.id, 1), expense(other.id, 1)]
        )
    with pytest.raises(InvalidAmount):
        ledger.import_batch(
            ALICE, account.id, [expense(account.id, 1), expense(account.id, "x")]
        )
    with pytest.raises(InsufficientFunds):
        ledger.import_batch(
            ALICE, account.id, [expense(account.id, 60), expense(account.id, 60)]
        )
    assert transaction_count(session) == before


def test_balance_invariant_over_mixed_sequence():
    session = make_session()
    account = open_account(session, 250)
    ledger = TransactionLedger(session)

    rent = ledger.create(ALICE, expense(account.id, 120, note="Rent"))
    pay = ledger.create(
        ALICE,
        TransactionIn(account_id=account.id, note="Pay", amount=900, is_income=True),
    )
    coffee = ledger.create(ALICE, expense(account.id, "3.75", note="Coffee"))
    ledger.update(rent.id, "alice", TransactionUpdate(amount=150))
    ledger.update(pay.id, "alice", TransactionUpdate(amount="875.25"))
    ledger.delete(coffee.id, "alice")
    ledger.update(rent.id, "alice", TransactionUpdate(is_income=True))

    assert_consistent(session, account.id)
    assert session.get(Account, account.id).balance_cents == 25_000 + 87_525 + 15_000


def test_deleting_account_cascades_to_aggregate_and_transactions():
    session = make_session()
    account = open_account(session)
    TransactionLedger(session).create(ALICE, expense(account.id, 5))

    AccountService(session, "alice").delete(account.id)

    assert session.get(Account, account.id) is None
    assert aggregate_for(session, account.id) is None
    assert transaction_count(session) == 0
    with pytest.raises(NotFound):
        AccountService(session, "alice").get(account.id)


def test_concurrent_writers_on_one_account_serialize(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    event.listen(engine, "connect", _enable_sqlite_pragmas)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with SessionLocal() as session:
        account_id = open_account(session, 1000).id

    def post(is_income: bool, amount: int, count: int) -> None:
        with SessionLocal() as session:
            ledger = TransactionLedger(session)
            for index in range(count):
                ledger.create(
                    ALICE,
                    TransactionIn(
                        account_id=account_id,
                        note=f"Entry {index}",
                        amount=amount,
                        is_income=is_income,
                    ),
                )

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(post, True, 5, 20),
            pool.submit(post, False, 3, 20),
        ]
        for future in futures:
            future.result()

    with SessionLocal() as session:
        assert transaction_count(session) == 41
        assert session.get(Account, account_id).balance_cents == (
            100_000 + 20 * 500 - 20 * 300
        )
        assert_consistent(session, account_id)
    engine.dispose()
