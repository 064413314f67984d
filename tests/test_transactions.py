from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from config import get_settings
from database import Base
from models import AccountType, Bill, BudgetPeriod, TransactionType, User
from schemas import AccountIn, BillIn, BillPaymentIn, BudgetIn, TransactionIn
from services import (
    AccountService,
    BillService,
    BudgetService,
    TransactionFilters,
    TransactionService,
)

INCOME = TransactionType.income
EXPENSE = TransactionType.expense


def _setup(session: Session) -> tuple[int, int, int]:
    user = User(username="alice", email="alice@example.com", password_hash="x")
    session.add(user)
    session.commit()
    accounts = AccountService(session, user.id)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.bank))
    savings = accounts.create(AccountIn(name="Savings", type=AccountType.bank))
    return user.id, checking.id, savings.id


def _add(
    service: TransactionService,
    txn_type: TransactionType,
    amount: int,
    category: str,
    on: date,
    account_id: int,
    to_account_id=None,
):
    return service.create(
        TransactionIn(
            type=txn_type,
            amount_cents=amount,
            category=category,
            date=on,
            account_id=account_id,
            to_account_id=to_account_id,
        )
    )


def test_list_orders_newest_first_and_paginates() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, checking, _ = _setup(session)
        service = TransactionService(session, user_id)
        for day in range(1, 6):
            _add(service, EXPENSE, 100 * day, "Food", date(2026, 9, day), checking)

        first = service.list(page=1, limit=2)
        assert first.total == 5
        assert first.total_pages == 3
        assert [t.date.day for t in first.items] == [5, 4]

        last = service.list(page=3, limit=2)
        assert [t.date.day for t in last.items] == [1]

        assert service.list(limit=1000).limit == 100
        assert [t.date.day for t in service.recent(2)] == [5, 4]


def test_list_filters_by_type_category_account_and_dates() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, checking, savings = _setup(session)
        service = TransactionService(session, user_id)
        _add(service, INCOME, 50000, "Salary", date(2026, 9, 1), checking)
        _add(service, EXPENSE, 1200, "Food", date(2026, 9, 10), checking)
        _add(service, EXPENSE, 800, "Food", date(2026, 10, 2), checking)
        _add(
            service,
            TransactionType.transfer,
            10000,
            "Savings",
            date(2026, 9, 15),
            checking,
            savings,
        )

        by_type = service.list(TransactionFilters(type=TransactionType.expense))
        assert by_type.total == 2

        by_category = service.list(TransactionFilters(category="Salary"))
        assert [t.amount_cents for t in by_category.items] == [50000]

        by_destination = service.list(TransactionFilters(account_id=savings))
        assert [t.type for t in by_destination.items] == [TransactionType.transfer]

        september = service.list(
            TransactionFilters(start_date=date(2026, 9, 1), end_date=date(2026, 9, 30))
        )
        assert september.total == 3


def test_transaction_carries_account_references() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, checking, savings = _setup(session)
        service = TransactionService(session, user_id)
        txn = _add(
            service,
            TransactionType.transfer,
            500,
            "Savings",
            date(2026, 10, 1),
            checking,
            savings,
        )

        fetched = service.get(txn.id)
        assert fetched.account.name == "Checking"
        assert fetched.to_account.name == "Savings"


def test_expenses_feed_budget_spending_when_enabled(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "track_budget_spending", True)
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, checking, _ = _setup(session)
        budget = BudgetService(session, user_id).create(
            BudgetIn(
                name="Groceries",
                category="Food",
                amount_cents=40000,
                period=BudgetPeriod.monthly,
                start_date=date(2026, 10, 1),
                end_date=date(2026, 10, 31),
            )
        )
        service = TransactionService(session, user_id)
        inside = _add(service, EXPENSE, 2500, "Food", date(2026, 10, 4), checking)
        _add(service, EXPENSE, 9900, "Food", date(2026, 9, 4), checking)
        _add(service, INCOME, 7000, "Food", date(2026, 10, 4), checking)

        assert BudgetService(session, user_id).get(budget.id).spent_cents == 2500

        service.delete(inside.id)
        assert BudgetService(session, user_id).get(budget.id).spent_cents == 0


def test_deleting_payment_transaction_unlinks_bill() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, checking, _ = _setup(session)
        bills = BillService(session, user_id)
        bill = bills.create(
            BillIn(
                name="Internet",
                amount_cents=4500,
                due_date=date(2026, 10, 20),
                account_id=checking,
                category="Utilities",
            )
        )
        payment = bills.pay(bill.id, BillPaymentIn(), today=date(2026, 10, 16))

        TransactionService(session, user_id).delete(payment.transaction.id)

        session.expire_all()
        stored = session.get(Bill, bill.id)
        assert stored.payment_transaction_id is None
        assert stored.is_paid is True
        assert AccountService(session, user_id).get(checking).balance_cents == 0
