from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Account, AccountType, TransactionType, User
from schemas import AccountIn, TransactionIn, TransactionUpdate
from services import (
    AccountService,
    InvalidReference,
    NotFound,
    SameAccountTransfer,
    TransactionService,
    ValidationFailed,
)


def _user(session: Session, username: str = "alice") -> User:
    user = User(
        username=username,
        email=f"{username}@example.com",
        password_hash="x",
    )
    session.add(user)
    session.commit()
    return user


def _account(
    session: Session, user_id: int, name: str, balance_cents: int = 0
) -> Account:
    return AccountService(session, user_id).create(
        AccountIn(name=name, type=AccountType.bank, balance_cents=balance_cents)
    )


def _balance(session: Session, account_id: int) -> int:
    return session.get(Account, account_id).balance_cents


def test_income_transfer_and_deletes_keep_balances_consistent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        checking = _account(session, user.id, "Checking", 10000)
        savings = _account(session, user.id, "Savings")
        service = TransactionService(session, user.id)

        income = service.create(
            TransactionIn(
                type=TransactionType.income,
                amount_cents=5000,
                category="Salary",
                date=date(2026, 10, 1),
                account_id=checking.id,
            )
        )
        assert _balance(session, checking.id) == 15000

        transfer = service.create(
            TransactionIn(
                type=TransactionType.transfer,
                amount_cents=3000,
                category="Savings",
                date=date(2026, 10, 2),
                account_id=checking.id,
                to_account_id=savings.id,
            )
        )
        assert _balance(session, checking.id) == 12000
        assert _balance(session, savings.id) == 3000

        service.delete(transfer.id)
        assert _balance(session, checking.id) == 15000
        assert _balance(session, savings.id) == 0

        service.delete(income.id)
        assert _balance(session, checking.id) == 10000


def test_expense_and_liability_debit_the_source_account() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        card = _account(session, user.id, "Card")
        service = TransactionService(session, user.id)

        for txn_type, amount in (
            (TransactionType.expense, 2500),
            (TransactionType.liability, 1000),
        ):
            service.create(
                TransactionIn(
                    type=txn_type,
                    amount_cents=amount,
                    category="Misc",
                    date=date(2026, 10, 3),
                    account_id=card.id,
                )
            )

        assert _balance(session, card.id) == -3500


def test_update_applies_only_the_amount_delta() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        checking = _account(session, user.id, "Checking", 10000)
        service = TransactionService(session, user.id)
        txn = service.create(
            TransactionIn(
                type=TransactionType.expense,
                amount_cents=2000,
                category="Food",
                date=date(2026, 10, 5),
                account_id=checking.id,
            )
        )
        assert _balance(session, checking.id) == 8000

        updated = service.update(txn.id, TransactionUpdate(amount_cents=3500))

        assert updated.amount_cents == 3500
        assert updated.category == "Food"
        assert _balance(session, checking.id) == 6500


def test_income_update_shifts_balance_by_the_difference() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        checking = _account(session, user.id, "Checking", 10000)
        service = TransactionService(session, user.id)
        txn = service.create(
            TransactionIn(
                type=TransactionType.income,
                amount_cents=4000,
                category="Salary",
                account_id=checking.id,
            )
        )
        assert _balance(session, checking.id) == 14000

        service.update(txn.id, TransactionUpdate(amount_cents=2500))
        assert _balance(session, checking.id) == 12500

        service.update(txn.id, TransactionUpdate(amount_cents=6000))
        assert _balance(session, checking.id) == 16000


def test_transfer_update_shifts_both_accounts_by_the_difference() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        checking = _account(session, user.id, "Checking", 10000)
        savings = _account(session, user.id, "Savings", 1000)
        service = TransactionService(session, user.id)
        txn = service.create(
            TransactionIn(
                type=TransactionType.transfer,
                amount_cents=3000,
                category="Savings",
                account_id=checking.id,
                to_account_id=savings.id,
            )
        )

        service.update(txn.id, TransactionUpdate(amount_cents=4500))

        assert _balance(session, checking.id) == 10000 - 4500
        assert _balance(session, savings.id) == 1000 + 4500


def test_transfer_create_update_delete_round_trip_nets_to_zero() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        checking = _account(session, user.id, "Checking", 10000)
        savings = _account(session, user.id, "Savings", 2000)
        brokerage = _account(session, user.id, "Brokerage", 500)
        service = TransactionService(session, user.id)

        txn = service.create(
            TransactionIn(
                type=TransactionType.transfer,
                amount_cents=3000,
                category="Savings",
                account_id=checking.id,
                to_account_id=savings.id,
            )
        )
        service.update(
            txn.id,
            TransactionUpdate(amount_cents=1200, to_account_id=brokerage.id),
        )
        assert _balance(session, checking.id) == 8800
        assert _balance(session, savings.id) == 2000
        assert _balance(session, brokerage.id) == 1700

        service.delete(txn.id)

        assert _balance(session, checking.id) == 10000
        assert _balance(session, savings.id) == 2000
        assert _balance(session, brokerage.id) == 500


def test_zero_amounts_are_rejected() -> None:
    with pytest.raises(ValidationError):
        TransactionIn(
            type=TransactionType.income,
            amount_cents=0,
            category="Gift",
            account_id=1,
        )
    with pytest.raises(ValidationError):
        TransactionUpdate(amount_cents=0)


def test_update_moving_to_another_account_and_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        checking = _account(session, user.id, "Checking", 10000)
        savings = _account(session, user.id, "Savings", 500)
        service = TransactionService(session, user.id)
        txn = service.create(
            TransactionIn(
                type=TransactionType.expense,
                amount_cents=1000,
                category="Food",
                date=date(2026, 10, 5),
                account_id=checking.id,
            )
        )

        service.update(
            txn.id,
            TransactionUpdate(type=TransactionType.transfer, to_account_id=savings.id),
        )
        assert _balance(session, checking.id) == 9000
        assert _balance(session, savings.id) == 1500

        moved = service.update(
            txn.id,
            TransactionUpdate(type=TransactionType.income, account_id=savings.id),
        )
        assert moved.to_account_id is None
        assert moved.account.name == "Savings"
        assert _balance(session, checking.id) == 10000
        assert _balance(session, savings.id) == 1500


def test_transfer_to_same_account_is_rejected_without_mutation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        checking = _account(session, user.id, "Checking", 10000)
        service = TransactionService(session, user.id)

        with pytest.raises(SameAccountTransfer):
            service.create(
                TransactionIn(
                    type=TransactionType.transfer,
                    amount_cents=100,
                    category="Move",
                    account_id=checking.id,
                    to_account_id=checking.id,
                )
            )

        with pytest.raises(ValidationFailed):
            service.create(
                TransactionIn(
                    type=TransactionType.transfer,
                    amount_cents=100,
                    category="Move",
                    account_id=checking.id,
                )
            )

        assert _balance(session, checking.id) == 10000
        assert service.list().total == 0


def test_inactive_and_foreign_accounts_are_invalid_references() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        bob = _user(session, "bob")
        closed = _account(session, alice.id, "Closed", 700)
        AccountService(session, alice.id).delete(closed.id)
        foreign = _account(session, bob.id, "Bob's", 900)
        service = TransactionService(session, alice.id)

        for account_id in (closed.id, foreign.id, 9999):
            with pytest.raises(InvalidReference):
                service.create(
                    TransactionIn(
                        type=TransactionType.income,
                        amount_cents=100,
                        category="Gift",
                        account_id=account_id,
                    )
                )

        assert _balance(session, closed.id) == 700
        assert _balance(session, foreign.id) == 900


def test_failed_update_leaves_transaction_and_balances_untouched() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        bob = _user(session, "bob")
        checking = _account(session, alice.id, "Checking", 10000)
        foreign = _account(session, bob.id, "Bob's")
        service = TransactionService(session, alice.id)
        txn = service.create(
            TransactionIn(
                type=TransactionType.expense,
                amount_cents=1000,
                category="Food",
                account_id=checking.id,
            )
        )

        with pytest.raises(InvalidReference):
            service.update(
                txn.id, TransactionUpdate(amount_cents=5000, account_id=foreign.id)
            )

        assert service.get(txn.id).amount_cents == 1000
        assert _balance(session, checking.id) == 9000
        assert _balance(session, foreign.id) == 0


def test_other_users_transactions_are_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        bob = _user(session, "bob")
        checking = _account(session, alice.id, "Checking")
        txn = TransactionService(session, alice.id).create(
            TransactionIn(
                type=TransactionType.income,
                amount_cents=100,
                category="Gift",
                account_id=checking.id,
            )
        )

        with pytest.raises(NotFound):
            TransactionService(session, bob.id).get(txn.id)
        with pytest.raises(NotFound):
            TransactionService(session, bob.id).delete(txn.id)
        assert _balance(session, checking.id) == 100


def test_recalculate_repairs_drifted_balance() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        checking = _account(session, user.id, "Checking", 10000)
        savings = _account(session, user.id, "Savings")
        service = TransactionService(session, user.id)
        service.create(
            TransactionIn(
                type=TransactionType.income,
                amount_cents=5000,
                category="Salary",
                account_id=checking.id,
            )
        )
        service.create(
            TransactionIn(
                type=TransactionType.transfer,
                amount_cents=2000,
                category="Savings",
                account_id=checking.id,
                to_account_id=savings.id,
            )
        )

        session.get(Account, checking.id).balance_cents = 1
        session.commit()

        accounts = AccountService(session, user.id)
        check = accounts.recalculate(checking.id)
        assert check.stored_cents == 1
        assert check.calculated_cents == 13000
        assert check.difference_cents == 12999
        assert _balance(session, checking.id) == 13000

        assert accounts.recalculate(savings.id).difference_cents == 0
