from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    Account,
    AccountType,
    Notification,
    NotificationType,
    RecurrenceFrequency,
    Transaction,
    TransactionType,
    User,
)
from schemas import AccountIn, RecurringTransactionIn, RecurringTransactionUpdate
from services import (
    AccountService,
    InvalidReference,
    NotFound,
    RecurringTransactionService,
    SameAccountTransfer,
    ValidationFailed,
    post_recurring_for_all_users,
)

TODAY = date(2026, 10, 16)


def _setup(session: Session, username: str = "alice") -> tuple[int, int]:
    user = User(username=username, email=f"{username}@example.com", password_hash="x")
    session.add(user)
    session.commit()
    account = AccountService(session, user.id).create(
        AccountIn(name="Checking", type=AccountType.bank, balance_cents=100000)
    )
    return user.id, account.id


def _rule(account_id: int, **overrides) -> RecurringTransactionIn:
    fields = dict(
        name="Rent",
        type=TransactionType.expense,
        amount_cents=50000,
        category="Housing",
        account_id=account_id,
        frequency=RecurrenceFrequency.monthly,
        start_date=date(2026, 8, 31),
    )
    fields.update(overrides)
    return RecurringTransactionIn(**fields)


def _balance(session: Session, account_id: int) -> int:
    return session.get(Account, account_id).balance_cents


def test_auto_post_catches_up_missed_occurrences_once() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, account_id = _setup(session)
        service = RecurringTransactionService(session, user_id)
        rule = service.create(_rule(account_id, auto_post=True))

        assert service.post_due(today=TODAY) == 2
        assert service.post_due(today=TODAY) == 0

        posted = session.scalars(
            select(Transaction).order_by(Transaction.date)
        ).all()
        assert [t.date for t in posted] == [date(2026, 8, 31), date(2026, 9, 30)]
        assert {t.recurring_transaction_id for t in posted} == {rule.id}
        assert _balance(session, account_id) == 0

        rule = service.get(rule.id)
        assert rule.next_date == date(2026, 10, 31)
        assert rule.last_posted_on == date(2026, 9, 30)


def test_approval_rules_wait_until_approved() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, account_id = _setup(session)
        service = RecurringTransactionService(session, user_id)
        rule = service.create(_rule(account_id, start_date=date(2026, 10, 10)))

        assert service.post_due(today=TODAY) == 0
        assert [r.id for r in service.pending(today=TODAY)] == [rule.id]

        txn = service.approve(rule.id, amount_cents=48000, today=TODAY)

        assert txn.type == TransactionType.expense
        assert txn.amount_cents == 48000
        assert txn.date == date(2026, 10, 10)
        assert _balance(session, account_id) == 52000
        assert service.get(rule.id).next_date == date(2026, 11, 10)
        assert service.pending(today=TODAY) == []

        notice = session.scalars(select(Notification)).one()
        assert notice.type == NotificationType.recurring_posted
        assert notice.related_id == txn.id
        assert "480.00 USD" in notice.message


def test_approve_before_due_fails_and_skip_advances_without_posting() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, account_id = _setup(session)
        service = RecurringTransactionService(session, user_id)
        rule = service.create(_rule(account_id, start_date=date(2026, 10, 20)))

        with pytest.raises(ValidationFailed):
            service.approve(rule.id, today=TODAY)

        skipped = service.skip(rule.id)

        assert skipped.next_date == date(2026, 11, 20)
        assert session.scalars(select(Transaction)).all() == []
        assert _balance(session, account_id) == 100000


def test_rule_finishes_after_end_date() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, account_id = _setup(session)
        service = RecurringTransactionService(session, user_id)
        rule = service.create(
            _rule(
                account_id,
                type=TransactionType.income,
                amount_cents=1000,
                category="Allowance",
                frequency=RecurrenceFrequency.weekly,
                start_date=date(2026, 10, 1),
                end_date=date(2026, 10, 10),
                auto_post=True,
            )
        )

        assert service.post_due(today=TODAY) == 2
        assert _balance(session, account_id) == 102000
        assert service.list_active() == []
        with pytest.raises(NotFound):
            service.get(rule.id)


def test_monthly_rule_keeps_its_anchor_day() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, account_id = _setup(session)
        service = RecurringTransactionService(session, user_id)
        rule = service.create(
            _rule(account_id, start_date=date(2026, 1, 31), auto_post=True)
        )

        service.post_due(today=date(2026, 3, 1))

        assert service.get(rule.id).next_date == date(2026, 3, 31)


def test_rule_references_are_validated() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, account_id = _setup(session)
        _, foreign_id = _setup(session, "bob")
        service = RecurringTransactionService(session, user_id)

        with pytest.raises(InvalidReference):
            service.create(_rule(foreign_id))
        with pytest.raises(SameAccountTransfer):
            service.create(
                _rule(
                    account_id,
                    type=TransactionType.transfer,
                    to_account_id=account_id,
                )
            )

        rule = service.create(_rule(account_id))
        with pytest.raises(InvalidReference):
            service.update(rule.id, RecurringTransactionUpdate(account_id=foreign_id))
        with pytest.raises(ValidationFailed):
            service.update(rule.id, RecurringTransactionUpdate(to_account_id=account_id))

        updated = service.update(
            rule.id,
            RecurringTransactionUpdate(amount_cents=51000, next_date=date(2026, 11, 15)),
        )
        assert updated.amount_cents == 51000
        assert updated.anchor_day == 15


def test_failed_posting_leaves_rule_and_balances_alone() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id, account_id = _setup(session)
        service = RecurringTransactionService(session, user_id)
        rule = service.create(_rule(account_id, auto_post=True))
        AccountService(session, user_id).delete(account_id)

        assert service.post_due(today=TODAY) == 0

        assert service.get(rule.id).next_date == date(2026, 8, 31)
        assert _balance(session, account_id) == 100000


def test_post_recurring_for_all_users() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice_id, alice_account = _setup(session, "alice")
        bob_id, bob_account = _setup(session, "bob")
        RecurringTransactionService(session, alice_id).create(
            _rule(alice_account, auto_post=True)
        )
        RecurringTransactionService(session, bob_id).create(
            _rule(bob_account, start_date=date(2026, 10, 1), auto_post=True)
        )

        assert post_recurring_for_all_users(session, today=TODAY) == 3
        assert _balance(session, bob_account) == 50000
