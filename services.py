from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterator, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import (
    Account,
    AccountType,
    Bill,
    Budget,
    Goal,
    Notification,
    NotificationPriority,
    NotificationType,
    RecurringTransaction,
    Settlement,
    SettlementType,
    Transaction,
    TransactionType,
    User,
    utc_now,
)
from periods import (
    Period,
    add_months,
    month_start,
    previous_month,
    previous_year,
    settlement_label,
)
from recurrence import calculate_next_date, local_today, next_due_date
from schemas import (
    AccountIn,
    AccountSummary,
    AccountUpdate,
    AnalyticsOut,
    AuthOut,
    BalanceCheckOut,
    BillIn,
    BillPaymentIn,
    BillUpdate,
    BudgetIn,
    BudgetUpdate,
    CashFlowPoint,
    CategoryAmount,
    GoalIn,
    GoalUpdate,
    LoginIn,
    MonthlyPoint,
    PendingSettlement,
    PendingSettlementsOut,
    RecurringTransactionIn,
    RecurringTransactionUpdate,
    RegisterIn,
    SettlementIn,
    SettlementUpdate,
    TokenPairOut,
    TransactionIn,
    TransactionUpdate,
    UserOut,
)
from security import (
    ACCESS,
    REFRESH,
    access_token_ttl,
    decode_token,
    hash_password,
    issue_token,
    verify_password,
)

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    validation = "validation"
    not_found = "not_found"
    invalid_reference = "invalid_reference"
    unauthorized = "unauthorized"
    internal = "internal"


class ServiceError(ValueError):
    kind = ErrorKind.internal


class ValidationFailed(ServiceError):
    kind = ErrorKind.validation


class NotFound(ServiceError):
    kind = ErrorKind.not_found


class InvalidReference(ServiceError):
    kind = ErrorKind.invalid_reference


class SameAccountTransfer(InvalidReference):
    pass


class Unauthorized(ServiceError):
    kind = ErrorKind.unauthorized


@contextmanager
def _atomic(session: Session) -> Iterator[None]:
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


def _apply_changes(
    obj: object, changes: dict[str, object], nullable: frozenset[str] = frozenset()
) -> None:
    for field, value in changes.items():
        if value is None and field not in nullable:
            raise ValidationFailed(f"{field} cannot be null")
        setattr(obj, field, value)


def income_expense_between(
    session: Session, user_id: int, start: date, end: date
) -> tuple[int, int]:
    stmt = select(
        func.coalesce(
            func.sum(
                case(
                    (
                        Transaction.type == TransactionType.income,
                        Transaction.amount_cents,
                    ),
                    else_=0,
                )
            ),
            0,
        ),
        func.coalesce(
            func.sum(
                case(
                    (
                        Transaction.type == TransactionType.expense,
                        Transaction.amount_cents,
                    ),
                    else_=0,
                )
            ),
            0,
        ),
    ).where(
        Transaction.user_id == user_id,
        Transaction.date.between(start, end),
    )
    income, expense = session.execute(stmt).one()
    return int(income or 0), int(expense or 0)


def format_currency(cents: int, currency: str) -> str:
    return f"{cents / 100:,.2f} {currency}"


# -- balance effects --------------------------------------------------------


@dataclass(frozen=True)
class Effect:
    """Snapshot of the fields that decide a transaction's balance deltas."""

    type: TransactionType
    amount_cents: int
    account_id: int
    to_account_id: Optional[int]
    category: str
    on_date: date

    @classmethod
    def of(cls, txn: Transaction) -> "Effect":
        return cls(
            type=TransactionType(txn.type),
            amount_cents=txn.amount_cents,
            account_id=txn.account_id,
            to_account_id=txn.to_account_id,
            category=txn.category,
            on_date=txn.date,
        )

    def deltas(self) -> list[tuple[int, int]]:
        if self.type == TransactionType.income:
            return [(self.account_id, self.amount_cents)]
        if self.type in (TransactionType.expense, TransactionType.liability):
            return [(self.account_id, -self.amount_cents)]
        if self.to_account_id is None:
            raise ValidationFailed("Destination account is required for transfers")
        return [
            (self.account_id, -self.amount_cents),
            (self.to_account_id, self.amount_cents),
        ]


def _shift_balances(session: Session, user_id: int, effect: Effect, sign: int) -> None:
    for account_id, delta in effect.deltas():
        session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == user_id)
            .values(balance_cents=Account.balance_cents + sign * delta)
        )
    if effect.type == TransactionType.expense and get_settings().track_budget_spending:
        BudgetService(session, user_id).record_spending(
            effect.category,
            sign * effect.amount_cents,
            on_date=effect.on_date,
            commit=False,
        )


def apply_effect(session: Session, user_id: int, effect: Effect) -> None:
    _shift_balances(session, user_id, effect, 1)


def revert_effect(session: Session, user_id: int, effect: Effect) -> None:
    _shift_balances(session, user_id, effect, -1)


# -- auth -------------------------------------------------------------------


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _token_pair(self, user: User) -> TokenPairOut:
        return TokenPairOut(
            token=issue_token(user.id, user.username, ACCESS),
            refresh_token=issue_token(user.id, user.username, REFRESH),
            expires_in=access_token_ttl(),
        )

    def _auth_out(self, user: User) -> AuthOut:
        pair = self._token_pair(user)
        return AuthOut(
            user=UserOut.model_validate(user),
            token=pair.token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )

    def register(self, data: RegisterIn) -> AuthOut:
        username = data.username.strip()
        email = data.email.strip().lower()
        existing = self.session.scalar(
            select(User.id).where(
                or_(
                    func.lower(User.username) == username.lower(),
                    func.lower(User.email) == email,
                )
            )
        )
        if existing:
            raise ValidationFailed("User with this username or email already exists")

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(data.password),
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id} username={user.username}")
        return self._auth_out(user)

    def login(self, data: LoginIn) -> AuthOut:
        user = self.session.scalar(
            select(User).where(
                func.lower(User.username) == data.username.strip().lower(),
                User.is_active.is_(True),
            )
        )
        if not user or not verify_password(data.password, user.password_hash):
            logger.info(f"login_failed: username={data.username}")
            raise Unauthorized("Invalid username or password")

        user.last_login_at = utc_now()
        self.session.commit()
        logger.info(f"login_succeeded: user_id={user.id}")
        return self._auth_out(user)

    def refresh(self, refresh_token: str) -> TokenPairOut:
        payload = decode_token(refresh_token, REFRESH)
        if payload is None:
            raise Unauthorized("Invalid refresh token")
        user = self._active_user(payload["u"])
        if user is None:
            raise Unauthorized("Invalid refresh token")
        return self._token_pair(user)

    def authenticate(self, access_token: str) -> User:
        payload = decode_token(access_token, ACCESS)
        if payload is None:
            raise Unauthorized("Invalid authentication token")
        user = self._active_user(payload["u"])
        if user is None:
            raise Unauthorized("Invalid authentication token")
        return user

    def _active_user(self, user_id: int) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.id == user_id, User.is_active.is_(True))
        )


# -- accounts ---------------------------------------------------------------


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_active(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.is_active.is_(True))
            .order_by(Account.name, Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def summary(self, accounts: list[Account]) -> AccountSummary:
        total_balance = sum(a.balance_cents for a in accounts)
        pending_liabilities = sum(
            abs(a.balance_cents) for a in accounts if a.type == AccountType.loan
        )
        return AccountSummary(
            total_balance=total_balance,
            pending_liabilities=pending_liabilities,
            net_worth=total_balance - pending_liabilities,
        )

    def _owned(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if not account:
            raise NotFound("Account not found")
        return account

    def get(self, account_id: int) -> Account:
        account = self._owned(account_id)
        if not account.is_active:
            raise NotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance_cents=data.balance_cents,
            opening_balance_cents=data.balance_cents,
            currency=data.currency.upper(),
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(
            f"account_created: user_id={self.user_id} id={account.id} "
            f"opening_balance_cents={account.opening_balance_cents}"
        )
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        changes = data.changes()
        if "name" in changes and changes["name"] is not None:
            changes["name"] = str(changes["name"]).strip()
        if "currency" in changes and changes["currency"] is not None:
            changes["currency"] = str(changes["currency"]).upper()
        _apply_changes(account, changes)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self._owned(account_id)
        account.is_active = False
        self.session.commit()
        logger.info(f"account_deactivated: user_id={self.user_id} id={account_id}")

    def recalculate(self, account_id: int) -> BalanceCheckOut:
        """Rebuild the stored balance from the opening balance and the ledger."""
        account = self._owned(account_id)
        outgoing = self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.income,
                                Transaction.amount_cents,
                            ),
                            else_=-Transaction.amount_cents,
                        )
                    ),
                    0,
                )
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.account_id == account.id,
            )
        ).scalar_one()
        incoming = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.to_account_id == account.id,
                Transaction.type == TransactionType.transfer,
            )
        ).scalar_one()

        stored = account.balance_cents
        calculated = account.opening_balance_cents + int(outgoing or 0) + int(
            incoming or 0
        )
        if calculated != stored:
            logger.warning(
                f"balance_drift: user_id={self.user_id} account_id={account.id} "
                f"stored={stored} calculated={calculated}"
            )
            account.balance_cents = calculated
        self.session.commit()
        return BalanceCheckOut(
            account_id=account.id,
            stored_cents=stored,
            calculated_cents=calculated,
            difference_cents=calculated - stored,
        )


# -- transactions -----------------------------------------------------------


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    account_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass
class Page:
    items: list
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        if not self.limit:
            return 0
        return (self.total + self.limit - 1) // self.limit


MAX_PAGE_SIZE = 100


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _with_accounts(self):
        return select(Transaction).options(
            joinedload(Transaction.account), joinedload(Transaction.to_account)
        )

    def _active_account(self, account_id: int, message: str) -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id,
                Account.user_id == self.user_id,
                Account.is_active.is_(True),
            )
        )
        if not account:
            raise InvalidReference(message)
        return account

    def _validate_references(
        self,
        txn_type: TransactionType,
        account_id: int,
        to_account_id: Optional[int],
        *,
        check_source: bool = True,
        check_destination: bool = True,
    ) -> None:
        if check_source:
            self._active_account(account_id, "Invalid account")
        if txn_type == TransactionType.transfer:
            if to_account_id is None:
                raise ValidationFailed("Destination account is required for transfers")
            if check_destination:
                self._active_account(to_account_id, "Invalid destination account")
            if account_id == to_account_id:
                raise SameAccountTransfer(
                    "Source and destination accounts cannot be the same"
                )
        elif to_account_id is not None:
            raise ValidationFailed("Only transfers can have a destination account")

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            self._with_accounts().where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        filters = filters or TransactionFilters()
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        conditions = [Transaction.user_id == self.user_id]
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category:
            conditions.append(Transaction.category == filters.category)
        if filters.account_id:
            conditions.append(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        if filters.start_date:
            conditions.append(Transaction.date >= filters.start_date)
        if filters.end_date:
            conditions.append(Transaction.date <= filters.end_date)

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        stmt = (
            self._with_accounts()
            .where(*conditions)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = list(self.session.scalars(stmt).unique().all())
        return Page(items=items, page=page, limit=limit, total=total)

    def recent(self, limit: int = 5) -> list[Transaction]:
        stmt = (
            self._with_accounts()
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(max(1, min(limit, MAX_PAGE_SIZE)))
        )
        return list(self.session.scalars(stmt).unique().all())

    def insert(self, data: TransactionIn) -> Transaction:
        """Stage a transaction and its balance effect without committing."""
        self._validate_references(data.type, data.account_id, data.to_account_id)
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category=data.category.strip(),
            description=data.description,
            notes=data.notes,
            date=data.date or local_today(),
            account_id=data.account_id,
            to_account_id=data.to_account_id,
        )
        self.session.add(txn)
        self.session.flush()
        apply_effect(self.session, self.user_id, Effect.of(txn))
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        with _atomic(self.session):
            txn = self.insert(data)
        logger.info(
            f"transaction_created: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return self.get(txn.id)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.changes()

        new_type = changes.get("type") or txn.type
        new_account_id = changes.get("account_id") or txn.account_id
        if new_type == TransactionType.transfer:
            new_to_account_id = (
                changes["to_account_id"]
                if "to_account_id" in changes
                else txn.to_account_id
            )
        else:
            if changes.get("to_account_id") is not None:
                raise ValidationFailed("Only transfers can have a destination account")
            new_to_account_id = None
        self._validate_references(
            new_type,
            new_account_id,
            new_to_account_id,
            check_source="account_id" in changes,
            check_destination="to_account_id" in changes
            or new_type != txn.type,
        )
        changes.pop("to_account_id", None)
        if "category" in changes and changes["category"] is not None:
            changes["category"] = str(changes["category"]).strip()

        before = Effect.of(txn)
        with _atomic(self.session):
            revert_effect(self.session, self.user_id, before)
            _apply_changes(txn, changes, nullable=frozenset({"description", "notes"}))
            txn.to_account_id = new_to_account_id
            self.session.flush()
            apply_effect(self.session, self.user_id, Effect.of(txn))

        logger.info(
            f"transaction_updated: user_id={self.user_id} id={txn.id} "
            f"fields={sorted(changes)}"
        )
        self.session.expire(txn)
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        effect = Effect.of(txn)
        with _atomic(self.session):
            revert_effect(self.session, self.user_id, effect)
            self.session.execute(
                update(Bill)
                .where(
                    Bill.user_id == self.user_id,
                    Bill.payment_transaction_id == txn.id,
                )
                .values(payment_transaction_id=None)
            )
            self.session.delete(txn)
        logger.info(
            f"transaction_deleted: user_id={self.user_id} id={transaction_id} "
            f"type={effect.type.value} amount_cents={effect.amount_cents}"
        )


# -- budgets ----------------------------------------------------------------


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def _check_window(start: date, end: date) -> None:
        if end <= start:
            raise ValidationFailed("End date must be after start date")

    def list_active(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            .order_by(Budget.name, Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def _owned(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget).where(Budget.id == budget_id, Budget.user_id == self.user_id)
        )
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def get(self, budget_id: int) -> Budget:
        budget = self._owned(budget_id)
        if not budget.is_active:
            raise NotFound("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        self._check_window(data.start_date, data.end_date)
        budget = Budget(
            user_id=self.user_id,
            name=data.name.strip(),
            category=data.category.strip(),
            amount_cents=data.amount_cents,
            spent_cents=0,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            alert_threshold=data.alert_threshold,
            notes=data.notes,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        changes = data.changes()
        self._check_window(
            changes.get("start_date") or budget.start_date,
            changes.get("end_date") or budget.end_date,
        )
        _apply_changes(budget, changes, nullable=frozenset({"notes"}))
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self._owned(budget_id)
        budget.is_active = False
        self.session.commit()

    def active_for(self, category: str, on_date: date) -> Optional[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.is_active.is_(True),
                func.lower(Budget.category) == category.strip().lower(),
                Budget.start_date <= on_date,
                Budget.end_date >= on_date,
            )
            .order_by(Budget.start_date.desc(), Budget.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def record_spending(
        self,
        category: str,
        amount_cents: int,
        on_date: Optional[date] = None,
        *,
        commit: bool = True,
    ) -> Optional[Budget]:
        budget = self.active_for(category, on_date or local_today())
        if budget is None:
            return None
        budget.spent_cents = max(0, budget.spent_cents + amount_cents)
        if budget.spent_cents > budget.amount_cents:
            logger.info(
                f"budget_exceeded: user_id={self.user_id} budget_id={budget.id} "
                f"spent_cents={budget.spent_cents} amount_cents={budget.amount_cents}"
            )
        if commit:
            self.session.commit()
            self.session.refresh(budget)
        return budget


# -- goals ------------------------------------------------------------------


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_active(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id, Goal.is_active.is_(True))
            .order_by(Goal.target_date, Goal.id)
        )
        return list(self.session.scalars(stmt).all())

    def _owned(self, goal_id: int) -> Goal:
        goal = self.session.scalar(
            select(Goal).where(Goal.id == goal_id, Goal.user_id == self.user_id)
        )
        if not goal:
            raise NotFound("Goal not found")
        return goal

    def get(self, goal_id: int) -> Goal:
        goal = self._owned(goal_id)
        if not goal.is_active:
            raise NotFound("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            description=data.description,
            target_cents=data.target_cents,
            current_cents=data.current_cents,
            target_date=data.target_date,
            category=data.category.strip(),
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self.get(goal_id)
        _apply_changes(goal, data.changes(), nullable=frozenset({"description"}))
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self._owned(goal_id)
        goal.is_active = False
        self.session.commit()

    def record_progress(self, category: str, amount_cents: int) -> Optional[Goal]:
        goal = self.session.scalar(
            select(Goal)
            .where(
                Goal.user_id == self.user_id,
                Goal.is_active.is_(True),
                func.lower(Goal.category) == category.strip().lower(),
            )
            .order_by(Goal.target_date, Goal.id)
            .limit(1)
        )
        if goal is None:
            return None
        goal.current_cents = max(0, goal.current_cents + amount_cents)
        self.session.commit()
        self.session.refresh(goal)
        if goal.current_cents >= goal.target_cents:
            logger.info(f"goal_reached: user_id={self.user_id} goal_id={goal.id}")
        return goal


# -- bills ------------------------------------------------------------------


@dataclass
class BillPayment:
    bill: Bill
    transaction: Transaction
    next_bill: Optional[Bill] = None


class BillService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _active_query(self):
        return (
            select(Bill)
            .options(joinedload(Bill.account))
            .where(Bill.user_id == self.user_id, Bill.is_active.is_(True))
        )

    def _check_account(self, account_id: int) -> None:
        exists = self.session.scalar(
            select(Account.id).where(
                Account.id == account_id,
                Account.user_id == self.user_id,
                Account.is_active.is_(True),
            )
        )
        if not exists:
            raise InvalidReference("Invalid account")

    def list_active(self) -> list[Bill]:
        stmt = self._active_query().order_by(Bill.due_date, Bill.id)
        return list(self.session.scalars(stmt).all())

    def get(self, bill_id: int) -> Bill:
        bill = self.session.scalar(self._active_query().where(Bill.id == bill_id))
        if not bill:
            raise NotFound("Bill not found")
        return bill

    def create(self, data: BillIn) -> Bill:
        self._check_account(data.account_id)
        bill = Bill(
            user_id=self.user_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            due_date=data.due_date,
            is_recurring=data.is_recurring,
            frequency=data.frequency,
            interval_count=data.interval_count,
            recurrence_end_date=data.recurrence_end_date,
            anchor_day=data.due_date.day,
            account_id=data.account_id,
            category=data.category.strip(),
            notes=data.notes,
        )
        self.session.add(bill)
        self.session.commit()
        return self.get(bill.id)

    def update(self, bill_id: int, data: BillUpdate) -> Bill:
        bill = self.get(bill_id)
        changes = data.changes()
        if changes.get("account_id") is not None:
            self._check_account(int(changes["account_id"]))
        is_recurring = changes.get("is_recurring", bill.is_recurring)
        frequency = changes.get("frequency", bill.frequency)
        if is_recurring and frequency is None:
            raise ValidationFailed("Recurring bills require a frequency")
        _apply_changes(
            bill,
            changes,
            nullable=frozenset({"frequency", "recurrence_end_date", "notes"}),
        )
        if "due_date" in changes:
            bill.anchor_day = bill.due_date.day
        if "is_paid" in changes:
            bill.paid_at = utc_now() if bill.is_paid else None
        self.session.commit()
        self.session.expire(bill)
        return self.get(bill.id)

    def delete(self, bill_id: int) -> None:
        bill = self.session.scalar(
            select(Bill).where(Bill.id == bill_id, Bill.user_id == self.user_id)
        )
        if not bill:
            raise NotFound("Bill not found")
        bill.is_active = False
        self.session.commit()

    def upcoming(self, days: int = 7, today: Optional[date] = None) -> list[Bill]:
        today = today or local_today()
        stmt = (
            self._active_query()
            .where(
                Bill.is_paid.is_(False),
                Bill.due_date <= today + timedelta(days=max(0, days)),
            )
            .order_by(Bill.due_date, Bill.id)
        )
        return list(self.session.scalars(stmt).all())

    def overdue(self, today: Optional[date] = None) -> list[Bill]:
        today = today or local_today()
        stmt = (
            self._active_query()
            .where(Bill.is_paid.is_(False), Bill.due_date < today)
            .order_by(Bill.due_date, Bill.id)
        )
        return list(self.session.scalars(stmt).all())

    def pay(
        self, bill_id: int, data: BillPaymentIn, today: Optional[date] = None
    ) -> BillPayment:
        bill = self.get(bill_id)
        if bill.is_paid:
            raise ValidationFailed("Bill is already paid")
        today = today or local_today()
        transactions = TransactionService(self.session, self.user_id)

        with _atomic(self.session):
            txn = transactions.insert(
                TransactionIn(
                    type=TransactionType.expense,
                    amount_cents=(
                        data.amount_cents
                        if data.amount_cents is not None
                        else bill.amount_cents
                    ),
                    category=bill.category,
                    description=f"Bill payment: {bill.name}",
                    notes=data.notes or f"Paid {bill.name}",
                    date=today,
                    account_id=data.account_id or bill.account_id,
                )
            )
            bill.is_paid = True
            bill.paid_at = utc_now()
            bill.payment_transaction_id = txn.id

            next_bill = None
            due = next_due_date(bill, anchor_day=bill.anchor_day)
            if due is not None:
                next_bill = Bill(
                    user_id=self.user_id,
                    name=bill.name,
                    amount_cents=bill.amount_cents,
                    due_date=due,
                    is_recurring=True,
                    frequency=bill.frequency,
                    interval_count=bill.interval_count,
                    recurrence_end_date=bill.recurrence_end_date,
                    anchor_day=bill.anchor_day,
                    account_id=bill.account_id,
                    category=bill.category,
                    notes=bill.notes,
                )
                self.session.add(next_bill)

        logger.info(
            f"bill_paid: user_id={self.user_id} bill_id={bill.id} "
            f"transaction_id={txn.id} next_due={next_bill.due_date if next_bill else None}"
        )
        return BillPayment(
            bill=self.get(bill.id),
            transaction=transactions.get(txn.id),
            next_bill=self.get(next_bill.id) if next_bill else None,
        )


# -- recurring transactions -------------------------------------------------


MAX_CATCH_UP = 365


class RecurringTransactionService:
    """Templates that post a transaction every interval.

    Auto-post templates are posted by the scheduler, catching up missed
    occurrences. The others wait in ``pending()`` until the user approves
    or skips the due occurrence.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _active_query(self):
        return (
            select(RecurringTransaction)
            .options(
                joinedload(RecurringTransaction.account),
                joinedload(RecurringTransaction.to_account),
            )
            .where(
                RecurringTransaction.user_id == self.user_id,
                RecurringTransaction.is_active.is_(True),
            )
        )

    def list_active(self) -> list[RecurringTransaction]:
        stmt = self._active_query().order_by(
            RecurringTransaction.next_date, RecurringTransaction.id
        )
        return list(self.session.scalars(stmt).unique().all())

    def get(self, rule_id: int) -> RecurringTransaction:
        rule = self.session.scalar(
            self._active_query().where(RecurringTransaction.id == rule_id)
        )
        if not rule:
            raise NotFound("Recurring transaction not found")
        return rule

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        TransactionService(self.session, self.user_id)._validate_references(
            data.type, data.account_id, data.to_account_id
        )
        rule = RecurringTransaction(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            amount_cents=data.amount_cents,
            category=data.category.strip(),
            description=data.description,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            frequency=data.frequency,
            interval_count=data.interval_count,
            anchor_day=data.start_date.day,
            next_date=data.start_date,
            end_date=data.end_date,
            auto_post=data.auto_post,
        )
        self.session.add(rule)
        self.session.commit()
        logger.info(
            f"recurring_created: user_id={self.user_id} id={rule.id} "
            f"type={rule.type.value} next_date={rule.next_date}"
        )
        return self.get(rule.id)

    def update(
        self, rule_id: int, data: RecurringTransactionUpdate
    ) -> RecurringTransaction:
        rule = self.get(rule_id)
        changes = data.changes()
        account_id = changes.get("account_id") or rule.account_id
        if rule.type == TransactionType.transfer:
            to_account_id = (
                changes["to_account_id"]
                if "to_account_id" in changes
                else rule.to_account_id
            )
        else:
            to_account_id = changes.get("to_account_id")
        TransactionService(self.session, self.user_id)._validate_references(
            rule.type,
            account_id,
            to_account_id,
            check_source="account_id" in changes,
            check_destination="to_account_id" in changes,
        )
        if "category" in changes and changes["category"] is not None:
            changes["category"] = str(changes["category"]).strip()
        _apply_changes(
            rule,
            changes,
            nullable=frozenset({"description", "end_date", "to_account_id"}),
        )
        if "next_date" in changes:
            rule.anchor_day = rule.next_date.day
        self.session.commit()
        self.session.expire(rule)
        return self.get(rule.id)

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        rule.is_active = False
        self.session.commit()
        logger.info(f"recurring_cancelled: user_id={self.user_id} id={rule_id}")

    def pending(self, today: Optional[date] = None) -> list[RecurringTransaction]:
        today = today or local_today()
        stmt = (
            self._active_query()
            .where(
                RecurringTransaction.auto_post.is_(False),
                RecurringTransaction.next_date <= today,
            )
            .order_by(RecurringTransaction.next_date, RecurringTransaction.id)
        )
        return list(self.session.scalars(stmt).unique().all())

    def _advance(self, rule: RecurringTransaction, occurrence: date) -> None:
        rule.next_date = calculate_next_date(
            rule.frequency, rule.interval_count, occurrence, anchor_day=rule.anchor_day
        )
        if rule.end_date and rule.next_date > rule.end_date:
            rule.is_active = False
            logger.info(f"recurring_finished: user_id={self.user_id} id={rule.id}")

    def _post(
        self,
        rule: RecurringTransaction,
        occurrence: date,
        amount_cents: Optional[int] = None,
    ) -> Optional[Transaction]:
        existing = self.session.scalar(
            select(Transaction.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.recurring_transaction_id == rule.id,
                Transaction.occurrence_date == occurrence,
            )
            .limit(1)
        )
        if existing:
            return None
        txn = TransactionService(self.session, self.user_id).insert(
            TransactionIn(
                type=rule.type,
                amount_cents=amount_cents or rule.amount_cents,
                category=rule.category,
                description=rule.description or rule.name,
                notes="Auto-created from recurring transaction",
                date=occurrence,
                account_id=rule.account_id,
                to_account_id=rule.to_account_id,
            )
        )
        txn.recurring_transaction_id = rule.id
        txn.occurrence_date = occurrence
        rule.last_posted_on = occurrence
        return txn

    def approve(
        self,
        rule_id: int,
        amount_cents: Optional[int] = None,
        today: Optional[date] = None,
    ) -> Transaction:
        rule = self.get(rule_id)
        today = today or local_today()
        occurrence = rule.next_date
        if occurrence > today:
            raise ValidationFailed("Recurring transaction is not due yet")

        with _atomic(self.session):
            txn = self._post(rule, occurrence, amount_cents)
            if txn is None:
                raise ValidationFailed(f"Occurrence on {occurrence} is already posted")
            self._advance(rule, occurrence)
            NotificationService(self.session, self.user_id).stage(
                NotificationType.recurring_posted,
                "Recurring Transaction Created",
                f"Your recurring {rule.type.value} of "
                f"{format_currency(txn.amount_cents, rule.account.currency)} "
                "has been created",
                priority=NotificationPriority.low,
                related_type="transaction",
                related_id=txn.id,
            )

        logger.info(
            f"recurring_approved: user_id={self.user_id} id={rule_id} "
            f"transaction_id={txn.id} occurrence={occurrence}"
        )
        return TransactionService(self.session, self.user_id).get(txn.id)

    def skip(self, rule_id: int) -> RecurringTransaction:
        rule = self.get(rule_id)
        skipped = rule.next_date
        self._advance(rule, skipped)
        self.session.commit()
        self.session.refresh(rule)
        logger.info(
            f"recurring_skipped: user_id={self.user_id} id={rule_id} occurrence={skipped}"
        )
        return rule

    def post_due(self, today: Optional[date] = None) -> int:
        """Post every due occurrence of the auto-post templates."""
        today = today or local_today()
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.user_id == self.user_id,
                RecurringTransaction.is_active.is_(True),
                RecurringTransaction.auto_post.is_(True),
                RecurringTransaction.next_date <= today,
            )
            .order_by(RecurringTransaction.next_date, RecurringTransaction.id)
        )
        rules = self.session.scalars(stmt).all()
        posted = 0
        for rule in rules:
            iterations = 0
            while (
                rule.is_active
                and rule.next_date <= today
                and iterations < MAX_CATCH_UP
            ):
                occurrence = rule.next_date
                try:
                    with _atomic(self.session):
                        if self._post(rule, occurrence) is not None:
                            posted += 1
                        self._advance(rule, occurrence)
                except ServiceError as exc:
                    logger.warning(
                        f"recurring_post_failed: user_id={self.user_id} "
                        f"id={rule.id} occurrence={occurrence} error={exc}"
                    )
                    break
                iterations += 1
        return posted


def post_recurring_for_all_users(session: Session, today: Optional[date] = None) -> int:
    today = today or local_today()
    user_ids = session.scalars(select(User.id).where(User.is_active.is_(True))).all()
    return sum(
        RecurringTransactionService(session, user_id).post_due(today)
        for user_id in user_ids
    )


# -- notifications ----------------------------------------------------------


REMINDER_DAYS = 1


class NotificationService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, unread_only: bool = False, page: int = 1, limit: int = 20) -> Page:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        conditions = [Notification.user_id == self.user_id]
        if unread_only:
            conditions.append(Notification.is_read.is_(False))
        total = int(
            self.session.execute(
                select(func.count(Notification.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        stmt = (
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = list(self.session.scalars(stmt).all())
        return Page(items=items, page=page, limit=limit, total=total)

    def unread_count(self) -> int:
        return int(
            self.session.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == self.user_id,
                    Notification.is_read.is_(False),
                )
            ).scalar_one()
            or 0
        )

    def get(self, notification_id: int) -> Notification:
        notification = self.session.scalar(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == self.user_id,
            )
        )
        if not notification:
            raise NotFound("Notification not found")
        return notification

    def mark_read(self, notification_id: int) -> Notification:
        notification = self.get(notification_id)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utc_now()
            self.session.commit()
            self.session.refresh(notification)
        return notification

    def mark_all_read(self) -> int:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.user_id == self.user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True, read_at=utc_now())
        )
        self.session.commit()
        return result.rowcount or 0

    def delete(self, notification_id: int) -> None:
        notification = self.get(notification_id)
        self.session.delete(notification)
        self.session.commit()

    def stage(
        self,
        type: NotificationType,
        title: str,
        message: str,
        *,
        priority: NotificationPriority = NotificationPriority.medium,
        related_type: Optional[str] = None,
        related_id: Optional[int] = None,
        dedup_key: Optional[str] = None,
    ) -> Optional[Notification]:
        """Add a notification to the session; a repeated ``dedup_key`` is a no-op."""
        if dedup_key is not None:
            existing = self.session.scalar(
                select(Notification.id).where(
                    Notification.user_id == self.user_id,
                    Notification.dedup_key == dedup_key,
                )
            )
            if existing:
                return None
        notification = Notification(
            user_id=self.user_id,
            type=type,
            title=title,
            message=message,
            priority=priority,
            related_type=related_type,
            related_id=related_id,
            dedup_key=dedup_key,
        )
        self.session.add(notification)
        self.session.flush()
        return notification

    def bill_reminders(
        self, today: Optional[date] = None, days: int = REMINDER_DAYS
    ) -> int:
        today = today or local_today()
        bills = BillService(self.session, self.user_id).upcoming(days, today=today)
        created = 0
        for bill in bills:
            if bill.due_date < today:
                continue
            days_left = (bill.due_date - today).days
            if days_left == 0:
                when = "today"
            elif days_left == 1:
                when = "tomorrow"
            else:
                when = f"in {days_left} days"
            staged = self.stage(
                NotificationType.bill_due,
                f"Bill Due: {bill.name}",
                f"Your {bill.name} of "
                f"{format_currency(bill.amount_cents, bill.account.currency)} "
                f"is due {when}",
                priority=(
                    NotificationPriority.high
                    if days_left == 0
                    else NotificationPriority.medium
                ),
                related_type="bill",
                related_id=bill.id,
                dedup_key=f"bill_due:{bill.id}:{today.isoformat()}",
            )
            if staged is not None:
                created += 1
        self.session.commit()
        return created

    def approval_reminders(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        recurring = RecurringTransactionService(self.session, self.user_id)
        created = 0
        for rule in recurring.pending(today + timedelta(days=REMINDER_DAYS)):
            staged = self.stage(
                NotificationType.recurring_approval,
                "Recurring Transaction Approval Needed",
                f"Your recurring {rule.type.value} of "
                f"{format_currency(rule.amount_cents, rule.account.currency)} "
                f'for "{rule.name}" needs approval',
                related_type="recurring_transaction",
                related_id=rule.id,
                dedup_key=f"recurring_approval:{rule.id}:{rule.next_date.isoformat()}",
            )
            if staged is not None:
                created += 1
        self.session.commit()
        return created


def send_reminders_for_all_users(session: Session, today: Optional[date] = None) -> int:
    today = today or local_today()
    user_ids = session.scalars(select(User.id).where(User.is_active.is_(True))).all()
    created = 0
    for user_id in user_ids:
        service = NotificationService(session, user_id)
        created += service.bill_reminders(today)
        created += service.approval_reminders(today)
    return created


# -- settlements ------------------------------------------------------------


class SettlementService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self) -> list[Settlement]:
        stmt = (
            select(Settlement)
            .where(Settlement.user_id == self.user_id)
            .order_by(Settlement.start_date.desc(), Settlement.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, settlement_id: int) -> Settlement:
        settlement = self.session.scalar(
            select(Settlement).where(
                Settlement.id == settlement_id, Settlement.user_id == self.user_id
            )
        )
        if not settlement:
            raise NotFound("Settlement not found")
        return settlement

    def create(self, data: SettlementIn) -> Settlement:
        if data.end_date < data.start_date:
            raise ValidationFailed("End date must not be before start date")
        if data.total_income_cents is None and data.total_expense_cents is None:
            income, expense = income_expense_between(
                self.session, self.user_id, data.start_date, data.end_date
            )
        else:
            income = data.total_income_cents or 0
            expense = data.total_expense_cents or 0

        settlement = Settlement(
            user_id=self.user_id,
            type=data.type,
            period=data.period or settlement_label(data.type.value, data.start_date),
            start_date=data.start_date,
            end_date=data.end_date,
            total_income_cents=income,
            total_expense_cents=expense,
            net_cents=income - expense,
            is_completed=data.is_completed,
            notes=data.notes,
        )
        self.session.add(settlement)
        self.session.commit()
        self.session.refresh(settlement)
        logger.info(
            f"settlement_created: user_id={self.user_id} id={settlement.id} "
            f"type={settlement.type.value} period={settlement.period} "
            f"net_cents={settlement.net_cents}"
        )
        return settlement

    def update(self, settlement_id: int, data: SettlementUpdate) -> Settlement:
        settlement = self.get(settlement_id)
        changes = data.changes()
        start = changes.get("start_date") or settlement.start_date
        end = changes.get("end_date") or settlement.end_date
        if end < start:
            raise ValidationFailed("End date must not be before start date")
        _apply_changes(settlement, changes, nullable=frozenset({"notes"}))
        if "total_income_cents" in changes or "total_expense_cents" in changes:
            settlement.net_cents = (
                settlement.total_income_cents - settlement.total_expense_cents
            )
        self.session.commit()
        self.session.refresh(settlement)
        return settlement

    def delete(self, settlement_id: int) -> None:
        settlement = self.get(settlement_id)
        self.session.delete(settlement)
        self.session.commit()

    def _exists(self, kind: SettlementType, start: date) -> bool:
        found = self.session.scalar(
            select(Settlement.id)
            .where(
                Settlement.user_id == self.user_id,
                Settlement.type == kind,
                Settlement.start_date == start,
            )
            .limit(1)
        )
        return found is not None

    @staticmethod
    def _elapsed(kind: SettlementType, today: date) -> Period:
        if kind == SettlementType.monthly:
            return previous_month(today)
        return previous_year(today)

    def pending(self, today: Optional[date] = None) -> PendingSettlementsOut:
        today = today or local_today()
        found: dict[SettlementType, Optional[PendingSettlement]] = {}
        for kind in SettlementType:
            period = self._elapsed(kind, today)
            if self._exists(kind, period.start):
                found[kind] = None
                continue
            found[kind] = PendingSettlement(
                type=kind,
                period=settlement_label(kind.value, period.start),
                start_date=period.start,
                end_date=period.end,
            )
        return PendingSettlementsOut(
            pending_monthly=found[SettlementType.monthly],
            pending_yearly=found[SettlementType.yearly],
        )

    def trigger(self, kind: SettlementType, today: Optional[date] = None) -> Settlement:
        today = today or local_today()
        period = self._elapsed(kind, today)
        label = settlement_label(kind.value, period.start)
        if self._exists(kind, period.start):
            raise ValidationFailed(f"Settlement already exists for {label}")
        return self.create(
            SettlementIn(
                type=kind,
                period=label,
                start_date=period.start,
                end_date=period.end,
                is_completed=True,
            )
        )


def settle_pending_for_all_users(session: Session, today: Optional[date] = None) -> int:
    today = today or local_today()
    user_ids = session.scalars(select(User.id).where(User.is_active.is_(True))).all()
    created = 0
    for user_id in user_ids:
        service = SettlementService(session, user_id)
        pending = service.pending(today)
        for item in (pending.pending_monthly, pending.pending_yearly):
            if item is None:
                continue
            service.trigger(item.type, today)
            created += 1
    return created


# -- analytics --------------------------------------------------------------


TREND_MONTHS = 6
CASH_FLOW_DAYS = 30


def _breakdown(totals: dict[str, int]) -> list[CategoryAmount]:
    grand_total = sum(totals.values())
    rows = [
        CategoryAmount(
            category=name,
            amount=amount,
            percentage=(amount / grand_total * 100) if grand_total else 0,
        )
        for name, amount in totals.items()
    ]
    rows.sort(key=lambda r: (-r.amount, r.category))
    return rows


class AnalyticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def summary(self, period: Period, today: Optional[date] = None) -> AnalyticsOut:
        today = today or local_today()
        trend_start = add_months(month_start(today), -(TREND_MONTHS - 1))
        flow_start = today - timedelta(days=CASH_FLOW_DAYS - 1)
        fetch_start = min(period.start, trend_start, flow_start)
        fetch_end = max(period.end, today)

        rows = self.session.execute(
            select(
                Transaction.type,
                Transaction.amount_cents,
                Transaction.category,
                Transaction.date,
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.type.in_([TransactionType.income, TransactionType.expense]),
                Transaction.date.between(fetch_start, fetch_end),
            )
        ).all()

        trend: dict[tuple[int, int], MonthlyPoint] = {}
        for offset in range(TREND_MONTHS - 1, -1, -1):
            first = add_months(month_start(today), -offset)
            trend[(first.year, first.month)] = MonthlyPoint(
                month=first.strftime("%b %Y")
            )
        flow: dict[date, CashFlowPoint] = {}
        for offset in range(CASH_FLOW_DAYS - 1, -1, -1):
            day = today - timedelta(days=offset)
            flow[day] = CashFlowPoint(date=day.isoformat())

        total_income = 0
        total_expense = 0
        income_by_category: dict[str, int] = {}
        expense_by_category: dict[str, int] = {}
        for row in rows:
            amount = int(row.amount_cents)
            is_income = row.type == TransactionType.income

            if period.contains(row.date):
                if is_income:
                    total_income += amount
                    income_by_category[row.category] = (
                        income_by_category.get(row.category, 0) + amount
                    )
                else:
                    total_expense += amount
                    expense_by_category[row.category] = (
                        expense_by_category.get(row.category, 0) + amount
                    )

            point = trend.get((row.date.year, row.date.month))
            if point is not None and row.date <= today:
                if is_income:
                    point.income += amount
                    point.savings += amount
                else:
                    point.expense += amount
                    point.savings -= amount

            day_point = flow.get(row.date)
            if day_point is not None:
                if is_income:
                    day_point.inflow += amount
                    day_point.net_flow += amount
                else:
                    day_point.outflow += amount
                    day_point.net_flow -= amount

        net_savings = total_income - total_expense
        savings_rate = (net_savings / total_income * 100) if total_income > 0 else 0.0
        return AnalyticsOut(
            period=period.slug,
            start_date=period.start,
            end_date=period.end,
            total_income=total_income,
            total_expense=total_expense,
            net_savings=net_savings,
            savings_rate=savings_rate,
            expenses_by_category=_breakdown(expense_by_category),
            income_by_category=_breakdown(income_by_category),
            monthly_trend=list(trend.values()),
            cash_flow=list(flow.values()),
        )
