import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel

from models import (
    AccountType,
    BudgetPeriod,
    NotificationPriority,
    NotificationType,
    RecurrenceFrequency,
    SettlementType,
    TransactionType,
)


class ApiModel(BaseModel):
    """Wire model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class PatchModel(ApiModel):
    model_config = ConfigDict(extra="forbid")

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)


# -- auth -------------------------------------------------------------------


class RegisterIn(ApiModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: str = Field(..., pattern=r"^\S+@\S+\.\S+$", max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class LoginIn(ApiModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RefreshIn(ApiModel):
    refresh_token: str = Field(..., min_length=1)


class UserOut(ApiModel):
    id: int
    username: str
    email: str
    first_name: str
    last_name: str


class TokenPairOut(ApiModel):
    token: str
    refresh_token: str
    expires_in: int


class AuthOut(TokenPairOut):
    user: UserOut


# -- accounts ---------------------------------------------------------------


class AccountIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=50)
    type: AccountType
    balance_cents: int = 0
    currency: str = Field(default="USD", min_length=3, max_length=3)


class AccountUpdate(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    type: Optional[AccountType] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class AccountRef(ApiModel):
    id: int
    name: str
    type: AccountType


class AccountOut(ApiModel):
    id: int
    name: str
    type: AccountType
    balance_cents: int
    opening_balance_cents: int
    currency: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class AccountSummary(ApiModel):
    total_balance: int
    pending_liabilities: int
    net_worth: int


class AccountListOut(ApiModel):
    accounts: list[AccountOut]
    summary: AccountSummary


class BalanceCheckOut(ApiModel):
    account_id: int
    stored_cents: int
    calculated_cents: int
    difference_cents: int


# -- transactions -----------------------------------------------------------


class TransactionIn(ApiModel):
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)
    date: Optional[dt.date] = None
    account_id: int
    to_account_id: Optional[int] = None


class TransactionUpdate(PatchModel):
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)
    date: Optional[dt.date] = None
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None


class TransactionOut(ApiModel):
    id: int
    type: TransactionType
    amount_cents: int
    category: str
    description: Optional[str]
    notes: Optional[str]
    date: dt.date
    account_id: int
    to_account_id: Optional[int]
    account: Optional[AccountRef] = None
    to_account: Optional[AccountRef] = None
    created_at: datetime
    updated_at: datetime


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    total_pages: int


# -- budgets ----------------------------------------------------------------


class BudgetIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0)
    period: BudgetPeriod
    start_date: date
    end_date: date
    alert_threshold: int = Field(default=80, ge=0, le=100)
    notes: Optional[str] = Field(default=None, max_length=500)


class BudgetUpdate(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    alert_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = Field(default=None, max_length=500)


class BudgetSpendingIn(ApiModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int
    date: Optional[dt.date] = None


class BudgetOut(ApiModel):
    id: int
    name: str
    category: str
    amount_cents: int
    spent_cents: int
    period: BudgetPeriod
    start_date: date
    end_date: date
    alert_threshold: int
    notes: Optional[str]
    is_active: bool

    @computed_field
    @property
    def remaining_cents(self) -> int:
        return max(0, self.amount_cents - self.spent_cents)

    @computed_field
    @property
    def percentage_used(self) -> float:
        if not self.amount_cents:
            return 0.0
        return min(100.0, self.spent_cents / self.amount_cents * 100)


# -- goals ------------------------------------------------------------------


class GoalIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    target_cents: int = Field(..., ge=0)
    current_cents: int = Field(default=0, ge=0)
    target_date: date
    category: str = Field(..., min_length=1, max_length=100)


class GoalUpdate(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    target_cents: Optional[int] = Field(default=None, ge=0)
    current_cents: Optional[int] = Field(default=None, ge=0)
    target_date: Optional[date] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)


class GoalProgressIn(ApiModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int


class GoalOut(ApiModel):
    id: int
    name: str
    description: Optional[str]
    target_cents: int
    current_cents: int
    target_date: date
    category: str
    is_active: bool

    @computed_field
    @property
    def progress(self) -> float:
        if not self.target_cents:
            return 0.0
        return min(100.0, self.current_cents / self.target_cents * 100)

    @computed_field
    @property
    def is_achieved(self) -> bool:
        return self.current_cents >= self.target_cents


# -- bills ------------------------------------------------------------------


class BillIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    due_date: date
    is_recurring: bool = False
    frequency: Optional[RecurrenceFrequency] = None
    interval_count: int = Field(default=1, ge=1)
    recurrence_end_date: Optional[date] = None
    account_id: int
    category: str = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _recurring_needs_frequency(self) -> "BillIn":
        if self.is_recurring and self.frequency is None:
            raise ValueError("Recurring bills require a frequency")
        return self


class BillUpdate(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    due_date: Optional[date] = None
    is_paid: Optional[bool] = None
    is_recurring: Optional[bool] = None
    frequency: Optional[RecurrenceFrequency] = None
    interval_count: Optional[int] = Field(default=None, ge=1)
    recurrence_end_date: Optional[date] = None
    account_id: Optional[int] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)


class BillPaymentIn(ApiModel):
    account_id: Optional[int] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    notes: Optional[str] = Field(default=None, max_length=1000)


class BillOut(ApiModel):
    id: int
    name: str
    amount_cents: int
    due_date: date
    is_paid: bool
    paid_at: Optional[datetime]
    payment_transaction_id: Optional[int]
    is_recurring: bool
    frequency: Optional[RecurrenceFrequency]
    interval_count: int
    recurrence_end_date: Optional[date]
    account_id: int
    account: Optional[AccountRef] = None
    category: str
    notes: Optional[str]
    is_active: bool


class BillPaymentOut(ApiModel):
    bill: BillOut
    transaction: TransactionOut
    next_bill: Optional[BillOut] = None


# -- recurring transactions -------------------------------------------------


class RecurringTransactionIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    account_id: int
    to_account_id: Optional[int] = None
    frequency: RecurrenceFrequency
    interval_count: int = Field(default=1, ge=1)
    start_date: date
    end_date: Optional[date] = None
    auto_post: bool = False

    @model_validator(mode="after")
    def _end_after_start(self) -> "RecurringTransactionIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class RecurringTransactionUpdate(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    frequency: Optional[RecurrenceFrequency] = None
    interval_count: Optional[int] = Field(default=None, ge=1)
    next_date: Optional[date] = None
    end_date: Optional[date] = None
    auto_post: Optional[bool] = None


class RecurringApprovalIn(ApiModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)


class RecurringTransactionOut(ApiModel):
    id: int
    name: str
    type: TransactionType
    amount_cents: int
    category: str
    description: Optional[str]
    account_id: int
    to_account_id: Optional[int]
    account: Optional[AccountRef] = None
    to_account: Optional[AccountRef] = None
    frequency: RecurrenceFrequency
    interval_count: int
    next_date: date
    end_date: Optional[date]
    auto_post: bool
    last_posted_on: Optional[date]
    is_active: bool


# -- notifications ----------------------------------------------------------


class NotificationOut(ApiModel):
    id: int
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    is_read: bool
    read_at: Optional[datetime]
    related_type: Optional[str]
    related_id: Optional[int]
    created_at: datetime


# -- settlements ------------------------------------------------------------


class SettlementIn(ApiModel):
    type: SettlementType
    period: Optional[str] = Field(default=None, max_length=40)
    start_date: date
    end_date: date
    total_income_cents: Optional[int] = Field(default=None, ge=0)
    total_expense_cents: Optional[int] = Field(default=None, ge=0)
    is_completed: bool = False
    notes: Optional[str] = Field(default=None, max_length=500)


class SettlementUpdate(PatchModel):
    period: Optional[str] = Field(default=None, min_length=1, max_length=40)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    total_income_cents: Optional[int] = Field(default=None, ge=0)
    total_expense_cents: Optional[int] = Field(default=None, ge=0)
    is_completed: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class SettlementTriggerIn(ApiModel):
    type: SettlementType


class SettlementOut(ApiModel):
    id: int
    type: SettlementType
    period: str
    start_date: date
    end_date: date
    total_income_cents: int
    total_expense_cents: int
    net_cents: int
    is_completed: bool
    notes: Optional[str]
    created_at: datetime


class PendingSettlement(ApiModel):
    type: SettlementType
    period: str
    start_date: date
    end_date: date


class PendingSettlementsOut(ApiModel):
    pending_monthly: Optional[PendingSettlement] = None
    pending_yearly: Optional[PendingSettlement] = None


# -- analytics --------------------------------------------------------------


class CategoryAmount(ApiModel):
    category: str
    amount: int
    percentage: float


class MonthlyPoint(ApiModel):
    month: str
    income: int = 0
    expense: int = 0
    savings: int = 0


class CashFlowPoint(ApiModel):
    date: str
    inflow: int = 0
    outflow: int = 0
    net_flow: int = 0


class AnalyticsOut(ApiModel):
    period: str
    start_date: date
    end_date: date
    total_income: int
    total_expense: int
    net_savings: int
    savings_rate: float
    expenses_by_category: list[CategoryAmount]
    income_by_category: list[CategoryAmount]
    monthly_trend: list[MonthlyPoint]
    cash_flow: list[CashFlowPoint]
