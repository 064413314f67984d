import logging
from datetime import date
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import get_db
from models import TransactionType, User, utc_now
from periods import resolve_period
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountListOut,
    AccountOut,
    AccountUpdate,
    BillIn,
    BillOut,
    BillPaymentIn,
    BillPaymentOut,
    BillUpdate,
    BudgetIn,
    BudgetOut,
    BudgetSpendingIn,
    BudgetUpdate,
    GoalIn,
    GoalOut,
    GoalProgressIn,
    GoalUpdate,
    LoginIn,
    NotificationOut,
    Pagination,
    RecurringApprovalIn,
    RecurringTransactionIn,
    RecurringTransactionOut,
    RecurringTransactionUpdate,
    RefreshIn,
    RegisterIn,
    SettlementIn,
    SettlementOut,
    SettlementTriggerIn,
    SettlementUpdate,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
    UserOut,
)
from services import (
    AccountService,
    AnalyticsService,
    AuthService,
    BillService,
    BudgetService,
    ErrorKind,
    GoalService,
    NotificationService,
    RecurringTransactionService,
    ServiceError,
    SettlementService,
    TransactionFilters,
    TransactionService,
    Unauthorized,
    ValidationFailed,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Personal Finance API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if settings.enable_scheduler:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


# -- envelope ---------------------------------------------------------------

STATUS_BY_KIND = {
    ErrorKind.validation: 400,
    ErrorKind.invalid_reference: 400,
    ErrorKind.not_found: 404,
    ErrorKind.unauthorized: 401,
    ErrorKind.internal: 500,
}


def ok(
    data: Any = None, message: Optional[str] = None, status_code: int = 200
) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def fail(kind: ErrorKind, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_KIND[kind],
        content={"success": False, "message": message, "error": kind.value},
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.kind == ErrorKind.internal:
        logger.error(f"service_error: path={request.url.path} error={exc}")
        return fail(ErrorKind.internal, "Internal server error")
    return fail(exc.kind, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ())[1:])
        problems.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return fail(ErrorKind.validation, "; ".join(problems) or "Invalid request")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 401:
        kind = ErrorKind.unauthorized
    elif exc.status_code == 404:
        kind = ErrorKind.not_found
    elif exc.status_code >= 500:
        kind = ErrorKind.internal
    else:
        kind = ErrorKind.validation
    response = fail(kind, str(exc.detail))
    response.status_code = exc.status_code
    return response


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return fail(ErrorKind.internal, "Internal server error")


# -- auth -------------------------------------------------------------------

bearer = HTTPBearer(auto_error=False)


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Access token required")
    return AuthService(db).authenticate(credentials.credentials)


@app.get("/health")
def health():
    return ok({"status": "ok", "time": utc_now()})


@app.post("/auth/register")
def register(data: RegisterIn, db: Session = Depends(get_db)):
    result = AuthService(db).register(data)
    return ok(result, "User registered successfully", status_code=201)


@app.post("/auth/login")
def login(data: LoginIn, db: Session = Depends(get_db)):
    return ok(AuthService(db).login(data), "Login successful")


@app.post("/auth/refresh")
def refresh(data: RefreshIn, db: Session = Depends(get_db)):
    return ok(AuthService(db).refresh(data.refresh_token))


@app.get("/auth/me")
def me(user: User = Depends(current_user)):
    return ok(UserOut.model_validate(user))


# -- accounts ---------------------------------------------------------------


@app.get("/accounts")
def list_accounts(user: User = Depends(current_user), db: Session = Depends(get_db)):
    service = AccountService(db, user.id)
    accounts = service.list_active()
    return ok(
        AccountListOut(
            accounts=[AccountOut.model_validate(a) for a in accounts],
            summary=service.summary(accounts),
        )
    )


@app.post("/accounts")
def create_account(
    data: AccountIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    account = AccountService(db, user.id).create(data)
    return ok(
        AccountOut.model_validate(account),
        "Account created successfully",
        status_code=201,
    )


@app.get("/accounts/{account_id}")
def get_account(
    account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(AccountOut.model_validate(AccountService(db, user.id).get(account_id)))


@app.api_route("/accounts/{account_id}", methods=["PATCH", "PUT"])
def update_account(
    account_id: int,
    data: AccountUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user.id).update(account_id, data)
    return ok(AccountOut.model_validate(account), "Account updated successfully")


@app.delete("/accounts/{account_id}")
def delete_account(
    account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    AccountService(db, user.id).delete(account_id)
    return ok(message="Account deleted successfully")


@app.post("/accounts/{account_id}/recalculate")
def recalculate_account(
    account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(AccountService(db, user.id).recalculate(account_id))


# -- transactions -----------------------------------------------------------


@app.get("/transactions")
def list_transactions(
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    account_id: Optional[int] = Query(None, alias="accountId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        type=type,
        category=category,
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
    )
    result = TransactionService(db, user.id).list(filters, page=page, limit=limit)
    return ok(
        {
            "data": [TransactionOut.model_validate(t) for t in result.items],
            "pagination": Pagination(
                page=result.page,
                limit=result.limit,
                total=result.total,
                total_pages=result.total_pages,
            ),
        }
    )


@app.get("/transactions/recent")
def recent_transactions(
    limit: int = Query(5, ge=1),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    items = TransactionService(db, user.id).recent(limit)
    return ok([TransactionOut.model_validate(t) for t in items])


def _analytics(
    period: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
    user: User,
    db: Session,
) -> JSONResponse:
    today = local_today()
    try:
        window = resolve_period(period, start_date, end_date, today=today)
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from exc
    return ok(AnalyticsService(db, user.id).summary(window, today=today))


@app.get("/transactions/analytics")
def transaction_analytics(
    period: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return _analytics(period, start_date, end_date, user, db)


@app.get("/analytics")
def analytics(
    period: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return _analytics(period, start_date, end_date, user, db)


@app.post("/transactions")
def create_transaction(
    data: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).create(data)
    return ok(
        TransactionOut.model_validate(txn),
        "Transaction created successfully",
        status_code=201,
    )


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).get(transaction_id)
    return ok(TransactionOut.model_validate(txn))


@app.api_route("/transactions/{transaction_id}", methods=["PATCH", "PUT"])
def update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).update(transaction_id, data)
    return ok(TransactionOut.model_validate(txn), "Transaction updated successfully")


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    TransactionService(db, user.id).delete(transaction_id)
    return ok(message="Transaction deleted successfully")


# -- budgets ----------------------------------------------------------------


@app.get("/budgets")
def list_budgets(user: User = Depends(current_user), db: Session = Depends(get_db)):
    budgets = BudgetService(db, user.id).list_active()
    return ok([BudgetOut.model_validate(b) for b in budgets])


@app.post("/budgets")
def create_budget(
    data: BudgetIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    budget = BudgetService(db, user.id).create(data)
    return ok(
        BudgetOut.model_validate(budget), "Budget created successfully", status_code=201
    )


@app.post("/budgets/spending")
def record_budget_spending(
    data: BudgetSpendingIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user.id).record_spending(
        data.category, data.amount_cents, on_date=data.date
    )
    if budget is None:
        return ok(message="No active budget for this category")
    return ok(BudgetOut.model_validate(budget), "Budget spending updated")


@app.get("/budgets/{budget_id}")
def get_budget(
    budget_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(BudgetOut.model_validate(BudgetService(db, user.id).get(budget_id)))


@app.api_route("/budgets/{budget_id}", methods=["PATCH", "PUT"])
def update_budget(
    budget_id: int,
    data: BudgetUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user.id).update(budget_id, data)
    return ok(BudgetOut.model_validate(budget), "Budget updated successfully")


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    BudgetService(db, user.id).delete(budget_id)
    return ok(message="Budget deleted successfully")


# -- goals ------------------------------------------------------------------


@app.get("/goals")
def list_goals(user: User = Depends(current_user), db: Session = Depends(get_db)):
    goals = GoalService(db, user.id).list_active()
    return ok([GoalOut.model_validate(g) for g in goals])


@app.post("/goals")
def create_goal(
    data: GoalIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    goal = GoalService(db, user.id).create(data)
    return ok(GoalOut.model_validate(goal), "Goal created successfully", status_code=201)


@app.post("/goals/progress")
def record_goal_progress(
    data: GoalProgressIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user.id).record_progress(data.category, data.amount_cents)
    if goal is None:
        return ok(message="No active goal for this category")
    return ok(GoalOut.model_validate(goal), "Goal progress updated")


@app.get("/goals/{goal_id}")
def get_goal(
    goal_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(GoalOut.model_validate(GoalService(db, user.id).get(goal_id)))


@app.api_route("/goals/{goal_id}", methods=["PATCH", "PUT"])
def update_goal(
    goal_id: int,
    data: GoalUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user.id).update(goal_id, data)
    return ok(GoalOut.model_validate(goal), "Goal updated successfully")


@app.delete("/goals/{goal_id}")
def delete_goal(
    goal_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    GoalService(db, user.id).delete(goal_id)
    return ok(message="Goal deleted successfully")


# -- bills ------------------------------------------------------------------


@app.get("/bills")
def list_bills(user: User = Depends(current_user), db: Session = Depends(get_db)):
    bills = BillService(db, user.id).list_active()
    return ok([BillOut.model_validate(b) for b in bills])


@app.post("/bills")
def create_bill(
    data: BillIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    bill = BillService(db, user.id).create(data)
    return ok(BillOut.model_validate(bill), "Bill created successfully", status_code=201)


@app.get("/bills/upcoming")
def upcoming_bills(
    days: int = Query(7, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    bills = BillService(db, user.id).upcoming(days)
    return ok([BillOut.model_validate(b) for b in bills])


@app.get("/bills/overdue")
def overdue_bills(user: User = Depends(current_user), db: Session = Depends(get_db)):
    bills = BillService(db, user.id).overdue()
    return ok([BillOut.model_validate(b) for b in bills])


@app.get("/bills/{bill_id}")
def get_bill(
    bill_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(BillOut.model_validate(BillService(db, user.id).get(bill_id)))


@app.api_route("/bills/{bill_id}", methods=["PATCH", "PUT"])
def update_bill(
    bill_id: int,
    data: BillUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    bill = BillService(db, user.id).update(bill_id, data)
    return ok(BillOut.model_validate(bill), "Bill updated successfully")


@app.delete("/bills/{bill_id}")
def delete_bill(
    bill_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    BillService(db, user.id).delete(bill_id)
    return ok(message="Bill deleted successfully")


@app.post("/bills/{bill_id}/pay")
def pay_bill(
    bill_id: int,
    data: Optional[BillPaymentIn] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    payment = BillService(db, user.id).pay(bill_id, data or BillPaymentIn())
    return ok(BillPaymentOut.model_validate(payment), "Bill paid successfully")


# -- recurring transactions -------------------------------------------------


@app.get("/recurring-transactions")
def list_recurring(user: User = Depends(current_user), db: Session = Depends(get_db)):
    rules = RecurringTransactionService(db, user.id).list_active()
    return ok([RecurringTransactionOut.model_validate(r) for r in rules])


@app.post("/recurring-transactions")
def create_recurring(
    data: RecurringTransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    rule = RecurringTransactionService(db, user.id).create(data)
    return ok(
        RecurringTransactionOut.model_validate(rule),
        "Recurring transaction created successfully",
        status_code=201,
    )


@app.get("/recurring-transactions/pending")
def pending_recurring(
    user: User = Depends(current_user), db: Session = Depends(get_db)
):
    rules = RecurringTransactionService(db, user.id).pending()
    return ok([RecurringTransactionOut.model_validate(r) for r in rules])


@app.get("/recurring-transactions/{rule_id}")
def get_recurring(
    rule_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    rule = RecurringTransactionService(db, user.id).get(rule_id)
    return ok(RecurringTransactionOut.model_validate(rule))


@app.api_route("/recurring-transactions/{rule_id}", methods=["PATCH", "PUT"])
def update_recurring(
    rule_id: int,
    data: RecurringTransactionUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    rule = RecurringTransactionService(db, user.id).update(rule_id, data)
    return ok(
        RecurringTransactionOut.model_validate(rule),
        "Recurring transaction updated successfully",
    )


@app.delete("/recurring-transactions/{rule_id}")
def delete_recurring(
    rule_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    RecurringTransactionService(db, user.id).delete(rule_id)
    return ok(message="Recurring transaction cancelled")


@app.post("/recurring-transactions/{rule_id}/approve")
def approve_recurring(
    rule_id: int,
    data: Optional[RecurringApprovalIn] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    amount = data.amount_cents if data else None
    txn = RecurringTransactionService(db, user.id).approve(rule_id, amount)
    return ok(
        TransactionOut.model_validate(txn),
        "Recurring transaction approved",
        status_code=201,
    )


@app.post("/recurring-transactions/{rule_id}/skip")
def skip_recurring(
    rule_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    rule = RecurringTransactionService(db, user.id).skip(rule_id)
    return ok(RecurringTransactionOut.model_validate(rule), "Occurrence skipped")


# -- notifications ----------------------------------------------------------


@app.get("/notifications")
def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = NotificationService(db, user.id)
    result = service.list(unread_only, page=page, limit=limit)
    return ok(
        {
            "data": [NotificationOut.model_validate(n) for n in result.items],
            "pagination": Pagination(
                page=result.page,
                limit=result.limit,
                total=result.total,
                total_pages=result.total_pages,
            ),
            "unreadCount": service.unread_count(),
        }
    )


@app.api_route("/notifications/read-all", methods=["PATCH", "PUT"])
def read_all_notifications(
    user: User = Depends(current_user), db: Session = Depends(get_db)
):
    count = NotificationService(db, user.id).mark_all_read()
    return ok({"updated": count}, "Notifications marked as read")


@app.api_route("/notifications/{notification_id}/read", methods=["PATCH", "PUT"])
def read_notification(
    notification_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    notification = NotificationService(db, user.id).mark_read(notification_id)
    return ok(NotificationOut.model_validate(notification))


@app.delete("/notifications/{notification_id}")
def delete_notification(
    notification_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    NotificationService(db, user.id).delete(notification_id)
    return ok(message="Notification deleted successfully")


# -- settlements ------------------------------------------------------------


@app.get("/settlements")
def list_settlements(
    user: User = Depends(current_user), db: Session = Depends(get_db)
):
    settlements = SettlementService(db, user.id).list()
    return ok([SettlementOut.model_validate(s) for s in settlements])


@app.post("/settlements")
def create_settlement(
    data: SettlementIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    settlement = SettlementService(db, user.id).create(data)
    return ok(
        SettlementOut.model_validate(settlement),
        "Settlement created successfully",
        status_code=201,
    )


@app.get("/settlements/pending")
def pending_settlements(
    user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(SettlementService(db, user.id).pending())


@app.post("/settlements/trigger")
def trigger_settlement(
    data: SettlementTriggerIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    settlement = SettlementService(db, user.id).trigger(data.type)
    return ok(
        SettlementOut.model_validate(settlement),
        f"{data.type.value.capitalize()} settlement triggered",
        status_code=201,
    )


@app.get("/settlements/{settlement_id}")
def get_settlement(
    settlement_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    settlement = SettlementService(db, user.id).get(settlement_id)
    return ok(SettlementOut.model_validate(settlement))


@app.api_route("/settlements/{settlement_id}", methods=["PATCH", "PUT"])
def update_settlement(
    settlement_id: int,
    data: SettlementUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    settlement = SettlementService(db, user.id).update(settlement_id, data)
    return ok(SettlementOut.model_validate(settlement), "Settlement updated successfully")


@app.delete("/settlements/{settlement_id}")
def delete_settlement(
    settlement_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    SettlementService(db, user.id).delete(settlement_id)
    return ok(message="Settlement deleted successfully")


def main():
    import uvicorn

    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
