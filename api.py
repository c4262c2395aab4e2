"""
HTTP interface for the ledger.

Exposes the budget store, budget usage, the category directory, transaction
recording and the statistics aggregations as a FastAPI application.
"""

import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from analytics import AnalyticsEngine, records
from budgeting import BudgetManager, BudgetScope
from config_manager import get_utc_offset_minutes, load_config
from database_ops import DatabaseManager
from exceptions import InvalidInputError, LedgerError, NotFoundError
from ledger import LedgerManager, parse_transaction_date
from period_resolver import resolve_period
from utils import current_time, parse_int, resolve_connection_string

logger = logging.getLogger(__name__)

SERVICE_NAME = "household-ledger"

STATUS_BY_CODE = {
    "INVALID_INPUT": 400,
    "NOT_FOUND": 404,
    "DUPLICATE_ENTRY": 409,
    "CANNOT_DELETE": 409,
    "DATABASE_ERROR": 500,
    "CONFIG_ERROR": 500,
}


class BudgetCreate(BaseModel):
    category_id: Optional[int] = None
    user_name: Optional[str] = ""
    monthly_budget: int = 0
    yearly_budget: int = 0


class BudgetUpdate(BaseModel):
    monthly_budget: int = 0
    yearly_budget: int = 0


class BudgetAmountUpdate(BaseModel):
    category_id: Optional[int] = None
    user_name: Optional[str] = ""
    amount: int = 0


class CategoryCreate(BaseModel):
    name: str
    type: str
    expense_type: Optional[str] = None


class ExpenseCreate(BaseModel):
    date: str
    user: str
    money: int
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    keyword_name: Optional[str] = None
    memo: Optional[str] = None


class IncomeCreate(BaseModel):
    date: str
    user: str
    money: int
    category_id: Optional[int] = None
    deposit_path_id: Optional[int] = None
    keyword_name: Optional[str] = None
    memo: Optional[str] = None


def get_budget_manager(request: Request) -> BudgetManager:
    return request.app.state.budget_manager


def get_ledger_manager(request: Request) -> LedgerManager:
    return request.app.state.ledger_manager


def get_analytics_engine(request: Request) -> AnalyticsEngine:
    return request.app.state.analytics_engine


def _now(request: Request):
    return current_time(request.app.state.utc_offset_minutes)


def _period_from_query(request: Request):
    params = request.query_params
    return resolve_period(
        params.get("type") or "month",
        year=params.get("year"),
        month=params.get("month"),
        week=params.get("week"),
        start_date=params.get("start_date"),
        end_date=params.get("end_date"),
        now=_now(request),
    )


def _required_id(value: Optional[str], field: str) -> int:
    if not value:
        raise InvalidInputError(f"{field} is required", details={field: value})
    parsed = parse_int(value)
    if parsed is None:
        raise InvalidInputError(f"{field} must be an integer", details={field: value})
    return parsed


router = APIRouter()


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "service": SERVICE_NAME}


# Budget store

@router.get("/category-budgets")
def list_budgets(
    user: Optional[str] = None,
    category_id: Optional[str] = None,
    budgets: BudgetManager = Depends(get_budget_manager),
):
    scope = BudgetScope(user.strip()) if user and user.strip() else None
    category = None
    if category_id:
        category = _required_id(category_id, "category_id")
    return [budget.to_dict() for budget in budgets.list_budgets(scope=scope, category_id=category)]


@router.post("/category-budgets", status_code=201)
def create_budget(payload: BudgetCreate, budgets: BudgetManager = Depends(get_budget_manager)):
    budget_id = budgets.create_budget(
        payload.category_id,
        BudgetScope.from_user_name(payload.user_name),
        payload.monthly_budget,
        payload.yearly_budget,
    )
    return {"message": "Budget created", "id": budget_id}


@router.put("/category-budgets/monthly")
def update_monthly_budget(payload: BudgetAmountUpdate, budgets: BudgetManager = Depends(get_budget_manager)):
    budgets.update_monthly_limit(
        payload.category_id, BudgetScope.from_user_name(payload.user_name), payload.amount
    )
    return {"message": "Monthly budget updated"}


@router.put("/category-budgets/yearly")
def update_yearly_budget(payload: BudgetAmountUpdate, budgets: BudgetManager = Depends(get_budget_manager)):
    budgets.update_yearly_limit(
        payload.category_id, BudgetScope.from_user_name(payload.user_name), payload.amount
    )
    return {"message": "Yearly budget updated"}


@router.get("/category-budgets/usage")
def budget_usage(
    request: Request,
    user: Optional[str] = None,
    category_id: Optional[str] = None,
    budgets: BudgetManager = Depends(get_budget_manager),
):
    scope = BudgetScope.from_user_name(user)
    now = _now(request)
    if category_id:
        usage = budgets.get_budget_usage(_required_id(category_id, "category_id"), scope, now)
        if usage is None:
            raise NotFoundError("No budget is set", details={"category_id": category_id, "user": user or ""})
        return usage.to_dict()
    return [usage.to_dict() for usage in budgets.get_all_budget_usages(scope, now)]


@router.put("/category-budgets/{budget_id}")
def update_budget(budget_id: int, payload: BudgetUpdate, budgets: BudgetManager = Depends(get_budget_manager)):
    budgets.update_budget(budget_id, payload.monthly_budget, payload.yearly_budget)
    return {"message": "Budget updated"}


@router.delete("/category-budgets/{budget_id}")
def delete_budget(budget_id: int, budgets: BudgetManager = Depends(get_budget_manager)):
    budgets.delete_budget(budget_id)
    return {"message": "Budget deleted"}


# Directory and transactions

@router.get("/categories")
def list_categories(
    category_type: Optional[str] = Query(None, alias="type"),
    kind: Optional[str] = None,
    ledger: LedgerManager = Depends(get_ledger_manager),
):
    return [category.to_dict() for category in ledger.list_categories(category_type or kind or None)]


@router.post("/categories", status_code=201)
def create_category(payload: CategoryCreate, ledger: LedgerManager = Depends(get_ledger_manager)):
    category = ledger.add_category(payload.name, payload.type, payload.expense_type)
    return {"message": "Category created", "id": category.id}


@router.get("/categories/{category_id}/usage")
def category_usage(category_id: int, ledger: LedgerManager = Depends(get_ledger_manager)):
    count = ledger.category_usage(category_id)
    return {"id": category_id, "in_use": count > 0, "transaction_count": count}


@router.delete("/categories/{category_id}")
def delete_category(category_id: int, force: bool = False, ledger: LedgerManager = Depends(get_ledger_manager)):
    ledger.deactivate_category(category_id, force=force)
    return {"message": "Category deleted"}


@router.get("/payment-methods")
def list_payment_methods(include_inactive: bool = False, ledger: LedgerManager = Depends(get_ledger_manager)):
    return [method.to_dict() for method in ledger.list_payment_methods(include_inactive)]


@router.get("/payment-methods/{payment_method_id}/usage")
def payment_method_usage(payment_method_id: int, ledger: LedgerManager = Depends(get_ledger_manager)):
    count = ledger.payment_method_usage(payment_method_id)
    return {"id": payment_method_id, "in_use": count > 0, "transaction_count": count}


@router.delete("/payment-methods/{payment_method_id}")
def delete_payment_method(
    payment_method_id: int,
    force: bool = False,
    ledger: LedgerManager = Depends(get_ledger_manager),
):
    ledger.deactivate_payment_method(payment_method_id, force=force)
    return {"message": "Payment method deleted"}


@router.get("/deposit-paths")
def list_deposit_paths(include_inactive: bool = False, ledger: LedgerManager = Depends(get_ledger_manager)):
    return [path.to_dict() for path in ledger.list_deposit_paths(include_inactive)]


@router.get("/deposit-paths/{deposit_path_id}/usage")
def deposit_path_usage(deposit_path_id: int, ledger: LedgerManager = Depends(get_ledger_manager)):
    count = ledger.deposit_path_usage(deposit_path_id)
    return {"id": deposit_path_id, "in_use": count > 0, "transaction_count": count}


@router.delete("/deposit-paths/{deposit_path_id}")
def delete_deposit_path(deposit_path_id: int, force: bool = False, ledger: LedgerManager = Depends(get_ledger_manager)):
    ledger.deactivate_deposit_path(deposit_path_id, force=force)
    return {"message": "Deposit path deleted"}


@router.get("/users")
def list_users(include_inactive: bool = False, ledger: LedgerManager = Depends(get_ledger_manager)):
    return [user.to_dict() for user in ledger.list_users(include_inactive)]


@router.get("/users/{user_id}/usage")
def user_usage(user_id: int, ledger: LedgerManager = Depends(get_ledger_manager)):
    count = ledger.user_usage(user_id)
    return {"id": user_id, "in_use": count > 0, "transaction_count": count}


@router.delete("/users/{user_id}")
def delete_user(user_id: int, force: bool = False, ledger: LedgerManager = Depends(get_ledger_manager)):
    ledger.deactivate_user(user_id, force=force)
    return {"message": "User deleted"}


@router.get("/keywords")
def list_keywords(category_id: Optional[str] = None, ledger: LedgerManager = Depends(get_ledger_manager)):
    keywords = ledger.list_keywords(_required_id(category_id, "category_id"))
    return [keyword.to_dict() for keyword in keywords]


@router.delete("/keywords/{keyword_id}")
def delete_keyword(keyword_id: int, ledger: LedgerManager = Depends(get_ledger_manager)):
    ledger.deactivate_keyword(keyword_id)
    return {"message": "Keyword deleted"}


@router.get("/expenses")
def list_expenses(
    date: Optional[str] = None,
    year: Optional[str] = None,
    month: Optional[str] = None,
    ledger: LedgerManager = Depends(get_ledger_manager),
):
    return ledger.list_expenses(on_date=date, year=year, month=month)


@router.get("/incomes")
def list_incomes(
    date: Optional[str] = None,
    year: Optional[str] = None,
    month: Optional[str] = None,
    ledger: LedgerManager = Depends(get_ledger_manager),
):
    return ledger.list_incomes(on_date=date, year=year, month=month)


@router.post("/expenses", status_code=201)
def create_expense(
    payload: ExpenseCreate,
    ledger: LedgerManager = Depends(get_ledger_manager),
    budgets: BudgetManager = Depends(get_budget_manager),
):
    expense = ledger.record_expense(
        payload.date,
        payload.money,
        payload.user,
        payload.category_id,
        payload.payment_method_id,
        keyword=payload.keyword_name,
        memo=payload.memo,
    )

    response: Dict[str, Any] = {"message": "Expense saved", "id": expense.id}
    try:
        usage = budgets.get_budget_usage(
            expense.category_id,
            BudgetScope.from_user_name(expense.user_name),
            parse_transaction_date(payload.date),
        )
    except LedgerError as e:
        logger.error(f"Budget lookup after expense {expense.id} failed: {e}")
        usage = None
    if usage is not None:
        response["budget_usage"] = usage.to_dict()
    return response


@router.post("/incomes", status_code=201)
def create_income(payload: IncomeCreate, ledger: LedgerManager = Depends(get_ledger_manager)):
    income = ledger.record_income(
        payload.date,
        payload.money,
        payload.user,
        payload.category_id,
        payload.deposit_path_id,
        keyword=payload.keyword_name,
        memo=payload.memo,
    )
    return {"message": "Income saved", "id": income.id}


# Statistics

@router.get("/statistics")
def statistics(request: Request, analytics: AnalyticsEngine = Depends(get_analytics_engine)):
    period = _period_from_query(request)
    params = request.query_params
    return analytics.get_statistics(
        period,
        kind=params.get("category") or "out",
        user_name=params.get("user"),
        reference_date=_now(request),
    )


@router.get("/statistics/category-keywords")
def category_keyword_statistics(request: Request, analytics: AnalyticsEngine = Depends(get_analytics_engine)):
    category_id = _required_id(request.query_params.get("category_id"), "category_id")
    period = _period_from_query(request)
    keywords = analytics.keyword_breakdown(category_id, period, request.query_params.get("category") or "out")
    return {
        "period": period.label,
        "category_id": category_id,
        "category_total": int(keywords["total_amount"].sum()) if not keywords.empty else 0,
        "keywords": records(keywords),
        "chart_data": analytics.chart_data(keywords, "keyword_name"),
    }


@router.get("/statistics/payment-methods")
def payment_method_statistics(request: Request, analytics: AnalyticsEngine = Depends(get_analytics_engine)):
    payment_method_id = _required_id(request.query_params.get("payment_method_id"), "payment_method_id")
    period = _period_from_query(request)
    categories = analytics.payment_method_category_breakdown(payment_method_id, period)
    return {
        "period": period.label,
        "payment_method_id": payment_method_id,
        "payment_total": int(categories["total_amount"].sum()) if not categories.empty else 0,
        "categories": records(categories),
        "chart_data": analytics.chart_data(categories, "category_name"),
    }


@router.get("/statistics/users")
def user_statistics(request: Request, analytics: AnalyticsEngine = Depends(get_analytics_engine)):
    period = _period_from_query(request)
    users = analytics.user_breakdown(period)
    return {
        "period": period.label,
        "users": records(users),
        "chart_data": analytics.chart_data(users, "user_name"),
    }


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status = STATUS_BY_CODE.get(exc.code, 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=status, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = InvalidInputError(
        "Malformed request",
        details={"errors": "; ".join(str(err.get("msg")) for err in exc.errors())}
    )
    logger.warning(f"{request.method} {request.url.path} rejected: {error}")
    return JSONResponse(status_code=400, content=error.to_dict())


def create_app(config: Optional[Dict[str, Any]] = None, db_manager: Optional[DatabaseManager] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration dictionary (loaded from config.yaml when None)
        db_manager: Existing DatabaseManager; created from config when None

    Returns:
        Configured FastAPI app
    """
    config = config or load_config()

    if db_manager is None:
        db_manager = DatabaseManager(resolve_connection_string(config))
        db_manager.create_tables()
        if config.get("database", {}).get("seed_defaults", True):
            db_manager.seed_defaults()

    utc_offset_minutes = get_utc_offset_minutes(config)
    budget_manager = BudgetManager(db_manager, utc_offset_minutes)

    app = FastAPI(title="Household Ledger", version="1.0.0")
    app.state.config = config
    app.state.db_manager = db_manager
    app.state.utc_offset_minutes = utc_offset_minutes
    app.state.budget_manager = budget_manager
    app.state.ledger_manager = LedgerManager(db_manager)
    app.state.analytics_engine = AnalyticsEngine(db_manager, budget_manager)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get("server", {}).get("cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
        return response

    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)

    logger.info("HTTP application created")
    return app
