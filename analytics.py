"""
Analytics module for ledger statistics.

This module provides the aggregations behind the statistics screens:
per-category totals for a period, keyword and payment method drill-downs,
per-user spend, chart colours and the composite statistics response.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from budgeting import BudgetManager, BudgetScope
from database_ops import (
    Category,
    CategoryKind,
    DatabaseManager,
    ExpenseTransaction,
    IncomeTransaction,
    Keyword,
    PaymentMethod,
)
from exceptions import InvalidInputError, LedgerError, StorageError
from ledger import parse_category_kind
from period_resolver import PeriodSelection

logger = logging.getLogger(__name__)

CHART_PALETTE = [
    "#FF6B6B", "#4ECDC4", "#45B7D1", "#96CEB4", "#FFEAA7", "#DDA0DD", "#98D8C8", "#F7DC6F",
    "#FF8A80", "#80CBC4", "#81C784", "#FFB74D", "#F06292", "#9575CD", "#64B5F6", "#4DB6AC",
    "#AED581", "#FFD54F", "#FF8A65", "#A1887F", "#90A4AE", "#FFAB91", "#CE93D8", "#80DEEA",
    "#C5E1A5", "#FFF176", "#BCAAA4", "#B39DDB", "#81D4FA", "#A5D6A7", "#FFCC02", "#FF7043",
]

CATEGORY_COLUMNS = ["category_id", "category_name", "total_amount", "count", "percentage"]
KEYWORD_COLUMNS = ["keyword_id", "keyword_name", "total_amount", "count", "percentage"]
PAYMENT_METHOD_COLUMNS = ["payment_method_id", "payment_method_name", "total_amount", "count", "percentage"]
USER_COLUMNS = ["user_name", "total_amount", "count", "percentage"]


def generate_colors(count: int) -> List[str]:
    """
    Return `count` chart colours.

    The fixed palette is used first; beyond it colours are spread around the
    hue circle by the golden angle.
    """
    colors = []
    for i in range(count):
        if i < len(CHART_PALETTE):
            colors.append(CHART_PALETTE[i])
        else:
            hue = (i * 137) % 360
            saturation = 60 + (i % 3) * 15
            lightness = 50 + (i % 4) * 10
            colors.append(f"hsl({hue}, {saturation}%, {lightness}%)")
    return colors


def records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert a DataFrame to JSON-safe dict records (plain ints/floats)."""
    if df.empty:
        return []
    return json.loads(df.to_json(orient="records", force_ascii=False))


def _with_percentage(df: pd.DataFrame, columns: List[str], total: Optional[int] = None) -> pd.DataFrame:
    """Add the percentage column as a share of `total` (defaults to the column sum)."""
    if df.empty:
        return pd.DataFrame(columns=columns)
    df["total_amount"] = df["total_amount"].astype(int)
    df["count"] = df["count"].astype(int)
    base = df["total_amount"].sum() if total is None else total
    df["percentage"] = (df["total_amount"] / base * 100) if base > 0 else 0.0
    return df.sort_values("total_amount", ascending=False, kind="stable").reset_index(drop=True)[columns]


def _transaction_model(kind: CategoryKind):
    return ExpenseTransaction if kind is CategoryKind.EXPENSE else IncomeTransaction


def _in_period(model, period: PeriodSelection) -> list:
    day = func.date(model.date)
    return [day >= period.start_date, day <= period.end_date]


class AnalyticsEngine:
    """
    Aggregation engine for ledger statistics.

    All breakdowns return DataFrames sorted by total descending, with only
    non-zero totals, so they can be rendered in the CLI or serialized for
    the API alike.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        budget_manager: Optional[BudgetManager] = None,
        utc_offset_minutes: Optional[int] = None
    ):
        """
        Initialize the analytics engine.

        Args:
            db_manager: Database manager instance
            budget_manager: Used for the budget section of get_statistics
            utc_offset_minutes: Ledger offset for the budget manager built
                when none is given
        """
        self.db_manager = db_manager
        self.budget_manager = budget_manager or BudgetManager(db_manager, utc_offset_minutes)
        logger.info("Analytics engine initialized")

    @staticmethod
    def _kind(kind: Union[str, CategoryKind, None]) -> CategoryKind:
        return parse_category_kind(kind or CategoryKind.EXPENSE)

    def _frame(self, label: str, build_query, columns: List[str]) -> pd.DataFrame:
        session = self.db_manager.get_session()
        try:
            rows = build_query(session).all()
            return pd.DataFrame([tuple(row) for row in rows], columns=columns[:-1])
        except SQLAlchemyError as e:
            logger.error(f"Failed to get {label}: {e}", exc_info=True)
            raise StorageError(f"Failed to get {label}", original_error=e)
        finally:
            session.close()

    def total_amount(
        self,
        period: PeriodSelection,
        kind: Union[str, CategoryKind, None] = None
    ) -> Tuple[int, int]:
        """
        Sum and count all transactions of a kind in the period.

        Returns:
            (total, count)
        """
        model = _transaction_model(self._kind(kind))
        session = self.db_manager.get_session()
        try:
            total, count = session.query(
                func.coalesce(func.sum(model.amount), 0),
                func.count(model.id)
            ).filter(*_in_period(model, period)).one()
            return int(total or 0), int(count or 0)
        except SQLAlchemyError as e:
            logger.error(f"Failed to get total amount: {e}", exc_info=True)
            raise StorageError("Failed to get total amount", original_error=e)
        finally:
            session.close()

    def category_breakdown(
        self,
        period: PeriodSelection,
        kind: Union[str, CategoryKind, None] = None,
        total: Optional[int] = None
    ) -> pd.DataFrame:
        """
        Get totals per category of the given kind.

        Args:
            period: Resolved period
            kind: 'out' (default) or 'in'
            total: Base for the percentage column (defaults to the sum of rows)

        Returns:
            DataFrame with columns: category_id, category_name, total_amount,
            count, percentage
        """
        category_kind = self._kind(kind)
        model = _transaction_model(category_kind)
        amount = func.coalesce(func.sum(model.amount), 0)

        def build(session):
            return (
                session.query(Category.id, Category.name, amount, func.count(model.id))
                .join(model, model.category_id == Category.id)
                .filter(Category.kind == category_kind, *_in_period(model, period))
                .group_by(Category.id, Category.name)
                .having(amount > 0)
                .order_by(amount.desc())
            )

        df = self._frame("category breakdown", build, CATEGORY_COLUMNS)
        df = _with_percentage(df, CATEGORY_COLUMNS, total)
        logger.info(f"Generated category breakdown with {len(df)} categories for {period.label}")
        return df

    def keyword_breakdown(
        self,
        category_id: int,
        period: PeriodSelection,
        kind: Union[str, CategoryKind, None] = None
    ) -> pd.DataFrame:
        """
        Get totals per keyword within one category.

        Percentages are shares of the keyworded total of the category.
        """
        if isinstance(category_id, bool) or not isinstance(category_id, int) or category_id <= 0:
            raise InvalidInputError("Category ID is required", details={"category_id": category_id})
        model = _transaction_model(self._kind(kind))
        amount = func.coalesce(func.sum(model.amount), 0)

        def build(session):
            return (
                session.query(Keyword.id, Keyword.name, amount, func.count(model.id))
                .join(model, model.keyword_id == Keyword.id)
                .filter(Keyword.category_id == category_id, *_in_period(model, period))
                .group_by(Keyword.id, Keyword.name)
                .having(amount > 0)
                .order_by(amount.desc())
            )

        return _with_percentage(self._frame("keyword breakdown", build, KEYWORD_COLUMNS), KEYWORD_COLUMNS)

    def payment_method_breakdown(self, period: PeriodSelection, total: Optional[int] = None) -> pd.DataFrame:
        """Get expense totals per active payment method."""
        amount = func.coalesce(func.sum(ExpenseTransaction.amount), 0)

        def build(session):
            return (
                session.query(PaymentMethod.id, PaymentMethod.name, amount, func.count(ExpenseTransaction.id))
                .join(ExpenseTransaction, ExpenseTransaction.payment_method_id == PaymentMethod.id)
                .filter(PaymentMethod.is_active.is_(True), *_in_period(ExpenseTransaction, period))
                .group_by(PaymentMethod.id, PaymentMethod.name)
                .having(amount > 0)
                .order_by(amount.desc())
            )

        df = self._frame("payment method breakdown", build, PAYMENT_METHOD_COLUMNS)
        return _with_percentage(df, PAYMENT_METHOD_COLUMNS, total)

    def payment_method_category_breakdown(self, payment_method_id: int, period: PeriodSelection) -> pd.DataFrame:
        """Get expense totals per category for one payment method."""
        if isinstance(payment_method_id, bool) or not isinstance(payment_method_id, int) or payment_method_id <= 0:
            raise InvalidInputError(
                "Payment method ID is required",
                details={"payment_method_id": payment_method_id}
            )
        amount = func.coalesce(func.sum(ExpenseTransaction.amount), 0)

        def build(session):
            return (
                session.query(Category.id, Category.name, amount, func.count(ExpenseTransaction.id))
                .join(ExpenseTransaction, ExpenseTransaction.category_id == Category.id)
                .filter(
                    Category.kind == CategoryKind.EXPENSE,
                    ExpenseTransaction.payment_method_id == payment_method_id,
                    *_in_period(ExpenseTransaction, period)
                )
                .group_by(Category.id, Category.name)
                .having(amount > 0)
                .order_by(amount.desc())
            )

        df = self._frame("payment method category breakdown", build, CATEGORY_COLUMNS)
        return _with_percentage(df, CATEGORY_COLUMNS)

    def user_breakdown(self, period: PeriodSelection) -> pd.DataFrame:
        """Get expense totals per user."""
        amount = func.coalesce(func.sum(ExpenseTransaction.amount), 0)

        def build(session):
            return (
                session.query(ExpenseTransaction.user_name, amount, func.count(ExpenseTransaction.id))
                .filter(*_in_period(ExpenseTransaction, period))
                .group_by(ExpenseTransaction.user_name)
                .having(amount > 0)
                .order_by(amount.desc())
            )

        return _with_percentage(self._frame("user breakdown", build, USER_COLUMNS), USER_COLUMNS)

    @staticmethod
    def chart_data(df: pd.DataFrame, label_column: str) -> List[Dict[str, Any]]:
        """Build chart entries (label, value, percentage, color) from a breakdown."""
        if df.empty:
            return []
        chart = pd.DataFrame({
            "label": df[label_column],
            "value": df["total_amount"],
            "percentage": df["percentage"],
            "color": generate_colors(len(df)),
        })
        return records(chart)

    def get_statistics(
        self,
        period: PeriodSelection,
        kind: Union[str, CategoryKind, None] = None,
        user_name: Optional[str] = None,
        reference_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Build the composite statistics response for a period.

        Budget usages (expense statistics with a user only) and the payment
        method section (expense statistics only) are best effort: a failure
        there is logged and the section is left out.

        Args:
            period: Resolved period
            kind: 'out' (default) or 'in'
            user_name: User whose budget usages to include
            reference_date: Reference date for budget usage (defaults to now)

        Returns:
            Dictionary ready to be serialized as JSON
        """
        category_kind = self._kind(kind)
        total, count = self.total_amount(period, category_kind)
        categories = self.category_breakdown(period, category_kind, total=total)
        category_records = records(categories)

        result: Dict[str, Any] = {
            "period": period.label,
            "start_date": period.start_date,
            "end_date": period.end_date,
            "total_amount": total,
            "total_count": count,
            "categories": category_records,
            "top_category": category_records[0] if category_records else None,
            "chart_data": self.chart_data(categories, "category_name"),
        }

        scope = BudgetScope.from_user_name(user_name)
        if category_kind is CategoryKind.EXPENSE and not scope.is_global:
            try:
                usages = self.budget_manager.get_all_budget_usages(scope, reference_date)
                result["budget_usages"] = [usage.to_dict() for usage in usages]
            except LedgerError as e:
                logger.error(f"Budget usage lookup failed for {scope}: {e}")

        if category_kind is CategoryKind.EXPENSE:
            try:
                result["payment_methods"] = records(self.payment_method_breakdown(period, total=total))
            except LedgerError as e:
                logger.error(f"Payment method statistics failed: {e}")

        return result
