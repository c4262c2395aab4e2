"""
Budgeting module for per-category spending ceilings.

This module stores monthly/yearly ceilings per category, either for one
household member or for everyone, and computes how much of each ceiling has
been used in the month and year of a reference date.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import contains_eager

from database_ops import Category, CategoryBudget, DatabaseManager, ExpenseTransaction, utc_now
from exceptions import ConflictError, InvalidInputError, LedgerError, NotFoundError, StorageError
from period_resolver import month_window, year_window
from utils import current_time

# Configure logging
logger = logging.getLogger(__name__)

GLOBAL_USER_NAME = ""


@dataclass(frozen=True)
class BudgetScope:
    """
    Who a budget applies to: one named user, or everyone.

    The storage layer encodes the global scope as an empty user name; use
    column_value when talking to the database and nowhere else.
    """
    user_name: Optional[str] = None

    @classmethod
    def everyone(cls) -> "BudgetScope":
        return cls(None)

    @classmethod
    def for_user(cls, user_name: str) -> "BudgetScope":
        """Scope for a single named user. A blank name is rejected."""
        name = (user_name or "").strip()
        if not name:
            raise InvalidInputError("User name must not be blank", details={"user_name": user_name})
        return cls(name)

    @classmethod
    def from_user_name(cls, user_name: Optional[str]) -> "BudgetScope":
        """Boundary conversion: a missing or blank name means everyone."""
        name = (user_name or "").strip()
        return cls(name) if name else cls.everyone()

    @property
    def is_global(self) -> bool:
        return not self.user_name

    @property
    def column_value(self) -> str:
        return GLOBAL_USER_NAME if self.is_global else self.user_name

    def __str__(self) -> str:
        return "<everyone>" if self.is_global else self.user_name


GLOBAL_SCOPE = BudgetScope.everyone()


@dataclass
class BudgetUsage:
    """
    Spend against a budget for the month and year of a reference date.

    Attributes:
        category_id: Budgeted category
        category_name: Category display name
        scope: Scope of the budget row that applied (may be the global
            fallback even when a user was asked for)
        monthly_limit: Monthly ceiling (0 = not set)
        yearly_limit: Yearly ceiling (0 = not set)
        monthly_used: Expenses in the reference month
        yearly_used: Expenses in the reference year
        monthly_remaining: monthly_limit - monthly_used, may be negative
        yearly_remaining: yearly_limit - yearly_used, may be negative
        monthly_percent: Used/limit*100, 0 when no monthly limit
        yearly_percent: Used/limit*100, 0 when no yearly limit
        is_monthly_over: Used > limit, only when a monthly limit is set
        is_yearly_over: Used > limit, only when a yearly limit is set
    """
    category_id: int
    category_name: str
    scope: BudgetScope
    monthly_limit: int
    yearly_limit: int
    monthly_used: int
    yearly_used: int
    monthly_remaining: int
    yearly_remaining: int
    monthly_percent: float
    yearly_percent: float
    is_monthly_over: bool
    is_yearly_over: bool

    @classmethod
    def from_totals(
        cls,
        budget: CategoryBudget,
        category_name: str,
        monthly_used: int,
        yearly_used: int
    ) -> "BudgetUsage":
        """Derive remaining, percent and over flags from a budget row and two sums."""
        monthly_limit = budget.monthly_limit or 0
        yearly_limit = budget.yearly_limit or 0

        monthly_percent = 0.0
        is_monthly_over = False
        if monthly_limit > 0:
            monthly_percent = monthly_used / monthly_limit * 100
            is_monthly_over = monthly_used > monthly_limit

        yearly_percent = 0.0
        is_yearly_over = False
        if yearly_limit > 0:
            yearly_percent = yearly_used / yearly_limit * 100
            is_yearly_over = yearly_used > yearly_limit

        return cls(
            category_id=budget.category_id,
            category_name=category_name,
            scope=BudgetScope.from_user_name(budget.user_name),
            monthly_limit=monthly_limit,
            yearly_limit=yearly_limit,
            monthly_used=monthly_used,
            yearly_used=yearly_used,
            monthly_remaining=monthly_limit - monthly_used,
            yearly_remaining=yearly_limit - yearly_used,
            monthly_percent=monthly_percent,
            yearly_percent=yearly_percent,
            is_monthly_over=is_monthly_over,
            is_yearly_over=is_yearly_over,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category_id": self.category_id,
            "category_name": self.category_name,
            "user_name": self.scope.column_value,
            "is_global": self.scope.is_global,
            "monthly_budget": self.monthly_limit,
            "yearly_budget": self.yearly_limit,
            "monthly_used": self.monthly_used,
            "yearly_used": self.yearly_used,
            "monthly_remaining": self.monthly_remaining,
            "yearly_remaining": self.yearly_remaining,
            "monthly_percent": self.monthly_percent,
            "yearly_percent": self.yearly_percent,
            "is_monthly_over": self.is_monthly_over,
            "is_yearly_over": self.is_yearly_over,
        }


def _validate_category_id(category_id: Any) -> int:
    if isinstance(category_id, bool) or not isinstance(category_id, int) or category_id <= 0:
        raise InvalidInputError("Category ID is required", details={"category_id": category_id})
    return category_id


def _validate_amount(name: str, amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInputError(f"{name} must be an integer", details={name: amount})
    if amount < 0:
        raise InvalidInputError(f"{name} must not be negative", details={name: amount})
    return amount


def _validate_limits(monthly_limit: Any, yearly_limit: Any) -> None:
    _validate_amount("monthly_limit", monthly_limit)
    _validate_amount("yearly_limit", yearly_limit)
    if monthly_limit == 0 and yearly_limit == 0:
        raise InvalidInputError(
            "At least one of the monthly or yearly limit must be set",
            details={"monthly_limit": monthly_limit, "yearly_limit": yearly_limit}
        )


def _insert_ignoring_duplicates(dialect_name: str, table):
    """INSERT ... ON CONFLICT DO NOTHING for the dialects that support it."""
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


class BudgetManager:
    """
    Manages category budgets and computes their usage.

    Every public method opens its own session and closes it before returning.
    """

    def __init__(self, db_manager: DatabaseManager, utc_offset_minutes: Optional[int] = None):
        """
        Initialize the budget manager.

        Args:
            db_manager: DatabaseManager instance
            utc_offset_minutes: Fixed ledger offset used when no reference
                date is passed; None means host local time
        """
        self.db_manager = db_manager
        self.utc_offset_minutes = utc_offset_minutes
        logger.info("Budget manager initialized")

    # ------------------------------------------------------------------
    # Budget store
    # ------------------------------------------------------------------

    def list_budgets(
        self,
        scope: Optional[BudgetScope] = None,
        category_id: Optional[int] = None
    ) -> List[CategoryBudget]:
        """
        List budgets, optionally filtered by scope and/or category.

        Args:
            scope: Only budgets of this scope (None = every scope)
            category_id: Only budgets of this category (None = every category)

        Returns:
            Detached CategoryBudget rows with their category loaded.
            Ordering: by user name when filtering on category only, by
            category name when filtering on scope only, by user name then
            category name when unfiltered.
        """
        session = self.db_manager.get_session()
        try:
            query = (
                session.query(CategoryBudget)
                .outerjoin(CategoryBudget.category)
                .options(contains_eager(CategoryBudget.category))
            )

            if scope is not None and category_id is not None:
                query = query.filter(
                    CategoryBudget.category_id == category_id,
                    CategoryBudget.user_name == scope.column_value
                )
            elif category_id is not None:
                query = query.filter(CategoryBudget.category_id == category_id).order_by(
                    CategoryBudget.user_name
                )
            elif scope is not None:
                query = query.filter(CategoryBudget.user_name == scope.column_value).order_by(
                    Category.name
                )
            else:
                query = query.order_by(CategoryBudget.user_name, Category.name)

            budgets = query.all()
            session.expunge_all()
            return budgets
        except SQLAlchemyError as e:
            logger.error(f"Failed to list budgets: {e}")
            raise StorageError(
                "Failed to list budgets",
                details={"scope": scope, "category_id": category_id},
                original_error=e
            )
        finally:
            session.close()

    def create_budget(
        self,
        category_id: int,
        scope: BudgetScope,
        monthly_limit: int = 0,
        yearly_limit: int = 0
    ) -> int:
        """
        Create a budget for a category and scope.

        The duplicate check and the insert are one statement, so two
        concurrent creates for the same key cannot both succeed.

        Args:
            category_id: Budgeted category
            scope: Owning user or everyone
            monthly_limit: Monthly ceiling, >= 0
            yearly_limit: Yearly ceiling, >= 0 (at least one must be > 0)

        Returns:
            ID of the new budget

        Raises:
            InvalidInputError: Bad category id or limits, or unknown category
            ConflictError: A budget already exists for (category, scope)
            StorageError: If the insert fails
        """
        _validate_category_id(category_id)
        _validate_limits(monthly_limit, yearly_limit)

        session = self.db_manager.get_session()
        try:
            if session.get(Category, category_id) is None:
                raise InvalidInputError("Category does not exist", details={"category_id": category_id})

            now = utc_now()
            table = CategoryBudget.__table__
            stmt = (
                _insert_ignoring_duplicates(session.get_bind().dialect.name, table)
                .values(
                    category_id=category_id,
                    user_name=scope.column_value,
                    monthly_budget=monthly_limit,
                    yearly_budget=yearly_limit,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=[table.c.category_id, table.c.user_name])
            )
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                raise ConflictError(
                    "A budget already exists for this category and user",
                    details={"category_id": category_id, "user_name": scope.column_value}
                )

            budget_id = result.inserted_primary_key[0]
            session.commit()
            logger.info(
                f"Created budget {budget_id} for category {category_id} ({scope}): "
                f"monthly={monthly_limit}, yearly={yearly_limit}"
            )
            return budget_id
        except IntegrityError as e:
            session.rollback()
            logger.warning(f"Budget insert rejected for category {category_id}: {e}")
            raise InvalidInputError(
                "Category does not exist",
                details={"category_id": category_id},
                original_error=e
            )
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to create budget: {e}")
            raise StorageError(
                "Failed to create budget",
                details={"category_id": category_id, "user_name": scope.column_value},
                original_error=e
            )
        finally:
            session.close()

    def update_budget(self, budget_id: int, monthly_limit: int, yearly_limit: int) -> CategoryBudget:
        """
        Replace both limits of a budget.

        Raises:
            InvalidInputError: Negative limits, or both limits 0
            NotFoundError: No budget with this id
            StorageError: If the update fails
        """
        _validate_limits(monthly_limit, yearly_limit)

        session = self.db_manager.get_session()
        try:
            budget = session.query(CategoryBudget).filter(CategoryBudget.id == budget_id).first()
            if not budget:
                logger.warning(f"Budget {budget_id} not found")
                raise NotFoundError("Budget not found", details={"budget_id": budget_id})

            budget.monthly_limit = monthly_limit
            budget.yearly_limit = yearly_limit
            budget.updated_at = utc_now()
            session.commit()
            session.refresh(budget)
            session.expunge(budget)

            logger.info(f"Updated budget {budget_id}: monthly={monthly_limit}, yearly={yearly_limit}")
            return budget
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to update budget: {e}")
            raise StorageError("Failed to update budget", details={"budget_id": budget_id}, original_error=e)
        finally:
            session.close()

    def _update_single_limit(self, column, label: str, category_id: int, scope: BudgetScope, amount: int) -> None:
        _validate_category_id(category_id)
        _validate_amount(label, amount)

        session = self.db_manager.get_session()
        try:
            updated = (
                session.query(CategoryBudget)
                .filter(
                    CategoryBudget.category_id == category_id,
                    CategoryBudget.user_name == scope.column_value
                )
                .update({column: amount, CategoryBudget.updated_at: utc_now()}, synchronize_session=False)
            )
            if updated == 0:
                session.rollback()
                raise NotFoundError(
                    "Budget not found",
                    details={"category_id": category_id, "user_name": scope.column_value}
                )
            session.commit()
            logger.info(f"Set {label} of category {category_id} ({scope}) to {amount}")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to update {label}: {e}")
            raise StorageError(
                f"Failed to update {label}",
                details={"category_id": category_id, "user_name": scope.column_value},
                original_error=e
            )
        finally:
            session.close()

    def update_monthly_limit(self, category_id: int, scope: BudgetScope, amount: int) -> None:
        """
        Set only the monthly limit of the (category, scope) budget.

        Raises:
            InvalidInputError: Bad category id or negative amount
            NotFoundError: No budget for (category, scope)
        """
        self._update_single_limit(CategoryBudget.monthly_limit, "monthly_limit", category_id, scope, amount)

    def update_yearly_limit(self, category_id: int, scope: BudgetScope, amount: int) -> None:
        """Set only the yearly limit of the (category, scope) budget."""
        self._update_single_limit(CategoryBudget.yearly_limit, "yearly_limit", category_id, scope, amount)

    def delete_budget(self, budget_id: int) -> None:
        """
        Delete a budget.

        Raises:
            NotFoundError: No budget with this id
            StorageError: If the delete fails
        """
        session = self.db_manager.get_session()
        try:
            deleted = (
                session.query(CategoryBudget)
                .filter(CategoryBudget.id == budget_id)
                .delete(synchronize_session=False)
            )
            if deleted == 0:
                session.rollback()
                logger.warning(f"Budget {budget_id} not found")
                raise NotFoundError("Budget not found", details={"budget_id": budget_id})
            session.commit()
            logger.info(f"Deleted budget {budget_id}")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to delete budget: {e}")
            raise StorageError("Failed to delete budget", details={"budget_id": budget_id}, original_error=e)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Usage calculator
    # ------------------------------------------------------------------

    @staticmethod
    def _find_budget(session, category_id: int, scope: BudgetScope) -> Optional[CategoryBudget]:
        """User row first, then the global row for the same category."""
        query = (
            session.query(CategoryBudget)
            .outerjoin(CategoryBudget.category)
            .options(contains_eager(CategoryBudget.category))
            .filter(CategoryBudget.category_id == category_id)
        )
        budget = query.filter(CategoryBudget.user_name == scope.column_value).first()
        if budget is None and not scope.is_global:
            budget = query.filter(CategoryBudget.user_name == GLOBAL_USER_NAME).first()
        return budget

    @staticmethod
    def _sum_expenses(session, category_id: int, user_name: str, start: datetime, end: datetime) -> int:
        query = session.query(func.coalesce(func.sum(ExpenseTransaction.amount), 0)).filter(
            ExpenseTransaction.category_id == category_id,
            ExpenseTransaction.date >= start,
            ExpenseTransaction.date <= end
        )
        if user_name:
            query = query.filter(ExpenseTransaction.user_name == user_name)
        return int(query.scalar() or 0)

    def get_budget_usage(
        self,
        category_id: int,
        scope: BudgetScope,
        reference_date: Optional[datetime] = None
    ) -> Optional[BudgetUsage]:
        """
        Compute usage of the budget that applies to (category, scope).

        A user without their own budget falls back to the global budget of
        the category. A global budget counts every user's expenses; a user
        budget counts only that user's.

        Args:
            category_id: Category to check
            scope: Requested scope
            reference_date: Month/year to measure (defaults to ledger "now")

        Returns:
            BudgetUsage, or None when no budget applies

        Raises:
            StorageError: If a lookup or sum query fails
        """
        reference = reference_date or current_time(self.utc_offset_minutes)
        month_start, month_end = month_window(reference)
        year_start, year_end = year_window(reference)

        session = self.db_manager.get_session()
        try:
            budget = self._find_budget(session, category_id, scope)
            if budget is None:
                return None

            category_name = budget.category.name if budget.category is not None else ""
            monthly_used = self._sum_expenses(session, category_id, budget.user_name, month_start, month_end)
            yearly_used = self._sum_expenses(session, category_id, budget.user_name, year_start, year_end)
            return BudgetUsage.from_totals(budget, category_name, monthly_used, yearly_used)
        except SQLAlchemyError as e:
            logger.error(f"Failed to compute budget usage for category {category_id}: {e}")
            raise StorageError(
                "Failed to compute budget usage",
                details={"category_id": category_id, "user_name": scope.column_value},
                original_error=e
            )
        finally:
            session.close()

    def get_all_budget_usages(
        self,
        scope: BudgetScope,
        reference_date: Optional[datetime] = None,
        include_global: bool = False
    ) -> List[BudgetUsage]:
        """
        Compute usage for every budget of a scope.

        Categories whose computation fails are logged and skipped.

        Args:
            scope: Scope to report on
            reference_date: Month/year to measure (defaults to ledger "now")
            include_global: For a user scope, also report global budgets of
                categories the user has no budget of their own for

        Returns:
            List of BudgetUsage in category name order
        """
        reference = reference_date or current_time(self.utc_offset_minutes)
        budgets = self.list_budgets(scope=scope)

        if include_global and not scope.is_global:
            own = {budget.category_id for budget in budgets}
            extra = [b for b in self.list_budgets(scope=GLOBAL_SCOPE) if b.category_id not in own]
            budgets = sorted(budgets + extra, key=lambda b: b.category_name or "")

        usages = []
        for budget in budgets:
            try:
                usage = self.get_budget_usage(budget.category_id, scope, reference)
            except LedgerError as e:
                logger.warning(f"Skipping budget usage for category {budget.category_id}: {e}")
                continue
            if usage is not None:
                usages.append(usage)
        return usages
