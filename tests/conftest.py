"""
Shared fixtures: a seeded temporary SQLite ledger and the managers built on it.
"""

from typing import Dict

import pytest

from analytics import AnalyticsEngine
from budgeting import BudgetManager
from database_ops import Category, CategoryKind, DatabaseManager, DepositPath, PaymentMethod
from ledger import LedgerManager


@pytest.fixture
def db_manager(tmp_path):
    """Provide a file-backed SQLite database with default reference data."""
    manager = DatabaseManager(f"sqlite:///{(tmp_path / 'ledger.db').as_posix()}")
    manager.create_tables()
    manager.seed_defaults()
    try:
        yield manager
    finally:
        manager.close()


def _category_ids(db_manager: DatabaseManager, kind: CategoryKind) -> Dict[str, int]:
    session = db_manager.get_session()
    try:
        return {c.name: c.id for c in session.query(Category).filter(Category.kind == kind)}
    finally:
        session.close()


@pytest.fixture
def expense_categories(db_manager) -> Dict[str, int]:
    """Map of default expense category name -> id."""
    return _category_ids(db_manager, CategoryKind.EXPENSE)


@pytest.fixture
def income_categories(db_manager) -> Dict[str, int]:
    """Map of default income category name -> id."""
    return _category_ids(db_manager, CategoryKind.INCOME)


@pytest.fixture
def payment_methods(db_manager) -> Dict[str, int]:
    session = db_manager.get_session()
    try:
        return {pm.name: pm.id for pm in session.query(PaymentMethod)}
    finally:
        session.close()


@pytest.fixture
def deposit_paths(db_manager) -> Dict[str, int]:
    session = db_manager.get_session()
    try:
        return {dp.name: dp.id for dp in session.query(DepositPath)}
    finally:
        session.close()


@pytest.fixture
def budget_manager(db_manager):
    return BudgetManager(db_manager)


@pytest.fixture
def ledger(db_manager):
    return LedgerManager(db_manager)


@pytest.fixture
def analytics_engine(db_manager, budget_manager):
    return AnalyticsEngine(db_manager, budget_manager)


@pytest.fixture
def add_expense(ledger, payment_methods):
    """Factory recording an expense paid in cash unless told otherwise."""

    def _add(date, amount, user, category_id, keyword=None, payment_method="현금"):
        return ledger.record_expense(
            date,
            amount,
            user,
            category_id,
            payment_methods[payment_method],
            keyword=keyword,
        )

    return _add
