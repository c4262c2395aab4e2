"""
Database operations module for the household ledger.

This module defines the SQLAlchemy schema (reference tables, the two
transaction tables and the category budget table) and the DatabaseManager
that owns the engine, sessions and default seed data.
"""

import enum
import logging
import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from exceptions import StorageError

# Configure logging
logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone awareness.

    Returns:
        Current datetime in UTC with timezone info
    """
    return datetime.now(UTC)


def new_transaction_id() -> str:
    """Return a fresh UUID string for a transaction row."""
    return str(uuid.uuid4())


# Base class for declarative models
Base = declarative_base()


class CategoryKind(enum.Enum):
    """Whether a category classifies expenses or income."""
    EXPENSE = "out"
    INCOME = "in"


class ExpenseType(enum.Enum):
    """Fixed or variable spending (expense categories only)."""
    FIXED = "fixed"
    VARIABLE = "variable"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    """A household member whose name tags transactions and budgets."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name='{self.name}')>"

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "is_active": bool(self.is_active)}


class Category(Base):
    """
    SQLAlchemy model representing a transaction category.

    Attributes:
        id: Auto-incrementing primary key
        name: Display name
        kind: Expense ('out') or income ('in')
        expense_type: Fixed/variable, expense categories only
        is_active: Soft-delete flag; inactive categories keep their history
    """

    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    kind = Column(
        Enum(CategoryKind, values_callable=_enum_values, name="category_kind"),
        nullable=False,
        index=True,
    )
    expense_type = Column(
        Enum(ExpenseType, values_callable=_enum_values, name="expense_type"),
        nullable=True,
    )
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("name", "kind", name="uq_category_name_kind"),
    )

    def __repr__(self) -> str:
        return f"<Category(id={self.id}, name='{self.name}', kind={self.kind.value})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "expense_type": self.expense_type.value if self.expense_type else None,
            "is_active": bool(self.is_active),
        }


class Keyword(Base):
    """Free-text tag within a category, ranked by how often it is used."""

    __tablename__ = "keywords"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    usage_count = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_used = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("category_id", "name", name="uq_keyword_category_name"),
    )

    def __repr__(self) -> str:
        return f"<Keyword(id={self.id}, category_id={self.category_id}, name='{self.name}')>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "name": self.name,
            "usage_count": self.usage_count,
            "is_active": bool(self.is_active),
        }


class PaymentMethod(Base):
    """How an expense was paid; top-level methods may have children."""

    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(Integer, ForeignKey("payment_methods.id"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("name", "parent_id", name="uq_payment_method_name_parent"),
    )

    def __repr__(self) -> str:
        return f"<PaymentMethod(id={self.id}, name='{self.name}', parent_id={self.parent_id})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "is_active": bool(self.is_active),
        }


class DepositPath(Base):
    """Where income was received."""

    __tablename__ = "deposit_paths"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<DepositPath(id={self.id}, name='{self.name}')>"

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "is_active": bool(self.is_active)}


class ExpenseTransaction(Base):
    """
    SQLAlchemy model representing money going out.

    Attributes:
        id: UUID string primary key
        date: Civil date/time of the expense
        amount: Whole currency units, always positive
        user_name: Who spent it
        category_id: Expense category
        keyword_id: Optional keyword within the category
        payment_method_id: How it was paid
        memo: Optional free text
    """

    __tablename__ = "expense_transactions"

    id = Column(String(36), primary_key=True, default=new_transaction_id)
    date = Column(DateTime, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    user_name = Column(String(255), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    keyword_id = Column(Integer, ForeignKey("keywords.id"), nullable=True)
    payment_method_id = Column(Integer, ForeignKey("payment_methods.id"), nullable=False)
    memo = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    # Composite indexes for the budget usage and statistics queries
    __table_args__ = (
        Index("idx_expense_category_date", "category_id", "date"),
        Index("idx_expense_user_date", "user_name", "date"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExpenseTransaction(id={self.id}, date={self.date}, user='{self.user_name}', "
            f"category_id={self.category_id}, amount={self.amount})>"
        )


class IncomeTransaction(Base):
    """SQLAlchemy model representing money coming in."""

    __tablename__ = "income_transactions"

    id = Column(String(36), primary_key=True, default=new_transaction_id)
    date = Column(DateTime, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    user_name = Column(String(255), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    keyword_id = Column(Integer, ForeignKey("keywords.id"), nullable=True)
    deposit_path_id = Column(Integer, ForeignKey("deposit_paths.id"), nullable=False)
    memo = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_income_category_date", "category_id", "date"),
    )

    def __repr__(self) -> str:
        return (
            f"<IncomeTransaction(id={self.id}, date={self.date}, user='{self.user_name}', "
            f"category_id={self.category_id}, amount={self.amount})>"
        )


class CategoryBudget(Base):
    """
    SQLAlchemy model representing a spending ceiling for a category.

    An empty user_name is the storage encoding of the global scope (applies
    to every user); budgeting.BudgetScope is the Python-side representation.

    Attributes:
        id: Auto-incrementing primary key
        category_id: Category the ceiling applies to
        user_name: Owning user, or '' for all users
        monthly_limit: Monthly ceiling in whole currency units (0 = unset)
        yearly_limit: Yearly ceiling in whole currency units (0 = unset)
    """

    __tablename__ = "category_budgets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    user_name = Column(String(255), nullable=False, default="")
    monthly_limit = Column("monthly_budget", Integer, nullable=False, default=0)
    yearly_limit = Column("yearly_budget", Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    category = relationship("Category")

    __table_args__ = (
        UniqueConstraint("category_id", "user_name", name="uq_category_budget_scope"),
    )

    def __repr__(self) -> str:
        return (
            f"<CategoryBudget(id={self.id}, category_id={self.category_id}, user='{self.user_name}', "
            f"monthly={self.monthly_limit}, yearly={self.yearly_limit})>"
        )

    @property
    def category_name(self) -> Optional[str]:
        category = self.__dict__.get("category")
        return category.name if category is not None else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "user_name": self.user_name,
            "monthly_limit": self.monthly_limit,
            "yearly_limit": self.yearly_limit,
            "created_at": self.created_at.strftime("%Y-%m-%d %H:%M:%S") if self.created_at else None,
            "updated_at": self.updated_at.strftime("%Y-%m-%d %H:%M:%S") if self.updated_at else None,
        }


DEFAULT_EXPENSE_CATEGORIES = [
    "식비", "교통비", "생활용품", "의료비", "교육비",
    "문화생활", "쇼핑", "여행", "통신비", "주거비",
    "공과금", "보험료", "기타",
]
DEFAULT_INCOME_CATEGORIES = [
    "급여", "용돈", "상여금", "부업", "투자수익",
    "보험금", "환급", "기타수입",
]
DEFAULT_USERS = ["관리자", "손님"]
DEFAULT_PAYMENT_METHODS = {
    "카드": ["신용카드", "체크카드"],
    "계좌이체": ["온라인뱅킹", "ATM"],
    "현금": [],
    "기타": [],
}
DEFAULT_DEPOSIT_PATHS = ["급여계좌", "적금계좌", "현금", "기타"]


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:  # pragma: no cover - event hook
    """Enable foreign keys and WAL journaling on every new SQLite connection."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute("PRAGMA journal_mode = WAL")
    finally:
        cursor.close()


class DatabaseManager:
    """
    Manages database connections and schema.

    Handles engine creation, table creation, session handout and one-time
    default reference data.
    """

    def __init__(self, connection_string: str):
        """
        Initialize the database manager.

        Args:
            connection_string: SQLAlchemy connection string (e.g., 'sqlite:///data/account_app.db')

        Raises:
            StorageError: If the engine cannot be created
        """
        try:
            engine_args = {}
            if connection_string.startswith("sqlite"):
                engine_args["connect_args"] = {"check_same_thread": False}
            self.engine = create_engine(connection_string, echo=False, **engine_args)
            if self.engine.dialect.name == "sqlite":
                event.listen(self.engine, "connect", _configure_sqlite_connection)
            self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
            logger.info(f"Database manager initialized with connection: {connection_string}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StorageError(
                "Failed to initialize database",
                details={"connection_string": connection_string},
                original_error=e
            )

    def create_tables(self) -> None:
        """
        Create all database tables if they don't exist.

        Raises:
            StorageError: If table creation fails
        """
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables created/verified successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise StorageError("Failed to create database tables", original_error=e)

    def get_session(self) -> Session:
        """
        Get a new database session.

        Note:
            Caller is responsible for closing the session.
        """
        return self.SessionLocal()

    def seed_defaults(self) -> None:
        """
        Insert the default users, categories, payment methods and deposit
        paths. Each table is only seeded while it is empty.

        Raises:
            StorageError: If seeding fails
        """
        session = self.get_session()
        try:
            if session.query(User).count() == 0:
                session.add_all([User(name=name) for name in DEFAULT_USERS])

            if session.query(Category).count() == 0:
                session.add_all(
                    [Category(name=name, kind=CategoryKind.EXPENSE) for name in DEFAULT_EXPENSE_CATEGORIES]
                    + [Category(name=name, kind=CategoryKind.INCOME) for name in DEFAULT_INCOME_CATEGORIES]
                )

            if session.query(PaymentMethod).filter(PaymentMethod.parent_id.is_(None)).count() == 0:
                for parent_name, children in DEFAULT_PAYMENT_METHODS.items():
                    parent = PaymentMethod(name=parent_name)
                    session.add(parent)
                    session.flush()
                    session.add_all([PaymentMethod(name=child, parent_id=parent.id) for child in children])

            if session.query(DepositPath).count() == 0:
                session.add_all([DepositPath(name=name) for name in DEFAULT_DEPOSIT_PATHS])

            session.commit()
            logger.info("Default reference data verified")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to seed default data: {e}")
            raise StorageError("Failed to seed default data", original_error=e)
        finally:
            session.close()

    def close(self) -> None:
        """Close the database engine connection."""
        if hasattr(self, "engine"):
            self.engine.dispose()
            logger.info("Database connection closed")
