"""
Transaction ledger and reference-data directory.

Records expense and income transactions and maintains the small reference
tables they point at (users, categories, keywords, payment methods and
deposit paths).

Reference rows are never hard deleted. Deactivating one hides it from lists
and from new transactions while the transactions that already point at it
keep their history. Deactivation is refused while transactions still use the
row unless it is forced.
"""

import logging
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database_ops import (
    Category,
    CategoryKind,
    DatabaseManager,
    DepositPath,
    ExpenseTransaction,
    ExpenseType,
    IncomeTransaction,
    Keyword,
    PaymentMethod,
    User,
    utc_now,
)
from exceptions import ConflictError, InUseError, InvalidInputError, NotFoundError, StorageError
from utils import parse_int

# Configure logging
logger = logging.getLogger(__name__)

TRANSACTION_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d")


def parse_transaction_date(value: Union[str, datetime]) -> datetime:
    """
    Parse a transaction date given as YYYY-MM-DD or YYYY-MM-DD HH:MM:SS.

    Dates are kept to whole seconds.

    Raises:
        InvalidInputError: If the value matches neither format
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None, microsecond=0)
    text = (value or "").strip()
    for fmt in TRANSACTION_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise InvalidInputError("Invalid date format (expected YYYY-MM-DD)", details={"date": value})


def parse_category_kind(value: Union[str, CategoryKind, None]) -> Optional[CategoryKind]:
    """Map 'out'/'in' (or a CategoryKind) to CategoryKind; None passes through."""
    if value is None or isinstance(value, CategoryKind):
        return value
    try:
        return CategoryKind(str(value).strip().lower())
    except ValueError:
        raise InvalidInputError("Category kind must be 'out' or 'in'", details={"kind": value})


def _require_name(name: Optional[str], field: str = "name") -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidInputError(f"{field} is required", details={field: name})
    return cleaned


def _require_id(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidInputError(f"{field} is required", details={field: value})
    return value


def listing_window(
    on_date: Union[str, datetime, None] = None,
    year: Any = None,
    month: Any = None
) -> tuple:
    """
    Half-open [start, end) range for a transaction listing.

    Either a single day or a (year, month) pair must be given.
    """
    if on_date:
        day = datetime.combine(parse_transaction_date(on_date).date(), time.min)
        return day, day + timedelta(days=1)

    year_num, month_num = parse_int(year), parse_int(month)
    if year_num is None or month_num is None:
        raise InvalidInputError("Either date or year and month are required", details={"year": year, "month": month})
    if not (1 <= month_num <= 12) or not (1 <= year_num <= 9998):
        raise InvalidInputError("Invalid year or month", details={"year": year, "month": month})

    start = datetime(year_num, month_num, 1)
    if month_num == 12:
        return start, datetime(year_num + 1, 1, 1)
    return start, datetime(year_num, month_num + 1, 1)


def _upsert_keyword(session, category_id: int, name: str) -> Keyword:
    """Find or add the keyword inside an open session and flush it."""
    keyword = session.query(Keyword).filter(
        Keyword.category_id == category_id,
        Keyword.name == name
    ).first()
    if keyword is None:
        keyword = Keyword(category_id=category_id, name=name)
        session.add(keyword)
    else:
        keyword.usage_count = (keyword.usage_count or 0) + 1
        keyword.last_used = utc_now()
        keyword.is_active = True
    session.flush()
    return keyword


def _count(session, model, *criteria) -> int:
    return session.query(model).filter(*criteria).count()


def _category_usage(session, category: Category) -> int:
    return (
        _count(session, ExpenseTransaction, ExpenseTransaction.category_id == category.id)
        + _count(session, IncomeTransaction, IncomeTransaction.category_id == category.id)
    )


def _payment_method_usage(session, payment_method: PaymentMethod) -> int:
    return _count(session, ExpenseTransaction, ExpenseTransaction.payment_method_id == payment_method.id)


def _deposit_path_usage(session, deposit_path: DepositPath) -> int:
    return _count(session, IncomeTransaction, IncomeTransaction.deposit_path_id == deposit_path.id)


def _user_usage(session, user: User) -> int:
    return (
        _count(session, ExpenseTransaction, ExpenseTransaction.user_name == user.name)
        + _count(session, IncomeTransaction, IncomeTransaction.user_name == user.name)
    )


def _keyword_usage(session, keyword: Keyword) -> int:
    return (
        _count(session, ExpenseTransaction, ExpenseTransaction.keyword_id == keyword.id)
        + _count(session, IncomeTransaction, IncomeTransaction.keyword_id == keyword.id)
    )


class LedgerManager:
    """
    Records transactions and manages the reference directory.

    Every public method opens its own session and closes it before returning.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        logger.info("Ledger manager initialized")

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    def list_categories(
        self,
        kind: Union[str, CategoryKind, None] = None,
        include_inactive: bool = False
    ) -> List[Category]:
        """
        List categories ordered by name.

        Args:
            kind: 'out', 'in' or None for both
            include_inactive: Include deactivated categories
        """
        category_kind = parse_category_kind(kind)
        criteria = [Category.kind == category_kind] if category_kind is not None else []
        return self._list(Category, "categories", include_inactive, criteria)

    def list_users(self, include_inactive: bool = False) -> List[User]:
        return self._list(User, "users", include_inactive)

    def list_payment_methods(self, include_inactive: bool = False) -> List[PaymentMethod]:
        """List payment methods ordered by parent, then name."""
        return self._list(
            PaymentMethod,
            "payment methods",
            include_inactive,
            order_by=(PaymentMethod.parent_id.isnot(None), PaymentMethod.parent_id, PaymentMethod.name)
        )

    def list_deposit_paths(self, include_inactive: bool = False) -> List[DepositPath]:
        return self._list(DepositPath, "deposit paths", include_inactive)

    def list_keywords(self, category_id: int, include_inactive: bool = False) -> List[Keyword]:
        """Keywords of a category, most used first."""
        _require_id(category_id, "category_id")
        return self._list(
            Keyword,
            "keywords",
            include_inactive,
            [Keyword.category_id == category_id],
            order_by=(Keyword.usage_count.desc(), Keyword.name)
        )

    def _list(self, model, label: str, include_inactive: bool, criteria=(), order_by=None):
        session = self.db_manager.get_session()
        try:
            query = session.query(model).filter(*criteria)
            if not include_inactive:
                query = query.filter(model.is_active.is_(True))
            rows = query.order_by(*(order_by or (model.name,))).all()
            session.expunge_all()
            return rows
        except SQLAlchemyError as e:
            logger.error(f"Failed to list {label}: {e}")
            raise StorageError(f"Failed to list {label}", original_error=e)
        finally:
            session.close()

    def _add(self, instance, label: str, details: dict):
        session = self.db_manager.get_session()
        try:
            session.add(instance)
            session.commit()
            session.refresh(instance)
            session.expunge(instance)
            logger.info(f"Added {label}: {details}")
            return instance
        except IntegrityError as e:
            session.rollback()
            logger.warning(f"Duplicate or invalid {label}: {details}")
            raise ConflictError(f"{label} already exists", details=details, original_error=e)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to add {label}: {e}")
            raise StorageError(f"Failed to add {label}", details=details, original_error=e)
        finally:
            session.close()

    def add_category(
        self,
        name: str,
        kind: Union[str, CategoryKind],
        expense_type: Optional[str] = None
    ) -> Category:
        """
        Add a category.

        A deactivated category with the same name and kind is reactivated
        instead of inserting a second row.

        Raises:
            InvalidInputError: Blank name or unknown kind/expense type
            ConflictError: An active category with this name and kind exists
        """
        cleaned = _require_name(name)
        category_kind = parse_category_kind(kind)
        if category_kind is None:
            raise InvalidInputError("Category kind is required", details={"kind": kind})

        fixed_or_variable = None
        if expense_type:
            try:
                fixed_or_variable = ExpenseType(expense_type)
            except ValueError:
                raise InvalidInputError(
                    "Expense type must be 'fixed' or 'variable'",
                    details={"expense_type": expense_type}
                )
            if category_kind is not CategoryKind.EXPENSE:
                raise InvalidInputError(
                    "Only expense categories have an expense type",
                    details={"kind": category_kind.value}
                )

        details = {"name": cleaned, "kind": category_kind.value}
        session = self.db_manager.get_session()
        try:
            existing = session.query(Category).filter(
                Category.name == cleaned,
                Category.kind == category_kind
            ).first()
            if existing is not None and not existing.is_active:
                existing.is_active = True
                existing.expense_type = fixed_or_variable
                session.commit()
                session.expunge(existing)
                logger.info(f"Reactivated category: {details}")
                return existing
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to add category: {e}")
            raise StorageError("Failed to add category", details=details, original_error=e)
        finally:
            session.close()

        return self._add(
            Category(name=cleaned, kind=category_kind, expense_type=fixed_or_variable),
            "category",
            details
        )

    def add_user(self, name: str, email: Optional[str] = None) -> User:
        cleaned = _require_name(name)
        return self._add(User(name=cleaned, email=email), "user", {"name": cleaned})

    def add_payment_method(self, name: str, parent_id: Optional[int] = None) -> PaymentMethod:
        cleaned = _require_name(name)
        return self._add(
            PaymentMethod(name=cleaned, parent_id=parent_id),
            "payment method",
            {"name": cleaned, "parent_id": parent_id}
        )

    def add_deposit_path(self, name: str) -> DepositPath:
        cleaned = _require_name(name)
        return self._add(DepositPath(name=cleaned), "deposit path", {"name": cleaned})

    def get_or_create_keyword(self, category_id: int, name: str) -> Keyword:
        """
        Return the keyword for (category, name), creating it on first use.

        An existing keyword has its usage count bumped and last_used refreshed.
        """
        _require_id(category_id, "category_id")
        cleaned = _require_name(name, "keyword")

        session = self.db_manager.get_session()
        try:
            if session.get(Category, category_id) is None:
                raise InvalidInputError("Category does not exist", details={"category_id": category_id})
            keyword = _upsert_keyword(session, category_id, cleaned)
            session.commit()
            session.refresh(keyword)
            session.expunge(keyword)
            return keyword
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to save keyword: {e}")
            raise StorageError("Failed to save keyword", details={"keyword": cleaned}, original_error=e)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _usage(self, model, record_id: int, label: str, counter: Callable) -> int:
        _require_id(record_id, f"{label} id")
        session = self.db_manager.get_session()
        try:
            record = session.get(model, record_id)
            if record is None:
                raise NotFoundError(f"{label} not found", details={"id": record_id})
            return counter(session, record)
        except SQLAlchemyError as e:
            logger.error(f"Failed to check {label} usage: {e}")
            raise StorageError(f"Failed to check {label} usage", details={"id": record_id}, original_error=e)
        finally:
            session.close()

    def _deactivate(self, model, record_id: int, label: str, counter: Callable, force: bool) -> None:
        _require_id(record_id, f"{label} id")
        session = self.db_manager.get_session()
        try:
            record = session.get(model, record_id)
            if record is None:
                raise NotFoundError(f"{label} not found", details={"id": record_id})

            if not force:
                in_use = counter(session, record)
                if in_use:
                    logger.warning(f"Refused to deactivate {label} {record_id}: used by {in_use} transaction(s)")
                    raise InUseError(
                        f"{label} is used by existing transactions",
                        details={"id": record_id, "transactions": in_use}
                    )

            record.is_active = False
            session.commit()
            logger.info(f"Deactivated {label} {record_id}" + (" (forced)" if force else ""))
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to deactivate {label}: {e}")
            raise StorageError(f"Failed to deactivate {label}", details={"id": record_id}, original_error=e)
        finally:
            session.close()

    def category_usage(self, category_id: int) -> int:
        """Number of expense and income transactions in the category."""
        return self._usage(Category, category_id, "category", _category_usage)

    def payment_method_usage(self, payment_method_id: int) -> int:
        return self._usage(PaymentMethod, payment_method_id, "payment method", _payment_method_usage)

    def deposit_path_usage(self, deposit_path_id: int) -> int:
        return self._usage(DepositPath, deposit_path_id, "deposit path", _deposit_path_usage)

    def user_usage(self, user_id: int) -> int:
        return self._usage(User, user_id, "user", _user_usage)

    def deactivate_category(self, category_id: int, force: bool = False) -> None:
        """
        Soft delete a category.

        Args:
            category_id: Category to deactivate
            force: Deactivate even when transactions use it

        Raises:
            NotFoundError: No such category
            InUseError: Transactions use it and force is False
        """
        self._deactivate(Category, category_id, "category", _category_usage, force)

    def deactivate_payment_method(self, payment_method_id: int, force: bool = False) -> None:
        self._deactivate(PaymentMethod, payment_method_id, "payment method", _payment_method_usage, force)

    def deactivate_deposit_path(self, deposit_path_id: int, force: bool = False) -> None:
        self._deactivate(DepositPath, deposit_path_id, "deposit path", _deposit_path_usage, force)

    def deactivate_user(self, user_id: int, force: bool = False) -> None:
        self._deactivate(User, user_id, "user", _user_usage, force)

    def deactivate_keyword(self, keyword_id: int) -> None:
        # Keywords are only suggestions, so used ones can always be hidden
        self._deactivate(Keyword, keyword_id, "keyword", _keyword_usage, force=True)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _check_category(self, session, category_id: int, kind: CategoryKind) -> Category:
        category = session.get(Category, category_id)
        if category is None or category.kind is not kind or not category.is_active:
            raise InvalidInputError(
                f"Category {category_id} is not an active '{kind.value}' category",
                details={"category_id": category_id}
            )
        return category

    @staticmethod
    def _check_reference(session, model, record_id: int, field: str) -> None:
        record = session.get(model, record_id)
        if record is None or not record.is_active:
            raise InvalidInputError(f"{field} {record_id} is not active", details={field: record_id})

    def _record(self, transaction, kind: CategoryKind, label: str, reference, keyword: Optional[str]):
        """
        Validate references and insert the transaction with its keyword.

        The keyword and the transaction are written in one commit, so a
        rejected transaction leaves no keyword behind.
        """
        model, field = reference
        session = self.db_manager.get_session()
        try:
            self._check_category(session, transaction.category_id, kind)
            self._check_reference(session, model, getattr(transaction, field), field)
            if keyword and keyword.strip():
                transaction.keyword_id = _upsert_keyword(session, transaction.category_id, keyword.strip()).id
            session.add(transaction)
            session.commit()
            session.refresh(transaction)
            session.expunge(transaction)
            logger.info(
                f"Recorded {label} {transaction.id}: {transaction.amount} "
                f"({transaction.user_name}, category {transaction.category_id}, {transaction.date})"
            )
            return transaction
        except InvalidInputError:
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            logger.warning(f"Rejected {label}: {e}")
            raise InvalidInputError(f"Invalid reference in {label}", original_error=e)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to record {label}: {e}")
            raise StorageError(f"Failed to record {label}", original_error=e)
        finally:
            session.close()

    @staticmethod
    def _validate_common(date_value, amount, user_name, category_id):
        when = parse_transaction_date(date_value)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError("Amount must be a positive integer", details={"amount": amount})
        user = _require_name(user_name, "user_name")
        _require_id(category_id, "category_id")
        return when, user

    def record_expense(
        self,
        date: Union[str, datetime],
        amount: int,
        user_name: str,
        category_id: int,
        payment_method_id: int,
        keyword: Optional[str] = None,
        memo: Optional[str] = None
    ) -> ExpenseTransaction:
        """
        Record an expense.

        Args:
            date: YYYY-MM-DD or YYYY-MM-DD HH:MM:SS
            amount: Positive whole currency units
            user_name: Who spent it
            category_id: Active expense category
            payment_method_id: Active payment method
            keyword: Optional keyword, created on first use
            memo: Optional free text

        Raises:
            InvalidInputError: Any field invalid or a reference missing or inactive
        """
        when, user = self._validate_common(date, amount, user_name, category_id)
        _require_id(payment_method_id, "payment_method_id")

        return self._record(
            ExpenseTransaction(
                date=when,
                amount=amount,
                user_name=user,
                category_id=category_id,
                payment_method_id=payment_method_id,
                memo=memo,
            ),
            CategoryKind.EXPENSE,
            "expense",
            (PaymentMethod, "payment_method_id"),
            keyword
        )

    def record_income(
        self,
        date: Union[str, datetime],
        amount: int,
        user_name: str,
        category_id: int,
        deposit_path_id: int,
        keyword: Optional[str] = None,
        memo: Optional[str] = None
    ) -> IncomeTransaction:
        """Record an income; same rules as record_expense with a deposit path."""
        when, user = self._validate_common(date, amount, user_name, category_id)
        _require_id(deposit_path_id, "deposit_path_id")

        return self._record(
            IncomeTransaction(
                date=when,
                amount=amount,
                user_name=user,
                category_id=category_id,
                deposit_path_id=deposit_path_id,
                memo=memo,
            ),
            CategoryKind.INCOME,
            "income",
            (DepositPath, "deposit_path_id"),
            keyword
        )

    def list_expenses(
        self,
        on_date: Union[str, datetime, None] = None,
        year: Any = None,
        month: Any = None
    ) -> List[Dict[str, Any]]:
        """
        Expenses of one day or one month, oldest first, with reference names.

        Raises:
            InvalidInputError: Neither a valid date nor a valid year and month
        """
        return self._list_transactions(
            ExpenseTransaction, PaymentMethod, "payment_method", listing_window(on_date, year, month)
        )

    def list_incomes(
        self,
        on_date: Union[str, datetime, None] = None,
        year: Any = None,
        month: Any = None
    ) -> List[Dict[str, Any]]:
        """Incomes of one day or one month, oldest first, with reference names."""
        return self._list_transactions(
            IncomeTransaction, DepositPath, "deposit_path", listing_window(on_date, year, month)
        )

    def _list_transactions(self, model, reference_model, reference: str, window) -> List[Dict[str, Any]]:
        start, end = window
        reference_id = getattr(model, f"{reference}_id")
        session = self.db_manager.get_session()
        try:
            rows = (
                session.query(model, Category.name, Keyword.name, reference_model.name)
                .outerjoin(Category, model.category_id == Category.id)
                .outerjoin(Keyword, model.keyword_id == Keyword.id)
                .outerjoin(reference_model, reference_id == reference_model.id)
                .filter(model.date >= start, model.date < end)
                .order_by(model.date, model.created_at)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to list {model.__tablename__}: {e}")
            raise StorageError(f"Failed to list {model.__tablename__}", original_error=e)
        finally:
            session.close()

        return [
            {
                "id": row.id,
                "date": row.date.strftime("%Y-%m-%d %H:%M:%S"),
                "amount": row.amount,
                "user_name": row.user_name,
                "category_id": row.category_id,
                "category_name": category_name,
                "keyword_id": row.keyword_id,
                "keyword_name": keyword_name or "",
                f"{reference}_id": getattr(row, f"{reference}_id"),
                f"{reference}_name": reference_name,
                "memo": row.memo,
            }
            for row, category_name, keyword_name, reference_name in rows
        ]
