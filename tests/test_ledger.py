"""
Tests for transaction recording and the reference directory.
"""

from datetime import datetime

import pytest

from database_ops import CategoryKind, ExpenseTransaction, Keyword
from exceptions import ConflictError, InUseError, InvalidInputError, NotFoundError
from ledger import listing_window, parse_category_kind, parse_transaction_date


class TestParsing:
    def test_date_only(self):
        assert parse_transaction_date("2025-03-05") == datetime(2025, 3, 5)

    def test_date_and_time(self):
        assert parse_transaction_date(" 2025-03-05 14:20:00 ") == datetime(2025, 3, 5, 14, 20)

    @pytest.mark.parametrize("value", ["", "2025/03/05", "05-03-2025", "2025-02-30"])
    def test_bad_dates(self, value):
        with pytest.raises(InvalidInputError):
            parse_transaction_date(value)

    def test_datetime_drops_microseconds(self):
        assert parse_transaction_date(datetime(2025, 3, 31, 23, 59, 59, 500000)) == datetime(2025, 3, 31, 23, 59, 59)

    def test_category_kind(self):
        assert parse_category_kind("OUT") is CategoryKind.EXPENSE
        assert parse_category_kind("in") is CategoryKind.INCOME
        assert parse_category_kind(None) is None
        with pytest.raises(InvalidInputError):
            parse_category_kind("transfer")


class TestDirectory:
    def test_default_categories_seeded(self, ledger):
        names = [c.name for c in ledger.list_categories("out")]
        assert "식비" in names
        assert "급여" not in names
        assert names == sorted(names)
        assert len(ledger.list_categories()) == 13 + 8

    def test_add_category(self, ledger):
        category = ledger.add_category("반려동물", "out", expense_type="variable")
        assert category.id is not None
        assert category.to_dict()["expense_type"] == "variable"
        assert "반려동물" in [c.name for c in ledger.list_categories(CategoryKind.EXPENSE)]

    def test_same_name_allowed_across_kinds(self, ledger):
        ledger.add_category("기타수입", "out")
        with pytest.raises(ConflictError):
            ledger.add_category("기타수입", "in")

    def test_income_category_cannot_have_expense_type(self, ledger):
        with pytest.raises(InvalidInputError):
            ledger.add_category("임대수입", "in", expense_type="fixed")

    def test_blank_names_rejected(self, ledger):
        with pytest.raises(InvalidInputError):
            ledger.add_category("  ", "out")
        with pytest.raises(InvalidInputError):
            ledger.add_user("")

    def test_add_user_duplicate(self, ledger):
        ledger.add_user("alice")
        with pytest.raises(ConflictError):
            ledger.add_user("alice")

    def test_payment_method_children(self, ledger, payment_methods):
        child = ledger.add_payment_method("법인카드", parent_id=payment_methods["카드"])
        assert child.parent_id == payment_methods["카드"]

    def test_add_deposit_path(self, ledger):
        assert ledger.add_deposit_path("비상금").name == "비상금"


class TestKeywords:
    def test_keyword_usage_count(self, ledger, expense_categories, db_manager):
        food = expense_categories["식비"]
        first = ledger.get_or_create_keyword(food, "점심")
        second = ledger.get_or_create_keyword(food, " 점심 ")

        assert first.id == second.id
        assert second.usage_count == 2

        session = db_manager.get_session()
        try:
            assert session.query(Keyword).filter(Keyword.category_id == food).count() == 1
        finally:
            session.close()


class TestRecordTransactions:
    def test_record_expense_with_keyword(self, ledger, expense_categories, payment_methods, db_manager):
        food = expense_categories["식비"]
        expense = ledger.record_expense(
            "2025-03-05 12:10:00", 12000, "alice", food, payment_methods["체크카드"],
            keyword="점심", memo="김밥"
        )

        assert len(expense.id) == 36
        assert expense.keyword_id is not None

        session = db_manager.get_session()
        try:
            stored = session.get(ExpenseTransaction, expense.id)
            assert stored.amount == 12000
            assert stored.date == datetime(2025, 3, 5, 12, 10)
            assert stored.memo == "김밥"
        finally:
            session.close()

    @pytest.mark.parametrize("amount", [0, -100, 10.5])
    def test_amount_must_be_positive_integer(self, ledger, expense_categories, payment_methods, amount):
        with pytest.raises(InvalidInputError):
            ledger.record_expense("2025-03-05", amount, "alice", expense_categories["식비"], payment_methods["현금"])

    def test_expense_requires_expense_category(self, ledger, income_categories, payment_methods):
        with pytest.raises(InvalidInputError):
            ledger.record_expense("2025-03-05", 1000, "alice", income_categories["급여"], payment_methods["현금"])

    def test_unknown_payment_method(self, ledger, expense_categories):
        with pytest.raises(InvalidInputError):
            ledger.record_expense("2025-03-05", 1000, "alice", expense_categories["식비"], 9999)

    def test_missing_user(self, ledger, expense_categories, payment_methods):
        with pytest.raises(InvalidInputError):
            ledger.record_expense("2025-03-05", 1000, " ", expense_categories["식비"], payment_methods["현금"])

    def test_record_income(self, ledger, income_categories, deposit_paths):
        income = ledger.record_income("2025-03-25", 3000000, "alice", income_categories["급여"], deposit_paths["급여계좌"])
        assert income.amount == 3000000
        assert income.deposit_path_id == deposit_paths["급여계좌"]

    def test_income_requires_deposit_path(self, ledger, income_categories):
        with pytest.raises(InvalidInputError):
            ledger.record_income("2025-03-25", 1000, "alice", income_categories["급여"], None)


def _keywords(db_manager):
    session = db_manager.get_session()
    try:
        return [(k.name, k.usage_count) for k in session.query(Keyword).order_by(Keyword.id)]
    finally:
        session.close()


class TestRejectedTransactionsLeaveNoTrace:
    """A rejected transaction must not create or bump its keyword."""

    def test_wrong_kind_category(self, ledger, income_categories, payment_methods, db_manager):
        with pytest.raises(InvalidInputError):
            ledger.record_expense(
                "2025-03-05", 1000, "alice", income_categories["급여"], payment_methods["현금"], keyword="커피"
            )
        assert _keywords(db_manager) == []

    def test_unknown_payment_method(self, ledger, expense_categories, db_manager):
        with pytest.raises(InvalidInputError):
            ledger.record_expense("2025-03-05", 1000, "alice", expense_categories["식비"], 99999, keyword="커피")
        assert _keywords(db_manager) == []

    def test_existing_keyword_not_bumped(self, ledger, expense_categories, payment_methods, db_manager):
        food = expense_categories["식비"]
        ledger.record_expense("2025-03-05", 1000, "alice", food, payment_methods["현금"], keyword="커피")

        with pytest.raises(InvalidInputError):
            ledger.record_expense("2025-03-06", 1000, "alice", food, 99999, keyword="커피")

        assert _keywords(db_manager) == [("커피", 1)]

    def test_unknown_deposit_path(self, ledger, income_categories, db_manager):
        with pytest.raises(InvalidInputError):
            ledger.record_income("2025-03-25", 1000, "alice", income_categories["급여"], 99999, keyword="보너스")
        assert _keywords(db_manager) == []


class TestDeactivation:
    def test_unused_category_is_deactivated(self, ledger):
        category = ledger.add_category("반려동물", "out")
        assert ledger.category_usage(category.id) == 0

        ledger.deactivate_category(category.id)

        assert "반려동물" not in [c.name for c in ledger.list_categories("out")]
        inactive = [c for c in ledger.list_categories("out", include_inactive=True) if c.name == "반려동물"]
        assert inactive[0].is_active is False

    def test_used_category_requires_force(self, ledger, add_expense, expense_categories, payment_methods):
        food = expense_categories["식비"]
        add_expense("2025-03-05", 1000, "alice", food)
        assert ledger.category_usage(food) == 1

        with pytest.raises(InUseError) as exc:
            ledger.deactivate_category(food)
        assert exc.value.code == "CANNOT_DELETE"
        assert "식비" in [c.name for c in ledger.list_categories("out")]

        ledger.deactivate_category(food, force=True)
        assert "식비" not in [c.name for c in ledger.list_categories("out")]

        # Existing transactions stay; new ones are refused
        assert ledger.category_usage(food) == 1
        with pytest.raises(InvalidInputError):
            ledger.record_expense("2025-03-06", 1000, "alice", food, payment_methods["현금"])

    def test_missing_record(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.deactivate_category(99999)
        with pytest.raises(NotFoundError):
            ledger.payment_method_usage(99999)

    def test_add_reactivates_deactivated_category(self, ledger):
        category = ledger.add_category("반려동물", "out")
        ledger.deactivate_category(category.id)

        again = ledger.add_category("반려동물", "out", expense_type="fixed")

        assert again.id == category.id
        assert again.is_active is True
        assert "반려동물" in [c.name for c in ledger.list_categories("out")]

    def test_payment_method_lifecycle(self, ledger, add_expense, expense_categories, payment_methods):
        cash = payment_methods["현금"]
        add_expense("2025-03-05", 1000, "alice", expense_categories["식비"])

        assert ledger.payment_method_usage(cash) == 1
        with pytest.raises(InUseError):
            ledger.deactivate_payment_method(cash)

        ledger.deactivate_payment_method(cash, force=True)

        assert "현금" not in [m.name for m in ledger.list_payment_methods()]
        with pytest.raises(InvalidInputError):
            ledger.record_expense("2025-03-06", 1000, "alice", expense_categories["식비"], cash)

    def test_payment_method_order_puts_parents_first(self, ledger):
        methods = ledger.list_payment_methods()
        parents = [m for m in methods if m.parent_id is None]
        assert methods[:len(parents)] == parents

    def test_deposit_path_lifecycle(self, ledger, income_categories, deposit_paths):
        salary_account = deposit_paths["급여계좌"]
        ledger.record_income("2025-03-25", 1000, "alice", income_categories["급여"], salary_account)

        with pytest.raises(InUseError):
            ledger.deactivate_deposit_path(salary_account)
        ledger.deactivate_deposit_path(deposit_paths["적금계좌"])

        names = [p.name for p in ledger.list_deposit_paths()]
        assert "적금계좌" not in names
        assert "급여계좌" in names

    def test_user_usage_counts_both_kinds(self, ledger, add_expense, expense_categories, income_categories, deposit_paths):
        user = ledger.add_user("alice")
        add_expense("2025-03-05", 1000, "alice", expense_categories["식비"])
        ledger.record_income("2025-03-25", 1000, "alice", income_categories["급여"], deposit_paths["현금"])

        assert ledger.user_usage(user.id) == 2
        with pytest.raises(InUseError):
            ledger.deactivate_user(user.id)

        guest = ledger.add_user("carol")
        ledger.deactivate_user(guest.id)
        assert "carol" not in [u.name for u in ledger.list_users()]

    def test_keyword_can_always_be_hidden(self, ledger, add_expense, expense_categories):
        food = expense_categories["식비"]
        add_expense("2025-03-05", 1000, "alice", food, keyword="커피")
        keyword = ledger.list_keywords(food)[0]

        ledger.deactivate_keyword(keyword.id)

        assert ledger.list_keywords(food) == []
        # Using it again brings it back
        add_expense("2025-03-06", 1000, "alice", food, keyword="커피")
        assert [k.usage_count for k in ledger.list_keywords(food)] == [2]


class TestListing:
    @pytest.fixture
    def recorded(self, add_expense, expense_categories):
        food = expense_categories["식비"]
        add_expense("2025-03-05 18:00:00", 3000, "alice", food, keyword="커피", payment_method="체크카드")
        add_expense("2025-03-05 08:00:00", 1000, "bob", food)
        add_expense("2025-03-31 23:59:59", 2000, "alice", food)
        add_expense("2025-04-01", 9000, "alice", food)
        return food

    def test_by_date(self, ledger, recorded):
        expenses = ledger.list_expenses(on_date="2025-03-05")

        assert [e["amount"] for e in expenses] == [1000, 3000]
        assert expenses[1]["keyword_name"] == "커피"
        assert expenses[1]["payment_method_name"] == "체크카드"
        assert expenses[0]["keyword_name"] == ""
        assert expenses[0]["category_name"] == "식비"
        assert expenses[0]["date"] == "2025-03-05 08:00:00"

    def test_by_month(self, ledger, recorded):
        expenses = ledger.list_expenses(year="2025", month="3")
        assert [e["amount"] for e in expenses] == [1000, 3000, 2000]

    def test_incomes(self, ledger, income_categories, deposit_paths):
        ledger.record_income("2025-12-31", 500, "alice", income_categories["용돈"], deposit_paths["현금"])

        incomes = ledger.list_incomes(year=2025, month=12)

        assert incomes[0]["deposit_path_name"] == "현금"
        assert ledger.list_incomes(on_date="2026-01-01") == []

    def test_december_window_rolls_into_next_year(self):
        assert listing_window(year=2025, month=12) == (datetime(2025, 12, 1), datetime(2026, 1, 1))

    @pytest.mark.parametrize("kwargs", [{}, {"year": 2025}, {"year": 2025, "month": 13}, {"on_date": "03/05"}])
    def test_bad_selection(self, ledger, kwargs):
        with pytest.raises(InvalidInputError):
            ledger.list_expenses(**kwargs)
