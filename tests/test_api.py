"""
HTTP layer tests using FastAPI's TestClient.
"""

import pytest
from fastapi.testclient import TestClient

from api import create_app
from exceptions import StorageError

CONFIG = {
    "server": {"cors_origins": ["*"]},
    "ledger": {"utc_offset_minutes": None},
}


@pytest.fixture
def app(db_manager):
    return create_app(CONFIG, db_manager)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def food(expense_categories):
    return expense_categories["식비"]


def _create(client, category_id, user_name="", monthly=1000, yearly=0):
    return client.post(
        "/category-budgets",
        json={
            "category_id": category_id,
            "user_name": user_name,
            "monthly_budget": monthly,
            "yearly_budget": yearly,
        },
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_cors_headers(self, client):
        response = client.get("/health", headers={"Origin": "http://localhost:3000"})
        assert "access-control-allow-origin" in response.headers


class TestBudgetRoutes:
    def test_create_and_list(self, client, food):
        response = _create(client, food, "alice")
        assert response.status_code == 201
        budget_id = response.json()["id"]

        listed = client.get("/category-budgets", params={"user": "alice"}).json()
        assert [b["id"] for b in listed] == [budget_id]
        assert listed[0]["category_name"] == "식비"

        assert client.get("/category-budgets", params={"user": "bob"}).json() == []
        assert len(client.get("/category-budgets", params={"category_id": food}).json()) == 1

    def test_duplicate_is_409(self, client, food):
        _create(client, food, "alice")
        response = _create(client, food, "alice")
        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_ENTRY"

    @pytest.mark.parametrize(
        "payload",
        [
            {"user_name": "alice", "monthly_budget": 100},
            {"category_id": 1, "monthly_budget": 0, "yearly_budget": 0},
            {"category_id": 1, "monthly_budget": -5},
            {"category_id": 9999, "monthly_budget": 100},
            {"category_id": 1, "monthly_budget": "lots"},
        ],
    )
    def test_invalid_create_is_400(self, client, payload):
        response = client.post("/category-budgets", json=payload)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_INPUT"

    def test_update_by_id(self, client, food):
        budget_id = _create(client, food).json()["id"]

        response = client.put(f"/category-budgets/{budget_id}", json={"monthly_budget": 5, "yearly_budget": 60})
        assert response.status_code == 200
        listed = client.get("/category-budgets").json()
        assert (listed[0]["monthly_limit"], listed[0]["yearly_limit"]) == (5, 60)

        assert client.put("/category-budgets/9999", json={"monthly_budget": 5}).status_code == 404

    def test_monthly_and_yearly_routes(self, client, food):
        _create(client, food, "alice", monthly=100, yearly=1200)

        response = client.put(
            "/category-budgets/monthly", json={"category_id": food, "user_name": "alice", "amount": 300}
        )
        assert response.status_code == 200
        response = client.put(
            "/category-budgets/yearly", json={"category_id": food, "user_name": "alice", "amount": 3600}
        )
        assert response.status_code == 200

        budget = client.get("/category-budgets", params={"user": "alice"}).json()[0]
        assert (budget["monthly_limit"], budget["yearly_limit"]) == (300, 3600)

        missing = client.put("/category-budgets/monthly", json={"category_id": food, "amount": 1})
        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"

    def test_delete(self, client, food):
        budget_id = _create(client, food).json()["id"]
        assert client.delete(f"/category-budgets/{budget_id}").status_code == 200
        assert client.delete(f"/category-budgets/{budget_id}").status_code == 404

    def test_usage(self, client, food, add_expense):
        _create(client, food, "", monthly=1000)

        single = client.get("/category-budgets/usage", params={"user": "alice", "category_id": food})
        assert single.status_code == 200
        assert single.json()["is_global"] is True

        all_usages = client.get("/category-budgets/usage").json()
        assert [u["category_id"] for u in all_usages] == [food]

    def test_usage_without_budget_is_404(self, client, food):
        response = client.get("/category-budgets/usage", params={"category_id": food})
        assert response.status_code == 404

    def test_storage_error_is_500(self, client, app, monkeypatch):
        def broken(*args, **kwargs):
            raise StorageError("database is locked")

        monkeypatch.setattr(app.state.budget_manager, "list_budgets", broken)

        response = client.get("/category-budgets")
        assert response.status_code == 500
        assert response.json()["code"] == "DATABASE_ERROR"


class TestLedgerRoutes:
    def test_categories(self, client):
        expense = client.get("/categories", params={"type": "out"}).json()
        assert "식비" in [c["name"] for c in expense]
        assert {c["kind"] for c in expense} == {"out"}
        income = client.get("/categories", params={"kind": "in"}).json()
        assert {c["kind"] for c in income} == {"in"}
        assert client.get("/categories", params={"type": "sideways"}).status_code == 400

        created = client.post("/categories", json={"name": "반려동물", "type": "out"})
        assert created.status_code == 201
        assert client.post("/categories", json={"name": "반려동물", "type": "out"}).status_code == 409

    def test_expense_returns_budget_usage(self, client, food, payment_methods):
        _create(client, food, "alice", monthly=50000)

        response = client.post(
            "/expenses",
            json={
                "date": "2025-03-05",
                "user": "alice",
                "money": 12000,
                "category_id": food,
                "payment_method_id": payment_methods["현금"],
                "keyword_name": "점심",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["budget_usage"]["monthly_used"] == 12000
        assert body["budget_usage"]["monthly_remaining"] == 38000

    def test_expense_without_budget(self, client, food, payment_methods):
        response = client.post(
            "/expenses",
            json={"date": "2025-03-05", "user": "bob", "money": 100, "category_id": food,
                  "payment_method_id": payment_methods["현금"]},
        )
        assert response.status_code == 201
        assert "budget_usage" not in response.json()

    def test_bad_expense(self, client, food, payment_methods):
        response = client.post(
            "/expenses",
            json={"date": "yesterday", "user": "bob", "money": 100, "category_id": food,
                  "payment_method_id": payment_methods["현금"]},
        )
        assert response.status_code == 400

    def test_income(self, client, income_categories, deposit_paths):
        response = client.post(
            "/incomes",
            json={"date": "2025-03-25", "user": "alice", "money": 100,
                  "category_id": income_categories["급여"], "deposit_path_id": deposit_paths["현금"]},
        )
        assert response.status_code == 201

    def test_rejected_expense_creates_no_keyword(self, client, income_categories, payment_methods, food):
        response = client.post(
            "/expenses",
            json={"date": "2025-03-05", "user": "bob", "money": 100, "category_id": income_categories["급여"],
                  "payment_method_id": payment_methods["현금"], "keyword_name": "커피"},
        )
        assert response.status_code == 400
        assert client.get("/keywords", params={"category_id": income_categories["급여"]}).json() == []


class TestLifecycleRoutes:
    def test_category_delete_needs_force_when_used(self, client, add_expense, food):
        add_expense("2025-03-05", 1000, "alice", food)

        usage = client.get(f"/categories/{food}/usage").json()
        assert usage == {"id": food, "in_use": True, "transaction_count": 1}

        refused = client.delete(f"/categories/{food}")
        assert refused.status_code == 409
        assert refused.json()["code"] == "CANNOT_DELETE"

        assert client.delete(f"/categories/{food}", params={"force": "true"}).status_code == 200
        names = [c["name"] for c in client.get("/categories", params={"type": "out"}).json()]
        assert "식비" not in names

    def test_delete_missing_category(self, client):
        assert client.delete("/categories/99999").status_code == 404

    def test_payment_method_routes(self, client, payment_methods):
        atm = payment_methods["ATM"]
        assert client.get(f"/payment-methods/{atm}/usage").json()["in_use"] is False

        assert client.delete(f"/payment-methods/{atm}").status_code == 200

        active = [m["name"] for m in client.get("/payment-methods").json()]
        everything = [m["name"] for m in client.get("/payment-methods", params={"include_inactive": "true"}).json()]
        assert "ATM" not in active
        assert "ATM" in everything

    def test_deposit_path_and_user_routes(self, client, deposit_paths):
        assert client.delete(f"/deposit-paths/{deposit_paths['기타']}").status_code == 200
        assert "기타" not in [p["name"] for p in client.get("/deposit-paths").json()]

        users = client.get("/users").json()
        guest = next(u for u in users if u["name"] == "손님")
        assert client.get(f"/users/{guest['id']}/usage").json()["transaction_count"] == 0
        assert client.delete(f"/users/{guest['id']}").status_code == 200
        assert "손님" not in [u["name"] for u in client.get("/users").json()]

    def test_keyword_routes(self, client, add_expense, food):
        add_expense("2025-03-05", 1000, "alice", food, keyword="커피")
        keywords = client.get("/keywords", params={"category_id": food}).json()
        assert [k["name"] for k in keywords] == ["커피"]

        assert client.delete(f"/keywords/{keywords[0]['id']}").status_code == 200
        assert client.get("/keywords", params={"category_id": food}).json() == []


class TestTransactionListing:
    def test_expenses_by_date_and_month(self, client, add_expense, food):
        add_expense("2025-03-05 12:00:00", 1000, "alice", food, keyword="점심")
        add_expense("2025-03-20", 2000, "bob", food)

        by_date = client.get("/expenses", params={"date": "2025-03-05"}).json()
        assert [e["amount"] for e in by_date] == [1000]
        assert by_date[0]["keyword_name"] == "점심"

        by_month = client.get("/expenses", params={"year": "2025", "month": "3"}).json()
        assert [e["amount"] for e in by_month] == [1000, 2000]

    def test_incomes_by_month(self, client, income_categories, deposit_paths):
        client.post(
            "/incomes",
            json={"date": "2025-03-25", "user": "alice", "money": 100,
                  "category_id": income_categories["급여"], "deposit_path_id": deposit_paths["현금"]},
        )
        incomes = client.get("/incomes", params={"year": 2025, "month": 3}).json()
        assert incomes[0]["deposit_path_name"] == "현금"

    def test_listing_needs_a_selection(self, client):
        assert client.get("/expenses").status_code == 400


class TestStatisticsRoutes:
    @pytest.fixture
    def recorded(self, add_expense, food, expense_categories):
        add_expense("2025-03-05", 20000, "alice", food, keyword="점심", payment_method="체크카드")
        add_expense("2025-03-06", 5000, "bob", expense_categories["교통비"])

    def test_statistics(self, client, recorded):
        response = client.get("/statistics", params={"type": "month", "year": 2025, "month": 3})
        assert response.status_code == 200
        body = response.json()
        assert body["period"] == "2025년 3월"
        assert body["total_amount"] == 25000
        assert body["top_category"]["category_name"] == "식비"
        assert len(body["payment_methods"]) == 2

    def test_statistics_bad_selector_falls_back(self, client):
        response = client.get("/statistics", params={"type": "month", "month": "13"})
        assert response.status_code == 200
        assert response.json()["total_amount"] == 0

    def test_category_keywords(self, client, recorded, food):
        body = client.get(
            "/statistics/category-keywords",
            params={"category_id": food, "type": "month", "year": 2025, "month": 3},
        ).json()
        assert body["category_total"] == 20000
        assert body["keywords"][0]["keyword_name"] == "점심"

    def test_category_keywords_requires_id(self, client):
        response = client.get("/statistics/category-keywords")
        assert response.status_code == 400

    def test_payment_methods(self, client, recorded, payment_methods):
        body = client.get(
            "/statistics/payment-methods",
            params={"payment_method_id": payment_methods["현금"], "type": "all"},
        ).json()
        assert body["payment_total"] == 5000
        assert body["categories"][0]["category_name"] == "교통비"

    def test_users(self, client, recorded):
        body = client.get("/statistics/users", params={"type": "year", "year": 2025}).json()
        assert [u["user_name"] for u in body["users"]] == ["alice", "bob"]
