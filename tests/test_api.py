import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from main import app, get_db


@pytest.fixture()
def client(engine):
    def override_get_db():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _seed(client):
    account = client.post(
        "/api/accounts",
        json={"name": "Checking", "type": "checking", "initial_balance_cents": 10000},
    ).json()
    food = client.post("/api/categories", json={"name": "Food", "type": "expense"}).json()
    return account, food


def test_expense_updates_balance_and_budget_progress(client) -> None:
    account, food = _seed(client)
    budget = client.post(
        "/api/budgets",
        json={
            "name": "Groceries",
            "category_id": food["id"],
            "amount_cents": 50000,
            "period_start": "2024-01-01",
            "period_end": "2024-01-31",
        },
    )
    assert budget.status_code == 201

    created = client.post(
        "/api/transactions",
        json={
            "type": "expense",
            "account_id": account["id"],
            "category_id": food["id"],
            "amount_cents": 12000,
            "description": "Weekly shop",
            "occurred_at": "2024-01-15T10:00:00",
            "tags": ["groceries"],
        },
    )
    assert created.status_code == 201
    txn = created.json()

    balance = client.get(f"/api/accounts/{account['id']}").json()
    assert balance["current_balance_cents"] == -2000

    progress = client.get(f"/api/budgets/{budget.json()['id']}/progress").json()
    assert progress["spent_cents"] == 12000
    assert progress["percentage"] == 24.0

    patched = client.patch(f"/api/transactions/{txn['id']}", json={"amount_cents": 5000})
    assert patched.status_code == 200
    assert client.get(f"/api/accounts/{account['id']}").json()[
        "current_balance_cents"
    ] == 5000

    assert client.delete(f"/api/transactions/{txn['id']}").status_code == 204
    assert client.get(f"/api/accounts/{account['id']}").json()[
        "current_balance_cents"
    ] == 10000
    assert client.get("/api/budgets/progress").json()[0]["spent_cents"] == 0


def test_transaction_listing_with_period_filter(client) -> None:
    account, food = _seed(client)
    for day in ("2024-01-05", "2024-02-05"):
        client.post(
            "/api/transactions",
            json={
                "type": "expense",
                "account_id": account["id"],
                "category_id": food["id"],
                "amount_cents": 100,
                "description": f"Coffee {day}",
                "occurred_at": f"{day}T08:00:00",
            },
        )

    page = client.get(
        "/api/transactions",
        params={"period": "custom", "start": "2024-01-01", "end": "2024-01-31"},
    ).json()
    assert page["total"] == 1
    assert page["items"][0]["description"] == "Coffee 2024-01-05"
    assert not page["has_more"]

    bad = client.get(
        "/api/transactions",
        params={"period": "custom", "start": "2024-02-01", "end": "2024-01-01"},
    )
    assert bad.status_code == 400


def test_error_mapping(client) -> None:
    account, _ = _seed(client)
    base = {
        "type": "expense",
        "account_id": account["id"],
        "amount_cents": 100,
        "description": "Snack",
        "occurred_at": "2024-01-05T08:00:00",
    }

    zero = client.post("/api/transactions", json={**base, "amount_cents": 0})
    assert zero.status_code == 400
    orphan = client.post("/api/transactions", json={**base, "account_id": "missing"})
    assert orphan.status_code == 409
    assert client.get("/api/transactions/missing").status_code == 404
    assert client.delete("/api/budgets/missing").status_code == 404
    assert client.get("/api/accounts/missing").status_code == 404


def test_account_summary_and_budget_alerts(client) -> None:
    account, food = _seed(client)
    client.post(
        "/api/budgets",
        json={
            "name": "Snacks",
            "category_id": food["id"],
            "amount_cents": 1000,
            "period_start": "2024-01-01",
            "period_end": "2024-01-31",
        },
    )
    client.post(
        "/api/transactions",
        json={
            "type": "expense",
            "account_id": account["id"],
            "category_id": food["id"],
            "amount_cents": 900,
            "description": "Chocolate",
            "occurred_at": "2024-01-05T08:00:00",
        },
    )

    summary = client.get("/api/accounts/summary").json()
    assert summary["total"] == 9100
    assert summary["by_type"]["checking"] == 9100

    alerts = client.get("/api/budgets/alerts").json()
    assert [alert["budget"]["name"] for alert in alerts] == ["Snacks"]
    assert alerts[0]["needs_alert"]


def test_archived_accounts_drop_out_of_listing(client) -> None:
    account, _ = _seed(client)

    archived = client.post(f"/api/accounts/{account['id']}/archive")
    assert archived.status_code == 200
    assert archived.json()["is_archived"]

    assert client.get("/api/accounts").json() == []
    listed = client.get("/api/accounts", params={"include_archived": True}).json()
    assert [item["id"] for item in listed] == [account["id"]]
    assert client.post("/api/accounts/missing/archive").status_code == 404
