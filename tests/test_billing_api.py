from types import SimpleNamespace
from unittest.mock import patch

import pytest
from conftest import NOW, make_plan
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.models import User
from app.routers.dependencies import get_current_company
from app.services.result import NOT_FOUND, Result

ROUTER = "app.routers.billing"


def make_invoice(**overrides):
    values = {
        "id": 90,
        "number": "INV-20250310-ABCDEFGH",
        "status": "issued",
        "currency": "USD",
        "subtotal": "30.00",
        "overage_amount": "0.00",
        "total": "30.00",
        "amount_paid": "0.00",
        "chat_included": 400,
        "chat_used": 0,
        "chat_overage": 0,
        "unit_overage_price": "0.05",
        "period_started_at": NOW,
        "period_ended_at": None,
        "issued_at": NOW,
        "due_at": None,
        "paid_at": None,
        "invoice_metadata": {"purpose": "plan_change"},
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def company():
    return SimpleNamespace(id=3, user_id=2, settings={})


@pytest.fixture
def client(db_session, company):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_current_company] = lambda: company
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestPlans:
    @patch(f"{ROUTER}.list_public_plans")
    def test_public_catalog(self, list_plans, client):
        list_plans.return_value = [make_plan(), make_plan(id=2, code="pro-monthly", price="90.00")]

        response = client.get("/billing/plans")

        assert response.status_code == 200
        assert [plan["code"] for plan in response.json()] == ["starter-monthly", "pro-monthly"]
        assert response.json()[0]["features"] == {}


class TestCheckoutEndpoint:
    @patch(f"{ROUTER}.subscription_payload", return_value={"subscription": {"status": "pending_payment"}})
    @patch(f"{ROUTER}.checkout")
    def test_checkout_issues_invoice(self, checkout, _payload, client, db_session, company):
        checkout.return_value = Result.success(
            {"invoice": make_invoice(), "subscription": object(), "totals": {"total": "30.00"}}
        )

        response = client.post("/billing/checkout", json={"plan_code": "starter-monthly"})

        assert response.status_code == 200
        body = response.json()
        assert body["invoice"]["number"] == "INV-20250310-ABCDEFGH"
        assert body["invoice"]["metadata"] == {"purpose": "plan_change"}
        assert body["totals"] == {"total": "30.00"}
        checkout.assert_called_once_with(db_session, company, "starter-monthly", 1)
        db_session.commit.assert_called_once()

    @patch(f"{ROUTER}.checkout", return_value=Result.failure("Plan not found.", NOT_FOUND))
    def test_unknown_plan_is_404(self, _checkout, client, db_session):
        response = client.post("/billing/checkout", json={"plan_code": "gold"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Plan not found."
        db_session.commit.assert_not_called()

    def test_body_is_validated(self, client):
        assert client.post("/billing/checkout", json={}).status_code == 422


class TestInvoices:
    @patch(f"{ROUTER}.list_invoices")
    def test_list(self, list_invoices, client, db_session, company):
        list_invoices.return_value = [make_invoice(), make_invoice(id=91, number="INV-20250210-ZZZZZZZZ")]

        response = client.get("/billing/invoices", params={"limit": 10})

        assert [invoice["id"] for invoice in response.json()] == [90, 91]
        list_invoices.assert_called_once_with(db_session, company, 10)

    def test_limit_is_bounded(self, client):
        assert client.get("/billing/invoices", params={"limit": 500}).status_code == 422

    @patch(f"{ROUTER}.current_subscription", return_value={"subscription": {"status": "active"}})
    @patch(f"{ROUTER}.pay_invoice")
    def test_pay(self, pay, _current, client):
        pay.return_value = Result.success(
            {"invoice": make_invoice(status="paid", paid_at=NOW), "message": "Payment completed successfully."}
        )

        response = client.post("/billing/invoices/90/pay")

        assert response.status_code == 200
        assert response.json()["invoice"]["status"] == "paid"
        assert response.json()["subscription"] == {"subscription": {"status": "active"}}


class TestCurrentUser:
    def test_missing_header_is_401(self, db_session):
        app.dependency_overrides[get_db] = lambda: db_session
        try:
            response = TestClient(app).get("/billing/subscription")
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 401

    def test_blocked_user_is_403(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = User(id=2, status="blocked")
        app.dependency_overrides[get_db] = lambda: db_session
        try:
            response = TestClient(app).get("/billing/subscription", headers={"X-User-Id": "2"})
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 403

    @patch("app.routers.dependencies.provision_default_workspace_for_user")
    @patch(f"{ROUTER}.current_subscription", return_value={"subscription": None, "usage": {}})
    def test_workspace_is_provisioned(self, _current, provision, db_session):
        user = User(id=2, status="active")
        db_session.query.return_value.filter.return_value.first.return_value = user
        app.dependency_overrides[get_db] = lambda: db_session
        try:
            response = TestClient(app).get("/billing/subscription", headers={"X-User-Id": "2"})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 200
        provision.assert_called_once_with(db_session, user)
