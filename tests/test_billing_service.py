from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from conftest import NOW, make_plan, make_subscription

from app.models import Invoice, SubscriptionPlan
from app.services.billing_service import checkout, pay_invoice, subscription_payload
from app.services.result import NOT_FOUND, VALIDATION

BILLING = "app.services.billing_service"


def billing_db(plan=None, invoice=None):
    plan_query = MagicMock()
    plan_query.filter.return_value.first.return_value = plan

    number_query = MagicMock()
    number_query.filter.return_value.first.return_value = None

    invoice_query = MagicMock()
    invoice_query.filter.return_value.first.return_value = invoice

    def query(entity):
        if entity is SubscriptionPlan:
            return plan_query
        if entity is Invoice.id:
            return number_query
        return invoice_query

    db = MagicMock()
    db.query.side_effect = query
    return db


@pytest.fixture
def company():
    return SimpleNamespace(id=3, user_id=2)


@pytest.fixture
def services():
    with patch(f"{BILLING}.utcnow", return_value=NOW), patch(
        f"{BILLING}.ensure_current_subscription"
    ) as ensure, patch(f"{BILLING}.get_subscription") as get_subscription, patch(
        f"{BILLING}.synchronize_billing_periods"
    ), patch(f"{BILLING}.sync_assistant_access") as sync_access:
        yield SimpleNamespace(ensure=ensure, get_subscription=get_subscription, sync_access=sync_access)


class TestCheckout:
    def test_requires_plan_code(self, company):
        result = checkout(billing_db(), company, "  ")
        assert not result.ok
        assert result.error_code == VALIDATION

    def test_quantity_bounds(self, company):
        assert checkout(billing_db(), company, "starter-monthly", 0).error_code == VALIDATION
        assert checkout(billing_db(), company, "starter-monthly", 51).error_code == VALIDATION

    def test_unknown_plan(self, company):
        result = checkout(billing_db(plan=None), company, "gold")
        assert result.error_code == NOT_FOUND
        assert result.http_status == 404

    def test_enterprise_plan_is_manual(self, company):
        result = checkout(billing_db(plan=make_plan(is_enterprise=True)), company, "enterprise")
        assert result.error_code == VALIDATION

    def test_first_purchase_moves_to_pending_payment(self, company, services):
        plan = make_plan(id=2, code="pro-monthly", price="90.00", included_chats=1200)
        subscription = make_subscription(None, status="inactive", expires_at=None, starts_at=None)
        services.ensure.return_value = subscription
        db = billing_db(plan=plan)

        result = checkout(db, company, "pro-monthly", 2)

        assert result.ok
        invoice = result.value["invoice"]
        assert invoice.total == "180.00"
        assert invoice.chat_included == 2400
        assert invoice.status == "issued"
        assert invoice.number.startswith("INV-20250310-")
        assert invoice.due_at == NOW + timedelta(days=1)
        assert subscription.status == "pending_payment"
        assert subscription.subscription_plan_id == 2
        assert subscription.quantity == 2
        assert subscription.subscription_metadata["pending_plan_code"] == "pro-monthly"
        db.add.assert_called_once_with(invoice)

    def test_upgrade_credits_unused_chats(self, company, services):
        subscription = make_subscription(make_plan(), chat_count_current_period=200)
        services.ensure.return_value = subscription
        target = make_plan(id=2, code="pro-monthly", price="90.00")

        result = checkout(billing_db(plan=target), company, "pro-monthly")

        totals = result.value["totals"]
        assert totals["credit_amount"] == "15.00"
        assert totals["total"] == "75.00"
        assert subscription.status == "active"
        assert subscription.subscription_plan_id == 1

    def test_active_row_with_zero_quantity_is_repurchased(self, company, services):
        subscription = make_subscription(make_plan(), quantity=0)
        services.ensure.return_value = subscription

        result = checkout(billing_db(plan=make_plan()), company, "starter-monthly", 1)

        assert result.ok
        assert result.value["totals"]["credit_amount"] == "0.00"
        assert subscription.status == "pending_payment"
        assert subscription.quantity == 1

    def test_active_row_not_started_yet_is_repurchased(self, company, services):
        subscription = make_subscription(make_plan(), starts_at=NOW + timedelta(days=5))
        services.ensure.return_value = subscription

        result = checkout(billing_db(plan=make_plan()), company, "starter-monthly")

        assert result.ok
        assert subscription.status == "pending_payment"


class TestPayInvoice:
    def make_invoice(self, **overrides):
        values = {
            "id": 90,
            "status": "issued",
            "total": "30.00",
            "amount_paid": "0.00",
            "paid_at": None,
            "plan": make_plan(),
            "period_ended_at": None,
            "invoice_metadata": {"purpose": "plan_change", "quantity": 1},
        }
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_missing_invoice(self, company):
        assert pay_invoice(billing_db(invoice=None), company, 90).error_code == NOT_FOUND

    def test_already_paid(self, company):
        result = pay_invoice(billing_db(invoice=self.make_invoice(status="paid")), company, 90)
        assert result.ok
        assert result.value["message"] == "Invoice is already paid."

    def test_plan_change_restarts_term(self, company, services):
        subscription = make_subscription(
            make_plan(),
            status="pending_payment",
            chat_count_current_period=35,
            subscription_metadata={"pending_plan_code": "starter-monthly", "checkout_source": "billing_page"},
        )
        subscription.renewal_due_at = None
        subscription.paid_at = None
        services.get_subscription.return_value = subscription
        invoice = self.make_invoice()

        result = pay_invoice(billing_db(invoice=invoice), company, 90)

        assert result.value["message"] == "Payment completed successfully."
        assert invoice.status == "paid"
        assert invoice.amount_paid == "30.00"
        assert subscription.status == "active"
        assert subscription.starts_at == NOW
        assert subscription.expires_at == NOW + timedelta(days=30)
        assert subscription.chat_count_current_period == 0
        assert subscription.subscription_metadata == {"checkout_source": "billing_page", "last_paid_invoice_id": 90}
        services.sync_access.assert_called_once()

    def test_renewal_extends_running_term(self, company, services):
        subscription = make_subscription(make_plan(), chat_count_current_period=120)
        subscription.renewal_due_at = None
        subscription.paid_at = None
        services.get_subscription.return_value = subscription
        period_end = subscription.expires_at + timedelta(days=30)
        invoice = self.make_invoice(invoice_metadata={"purpose": "renewal"}, period_ended_at=period_end)

        pay_invoice(billing_db(invoice=invoice), company, 90)

        assert subscription.expires_at == period_end
        assert subscription.starts_at == NOW - timedelta(days=10)
        assert subscription.chat_count_current_period == 120


class TestSubscriptionPayload:
    def test_without_subscription(self):
        payload = subscription_payload(None)
        assert payload["subscription"] is None
        assert payload["usage"]["included_chats"] == 0

    def test_usage_section(self):
        subscription = make_subscription(make_plan(), chat_count_current_period=450)
        subscription.renewal_due_at = None
        subscription.paid_at = None

        payload = subscription_payload(subscription)

        assert payload["subscription"]["plan_code"] == "starter-monthly"
        assert payload["usage"]["overage_chats"] == 50
        assert payload["usage"]["remaining_chats"] == 0
