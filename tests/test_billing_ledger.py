from datetime import datetime, timedelta, timezone

from conftest import NOW, make_plan, make_subscription

from app.services.billing_ledger import (
    as_aware,
    calculate_plan_change_totals,
    calculate_renewal_totals,
    cents_to_money,
    generate_invoice_number,
    is_active_at,
    money_to_cents,
    resolved_assistant_limit,
    resolved_included_chats,
    resolved_overage_chat_price,
    usage_snapshot,
)


class TestMoney:
    def test_money_to_cents_rounds_half_up(self):
        assert money_to_cents("10.005") == 1001
        assert money_to_cents("30") == 3000

    def test_money_to_cents_bad_input(self):
        assert money_to_cents(None) == 0
        assert money_to_cents("") == 0
        assert money_to_cents("abc") == 0

    def test_cents_to_money_two_digits(self):
        assert cents_to_money(3500) == "35.00"
        assert cents_to_money(5) == "0.05"
        assert cents_to_money(-150) == "-1.50"


class TestIsActiveAt:
    def test_active_inside_term(self, subscription):
        assert is_active_at(subscription, NOW) is True

    def test_not_active_when_status_differs(self, plan):
        assert is_active_at(make_subscription(plan, status="pending_payment"), NOW) is False

    def test_not_active_with_zero_quantity(self, plan):
        assert is_active_at(make_subscription(plan, quantity=0), NOW) is False

    def test_expiry_is_exclusive(self, plan):
        subscription = make_subscription(plan, expires_at=NOW)
        assert is_active_at(subscription, NOW) is False
        assert is_active_at(subscription, NOW - timedelta(seconds=1)) is True

    def test_not_started_yet(self, plan):
        assert is_active_at(make_subscription(plan, starts_at=NOW + timedelta(hours=1)), NOW) is False

    def test_naive_datetimes_are_utc(self, plan):
        naive_expiry = (NOW + timedelta(days=1)).replace(tzinfo=None)
        assert is_active_at(make_subscription(plan, expires_at=naive_expiry), NOW) is True
        assert as_aware(naive_expiry).tzinfo == timezone.utc

    def test_none_subscription(self):
        assert is_active_at(None, NOW) is False


class TestResolvedLimits:
    def test_plan_value_times_quantity(self, plan):
        subscription = make_subscription(plan, quantity=3)
        assert resolved_included_chats(subscription) == 1200
        assert resolved_assistant_limit(subscription) == 3

    def test_override_wins(self, plan):
        subscription = make_subscription(plan, quantity=3, included_chats_override=50, assistant_limit_override=0)
        assert resolved_included_chats(subscription) == 50
        assert resolved_assistant_limit(subscription) == 0

    def test_overage_price_override(self, plan):
        assert resolved_overage_chat_price(make_subscription(plan)) == "0.05"
        assert resolved_overage_chat_price(make_subscription(plan, overage_chat_price_override="0.1")) == "0.10"


class TestPlanChangeTotals:
    def test_credit_for_unused_chats(self):
        current = make_subscription(make_plan(price="30.00", included_chats=400), chat_count_current_period=200)
        target = make_plan(id=2, code="growth-monthly", price="50.00", included_chats=1000)

        totals = calculate_plan_change_totals(current, target, 1, NOW)

        assert totals == {
            "subtotal": "50.00",
            "credit_amount": "15.00",
            "overage_amount": "0.00",
            "total": "35.00",
        }

    def test_no_credit_without_active_subscription(self):
        target = make_plan(price="50.00")
        assert calculate_plan_change_totals(None, target, 2, NOW)["total"] == "100.00"

    def test_no_credit_when_currency_differs(self):
        current = make_subscription(make_plan(currency="TJS"), chat_count_current_period=0)
        totals = calculate_plan_change_totals(current, make_plan(price="50.00", currency="USD"), 1, NOW)
        assert totals["credit_amount"] == "0.00"

    def test_credit_never_exceeds_subtotal(self):
        current = make_subscription(make_plan(price="250.00"), chat_count_current_period=0)
        totals = calculate_plan_change_totals(current, make_plan(price="30.00"), 1, NOW)
        assert totals["credit_amount"] == "30.00"
        assert totals["total"] == "0.00"


class TestRenewalTotals:
    def test_overage_chats_are_billed(self):
        subscription = make_subscription(
            make_plan(price="30.00", included_chats=400, overage_chat_price="0.05"),
            chat_count_current_period=500,
        )

        totals = calculate_renewal_totals(subscription)

        assert totals["chat_overage"] == 100
        assert totals["overage_amount"] == "5.00"
        assert totals["total"] == "35.00"

    def test_no_overage_under_quota(self, subscription):
        subscription.chat_count_current_period = 10
        totals = calculate_renewal_totals(subscription)
        assert totals["chat_overage"] == 0
        assert totals["total"] == "30.00"


class TestUsageSnapshot:
    def test_snapshot_numbers(self, plan):
        snapshot = usage_snapshot(make_subscription(plan, chat_count_current_period=450))
        assert snapshot["included_chats"] == 400
        assert snapshot["remaining_chats"] == 0
        assert snapshot["overage_chats"] == 50

    def test_snapshot_without_subscription(self):
        assert usage_snapshot(None)["included_chats"] == 0


class TestInvoiceNumber:
    def test_format(self):
        number = generate_invoice_number(lambda _: False, datetime(2025, 3, 10, tzinfo=timezone.utc))
        assert number.startswith("INV-20250310-")
        assert len(number.split("-")[2]) == 8

    def test_retries_until_free(self):
        seen = []

        def exists(number):
            seen.append(number)
            return len(seen) < 3

        generate_invoice_number(exists, NOW)
        assert len(seen) == 3
