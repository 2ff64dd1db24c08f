"""
Pure billing arithmetic: subscription activity, resolved entitlements,
plan-change proration and renewal totals.

Nothing here touches the database. Amounts are handled as integer cents and
rendered as strings with exactly two fraction digits.
"""

import secrets
import string
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Optional

INVOICE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def money_to_cents(amount) -> int:
    if amount is None or amount == "":
        return 0
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return 0
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_money(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(int(cents))
    return f"{sign}{cents // 100}.{cents % 100:02d}"


def _as_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_active_at(subscription, at: Optional[datetime] = None) -> bool:
    if subscription is None:
        return False
    at = as_aware(at) or utcnow()
    if str(subscription.status or "") != "active":
        return False
    if _as_int(subscription.quantity) <= 0:
        return False
    starts_at = as_aware(subscription.starts_at)
    if starts_at is not None and at < starts_at:
        return False
    expires_at = as_aware(subscription.expires_at)
    if expires_at is not None and at >= expires_at:
        return False
    return True


def _resolved_limit(override, base, quantity) -> int:
    if override is not None:
        return max(_as_int(override), 0)
    return max(_as_int(base) * max(_as_int(quantity), 0), 0)


def resolved_assistant_limit(subscription) -> int:
    plan = subscription.plan
    return _resolved_limit(
        subscription.assistant_limit_override,
        plan.assistant_limit if plan is not None else 0,
        subscription.quantity,
    )


def resolved_integrations_limit(subscription) -> int:
    plan = subscription.plan
    return _resolved_limit(
        subscription.integrations_per_channel_override,
        plan.integrations_per_channel_limit if plan is not None else 0,
        subscription.quantity,
    )


def resolved_included_chats(subscription) -> int:
    plan = subscription.plan
    return _resolved_limit(
        subscription.included_chats_override,
        plan.included_chats if plan is not None else 0,
        subscription.quantity,
    )


def resolved_overage_chat_price(subscription) -> str:
    if subscription.overage_chat_price_override is not None:
        return cents_to_money(money_to_cents(subscription.overage_chat_price_override))
    plan = subscription.plan
    if plan is not None and plan.overage_chat_price is not None:
        return cents_to_money(money_to_cents(plan.overage_chat_price))
    return "0.00"


def calculate_plan_change_totals(current_subscription, target_plan, target_quantity: int, at=None) -> dict:
    """Price a checkout, crediting unused included chats of an active plan in the same currency."""
    quantity = max(_as_int(target_quantity), 1)
    subtotal_cents = money_to_cents(target_plan.price) * quantity
    credit_cents = 0

    current_plan = current_subscription.plan if current_subscription is not None else None
    if (
        current_plan is not None
        and is_active_at(current_subscription, at)
        and str(current_plan.currency or "").upper() == str(target_plan.currency or "").upper()
    ):
        included = max(resolved_included_chats(current_subscription), 0)
        used = max(_as_int(current_subscription.chat_count_current_period), 0)
        remaining = max(included - used, 0)
        if included > 0 and remaining > 0:
            current_price_cents = money_to_cents(current_plan.price) * max(_as_int(current_subscription.quantity), 1)
            credit_cents = (current_price_cents * remaining) // included

    credit_cents = min(credit_cents, subtotal_cents)
    total_cents = max(subtotal_cents - credit_cents, 0)

    return {
        "subtotal": cents_to_money(subtotal_cents),
        "credit_amount": cents_to_money(credit_cents),
        "overage_amount": "0.00",
        "total": cents_to_money(total_cents),
    }


def calculate_renewal_totals(subscription) -> dict:
    quantity = max(_as_int(subscription.quantity), 1)
    plan = subscription.plan
    subtotal_cents = money_to_cents(plan.price if plan is not None else 0) * quantity

    included = max(resolved_included_chats(subscription), 0)
    used = max(_as_int(subscription.chat_count_current_period), 0)
    overage_chats = max(used - included, 0)

    unit_cents = money_to_cents(resolved_overage_chat_price(subscription))
    overage_cents = overage_chats * unit_cents

    return {
        "subtotal": cents_to_money(subtotal_cents),
        "overage_amount": cents_to_money(overage_cents),
        "total": cents_to_money(subtotal_cents + overage_cents),
        "chat_included": included,
        "chat_used": used,
        "chat_overage": overage_chats,
        "unit_overage_price": cents_to_money(unit_cents),
    }


def usage_snapshot(subscription) -> dict:
    """Usage numbers shown on the billing page."""
    if subscription is None:
        return {
            "included_chats": 0,
            "used_chats": 0,
            "remaining_chats": 0,
            "overage_chats": 0,
            "overage_chat_price": "0.00",
            "assistant_limit": 0,
            "integrations_per_channel_limit": 0,
        }
    included = resolved_included_chats(subscription)
    used = max(_as_int(subscription.chat_count_current_period), 0)
    return {
        "included_chats": included,
        "used_chats": used,
        "remaining_chats": max(included - used, 0),
        "overage_chats": max(used - included, 0),
        "overage_chat_price": resolved_overage_chat_price(subscription),
        "assistant_limit": resolved_assistant_limit(subscription),
        "integrations_per_channel_limit": resolved_integrations_limit(subscription),
    }


def generate_invoice_number(exists: Callable[[str], bool], at: Optional[datetime] = None) -> str:
    """INV-YYYYMMDD-XXXXXXXX, retried until `exists` reports the number as free."""
    day = (as_aware(at) or utcnow()).strftime("%Y%m%d")
    while True:
        suffix = "".join(secrets.choice(INVOICE_SUFFIX_ALPHABET) for _ in range(8))
        number = f"INV-{day}-{suffix}"
        if not exists(number):
            return number
