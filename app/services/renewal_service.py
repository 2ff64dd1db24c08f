from datetime import datetime, time, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import CompanySubscription, Invoice
from app.services.billing_ledger import as_aware, calculate_renewal_totals, generate_invoice_number, utcnow
from app.services.subscription_service import synchronize_billing_periods
from app.services.subscription_state import SubscriptionStatus

logger = get_logger("renewal_service")

RENEWAL_NOTE = "Auto-generated renewal invoice before subscription expiration."
REUSABLE_INVOICE_STATUSES = ("draft", "issued", "overdue", "failed")


def renewal_window(now: datetime, days_ahead: int) -> tuple[datetime, datetime]:
    """[tomorrow 00:00, now + days_ahead at 23:59:59.999999] in the timezone of `now`."""
    days_ahead = max(int(days_ahead), 1)
    tomorrow = (now + timedelta(days=1)).date()
    last_day = (now + timedelta(days=days_ahead)).date()
    start = datetime.combine(tomorrow, time.min, tzinfo=now.tzinfo)
    end = datetime.combine(last_day, time.max, tzinfo=now.tzinfo)
    return start, end


def _invoice_number_exists(db: Session):
    def exists(number: str) -> bool:
        return db.query(Invoice.id).filter(Invoice.number == number).first() is not None

    return exists


def build_renewal_payload(subscription: CompanySubscription, now: datetime) -> dict:
    period_start = as_aware(subscription.expires_at)
    period_end = period_start + timedelta(days=max(int(subscription.billing_cycle_days or 0), 1))
    totals = calculate_renewal_totals(subscription)

    return {
        "company_id": subscription.company_id,
        "user_id": subscription.user_id,
        "company_subscription_id": subscription.id,
        "subscription_plan_id": subscription.subscription_plan_id,
        "status": "issued",
        "currency": str(subscription.plan.currency),
        "subtotal": totals["subtotal"],
        "overage_amount": totals["overage_amount"],
        "total": totals["total"],
        "amount_paid": "0.00",
        "chat_included": totals["chat_included"],
        "chat_used": totals["chat_used"],
        "chat_overage": totals["chat_overage"],
        "unit_overage_price": totals["unit_overage_price"],
        "period_started_at": period_start,
        "period_ended_at": period_end,
        "issued_at": now,
        "due_at": period_start,
        "notes": RENEWAL_NOTE,
        "invoice_metadata": {
            "purpose": "renewal",
            "quantity": max(int(subscription.quantity or 0), 1),
            "days_until_expiration": (period_start - now).days,
        },
    }


def generate_upcoming_renewal_invoices(db: Session, days_ahead: int = 3, now: Optional[datetime] = None) -> int:
    """
    Issue renewal invoices for active subscriptions expiring soon.

    Safe to re-run: an existing non-final invoice for the same period is
    refreshed instead of duplicated, and a paid one skips the subscription.
    Returns the number of subscriptions processed.
    """
    now = as_aware(now) or utcnow()
    range_start, range_end = renewal_window(now, days_ahead)

    subscriptions = (
        db.query(CompanySubscription)
        .filter(
            CompanySubscription.status == SubscriptionStatus.ACTIVE.value,
            CompanySubscription.quantity > 0,
            CompanySubscription.expires_at.isnot(None),
            CompanySubscription.expires_at.between(range_start, range_end),
        )
        .all()
    )

    processed = 0
    for subscription in subscriptions:
        if subscription.plan is None or subscription.expires_at is None:
            continue

        synchronize_billing_periods(db, subscription, now)
        if subscription.status != SubscriptionStatus.ACTIVE.value or subscription.expires_at is None:
            continue

        payload = build_renewal_payload(subscription, now)
        period_start = payload["period_started_at"]

        paid_exists = (
            db.query(Invoice.id)
            .filter(
                Invoice.company_subscription_id == subscription.id,
                Invoice.status == "paid",
                Invoice.period_started_at == period_start,
            )
            .first()
        )
        if paid_exists is not None:
            continue

        existing = (
            db.query(Invoice)
            .filter(
                Invoice.company_subscription_id == subscription.id,
                Invoice.period_started_at == period_start,
                Invoice.status.in_(REUSABLE_INVOICE_STATUSES),
            )
            .order_by(Invoice.id.desc())
            .first()
        )

        if existing is not None:
            for key, value in payload.items():
                setattr(existing, key, value)
        else:
            invoice = Invoice(number=generate_invoice_number(_invoice_number_exists(db), now), **payload)
            db.add(invoice)

        processed += 1
        logger.info(
            "Renewal invoice prepared",
            extra={
                "context": {
                    "company_id": subscription.company_id,
                    "subscription_id": subscription.id,
                    "total": payload["total"],
                    "reused": existing is not None,
                }
            },
        )

    db.flush()
    return processed
