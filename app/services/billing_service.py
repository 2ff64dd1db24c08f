"""Checkout, invoice payment and billing read models for the tenant billing API."""

from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Company, CompanySubscription, Invoice, SubscriptionPlan
from app.services.billing_ledger import (
    as_aware,
    calculate_plan_change_totals,
    cents_to_money,
    generate_invoice_number,
    is_active_at,
    money_to_cents,
    usage_snapshot,
    utcnow,
)
from app.services.result import NOT_FOUND, VALIDATION, Result
from app.services.subscription_service import (
    ensure_current_subscription,
    get_subscription,
    sync_assistant_access,
    synchronize_billing_periods,
)
from app.services.subscription_state import SubscriptionStatus, apply_transition

logger = get_logger("billing_service")

MAX_CHECKOUT_QUANTITY = 50
CHECKOUT_NOTE = "Auto-generated invoice for subscription checkout or plan update."
PENDING_METADATA_KEYS = ("pending_plan_id", "pending_plan_code", "pending_quantity")


def list_public_plans(db: Session) -> list[SubscriptionPlan]:
    return (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.is_active.is_(True), SubscriptionPlan.is_public.is_(True))
        .order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.id.asc())
        .all()
    )


def subscription_payload(subscription: Optional[CompanySubscription]) -> dict:
    if subscription is None:
        return {"subscription": None, "usage": usage_snapshot(None)}
    plan = subscription.plan
    return {
        "subscription": {
            "id": subscription.id,
            "status": subscription.status,
            "quantity": subscription.quantity,
            "billing_cycle_days": subscription.billing_cycle_days,
            "plan_code": plan.code if plan is not None else None,
            "plan_name": plan.name if plan is not None else None,
            "starts_at": subscription.starts_at,
            "expires_at": subscription.expires_at,
            "renewal_due_at": subscription.renewal_due_at,
            "paid_at": subscription.paid_at,
            "chat_period_started_at": subscription.chat_period_started_at,
            "chat_period_ends_at": subscription.chat_period_ends_at,
            "is_active": is_active_at(subscription),
        },
        "usage": usage_snapshot(subscription),
    }


def current_subscription(db: Session, company: Company) -> dict:
    subscription = ensure_current_subscription(db, company)
    synchronize_billing_periods(db, subscription)
    sync_assistant_access(db, company)
    return subscription_payload(subscription)


def _number_exists(db: Session):
    return lambda number: db.query(Invoice.id).filter(Invoice.number == number).first() is not None


def checkout(db: Session, company: Company, plan_code: str, quantity: int = 1) -> Result[dict]:
    """Start a plan purchase or change and issue the invoice that activates it."""
    plan_code = (plan_code or "").strip()
    if not plan_code:
        return Result.failure("The plan code field is required.", VALIDATION)
    if quantity < 1 or quantity > MAX_CHECKOUT_QUANTITY:
        return Result.failure(f"Quantity must be between 1 and {MAX_CHECKOUT_QUANTITY}.", VALIDATION)

    plan = (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.code == plan_code, SubscriptionPlan.is_active.is_(True))
        .first()
    )
    if plan is None:
        return Result.failure("Plan not found.", NOT_FOUND)
    if plan.is_enterprise or not plan.is_public:
        return Result.failure("Enterprise plan is configured manually by support.", VALIDATION)

    now = utcnow()
    subscription = ensure_current_subscription(db, company)
    synchronize_billing_periods(db, subscription, now)

    was_active = is_active_at(subscription, now)
    current_plan_code = subscription.plan.code if subscription.plan is not None else None
    totals = calculate_plan_change_totals(subscription if was_active else None, plan, quantity, now)
    cycle_days = max(int(plan.billing_period_days or 0), 1)

    metadata = dict(subscription.subscription_metadata or {})
    metadata.update(
        {
            "checkout_source": "billing_page",
            "pending_plan_id": plan.id,
            "pending_plan_code": plan.code,
            "pending_quantity": quantity,
        }
    )
    subscription.subscription_metadata = metadata
    subscription.billing_cycle_days = cycle_days

    if not was_active:
        apply_transition(subscription, SubscriptionStatus.PENDING_PAYMENT)
        subscription.subscription_plan_id = plan.id
        subscription.plan = plan
        subscription.quantity = quantity
        subscription.renewal_due_at = now + timedelta(days=cycle_days)

    invoice = Invoice(
        company_id=company.id,
        user_id=company.user_id,
        company_subscription_id=subscription.id,
        subscription_plan_id=plan.id,
        number=generate_invoice_number(_number_exists(db), now),
        status="issued",
        currency=plan.currency,
        subtotal=totals["subtotal"],
        overage_amount=totals["overage_amount"],
        total=totals["total"],
        amount_paid="0.00",
        chat_included=int(plan.included_chats or 0) * max(quantity, 1),
        chat_used=0,
        chat_overage=0,
        unit_overage_price=cents_to_money(money_to_cents(plan.overage_chat_price)),
        period_started_at=now,
        period_ended_at=now + timedelta(days=cycle_days),
        issued_at=now,
        due_at=now + timedelta(days=1),
        notes=CHECKOUT_NOTE,
        invoice_metadata={
            "purpose": "plan_change",
            "quantity": quantity,
            "credit_amount": totals["credit_amount"],
            "current_plan_code": current_plan_code,
            "target_plan_code": plan.code,
        },
    )
    db.add(invoice)
    db.flush()

    sync_assistant_access(db, company, now)

    logger.info(
        "Checkout created",
        extra={
            "context": {
                "company_id": company.id,
                "plan": plan.code,
                "quantity": quantity,
                "total": totals["total"],
                "credit": totals["credit_amount"],
            }
        },
    )
    return Result.success({"invoice": invoice, "subscription": subscription, "totals": totals})


def list_invoices(db: Session, company: Company, limit: int = 50) -> list[Invoice]:
    return (
        db.query(Invoice)
        .filter(Invoice.company_id == company.id)
        .order_by(Invoice.id.desc())
        .limit(limit)
        .all()
    )


def pay_invoice(db: Session, company: Company, invoice_id: int) -> Result[dict]:
    """
    Settle an invoice and apply it to the subscription.

    Renewal invoices paid while the current term is still running extend
    the term to the invoice period end. Anything else (re)starts the term
    now and opens a fresh usage period.
    """
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id, Invoice.company_id == company.id).first()
    if invoice is None:
        return Result.failure("Invoice not found.", NOT_FOUND)
    if invoice.status == "paid":
        return Result.success({"invoice": invoice, "message": "Invoice is already paid."})

    now = utcnow()
    invoice.status = "paid"
    invoice.amount_paid = invoice.total
    invoice.paid_at = now

    subscription = get_subscription(db, company) or ensure_current_subscription(db, company)
    synchronize_billing_periods(db, subscription, now)

    metadata = invoice.invoice_metadata or {}
    purpose = metadata.get("purpose") or "plan_change"
    quantity = max(int(metadata.get("quantity") or subscription.quantity or 0), 1)
    plan = invoice.plan or subscription.plan
    plan_days = plan.billing_period_days if plan is not None else 0
    cycle_days = max(int(plan_days or subscription.billing_cycle_days or 0), 1)

    sub_metadata = dict(subscription.subscription_metadata or {})
    for key in PENDING_METADATA_KEYS:
        sub_metadata.pop(key, None)
    sub_metadata["last_paid_invoice_id"] = invoice.id
    subscription.subscription_metadata = sub_metadata

    expires_at = as_aware(subscription.expires_at)
    apply_transition(subscription, SubscriptionStatus.ACTIVE)
    subscription.quantity = quantity
    if plan is not None:
        subscription.subscription_plan_id = plan.id
        subscription.plan = plan
    subscription.billing_cycle_days = cycle_days
    subscription.paid_at = now

    if purpose == "renewal" and expires_at is not None and expires_at > now:
        period_end = as_aware(invoice.period_ended_at) or (expires_at + timedelta(days=cycle_days))
        subscription.expires_at = period_end
        subscription.renewal_due_at = period_end
    else:
        subscription.starts_at = now
        subscription.expires_at = now + timedelta(days=cycle_days)
        subscription.renewal_due_at = subscription.expires_at
        subscription.chat_count_current_period = 0
        subscription.chat_period_started_at = now
        subscription.chat_period_ends_at = subscription.expires_at

    db.flush()
    sync_assistant_access(db, company, now)

    logger.info(
        "Invoice paid",
        extra={"context": {"company_id": company.id, "invoice_id": invoice.id, "purpose": purpose}},
    )
    return Result.success({"invoice": invoice, "message": "Payment completed successfully."})
