import re
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Assistant, Company, CompanySubscription, SubscriptionPlan, User
from app.services.billing_ledger import (
    as_aware,
    is_active_at,
    resolved_assistant_limit,
    resolved_included_chats,
    utcnow,
)
from app.services.subscription_state import SubscriptionStatus

logger = get_logger("subscription_service")

AUTO_CREATED_NOTE = "Subscription created automatically. Activate after successful payment."


def get_subscription(db: Session, company: Company) -> Optional[CompanySubscription]:
    return db.query(CompanySubscription).filter(CompanySubscription.company_id == company.id).first()


def find_default_plan(db: Session) -> Optional[SubscriptionPlan]:
    """Configured default plan when active, else the cheapest-sorted active non-enterprise plan."""
    code = (settings.billing_default_plan_code or "").strip()
    if code:
        plan = (
            db.query(SubscriptionPlan)
            .filter(SubscriptionPlan.code == code, SubscriptionPlan.is_active.is_(True))
            .first()
        )
        if plan is not None:
            return plan

    return (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.is_active.is_(True), SubscriptionPlan.is_enterprise.is_(False))
        .order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.id.asc())
        .first()
    )


def ensure_current_subscription(db: Session, company: Company) -> CompanySubscription:
    """Get-or-create the single subscription row of a company."""
    subscription = get_subscription(db, company)
    if subscription is not None:
        return subscription

    plan = find_default_plan(db)
    period_days = (plan.billing_period_days if plan is not None else None) or 30

    subscription = CompanySubscription(
        company_id=company.id,
        user_id=company.user_id,
        subscription_plan_id=plan.id if plan is not None else None,
        status=SubscriptionStatus.INACTIVE.value,
        quantity=0,
        billing_cycle_days=max(int(period_days), 1),
        chat_count_current_period=0,
        subscription_metadata={"note": AUTO_CREATED_NOTE},
    )
    subscription.plan = plan
    db.add(subscription)
    db.flush()
    logger.info(
        "Subscription created",
        extra={"context": {"company_id": company.id, "plan": plan.code if plan is not None else None}},
    )
    return subscription


def _slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or "company"


def provision_default_workspace_for_user(db: Session, user: User) -> Company:
    company = db.query(Company).filter(Company.user_id == user.id).first()
    if company is None:
        name = (user.name or "").strip() or "My"
        company = Company(
            user_id=user.id,
            name=f"{name} Company",
            slug=f"{_slugify(name)}-{user.id}",
            status="active",
            settings={},
        )
        db.add(company)
        db.flush()

    ensure_current_subscription(db, company)
    return company


def roll_billing_period(subscription: CompanySubscription, now: Optional[datetime] = None) -> bool:
    """
    Advance the usage period and expire lapsed subscriptions in memory.

    Returns True when the row changed. Calling it twice inside the same
    period is a no-op.
    """
    now = as_aware(now) or utcnow()
    cycle_days = max(int(subscription.billing_cycle_days or 0), 1)
    updated = False

    period_end = as_aware(subscription.chat_period_ends_at)
    if subscription.status == SubscriptionStatus.ACTIVE.value and period_end is not None and period_end <= now:
        next_start = period_end
        next_end = next_start + timedelta(days=cycle_days)
        while next_end <= now:
            next_start = next_end
            next_end = next_start + timedelta(days=cycle_days)

        subscription.chat_count_current_period = 0
        subscription.chat_period_started_at = next_start
        subscription.chat_period_ends_at = next_end
        updated = True

    expires_at = as_aware(subscription.expires_at)
    if subscription.status == SubscriptionStatus.ACTIVE.value and expires_at is not None and now >= expires_at:
        subscription.status = SubscriptionStatus.EXPIRED.value
        updated = True

    return updated


def synchronize_billing_periods(
    db: Session, subscription: CompanySubscription, now: Optional[datetime] = None
) -> CompanySubscription:
    if roll_billing_period(subscription, now):
        db.flush()
    return subscription


def partition_assistant_ids(assistant_ids: Iterable[int], limit: int) -> tuple[list[int], list[int]]:
    """Lowest ids win the entitlement; everything past `limit` is denied."""
    ordered = sorted(assistant_ids)
    if limit <= 0:
        return [], ordered
    return ordered[:limit], ordered[limit:]


def _deactivate_all(db: Session, company_id: int) -> int:
    return (
        db.query(Assistant)
        .filter(Assistant.company_id == company_id, Assistant.is_active.is_(True))
        .update({Assistant.is_active: False}, synchronize_session=False)
    )


def sync_assistant_access(db: Session, company: Company, now: Optional[datetime] = None) -> None:
    """Bring Assistant.is_active in line with the current entitlement using set-based updates."""
    now = as_aware(now) or utcnow()
    subscription = get_subscription(db, company)

    if subscription is None:
        _deactivate_all(db, company.id)
        db.flush()
        return

    synchronize_billing_periods(db, subscription, now)

    if not is_active_at(subscription, now):
        _deactivate_all(db, company.id)
        db.flush()
        return

    limit = resolved_assistant_limit(subscription)
    if limit <= 0:
        _deactivate_all(db, company.id)
        db.flush()
        return

    all_ids = [
        row[0]
        for row in db.query(Assistant.id).filter(Assistant.company_id == company.id).order_by(Assistant.id.asc())
    ]
    allowed, denied = partition_assistant_ids(all_ids, limit)

    if allowed:
        (
            db.query(Assistant)
            .filter(Assistant.company_id == company.id, Assistant.id.in_(allowed), Assistant.is_active.is_(False))
            .update({Assistant.is_active: True}, synchronize_session=False)
        )
    if denied:
        (
            db.query(Assistant)
            .filter(Assistant.company_id == company.id, Assistant.id.in_(denied), Assistant.is_active.is_(True))
            .update({Assistant.is_active: False}, synchronize_session=False)
        )
    db.flush()
    logger.debug(
        "Assistant access synced",
        extra={"context": {"company_id": company.id, "limit": limit, "allowed": allowed, "denied": denied}},
    )


def increment_chat_usage(
    db: Session, company: Company, count: int = 1, now: Optional[datetime] = None
) -> Optional[int]:
    """
    Add `count` chats to the current period with a single atomic UPDATE.

    Returns the counter value after the increment, or None when the
    subscription is missing or not in effect at `now`.
    """
    if count <= 0:
        return None

    subscription = get_subscription(db, company)
    if subscription is None:
        return None

    synchronize_billing_periods(db, subscription, now)
    if not is_active_at(subscription, now):
        return None

    row = db.execute(
        text(
            """
            UPDATE company_subscriptions
            SET chat_count_current_period = chat_count_current_period + :count,
                updated_at = NOW()
            WHERE id = :id
            RETURNING chat_count_current_period
            """
        ),
        {"count": count, "id": subscription.id},
    ).first()
    if row is None:
        return None

    new_count = int(row[0])
    subscription.chat_count_current_period = new_count
    return new_count


def has_chat_quota(
    subscription: Optional[CompanySubscription],
    counted_value: Optional[int],
    count: int = 1,
    now: Optional[datetime] = None,
) -> bool:
    """
    Quota gate evaluated right after the increment.

    The chat that was just counted may still be answered when the usage
    before it was below the included amount.
    """
    if subscription is None or not is_active_at(subscription, now):
        return False
    used = counted_value if counted_value is not None else int(subscription.chat_count_current_period or 0)
    used_before = used - count if counted_value is not None else used
    return used_before < resolved_included_chats(subscription)
