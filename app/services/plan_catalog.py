from functools import lru_cache
from pathlib import Path

import yaml
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import SubscriptionPlan
from app.services.billing_ledger import cents_to_money, money_to_cents

logger = get_logger("plan_catalog")

CATALOG_PATH = Path(__file__).resolve().parents[1] / "data" / "subscription_plans.yaml"


@lru_cache(maxsize=4)
def load_catalog(path: Path = CATALOG_PATH) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def build_plan_rows(catalog: dict) -> list[dict]:
    """Expand base plans x billing periods into plan attribute dicts."""
    currency = str(catalog.get("currency") or "USD")
    channels = list(catalog.get("channels") or [])
    rows = []
    for base in catalog.get("base_plans") or []:
        for period in catalog.get("periods") or []:
            suffix = period["code_suffix"]
            if suffix == "monthly":
                code = base.get("monthly_code") or f"{base['key']}-monthly"
            else:
                code = f"{base['key']}-{suffix}"

            price_cents = money_to_cents(base["monthly_price"]) * money_to_cents(period["price_multiplier"])
            price = cents_to_money(round(price_cents / 100))

            discount = int(period.get("discount_percent") or 0)
            days = int(period["days"])
            if discount > 0:
                description = f"{base['name']} plan with {discount}% discount for {days} days."
            else:
                description = f"{base['name']} plan for {days} days."

            rows.append(
                {
                    "code": code,
                    "name": f"{base['name']} {period['label']}",
                    "description": description,
                    "is_active": True,
                    "is_public": True,
                    "is_enterprise": False,
                    "billing_period_days": days,
                    "currency": currency,
                    "price": price,
                    "included_chats": int(base["included_chats"]),
                    "overage_chat_price": cents_to_money(money_to_cents(base["overage_chat_price"])),
                    "assistant_limit": int(base["assistant_limit"]),
                    "integrations_per_channel_limit": int(base["integrations_per_channel_limit"]),
                    "sort_order": int(base["sort_order"]) + int(period.get("sort_offset") or 0),
                    "features": {
                        "support": base.get("support"),
                        "channels": channels,
                        "discount_percent": discount,
                    },
                }
            )
    return rows


def seed_subscription_plans(db: Session, catalog: dict | None = None) -> int:
    """Upsert the public catalog by plan code. Returns the number of plans written."""
    catalog = catalog if catalog is not None else load_catalog()

    retired = list(catalog.get("retired_codes") or [])
    if retired:
        db.query(SubscriptionPlan).filter(SubscriptionPlan.code.in_(retired)).delete(synchronize_session=False)

    count = 0
    for row in build_plan_rows(catalog):
        plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.code == row["code"]).first()
        if plan is None:
            plan = SubscriptionPlan(code=row["code"])
            db.add(plan)
        for key, value in row.items():
            setattr(plan, key, value)
        count += 1

    db.flush()
    logger.info(f"Seeded {count} subscription plans")
    return count
