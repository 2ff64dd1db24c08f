from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    description: Optional[str] = None
    billing_period_days: int
    currency: str
    price: Decimal
    included_chats: int
    overage_chat_price: Decimal
    assistant_limit: int
    integrations_per_channel_limit: int
    features: dict[str, Any] = Field(default_factory=dict)


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    number: str
    status: str
    currency: str
    subtotal: Decimal
    overage_amount: Decimal
    total: Decimal
    amount_paid: Decimal
    chat_included: int
    chat_used: int
    chat_overage: int
    unit_overage_price: Decimal
    period_started_at: Optional[datetime] = None
    period_ended_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    invoice_metadata: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")


class CheckoutRequest(BaseModel):
    plan_code: str
    quantity: int = 1


class CheckoutResponse(BaseModel):
    invoice: InvoiceOut
    totals: dict[str, Any]
    subscription: dict[str, Any]


class PayInvoiceResponse(BaseModel):
    message: str
    invoice: InvoiceOut
    subscription: dict[str, Any]
