"""Billing API: plan catalog, current subscription, checkout and invoices."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import Company
from app.routers.dependencies import get_current_company
from app.schemas.billing import CheckoutRequest, CheckoutResponse, InvoiceOut, PayInvoiceResponse, PlanOut
from app.services.billing_service import (
    checkout,
    current_subscription,
    list_invoices,
    list_public_plans,
    pay_invoice,
    subscription_payload,
)
from app.services.result import Result

router = APIRouter(prefix="/billing", tags=["billing"])


def _unwrap(result: Result) -> dict:
    if not result.ok:
        raise HTTPException(status_code=result.http_status, detail=result.error)
    return result.value


@router.get("/plans", response_model=list[PlanOut])
def get_plans(db: Session = Depends(get_db)):
    return list_public_plans(db)


@router.get("/subscription")
def get_subscription(company: Company = Depends(get_current_company), db: Session = Depends(get_db)):
    payload = current_subscription(db, company)
    db.commit()
    return payload


@router.post("/checkout", response_model=CheckoutResponse)
def post_checkout(
    request: CheckoutRequest,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    value = _unwrap(checkout(db, company, request.plan_code, request.quantity))
    db.commit()
    return CheckoutResponse(
        invoice=InvoiceOut.model_validate(value["invoice"]),
        totals=value["totals"],
        subscription=subscription_payload(value["subscription"]),
    )


@router.get("/invoices", response_model=list[InvoiceOut])
def get_invoices(
    limit: int = Query(default=50, ge=1, le=200),
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    return list_invoices(db, company, limit)


@router.post("/invoices/{invoice_id}/pay", response_model=PayInvoiceResponse)
def post_pay_invoice(
    invoice_id: int,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    value = _unwrap(pay_invoice(db, company, invoice_id))
    db.commit()
    return PayInvoiceResponse(
        message=value["message"],
        invoice=InvoiceOut.model_validate(value["invoice"]),
        subscription=current_subscription(db, company),
    )
