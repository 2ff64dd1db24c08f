from app.schemas.billing import CheckoutRequest, InvoiceOut, PlanOut
from app.schemas.company_settings import CompanySettings, SettingsValidationError
from app.schemas.widget import WidgetMessageIn, WidgetMessageOut

__all__ = [
    "PlanOut",
    "InvoiceOut",
    "CheckoutRequest",
    "CompanySettings",
    "SettingsValidationError",
    "WidgetMessageIn",
    "WidgetMessageOut",
]
