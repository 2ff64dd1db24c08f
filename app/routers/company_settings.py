from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.models import Company
from app.routers.dependencies import get_current_company
from app.schemas.company_settings import SettingsValidationError, load_company_settings, parse_company_settings

logger = get_logger("company_settings")

router = APIRouter(prefix="/company", tags=["company"])


@router.get("/settings")
def get_company_settings(company: Company = Depends(get_current_company)):
    return load_company_settings(company.settings).model_dump(mode="json")


@router.put("/settings")
def put_company_settings(
    payload: dict[str, Any],
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """Validate and store the full settings document; stored values always carry defaults."""
    try:
        parsed = parse_company_settings(payload)
    except SettingsValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors) from e

    company.settings = parsed.model_dump(mode="json")
    db.commit()
    logger.info("Company settings updated", extra={"context": {"company_id": company.id}})
    return company.settings
