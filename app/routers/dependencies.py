"""Tenant resolution shared by the account-facing routers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import Company, User
from app.services.subscription_service import provision_default_workspace_for_user


def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    # Session auth lives in the upstream gateway; it forwards the user id.
    if not x_user_id or not x_user_id.strip().isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user")
    user = db.query(User).filter(User.id == int(x_user_id.strip())).first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is blocked")
    return user


def get_current_company(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Company:
    company = provision_default_workspace_for_user(db, user)
    db.commit()
    return company
