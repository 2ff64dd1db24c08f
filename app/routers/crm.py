"""Company CRM edits: calendar events, orders and kanban tasks."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import Company
from app.routers.dependencies import get_current_company
from app.schemas.crm import CalendarEventOut, CalendarEventUpdate, DeletedOut, TaskOut, TaskUpdate
from app.services.crm.store import CrmStore
from app.services.crm.workspace import delete_calendar_event, delete_order, update_calendar_event, update_task
from app.services.result import Result

router = APIRouter(prefix="/company", tags=["crm"])


def _unwrap(result: Result):
    if not result.ok:
        raise HTTPException(status_code=result.http_status, detail=result.error)
    return result.value


@router.patch("/calendar-events/{event_id}", response_model=CalendarEventOut)
def patch_calendar_event(
    event_id: int,
    request: CalendarEventUpdate,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    changes = request.model_dump(exclude_unset=True)
    event = _unwrap(update_calendar_event(CrmStore(db), company, event_id, changes))
    db.commit()
    return event


@router.delete("/calendar-events/{event_id}", response_model=DeletedOut)
def remove_calendar_event(
    event_id: int,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    deleted_id = _unwrap(delete_calendar_event(CrmStore(db), company, event_id))
    db.commit()
    return DeletedOut(id=deleted_id)


@router.delete("/orders/{order_id}", response_model=DeletedOut)
def remove_order(
    order_id: int,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    deleted_id = _unwrap(delete_order(CrmStore(db), company, order_id))
    db.commit()
    return DeletedOut(id=deleted_id)


@router.patch("/tasks/{task_id}", response_model=TaskOut)
def patch_task(
    task_id: int,
    request: TaskUpdate,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    task = _unwrap(update_task(CrmStore(db), company, task_id, request.model_dump(exclude_unset=True)))
    db.commit()
    return task
