"""
Manual CRM edits made by company staff.

Every write goes through CrmStore so soft Order<->Event links are cleared on
delete and linked kanban tasks follow their calendar event.
"""

from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.logging_config import get_logger
from app.models import Company, CompanyCalendarEvent, CompanyClientTask
from app.schemas.company_settings import load_company_settings
from app.services.billing_ledger import as_aware, utcnow
from app.services.crm.appointments import (
    MIN_DURATION_MINUTES,
    company_zone,
    is_time_free,
    normalize_duration,
    parse_local_slot,
)
from app.services.crm.calendar_sync import board_column_for_task
from app.services.crm.store import BLOCKING_EVENT_STATUSES, CrmStore
from app.services.result import CONFLICT, NOT_FOUND, VALIDATION, Result

logger = get_logger("crm.workspace")

EVENT_STATUSES = ("scheduled", "confirmed", "completed", "canceled", "no_show")
TASK_STATUSES = ("todo", "in_progress", "done", "canceled")
# Orders already handed over keep their own status when the appointment changes.
FULFILMENT_ORDER_STATUSES = ("confirmed", "handed_to_courier", "delivered")
TERMINAL_ORDER_STATUSES = ("completed", "canceled", "delivered")
ORDER_STATUS_BY_EVENT_STATUS = {
    "completed": "completed",
    "canceled": "canceled",
    "no_show": "canceled",
    "scheduled": "appointments",
    "confirmed": "appointments",
}


def order_status_for_event(event_status: str, current_status: str) -> str:
    if current_status in FULFILMENT_ORDER_STATUSES:
        return current_status
    return ORDER_STATUS_BY_EVENT_STATUS.get(event_status, current_status)


def _event_zone(event: CompanyCalendarEvent, company: Company) -> tuple[str, ZoneInfo]:
    try:
        return event.timezone, ZoneInfo(event.timezone)
    except (ZoneInfoNotFoundError, TypeError, ValueError):
        settings = load_company_settings(company.settings)
        return settings.timezone, company_zone(settings)


def _existing_duration(event: CompanyCalendarEvent, default_minutes: int) -> int:
    starts_at, ends_at = as_aware(event.starts_at), as_aware(event.ends_at)
    if starts_at is None or ends_at is None:
        return default_minutes
    return max(int((ends_at - starts_at).total_seconds() // 60), MIN_DURATION_MINUTES)


def update_calendar_event(
    store: CrmStore, company: Company, event_id: int, changes: dict
) -> Result[CompanyCalendarEvent]:
    """Apply a partial edit; date/time/duration not given keep the event's current values."""
    event = store.get_event(company.id, event_id)
    if event is None:
        return Result.failure("Calendar event not found.", NOT_FOUND)

    status = str(changes.get("status") or event.status or "scheduled")
    if status not in EVENT_STATUSES:
        return Result.failure("Unknown calendar event status.", VALIDATION)

    settings = load_company_settings(company.settings)
    tz_name, tz = _event_zone(event, company)
    current_start = (as_aware(event.starts_at) or utcnow()).astimezone(tz)

    duration = _existing_duration(event, settings.appointment.slot_minutes)
    if changes.get("duration_minutes") is not None:
        duration = normalize_duration(changes["duration_minutes"])
        if duration is None:
            return Result.failure("Duration must be between 15 and 720 minutes.", VALIDATION)

    slot = parse_local_slot(
        changes.get("date") or current_start.strftime("%Y-%m-%d"),
        changes.get("time") or current_start.strftime("%H:%M"),
        duration,
        tz,
    )
    if slot is None:
        return Result.failure("Invalid date or time.", VALIDATION)
    start_local, end_local = slot

    if status in BLOCKING_EVENT_STATUSES and not is_time_free(
        store, company.id, start_local, end_local, ignore_event_id=event.id
    ):
        return Result.failure("Selected date and time is already occupied.", CONFLICT)

    title = str(changes.get("title") or "").strip()
    if title:
        event.title = title
    for key in ("description", "location"):
        if key in changes:
            setattr(event, key, str(changes[key] or "").strip() or None)
    event.starts_at = start_local.astimezone(ZoneInfo("UTC"))
    event.ends_at = end_local.astimezone(ZoneInfo("UTC"))
    event.timezone = tz_name
    event.status = status
    store.save_calendar_event(event)

    synced = sync_linked_orders(store, company, event)
    logger.info(
        "Calendar event updated",
        extra={"context": {"company_id": company.id, "event_id": event.id, "status": status, "orders": synced}},
    )
    return Result.success(event)


def sync_linked_orders(store: CrmStore, company: Company, event: CompanyCalendarEvent) -> int:
    """Copy the event's time and status into the appointment block of every linked order."""
    orders = {order.id: order for order in store.orders_linked_to_event(company.id, event.id)}
    linked = store.get_order(company.id, event.linked_order_id)
    if linked is not None:
        orders.setdefault(linked.id, linked)

    for order in orders.values():
        metadata = dict(order.order_metadata or {})
        appointment = dict(metadata.get("appointment") or {})
        appointment.update(
            {
                "calendar_event_id": event.id,
                "starts_at": event.starts_at.isoformat(),
                "ends_at": event.ends_at.isoformat() if event.ends_at is not None else None,
                "timezone": event.timezone,
                "status": event.status,
                "duration_minutes": _existing_duration(event, MIN_DURATION_MINUTES),
            }
        )
        metadata["appointment"] = appointment
        order.order_metadata = metadata

        order.status = order_status_for_event(event.status, str(order.status or "new"))
        if order.status in TERMINAL_ORDER_STATUSES:
            order.completed_at = order.completed_at or utcnow()
        else:
            order.completed_at = None
        store.save_order(order)
    return len(orders)


def delete_calendar_event(store: CrmStore, company: Company, event_id: int) -> Result[int]:
    event = store.get_event(company.id, event_id)
    if event is None:
        return Result.failure("Calendar event not found.", NOT_FOUND)
    store.delete_calendar_event(event)
    logger.info("Calendar event deleted", extra={"context": {"company_id": company.id, "event_id": event_id}})
    return Result.success(event_id)


def delete_order(store: CrmStore, company: Company, order_id: int) -> Result[int]:
    order = store.get_order(company.id, order_id)
    if order is None:
        return Result.failure("Order not found.", NOT_FOUND)
    store.delete_order(order)
    logger.info("Order deleted", extra={"context": {"company_id": company.id, "order_id": order_id}})
    return Result.success(order_id)


def update_task(store: CrmStore, company: Company, task_id: int, changes: dict) -> Result[CompanyClientTask]:
    """
    Edit a kanban task. A task synchronised with a calendar event takes its
    time and status from the event, so a manual status only sticks when
    `sync_with_calendar` is off.
    """
    task = store.get_task(company.id, task_id)
    if task is None:
        return Result.failure("Task not found.", NOT_FOUND)

    if "company_calendar_event_id" in changes:
        event_id: Optional[int] = changes["company_calendar_event_id"]
        if event_id and store.get_event(company.id, event_id) is None:
            return Result.failure("Calendar event not found.", NOT_FOUND)
        task.company_calendar_event_id = event_id or None
    if changes.get("sync_with_calendar") is not None:
        task.sync_with_calendar = bool(changes["sync_with_calendar"])
    if changes.get("description"):
        task.description = str(changes["description"]).strip()[:4000] or task.description
    if changes.get("status") is not None:
        status = str(changes["status"])
        if status not in TASK_STATUSES:
            return Result.failure("Unknown task status.", VALIDATION)
        task.status = status
        task.board_column = board_column_for_task(status)
        task.completed_at = (task.completed_at or utcnow()) if status in ("done", "canceled") else None

    store.save_task(task)
    return Result.success(task)
