"""
CRM persistence seam.

Every write to orders, calendar events and tasks goes through CrmStore so
the soft Order <-> CalendarEvent references stay consistent and linked tasks
follow their calendar event.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import (
    AssistantProduct,
    AssistantService,
    CompanyCalendarEvent,
    CompanyClient,
    CompanyClientOrder,
    CompanyClientQuestion,
    CompanyClientTask,
)
from app.services.crm.calendar_sync import CalendarTaskSync
from app.services.crm.values import metadata_has_chat_link

logger = get_logger("crm_store")

BLOCKING_EVENT_STATUSES = ("scheduled", "confirmed")
ACTIVE_QUESTION_COLUMNS = ("new", "in_progress")


class CrmStore:
    def __init__(self, db: Session, calendar_sync: Optional[CalendarTaskSync] = None):
        self.db = db
        self.calendar_sync = calendar_sync or CalendarTaskSync()

    # Reads

    def get_client(self, company_id: int, client_id) -> Optional[CompanyClient]:
        if not client_id:
            return None
        return (
            self.db.query(CompanyClient)
            .filter(CompanyClient.company_id == company_id, CompanyClient.id == int(client_id))
            .first()
        )

    def find_client_by_phone(self, company_id: int, phone: str) -> Optional[CompanyClient]:
        if not phone:
            return None
        return (
            self.db.query(CompanyClient)
            .filter(CompanyClient.company_id == company_id, CompanyClient.phone == phone)
            .first()
        )

    def get_order(self, company_id: int, order_id) -> Optional[CompanyClientOrder]:
        if not order_id:
            return None
        return (
            self.db.query(CompanyClientOrder)
            .filter(CompanyClientOrder.company_id == company_id, CompanyClientOrder.id == int(order_id))
            .first()
        )

    def get_event(self, company_id: int, event_id) -> Optional[CompanyCalendarEvent]:
        if not event_id:
            return None
        return (
            self.db.query(CompanyCalendarEvent)
            .filter(CompanyCalendarEvent.company_id == company_id, CompanyCalendarEvent.id == int(event_id))
            .first()
        )

    def get_task(self, company_id: int, task_id) -> Optional[CompanyClientTask]:
        if not task_id:
            return None
        return (
            self.db.query(CompanyClientTask)
            .filter(CompanyClientTask.company_id == company_id, CompanyClientTask.id == int(task_id))
            .first()
        )

    def orders_linked_to_event(self, company_id: int, event_id: int) -> list[CompanyClientOrder]:
        path = CompanyClientOrder.order_metadata["appointment"]["calendar_event_id"].astext
        return (
            self.db.query(CompanyClientOrder)
            .filter(CompanyClientOrder.company_id == company_id, path == str(event_id))
            .order_by(CompanyClientOrder.id.desc())
            .all()
        )

    def orders_for_client(self, company_id: int, client_id: int, limit: int = 30) -> list[CompanyClientOrder]:
        return (
            self.db.query(CompanyClientOrder)
            .filter(CompanyClientOrder.company_id == company_id, CompanyClientOrder.company_client_id == client_id)
            .order_by(CompanyClientOrder.ordered_at.desc().nullslast(), CompanyClientOrder.id.desc())
            .limit(limit)
            .all()
        )

    def recent_orders(self, company_id: int, limit: int = 200) -> list[CompanyClientOrder]:
        return (
            self.db.query(CompanyClientOrder)
            .filter(CompanyClientOrder.company_id == company_id)
            .order_by(CompanyClientOrder.ordered_at.desc().nullslast(), CompanyClientOrder.id.desc())
            .limit(limit)
            .all()
        )

    def upcoming_events(self, company_id: int, now: datetime, limit: int = 8) -> list[CompanyCalendarEvent]:
        return (
            self.db.query(CompanyCalendarEvent)
            .filter(
                CompanyCalendarEvent.company_id == company_id,
                CompanyCalendarEvent.status.in_(BLOCKING_EVENT_STATUSES),
                CompanyCalendarEvent.starts_at >= now,
            )
            .order_by(CompanyCalendarEvent.starts_at.asc())
            .limit(max(limit, 1))
            .all()
        )

    def blocking_events(
        self,
        company_id: int,
        starts_before: datetime,
        ends_after: datetime,
        ignore_event_id: Optional[int] = None,
        open_ended_minutes: int = 30,
    ) -> list[CompanyCalendarEvent]:
        """
        Scheduled/confirmed events intersecting (ends_after, starts_before); overlap is decided by the caller.

        Events without an end are treated as lasting `open_ended_minutes`.
        """
        query = self.db.query(CompanyCalendarEvent).filter(
            CompanyCalendarEvent.company_id == company_id,
            CompanyCalendarEvent.status.in_(BLOCKING_EVENT_STATUSES),
            CompanyCalendarEvent.starts_at < starts_before,
            or_(
                CompanyCalendarEvent.ends_at > ends_after,
                and_(
                    CompanyCalendarEvent.ends_at.is_(None),
                    CompanyCalendarEvent.starts_at > ends_after - timedelta(minutes=open_ended_minutes),
                ),
            ),
        )
        if ignore_event_id is not None:
            query = query.filter(CompanyCalendarEvent.id != ignore_event_id)
        return query.order_by(CompanyCalendarEvent.starts_at.asc()).all()

    def catalog_services(self, assistant_id: int, limit: int) -> list[AssistantService]:
        return (
            self.db.query(AssistantService)
            .filter(AssistantService.assistant_id == assistant_id, AssistantService.is_active.is_(True))
            .order_by(AssistantService.sort_order.asc(), AssistantService.id.asc())
            .limit(max(limit, 1))
            .all()
        )

    def catalog_products(self, assistant_id: int, limit: int) -> list[AssistantProduct]:
        return (
            self.db.query(AssistantProduct)
            .filter(AssistantProduct.assistant_id == assistant_id, AssistantProduct.is_active.is_(True))
            .order_by(AssistantProduct.sort_order.asc(), AssistantProduct.id.asc())
            .limit(max(limit, 1))
            .all()
        )

    def has_active_question(self, company_id: int, chat_id: int) -> bool:
        questions = (
            self.db.query(CompanyClientQuestion)
            .filter(
                CompanyClientQuestion.company_id == company_id,
                CompanyClientQuestion.board_column.in_(ACTIVE_QUESTION_COLUMNS),
            )
            .order_by(CompanyClientQuestion.id.desc())
            .limit(200)
            .all()
        )
        return any(metadata_has_chat_link(q.question_metadata, [chat_id]) for q in questions)

    # Writes

    def savepoint(self):
        """SAVEPOINT scope; a failing block rolls back only its own writes."""
        return self.db.begin_nested()

    def save_chat(self, chat) -> None:
        self.db.add(chat)
        self.db.flush()

    def phone_taken(self, company_id: int, phone: str, exclude_client_id: int) -> bool:
        row = (
            self.db.query(CompanyClient.id)
            .filter(
                CompanyClient.company_id == company_id,
                CompanyClient.phone == phone,
                CompanyClient.id != exclude_client_id,
            )
            .first()
        )
        return row is not None

    def save_client(self, client: CompanyClient) -> CompanyClient:
        self.db.add(client)
        self.db.flush()
        return client

    def save_order(self, order: CompanyClientOrder) -> CompanyClientOrder:
        self.db.add(order)
        self.db.flush()
        return order

    def save_question(self, question: CompanyClientQuestion) -> CompanyClientQuestion:
        self.db.add(question)
        self.db.flush()
        return question

    def save_calendar_event(self, event: CompanyCalendarEvent) -> CompanyCalendarEvent:
        """Persist the event, then push its state onto every synchronised task."""
        self.db.add(event)
        self.db.flush()

        tasks = (
            self.db.query(CompanyClientTask)
            .filter(
                CompanyClientTask.company_calendar_event_id == event.id,
                CompanyClientTask.sync_with_calendar.is_(True),
            )
            .all()
        )
        if tasks:
            synced = self.calendar_sync.sync_tasks(event, tasks)
            self.db.flush()
            logger.debug(f"Calendar event {event.id} synced to {synced} task(s)")
        return event

    def save_task(self, task: CompanyClientTask) -> CompanyClientTask:
        if task.sync_with_calendar is not False and task.company_calendar_event_id:
            event = self.get_event(task.company_id, task.company_calendar_event_id)
            self.calendar_sync.apply_event_to_task(task, event)
        self.db.add(task)
        self.db.flush()
        return task

    def delete_order(self, order: CompanyClientOrder) -> None:
        event_id = order.linked_event_id
        if event_id:
            event = self.get_event(order.company_id, event_id)
            if event is not None and event.linked_order_id == order.id:
                metadata = dict(event.event_metadata or {})
                metadata.pop("order_id", None)
                event.event_metadata = metadata
                self.db.flush()
        self.db.delete(order)
        self.db.flush()

    def delete_calendar_event(self, event: CompanyCalendarEvent) -> None:
        for order in self.orders_linked_to_event(event.company_id, event.id):
            metadata = dict(order.order_metadata or {})
            appointment = dict(metadata.get("appointment") or {})
            appointment.pop("calendar_event_id", None)
            metadata["appointment"] = appointment
            order.order_metadata = metadata
            if order.status == "appointments":
                order.status = "in_progress"
                order.completed_at = None

        (
            self.db.query(CompanyClientTask)
            .filter(CompanyClientTask.company_calendar_event_id == event.id)
            .update({CompanyClientTask.company_calendar_event_id: None}, synchronize_session=False)
        )
        self.db.delete(event)
        self.db.flush()
