from datetime import datetime
from typing import Callable, Optional

from app.services.billing_ledger import utcnow

TASK_STATUS_BY_EVENT_STATUS = {
    "confirmed": "in_progress",
    "completed": "done",
    "canceled": "canceled",
    "no_show": "canceled",
}
BOARD_COLUMN_BY_TASK_STATUS = {
    "in_progress": "in_progress",
    "done": "done",
    "canceled": "canceled",
}
FINISHED_TASK_STATUSES = ("done", "canceled")


def task_status_for_event(event_status: str) -> str:
    return TASK_STATUS_BY_EVENT_STATUS.get(str(event_status or ""), "todo")


def board_column_for_task(task_status: str) -> str:
    return BOARD_COLUMN_BY_TASK_STATUS.get(str(task_status or ""), "todo")


class CalendarTaskSync:
    """Mirrors a calendar event's time and status onto the kanban tasks linked to it."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def apply_event_to_task(self, task, event) -> bool:
        """Copy event state onto one task. Returns False when the task is not synchronised."""
        if task.sync_with_calendar is False or event is None:
            return False

        task.scheduled_at = event.starts_at
        task.due_at = event.ends_at or event.starts_at
        task.status = task_status_for_event(event.status)
        task.board_column = board_column_for_task(task.status)

        if task.status in FINISHED_TASK_STATUSES:
            task.completed_at = task.completed_at or self.clock()
        else:
            task.completed_at = None
        return True

    def sync_tasks(self, event, tasks) -> int:
        synced = 0
        for task in tasks:
            if task.company_calendar_event_id not in (None, event.id):
                continue
            if self.apply_event_to_task(task, event):
                synced += 1
        return synced


def event_for_task(task, lookup: Callable[[int], Optional[object]]):
    if not task.company_calendar_event_id:
        return None
    return lookup(task.company_calendar_event_id)
