from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from conftest import NOW
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.models import CompanyCalendarEvent, CompanyClientOrder, CompanyClientTask
from app.routers.dependencies import get_current_company
from app.services.crm.workspace import (
    delete_calendar_event,
    delete_order,
    order_status_for_event,
    update_calendar_event,
    update_task,
)
from app.services.result import CONFLICT, NOT_FOUND, VALIDATION, Result

ROUTER = "app.routers.crm"


@pytest.fixture
def company():
    return SimpleNamespace(id=3, user_id=2, settings={})


@pytest.fixture(autouse=True)
def frozen_clock():
    with patch("app.services.crm.workspace.utcnow", return_value=NOW):
        yield


def make_event(**overrides):
    values = {
        "id": 40,
        "company_id": 3,
        "title": "Haircut",
        "starts_at": NOW,
        "ends_at": NOW + timedelta(minutes=60),
        "timezone": "Asia/Dushanbe",
        "status": "scheduled",
        "event_metadata": {},
    }
    values.update(overrides)
    return CompanyCalendarEvent(**values)


def make_order(**overrides):
    values = {
        "id": 77,
        "company_id": 3,
        "status": "appointments",
        "order_metadata": {"appointment": {"calendar_event_id": 40, "note": "window seat"}},
    }
    values.update(overrides)
    return CompanyClientOrder(**values)


def crm_store(event=None, orders=(), busy=()):
    store = MagicMock()
    store.get_event.return_value = event
    store.get_order.return_value = None
    store.orders_linked_to_event.return_value = list(orders)
    store.blocking_events.return_value = list(busy)
    return store


class TestUpdateCalendarEvent:
    def test_missing_event(self, company):
        result = update_calendar_event(crm_store(), company, 40, {"time": "10:00"})
        assert result.error_code == NOT_FOUND

    def test_unknown_status(self, company):
        result = update_calendar_event(crm_store(make_event()), company, 40, {"status": "postponed"})
        assert result.error_code == VALIDATION

    def test_reschedule_in_event_timezone_keeps_duration(self, company):
        event = make_event()
        store = crm_store(event)

        result = update_calendar_event(store, company, 40, {"time": "10:00"})

        assert result.ok
        assert event.starts_at == datetime(2025, 3, 10, 5, 0, tzinfo=timezone.utc)
        assert event.ends_at == datetime(2025, 3, 10, 6, 0, tzinfo=timezone.utc)
        assert event.timezone == "Asia/Dushanbe"
        assert store.blocking_events.call_args.kwargs["ignore_event_id"] == 40
        store.save_calendar_event.assert_called_once_with(event)

    def test_occupied_time_is_conflict(self, company):
        busy = SimpleNamespace(starts_at=NOW + timedelta(hours=2), ends_at=NOW + timedelta(hours=3))
        store = crm_store(make_event(), busy=[busy])

        result = update_calendar_event(store, company, 40, {"time": "19:30"})

        assert result.error_code == CONFLICT
        assert result.http_status == 409
        store.save_calendar_event.assert_not_called()

    def test_finished_event_skips_availability_check(self, company):
        store = crm_store(make_event())

        result = update_calendar_event(store, company, 40, {"status": "completed"})

        assert result.ok
        store.blocking_events.assert_not_called()

    def test_linked_orders_follow_the_event(self, company):
        order = make_order()
        event = make_event()
        store = crm_store(event, orders=[order])

        update_calendar_event(store, company, 40, {"date": "2025-03-11", "duration_minutes": 90})

        appointment = order.order_metadata["appointment"]
        assert appointment["note"] == "window seat"
        assert appointment["starts_at"] == "2025-03-11T12:00:00+00:00"
        assert appointment["ends_at"] == "2025-03-11T13:30:00+00:00"
        assert appointment["duration_minutes"] == 90
        assert appointment["timezone"] == "Asia/Dushanbe"
        assert order.status == "appointments"
        store.save_order.assert_called_once_with(order)

    def test_canceled_event_closes_order(self, company):
        order = make_order()
        store = crm_store(make_event(), orders=[order])

        update_calendar_event(store, company, 40, {"status": "no_show"})

        assert order.status == "canceled"
        assert order.completed_at == NOW
        assert order.order_metadata["appointment"]["status"] == "no_show"

    def test_event_back_reference_counts_as_link(self, company):
        order = make_order(order_metadata={})
        store = crm_store(make_event(event_metadata={"order_id": 77}))
        store.get_order.return_value = order

        update_calendar_event(store, company, 40, {"status": "confirmed"})

        assert order.order_metadata["appointment"]["calendar_event_id"] == 40


class TestOrderStatusForEvent:
    def test_mapping(self):
        assert order_status_for_event("completed", "appointments") == "completed"
        assert order_status_for_event("canceled", "new") == "canceled"
        assert order_status_for_event("scheduled", "completed") == "appointments"

    def test_fulfilment_statuses_are_kept(self):
        assert order_status_for_event("canceled", "handed_to_courier") == "handed_to_courier"
        assert order_status_for_event("completed", "delivered") == "delivered"


class TestDeletes:
    def test_missing_event(self, company):
        assert delete_calendar_event(crm_store(), company, 40).error_code == NOT_FOUND

    def test_event_removed_through_store(self, company):
        event = make_event()
        store = crm_store(event)

        result = delete_calendar_event(store, company, 40)

        assert result.value == 40
        store.delete_calendar_event.assert_called_once_with(event)

    def test_order_removed_through_store(self, company):
        order = make_order()
        store = crm_store()
        store.get_order.return_value = order

        assert delete_order(store, company, 77).ok
        store.delete_order.assert_called_once_with(order)

    def test_missing_order(self, company):
        assert delete_order(crm_store(), company, 77).error_code == NOT_FOUND


class TestUpdateTask:
    def make_task(self, **overrides):
        values = {"id": 5, "company_id": 3, "description": "Call back", "status": "todo", "sync_with_calendar": False}
        values.update(overrides)
        return CompanyClientTask(**values)

    def test_status_moves_board_column(self, company):
        task = self.make_task()
        store = crm_store()
        store.get_task.return_value = task

        result = update_task(store, company, 5, {"status": "done"})

        assert result.value is task
        assert task.board_column == "done"
        assert task.completed_at == NOW
        store.save_task.assert_called_once_with(task)

    def test_reopened_task_clears_completion(self, company):
        task = self.make_task(status="done", completed_at=NOW)
        store = crm_store()
        store.get_task.return_value = task

        update_task(store, company, 5, {"status": "in_progress"})

        assert task.board_column == "in_progress"
        assert task.completed_at is None

    def test_link_to_unknown_event(self, company):
        store = crm_store()
        store.get_task.return_value = self.make_task()

        result = update_task(store, company, 5, {"company_calendar_event_id": 99})

        assert result.error_code == NOT_FOUND
        store.save_task.assert_not_called()

    def test_unknown_status(self, company):
        store = crm_store()
        store.get_task.return_value = self.make_task()
        assert update_task(store, company, 5, {"status": "archived"}).error_code == VALIDATION


@pytest.fixture
def client(db_session, company):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_current_company] = lambda: company
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestCrmEndpoints:
    @patch(f"{ROUTER}.update_calendar_event")
    def test_patch_event(self, update, client, db_session, company):
        update.return_value = Result.success(make_event(event_metadata={"source": "assistant"}))

        response = client.patch("/company/calendar-events/40", json={"time": "10:00"})

        assert response.status_code == 200
        assert response.json()["metadata"] == {"source": "assistant"}
        assert update.call_args.args[1:] == (company, 40, {"time": "10:00"})
        db_session.commit.assert_called_once()

    @patch(f"{ROUTER}.update_calendar_event")
    def test_conflict_is_409(self, update, client, db_session):
        update.return_value = Result.failure("Selected date and time is already occupied.", CONFLICT)

        response = client.patch("/company/calendar-events/40", json={"time": "10:00"})

        assert response.status_code == 409
        db_session.commit.assert_not_called()

    def test_duration_is_bounded(self, client):
        assert client.patch("/company/calendar-events/40", json={"duration_minutes": 5}).status_code == 422

    @patch(f"{ROUTER}.delete_calendar_event", return_value=Result.success(40))
    def test_delete_event(self, _delete, client, db_session):
        response = client.delete("/company/calendar-events/40")
        assert response.json() == {"id": 40, "deleted": True}
        db_session.commit.assert_called_once()

    @patch(f"{ROUTER}.delete_order", return_value=Result.failure("Order not found.", NOT_FOUND))
    def test_delete_missing_order(self, _delete, client):
        assert client.delete("/company/orders/77").status_code == 404

    @patch(f"{ROUTER}.update_task")
    def test_patch_task(self, update, client):
        update.return_value = Result.success(
            SimpleNamespace(
                id=5,
                description="Call back",
                status="done",
                board_column="done",
                sync_with_calendar=False,
                company_calendar_event_id=None,
                scheduled_at=None,
                completed_at=NOW,
            )
        )

        response = client.patch("/company/tasks/5", json={"status": "done"})

        assert response.status_code == 200
        assert response.json()["board_column"] == "done"
        assert update.call_args.args[3] == {"status": "done"}
