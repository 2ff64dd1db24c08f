"""
Executes <crm_action> blocks emitted by the assistant.

The model appends JSON blocks such as
    <crm_action>{"action":"create_order", ...}</crm_action>
to its reply. Each block is run against the CRM store, then stripped from the
text the customer sees. A failing action is logged and skipped; it never
breaks the reply.
"""

import json
import re
from datetime import datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from app.config import settings as app_settings
from app.logging_config import get_logger
from app.models import (
    Assistant,
    Chat,
    Company,
    CompanyCalendarEvent,
    CompanyClient,
    CompanyClientOrder,
    CompanyClientQuestion,
)
from app.schemas.company_settings import CompanySettings, load_company_settings
from app.services.billing_ledger import utcnow
from app.services.crm.appointments import (
    DATE_RE,
    TIME_RE,
    company_zone,
    is_slot_available,
    normalize_duration,
    parse_local_slot,
)
from app.services.crm.store import CrmStore
from app.services.crm.values import (
    bool_from_payload,
    clean_text,
    collapse_whitespace,
    metadata_has_chat_link,
    plain_text,
    positive_int,
)

logger = get_logger("crm_actions")

ACTION_RE = re.compile(r"<crm_action>\s*(\{.*?\})\s*</crm_action>", re.IGNORECASE | re.DOTALL)
TOKEN_SPLIT_RE = re.compile(r"[\W_]+", re.UNICODE)
SOURCE = "assistant_crm_action"
DEFAULT_CURRENCY = "TJS"
DELIVERY_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S")

MSG_ORDER_SAVED = "Заявка сохранена."
MSG_APPOINTMENT_SAVED = "Заявка и запись сохранены."
MSG_APPOINTMENT_CANCELED = "Запись отменена и перенесена в завершенные."
MSG_ORDER_CANCELED = "Заявка отменена и перенесена в завершенные."
MSG_APPOINTMENT_RESCHEDULED = "Запись обновлена."


def extract_actions(text: str) -> list[dict]:
    """JSON payloads of every well-formed <crm_action> block, in order."""
    payloads = []
    for raw in ACTION_RE.findall(text or ""):
        try:
            payload = json.loads(raw.strip())
        except ValueError:
            continue
        if isinstance(payload, dict):
            payloads.append(payload)
    return payloads


def strip_actions(text: str) -> str:
    return ACTION_RE.sub("", text or "").strip()


def normalize_phone(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    phone = value.strip()
    return phone[:32] if phone else None


def normalized_amount(value: Any) -> float:
    try:
        return max(round(float(value), 2), 0.0)
    except (TypeError, ValueError):
        return 0.0


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value.strip())
        except ValueError:
            return False
        return True
    return False


def catalog_key(value: Any) -> str:
    return collapse_whitespace(str(value or "").lower())


def order_has_appointment(order: CompanyClientOrder) -> bool:
    return order.linked_event_id is not None


def select_best_order(orders: list[CompanyClientOrder], require_appointment: bool) -> Optional[CompanyClientOrder]:
    """Prefer open orders; fall back to completed ones. Archived orders never match."""
    passes: list[Callable[[CompanyClientOrder], bool]] = [
        lambda order: order.status != "completed",
        lambda order: True,
    ]
    for accept in passes:
        for order in orders:
            if not accept(order) or order.is_archived:
                continue
            if require_appointment and not order_has_appointment(order):
                continue
            return order
    return None


def instruction_tokens(value: str) -> list[str]:
    tokens: list[str] = []
    for part in TOKEN_SPLIT_RE.split((value or "").strip().lower()):
        if part and part not in tokens:
            tokens.append(part)
    return tokens


def looks_covered_by_instructions(assistant: Assistant, description: str) -> bool:
    """True when at least three meaningful words of the question already appear in the instructions."""
    tokens = instruction_tokens(description)
    if not tokens:
        return False
    sources = [
        str(text or "").strip()
        for text in (
            app_settings.openai_base_instructions,
            app_settings.openai_base_limits,
            assistant.instructions,
            assistant.restrictions,
        )
    ]
    corpus = " ".join(source for source in sources if source).lower()
    if not corpus:
        return False
    matched = sum(1 for token in tokens if len(token) >= 4 and token in corpus)
    return matched >= 3


def parse_local_datetime(value: str, tz: ZoneInfo) -> Optional[datetime]:
    text = (value or "").strip()
    if not text:
        return None
    for fmt in DELIVERY_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=tz)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed.replace(tzinfo=tz) if parsed.tzinfo is None else parsed


def delivery_datetime_from_payload(payload: dict, tz: ZoneInfo) -> Optional[str]:
    for key in ("delivery_datetime", "delivery_at"):
        candidate = payload.get(key)
        if not isinstance(candidate, str) or not candidate.strip():
            continue
        parsed = parse_local_datetime(candidate, tz)
        if parsed is not None:
            return parsed.astimezone(tz).strftime("%Y-%m-%d %H:%M")

    date_text = str(payload.get("delivery_date") or "").strip()
    time_text = str(payload.get("delivery_time") or "").strip()
    if DATE_RE.match(date_text) and TIME_RE.match(time_text):
        parsed = parse_local_datetime(f"{date_text} {time_text}", tz)
        return parsed.astimezone(tz).strftime("%Y-%m-%d %H:%M") if parsed is not None else None
    return None


def required_field_present(field: str, values: dict) -> bool:
    if field == "amount":
        return bool(values.get("amount_set"))
    if field == "appointment_duration_minutes":
        return isinstance(values.get(field), int)
    if field in values:
        return str(values.get(field) or "").strip() != ""
    return True


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        data = data.get(key) if isinstance(data, dict) else None
    return data


class CrmActionExecutor:
    """Applies assistant CRM actions for one company conversation."""

    def __init__(self, store: CrmStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def apply_actions(self, company: Company, chat: Chat, assistant: Assistant, response: str) -> str:
        """
        Run every action in the reply and return the customer-facing text.

        When the reply contained nothing but action blocks, the confirmation
        messages of the successful actions are returned instead.
        """
        text = (response or "").strip()
        if not text:
            return ""
        if not ACTION_RE.search(text):
            return text

        messages: list[str] = []
        for payload in extract_actions(text):
            try:
                with self.store.savepoint():
                    message = self.execute(company, chat, assistant, payload)
            except Exception as exc:
                logger.warning(
                    "Assistant CRM action failed",
                    extra={
                        "context": {
                            "company_id": company.id,
                            "chat_id": chat.id,
                            "assistant_id": assistant.id,
                            "action_payload": payload,
                            "exception": str(exc),
                        }
                    },
                )
                continue
            if message and message.strip() and message.strip() not in messages:
                messages.append(message.strip())

        cleaned = strip_actions(text)
        if cleaned:
            return cleaned
        return " ".join(messages)

    def execute(self, company: Company, chat: Chat, assistant: Assistant, payload: dict) -> Optional[str]:
        action = str(payload.get("action") or "").strip().lower()
        settings = load_company_settings(company.settings)

        if action == "create_order":
            return self.create_order(company, chat, assistant, settings, payload, book_appointment=False)
        if action == "create_appointment":
            return self.create_order(company, chat, assistant, settings, payload, book_appointment=True)
        if action == "cancel_order":
            return self.cancel_order(company, chat, payload, appointment_only=False)
        if action == "cancel_appointment":
            return self.cancel_order(company, chat, payload, appointment_only=True)
        if action == "reschedule_appointment":
            return self.reschedule_appointment(company, chat, assistant, settings, payload)
        if action == "create_question":
            return self.create_question(company, chat, assistant, payload)
        return None

    # Chat-derived defaults

    def linked_client(self, company: Company, chat: Chat) -> Optional[CompanyClient]:
        client_id = positive_int(_dig(chat.chat_metadata, "company_client_id"))
        return self.store.get_client(company.id, client_id) if client_id else None

    @staticmethod
    def fallback_phone(chat: Chat, linked: Optional[CompanyClient]) -> Optional[str]:
        metadata = chat.chat_metadata or {}
        candidates = [
            linked.phone if linked is not None else None,
            _dig(metadata, "phone"),
            _dig(metadata, "client_phone"),
            _dig(metadata, "contact", "phone"),
            _dig(metadata, "contacts", "phone"),
            chat.channel_user_id,
        ]
        for candidate in candidates:
            phone = normalize_phone(candidate)
            if phone:
                return phone
        return None

    @staticmethod
    def fallback_name(chat: Chat, linked: Optional[CompanyClient], phone: str) -> str:
        if linked is not None and str(linked.name or "").strip():
            return str(linked.name).strip()
        if str(chat.name or "").strip():
            return str(chat.name).strip()
        return f"Client {phone}"

    @staticmethod
    def resolve_address(payload: dict, chat: Chat, linked: Optional[CompanyClient]) -> str:
        address = clean_text(payload.get("address"), 10_000)
        if address:
            return address
        linked_meta = linked.client_metadata if linked is not None else {}
        chat_meta = chat.chat_metadata or {}
        for candidate in (
            _dig(linked_meta, "address"),
            _dig(chat_meta, "address"),
            _dig(chat_meta, "contact", "address"),
            _dig(chat_meta, "contacts", "address"),
        ):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        return ""

    def resolve_or_create_client(
        self, company: Company, chat: Chat, name: str, phone: str, address: str
    ) -> Optional[CompanyClient]:
        phone = phone.strip()[:32]
        if not phone:
            return None

        client = self.store.find_client_by_phone(company.id, phone)
        if client is None:
            client = self.linked_client(company, chat)

        if client is None:
            resolved_name = name.strip() or str(chat.name or "").strip() or f"Client {phone}"
            client = CompanyClient(
                user_id=company.user_id,
                company_id=company.id,
                name=resolved_name[:160],
                phone=phone,
                status="active",
                client_metadata={"source": SOURCE, "address": address[:255]},
            )
        else:
            if name.strip() and client.name != name:
                client.name = name[:160]
            if client.phone != phone and not self.store.phone_taken(company.id, phone, client.id):
                client.phone = phone
            metadata = dict(client.client_metadata or {})
            metadata["address"] = address[:255]
            client.client_metadata = metadata
        self.store.save_client(client)

        chat_metadata = dict(chat.chat_metadata or {})
        chat_metadata["company_client_id"] = client.id
        chat.chat_metadata = chat_metadata
        self.store.save_chat(chat)
        return client

    def catalog_match(self, assistant: Assistant, name: str) -> Optional[dict]:
        needle = catalog_key(name)
        if not needle:
            return None
        for kind, items in (
            ("service", self.store.catalog_services(assistant.id, 200)),
            ("product", self.store.catalog_products(assistant.id, 200)),
        ):
            for item in items:
                if catalog_key(item.name) == needle:
                    return {
                        "type": kind,
                        "id": item.id,
                        "name": str(item.name).strip(),
                        "price": normalized_amount(item.price),
                        "currency": str(item.currency or DEFAULT_CURRENCY).strip(),
                    }
        return None

    # Actions

    def create_question(self, company: Company, chat: Chat, assistant: Assistant, payload: dict) -> None:
        if not bool_from_payload(payload.get("company_related", True), False):
            return None
        if bool_from_payload(payload.get("contains_sensitive_data", False), False):
            return None
        if bool_from_payload(payload.get("covered_in_instructions", False), False):
            return None

        raw = payload.get("description") or payload.get("question") or payload.get("note") or ""
        description = plain_text(raw, 2000)
        if not description:
            return None
        if looks_covered_by_instructions(assistant, description):
            return None
        if self.store.has_active_question(company.id, chat.id):
            return None

        linked = self.linked_client(company, chat)
        client = linked
        if client is None:
            phone = self.fallback_phone(chat, None) or f"chat-{chat.id}"
            client = self.resolve_or_create_client(
                company,
                chat,
                self.fallback_name(chat, None, phone),
                phone,
                self.resolve_address(payload, chat, None),
            )
        if client is None:
            return None

        self.store.save_question(
            CompanyClientQuestion(
                user_id=company.user_id,
                company_id=company.id,
                company_client_id=client.id,
                assistant_id=assistant.id,
                description=description,
                status="open",
                board_column="new",
                question_metadata={
                    "source": SOURCE,
                    "chat_id": chat.id,
                    "source_channel": chat.channel,
                    "assistant_action": payload,
                },
            )
        )
        logger.info(
            "Client question created",
            extra={"context": {"company_id": company.id, "chat_id": chat.id, "client_id": client.id}},
        )
        return None

    def create_order(
        self,
        company: Company,
        chat: Chat,
        assistant: Assistant,
        settings: CompanySettings,
        payload: dict,
        book_appointment: bool,
    ) -> Optional[str]:
        if book_appointment and not settings.appointments_enabled:
            return None

        tz = company_zone(settings)
        required = list(
            settings.crm.appointment_required_fields if book_appointment else settings.crm.order_required_fields
        )
        linked = self.linked_client(company, chat)

        phone = normalize_phone(payload.get("phone")) or self.fallback_phone(chat, linked) or f"chat-{chat.id}"
        client_name = clean_text(payload.get("client_name"), 10_000) or self.fallback_name(chat, linked, phone)
        service_name = clean_text(payload.get("service_name"), 10_000) or (
            "Appointment request" if book_appointment else "Order request"
        )
        address = self.resolve_address(payload, chat, linked)
        note = clean_text(payload.get("note"), 10_000)

        amount_set = "amount" in payload and is_numeric(payload.get("amount"))
        amount = normalized_amount(payload.get("amount")) if amount_set else 0.0
        currency = DEFAULT_CURRENCY
        match = self.catalog_match(assistant, service_name)
        if match is not None:
            service_name = match["name"]
            amount = match["price"]
            currency = match["currency"]
            amount_set = True

        delivery_at = delivery_datetime_from_payload(payload, tz)

        slot = None
        duration = None
        date_text = time_text = None
        if book_appointment:
            duration = normalize_duration(payload.get("appointment_duration_minutes", payload.get("duration_minutes")))
            if duration is None:
                return None
            slot = parse_local_slot(payload.get("appointment_date"), payload.get("appointment_time"), duration, tz)
            if slot is None:
                return None
            if not is_slot_available(self.store, company.id, settings, slot[0], slot[1]):
                logger.info(
                    "Appointment slot unavailable",
                    extra={"context": {"company_id": company.id, "chat_id": chat.id, "starts_at": slot[0]}},
                )
                return None
            date_text = str(payload.get("appointment_date")).strip()
            time_text = str(payload.get("appointment_time")).strip()

        values = {
            "client_name": client_name,
            "phone": phone,
            "service_name": service_name,
            "address": address,
            "amount_set": amount_set,
            "note": note,
            "appointment_date": date_text,
            "appointment_time": time_text,
            "appointment_duration_minutes": duration,
        }
        if not all(required_field_present(field, values) for field in required):
            return None

        client = self.resolve_or_create_client(company, chat, client_name, phone, address)
        if client is None:
            return None

        metadata: dict = {
            "source": SOURCE,
            "chat_id": chat.id,
            "address": address[:255],
            "phone": phone[:32],
            "required_fields": required,
            "assistant_action": payload,
        }
        if match is not None:
            metadata["catalog_match"] = match
        delivery = settings.delivery
        if not book_appointment and delivery.enabled:
            metadata["delivery"] = {
                "enabled": True,
                "required_address": delivery.require_delivery_address,
                "required_datetime": delivery.require_delivery_datetime,
                "requested_datetime": delivery_at,
                "default_eta_minutes": delivery.default_eta_minutes,
                "fee": delivery.fee,
                "free_from_amount": delivery.free_from_amount,
                "available_from": delivery.available_from,
                "available_to": delivery.available_to,
                "notes": delivery.notes,
            }

        event = None
        if book_appointment:
            start_local, end_local = slot
            event = CompanyCalendarEvent(
                user_id=company.user_id,
                company_id=company.id,
                company_client_id=client.id,
                assistant_id=assistant.id,
                title=f"Appointment: {service_name[:120]}",
                description=note[:2000] or None,
                starts_at=start_local.astimezone(ZoneInfo("UTC")),
                ends_at=end_local.astimezone(ZoneInfo("UTC")),
                timezone=settings.timezone,
                status="scheduled",
                location=address[:255] or None,
                event_metadata={"source": SOURCE, "chat_id": chat.id, "phone": phone},
            )
            self.store.save_calendar_event(event)
            metadata["appointment"] = {
                "calendar_event_id": event.id,
                "starts_at": event.starts_at.isoformat(),
                "ends_at": event.ends_at.isoformat(),
                "timezone": event.timezone,
                "duration_minutes": duration,
            }

        order = CompanyClientOrder(
            user_id=company.user_id,
            company_id=company.id,
            company_client_id=client.id,
            assistant_id=assistant.id,
            service_name=service_name[:160],
            quantity=1,
            unit_price=amount,
            total_price=amount,
            currency=currency[:12],
            ordered_at=self.clock(),
            status="appointments" if book_appointment else "new",
            completed_at=None,
            notes=note[:2000] or None,
            order_metadata=metadata,
        )
        self.store.save_order(order)

        if event is not None:
            event_metadata = dict(event.event_metadata or {})
            event_metadata["order_id"] = order.id
            event_metadata["source"] = SOURCE
            event.event_metadata = event_metadata
            self.store.save_calendar_event(event)

        logger.info(
            "CRM order created",
            extra={
                "context": {
                    "company_id": company.id,
                    "chat_id": chat.id,
                    "order_id": order.id,
                    "calendar_event_id": event.id if event is not None else None,
                }
            },
        )
        return MSG_APPOINTMENT_SAVED if book_appointment else MSG_ORDER_SAVED

    def cancel_order(self, company: Company, chat: Chat, payload: dict, appointment_only: bool) -> Optional[str]:
        order = self.resolve_order(company, chat, payload, appointment_only)
        if order is None:
            return None

        now_iso = self.clock().isoformat()
        metadata = dict(order.order_metadata or {})
        reason = clean_text(payload.get("reason") or payload.get("note"), 500)
        had_appointment = order_has_appointment(order)
        event = self.order_event(company, order, payload)

        if event is not None:
            event_metadata = dict(event.event_metadata or {})
            event_metadata.update(
                {"order_id": order.id, "source": SOURCE, "canceled_by": "assistant", "canceled_at": now_iso}
            )
            if reason:
                event_metadata["cancellation_reason"] = reason
            event.status = "canceled"
            event.event_metadata = event_metadata
            self.store.save_calendar_event(event)

            if isinstance(metadata.get("appointment"), dict):
                appointment = dict(metadata["appointment"])
                appointment["status"] = "canceled"
                appointment["canceled_at"] = now_iso
                if reason:
                    appointment["cancellation_reason"] = reason
                metadata["appointment"] = appointment

        metadata["canceled"] = True
        metadata["canceled_at"] = now_iso
        if reason:
            metadata["cancellation_reason"] = reason
        metadata["assistant_cancel_action"] = payload

        order.status = "completed"
        order.completed_at = order.completed_at or self.clock()
        order.order_metadata = metadata
        self.store.save_order(order)

        if event is not None or had_appointment or appointment_only:
            return MSG_APPOINTMENT_CANCELED
        return MSG_ORDER_CANCELED

    def reschedule_appointment(
        self, company: Company, chat: Chat, assistant: Assistant, settings: CompanySettings, payload: dict
    ) -> Optional[str]:
        if not settings.appointments_enabled:
            return None
        order = self.resolve_order(company, chat, payload, require_appointment=True)
        if order is None:
            return None

        duration = normalize_duration(payload.get("appointment_duration_minutes", payload.get("duration_minutes")))
        if duration is None:
            return None
        tz = company_zone(settings)
        slot = parse_local_slot(payload.get("appointment_date"), payload.get("appointment_time"), duration, tz)
        if slot is None:
            return None

        event = self.order_event(company, order, payload)
        start_local, end_local = slot
        if not is_slot_available(
            self.store, company.id, settings, start_local, end_local, event.id if event is not None else None
        ):
            return None

        metadata = dict(order.order_metadata or {})
        location = clean_text(payload.get("address") or metadata.get("address"), 10_000)
        note = clean_text(payload.get("note"), 2000)
        if location:
            metadata["address"] = location[:255]
        if note:
            order.notes = note

        utc = ZoneInfo("UTC")
        fields = {
            "title": f"Appointment: {str(order.service_name or '')[:120]}",
            "description": order.notes,
            "starts_at": start_local.astimezone(utc),
            "ends_at": end_local.astimezone(utc),
            "timezone": settings.timezone,
            "status": "scheduled",
            "location": location[:255] or None,
        }
        if event is not None:
            for key, value in fields.items():
                setattr(event, key, value)
            event_metadata = dict(event.event_metadata or {})
            event_metadata.update(
                {"order_id": order.id, "source": SOURCE, "rescheduled_at": self.clock().isoformat()}
            )
            event.event_metadata = event_metadata
        else:
            event = CompanyCalendarEvent(
                user_id=company.user_id,
                company_id=company.id,
                company_client_id=order.company_client_id,
                assistant_id=order.assistant_id or assistant.id,
                assistant_service_id=order.assistant_service_id,
                event_metadata={"source": SOURCE, "order_id": order.id, "chat_id": chat.id},
                **fields,
            )
        self.store.save_calendar_event(event)

        metadata["appointment"] = {
            "calendar_event_id": event.id,
            "starts_at": event.starts_at.isoformat(),
            "ends_at": event.ends_at.isoformat(),
            "timezone": event.timezone,
            "duration_minutes": duration,
            "status": "scheduled",
        }
        metadata["assistant_reschedule_action"] = payload
        order.status = "appointments"
        order.completed_at = None
        order.order_metadata = metadata
        self.store.save_order(order)
        return MSG_APPOINTMENT_RESCHEDULED

    # Order resolution

    def order_event(self, company: Company, order: CompanyClientOrder, payload: dict):
        event_id = positive_int(payload.get("calendar_event_id")) or order.linked_event_id
        return self.store.get_event(company.id, event_id) if event_id else None

    def resolve_order(
        self, company: Company, chat: Chat, payload: dict, require_appointment: bool
    ) -> Optional[CompanyClientOrder]:
        """Find the order an update/cancel action targets, from the most to the least explicit reference."""

        def acceptable(order: Optional[CompanyClientOrder]) -> bool:
            return order is not None and (not require_appointment or order_has_appointment(order))

        order = self.store.get_order(company.id, positive_int(payload.get("order_id")))
        if acceptable(order):
            return order

        event_id = positive_int(payload.get("calendar_event_id"))
        event = self.store.get_event(company.id, event_id) if event_id else None
        if event is not None:
            order = self.store.get_order(company.id, event.linked_order_id)
            if acceptable(order):
                return order
            linked = [o for o in self.store.recent_orders(company.id, 200) if o.linked_event_id == event_id]
            candidate = select_best_order(linked, require_appointment)
            if candidate is not None:
                return candidate

        phone = normalize_phone(payload.get("phone"))
        client = self.store.find_client_by_phone(company.id, phone) if phone else None
        if client is not None:
            candidate = select_best_order(self.store.orders_for_client(company.id, client.id, 50), require_appointment)
            if candidate is not None:
                return candidate

        chat_ids: list[int] = []
        for chat_id in (positive_int(payload.get("chat_id")), positive_int(chat.id)):
            if chat_id and chat_id not in chat_ids:
                chat_ids.append(chat_id)
        for chat_id in chat_ids:
            linked = [
                order
                for order in self.store.recent_orders(company.id, 200)
                if metadata_has_chat_link(order.order_metadata, [chat_id])
            ]
            candidate = select_best_order(linked, require_appointment)
            if candidate is not None:
                return candidate

        linked_client = self.linked_client(company, chat)
        if linked_client is not None:
            return select_best_order(
                self.store.orders_for_client(company.id, linked_client.id, 50), require_appointment
            )
        return None
