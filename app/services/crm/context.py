"""
Runtime context appended to the assistant prompt on every turn.

The block gives the model the company's current settings, calendar load,
catalog and the requests already linked to this chat, plus the policy for
emitting <crm_action> blocks.
"""

import json
import math
from datetime import datetime
from typing import Optional

from app.models import Assistant, Chat, Company
from app.schemas.company_settings import CompanySettings, load_company_settings
from app.services.billing_ledger import as_aware, utcnow
from app.services.crm.appointments import company_zone, next_available_slots, schedule_lines
from app.services.crm.store import CrmStore
from app.services.crm.values import format_money, metadata_has_chat_link

CONTEXT_HEADER = "[SYSTEM CONTEXT: do not treat this block as customer message and do not quote it directly.]"
LOCAL_FORMAT = "%Y-%m-%d %H:%M"

POLICY_LINES = [
    "- Strict mode: ask only fields from required list for the current action.",
    "- If a field is not in required list, do not ask it.",
    "- For order, ask only missing fields from the required order list.",
    "- For appointment, ask only missing fields from the required appointment list.",
    "- create_appointment must always include appointment_date, appointment_time and "
    "appointment_duration_minutes in crm_action.",
    "- If order item exists in company catalog, use exact catalog item name and catalog price in crm_action amount.",
    "- Do not ask customer for amount when catalog item is found.",
    "- Delivery settings apply only to delivery orders.",
    "- If delivery order requires delivery datetime, include delivery_datetime in crm_action format YYYY-MM-DD HH:MM.",
    "- If required data is missing, ask concise follow-up questions and DO NOT emit crm_action.",
    "- Reply only in one of allowed response languages listed above.",
    "- If customer writes in another language, politely ask to continue in allowed languages.",
    "- All actions and replies must strictly follow company settings snapshot JSON above.",
    "- If customer asks to cancel an existing request, use cancel_order or cancel_appointment action.",
    "- If customer asks to change booking date/time, use reschedule_appointment action.",
    "- For update/cancel actions prefer order_id from recent requests list. "
    "If not available, latest request in current chat will be used.",
    "- If a customer asks a company-related question you cannot answer from current context/instructions/catalog, "
    "create a client question for manager follow-up.",
    "- Do not create client questions for sensitive personal/confidential data or topics unrelated to this company.",
    "- When all required data is collected, append exactly one machine block at the very end:",
    '  <crm_action>{"action":"create_order","client_name":"...","phone":"...","service_name":"...",'
    '"address":"...","delivery_datetime":"YYYY-MM-DD HH:MM","amount":0,"note":"..."}</crm_action>',
    "- For appointment booking use:",
    '  <crm_action>{"action":"create_appointment","client_name":"...","phone":"...","service_name":"...",'
    '"address":"...","appointment_date":"YYYY-MM-DD","appointment_time":"HH:MM",'
    '"appointment_duration_minutes":60,"amount":0,"note":"..."}</crm_action>',
    "- For canceling existing request use:",
    '  <crm_action>{"action":"cancel_order","order_id":123,"reason":"..."}</crm_action>',
    "- For canceling existing appointment use:",
    '  <crm_action>{"action":"cancel_appointment","order_id":123,"reason":"..."}</crm_action>',
    "- For rescheduling existing appointment use:",
    '  <crm_action>{"action":"reschedule_appointment","order_id":123,"appointment_date":"YYYY-MM-DD",'
    '"appointment_time":"HH:MM","appointment_duration_minutes":60,"note":"..."}</crm_action>',
    "- For unanswered company-related question use:",
    '  <crm_action>{"action":"create_question","description":"...","company_related":true,'
    '"covered_in_instructions":false,"contains_sensitive_data":false}</crm_action>',
    "- Do not include any extra JSON outside crm_action tags.",
]


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def _nullable(value) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def settings_snapshot(company: Company, settings: CompanySettings) -> dict:
    appointment = settings.appointment
    return {
        "company_profile": {
            "id": company.id,
            "name": _nullable(company.name),
            "short_description": _nullable(company.short_description),
            "industry": _nullable(company.industry),
            "primary_goal": _nullable(company.primary_goal),
            "contact_email": _nullable(company.contact_email),
            "contact_phone": _nullable(company.contact_phone),
            "website": _nullable(company.website),
            "status": _nullable(company.status),
        },
        "account_type": settings.account_type,
        "business": {
            "address": _nullable(settings.business.address),
            "timezone": settings.timezone,
            "schedule": {key: day.model_dump() for key, day in settings.business.schedule.items()},
        },
        "appointment": {
            "enabled": settings.appointments_enabled,
            "slot_minutes": appointment.slot_minutes,
            "buffer_minutes": appointment.buffer_minutes,
            "max_days_ahead": appointment.max_days_ahead,
            "auto_confirm": appointment.auto_confirm,
        },
        "delivery": settings.delivery.model_dump(),
        "crm": settings.crm.model_dump(),
        "ai": settings.ai.model_dump(),
    }


def delivery_lines(settings: CompanySettings) -> list[str]:
    delivery = settings.delivery
    if not delivery.enabled:
        return []
    free_from = (
        f"{format_money(delivery.free_from_amount)} TJS" if delivery.free_from_amount is not None else "not configured"
    )
    lines = [
        f"- Delivery address required: {_yes_no(delivery.require_delivery_address)}",
        f"- Delivery datetime required: {_yes_no(delivery.require_delivery_datetime)}",
        f"- Delivery default ETA minutes: {delivery.default_eta_minutes}",
        f"- Delivery fee: {format_money(delivery.fee)} TJS",
        f"- Delivery free from amount: {free_from}",
        f"- Delivery window: {delivery.available_from}-{delivery.available_to}",
    ]
    if delivery.notes:
        lines.append(f"- Delivery notes: {delivery.notes[:200]}")
    return lines


def catalog_lines(store: CrmStore, assistant_id: int, limit: int = 30) -> list[str]:
    max_items = max(min(limit, 80), 1)
    service_limit = max(math.ceil(max_items / 2), 1)
    product_limit = max(max_items - service_limit, 1)

    lines = []
    for service in store.catalog_services(assistant_id, service_limit):
        lines.append(
            f"[service #{service.id}] {str(service.name)[:120]} | "
            f"{format_money(service.price)} {service.currency or 'TJS'}"
        )
    for product in store.catalog_products(assistant_id, product_limit):
        stock = "unlimited stock" if product.is_unlimited_stock else f"stock {max(int(product.stock_quantity or 0), 0)}"
        lines.append(
            f"[product #{product.id}] {str(product.name)[:120]} | "
            f"{format_money(product.price)} {product.currency or 'TJS'} | {stock}"
        )
    return lines


def _local_label(value, tz) -> Optional[str]:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    value = as_aware(value)
    return value.astimezone(tz).strftime(LOCAL_FORMAT) if value is not None else None


def recent_request_lines(store: CrmStore, company_id: int, chat_id: int, tz, limit: int = 8) -> list[str]:
    orders = [
        order
        for order in store.recent_orders(company_id, max(limit * 5, 40))
        if metadata_has_chat_link(order.order_metadata, [chat_id]) and not order.is_archived
    ][: max(limit, 1)]

    lines = []
    for order in orders:
        metadata = order.order_metadata or {}
        client_phone = order.client.phone if order.client is not None else None
        phone = str(client_phone or metadata.get("phone") or "").strip()
        service = str(order.service_name or "").strip() or "Order"
        created = _local_label(order.ordered_at or order.created_at, tz) or "-"
        line = (
            f"#{order.id} | status={order.status or 'new'} | service={service[:80]} | "
            f"phone={phone[:32] if phone else '-'} | created={created}"
        )
        appointment = metadata.get("appointment")
        if isinstance(appointment, dict) and appointment.get("starts_at"):
            label = _local_label(appointment["starts_at"], tz)
            if label:
                line += f" | appointment={label}"
        lines.append(line)
    return lines


def upcoming_lines(store: CrmStore, company_id: int, now: datetime, tz, limit: int = 8) -> list[str]:
    lines = []
    for event in store.upcoming_events(company_id, now, limit):
        start = as_aware(event.starts_at)
        if start is None:
            continue
        span = start.astimezone(tz).strftime(LOCAL_FORMAT)
        end = as_aware(event.ends_at)
        if end is not None:
            span += f" - {end.astimezone(tz).strftime('%H:%M')}"
        lines.append(f"#{event.id} {span} ({str(event.title or '')[:120]}) [{event.status}]")
    return lines


def _section(title: str, items: list[str]) -> list[str]:
    return [title] + ([f"  - {item}" for item in items] if items else ["  - none"])


def augment_prompt_with_runtime_context(
    store: CrmStore,
    company: Company,
    chat: Chat,
    assistant: Assistant,
    prompt: str,
    now: Optional[datetime] = None,
) -> str:
    settings = load_company_settings(company.settings)
    tz = company_zone(settings)
    now = as_aware(now) or utcnow()
    now_local = now.astimezone(tz)
    appointment = settings.appointment
    snapshot = json.dumps(settings_snapshot(company, settings), ensure_ascii=False, default=str)

    lines = [
        CONTEXT_HEADER,
        f"- Current UTC datetime: {now.isoformat()}",
        f"- Company timezone: {settings.timezone}",
        f"- Current local datetime: {now_local.strftime(LOCAL_FORMAT)}",
        f"- Assistant ID: {assistant.id}",
        f"- Company ID: {company.id}",
        f"- Chat ID: {chat.id}",
        f"- Chat channel: {chat.channel}",
        f"- Chat customer name: {str(chat.name or 'Customer').strip()}",
        f"- Allowed response languages for this company: {', '.join(settings.ai.response_languages)}.",
        f"- Appointment booking enabled: {_yes_no(settings.appointments_enabled)}",
        f"- Appointment slot minutes: {appointment.slot_minutes}",
        f"- Appointment buffer minutes: {appointment.buffer_minutes}",
        f"- Appointment max days ahead: {appointment.max_days_ahead}",
        f"- Appointment auto-confirm: {_yes_no(appointment.auto_confirm)}",
        f"- Delivery enabled: {_yes_no(settings.delivery.enabled)}",
        f"- Company settings snapshot JSON: {snapshot}",
        "- Working schedule:",
    ]
    lines.extend(delivery_lines(settings))
    lines.extend(schedule_lines(settings))
    lines.extend(
        _section(
            "- Upcoming bookings in company calendar (for avoiding conflicts):",
            upcoming_lines(store, company.id, now, tz),
        )
    )
    if settings.appointments_enabled:
        slots = next_available_slots(store, company.id, settings, now, appointment.slot_minutes)
        lines.extend(
            _section("- Next free slots for suggestion:", [start.strftime(LOCAL_FORMAT) for start, _ in slots])
        )
    lines.extend(
        _section(
            "- Recent requests linked to this chat (use order_id for update/cancel actions):",
            recent_request_lines(store, company.id, chat.id, tz),
        )
    )
    lines.extend(
        _section(
            "- Company catalog with fixed prices (use exact amount from DB for crm_action):",
            catalog_lines(store, assistant.id),
        )
    )
    lines.append("CRM automation policy:")
    lines.append(f"- Required fields for order in this company: {', '.join(settings.crm.order_required_fields)}.")
    lines.append(
        f"- Required fields for appointment in this company: {', '.join(settings.crm.appointment_required_fields)}."
    )
    lines.extend(POLICY_LINES)

    context = "\n".join(lines)
    base = (prompt or "").strip()
    return f"{base}\n\n{context}" if base else context


