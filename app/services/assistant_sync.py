"""Pushes an assistant's configuration to the remote Assistants API."""

from typing import Any, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Assistant, AssistantProduct, AssistantService
from app.services.crm.values import collapse_whitespace, format_money
from app.services.llm.base import AssistantsClient

logger = get_logger("assistant_sync")

TONE_LABELS = {
    "concise": "concise and to the point",
    "friendly": "friendly and warm",
    "formal": "formal and professional",
    "custom": "custom",
}


class AssistantSyncError(Exception):
    """Remote assistant could not be created."""


def tone_label(tone: Optional[str]) -> str:
    return TONE_LABELS.get(tone or "", "polite and helpful")


def _enabled(flag: bool) -> str:
    return "enabled" if flag else "disabled"


def _clean(value: Any, limit: int) -> str:
    text = collapse_whitespace(value)
    if not text:
        return "n/a"
    return text if len(text) <= limit else text[:limit] + "..."


def normalize_triggers(raw: Any) -> list[dict]:
    if not isinstance(raw, list):
        return []
    pairs = []
    for row in raw:
        if not isinstance(row, dict):
            continue
        trigger = str(row.get("trigger") or "").strip()
        response = str(row.get("response") or "").strip()
        if trigger and response:
            pairs.append({"trigger": trigger[:300], "response": response[:2000]})
    return pairs


def specialists_summary(metadata: Any, fallback_price: Any, currency: Optional[str]) -> str:
    specialists = metadata.get("specialists") if isinstance(metadata, dict) else None
    if not isinstance(specialists, list) or not specialists:
        return "none"
    currency = (currency or "").strip() or "TJS"
    parts = []
    for specialist in specialists:
        if not isinstance(specialist, dict):
            continue
        price = format_money(specialist["price"] if "price" in specialist else fallback_price)
        parts.append(f"{_clean(specialist.get('name'), 100)} ({price} {currency})")
    return ", ".join(parts) or "none"


def catalog_section(db: Session, assistant: Assistant) -> str:
    services = (
        db.query(AssistantService)
        .filter(AssistantService.assistant_id == assistant.id, AssistantService.is_active.is_(True))
        .order_by(AssistantService.sort_order, AssistantService.id)
        .all()
    )
    products = (
        db.query(AssistantProduct)
        .filter(AssistantProduct.assistant_id == assistant.id, AssistantProduct.is_active.is_(True))
        .order_by(AssistantProduct.sort_order, AssistantProduct.id)
        .all()
    )

    lines = [
        "Company catalog:",
        f"- Assistant ID: {assistant.id}",
        f"- Company ID: {assistant.company_id}",
        "Services:",
    ]
    if not services:
        lines.append("- none")
    for service in services:
        lines.append(
            f"- [Service #{service.id}] {_clean(service.name, 160)} | "
            f"price: {format_money(service.price)} {service.currency} | "
            f"specialists: {specialists_summary(service.service_metadata, service.price, service.currency)} | "
            f"description: {_clean(service.description, 300)} | terms: {_clean(service.terms_conditions, 300)}"
        )

    lines.append("Products:")
    if not products:
        lines.append("- none")
    for product in products:
        stock = "unlimited" if product.is_unlimited_stock else str(max(int(product.stock_quantity or 0), 0))
        metadata = product.product_metadata if isinstance(product.product_metadata, dict) else {}
        link = _clean(metadata.get("product_url"), 300)
        lines.append(
            f"- [Product #{product.id}] {_clean(product.name, 160)} | sku: {_clean(product.sku, 120)} | "
            f"price: {format_money(product.price)} {product.currency} | stock: {stock} | link: {link} | "
            f"description: {_clean(product.description, 300)} | terms: {_clean(product.terms_conditions, 300)}"
        )
    return "\n".join(lines)


def compose_instructions(db: Session, assistant: Assistant) -> str:
    parts = []
    for base in (settings.openai_base_instructions, settings.openai_base_limits):
        if base and base.strip():
            parts.append(base.strip())

    parts.append(
        "\n".join(
            [
                "Assistant context:",
                f"- Assistant ID: {assistant.id}",
                f"- Company ID: {assistant.company_id}",
                f"- Assistant name: {assistant.name}",
            ]
        )
    )
    parts.append(f"Conversation tone: {tone_label(assistant.conversation_tone)}.")

    instructions = (assistant.instructions or "").strip()
    if instructions:
        parts.append(f"Main instructions:\n{instructions}")

    triggers = normalize_triggers((assistant.settings or {}).get("triggers"))
    if triggers:
        lines = ["Trigger-response rules:"]
        lines.extend(f'- Trigger: "{pair["trigger"]}" => Response: "{pair["response"]}"' for pair in triggers)
        parts.append("\n".join(lines))

    parts.append(catalog_section(db, assistant))

    restrictions = (assistant.restrictions or "").strip()
    if restrictions:
        parts.append(f"Restrictions:\n{restrictions}")

    parts.append(
        "\n".join(
            [
                "Tool settings:",
                f"- File search: {_enabled(assistant.enable_file_search)}",
                f"- File analysis: {_enabled(assistant.enable_file_analysis)}",
                f"- Voice mode: {_enabled(assistant.enable_voice)}",
                f"- Web search: {_enabled(assistant.enable_web_search)}",
            ]
        )
    )
    return "\n\n".join(parts)


def build_assistant_payload(db: Session, assistant: Assistant) -> dict:
    payload: dict = {
        "name": assistant.name,
        "model": settings.openai_assistant_model,
        "instructions": compose_instructions(db, assistant),
        "temperature": settings.openai_assistant_temperature,
        "top_p": settings.openai_assistant_top_p,
    }
    tools = []
    if assistant.enable_file_search:
        tools.append({"type": "file_search"})
    if assistant.enable_file_analysis:
        tools.append({"type": "code_interpreter"})
    if tools:
        payload["tools"] = tools
    if assistant.enable_file_search and assistant.openai_vector_store_id:
        payload["tool_resources"] = {"file_search": {"vector_store_ids": [assistant.openai_vector_store_id]}}
    return payload


def sync_assistant(db: Session, client: AssistantsClient, assistant: Assistant) -> str:
    """
    Create or update the remote assistant and return its id.

    A rejected update (stale remote id) falls back to creating a new one.
    Raises AssistantSyncError when creation fails; nothing is persisted then.
    """
    if assistant.enable_file_search and not assistant.openai_vector_store_id:
        name = (assistant.name or "").strip()
        vector_store_id = client.create_vector_store(f"{name} Knowledge Base" if name else "Assistant Knowledge Base")
        if vector_store_id:
            assistant.openai_vector_store_id = vector_store_id
            db.flush()

    payload = build_assistant_payload(db, assistant)

    if assistant.openai_assistant_id:
        if client.update_assistant(assistant.openai_assistant_id, payload):
            return assistant.openai_assistant_id
        logger.warning(
            "Remote assistant update rejected, recreating",
            extra={"context": {"assistant_id": assistant.id, "remote_id": assistant.openai_assistant_id}},
        )

    remote_id = client.create_assistant(payload)
    if not remote_id:
        raise AssistantSyncError(f"Remote assistant creation failed for assistant {assistant.id}")

    assistant.openai_assistant_id = remote_id
    db.flush()
    logger.info("Remote assistant synced", extra={"context": {"assistant_id": assistant.id, "remote_id": remote_id}})
    return remote_id
