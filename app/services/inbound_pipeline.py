"""
Inbound message pipeline shared by every channel webhook.

normalize -> resolve chat -> persist parts -> count usage -> gate -> reply.
Inbound messages are always stored before any reply is attempted; a closed
gate leaves them stored without calling the model.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger, log_context
from app.models import Chat, ChatMessage, CompanySubscription
from app.services.assistant_driver import AssistantDriver
from app.services.channels.base import ChannelClient, ChannelNormalizer, InboundEvent
from app.services.chat_service import is_chat_open_for_auto_reply, persist_inbound_parts, resolve_chat
from app.services.delivery_service import deliver_reply
from app.services.llm import AssistantsClient, get_assistants_client
from app.services.subscription_service import (
    get_subscription,
    has_chat_quota,
    increment_chat_usage,
    sync_assistant_access,
)

logger = get_logger("inbound_pipeline")


@dataclass
class InboundOutcome:
    event: InboundEvent
    chat: Chat
    messages: list[ChatMessage] = field(default_factory=list)
    reply: Optional[ChatMessage] = None
    skipped: Optional[str] = None


def reply_gate(
    normalizer: ChannelNormalizer,
    event: InboundEvent,
    chat: Chat,
    subscription: Optional[CompanySubscription],
    counted: Optional[int],
    llm_client: Optional[AssistantsClient],
    channel_client: Optional[ChannelClient],
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Reason the turn must not be answered, or None when every condition holds."""
    identity = event.identity
    if not normalizer.auto_reply_enabled():
        return "auto_reply_disabled"
    if not event.has_replyable_content:
        return "no_replyable_content"
    if not identity.user.is_active:
        return "user_inactive"
    if not identity.assistant_channel.is_active:
        return "channel_inactive"
    if not has_chat_quota(subscription, counted, now=now):
        return "subscription_inactive_or_quota_exhausted"
    if identity.assistant is None or not identity.assistant.is_active:
        return "assistant_inactive"
    if not is_chat_open_for_auto_reply(chat):
        return "chat_closed"
    if llm_client is None:
        return "llm_not_configured"
    if channel_client is None and not normalizer.replies_inline:
        return "channel_client_missing"
    return None


def process_inbound(
    db: Session,
    normalizer: ChannelNormalizer,
    payload: dict,
    llm_client: Optional[AssistantsClient] = None,
    now: Optional[datetime] = None,
) -> Optional[InboundOutcome]:
    """Run one webhook event through the pipeline; None when there is nothing to store."""
    event = normalizer.normalize(db, payload)
    if event is None or not event.parts:
        return None

    identity = event.identity
    assistant_id = identity.assistant.id if identity.assistant is not None else None
    with log_context(company_id=identity.company.id, assistant_id=assistant_id, channel=normalizer.channel):
        return _run_turn(db, normalizer, event, llm_client, now)


def _run_turn(
    db: Session,
    normalizer: ChannelNormalizer,
    event: InboundEvent,
    llm_client: Optional[AssistantsClient],
    now: Optional[datetime],
) -> InboundOutcome:
    identity = event.identity
    company = identity.company
    assistant = identity.assistant

    chat = resolve_chat(db, normalizer, event)
    with log_context(chat_id=chat.id):
        created = persist_inbound_parts(db, chat, assistant.id if assistant is not None else None, event.parts)
        outcome = InboundOutcome(event=event, chat=chat, messages=created)
        if not created:
            outcome.skipped = "duplicate"
            return outcome

        sync_assistant_access(db, company, now)
        if assistant is not None:
            # Entitlement sync runs as a bulk UPDATE; reload the flag.
            db.refresh(assistant)

        counted = increment_chat_usage(db, company, 1, now) if event.has_replyable_content else None
        subscription = get_subscription(db, company)

        if llm_client is None:
            llm_client = get_assistants_client()
        channel_client = normalizer.client_for(identity)

        reason = reply_gate(normalizer, event, chat, subscription, counted, llm_client, channel_client, now)
        if reason is not None:
            outcome.skipped = reason
            logger.info("Auto-reply skipped", extra={"context": {"reason": reason}})
            return outcome

        driver = AssistantDriver(db, llm_client)
        prompt = normalizer.build_prompt(event.parts)
        reply_text = driver.generate_reply(company, assistant, chat, prompt, event.parts, normalizer.channel)

        as_voice = normalizer.voice_reply_enabled() and event.contains_voice
        outcome.reply = deliver_reply(
            db,
            chat,
            assistant,
            reply_text,
            channel_client,
            event.reply_to,
            as_voice=as_voice,
            llm_client=llm_client,
        )
        if outcome.reply is None:
            outcome.skipped = "delivery_failed"
        return outcome
