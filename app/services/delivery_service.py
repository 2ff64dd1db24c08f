from typing import Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Assistant, Chat, ChatMessage
from app.services.channels.base import TEXT, VOICE, ChannelApiError, ChannelClient
from app.services.chat_service import persist_outbound_message
from app.services.llm.base import AssistantsClient, LLMProviderError
from app.services.result import UPSTREAM, Result
from app.services.storage_service import assistant_audio_path, build_signed_media_url, resolve_media_path

logger = get_logger("delivery_service")


def synthesize_speech(llm_client: AssistantsClient, text: str) -> Result[str]:
    """Render the reply as audio in media storage and return its public URL."""
    relative_path = assistant_audio_path(settings.openai_tts_format.strip() or "mp3")
    try:
        llm_client.create_speech(text, str(resolve_media_path(relative_path)))
    except (LLMProviderError, httpx.HTTPError, OSError) as e:
        return Result.failure(f"Speech synthesis failed: {e}", UPSTREAM)

    url = build_signed_media_url(relative_path)
    if not url:
        return Result.failure("Media URLs are not configured", UPSTREAM)
    return Result.success(url)


def send_reply(
    channel_client: ChannelClient,
    recipient: str,
    text: str,
    as_voice: bool,
    llm_client: Optional[AssistantsClient] = None,
) -> tuple[Optional[str], str, Optional[str]]:
    """
    Send the reply and return (provider message id, message type, media url).

    Voice is attempted first when requested; any voice failure falls back to text.
    A text send failure yields a None message id.
    """
    if as_voice and llm_client is not None:
        speech = synthesize_speech(llm_client, text)
        if speech.ok:
            try:
                return channel_client.send_media(recipient, "audio", speech.value), VOICE, speech.value
            except ChannelApiError as e:
                logger.warning("Voice reply rejected, sending text", extra={"context": {"error": str(e)}})
        else:
            logger.warning("Voice reply unavailable, sending text", extra={"context": {"error": speech.error}})

    try:
        return channel_client.send_text(recipient, text), TEXT, None
    except ChannelApiError as e:
        logger.warning("Text reply rejected", extra={"context": {"recipient": recipient, "error": str(e)}})
        return None, TEXT, None


def deliver_reply(
    db: Session,
    chat: Chat,
    assistant: Assistant,
    text: str,
    channel_client: Optional[ChannelClient],
    recipient: str,
    as_voice: bool = False,
    llm_client: Optional[AssistantsClient] = None,
) -> Optional[ChatMessage]:
    """
    Deliver through the origin channel and store the outbound message.

    Without a channel client (web widget) the reply is stored only and the
    widget picks it up from the response or by polling.
    """
    message_id: Optional[str] = None
    message_type, media_url = TEXT, None

    if channel_client is not None:
        message_id, message_type, media_url = send_reply(channel_client, recipient, text, as_voice, llm_client)
        if message_id is None:
            return None

    message = persist_outbound_message(db, chat, assistant.id, text, message_id, message_type, media_url)
    logger.info(
        "Reply delivered",
        extra={"context": {"chat_id": chat.id, "assistant_id": assistant.id, "message_type": message_type}},
    )
    return message
