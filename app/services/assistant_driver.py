"""
Drives one assistant turn for an inbound chat message.

The turn runs on the chat's persistent remote thread for this assistant:
runtime context is appended to the prompt, images go up as vision files
(or as URLs when the upload fails), the run is awaited, and any
<crm_action> blocks in the answer are executed before the text is returned.
"""

from typing import Optional

import httpx
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Assistant, Chat, Company
from app.services.assistant_sync import AssistantSyncError, sync_assistant
from app.services.channels.base import IMAGE, NormalizedPart
from app.services.chat_service import remember_thread, thread_id_for
from app.services.crm.actions import CrmActionExecutor
from app.services.crm.context import augment_prompt_with_runtime_context
from app.services.crm.store import CrmStore
from app.services.llm.base import AssistantsClient, LLMProviderError, ThreadContent
from app.services.storage_service import download_image

logger = get_logger("assistant_driver")

FALLBACK_PROMPT_LIMIT = 220
TURN_ERRORS = (LLMProviderError, AssistantSyncError, httpx.HTTPError, OSError)


def fallback_reply(assistant: Assistant, prompt: str) -> str:
    prompt = (prompt or "").strip()
    if len(prompt) > FALLBACK_PROMPT_LIMIT:
        prompt = prompt[:FALLBACK_PROMPT_LIMIT] + "..."
    return f"[{assistant.name}] Received: {prompt}"


def remote_image_urls(parts: list[NormalizedPart]) -> list[str]:
    urls = []
    for part in parts:
        url = (part.media_url or "").strip()
        if part.message_type == IMAGE and url.startswith(("http://", "https://")):
            urls.append(url)
    return urls


class AssistantDriver:
    def __init__(self, db: Session, client: AssistantsClient, store: Optional[CrmStore] = None):
        self.db = db
        self.client = client
        self.store = store or CrmStore(db)
        self.executor = CrmActionExecutor(self.store)

    def ensure_remote_assistant(self, assistant: Assistant) -> str:
        if not assistant.openai_assistant_id:
            sync_assistant(self.db, self.client, assistant)
        return (assistant.openai_assistant_id or "").strip()

    def ensure_thread(self, chat: Chat, assistant: Assistant) -> str:
        thread_id = thread_id_for(chat, assistant.id)
        if thread_id:
            return thread_id
        thread_id = self.client.create_thread(
            {"chat_id": str(chat.id), "company_id": str(chat.company_id), "assistant_id": str(assistant.id)}
        )
        if thread_id:
            remember_thread(self.db, chat, assistant.id, thread_id)
        return thread_id

    def upload_images(self, parts: list[NormalizedPart], source: str) -> list[str]:
        file_ids: list[str] = []
        for index, url in enumerate(remote_image_urls(parts)):
            path = download_image(url, source, index)
            if path is None:
                continue
            try:
                file_id = self.client.upload_file(str(path), "vision")
            except LLMProviderError as e:
                logger.warning("Vision upload failed", extra={"context": {"url": url[:200], "error": str(e)}})
                continue
            if file_id and file_id not in file_ids:
                file_ids.append(file_id)
        return file_ids

    def send_turn(self, thread_id: str, chat: Chat, assistant: Assistant, prompt: str, parts, source: str) -> str:
        metadata = {"chat_id": str(chat.id), "assistant_id": str(assistant.id)}

        file_ids = self.upload_images(parts, source)
        if file_ids:
            content = ThreadContent(prompt, image_file_ids=file_ids)
            message_id = self.client.send_message(thread_id, content, metadata=metadata)
            if message_id:
                return message_id

        urls = remote_image_urls(parts)
        if urls:
            content = ThreadContent(prompt, image_urls=urls)
            message_id = self.client.send_message(thread_id, content, metadata=metadata)
            if message_id:
                return message_id

        return self.client.send_message(thread_id, ThreadContent(prompt), metadata=metadata)

    def generate_reply(
        self,
        company: Company,
        assistant: Assistant,
        chat: Chat,
        prompt: str,
        parts: list[NormalizedPart],
        source: str,
    ) -> str:
        """Assistant text for this turn; the fallback placeholder whenever the provider fails."""
        context = {"company_id": company.id, "chat_id": chat.id, "assistant_id": assistant.id}
        try:
            remote_id = self.ensure_remote_assistant(assistant)
            if not remote_id:
                return fallback_reply(assistant, prompt)

            runtime_prompt = augment_prompt_with_runtime_context(self.store, company, chat, assistant, prompt)
            thread_id = self.ensure_thread(chat, assistant)
            if not thread_id:
                return fallback_reply(assistant, prompt)

            if not self.send_turn(thread_id, chat, assistant, runtime_prompt, parts, source):
                return fallback_reply(assistant, prompt)

            response = (self.client.run_and_get_response(thread_id, remote_id) or "").strip()
        except TURN_ERRORS as e:
            logger.warning("Assistant turn failed", extra={"context": {**context, "error": str(e)}})
            return fallback_reply(assistant, prompt)

        if not response:
            return fallback_reply(assistant, prompt)

        reply = self.executor.apply_actions(company, chat, assistant, response)
        return reply.strip() or fallback_reply(assistant, prompt)
