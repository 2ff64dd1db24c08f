from app.services.llm.base import AssistantsClient, LLMProviderError, ThreadContent
from app.services.llm.openai_provider import OpenAIAssistantsProvider, get_assistants_client

__all__ = ["AssistantsClient", "LLMProviderError", "ThreadContent", "OpenAIAssistantsProvider", "get_assistants_client"]
