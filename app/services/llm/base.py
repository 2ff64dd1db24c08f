from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


class LLMProviderError(Exception):
    """Provider answered with a non-success status or an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ThreadContent:
    """One user turn: prompt text plus optional uploaded image files or image URLs."""

    text: str
    image_file_ids: List[str] = field(default_factory=list)
    image_urls: List[str] = field(default_factory=list)

    def as_blocks(self, detail: str = "auto") -> list[dict]:
        blocks: list[dict] = [{"type": "text", "text": self.text}]
        for file_id in self.image_file_ids:
            blocks.append({"type": "image_file", "image_file": {"file_id": file_id, "detail": detail}})
        for url in self.image_urls:
            blocks.append({"type": "image_url", "image_url": {"url": url, "detail": detail}})
        return blocks


class AssistantsClient(ABC):
    """Thread-based assistant API used by the conversation driver."""

    @abstractmethod
    def create_thread(self, metadata: Optional[dict] = None) -> str:
        pass

    @abstractmethod
    def send_message(
        self, thread_id: str, content: ThreadContent, role: str = "user", metadata: Optional[dict] = None
    ) -> str:
        pass

    @abstractmethod
    def run_and_get_response(self, thread_id: str, assistant_remote_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def upload_file(self, path: str, purpose: str) -> str:
        pass

    @abstractmethod
    def create_speech(self, text: str, output_path: str) -> str:
        """Synthesize speech into output_path and return it."""
        pass

    @abstractmethod
    def create_assistant(self, payload: dict) -> str:
        pass

    @abstractmethod
    def update_assistant(self, assistant_remote_id: str, payload: dict) -> bool:
        pass

    @abstractmethod
    def create_vector_store(self, name: str) -> Optional[str]:
        pass
