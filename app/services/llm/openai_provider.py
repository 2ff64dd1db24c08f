import time
from pathlib import Path
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.llm.base import AssistantsClient, LLMProviderError, ThreadContent

logger = get_logger("llm.openai")

TERMINAL_RUN_STATES = {"completed", "failed", "cancelled", "expired", "incomplete"}


def json_object(response: httpx.Response) -> dict:
    """Decoded JSON object of a 200 response; gateways sometimes answer 200 with HTML."""
    try:
        data = response.json()
    except ValueError as e:
        logger.error(f"OpenAI returned a non-JSON body: {response.text[:200]}")
        raise LLMProviderError(f"OpenAI returned a non-JSON body: {e}", response.status_code) from e
    if not isinstance(data, dict):
        raise LLMProviderError("OpenAI returned an unexpected JSON body", response.status_code)
    return data


class OpenAIAssistantsProvider(AssistantsClient):
    """OpenAI Assistants v2 API over httpx."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        poll_seconds: Optional[float] = None,
        run_timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.timeout = timeout_seconds if timeout_seconds is not None else settings.openai_timeout_seconds
        self.poll_seconds = poll_seconds if poll_seconds is not None else settings.openai_run_poll_seconds
        self.run_timeout_seconds = (
            run_timeout_seconds if run_timeout_seconds is not None else settings.openai_run_timeout_seconds
        )

    def _headers(self, json_body: bool = True) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": settings.openai_beta_header,
        }
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _request(self, method: str, path: str, payload: Optional[dict] = None, params: Optional[dict] = None) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        with httpx.Client(timeout=self.timeout) as client:
            response = client.request(method, url, headers=self._headers(), json=payload, params=params)

        logger.debug(f"OpenAI {method} {path}: status={response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:500]}")
            raise LLMProviderError(
                f"OpenAI API error: {response.status_code} - {response.text[:500]}", response.status_code
            )
        return json_object(response)

    def create_thread(self, metadata: Optional[dict] = None) -> str:
        data = self._request("POST", "/threads", {"metadata": metadata or {}})
        return str(data.get("id") or "")

    def send_message(
        self, thread_id: str, content: ThreadContent, role: str = "user", metadata: Optional[dict] = None
    ) -> str:
        payload = {"role": role, "content": content.as_blocks(), "metadata": metadata or {}}
        data = self._request("POST", f"/threads/{thread_id}/messages", payload)
        return str(data.get("id") or "")

    def run_and_get_response(self, thread_id: str, assistant_remote_id: str) -> Optional[str]:
        """Start a run, poll it to a terminal state and return the newest assistant text."""
        run = self._request("POST", f"/threads/{thread_id}/runs", {"assistant_id": assistant_remote_id})
        run_id = run.get("id")
        status = run.get("status")
        deadline = time.monotonic() + self.run_timeout_seconds

        while status not in TERMINAL_RUN_STATES:
            if time.monotonic() >= deadline:
                logger.warning(
                    "OpenAI run timed out",
                    extra={"context": {"thread_id": thread_id, "run_id": run_id, "status": status}},
                )
                return None
            time.sleep(self.poll_seconds)
            status = self._request("GET", f"/threads/{thread_id}/runs/{run_id}").get("status")

        if status != "completed":
            logger.warning(
                "OpenAI run finished without completion",
                extra={"context": {"thread_id": thread_id, "run_id": run_id, "status": status}},
            )
            return None

        messages = self._request(
            "GET", f"/threads/{thread_id}/messages", params={"order": "desc", "limit": 20, "run_id": run_id}
        )
        for message in messages.get("data") or []:
            if message.get("role") != "assistant":
                continue
            texts = [
                block.get("text", {}).get("value", "")
                for block in message.get("content") or []
                if block.get("type") == "text"
            ]
            text = "\n".join(t for t in texts if t).strip()
            if text:
                return text
        return None

    def upload_file(self, path: str, purpose: str) -> str:
        file_path = Path(path)
        with file_path.open("rb") as handle, httpx.Client(timeout=self.timeout) as client:
            response = client.post(
                f"{self.base_url}/files",
                headers=self._headers(json_body=False),
                data={"purpose": purpose},
                files={"file": (file_path.name, handle)},
            )
        if response.status_code != 200:
            logger.error(f"OpenAI file upload error: {response.text[:500]}")
            raise LLMProviderError(f"OpenAI file upload error: {response.status_code}", response.status_code)
        return str(json_object(response).get("id") or "")

    def create_speech(self, text: str, output_path: str) -> str:
        payload = {
            "model": settings.openai_tts_model,
            "voice": settings.openai_tts_voice,
            "input": text,
            "response_format": settings.openai_tts_format,
            "speed": settings.openai_tts_speed,
        }
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(f"{self.base_url}/audio/speech", headers=self._headers(), json=payload)
        if response.status_code != 200 or not response.content:
            logger.error(f"OpenAI speech error: {response.text[:500]}")
            raise LLMProviderError(f"OpenAI speech error: {response.status_code}", response.status_code)

        target = Path(output_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(response.content)
        return str(target)

    def create_assistant(self, payload: dict) -> str:
        return str(self._request("POST", "/assistants", payload).get("id") or "")

    def update_assistant(self, assistant_remote_id: str, payload: dict) -> bool:
        try:
            data = self._request("POST", f"/assistants/{assistant_remote_id}", payload)
        except LLMProviderError as e:
            if e.status_code == 404:
                return False
            raise
        return bool(data.get("id"))

    def create_vector_store(self, name: str) -> Optional[str]:
        data = self._request("POST", "/vector_stores", {"name": name})
        return data.get("id") or None


def get_assistants_client() -> Optional[AssistantsClient]:
    """Configured provider, or None when no API key is set."""
    api_key = (settings.openai_api_key or "").strip()
    if not api_key:
        return None
    return OpenAIAssistantsProvider(api_key=api_key)
