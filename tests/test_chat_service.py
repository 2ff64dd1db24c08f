from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from app.services.chat_service import (
    is_chat_open_for_auto_reply,
    message_preview,
    persist_inbound_parts,
    persist_outbound_message,
    remember_thread,
    resolve_unique_message_id,
    thread_id_for,
)
from app.services.channels.base import NormalizedPart

SENT_AT = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
MS = str(int(SENT_AT.timestamp() * 1000))


class TestUniqueMessageId:
    def test_free_base_id(self):
        assert resolve_unique_message_id("mid.1:text", SENT_AT, lambda _: False) == "mid.1:text"

    def test_timestamp_suffix_on_collision(self):
        taken = {"mid.1:text"}
        assert resolve_unique_message_id("mid.1:text", SENT_AT, taken.__contains__) == f"mid.1:text-{MS}"

    def test_attempt_counter(self):
        taken = {"m", f"m-{MS}", f"m-{MS}-2"}
        assert resolve_unique_message_id("m", SENT_AT, taken.__contains__) == f"m-{MS}-3"

    def test_uuid_after_fifty_attempts(self):
        result = resolve_unique_message_id("m", SENT_AT, lambda _: True)
        assert result.startswith("m-")
        assert len(result) == len("m-") + 36

    def test_gives_up_counting_at_fifty(self):
        checked = []

        def exists(candidate):
            checked.append(candidate)
            return True

        resolve_unique_message_id("m", SENT_AT, exists)
        assert checked[-1] == f"m-{MS}-50"
        assert len(checked) == 51


class TestPreview:
    def test_text_preview(self):
        assert message_preview(SimpleNamespace(text="Hello", message_type="text")) == "Hello"

    def test_long_text_is_cut(self):
        preview = message_preview(SimpleNamespace(text="x" * 200, message_type="text"))
        assert preview == "x" * 160 + "..."

    def test_media_label(self):
        assert message_preview(SimpleNamespace(text=None, message_type="voice")) == "[Voice]"
        assert message_preview(SimpleNamespace(text="", message_type="sticker")) == "[Message]"


class TestAutoReplyStatus:
    def test_open_and_pending(self):
        assert is_chat_open_for_auto_reply(SimpleNamespace(status="open", chat_metadata={})) is True
        assert is_chat_open_for_auto_reply(SimpleNamespace(status="pending", chat_metadata=None)) is True

    def test_closed_chat(self):
        assert is_chat_open_for_auto_reply(SimpleNamespace(status="closed", chat_metadata={})) is False

    def test_deactivated_by_operator(self):
        chat = SimpleNamespace(status="open", chat_metadata={"is_active": False})
        assert is_chat_open_for_auto_reply(chat) is False


class TestThreads:
    def test_thread_is_per_assistant(self):
        chat = SimpleNamespace(chat_metadata={"openai_threads": {"5": "thread_a"}})
        assert thread_id_for(chat, 5) == "thread_a"
        assert thread_id_for(chat, 6) == ""

    def test_remember_thread_merges(self):
        db = MagicMock()
        chat = SimpleNamespace(chat_metadata={"source": "telegram_webhook", "openai_threads": {"5": "thread_a"}})

        remember_thread(db, chat, 6, "thread_b")

        assert chat.chat_metadata == {
            "source": "telegram_webhook",
            "openai_threads": {"5": "thread_a", "6": "thread_b"},
        }


class TestPersistence:
    def _chat(self):
        return SimpleNamespace(
            id=11,
            user_id=2,
            company_id=3,
            assistant_id=5,
            unread_count=1,
            last_message_preview=None,
            last_message_at=None,
        )

    def test_inbound_parts_bump_unread(self):
        chat = self._chat()
        parts = [
            NormalizedPart(channel_message_id="m:text", message_type="text", text="Hi", sent_at=SENT_AT),
            NormalizedPart(channel_message_id="m:photo", message_type="image", sent_at=SENT_AT),
        ]
        stored = [
            SimpleNamespace(text="Hi", message_type="text", sent_at=SENT_AT),
            SimpleNamespace(text=None, message_type="image", sent_at=SENT_AT),
        ]

        with patch("app.services.chat_service.message_id_exists", return_value=False), patch(
            "app.services.chat_service.insert_inbound_message", side_effect=stored
        ) as insert:
            created = persist_inbound_parts(MagicMock(), chat, 5, parts)

        assert created == stored
        assert insert.call_args_list[0][0][4] == "m:text"
        assert chat.unread_count == 3
        assert chat.last_message_preview == "[Image]"

    def test_concurrent_duplicate_is_not_counted(self):
        chat = self._chat()
        part = NormalizedPart(channel_message_id="m:text", message_type="text", text="Hi", sent_at=SENT_AT)

        with patch("app.services.chat_service.message_id_exists", return_value=False), patch(
            "app.services.chat_service.insert_inbound_message", return_value=None
        ):
            assert persist_inbound_parts(MagicMock(), chat, 5, [part]) == []
        assert chat.unread_count == 1

    def test_outbound_keeps_unread(self):
        chat = self._chat()
        db = MagicMock()

        message = persist_outbound_message(db, chat, 5, "Thanks!", None)

        db.add.assert_called_once_with(message)
        assert message.direction == "outbound"
        assert message.channel_message_id.startswith("out-")
        assert chat.unread_count == 1
        assert chat.last_message_preview == "Thanks!"
