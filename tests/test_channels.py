from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

from app.models import AssistantChannel
from app.services.channels.base import (
    ChannelIdentity,
    NormalizedPart,
    fallback_message_id,
    merge_metadata,
    resolve_event_timestamp,
    text_part_type,
)
from app.services.channels.instagram import InstagramNormalizer, summarize_payload
from app.services.channels.telegram import TelegramNormalizer
from app.services.channels.widget import WidgetNormalizer, widget_message_id


def identity(channel: str, credentials=None, channel_id=4):
    assistant_channel = AssistantChannel(
        id=channel_id, channel=channel, company_id=3, assistant_id=5, credentials=credentials or {}, is_active=True
    )
    return ChannelIdentity(
        assistant_channel=assistant_channel,
        assistant=SimpleNamespace(id=5, is_active=True),
        company=SimpleNamespace(id=3, user_id=2),
        user=SimpleNamespace(id=2, is_active=True),
    )


class TestTextClassification:
    def test_single_url_is_link(self):
        assert text_part_type("https://example.com/menu") == ("link", "https://example.com/menu")

    def test_url_inside_sentence_stays_text(self):
        assert text_part_type("see https://example.com/menu please") == ("text", "https://example.com/menu")

    def test_plain_text(self):
        assert text_part_type("hello") == ("text", None)

    def test_non_http_scheme(self):
        assert text_part_type("ftp://example.com")[0] == "text"


class TestHelpers:
    def test_seconds_and_milliseconds(self):
        expected = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert resolve_event_timestamp(1741608000) == expected
        assert resolve_event_timestamp(1741608000000) == expected

    def test_fallback_id_is_stable(self):
        first = fallback_message_id("ig", {"b": 1, "a": 2})
        assert first == fallback_message_id("ig", {"a": 2, "b": 1})
        assert first.startswith("ig-")
        assert len(first) == 43

    def test_merge_metadata_is_recursive(self):
        merged = merge_metadata({"telegram": {"chat_id": "1", "bot_id": "9"}, "x": 1}, {"telegram": {"chat_id": "2"}})
        assert merged == {"telegram": {"chat_id": "2", "bot_id": "9"}, "x": 1}

    def test_prompt_lines(self):
        parts = [
            NormalizedPart(channel_message_id="1", message_type="text", text="Hi"),
            NormalizedPart(channel_message_id="2", message_type="image", media_url="https://cdn/x.jpg"),
            NormalizedPart(channel_message_id="3", message_type="voice", media_url="https://cdn/v.ogg"),
        ]
        prompt = TelegramNormalizer(4).build_prompt(parts)
        assert prompt.splitlines() == [
            "Incoming customer message from Telegram:",
            "- Text: Hi",
            "- Image URL: https://cdn/x.jpg",
            "- Voice/audio URL: https://cdn/v.ogg",
            "Reply in the same language as customer, concise and helpful.",
        ]


class TestTelegramNormalizer:
    def update(self, **message):
        body = {"message_id": 77, "date": 1741608000, "chat": {"id": 555, "type": "private"}}
        body["from"] = {"id": 555, "is_bot": False, "first_name": "Ali", "last_name": "Karimov"}
        body.update(message)
        return {"update_id": 1000, "message": body}

    def test_bot_messages_are_echoes(self):
        update = self.update()
        update["message"]["from"]["is_bot"] = True
        assert TelegramNormalizer(4).is_self_event(update) is True

    def test_text_and_photo_parts(self):
        client = MagicMock()
        client.get_file_url.return_value = "https://api.telegram.org/file/botT/photo.jpg"
        normalizer = TelegramNormalizer(4, client=client)
        update = self.update(caption="Like this?", photo=[{"file_id": "small"}, {"file_id": "large"}])

        event = normalizer.build_event(identity("telegram", {"bot_token": "T"}), update)

        assert event.channel_chat_id == "555"
        assert event.display_name == "Ali Karimov"
        assert [p.channel_message_id for p in event.parts] == ["77:text", "77:photo"]
        assert event.parts[1].message_type == "image"
        client.get_file_url.assert_called_once_with("large")
        assert event.chat_metadata["source"] == "telegram_webhook"

    def test_voice_part(self):
        client = MagicMock()
        client.get_file_url.return_value = "https://files/voice.oga"
        event = TelegramNormalizer(4, client=client).build_event(
            identity("telegram"), self.update(voice={"file_id": "v1", "mime_type": "audio/ogg"})
        )
        assert event.parts[0].message_type == "voice"
        assert event.parts[0].media_mime_type == "audio/ogg"
        assert event.contains_voice is True

    def test_content_less_update_is_event_only(self):
        event = TelegramNormalizer(4, client=MagicMock()).build_event(identity("telegram"), self.update())
        assert len(event.parts) == 1
        assert event.parts[0].is_event is True
        assert event.has_replyable_content is False

    def test_profile_is_stale_after_refresh_window(self):
        now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
        fresh = {"telegram": {"customer_profile": {"resolved_at": "2025-03-10T11:00:00+00:00"}}}
        stale = {"telegram": {"customer_profile": {"resolved_at": "2025-03-08T11:00:00+00:00"}}}
        assert TelegramNormalizer.profile_is_stale(fresh, now) is False
        assert TelegramNormalizer.profile_is_stale(stale, now) is True
        assert TelegramNormalizer.profile_is_stale({}, now) is True


class TestInstagramNormalizer:
    def event(self, message):
        return {
            "sender": {"id": "111"},
            "recipient": {"id": "999"},
            "timestamp": 1741608000000,
            "message": message,
        }

    def test_echo_is_ignored(self):
        assert InstagramNormalizer().is_self_event(self.event({"mid": "m1", "is_echo": True})) is True

    def test_text_and_attachments(self):
        payload = self.event(
            {
                "mid": "m1",
                "text": "https://shop.example/item",
                "attachments": [
                    {"type": "image", "payload": {"url": "https://cdn/img.jpg"}},
                    {"type": "sticker_pack", "payload": {"url": "https://cdn/file"}},
                    {"type": "share", "payload": {"url": "https://post"}},
                ],
            }
        )

        event = InstagramNormalizer().build_event(identity("instagram", {"instagram_user_id": "999"}), payload)

        assert event.channel_chat_id == "999:111"
        assert event.reply_to == "111"
        types = [(p.channel_message_id, p.message_type) for p in event.parts]
        assert types == [
            ("m1:text", "link"),
            ("m1:attachment-0", "image"),
            ("m1:attachment-1", "file"),
            ("m1:attachment-2", "link"),
        ]
        assert event.parts[3].link_url == "https://post"

    def test_reaction_summary(self):
        payload = {"sender": {"id": "111"}, "recipient": {"id": "999"}, "reaction": {"reaction": "love", "emoji": "x"}}
        event = InstagramNormalizer().build_event(identity("instagram"), payload)
        assert event.parts[0].text == "Reaction: love"
        assert event.parts[0].is_event is True

    def test_unknown_event_yields_no_parts(self):
        payload = {"sender": {"id": "111"}, "recipient": {"id": "999"}, "delivery": {"mids": ["m1"]}}
        assert InstagramNormalizer().build_event(identity("instagram"), payload).parts == []
        assert summarize_payload({"delivery": {}}) is None

    def test_bind_recipient_stores_receiver(self):
        channel = AssistantChannel(id=4, channel="instagram", credentials={"access_token": "tok"})
        InstagramNormalizer.bind_recipient(MagicMock(), channel, "999")
        assert channel.credentials == {"access_token": "tok", "receiver_id": "999", "instagram_user_id": "999"}
        assert channel.external_account_id == "999"

    def test_client_requires_token(self):
        assert InstagramNormalizer().client_for(identity("instagram", {"receiver_id": "999"})) is None


class TestWidgetNormalizer:
    def test_single_text_part_keyed_by_client_id(self):
        payload = {
            "session_id": "sess-1",
            "text": "Do you work on Sunday?",
            "visitor_name": "Madina",
            "page_url": "https://salon.example/prices",
            "client_message_id": "c-42",
        }

        event = WidgetNormalizer("key").build_event(identity("widget", {"widget_key": "key"}), payload)

        assert event.channel_chat_id == "sess-1"
        assert event.display_name == "Madina"
        assert [p.channel_message_id for p in event.parts] == ["widget-c-42"]
        assert event.chat_metadata["widget"]["visitor"]["page_url"] == "https://salon.example/prices"

    def test_blank_text_is_dropped(self):
        assert WidgetNormalizer("key").build_event(identity("widget"), {"session_id": "s", "text": "  "}) is None

    def test_replies_inline(self):
        normalizer = WidgetNormalizer("key")
        assert normalizer.replies_inline is True
        assert normalizer.client_for(identity("widget")) is None

    def test_message_id_without_client_id(self):
        assert widget_message_id({"session_id": "s", "text": "hi"}).startswith("widget-")
