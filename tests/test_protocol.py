"""Tests for the wire protocol: parsing and payload builders."""

import json

import pytest


class TestParseHostEvent:
    def test_valid_event(self):
        from tavern_bridge.protocol import parse_host_event

        event = parse_host_event(
            json.dumps(
                {"type": "stream_chunk", "chatId": 5, "botId": 111, "text": "Hi"}
            )
        )

        assert event.type == "stream_chunk"
        assert event.chat_id == 5
        assert event.bot_id == "111"
        assert event.text == "Hi"
        assert event.is_known

    @pytest.mark.parametrize("raw", ["", "{oops", "null", '"text"', "[]"])
    def test_unusable_frames(self, raw):
        from tavern_bridge.errors import MalformedEventError
        from tavern_bridge.protocol import parse_host_event

        with pytest.raises(MalformedEventError):
            parse_host_event(raw)

    def test_missing_type_keeps_routing_info(self):
        from tavern_bridge.errors import MalformedEventError
        from tavern_bridge.protocol import parse_host_event

        with pytest.raises(MalformedEventError) as exc_info:
            parse_host_event(json.dumps({"chatId": 3, "botId": "111"}))

        assert exc_info.value.bot_id == "111"
        assert exc_info.value.chat_id == 3

    def test_missing_required_field(self):
        from tavern_bridge.errors import MalformedEventError
        from tavern_bridge.protocol import parse_host_event

        with pytest.raises(MalformedEventError, match="fileName"):
            parse_host_event(
                json.dumps(
                    {"type": "history_file", "chatId": 1, "botId": "1", "fileData": "x"}
                )
            )

    @pytest.mark.parametrize("field", ["chatId", "botId"])
    def test_null_routing_field(self, field):
        from tavern_bridge.errors import MalformedEventError
        from tavern_bridge.protocol import parse_host_event

        data = {"type": "stream_end", "chatId": 1, "botId": "111", field: None}
        with pytest.raises(MalformedEventError, match=field):
            parse_host_event(json.dumps(data))

    def test_null_text_is_empty(self):
        from tavern_bridge.protocol import parse_host_event

        event = parse_host_event(
            json.dumps({"type": "ai_reply", "chatId": 1, "botId": "1", "text": None})
        )
        assert event.text == ""

    def test_unknown_type_is_not_an_error(self):
        from tavern_bridge.protocol import parse_host_event

        event = parse_host_event(json.dumps({"type": "future_event"}))
        assert not event.is_known

    def test_images_default_empty(self):
        from tavern_bridge.protocol import parse_host_event

        event = parse_host_event(
            json.dumps({"type": "ai_reply", "chatId": 1, "botId": "1", "text": ""})
        )
        assert event.images == []


class TestBuilders:
    def test_user_message(self):
        from tavern_bridge.models import Bot
        from tavern_bridge.protocol import user_message

        bot = Bot("111", "Alice")
        payload = user_message(bot, 9, [{"text": "hi"}])

        assert payload == {
            "type": "user_message",
            "chatId": 9,
            "botId": "111",
            "characterName": "Alice",
            "messages": [{"text": "hi"}],
        }

    def test_command_request(self):
        from tavern_bridge.models import Bot
        from tavern_bridge.protocol import command_request

        payload = command_request(Bot("111", "Alice"), 9, "switchchat", ("Old", "chat"))

        assert payload["type"] == "execute_command"
        assert payload["args"] == ["Old", "chat"]
        assert "isQueuedSwitch" not in payload
